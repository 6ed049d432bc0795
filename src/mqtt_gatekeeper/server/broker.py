"""
Embedded MQTT Broker Setup and Management.

This module is responsible for:
- Configuring and instantiating the `amqtt` broker.
- Exposing it through a narrow handle: one raw-stream entry point shared by
  every listener, three assignable authorization slots, lifecycle events
  and an awaitable close().
- The `amqtt` plugins that route logins and topic checks into those slots
  and hand published messages to the persistence / mq backends.
- Restoring retained messages and persistent-session subscriptions from
  the persistence backend.

The broker never binds the public sockets itself; listeners are opened by
`listeners.py` and forwarded to `EmbeddedBroker.handle`. amqtt only gets a
loopback listener on an ephemeral port so that its connection bookkeeping
(and the `concurrency` cap) has a listener to attach incoming streams to.

Engine options amqtt has a counterpart for are mapped in `build_config`:
- concurrency        -> max_connections of the internal listener
- heartbeat_interval -> sys_interval of the $SYS plugin (seconds)
- connect_timeout    -> timeout_disconnect_delay, the keep-alive grace (seconds)
- max_client_id_length is enforced in `check_login`.
queue_limit has no amqtt equivalent and is only carried for reference.
"""
import contextvars
import logging
from typing import Any, Callable, Dict, List, Optional

from amqtt.broker import Broker as AMQTTBroker
from amqtt.plugins.base import BaseAuthPlugin, BasePlugin, BaseTopicPlugin

from mqtt_gatekeeper.server.models import ClientContext, EngineOptions, PublishPacket, Subscription

INTERNAL_LISTENER = "default"
INTERNAL_BIND = "127.0.0.1:0"
SYS_PLUGIN = "amqtt.plugins.sys.broker.BrokerSysPlugin"
LIFECYCLE_EVENTS = ("client", "client_disconnect", "subscribe", "unsubscribe", "publish", "error", "closed")

logger = logging.getLogger(__name__)

# amqtt instantiates plugins itself while the broker is being constructed;
# this is how they find the EmbeddedBroker they belong to.
_constructing: contextvars.ContextVar = contextvars.ContextVar("gatekeeper_broker", default=None)


class EmbeddedBroker:
    """
    Manages the lifecycle and configuration of the embedded AMQTT broker.
    """
    options: EngineOptions
    broker: AMQTTBroker
    persistence: Any
    mq: Any
    closed: bool

    # Authorization slots, None allows everything
    authenticate: Optional[Callable] = None
    authorize_publish: Optional[Callable] = None
    authorize_subscribe: Optional[Callable] = None

    def __init__(self, options: EngineOptions):
        self.options = options
        self.persistence = options.persistence
        self.mq = options.mq
        self.closed = False
        self._handlers: Dict[str, List[Callable]] = {event: [] for event in LIFECYCLE_EVENTS}
        self._clients: Dict[str, ClientContext] = {}

        token = _constructing.set(self)
        try:
            self.broker = AMQTTBroker(self.build_config())
        finally:
            _constructing.reset(token)

    @property
    def id(self) -> str:
        return self.options.id

    def build_config(self) -> dict:
        return {
            "listeners": {
                INTERNAL_LISTENER: {
                    "type": "tcp",
                    "bind": INTERNAL_BIND,
                    "max_connections": self.options.concurrency,
                },
            },
            "timeout_disconnect_delay": self.options.connect_timeout // 1000,
            "plugins": {
                f"{__name__}.GatekeeperAuthPlugin": {},
                f"{__name__}.GatekeeperTopicPlugin": {},
                f"{__name__}.GatekeeperEventPlugin": {},
                SYS_PLUGIN: {"sys_interval": self.options.heartbeat_interval // 1000},
            },
        }

    async def start(self):
        """
        Starts the embedded AMQTT broker and replays the retained messages
        kept by the persistence backend.
        """
        try:
            await self.broker.start()
            await self.restore_retained()
            logger.info(f"Embedded MQTT Broker '{self.id}' started successfully.")
        except Exception as e:
            logger.error(f"Failed to start embedded MQTT Broker: {e}")
            raise

    async def restore_retained(self):
        # amqtt.start() empties its retained store, so this runs afterwards
        if self.persistence is None:
            return
        packets = await self.persistence.retained()
        for packet in packets:
            await self.broker.retain_message(None, packet.topic, packet.payload, packet.qos)
        if packets:
            logger.info(f"Restored {len(packets)} retained message(s)")

    async def close(self):
        """
        Stops the embedded AMQTT broker and announces 'closed'.
        """
        if self.closed:
            return
        try:
            await self.broker.shutdown()
            logger.info(f"Embedded MQTT Broker '{self.id}' stopped successfully.")
        except Exception as e:
            logger.error(f"Failed to stop embedded MQTT Broker: {e}")
            raise
        finally:
            self.closed = True
            self._clients.clear()
            self.emit("closed")

    async def handle(self, reader, writer, protocol: str = "tcp"):
        """
        The single entry point every listener forwards its connections to.
        `reader` / `writer` are amqtt stream adapters.
        """
        try:
            await self.broker.external_connected(reader, writer, INTERNAL_LISTENER)
        except Exception as e:
            logger.error(f"Error on {protocol.upper()} connection: {e}")
            self.emit("error", e, protocol)

    # --- Lifecycle events ---

    def on(self, event: str, handler: Callable):
        if event not in self._handlers:
            raise ValueError(f"Unknown broker event '{event}'")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def emit(self, event: str, *args):
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Handler for broker event '{event}' failed")

    # --- Called by the amqtt plugins ---

    async def check_login(self, session) -> bool:
        client_id = session.client_id or ""
        if len(client_id) > self.options.max_client_id_length:
            logger.info(f"Client id '{client_id}' exceeds {self.options.max_client_id_length} characters")
            return False

        client = ClientContext(client_id=client_id)
        if self.authenticate is not None:
            if not await self.authenticate(client, session.username, session.password):
                return False
        self._clients[client_id] = client
        return True

    async def check_topic(self, session, topic: str, action) -> bool:
        action = str(getattr(action, "value", action)).lower()
        client = self._clients.get(session.client_id) or ClientContext(client_id=session.client_id)

        if action == "publish" and self.authorize_publish is not None:
            result = await self.authorize_publish(client, PublishPacket(topic=topic))
            if result is not None and not result:
                logger.info(f"{getattr(result, 'reason', 'Publish not authorized')}: '{client.client_id}' -> '{topic}'")
                return False
        elif action == "subscribe" and self.authorize_subscribe is not None:
            granted = await self.authorize_subscribe(client, Subscription(topic=topic))
            return granted is not None
        return True

    async def client_connected(self, client_id: str, session=None):
        if session is not None and self.persistence is not None:
            await self.restore_subscriptions(client_id, session)
        self.emit("client", client_id)

    async def restore_subscriptions(self, client_id: str, session):
        """
        A clean session forgets what was persisted for the client. A persistent
        one gets its stored subscriptions back when amqtt has none for it, e.g.
        after a restart. Restored filters go through the topic check again.
        """
        if session.clean_session:
            for subscription in await self.persistence.subscriptions(client_id):
                await self.persistence.remove_subscription(client_id, subscription.topic)
            return

        known = any(
            s.client_id == client_id
            for subscribers in self.broker.subscriptions.values()
            for s, _ in subscribers
        )
        if known:
            return
        for subscription in await self.persistence.subscriptions(client_id):
            code = await self.broker.add_subscription((subscription.topic, subscription.qos), session)
            if code == 0x80:
                logger.info(f"Dropping stored subscription '{subscription.topic}' of '{client_id}'")
                await self.persistence.remove_subscription(client_id, subscription.topic)

    def client_disconnected(self, client_id: str):
        self._clients.pop(client_id, None)
        self.emit("client_disconnect", client_id)

    async def client_subscribed(self, client_id: str, topic: str, qos: int):
        subscription = Subscription(topic=topic, qos=qos or 0)
        if self.persistence is not None:
            await self.persistence.add_subscription(client_id, subscription)
        self.emit("subscribe", [subscription], client_id)

    async def client_unsubscribed(self, client_id: str, topic: str):
        if self.persistence is not None:
            await self.persistence.remove_subscription(client_id, topic)
        self.emit("unsubscribe", [Subscription(topic=topic)], client_id)

    async def message_received(self, client_id: Optional[str], message):
        packet = PublishPacket(
            topic=message.topic,
            payload=bytes(message.data or b""),
            qos=message.qos or 0,
            retain=bool(message.retain),
        )
        if packet.retain and self.persistence is not None:
            await self.persistence.store_retained(packet)
        if self.mq is not None:
            await self.mq.emit(packet.topic, packet.payload)
        self.emit("publish", packet, client_id)


# --- amqtt plugins ---

class GatekeeperAuthPlugin(BaseAuthPlugin):
    """Delegates CONNECT authentication to the owning EmbeddedBroker."""

    def __init__(self, context):
        super().__init__(context)
        self.engine: Optional[EmbeddedBroker] = _constructing.get()

    async def authenticate(self, *args, **kwargs) -> bool:
        session = kwargs.get("session") or args[0]
        if self.engine is None:
            logger.error("Authentication plugin is not attached to a broker, rejecting")
            return False
        return await self.engine.check_login(session)


class GatekeeperTopicPlugin(BaseTopicPlugin):
    """Delegates publish / subscribe checks to the owning EmbeddedBroker."""

    def __init__(self, context):
        super().__init__(context)
        self.engine: Optional[EmbeddedBroker] = _constructing.get()

    async def topic_filtering(self, *args, **kwargs) -> bool:
        session = kwargs.get("session")
        if session is None:
            # Broker-internal traffic ($SYS and friends)
            return True
        if self.engine is None:
            logger.error("Topic plugin is not attached to a broker, rejecting")
            return False
        return await self.engine.check_topic(session, kwargs.get("topic"), kwargs.get("action"))


class GatekeeperEventPlugin(BasePlugin):
    """Forwards amqtt broker events to the owning EmbeddedBroker."""

    def __init__(self, context):
        super().__init__(context)
        self.engine: Optional[EmbeddedBroker] = _constructing.get()

    async def on_broker_client_connected(self, *args, **kwargs):
        if self.engine is not None:
            await self.engine.client_connected(kwargs.get("client_id"), kwargs.get("client_session"))

    async def on_broker_client_disconnected(self, *args, **kwargs):
        if self.engine is not None:
            self.engine.client_disconnected(kwargs.get("client_id"))

    async def on_broker_client_subscribed(self, *args, **kwargs):
        if self.engine is not None:
            await self.engine.client_subscribed(kwargs.get("client_id"), kwargs.get("topic"), kwargs.get("qos"))

    async def on_broker_client_unsubscribed(self, *args, **kwargs):
        if self.engine is not None:
            await self.engine.client_unsubscribed(kwargs.get("client_id"), kwargs.get("topic"))

    async def on_broker_message_broadcast(self, *args, **kwargs):
        # Fired only for publishes the topic check let through
        if self.engine is not None:
            await self.engine.message_received(kwargs.get("client_id"), kwargs.get("message"))
