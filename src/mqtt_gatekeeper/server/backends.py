"""
Persistence and Message-Queue Backend Selection.

This module is responsible for:
- The closed registry of backends, keyed by kind and configured name.
- Rejecting unknown backend names before anything gets constructed.
- The readiness contract: immediate backends are usable right after
  construction, gated ones resolve their `ready` future once warmed up
  (e.g. after the first successful round trip to their server).
- Starting both backends and blocking until both are ready.

Redis and MongoDB drivers are imported lazily so that the in-memory default
needs nothing beyond the core dependencies.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from mqtt_gatekeeper.server.errors import BackendError, ConfigError
from mqtt_gatekeeper.server.models import BackendConfig, BackendKind, PublishPacket, Subscription

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "memory"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_MONGO_URL = "mongodb://127.0.0.1:27017/gatekeeper"


class Backend:
    kind: BackendKind
    name: str
    wait_for_ready: bool = False
    options: Dict[str, Any]
    ready: asyncio.Future

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options = dict(options or {})
        loop = asyncio.get_running_loop()
        self.ready = loop.create_future()
        self._warm_up_task: Optional[asyncio.Task] = None
        if self.wait_for_ready:
            self._warm_up_task = loop.create_task(self._run_warm_up())
        else:
            self.ready.set_result(self)

    async def warm_up(self):
        """Gated backends connect here; returning marks the backend ready."""

    async def _run_warm_up(self):
        try:
            await self.warm_up()
        except Exception as e:
            logger.error(f"{self.kind.value} backend '{self.name}' failed to warm up: {e}")
            if not self.ready.done():
                self.ready.set_exception(e)
            return
        if not self.ready.done():
            self.ready.set_result(self)
        logger.info(f"{self.kind.value} backend '{self.name}' is ready")

    async def destroy(self):
        if self._warm_up_task and not self._warm_up_task.done():
            self._warm_up_task.cancel()
            try:
                await self._warm_up_task
            except asyncio.CancelledError:
                pass
        if not self.ready.done():
            self.ready.cancel()
        await self.close()

    async def close(self):
        """Releases driver resources."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.kind.value}:{self.name}>"


# --- Persistence ---

class PersistenceBackend(Backend):
    kind = BackendKind.PERSISTENCE

    async def store_retained(self, packet: PublishPacket):
        raise NotImplementedError

    async def retained(self) -> List[PublishPacket]:
        raise NotImplementedError

    async def add_subscription(self, client_id: str, subscription: Subscription):
        raise NotImplementedError

    async def remove_subscription(self, client_id: str, topic: str):
        raise NotImplementedError

    async def subscriptions(self, client_id: str) -> List[Subscription]:
        raise NotImplementedError


class MemoryPersistence(PersistenceBackend):
    name = "memory"

    def __init__(self, options=None):
        super().__init__(options)
        self._retained: Dict[str, PublishPacket] = {}
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}

    async def store_retained(self, packet: PublishPacket):
        # An empty retained payload clears the topic
        if packet.payload:
            self._retained[packet.topic] = packet
        else:
            self._retained.pop(packet.topic, None)

    async def retained(self) -> List[PublishPacket]:
        return list(self._retained.values())

    async def add_subscription(self, client_id: str, subscription: Subscription):
        self._subscriptions.setdefault(client_id, {})[subscription.topic] = subscription

    async def remove_subscription(self, client_id: str, topic: str):
        self._subscriptions.get(client_id, {}).pop(topic, None)

    async def subscriptions(self, client_id: str) -> List[Subscription]:
        return list(self._subscriptions.get(client_id, {}).values())

    async def close(self):
        self._retained.clear()
        self._subscriptions.clear()


class RedisPersistence(PersistenceBackend):
    name = "redis"
    wait_for_ready = True

    def __init__(self, options=None):
        super().__init__(options)
        self.prefix = self.options.get("prefix", "gatekeeper:")
        self.client = None

    async def warm_up(self):
        import redis.asyncio as redis

        self.client = redis.from_url(self.options.get("url", DEFAULT_REDIS_URL))
        await self.client.ping()

    async def store_retained(self, packet: PublishPacket):
        if packet.payload:
            await self.client.hset(f"{self.prefix}retained", packet.topic, packet.payload)
            await self.client.hset(f"{self.prefix}retained-qos", packet.topic, packet.qos)
        else:
            await self.client.hdel(f"{self.prefix}retained", packet.topic)
            await self.client.hdel(f"{self.prefix}retained-qos", packet.topic)

    async def retained(self) -> List[PublishPacket]:
        payloads = await self.client.hgetall(f"{self.prefix}retained")
        qos = await self.client.hgetall(f"{self.prefix}retained-qos")
        return [
            PublishPacket(topic=topic.decode(), payload=payload, qos=int(qos.get(topic, 0)), retain=True)
            for topic, payload in payloads.items()
        ]

    async def add_subscription(self, client_id: str, subscription: Subscription):
        await self.client.hset(f"{self.prefix}subs:{client_id}", subscription.topic, subscription.qos)

    async def remove_subscription(self, client_id: str, topic: str):
        await self.client.hdel(f"{self.prefix}subs:{client_id}", topic)

    async def subscriptions(self, client_id: str) -> List[Subscription]:
        subs = await self.client.hgetall(f"{self.prefix}subs:{client_id}")
        return [Subscription(topic=topic.decode(), qos=int(qos)) for topic, qos in subs.items()]

    async def close(self):
        if self.client is not None:
            await self.client.aclose()


class MongoPersistence(PersistenceBackend):
    name = "mongodb"
    wait_for_ready = True

    def __init__(self, options=None):
        super().__init__(options)
        self.client = None
        self.db = None

    async def warm_up(self):
        from pymongo import AsyncMongoClient

        self.client = AsyncMongoClient(self.options.get("url", DEFAULT_MONGO_URL))
        self.db = self.client.get_default_database(default="gatekeeper")
        await self.client.admin.command("ping")

    async def store_retained(self, packet: PublishPacket):
        if packet.payload:
            await self.db.retained.update_one(
                {"topic": packet.topic},
                {"$set": {"payload": packet.payload, "qos": packet.qos}},
                upsert=True,
            )
        else:
            await self.db.retained.delete_one({"topic": packet.topic})

    async def retained(self) -> List[PublishPacket]:
        return [
            PublishPacket(topic=doc["topic"], payload=doc["payload"], qos=doc.get("qos", 0), retain=True)
            async for doc in self.db.retained.find({})
        ]

    async def add_subscription(self, client_id: str, subscription: Subscription):
        await self.db.subscriptions.update_one(
            {"client_id": client_id, "topic": subscription.topic},
            {"$set": {"qos": subscription.qos}},
            upsert=True,
        )

    async def remove_subscription(self, client_id: str, topic: str):
        await self.db.subscriptions.delete_one({"client_id": client_id, "topic": topic})

    async def subscriptions(self, client_id: str) -> List[Subscription]:
        return [
            Subscription(topic=doc["topic"], qos=doc.get("qos", 0))
            async for doc in self.db.subscriptions.find({"client_id": client_id})
        ]

    async def close(self):
        if self.client is not None:
            await self.client.close()


# --- Message queues ---

class MQBackend(Backend):
    """
    Outbound bus for published messages. Subclasses forward every emitted
    message to their server so other broker nodes can pick it up; the
    in-memory one has nobody to tell.
    """
    kind = BackendKind.MQ

    async def emit(self, topic: str, payload: bytes):
        await self._forward(topic, payload)

    async def _forward(self, topic: str, payload: bytes):
        """Hands the message to the backing server, if any."""


class MemoryMQ(MQBackend):
    name = "memory"


class RedisMQ(MQBackend):
    name = "redis"

    def __init__(self, options=None):
        super().__init__(options)
        import redis.asyncio as redis

        self.prefix = self.options.get("prefix", "gatekeeper:")
        self.client = redis.from_url(self.options.get("url", DEFAULT_REDIS_URL))

    async def _forward(self, topic: str, payload: bytes):
        await self.client.publish(f"{self.prefix}{topic}", payload)

    async def close(self):
        await self.client.aclose()


class MongoMQ(MQBackend):
    name = "mongodb"
    wait_for_ready = True

    def __init__(self, options=None):
        super().__init__(options)
        self.client = None
        self.collection = None

    async def warm_up(self):
        from pymongo import AsyncMongoClient

        self.client = AsyncMongoClient(self.options.get("url", DEFAULT_MONGO_URL))
        db = self.client.get_default_database(default="gatekeeper")
        self.collection = db[self.options.get("collection", "pubsub")]
        await self.client.admin.command("ping")

    async def _forward(self, topic: str, payload: bytes):
        await self.collection.insert_one({"topic": topic, "payload": payload})

    async def close(self):
        if self.client is not None:
            await self.client.close()


BACKENDS: Dict[BackendKind, Dict[str, Type[Backend]]] = {
    BackendKind.PERSISTENCE: {
        "memory": MemoryPersistence,
        "redis": RedisPersistence,
        "mongodb": MongoPersistence,
    },
    BackendKind.MQ: {
        "memory": MemoryMQ,
        "redis": RedisMQ,
        "mongodb": MongoMQ,
    },
}


class BackendSelector:
    """Resolves configured backend names against a closed registry."""
    registry: Dict[BackendKind, Dict[str, Type[Backend]]]

    def __init__(self, registry: Optional[Dict[BackendKind, Dict[str, Type[Backend]]]] = None):
        self.registry = registry if registry is not None else BACKENDS

    def parse(self, kind: Union[BackendKind, str], raw: Any) -> BackendConfig:
        """
        Turns a config section (None, a name, a {name, options} mapping or a
        BackendConfig) into a BackendConfig, rejecting unknown names.
        """
        try:
            kind = BackendKind(kind)
        except ValueError:
            raise ConfigError(f"Unknown backend kind '{kind}'") from None

        if isinstance(raw, BackendConfig):
            config = raw
        elif raw is None:
            config = BackendConfig(kind=kind, name=DEFAULT_BACKEND)
        elif isinstance(raw, str):
            config = BackendConfig(kind=kind, name=raw)
        elif isinstance(raw, dict):
            config = BackendConfig(kind=kind, name=raw.get("name") or DEFAULT_BACKEND,
                                   options=dict(raw.get("options") or {}))
        else:
            raise ConfigError(f"Invalid {kind.value} configuration: {raw!r}")

        if config.name not in self.registry.get(kind, {}):
            raise ConfigError(f"{kind.value} '{config.name}' isn't supported")
        return config

    def resolve(self, kind: Union[BackendKind, str], raw: Any) -> Tuple[Backend, asyncio.Future]:
        config = self.parse(kind, raw)
        backend_class = self.registry[config.kind][config.name]
        backend = backend_class(config.options)
        logger.debug(f"Created {backend!r} (gated: {backend.wait_for_ready})")
        return backend, backend.ready

    async def start(self, persistence: Any = None, mq: Any = None,
                    timeout: Optional[float] = None) -> Tuple[Backend, Backend]:
        """
        Creates both backends and waits until both report ready.
        Names are validated before either backend is constructed.
        """
        self.parse(BackendKind.PERSISTENCE, persistence)
        self.parse(BackendKind.MQ, mq)

        persistence_backend, persistence_ready = self.resolve(BackendKind.PERSISTENCE, persistence)
        mq_backend, mq_ready = self.resolve(BackendKind.MQ, mq)
        try:
            await asyncio.wait_for(asyncio.gather(persistence_ready, mq_ready), timeout=timeout)
        except Exception as e:
            await persistence_backend.destroy()
            await mq_backend.destroy()
            if isinstance(e, asyncio.TimeoutError):
                raise BackendError(f"Backends not ready after {timeout}s") from e
            raise BackendError(f"Backend failed to start: {e}") from e

        logger.info(f"Backends ready: persistence={persistence_backend.name}, mq={mq_backend.name}")
        return persistence_backend, mq_backend
