import importlib
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mqtt_gatekeeper.server import broker as broker_module
from mqtt_gatekeeper.server.broker import (
    EmbeddedBroker,
    GatekeeperAuthPlugin,
    GatekeeperEventPlugin,
    GatekeeperTopicPlugin,
)
from mqtt_gatekeeper.server.models import EngineOptions, PublishPacket, Subscription
from mqtt_gatekeeper.server.security import AuthDenied

"""
Broker Tests: the EmbeddedBroker handle and the amqtt plugins feeding it.
The amqtt Broker itself is replaced by a mock.
"""


def session(client_id="client-1", username="aedes", password="rocks"):
    return SimpleNamespace(client_id=client_id, username=username, password=password)


@pytest.fixture
def persistence():
    backend = MagicMock()
    backend.store_retained = AsyncMock()
    backend.add_subscription = AsyncMock()
    backend.remove_subscription = AsyncMock()
    backend.retained = AsyncMock(return_value=[])
    backend.subscriptions = AsyncMock(return_value=[])
    return backend


@pytest.fixture
def mq():
    backend = MagicMock()
    backend.emit = AsyncMock()
    return backend


@pytest.fixture
def MockAMQTTBroker():
    with patch("mqtt_gatekeeper.server.broker.AMQTTBroker") as mock_class:
        instance = mock_class.return_value
        instance.start = AsyncMock()
        instance.shutdown = AsyncMock()
        instance.external_connected = AsyncMock()
        instance.retain_message = AsyncMock()
        instance.add_subscription = AsyncMock(return_value=1)
        instance.subscriptions = {}
        yield mock_class


@pytest.fixture
def engine(MockAMQTTBroker, persistence, mq):
    return EmbeddedBroker(EngineOptions(id="test-broker", persistence=persistence, mq=mq))


def plugin(plugin_class, engine):
    """A plugin as amqtt would build it, without going through amqtt's constructor."""
    instance = plugin_class.__new__(plugin_class)
    instance.engine = engine
    return instance


def test_config_points_amqtt_at_our_plugins(engine, MockAMQTTBroker):
    config = MockAMQTTBroker.call_args.args[0]

    assert config["listeners"]["default"]["bind"] == "127.0.0.1:0"
    for path in config["plugins"]:
        module_name, class_name = path.rsplit(".", 1)
        assert hasattr(importlib.import_module(module_name), class_name)


def test_engine_options_reach_amqtt(MockAMQTTBroker):
    EmbeddedBroker(EngineOptions(id="b", concurrency=5, heartbeat_interval=15000, connect_timeout=2500))

    config = MockAMQTTBroker.call_args.args[0]
    assert config["listeners"]["default"]["max_connections"] == 5
    assert config["timeout_disconnect_delay"] == 2
    assert config["plugins"][broker_module.SYS_PLUGIN] == {"sys_interval": 15}


def test_config_is_accepted_by_amqtt():
    from amqtt.contexts import BrokerConfig

    with patch("mqtt_gatekeeper.server.broker.AMQTTBroker"):
        engine = EmbeddedBroker(EngineOptions(id="b", concurrency=5))

    config = BrokerConfig.from_dict(engine.build_config())
    assert config.listeners["default"].max_connections == 5
    assert config.timeout_disconnect_delay == 30


def test_plugins_find_the_broker_under_construction(MockAMQTTBroker):
    seen = []
    MockAMQTTBroker.side_effect = lambda config: seen.append(broker_module._constructing.get())

    engine = EmbeddedBroker(EngineOptions(id="b"))

    assert seen == [engine]
    assert broker_module._constructing.get() is None
    assert engine.id == "b"


@pytest.mark.asyncio
async def test_start_and_close(engine):
    closed = MagicMock()
    engine.on("closed", closed)

    await engine.start()
    engine.broker.start.assert_awaited_once()
    engine.broker.retain_message.assert_not_awaited()

    await engine.close()
    await engine.close()
    engine.broker.shutdown.assert_awaited_once()
    closed.assert_called_once_with()
    assert engine.closed is True


@pytest.mark.asyncio
async def test_start_restores_retained_messages(engine, persistence):
    persistence.retained.return_value = [PublishPacket(topic="a/b", payload=b"hi", qos=1, retain=True)]
    calls = MagicMock()
    calls.attach_mock(engine.broker.start, "start")
    calls.attach_mock(engine.broker.retain_message, "retain_message")

    await engine.start()

    assert [c[0] for c in calls.mock_calls] == ["start", "retain_message"]
    engine.broker.retain_message.assert_awaited_once_with(None, "a/b", b"hi", 1)


@pytest.mark.asyncio
async def test_start_failure_propagates(engine):
    engine.broker.start.side_effect = OSError("address in use")

    with pytest.raises(OSError):
        await engine.start()


@pytest.mark.asyncio
async def test_handle_forwards_to_amqtt(engine):
    reader, writer = MagicMock(), MagicMock()

    await engine.handle(reader, writer, "ws")

    engine.broker.external_connected.assert_awaited_once_with(reader, writer, "default")


@pytest.mark.asyncio
async def test_handle_reports_errors(engine):
    errors = MagicMock()
    engine.on("error", errors)
    failure = ConnectionResetError("gone")
    engine.broker.external_connected.side_effect = failure

    await engine.handle(MagicMock(), MagicMock(), "tls")

    errors.assert_called_once_with(failure, "tls")


def test_unknown_event(engine):
    with pytest.raises(ValueError):
        engine.on("explode", MagicMock())


def test_failing_event_handler_does_not_break_emit(engine):
    second = MagicMock()
    engine.on("client", MagicMock(side_effect=RuntimeError("boom")))
    engine.on("client", second)

    engine.emit("client", "c1")

    second.assert_called_once_with("c1")


@pytest.mark.asyncio
async def test_login_without_authorizer(engine):
    assert await engine.check_login(session()) is True


@pytest.mark.asyncio
async def test_login_calls_authenticate_slot(engine):
    engine.authenticate = AsyncMock(return_value=False)

    assert await engine.check_login(session()) is False
    client, username, password = engine.authenticate.await_args.args
    assert client.client_id == "client-1"
    assert (username, password) == ("aedes", "rocks")


@pytest.mark.asyncio
async def test_login_rejects_long_client_id(engine):
    engine.authenticate = AsyncMock(return_value=True)

    assert await engine.check_login(session(client_id="x" * 24)) is False
    engine.authenticate.assert_not_awaited()


@pytest.mark.asyncio
async def test_topic_checks_see_the_logged_in_client(engine):
    async def authenticate(client, username, password):
        client.user = username
        return True

    engine.authenticate = authenticate
    engine.authorize_publish = AsyncMock(return_value=None)
    await engine.check_login(session())

    assert await engine.check_topic(session(), "a/b", "publish") is True
    client, packet = engine.authorize_publish.await_args.args
    assert client.user == "aedes"
    assert packet == PublishPacket(topic="a/b")


@pytest.mark.asyncio
async def test_publish_denied(engine):
    engine.authorize_publish = AsyncMock(return_value=AuthDenied("Publish not authorized"))

    assert await engine.check_topic(session(), "a", "publish") is False


@pytest.mark.asyncio
async def test_subscribe_check(engine):
    engine.authorize_subscribe = AsyncMock(side_effect=lambda client, sub: sub)
    assert await engine.check_topic(session(), "a", "subscribe") is True

    engine.authorize_subscribe = AsyncMock(return_value=None)
    assert await engine.check_topic(session(), "a", "subscribe") is False


@pytest.mark.asyncio
async def test_action_enum_values(engine):
    engine.authorize_subscribe = AsyncMock(return_value=None)
    action = SimpleNamespace(value="subscribe")

    assert await engine.check_topic(session(), "a", action) is False
    assert await engine.check_topic(session(), "a", "receive") is True


@pytest.mark.asyncio
async def test_retained_message_is_persisted_and_queued(engine, persistence, mq):
    published = MagicMock()
    engine.on("publish", published)
    message = SimpleNamespace(topic="a/b", data=bytearray(b"hi"), qos=1, retain=True)

    await engine.message_received("client-1", message)

    packet = PublishPacket(topic="a/b", payload=b"hi", qos=1, retain=True)
    persistence.store_retained.assert_awaited_once_with(packet)
    mq.emit.assert_awaited_once_with("a/b", b"hi")
    published.assert_called_once_with(packet, "client-1")


@pytest.mark.asyncio
async def test_plain_message_is_not_persisted(engine, persistence, mq):
    await engine.message_received("client-1", SimpleNamespace(topic="a", data=b"x", qos=0, retain=False))

    persistence.store_retained.assert_not_awaited()
    mq.emit.assert_awaited_once_with("a", b"x")


@pytest.mark.asyncio
async def test_subscription_events(engine, persistence):
    subscribed, unsubscribed = MagicMock(), MagicMock()
    engine.on("subscribe", subscribed)
    engine.on("unsubscribe", unsubscribed)

    await engine.client_subscribed("client-1", "a/b", 1)
    await engine.client_unsubscribed("client-1", "a/b")

    persistence.add_subscription.assert_awaited_once_with("client-1", Subscription(topic="a/b", qos=1))
    persistence.remove_subscription.assert_awaited_once_with("client-1", "a/b")
    subscribed.assert_called_once_with([Subscription(topic="a/b", qos=1)], "client-1")
    unsubscribed.assert_called_once_with([Subscription(topic="a/b")], "client-1")


@pytest.mark.asyncio
async def test_auth_plugin_delegates(engine):
    engine.authenticate = AsyncMock(return_value=True)

    assert await plugin(GatekeeperAuthPlugin, engine).authenticate(session=session()) is True
    assert await plugin(GatekeeperAuthPlugin, None).authenticate(session=session()) is False


@pytest.mark.asyncio
async def test_topic_plugin_delegates(engine):
    engine.authorize_publish = AsyncMock(return_value=AuthDenied("no"))
    topic_plugin = plugin(GatekeeperTopicPlugin, engine)

    assert await topic_plugin.topic_filtering(session=session(), topic="a", action="publish") is False
    # Broker-internal traffic carries no session
    assert await topic_plugin.topic_filtering(session=None, topic="$SYS/x", action="publish") is True


@pytest.mark.asyncio
async def test_event_plugin_forwards(engine):
    connected, disconnected = MagicMock(), MagicMock()
    engine.on("client", connected)
    engine.on("client_disconnect", disconnected)
    event_plugin = plugin(GatekeeperEventPlugin, engine)

    await event_plugin.on_broker_client_connected(client_id="client-1")
    await event_plugin.on_broker_client_disconnected(client_id="client-1")

    connected.assert_called_once_with("client-1")
    disconnected.assert_called_once_with("client-1")


@pytest.mark.asyncio
async def test_persistent_session_gets_its_subscriptions_back(engine, persistence):
    persistence.subscriptions.return_value = [Subscription(topic="a/b", qos=1)]
    client_session = SimpleNamespace(client_id="client-1", clean_session=False)

    await plugin(GatekeeperEventPlugin, engine).on_broker_client_connected(
        client_id="client-1", client_session=client_session)

    engine.broker.add_subscription.assert_awaited_once_with(("a/b", 1), client_session)
    persistence.remove_subscription.assert_not_awaited()


@pytest.mark.asyncio
async def test_live_subscriptions_are_not_restored_twice(engine, persistence):
    client_session = SimpleNamespace(client_id="client-1", clean_session=False)
    engine.broker.subscriptions = {"a/b": [(client_session, 1)]}
    persistence.subscriptions.return_value = [Subscription(topic="a/b", qos=1)]

    await engine.client_connected("client-1", client_session)

    engine.broker.add_subscription.assert_not_awaited()


@pytest.mark.asyncio
async def test_refused_subscription_is_forgotten(engine, persistence):
    persistence.subscriptions.return_value = [Subscription(topic="secret", qos=0)]
    engine.broker.add_subscription.return_value = 0x80

    await engine.client_connected("client-1", SimpleNamespace(client_id="client-1", clean_session=False))

    persistence.remove_subscription.assert_awaited_once_with("client-1", "secret")


@pytest.mark.asyncio
async def test_clean_session_drops_stored_subscriptions(engine, persistence):
    persistence.subscriptions.return_value = [Subscription(topic="a"), Subscription(topic="b")]

    await engine.client_connected("client-1", SimpleNamespace(client_id="client-1", clean_session=True))

    engine.broker.add_subscription.assert_not_awaited()
    assert persistence.remove_subscription.await_count == 2


@pytest.mark.asyncio
async def test_only_broadcast_messages_reach_the_backends(engine, persistence, mq):
    event_plugin = plugin(GatekeeperEventPlugin, engine)
    message = SimpleNamespace(topic="a/b", data=b"hi", qos=0, retain=True)

    assert not hasattr(event_plugin, "on_broker_message_received")
    await event_plugin.on_broker_message_broadcast(client_id="client-1", message=message)

    persistence.store_retained.assert_awaited_once()
    mq.emit.assert_awaited_once_with("a/b", b"hi")
