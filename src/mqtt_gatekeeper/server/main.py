"""
Main entry point for the Gatekeeper broker.

This module is responsible for:
- Resolving the effective configuration (config file > flags > defaults).
- Starting the persistence and message-queue backends and waiting for them.
- Constructing and starting the embedded broker.
- Loading the Authorizer, installing its callbacks and arming reloads.
- Opening one listener per configured protocol.
- The ordered shutdown of all of the above.

With no credentials file configured (or one that cannot be read at start)
no Authorizer is installed and every client may connect, publish and
subscribe. That is the zero-config behaviour, not an accident.
"""
import asyncio
import functools
import logging
import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from mqtt_gatekeeper.server.backends import BackendSelector
from mqtt_gatekeeper.server.broker import EmbeddedBroker
from mqtt_gatekeeper.server.config_loader import load_config, resolve_config
from mqtt_gatekeeper.server.errors import CredentialIOError
from mqtt_gatekeeper.server.listeners import Listener, ListenerOrchestrator, listener_specs, parse_protocols, validate_tls
from mqtt_gatekeeper.server.models import BackendKind, EngineOptions
from mqtt_gatekeeper.server.reload import ReloadCoordinator
from mqtt_gatekeeper.server.security import Authorizer, AuthorizerCell, load_authorizer

PACKAGE_LOGGER = "mqtt_gatekeeper"


def setup_logging(level: int = logging.WARNING):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )


def log_level(config: Mapping[str, Any]) -> int:
    if config.get("very_verbose"):
        return logging.DEBUG
    if config.get("verbose"):
        return logging.INFO
    return logging.WARNING


logger = logging.getLogger(__name__)


@dataclass
class Setup:
    """Everything a successful start hands over to its caller."""
    listeners: List[Listener]
    broker: Any
    logger: logging.Logger
    cell: AuthorizerCell
    reloader: ReloadCoordinator
    config: Dict[str, Any] = field(default_factory=dict)


def effective_config(flags: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    flags = dict(flags or {})
    config_path = flags.pop("config", None)
    file_config = load_config(config_path) if config_path else {}
    return resolve_config(file_config, flags)


def engine_options(config: Mapping[str, Any], persistence, mq) -> EngineOptions:
    return EngineOptions(
        id=str(config["broker_id"]),
        concurrency=int(config["concurrency"]),
        queue_limit=int(config["queue_limit"]),
        max_client_id_length=int(config["max_client_id_length"]),
        heartbeat_interval=int(config["heartbeat_interval"]),
        connect_timeout=int(config["connect_timeout"]),
        persistence=persistence,
        mq=mq,
    )


def initial_authorizer(config: Mapping[str, Any]) -> Optional[Authorizer]:
    """Loads the Authorizer for start; unreadable credentials mean no restrictions."""
    credentials = config.get("credentials")
    if not credentials:
        logger.warning("No credentials file configured, every client is allowed")
        return None
    try:
        return load_authorizer(credentials)
    except CredentialIOError as e:
        logger.warning(f"{e}. Starting without restrictions, every client is allowed")
        return None


def attach_event_logging(broker, log: logging.Logger):
    """Logs the broker's lifecycle events."""
    def topics(subscriptions):
        return ", ".join(s.topic for s in subscriptions)

    broker.on("client", lambda client_id: log.info(f"Client Connected: {client_id} to broker {broker.id}"))
    broker.on("client_disconnect",
              lambda client_id: log.info(f"Client Disconnected: {client_id} from broker {broker.id}"))
    broker.on("subscribe", lambda subs, client_id: log.info(
        f"MQTT client {client_id} subscribed to: {topics(subs)} on broker {broker.id}"))
    broker.on("unsubscribe", lambda subs, client_id: log.info(
        f"MQTT client {client_id} unsubscribed from: {topics(subs)} on broker {broker.id}"))
    broker.on("publish", lambda packet, client_id: log.debug(
        f"Client {client_id or 'BROKER_' + broker.id} has published {packet.payload!r} on {packet.topic}"))
    broker.on("error", lambda error, protocol: log.warning(f"Connection error on {protocol}: {error}"))


def install_authorizer(broker, cell: AuthorizerCell):
    broker.authenticate = cell.authenticate
    broker.authorize_publish = cell.authorize_publish
    broker.authorize_subscribe = cell.authorize_subscribe


async def start(flags: Optional[Mapping[str, Any]] = None, *,
                selector: Optional[BackendSelector] = None,
                broker_factory: Callable[[EngineOptions], Any] = EmbeddedBroker) -> Setup:
    """
    Brings the broker up: backends, broker, authorizer, listeners, in that
    order. A failure closes whatever this attempt already opened.
    """
    config = effective_config(flags)
    if config.get("verbose") or config.get("very_verbose"):
        logging.getLogger(PACKAGE_LOGGER).setLevel(log_level(config))

    # Reject bad protocols, half-configured TLS and unknown backends up front
    selector = selector or BackendSelector()
    validate_tls(parse_protocols(config.get("protos")), config.get("key"), config.get("cert"))
    selector.parse(BackendKind.PERSISTENCE, config.get("persistence"))
    selector.parse(BackendKind.MQ, config.get("mq"))

    persistence, mq = await selector.start(config.get("persistence"), config.get("mq"),
                                           timeout=config.get("backend_ready_timeout"))

    broker = None
    reloader = None
    orchestrator = ListenerOrchestrator()
    try:
        broker = broker_factory(engine_options(config, persistence, mq))
        broker_logger = logging.getLogger(PACKAGE_LOGGER).getChild(f"broker.{broker.id}")
        attach_event_logging(broker, broker_logger)
        await broker.start()

        cell = AuthorizerCell(initial_authorizer(config))
        install_authorizer(broker, cell)
        reloader = ReloadCoordinator(cell, functools.partial(load_authorizer, config.get("credentials")), broker)
        reloader.arm()

        listeners = await orchestrator.start_all(listener_specs(config, broker.handle))
    except BaseException:
        logger.error("Startup failed, rolling back")
        if reloader is not None:
            reloader.disarm()
        await _close_quietly(broker, persistence, mq)
        raise

    logger.info(f"Gatekeeper '{broker.id}' is fully operational with {len(listeners)} listener(s).")
    return Setup(listeners=listeners, broker=broker, logger=broker_logger, cell=cell,
                 reloader=reloader, config=config)


async def _close_quietly(broker, persistence, mq):
    """Rollback helper: a failing close must not hide the startup error."""
    steps = []
    if broker is not None:
        steps.append(broker.close)
    steps += [persistence.destroy, mq.destroy]
    for step in steps:
        try:
            await step()
        except Exception as e:
            logger.error(f"Cleanup step {step.__qualname__} failed: {e}")


async def stop(setup: Setup):
    """
    Ordered shutdown: broker, persistence, message queue, then each listener.
    Every step runs even if an earlier one fails; the first failure is
    re-raised once all of them had their turn.
    """
    broker = setup.broker
    steps = [broker.close]
    if broker.persistence is not None:
        steps.append(broker.persistence.destroy)
    if broker.mq is not None:
        steps.append(broker.mq.destroy)
    steps += [listener.close for listener in setup.listeners]

    first_error: Optional[BaseException] = None
    for step in steps:
        try:
            await step()
        except Exception as e:
            logger.error(f"Shutdown step failed: {e}")
            if first_error is None:
                first_error = e
    if first_error is not None:
        raise first_error
    logger.info(f"Gatekeeper '{broker.id}' stopped.")


async def serve(flags: Optional[Mapping[str, Any]] = None):
    """Runs the broker until SIGINT or SIGTERM."""
    setup = await start(flags)
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    # Setup Signal Handlers for OS interrupts
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await stop_requested.wait()
        logger.info("Received exit signal, shutting down...")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await stop(setup)
