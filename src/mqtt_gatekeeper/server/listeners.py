"""
Listener Orchestration.

Opens one server socket per configured protocol and forwards every accepted
connection, wrapped in amqtt's stream adapters, to one shared connection
handle:

    tcp   plain asyncio stream server
    tls   asyncio stream server with an SSLContext
    ws    websockets server, the MQTT byte stream travels in binary frames
    wss   websockets server over TLS

A run that fails to open one of its listeners closes the ones it already
opened before re-raising.
"""
import asyncio
import logging
import ssl
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from amqtt.adapters import StreamReaderAdapter, StreamWriterAdapter, WebSocketsReader, WebSocketsWriter
from websockets.asyncio.server import serve as serve_websocket

from mqtt_gatekeeper.server.errors import ConfigError, ListenerBindError
from mqtt_gatekeeper.server.models import ConnectionHandle, ListenerProtocol, ListenerSpec, TLSMaterial

WEBSOCKET_SUBPROTOCOLS = ["mqtt"]

# Config key holding the port of each protocol
PORT_KEYS = {
    ListenerProtocol.TCP: "port",
    ListenerProtocol.WS: "ws_port",
    ListenerProtocol.TLS: "tls_port",
    ListenerProtocol.WSS: "wss_port",
}

logger = logging.getLogger(__name__)


def parse_protocol(name: Any) -> ListenerProtocol:
    if isinstance(name, ListenerProtocol):
        return name
    try:
        return ListenerProtocol(str(name).strip().lower())
    except ValueError:
        raise ConfigError(f"Invalid protocol '{name}'. Allowed values are tcp, ws, tls, wss") from None


def parse_protocols(protos: Any) -> List[ListenerProtocol]:
    """Accepts a list of names or a comma separated string."""
    if isinstance(protos, str):
        protos = [p for p in protos.split(",") if p.strip()]
    return [parse_protocol(p) for p in protos or []]


def validate_tls(protocols: Iterable[Any], key: Optional[str], cert: Optional[str]):
    """
    Refuses half-configured TLS before any socket is opened.
    """
    if bool(key) != bool(cert):
        raise ConfigError("Must supply both private key and signed certificate to create a secure server")
    secure = [p.value for p in map(parse_protocol, protocols) if p.secure]
    if secure and not key:
        raise ConfigError(f"Protocol(s) {', '.join(secure)} need a private key and a certificate")


def build_ssl_context(tls: TLSMaterial) -> ssl.SSLContext:
    """Server-side SSLContext; client certificates are verified only when a CA is given."""
    context = ssl.create_default_context(purpose=ssl.Purpose.CLIENT_AUTH, cafile=tls.ca)
    context.load_cert_chain(certfile=tls.cert, keyfile=tls.key)
    if tls.ca:
        context.verify_mode = ssl.CERT_REQUIRED if tls.reject_unauthorized else ssl.CERT_OPTIONAL
    return context


def listener_specs(config: Dict[str, Any], handle: ConnectionHandle) -> List[ListenerSpec]:
    """One ListenerSpec per entry of `config['protos']`."""
    protocols = parse_protocols(config.get("protos"))
    validate_tls(protocols, config.get("key"), config.get("cert"))

    tls = None
    if config.get("key") and config.get("cert"):
        tls = TLSMaterial(
            key=config["key"],
            cert=config["cert"],
            ca=config.get("ca"),
            reject_unauthorized=bool(config.get("reject_unauthorized", True)),
        )

    specs = []
    for protocol in protocols:
        port = config.get(PORT_KEYS[protocol])
        if port is None:
            raise ConfigError(f"No port configured for protocol '{protocol.value}'")
        specs.append(ListenerSpec(
            protocol=protocol,
            host=config["host"],
            port=int(port),
            handle=handle,
            tls=tls if protocol.secure else None,
        ))
    return specs


class Listener:
    """One listening server socket and the protocol it speaks."""
    protocol: ListenerProtocol
    host: str
    port: int

    def __init__(self, protocol: ListenerProtocol, host: str, server: Any):
        self.protocol = protocol
        self.host = host
        self.server = server
        self.port = server.sockets[0].getsockname()[1]
        self.closed = False

    def address(self) -> Tuple[str, int]:
        return self.server.sockets[0].getsockname()[:2]

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.server.close()
        await self.server.wait_closed()
        logger.info(f"{self.protocol.value.upper()} server on {self.host}:{self.port} closed")

    def __repr__(self) -> str:
        return f"<Listener {self.protocol.value} {self.host}:{self.port}>"


async def start_listener(spec: ListenerSpec) -> Listener:
    protocol = spec.protocol
    context = None
    try:
        if protocol.secure:
            if spec.tls is None:
                raise ConfigError(f"Protocol '{protocol.value}' needs a private key and a certificate")
            context = build_ssl_context(spec.tls)

        if protocol in (ListenerProtocol.TCP, ListenerProtocol.TLS):
            async def on_stream(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
                await spec.handle(StreamReaderAdapter(reader), StreamWriterAdapter(writer), protocol.value)

            server = await asyncio.start_server(on_stream, spec.host, spec.port, ssl=context)
        else:
            async def on_websocket(connection):
                await spec.handle(WebSocketsReader(connection), WebSocketsWriter(connection), protocol.value)

            server = await serve_websocket(on_websocket, spec.host, spec.port, ssl=context,
                                           subprotocols=WEBSOCKET_SUBPROTOCOLS)
    except OSError as e:
        # ssl.SSLError and FileNotFoundError (key / cert) are OSErrors as well
        raise ListenerBindError(protocol.value, spec.host, spec.port, str(e)) from e

    listener = Listener(protocol, spec.host, server)
    logger.info(f"{protocol.value.upper()} server listening on port {spec.host}:{listener.port}")
    return listener


class ListenerOrchestrator:
    """Owns every listener opened for one broker."""
    listeners: List[Listener]

    def __init__(self):
        self.listeners = []

    async def start_all(self, specs: Sequence[ListenerSpec]) -> List[Listener]:
        opened: List[Listener] = []
        try:
            for spec in specs:
                opened.append(await start_listener(spec))
        except Exception:
            logger.error(f"Listener startup failed, closing {len(opened)} listener(s) opened in this run")
            for listener in opened:
                await listener.close()
            raise
        self.listeners.extend(opened)
        return opened

    async def close_all(self):
        for listener in self.listeners:
            await listener.close()
        self.listeners = []
