"""
Pytest Configuration and Fixtures for the mqtt_gatekeeper project.

Provides a stand-in broker engine that honours the same handle contract as
`EmbeddedBroker` (slots, events, handle, close) so the bootstrap can be
exercised without a real MQTT engine, plus throwaway TLS material and
credential files.
"""
import datetime
import inspect
import json
import logging
import sys

import pytest

from mqtt_gatekeeper.server.credentials import CredentialStore


class FakeBroker:
    """Records what the bootstrap does with the broker handle."""

    def __init__(self, options):
        self.options = options
        self.id = options.id
        self.persistence = options.persistence
        self.mq = options.mq
        self.authenticate = None
        self.authorize_publish = None
        self.authorize_subscribe = None
        self.started = False
        self.closed = False
        self.connections = []
        self.handlers = {}

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event, handler):
        if handler in self.handlers.get(event, []):
            self.handlers[event].remove(handler)

    def emit(self, event, *args):
        for handler in list(self.handlers.get(event, [])):
            handler(*args)

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True
        self.emit("closed")

    async def handle(self, reader, writer, protocol):
        self.connections.append((protocol, reader, writer))
        result = writer.close()
        if inspect.isawaitable(result):
            await result


@pytest.fixture
def broker_factory():
    """A FakeBroker factory that remembers every broker it built."""
    built = []

    def factory(options):
        broker = FakeBroker(options)
        built.append(broker)
        return broker

    factory.built = built
    return factory


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass the CLI, this ensures our logs are formatted
    and visible during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture(scope="session")
def tls_files(tmp_path_factory):
    """Self-signed key / certificate pair for localhost."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    directory = tmp_path_factory.mktemp("tls")
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False)
        .sign(key, hashes.SHA256())
    )

    key_path = directory / "server.key"
    cert_path = directory / "server.crt"
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return {"key": str(key_path), "cert": str(cert_path)}


@pytest.fixture
def store():
    """An empty store with a low iteration count to keep tests quick."""
    return CredentialStore(iterations=1000)


@pytest.fixture
def write_credentials(tmp_path):
    """Writes a credentials file holding the given {user: password} pairs."""
    async def write(users, name="credentials.json", **patterns):
        store = CredentialStore(iterations=1000)
        for username, password in users.items():
            await store.add_user(username, password, patterns.get("publish"), patterns.get("subscribe"))
        path = tmp_path / name
        path.write_text(json.dumps(store.serialize(), indent=2), encoding="utf-8")
        return path

    return write
