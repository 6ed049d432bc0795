"""
Data Models shared by the authorization, backend and listener layers.

Defines the user record as it lives in the credentials file, the
per-connection client context handed to the authorization callbacks,
and the configuration objects the bootstrap builds for listeners,
backends and the broker engine.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

DEFAULT_GLOB = "**"
LEGACY_ITERATIONS = 10000

_HEX = re.compile(r"[0-9a-fA-F]+")


class ListenerProtocol(str, Enum):
    TCP = "tcp"
    WS = "ws"
    TLS = "tls"
    WSS = "wss"

    @property
    def secure(self) -> bool:
        return self in (ListenerProtocol.TLS, ListenerProtocol.WSS)


class BackendKind(str, Enum):
    PERSISTENCE = "persistence"
    MQ = "mq"


# --- Credentials ---

@dataclass(frozen=True)
class PersistedPassword:
    """Salt and derived key of a password, both hex encoded."""
    salt: str
    hash: str
    iterations: int = LEGACY_ITERATIONS


@dataclass(frozen=True, kw_only=True)
class UserRecord:
    """One entry of the credentials file."""
    username: str
    salt: str
    hash: str
    authorize_publish: str = DEFAULT_GLOB
    authorize_subscribe: str = DEFAULT_GLOB
    iterations: int = LEGACY_ITERATIONS

    @property
    def password(self) -> PersistedPassword:
        return PersistedPassword(salt=self.salt, hash=self.hash, iterations=self.iterations)

    def to_json_dict(self) -> Dict[str, Any]:
        """Shape written to the credentials file (the username is the key)."""
        data: Dict[str, Any] = {
            "salt": self.salt,
            "hash": self.hash,
            "authorizePublish": self.authorize_publish,
            "authorizeSubscribe": self.authorize_subscribe,
        }
        # Files written by older tools carry no iteration count
        if self.iterations != LEGACY_ITERATIONS:
            data["iterations"] = self.iterations
        return data

    @classmethod
    def from_json_dict(cls, username: str, data: Dict[str, Any]) -> "UserRecord":
        """Raises KeyError, TypeError or ValueError for records that cannot be verified."""
        if not isinstance(data, dict):
            raise TypeError(f"record must be an object, got {type(data).__name__}")
        iterations = data.get("iterations", LEGACY_ITERATIONS)
        if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 1:
            raise ValueError(f"'iterations' must be a positive integer, got {iterations!r}")
        return cls(
            username=username,
            salt=_hex_field(data, "salt"),
            hash=_hex_field(data, "hash"),
            authorize_publish=_pattern_field(data, "authorizePublish"),
            authorize_subscribe=_pattern_field(data, "authorizeSubscribe"),
            iterations=iterations,
        )


def _hex_field(data: Dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"'{key}' must be a string, got {type(value).__name__}")
    if not _HEX.fullmatch(value):
        raise ValueError(f"'{key}' is not hex encoded")
    return value


def _pattern_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key) or DEFAULT_GLOB
    if not isinstance(value, str):
        raise TypeError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


# --- Authorization callback arguments ---

@dataclass
class ClientContext:
    """
    Identity of one broker connection as seen by the authorization callbacks.
    `user` is filled in by a successful authentication.
    """
    client_id: str
    user: Optional[str] = None


@dataclass(frozen=True)
class PublishPacket:
    topic: str
    payload: bytes = b""
    qos: int = 0
    retain: bool = False


@dataclass(frozen=True)
class Subscription:
    topic: str
    qos: int = 0


# --- Listeners ---

ConnectionHandle = Callable[[Any, Any, str], Awaitable[None]]


@dataclass(frozen=True)
class TLSMaterial:
    key: str
    cert: str
    ca: Optional[str] = None
    reject_unauthorized: bool = True


@dataclass(frozen=True)
class ListenerSpec:
    protocol: ListenerProtocol
    host: str
    port: int
    handle: ConnectionHandle
    tls: Optional[TLSMaterial] = None


# --- Backends and engine ---

@dataclass(frozen=True)
class BackendConfig:
    kind: BackendKind
    name: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class EngineOptions:
    """Options handed to the broker engine at construction time."""
    id: str
    concurrency: int = 100
    queue_limit: int = 42
    max_client_id_length: int = 23
    heartbeat_interval: int = 60000  # ms
    connect_timeout: int = 30000  # ms
    persistence: Any = None
    mq: Any = None
