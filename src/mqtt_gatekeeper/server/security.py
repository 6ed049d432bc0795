"""
Security Components for the Embedded MQTT Broker.

This module is responsible for:
- The `Authorizer`, which checks logins against a CredentialStore and
  evaluates the per-user publish / subscribe ACL patterns.
- The `AuthorizerCell`, the single reference the broker's authorization
  slots read from. Reloading credentials swaps the cell's content in one
  assignment; a check already running keeps the Authorizer it started with.
- Loading an Authorizer from the credentials file.

Denials are return values, never exceptions:
    authenticate        -> False
    authorize_publish   -> AuthDenied (falsy); None when allowed
    authorize_subscribe -> None; the original subscription when granted
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from mqtt_gatekeeper.server.acl import match
from mqtt_gatekeeper.server.credentials import CredentialStore
from mqtt_gatekeeper.server.errors import HashError
from mqtt_gatekeeper.server.hasher import DEFAULT_ITERATIONS, verify_password
from mqtt_gatekeeper.server.models import ClientContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthDenied:
    """A refused publish. Falsy, so `if not result` reads naturally."""
    reason: str
    client_id: Optional[str] = None
    topic: Optional[str] = None

    def __bool__(self) -> bool:
        return False


def _text(value: Union[str, bytes, None]) -> Optional[str]:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


class Authorizer:
    """
    Implements the three broker authorization callbacks against one
    CredentialStore snapshot.
    """
    store: CredentialStore

    def __init__(self, store: Optional[CredentialStore] = None):
        self.store = store if store is not None else CredentialStore()

    async def authenticate(self, client: ClientContext, username, password) -> bool:
        username = _text(username)
        password = _text(password)
        if not username or not password:
            logger.info(f"Client '{client.client_id}' rejected: missing username or password")
            return False

        record = self.store.lookup(username)
        if record is None:
            logger.info(f"Client '{client.client_id}' rejected: unknown user '{username}'")
            return False

        try:
            success = await verify_password(record.password, password)
        except HashError as e:
            logger.error(f"Password check for user '{username}' failed: {e}")
            return False

        if success:
            client.user = username
        else:
            logger.info(f"Client '{client.client_id}' rejected: wrong password for '{username}'")
        return success

    async def authorize_publish(self, client: ClientContext, packet: Any) -> Optional[AuthDenied]:
        topic = packet.topic
        record = self.store.lookup(client.user) if client.user else None
        if record is None:
            return AuthDenied("Publish not authorized: unknown user", client.client_id, topic)
        if not match(record.authorize_publish, topic):
            return AuthDenied("Publish not authorized", client.client_id, topic)
        return None

    async def authorize_subscribe(self, client: ClientContext, subscription: Any) -> Optional[Any]:
        record = self.store.lookup(client.user) if client.user else None
        if record is None or not match(record.authorize_subscribe, subscription.topic):
            logger.debug(f"Subscription of '{client.client_id}' to '{subscription.topic}' refused")
            return None
        return subscription


class AuthorizerCell:
    """
    Holds the active Authorizer. An empty cell allows everything: with no
    credentials configured the broker runs open, on purpose.
    """
    current: Optional[Authorizer]

    def __init__(self, authorizer: Optional[Authorizer] = None):
        self.current = authorizer

    def swap(self, authorizer: Optional[Authorizer]) -> Optional[Authorizer]:
        previous, self.current = self.current, authorizer
        return previous

    async def authenticate(self, client: ClientContext, username, password) -> bool:
        authorizer = self.current
        if authorizer is None:
            return True
        return await authorizer.authenticate(client, username, password)

    async def authorize_publish(self, client: ClientContext, packet: Any) -> Optional[AuthDenied]:
        authorizer = self.current
        if authorizer is None:
            return None
        return await authorizer.authorize_publish(client, packet)

    async def authorize_subscribe(self, client: ClientContext, subscription: Any) -> Optional[Any]:
        authorizer = self.current
        if authorizer is None:
            return subscription
        return await authorizer.authorize_subscribe(client, subscription)


def load_authorizer(credentials: Optional[Union[str, Path]],
                    iterations: int = DEFAULT_ITERATIONS) -> Optional[Authorizer]:
    """
    Builds an Authorizer from the credentials file, or returns None when no
    file is configured. Read errors propagate as CredentialIOError.
    """
    if not credentials:
        return None
    return Authorizer(CredentialStore.from_file(credentials, iterations=iterations))
