"""
Credential Store.

Holds the username -> UserRecord mapping backing an Authorizer. The store is
always loaded and saved as one snapshot; there is no incremental merge with
what is already on disk.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from mqtt_gatekeeper.server.errors import CredentialIOError
from mqtt_gatekeeper.server.hasher import DEFAULT_ITERATIONS, generate_hash_password
from mqtt_gatekeeper.server.models import DEFAULT_GLOB, UserRecord

logger = logging.getLogger(__name__)


class CredentialStore:
    _users: Dict[str, UserRecord]
    iterations: int

    def __init__(self, users: Optional[Dict[str, Any]] = None, iterations: int = DEFAULT_ITERATIONS):
        self.iterations = iterations
        self._users = {}
        self.load(users if users is not None else {})

    @classmethod
    def from_file(cls, path: Union[str, Path], iterations: int = DEFAULT_ITERATIONS) -> "CredentialStore":
        """Reads a credentials file. Every failure surfaces as CredentialIOError."""
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise CredentialIOError(f"Cannot read credentials file {path}: {e}") from e
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CredentialIOError(f"Credentials file {path} is not valid JSON: {e}") from e

        store = cls(iterations=iterations)
        store.load(data)
        logger.info(f"Loaded {len(store)} user(s) from {path}")
        return store

    def load(self, serialized: Dict[str, Any]):
        """Replaces the whole mapping with the content of `serialized`."""
        if not isinstance(serialized, dict):
            raise CredentialIOError("Credentials must be a JSON object keyed by username")
        users = {}
        for username, data in serialized.items():
            try:
                users[username] = UserRecord.from_json_dict(username, data)
            except (KeyError, TypeError, ValueError) as e:
                raise CredentialIOError(f"Malformed record for user '{username}': {e}") from e
        self._users = users

    def serialize(self) -> Dict[str, Any]:
        return {name: record.to_json_dict() for name, record in self._users.items()}

    def save(self, path: Union[str, Path]):
        """Rewrites the credentials file in full."""
        path = Path(path)
        try:
            path.write_text(json.dumps(self.serialize(), indent=2), encoding="utf-8")
        except OSError as e:
            raise CredentialIOError(f"Cannot write credentials file {path}: {e}") from e
        logger.debug(f"Saved {len(self)} user(s) to {path}")

    async def add_user(self, username: str, password: str,
                       publish_pattern: Optional[str] = None,
                       subscribe_pattern: Optional[str] = None) -> bool:
        """
        Creates or overwrites a user with a freshly salted hash.
        Returns True if the user existed before.
        """
        persisted = await generate_hash_password(str(password), self.iterations)
        existed = username in self._users
        self._users[username] = UserRecord(
            username=username,
            salt=persisted.salt,
            hash=persisted.hash,
            authorize_publish=publish_pattern or DEFAULT_GLOB,
            authorize_subscribe=subscribe_pattern or DEFAULT_GLOB,
            iterations=persisted.iterations,
        )
        return existed

    def remove_user(self, username: str) -> bool:
        return self._users.pop(username, None) is not None

    def lookup(self, username: str) -> Optional[UserRecord]:
        return self._users.get(username)

    def usernames(self) -> Iterator[str]:
        return iter(sorted(self._users))

    def __contains__(self, username: object) -> bool:
        return username in self._users

    def __len__(self) -> int:
        return len(self._users)
