"""
Salted, iterated password hashing.

Passwords are derived with PBKDF2-HMAC-SHA256. The salt is stored as a hex
string and its text is fed to the KDF, which keeps credential files written
by the aedes-cli tooling verifiable.

Derivation is CPU bound, so both public coroutines hand the work to the
default executor instead of running it on the event loop.
"""
import asyncio
import hashlib
import hmac
import logging
import secrets

from mqtt_gatekeeper.server.errors import HashError
from mqtt_gatekeeper.server.models import PersistedPassword

SALT_LENGTH = 64  # bytes of entropy, doubled once hex encoded
KEY_LENGTH = 256
DIGEST = "sha256"
DEFAULT_ITERATIONS = 100000

logger = logging.getLogger(__name__)


def _derive(password: str, salt: str, iterations: int) -> str:
    try:
        key = hashlib.pbkdf2_hmac(DIGEST, password.encode("utf-8"), salt.encode("utf-8"), iterations, KEY_LENGTH)
    except (ValueError, OverflowError, TypeError, AttributeError) as e:
        raise HashError(f"Key derivation failed: {e}") from e
    return key.hex()


def _new_salt() -> str:
    try:
        return secrets.token_hex(SALT_LENGTH)
    except OSError as e:
        raise HashError(f"Entropy source unavailable: {e}") from e


async def generate_hash_password(password: str, iterations: int = DEFAULT_ITERATIONS) -> PersistedPassword:
    """
    Generates a PersistedPassword for a new or redefined password.
    A fresh salt is drawn on every call.
    """
    if iterations < 1:
        raise HashError(f"Iteration count must be positive, got {iterations}")
    salt = _new_salt()
    loop = asyncio.get_running_loop()
    derived = await loop.run_in_executor(None, _derive, password, salt, iterations)
    return PersistedPassword(salt=salt, hash=derived, iterations=iterations)


async def verify_password(persisted: PersistedPassword, attempt: str) -> bool:
    """Checks a login attempt against the stored salt and hash."""
    loop = asyncio.get_running_loop()
    derived = await loop.run_in_executor(None, _derive, attempt, persisted.salt, persisted.iterations)
    try:
        return hmac.compare_digest(derived, persisted.hash)
    except TypeError as e:
        # Non-ASCII or non-string stored hash
        raise HashError(f"Stored hash is unusable: {e}") from e
