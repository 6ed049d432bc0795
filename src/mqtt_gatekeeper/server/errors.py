"""
Exception hierarchy for the Gatekeeper.

Authorization denials are not exceptions, see `security.AuthDenied`.
"""


class GatekeeperError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(GatekeeperError):
    """Invalid option combination, unknown protocol or unknown backend."""


class CredentialIOError(GatekeeperError):
    """The credentials file could not be read, parsed or written."""


class ListenerBindError(GatekeeperError):
    """A listener could not bind its socket or load its TLS material."""

    def __init__(self, protocol: str, host: str, port: int, reason: str):
        super().__init__(f"{protocol.upper()} listener on {host}:{port} failed: {reason}")
        self.protocol = protocol
        self.host = host
        self.port = port


class HashError(GatekeeperError):
    """The entropy source or the key derivation failed."""


class BackendError(GatekeeperError):
    """A backend failed while warming up or did not become ready in time."""
