"""
Credential Hot Reload.

A SIGHUP re-reads the credentials file and swaps the freshly built
Authorizer into the broker's AuthorizerCell in one assignment. Checks that
are already running finish against the Authorizer they started with.

The coordinator belongs to one broker: it removes its signal handler when
that broker reports 'closed', so repeated start / stop cycles in one process
do not pile up handlers.
"""
import asyncio
import logging
import signal
from typing import Callable, Optional, Set

from mqtt_gatekeeper.server.errors import CredentialIOError
from mqtt_gatekeeper.server.security import Authorizer, AuthorizerCell

logger = logging.getLogger(__name__)

RELOAD_SIGNAL = getattr(signal, "SIGHUP", None)


class ReloadCoordinator:
    cell: AuthorizerCell
    loader: Callable[[], Optional[Authorizer]]
    armed: bool

    def __init__(self, cell: AuthorizerCell, loader: Callable[[], Optional[Authorizer]], broker,
                 sig: Optional[int] = RELOAD_SIGNAL):
        self.cell = cell
        self.loader = loader
        self.broker = broker
        self.sig = sig
        self.armed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()

    def arm(self):
        """Installs the signal handler and ties its lifetime to the broker."""
        if self.armed:
            return
        self._loop = asyncio.get_running_loop()
        if self.sig is not None:
            try:
                self._loop.add_signal_handler(self.sig, self._on_signal)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"Credential reload on signal unavailable: {e}")
                self.sig = None
        self.broker.on("closed", self.disarm)
        self.armed = True
        logger.debug("Reload coordinator armed")

    def disarm(self):
        if not self.armed:
            return
        if self.sig is not None and self._loop is not None and not self._loop.is_closed():
            self._loop.remove_signal_handler(self.sig)
        self.broker.off("closed", self.disarm)
        self.armed = False
        logger.debug("Reload coordinator disarmed")

    def _on_signal(self):
        logger.info("Reload signal received, reloading credentials")
        task = asyncio.ensure_future(self.reload())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def reload(self) -> bool:
        """
        Loads a new Authorizer and swaps it in. On failure the current one
        stays active and False is returned.
        """
        loop = asyncio.get_running_loop()
        try:
            authorizer = await loop.run_in_executor(None, self.loader)
        except CredentialIOError as e:
            logger.error(f"Credential reload failed, keeping current authorizer: {e}")
            return False

        self.cell.swap(authorizer)
        if authorizer is None:
            logger.warning("No credentials configured after reload, every client is allowed")
        else:
            logger.info(f"Credentials reloaded: {len(authorizer.store)} user(s)")
        return True
