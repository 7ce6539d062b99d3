# Token worker - runs the blocking OAuth flow off the UI thread.
# Created: 2026-10-19
#
# A GUI host polls StatusCell on each redraw instead of waiting on the
# worker; the worker only ever writes to the cell.

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from esim_mailer.errors import OAuthError
from esim_mailer.integrations.oauth import OAuthOrchestrator
from esim_mailer.integrations.providers import determine_provider

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], None]


class StatusCell:
    """Lock-guarded status message plus a busy flag."""

    def __init__(self, message: str = ""):
        self._lock = threading.Lock()
        self._message = message
        self._busy = False

    @property
    def message(self) -> str:
        with self._lock:
            return self._message

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def set(self, message: str, *, busy: bool | None = None) -> None:
        with self._lock:
            self._message = message
            if busy is not None:
                self._busy = busy

    def try_start(self, message: str) -> bool:
        """Mark busy and set *message*, unless already busy."""
        with self._lock:
            if self._busy:
                return False
            self._busy = True
            self._message = message
            return True


class TokenWorker:
    """Acquires a token on a daemon thread and reports through a StatusCell.

    ``on_token`` receives the access token on success (e.g. to hand it to
    the mail sender); it runs on the worker thread.
    """

    def __init__(self, orchestrator: OAuthOrchestrator, status: StatusCell | None = None):
        self.orchestrator = orchestrator
        self.status = status or StatusCell()
        self._thread: threading.Thread | None = None

    def start(self, email: str, on_token: TokenCallback | None = None) -> bool:
        """Start acquiring a token for *email*. Returns False if already running."""
        if not self.status.try_start("Authenticating..."):
            return False
        self._thread = threading.Thread(
            target=self._run,
            args=(email, on_token),
            daemon=True,
            name="esim-mailer-token",
        )
        self._thread.start()
        return True

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self, email: str, on_token: TokenCallback | None) -> None:
        try:
            provider = determine_provider(email)
            token = self.orchestrator.get_or_refresh_token(provider, email)
            if on_token is not None:
                on_token(token)
        except OAuthError as e:
            self.status.set(f"Error getting OAuth token: {e}", busy=False)
            return
        except Exception as e:
            logger.exception("Token worker crashed")
            self.status.set(f"Error: {e}", busy=False)
            return
        self.status.set("Authenticated", busy=False)
