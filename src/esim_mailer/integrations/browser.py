# Browser launchers - send the user to the provider's consent page.
# Created: 2026-10-19

from __future__ import annotations

import logging
import sys
import webbrowser
from typing import Protocol, TextIO

from esim_mailer.errors import BrowserLaunchFailure

logger = logging.getLogger(__name__)

_MANUAL_MESSAGE = "Failed to open the browser. Please open this URL manually: {url}"


class BrowserLauncher(Protocol):
    """Opens an authorization URL for the user."""

    def open(self, url: str) -> None: ...


class SystemBrowserLauncher:
    """Opens the default browser; prints the URL when that fails.

    With ``strict=True`` a launch failure raises BrowserLaunchFailure instead.
    """

    def __init__(self, strict: bool = False, stream: TextIO | None = None):
        self.strict = strict
        self.stream = stream

    def open(self, url: str) -> None:
        try:
            opened = webbrowser.open(url)
        except webbrowser.Error as exc:
            logger.warning("Browser launch raised: %s", exc)
            opened = False

        if opened:
            logger.info("Opened browser for authorization")
            return

        if self.strict:
            raise BrowserLaunchFailure("Could not open a browser for authorization")
        print(_MANUAL_MESSAGE.format(url=url), file=self.stream or sys.stdout)


class HeadlessBrowserLauncher:
    """Never opens a browser; always prints the URL for manual use."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream

    def open(self, url: str) -> None:
        print(f"Open this URL to authorize: {url}", file=self.stream or sys.stdout)
