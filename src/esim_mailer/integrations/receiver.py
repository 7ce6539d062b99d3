# Code receiver - one-shot local listener for the OAuth redirect.
# Created: 2026-10-19
#
# Interactive flows share one fixed port (it is part of the registered
# redirect URI), so only one LocalCodeReceiver may be open per process at a
# time. OAuthOrchestrator serializes flows to guarantee that.

from __future__ import annotations

import logging
import socket
import time
import urllib.parse
from typing import Protocol

from esim_mailer.errors import AuthorizationCodeMissing, ListenerBindFailure
from esim_mailer.integrations.providers import REDIRECT_PORT

logger = logging.getLogger(__name__)

_MAX_REQUEST_LINE = 8192
_MAX_HEADERS = 100
_CONNECTION_TIMEOUT = 5.0

SUCCESS_PAGE = (
    "<h1>Authorization successful!</h1>"
    "<p>You can now close this window and return to the application.</p>"
)
WAITING_PAGE = (
    "<h1>Waiting for authorization...</h1>"
    "<p>Please complete the authorization in your browser.</p>"
)
DENIED_PAGE = (
    "<h1>Authorization failed</h1>"
    "<p>The provider did not grant access. Return to the application to try again.</p>"
)


class CodeReceiver(Protocol):
    """Receives the authorization code delivered by the browser redirect.

    ``open`` must succeed before the browser is sent to the provider;
    ``close`` must be safe to call on every exit path.
    """

    def open(self) -> None: ...

    def wait_for_code(self, state: str | None = None) -> str: ...

    def close(self) -> None: ...


def _query_pairs(request: str) -> list[tuple[str, str]]:
    """Query parameters of the request target on the first request line."""
    lines = request.splitlines()
    if not lines:
        return []
    parts = lines[0].split()
    if len(parts) < 2:
        return []
    try:
        url = urllib.parse.urlsplit(f"http://localhost{parts[1]}")
        return urllib.parse.parse_qsl(url.query, keep_blank_values=True)
    except ValueError:
        return []


def _first(pairs: list[tuple[str, str]], name: str) -> str | None:
    return next((value for key, value in pairs if key == name), None)


def extract_code(request: str) -> str | None:
    """Return the ``code`` query parameter of a raw HTTP request, if any.

    Only the first line is inspected; its second whitespace-separated token
    is the request target. Malformed input yields None, never an exception.
    """
    return _first(_query_pairs(request), "code")


def _response(body: str) -> bytes:
    return (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html\r\n"
        "Connection: close\r\n"
        "\r\n" + body
    ).encode("utf-8")


class LocalCodeReceiver:
    """Blocking TCP listener that waits for exactly one redirect with a code.

    Requests without a code (favicon fetches, prefetches, stale tabs) get the
    waiting page and the loop keeps listening until *timeout* seconds pass.
    """

    def __init__(
        self, host: str = "127.0.0.1", port: int = REDIRECT_PORT, timeout: float = 300.0
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None

    @property
    def address(self) -> tuple[str, int]:
        """Bound address; differs from ``port`` only when binding port 0."""
        if self._sock is None:
            return self.host, self.port
        return self._sock.getsockname()[:2]

    def open(self) -> None:
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(5)
        except OSError as exc:
            sock.close()
            raise ListenerBindFailure(
                f"Cannot listen on {self.host}:{self.port} for the OAuth redirect "
                f"(is another authorization running?): {exc}"
            ) from exc
        self._sock = sock
        logger.debug("Redirect listener bound on %s:%d", *self.address)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.debug("Redirect listener closed")

    def __enter__(self) -> LocalCodeReceiver:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def wait_for_code(self, state: str | None = None) -> str:
        """Accept connections until one carries a code, then return it.

        If *state* is given, a redirect whose ``state`` differs is answered
        with the waiting page and ignored.

        Raises:
            AuthorizationCodeMissing: on timeout, if the provider redirected
                with an ``error``, or if the listener is not open.
        """
        if self._sock is None:
            raise AuthorizationCodeMissing("Redirect listener is not open")

        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AuthorizationCodeMissing(
                    f"No authorization code received within {self.timeout:.0f}s"
                )
            self._sock.settimeout(remaining)
            try:
                conn, _ = self._sock.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                raise AuthorizationCodeMissing(f"Redirect listener failed: {exc}") from exc

            with conn:
                try:
                    code = self._handle(conn, state)
                except OSError as exc:
                    logger.warning("Error handling redirect connection: %s", exc)
                    continue
            if code is not None:
                return code

    def _handle(self, conn: socket.socket, state: str | None) -> str | None:
        conn.settimeout(_CONNECTION_TIMEOUT)
        with conn.makefile("rb") as reader:
            raw = reader.readline(_MAX_REQUEST_LINE)
            # Unread headers would make close() reset the connection before
            # the browser renders the page.
            for _ in range(_MAX_HEADERS):
                if reader.readline(_MAX_REQUEST_LINE) in (b"\r\n", b"\n", b""):
                    break
        request = raw.decode("utf-8", errors="replace")
        pairs = _query_pairs(request)
        state_ok = state is None or _first(pairs, "state") == state

        error = _first(pairs, "error")
        code = _first(pairs, "code")
        if (error or code) and not state_ok:
            logger.warning("Ignoring redirect with mismatched state")
        elif error:
            conn.sendall(_response(DENIED_PAGE))
            description = _first(pairs, "error_description")
            detail = f"{error}: {description}" if description else error
            raise AuthorizationCodeMissing(f"Authorization was not granted ({detail})")
        elif code:
            conn.sendall(_response(SUCCESS_PAGE))
            logger.info("Authorization code received")
            return code

        conn.sendall(_response(WAITING_PAGE))
        return None
