# OAuth - authorization-code + PKCE flow, token refresh, and the
# orchestrator that picks between them.
# Created: 2026-10-19

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import threading
import time
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

import httpx

from esim_mailer.config import Settings, get_settings
from esim_mailer.errors import (
    NoRefreshToken,
    OAuthError,
    TokenExchangeFailure,
    TokenRefreshFailure,
)
from esim_mailer.integrations.browser import BrowserLauncher, SystemBrowserLauncher
from esim_mailer.integrations.providers import (
    REDIRECT_PORT,
    ProviderConfig,
    ProviderIdentity,
    get_provider_config,
)
from esim_mailer.integrations.receiver import CodeReceiver, LocalCodeReceiver
from esim_mailer.integrations.token_store import (
    FileTokenStore,
    MemoryTokenStore,
    TokenStore,
    cache_key,
)
from esim_mailer.integrations.vault import decrypt_client_secret

logger = logging.getLogger(__name__)

# The redirect port is fixed, so at most one interactive flow may run per
# process. Refreshes do not take this lock.
_FLOW_LOCK = threading.Lock()


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str


@dataclass
class AuthorizationSession:
    """State for a single interactive authorization; never persisted."""

    state: str
    code_verifier: str
    code_challenge: str
    auth_url: str


def generate_pkce_pair() -> tuple[str, str]:
    """Return a fresh (verifier, S256 challenge) pair."""
    verifier = secrets.token_urlsafe(64)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


def build_authorization_url(config: ProviderConfig, state: str, code_challenge: str) -> str:
    """Generate the provider's authorization URL for a PKCE flow."""
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": config.scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        # Google only issues a refresh token for offline access with consent.
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{config.auth_url}?{urllib.parse.urlencode(params)}"


def _describe_error(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if not isinstance(data, dict):
        return f"HTTP {resp.status_code}"
    error = data.get("error") or f"HTTP {resp.status_code}"
    description = data.get("error_description")
    return f"{error}: {description}" if description else str(error)


class OAuthClient:
    """Token-endpoint calls for one provider.

    The client secret, if the provider has one, is decrypted on construction
    so a corrupted build fails before any network activity.
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.Client | None = None,
        timeout: float = 15.0,
    ):
        self.config = config
        self._http = http_client
        self._timeout = timeout
        self._client_secret = (
            None
            if config.is_public_client
            else decrypt_client_secret(config.encrypted_client_secret)
        )

    def new_session(self) -> AuthorizationSession:
        verifier, challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)
        return AuthorizationSession(
            state=state,
            code_verifier=verifier,
            code_challenge=challenge,
            auth_url=build_authorization_url(self.config, state, challenge),
        )

    def _credentials(self) -> dict[str, str]:
        creds = {"client_id": self.config.client_id}
        if self._client_secret is not None:
            creds["client_secret"] = self._client_secret
        return creds

    def _post(self, data: dict[str, str]) -> httpx.Response:
        if self._http is not None:
            return self._http.post(self.config.token_url, data=data)
        with httpx.Client(timeout=self._timeout) as client:
            return client.post(self.config.token_url, data=data)

    def _request_tokens(self, data: dict[str, str], *, refreshing: bool) -> dict[str, Any]:
        def fail(message: str, transient: bool = False) -> OAuthError:
            if refreshing:
                return TokenRefreshFailure(message, transient=transient)
            return TokenExchangeFailure(message)

        name = self.config.identity
        try:
            resp = self._post(data)
        except httpx.HTTPError as exc:
            raise fail(f"{name} token endpoint unreachable: {exc}", transient=True) from exc

        if resp.is_error:
            raise fail(
                f"{name} token request rejected ({_describe_error(resp)})",
                transient=resp.status_code >= 500,
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise fail(f"{name} returned a non-JSON token response") from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise fail(f"{name} token response has no access token")
        return payload

    def exchange_code(self, code: str, code_verifier: str) -> TokenPair:
        """Exchange an authorization code + PKCE verifier for tokens.

        Raises:
            TokenExchangeFailure: the provider rejected the exchange.
            NoRefreshToken: the response carried no refresh token.
        """
        payload = self._request_tokens(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.redirect_uri,
                "code_verifier": code_verifier,
                **self._credentials(),
            },
            refreshing=False,
        )
        refresh_token = payload.get("refresh_token")
        if not refresh_token:
            raise NoRefreshToken(
                f"{self.config.identity} did not return a refresh token; "
                "silent renewal would be impossible"
            )
        return TokenPair(payload["access_token"], refresh_token)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Trade a refresh token for a new access token.

        Providers that do not rotate refresh tokens get the old one carried
        forward.
        """
        payload = self._request_tokens(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                **self._credentials(),
            },
            refreshing=True,
        )
        return TokenPair(payload["access_token"], payload.get("refresh_token") or refresh_token)


def default_token_store(settings: Settings) -> TokenStore:
    if settings.token_store == "memory":
        return MemoryTokenStore()
    return FileTokenStore(settings.resolved_token_cache_dir())


class OAuthOrchestrator:
    """Returns a usable access token, refreshing silently when it can.

    Every collaborator is injectable: the token store, the browser launcher,
    the redirect receiver (as a factory, one receiver per flow), and the
    httpx client used for token-endpoint calls.
    """

    def __init__(
        self,
        store: TokenStore | None = None,
        *,
        settings: Settings | None = None,
        browser: BrowserLauncher | None = None,
        receiver_factory: Callable[[], CodeReceiver] | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store if store is not None else default_token_store(self.settings)
        self.browser = browser or SystemBrowserLauncher(strict=self.settings.strict_browser)
        self.receiver_factory = receiver_factory or self._default_receiver
        self._http = http_client
        self._sleep = sleep
        self._store_lock = threading.Lock()

    def _default_receiver(self) -> CodeReceiver:
        return LocalCodeReceiver(
            host=self.settings.listener_host,
            port=REDIRECT_PORT,
            timeout=self.settings.listener_timeout,
        )

    def _client(self, provider: ProviderIdentity) -> OAuthClient:
        return OAuthClient(
            get_provider_config(provider, self.settings),
            http_client=self._http,
            timeout=self.settings.http_timeout,
        )

    # ── Public API ─────────────────────────────────────────────────────

    def get_or_refresh_token(self, provider: ProviderIdentity, email: str) -> str:
        """Return an access token for *email* at *provider*.

        Tries the cached refresh token first; any refresh failure falls back
        to the interactive flow, whose failures propagate as OAuthError.
        """
        key = cache_key(provider, email)
        with self._store_lock:
            cached = self.store.get(key)

        if cached:
            try:
                pair = self._refresh_with_retry(provider, cached)
            except TokenRefreshFailure as e:
                logger.warning("Token refresh failed for %s, re-authorizing: %s", key, e)
            else:
                if pair.refresh_token != cached:
                    self._replace_if_unchanged(key, cached, pair.refresh_token)
                logger.info("Refreshed access token for %s", key)
                return pair.access_token

        try:
            pair = self.perform_oauth(provider)
        except OAuthError as e:
            logger.error("Authorization failed for %s: %s", key, e)
            raise

        with self._store_lock:
            self.store.set(key, pair.refresh_token)
        logger.info("Authorized %s", key)
        return pair.access_token

    def perform_oauth(self, provider: ProviderIdentity) -> TokenPair:
        """Run the interactive browser flow and exchange the resulting code."""
        client = self._client(provider)
        session = client.new_session()

        with _FLOW_LOCK:
            receiver = self.receiver_factory()
            receiver.open()
            try:
                logger.info("Starting %s authorization in the browser", provider)
                self.browser.open(session.auth_url)
                code = receiver.wait_for_code(session.state)
            finally:
                receiver.close()

        return client.exchange_code(code, session.code_verifier)

    def refresh_oauth_token(self, provider: ProviderIdentity, refresh_token: str) -> TokenPair:
        """Single refresh request; see OAuthClient.refresh."""
        return self._client(provider).refresh(refresh_token)

    def forget(self, provider: ProviderIdentity, email: str) -> bool:
        """Drop the cached refresh token for *email*. Returns True if one existed."""
        with self._store_lock:
            return self.store.delete(cache_key(provider, email))

    # ── Internals ──────────────────────────────────────────────────────

    def _refresh_with_retry(self, provider: ProviderIdentity, refresh_token: str) -> TokenPair:
        attempt = 0
        while True:
            try:
                return self.refresh_oauth_token(provider, refresh_token)
            except TokenRefreshFailure as e:
                if not e.transient or attempt >= self.settings.refresh_retries:
                    raise
                delay = self.settings.refresh_backoff * (2**attempt)
                attempt += 1
                logger.info("Transient refresh error, retrying in %.1fs: %s", delay, e)
                self._sleep(delay)

    def _replace_if_unchanged(self, key: str, expected: str, refresh_token: str) -> None:
        # Another thread may have re-authorized meanwhile; keep its token.
        with self._store_lock:
            if self.store.get(key) == expected:
                self.store.set(key, refresh_token)
                logger.info("Stored rotated refresh token for %s", key)
