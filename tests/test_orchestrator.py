# Tests for OAuthOrchestrator - refresh vs. interactive fallback.
# Created: 2026-10-19

import base64
import hashlib
import socket
import threading
import time
import urllib.parse
from unittest.mock import MagicMock, patch

import httpx
import pytest

from esim_mailer.config import Settings
from esim_mailer.errors import (
    AuthorizationCodeMissing,
    BrowserLaunchFailure,
    ListenerBindFailure,
    NoRefreshToken,
    SecretDecryptionFailure,
    TokenRefreshFailure,
)
from esim_mailer.integrations.oauth import OAuthOrchestrator, TokenPair
from esim_mailer.integrations.providers import (
    REDIRECT_PORT,
    ProviderIdentity,
    get_provider_config,
)
from esim_mailer.integrations.receiver import LocalCodeReceiver
from esim_mailer.integrations.token_store import FileTokenStore, MemoryTokenStore, cache_key

EMAIL = "someone@gmail.com"
KEY = cache_key(ProviderIdentity.GMAIL, EMAIL)


def _receiver(code="abc123"):
    receiver = MagicMock()
    if isinstance(code, Exception):
        receiver.wait_for_code.side_effect = code
    else:
        receiver.wait_for_code.return_value = code
    return receiver


class TokenEndpoint:
    """MockTransport handler recording every token-endpoint request."""

    def __init__(self, exchange=None, refresh=None):
        self.exchange = exchange or httpx.Response(
            200, json={"access_token": "AT1", "refresh_token": "RT1"}
        )
        self.refresh = refresh
        self.requests: list[dict[str, str]] = []

    def __call__(self, request):
        form = dict(urllib.parse.parse_qsl(request.content.decode()))
        self.requests.append(form)
        if form["grant_type"] == "refresh_token":
            return self.refresh
        return self.exchange

    def grants(self):
        return [r["grant_type"] for r in self.requests]


@pytest.fixture
def store():
    return MemoryTokenStore()


@pytest.fixture
def browser():
    return MagicMock()


def _orchestrator(settings, store, browser, receiver, endpoint, **kwargs):
    return OAuthOrchestrator(
        store,
        settings=settings,
        browser=browser,
        receiver_factory=lambda: receiver,
        http_client=httpx.Client(transport=httpx.MockTransport(endpoint)),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Interactive path
# ---------------------------------------------------------------------------


class TestInteractiveFlow:
    def test_empty_store_runs_full_flow(self, settings, embedded, store, browser):
        receiver = _receiver("abc123")
        endpoint = TokenEndpoint()
        orch = _orchestrator(settings, store, browser, receiver, endpoint)

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT1"
        assert store.get(KEY) == "RT1"

        browser.open.assert_called_once()
        auth_url = browser.open.call_args.args[0]
        assert auth_url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        receiver.open.assert_called_once()
        receiver.close.assert_called_once()

        assert endpoint.grants() == ["authorization_code"]
        assert endpoint.requests[0]["code"] == "abc123"

    def test_verifier_matches_challenge_and_state(self, settings, embedded, store, browser):
        receiver = _receiver()
        endpoint = TokenEndpoint()
        _orchestrator(settings, store, browser, receiver, endpoint).get_or_refresh_token(
            ProviderIdentity.GMAIL, EMAIL
        )

        params = dict(
            urllib.parse.parse_qsl(urllib.parse.urlsplit(browser.open.call_args.args[0]).query)
        )
        verifier = endpoint.requests[0]["code_verifier"]
        challenge = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        assert params["code_challenge"] == challenge
        receiver.wait_for_code.assert_called_once_with(params["state"])

    def test_receiver_failure_propagates_and_store_unchanged(
        self, settings, embedded, store, browser
    ):
        receiver = _receiver(AuthorizationCodeMissing("browser abandoned"))
        endpoint = TokenEndpoint()
        orch = _orchestrator(settings, store, browser, receiver, endpoint)

        with pytest.raises(AuthorizationCodeMissing):
            orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL)

        assert store.get(KEY) is None
        assert endpoint.requests == []
        receiver.close.assert_called_once()

    def test_browser_failure_still_closes_listener(self, settings, embedded, store):
        browser = MagicMock()
        browser.open.side_effect = BrowserLaunchFailure("no browser")
        receiver = _receiver()
        orch = _orchestrator(settings, store, browser, receiver, TokenEndpoint())

        with pytest.raises(BrowserLaunchFailure):
            orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL)
        receiver.close.assert_called_once()
        receiver.wait_for_code.assert_not_called()

    def test_bind_failure_propagates(self, settings, embedded, store, browser):
        receiver = _receiver()
        receiver.open.side_effect = ListenerBindFailure("port 9999 busy")
        orch = _orchestrator(settings, store, browser, receiver, TokenEndpoint())

        with pytest.raises(ListenerBindFailure):
            orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL)
        browser.open.assert_not_called()

    def test_no_refresh_token_is_terminal(self, settings, embedded, store, browser):
        endpoint = TokenEndpoint(exchange=httpx.Response(200, json={"access_token": "AT1"}))
        orch = _orchestrator(settings, store, browser, _receiver(), endpoint)

        with pytest.raises(NoRefreshToken):
            orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL)
        assert store.get(KEY) is None

    def test_corrupted_secret_fails_before_browser(
        self, settings, embedded, store, browser, monkeypatch
    ):
        monkeypatch.setattr("esim_mailer._embedded.GMAIL_SECRET", b"\x00" * 40)
        receiver = _receiver()
        orch = _orchestrator(settings, store, browser, receiver, TokenEndpoint())

        with pytest.raises(SecretDecryptionFailure):
            orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL)
        browser.open.assert_not_called()
        receiver.open.assert_not_called()


# ---------------------------------------------------------------------------
# Refresh path
# ---------------------------------------------------------------------------


class TestRefreshPath:
    def test_failed_refresh_falls_back_to_interactive(self, settings, embedded, store, browser):
        store.set(KEY, "expired")
        receiver = _receiver("abc123")
        endpoint = TokenEndpoint(refresh=httpx.Response(400, json={"error": "invalid_grant"}))
        orch = _orchestrator(settings, store, browser, receiver, endpoint)

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT1"
        assert endpoint.grants() == ["refresh_token", "authorization_code"]
        receiver.wait_for_code.assert_called_once()
        assert store.get(KEY) == "RT1"

    def test_any_refresh_failure_triggers_interactive(self, settings, embedded, store, browser):
        store.set(KEY, "rt")
        orch = _orchestrator(settings, store, browser, _receiver(), TokenEndpoint())

        with (
            patch.object(
                orch, "refresh_oauth_token", side_effect=TokenRefreshFailure("boom")
            ) as refresh,
            patch.object(
                orch, "perform_oauth", return_value=TokenPair("AT9", "RT9")
            ) as interactive,
        ):
            assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT9"

        refresh.assert_called_once_with(ProviderIdentity.GMAIL, "rt")
        interactive.assert_called_once_with(ProviderIdentity.GMAIL)
        assert store.get(KEY) == "RT9"

    def test_unchanged_refresh_token_not_rewritten(self, settings, embedded, browser):
        store = MagicMock(wraps=MemoryTokenStore())
        store.set(KEY, "RT0")
        store.set.reset_mock()
        receiver = _receiver()
        endpoint = TokenEndpoint(
            refresh=httpx.Response(200, json={"access_token": "AT2", "refresh_token": "RT0"})
        )
        orch = _orchestrator(settings, store, browser, receiver, endpoint)

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT2"
        store.set.assert_not_called()
        assert store.get(KEY) == "RT0"
        browser.open.assert_not_called()
        receiver.open.assert_not_called()

    def test_refresh_without_rotation_keeps_store(self, settings, embedded, tmp_path, browser):
        store = FileTokenStore(tmp_path / "cache")
        store.set(KEY, "RT0")
        path = tmp_path / "cache" / f"{KEY}_token_cache.json"
        before = path.read_text()
        endpoint = TokenEndpoint(refresh=httpx.Response(200, json={"access_token": "AT2"}))
        orch = _orchestrator(settings, store, browser, _receiver(), endpoint)

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT2"
        assert path.read_text() == before

    def test_rotated_refresh_token_replaces_old(self, settings, embedded, store, browser):
        store.set(KEY, "RT0")
        endpoint = TokenEndpoint(
            refresh=httpx.Response(200, json={"access_token": "AT2", "refresh_token": "RT_NEW"})
        )
        orch = _orchestrator(settings, store, browser, _receiver(), endpoint)

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT2"
        assert store.get(KEY) == "RT_NEW"
        browser.open.assert_not_called()

    def test_transient_failure_retried_before_fallback(self, settings, embedded, store, browser):
        settings.refresh_retries = 2
        settings.refresh_backoff = 0.5
        store.set(KEY, "RT0")
        responses = iter(
            [
                httpx.Response(503),
                httpx.Response(200, json={"access_token": "AT3"}),
            ]
        )
        grants = []

        def handler(request):
            grants.append(dict(urllib.parse.parse_qsl(request.content.decode()))["grant_type"])
            return next(responses)

        sleeps = []
        orch = OAuthOrchestrator(
            store,
            settings=settings,
            browser=browser,
            receiver_factory=_receiver,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=sleeps.append,
        )

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT3"
        assert grants == ["refresh_token", "refresh_token"]
        assert sleeps == [0.5]
        browser.open.assert_not_called()

    def test_permanent_failure_not_retried(self, settings, embedded, store, browser):
        settings.refresh_retries = 3
        store.set(KEY, "RT0")
        endpoint = TokenEndpoint(refresh=httpx.Response(401, json={"error": "invalid_client"}))
        sleeps = []
        orch = _orchestrator(
            settings, store, browser, _receiver(), endpoint, sleep=sleeps.append
        )

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT1"
        assert endpoint.grants() == ["refresh_token", "authorization_code"]
        assert sleeps == []


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


class TestOrchestratorMisc:
    def test_forget(self, settings, embedded, store, browser):
        store.set(KEY, "RT0")
        orch = _orchestrator(settings, store, browser, _receiver(), TokenEndpoint())
        assert orch.forget(ProviderIdentity.GMAIL, EMAIL) is True
        assert store.get(KEY) is None
        assert orch.forget(ProviderIdentity.GMAIL, EMAIL) is False

    def test_default_store_from_settings(self, settings, embedded, tmp_path):
        settings.token_store = "file"
        orch = OAuthOrchestrator(settings=settings)
        assert isinstance(orch.store, FileTokenStore)
        assert orch.store.directory == tmp_path / "tokens"

        settings.token_store = "memory"
        assert isinstance(OAuthOrchestrator(settings=settings).store, MemoryTokenStore)

    def test_listener_port_follows_redirect_uri(self, settings, embedded, monkeypatch):
        monkeypatch.setenv("ESIM_MAILER_LISTENER_PORT", "8080")
        assert not hasattr(Settings(_env_file=None), "listener_port")
        receiver = OAuthOrchestrator(settings=settings)._default_receiver()
        assert receiver.port == REDIRECT_PORT
        config = get_provider_config(ProviderIdentity.GMAIL, settings)
        assert config.redirect_uri.endswith(f":{receiver.port}")

    def test_stores_are_isolated_per_orchestrator(self, settings, embedded, browser):
        first = _orchestrator(settings, MemoryTokenStore(), browser, _receiver(), TokenEndpoint())
        second = _orchestrator(settings, MemoryTokenStore(), browser, _receiver(), TokenEndpoint())
        first.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL)
        assert first.store.get(KEY) == "RT1"
        assert second.store.get(KEY) is None

    def test_interactive_flows_are_serialized(self, settings, embedded, browser):
        active = []
        overlaps = []
        lock = threading.Lock()

        class SlowReceiver:
            def open(self):
                with lock:
                    if active:
                        overlaps.append(True)
                    active.append(self)

            def wait_for_code(self, state=None):
                time.sleep(0.05)
                return "code"

            def close(self):
                with lock:
                    active.remove(self)

        def run(email):
            orch = _orchestrator(
                settings, MemoryTokenStore(), browser, SlowReceiver(), TokenEndpoint()
            )
            orch.get_or_refresh_token(ProviderIdentity.GMAIL, email)

        threads = [threading.Thread(target=run, args=(f"u{i}@gmail.com",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert overlaps == []
        assert active == []

    def test_end_to_end_with_local_listener(self, settings, embedded, store):
        receiver = LocalCodeReceiver(host="127.0.0.1", port=0, timeout=5)

        def redirect(url):
            state = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(url).query))["state"]

            def send():
                request = f"GET /?state={state}&code=live HTTP/1.1\r\nHost: localhost\r\n\r\n"
                with socket.create_connection(receiver.address, timeout=5) as s:
                    s.sendall(request.encode())
                    while s.recv(4096):
                        pass

            threading.Thread(target=send, daemon=True).start()

        browser = MagicMock()
        browser.open.side_effect = redirect
        endpoint = TokenEndpoint()
        orch = _orchestrator(settings, store, browser, receiver, endpoint)

        assert orch.get_or_refresh_token(ProviderIdentity.GMAIL, EMAIL) == "AT1"
        assert endpoint.requests[0]["code"] == "live"
        assert store.get(KEY) == "RT1"
