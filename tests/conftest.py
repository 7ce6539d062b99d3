# Shared fixtures for the token subsystem tests.
# Created: 2026-10-19

import pytest

from esim_mailer import _embedded
from esim_mailer.config import Settings
from esim_mailer.integrations.vault import encrypt_client_secret, generate_key


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: no env file, memory store, no retry delays."""
    return Settings(
        _env_file=None,
        config_dir=tmp_path,
        token_store="memory",
        refresh_retries=0,
        refresh_backoff=0,
        listener_timeout=5,
    )


@pytest.fixture
def embedded(monkeypatch):
    """Embedded constants as produced by a provisioning run with a Gmail secret."""
    key = generate_key()
    monkeypatch.setattr(_embedded, "GMAIL_CLIENT_ID", "gmail-client-id")
    monkeypatch.setattr(_embedded, "OUTLOOK_CLIENT_ID", "outlook-client-id")
    monkeypatch.setattr(_embedded, "SECRET_KEY", key)
    monkeypatch.setattr(_embedded, "GMAIL_SECRET", encrypt_client_secret("gmail-secret", key))
    monkeypatch.setattr(_embedded, "OUTLOOK_SECRET", b"")
    return key
