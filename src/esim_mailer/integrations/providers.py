# Provider registry - maps sender domains to fixed OAuth endpoint config.
# Created: 2026-10-19

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from esim_mailer import _embedded
from esim_mailer.config import Settings, get_settings
from esim_mailer.errors import UnsupportedProvider


class ProviderIdentity(str, Enum):
    """Supported webmail providers."""

    GMAIL = "gmail"
    OUTLOOK = "outlook"

    def __str__(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    ProviderIdentity.GMAIL: "Gmail",
    ProviderIdentity.OUTLOOK: "Outlook",
}

_DOMAINS: dict[str, ProviderIdentity] = {
    "gmail.com": ProviderIdentity.GMAIL,
    "outlook.com": ProviderIdentity.OUTLOOK,
    "hotmail.com": ProviderIdentity.OUTLOOK,
}

# Must match the redirect URI registered with both providers, byte for byte.
REDIRECT_PORT = 9999
REDIRECT_URI = f"http://localhost:{REDIRECT_PORT}"

# Static endpoint configuration; client credentials are filled in per call.
PROVIDERS: dict[ProviderIdentity, dict[str, str | int]] = {
    ProviderIdentity.GMAIL: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "scope": "https://mail.google.com/",
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
    },
    ProviderIdentity.OUTLOOK: {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "scope": "https://outlook.office.com/SMTP.Send offline_access",
        "smtp_host": "smtp-mail.outlook.com",
        "smtp_port": 587,
    },
}


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable endpoint + client configuration for one provider."""

    identity: ProviderIdentity
    client_id: str
    encrypted_client_secret: bytes | None
    auth_url: str
    token_url: str
    redirect_uri: str
    scope: str
    smtp_host: str
    smtp_port: int

    @property
    def is_public_client(self) -> bool:
        return self.encrypted_client_secret is None


def determine_provider(email: str) -> ProviderIdentity:
    """Resolve the provider from the domain after the last ``@``.

    Raises:
        UnsupportedProvider: for unknown domains or strings without ``@``.
    """
    _, sep, domain = email.rpartition("@")
    if not sep or domain not in _DOMAINS:
        raise UnsupportedProvider(email)
    return _DOMAINS[domain]


def _embedded_credentials(identity: ProviderIdentity) -> tuple[str, bytes]:
    if identity is ProviderIdentity.GMAIL:
        return _embedded.GMAIL_CLIENT_ID, _embedded.GMAIL_SECRET
    return _embedded.OUTLOOK_CLIENT_ID, _embedded.OUTLOOK_SECRET


def get_provider_config(
    identity: ProviderIdentity, settings: Settings | None = None
) -> ProviderConfig:
    """Build the config for *identity* from the embedded constants.

    A client ID set in the settings takes precedence over the embedded one.
    """
    settings = settings or get_settings()
    client_id, secret = _embedded_credentials(identity)
    override = (
        settings.gmail_client_id
        if identity is ProviderIdentity.GMAIL
        else settings.outlook_client_id
    )

    endpoints = PROVIDERS[identity]
    return ProviderConfig(
        identity=identity,
        client_id=override or client_id,
        encrypted_client_secret=secret or None,
        auth_url=str(endpoints["auth_url"]),
        token_url=str(endpoints["token_url"]),
        redirect_uri=REDIRECT_URI,
        scope=str(endpoints["scope"]),
        smtp_host=str(endpoints["smtp_host"]),
        smtp_port=int(endpoints["smtp_port"]),
    )
