# Secret provisioning - encrypts client secrets into the embedded module.
# Created: 2026-10-19
#
# Run once per build (``python -m esim_mailer provision``). Draws a fresh
# key for every run and a fresh nonce for every secret.

from __future__ import annotations

import logging
from pathlib import Path

from esim_mailer import _embedded
from esim_mailer.config import Settings, get_settings
from esim_mailer.integrations.vault import encrypt_client_secret, generate_key

logger = logging.getLogger(__name__)

EMBEDDED_PATH = Path(_embedded.__file__)

_TEMPLATE = """\
# Generated by `python -m esim_mailer provision`; do not edit by hand.
# Empty secrets mean the provider is used as a public (PKCE-only) client.

GMAIL_CLIENT_ID = {gmail_client_id!r}
OUTLOOK_CLIENT_ID = {outlook_client_id!r}
SECRET_KEY = {key!r}
GMAIL_SECRET = {gmail_secret!r}
OUTLOOK_SECRET = {outlook_secret!r}
"""


def render_embedded(settings: Settings, key: bytes | None = None) -> str:
    """Render the source of the embedded-constants module.

    Raises:
        ValueError: if either client ID is missing.
    """
    missing = [
        name
        for name, value in (
            ("gmail_client_id", settings.gmail_client_id),
            ("outlook_client_id", settings.outlook_client_id),
        )
        if not value
    ]
    if missing:
        env = ", ".join(f"ESIM_MAILER_{name.upper()}" for name in missing)
        raise ValueError(f"{env} must be set")

    key = key or generate_key()

    def _seal(secret: str) -> bytes:
        return encrypt_client_secret(secret, key) if secret else b""

    return _TEMPLATE.format(
        gmail_client_id=settings.gmail_client_id,
        outlook_client_id=settings.outlook_client_id,
        key=key,
        gmail_secret=_seal(settings.gmail_client_secret),
        outlook_secret=_seal(settings.outlook_client_secret),
    )


def provision_secrets(settings: Settings | None = None, target: Path | None = None) -> Path:
    """Write the embedded-constants module and return its path."""
    settings = settings or get_settings()
    path = target or EMBEDDED_PATH
    path.write_text(render_embedded(settings))
    logger.info(
        "Provisioned embedded credentials at %s (gmail secret: %s, outlook secret: %s)",
        path,
        "yes" if settings.gmail_client_secret else "no",
        "yes" if settings.outlook_client_secret else "no",
    )
    return path
