# Token Store - refresh-token cache keyed by provider + hashed email.
# Created: 2026-10-19
#
# Only refresh tokens are stored; access tokens are never cached.

from __future__ import annotations

import hashlib
import json
import logging
import os
import stat
import threading
from pathlib import Path
from typing import Protocol

from esim_mailer.integrations.providers import ProviderIdentity

logger = logging.getLogger(__name__)

_FILE_SUFFIX = "_token_cache.json"


def email_hash(email: str) -> str:
    return hashlib.sha256(email.encode("utf-8")).hexdigest()


def cache_key(provider: ProviderIdentity, email: str) -> str:
    """Store key for a provider/address pair; the address itself is never stored."""
    return f"{provider}_{email_hash(email)}"


class TokenStore(Protocol):
    """Backing storage for cached refresh tokens."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, refresh_token: str) -> None: ...

    def delete(self, key: str) -> bool: ...


class MemoryTokenStore:
    """Process-lifetime store, for long-running GUI sessions."""

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._tokens.get(key)

    def set(self, key: str, refresh_token: str) -> None:
        with self._lock:
            self._tokens[key] = refresh_token

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._tokens.pop(key, None) is not None


class FileTokenStore:
    """JSON file per key at ``{directory}/{key}_token_cache.json``.

    Files are chmod 0600 (owner-only read/write).
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}{_FILE_SUFFIX}"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                data = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to load cached token %s: %s", path.name, e)
                return None

        token = data.get("refresh_token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            logger.warning("Ignoring malformed token cache %s", path.name)
            return None
        return token

    def set(self, key: str, refresh_token: str) -> None:
        path = self._path(key)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps({"refresh_token": refresh_token}))
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        logger.info("Saved refresh token cache %s", path.name)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
        logger.info("Deleted refresh token cache %s", path.name)
        return True
