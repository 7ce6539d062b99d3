# OAuth errors - one discriminated family the presentation layer can render.
# Created: 2026-10-19

from __future__ import annotations


class OAuthError(Exception):
    """Base class for every failure surfaced by the token subsystem."""


class UnsupportedProvider(OAuthError, ValueError):
    """The sender's email domain does not map to a known provider."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"No supported email provider for '{email}'")


class SecretDecryptionFailure(OAuthError):
    """The embedded client secret could not be decrypted (corrupted build)."""


class ListenerBindFailure(OAuthError):
    """The redirect listener could not bind its fixed port."""


class BrowserLaunchFailure(OAuthError):
    """The system browser could not be opened (strict mode only)."""


class AuthorizationCodeMissing(OAuthError):
    """The redirect listener finished without receiving an authorization code."""


class TokenExchangeFailure(OAuthError):
    """The provider rejected the authorization-code exchange."""


class TokenRefreshFailure(OAuthError):
    """The provider rejected, or could not be reached for, a token refresh.

    ``transient`` is True for transport errors and 5xx responses, where a
    retry may succeed; provider rejections such as ``invalid_grant`` are not.
    """

    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class NoRefreshToken(OAuthError):
    """The token response carried no refresh token."""
