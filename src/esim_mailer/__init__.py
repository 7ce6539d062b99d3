"""eSIM Mailer - OAuth2 token acquisition for templated eSIM activation emails."""

from esim_mailer.errors import OAuthError
from esim_mailer.integrations.oauth import OAuthOrchestrator
from esim_mailer.integrations.providers import ProviderIdentity, determine_provider

__all__ = [
    "OAuthError",
    "OAuthOrchestrator",
    "ProviderIdentity",
    "determine_provider",
]
