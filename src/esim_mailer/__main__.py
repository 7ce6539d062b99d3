"""eSIM Mailer entry point.

Obtains OAuth access tokens for the mail sender and provisions the
embedded client credentials at build time.
"""

import argparse
import logging
import sys
from pathlib import Path

from esim_mailer.config import get_settings
from esim_mailer.errors import OAuthError
from esim_mailer.integrations.oauth import OAuthOrchestrator
from esim_mailer.integrations.providers import determine_provider
from esim_mailer.integrations.provisioning import provision_secrets
from esim_mailer.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _cmd_token(args: argparse.Namespace) -> int:
    provider = determine_provider(args.email)
    token = OAuthOrchestrator().get_or_refresh_token(provider, args.email)
    # stdout only, so the token can be piped to the sender; never logged.
    print(token)
    return 0


def _cmd_forget(args: argparse.Namespace) -> int:
    provider = determine_provider(args.email)
    if OAuthOrchestrator().forget(provider, args.email):
        print(f"Forgot cached {provider} credentials for {args.email}")
    else:
        print(f"No cached {provider} credentials for {args.email}")
    return 0


def _cmd_provision(args: argparse.Namespace) -> int:
    path = provision_secrets(target=args.output)
    print(f"Wrote {path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="esim-mailer",
        description="OAuth2 tokens for sending eSIM activation emails",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    token = sub.add_parser("token", help="Print an access token for a sender address")
    token.add_argument("email", help="Sender address (gmail.com, outlook.com, hotmail.com)")
    token.set_defaults(func=_cmd_token)

    forget = sub.add_parser("forget", help="Remove the cached refresh token for an address")
    forget.add_argument("email")
    forget.set_defaults(func=_cmd_forget)

    provision = sub.add_parser(
        "provision", help="Encrypt client secrets from the environment into the package"
    )
    provision.add_argument("--output", type=Path, default=None)
    provision.set_defaults(func=_cmd_provision)

    args = parser.parse_args(argv)
    setup_logging(get_settings().log_level)

    try:
        return args.func(args)
    except OAuthError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
