# Generated by `python -m esim_mailer provision`; do not edit by hand.
# Empty secrets mean the provider is used as a public (PKCE-only) client.

GMAIL_CLIENT_ID = ""
OUTLOOK_CLIENT_ID = ""
SECRET_KEY = b""
GMAIL_SECRET = b""
OUTLOOK_SECRET = b""
