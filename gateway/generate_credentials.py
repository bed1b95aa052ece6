#!/usr/bin/env python3
"""
Credential generator for the gateway.

Usage: python -m gateway.generate_credentials [--jwt-only]

Prints a fresh service JWT for the job API, plus a new webhook API key and
HMAC secret together with the ciphertexts to put in WEBHOOK_API_KEY /
WEBHOOK_SECRET (produced by the configured credential store).
"""
import os
import sys
import uuid
from datetime import datetime, timezone, timedelta

import jwt
from dotenv import load_dotenv

load_dotenv()

from gateway.core.config import get_settings  # noqa: E402
from gateway.core.credentials import build_credential_store  # noqa: E402
from gateway.services.webhook_authenticator import WebhookAuthenticator  # noqa: E402

TOKEN_TTL_MINUTES = int(os.getenv("TOKEN_TTL_MINUTES", "5"))


def generate_jwt_token(ttl_minutes: int = TOKEN_TTL_MINUTES) -> str:
    """Generate a fresh JWT token for the job API"""
    settings = get_settings()
    if not settings.JWT_SECRET_KEY:
        raise SystemExit("JWT_SECRET_KEY is not set")

    now = datetime.now(timezone.utc)
    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "jti": f"token-{uuid.uuid4().hex}"
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def generate_webhook_credentials() -> dict:
    store = build_credential_store(get_settings())
    api_key = WebhookAuthenticator.generate_api_key()
    secret = WebhookAuthenticator.generate_secret()
    return {
        "api_key": api_key,
        "api_key_ciphertext": store.encrypt(api_key),
        "secret": secret,
        "secret_ciphertext": store.encrypt(secret),
    }


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv

    token = generate_jwt_token()
    print("=" * 80)
    print(f"Service JWT (expires in {TOKEN_TTL_MINUTES} min):")
    print(f"Authorization: Bearer {token}")
    print("=" * 80)

    if "--jwt-only" in argv:
        return 0

    creds = generate_webhook_credentials()
    print("Webhook API key (give to the provider):")
    print(f"  {creds['api_key']}")
    print(f"WEBHOOK_API_KEY={creds['api_key_ciphertext']}")
    print("-" * 80)
    print("Webhook HMAC secret (give to the provider):")
    print(f"  {creds['secret']}")
    print(f"WEBHOOK_SECRET={creds['secret_ciphertext']}")
    print("=" * 80)
    return 0


if __name__ == "__main__":
    sys.exit(main())
