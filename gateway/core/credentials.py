# core/credentials.py
"""
Credential store: turns stored ciphertext back into webhook secrets.

Secrets in configuration (WEBHOOK_API_KEY, WEBHOOK_SECRET,
WEBHOOK_BASIC_PASSWORD) are ciphertext produced by ``encrypt``. The
authenticator only ever calls ``decrypt``.

Backends:
- kms:   AWS KMS, ciphertext is the base64 CiphertextBlob
- plain: identity transform, for local development only
"""

import base64
import binascii
from typing import Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from gateway.core.config import Settings
from gateway.core.errors import ConfigurationError, CredentialError
from gateway.core.logger import logger


class CredentialStore(Protocol):
    def encrypt(self, value: str) -> str: ...
    def decrypt(self, ciphertext: str) -> str: ...


class KmsCredentialStore:
    """Encrypt/decrypt secrets with an AWS KMS key."""

    def __init__(self, key_id: str, client=None):
        if not key_id:
            raise ConfigurationError("KMS_KEY_ID is required for the kms credential backend")
        self.key_id = key_id
        if client is None:
            from gateway.core.aws_client import get_kms_client
            client = get_kms_client()
        self._kms = client

    def encrypt(self, value: str) -> str:
        if not value:
            return ""
        try:
            resp = self._kms.encrypt(KeyId=self.key_id, Plaintext=value.encode("utf-8"))
        except (BotoCoreError, ClientError) as e:
            logger.error(f"KMS encrypt failed: {e}")
            raise CredentialError("Failed to encrypt value", code="encryption_failed") from e
        return base64.b64encode(resp["CiphertextBlob"]).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialError("Failed to decode encrypted value", code="decryption_decode_failed") from e
        try:
            resp = self._kms.decrypt(CiphertextBlob=blob, KeyId=self.key_id)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"KMS decrypt failed: {e}")
            raise CredentialError("Failed to decrypt value", code="decryption_failed") from e
        return resp["Plaintext"].decode("utf-8")


class PlainCredentialStore:
    """Secrets stored as-is. Never use outside development."""

    def __init__(self):
        logger.warning(
            "Plain credential backend active: webhook secrets are stored unencrypted"
        )

    def encrypt(self, value: str) -> str:
        return value or ""

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext or ""


def build_credential_store(settings: Settings, kms_client: Optional[object] = None) -> CredentialStore:
    backend = (settings.CREDENTIAL_BACKEND or "").strip().lower()
    if backend == "kms":
        return KmsCredentialStore(settings.KMS_KEY_ID or "", client=kms_client)
    if backend == "plain":
        return PlainCredentialStore()
    raise ConfigurationError(f"Unknown credential backend: {settings.CREDENTIAL_BACKEND}")
