# services/webhook_authenticator.py
"""
Webhook authentication, duplicate detection and IP allow-listing.

Supported authentication methods (WEBHOOK_AUTH_METHOD):
- api_key: X-API-Key header matched against the stored key
- hmac:    X-Webhook-Signature (or GitHub-style X-Hub-Signature-256
           "sha256=<hex>") = hex HMAC-SHA256 of the raw body
- basic:   Authorization: Basic base64(user:pass)
- none:    no authentication (development only, logged as a warning)

The three checks are independent. Callers run them in the order
whitelist -> verify -> duplicate check so unauthenticated traffic never
lands in the duplicate cache.

Storage Structure:
- Duplicate cache: webhook:seen:{sha256(request id)} -> first-seen epoch (TTL 24h)
"""

import base64
import binascii
import hashlib
import hmac
import ipaddress
import secrets
import time
from typing import Callable, List, Optional

from gateway.core.config import Settings, get_settings
from gateway.core.credentials import CredentialStore
from gateway.core.errors import AuthenticationError, ConfigurationError, CredentialError
from gateway.core.kv_store import KeyValueStore
from gateway.core.logger import get_logger
from gateway.utils.log_auth import log_auth_attempt
from gateway.utils.request_view import RequestView

logger = get_logger("webhook_auth")

AUTH_METHODS = ("api_key", "hmac", "basic", "none")

DUPLICATE_KEY_PREFIX = "webhook:seen:"

"""
Client address headers, in priority order: CDN first, then proxies
"""
CLIENT_IP_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP")


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _constant_time_equals(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def parse_whitelist(raw) -> List[str]:
    """
    Accepts a list or a newline / comma separated string.
    """
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.replace(",", "\n").split("\n")
    return [entry.strip() for entry in raw if entry and entry.strip()]


class WebhookAuthenticator:
    """
    Verifies inbound webhook requests.

    Holds no state of its own besides the shared duplicate-detection cache.
    Settings are read on every call through ``settings_provider``.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        store: KeyValueStore,
        settings_provider: Callable[[], Settings] = get_settings,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self.store = store
        self._settings = settings_provider
        self._clock = clock

    # ========================================================================
    # VERIFICATION
    # ========================================================================

    def get_auth_method(self) -> str:
        return (self._settings().WEBHOOK_AUTH_METHOD or "").strip().lower()

    def verify(self, request: RequestView) -> bool:
        """
        Verify a webhook request with the configured method.

        Returns:
            True when the request is authorized

        Raises:
            AuthenticationError: credentials missing or wrong (401)
            ConfigurationError: secret not configured / undecryptable, or an
                unknown method is configured (500, fail closed)
        """
        method = self.get_auth_method()
        ip = self.get_client_ip(request)
        audit = dict(
            ip=ip,
            user_agent=request.header("User-Agent"),
            endpoint=request.path,
            request_id=request.header("X-Request-ID") or request.header("X-Webhook-ID"),
        )

        try:
            if method == "api_key":
                self._verify_api_key(request)
            elif method == "hmac":
                self._verify_hmac(request)
            elif method == "basic":
                self._verify_basic_auth(request)
            elif method == "none":
                logger.warning(
                    "Webhook authentication disabled (WEBHOOK_AUTH_METHOD=none) - use only in development"
                )
            else:
                logger.error(f"Invalid webhook authentication method configured: {method!r}")
                raise ConfigurationError(
                    "Invalid authentication method configured",
                    code="invalid_auth_method",
                )
        except AuthenticationError as e:
            log_auth_attempt(method, e.code, **audit)
            raise
        except ConfigurationError as e:
            logger.error(f"Webhook authentication misconfigured: {e.code}")
            log_auth_attempt(method, e.code, **audit)
            raise

        log_auth_attempt(method, "ok", **audit)
        return True

    def _decrypt(self, ciphertext: str, failure_code: str) -> str:
        try:
            return self.credentials.decrypt(ciphertext)
        except CredentialError as e:
            raise ConfigurationError(f"Failed to decrypt stored credential ({e.code})", code=failure_code) from e

    def _verify_api_key(self, request: RequestView) -> None:
        provided_key = request.header("X-API-Key")
        if not provided_key:
            raise AuthenticationError("API key not provided in request", code="api_key_missing")

        settings = self._settings()
        if not settings.WEBHOOK_API_KEY:
            raise ConfigurationError("Webhook API key not configured", code="api_key_not_configured")

        stored_key = self._decrypt(settings.WEBHOOK_API_KEY, "api_key_decryption_failed")
        if not stored_key:
            raise ConfigurationError("Webhook API key not configured", code="api_key_not_configured")

        if not _constant_time_equals(stored_key, provided_key):
            raise AuthenticationError("Invalid API key", code="api_key_invalid")

    def _verify_hmac(self, request: RequestView) -> None:
        provided_signature = request.header("X-Webhook-Signature") or request.header("X-Hub-Signature-256")
        if provided_signature and provided_signature.startswith("sha256="):
            provided_signature = provided_signature[len("sha256="):]

        if not provided_signature:
            raise AuthenticationError("Webhook signature not provided", code="signature_missing")

        settings = self._settings()
        if not settings.WEBHOOK_SECRET:
            raise ConfigurationError("Webhook secret not configured", code="secret_not_configured")

        secret = self._decrypt(settings.WEBHOOK_SECRET, "secret_decryption_failed")
        if not secret:
            raise ConfigurationError("Webhook secret not configured", code="secret_not_configured")

        expected_signature = compute_signature(request.body, secret)
        if not _constant_time_equals(expected_signature, provided_signature.strip().lower()):
            raise AuthenticationError("Invalid webhook signature", code="signature_invalid")

    def _verify_basic_auth(self, request: RequestView) -> None:
        auth_header = request.header("Authorization")
        if not auth_header:
            raise AuthenticationError("Authorization header not provided", code="auth_header_missing")

        if not auth_header.startswith("Basic "):
            raise AuthenticationError("Invalid authorization format (expected Basic)", code="invalid_auth_format")

        try:
            credentials = base64.b64decode(auth_header[len("Basic "):].strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise AuthenticationError("Invalid base64 encoding in credentials", code="invalid_credentials_encoding")

        if ":" not in credentials:
            raise AuthenticationError("Invalid base64 encoding in credentials", code="invalid_credentials_encoding")

        username, password = credentials.split(":", 1)
        if not username or not password:
            raise AuthenticationError("Username or password missing", code="incomplete_credentials")

        settings = self._settings()
        if not settings.WEBHOOK_BASIC_USERNAME or not settings.WEBHOOK_BASIC_PASSWORD:
            raise ConfigurationError("Basic Auth credentials not configured", code="credentials_not_configured")

        stored_password = self._decrypt(settings.WEBHOOK_BASIC_PASSWORD, "password_decryption_failed")

        # Evaluate both before branching so timing does not reveal which one failed
        username_valid = _constant_time_equals(settings.WEBHOOK_BASIC_USERNAME, username)
        password_valid = _constant_time_equals(stored_password, password)

        if not (username_valid and password_valid):
            raise AuthenticationError("Invalid username or password", code="invalid_credentials")

    # ========================================================================
    # DUPLICATE DETECTION
    # ========================================================================

    @staticmethod
    def request_identifier(request: RequestView) -> str:
        request_id = request.header("X-Request-ID") or request.header("X-Webhook-ID")
        if request_id:
            return request_id.strip()
        return hashlib.sha256(request.body).hexdigest()

    @staticmethod
    def _duplicate_key(request_id: str) -> str:
        return DUPLICATE_KEY_PREFIX + hashlib.sha256(request_id.encode("utf-8")).hexdigest()

    def is_duplicate_request(self, request: RequestView) -> bool:
        """
        Idempotency check against redelivery.

        First sighting records the id (set-if-absent, 24h TTL) and returns
        False. Any later sighting within the TTL returns True; the caller
        acknowledges without reprocessing.
        """
        request_id = self.request_identifier(request)
        key = self._duplicate_key(request_id)
        ttl = self._settings().WEBHOOK_DUPLICATE_TTL_SECONDS

        first_writer = self.store.set_if_absent(key, int(self._clock()), ttl=ttl)
        if not first_writer:
            logger.info(
                "Duplicate webhook delivery",
                extra={"request_id": request_id[:128]}
            )
        return not first_writer

    def forget_request(self, request: RequestView) -> None:
        """Drop the seen-marker so a redelivery is processed (e.g. after a 429)."""
        self.store.delete(self._duplicate_key(self.request_identifier(request)))

    # ========================================================================
    # IP ALLOW-LIST
    # ========================================================================

    @staticmethod
    def get_client_ip(request: RequestView) -> Optional[str]:
        for header in CLIENT_IP_HEADERS:
            value = request.header(header)
            if value:
                # Take first IP if comma-separated list
                return value.split(",")[0].strip()
        return request.client_host

    def check_ip_whitelist(self, request: RequestView) -> bool:
        """
        True when the client may proceed. An empty whitelist allows all.
        """
        whitelist = parse_whitelist(self._settings().WEBHOOK_IP_WHITELIST)
        if not whitelist:
            return True

        client_ip = self.get_client_ip(request)
        try:
            address = ipaddress.ip_address(client_ip or "")
        except ValueError:
            logger.info(f"Rejecting request with unparsable client IP: {client_ip!r}")
            return False

        for allowed in whitelist:
            try:
                if "/" in allowed:
                    if address in ipaddress.ip_network(allowed, strict=False):
                        return True
                elif address == ipaddress.ip_address(allowed):
                    return True
            except ValueError:
                logger.warning(f"Ignoring malformed IP whitelist entry: {allowed!r}")

        logger.info(f"Client IP not in webhook whitelist: {client_ip}")
        return False

    # ========================================================================
    # CREDENTIAL GENERATION
    # ========================================================================

    @staticmethod
    def generate_api_key(length: int = 32) -> str:
        """Hex-encoded random API key of ``length`` bytes."""
        return secrets.token_bytes(length).hex()

    @staticmethod
    def generate_secret(length: int = 32) -> str:
        """Base64-encoded random HMAC secret of ``length`` bytes."""
        return base64.b64encode(secrets.token_bytes(length)).decode("ascii")
