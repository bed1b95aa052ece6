# core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional, Dict


class Settings(BaseSettings):
    """
    Centralized application configuration.
    Grouped logically for readability.
    """

    # ------------------------------------------------------------
    # Project / Runtime
    # ------------------------------------------------------------
    PROJECT_NAME: str = "Chat Ingress Gateway"
    DEBUG: bool = False
    ENABLE_CORS: bool = True

    # HTTP / API
    FRONTEND_ENDPOINT: str = ""
    BACKEND_ENDPOINT: str = ""
    RATE_LIMIT_MIN: str = "120"

    # ------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------

    """
    Backing store for rate-limit buckets, the duplicate-detection cache
    and job records: "redis" (production) or "memory" (single process)
    """
    STORAGE_BACKEND: str = Field(
        default="redis",
        description="Key/value backend: redis | memory"
    )

    # ------------------------------------------------------------
    # Redis Configuration
    # ------------------------------------------------------------
    REDIS_HOST: str = Field(
        default="localhost",
        description="Redis server hostname (ElastiCache endpoint in production)"
    )
    REDIS_PORT: int = Field(
        default=6379,
        description="Redis server port"
    )
    REDIS_DB: int = Field(
        default=0,
        description="Redis database number (0-15)"
    )
    REDIS_PASSWORD: Optional[str] = Field(
        default=None,
        description="Redis password (optional, not needed with security groups)"
    )
    REDIS_SSL: bool = Field(
        default=False,
        description="Use TLS/SSL for Redis connection (required for ElastiCache with encryption)"
    )
    REDIS_SOCKET_TIMEOUT: int = Field(
        default=5,
        description="Socket timeout in seconds"
    )
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(
        default=5,
        description="Socket connect timeout in seconds"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=50,
        description="Maximum connections in the pool"
    )
    REDIS_KEY_PREFIX: str = Field(
        default="gateway",
        description="Namespace prepended to every key written by the gateway"
    )

    # ------------------------------------------------------------
    # Webhook Authentication
    # ------------------------------------------------------------

    """
    Authentication scheme for inbound webhooks: api_key | hmac | basic | none
    "none" is a development escape hatch and is logged loudly.
    """
    WEBHOOK_AUTH_METHOD: str = "api_key"

    """
    Secrets are stored as ciphertext produced by the configured credential store
    """
    WEBHOOK_API_KEY: Optional[str] = None
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_BASIC_USERNAME: Optional[str] = None
    WEBHOOK_BASIC_PASSWORD: Optional[str] = None

    """
    Allowed client addresses, newline or comma separated.
    Exact IPs and CIDR ranges are supported; empty allows everyone.
    """
    WEBHOOK_IP_WHITELIST: str = ""
    WEBHOOK_DUPLICATE_TTL_SECONDS: int = Field(
        default=86400,
        description="How long a delivered request id is remembered (24 hours)"
    )

    # ------------------------------------------------------------
    # Rate Limiting (token bucket)
    # ------------------------------------------------------------
    RATE_LIMIT_BUCKET_TTL_SECONDS: int = Field(
        default=3600,
        description="Idle buckets expire after this many seconds"
    )

    """
    Optional per-preset overrides, e.g.
    {"webhooks": {"bucket_size": 200, "refill_rate": 20, "max_delay": 60}}
    """
    RATE_LIMIT_PRESET_OVERRIDES: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    WEBHOOK_RATE_LIMIT_PRESET: str = "webhooks"
    JOB_SUBMIT_RATE_LIMIT_PRESET: str = "voice_tokens"

    # ------------------------------------------------------------
    # Async Jobs
    # ------------------------------------------------------------
    JOB_MAX_RETRIES: int = Field(
        default=3,
        description="Failed executions are retried this many times before the job fails"
    )
    JOB_MAX_BACKOFF_SECONDS: Optional[int] = Field(
        default=86400,
        description="Upper bound on a single retry delay (None disables the cap)"
    )
    JOB_CALLBACK_TIMEOUT_SECONDS: int = 30
    JOB_RETENTION_DAYS: int = 7
    JOB_WORKER_CONCURRENCY: int = 4

    """
    Secret used to sign completion callbacks
    """
    CALLBACK_SECRET: Optional[str] = None
    CALLBACK_SIGNATURE_HEADER: str = "X-Gateway-Signature"

    # ------------------------------------------------------------
    # Credential Store
    # ------------------------------------------------------------
    CREDENTIAL_BACKEND: str = Field(
        default="plain",
        description="How stored secrets are decrypted: kms | plain"
    )
    KMS_KEY_ID: Optional[str] = None

    # ------------------------------------------------------------
    # AWS Core
    # ------------------------------------------------------------
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SESSION_TOKEN: Optional[str] = None

    # ------------------------------------------------------------
    # Messaging (SQS)
    # ------------------------------------------------------------
    SQS_QUEUE_URL: str = ""
    SQS_REGION: str = "us-east-1"
    SQS_ENABLE_PUBLISH: bool = False

    # ------------------------------------------------------------
    # Security (service-to-service JWT for the job API)
    # ------------------------------------------------------------
    JWT_SECRET_KEY: Optional[str] = Field(default=None, description="HS256 signing key shared with the backend")
    JTI_CACHE_TTL_MINUTES: int = 15
    @property
    def JTI_CACHE_TTL_SECONDS(self) -> int:
        return self.JTI_CACHE_TTL_MINUTES * 60
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = "chat-gateway-api"
    JWT_ISSUER: str = "chat-gateway-auth"
    JWT_LEEWAY_SECONDS: int = 30
    JWT_REQUIRE_JTI: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()


def get_settings() -> Settings:
    """
    Current settings. Components call this on every operation instead of
    holding on to values, so a reload is picked up without a restart.
    """
    return settings


def reload_settings() -> Settings:
    """Re-read the environment / .env file."""
    global settings
    settings = Settings()
    return settings
