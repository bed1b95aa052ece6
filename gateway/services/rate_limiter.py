# services/rate_limiter.py
"""
Token-bucket admission control shared by the webhook path and the job API.

Bucket state per identifier is two numbers, stored with a TTL:
    ratelimit:bucket:{md5(identifier)} -> {"tokens": float, "last_update": epoch}

Refill happens lazily when a bucket is read:
    available = min(bucket_size, tokens + elapsed * refill_rate)
There is no background ticker, so a bucket is safe to lose at any time: a
missing bucket is simply full.
"""

import hashlib
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from gateway.core.errors import RateLimitExceededError
from gateway.core.kv_store import KeyValueStore
from gateway.core.logger import get_logger

logger = get_logger("rate_limiter")

BUCKET_KEY_PREFIX = "ratelimit:bucket:"
DEFAULT_BUCKET_TTL = 3600


"""
Named presets: (bucket_size, refill_rate tokens/second, max_delay seconds)
"""
RATE_LIMIT_PRESETS: Dict[str, Dict[str, Any]] = {
    "text_messages": {
        "label": "Text Messages",
        "description": "50 messages per hour",
        "bucket_size": 50,
        "refill_rate": 50 / 3600,
        "max_delay": 3600,
    },
    "voice_tokens": {
        "label": "Voice Tokens",
        "description": "10 tokens per minute",
        "bucket_size": 10,
        "refill_rate": 10 / 60,
        "max_delay": 300,
    },
    "file_uploads": {
        "label": "File Uploads",
        "description": "10 files per hour",
        "bucket_size": 10,
        "refill_rate": 10 / 3600,
        "max_delay": 3600,
    },
    "webhooks": {
        "label": "Webhooks",
        "description": "100 requests burst, 10/second sustained",
        "bucket_size": 100,
        "refill_rate": 10,
        "max_delay": 60,
    },
}

DEFAULT_PRESET = "text_messages"


@dataclass
class RateLimitDecision:
    """Outcome of an admitted ``consume`` call."""
    limit: int
    remaining: int
    tokens: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }


class TokenBucketRateLimiter:
    """
    Token bucket keyed by an arbitrary identifier (session, endpoint, IP).

    Args:
        store: TTL key/value store holding bucket state
        bucket_size: maximum tokens in a bucket
        refill_rate: tokens added per second
        max_delay: cap on the Retry-After value, in seconds
        bucket_ttl: idle buckets expire after this many seconds
        clock: epoch-seconds source
    """

    def __init__(
        self,
        store: KeyValueStore,
        bucket_size: int = 100,
        refill_rate: float = 10.0,
        max_delay: int = 3600,
        bucket_ttl: int = DEFAULT_BUCKET_TTL,
        clock: Callable[[], float] = time.time,
        name: str = "custom",
    ):
        self.store = store
        self.bucket_size = bucket_size
        self.refill_rate = refill_rate
        self.max_delay = max_delay
        self.bucket_ttl = bucket_ttl
        self.name = name
        self._clock = clock

    @staticmethod
    def bucket_key(identifier: str) -> str:
        return BUCKET_KEY_PREFIX + hashlib.md5(identifier.encode("utf-8")).hexdigest()

    def _refilled(self, bucket: Optional[Dict[str, float]], now: float) -> float:
        if bucket is None:
            return float(self.bucket_size)
        elapsed = max(0.0, now - bucket["last_update"])
        return min(float(self.bucket_size), bucket["tokens"] + elapsed * self.refill_rate)

    def _wait_seconds(self, available: float, cost: int) -> float:
        if available >= cost:
            return 0
        # round() absorbs float noise from fractional refill rates (50/3600)
        return round((cost - available) / self.refill_rate, 6)

    # ========================================================================
    # ADMISSION
    # ========================================================================

    def consume(self, identifier: str, cost: int = 1) -> RateLimitDecision:
        """
        Take ``cost`` tokens from the identifier's bucket.

        Returns:
            RateLimitDecision with limit/remaining for response headers

        Raises:
            RateLimitExceededError: not enough tokens. Carries retry_after
                (seconds, capped at max_delay), limit and remaining. The
                bucket is left untouched.
        """
        key = self.bucket_key(identifier)

        # Read-modify-write must not interleave for the same identifier
        with self.store.lock(key):
            now = self._clock()
            available = self._refilled(self.store.get(key), now)

            wait = self._wait_seconds(available, cost)
            if wait > 0:
                retry_after = min(math.ceil(wait), self.max_delay)
                logger.info(
                    "Rate limit exceeded",
                    extra={"limiter": self.name, "retry_after": retry_after}
                )
                raise RateLimitExceededError(
                    retry_after=int(retry_after),
                    limit=self.bucket_size,
                    remaining=int(math.floor(available)),
                )

            tokens = max(0.0, available - cost)
            self.store.set(key, {"tokens": tokens, "last_update": now}, ttl=self.bucket_ttl)

        return RateLimitDecision(
            limit=self.bucket_size,
            remaining=int(math.floor(tokens)),
            tokens=tokens,
        )

    # ========================================================================
    # READ-ONLY VIEWS
    # ========================================================================

    def get_bucket_state(self, identifier: str) -> Dict[str, float]:
        """
        Current token count (with refill applied) and seconds until full.
        Does not modify the bucket.
        """
        now = self._clock()
        bucket = self.store.get(self.bucket_key(identifier))
        current_tokens = self._refilled(bucket, now)

        tokens_until_full = self.bucket_size - current_tokens
        time_to_full = tokens_until_full / self.refill_rate if tokens_until_full > 0 else 0

        return {
            "tokens": current_tokens,
            "bucket_size": self.bucket_size,
            "refill_rate": self.refill_rate,
            "last_update": bucket["last_update"] if bucket else now,
            "time_to_full": time_to_full,
        }

    def is_rate_limited(self, identifier: str, cost: int = 1) -> bool:
        """Peek: would ``consume(identifier, cost)`` be rejected right now?"""
        return self._wait_seconds(self.get_bucket_state(identifier)["tokens"], cost) > 0

    def get_rate_limit_headers(self, identifier: str) -> Dict[str, str]:
        state = self.get_bucket_state(identifier)
        return {
            "X-RateLimit-Limit": str(self.bucket_size),
            "X-RateLimit-Remaining": str(int(math.floor(state["tokens"]))),
            "X-RateLimit-Reset": str(int(self._clock() + math.ceil(state["time_to_full"]))),
        }

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def reset_bucket(self, identifier: str) -> bool:
        """Drop the bucket; the next request sees a full one."""
        self.store.delete(self.bucket_key(identifier))
        return True

    def cleanup_expired_buckets(self) -> int:
        """
        Maintenance sweep of lapsed buckets. Not needed for correctness:
        expired buckets are already invisible to readers.
        """
        removed = self.store.purge_expired(BUCKET_KEY_PREFIX)
        if removed:
            logger.info(f"Cleaned up {removed} expired rate-limit buckets")
        return removed

    def set_bucket_size(self, size: int) -> None:
        self.bucket_size = max(1, int(size))

    def set_refill_rate(self, rate: float) -> None:
        self.refill_rate = max(0.1, float(rate))

    # ========================================================================
    # PRESETS
    # ========================================================================

    @classmethod
    def create_from_preset(
        cls,
        preset: str,
        store: KeyValueStore,
        overrides: Optional[Dict[str, Dict[str, float]]] = None,
        **kwargs,
    ) -> "TokenBucketRateLimiter":
        """
        Build a limiter from a named preset. Unknown names fall back to
        text_messages. ``overrides`` replaces individual preset values.
        """
        if preset not in RATE_LIMIT_PRESETS:
            logger.warning(f"Unknown rate limit preset {preset!r}, using {DEFAULT_PRESET}")
            preset = DEFAULT_PRESET

        config = dict(RATE_LIMIT_PRESETS[preset])
        config.update((overrides or {}).get(preset, {}))

        return cls(
            store,
            bucket_size=int(config["bucket_size"]),
            refill_rate=float(config["refill_rate"]),
            max_delay=int(config["max_delay"]),
            name=preset,
            **kwargs,
        )

    @staticmethod
    def get_presets() -> Dict[str, Dict[str, Any]]:
        return {
            name: {k: v for k, v in config.items() if k != "max_delay"}
            for name, config in RATE_LIMIT_PRESETS.items()
        }
