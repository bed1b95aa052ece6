# core/lifespan.py
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from fastapi import FastAPI

from gateway.core.aws_client import validate_aws_credentials
from gateway.core.config import Settings, get_settings
from gateway.core.credentials import CredentialStore, build_credential_store
from gateway.core.kv_store import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from gateway.core.logger import logger
from gateway.core.redis_client import close_redis, get_redis
from gateway.integrations.sqs_client import SqsJobNotifier
from gateway.services.callback_delivery import CallbackDispatcher
from gateway.services.events import EventBus
from gateway.services.job_handlers import default_handlers
from gateway.services.job_processor import AsyncJobProcessor
from gateway.services.job_store import JobStore, MemoryJobStore, RedisJobStore
from gateway.services.providers import ProviderRegistry, default_registry
from gateway.services.rate_limiter import RATE_LIMIT_PRESETS, TokenBucketRateLimiter
from gateway.services.scheduler import InProcessScheduler
from gateway.services.webhook_authenticator import AUTH_METHODS, WebhookAuthenticator


@dataclass
class GatewayComponents:
    """Everything the routes need, wired once at startup."""
    settings_provider: Callable[[], Settings]
    kv_store: KeyValueStore
    job_store: JobStore
    credentials: CredentialStore
    authenticator: WebhookAuthenticator
    rate_limiters: Dict[str, TokenBucketRateLimiter]
    events: EventBus
    providers: ProviderRegistry
    callbacks: CallbackDispatcher
    scheduler: InProcessScheduler
    processor: AsyncJobProcessor
    notifier: Optional[SqsJobNotifier] = field(default=None)

    def rate_limiter(self, preset: str) -> TokenBucketRateLimiter:
        """Limiter for ``preset``; unknown names use the default preset."""
        if preset not in self.rate_limiters:
            settings = self.settings_provider()
            return TokenBucketRateLimiter.create_from_preset(
                preset,
                self.kv_store,
                overrides=settings.RATE_LIMIT_PRESET_OVERRIDES,
                bucket_ttl=settings.RATE_LIMIT_BUCKET_TTL_SECONDS,
            )
        return self.rate_limiters[preset]


def build_stores(settings: Settings):
    backend = (settings.STORAGE_BACKEND or "").strip().lower()
    if backend == "memory":
        logger.warning("In-memory storage active: state is lost on restart and not shared between workers")
        return MemoryKeyValueStore(), MemoryJobStore()

    client = get_redis()
    return (
        RedisKeyValueStore(client, namespace=settings.REDIS_KEY_PREFIX),
        RedisJobStore(client, namespace=settings.REDIS_KEY_PREFIX),
    )


def build_components(
    settings_provider: Callable[[], Settings] = get_settings,
    kv_store: Optional[KeyValueStore] = None,
    job_store: Optional[JobStore] = None,
    credentials: Optional[CredentialStore] = None,
) -> GatewayComponents:
    settings = settings_provider()

    if kv_store is None or job_store is None:
        default_kv, default_jobs = build_stores(settings)
        kv_store = kv_store or default_kv
        job_store = job_store or default_jobs

    credentials = credentials or build_credential_store(settings)
    events = EventBus()

    rate_limiters = {
        preset: TokenBucketRateLimiter.create_from_preset(
            preset,
            kv_store,
            overrides=settings.RATE_LIMIT_PRESET_OVERRIDES,
            bucket_ttl=settings.RATE_LIMIT_BUCKET_TTL_SECONDS,
        )
        for preset in RATE_LIMIT_PRESETS
    }

    scheduler = InProcessScheduler(concurrency=settings.JOB_WORKER_CONCURRENCY)
    callbacks = CallbackDispatcher(settings_provider)
    processor = AsyncJobProcessor(
        store=job_store,
        scheduler=scheduler,
        events=events,
        callbacks=callbacks,
        handlers=default_handlers(settings_provider),
        settings_provider=settings_provider,
    )
    scheduler.set_runner(processor.process_job)

    notifier = SqsJobNotifier(settings_provider)
    notifier.attach(events)

    return GatewayComponents(
        settings_provider=settings_provider,
        kv_store=kv_store,
        job_store=job_store,
        credentials=credentials,
        authenticator=WebhookAuthenticator(credentials, kv_store, settings_provider),
        rate_limiters=rate_limiters,
        events=events,
        providers=default_registry(),
        callbacks=callbacks,
        scheduler=scheduler,
        processor=processor,
        notifier=notifier,
    )


def _warn_on_insecure_settings(settings: Settings) -> None:
    method = (settings.WEBHOOK_AUTH_METHOD or "").strip().lower()
    if method == "none":
        logger.warning("Webhook authentication is DISABLED (WEBHOOK_AUTH_METHOD=none)")
    elif method not in AUTH_METHODS:
        logger.error(f"Unknown WEBHOOK_AUTH_METHOD {method!r}: every webhook will be rejected")
    if settings.CREDENTIAL_BACKEND == "kms" or settings.SQS_ENABLE_PUBLISH:
        validate_aws_credentials()
    if not settings.CALLBACK_SECRET:
        logger.warning("CALLBACK_SECRET not set: job completion callbacks will not be sent")
    if not settings.JWT_SECRET_KEY:
        logger.warning("JWT_SECRET_KEY not set: the job API will reject every request")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire the components, recover pending jobs, start the job scheduler and
    drop expired terminal jobs. Components already placed on app.state
    (tests) are reused.
    """
    components: GatewayComponents = getattr(app.state, "components", None) or build_components()
    app.state.components = components
    app.state.kv_store = components.kv_store

    settings = components.settings_provider()
    _warn_on_insecure_settings(settings)

    try:
        components.processor.cleanup_old_jobs()
        components.processor.recover_pending()
        components.kv_store.purge_expired()
    except Exception as e:
        logger.error(f"Job store maintenance failed at startup: {e}")

    await components.scheduler.start()
    logger.info("Lifespan startup: Ready to serve requests.")
    yield

    await components.scheduler.stop()
    components.callbacks.shutdown(wait=True)
    if isinstance(components.kv_store, RedisKeyValueStore):
        close_redis()
    logger.info("Lifespan shutdown.")
