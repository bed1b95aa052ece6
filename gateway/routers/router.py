# routers/router.py
"""
FastAPI Router for webhook ingress and async jobs
"""

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response, status

from gateway.core.auth import AuthenticatedPrincipal, verify_jwt_token
from gateway.core.errors import GatewayError, IPNotAllowedError, RateLimitExceededError
from gateway.core.lifespan import GatewayComponents
from gateway.core.logger import logger
from gateway.core.rate_limiter import limit_param, limiter
from gateway.schemas.request_models import (
    BucketStateResponse,
    HealthResponse,
    JobStatusResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    WebhookAck,
)
from gateway.services.events import WebhookReceived
from gateway.utils.request_view import request_view_from


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

router = APIRouter(
    prefix="/api/v1",
    tags=["Gateway"],
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Forbidden"},
        429: {"description": "Too Many Requests"},
        500: {"description": "Internal Server Error"}
    }
)


def get_components(request: Request) -> GatewayComponents:
    return request.app.state.components


# ============================================================================
# HEALTH CHECK ENDPOINTS
# ============================================================================

@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Service Health Check",
    description="Validates storage connectivity and scheduler state"
)
@limiter.limit(limit_param)
async def check_health(request: Request) -> HealthResponse:
    """
    Checks:
    - Storage backend reachability (store ping)
    - Job scheduler running
    - SQS availability (if enabled)
    """
    components = get_components(request)
    settings = components.settings_provider()

    health_status = HealthResponse(
        status="healthy",
        message="Gateway is operational",
        webhook_auth_method=components.authenticator.get_auth_method(),
    )

    storage_ok = components.kv_store.ping()
    health_status.storage_status = "connected" if storage_ok else "unreachable"
    if not storage_ok:
        health_status.status = "degraded"

    health_status.scheduler_status = "running" if components.scheduler.running else "stopped"
    if not components.scheduler.running:
        health_status.status = "degraded"

    if settings.SQS_ENABLE_PUBLISH:
        try:
            from gateway.core.aws_client import get_sqs_client
            sqs = get_sqs_client()
            sqs.get_queue_attributes(
                QueueUrl=settings.SQS_QUEUE_URL,
                AttributeNames=["QueueArn"]
            )
            health_status.sqs_status = "connected"
        except Exception as e:
            logger.error(f"SQS health check failed: {e}")
            health_status.sqs_status = f"error: {str(e)[:100]}"
            health_status.status = "degraded"
    else:
        health_status.sqs_status = "disabled"

    return health_status


# ============================================================================
# WEBHOOK INGRESS
# ============================================================================

@router.post(
    "/webhook",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Receive Provider Webhook",
    description="Authenticated, deduplicated and rate-limited webhook ingress"
)
async def receive_webhook(request: Request, response: Response) -> WebhookAck:
    """
    Pipeline:
    1. Client IP allow-list (403)
    2. Authentication with the configured method (401 / 500)
    3. JSON body and provider normalizer (400)
    4. Duplicate detection; redeliveries are acknowledged and dropped
    5. Token bucket keyed on the client IP (429)
    6. Normalized event published to subscribers
    """
    components = get_components(request)
    settings = components.settings_provider()
    authenticator = components.authenticator
    view = await request_view_from(request)

    if not authenticator.check_ip_whitelist(view):
        raise IPNotAllowedError("Client IP not allowed")

    authenticator.verify(view)

    try:
        payload = json.loads(view.body or b"")
    except ValueError:
        raise GatewayError("Request body must be valid JSON", code="invalid_json", http_status=400)
    if not isinstance(payload, dict):
        raise GatewayError("Request body must be a JSON object", code="invalid_json", http_status=400)

    provider_name = view.header("X-Provider") or payload.get("provider") or "generic"
    normalizer = components.providers.create(str(provider_name))

    if authenticator.is_duplicate_request(view):
        return WebhookAck(duplicate=True)

    client_ip = authenticator.get_client_ip(view) or "unknown"
    limiter_ = components.rate_limiter(settings.WEBHOOK_RATE_LIMIT_PRESET)
    try:
        decision = limiter_.consume(f"webhook:{client_ip}")
    except RateLimitExceededError:
        # Let the sender's retry through once tokens are back
        authenticator.forget_request(view)
        raise
    response.headers.update(decision.headers())

    event = normalizer.normalize(payload)

    request_id = view.header("X-Request-ID") or view.header("X-Webhook-ID")
    components.events.publish(WebhookReceived(
        provider=normalizer.name,
        event=event,
        request_id=request_id,
    ))

    logger.info(
        "Webhook accepted",
        extra={"provider": normalizer.name, "event": event.get("event"), "client": client_ip}
    )
    return WebhookAck(event=event)


# ============================================================================
# ASYNC JOB ENDPOINTS
# ============================================================================

@router.post(
    "/jobs",
    response_model=JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit Async Job",
    description="Queue transcription, text-to-speech, media or callback work"
)
async def submit_job(
    request: Request,
    response: Response,
    body: JobSubmitRequest,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token)
) -> JobSubmitResponse:
    """
    Returns 202 with the job id immediately; execution happens on the
    scheduler's worker pool. Poll GET /jobs/{job_id} or pass callback_url
    to receive a signed POST on completion.
    """
    components = get_components(request)
    settings = components.settings_provider()

    limiter_ = components.rate_limiter(settings.JOB_SUBMIT_RATE_LIMIT_PRESET)
    decision = limiter_.consume(f"jobs:{body.session_id or principal.issuer}")
    response.headers.update(decision.headers())
    response.headers["x-request-id"] = principal.request_id

    job_id = components.processor.queue_job(
        body.job_type,
        body.input_data,
        callback_url=body.callback_url,
        session_id=body.session_id,
    )
    return JobSubmitResponse(job_id=job_id)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    summary="Job Status"
)
@limiter.limit(limit_param)
async def get_job_status(
    request: Request,
    job_id: str,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token)
) -> Dict[str, Any]:
    return get_components(request).processor.get_job_status(job_id)


# ============================================================================
# RATE LIMIT INSPECTION
# ============================================================================

@router.get(
    "/rate-limit/{preset}/{identifier}",
    response_model=BucketStateResponse,
    status_code=status.HTTP_200_OK,
    summary="Token Bucket State"
)
@limiter.limit(limit_param)
async def get_bucket_state(
    request: Request,
    preset: str,
    identifier: str,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token)
) -> BucketStateResponse:
    limiter_ = get_components(request).rate_limiter(preset)
    state = limiter_.get_bucket_state(identifier)
    return BucketStateResponse(preset=limiter_.name, identifier=identifier, **state)
