import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from gateway.core.config import settings
from gateway.core.errors import ConfigurationError, GatewayError
from gateway.core.lifespan import lifespan
from gateway.core.logger import logger
from gateway.core.rate_limiter import limiter
from gateway.routers.router import router

# CORS configuration
if settings.ENABLE_CORS and (settings.FRONTEND_ENDPOINT or settings.BACKEND_ENDPOINT):
    origins = [o for o in (settings.FRONTEND_ENDPOINT, settings.BACKEND_ENDPOINT) if o]
else:
    origins = ["*"]

# Initialize FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="""
    Ingress control plane for chat/voice integrations.

    **POST /api/v1/webhook** - Provider webhooks (API key, HMAC or Basic auth,
    IP allow-list, duplicate detection, token-bucket rate limiting)

    **POST /api/v1/jobs** - Async job submission (service JWT). Jobs are retried
    with exponential backoff; results are delivered to `callback_url` with an
    `X-Gateway-Signature` HMAC header.

    **GET /api/v1/jobs/{job_id}** - Job status

    ### Headers:
    - **Request**: `Authorization: Bearer <service-jwt>` on job endpoints, `x-request-id`
    - **Response**: `X-RateLimit-Limit`, `X-RateLimit-Remaining`, `Retry-After` on 429
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if isinstance(exc, ConfigurationError) or exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
        headers=exc.headers() or None,
    )


# Request/Response logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    log_data = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": int(duration * 1000),
        "client": request.client.host if request.client else "unknown"
    }

    # Only log non-health-check requests
    if request.url.path != "/api/v1/health":
        logger.info(f"Request: {log_data}")

    return response

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Include routers
app.include_router(router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    return {
        "service": settings.PROJECT_NAME,
        "version": "1.0.0",
        "status": "running",
        "documentation": "/docs"
    }
