# core/auth.py
"""
Service-to-service JWT authentication for the job API, with JTI replay
protection kept in the shared key/value store (Redis in production) so it
holds across all workers.
"""

from datetime import timedelta
from typing import Optional

import jwt
from fastapi import HTTPException, Request, status

from gateway.core.config import get_settings
from gateway.core.kv_store import KeyValueStore
from gateway.core.logger import logger

JTI_KEY_PREFIX = "jti:"


class AuthenticatedPrincipal:
    """
    Authenticated principal information extracted from JWT.

    Proves the request came from a trusted backend, not the end user
    identity.
    """

    def __init__(self, issuer: str, audience: str, jti: Optional[str], request_id: str):
        self.issuer = issuer
        self.audience = audience
        self.jti = jti
        self.request_id = request_id


def mark_jti_used(store: KeyValueStore, jti: str, ttl: int) -> bool:
    """Record ``jti``; False when it was already used."""
    return store.set_if_absent(f"{JTI_KEY_PREFIX}{jti}", 1, ttl=ttl)


async def verify_jwt_token(request: Request) -> AuthenticatedPrincipal:
    """
    Verify the bearer token and enforce replay protection.

    Raises:
        HTTPException: token missing, invalid, expired or replayed
    """
    settings = get_settings()
    request_id = request.headers.get("x-request-id", "unknown")

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authenticated",
            headers={"x-request-id": request_id}
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication scheme",
            headers={"x-request-id": request_id}
        )

    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY not configured; rejecting service request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication not configured",
            headers={"x-request-id": request_id}
        )

    token = authorization.split(" ", 1)[1]

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            leeway=timedelta(seconds=settings.JWT_LEEWAY_SECONDS)
        )
    except jwt.ExpiredSignatureError:
        logger.warning(
            "Expired token",
            extra={"request_id": request_id, "auth_result": "expired"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"x-request-id": request_id}
        )
    except jwt.InvalidIssuerError:
        logger.warning(
            "Invalid issuer",
            extra={"request_id": request_id, "auth_result": "invalid_issuer"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token issuer",
            headers={"x-request-id": request_id}
        )
    except jwt.InvalidAudienceError:
        logger.warning(
            "Invalid audience",
            extra={"request_id": request_id, "auth_result": "invalid_audience"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token audience",
            headers={"x-request-id": request_id}
        )
    except jwt.InvalidTokenError as e:
        logger.warning(
            "Invalid token",
            extra={"request_id": request_id, "auth_result": "invalid", "reason": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"x-request-id": request_id}
        )

    jti = payload.get("jti")
    if settings.JWT_REQUIRE_JTI:
        if not jti:
            logger.warning(
                "Missing JTI in token",
                extra={"request_id": request_id, "auth_result": "missing_jti"}
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Token missing JTI claim",
                headers={"x-request-id": request_id}
            )

        store: KeyValueStore = request.app.state.kv_store
        if not mark_jti_used(store, jti, settings.JTI_CACHE_TTL_SECONDS):
            logger.warning(
                "Token replay attempt detected",
                extra={"request_id": request_id, "auth_result": "replay_attack", "jti": jti}
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has already been used",
                headers={"x-request-id": request_id}
            )

    principal = AuthenticatedPrincipal(
        issuer=payload["iss"],
        audience=payload["aud"],
        jti=jti,
        request_id=request_id
    )

    logger.info(
        "Authentication successful",
        extra={"request_id": request_id, "auth_result": "success", "iss": payload["iss"], "jti": jti}
    )
    return principal
