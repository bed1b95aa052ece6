# core/errors.py
"""
Error taxonomy for the ingress control plane.

Every error carries a machine-readable ``code``, a human message and the
HTTP status the API layer should answer with:

- configuration errors (500): missing/undecryptable secrets, bad settings.
  Always fail closed.
- authentication errors (401): caller credentials missing or wrong.
- admission errors (429): rate limit exceeded, with retry guidance.
- job errors: invalid submissions, lookups and execution failures.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    code = "internal_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status

    def headers(self) -> Dict[str, str]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ConfigurationError(GatewayError):
    code = "configuration_error"
    http_status = 500


class CredentialError(GatewayError):
    code = "credential_error"
    http_status = 500


class AuthenticationError(GatewayError):
    code = "authentication_failed"
    http_status = 401


class IPNotAllowedError(GatewayError):
    code = "ip_not_allowed"
    http_status = 403


class RateLimitExceededError(GatewayError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, retry_after: int, limit: int, remaining: int):
        super().__init__(
            f"Rate limit exceeded. Please try again in {retry_after} seconds."
        )
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "Retry-After": str(self.retry_after),
        }

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class InvalidJobTypeError(GatewayError):
    code = "invalid_job_type"
    http_status = 400


class UnknownProviderError(GatewayError):
    code = "invalid_provider"
    http_status = 400


class JobNotFoundError(GatewayError):
    code = "job_not_found"
    http_status = 404


class JobAlreadyProcessedError(GatewayError):
    code = "job_already_processed"
    http_status = 409


class JobQueueError(GatewayError):
    code = "job_queue_failed"
    http_status = 500


class JobExecutionError(GatewayError):
    code = "job_processing_failed"
    http_status = 500
