# services/callback_delivery.py
"""
Signed, fire-and-forget delivery of job results to a caller's callback URL.

POST <callback_url>
Content-Type: application/json
X-Gateway-Signature: hex(HMAC-SHA256(body, CALLBACK_SECRET))

{"job_id": "...", "status": "completed", "result": {...}, "timestamp": <unix>}

The job is already completed when delivery starts. Failures are logged
and never retried.
"""

import hashlib
import hmac
import json
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

import requests

from gateway.core.config import Settings, get_settings
from gateway.core.logger import get_logger
from gateway.schemas.job_models import CallbackPayload

logger = get_logger("callbacks")


def serialize_payload(payload: CallbackPayload) -> bytes:
    """Exact bytes that are both signed and sent."""
    return json.dumps(payload.model_dump(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class CallbackDispatcher:
    """
    Sends completion callbacks on a small thread pool so the job worker
    never waits on the remote server.
    """

    def __init__(
        self,
        settings_provider: Callable[[], Settings] = get_settings,
        session: Optional[requests.Session] = None,
        max_workers: int = 4,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings_provider
        self._session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="callback")
        self._clock = clock

    def dispatch(self, callback_url: str, job_id: str, result: Any) -> Optional[Future]:
        """
        Queue a signed callback. Returns the delivery future, or None when
        the callback cannot be signed (missing CALLBACK_SECRET).
        """
        settings = self._settings()
        if not settings.CALLBACK_SECRET:
            logger.error(
                "CALLBACK_SECRET not configured; refusing to send unsigned callback",
                extra={"job_id": job_id}
            )
            return None

        payload = CallbackPayload(job_id=job_id, result=result, timestamp=int(self._clock()))
        body = serialize_payload(payload)
        headers = {
            "Content-Type": "application/json",
            settings.CALLBACK_SIGNATURE_HEADER: sign_payload(body, settings.CALLBACK_SECRET),
        }
        return self._executor.submit(
            self._deliver, callback_url, job_id, body, headers, settings.JOB_CALLBACK_TIMEOUT_SECONDS
        )

    def _deliver(self, url: str, job_id: str, body: bytes, headers: dict, timeout: int) -> bool:
        try:
            resp = self._session.post(url, data=body, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            logger.error(f"Callback failed: job_id={job_id}, error={e}")
            return False

        if not 200 <= resp.status_code < 300:
            logger.error(f"Callback rejected: job_id={job_id}, status={resp.status_code}")
            return False

        logger.info(f"Callback delivered: job_id={job_id}, status={resp.status_code}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
