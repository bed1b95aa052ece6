# services/job_handlers.py
"""
Built-in job handlers.

A handler receives the decoded input payload and the job record and
returns a JSON-serializable result. Raising marks the attempt as failed
(and eligible for retry).

Transcription, text-to-speech and media processing are provided by
plugged-in handlers; the built-ins only return empty result shapes so
jobs of those types complete when nothing is registered.
"""

import time
from typing import Any, Callable, Dict

import requests

from gateway.core.config import Settings, get_settings
from gateway.core.logger import get_logger
from gateway.schemas.job_models import Job, JobType

logger = get_logger("job_handlers")

JobHandler = Callable[[Any, Job], Any]


class JobHandlerError(Exception):
    """A handler could not complete the job."""


def make_webhook_callback_handler(
    settings_provider: Callable[[], Settings] = get_settings,
    session: requests.Session = None,
) -> JobHandler:
    """
    POST ``input["payload"]`` as JSON to ``input["url"]``. Any non-2xx
    answer or transport error fails the attempt.
    """
    session = session or requests.Session()

    def handle_webhook_callback(data: Any, job: Job) -> Dict[str, Any]:
        if not isinstance(data, dict) or not data.get("url"):
            raise JobHandlerError("Callback URL missing")

        url = data["url"]
        payload = data.get("payload", {})
        timeout = settings_provider().JOB_CALLBACK_TIMEOUT_SECONDS

        try:
            resp = session.post(url, json=payload, timeout=timeout)
        except requests.RequestException as e:
            raise JobHandlerError(f"Callback request failed: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise JobHandlerError(f"Callback failed with status {resp.status_code}")

        return {
            "status": "callback_sent",
            "status_code": resp.status_code,
            "timestamp": int(time.time()),
        }

    return handle_webhook_callback


def handle_transcription(data: Any, job: Job) -> Dict[str, Any]:
    return {"text": "", "confidence": 0}


def handle_text_to_speech(data: Any, job: Job) -> Dict[str, Any]:
    return {"audio_url": "", "duration": 0}


def handle_process_media(data: Any, job: Job) -> Dict[str, Any]:
    return {"media_url": "", "processed": True}


def default_handlers(
    settings_provider: Callable[[], Settings] = get_settings,
    session: requests.Session = None,
) -> Dict[JobType, JobHandler]:
    return {
        JobType.WEBHOOK_CALLBACK: make_webhook_callback_handler(settings_provider, session),
        JobType.TRANSCRIBE: handle_transcription,
        JobType.TEXT_TO_SPEECH: handle_text_to_speech,
        JobType.PROCESS_MEDIA: handle_process_media,
    }
