# gateway/integrations/sqs_client.py
import hashlib
import json
import time
from typing import Any, Callable, Dict, Optional, Union

from gateway.core.aws_client import get_sqs_client
from gateway.core.config import Settings, get_settings
from gateway.core.logger import get_logger
from gateway.schemas.job_models import JobEnvelope
from gateway.services.events import EventBus, JobCompleted, JobFailed

logger = get_logger("sqs")

_sqs = None


def _client():
    global _sqs
    if _sqs is None:
        _sqs = get_sqs_client()
    return _sqs


def publish_json(
    envelope: Dict[str, Any],
    *,
    fifo: bool = False,
    group_id: Optional[str] = None,
    client=None,
    settings: Optional[Settings] = None,
) -> str:
    """
    Publish a JSON message to SQS.
    Assumes body <= 256KB.
    """
    settings = settings or get_settings()
    body = json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)
    params = {
        "QueueUrl": settings.SQS_QUEUE_URL,
        "MessageBody": body,
        "MessageAttributes": {
            "job_id": {"DataType": "String", "StringValue": envelope.get("job_id", "")},
            "status": {"DataType": "String", "StringValue": envelope.get("status", "unknown")},
            "content_type": {"DataType": "String", "StringValue": "application/json"},
        },
    }
    if fifo:
        params["MessageGroupId"] = group_id or envelope.get("job_id", "default")
        params["MessageDeduplicationId"] = hashlib.sha256(body.encode("utf-8")).hexdigest()

    logger.debug(f"SQS publish: queue={settings.SQS_QUEUE_URL}, size={len(body)} bytes")

    resp = (client or _client()).send_message(**params)
    msg_id = resp.get("MessageId", "")
    logger.info("SQS publish ok job_id=%s msg_id=%s", envelope.get("job_id"), msg_id)
    return msg_id


def build_envelope(event: Union[JobCompleted, JobFailed]) -> JobEnvelope:
    if isinstance(event, JobCompleted):
        result = event.result if isinstance(event.result, dict) else {"value": event.result}
        return JobEnvelope(
            job_id=event.job_id,
            job_type=event.job_type,
            status="completed",
            result=result,
            session_id=event.session_id,
            retry_count=event.retry_count,
            published_at_ms=int(time.time() * 1000),
        )
    return JobEnvelope(
        job_id=event.job_id,
        job_type=event.job_type,
        status="failed",
        error_message=event.error_message,
        session_id=event.session_id,
        retry_count=event.retry_count,
        published_at_ms=int(time.time() * 1000),
    )


class SqsJobNotifier:
    """
    Event-bus subscriber forwarding terminal job states to SQS. A publish
    failure is logged; it never changes the job outcome.
    """

    def __init__(self, settings_provider: Callable[[], Settings] = get_settings, client=None):
        self._settings = settings_provider
        self._client = client

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(JobCompleted, self.notify)
        bus.subscribe(JobFailed, self.notify)

    def notify(self, event: Union[JobCompleted, JobFailed]) -> Optional[str]:
        settings = self._settings()
        if not settings.SQS_ENABLE_PUBLISH:
            logger.debug(f"SQS publishing disabled for job_id={event.job_id}")
            return None

        envelope = build_envelope(event).model_dump()
        try:
            msg_id = publish_json(envelope, fifo=settings.SQS_QUEUE_URL.endswith(".fifo"),
                                  client=self._client, settings=settings)
            logger.info(f"SQS message published: job_id={event.job_id}, msg_id={msg_id}")
            return msg_id
        except Exception as e:
            logger.error(f"SQS publish failed: job_id={event.job_id}, error={e}")
            return None
