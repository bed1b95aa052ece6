# schemas/job_models.py
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Closed set of job types accepted at submission"""
    TRANSCRIBE = "transcribe"
    TEXT_TO_SPEECH = "text_to_speech"
    PROCESS_MEDIA = "process_media"
    WEBHOOK_CALLBACK = "webhook_callback"


"""
Wire aliases accepted at submission
"""
JOB_TYPE_ALIASES: Dict[str, JobType] = {
    "tts": JobType.TEXT_TO_SPEECH,
}


class JobStatus(str, Enum):
    """
    pending -> processing -> completed | pending (retry) | failed
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def parse_job_type(value: Any) -> Optional[JobType]:
    """JobType for a submitted value, or None if it is not recognized."""
    if isinstance(value, JobType):
        return value
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    if value in JOB_TYPE_ALIASES:
        return JOB_TYPE_ALIASES[value]
    try:
        return JobType(value)
    except ValueError:
        return None


def new_job_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    """Unit of deferred work, persisted by the job store."""
    job_id: str = Field(default_factory=new_job_id)
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    input_data: str = Field("{}", description="Serialized JSON payload")
    output_data: Optional[str] = Field(None, description="Serialized JSON result, set on completion")
    error_message: Optional[str] = None
    callback_url: Optional[str] = None
    retry_count: int = Field(0, ge=0)
    session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def input_payload(self) -> Any:
        return json.loads(self.input_data) if self.input_data else None

    def output_payload(self) -> Any:
        return json.loads(self.output_data) if self.output_data else None

    def status_view(self) -> Dict[str, Any]:
        """
        Read-only projection for status polling. Output is only exposed
        once the job completed.
        """
        view = {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.status == JobStatus.COMPLETED and self.output_data:
            view["output_data"] = self.output_payload()
        return view


class CallbackPayload(BaseModel):
    """Body POSTed to a job's callback_url on completion."""
    job_id: str
    status: str = "completed"
    result: Any = None
    timestamp: int


class JobEnvelope(BaseModel):
    """Terminal-state notification published to SQS."""
    job_id: str
    job_type: str
    status: str = Field(..., pattern="^(completed|failed)$")
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    session_id: Optional[str] = None
    retry_count: int = 0
    published_at_ms: int
    version: int = 1
