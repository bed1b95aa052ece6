# schemas/request_models.py
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ============================================================================
# JOB MODELS
# ============================================================================

class JobSubmitRequest(BaseModel):
    """Async job submission"""
    job_type: str = Field(..., description="transcribe | text_to_speech | process_media | webhook_callback")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Handler-specific payload")
    callback_url: Optional[str] = Field(None, description="Receives a signed POST when the job completes")
    session_id: Optional[str] = Field(None, description="Chat/voice session the job belongs to")


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str = "pending"


class JobStatusResponse(BaseModel):
    """Status projection returned for polling; input data is never exposed"""
    job_id: str
    job_type: str
    status: str
    error_message: Optional[str] = None
    retry_count: int = 0
    session_id: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None
    output_data: Optional[Any] = None


# ============================================================================
# WEBHOOK MODELS
# ============================================================================

class WebhookAck(BaseModel):
    success: bool = True
    duplicate: bool = False
    event: Optional[Dict[str, Any]] = None


# ============================================================================
# RATE LIMIT MODELS
# ============================================================================

class BucketStateResponse(BaseModel):
    preset: str
    identifier: str
    tokens: float
    bucket_size: int
    refill_rate: float
    last_update: float
    time_to_full: float


# ============================================================================
# HEALTH CHECK MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    message: str
    storage_status: Optional[str] = None
    scheduler_status: Optional[str] = None
    webhook_auth_method: Optional[str] = None
    sqs_status: Optional[str] = None
