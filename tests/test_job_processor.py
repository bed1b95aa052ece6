"""Unit tests for AsyncJobProcessor: lifecycle, retry/backoff, dispatch
and maintenance. Scheduling is recorded, never executed."""

import base64
import threading
import time
import uuid
from datetime import timedelta

import pytest

from gateway.core.errors import (
    InvalidJobTypeError,
    JobAlreadyProcessedError,
    JobExecutionError,
    JobNotFoundError,
    JobQueueError,
)
from gateway.schemas.job_models import JobStatus, JobType, utc_now
from gateway.services.events import EventBus, JobCompleted, JobFailed
from gateway.services.job_handlers import default_handlers
from gateway.services.job_processor import AsyncJobProcessor, backoff_delay


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def published(events):
    received = []
    events.subscribe(JobCompleted, received.append)
    events.subscribe(JobFailed, received.append)
    return received


@pytest.fixture
def make_processor(job_store, scheduler, events, make_settings):
    def _make(callbacks=None, **overrides):
        settings = make_settings(**overrides)
        return AsyncJobProcessor(
            job_store,
            scheduler,
            events=events,
            callbacks=callbacks,
            handlers=default_handlers(lambda: settings),
            settings_provider=lambda: settings,
        )
    return _make


@pytest.fixture
def processor(make_processor):
    return make_processor()


def failing_handler(calls):
    def handler(data, job):
        calls.append(job.retry_count)
        raise RuntimeError("provider unavailable")
    return handler


# =============================================================================
# SUBMISSION
# =============================================================================


def test_queue_job_persists_pending_and_schedules_immediately(processor, job_store, scheduler):
    job_id = processor.queue_job("transcribe", {"audio_url": "https://x/a.wav"}, session_id="s1")

    uuid.UUID(job_id)
    job = job_store.get(job_id)
    assert job.status == JobStatus.PENDING
    assert job.job_type == JobType.TRANSCRIBE
    assert job.retry_count == 0
    assert job.session_id == "s1"
    assert job.input_payload() == {"audio_url": "https://x/a.wav"}
    assert scheduler.calls == [(job_id, 0)]


def test_queue_job_rejects_unknown_type(processor, job_store, scheduler):
    with pytest.raises(InvalidJobTypeError) as exc:
        processor.queue_job("fax", {})

    assert exc.value.http_status == 400
    assert job_store.list_by_status(JobStatus.PENDING) == []
    assert scheduler.calls == []


def test_queue_job_accepts_tts_alias(processor, job_store):
    job_id = processor.queue_job("tts", {"text": "hello"})

    assert job_store.get(job_id).job_type == JobType.TEXT_TO_SPEECH


def test_queue_job_accepts_raw_json_bytes(processor, job_store):
    job_id = processor.queue_job("process_media", b'{"media_url": "s3://b/k"}')

    assert job_store.get(job_id).input_payload() == {"media_url": "s3://b/k"}


def test_queue_job_keeps_binary_input_as_base64(processor, job_store):
    raw = b"\xff\xd8\xff\xe0 jpeg bytes"

    job_id = processor.queue_job("process_media", raw)

    payload = job_store.get(job_id).input_payload()
    assert payload["encoding"] == "base64"
    assert base64.b64decode(payload["data"]) == raw
    assert processor.process_job(job_id) == {"media_url": "", "processed": True}


def test_queue_job_persistence_failure(scheduler, make_settings):
    class BrokenStore:
        def create(self, job):
            raise ConnectionError("redis down")

    settings = make_settings()
    processor = AsyncJobProcessor(BrokenStore(), scheduler, settings_provider=lambda: settings)

    with pytest.raises(JobQueueError) as exc:
        processor.queue_job("transcribe", {})

    assert exc.value.code == "job_queue_failed"
    assert scheduler.calls == []


# =============================================================================
# EXECUTION
# =============================================================================


def test_process_job_success(processor, job_store, published):
    job_id = processor.queue_job("transcribe", {"audio_url": "a"}, session_id="s1")

    result = processor.process_job(job_id)

    job = job_store.get(job_id)
    assert result == {"text": "", "confidence": 0}
    assert job.status == JobStatus.COMPLETED
    assert job.output_payload() == result
    assert job.completed_at is not None
    assert published == [JobCompleted(
        job_id=job_id, job_type="transcribe", result=result, session_id="s1", retry_count=0
    )]


@pytest.mark.parametrize("job_type,expected", [
    ("text_to_speech", {"audio_url": "", "duration": 0}),
    ("process_media", {"media_url": "", "processed": True}),
])
def test_builtin_placeholder_results(processor, job_type, expected):
    job_id = processor.queue_job(job_type, {})

    assert processor.process_job(job_id) == expected


def test_process_missing_job(processor):
    with pytest.raises(JobNotFoundError) as exc:
        processor.process_job("does-not-exist")

    assert exc.value.http_status == 404


def test_completed_job_rejected_without_mutation(processor, job_store):
    job_id = processor.queue_job("transcribe", {})
    processor.process_job(job_id)
    before = job_store.get(job_id)

    with pytest.raises(JobAlreadyProcessedError) as exc:
        processor.process_job(job_id)

    assert exc.value.http_status == 409
    assert job_store.get(job_id) == before


def test_processing_job_rejected_without_mutation(processor, job_store):
    job_id = processor.queue_job("transcribe", {})
    job_store.compare_and_set_status(job_id, [JobStatus.PENDING], JobStatus.PROCESSING)
    before = job_store.get(job_id)

    with pytest.raises(JobAlreadyProcessedError):
        processor.process_job(job_id)

    assert job_store.get(job_id) == before


def test_registered_handler_replaces_builtin(processor):
    processor.register_handler("transcribe", lambda data, job: {"text": data["hint"], "confidence": 0.9})
    job_id = processor.queue_job("transcribe", {"hint": "hello world"})

    assert processor.process_job(job_id) == {"text": "hello world", "confidence": 0.9}


def test_register_handler_rejects_unknown_type(processor):
    with pytest.raises(InvalidJobTypeError):
        processor.register_handler("fax", lambda data, job: None)


def test_executor_claims_before_handler(processor):
    handler_calls = []
    processor.register_handler(JobType.TRANSCRIBE, lambda data, job: handler_calls.append(1) or {"h": 1})
    processor.register_executor(
        lambda job_type, data, job: {"claimed": True} if job_type == JobType.TRANSCRIBE else None
    )

    transcribe_id = processor.queue_job("transcribe", {})
    media_id = processor.queue_job("process_media", {})

    assert processor.process_job(transcribe_id) == {"claimed": True}
    assert processor.process_job(media_id) == {"media_url": "", "processed": True}
    assert handler_calls == []


def test_same_job_runs_once_under_concurrency(processor, job_store):
    started = []

    def slow_handler(data, job):
        started.append(job.job_id)
        time.sleep(0.05)
        return {"ok": True}

    processor.register_handler("process_media", slow_handler)
    job_id = processor.queue_job("process_media", {})
    outcomes = []

    def run():
        try:
            processor.process_job(job_id)
            outcomes.append("ran")
        except JobAlreadyProcessedError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=run) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert started == [job_id]
    assert outcomes.count("ran") == 1
    assert job_store.get(job_id).status == JobStatus.COMPLETED


# =============================================================================
# RETRY & BACKOFF
# =============================================================================


def test_failure_lifecycle_ends_failed_after_max_retries(processor, job_store, scheduler, published):
    calls = []
    processor.register_handler("transcribe", failing_handler(calls))
    job_id = processor.queue_job("transcribe", {}, session_id="s9")

    for expected_retry in (1, 2, 3):
        with pytest.raises(JobExecutionError):
            processor.process_job(job_id)
        job = job_store.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == expected_retry
        assert job.error_message == "provider unavailable"
        assert job.completed_at is None

    with pytest.raises(JobExecutionError) as exc:
        processor.process_job(job_id)

    job = job_store.get(job_id)
    assert exc.value.code == "job_processing_failed"
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 3
    assert job.completed_at is not None
    assert job.output_data is None
    assert calls == [0, 1, 2, 3]
    assert scheduler.delays_for(job_id) == [0, 120, 240, 480]
    assert published == [JobFailed(
        job_id=job_id,
        job_type="transcribe",
        error_message="provider unavailable",
        session_id="s9",
        retry_count=3,
    )]


def test_failed_job_is_terminal(processor, job_store):
    processor.register_handler("transcribe", failing_handler([]))
    job_id = processor.queue_job("transcribe", {})
    for _ in range(4):
        with pytest.raises(JobExecutionError):
            processor.process_job(job_id)
    before = job_store.get(job_id)

    with pytest.raises(JobAlreadyProcessedError):
        processor.process_job(job_id)

    assert job_store.get(job_id) == before


def test_zero_max_retries_fails_immediately(make_processor, job_store, scheduler):
    processor = make_processor(JOB_MAX_RETRIES=0)
    processor.register_handler("transcribe", failing_handler([]))
    job_id = processor.queue_job("transcribe", {})

    with pytest.raises(JobExecutionError):
        processor.process_job(job_id)

    assert job_store.get(job_id).status == JobStatus.FAILED
    assert scheduler.delays_for(job_id) == [0]


def test_retry_then_success_keeps_retry_count(processor, job_store):
    attempts = []

    def flaky(data, job):
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("timeout")
        return {"ok": True}

    processor.register_handler("process_media", flaky)
    job_id = processor.queue_job("process_media", {})

    with pytest.raises(JobExecutionError):
        processor.process_job(job_id)
    assert processor.process_job(job_id) == {"ok": True}

    job = job_store.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1


def test_non_serializable_result_counts_as_failure(processor, job_store):
    processor.register_handler("process_media", lambda data, job: {"when": object()})
    job_id = processor.queue_job("process_media", {})

    with pytest.raises(JobExecutionError):
        processor.process_job(job_id)

    assert job_store.get(job_id).retry_count == 1


def test_backoff_delay_grows_exponentially():
    delays = [backoff_delay(n) for n in range(1, 8)]

    assert delays[:3] == [120, 240, 480]
    assert all(a < b for a, b in zip(delays, delays[1:]))


def test_backoff_delay_cap():
    assert backoff_delay(20, cap=86400) == 86400
    assert backoff_delay(1, cap=86400) == 120
    assert backoff_delay(20, cap=None) == 2 ** 20 * 60


def test_retry_delay_respects_configured_cap(make_processor, scheduler):
    processor = make_processor(JOB_MAX_BACKOFF_SECONDS=200)
    processor.register_handler("transcribe", failing_handler([]))
    job_id = processor.queue_job("transcribe", {})

    for _ in range(2):
        with pytest.raises(JobExecutionError):
            processor.process_job(job_id)

    assert scheduler.delays_for(job_id) == [0, 120, 200]


# =============================================================================
# CALLBACKS
# =============================================================================


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch(self, callback_url, job_id, result):
        self.sent.append((callback_url, job_id, result))


def test_callback_dispatched_on_success_only(make_processor):
    dispatcher = RecordingDispatcher()
    processor = make_processor(callbacks=dispatcher)
    ok_id = processor.queue_job("transcribe", {}, callback_url="https://example.com/cb")
    no_cb_id = processor.queue_job("transcribe", {})

    processor.process_job(ok_id)
    processor.process_job(no_cb_id)

    assert dispatcher.sent == [("https://example.com/cb", ok_id, {"text": "", "confidence": 0})]


def test_no_callback_for_failed_job(make_processor):
    dispatcher = RecordingDispatcher()
    processor = make_processor(callbacks=dispatcher, JOB_MAX_RETRIES=0)
    processor.register_handler("transcribe", failing_handler([]))
    job_id = processor.queue_job("transcribe", {}, callback_url="https://example.com/cb")

    with pytest.raises(JobExecutionError):
        processor.process_job(job_id)

    assert dispatcher.sent == []


# =============================================================================
# QUERIES & MAINTENANCE
# =============================================================================


def test_get_job_status_hides_input_and_pending_output(processor):
    job_id = processor.queue_job("transcribe", {"secret": "input"}, session_id="s1")

    view = processor.get_job_status(job_id)

    assert view["status"] == "pending"
    assert view["job_type"] == "transcribe"
    assert "input_data" not in view
    assert "output_data" not in view

    processor.process_job(job_id)
    view = processor.get_job_status(job_id)
    assert view["status"] == "completed"
    assert view["output_data"] == {"text": "", "confidence": 0}
    assert view["completed_at"] is not None


def test_get_job_status_missing(processor):
    with pytest.raises(JobNotFoundError):
        processor.get_job_status("missing")


def test_cleanup_old_jobs_removes_only_old_terminal_jobs(processor, job_store):
    old_done = processor.queue_job("transcribe", {})
    recent_done = processor.queue_job("transcribe", {})
    old_pending = processor.queue_job("transcribe", {})
    processor.process_job(old_done)
    processor.process_job(recent_done)

    job = job_store.get(old_done)
    job.completed_at = utc_now() - timedelta(days=10)
    job_store.update(job)
    job = job_store.get(old_pending)
    job.created_at = utc_now() - timedelta(days=30)
    job_store.update(job)

    assert processor.cleanup_old_jobs(days=7) == 1
    assert job_store.get(old_done) is None
    assert job_store.get(recent_done) is not None
    assert job_store.get(old_pending) is not None


def test_recover_pending_reschedules(processor, job_store, scheduler):
    processor.register_handler("transcribe", failing_handler([]))
    retried = processor.queue_job("transcribe", {})
    fresh = processor.queue_job("process_media", {})
    with pytest.raises(JobExecutionError):
        processor.process_job(retried)
    scheduler.calls.clear()

    assert processor.recover_pending() == 2
    assert sorted(scheduler.calls) == sorted([(retried, 120), (fresh, 0)])


def test_recover_pending_without_backoff_cap(make_processor, scheduler):
    processor = make_processor(JOB_MAX_BACKOFF_SECONDS=None)
    processor.register_handler("transcribe", failing_handler([]))
    retried = processor.queue_job("transcribe", {})
    fresh = processor.queue_job("transcribe", {})
    with pytest.raises(JobExecutionError):
        processor.process_job(retried)
    scheduler.calls.clear()

    assert processor.recover_pending() == 2
    assert sorted(scheduler.calls) == sorted([(retried, 120), (fresh, 0)])
