"""Shared fixtures: controllable clock, in-memory stores, settings and a
local HTTP receiver for callback delivery."""

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List, Tuple

import pytest

from gateway.core.config import Settings
from gateway.core.kv_store import MemoryKeyValueStore
from gateway.services.job_store import MemoryJobStore
from gateway.services.scheduler import Scheduler


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingScheduler(Scheduler):
    """Scheduler that records (job_id, delay) instead of running anything."""

    def __init__(self):
        self.calls: List[Tuple[str, float]] = []

    def schedule(self, job_id: str, delay: float = 0) -> None:
        self.calls.append((job_id, delay))

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @property
    def running(self) -> bool:
        return True

    def delays_for(self, job_id: str) -> List[float]:
        return [delay for scheduled, delay in self.calls if scheduled == job_id]


TEST_SETTINGS = {
    "STORAGE_BACKEND": "memory",
    "CREDENTIAL_BACKEND": "plain",
    "WEBHOOK_AUTH_METHOD": "api_key",
    "WEBHOOK_API_KEY": "test-api-key",
    "WEBHOOK_SECRET": "test-webhook-secret",
    "WEBHOOK_BASIC_USERNAME": "provider",
    "WEBHOOK_BASIC_PASSWORD": "s3cret",
    "WEBHOOK_IP_WHITELIST": "",
    "CALLBACK_SECRET": "test-callback-secret",
    "JWT_SECRET_KEY": "test-jwt-secret-0123456789abcdef0123456789",
    "JOB_MAX_RETRIES": 3,
    "JOB_CALLBACK_TIMEOUT_SECONDS": 5,
    "SQS_ENABLE_PUBLISH": False,
}


@pytest.fixture
def make_settings():
    """Build a Settings instance from test defaults plus overrides (no .env)."""
    def _make(**overrides) -> Settings:
        values = dict(TEST_SETTINGS)
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store(clock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def job_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


# =============================================================================
# LOCAL HTTP RECEIVER
# =============================================================================


class Receiver:
    """Records every POST it receives and answers with ``status_code``."""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.status_code = 200
        self.received = threading.Event()
        self.url = ""

    def json_bodies(self) -> List[Any]:
        return [json.loads(r["body"]) for r in self.requests]


@pytest.fixture
def receiver():
    state = Receiver()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            body = self.rfile.read(length)
            state.requests.append({
                "path": self.path,
                "headers": {k.lower(): v for k, v in self.headers.items()},
                "body": body,
            })
            self.send_response(state.status_code)
            self.send_header("Content-Length", "0")
            self.end_headers()
            state.received.set()

        def log_message(self, format, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    state.url = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        yield state
    finally:
        server.shutdown()
        server.server_close()
