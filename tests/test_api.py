"""HTTP surface tests with FastAPI's TestClient on in-memory storage."""

import time
import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from gateway.core import config
from gateway.core.credentials import PlainCredentialStore
from gateway.core.kv_store import MemoryKeyValueStore
from gateway.core.lifespan import build_components
from gateway.main import app
from gateway.services.events import WebhookReceived
from gateway.services.job_store import MemoryJobStore


@pytest.fixture
def configure(monkeypatch, make_settings):
    """Swap the process-wide settings for the duration of a test."""
    def _configure(**overrides):
        settings = make_settings(**overrides)
        monkeypatch.setattr(config, "settings", settings)
        return settings
    return _configure


@pytest.fixture
def make_client(configure):
    clients = []

    def _make(**overrides):
        configure(**overrides)
        app.state.components = build_components(
            config.get_settings,
            kv_store=MemoryKeyValueStore(),
            job_store=MemoryJobStore(),
            credentials=PlainCredentialStore(),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
    app.state.components = None


@pytest.fixture
def client(make_client):
    return make_client()


def components():
    return app.state.components


def service_token(**claims) -> str:
    settings = config.get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "exp": int((now + timedelta(minutes=5)).timestamp()),
        "iat": int(now.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(**claims):
    return {"Authorization": f"Bearer {service_token(**claims)}"}


def webhook_headers(request_id=None, **extra):
    headers = {
        "X-API-Key": "test-api-key",
        "X-Request-ID": request_id or uuid.uuid4().hex,
        "X-Forwarded-For": "203.0.113.10",
    }
    headers.update(extra)
    return headers


# =============================================================================
# ROOT & HEALTH
# =============================================================================


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["storage_status"] == "connected"
    assert body["scheduler_status"] == "running"
    assert body["webhook_auth_method"] == "api_key"
    assert body["sqs_status"] == "disabled"


# =============================================================================
# WEBHOOK INGRESS
# =============================================================================


def test_webhook_accepted_and_published(client):
    received = []
    components().events.subscribe(WebhookReceived, received.append)

    response = client.post(
        "/api/v1/webhook",
        json={"event": "call_started", "call_id": "c-1", "agent_id": "a-1"},
        headers=webhook_headers(request_id="req-1"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["duplicate"] is False
    assert body["event"]["event"] == "call_started"
    assert body["event"]["call_id"] == "c-1"
    assert response.headers["X-RateLimit-Limit"] == "100"
    assert response.headers["X-RateLimit-Remaining"] == "99"
    assert received[0].provider == "generic"
    assert received[0].request_id == "req-1"


def test_webhook_duplicate_acknowledged_once(client):
    received = []
    components().events.subscribe(WebhookReceived, received.append)
    headers = webhook_headers(request_id="same-id")

    first = client.post("/api/v1/webhook", json={"event": "x"}, headers=headers)
    second = client.post("/api/v1/webhook", json={"event": "x"}, headers=headers)

    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert len(received) == 1


def test_webhook_missing_api_key(client):
    headers = webhook_headers()
    del headers["X-API-Key"]

    response = client.post("/api/v1/webhook", json={"event": "x"}, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"] == "api_key_missing"


def test_webhook_rejected_request_is_not_marked_seen(client):
    headers = webhook_headers(request_id="retry-me")
    bad = dict(headers, **{"X-API-Key": "wrong"})

    assert client.post("/api/v1/webhook", json={"event": "x"}, headers=bad).status_code == 401
    response = client.post("/api/v1/webhook", json={"event": "x"}, headers=headers)

    assert response.json()["duplicate"] is False


def test_webhook_ip_not_allowed(make_client):
    client = make_client(WEBHOOK_IP_WHITELIST="10.0.0.0/8")

    denied = client.post("/api/v1/webhook", json={"event": "x"}, headers=webhook_headers())
    allowed = client.post(
        "/api/v1/webhook",
        json={"event": "x"},
        headers=webhook_headers(**{"X-Forwarded-For": "10.1.2.3"}),
    )

    assert denied.status_code == 403
    assert denied.json()["error"] == "ip_not_allowed"
    assert allowed.status_code == 200


def test_webhook_rate_limited(make_client):
    client = make_client(RATE_LIMIT_PRESET_OVERRIDES={"webhooks": {"bucket_size": 2, "refill_rate": 0.1}})

    for _ in range(2):
        assert client.post("/api/v1/webhook", json={"event": "x"}, headers=webhook_headers()).status_code == 200
    limited_headers = webhook_headers(request_id="third")
    response = client.post("/api/v1/webhook", json={"event": "x"}, headers=limited_headers)

    assert response.status_code == 429
    assert response.json()["error"] == "rate_limited"
    assert int(response.headers["Retry-After"]) >= 1
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "0"

    # The sender's redelivery is processed once tokens are back
    components().rate_limiter("webhooks").reset_bucket("webhook:203.0.113.10")
    retry = client.post("/api/v1/webhook", json={"event": "x"}, headers=limited_headers)
    assert retry.status_code == 200
    assert retry.json()["duplicate"] is False


def test_webhook_invalid_json(client):
    response = client.post("/api/v1/webhook", content=b"not json", headers=webhook_headers())

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_json"


def test_webhook_unknown_provider_is_not_marked_seen(client):
    received = []
    components().events.subscribe(WebhookReceived, received.append)
    headers = webhook_headers(request_id="prov-1", **{"X-Provider": "acme"})

    response = client.post("/api/v1/webhook", json={"event": "x"}, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_provider"

    class AcmeNormalizer:
        name = "acme"

        def normalize(self, raw_event):
            return {"event": raw_event["event"], "data": {}}

    components().providers.register("acme", AcmeNormalizer)
    redelivery = client.post("/api/v1/webhook", json={"event": "x"}, headers=headers)

    assert redelivery.status_code == 200
    assert redelivery.json()["duplicate"] is False
    assert [event.provider for event in received] == ["acme"]


def test_webhook_invalid_auth_method_fails_closed(make_client):
    client = make_client(WEBHOOK_AUTH_METHOD="magic")

    response = client.post("/api/v1/webhook", json={"event": "x"}, headers=webhook_headers())

    assert response.status_code == 500
    assert response.json()["error"] == "invalid_auth_method"


def test_webhook_hmac(make_client):
    from gateway.services.webhook_authenticator import compute_signature

    client = make_client(WEBHOOK_AUTH_METHOD="hmac")
    body = b'{"event":"transcript","data":{"text":"hello"}}'
    headers = webhook_headers(**{
        "X-Webhook-Signature": compute_signature(body, "test-webhook-secret"),
        "Content-Type": "application/json",
    })

    response = client.post("/api/v1/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["event"]["data"] == {"text": "hello"}


# =============================================================================
# JOBS
# =============================================================================


def wait_for_status(client, job_id, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/jobs/{job_id}", headers=auth_headers()).json()
        if body.get("status") == status:
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} never reached {status}")


def test_submit_job_and_poll_until_completed(client):
    response = client.post(
        "/api/v1/jobs",
        json={"job_type": "transcribe", "input_data": {"audio_url": "s3://a"}, "session_id": "s1"},
        headers=auth_headers(),
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert response.headers["X-RateLimit-Limit"] == "10"

    status = wait_for_status(client, body["job_id"], "completed")
    assert status["output_data"] == {"text": "", "confidence": 0}
    assert "input_data" not in status


def test_submit_job_invalid_type(client):
    response = client.post("/api/v1/jobs", json={"job_type": "fax"}, headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_job_type"


def test_submit_job_rate_limited_per_session(client):
    for _ in range(10):
        ok = client.post(
            "/api/v1/jobs", json={"job_type": "tts", "session_id": "busy"}, headers=auth_headers()
        )
        assert ok.status_code == 202

    response = client.post(
        "/api/v1/jobs", json={"job_type": "tts", "session_id": "busy"}, headers=auth_headers()
    )
    other = client.post(
        "/api/v1/jobs", json={"job_type": "tts", "session_id": "calm"}, headers=auth_headers()
    )

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "6"
    assert other.status_code == 202


def test_job_status_not_found(client):
    response = client.get("/api/v1/jobs/nope", headers=auth_headers())

    assert response.status_code == 404
    assert response.json()["error"] == "job_not_found"


def test_jobs_require_token(client):
    response = client.post("/api/v1/jobs", json={"job_type": "transcribe"})

    assert response.status_code == 403


def test_replayed_token_rejected(client):
    headers = auth_headers()

    first = client.post("/api/v1/jobs", json={"job_type": "transcribe"}, headers=headers)
    replay = client.post("/api/v1/jobs", json={"job_type": "transcribe"}, headers=headers)

    assert first.status_code == 202
    assert replay.status_code == 401


def test_token_with_wrong_audience_rejected(client):
    response = client.post(
        "/api/v1/jobs", json={"job_type": "transcribe"}, headers=auth_headers(aud="someone-else")
    )

    assert response.status_code == 401


def test_missing_jwt_secret_fails_closed(make_client):
    client = make_client(JWT_SECRET_KEY=None)
    token = jwt.encode({"iss": "x", "aud": "y", "jti": "z"}, "whatever", algorithm="HS256")

    response = client.post(
        "/api/v1/jobs", json={"job_type": "transcribe"}, headers={"Authorization": f"Bearer {token}"}
    )

    assert response.status_code == 500


# =============================================================================
# RATE LIMIT INSPECTION
# =============================================================================


def test_bucket_state_endpoint(client):
    client.post("/api/v1/webhook", json={"event": "x"}, headers=webhook_headers())

    response = client.get("/api/v1/rate-limit/webhooks/webhook:203.0.113.10", headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["preset"] == "webhooks"
    assert body["bucket_size"] == 100
    assert 99 <= body["tokens"] <= 100
