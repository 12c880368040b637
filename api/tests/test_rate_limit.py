from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
import app.core.rate_limit as rate_limit
from app.core.rate_limit import FixedWindowRateLimiter, RateLimit, get_rate_limiter
from app.main import app
from app.services.repository import get_job_store


def test_fixed_window_counts_per_key() -> None:
    limiter = FixedWindowRateLimiter(limit=RateLimit(max_requests=2, window_seconds=60))

    assert limiter.check("a", now=0.0).allowed
    assert limiter.check("a", now=1.0).remaining == 0
    denied = limiter.check("a", now=2.0)
    assert not denied.allowed
    assert denied.retry_after_seconds == 58
    assert limiter.check("b", now=2.0).allowed


def test_fixed_window_resets_on_next_window() -> None:
    limiter = FixedWindowRateLimiter(limit=RateLimit(max_requests=1, window_seconds=10))

    assert limiter.check("a", now=9.0).allowed
    assert not limiter.check("a", now=9.5).allowed
    assert limiter.check("a", now=10.0).allowed


def test_tracked_keys_are_capped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(rate_limit, "MAX_TRACKED_KEYS", 3)
    limiter = FixedWindowRateLimiter(limit=RateLimit(max_requests=1, window_seconds=60))

    assert limiter.check("busy", now=0.0).allowed
    for index in range(10):
        limiter.check(f"spray-{index}", now=1.0)

    assert limiter.tracked_keys == 3
    assert limiter.check("spray-9", now=2.0).allowed is False


@pytest.fixture
def limited_client(store, settings) -> Iterator[TestClient]:
    limited_settings = settings.model_copy(update={"rate_limit_enabled": True})
    limiter = FixedWindowRateLimiter(limit=RateLimit(max_requests=2, window_seconds=60))
    app.dependency_overrides[get_settings] = lambda: limited_settings
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_job_store] = lambda: store

    yield TestClient(app)

    app.dependency_overrides.clear()


def test_callback_endpoint_is_rate_limited(limited_client: TestClient) -> None:
    headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "X-Job-Token": "token"}
    body = {"jobId": "missing", "type": "progress"}

    for _ in range(2):
        response = limited_client.post("/webhooks/job-callback", json=body, headers=headers)
        assert response.status_code == 404

    response = limited_client.post("/webhooks/job-callback", json=body, headers=headers)
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1

    spoofed = limited_client.post(
        "/webhooks/job-callback",
        json=body,
        headers={"X-Forwarded-For": "198.51.100.7", "X-Real-IP": "198.51.100.8", "X-Job-Token": "token"},
    )
    assert spoofed.status_code == 429


def test_rotating_forwarded_for_does_not_bypass_limit(limited_client: TestClient) -> None:
    body = {"jobId": "missing", "type": "progress"}
    codes = [
        limited_client.post(
            "/webhooks/job-callback",
            json=body,
            headers={"X-Forwarded-For": f"203.0.113.{index}", "X-Job-Token": "token"},
        ).status_code
        for index in range(10)
    ]

    assert codes[:2] == [404, 404]
    assert set(codes[2:]) == {429}


def test_reads_are_not_rate_limited(limited_client: TestClient) -> None:
    for _ in range(5):
        assert limited_client.get("/jobs/missing/status").status_code == 404
