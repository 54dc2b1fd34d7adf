import time

import pytest
from fastapi import HTTPException

from niblet.utils import security


@pytest.fixture(autouse=True)
def reset_security_state(monkeypatch):
    monkeypatch.delenv("API_AUTH_TOKEN", raising=False)
    monkeypatch.delenv("API_RATE_LIMIT", raising=False)
    monkeypatch.delenv("API_RATE_WINDOW", raising=False)
    security.reset_rate_limiter()
    yield
    security.reset_rate_limiter()


def test_verify_api_key_with_token(monkeypatch):
    monkeypatch.setenv("API_AUTH_TOKEN", "token")

    security.verify_api_key("token")

    with pytest.raises(HTTPException) as info:
        security.verify_api_key("other")
    assert info.value.status_code == 401

    with pytest.raises(HTTPException):
        security.verify_api_key(None)


def test_verify_api_key_open_without_token():
    security.verify_api_key(None)
    security.verify_api_key("anything")


def test_rate_limiter_enforces_limit():
    limiter = security.RateLimiter(limit=2, window_seconds=60)

    limiter.allow("client")
    limiter.allow("client")

    with pytest.raises(HTTPException) as info:
        limiter.allow("client")
    assert info.value.status_code == 429

    limiter.allow("someone-else")


def test_rate_limiter_window_allows_after_interval(monkeypatch):
    limiter = security.RateLimiter(limit=1, window_seconds=1)

    limiter.allow("client")

    original_time = time.time
    monkeypatch.setattr(security.time, "time", lambda: original_time() + 2)

    limiter.allow("client")


def test_get_rate_limiter_reads_env(monkeypatch):
    monkeypatch.setenv("API_RATE_LIMIT", "3")
    monkeypatch.setenv("API_RATE_WINDOW", "10")

    limiter = security.get_rate_limiter()

    assert limiter.limit == 3
    assert limiter.window == 10
    assert security.get_rate_limiter() is limiter
