import time

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from portal import config, security


def test_admin_auth_empty_wrong_correct(app_ctx):
    with pytest.raises(HTTPException) as exc:
        security.admin_check(None)
    assert exc.value.status_code == 401

    with pytest.raises(HTTPException) as exc:
        security.admin_check("wrong-admin-key")
    assert exc.value.status_code == 401

    security.admin_check("test-admin-key")


def test_admin_disabled_without_key(app_ctx, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_KEY", None)
    with pytest.raises(HTTPException) as exc:
        security.admin_check("anything")
    assert exc.value.status_code == 404


def test_rate_limit_target_covers_critical_endpoints():
    def target(method: str, path: str):
        scope = {
            "type": "http",
            "method": method,
            "path": path,
            "headers": [],
            "query_string": b"",
            "client": ("127.0.0.1", 12345),
            "scheme": "http",
            "server": ("testserver", 80),
            "root_path": "",
        }
        return security.rate_limit_target(Request(scope))

    assert target("POST", "/v1/auth/phone/send-otp") == ("auth", "/v1/auth/phone/send-otp")
    assert target("POST", "/v1/auth/phone/verify-otp") == ("auth", "/v1/auth/phone/verify-otp")
    assert target("POST", "/v1/auth/register") == ("auth", "/v1/auth/register")
    assert target("POST", "/v1/auth/login") is None

    assert target("POST", "/v1/chat/send") == ("chat", "/v1/chat/send")
    assert target("POST", "/v1/chat/completions") == ("chat", "/v1/chat/completions")
    assert target("POST", "/v1/images/generations") == ("images", "/v1/images/generations")
    assert target("POST", "/v1/images/generate") == ("images", "/v1/images/generate")
    assert target("POST", "/admin/users/u1/plan") == ("admin", "/admin/*")
    assert target("DELETE", "/v1/chat/sessions/abc") == ("default", "/v1/chat/sessions/abc")
    assert target("GET", "/v1/chat/sessions") is None


def test_rate_limiter_returns_429_and_recovers_after_window(app_ctx, monkeypatch):
    client = app_ctx["client"]

    monkeypatch.setitem(security.RATE_LIMITS, "auth", {"requests": 2, "window": 10})
    security._RATE_LIMIT_HITS.clear()

    clock = {"now": 1_700_000_000}
    monkeypatch.setattr(time, "time", lambda: clock["now"])

    def register(i):
        return client.post(
            "/v1/auth/register",
            json={"email": f"rate-test-{i}@example.com", "password": "password123"},
        )

    for i in range(2):
        resp = register(i)
        assert resp.status_code == 200, resp.text

    limited = register(3)
    assert limited.status_code == 429, limited.text

    clock["now"] += 11
    recovered = register(4)
    assert recovered.status_code == 200, recovered.text


def test_client_ip_prefers_forwarded_header():
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(b"x-forwarded-for", b"203.0.113.9, 10.0.0.1")],
        "query_string": b"",
        "client": ("127.0.0.1", 12345),
    }
    assert security.client_ip(Request(scope)) == "203.0.113.9"


def test_password_hashing_roundtrip():
    pw_hash = security.hash_password("password123")
    assert security.check_password("password123", pw_hash)
    assert not security.check_password("password124", pw_hash)
    assert not security.check_password("password123", None)
