import asyncio
import time
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from conftest import query

from portal import config, phone, upstream


@pytest.mark.parametrize(
    "raw",
    ["09121234567", "9121234567", "+989121234567", "00989121234567", "989121234567", "0912 123 4567"],
)
def test_phone_spellings_normalize_to_one_form(raw):
    assert phone.is_valid_iranian_phone(raw)
    assert phone.normalize_phone(raw) == "+989121234567"
    assert phone.to_local_format(raw) == "09121234567"


@pytest.mark.parametrize("raw", ["", "0812345678", "+1 555 0100", "0912123456", "091212345678"])
def test_invalid_phone_numbers(raw):
    assert not phone.is_valid_iranian_phone(raw)


def test_generate_otp_is_six_digits():
    codes = {phone.generate_otp() for _ in range(50)}
    assert all(len(c) == 6 and c.isdigit() and not c.startswith("0") for c in codes)


def _send(client, number="09121234567"):
    return client.post("/v1/auth/phone/send-otp", json={"phone_number": number})


def test_phone_login_flow_creates_user_and_issues_jwt(app_ctx):
    client = app_ctx["client"]
    sent = _send(client)
    assert sent.status_code == 200, sent.text
    code = sent.json()["dev_otp"]

    resp = client.post("/v1/auth/phone/verify-otp", json={"phone_number": "+989121234567", "otp_code": code})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["success"] is True
    assert data["user"]["phone_number"] == "+989121234567"

    claims = jwt.decode(data["token"], config.JWT_SECRET, algorithms=["HS256"])
    assert claims["user_id"] == data["user"]["id"]
    assert claims["phone_number"] == "+989121234567"
    assert claims["exp"] - claims["iat"] == 24 * 60 * 60

    profile = client.get("/v1/user/profile", headers={"Authorization": f"Bearer {data['token']}"})
    assert profile.status_code == 200
    assert profile.json()["id"] == data["user"]["id"]

    # The same code cannot be used twice.
    again = client.post("/v1/auth/phone/verify-otp", json={"phone_number": "09121234567", "otp_code": code})
    assert again.status_code == 400


def test_second_login_reuses_phone_user(app_ctx, monkeypatch):
    client = app_ctx["client"]
    clock = {"now": int(time.time())}
    monkeypatch.setattr(time, "time", lambda: clock["now"])

    first = client.post(
        "/v1/auth/phone/verify-otp",
        json={"phone_number": "09121234567", "otp_code": _send(client).json()["dev_otp"]},
    ).json()
    clock["now"] += 61
    second = client.post(
        "/v1/auth/phone/verify-otp",
        json={"phone_number": "09121234567", "otp_code": _send(client).json()["dev_otp"]},
    ).json()

    assert first["user"]["id"] == second["user"]["id"]
    assert len(query("SELECT id FROM users WHERE phone_number=?", ("+989121234567",))) == 1


def test_send_otp_rejects_resend_within_a_minute(app_ctx, monkeypatch):
    client = app_ctx["client"]
    clock = {"now": 1_700_000_000}
    monkeypatch.setattr(time, "time", lambda: clock["now"])

    assert _send(client).status_code == 200
    clock["now"] += 30
    assert _send(client).status_code == 429
    clock["now"] += 31
    assert _send(client).status_code == 200


def test_send_otp_validates_phone(app_ctx):
    client = app_ctx["client"]
    assert _send(client, "12345").status_code == 400
    assert client.post("/v1/auth/phone/send-otp", json={}).status_code == 400
    assert client.post("/v1/auth/phone/send-otp", content=b"not json").status_code == 400


def test_wrong_codes_lock_out_the_phone(app_ctx):
    client = app_ctx["client"]
    code = _send(client).json()["dev_otp"]
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(config.OTP_MAX_ATTEMPTS):
        resp = client.post("/v1/auth/phone/verify-otp", json={"phone_number": "09121234567", "otp_code": wrong})
        assert resp.status_code == 400

    locked = client.post("/v1/auth/phone/verify-otp", json={"phone_number": "09121234567", "otp_code": code})
    assert locked.status_code == 429


def test_expired_code_is_rejected(app_ctx, monkeypatch):
    client = app_ctx["client"]
    clock = {"now": 1_700_000_000}
    monkeypatch.setattr(time, "time", lambda: clock["now"])

    code = _send(client).json()["dev_otp"]
    clock["now"] += config.OTP_TTL_SECONDS + 1
    resp = client.post("/v1/auth/phone/verify-otp", json={"phone_number": "09121234567", "otp_code": code})
    assert resp.status_code == 400


def test_send_otp_without_gateway_outside_mock_mode(app_ctx, monkeypatch):
    monkeypatch.setattr(config, "MOCK_MODE", False)
    assert _send(app_ctx["client"]).status_code == 500


def _use_transport(monkeypatch, handler):
    def factory(timeout=60):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=timeout)

    monkeypatch.setattr(upstream, "async_client", factory)


def test_kavenegar_request_shape(monkeypatch):
    monkeypatch.setattr(config, "KAVENEGAR_API_KEY", "kv-key")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode("utf-8"))
        return httpx.Response(200, json={"return": {"status": 200, "message": "ok"}, "entries": []})

    _use_transport(monkeypatch, handler)
    asyncio.run(phone.send_otp_sms("+989121234567", "123456"))

    assert seen["url"] == "https://api.kavenegar.com/v1/kv-key/sms/send.json"
    assert seen["form"]["receptor"] == ["09121234567"]
    assert seen["form"]["sender"] == ["2000660110"]
    assert "123456" in seen["form"]["message"][0]


def test_sms_failure_discards_code_and_returns_502(app_ctx, monkeypatch):
    monkeypatch.setattr(config, "KAVENEGAR_API_KEY", "kv-key")
    _use_transport(
        monkeypatch,
        lambda request: httpx.Response(200, json={"return": {"status": 418, "message": "credit"}}),
    )

    resp = _send(app_ctx["client"])
    assert resp.status_code == 502
    assert query("SELECT COUNT(1) AS n FROM phone_otp_codes")[0]["n"] == 0


def test_sms_gateway_auth_error(monkeypatch):
    monkeypatch.setattr(config, "KAVENEGAR_API_KEY", "kv-key")
    _use_transport(monkeypatch, lambda request: httpx.Response(403, json={"return": {"status": 403}}))

    with pytest.raises(phone.SmsDeliveryError):
        asyncio.run(phone.send_otp_sms("+989121234567", "123456"))


# -----------------------------
# Email accounts
# -----------------------------

def test_register_login_and_profile_update(app_ctx):
    client = app_ctx["client"]
    reg = client.post(
        "/v1/auth/register",
        json={"email": "New@Example.com", "password": "password123", "full_name": "New User"},
    )
    assert reg.status_code == 200, reg.text
    assert reg.json()["user"]["email"] == "new@example.com"

    dup = client.post("/v1/auth/register", json={"email": "new@example.com", "password": "password123"})
    assert dup.status_code == 409

    bad = client.post("/v1/auth/login", json={"email": "new@example.com", "password": "wrong-password"})
    assert bad.status_code == 401

    login = client.post("/v1/auth/login", json={"email": "new@example.com", "password": "password123"})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    updated = client.put("/v1/user/profile", json={"full_name": "Renamed"}, headers=headers)
    assert updated.json()["full_name"] == "Renamed"
    assert client.put("/v1/user/profile", json={"full_name": "x" * 101}, headers=headers).status_code == 400


def test_register_validation(app_ctx):
    client = app_ctx["client"]
    assert client.post("/v1/auth/register", json={"email": "nope", "password": "password123"}).status_code == 400
    assert client.post("/v1/auth/register", json={"email": "a@b.com", "password": "short"}).status_code == 400


def test_login_lockout_after_repeated_failures(app_ctx):
    client = app_ctx["client"]
    for _ in range(5):
        resp = client.post("/v1/auth/login", json={"email": "user@example.com", "password": "wrong-password"})
        assert resp.status_code == 401
    locked = client.post("/v1/auth/login", json={"email": "user@example.com", "password": "wrong-password"})
    assert locked.status_code == 429


def test_bearer_token_checks(app_ctx, monkeypatch):
    client = app_ctx["client"]
    assert client.get("/v1/user/profile").status_code == 401
    assert client.get("/v1/user/profile", headers={"Authorization": "Bearer garbage"}).status_code == 401

    forged = jwt.encode({"sub": app_ctx["user"]["id"], "exp": int(time.time()) + 60}, "other-secret", algorithm="HS256")
    assert client.get("/v1/user/profile", headers={"Authorization": f"Bearer {forged}"}).status_code == 401

    expired = jwt.encode({"sub": app_ctx["user"]["id"], "exp": int(time.time()) - 60}, config.JWT_SECRET, algorithm="HS256")
    resp = client.get("/v1/user/profile", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "token expired"

    assert client.get("/v1/user/profile", headers=app_ctx["headers"]).status_code == 200
