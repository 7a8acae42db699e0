import re
import secrets
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
import jwt
from fastapi import HTTPException, Request
from jwt import InvalidTokenError

from portal import config, db


# RFC 5322 (simplified) email regex. We also enforce max length (254) separately.
_EMAIL_RE = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)

_LOGIN_FAILURES: Dict[str, List[int]] = {}
_LOGIN_FAILS_PER_MINUTE = 5
_LOGIN_FAIL_WINDOW_SECS = 60
_LOGIN_LOCKOUT_SECS = 300  # 5 minutes
RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "auth": {"requests": 10, "window": 300},
    "chat": {"requests": 60, "window": 60},
    "images": {"requests": 20, "window": 60},
    "admin": {"requests": 5, "window": 60},
    "default": {"requests": 120, "window": 60},
}
_RATE_LIMIT_HITS: Dict[str, List[int]] = {}
_RATE_LIMIT_LOCK = Lock()


def client_ip(request: Request) -> str:
    # Prefer X-Forwarded-For when behind a proxy; otherwise fall back to peer address.
    xff = request.headers.get("x-forwarded-for")
    if isinstance(xff, str) and xff.strip():
        return xff.split(",")[0].strip() or "unknown"
    if request.client and getattr(request.client, "host", None):
        return str(request.client.host)
    return "unknown"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email_norm: str) -> bool:
    if not isinstance(email_norm, str):
        return False
    if not email_norm or len(email_norm) > 254:
        return False
    return _EMAIL_RE.fullmatch(email_norm) is not None


def is_login_rate_limited(ip: str, now: int) -> bool:
    ts = _LOGIN_FAILURES.get(ip) or []
    cutoff = now - (_LOGIN_LOCKOUT_SECS + _LOGIN_FAIL_WINDOW_SECS)
    ts = [t for t in ts if isinstance(t, int) and t >= cutoff]
    _LOGIN_FAILURES[ip] = ts

    # Lock for 5 minutes from the 5th failure of any 60s group.
    lockout_until = 0
    if len(ts) >= _LOGIN_FAILS_PER_MINUTE:
        for i in range(_LOGIN_FAILS_PER_MINUTE - 1, len(ts)):
            if ts[i] - ts[i - (_LOGIN_FAILS_PER_MINUTE - 1)] <= _LOGIN_FAIL_WINDOW_SECS:
                lockout_until = max(lockout_until, ts[i] + _LOGIN_LOCKOUT_SECS)
    return now < lockout_until


def record_login_failure(ip: str, now: int) -> None:
    ts = _LOGIN_FAILURES.get(ip) or []
    ts.append(int(now))
    _LOGIN_FAILURES[ip] = ts


def clear_login_failures(ip: str) -> None:
    _LOGIN_FAILURES.pop(ip, None)


def rate_limit_target(request: Request) -> Optional[Tuple[str, str]]:
    method = request.method.upper()
    path = request.url.path

    # /v1/auth/login has its own failure lockout.
    if method == "POST" and path == "/v1/auth/login":
        return None

    if method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return None

    if method == "POST" and path in {
        "/v1/auth/register",
        "/v1/auth/phone/send-otp",
        "/v1/auth/phone/verify-otp",
    }:
        return ("auth", path)

    if method == "POST" and path in {"/v1/chat/send", "/v1/chat/completions"}:
        return ("chat", path)

    if method == "POST" and path in {"/v1/images/generate", "/v1/images/generations", "/v1/enhance"}:
        return ("images", path)

    if path.startswith("/admin/"):
        return ("admin", "/admin/*")

    return ("default", path)


async def enforce_rate_limit(request: Request) -> None:
    target = rate_limit_target(request)
    if not target:
        return

    bucket, endpoint = target
    conf = RATE_LIMITS.get(bucket) or RATE_LIMITS["default"]
    max_requests = int(conf.get("requests") or 1)
    window = int(conf.get("window") or 1)
    now = int(time.time())
    cutoff = now - window
    key = f"{bucket}:{client_ip(request)}:{endpoint}"

    with _RATE_LIMIT_LOCK:
        hits = [t for t in (_RATE_LIMIT_HITS.get(key) or []) if isinstance(t, int) and t > cutoff]
        if len(hits) >= max_requests:
            _RATE_LIMIT_HITS[key] = hits
            raise HTTPException(status_code=429, detail="too many requests")
        hits.append(now)
        _RATE_LIMIT_HITS[key] = hits


# -----------------------------
# Passwords / tokens
# -----------------------------

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, pw_hash: Optional[str]) -> bool:
    if not isinstance(pw_hash, str) or not pw_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), pw_hash.encode("utf-8"))
    except ValueError:
        return False


def issue_token(user: Dict[str, Any], now: Optional[int] = None) -> Tuple[str, int]:
    now = int(now or time.time())
    expires_at = now + config.JWT_TTL_SECONDS
    payload = {
        "sub": str(user["id"]),
        "user_id": str(user["id"]),
        "phone_number": user.get("phone_number"),
        "full_name": user.get("full_name") or "",
        "iat": now,
        "exp": expires_at,
    }
    token = jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
    return token, expires_at


def decode_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token expired")
    except InvalidTokenError:
        raise HTTPException(status_code=401, detail="invalid token")
    if not isinstance(claims.get("sub"), str) or not claims["sub"]:
        raise HTTPException(status_code=401, detail="invalid token")
    return claims


def parse_bearer(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    v = auth_header.strip()
    if not v.lower().startswith("bearer "):
        return None
    token = v[7:].strip()
    return token or None


async def require_user(request: Request) -> Dict[str, Any]:
    token = parse_bearer(request.headers.get("authorization"))
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    claims = decode_token(token)
    user = await db.get_user_by_id(claims["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="user not found")
    return user


def admin_key_matches(x_admin_key: Optional[str]) -> bool:
    if not config.ADMIN_KEY:
        return False
    provided = x_admin_key or ""
    return secrets.compare_digest(provided, config.ADMIN_KEY)


def admin_check(x_admin_key: Optional[str]) -> None:
    if not config.ADMIN_KEY:
        raise HTTPException(status_code=404, detail="admin disabled")
    if not admin_key_matches(x_admin_key):
        raise HTTPException(status_code=401, detail="bad admin key")
