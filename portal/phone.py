import logging
import re
import secrets
import time
import uuid
from typing import Any, Dict, Optional

import aiosqlite
import httpx
from fastapi import HTTPException

from portal import config, db, upstream


logger = logging.getLogger(__name__)

_IRANIAN_MOBILE_RE = re.compile(r"^(\+98|0098|98|0)?9[0-9]{9}$")

OTP_MESSAGE_TEMPLATE = "کد تأیید شما: {code}"


class SmsDeliveryError(Exception):
    pass


def _compact(phone: str) -> str:
    return re.sub(r"[\s\-()]", "", phone or "")


def is_valid_iranian_phone(phone: str) -> bool:
    return _IRANIAN_MOBILE_RE.fullmatch(_compact(phone)) is not None


def normalize_phone(phone: str) -> str:
    """Canonical ``+989xxxxxxxxx`` form of any accepted spelling."""
    compact = _compact(phone)
    m = _IRANIAN_MOBILE_RE.fullmatch(compact)
    if not m:
        raise ValueError(f"not an Iranian mobile number: {phone!r}")
    return "+98" + compact[len(m.group(1) or "") :]


def to_local_format(phone: str) -> str:
    return "0" + normalize_phone(phone)[len("+98") :]


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


async def send_otp_sms(phone_number: str, code: str) -> Dict[str, Any]:
    api_key = upstream.require_key("kavenegar")
    url = f"{config.KAVENEGAR_BASE_URL}/{api_key}/sms/send.json"
    form = {
        "receptor": to_local_format(phone_number),
        "message": OTP_MESSAGE_TEMPLATE.format(code=code),
        "sender": config.KAVENEGAR_SENDER,
    }
    try:
        async with upstream.async_client(timeout=15) as client:
            resp = await client.post(url, data=form)
    except httpx.HTTPError as e:
        raise SmsDeliveryError(f"sms gateway unreachable: {e.__class__.__name__}") from e

    try:
        payload: Any = resp.json()
    except ValueError:
        payload = {}
    ret = payload.get("return") if isinstance(payload, dict) else None
    status = ret.get("status") if isinstance(ret, dict) else None

    if resp.status_code == 403:
        raise SmsDeliveryError("sms gateway rejected the api key")
    if resp.status_code >= 400 or status != 200:
        message = ret.get("message") if isinstance(ret, dict) else None
        raise SmsDeliveryError(f"sms gateway error: {message or resp.status_code}")
    return payload


async def create_otp(phone_number: str) -> str:
    """Store a fresh code for ``phone_number`` (already normalized)."""
    now = int(time.time())
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("DELETE FROM phone_otp_codes WHERE expires_at <= ?", (now,))
        async with conn.execute(
            """
            SELECT created_at FROM phone_otp_codes
            WHERE phone_number=? AND created_at > ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (phone_number, now - config.OTP_RESEND_SECONDS),
        ) as cur:
            recent = await cur.fetchone()
        if recent:
            await conn.commit()
            raise HTTPException(status_code=429, detail="please wait before requesting a new code")

        code = generate_otp()
        await conn.execute(
            """
            INSERT INTO phone_otp_codes(id,phone_number,otp_code,verified,attempts,created_at,expires_at)
            VALUES (?,?,?,0,0,?,?)
            """,
            (str(uuid.uuid4()), phone_number, code, now, now + config.OTP_TTL_SECONDS),
        )
        await conn.commit()
    return code


async def discard_otp(phone_number: str, code: str) -> None:
    async with db.connect() as conn:
        await conn.execute(
            "DELETE FROM phone_otp_codes WHERE phone_number=? AND otp_code=? AND verified=0",
            (phone_number, code),
        )
        await conn.commit()


async def verify_otp(phone_number: str, code: str) -> None:
    now = int(time.time())
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(
            """
            SELECT id,attempts FROM phone_otp_codes
            WHERE phone_number=? AND otp_code=? AND verified=0 AND expires_at > ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (phone_number, code, now),
        ) as cur:
            row = await cur.fetchone()

        if not row:
            await conn.execute(
                "UPDATE phone_otp_codes SET attempts = attempts + 1 WHERE phone_number=? AND verified=0",
                (phone_number,),
            )
            await conn.commit()
            raise HTTPException(status_code=400, detail="invalid or expired code")

        if int(row["attempts"] or 0) >= config.OTP_MAX_ATTEMPTS:
            raise HTTPException(status_code=429, detail="too many attempts, request a new code")

        await conn.execute("UPDATE phone_otp_codes SET verified=1 WHERE id=?", (row["id"],))
        await conn.commit()


async def login_phone_user(phone_number: str) -> Dict[str, Any]:
    now = int(time.time())
    user: Optional[Dict[str, Any]] = await db.get_user_by_phone(phone_number)
    async with db.connect() as conn:
        if user:
            await conn.execute(
                "UPDATE users SET last_login_at=?, updated_at=? WHERE id=?",
                (now, now, user["id"]),
            )
        else:
            await conn.execute(
                """
                INSERT INTO users(id,phone_number,full_name,created_at,updated_at,last_login_at)
                VALUES (?,?,?,?,?,?)
                """,
                (str(uuid.uuid4()), phone_number, "", now, now, now),
            )
            logger.info("created phone user for %s", phone_number[:-4] + "****")
        await conn.commit()
    user = await db.get_user_by_phone(phone_number)
    if not user:
        raise HTTPException(status_code=500, detail="failed to create user")
    return user
