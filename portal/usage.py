import datetime
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiosqlite
from fastapi import HTTPException

from portal import config, db


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    messages: int
    images: int


PLAN_LIMITS: Dict[str, PlanLimits] = {
    "free": PlanLimits(messages=50, images=5),
    "pro": PlanLimits(messages=1000, images=100),
}
PLAN_ALIASES = {
    "free": "free",
    "basic": "free",
    "pro": "pro",
    "premium": "pro",
}

CHAT_COLUMN = "chat_messages_count"
IMAGES_COLUMN = "images_generated_count"
# Only these counters may be incremented; the column name is interpolated into SQL.
USAGE_COLUMNS = {CHAT_COLUMN, IMAGES_COLUMN}


def normalize_plan_name(plan: Any, default: str = "free") -> str:
    if not isinstance(plan, str):
        return default
    key = plan.strip().lower()
    if not key:
        return default
    return PLAN_ALIASES.get(key, default)


def _today() -> datetime.date:
    g = time.gmtime(time.time())
    return datetime.date(g.tm_year, g.tm_mon, g.tm_mday)


def _reset_due(last_reset_date: Optional[str], today: datetime.date) -> bool:
    if not last_reset_date:
        return True
    try:
        last = datetime.date.fromisoformat(last_reset_date)
    except ValueError:
        return True
    return (today - last).days >= config.USAGE_RESET_DAYS


async def current_plan(user_id: str) -> Dict[str, Any]:
    now = int(time.time())
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(
            """
            SELECT id,plan_type,status,created_at,expires_at
            FROM user_plans
            WHERE user_id=? AND status='active' AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (user_id, now),
        ) as cur:
            row = await cur.fetchone()
    if not row:
        return {"plan_type": "free", "status": "active", "expires_at": None}
    return {
        "plan_type": normalize_plan_name(row["plan_type"]),
        "status": row["status"],
        "expires_at": row["expires_at"],
    }


async def set_plan(user_id: str, plan_type: str, expires_at: Optional[int] = None) -> Dict[str, Any]:
    now = int(time.time())
    async with db.connect() as conn:
        await conn.execute(
            "UPDATE user_plans SET status='inactive' WHERE user_id=? AND status='active'",
            (user_id,),
        )
        await conn.execute(
            "INSERT INTO user_plans(id,user_id,plan_type,status,created_at,expires_at) VALUES (?,?,?,?,?,?)",
            (str(uuid.uuid4()), user_id, plan_type, "active", now, expires_at),
        )
        await conn.commit()
    logger.info("plan changed: user=%s plan=%s expires_at=%s", user_id, plan_type, expires_at)
    return {"plan_type": plan_type, "status": "active", "expires_at": expires_at}


async def get_usage(user_id: str) -> Dict[str, Any]:
    """Return the user's counters, zeroing them first when the reset period has elapsed."""
    today = _today()
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(
            "SELECT chat_messages_count,images_generated_count,last_reset_date FROM user_usage WHERE user_id=?",
            (user_id,),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return {CHAT_COLUMN: 0, IMAGES_COLUMN: 0, "last_reset_date": today.isoformat()}
        if _reset_due(row["last_reset_date"], today):
            await conn.execute(
                "UPDATE user_usage SET chat_messages_count=0, images_generated_count=0, last_reset_date=? WHERE user_id=?",
                (today.isoformat(), user_id),
            )
            await conn.commit()
            return {CHAT_COLUMN: 0, IMAGES_COLUMN: 0, "last_reset_date": today.isoformat()}
        return {
            CHAT_COLUMN: int(row[CHAT_COLUMN] or 0),
            IMAGES_COLUMN: int(row[IMAGES_COLUMN] or 0),
            "last_reset_date": row["last_reset_date"],
        }


async def increment_usage(user_id: str, column: str) -> int:
    if column not in USAGE_COLUMNS:
        raise HTTPException(status_code=400, detail="invalid usage column")
    # Applies a pending reset before counting.
    await get_usage(user_id)
    today = _today().isoformat()
    async with db.connect() as conn:
        await conn.execute(
            """
            INSERT INTO user_usage(user_id, chat_messages_count, images_generated_count, last_reset_date)
            VALUES (?, 0, 0, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, today),
        )
        await conn.execute(f"UPDATE user_usage SET {column} = {column} + 1 WHERE user_id=?", (user_id,))
        await conn.commit()
        async with conn.execute(f"SELECT {column} FROM user_usage WHERE user_id=?", (user_id,)) as cur:
            row = await cur.fetchone()
    return int(row[0]) if row else 1


async def usage_summary(user_id: str) -> Dict[str, Any]:
    plan = await current_plan(user_id)
    limits = PLAN_LIMITS[plan["plan_type"]]
    usage = await get_usage(user_id)

    def percent(used: int, limit: int) -> float:
        if limit <= 0:
            return 100.0
        return round(min(100.0, used * 100.0 / limit), 1)

    return {
        "plan_type": plan["plan_type"],
        "last_reset_date": usage["last_reset_date"],
        "messages": {
            "used": usage[CHAT_COLUMN],
            "limit": limits.messages,
            "percent": percent(usage[CHAT_COLUMN], limits.messages),
        },
        "images": {
            "used": usage[IMAGES_COLUMN],
            "limit": limits.images,
            "percent": percent(usage[IMAGES_COLUMN], limits.images),
        },
    }


async def check_quota(user_id: str, column: str) -> None:
    plan = await current_plan(user_id)
    limits = PLAN_LIMITS[plan["plan_type"]]
    usage = await get_usage(user_id)
    if column == CHAT_COLUMN and usage[CHAT_COLUMN] >= limits.messages:
        raise HTTPException(status_code=429, detail="message limit reached for current plan")
    if column == IMAGES_COLUMN and usage[IMAGES_COLUMN] >= limits.images:
        raise HTTPException(status_code=429, detail="image limit reached for current plan")
