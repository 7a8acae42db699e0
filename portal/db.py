import os
import time
import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from portal import config


def _ensure_dir(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def connect() -> aiosqlite.Connection:
    return aiosqlite.connect(config.DB_PATH)


async def init_db() -> None:
    _ensure_dir(config.DB_PATH)
    async with connect() as db:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              email TEXT UNIQUE,
              password_hash TEXT,
              phone_number TEXT UNIQUE,
              full_name TEXT DEFAULT '',
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              last_login_at INTEGER
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS phone_otp_codes (
              id TEXT PRIMARY KEY,
              phone_number TEXT NOT NULL,
              otp_code TEXT NOT NULL,
              verified INTEGER NOT NULL DEFAULT 0,
              attempts INTEGER NOT NULL DEFAULT 0,
              created_at INTEGER NOT NULL,
              expires_at INTEGER NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_otp_phone ON phone_otp_codes(phone_number, created_at)")
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              title TEXT NOT NULL,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON chat_sessions(user_id, updated_at)")
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
              id TEXT PRIMARY KEY,
              session_id TEXT NOT NULL,
              role TEXT NOT NULL,
              content TEXT NOT NULL,
              message_type TEXT NOT NULL DEFAULT 'chat',
              image_url TEXT,
              created_at INTEGER NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON chat_messages(session_id, created_at)")
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_image_requests (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              session_id TEXT NOT NULL,
              prompt TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'pending',
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS image_generations (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              prompt TEXT NOT NULL,
              negative_prompt TEXT,
              model_type TEXT NOT NULL,
              model_name TEXT,
              status TEXT NOT NULL DEFAULT 'pending',
              prediction_id TEXT,
              image_url TEXT,
              error_message TEXT,
              width INTEGER,
              height INTEGER,
              steps INTEGER,
              cfg_scale REAL,
              created_at INTEGER NOT NULL,
              completed_at INTEGER
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_generations_user ON image_generations(user_id, created_at)")
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS image_library (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              session_id TEXT,
              prompt TEXT NOT NULL,
              image_url TEXT NOT NULL,
              model_used TEXT NOT NULL,
              aspect_ratio TEXT NOT NULL DEFAULT '1:1',
              created_at INTEGER NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_library_user ON image_library(user_id, created_at)")
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_usage (
              user_id TEXT PRIMARY KEY,
              chat_messages_count INTEGER NOT NULL DEFAULT 0,
              images_generated_count INTEGER NOT NULL DEFAULT 0,
              last_reset_date TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_plans (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              plan_type TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'active',
              created_at INTEGER NOT NULL,
              expires_at INTEGER
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_plans_user ON user_plans(user_id, created_at)")
        await db.commit()


# -----------------------------
# Users
# -----------------------------

_USER_COLUMNS = "id,email,password_hash,phone_number,full_name,created_at,updated_at,last_login_at"


async def _get_user_where(clause: str, value: str) -> Optional[Dict[str, Any]]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE {clause}=?", (value,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None


async def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    return await _get_user_where("id", user_id)


async def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return await _get_user_where("email", email)


async def get_user_by_phone(phone_number: str) -> Optional[Dict[str, Any]]:
    return await _get_user_where("phone_number", phone_number)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user.get("email"),
        "phone_number": user.get("phone_number"),
        "full_name": user.get("full_name") or "",
        "created_at": user.get("created_at"),
        "last_login_at": user.get("last_login_at"),
    }


# -----------------------------
# Chat sessions / messages
# -----------------------------

def session_title(first_message: str) -> str:
    text = (first_message or "").strip()
    if len(text) > 50:
        return text[:50] + "..."
    return text


async def create_session(user_id: str, first_message: str) -> Dict[str, Any]:
    now = int(time.time())
    session = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "title": session_title(first_message) or "New chat",
        "created_at": now,
        "updated_at": now,
    }
    async with connect() as db:
        await db.execute(
            "INSERT INTO chat_sessions(id,user_id,title,created_at,updated_at) VALUES (?,?,?,?,?)",
            (session["id"], user_id, session["title"], now, now),
        )
        await db.commit()
    return session


async def get_session(session_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT id,user_id,title,created_at,updated_at FROM chat_sessions WHERE id=? AND user_id=?",
            (session_id, user_id),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None


async def touch_session(session_id: str) -> None:
    async with connect() as db:
        await db.execute("UPDATE chat_sessions SET updated_at=? WHERE id=?", (int(time.time()), session_id))
        await db.commit()


async def add_message(
    session_id: str,
    role: str,
    content: str,
    *,
    message_type: str = "chat",
    image_url: Optional[str] = None,
) -> Dict[str, Any]:
    message = {
        "id": str(uuid.uuid4()),
        "session_id": session_id,
        "role": role,
        "content": content,
        "message_type": message_type,
        "image_url": image_url,
        "created_at": int(time.time()),
    }
    async with connect() as db:
        await db.execute(
            """
            INSERT INTO chat_messages(id,session_id,role,content,message_type,image_url,created_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                message["id"],
                session_id,
                role,
                content,
                message_type,
                image_url,
                message["created_at"],
            ),
        )
        await db.commit()
    return message


async def list_messages(session_id: str, message_type: str = "chat") -> List[Dict[str, Any]]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """
            SELECT id,session_id,role,content,message_type,image_url,created_at
            FROM chat_messages
            WHERE session_id=? AND message_type=?
            ORDER BY created_at ASC, rowid ASC
            """,
            (session_id, message_type),
        ) as cur:
            rows = await cur.fetchall()
    return [dict(r) for r in rows]


# -----------------------------
# Pending image requests
# -----------------------------

async def save_pending_image_request(user_id: str, session_id: str, prompt: str) -> str:
    now = int(time.time())
    request_id = str(uuid.uuid4())
    async with connect() as db:
        # A newer request supersedes any unanswered one in the same session.
        await db.execute(
            "UPDATE pending_image_requests SET status='superseded', updated_at=? WHERE session_id=? AND status='pending'",
            (now, session_id),
        )
        await db.execute(
            """
            INSERT INTO pending_image_requests(id,user_id,session_id,prompt,status,created_at,updated_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (request_id, user_id, session_id, prompt, "pending", now, now),
        )
        await db.commit()
    return request_id


async def get_pending_image_request(session_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """
            SELECT id,user_id,session_id,prompt,status,created_at,updated_at
            FROM pending_image_requests
            WHERE session_id=? AND user_id=? AND status='pending'
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (session_id, user_id),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None


async def complete_pending_image_request(request_id: str) -> None:
    async with connect() as db:
        await db.execute(
            "UPDATE pending_image_requests SET status='completed', updated_at=? WHERE id=?",
            (int(time.time()), request_id),
        )
        await db.commit()


# -----------------------------
# Image library
# -----------------------------

async def add_library_image(
    *,
    user_id: str,
    prompt: str,
    image_url: str,
    model_used: str,
    aspect_ratio: str = "1:1",
    session_id: Optional[str] = None,
) -> str:
    image_id = str(uuid.uuid4())
    async with connect() as db:
        await db.execute(
            """
            INSERT INTO image_library(id,user_id,session_id,prompt,image_url,model_used,aspect_ratio,created_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (image_id, user_id, session_id, prompt, image_url, model_used, aspect_ratio, int(time.time())),
        )
        await db.commit()
    return image_id
