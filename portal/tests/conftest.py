import asyncio
import json
import sqlite3
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[2]))

from portal import chat, config, db, images, security, server  # noqa: E402


@pytest.fixture()
def app_ctx(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "portal.sqlite3"))
    monkeypatch.setattr(config, "MOCK_MODE", True)
    monkeypatch.setattr(config, "ADMIN_KEY", "test-admin-key")
    monkeypatch.setattr(config, "JWT_SECRET", "test-jwt-secret")
    monkeypatch.setattr(config, "KAVENEGAR_API_KEY", "")
    monkeypatch.setattr(config, "GENERATION_BACKGROUND_POLL", False)
    monkeypatch.setattr(chat, "streams", chat.StreamRegistry())
    monkeypatch.setattr(images, "poll_tasks", images.PollTasks())

    security._RATE_LIMIT_HITS.clear()
    security._LOGIN_FAILURES.clear()
    asyncio.run(db.init_db())

    user = make_user(email="user@example.com", full_name="Test User")
    return {
        "client": TestClient(server.app),
        "user": user,
        "headers": auth_headers(user),
    }


def make_user(email: str = None, phone_number: str = None, full_name: str = "") -> Dict[str, Any]:
    now = int(time.time())
    user = {
        "id": str(uuid.uuid4()),
        "email": email,
        "phone_number": phone_number,
        "full_name": full_name,
    }
    with sqlite3.connect(config.DB_PATH) as conn:
        conn.execute(
            "INSERT INTO users(id,email,phone_number,full_name,created_at,updated_at) VALUES (?,?,?,?,?,?)",
            (user["id"], email, phone_number, full_name, now, now),
        )
        conn.commit()
    return user


def auth_headers(user: Dict[str, Any]) -> Dict[str, str]:
    token, _ = security.issue_token(user)
    return {"Authorization": f"Bearer {token}"}


def sse_events(body: str) -> List[Dict[str, Any]]:
    events = []
    for line in body.splitlines():
        if line.startswith("data: "):
            events.append(json.loads(line[len("data: ") :]))
    return events


def query(sql: str, params: tuple = ()) -> List[sqlite3.Row]:
    with sqlite3.connect(config.DB_PATH) as conn:
        conn.row_factory = sqlite3.Row
        return conn.execute(sql, params).fetchall()
