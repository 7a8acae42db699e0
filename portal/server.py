import asyncio
import logging
import os
import re
import sqlite3
import time
import uuid
from contextlib import suppress
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from portal import chat, config, db, images, phone, security, usage
from portal.sse import (
    SSE_HEADERS,
    STREAM_ERROR_MESSAGE,
    StreamAccumulator,
    sse_comment,
    sse_data,
    sse_error_once,
)


logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 50_000
MAX_PROMPT_CHARS = 4_000
KEEPALIVE_SECONDS = 15.0

ENHANCE_OPTIONS = [
    {"id": "super_resolution", "name": "Super Resolution", "description": "Upscale images up to 4x"},
    {"id": "denoise", "name": "Noise Removal", "description": "Remove noise and compression artifacts"},
    {"id": "colorize", "name": "Colorization", "description": "Add color to black and white photos"},
    {"id": "face_restoration", "name": "Face Restoration", "description": "Restore and sharpen faces"},
]


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="request body must be valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid json body")
    return body


def _auth_response(user: Dict[str, Any]) -> Dict[str, Any]:
    token, expires_at = security.issue_token(user)
    return {
        "success": True,
        "token": token,
        "expires_at": expires_at,
        "user": db.public_user(user),
    }


app = FastAPI(title="Content Portal", version="0.1.0")


@app.middleware("http")
async def _global_rate_limit_middleware(request: Request, call_next):
    try:
        await security.enforce_rate_limit(request)
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    return await call_next(request)


@app.on_event("startup")
async def _startup() -> None:
    config.configure_logging()
    await db.init_db()
    if config.MOCK_MODE:
        logger.warning("MOCK_MODE is on: upstream providers will not be called")


@app.on_event("shutdown")
async def _shutdown() -> None:
    await images.poll_tasks.cancel_all()


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"ok": True, "ts": int(time.time())}


@app.get("/v1/features")
async def features() -> Dict[str, Any]:
    return {
        "chat": {"available": True, "models": list(config.CHAT_MODELS)},
        "image": {"available": True, "models": [config.IMAGE_MODEL, images.REPLICATE_MODEL_TYPE]},
        "video": {"available": False, "status": "coming_soon"},
        "enhance": {"available": False, "status": "coming_soon", "options": ENHANCE_OPTIONS},
    }


# -----------------------------
# Auth
# -----------------------------

@app.post("/v1/auth/phone/send-otp")
async def auth_send_otp(request: Request) -> Any:
    body = await _json_body(request)
    phone_number = body.get("phone_number")
    if not isinstance(phone_number, str) or not phone_number.strip():
        raise HTTPException(status_code=400, detail="phone_number required")
    if not phone.is_valid_iranian_phone(phone_number):
        raise HTTPException(status_code=400, detail="invalid phone number")

    normalized = phone.normalize_phone(phone_number)
    if not config.KAVENEGAR_API_KEY and not config.MOCK_MODE:
        raise HTTPException(status_code=500, detail="sms gateway not configured")

    code = await phone.create_otp(normalized)

    if not config.KAVENEGAR_API_KEY:
        logger.info("MOCK_MODE otp for %s: %s", normalized, code)
        return {"success": True, "message": "code generated (development mode)", "dev_otp": code}

    try:
        await phone.send_otp_sms(normalized, code)
    except phone.SmsDeliveryError as e:
        logger.error("otp delivery failed for %s: %s", normalized[:-4] + "****", e)
        await phone.discard_otp(normalized, code)
        raise HTTPException(status_code=502, detail="failed to send verification code")

    return {"success": True, "message": "verification code sent"}


@app.post("/v1/auth/phone/verify-otp")
async def auth_verify_otp(request: Request) -> Any:
    body = await _json_body(request)
    phone_number = body.get("phone_number")
    otp_code = body.get("otp_code")
    if not isinstance(phone_number, str) or not phone_number.strip():
        raise HTTPException(status_code=400, detail="phone_number required")
    if not isinstance(otp_code, str) or not otp_code.strip():
        raise HTTPException(status_code=400, detail="otp_code required")
    if not phone.is_valid_iranian_phone(phone_number):
        raise HTTPException(status_code=400, detail="invalid phone number")

    normalized = phone.normalize_phone(phone_number)
    await phone.verify_otp(normalized, otp_code.strip())
    user = await phone.login_phone_user(normalized)
    return _auth_response(user)


@app.post("/v1/auth/register")
async def auth_register(request: Request) -> Any:
    body = await _json_body(request)
    email = body.get("email")
    password = body.get("password")
    full_name = body.get("full_name") if body.get("full_name") is not None else ""

    if not isinstance(email, str) or not email.strip():
        raise HTTPException(status_code=400, detail="email required")
    if not isinstance(password, str) or not password:
        raise HTTPException(status_code=400, detail="password required")
    if not isinstance(full_name, str):
        raise HTTPException(status_code=400, detail="full_name must be a string")

    email_norm = security.normalize_email(email)
    if not security.is_valid_email(email_norm):
        raise HTTPException(status_code=400, detail="invalid email format")
    if len(password) < 8 or len(password) > 72:
        raise HTTPException(status_code=400, detail="password must be 8-72 characters")
    if len(full_name.strip()) > 100:
        raise HTTPException(status_code=400, detail="full_name too long (max 100 chars)")

    now = int(time.time())
    user_id = str(uuid.uuid4())
    pw_hash = security.hash_password(password)

    async with db.connect() as conn:
        try:
            await conn.execute(
                """
                INSERT INTO users(id,email,password_hash,full_name,created_at,updated_at,last_login_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (user_id, email_norm, pw_hash, full_name.strip(), now, now, now),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="email already registered")
        await conn.commit()

    user = await db.get_user_by_id(user_id)
    return _auth_response(user)


@app.post("/v1/auth/login")
async def auth_login(request: Request) -> Any:
    body = await _json_body(request)
    email = body.get("email")
    password = body.get("password")
    if not isinstance(email, str) or not email.strip():
        raise HTTPException(status_code=400, detail="email required")
    if not isinstance(password, str) or not password:
        raise HTTPException(status_code=400, detail="password required")

    ip = security.client_ip(request)
    now = int(time.time())
    if security.is_login_rate_limited(ip, now):
        raise HTTPException(status_code=429, detail="too many login attempts, try again in 5 minutes")

    user = await db.get_user_by_email(security.normalize_email(email))
    if not user or not security.check_password(password, user.get("password_hash")):
        security.record_login_failure(ip, now)
        raise HTTPException(status_code=401, detail="invalid email or password")

    async with db.connect() as conn:
        await conn.execute("UPDATE users SET last_login_at=? WHERE id=?", (now, user["id"]))
        await conn.commit()

    security.clear_login_failures(ip)
    user["last_login_at"] = now
    return _auth_response(user)


@app.get("/v1/user/profile")
async def user_get_profile(request: Request) -> Any:
    user = await security.require_user(request)
    return db.public_user(user)


@app.put("/v1/user/profile")
async def user_put_profile(request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)

    full_name = body.get("full_name")
    if not isinstance(full_name, str):
        raise HTTPException(status_code=400, detail="full_name must be a string")
    full_name = full_name.strip()
    if not full_name:
        raise HTTPException(status_code=400, detail="full_name required")
    if len(full_name) > 100:
        raise HTTPException(status_code=400, detail="full_name too long (max 100 chars)")

    async with db.connect() as conn:
        await conn.execute(
            "UPDATE users SET full_name=?, updated_at=? WHERE id=?",
            (full_name, int(time.time()), user["id"]),
        )
        await conn.commit()
    user = await db.get_user_by_id(user["id"]) or user
    return db.public_user(user)


# -----------------------------
# Usage / plans
# -----------------------------

@app.get("/v1/user/usage")
async def user_get_usage(request: Request) -> Any:
    user = await security.require_user(request)
    return await usage.usage_summary(user["id"])


@app.get("/v1/user/plan")
async def user_get_plan(request: Request) -> Any:
    user = await security.require_user(request)
    plan = await usage.current_plan(user["id"])
    plans = [
        {
            "plan_type": name,
            "limits": {"messages": limits.messages, "images": limits.images},
        }
        for name, limits in usage.PLAN_LIMITS.items()
    ]
    return {
        "plan_type": plan["plan_type"],
        "status": plan["status"],
        "expires_at": plan["expires_at"],
        "available_plans": plans,
    }


@app.post("/v1/usage/increment")
async def usage_increment(request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)
    column = body.get("column_name")
    if not isinstance(column, str) or column not in usage.USAGE_COLUMNS:
        raise HTTPException(status_code=400, detail="invalid usage column")
    count = await usage.increment_usage(user["id"], column)
    return {"column_name": column, "count": count}


@app.post("/admin/users/{user_id}/plan")
async def admin_set_plan(
    user_id: str,
    request: Request,
    x_admin_key: Optional[str] = Header(default=None),
) -> Any:
    security.admin_check(x_admin_key)
    body = await _json_body(request)
    plan_type = usage.normalize_plan_name(body.get("plan_type"), default="")
    if plan_type not in usage.PLAN_LIMITS:
        raise HTTPException(status_code=400, detail="invalid plan_type")
    expires_at = body.get("expires_at")
    if expires_at is not None and (not isinstance(expires_at, int) or isinstance(expires_at, bool)):
        raise HTTPException(status_code=400, detail="expires_at must be an epoch integer")

    if not await db.get_user_by_id(user_id):
        raise HTTPException(status_code=404, detail="user not found")
    plan = await usage.set_plan(user_id, plan_type, expires_at)
    return {"user_id": user_id, **plan}


# -----------------------------
# Chat
# -----------------------------

@app.post("/v1/chat/sessions")
async def create_session(request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)
    first_message = body.get("first_message")
    if not isinstance(first_message, str) or not first_message.strip():
        raise HTTPException(status_code=400, detail="first_message required")
    return await db.create_session(user["id"], first_message)


@app.get("/v1/chat/sessions")
async def list_sessions(request: Request, limit: int = 50, offset: int = 0) -> Any:
    user = await security.require_user(request)
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")

    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(
            """
            SELECT
              s.id,
              s.title,
              s.created_at,
              s.updated_at,
              (
                SELECT COUNT(1)
                FROM chat_messages m
                WHERE m.session_id = s.id
              ) AS message_count
            FROM chat_sessions s
            WHERE s.user_id = ?
            ORDER BY s.updated_at DESC, s.rowid DESC
            LIMIT ? OFFSET ?
            """,
            (user["id"], int(limit), int(offset)),
        ) as cur:
            rows = await cur.fetchall()
    return {"sessions": [dict(r) for r in rows]}


@app.get("/v1/chat/sessions/{session_id}/messages")
async def list_session_messages(session_id: str, request: Request, message_type: str = "chat") -> Any:
    user = await security.require_user(request)
    session = await db.get_session(session_id, user["id"])
    if not session:
        raise HTTPException(status_code=404, detail="session not found")
    return {"session": session, "messages": await db.list_messages(session_id, message_type)}


@app.patch("/v1/chat/sessions/{session_id}")
async def rename_session(session_id: str, request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)
    title = body.get("title")
    if not isinstance(title, str) or not title.strip():
        raise HTTPException(status_code=400, detail="title required")
    title = title.strip()
    if len(title) > 200:
        raise HTTPException(status_code=400, detail="title too long (max 200 chars)")

    async with db.connect() as conn:
        cur = await conn.execute(
            "UPDATE chat_sessions SET title=?, updated_at=? WHERE id=? AND user_id=?",
            (title, int(time.time()), session_id, user["id"]),
        )
        await conn.commit()
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="session not found")
    return await db.get_session(session_id, user["id"])


@app.delete("/v1/chat/sessions/{session_id}")
async def delete_session(session_id: str, request: Request) -> Any:
    user = await security.require_user(request)
    if not await db.get_session(session_id, user["id"]):
        raise HTTPException(status_code=404, detail="session not found")

    async with db.connect() as conn:
        await conn.execute("DELETE FROM chat_messages WHERE session_id=?", (session_id,))
        await conn.execute("DELETE FROM pending_image_requests WHERE session_id=?", (session_id,))
        await conn.execute("DELETE FROM chat_sessions WHERE id=? AND user_id=?", (session_id, user["id"]))
        await conn.commit()
    return {"deleted": True}


@app.post("/v1/chat/abort")
async def chat_abort(request: Request) -> Any:
    user = await security.require_user(request)
    return {"aborted": chat.streams.abort(user["id"])}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise HTTPException(status_code=400, detail="messages must be a non-empty array")
    clean: List[Dict[str, Any]] = []
    for m in messages:
        if not isinstance(m, dict) or m.get("role") not in ("user", "assistant") or not isinstance(m.get("content"), str):
            raise HTTPException(status_code=400, detail="each message needs a user/assistant role and string content")
        clean.append({"role": m["role"], "content": m["content"]})

    model = chat.resolve_model(body.get("model"))
    max_tokens = body.get("max_tokens", chat.COMPLETION_MAX_TOKENS)
    temperature = body.get("temperature", chat.DEFAULT_TEMPERATURE)
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or not 1 <= max_tokens <= 4096:
        raise HTTPException(status_code=400, detail="max_tokens must be 1..4096")
    if not isinstance(temperature, (int, float)) or isinstance(temperature, bool) or not 0 <= temperature <= 2:
        raise HTTPException(status_code=400, detail="temperature must be 0..2")

    await usage.check_quota(user["id"], usage.CHAT_COLUMN)
    completion = await chat.chat_completion(
        chat.truncate_history(clean, config.CHAT_MAX_CONTEXT_TOKENS),
        model=model,
        max_tokens=max_tokens,
        temperature=float(temperature),
    )
    await usage.increment_usage(user["id"], usage.CHAT_COLUMN)
    return completion


async def _await_with_keepalive(task: "asyncio.Future[Any]", cancel: asyncio.Event) -> AsyncIterator[bytes]:
    """Emit keepalives until ``task`` finishes or ``cancel`` is set."""
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        while True:
            done, _ = await asyncio.wait(
                {task, cancelled},
                timeout=KEEPALIVE_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if done:
                return
            yield sse_comment("keepalive")
    finally:
        if not cancelled.done():
            cancelled.cancel()


async def _image_reply_events(
    user_id: str,
    session_id: str,
    pending: Dict[str, Any],
    language: str,
    cancel: asyncio.Event,
) -> AsyncIterator[bytes]:
    prompt = pending["prompt"]
    task = asyncio.ensure_future(images.create_dalle_generation(user_id, prompt, session_id=session_id))
    aborted = False
    try:
        async for keepalive in _await_with_keepalive(task, cancel):
            yield keepalive
    finally:
        if not task.done():
            aborted = True
            task.cancel()

    if aborted:
        # The pending request stays open so a later confirmation can retry.
        logger.info("chat image generation aborted: session=%s", session_id)
        return

    try:
        result = task.result()
    except HTTPException as e:
        logger.warning("chat image generation failed: %s", e.detail)
        content = chat.image_failed_text(language, str(e.detail))
        message = await db.add_message(session_id, "assistant", content)
        yield sse_data({"delta": content, "done": False})
        yield sse_data({"delta": "", "done": True, "message_id": message["id"], "content": content})
        return

    await db.complete_pending_image_request(pending["id"])
    content = chat.image_done_text(language, prompt)
    message = await db.add_message(session_id, "assistant", content, image_url=result["image_url"])
    yield sse_data({"delta": content, "done": False})
    yield sse_data(
        {
            "delta": "",
            "done": True,
            "message_id": message["id"],
            "content": content,
            "image_url": result["image_url"],
            "generation_id": result["generation_id"],
        }
    )


async def _confirmation_events(
    user_id: str,
    session_id: str,
    text: str,
    intent: chat.ImageRequest,
    language: str,
) -> AsyncIterator[bytes]:
    await db.save_pending_image_request(user_id, session_id, intent.object or text)
    content = chat.confirmation_text(language, intent.object)
    message = await db.add_message(session_id, "assistant", content)
    yield sse_data({"delta": content, "done": False})
    yield sse_data(
        {
            "delta": "",
            "done": True,
            "message_id": message["id"],
            "content": content,
            "awaiting_confirmation": True,
        }
    )


async def _llm_events(
    user_id: str,
    session_id: str,
    model: str,
    cancel: asyncio.Event,
) -> AsyncIterator[bytes]:
    history = await db.list_messages(session_id)
    delta_iter = chat.stream_chat_completion(chat.build_context(history), model=model)

    q: "asyncio.Queue[Any]" = asyncio.Queue()
    sentinel = object()
    producer_exc: Optional[BaseException] = None

    async def _producer() -> None:
        nonlocal producer_exc
        try:
            async for d in delta_iter:
                await q.put(d)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            producer_exc = e
        finally:
            await q.put(sentinel)

    producer = asyncio.ensure_future(_producer())
    cancelled = asyncio.ensure_future(cancel.wait())
    getter: Optional["asyncio.Future[Any]"] = None
    acc = StreamAccumulator()
    aborted = False

    try:
        while True:
            if getter is None:
                getter = asyncio.ensure_future(q.get())
            done, _ = await asyncio.wait(
                {getter, cancelled},
                timeout=KEEPALIVE_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if cancelled in done:
                aborted = True
                break
            if not done:
                yield sse_comment("keepalive")
                continue

            item = getter.result()
            getter = None
            if item is sentinel:
                break
            if not isinstance(item, str) or not item:
                continue
            acc.add(item)
            yield sse_data({"delta": item, "done": False})
    finally:
        for fut in (getter, cancelled, producer):
            if fut is not None and not fut.done():
                fut.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await producer

    if aborted:
        # Aborted streams end quietly; whatever was already streamed is kept.
        logger.info("chat stream aborted: session=%s chars=%d", session_id, len(acc.text))
        if acc.has_content():
            await db.add_message(session_id, "assistant", acc.final_text())
            await usage.increment_usage(user_id, usage.CHAT_COLUMN)
        return
    if producer_exc is not None:
        raise producer_exc

    content = acc.final_text()
    message_id = None
    if acc.has_content():
        message = await db.add_message(session_id, "assistant", content)
        message_id = message["id"]
        await usage.increment_usage(user_id, usage.CHAT_COLUMN)
    yield sse_data({"delta": "", "done": True, "message_id": message_id, "content": content})


@app.post("/v1/chat/send")
async def chat_send(request: Request) -> Any:
    user = await security.require_user(request)
    user_id = user["id"]

    try:
        body = await request.json()
    except Exception:
        return StreamingResponse(sse_error_once("request body must be valid JSON"), media_type="text/event-stream")
    if not isinstance(body, dict):
        return StreamingResponse(sse_error_once("invalid json body"), media_type="text/event-stream")

    text = body.get("message")
    if not isinstance(text, str) or not text.strip():
        return StreamingResponse(sse_error_once("message must be a non-empty string"), media_type="text/event-stream")
    text = text.strip()
    if len(text) > MAX_MESSAGE_CHARS:
        return StreamingResponse(sse_error_once("message too long (max 50000 chars)"), media_type="text/event-stream")
    try:
        model = chat.resolve_model(body.get("model"))
    except HTTPException as e:
        return StreamingResponse(sse_error_once(str(e.detail)), media_type="text/event-stream")

    session_id = body.get("session_id")
    if session_id is not None and not isinstance(session_id, str):
        return StreamingResponse(sse_error_once("session_id must be a string"), media_type="text/event-stream")

    language = chat.detect_language(text)
    pending: Optional[Dict[str, Any]] = None
    if session_id and chat.is_confirmation(text):
        pending = await db.get_pending_image_request(session_id, user_id)
    intent = chat.detect_image_request(text) if pending is None else chat.ImageRequest(is_request=False)

    # Quota is checked before anything is stored.
    if pending is not None:
        await usage.check_quota(user_id, usage.IMAGES_COLUMN)
    elif not intent.is_request:
        await usage.check_quota(user_id, usage.CHAT_COLUMN)

    if session_id:
        session = await db.get_session(session_id, user_id)
        if not session:
            return StreamingResponse(sse_error_once("session not found"), media_type="text/event-stream")
        created = False
    else:
        session = await db.create_session(user_id, text)
        created = True
    session_id = session["id"]

    await db.add_message(session_id, "user", text)
    cancel = chat.streams.begin(user_id)

    async def stream_gen() -> AsyncIterator[bytes]:
        try:
            yield sse_data({"session_id": session_id, "title": session["title"], "created": created, "done": False})
            if pending is not None:
                events = _image_reply_events(user_id, session_id, pending, language, cancel)
            elif intent.is_request:
                events = _confirmation_events(user_id, session_id, text, intent, language)
            else:
                events = _llm_events(user_id, session_id, model, cancel)
            async for event in events:
                yield event
        except Exception as e:
            logger.error("chat stream failed: session=%s error=%r", session_id, e, exc_info=True)
            yield sse_data({"error": STREAM_ERROR_MESSAGE, "done": True})
        finally:
            chat.streams.finish(user_id, cancel)
            try:
                await db.touch_session(session_id)
            except Exception:
                logger.exception("failed to touch session %s", session_id)

    return StreamingResponse(stream_gen(), media_type="text/event-stream", headers=SSE_HEADERS)


# -----------------------------
# Images
# -----------------------------

def _validate_prompt(body: Dict[str, Any]) -> str:
    prompt = body.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise HTTPException(status_code=400, detail="prompt required")
    prompt = prompt.strip()
    if len(prompt) > MAX_PROMPT_CHARS:
        raise HTTPException(status_code=400, detail=f"prompt too long (max {MAX_PROMPT_CHARS} chars)")
    return prompt


@app.post("/v1/images/generate")
async def images_generate(request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)
    prompt = _validate_prompt(body)
    session_id = body.get("session_id")
    if session_id is not None and not isinstance(session_id, str):
        raise HTTPException(status_code=400, detail="session_id must be a string")

    await usage.check_quota(user["id"], usage.IMAGES_COLUMN)
    return await images.create_dalle_generation(user["id"], prompt, session_id=session_id)


@app.post("/v1/images/generations")
async def images_submit(request: Request) -> Any:
    user = await security.require_user(request)
    body = await _json_body(request)
    prompt = _validate_prompt(body)

    aspect_ratio = body.get("aspect_ratio", "1:1")
    if aspect_ratio not in images.ASPECT_RATIOS:
        raise HTTPException(status_code=400, detail="unsupported aspect_ratio")
    prompt_strength = body.get("prompt_strength", 0.8)
    if not isinstance(prompt_strength, (int, float)) or isinstance(prompt_strength, bool) or not 0 <= prompt_strength <= 1:
        raise HTTPException(status_code=400, detail="prompt_strength must be 0..1")

    return await images.submit_generation(
        user["id"],
        prompt,
        aspect_ratio=aspect_ratio,
        prompt_strength=float(prompt_strength),
    )


@app.get("/v1/images/generations")
async def images_list(request: Request, limit: int = 50) -> Any:
    user = await security.require_user(request)
    if limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be 1..200")
    return {"generations": await images.list_generations(user["id"], limit)}


@app.get("/v1/images/generations/{generation_id}")
async def images_status(generation_id: str, request: Request) -> Any:
    user = await security.require_user(request)
    return await images.refresh_generation(generation_id, user["id"])


@app.delete("/v1/images/generations/{generation_id}")
async def images_delete(generation_id: str, request: Request) -> Any:
    user = await security.require_user(request)
    await images.delete_generation(generation_id, user["id"])
    return {"deleted": True}


@app.get("/v1/images/library")
async def library_list(
    request: Request,
    search: str = "",
    model: str = "",
    aspect_ratio: str = "",
    sort: str = "newest",
) -> Any:
    user = await security.require_user(request)
    if sort not in ("newest", "oldest"):
        raise HTTPException(status_code=400, detail="sort must be newest or oldest")
    items = await images.list_library(
        user["id"],
        search=search.strip(),
        model=model.strip(),
        aspect_ratio=aspect_ratio.strip(),
        sort=sort,
    )
    return {"images": items}


@app.delete("/v1/images/library/{image_id}")
async def library_delete(image_id: str, request: Request) -> Any:
    user = await security.require_user(request)
    await images.delete_library_image(image_id, user["id"])
    return {"deleted": True}


# -----------------------------
# Video / enhancement (not yet offered)
# -----------------------------

@app.post("/v1/video/generations")
async def video_generate(request: Request) -> Any:
    await security.require_user(request)
    raise HTTPException(status_code=501, detail="video generation is not available yet")


@app.get("/v1/enhance/options")
async def enhance_options() -> Any:
    return {"available": False, "options": ENHANCE_OPTIONS}


def _detect_image_type(file_bytes: bytes) -> Optional[str]:
    if file_bytes.startswith(b"\xFF\xD8\xFF"):
        return "image/jpeg"
    if file_bytes.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(file_bytes) >= 12 and file_bytes[:4] == b"RIFF" and file_bytes[8:12] == b"WEBP":
        return "image/webp"
    return None


def _parse_content_disposition_params(header_value: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for token in header_value.split(";")[1:]:
        token = token.strip()
        if "=" not in token:
            continue
        key, value = token.split("=", 1)
        value = value.strip()
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = value[1:-1]
        params[key.strip().lower()] = value
    return params


def _extract_multipart_fields(content_type: str, body: bytes) -> Tuple[Optional[Tuple[str, bytes]], Dict[str, str]]:
    """Split a multipart body into the ``file`` part and the plain text fields."""
    if not isinstance(content_type, str) or "multipart/form-data" not in content_type.lower():
        raise HTTPException(status_code=400, detail="content-type must be multipart/form-data")

    boundary_match = re.search(r'boundary=(?:"([^"]+)"|([^;]+))', content_type, flags=re.IGNORECASE)
    boundary = (boundary_match.group(1) or boundary_match.group(2) or "").strip() if boundary_match else ""
    if not boundary:
        raise HTTPException(status_code=400, detail="missing multipart boundary")

    upload: Optional[Tuple[str, bytes]] = None
    fields: Dict[str, str] = {}
    delimiter = b"--" + boundary.encode("utf-8", errors="ignore")
    # The first chunk is the preamble; a chunk starting with "--" follows the closing delimiter.
    for part in body.split(delimiter)[1:]:
        if part.startswith(b"--"):
            break
        # Only the CRLF after the delimiter line and the one before the next delimiter are framing.
        if part.startswith(b"\r\n"):
            part = part[2:]
        if part.endswith(b"\r\n"):
            part = part[:-2]
        header_block, sep, payload = part.partition(b"\r\n\r\n")
        if not sep:
            continue

        headers: Dict[str, str] = {}
        for raw_line in header_block.split(b"\r\n"):
            line = raw_line.decode("latin-1", errors="ignore")
            if ":" in line:
                k, v = line.split(":", 1)
                headers[k.strip().lower()] = v.strip()

        disposition = headers.get("content-disposition", "")
        if "form-data" not in disposition.lower():
            continue
        params = _parse_content_disposition_params(disposition)
        name = params.get("name") or ""
        if name == "file":
            filename = os.path.basename(str(params.get("filename") or "upload.bin").strip() or "upload.bin")
            upload = (filename, payload)
        elif name:
            fields[name] = payload.decode("utf-8", errors="replace").strip()
    return upload, fields


@app.post("/v1/enhance")
async def enhance_image(request: Request) -> Any:
    await security.require_user(request)
    content_type = request.headers.get("content-type", "")
    body = await request.body()
    if len(body) > config.MAX_IMAGE_SIZE + 64 * 1024:
        raise HTTPException(status_code=413, detail="image too large (max 10 MB)")

    upload, fields = _extract_multipart_fields(content_type, body)
    if upload is None:
        raise HTTPException(status_code=400, detail="multipart field 'file' is required")
    _, file_bytes = upload
    if not file_bytes:
        raise HTTPException(status_code=400, detail="empty file not allowed")
    if len(file_bytes) > config.MAX_IMAGE_SIZE:
        raise HTTPException(status_code=413, detail="image too large (max 10 MB)")
    if _detect_image_type(file_bytes) not in config.ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=415, detail="unsupported image type")

    option = fields.get("option") or ENHANCE_OPTIONS[0]["id"]
    if option not in {o["id"] for o in ENHANCE_OPTIONS}:
        raise HTTPException(status_code=400, detail="unknown enhancement option")

    raise HTTPException(status_code=501, detail="image enhancement is not available yet")
