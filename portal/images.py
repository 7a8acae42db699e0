import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiosqlite
import httpx
from fastapi import HTTPException

from portal import config, db, upstream, usage


logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "failed"}

DALLE_SIZE = "1024x1024"
DALLE_QUALITY = "hd"
DALLE_STYLE = "vivid"
DALLE_ATTEMPTS = 4

REPLICATE_MODEL_TYPE = "flux-schnell"
REPLICATE_STEPS = 4
REPLICATE_CFG_SCALE = 1.0

ASPECT_RATIOS = {"1:1", "16:9", "9:16", "21:9", "9:21", "3:2", "2:3", "4:3", "3:4", "4:5", "5:4"}

_QUALITY_KEYWORDS = (
    "highly detailed",
    "ultra realistic",
    "8k",
    "professional lighting",
    "sharp focus",
    "detailed",
    "realistic",
    "high quality",
    "hd",
    "professional",
)
_QUALITY_SUFFIX = ", highly detailed, ultra realistic, 8K, professional lighting, sharp focus"

_sleep = asyncio.sleep


def enhance_prompt(prompt: str) -> str:
    lowered = prompt.lower()
    if any(k in lowered for k in _QUALITY_KEYWORDS):
        return prompt
    return prompt + _QUALITY_SUFFIX


def aspect_dimensions(aspect_ratio: str) -> Tuple[int, int]:
    if aspect_ratio == "16:9":
        return (1280, 720)
    if aspect_ratio == "9:16":
        return (720, 1280)
    return (1024, 1024)


def _public_generation(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "generation_id": row["id"],
        "status": row["status"],
        "prompt": row["prompt"],
        "model_type": row["model_type"],
        "prediction_id": row.get("prediction_id"),
        "image_url": row.get("image_url"),
        "error_message": row.get("error_message"),
        "width": row.get("width"),
        "height": row.get("height"),
        "created_at": row["created_at"],
        "completed_at": row.get("completed_at"),
    }


# -----------------------------
# DALL-E (synchronous, best of N)
# -----------------------------

async def _generate_single(client: httpx.AsyncClient, api_key: str, prompt: str) -> Optional[str]:
    try:
        resp = await client.post(
            f"{config.OPENAI_BASE_URL}/images/generations",
            headers=upstream.openai_headers(api_key),
            json={
                "model": config.IMAGE_MODEL,
                "prompt": prompt,
                "n": 1,
                "size": DALLE_SIZE,
                "quality": DALLE_QUALITY,
                "style": DALLE_STYLE,
            },
        )
    except httpx.HTTPError as e:
        logger.warning("image attempt failed: %r", e)
        return None
    if resp.status_code >= 400:
        logger.warning("image attempt failed: status=%s detail=%s", resp.status_code, upstream.error_detail(resp, ""))
        return None
    try:
        data = resp.json().get("data") or []
        url = data[0].get("url")
    except (ValueError, AttributeError, IndexError):
        return None
    return url if isinstance(url, str) and url else None


async def generate_dalle_image(prompt: str) -> Dict[str, Any]:
    enhanced = enhance_prompt(prompt)
    if config.MOCK_MODE:
        urls = [f"https://images.mock/{uuid.uuid4().hex}.png" for _ in range(DALLE_ATTEMPTS)]
    else:
        api_key = upstream.require_key("openai")
        async with upstream.async_client(timeout=120) as client:
            results = await asyncio.gather(
                *[_generate_single(client, api_key, enhanced) for _ in range(DALLE_ATTEMPTS)]
            )
        urls = [u for u in results if u]
    if not urls:
        raise HTTPException(status_code=502, detail="all image generation attempts failed")
    return {
        "image_url": urls[0],
        "image_urls": urls,
        "generation_count": len(urls),
        "enhanced_prompt": enhanced,
        "settings": {
            "size": DALLE_SIZE,
            "quality": DALLE_QUALITY,
            "style": DALLE_STYLE,
            "model": config.IMAGE_MODEL,
        },
    }


async def create_dalle_generation(user_id: str, prompt: str, *, session_id: Optional[str] = None) -> Dict[str, Any]:
    """Generate an image now, record it as a completed job and add it to the library."""
    result = await generate_dalle_image(prompt)
    now = int(time.time())
    generation_id = str(uuid.uuid4())
    async with db.connect() as conn:
        await conn.execute(
            """
            INSERT INTO image_generations(
              id,user_id,prompt,model_type,model_name,status,image_url,width,height,steps,cfg_scale,created_at,completed_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                generation_id,
                user_id,
                prompt,
                config.IMAGE_MODEL,
                config.IMAGE_MODEL,
                "completed",
                result["image_url"],
                1024,
                1024,
                50,
                7.0,
                now,
                now,
            ),
        )
        await conn.commit()
    await db.add_library_image(
        user_id=user_id,
        session_id=session_id,
        prompt=prompt,
        image_url=result["image_url"],
        model_used=config.IMAGE_MODEL,
        aspect_ratio="1:1",
    )
    await usage.increment_usage(user_id, usage.IMAGES_COLUMN)
    result["generation_id"] = generation_id
    result["status"] = "success"
    return result


# -----------------------------
# Replicate (asynchronous job)
# -----------------------------

def _replicate_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Token {api_key}",
        "Content-Type": "application/json",
    }


def _retry_after_seconds(resp: httpx.Response, attempt: int) -> float:
    for name in ("retry-after", "x-ratelimit-reset-after"):
        raw = resp.headers.get(name)
        if raw:
            try:
                return max(0.0, float(raw))
            except ValueError:
                continue
    return float(2 ** attempt)


async def _create_prediction(prompt: str, aspect_ratio: str, prompt_strength: float) -> Dict[str, Any]:
    if config.MOCK_MODE:
        return {"id": f"mock-{uuid.uuid4().hex}", "status": "starting"}

    api_key = upstream.require_key("replicate")
    payload = {
        "version": config.REPLICATE_MODEL_VERSION,
        "input": {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "prompt_strength": prompt_strength,
        },
    }
    retry_after = 0.0
    async with upstream.async_client(timeout=30) as client:
        for attempt in range(config.REPLICATE_MAX_RETRIES + 1):
            try:
                resp = await client.post(
                    f"{config.REPLICATE_BASE_URL}/predictions",
                    headers=_replicate_headers(api_key),
                    json=payload,
                )
            except httpx.HTTPError as e:
                if attempt >= config.REPLICATE_MAX_RETRIES:
                    raise HTTPException(status_code=502, detail="replicate unreachable") from e
                logger.warning("replicate request error (attempt %s): %r", attempt + 1, e)
                await _sleep(attempt + 1)
                continue

            if resp.status_code == 429:
                retry_after = _retry_after_seconds(resp, attempt)
                if attempt >= config.REPLICATE_MAX_RETRIES:
                    break
                logger.info("replicate rate limited, retrying in %.1fs", retry_after)
                await _sleep(retry_after)
                continue

            if resp.status_code >= 400:
                detail = upstream.error_detail(resp, f"replicate error {resp.status_code}")
                logger.warning("replicate prediction failed: status=%s detail=%s", resp.status_code, detail)
                raise HTTPException(status_code=502, detail=detail)

            prediction = resp.json()
            if not isinstance(prediction, dict) or not prediction.get("id"):
                raise HTTPException(status_code=502, detail="replicate returned no prediction id")
            return prediction

    raise HTTPException(
        status_code=429,
        detail="replicate rate limit exceeded",
        headers={"Retry-After": str(int(max(1.0, retry_after)))},
    )


async def _get_prediction(prediction_id: str) -> Dict[str, Any]:
    if config.MOCK_MODE:
        return {
            "id": prediction_id,
            "status": "succeeded",
            "output": [f"https://replicate.delivery/mock/{prediction_id}.png"],
        }

    api_key = upstream.require_key("replicate")
    async with upstream.async_client(timeout=30) as client:
        resp = await client.get(
            f"{config.REPLICATE_BASE_URL}/predictions/{prediction_id}",
            headers=_replicate_headers(api_key),
        )
    if resp.status_code >= 400:
        raise HTTPException(status_code=502, detail=upstream.error_detail(resp, "replicate status check failed"))
    return resp.json()


async def _set_status(generation_id: str, status: str, **fields: Any) -> None:
    sets = ["status=?"]
    params: List[Any] = [status]
    for k, v in fields.items():
        sets.append(f"{k}=?")
        params.append(v)
    params.append(generation_id)
    async with db.connect() as conn:
        await conn.execute(f"UPDATE image_generations SET {', '.join(sets)} WHERE id=?", tuple(params))
        await conn.commit()


async def _finish_generation(
    generation_id: str,
    *,
    status: str,
    image_url: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    # Only the first transition into a terminal state wins.
    async with db.connect() as conn:
        cur = await conn.execute(
            """
            UPDATE image_generations
            SET status=?, image_url=?, error_message=?, completed_at=?
            WHERE id=? AND status NOT IN ('completed','failed')
            """,
            (status, image_url, error_message, int(time.time()), generation_id),
        )
        await conn.commit()
        return cur.rowcount == 1


async def get_generation(generation_id: str, user_id: str) -> Dict[str, Any]:
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(
            "SELECT * FROM image_generations WHERE id=? AND user_id=?",
            (generation_id, user_id),
        ) as cur:
            row = await cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="generation not found")
    return dict(row)


async def submit_generation(
    user_id: str,
    prompt: str,
    *,
    aspect_ratio: str = "1:1",
    prompt_strength: float = 0.8,
) -> Dict[str, Any]:
    await usage.check_quota(user_id, usage.IMAGES_COLUMN)

    width, height = aspect_dimensions(aspect_ratio)
    generation_id = str(uuid.uuid4())
    now = int(time.time())
    async with db.connect() as conn:
        await conn.execute(
            """
            INSERT INTO image_generations(
              id,user_id,prompt,model_type,model_name,status,width,height,steps,cfg_scale,created_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                generation_id,
                user_id,
                prompt,
                REPLICATE_MODEL_TYPE,
                config.REPLICATE_MODEL_VERSION,
                "pending",
                width,
                height,
                REPLICATE_STEPS,
                REPLICATE_CFG_SCALE,
                now,
            ),
        )
        await conn.commit()

    if not config.MOCK_MODE and not config.REPLICATE_API_KEY:
        await _finish_generation(generation_id, status="failed", error_message="replicate api key not configured")
        raise HTTPException(status_code=500, detail="replicate api key not configured")

    await _set_status(generation_id, "processing")
    try:
        prediction = await _create_prediction(prompt, aspect_ratio, prompt_strength)
    except HTTPException as e:
        await _finish_generation(generation_id, status="failed", error_message=str(e.detail))
        raise

    prediction_id = str(prediction["id"])
    await _set_status(generation_id, "processing", prediction_id=prediction_id)
    logger.info("generation %s submitted as prediction %s", generation_id, prediction_id)

    if config.GENERATION_BACKGROUND_POLL:
        poll_tasks.start(generation_id, poll_until_done(generation_id, user_id))

    return {
        "success": True,
        "generation_id": generation_id,
        "prediction_id": prediction_id,
        "status": "processing",
        "poll_url": f"/v1/images/generations/{generation_id}",
    }


async def refresh_generation(generation_id: str, user_id: str) -> Dict[str, Any]:
    """Return the job's state, asking the provider when it is still in flight."""
    row = await get_generation(generation_id, user_id)
    if row["status"] in TERMINAL_STATUSES:
        return _public_generation(row)
    prediction_id = row.get("prediction_id")
    if not prediction_id:
        row["status"] = "processing"
        return _public_generation(row)

    prediction = await _get_prediction(prediction_id)
    status = prediction.get("status")
    output = prediction.get("output")

    if status == "succeeded" and output:
        image_url = output[0] if isinstance(output, list) else str(output)
        if await _finish_generation(generation_id, status="completed", image_url=image_url):
            await db.add_library_image(
                user_id=user_id,
                prompt=row["prompt"],
                image_url=image_url,
                model_used=REPLICATE_MODEL_TYPE,
                aspect_ratio=_aspect_from_dimensions(row.get("width"), row.get("height")),
            )
            await usage.increment_usage(user_id, usage.IMAGES_COLUMN)
            logger.info("generation %s completed", generation_id)
    elif status in ("failed", "canceled"):
        error = prediction.get("error") or "Generation failed"
        if await _finish_generation(generation_id, status="failed", error_message=str(error)):
            logger.warning("generation %s failed: %s", generation_id, error)
    else:
        return _public_generation(dict(row, status="processing"))

    return _public_generation(await get_generation(generation_id, user_id))


def _aspect_from_dimensions(width: Optional[int], height: Optional[int]) -> str:
    if (width, height) == (1280, 720):
        return "16:9"
    if (width, height) == (720, 1280):
        return "9:16"
    return "1:1"


async def list_generations(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(
            "SELECT * FROM image_generations WHERE user_id=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, int(limit)),
        ) as cur:
            rows = await cur.fetchall()
    return [_public_generation(dict(r)) for r in rows]


async def delete_generation(generation_id: str, user_id: str) -> None:
    await get_generation(generation_id, user_id)
    poll_tasks.cancel(generation_id)
    async with db.connect() as conn:
        await conn.execute("DELETE FROM image_generations WHERE id=? AND user_id=?", (generation_id, user_id))
        await conn.commit()


# -----------------------------
# Polling
# -----------------------------

class GenerationPoller:
    """Re-run ``check`` on a fixed delay until it reports a terminal status.

    The first check runs immediately. A check that raises counts as a
    non-terminal attempt. After ``max_attempts`` checks without a terminal
    status, :meth:`run` returns ``{"status": "timeout"}``.
    """

    def __init__(
        self,
        check: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self._check = check
        self.interval = config.GENERATION_POLL_INTERVAL_SECONDS if interval is None else interval
        self.max_attempts = config.GENERATION_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._sleep = sleep or _sleep
        self.attempts = 0

    async def run(self) -> Dict[str, Any]:
        while self.attempts < self.max_attempts:
            self.attempts += 1
            try:
                result = await self._check()
            except Exception as e:
                logger.warning("poll attempt %s failed: %r", self.attempts, e)
                result = None
            if isinstance(result, dict) and result.get("status") in TERMINAL_STATUSES:
                return result
            if self.attempts < self.max_attempts:
                await self._sleep(self.interval)
        return {"status": "timeout", "attempts": self.attempts}


async def poll_until_done(generation_id: str, user_id: str) -> Dict[str, Any]:
    async def check() -> Dict[str, Any]:
        try:
            return await refresh_generation(generation_id, user_id)
        except HTTPException as e:
            if e.status_code == 404:
                return {"status": "failed", "error_message": "generation not found"}
            raise

    result = await GenerationPoller(check).run()
    if result.get("status") == "timeout":
        await _finish_generation(generation_id, status="failed", error_message="generation timed out")
        logger.warning("generation %s timed out after %s attempts", generation_id, result.get("attempts"))
    return result


class PollTasks:
    """Running poll tasks keyed by generation id."""

    def __init__(self) -> None:
        self._tasks: Dict[str, "asyncio.Task[Any]"] = {}

    def start(self, key: str, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        self.cancel(key)
        task = asyncio.ensure_future(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._discard(k, t))
        return task

    def _discard(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error("poll task %s crashed", key, exc_info=task.exception())

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)


poll_tasks = PollTasks()


# -----------------------------
# Library
# -----------------------------

async def list_library(
    user_id: str,
    *,
    search: str = "",
    model: str = "",
    aspect_ratio: str = "",
    sort: str = "newest",
) -> List[Dict[str, Any]]:
    clauses = ["user_id=?"]
    params: List[Any] = [user_id]
    if search:
        clauses.append("prompt LIKE ?")
        params.append(f"%{search}%")
    if model:
        clauses.append("model_used=?")
        params.append(model)
    if aspect_ratio:
        clauses.append("aspect_ratio=?")
        params.append(aspect_ratio)
    order = "ASC" if sort == "oldest" else "DESC"
    sql = (
        "SELECT id,session_id,prompt,image_url,model_used,aspect_ratio,created_at FROM image_library "
        f"WHERE {' AND '.join(clauses)} ORDER BY created_at {order}, rowid {order}"
    )
    async with db.connect() as conn:
        conn.row_factory = aiosqlite.Row
        async with conn.execute(sql, tuple(params)) as cur:
            rows = await cur.fetchall()
    return [dict(r) for r in rows]


async def delete_library_image(image_id: str, user_id: str) -> None:
    async with db.connect() as conn:
        cur = await conn.execute("DELETE FROM image_library WHERE id=? AND user_id=?", (image_id, user_id))
        await conn.commit()
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="image not found")
