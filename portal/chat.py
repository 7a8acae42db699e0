import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import HTTPException

from portal import config, upstream
from portal.sse import iter_chat_deltas


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are ChatGPT, a helpful AI assistant created by OpenAI. You are friendly, clear, and "
    "conversational. Provide helpful, accurate responses while maintaining a natural conversation "
    "flow. You can communicate in any language the user prefers."
)

STREAM_MAX_TOKENS = 2000
COMPLETION_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7


# -----------------------------
# Context building
# -----------------------------

def _approx_tokens(text: str) -> int:
    # Rough heuristic: ~4 chars/token.
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


def messages_approx_tokens(messages: List[Dict[str, Any]]) -> int:
    total = 0
    for m in messages:
        content = m.get("content")
        if isinstance(content, str):
            total += _approx_tokens(content)
        total += 4
    return total


def truncate_history(messages: List[Dict[str, Any]], max_context_tokens: int) -> List[Dict[str, Any]]:
    # Keep all system messages; drop oldest non-system messages until under limit.
    system_msgs = [m for m in messages if m.get("role") == "system"]
    non_system = [m for m in messages if m.get("role") != "system"]

    kept = list(non_system)
    while len(kept) > 1 and messages_approx_tokens(system_msgs + kept) > max_context_tokens:
        kept.pop(0)
    return system_msgs + kept


def build_context(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    for row in history:
        role = row.get("role")
        if role not in ("user", "assistant"):
            continue
        messages.append({"role": role, "content": row.get("content") or ""})
    return truncate_history(messages, config.CHAT_MAX_CONTEXT_TOKENS)


def with_system_prompt(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if messages and messages[0].get("role") == "system":
        return list(messages)
    return [{"role": "system", "content": SYSTEM_PROMPT}] + list(messages)


def resolve_model(model: Any) -> str:
    if model is None or model == "":
        return config.CHAT_DEFAULT_MODEL
    if not isinstance(model, str) or model not in config.CHAT_MODELS:
        raise HTTPException(status_code=400, detail="unsupported model")
    return model


# -----------------------------
# Upstream calls
# -----------------------------

async def chat_completion(
    messages: List[Dict[str, Any]],
    *,
    model: str,
    max_tokens: int = COMPLETION_MAX_TOKENS,
    temperature: float = DEFAULT_TEMPERATURE,
) -> Dict[str, Any]:
    if config.MOCK_MODE:
        reply = "[MOCK] " + str(messages[-1].get("content") if messages else "")
        return {
            "id": "chatcmpl-mock",
            "object": "chat.completion",
            "model": model,
            "choices": [{"index": 0, "message": {"role": "assistant", "content": reply}, "finish_reason": "stop"}],
        }

    api_key = upstream.require_key("openai")
    body = {
        "model": model,
        "messages": with_system_prompt(messages),
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    async with upstream.async_client(timeout=60) as client:
        resp = await client.post(
            f"{config.OPENAI_BASE_URL}/chat/completions",
            headers=upstream.openai_headers(api_key),
            json=body,
        )
    if resp.status_code >= 400:
        logger.warning("chat completion failed: status=%s", resp.status_code)
        raise HTTPException(status_code=502, detail=upstream.error_detail(resp, "openai request failed"))
    return resp.json()


def stream_chat_completion(
    messages: List[Dict[str, Any]],
    *,
    model: str,
    max_tokens: int = STREAM_MAX_TOKENS,
    temperature: float = DEFAULT_TEMPERATURE,
) -> AsyncIterator[str]:
    """Stream text deltas; the system prompt is prepended unless ``messages`` starts with one."""
    if config.MOCK_MODE:
        return _mock_stream(messages)

    api_key = upstream.require_key("openai")
    body = {
        "model": model,
        "messages": with_system_prompt(messages),
        "max_tokens": max_tokens,
        "temperature": temperature,
        "stream": True,
    }

    async def gen() -> AsyncIterator[str]:
        # Long-lived response; downstream keepalives cover the idle gaps.
        timeout = httpx.Timeout(60.0, connect=10.0, read=None)
        async with upstream.async_client(timeout=timeout) as client:
            async with client.stream(
                "POST",
                f"{config.OPENAI_BASE_URL}/chat/completions",
                headers=upstream.openai_headers(api_key),
                json=body,
            ) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    logger.warning(
                        "chat stream failed: status=%s body=%s",
                        resp.status_code,
                        raw[:500].decode("utf-8", errors="replace"),
                    )
                    raise HTTPException(status_code=502, detail="openai request failed")
                async for delta in iter_chat_deltas(resp.aiter_bytes()):
                    yield delta

    return gen()


async def _mock_stream(messages: List[Dict[str, Any]]) -> AsyncIterator[str]:
    reply = "[MOCK] " + str(messages[-1].get("content") if messages else "")
    for i in range(0, len(reply), 8):
        await asyncio.sleep(0)
        yield reply[i : i + 8]


# -----------------------------
# Intent detection
# -----------------------------

_PERSIAN_RE = re.compile(r"[\u0600-\u06FF]")

_PERSIAN_IMAGE_PATTERNS = [
    re.compile(p)
    for p in (
        r"تصویر.*بساز",
        r"عکس.*بساز",
        r"بساز.*تصویر",
        r"بساز.*عکس",
        r"تصویر.*ایجاد",
        r"عکس.*ایجاد",
        r"می‌?تون.*تصویر.*بساز",
        r"می‌?تون.*عکس.*بساز",
    )
]
_ENGLISH_IMAGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"generate.*image",
        r"create.*image",
        r"make.*image",
        r"draw.*image",
        r"image.*of",
        r"picture.*of",
        r"generate.*picture",
        r"create.*picture",
    )
]

_ENGLISH_OBJECT_RE = re.compile(r"\b(?:image|picture|photo|drawing)\s+of\s+(.+)$", re.IGNORECASE | re.DOTALL)
_PERSIAN_OBJECT_RE = re.compile(r"(?:تصویر|عکس)\s+(?:از\s+)?(?:یک\s+)?(.+?)\s+(?:(?:رو|را)\s+)?(?:بساز|ایجاد)")

_CONFIRMATION_WORDS = {
    "yes",
    "y",
    "yeah",
    "yep",
    "ok",
    "okay",
    "sure",
    "confirm",
    "confirmed",
    "proceed",
    "go ahead",
    "do it",
    "yes please",
    "بله",
    "بلی",
    "آره",
    "اره",
    "باشه",
    "تایید",
    "تأیید",
    "تایید میکنم",
    "تایید می‌کنم",
    "تأیید می‌کنم",
    "بساز",
    "حتما",
}


@dataclass
class ImageRequest:
    is_request: bool
    has_specific_object: bool = False
    object: Optional[str] = None


def detect_language(text: str) -> str:
    return "persian" if _PERSIAN_RE.search(text or "") else "english"


def _clean_object(value: str) -> str:
    return value.strip().strip(".!?؟،,\"'").strip()


def detect_image_request(text: str) -> ImageRequest:
    text = (text or "").strip()
    if not text:
        return ImageRequest(is_request=False)

    # All patterns apply regardless of the detected language.
    if not any(p.search(text) for p in _PERSIAN_IMAGE_PATTERNS + _ENGLISH_IMAGE_PATTERNS):
        return ImageRequest(is_request=False)

    object_res = [_PERSIAN_OBJECT_RE, _ENGLISH_OBJECT_RE]
    if detect_language(text) == "english":
        object_res.reverse()
    obj = ""
    for object_re in object_res:
        m = object_re.search(text)
        if m:
            obj = _clean_object(m.group(1))
            if obj:
                break
    if obj:
        return ImageRequest(is_request=True, has_specific_object=True, object=obj)
    return ImageRequest(is_request=True)


def is_confirmation(text: str) -> bool:
    normalized = " ".join((text or "").strip().lower().split())
    normalized = normalized.strip(".!?؟،,")
    return normalized in _CONFIRMATION_WORDS


def confirmation_text(language: str, obj: Optional[str]) -> str:
    if language == "persian":
        if obj:
            return f"بله، می‌توانم تصویر «{obj}» را بسازم. آیا برای ساخت تصویر تأیید می‌کنید؟"
        return "بله، می‌توانم تصویر بسازم. چه تصویری می‌خواهید؟ لطفاً مشخص کنید تا تأیید کنم."
    if obj:
        return f"Yes, I can generate an image of '{obj}'. Do you confirm to proceed with generating the image?"
    return "Yes, I can generate an image. What image would you like me to generate? Please specify so I can confirm."


def image_done_text(language: str, prompt: str) -> str:
    if language == "persian":
        return f'تصویر بر اساس "{prompt}" ساخته شد'
    return f'Generated image based on: "{prompt}"'


def image_failed_text(language: str, error: str) -> str:
    if language == "persian":
        return f"متأسفانه نتوانستم تصویر را بسازم. خطا: {error}"
    return f"Sorry, I couldn't generate the image. Error: {error}"


# -----------------------------
# Stream cancellation
# -----------------------------

class StreamRegistry:
    """One cancellation token per user; a new stream aborts the previous one."""

    def __init__(self) -> None:
        self._active: Dict[str, asyncio.Event] = {}

    def begin(self, user_id: str) -> asyncio.Event:
        previous = self._active.get(user_id)
        if previous is not None:
            previous.set()
        token = asyncio.Event()
        self._active[user_id] = token
        return token

    def abort(self, user_id: str) -> bool:
        token = self._active.pop(user_id, None)
        if token is None:
            return False
        token.set()
        return True

    def finish(self, user_id: str, token: asyncio.Event) -> None:
        if self._active.get(user_id) is token:
            del self._active[user_id]

    def is_active(self, user_id: str) -> bool:
        return user_id in self._active


streams = StreamRegistry()
