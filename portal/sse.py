"""Server-sent events helpers.

Upstream chat completions arrive as an SSE byte stream (``data: {...}`` lines
terminated by ``data: [DONE]``). :class:`ChatDeltaDecoder` turns arbitrary
network chunks into text deltas; the ``sse_*`` helpers frame events for our
own clients.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional


logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
EMPTY_RESPONSE_FALLBACK = "Sorry, I couldn't generate a response."
STREAM_ERROR_MESSAGE = "Sorry, I encountered an error while processing your request. Please try again."


def _delta_content(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    c0 = choices[0]
    if not isinstance(c0, dict):
        return None
    delta = c0.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


class ChatDeltaDecoder:
    """Incremental decoder for an OpenAI-style chat completion stream.

    Network chunks may split lines and multi-byte characters anywhere, so a
    partial trailing line (and a partial UTF-8 sequence) is buffered until the
    next chunk completes it. Malformed JSON on a data line is skipped. Once the
    ``[DONE]`` sentinel is seen, further input is ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> List[str]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process(lines)

    def flush(self) -> List[str]:
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._process([tail])

    def _process(self, lines: List[str]) -> List[str]:
        out: List[str] = []
        for raw in lines:
            line = raw.rstrip("\r")
            # Blank lines separate events; ":" lines are comments such as ": ping".
            if not line or not line.startswith("data:"):
                continue
            data = line[len("data:") :].strip()
            if not data:
                continue
            if data == DONE_SENTINEL:
                self.done = True
                break
            try:
                obj = json.loads(data)
            except ValueError:
                logger.debug("skipping malformed stream line: %r", data[:200])
                continue
            content = _delta_content(obj)
            if content:
                out.append(content)
        return out


async def iter_chat_deltas(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    decoder = ChatDeltaDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            return
    for delta in decoder.flush():
        yield delta


class StreamAccumulator:
    def __init__(self) -> None:
        self._parts: List[str] = []

    def add(self, delta: str) -> None:
        self._parts.append(delta)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def final_text(self) -> str:
        text = self.text.strip()
        return text or EMPTY_RESPONSE_FALLBACK

    def has_content(self) -> bool:
        return self.final_text() != EMPTY_RESPONSE_FALLBACK


def sse_data(obj: Dict[str, Any]) -> bytes:
    return (f"data: {json.dumps(obj, ensure_ascii=False)}\n\n").encode("utf-8")


def sse_comment(text: str) -> bytes:
    t = " ".join((text or "").split())
    return (f": {t}\n\n").encode("utf-8")


def sse_error_once(message: str) -> AsyncIterator[bytes]:
    async def gen() -> AsyncIterator[bytes]:
        yield sse_data({"error": str(message or "error"), "done": True})

    return gen()


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
