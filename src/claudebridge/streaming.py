import json
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional

import httpx

from .config import debug_print
from .errors import ClientDisconnected, StreamError

SSE_DATA_PREFIX = "data: "
SSE_DONE = "data: [DONE]\n\n"

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>\n"

TEXT_DELTA = "text_delta"
THINKING_DELTA = "thinking_delta"
ERROR = "error"
OTHER = "other"

DisconnectCheck = Optional[Callable[[], Awaitable[bool]]]


def openai_error_payload(message: str, type: str, code: object) -> dict:  # noqa: A002
    return {"error": {"message": str(message), "type": str(type), "code": code}}


def format_sse(payload: dict) -> str:
    return f"{SSE_DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n"


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    text: str = ""


def parse_claude_sse_line(line: str) -> Optional[StreamEvent]:
    """
    Parse one upstream SSE line.

    Returns None for blank lines, non-data lines and payloads that are not JSON.
    """
    if not isinstance(line, str) or not line.startswith(SSE_DATA_PREFIX):
        return None
    try:
        event = json.loads(line[len(SSE_DATA_PREFIX):])
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return None

    error = event.get("error")
    if event.get("type") == "error" and isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return StreamEvent(ERROR, message)

    delta = event.get("delta")
    if isinstance(delta, dict):
        delta_type = delta.get("type")
        if delta_type == TEXT_DELTA:
            text = delta.get("text")
            return StreamEvent(TEXT_DELTA, text if isinstance(text, str) else "")
        if delta_type == THINKING_DELTA:
            thinking = delta.get("thinking")
            return StreamEvent(THINKING_DELTA, thinking if isinstance(thinking, str) else "")

    return StreamEvent(OTHER)


def build_chunk(chunk_id: str, model: str, content: str) -> dict:
    return {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": content},
                "logprobs": None,
                "finish_reason": None,
            }
        ],
    }


def build_completion(completion_id: str, model: str, text: str) -> dict:
    # Usage is a character count, not a tokenizer result.
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": text,
                    "refusal": None,
                    "annotations": [],
                },
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": 0,
            "completion_tokens": len(text),
            "total_tokens": len(text),
        },
    }


class ClaudeStreamTranslator:
    """
    Incremental Claude SSE -> OpenAI translator for one response body.

    ``feed`` returns the SSE frames to write for a line (always empty when not
    streaming), ``finish`` returns the trailing frames once the body is
    exhausted, and ``completion`` builds the buffered non-streaming answer.
    An upstream error event closes the translator: it yields a single chunk
    carrying the error message and ignores everything that follows.
    """

    def __init__(self, model: str, *, stream: bool = True, chunk_id: Optional[str] = None) -> None:
        self.model = model
        self.stream = bool(stream)
        self.chunk_id = chunk_id or f"chatcmpl-{uuid.uuid4()}"
        self.text = ""
        self.thinking_open = False
        self.error_message: Optional[str] = None
        self.closed = False

    def feed(self, line: str) -> List[str]:
        if self.closed:
            return []
        event = parse_claude_sse_line(line)
        if event is None:
            return []
        return self.feed_event(event)

    def feed_event(self, event: StreamEvent) -> List[str]:
        if self.closed:
            return []

        if event.kind == ERROR:
            debug_print(f"❌ Upstream stream error: {event.text}")
            self.error_message = event.text
            self.closed = True
            if not self.stream:
                return []
            return [format_sse(build_chunk(self.chunk_id, self.model, event.text))]

        if event.kind == TEXT_DELTA:
            if not event.text:
                return []
            content = event.text
            if self.thinking_open:
                content = THINK_CLOSE + content
                self.thinking_open = False
        elif event.kind == THINKING_DELTA:
            content = event.text
            if not self.thinking_open:
                content = THINK_OPEN + content
                self.thinking_open = True
        else:
            return []

        self.text += content
        if not self.stream:
            return []
        return [format_sse(build_chunk(self.chunk_id, self.model, content))]

    def finish(self) -> List[str]:
        if self.closed or not self.stream:
            return []
        self.closed = True
        return [SSE_DONE]

    def completion(self) -> dict:
        text = self.error_message if self.error_message is not None else self.text
        return build_completion(self.chunk_id, self.model, text)


async def _disconnected(is_disconnected: DisconnectCheck) -> bool:
    if is_disconnected is None:
        return False
    return bool(await is_disconnected())


async def _next_line(lines: AsyncIterator[str]) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None
    except httpx.HTTPError as e:
        raise StreamError(f"error reading response: {type(e).__name__}: {e}") from e


async def prime_stream(
    translator: ClaudeStreamTranslator,
    lines: AsyncIterator[str],
    is_disconnected: DisconnectCheck = None,
) -> tuple[List[str], bool]:
    """
    Read upstream lines until the translator produces its first frame.

    Returns ``(frames, exhausted)``. Read failures raise StreamError, which the
    caller can still retry because nothing has been written yet.
    """
    while True:
        if await _disconnected(is_disconnected):
            raise ClientDisconnected("client closed connection")
        line = await _next_line(lines)
        if line is None:
            return [], True
        frames = translator.feed(line)
        if frames or translator.closed:
            return frames, False


async def iter_openai_stream(
    translator: ClaudeStreamTranslator,
    lines: AsyncIterator[str],
    *,
    pending: Iterable[str] = (),
    exhausted: bool = False,
    is_disconnected: DisconnectCheck = None,
) -> AsyncIterator[str]:
    """Yield OpenAI SSE frames in upstream order, ending with ``[DONE]``."""
    for frame in pending:
        yield frame

    if not exhausted:
        while not translator.closed:
            if await _disconnected(is_disconnected):
                debug_print("🔌 Client closed connection")
                return
            line = await _next_line(lines)
            if line is None:
                break
            for frame in translator.feed(line):
                yield frame
    elif await _disconnected(is_disconnected):
        return

    for frame in translator.finish():
        yield frame


async def collect_completion(
    translator: ClaudeStreamTranslator,
    lines: AsyncIterator[str],
    is_disconnected: DisconnectCheck = None,
) -> dict:
    """Consume a whole body for a non-streaming caller."""
    while not translator.closed:
        if await _disconnected(is_disconnected):
            raise ClientDisconnected("client closed connection")
        line = await _next_line(lines)
        if line is None:
            break
        translator.feed(line)
    translator.finish()
    return translator.completion()
