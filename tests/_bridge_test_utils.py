import asyncio
import json
import os
import sys
from typing import Dict, List, Optional

import httpx

# Add src to path so the package imports without an editable install
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from claudebridge.claude_client import ClaudeWebClient  # noqa: E402
from claudebridge.config import get_config  # noqa: E402

BASE_URL = "https://claude.test"
MISSING_CONFIG = os.path.join(os.path.dirname(__file__), "no-such-config.json")


def make_config(**overrides) -> dict:
    config = get_config(path=MISSING_CONFIG, environ={})
    config["cleanup_retry_delay_seconds"] = 0.0
    config.update(overrides)
    return config


def sse_line(event: dict) -> str:
    return "data: " + json.dumps(event) + "\n\n"


def text_delta(text: str) -> str:
    return sse_line({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}})


def thinking_delta(text: str) -> str:
    return sse_line(
        {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": text}}
    )


def error_event(message: str) -> str:
    return sse_line({"type": "error", "error": {"type": "overloaded_error", "message": message}})


def sse_body(*events: str) -> bytes:
    return ("event: message_start\n" + "".join(events)).encode("utf-8")


class BrokenStream(httpx.AsyncByteStream):
    """Yields some bytes, then fails like a dropped connection."""

    def __init__(self, prefix: bytes = b"") -> None:
        self.prefix = prefix

    async def __aiter__(self):
        if self.prefix:
            yield self.prefix
        raise httpx.ReadError("connection reset")

    async def aclose(self) -> None:
        pass


class TrickleStream(httpx.AsyncByteStream):
    """Yields some bytes, then stalls before the rest."""

    def __init__(self, prefix: bytes, delay: float) -> None:
        self.prefix = prefix
        self.delay = delay

    async def __aiter__(self):
        yield self.prefix
        await asyncio.sleep(self.delay)
        yield b"data: {}\n\n"

    async def aclose(self) -> None:
        pass


def session_key_of(request: httpx.Request) -> str:
    cookie = request.headers.get("cookie", "")
    for part in cookie.split(";"):
        name, _, value = part.strip().partition("=")
        if name == "sessionKey":
            return value
    return ""


class FakeClaude:
    """
    In-memory stand-in for the claude.ai web API.

    Per-session behaviour is configured through the dicts below; every request
    is recorded as ``(method, path, session_key)``.
    """

    def __init__(self, completion_body: bytes = b"") -> None:
        self.completion_body = completion_body
        self.completion_bodies: Dict[str, object] = {}
        self.org_status: Dict[str, int] = {}
        self.orgs: Dict[str, list] = {}
        self.completion_status: Dict[str, int] = {}
        self.create_status: Dict[str, int] = {}
        self.delete_status = 204
        self.requests: List[tuple] = []
        self.json_bodies: List[tuple] = []
        self._conversation_counter = 0

    def paths(self, method: Optional[str] = None, suffix: str = "") -> List[str]:
        return [p for (m, p, _) in self.requests if (method is None or m == method) and p.endswith(suffix)]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client_factory(self, session_key: str, config: dict) -> ClaudeWebClient:
        return ClaudeWebClient(
            session_key,
            transport=self.transport(),
            base_url=BASE_URL,
            timeout_seconds=config.get("request_timeout_seconds", 300),
            response_header_timeout_seconds=config.get("response_header_timeout_seconds", 10),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        key = session_key_of(request)
        path = request.url.path
        self.requests.append((request.method, path, key))
        if request.headers.get("content-type", "").startswith("application/json"):
            self.json_bodies.append((path, json.loads(request.content or b"null")))

        if request.method == "GET" and path == "/api/organizations":
            status = self.org_status.get(key, 200)
            if status != 200:
                return httpx.Response(status, json={"error": "nope"})
            orgs = self.orgs.get(key, [{"uuid": f"org-{key}", "rate_limit_tier": "default_claude_ai"}])
            return httpx.Response(200, json=orgs)

        if request.method == "POST" and path.endswith("/upload"):
            return httpx.Response(200, json={"file_uuid": f"file-{len(self.paths('POST', '/upload'))}"})

        if request.method == "POST" and path.endswith("/completion"):
            status = self.completion_status.get(key, 200)
            if status != 200:
                return httpx.Response(status, text="upstream says no")
            body = self.completion_bodies.get(key, self.completion_body)
            if isinstance(body, httpx.AsyncByteStream):
                return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=body)
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

        if request.method == "POST" and path.endswith("/chat_conversations"):
            status = self.create_status.get(key, 201)
            if status not in (200, 201):
                return httpx.Response(status, json={"error": "nope"})
            self._conversation_counter += 1
            return httpx.Response(status, json={"uuid": f"conv-{self._conversation_counter}"})

        if request.method == "DELETE":
            return httpx.Response(self.delete_status)

        return httpx.Response(404, json={"error": "not found"})
