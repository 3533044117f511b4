import json
import unittest

import httpx

from _bridge_test_utils import error_event, text_delta, thinking_delta

from claudebridge.errors import ClientDisconnected, StreamError
from claudebridge.streaming import (
    ERROR,
    OTHER,
    SSE_DONE,
    TEXT_DELTA,
    THINKING_DELTA,
    ClaudeStreamTranslator,
    StreamEvent,
    collect_completion,
    iter_openai_stream,
    parse_claude_sse_line,
    prime_stream,
)


def _lines(*chunks: str) -> list[str]:
    out: list[str] = []
    for chunk in chunks:
        out.extend(chunk.split("\n"))
    return out


async def _aiter(lines):
    for line in lines:
        yield line


async def _broken_after(lines):
    for line in lines:
        yield line
    raise httpx.ReadError("connection reset")


def _content(frame: str) -> str:
    payload = json.loads(frame[len("data: "):])
    return payload["choices"][0]["delta"]["content"]


class TestParseLine(unittest.TestCase):
    def test_event_kinds(self) -> None:
        self.assertEqual(parse_claude_sse_line(text_delta("hi").strip()), StreamEvent(TEXT_DELTA, "hi"))
        self.assertEqual(parse_claude_sse_line(thinking_delta("hm").strip()), StreamEvent(THINKING_DELTA, "hm"))
        self.assertEqual(parse_claude_sse_line(error_event("boom").strip()), StreamEvent(ERROR, "boom"))
        self.assertEqual(parse_claude_sse_line('data: {"type": "message_stop"}'), StreamEvent(OTHER))

    def test_ignored_lines(self) -> None:
        self.assertIsNone(parse_claude_sse_line(""))
        self.assertIsNone(parse_claude_sse_line("event: completion"))
        self.assertIsNone(parse_claude_sse_line("data: {not json"))
        self.assertIsNone(parse_claude_sse_line("data: [1, 2]"))

    def test_error_without_message_is_not_an_error(self) -> None:
        event = parse_claude_sse_line('data: {"type": "error", "error": {"message": ""}}')
        self.assertEqual(event, StreamEvent(OTHER))


class TestTranslator(unittest.TestCase):
    def test_text_delta_chunk(self) -> None:
        translator = ClaudeStreamTranslator("m", chunk_id="chatcmpl-x")
        frames = translator.feed(text_delta("hi").strip())
        self.assertEqual(len(frames), 1)
        payload = json.loads(frames[0][len("data: "):])
        self.assertEqual(payload["id"], "chatcmpl-x")
        self.assertEqual(payload["object"], "chat.completion.chunk")
        self.assertEqual(payload["model"], "m")
        self.assertEqual(payload["choices"][0]["delta"], {"content": "hi"})
        self.assertIsNone(payload["choices"][0]["finish_reason"])
        self.assertEqual(translator.finish(), [SSE_DONE])

    def test_thinking_block_wrapping(self) -> None:
        translator = ClaudeStreamTranslator("m")
        contents = []
        for line in (thinking_delta("a"), thinking_delta("b"), text_delta("c")):
            contents.extend(_content(f) for f in translator.feed(line.strip()))
        self.assertEqual(contents, ["<think>a", "b", "</think>\nc"])
        self.assertEqual(translator.text, "<think>ab</think>\nc")

    def test_empty_text_delta_is_skipped(self) -> None:
        translator = ClaudeStreamTranslator("m")
        self.assertEqual(translator.feed(text_delta("").strip()), [])

    def test_error_short_circuits(self) -> None:
        translator = ClaudeStreamTranslator("m")
        frames = translator.feed(error_event("boom").strip())
        self.assertEqual([_content(f) for f in frames], ["boom"])
        self.assertEqual(translator.feed(text_delta("late").strip()), [])
        self.assertEqual(translator.finish(), [])

    def test_non_streaming_completion(self) -> None:
        translator = ClaudeStreamTranslator("m", stream=False)
        self.assertEqual(translator.feed(text_delta("a").strip()), [])
        translator.feed(text_delta("b").strip())
        self.assertEqual(translator.finish(), [])

        completion = translator.completion()
        self.assertEqual(completion["object"], "chat.completion")
        self.assertEqual(completion["choices"][0]["message"]["content"], "ab")
        self.assertEqual(completion["choices"][0]["finish_reason"], "stop")
        self.assertEqual(completion["usage"], {"prompt_tokens": 0, "completion_tokens": 2, "total_tokens": 2})

    def test_non_streaming_error_becomes_content(self) -> None:
        translator = ClaudeStreamTranslator("m", stream=False)
        translator.feed(text_delta("partial").strip())
        translator.feed(error_event("boom").strip())
        self.assertEqual(translator.completion()["choices"][0]["message"]["content"], "boom")


class TestStreamHelpers(unittest.IsolatedAsyncioTestCase):
    async def test_prime_then_iterate(self) -> None:
        translator = ClaudeStreamTranslator("m")
        lines = _aiter(_lines("event: message_start", text_delta("a"), text_delta("b")))

        pending, exhausted = await prime_stream(translator, lines)
        self.assertEqual([_content(f) for f in pending], ["a"])
        self.assertFalse(exhausted)

        frames = [f async for f in iter_openai_stream(translator, lines, pending=pending, exhausted=exhausted)]
        self.assertEqual([_content(f) for f in frames[:-1]], ["a", "b"])
        self.assertEqual(frames[-1], SSE_DONE)

    async def test_prime_empty_body(self) -> None:
        translator = ClaudeStreamTranslator("m")
        lines = _aiter([])
        pending, exhausted = await prime_stream(translator, lines)
        self.assertEqual((pending, exhausted), ([], True))
        frames = [f async for f in iter_openai_stream(translator, lines, exhausted=True)]
        self.assertEqual(frames, [SSE_DONE])

    async def test_prime_read_failure_is_stream_error(self) -> None:
        translator = ClaudeStreamTranslator("m")
        with self.assertRaises(StreamError):
            await prime_stream(translator, _broken_after(["event: message_start"]))

    async def test_prime_stops_on_disconnect(self) -> None:
        async def gone() -> bool:
            return True

        with self.assertRaises(ClientDisconnected):
            await prime_stream(ClaudeStreamTranslator("m"), _aiter(_lines(text_delta("a"))), gone)

    async def test_iterate_stops_silently_on_disconnect(self) -> None:
        calls = {"n": 0}

        async def gone_after_first() -> bool:
            calls["n"] += 1
            return calls["n"] > 1

        translator = ClaudeStreamTranslator("m")
        lines = _aiter(_lines(text_delta("a"), text_delta("b")))
        frames = [f async for f in iter_openai_stream(translator, lines, is_disconnected=gone_after_first)]
        self.assertEqual([_content(f) for f in frames], ["a"])

    async def test_collect_completion(self) -> None:
        translator = ClaudeStreamTranslator("m", stream=False)
        completion = await collect_completion(
            translator, _aiter(_lines(thinking_delta("t"), text_delta("a"), text_delta("b")))
        )
        self.assertEqual(completion["choices"][0]["message"]["content"], "<think>t</think>\nab")

    async def test_collect_read_failure_is_stream_error(self) -> None:
        translator = ClaudeStreamTranslator("m", stream=False)
        with self.assertRaises(StreamError):
            await collect_completion(translator, _broken_after(_lines(text_delta("a"))))


if __name__ == "__main__":
    unittest.main()
