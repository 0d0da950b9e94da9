"""Tests for AsyncChatClient request building, parsing and streaming."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from deecli.config import ProfileSpec
from deecli.llm.client import AsyncChatClient
from deecli.llm.errors import APIError, ErrorKind, RetriesExhaustedError
from deecli.types import Message, ToolCall, ToolDefinition


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def chat_profile() -> ProfileSpec:
    return ProfileSpec(api_key="test-key", base_url="http://test", model="deepseek-chat")


@pytest.fixture
def reasoner_profile() -> ProfileSpec:
    return ProfileSpec(api_key="test-key", base_url="http://test", model="deepseek-reasoner")


READ_TOOL = ToolDefinition(
    name="read_file",
    description="Read a file",
    parameters={"type": "object", "properties": {"path": {"type": "string"}}},
)


def _completion(content: str = "Hello!", tool_calls: list | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
        "model": "deepseek-chat",
    }


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        # Fresh response per request so a replayed body is never consumed twice
        return httpx.Response(
            template.status_code, headers=template.headers, content=template.content,
        )

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _client(profile: ProfileSpec, recorder: Recorder) -> AsyncChatClient:
    return AsyncChatClient(profile, transport=httpx.MockTransport(recorder))


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

class TestBuildPayload:
    def test_basic_fields(self, chat_profile):
        client = AsyncChatClient(chat_profile)
        payload = client.build_payload([Message.user("hi")])
        assert payload["model"] == "deepseek-chat"
        assert payload["messages"] == [{"role": "user", "content": "hi"}]
        assert payload["max_tokens"] == 4096
        assert payload["temperature"] == 0.1
        assert "stream" not in payload
        assert "tools" not in payload
        assert "tool_choice" not in payload

    def test_reasoning_model_omits_temperature(self, reasoner_profile):
        payload = AsyncChatClient(reasoner_profile).build_payload([Message.user("hi")])
        assert "temperature" not in payload

    def test_tools_forwarded_verbatim(self, chat_profile):
        payload = AsyncChatClient(chat_profile).build_payload(
            [Message.user("hi")], [READ_TOOL], "auto",
        )
        assert payload["tools"] == [{
            "type": "function",
            "function": {
                "name": "read_file",
                "description": "Read a file",
                "parameters": {"type": "object", "properties": {"path": {"type": "string"}}},
            },
        }]
        assert payload["tool_choice"] == "auto"

    def test_tool_choice_dropped_without_tools(self, chat_profile):
        payload = AsyncChatClient(chat_profile).build_payload([Message.user("hi")], [], "none")
        assert "tool_choice" not in payload

    def test_history_not_mutated(self, chat_profile):
        history = [Message.user("a"), Message.assistant("b")]
        snapshot = list(history)
        AsyncChatClient(chat_profile).build_payload(history)
        assert history == snapshot

    def test_tool_messages_serialized(self, chat_profile):
        call = ToolCall(id="call_1", name="read_file", arguments='{"path": "x"}')
        payload = AsyncChatClient(chat_profile).build_payload([
            Message.assistant("", [call]),
            Message.tool_result("call_1", "contents"),
        ])
        assert payload["messages"][0]["tool_calls"][0]["function"]["name"] == "read_file"
        assert payload["messages"][1] == {
            "role": "tool", "content": "contents", "tool_call_id": "call_1",
        }


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

class TestSend:
    async def test_text_response(self, chat_profile):
        recorder = Recorder(httpx.Response(200, json=_completion("Hi there")))
        result = await _client(chat_profile, recorder).send([Message.user("hi")])
        assert result.content == "Hi there"
        assert result.finish_reason == "stop"
        assert not result.has_tool_calls
        assert result.usage["total_tokens"] == 30
        assert result.latency_ms >= 0

    async def test_headers(self, chat_profile):
        recorder = Recorder(httpx.Response(200, json=_completion()))
        await _client(chat_profile, recorder).send([Message.user("hi")])
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        assert request.headers["Content-Type"] == "application/json"

    async def test_tool_call_response(self, chat_profile):
        recorder = Recorder(httpx.Response(200, json=_completion("", tool_calls=[{
            "id": "call_abc",
            "type": "function",
            "function": {"name": "read_file", "arguments": '{"path": "main.go"}'},
        }])))
        result = await _client(chat_profile, recorder).send(
            [Message.user("read it")], [READ_TOOL], "auto",
        )
        assert result.has_tool_calls
        assert result.tool_calls[0].id == "call_abc"
        assert result.tool_calls[0].parsed_arguments() == {"path": "main.go"}
        assert recorder.bodies[0]["tool_choice"] == "auto"

    async def test_null_content(self, chat_profile):
        body = _completion()
        body["choices"][0]["message"]["content"] = None
        recorder = Recorder(httpx.Response(200, json=body))
        result = await _client(chat_profile, recorder).send([Message.user("hi")])
        assert result.content == ""

    async def test_non_object_body_is_decode_error(self, chat_profile):
        recorder = Recorder(httpx.Response(200, json=[1, 2]))
        with patch("deecli.llm.client._backoff_sleep", new_callable=AsyncMock):
            with pytest.raises(RetriesExhaustedError) as exc_info:
                await _client(chat_profile, recorder).send([Message.user("hi")])
        assert exc_info.value.kind is ErrorKind.DECODE


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def _sse(*frames: dict) -> bytes:
    lines = [": keep-alive\n\n"]
    lines.extend(f"data: {json.dumps(f)}\n\n" for f in frames)
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _delta(content: str = "", finish_reason=None) -> dict:
    return {"choices": [{"delta": {"content": content}, "finish_reason": finish_reason}]}


class TestOpenStream:
    async def test_stream_headers_and_body(self, chat_profile):
        recorder = Recorder(httpx.Response(200, content=_sse(_delta("a"))))
        client = _client(chat_profile, recorder)
        stream = await client.open_stream([Message.user("hi")])
        await stream.close()

        request = recorder.requests[0]
        assert request.headers["Accept"] == "text/event-stream"
        assert request.headers["Cache-Control"] == "no-cache"
        assert request.headers["Connection"] == "keep-alive"
        assert request.headers["Authorization"] == "Bearer test-key"
        assert recorder.bodies[0]["stream"] is True

    async def test_chunks_decoded(self, chat_profile):
        recorder = Recorder(httpx.Response(
            200, content=_sse(_delta("Hel"), _delta("lo"), _delta(finish_reason="stop")),
        ))
        client = _client(chat_profile, recorder)
        async with await client.open_stream([Message.user("hi")]) as stream:
            chunks = [c async for c in stream]
        assert "".join(c.content for c in chunks) == "Hello"
        assert chunks[-1].finish_reason == "stop"

    async def test_open_retried_before_any_chunk(self, chat_profile):
        recorder = Recorder(
            httpx.Response(503, text="busy"),
            httpx.Response(200, content=_sse(_delta("ok"))),
        )
        client = _client(chat_profile, recorder)
        with patch("deecli.llm.client._backoff_sleep", new_callable=AsyncMock):
            stream = await client.open_stream([Message.user("hi")])
        chunk = await stream.recv()
        await stream.close()
        assert chunk.content == "ok"
        assert len(recorder.requests) == 2

    async def test_open_auth_failure_not_retried(self, chat_profile):
        recorder = Recorder(httpx.Response(401, text="bad key"))
        with pytest.raises(APIError) as exc_info:
            await _client(chat_profile, recorder).open_stream([Message.user("hi")])
        assert exc_info.value.kind is ErrorKind.AUTH
        assert "bad key" in exc_info.value.message
        assert len(recorder.requests) == 1

    async def test_inflight_tracked_until_close(self, chat_profile):
        recorder = Recorder(httpx.Response(200, content=_sse(_delta("a"))))
        client = _client(chat_profile, recorder)
        stream = await client.open_stream([Message.user("hi")])
        assert client.inflight == 1
        assert not await client.close_idle_connections()
        await stream.close()
        assert client.inflight == 0
        assert await client.close_idle_connections()


# ---------------------------------------------------------------------------
# Pool and ping
# ---------------------------------------------------------------------------

class TestPool:
    async def test_close_without_pool(self, chat_profile):
        assert not await AsyncChatClient(chat_profile).close_idle_connections()

    async def test_pool_rebuilt_after_close(self, chat_profile):
        recorder = Recorder(httpx.Response(200, json=_completion()))
        client = _client(chat_profile, recorder)
        await client.send([Message.user("a")])
        assert await client.close_idle_connections()
        await client.send([Message.user("b")])
        assert len(recorder.requests) == 2
        await client.close()

    async def test_ping_is_minimal_single_attempt(self, chat_profile):
        recorder = Recorder(httpx.Response(503, text="down"))
        client = _client(chat_profile, recorder)
        with pytest.raises(APIError) as exc_info:
            await client.ping()
        assert not isinstance(exc_info.value, RetriesExhaustedError)
        assert len(recorder.requests) == 1
        body = recorder.bodies[0]
        assert body["max_tokens"] == 1
        assert body["messages"] == [
            {"role": "system", "content": "ping"},
            {"role": "user", "content": "pong"},
        ]
