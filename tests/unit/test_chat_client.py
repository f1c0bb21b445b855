"""Unit tests for the streaming chat completion client."""

import json

import httpx
import pytest

from tactus_agent.core.chat_client import ChatCompletionClient, is_done_line, parse_sse_line
from tactus_agent.core.errors import ProtocolParseError, TransportError


def sse(*contents, done=True):
    lines = [": keep-alive", ""]
    for content in contents:
        chunk = {"choices": [{"delta": {"content": content}}]}
        lines.append(f"data: {json.dumps(chunk)}")
        lines.append("")
    if done:
        lines.append("data: [DONE]")
    return "\n".join(lines) + "\n"


def make_client(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatCompletionClient(
        "https://api.example.com/", "sk-test", "test-model", http_client=http_client
    )


async def collect(client, messages=None):
    return [f async for f in client.stream_chat(messages or [{"role": "user", "content": "hi"}])]


@pytest.mark.unit
class TestParseSSELine:
    def test_content_delta(self):
        line = 'data: {"choices": [{"delta": {"content": "Hi"}}]}'
        assert parse_sse_line(line) == "Hi"

    def test_non_data_lines_are_ignored(self):
        assert parse_sse_line(": comment") is None
        assert parse_sse_line("event: message") is None
        assert parse_sse_line("") is None

    def test_role_only_delta(self):
        assert parse_sse_line('data: {"choices": [{"delta": {"role": "assistant"}}]}') is None

    def test_empty_choices(self):
        assert parse_sse_line('data: {"choices": []}') is None

    def test_invalid_json_raises(self):
        with pytest.raises(ProtocolParseError):
            parse_sse_line("data: {oops")

    def test_done_line(self):
        assert is_done_line("data: [DONE]")
        assert is_done_line("data:[DONE]")
        assert parse_sse_line("data: [DONE]") is None
        assert not is_done_line('data: {"choices": []}')


@pytest.mark.unit
class TestChatCompletionClient:
    @pytest.mark.asyncio
    async def test_streams_fragments_in_order(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=sse("Hel", "lo"))

        client = make_client(handler)
        assert await collect(client) == ["Hel", "lo"]
        assert seen["url"] == "https://api.example.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "test-model"

    @pytest.mark.asyncio
    async def test_stops_at_done(self):
        body = sse("a") + 'data: {"choices": [{"delta": {"content": "late"}}]}\n'
        client = make_client(lambda request: httpx.Response(200, text=body))
        assert await collect(client) == ["a"]

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self):
        body = "data: {broken\n\n" + sse("ok")
        client = make_client(lambda request: httpx.Response(200, text=body))
        assert await collect(client) == ["ok"]

    @pytest.mark.asyncio
    async def test_stream_without_done_ends_normally(self):
        client = make_client(lambda request: httpx.Response(200, text=sse("x", done=False)))
        assert await collect(client) == ["x"]

    @pytest.mark.asyncio
    async def test_error_status_raises_transport_error(self):
        client = make_client(lambda request: httpx.Response(401, text="bad key"))
        with pytest.raises(TransportError) as exc_info:
            await collect(client)
        assert exc_info.value.status_code == 401
        assert "401" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(TransportError):
            await collect(client)

    @pytest.mark.asyncio
    async def test_fetch_models(self):
        def handler(request):
            assert request.url.path == "/v1/models"
            return httpx.Response(
                200, json={"data": [{"id": "m1"}, {"id": "m2", "name": "Model Two"}, {}]}
            )

        models = await make_client(handler).fetch_models()
        assert [(m.id, m.name) for m in models] == [("m1", "m1"), ("m2", "Model Two")]

    @pytest.mark.asyncio
    async def test_fetch_models_returns_empty_on_error(self):
        client = make_client(lambda request: httpx.Response(500))
        assert await client.fetch_models() == []
