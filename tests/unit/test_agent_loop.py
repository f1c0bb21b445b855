"""Unit tests for the ReAct agent loop."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tactus_agent.core.agent_loop import AgentLoop, ReActConfig
from tactus_agent.core.builtin_tool_executor import BuiltinToolExecutor
from tactus_agent.core.errors import TransportError
from tactus_agent.core.tool_execution_engine import ToolExecutionEngine
from tactus_agent.core.tool_registry import ToolRegistry
from tactus_agent.core.types import (
    CancelledEvent,
    ChatMessage,
    ContentEvent,
    DoneEvent,
    StopReason,
    ThinkingEvent,
    ToolCallEvent,
    ToolContext,
    ToolResultEvent,
)
from tactus_agent.tools.page_content import StaticPageSource

ECHO_CALL = '<tool_call>{"name": "echo", "arguments": {"text": "ping"}}</tool_call>'
PAGE_CALL = '<tool_call>{"name": "extract_page_content", "arguments": {}}</tool_call>'


def make_loop(client, registry, **config):
    return AgentLoop(
        client,
        registry,
        executor=ToolExecutionEngine(registry),
        react_config=ReActConfig(**config),
    )


async def run_to_end(loop, messages=None, cancel_event=None):
    messages = messages or [ChatMessage(role="user", content="hi")]
    return [event async for event in loop.run(messages, cancel_event=cancel_event)]


def of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


@pytest.mark.unit
class TestAgentLoop:
    @pytest.mark.asyncio
    async def test_answer_without_tools_completes(self, scripted_client, registry):
        client = scripted_client([["Hello", " there"]])
        events = await run_to_end(make_loop(client, registry))

        assert "".join(e.text for e in of_type(events, ContentEvent)) == "Hello there"
        assert isinstance(events[-1], DoneEvent)
        assert events[-1].reason == StopReason.COMPLETED
        assert events[-1].run.rounds == 1
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, scripted_client, registry):
        client = scripted_client([["Checking. ", ECHO_CALL], ["The answer is ping."]])
        loop = make_loop(client, registry)
        events = await run_to_end(loop)

        kinds = [e.type for e in events]
        assert kinds == [
            "content",
            "tool_call",
            "thinking",
            "tool_result",
            "content",
            "done",
        ]
        result = of_type(events, ToolResultEvent)[0].result
        assert result.succeeded
        assert result.result_text == "echo: ping"
        assert of_type(events, ToolCallEvent)[0].request.name == "echo"

        second_request = client.requests[1]
        assert second_request[0]["role"] == "system"
        assert second_request[-2] == {"role": "assistant", "content": "Checking. " + ECHO_CALL}
        assert second_request[-1]["role"] == "user"
        assert second_request[-1]["content"].startswith('<tool_result name="echo">\necho: ping\n</tool_result>')
        assert events[-1].run.rounds == 2

    @pytest.mark.asyncio
    async def test_iteration_limit_stops_after_tools_run(self, scripted_client, registry):
        client = scripted_client([[ECHO_CALL], [ECHO_CALL], [ECHO_CALL]])
        events = await run_to_end(make_loop(client, registry, max_iterations=2))

        assert len(client.requests) == 2
        assert len(of_type(events, ToolResultEvent)) == 2
        done = events[-1]
        assert isinstance(done, DoneEvent)
        assert done.reason == StopReason.ITERATION_LIMIT
        assert done.run.stop_reason == StopReason.ITERATION_LIMIT

    @pytest.mark.asyncio
    async def test_tools_disabled_ignores_requests(self, scripted_client, registry):
        client = scripted_client([["Sure", ECHO_CALL]])
        events = await run_to_end(make_loop(client, registry, enable_tools=False))

        assert of_type(events, ToolCallEvent) == []
        assert events[-1].reason == StopReason.TOOLS_DISABLED
        assert "echo" not in client.requests[0][0]["content"]

    @pytest.mark.asyncio
    async def test_unknown_tool_yields_failed_result_without_tool_call_event(
        self, scripted_client, registry
    ):
        client = scripted_client(
            [['<tool_call>{"name": "missing", "arguments": {}}</tool_call>'], ["ok"]]
        )
        events = await run_to_end(make_loop(client, registry))

        assert of_type(events, ToolCallEvent) == []
        result = of_type(events, ToolResultEvent)[0].result
        assert not result.succeeded
        assert "Tool missing not found" in result.result_text
        assert len(of_type(events, ThinkingEvent)) == 1

    @pytest.mark.asyncio
    async def test_page_tool_refused_when_sharing_is_off(self, scripted_client):
        registry = ToolRegistry()
        BuiltinToolExecutor(
            page_source=StaticPageSource("<p>SECRET PAGE</p>", "https://x")
        ).register_all(registry)
        client = scripted_client([[PAGE_CALL], ["ok"]])
        loop = make_loop(client, registry)

        messages = [ChatMessage(role="user", content="summarize")]
        events = [
            event
            async for event in loop.run(messages, ToolContext(share_page_content=False))
        ]

        assert of_type(events, ToolCallEvent) == []
        result = of_type(events, ToolResultEvent)[0].result
        assert not result.succeeded
        assert "not available in this context" in result.result_text
        assert "SECRET PAGE" not in client.requests[1][-1]["content"]

    @pytest.mark.asyncio
    async def test_page_tool_runs_when_sharing_is_on(self, scripted_client):
        registry = ToolRegistry()
        BuiltinToolExecutor(
            page_source=StaticPageSource("<p>SHARED PAGE</p>", "https://x")
        ).register_all(registry)
        client = scripted_client([[PAGE_CALL], ["ok"]])
        loop = make_loop(client, registry)

        messages = [ChatMessage(role="user", content="summarize")]
        events = [
            event
            async for event in loop.run(messages, ToolContext(share_page_content=True))
        ]

        assert len(of_type(events, ToolCallEvent)) == 1
        result = of_type(events, ToolResultEvent)[0].result
        assert result.succeeded
        assert "SHARED PAGE" in client.requests[1][-1]["content"]

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failed_result(self, scripted_client, registry):
        client = scripted_client([[ECHO_CALL], ["done"]])
        loop = AgentLoop(client, registry, executor=AsyncMock(side_effect=RuntimeError("boom")))
        events = await run_to_end(loop)

        result = of_type(events, ToolResultEvent)[0].result
        assert result.is_error
        assert "boom" in result.result_text
        assert events[-1].reason == StopReason.COMPLETED

    @pytest.mark.asyncio
    async def test_quote_is_folded_into_user_message(self, scripted_client, registry):
        client = scripted_client([["ok"]])
        messages = [ChatMessage(role="user", content="Explain", quote="E=mc^2")]
        await run_to_end(make_loop(client, registry), messages)

        assert client.requests[0][-1] == {
            "role": "user",
            "content": '[Quote: "E=mc^2"]\n\nExplain',
        }

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, registry):
        class FailingClient:
            async def stream_chat(self, messages):
                raise TransportError("API error: 500", status_code=500)
                yield ""

        with pytest.raises(TransportError):
            await run_to_end(make_loop(FailingClient(), registry))

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, scripted_client, registry):
        client = scripted_client([["never"]])
        cancel_event = asyncio.Event()
        cancel_event.set()
        events = await run_to_end(make_loop(client, registry), cancel_event=cancel_event)

        assert len(events) == 1
        assert isinstance(events[0], CancelledEvent)
        assert events[0].run.cancelled
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_cancel_mid_stream_keeps_partial_output(self, scripted_client, registry):
        client = scripted_client([["partial ", "rest"]], block_after=1)
        loop = make_loop(client, registry)
        cancel_event = asyncio.Event()

        events = []
        async for event in loop.run([ChatMessage(role="user", content="hi")], cancel_event=cancel_event):
            events.append(event)
            if isinstance(event, ContentEvent):
                cancel_event.set()

        assert isinstance(events[-1], CancelledEvent)
        assert of_type(events, DoneEvent) == []
        run = events[-1].run
        assert run.messages[-1].role == "assistant"
        assert run.messages[-1].content == "partial "
        assert client.closed_streams == 1

    @pytest.mark.asyncio
    async def test_last_run_records_round_messages(self, scripted_client, registry):
        client = scripted_client([[ECHO_CALL], ["fine"]])
        loop = make_loop(client, registry)
        await run_to_end(loop)

        assert loop.last_run is not None
        assert len(loop.last_run.round_messages) == 2
        assert loop.last_run.last_api_messages == client.requests[1]
