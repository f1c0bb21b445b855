"""Unit tests for the terminal chat interface."""

import io

import pytest
from rich.console import Console

from tactus_agent.core.agent_loop import AgentLoop
from tactus_agent.core.errors import TransportError
from tactus_agent.core.tool_execution_engine import ToolExecutionEngine
from tactus_agent.core.chat_interface import ChatInterface
from tactus_agent.core.types import StopReason

ECHO_CALL = '<tool_call>{"name": "echo", "arguments": {"text": "ping"}}</tool_call>'


def make_interface(client, registry, **kwargs):
    output = io.StringIO()
    loop = AgentLoop(client, registry, executor=ToolExecutionEngine(registry))
    console = Console(file=output, force_terminal=False, width=100)
    return ChatInterface(loop, console=console, **kwargs), output


@pytest.mark.unit
class TestChatInterface:
    @pytest.mark.asyncio
    async def test_run_turn_records_answer(self, scripted_client, registry):
        client = scripted_client([["Checking. ", ECHO_CALL], ["It says ping."]])
        interface, output = make_interface(client, registry)

        record = await interface.run_turn("What does echo say?")

        assert record.stop_reason == StopReason.COMPLETED
        assert [m.role for m in interface.messages] == ["user", "assistant"]
        assert interface.messages[1].content == "Checking. It says ping."
        assert "Executing echo..." in output.getvalue()
        assert "✅ echo" in output.getvalue()

    @pytest.mark.asyncio
    async def test_history_is_sent_on_the_next_turn(self, scripted_client, registry):
        client = scripted_client([["First."], ["Second."]])
        interface, _ = make_interface(client, registry)

        await interface.run_turn("one")
        await interface.run_turn("two")

        roles = [m["role"] for m in client.requests[1]]
        assert roles == ["system", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self, registry):
        class FailingClient:
            async def stream_chat(self, messages):
                raise TransportError("API error: 503")
                yield ""

        interface, output = make_interface(FailingClient(), registry)
        assert await interface.run_turn("hi") is None
        assert interface.messages == []
        assert "Request failed: API error: 503" in output.getvalue()

    @pytest.mark.asyncio
    async def test_show_context_prints_last_request(self, scripted_client, registry):
        client = scripted_client([["Done."]])
        interface, output = make_interface(client, registry, show_context=True)

        await interface.run_turn("hello context")

        assert "Context (round 1)" in output.getvalue()
        assert "hello context" in output.getvalue()

    def test_print_tools(self, scripted_client, registry):
        interface, output = make_interface(scripted_client([]), registry)
        interface.print_tools()
        assert "echo" in output.getvalue()
