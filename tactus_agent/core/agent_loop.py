"""Bounded ReAct loop: generate, detect tool calls, execute, fold back, repeat."""

import asyncio
import logging
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from pydantic import BaseModel, Field

from tactus_agent.core.stream_parser import ToolCallStreamParser
from tactus_agent.core.system_prompt_builder import (
    SystemPromptBuilder,
    format_tool_result_message,
)
from tactus_agent.core.tool_registry import ToolRegistry
from tactus_agent.core.types import (
    CancelledEvent,
    ChatMessage,
    ContentEvent,
    ConversationMessage,
    DoneEvent,
    RunRecord,
    StopReason,
    StreamEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolContext,
    ToolInvocationRequest,
    ToolInvocationResult,
    ToolResultEvent,
)

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[ToolInvocationRequest], Awaitable[ToolInvocationResult]]


class ReActConfig(BaseModel):
    enable_tools: bool = True
    max_iterations: int = Field(default=3, ge=1)


class _RunCancelled(Exception):
    pass


class AgentLoop:
    """Drives one conversation turn through up to ``max_iterations`` model rounds."""

    def __init__(
        self,
        chat_client: Any,
        registry: ToolRegistry,
        executor: Optional[ToolExecutor] = None,
        react_config: Optional[ReActConfig] = None,
        system_prompt_builder: Optional[SystemPromptBuilder] = None,
    ):
        self.chat_client = chat_client
        self.registry = registry
        self.executor = executor
        self.react_config = react_config or ReActConfig()
        self.system_prompt_builder = system_prompt_builder or SystemPromptBuilder()
        self.last_run: Optional[RunRecord] = None

    def build_initial_context(
        self,
        messages: Sequence[Union[ChatMessage, ConversationMessage]],
        context: ToolContext,
    ) -> List[ConversationMessage]:
        """System prompt followed by the converted chat history."""
        tools = self.registry.list_available(context) if self.react_config.enable_tools else []
        system_prompt = self.system_prompt_builder.create_system_prompt(tools, context)

        rolling = [ConversationMessage(role="system", content=system_prompt)]
        for message in messages:
            if isinstance(message, ChatMessage):
                rolling.append(message.to_conversation_message())
            else:
                rolling.append(message)
        return rolling

    @staticmethod
    def to_api_messages(messages: List[ConversationMessage]) -> List[Dict[str, str]]:
        """Provider-facing message list; tool results travel as user messages."""
        return [
            {"role": "user" if m.role == "tool" else m.role, "content": m.content}
            for m in messages
        ]

    async def run(
        self,
        messages: Sequence[Union[ChatMessage, ConversationMessage]],
        context: Optional[ToolContext] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the loop, yielding stream events.

        Raises:
            TransportError: if a model call fails; the run is abandoned.
        """
        context = context or ToolContext()
        record = RunRecord(messages=self.build_initial_context(messages, context))
        self.last_run = record
        rolling = record.messages
        tools_active = self.react_config.enable_tools and self.executor is not None

        while True:
            if self._is_cancelled(cancel_event):
                yield self._cancel(record)
                return

            record.rounds += 1
            api_messages = self.to_api_messages(rolling)
            record.round_messages.append(api_messages)
            logger.debug(f"Round {record.rounds}: sending {len(api_messages)} messages")

            parser = ToolCallStreamParser()
            iterator = self.chat_client.stream_chat(api_messages).__aiter__()
            try:
                while True:
                    try:
                        fragment = await self._next_fragment(iterator, cancel_event)
                    except StopAsyncIteration:
                        break
                    for event in parser.feed(fragment):
                        if isinstance(event, ContentEvent):
                            yield event
            except _RunCancelled:
                await self._close_stream(iterator)
                if parser.raw_text:
                    rolling.append(
                        ConversationMessage(role="assistant", content=parser.raw_text)
                    )
                logger.info(f"Run cancelled during round {record.rounds}")
                yield self._cancel(record)
                return

            for event in parser.finish():
                if isinstance(event, ContentEvent):
                    yield event

            requests = parser.tool_calls
            rolling.append(ConversationMessage(role="assistant", content=parser.raw_text))

            if not requests or not tools_active:
                reason = StopReason.TOOLS_DISABLED if requests else StopReason.COMPLETED
                if requests:
                    logger.info(
                        f"Ignoring {len(requests)} tool calls because tool execution is disabled"
                    )
                record.stop_reason = reason
                yield DoneEvent(reason=reason, run=record)
                return

            logger.info(f"Round {record.rounds}: executing {len(requests)} tool calls")
            for request in requests:
                if self._is_cancelled(cancel_event):
                    yield self._cancel(record)
                    return

                known = self.registry.resolve(request.name) is not None
                gated = known and not self.registry.is_available(request.name, context)
                if gated:
                    logger.warning(f"Model requested gated-out tool: {request.name}")
                elif known:
                    yield ToolCallEvent(request=request)
                else:
                    logger.warning(f"Model requested unknown tool: {request.name}")
                yield ThinkingEvent(
                    message=self.registry.get_tool_status_text(
                        request.name, request.arguments, context.language
                    )
                )

                if gated:
                    result = self._not_available(request)
                else:
                    result = await self._execute(request)
                yield ToolResultEvent(result=result)
                rolling.append(
                    ConversationMessage(
                        role="tool",
                        content=format_tool_result_message(result),
                        tool_name=result.tool_name,
                    )
                )

            if record.rounds >= self.react_config.max_iterations:
                logger.info(
                    f"Stopping after {record.rounds} rounds (max_iterations reached)"
                )
                record.stop_reason = StopReason.ITERATION_LIMIT
                yield DoneEvent(reason=StopReason.ITERATION_LIMIT, run=record)
                return

    async def _execute(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        try:
            return await self.executor(request)
        except Exception as e:
            logger.error(f"Tool executor raised for {request.name}: {e}")
            return ToolInvocationResult(
                request_id=request.id,
                tool_name=request.name,
                result_text=f"Error executing tool {request.name}: {e}",
                succeeded=False,
                is_error=True,
            )

    @staticmethod
    def _not_available(request: ToolInvocationRequest) -> ToolInvocationResult:
        return ToolInvocationResult(
            request_id=request.id,
            tool_name=request.name,
            result_text=f"Error: Tool {request.name} is not available in this context",
            succeeded=False,
            is_error=True,
        )

    @staticmethod
    def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    @staticmethod
    def _cancel(record: RunRecord) -> CancelledEvent:
        record.cancelled = True
        return CancelledEvent(run=record)

    @staticmethod
    async def _next_fragment(iterator, cancel_event: Optional[asyncio.Event]) -> str:
        """Await the next fragment, or raise _RunCancelled if cancellation wins."""
        if cancel_event is None:
            return await iterator.__anext__()
        if cancel_event.is_set():
            raise _RunCancelled()

        next_task = asyncio.ensure_future(iterator.__anext__())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            next_task.cancel()
            cancel_task.cancel()
            raise

        if next_task in done:
            cancel_task.cancel()
            return next_task.result()

        next_task.cancel()
        try:
            await next_task
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            logger.debug(f"Stream ended with {type(e).__name__} while cancelling: {e}")
        raise _RunCancelled()

    @staticmethod
    async def _close_stream(iterator):
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Error closing model stream: {e}")
