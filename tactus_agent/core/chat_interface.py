"""Terminal chat interface: renders agent events and runs the interactive loop."""

import asyncio
import json
import logging
import signal
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax

from tactus_agent.core.agent_loop import AgentLoop
from tactus_agent.core.errors import TransportError
from tactus_agent.core.types import (
    CancelledEvent,
    ChatMessage,
    ContentEvent,
    DoneEvent,
    RunRecord,
    StopReason,
    ThinkingEvent,
    ToolCallEvent,
    ToolContext,
    ToolResultEvent,
)
from tactus_agent.i18n import t

logger = logging.getLogger(__name__)

EXIT_COMMANDS = ("quit", "exit")
CHAT_COMMANDS = ["/help", "/clear", "/tools", "/context", "quit", "exit"]


class ChatInterface:
    """Drives single-shot and interactive chats against an ``AgentLoop``."""

    def __init__(
        self,
        agent_loop: AgentLoop,
        context: Optional[ToolContext] = None,
        console: Optional[Console] = None,
        show_context: bool = False,
        history_file: Optional[str] = None,
    ):
        self.agent_loop = agent_loop
        self.context = context or ToolContext()
        self.console = console or Console()
        self.show_context = show_context
        self.history_file = history_file
        self.messages: List[ChatMessage] = []

    @property
    def language(self) -> str:
        return self.context.language

    async def run_turn(self, prompt: str, quote: Optional[str] = None) -> Optional[RunRecord]:
        """Send one user message, render the run, and record the answer.

        Ctrl+C while the run is streaming cancels it and keeps the partial answer.
        """
        self.messages.append(ChatMessage(role="user", content=prompt, quote=quote))
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        handler_installed = self._install_interrupt_handler(loop, cancel_event)

        answer = ""
        record: Optional[RunRecord] = None
        try:
            with Live(
                Markdown(""), console=self.console, refresh_per_second=8, transient=False
            ) as live:
                async for event in self.agent_loop.run(
                    self.messages, self.context, cancel_event
                ):
                    if isinstance(event, ContentEvent):
                        answer += event.text
                        live.update(Markdown(answer))
                    elif isinstance(event, ToolCallEvent):
                        logger.debug(f"Tool call requested: {event.request.name}")
                    elif isinstance(event, ThinkingEvent):
                        live.console.print(f"[dim]⏳ {escape(event.message)}[/dim]")
                    elif isinstance(event, ToolResultEvent):
                        self._print_tool_result(live.console, event)
                    elif isinstance(event, DoneEvent):
                        record = event.run
                        if event.reason == StopReason.ITERATION_LIMIT:
                            live.console.print(
                                "[yellow]"
                                + t("iteration_limit_reached", self.language, count=event.run.rounds)
                                + "[/yellow]"
                            )
                    elif isinstance(event, CancelledEvent):
                        record = event.run
                        live.console.print(f"[yellow]{t('run_cancelled', self.language)}[/yellow]")
        except TransportError as e:
            self.console.print(f"[red]❌ Request failed: {escape(str(e))}[/red]")
            self.messages.pop()
            return None
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

        if answer:
            self.messages.append(ChatMessage(role="assistant", content=answer))
        if self.show_context and record is not None:
            self.print_context(record)
        return record

    def _install_interrupt_handler(
        self, loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event
    ) -> bool:
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
            return True
        except (NotImplementedError, RuntimeError):
            # Windows event loops and non-main threads
            logger.debug("SIGINT handler not available; runs cannot be cancelled")
            return False

    def _print_tool_result(self, console: Console, event: ToolResultEvent):
        result = event.result
        if result.succeeded:
            console.print(f"[dim]✅ {escape(result.tool_name)}[/dim]")
        else:
            console.print(
                f"[red]❌ {escape(t('tool_failed', self.language, tool=result.tool_name))}[/red]"
            )
            logger.debug(f"Tool {result.tool_name} output: {result.result_text}")

    def print_context(self, record: RunRecord):
        """Show the messages of the last model request."""
        body = json.dumps(record.last_api_messages, indent=2, ensure_ascii=False)
        self.console.print(
            Panel(
                Syntax(body, "json", word_wrap=True),
                title=f"Context (round {record.rounds})",
                border_style="dim",
            )
        )

    def print_tools(self):
        tools = self.agent_loop.registry.list_available(self.context)
        if not tools:
            self.console.print("[dim]No tools available.[/dim]")
            return
        for tool in tools:
            self.console.print(f"🔧 [bold]{escape(tool.name)}[/bold] - {escape(tool.description)}")

    def print_welcome(self, model: str):
        tool_count = len(self.agent_loop.registry.list_available(self.context))
        self.console.print(
            Panel.fit(
                f"[bold blue]Tactus Agent - Interactive Chat[/bold blue]\n\n"
                f"[green]Model:[/green] {model}\n"
                f"[green]Available tools:[/green] {tool_count}\n\n"
                f"[yellow]Commands:[/yellow] 'quit' to exit, '/tools' to list tools, "
                f"'/clear' to reset, '/context' to show the last request\n"
                f"[yellow]Ctrl+C[/yellow] cancels the current answer",
                title="🤖 Welcome",
                border_style="blue",
            )
        )

    def _create_session(self) -> PromptSession:
        history = FileHistory(self.history_file) if self.history_file else InMemoryHistory()
        return PromptSession(
            history=history,
            auto_suggest=AutoSuggestFromHistory(),
            completer=WordCompleter(CHAT_COMMANDS, ignore_case=True),
        )

    async def interactive_chat(self, model: str):
        """Prompt for messages until the user exits."""
        session = self._create_session()
        self.print_welcome(model)

        while True:
            try:
                with patch_stdout():
                    user_input = await session.prompt_async("You: ")
            except (EOFError, KeyboardInterrupt):
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in EXIT_COMMANDS:
                break
            if user_input == "/help":
                self.print_welcome(model)
                continue
            if user_input == "/clear":
                self.messages.clear()
                self.console.print("[dim]Conversation cleared.[/dim]")
                continue
            if user_input == "/tools":
                self.print_tools()
                continue
            if user_input == "/context":
                if self.agent_loop.last_run is None:
                    self.console.print("[dim]Nothing has been sent yet.[/dim]")
                else:
                    self.print_context(self.agent_loop.last_run)
                continue

            await self.run_turn(user_input)
            self.console.print()

        self.console.print("[dim]Goodbye![/dim]")
