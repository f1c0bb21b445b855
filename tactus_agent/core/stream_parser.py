"""Live demultiplexing of model output into content and tool-call blocks.

Models without native function calling request tools by embedding blocks like::

    <tool_call>{"name": "extract_page_content", "arguments": {}}</tool_call>

in their text. The parser in this module consumes the answer fragment by
fragment, emits user-visible prose as soon as it is known not to belong to a
block, and assembles each complete block into a ``ToolInvocationRequest``.
"""

import json
import logging
import re
import uuid
from typing import AsyncIterable, AsyncIterator, List, Union

from tactus_agent.core.errors import ProtocolParseError
from tactus_agent.core.types import ContentEvent, ToolInvocationRequest

logger = logging.getLogger(__name__)

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"

_BLOCK_PATTERN = re.compile(
    re.escape(TOOL_CALL_OPEN) + r"(.*?)" + re.escape(TOOL_CALL_CLOSE), re.DOTALL
)

ParserEvent = Union[ContentEvent, ToolInvocationRequest]


def partial_prefix_length(text: str, delimiter: str = TOOL_CALL_OPEN) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``delimiter``."""
    longest = min(len(text), len(delimiter) - 1)
    for size in range(longest, 0, -1):
        if text.endswith(delimiter[:size]):
            return size
    return 0


def parse_tool_call_payload(payload: str, index: int = 0) -> ToolInvocationRequest:
    """Parse the body of one tool-call block.

    Raises:
        ProtocolParseError: if the body is not ``{"name": str, "arguments": object}``.
    """
    try:
        data = json.loads(payload.strip())
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"Invalid JSON in tool call block: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolParseError("Tool call block must contain a JSON object")

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ProtocolParseError("Tool call block is missing a tool name")

    arguments = data.get("arguments")
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ProtocolParseError(
            f"Arguments for tool '{name}' must be an object, got {type(arguments).__name__}"
        )

    return ToolInvocationRequest(
        id=f"call_{index}_{uuid.uuid4().hex[:12]}",
        name=name.strip(),
        arguments=arguments,
    )


class ToolCallStreamParser:
    """Incremental splitter for one model response.

    A parser instance is good for exactly one response: feed every fragment in
    arrival order, then call ``finish()``.
    """

    def __init__(self):
        self._pending = ""
        self._block = ""
        self._in_block = False
        self._seen_block = False
        self._fragments: List[str] = []
        self.tool_calls: List[ToolInvocationRequest] = []

    @property
    def raw_text(self) -> str:
        """The complete response as received, markup included."""
        return "".join(self._fragments)

    @property
    def in_block(self) -> bool:
        return self._in_block

    def feed(self, fragment: str) -> List[ParserEvent]:
        """Consume one fragment and return the events it completes."""
        if not fragment:
            return []

        self._fragments.append(fragment)
        events: List[ParserEvent] = []
        text = fragment

        while True:
            if self._in_block:
                self._block += text
                text = ""
                close_index = self._block.find(TOOL_CALL_CLOSE)
                if close_index < 0:
                    break

                payload = self._block[:close_index]
                text = self._block[close_index + len(TOOL_CALL_CLOSE) :]
                self._block = ""
                self._in_block = False

                request = self._parse_block(payload)
                if request is not None:
                    self.tool_calls.append(request)
                    events.append(request)
                continue

            self._pending += text
            text = ""
            open_index = self._pending.find(TOOL_CALL_OPEN)
            if open_index >= 0:
                before = self._pending[:open_index]
                if before and not self._seen_block:
                    events.append(ContentEvent(text=before))
                text = self._pending[open_index + len(TOOL_CALL_OPEN) :]
                self._pending = ""
                self._in_block = True
                self._seen_block = True
                continue

            held = partial_prefix_length(self._pending)
            releasable = self._pending[: len(self._pending) - held]
            self._pending = self._pending[len(self._pending) - held :]
            # Prose after the first block is speculation made before any tool
            # result exists; it stays in raw_text only.
            if releasable and not self._seen_block:
                events.append(ContentEvent(text=releasable))
            break

        return events

    def finish(self) -> List[ParserEvent]:
        """Flush the parser at end of stream."""
        events: List[ParserEvent] = []
        if self._in_block:
            logger.warning(
                f"Tool call block was not terminated ({len(self._block)} chars); ignoring it"
            )
            self._block = ""
            self._in_block = False
        elif self._pending and not self._seen_block:
            events.append(ContentEvent(text=self._pending))
        self._pending = ""
        return events

    def _parse_block(self, payload: str):
        try:
            return parse_tool_call_payload(payload, index=len(self.tool_calls))
        except ProtocolParseError as e:
            logger.warning(f"Dropping malformed tool call: {e}")
            logger.debug(f"Malformed tool call payload: {payload[:200]!r}")
            return None


async def demultiplex(fragments: AsyncIterable[str]) -> AsyncIterator[ParserEvent]:
    """Async adapter around ``ToolCallStreamParser`` for a fragment stream."""
    parser = ToolCallStreamParser()
    async for fragment in fragments:
        for event in parser.feed(fragment):
            yield event
    for event in parser.finish():
        yield event


def parse_tool_calls(text: str) -> List[ToolInvocationRequest]:
    """Parse every well-formed tool-call block of a complete response."""
    parser = ToolCallStreamParser()
    parser.feed(text)
    parser.finish()
    return parser.tool_calls


def has_tool_call(text: str) -> bool:
    return _BLOCK_PATTERN.search(text) is not None


def remove_tool_call_markers(text: str) -> str:
    """Strip complete tool-call blocks from a response."""
    return _BLOCK_PATTERN.sub("", text).strip()
