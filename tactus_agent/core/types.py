"""Shared data model for conversations, tools and stream events."""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ConversationMessage(BaseModel):
    """One entry of the rolling context sent to the model."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    tool_name: Optional[str] = None


class ChatMessage(BaseModel):
    """A host-side chat history entry."""

    role: Literal["user", "assistant", "system"]
    content: str
    quote: Optional[str] = None

    def to_conversation_message(self) -> ConversationMessage:
        content = self.content
        if self.quote:
            content = f'[Quote: "{self.quote}"]\n\n{content}'
        return ConversationMessage(role=self.role, content=content)


class ToolOrigin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ToolDescriptor(BaseModel):
    """Declaration of an invocable tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    origin: ToolOrigin = ToolOrigin.LOCAL
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    remote_name: Optional[str] = None


class ToolInvocationRequest(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolInvocationResult(BaseModel):
    request_id: str
    tool_name: str
    result_text: str
    succeeded: bool
    is_error: bool = False


class RemoteToolCallResult(BaseModel):
    """Normalized outcome of a single tool invocation, local or remote."""

    success: bool
    content: str
    is_error: bool = False


class SkillInfo(BaseModel):
    name: str
    description: str = ""


class ToolContext(BaseModel):
    """Contextual gates used when listing the tools offered to the model."""

    share_page_content: bool = False
    skills: List[SkillInfo] = Field(default_factory=list)
    language: str = "en"
    page_title: Optional[str] = None
    page_domain: Optional[str] = None
    page_url: Optional[str] = None


class StopReason(str, Enum):
    COMPLETED = "completed"
    TOOLS_DISABLED = "tools_disabled"
    ITERATION_LIMIT = "iteration_limit"


class RunRecord(BaseModel):
    """Everything a single agent run sent to the model, kept for inspection."""

    messages: List[ConversationMessage] = Field(default_factory=list)
    round_messages: List[List[Dict[str, str]]] = Field(default_factory=list)
    rounds: int = 0
    stop_reason: Optional[StopReason] = None
    cancelled: bool = False

    @property
    def last_api_messages(self) -> List[Dict[str, str]]:
        return self.round_messages[-1] if self.round_messages else []


class ContentEvent(BaseModel):
    type: Literal["content"] = "content"
    text: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    request: ToolInvocationRequest


class ThinkingEvent(BaseModel):
    type: Literal["thinking"] = "thinking"
    message: str


class ToolResultEvent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    result: ToolInvocationResult


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    reason: StopReason
    run: RunRecord


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"
    run: RunRecord


StreamEvent = Union[
    ContentEvent,
    ToolCallEvent,
    ThinkingEvent,
    ToolResultEvent,
    DoneEvent,
    CancelledEvent,
]
