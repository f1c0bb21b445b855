"""Core components for the agent loop and tool dispatch."""

from .agent_loop import AgentLoop, ReActConfig
from .stream_parser import ToolCallStreamParser
from .tool_execution_engine import ToolExecutionEngine
from .tool_registry import ToolRegistry

__all__ = [
    "AgentLoop",
    "ReActConfig",
    "ToolCallStreamParser",
    "ToolExecutionEngine",
    "ToolRegistry",
]
