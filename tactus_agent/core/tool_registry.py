"""Registry merging built-in tools with tools discovered on remote providers."""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from tactus_agent.core.types import (
    RemoteToolCallResult,
    ToolContext,
    ToolDescriptor,
    ToolOrigin,
)
from tactus_agent.i18n import t
from tactus_agent.tools.builtin_tools import (
    ACTIVATE_SKILL,
    EXECUTE_SKILL_SCRIPT,
    EXTRACT_PAGE_CONTENT,
    PAGE_TOOL_NAMES,
    READ_SKILL_FILE,
    SKILL_TOOL_NAMES,
)

logger = logging.getLogger(__name__)

REMOTE_TOOL_PREFIX = "remote__"
REMOTE_TOOL_SEPARATOR = "__"

ToolHandler = Callable[
    [Dict[str, Any]], Union[str, RemoteToolCallResult, Awaitable[Any]]
]


def format_remote_tool_name(provider_id: str, tool_name: str) -> str:
    """Build the registry name ``remote__{provider_id}__{tool_name}``."""
    if not provider_id or REMOTE_TOOL_SEPARATOR in provider_id:
        raise ValueError(f"Invalid provider id for remote tool naming: {provider_id!r}")
    return f"{REMOTE_TOOL_PREFIX}{provider_id}{REMOTE_TOOL_SEPARATOR}{tool_name}"


def parse_remote_tool_name(name: str) -> Optional[Tuple[str, str]]:
    """Split a remote tool name into ``(provider_id, tool_name)``.

    Only the first separator after the prefix is significant, so tool names
    may themselves contain ``__``.
    """
    if not name.startswith(REMOTE_TOOL_PREFIX):
        return None
    provider_id, separator, tool_name = name[len(REMOTE_TOOL_PREFIX) :].partition(
        REMOTE_TOOL_SEPARATOR
    )
    if not separator or not provider_id or not tool_name:
        return None
    return provider_id, tool_name


def is_remote_tool(name: str) -> bool:
    return name.startswith(REMOTE_TOOL_PREFIX)


def get_tool_status_text(
    name: str, arguments: Optional[Dict[str, Any]] = None, language: str = "en"
) -> str:
    """Human-readable progress text for a tool invocation."""
    args = arguments or {}

    parsed = parse_remote_tool_name(name)
    if parsed:
        return t("calling_remote_tool", language, tool=parsed[1])

    if name == EXTRACT_PAGE_CONTENT:
        return t("extracting_page", language)
    if name == ACTIVATE_SKILL:
        if args.get("skill_name"):
            return t("activating_skill_named", language, name=args["skill_name"])
        return t("activating_skill", language)
    if name == EXECUTE_SKILL_SCRIPT:
        if args.get("skill_name") and args.get("script_path"):
            return t(
                "executing_script_named",
                language,
                skill=args["skill_name"],
                script=args["script_path"],
            )
        return t("executing_script", language)
    if name == READ_SKILL_FILE:
        if args.get("skill_name") and args.get("file_path"):
            return t(
                "reading_file_named",
                language,
                skill=args["skill_name"],
                file=args["file_path"],
            )
        return t("reading_file", language)
    return t("executing_tool", language, tool=name)


class ToolInvoker(ABC):
    """The single capability every registered tool exposes."""

    @abstractmethod
    async def invoke(self, arguments: Dict[str, Any]) -> RemoteToolCallResult:
        pass


class LocalToolInvoker(ToolInvoker):
    """Wraps a handler returning text (or a result), sync or async."""

    def __init__(self, handler: ToolHandler):
        self.handler = handler

    async def invoke(self, arguments: Dict[str, Any]) -> RemoteToolCallResult:
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, RemoteToolCallResult):
            return result
        return RemoteToolCallResult(success=True, content=str(result))


class RemoteToolInvoker(ToolInvoker):
    """Routes an invocation to a provider session through the connection manager."""

    def __init__(self, manager: Any, provider_id: str, remote_name: str):
        self.manager = manager
        self.provider_id = provider_id
        self.remote_name = remote_name

    async def invoke(self, arguments: Dict[str, Any]) -> RemoteToolCallResult:
        return await self.manager.invoke(self.provider_id, self.remote_name, arguments)


class ToolRegistry:
    """Name-indexed view of local and remote tools."""

    def __init__(self):
        self._local: Dict[str, Tuple[ToolDescriptor, ToolInvoker]] = {}
        self._remote: Dict[str, List[ToolDescriptor]] = {}
        self._remote_invokers: Dict[str, ToolInvoker] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_local(
        self, descriptor: ToolDescriptor, handler: Union[ToolHandler, ToolInvoker]
    ):
        if descriptor.origin != ToolOrigin.LOCAL:
            raise ValueError(f"Tool {descriptor.name} is not a local tool")
        if is_remote_tool(descriptor.name):
            raise ValueError(
                f"Local tool names must not start with '{REMOTE_TOOL_PREFIX}': {descriptor.name}"
            )
        invoker = handler if isinstance(handler, ToolInvoker) else LocalToolInvoker(handler)
        self._local[descriptor.name] = (descriptor, invoker)
        logger.debug(f"Registered local tool: {descriptor.name}")

    def unregister_local(self, name: str) -> bool:
        return self._local.pop(name, None) is not None

    def set_remote_tools(
        self, provider_id: str, descriptors: List[ToolDescriptor], manager: Any
    ):
        """Replace every tool of ``provider_id`` with ``descriptors``."""
        self.remove_remote_tools(provider_id)
        kept = []
        for descriptor in descriptors:
            if descriptor.origin != ToolOrigin.REMOTE or descriptor.provider_id != provider_id:
                logger.warning(
                    f"Ignoring descriptor {descriptor.name} not owned by provider {provider_id}"
                )
                continue
            self._remote_invokers[descriptor.name] = RemoteToolInvoker(
                manager, provider_id, descriptor.remote_name or descriptor.name
            )
            kept.append(descriptor)
        self._remote[provider_id] = kept
        logger.info(f"Registered {len(kept)} remote tools for {provider_id}")

    def remove_remote_tools(self, provider_id: str):
        for descriptor in self._remote.pop(provider_id, []):
            self._remote_invokers.pop(descriptor.name, None)

    def sync_remote(self, connection_manager: Any):
        """Mirror the tools of every connected provider, in connection order."""
        for provider_id in list(self._remote):
            self.remove_remote_tools(provider_id)
        for config in connection_manager.get_connected_providers():
            self.set_remote_tools(
                config.id, connection_manager.get_provider_tools(config.id), connection_manager
            )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Optional[ToolDescriptor]:
        if name in self._local:
            return self._local[name][0]
        for descriptors in self._remote.values():
            for descriptor in descriptors:
                if descriptor.name == name:
                    return descriptor
        return None

    def get_invoker(self, name: str) -> Optional[ToolInvoker]:
        if name in self._local:
            return self._local[name][1]
        return self._remote_invokers.get(name)

    def list_local(self) -> List[ToolDescriptor]:
        return [descriptor for descriptor, _ in self._local.values()]

    def list_remote(self) -> List[ToolDescriptor]:
        tools: List[ToolDescriptor] = []
        for descriptors in self._remote.values():
            tools.extend(descriptors)
        return tools

    def is_available(self, name: str, context: Optional[ToolContext] = None) -> bool:
        """Whether a registered tool passes the gates of ``context``."""
        if self.resolve(name) is None:
            return False
        context = context or ToolContext()
        if name in PAGE_TOOL_NAMES and not context.share_page_content:
            return False
        if name in SKILL_TOOL_NAMES and not context.skills:
            return False
        return True

    def list_available(self, context: Optional[ToolContext] = None) -> List[ToolDescriptor]:
        """Tools to offer the model: gated local tools, then remote tools."""
        tools = [
            descriptor
            for descriptor in self.list_local()
            if self.is_available(descriptor.name, context)
        ]
        tools.extend(self.list_remote())
        return tools

    @staticmethod
    def to_function_tool(descriptor: ToolDescriptor) -> Dict[str, Any]:
        """OpenAI function-calling representation of a descriptor."""
        description = descriptor.description or descriptor.remote_name or descriptor.name
        if descriptor.origin == ToolOrigin.REMOTE:
            description = f"[MCP: {descriptor.provider_name or descriptor.provider_id}] {description}"
        parameters = descriptor.parameters or {}
        return {
            "type": "function",
            "function": {
                "name": descriptor.name,
                "description": description,
                "parameters": {
                    "type": "object",
                    "properties": parameters.get("properties", {}),
                    "required": parameters.get("required", []),
                },
            },
        }

    def get_tool_status_text(
        self, name: str, arguments: Optional[Dict[str, Any]] = None, language: str = "en"
    ) -> str:
        return get_tool_status_text(name, arguments, language)
