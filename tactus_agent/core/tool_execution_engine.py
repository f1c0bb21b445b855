"""Tool execution engine: resolve, validate, invoke and normalize."""

import logging
from typing import Any, Dict, List, Optional

from tactus_agent.core.errors import (
    AuthorizationFailed,
    AuthorizationRequired,
    NotConnected,
    ToolExecutionError,
    ToolNotAvailable,
    ToolNotFound,
)
from tactus_agent.core.tool_registry import ToolRegistry
from tactus_agent.core.types import ToolContext, ToolInvocationRequest, ToolInvocationResult

logger = logging.getLogger(__name__)


class ToolExecutionEngine:
    """Dispatches tool invocations through the registry.

    ``dispatch`` never raises: every failure on the tool path is converted into
    a failed ``ToolInvocationResult`` so the model can react to it.
    """

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def __call__(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        return await self.dispatch(request)

    async def dispatch(
        self, request: ToolInvocationRequest, context: Optional[ToolContext] = None
    ) -> ToolInvocationResult:
        """Execute one invocation and return its normalized result.

        When ``context`` is given, tools gated out by it are refused.
        """
        try:
            descriptor = self.registry.resolve(request.name)
            invoker = self.registry.get_invoker(request.name)
            if descriptor is None or invoker is None:
                known = self.registry.list_local() + self.registry.list_remote()
                available = [d.name for d in known][:10]
                raise ToolNotFound(
                    f"Tool {request.name} not found. Available tools: {available}"
                )
            if context is not None and not self.registry.is_available(request.name, context):
                raise ToolNotAvailable(
                    f"Tool {request.name} is not available in this context"
                )

            problems = self.validate_tool_arguments(
                descriptor.parameters, request.arguments
            )
            if problems:
                raise ToolExecutionError(
                    f"Invalid arguments for {request.name}: {'; '.join(problems)}"
                )

            logger.info(f"Executing {descriptor.origin.value} tool: {request.name}")
            outcome = await invoker.invoke(request.arguments)
            return ToolInvocationResult(
                request_id=request.id,
                tool_name=request.name,
                result_text=outcome.content,
                succeeded=outcome.success,
                is_error=outcome.is_error or not outcome.success,
            )
        except (ToolNotFound, ToolNotAvailable) as e:
            logger.warning(str(e))
            return self._failure(request, f"Error: {e}")
        except (NotConnected, AuthorizationRequired, AuthorizationFailed) as e:
            logger.warning(f"Tool {request.name} unavailable: {e}")
            return self._failure(request, f"Error: {e}")
        except ToolExecutionError as e:
            logger.warning(f"Tool {request.name} failed: {e}")
            return self._failure(request, f"Error: {e}")
        except Exception as e:
            logger.error(f"Error executing tool {request.name}: {e}")
            return self._failure(request, f"Error executing tool {request.name}: {e}")

    @staticmethod
    def _failure(request: ToolInvocationRequest, message: str) -> ToolInvocationResult:
        return ToolInvocationResult(
            request_id=request.id,
            tool_name=request.name,
            result_text=message,
            succeeded=False,
            is_error=True,
        )

    def validate_tool_arguments(
        self, schema: Optional[Dict[str, Any]], arguments: Dict[str, Any]
    ) -> List[str]:
        """Check required parameters and JSON types; returns the problems found."""
        if not schema:
            return []

        problems = []
        properties = schema.get("properties", {}) or {}
        for param in schema.get("required", []) or []:
            if param not in arguments:
                problems.append(f"missing required parameter '{param}'")

        for param, value in arguments.items():
            if param in properties:
                expected_type = properties[param].get("type")
                if expected_type and not self._check_type_match(value, expected_type):
                    problems.append(f"parameter '{param}' should be of type {expected_type}")

        return problems

    def _check_type_match(self, value: Any, expected_type: Any) -> bool:
        """Check if value matches expected JSON schema type."""
        if isinstance(expected_type, list):
            return any(self._check_type_match(value, t) for t in expected_type)

        type_mapping = {
            "string": str,
            "number": (int, float),
            "integer": int,
            "boolean": bool,
            "array": list,
            "object": dict,
            "null": type(None),
        }

        if expected_type in ("number", "integer") and isinstance(value, bool):
            return False
        if expected_type in type_mapping:
            return isinstance(value, type_mapping[expected_type])

        return True  # Unknown type, assume valid
