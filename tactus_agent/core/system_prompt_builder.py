"""System prompt construction for the agent loop."""

import json
import logging
from typing import Dict, List, Optional

from tactus_agent.core.stream_parser import TOOL_CALL_CLOSE, TOOL_CALL_OPEN
from tactus_agent.core.types import (
    SkillInfo,
    ToolContext,
    ToolDescriptor,
    ToolInvocationResult,
    ToolOrigin,
)
from tactus_agent.tools.builtin_tools import EXTRACT_PAGE_CONTENT

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"en": "English", "zh-CN": "Simplified Chinese"}

BASE_PROMPT = """You are a helpful AI assistant. Always respond using Markdown format for better readability. Use:
- Headers (##, ###) for sections
- **bold** and *italic* for emphasis
- `code` for inline code and ``` for code blocks with language specification
- Lists (- or 1.) for enumerations
- > for quotes
- Tables when presenting structured data"""

TOOL_RESULT_FOLLOW_UP = "Please answer my question based on the tool results above."


def format_tool_result_message(result: ToolInvocationResult) -> str:
    """Tool-role message content carrying one invocation result."""
    return (
        f'<tool_result name="{result.tool_name}">\n'
        f"{result.result_text}\n"
        f"</tool_result>\n\n"
        f"{TOOL_RESULT_FOLLOW_UP}"
    )


class SystemPromptBuilder:
    """Builds the system prompt: role, tool-call protocol and current context."""

    def __init__(self, base_prompt: str = BASE_PROMPT):
        self.base_prompt = base_prompt

    def create_system_prompt(
        self, tools: List[ToolDescriptor], context: Optional[ToolContext] = None
    ) -> str:
        context = context or ToolContext()
        sections = [
            self.base_prompt,
            self.build_tools_prompt(tools),
            self.build_context_prompt(context, tools),
        ]
        return "\n\n".join(section for section in sections if section)

    def build_tools_prompt(self, tools: List[ToolDescriptor]) -> str:
        """Describe the tool-call sublanguage and the tools offered this run."""
        if not tools:
            return "## Tools\nNo tools are available right now. Answer directly."

        example = json.dumps({"name": "tool_name", "arguments": {"param": "value"}})
        tool_lines = []
        for tool in tools:
            description = tool.description or tool.remote_name or tool.name
            if tool.origin == ToolOrigin.REMOTE:
                description = f"[MCP: {tool.provider_name or tool.provider_id}] {description}"
            tool_lines.append(f"- `{tool.name}`: {description}")
            tool_lines.append(
                f"  Parameters: {json.dumps(tool.parameters, ensure_ascii=False)}"
            )

        return f"""## Tools
You can call tools to get information you do not have. To call a tool, write a block exactly like this:

{TOOL_CALL_OPEN}
{example}
{TOOL_CALL_CLOSE}

Rules:
- The block body must be a single JSON object with "name" and "arguments".
- Write any explanation before the first tool call. Text after a tool call is discarded.
- After calling tools, stop and wait. Results arrive in a <tool_result> message.
- Only call the tools listed below.

### Available tools
{chr(10).join(tool_lines)}"""

    def build_context_prompt(
        self, context: ToolContext, tools: Optional[List[ToolDescriptor]] = None
    ) -> str:
        hints = []
        if context.language:
            language = LANGUAGE_NAMES.get(context.language, context.language)
            hints.append(f"- Always respond in {language}")

        if context.share_page_content:
            hint = (
                "- The user is sharing the current page. When the user asks about the "
                f"page, call {EXTRACT_PAGE_CONTENT} first"
            )
            if context.page_title or context.page_domain:
                hint += f"\n- Current page: {context.page_title or ''} ({context.page_domain or ''})"
            if context.page_url:
                hint += f"\n- Page URL: {context.page_url}"
            hints.append(hint)
        else:
            hints.append(
                f"- The user is not sharing the current page; {EXTRACT_PAGE_CONTENT} is unavailable"
            )

        remote_tools = [t for t in tools or [] if t.origin == ToolOrigin.REMOTE]
        return (
            "## Current context\n"
            + "\n".join(hints)
            + self._skills_section(context.skills)
            + self._remote_tools_section(remote_tools)
            + "\n\n## Important\n"
            "- Do not guess page content; fetch it with a tool\n"
            "- Base your answer on the tool results you receive"
        )

    def _skills_section(self, skills: List[SkillInfo]) -> str:
        if not skills:
            return ""
        skills_xml = "\n".join(
            f"  <skill>\n    <name>{s.name}</name>\n    <description>{s.description}</description>\n  </skill>"
            for s in skills
        )
        return f"""

## Available Skills
These Skills are installed. When the user's task matches a Skill's description, activate it with activate_skill:

<available_skills>
{skills_xml}
</available_skills>

When page content is needed, prefer a Skill whose description covers the current site; otherwise use {EXTRACT_PAGE_CONTENT}."""

    def _remote_tools_section(self, tools: List[ToolDescriptor]) -> str:
        if not tools:
            return ""

        by_provider: Dict[str, List[ToolDescriptor]] = {}
        for tool in tools:
            by_provider.setdefault(tool.provider_name or tool.provider_id or "", []).append(tool)

        sections = []
        for provider_name, provider_tools in by_provider.items():
            tools_xml = "\n".join(
                f"    <tool>\n      <name>{t.name}</name>\n"
                f"      <description>{t.description or 'No description'}</description>\n    </tool>"
                for t in provider_tools
            )
            sections.append(f'  <server name="{provider_name}">\n{tools_xml}\n  </server>')

        return f"""

## MCP tools
These MCP servers are connected and their tools can be called by the names below:

<mcp_servers>
{chr(10).join(sections)}
</mcp_servers>"""
