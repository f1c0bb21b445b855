"""
Built-in tool definitions for the Tactus agent.

Each function returns the immutable descriptor of one local tool. Handlers are
wired separately by ``BuiltinToolExecutor.register_all``.
"""

from typing import List

from tactus_agent.core.types import ToolDescriptor, ToolOrigin

EXTRACT_PAGE_CONTENT = "extract_page_content"
ACTIVATE_SKILL = "activate_skill"
EXECUTE_SKILL_SCRIPT = "execute_skill_script"
READ_SKILL_FILE = "read_skill_file"

PAGE_TOOL_NAMES = (EXTRACT_PAGE_CONTENT,)
SKILL_TOOL_NAMES = (ACTIVATE_SKILL, EXECUTE_SKILL_SCRIPT, READ_SKILL_FILE)


def get_extract_page_content_tool() -> ToolDescriptor:
    """Return the extract_page_content tool definition."""
    return ToolDescriptor(
        name=EXTRACT_PAGE_CONTENT,
        description=(
            "Extract and clean the main content of the current web page, returning "
            "structured Markdown with metadata such as title, author and source. Call "
            "this tool whenever the user asks about the current page."
        ),
        parameters={
            "type": "object",
            "properties": {},
            "required": [],
            "additionalProperties": False,
        },
        origin=ToolOrigin.LOCAL,
    )


def get_activate_skill_tool() -> ToolDescriptor:
    """Return the activate_skill tool definition."""
    return ToolDescriptor(
        name=ACTIVATE_SKILL,
        description=(
            "Activate an installed Skill and load its full instructions into the "
            "context. Call this when the user's task matches a Skill's description."
        ),
        parameters={
            "type": "object",
            "properties": {
                "skill_name": {"type": "string", "description": "Name of the Skill"},
            },
            "required": ["skill_name"],
            "additionalProperties": False,
        },
        origin=ToolOrigin.LOCAL,
    )


def get_execute_skill_script_tool() -> ToolDescriptor:
    """Return the execute_skill_script tool definition."""
    return ToolDescriptor(
        name=EXECUTE_SKILL_SCRIPT,
        description=(
            "Execute a script file bundled with a Skill. Parameters can be passed "
            "through 'arguments'; the script reads them from its __args__ variable."
        ),
        parameters={
            "type": "object",
            "properties": {
                "skill_name": {"type": "string", "description": "Name of the Skill"},
                "script_path": {"type": "string", "description": "Path of the script file"},
                "arguments": {
                    "type": "object",
                    "description": "Optional arguments object, exposed to the script as __args__",
                },
            },
            "required": ["skill_name", "script_path"],
            "additionalProperties": False,
        },
        origin=ToolOrigin.LOCAL,
    )


def get_read_skill_file_tool() -> ToolDescriptor:
    """Return the read_skill_file tool definition."""
    return ToolDescriptor(
        name=READ_SKILL_FILE,
        description=(
            "Read a reference file of a Skill, from its references/ directory (documents, "
            "configuration templates) or text assets under assets/. Text files only."
        ),
        parameters={
            "type": "object",
            "properties": {
                "skill_name": {"type": "string", "description": "Name of the Skill"},
                "file_path": {"type": "string", "description": "Path of the reference file"},
            },
            "required": ["skill_name", "file_path"],
            "additionalProperties": False,
        },
        origin=ToolOrigin.LOCAL,
    )


def get_all_builtin_tools() -> List[ToolDescriptor]:
    """
    Return all built-in tools in declaration order.

    Returns:
        List[ToolDescriptor]: page tool first, then the skill tools
    """
    return [
        get_extract_page_content_tool(),
        get_activate_skill_tool(),
        get_execute_skill_script_tool(),
        get_read_skill_file_tool(),
    ]


BUILTIN_TOOL_NAMES = [tool.name for tool in get_all_builtin_tools()]
