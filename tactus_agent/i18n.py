"""Localized status texts shown while tools run."""

from typing import Dict

DEFAULT_LANGUAGE = "en"

TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "en": {
        "extracting_page": "Extracting page content...",
        "activating_skill": "Activating Skill...",
        "activating_skill_named": "Activating Skill: {name}...",
        "executing_script": "Executing script...",
        "executing_script_named": "Executing script: {skill}/{script}...",
        "reading_file": "Reading file...",
        "reading_file_named": "Reading file: {skill}/{file}...",
        "calling_remote_tool": "Calling MCP tool: {tool}...",
        "executing_tool": "Executing {tool}...",
        "iteration_limit_reached": "Stopped after {count} tool rounds.",
        "run_cancelled": "Cancelled.",
        "tool_failed": "Tool {tool} failed",
    },
    "zh-CN": {
        "extracting_page": "正在提取网页内容...",
        "activating_skill": "正在激活 Skill...",
        "activating_skill_named": "正在激活 Skill: {name}...",
        "executing_script": "正在执行脚本...",
        "executing_script_named": "正在执行脚本: {skill}/{script}...",
        "reading_file": "正在读取文件...",
        "reading_file_named": "正在读取文件: {skill}/{file}...",
        "calling_remote_tool": "正在调用 MCP 工具: {tool}...",
        "executing_tool": "正在执行 {tool}...",
        "iteration_limit_reached": "已达到 {count} 轮工具调用上限。",
        "run_cancelled": "已取消。",
        "tool_failed": "工具 {tool} 执行失败",
    },
}


def t(key: str, language: str = DEFAULT_LANGUAGE, **params) -> str:
    """Look up ``key`` for ``language``, falling back to English and then the key."""
    table = TRANSLATIONS.get(language, TRANSLATIONS[DEFAULT_LANGUAGE])
    text = table.get(key) or TRANSLATIONS[DEFAULT_LANGUAGE].get(key) or key
    for name, value in params.items():
        text = text.replace("{" + name + "}", str(value))
    return text
