"""Shared fixtures for the unit tests."""

import asyncio
from typing import Dict, List

import pytest

from config import HostConfig
from tactus_agent.core.tool_registry import ToolRegistry
from tactus_agent.core.types import ToolDescriptor


class ScriptedChatClient:
    """Chat client double that streams one scripted response per request."""

    def __init__(self, responses: List[List[str]], block_after: int = None):
        self.responses = list(responses)
        self.requests: List[List[Dict[str, str]]] = []
        self.block_after = block_after
        self.closed_streams = 0

    async def stream_chat(self, messages):
        self.requests.append(messages)
        fragments = self.responses.pop(0) if self.responses else []
        try:
            for index, fragment in enumerate(fragments):
                if self.block_after is not None and index == self.block_after:
                    await asyncio.Event().wait()
                yield fragment
        finally:
            self.closed_streams += 1


@pytest.fixture
def scripted_client():
    return ScriptedChatClient


@pytest.fixture
def host_config(tmp_path, monkeypatch):
    """HostConfig isolated from the developer's environment."""
    for name in ("MODEL", "LANGUAGE", "API_KEY", "CONFIG_DIR", "MAX_ITERATIONS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return HostConfig(CONFIG_DIR=str(tmp_path / "config"), API_KEY="test-key")


@pytest.fixture
def echo_tool():
    return ToolDescriptor(
        name="echo",
        description="Echo the text back",
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    )


@pytest.fixture
def registry(echo_tool):
    registry = ToolRegistry()
    registry.register_local(echo_tool, lambda args: f"echo: {args['text']}")
    return registry
