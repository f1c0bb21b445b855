"""Tactus agent: a ReAct tool-calling chat agent with MCP integration."""

__version__ = "0.1.0"
