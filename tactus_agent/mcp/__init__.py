"""Remote tool providers spoken to over MCP."""

from .connection_manager import MCPConnectionManager
from .oauth import OAuthCredentialManager

__all__ = ["MCPConnectionManager", "OAuthCredentialManager"]
