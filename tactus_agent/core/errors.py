"""Exception taxonomy for the tool-calling core."""


class TactusError(Exception):
    """Base class for all agent errors."""


class TransportError(TactusError):
    """Network or HTTP failure talking to the model API. Fatal to the current run."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolParseError(TactusError):
    """Malformed SSE line or tool-call payload. Logged and skipped."""


class ToolNotFound(TactusError):
    """The dispatcher could not resolve a tool name."""


class ToolExecutionError(TactusError):
    """A local or remote tool reported a failure."""


class NotConnected(TactusError):
    """No live session exists for the requested provider."""


class AuthorizationRequired(TactusError):
    """No usable token exists; the user has to (re)authorize."""


class AuthorizationFailed(TactusError):
    """An authorization attempt, code exchange or refresh failed.

    ``error`` carries the OAuth error code when the server sent one.
    """

    def __init__(self, message: str, status_code: int = None, error: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.error = error


class AuthorizationInProgress(AuthorizationFailed):
    """Another authorization attempt for the same provider is still in flight."""


class ToolNotAvailable(TactusError):
    """The tool is registered but gated out for the current context."""
