"""Built-in tool definitions and their helpers."""
