from .client import CompletionClient, ToolSpec, read_tool_arguments, validate_arguments

__all__ = ["CompletionClient", "ToolSpec", "read_tool_arguments", "validate_arguments"]
