from .executor import NO_OUTPUT_MARKER, CommandExecutor, CommandResult, RunningCommand
from .safety import CommandSafetyGuard, SafetyVerdict
from .tool_call import RUN_CMD, ParsedResponse, ToolCall, parse_tool_call

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSafetyGuard",
    "NO_OUTPUT_MARKER",
    "ParsedResponse",
    "RUN_CMD",
    "RunningCommand",
    "SafetyVerdict",
    "ToolCall",
    "parse_tool_call",
]
