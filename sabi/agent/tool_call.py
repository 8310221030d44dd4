import json
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterator, Optional, Tuple

from ..exceptions import MalformedToolCall

RUN_CMD = "run_cmd"
READ_FILE = "read_file"
WRITE_FILE = "write_file"
SEARCH = "search"
RUN_PYTHON = "run_python"

# keys each tool must carry; the first one is what the user edits before confirming
TOOL_ARGUMENTS: Dict[str, Tuple[str, ...]] = {
    RUN_CMD: ("command",),
    READ_FILE: ("path",),
    WRITE_FILE: ("path", "content"),
    SEARCH: ("pattern",),
    RUN_PYTHON: ("code",),
}

ARGUMENT_KEYS = ("command", "path", "content", "pattern", "directory", "code")

_FENCE_PATTERN = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class ToolCall:
    """A structured action request emitted by the model.

    `tool` names the action; the remaining fields are its string arguments
    and stay empty when the tool does not use them.
    """

    tool: str
    command: str = ""
    path: str = ""
    content: str = ""
    pattern: str = ""
    directory: str = ""
    code: str = ""

    def __post_init__(self):
        if not isinstance(self.tool, str) or not self.tool.strip():
            raise MalformedToolCall("missing 'tool' name")
        for item in fields(self):
            if not isinstance(getattr(self, item.name), str):
                raise MalformedToolCall(f"'{item.name}' must be a string")

    @classmethod
    def run_cmd(cls, command: str) -> "ToolCall":
        return cls(RUN_CMD, command=command)

    @classmethod
    def read_file(cls, path: str) -> "ToolCall":
        return cls(READ_FILE, path=path)

    @classmethod
    def write_file(cls, path: str, content: str) -> "ToolCall":
        return cls(WRITE_FILE, path=path, content=content)

    @classmethod
    def search(cls, pattern: str, directory: str = "") -> "ToolCall":
        return cls(SEARCH, pattern=pattern, directory=directory)

    @classmethod
    def run_python(cls, code: str) -> "ToolCall":
        return cls(RUN_PYTHON, code=code)

    @property
    def is_run_cmd(self) -> bool:
        return self.tool == RUN_CMD

    @property
    def is_supported(self) -> bool:
        return self.tool in TOOL_ARGUMENTS

    @property
    def required_keys(self) -> Tuple[str, ...]:
        return TOOL_ARGUMENTS.get(self.tool, ("command",))

    @property
    def argument_name(self) -> str:
        return self.required_keys[0]

    @property
    def argument(self) -> str:
        """The editable argument: the command, path, pattern or code."""
        return getattr(self, self.argument_name)

    def with_argument(self, value: str) -> "ToolCall":
        return replace(self, **{self.argument_name: value})

    def summary(self) -> str:
        """One-line description shown while reviewing and running the call."""
        if self.tool == RUN_CMD:
            return self.command
        if self.tool == READ_FILE:
            return f"read_file: {self.path}"
        if self.tool == WRITE_FILE:
            return f"write_file: {self.path} ({len(self.content.encode('utf-8'))} bytes)"
        if self.tool == SEARCH:
            return f"search: {self.pattern} in {self.directory or '.'}"
        if self.tool == RUN_PYTHON:
            return f"python:\n{self.code}"
        return f"{self.tool}: {self.command}"

    def to_payload(self) -> Dict[str, str]:
        payload = {"tool": self.tool}
        for key in ARGUMENT_KEYS:
            value = getattr(self, key)
            if value or key in self.required_keys:
                payload[key] = value
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "ToolCall":
        """Decode one JSON object. Raises MalformedToolCall on anything else."""
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise MalformedToolCall(str(exc)) from exc
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: Any) -> "ToolCall":
        if not isinstance(payload, dict):
            raise MalformedToolCall("tool call must be a JSON object")
        tool = payload.get("tool")
        if not isinstance(tool, str) or not tool.strip():
            raise MalformedToolCall("missing 'tool' name")
        for key in TOOL_ARGUMENTS.get(tool, ("command",)):
            if not isinstance(payload.get(key), str):
                raise MalformedToolCall(f"missing '{key}' string")
        arguments = {key: payload[key] for key in ARGUMENT_KEYS if key in payload}
        return cls(tool, **arguments)


def parse_tool_call(text: str) -> Optional[ToolCall]:
    """Locate the first well-formed tool call object in free-form model text.

    Balanced {...} spans are tried in reading order, so the first valid object
    wins; fenced code blocks are tried last. Returns None when nothing decodes.
    """
    if not text:
        return None
    for candidate in _candidates(text.strip()):
        try:
            return ToolCall.from_json(candidate)
        except MalformedToolCall:
            continue
    return None


def _candidates(text: str) -> Iterator[str]:
    yield from _balanced_objects(text)
    # stray braces in prose can hide a fenced object from the scan above
    for match in _FENCE_PATTERN.finditer(text):
        yield match.group(1).strip()


def _balanced_objects(text: str) -> Iterator[str]:
    """Yield top-level {...} spans, skipping braces inside JSON strings."""
    depth = 0
    start = None
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                yield text[start : index + 1]
                start = None


@dataclass(frozen=True)
class ParsedResponse:
    """Either a tool call or plain text, never both."""

    text: str
    tool_call: Optional[ToolCall] = None

    @classmethod
    def parse(cls, text: str) -> "ParsedResponse":
        return cls(text=text, tool_call=parse_tool_call(text))

    @property
    def is_tool_call(self) -> bool:
        return self.tool_call is not None
