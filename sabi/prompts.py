import getpass
import os
import platform
from datetime import datetime
from pathlib import Path

DEFAULT_SYSTEM_PROMPT = """You are a macOS/Linux system expert assistant. You help users accomplish system administration tasks.

To use a tool, respond with exactly one JSON object and nothing else:
   {"tool": "run_cmd", "command": "<shell command>"}
   {"tool": "read_file", "path": "<file path>"}
   {"tool": "write_file", "path": "<file path>", "content": "<full file content>"}
   {"tool": "search", "pattern": "<file name glob>", "directory": "<directory, default .>"}
   {"tool": "run_python", "code": "<python code>"}

Every tool call is shown to the user, who decides whether it runs.

Rules:
1. Only output raw JSON when using a tool. No explanation before it.
2. If you can answer without a tool, just respond with plain text.
3. After seeing command output, provide a helpful summary.
4. Be concise but informative.
5. Never start interactive programs (editors, pagers, top, ssh). Use non-interactive equivalents.
6. For dangerous operations, warn the user first.
7. Prefer read_file and search over shell commands that only read or find files.

Examples:
- "List files": {"tool": "run_cmd", "command": "ls -la"}
- "Show disk usage": {"tool": "run_cmd", "command": "df -h"}
- "Show my hosts file": {"tool": "read_file", "path": "/etc/hosts"}
- "Find python files here": {"tool": "search", "pattern": "*.py", "directory": "."}
- "What is 2+2?": 4
"""


class PromptManager:
    def __init__(self, default_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self.default_prompt = default_prompt

    def resolve_prompt_source(self, source: str) -> str:
        """Return prompt text from a file path, inline text, or the default prompt."""
        if not source or not source.strip():
            return self.default_prompt

        try:
            path = Path(os.path.expanduser(source)).resolve()
            if path.exists() and path.is_file():
                try:
                    return path.read_text(encoding="utf-8")
                except OSError as exc:
                    print(f"Warning: System prompt file exists but readable failed: {exc}")
                    return source
        except (OSError, ValueError):
            pass

        return source

    def build_system_prompt(self, source: str) -> str:
        """Resolve the configured prompt and append the live system context."""
        return f"{self.resolve_prompt_source(source).rstrip()}\n\n{system_context()}"


def system_context() -> str:
    """Describe the host so the model can pick suitable commands."""
    now = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    shell = os.environ.get("SHELL", "unknown")
    cwd = os.getcwd()
    os_name, os_version = os_info()
    return (
        "SYSTEM CONTEXT:\n"
        f"- Current time: {now}\n"
        f"- User: {user}\n"
        f"- Shell: {shell}\n"
        f"- Working directory: {cwd}\n"
        f"- OS: {os_name} {os_version}".rstrip()
    )


def os_info() -> tuple:
    system = platform.system()
    if system == "Darwin":
        return "macOS", platform.mac_ver()[0] or "unknown"
    if system == "Linux":
        try:
            with open("/etc/os-release", "r", encoding="utf-8") as file_obj:
                for line in file_obj:
                    if line.startswith("PRETTY_NAME="):
                        return "Linux", line.split("=", 1)[1].strip().strip('"')
        except OSError:
            pass
        return "Linux", platform.release()
    if system == "Windows":
        return "Windows", platform.version()
    return system or "Unknown", ""


prompt_manager = PromptManager()
