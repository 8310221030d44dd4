import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Tuple

from ..exceptions import CommandCancelled, CommandLaunchFailed
from .tool_call import READ_FILE, RUN_CMD, RUN_PYTHON, SEARCH, WRITE_FILE, ToolCall

NO_OUTPUT_MARKER = "(command completed successfully, no output)"

PYTHON_PROGRAM = "python" if os.name == "nt" else "python3"

SEARCH_LIMIT = 100


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one shell execution."""

    stdout: str
    stderr: str
    exit_code: int
    success: bool
    truncated: bool = False

    def combined_output(self) -> str:
        """Output shown to the user: stdout on success, both streams otherwise."""
        if self.success:
            return self.stdout
        parts = [part.rstrip("\n") for part in (self.stdout, self.stderr) if part]
        return "\n".join(parts)


class _BoundedReader(threading.Thread):
    """Drains one pipe, keeping at most `limit` bytes so huge outputs cannot exhaust memory."""

    def __init__(self, stream, limit: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self._data = bytearray()
        self._lock = threading.Lock()

    def run(self) -> None:
        try:
            for chunk in iter(partial(self.stream.read1, 65536), b""):
                with self._lock:
                    room = self.limit - len(self._data)
                    if room > 0:
                        self._data.extend(chunk[:room])
        except (OSError, ValueError):
            pass
        finally:
            try:
                self.stream.close()
            except OSError:
                pass

    @property
    def data(self) -> bytes:
        with self._lock:
            return bytes(self._data)


class RunningCommand:
    """Handle on a launched shell process. wait() from a worker, cancel() from anywhere."""

    def __init__(self, process: subprocess.Popen, executor: "CommandExecutor", command: str):
        self.process = process
        self.executor = executor
        self.command = command
        self._cancelled = threading.Event()
        # one extra byte tells the truncation step that the cap was exceeded
        keep = executor.max_output_bytes + 1
        self._stdout_reader = _BoundedReader(process.stdout, keep)
        self._stderr_reader = _BoundedReader(process.stderr, keep)
        self._stdout_reader.start()
        self._stderr_reader.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self) -> CommandResult:
        """Block until the process exits. Raises CommandCancelled if cancel() was called."""
        exit_code = self.process.wait()
        # background children may keep the pipes open; do not wait on them forever
        self._stdout_reader.join(self.executor.drain_timeout)
        self._stderr_reader.join(self.executor.drain_timeout)
        if self.cancelled:
            raise CommandCancelled(self.command)

        stdout, stdout_truncated = self.executor.truncate_output(self._stdout_reader.data)
        stderr, stderr_truncated = self.executor.truncate_output(self._stderr_reader.data)
        success = exit_code == 0
        if success and not stdout and not stderr:
            stdout = NO_OUTPUT_MARKER
        return CommandResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            success=success,
            truncated=stdout_truncated or stderr_truncated,
        )

    def cancel(self) -> None:
        """Terminate the whole process group; escalate to SIGKILL after the grace period.

        The group is signalled even when the shell has already exited, since
        background members can outlive it.
        """
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._signal_group(signal.SIGTERM)
        timer = threading.Timer(self.executor.kill_grace_period, self._force_kill)
        timer.daemon = True
        timer.start()

    def _force_kill(self) -> None:
        self._signal_group(getattr(signal, "SIGKILL", signal.SIGTERM))

    def _signal_group(self, signum: int) -> None:
        try:
            if os.name == "nt":
                self.process.kill()
            else:
                os.killpg(self.process.pid, signum)
        except (ProcessLookupError, PermissionError):
            pass


class FileTask:
    """In-process tool work with the same wait()/cancel() surface as RunningCommand.

    The work runs inside wait(), on the worker thread. A cancel that arrives
    first skips it; one that arrives during it discards the result.
    """

    def __init__(self, command: str, action: Callable[[], CommandResult]):
        self.command = command
        self._action = action
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self) -> CommandResult:
        if self.cancelled:
            raise CommandCancelled(self.command)
        result = self._action()
        if self.cancelled:
            raise CommandCancelled(self.command)
        return result

    def cancel(self) -> None:
        self._cancelled.set()


class CommandExecutor:
    """Runs shell commands off the control loop and bounds what they print."""

    def __init__(
        self,
        max_output_bytes: int = 50 * 1024,
        max_output_lines: int = 500,
        cwd: Optional[Path] = None,
        kill_grace_period: float = 2.0,
        drain_timeout: float = 5.0,
    ):
        self.max_output_bytes = max_output_bytes
        self.max_output_lines = max_output_lines
        self.cwd = cwd
        self.kill_grace_period = kill_grace_period
        self.drain_timeout = drain_timeout

        self.launchers = {
            RUN_CMD: lambda call: self.start(call.command),
            RUN_PYTHON: lambda call: self.start_python(call.code),
            SEARCH: lambda call: self.start(search_command(call.pattern, call.directory)),
            READ_FILE: lambda call: FileTask(call.summary(), partial(self.read_file, call.path)),
            WRITE_FILE: lambda call: FileTask(call.summary(), partial(self.write_file, call.path, call.content)),
        }

    @classmethod
    def from_config(cls, config) -> "CommandExecutor":
        return cls(
            max_output_bytes=config.max_output_bytes,
            max_output_lines=config.max_output_lines,
        )

    def start(self, command: str) -> RunningCommand:
        """Launch the command in its own process group. Raises CommandLaunchFailed."""
        return self._launch(command, command, shell=True, failure="Failed to execute command")

    def start_python(self, code: str) -> RunningCommand:
        return self._launch([PYTHON_PROGRAM, "-c", code], code, shell=False, failure="Failed to start Python")

    def start_tool(self, tool_call: ToolCall):
        """Launch any supported tool call. The handle has wait() and cancel()."""
        launcher = self.launchers.get(tool_call.tool)
        if launcher is None:
            raise CommandLaunchFailed(f"Unknown tool: {tool_call.tool}")
        return launcher(tool_call)

    def run(self, command: str) -> CommandResult:
        """Start and wait in one call."""
        return self.start(command).wait()

    def read_file(self, path: str) -> CommandResult:
        try:
            with open(self._resolve(path), "rb") as file_obj:
                data = file_obj.read(self.max_output_bytes + 1)
        except OSError as exc:
            return CommandResult(stdout="", stderr=f"Failed to read file: {exc}", exit_code=1, success=False)
        text, truncated = self.truncate_output(data)
        return CommandResult(stdout=text or NO_OUTPUT_MARKER, stderr="", exit_code=0, success=True, truncated=truncated)

    def write_file(self, path: str, content: str) -> CommandResult:
        data = content.encode("utf-8")
        try:
            with open(self._resolve(path), "wb") as file_obj:
                file_obj.write(data)
        except OSError as exc:
            return CommandResult(stdout="", stderr=f"Failed to write file: {exc}", exit_code=1, success=False)
        return CommandResult(
            stdout=f"Successfully wrote {len(data)} bytes to {path}",
            stderr="",
            exit_code=0,
            success=True,
        )

    def _resolve(self, path: str) -> Path:
        target = Path(os.path.expanduser(path))
        if self.cwd is not None and not target.is_absolute():
            target = Path(self.cwd) / target
        return target

    def _launch(self, args, label: str, shell: bool, failure: str) -> RunningCommand:
        popen_kwargs = {}
        if os.name == "nt":
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(
                args,
                shell=shell,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **popen_kwargs,
            )
        except (OSError, ValueError) as exc:
            raise CommandLaunchFailed(f"{failure}: {exc}") from exc
        return RunningCommand(process, self, label)

    def truncate_output(self, data: bytes) -> Tuple[str, bool]:
        """Apply the byte cap, then the line cap. Returns (text, was_truncated).

        The byte cut lands on the last line boundary within the cap; a single
        over-long line is cut at the cap, backing off to a UTF-8 character start.
        """
        truncated = False
        if len(data) > self.max_output_bytes:
            newline = data.rfind(b"\n", 0, self.max_output_bytes)
            if newline >= 0:
                data = data[: newline + 1]
            else:
                data = _utf8_prefix(data, self.max_output_bytes)
            truncated = True

        data, line_truncated = _first_lines(data, self.max_output_lines)
        truncated = truncated or line_truncated
        return data.decode("utf-8", errors="replace"), truncated


def _utf8_prefix(data: bytes, limit: int) -> bytes:
    cut = limit
    while cut > 0 and (data[cut] & 0xC0) == 0x80:
        cut -= 1
    return data[:cut]


def _first_lines(data: bytes, max_lines: int) -> Tuple[bytes, bool]:
    if max_lines <= 0:
        return b"", bool(data)
    position = -1
    for _ in range(max_lines):
        position = data.find(b"\n", position + 1)
        if position < 0:
            return data, False
    if position + 1 < len(data):
        return data[: position + 1], True
    return data, False


def search_command(pattern: str, directory: str = "") -> str:
    """Shell line that lists up to SEARCH_LIMIT paths whose name matches the glob."""
    directory = directory or "."
    if directory.startswith("-"):
        directory = f"./{directory}"
    return f"find {shlex.quote(directory)} -name {shlex.quote(pattern)} 2>/dev/null | head -{SEARCH_LIMIT}"
