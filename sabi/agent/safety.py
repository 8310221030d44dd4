import os
import re
import shlex
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..exceptions import CommandBlocked, ConfigurationInvalid
from .tool_call import RUN_PYTHON, WRITE_FILE, ToolCall

SUGGESTIONS = {
    "vi": "Use cat, sed or a write-to-file command instead",
    "vim": "Use cat, sed or a write-to-file command instead",
    "nvim": "Use cat, sed or a write-to-file command instead",
    "nano": "Use cat, sed or a write-to-file command instead",
    "emacs": "Use cat, sed or a write-to-file command instead",
    "pico": "Use cat, sed or a write-to-file command instead",
    "joe": "Use cat, sed or a write-to-file command instead",
    "less": "Use cat or head instead",
    "more": "Use cat or head instead",
    "man": "Use 'man <topic> | col -b | head -100' or '<program> --help' instead",
    "top": "Use 'ps aux' or 'ps aux | head' instead",
    "htop": "Use 'ps aux' or 'ps aux | head' instead",
    "btop": "Use 'ps aux' or 'ps aux | head' instead",
    "watch": "Run the command once instead",
    "ssh": "Interactive sessions not supported; pass a remote command: ssh host '<command>'",
    "telnet": "Interactive sessions not supported",
    "ftp": "Use curl or scp instead",
    "sftp": "Use curl or scp instead",
    "mysql": "Pass the query with -e \"<query>\" instead",
    "psql": "Pass the query with -c \"<query>\" instead",
    "sqlite3": "Pass the query as an argument: sqlite3 db.sqlite \"<query>\"",
    "python": "Pass code with -c or use the run_python tool",
    "python3": "Pass code with -c or use the run_python tool",
    "node": "Pass code with -e \"<code>\" instead",
    "irb": "Pass code with -e \"<code>\" instead",
    "ghci": "Pass an expression with -e \"<expr>\" instead",
}

# wrapper programs and the options of theirs that take a separate value
WRAPPER_OPTIONS = {
    "sudo": frozenset(
        {"-u", "-g", "-C", "-D", "-p", "-r", "-t", "-T", "-U", "--user", "--group", "--chdir", "--prompt", "--role", "--type"}
    ),
    "env": frozenset({"-u", "-C", "--unset", "--chdir"}),
    "nice": frozenset({"-n", "--adjustment"}),
    "nohup": frozenset(),
    "time": frozenset({"-f", "-o", "--format", "--output"}),
    "exec": frozenset({"-a"}),
    "command": frozenset(),
}

REPL_PROGRAMS = frozenset({"python", "python3", "node", "irb", "ghci"})

CONTAINER_PROGRAMS = frozenset({"docker", "podman"})

CONTAINER_SUGGESTION = "Drop -it and pass the command to run: docker exec <container> <command>"

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@dataclass(frozen=True)
class SafetyVerdict:
    dangerous: bool = False
    interactive: bool = False


class CommandSafetyGuard:
    """Classifies shell commands against dangerous patterns and interactive programs.

    Patterns are compiled once; every check is a pure function of the
    command string.
    """

    def __init__(self, dangerous_patterns: Sequence[str], interactive_programs: Sequence[str]):
        self.patterns = []
        for pattern in dangerous_patterns:
            try:
                self.patterns.append(re.compile(pattern))
            except re.error as exc:
                raise ConfigurationInvalid(f"Invalid dangerous pattern {pattern!r}: {exc}") from exc
        self.interactive_programs = frozenset(name.strip() for name in interactive_programs if name.strip())

    @classmethod
    def from_config(cls, config) -> "CommandSafetyGuard":
        return cls(config.dangerous_patterns, config.interactive_programs)

    def evaluate(self, command: str) -> SafetyVerdict:
        return SafetyVerdict(
            dangerous=self.is_dangerous(command),
            interactive=self.is_interactive(command),
        )

    def is_dangerous(self, command: str) -> bool:
        return any(pattern.search(command) for pattern in self.patterns)

    def matching_patterns(self, command: str) -> List[str]:
        return [pattern.pattern for pattern in self.patterns if pattern.search(command)]

    def is_interactive(self, command: str) -> bool:
        program, args = self.command_words(command)
        if program is None:
            return False
        if program in self.interactive_programs:
            return True
        if program in REPL_PROGRAMS and not args:
            return True
        return program in CONTAINER_PROGRAMS and _wants_tty(args)

    def suggestion(self, command: str) -> str:
        program = self.program_name(command) or ""
        if program in CONTAINER_PROGRAMS:
            return CONTAINER_SUGGESTION
        return SUGGESTIONS.get(program, "This command requires an interactive terminal")

    def check_executable(self, command: str) -> SafetyVerdict:
        """Return the verdict, raising CommandBlocked for interactive programs."""
        verdict = self.evaluate(command)
        if verdict.interactive:
            raise CommandBlocked(command, self.suggestion(command))
        return verdict

    def evaluate_tool(self, tool_call: ToolCall) -> SafetyVerdict:
        """Verdict for any tool call: shell commands are screened, file writes count as dangerous."""
        if tool_call.is_run_cmd:
            return self.evaluate(tool_call.command)
        if tool_call.tool == RUN_PYTHON:
            return SafetyVerdict(dangerous=self.is_dangerous(tool_call.code))
        return SafetyVerdict(dangerous=tool_call.tool == WRITE_FILE)

    @classmethod
    def program_name(cls, command: str) -> Optional[str]:
        """First real program word: skips sudo/env wrappers and their options, VAR=value and leading paths."""
        return cls.command_words(command)[0]

    @staticmethod
    def command_words(command: str) -> Tuple[Optional[str], List[str]]:
        """Split a command line into (program basename, remaining words)."""
        try:
            words = shlex.split(command, comments=True)
        except ValueError:
            words = command.split()
        wrapper = None
        index = 0
        while index < len(words):
            word = words[index]
            if word in WRAPPER_OPTIONS:
                wrapper = word
            elif _ASSIGNMENT.match(word):
                pass
            elif word.startswith("-"):
                if wrapper and word in WRAPPER_OPTIONS[wrapper]:
                    index += 1
            else:
                return os.path.basename(word), words[index + 1 :]
            index += 1
        return None, []


def _wants_tty(args: Sequence[str]) -> bool:
    flags = set()
    for word in args:
        if word.startswith("--"):
            flags.add(word)
        elif word.startswith("-"):
            flags.update(f"-{letter}" for letter in word[1:])
    interactive = "-i" in flags or "--interactive" in flags
    tty = "-t" in flags or "--tty" in flags
    return interactive and tty
