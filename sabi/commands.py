from typing import Callable, Dict, Optional

from rich.panel import Panel

from .history import ConversationContext, MessageRole

HELP_TEXT = """[bold cyan]sabi Help[/bold cyan]

Describe what you want done in plain language. When the assistant proposes a
shell command or another tool call (read_file, write_file, search,
run_python) you can run it (y), discard it (n) or edit it first (e).

[bold yellow]Available Commands:[/bold yellow]
[green]/clear[/green]
    Clear the conversation
    Usage: /clear

[green]/save [filename][/green]
    Save the conversation to a JSON file
    Usage: /save [filename]
    Default filename: sabi_session.json

[green]/load [filename][/green]
    Load a conversation from a JSON file
    Usage: /load [filename]
    Default filename: sabi_session.json

[green]/history[/green]
    Show how many messages are stored and how many are sent to the model

[green]/model [name][/green]
    Without a name, list the models the server offers
    With a name, switch to the first model containing it
    Usage: /model [name]

[green]/help[/green]
    Display this help message

[bold yellow]Safety:[/bold yellow]
- Commands matching a dangerous pattern, and every write_file, are shown in red
- Interactive programs (editors, pagers, top, ssh, ...) are refused
- Start with --safe to review commands without ever executing them
"""

DEFAULT_SESSION_FILE = "sabi_session.json"


class CommandDispatcher:
    """Dispatches slash commands to handlers."""

    def __init__(
        self,
        context: ConversationContext,
        ui,
        extra_handlers: Optional[Dict[str, Callable[[str], None]]] = None,
    ):
        self.context = context
        self.ui = ui
        self.handlers: Dict[str, Callable[[str], None]] = {
            "clear": self._handle_clear,
            "save": self._handle_save,
            "load": self._handle_load,
            "history": self._handle_history,
            "help": self._handle_help,
        }
        if extra_handlers:
            self.handlers.update(extra_handlers)

    def execute(self, command_name: str, command_args: str) -> bool:
        """Execute a command by name. Returns False when command is unknown."""
        handler = self.handlers.get(command_name)
        if not handler:
            return False
        handler(command_args)
        return True

    def _handle_clear(self, args: str) -> None:
        self.context.clear()
        self.ui.display_message("Conversation cleared", style="yellow")

    def _handle_save(self, args: str) -> None:
        filename = args.strip() or DEFAULT_SESSION_FILE
        try:
            self.context.save(filename)
        except OSError as exc:
            self.ui.display_message(f"Failed to save {filename}: {exc}", style="red")
            return
        self.ui.display_message(f"Conversation saved to {filename}", style="green")

    def _handle_load(self, args: str) -> None:
        filename = args.strip() or DEFAULT_SESSION_FILE
        if self.context.load(filename):
            self.ui.display_message(f"Loaded {len(self.context)} messages", style="green")
        else:
            self.ui.display_message(f"File not found or unreadable: {filename}", style="red")

    def _handle_history(self, args: str) -> None:
        stored = len(self.context)
        window = [m for m in self.context.windowed_view() if m.role is not MessageRole.SYSTEM]
        self.ui.display_message(
            f"{stored} messages stored, {len(window)} sent per request "
            f"(limit {self.context.max_history_messages})",
            style="cyan",
        )

    def _handle_help(self, args: str) -> None:
        self.ui.display_message(Panel.fit(HELP_TEXT, border_style="blue"))
