import os
import shutil
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text

from .agent.tool_call import RUN_CMD
from .history import MessageRole
from .state_machine import AgentState, ControllerSnapshot

SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

BUSY_LABELS = {
    AgentState.THINKING: "Thinking...",
    AgentState.EXECUTING: "Running",
    AgentState.FINALIZING: "Analyzing output...",
}


class ChatUI:
    """Console presentation: prints conversation changes and collects input."""

    def __init__(self, console: Console = None, history_file: str = "~/.sabi_history"):
        self.console = console or Console()
        self.separator_pattern = "*-"
        self.history_file = history_file
        self._session: Optional[PromptSession] = None
        self._live: Optional[Live] = None
        self._rendered_messages = 0
        self._last_state = AgentState.INPUT
        self._last_error_count = 0
        self._last_notice: Optional[str] = None

    @property
    def session(self) -> PromptSession:
        if self._session is None:
            self._session = PromptSession(
                history=FileHistory(os.path.expanduser(self.history_file)),
                auto_suggest=AutoSuggestFromHistory(),
            )
        return self._session

    def display_separator(self) -> None:
        """Display a visual separator."""
        terminal_width = shutil.get_terminal_size().columns
        repeat_count = terminal_width // len(self.separator_pattern)
        separator = self.separator_pattern * repeat_count
        if len(separator) < terminal_width:
            separator += separator[0]
        self.console.print(f"\n{separator}\n", style="bold yellow")

    def display_message(self, content, style: str = None, end: str = "\n") -> None:
        """Display a message to the user."""
        self.console.print(content, style=style, end=end)

    def display_prompt(self, default: str = "") -> Optional[str]:
        """Read one query line. Returns None on end-of-input, "" on Ctrl+C."""
        try:
            return self.session.prompt("User: ", default=default, wrap_lines=True).strip()
        except EOFError:
            return None
        except KeyboardInterrupt:
            return ""

    def ask_action(self) -> str:
        """Ask what to do with the proposed command: y(es), n(o) or e(dit)."""
        try:
            return Prompt.ask("Run this command?", choices=["y", "n", "e"], default="n", console=self.console)
        except (EOFError, KeyboardInterrupt):
            return "n"

    def edit_command(self, command: str, label: str = "command") -> str:
        try:
            return self.session.prompt(f"Edit {label}: ", default=command).strip()
        except (EOFError, KeyboardInterrupt):
            return command

    def confirm_quit(self) -> bool:
        try:
            choice = Prompt.ask("Are you sure you want to quit? (y/n)", default="n", console=self.console)
        except (EOFError, KeyboardInterrupt):
            return True
        return choice.strip().lower() == "y"

    def render(self, snapshot: ControllerSnapshot) -> None:
        """Print whatever changed since the previous snapshot."""
        busy = snapshot.state in BUSY_LABELS
        if not busy:
            self.stop_busy()

        self._render_new_messages(snapshot)

        if snapshot.state is AgentState.FINALIZING and self._last_state is not AgentState.FINALIZING:
            self._render_output(snapshot.execution_output)
        if snapshot.state is AgentState.REVIEW_ACTION and self._last_state is not AgentState.REVIEW_ACTION:
            self.render_pending_command(snapshot)

        if snapshot.error and snapshot.error_count != self._last_error_count:
            self.display_message(f"\nError: {snapshot.error}", style="red")
        if snapshot.notice and snapshot.notice != self._last_notice:
            self.display_message(snapshot.notice, style="yellow")
        self._last_error_count = snapshot.error_count
        self._last_notice = snapshot.notice
        self._last_state = snapshot.state

        if busy:
            self.show_busy(snapshot)

    def render_pending_command(self, snapshot: ControllerSnapshot) -> None:
        verdict = snapshot.safety_verdict
        dangerous = bool(verdict and verdict.dangerous)
        interactive = bool(verdict and verdict.interactive)
        noun = "command" if snapshot.pending_tool in (None, RUN_CMD) else "action"
        if dangerous:
            title, border = f"[bold red]DANGEROUS {noun.upper()}[/bold red]", "red"
        elif interactive:
            title, border = "[bold yellow]Interactive command[/bold yellow]", "yellow"
        else:
            title, border = f"[bold cyan]Proposed {noun}[/bold cyan]", "cyan"
        self.console.print(Panel.fit(Text(snapshot.pending_command or ""), title=title, border_style=border))
        if dangerous:
            self.display_message(f"Warning: this {noun} is potentially destructive.", style="bold red")

    def show_busy(self, snapshot: ControllerSnapshot) -> None:
        frame = SPINNER_FRAMES[snapshot.spinner_frame % len(SPINNER_FRAMES)]
        label = BUSY_LABELS.get(snapshot.state, "")
        if snapshot.state is AgentState.EXECUTING and snapshot.pending_command:
            label = f"{label}: {snapshot.pending_command}"
        line = Text(f"{frame} {label}  (Ctrl+C to cancel)", style="dim")
        if self._live is None:
            self._live = Live(line, console=self.console, transient=True, auto_refresh=False)
            self._live.start()
        self._live.update(line, refresh=True)

    def stop_busy(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def reset_transcript(self) -> None:
        self._rendered_messages = 0

    def _render_new_messages(self, snapshot: ControllerSnapshot) -> None:
        if len(snapshot.messages) < self._rendered_messages:
            self._rendered_messages = 0
        for message in snapshot.messages[self._rendered_messages :]:
            if message.role is MessageRole.MODEL:
                self.display_message("\nSabi: ", style="bold blue", end="")
                self.display_message(Text(message.content))
            elif message.role is MessageRole.SYSTEM:
                self.display_message(Text(message.content), style="dim")
        self._rendered_messages = len(snapshot.messages)

    def _render_output(self, output: str) -> None:
        if output.strip():
            self.console.print(Panel(Text(output.rstrip("\n")), title="Output", border_style="green"))

    def display_welcome(self, model: str, safe_mode: bool = False) -> None:
        """Display welcome message."""
        mode_line = "\n            [bold red]SAFE MODE: commands are shown, never executed[/bold red]\n" if safe_mode else ""
        welcome_text = f"""
            [cyan]sabi[/cyan] (Model: [green]{model}[/green])
            {mode_line}
            [yellow]Enter 'q' or 'exit' or 'quit' to quit[/yellow]

            [bold magenta]Commands:[/bold magenta]
            [blue]- /clear[/blue]    : Clear conversation
            [blue]- /save[/blue]     : Save conversation
            [blue]- /load[/blue]     : Load conversation
            [blue]- /history[/blue]  : Show conversation size
            [blue]- /model[/blue]    : List models or switch with /model <name>
            [blue]- /help[/blue]     : Show help

            [bold magenta]Shortcuts:[/bold magenta]
            [green]- Enter[/green]: Send message
            [green]- Ctrl+C[/green]: Cancel a running request or command
            [green]- Ctrl+D[/green]: Quit
            [green]- Up/Down[/green]: Navigate history
            """
        self.console.print(
            Panel.fit(
                welcome_text,
                title="[bold red]Welcome[/bold red]",
                border_style="blue",
                padding=(1, 2),
            )
        )
