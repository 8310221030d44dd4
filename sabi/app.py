import shutil
import signal
import threading

from .agent.tool_call import TOOL_ARGUMENTS
from .commands import CommandDispatcher
from .events import Cancel, Confirm, EditBuffer, Event, EventRouter, Quit, Resize, SubmitText
from .exceptions import ModelCallFailed
from .state_machine import AgentController, AgentState, ControllerSnapshot
from .ui import ChatUI

QUIT_WORDS = ("q", "quit", "exit")


class AgentApp:
    """Terminal front end: feeds user input into the router and renders snapshots."""

    def __init__(self, controller: AgentController, router: EventRouter, ui: ChatUI, model_name: str = ""):
        self.controller = controller
        self.router = router
        self.ui = ui
        self.model_name = model_name
        self.command_dispatcher = CommandDispatcher(
            controller.context,
            ui,
            extra_handlers={"model": self._handle_model_command},
        )

        self.presenters = {
            AgentState.INPUT: self._present_input,
            AgentState.REVIEW_ACTION: self._present_review,
            AgentState.THINKING: self._await_completion,
            AgentState.EXECUTING: self._await_completion,
            AgentState.FINALIZING: self._await_completion,
        }

    def run(self) -> None:
        """Run until the user quits."""
        self.router.start()
        self._install_resize_handler()
        self.ui.display_welcome(self.model_name, safe_mode=self.controller.safe_mode)
        try:
            snapshot = self.controller.snapshot()
            self.ui.render(snapshot)
            while not snapshot.should_quit:
                try:
                    self.presenters[snapshot.state](snapshot)
                    snapshot = self._drain()
                except KeyboardInterrupt:
                    self.router.post(Cancel())
                    snapshot = self.controller.snapshot()
                except Exception as exc:
                    self.ui.stop_busy()
                    self.ui.display_message(f"\nError: {str(exc)}", style="red")
                    snapshot = self.controller.snapshot()
            self.ui.display_message("\nGoodbye!", style="yellow")
        finally:
            # a child process or model request must not outlive the session
            if self.controller.busy:
                self.controller.handle(Cancel())
            self.ui.stop_busy()
            self.router.stop()

    def _apply(self, event: Event) -> ControllerSnapshot:
        snapshot = self.controller.handle(event)
        self.ui.render(snapshot)
        return snapshot

    def _drain(self) -> ControllerSnapshot:
        """Apply and render every queued event without blocking."""
        while True:
            event = self.router.next(timeout=0)
            if event is None:
                return self.controller.snapshot()
            self._apply(event)

    def _present_input(self, snapshot: ControllerSnapshot) -> None:
        self.ui.display_separator()
        user_input = self.ui.display_prompt(default=snapshot.input_text)
        if user_input is None:
            self.router.post(Quit())
            return
        if not user_input:
            self.router.post(EditBuffer("clear"))
            return

        if user_input.lower() in QUIT_WORDS:
            if self.ui.confirm_quit():
                self.router.post(Quit())
            return

        if user_input.startswith("/"):
            self._run_slash_command(user_input)
            return

        self.router.post(EditBuffer("set", user_input))
        self.router.post(SubmitText())

    def _run_slash_command(self, user_input: str) -> None:
        cmd_parts = user_input[1:].split(maxsplit=1)
        cmd_name = cmd_parts[0] if cmd_parts else ""
        cmd_args = cmd_parts[1] if len(cmd_parts) > 1 else ""
        if not self.command_dispatcher.execute(cmd_name, cmd_args):
            self.ui.display_message(f"\nError: Unknown command: {cmd_name}", style="red")

    def _handle_model_command(self, args: str) -> None:
        """List the served models, or switch to the first one matching args."""
        model = self.controller.model
        list_models = getattr(model, "list_models", None)
        if list_models is None:
            self.ui.display_message("Model listing is not available", style="yellow")
            return
        try:
            models = list_models()
        except ModelCallFailed as exc:
            self.ui.display_message(f"Failed to fetch models: {exc}", style="red")
            return

        wanted = args.strip()
        if not wanted:
            lines = ["Available models:"]
            lines.extend(f"{'→ ' if name == self.model_name else '  '}{name}" for name in models)
            lines.append("Use /model <name> to switch")
            self.ui.display_message("\n".join(lines), style="cyan")
            return

        match = wanted if wanted in models else next((name for name in models if wanted in name), None)
        if match is None:
            self.ui.display_message(f"Model '{wanted}' not found", style="red")
            return
        model.set_model(match)
        self.model_name = match
        self.ui.display_message(f"Switched to: {match}", style="green")

    def _present_review(self, snapshot: ControllerSnapshot) -> None:
        choice = self.ui.ask_action()
        if choice == "y":
            self.router.post(Confirm())
        elif choice == "e":
            label = TOOL_ARGUMENTS.get(snapshot.pending_tool, ("command",))[0]
            edited = self.ui.edit_command(snapshot.input_text, label)
            self.router.post(EditBuffer("set", edited))
            self.ui.render_pending_command(self._drain())
        else:
            self.router.post(Cancel())

    def _await_completion(self, snapshot: ControllerSnapshot) -> None:
        event = self.router.next(timeout=self.router.tick_interval)
        if event is not None:
            self._apply(event)

    def _install_resize_handler(self) -> None:
        if not hasattr(signal, "SIGWINCH") or threading.current_thread() is not threading.main_thread():
            return

        def on_resize(signum, frame):
            size = shutil.get_terminal_size()
            self.router.post(Resize(size.columns, size.lines))

        signal.signal(signal.SIGWINCH, on_resize)
        size = shutil.get_terminal_size()
        self.router.post(Resize(size.columns, size.lines))
