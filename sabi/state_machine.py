from dataclasses import dataclass, replace
from enum import Enum
from typing import ClassVar, Optional, Tuple, Union

from .agent.executor import CommandExecutor, CommandResult, FileTask, RunningCommand
from .agent.safety import CommandSafetyGuard, SafetyVerdict
from .agent.tool_call import READ_FILE, RUN_PYTHON, SEARCH, TOOL_ARGUMENTS, WRITE_FILE, ParsedResponse, ToolCall
from .events import (
    Cancel,
    CommandAborted,
    CommandFinished,
    Confirm,
    EditBuffer,
    Event,
    EventRouter,
    ModelReply,
    Quit,
    Resize,
    SubmitText,
    Tick,
)
from .exceptions import CommandBlocked, CommandCancelled, CommandLaunchFailed, ModelCallFailed
from .history import ConversationContext, Message


class AgentState(Enum):
    """Discriminant of the ReAct cycle."""

    INPUT = "Input"
    THINKING = "Thinking"
    REVIEW_ACTION = "ReviewAction"
    EXECUTING = "Executing"
    FINALIZING = "Finalizing"


@dataclass(frozen=True)
class InputState:
    kind: ClassVar[AgentState] = AgentState.INPUT


@dataclass(frozen=True)
class ThinkingState:
    kind: ClassVar[AgentState] = AgentState.THINKING
    generation: int
    query: str


@dataclass(frozen=True)
class ReviewActionState:
    kind: ClassVar[AgentState] = AgentState.REVIEW_ACTION
    tool_call: ToolCall


@dataclass(frozen=True)
class ExecutingState:
    kind: ClassVar[AgentState] = AgentState.EXECUTING
    generation: int
    tool_call: ToolCall

    @property
    def command(self) -> str:
        return self.tool_call.summary()


@dataclass(frozen=True)
class FinalizingState:
    kind: ClassVar[AgentState] = AgentState.FINALIZING
    generation: int


ControllerState = Union[InputState, ThinkingState, ReviewActionState, ExecutingState, FinalizingState]

BUSY_STATES = (AgentState.THINKING, AgentState.EXECUTING, AgentState.FINALIZING)


@dataclass(frozen=True)
class TextBuffer:
    """Editable line of text with a cursor. Every edit returns a new buffer."""

    text: str = ""
    cursor: int = 0

    @classmethod
    def of(cls, text: str) -> "TextBuffer":
        return cls(text=text, cursor=len(text))

    def apply(self, action: str, text: str = "") -> "TextBuffer":
        cursor = max(0, min(self.cursor, len(self.text)))
        if action == "insert":
            return TextBuffer(self.text[:cursor] + text + self.text[cursor:], cursor + len(text))
        if action == "backspace":
            if cursor == 0:
                return self
            return TextBuffer(self.text[: cursor - 1] + self.text[cursor:], cursor - 1)
        if action == "delete":
            return TextBuffer(self.text[:cursor] + self.text[cursor + 1 :], cursor)
        if action == "left":
            return replace(self, cursor=max(0, cursor - 1))
        if action == "right":
            return replace(self, cursor=min(len(self.text), cursor + 1))
        if action == "home":
            return replace(self, cursor=0)
        if action == "end":
            return replace(self, cursor=len(self.text))
        if action == "clear":
            return TextBuffer()
        if action == "set":
            return TextBuffer.of(text)
        return self


@dataclass(frozen=True)
class ControllerSnapshot:
    """Read-only view handed to the presentation layer after every event."""

    state: AgentState
    pending_command: Optional[str]
    safety_verdict: Optional[SafetyVerdict]
    execution_output: str
    error: Optional[str]
    notice: Optional[str] = None
    error_count: int = 0
    pending_tool: Optional[str] = None
    input_text: str = ""
    cursor: int = 0
    spinner_frame: int = 0
    terminal_size: Optional[Tuple[int, int]] = None
    should_quit: bool = False
    messages: Tuple[Message, ...] = ()


class AgentController:
    """Drives one reason/act/observe cycle per query.

    The controller is the only writer of its state and of the conversation.
    Model calls and command executions run on router workers and come back
    as events tagged with the generation they were started under; a tag that
    no longer matches the in-flight operation is dropped.
    """

    def __init__(
        self,
        model,
        executor: CommandExecutor,
        guard: CommandSafetyGuard,
        context: ConversationContext,
        router: EventRouter,
        system_prompt: str = "",
        safe_mode: bool = False,
        debug: bool = False,
    ):
        self.model = model
        self.executor = executor
        self.guard = guard
        self.context = context
        self.router = router
        self.system_prompt = system_prompt
        self.safe_mode = safe_mode
        self.debug = debug

        self.state: ControllerState = InputState()
        self.query_buffer = TextBuffer()
        self.action_buffer = TextBuffer()
        self.execution_output = ""
        self.error: Optional[str] = None
        self.error_count = 0
        self.notice: Optional[str] = None
        self.spinner_frame = 0
        self.terminal_size: Optional[Tuple[int, int]] = None
        self.should_quit = False

        self._generation = 0
        self._in_flight: Optional[int] = None
        self._running: Optional[Union[RunningCommand, FileTask]] = None

        self.handlers = {
            SubmitText: self._handle_submit,
            Confirm: self._handle_confirm,
            Cancel: self._handle_cancel,
            EditBuffer: self._handle_edit,
            Resize: self._handle_resize,
            Tick: self._handle_tick,
            Quit: self._handle_quit,
            ModelReply: self._handle_model_reply,
            CommandFinished: self._handle_command_finished,
            CommandAborted: self._handle_command_aborted,
        }

    @property
    def kind(self) -> AgentState:
        return self.state.kind

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    def handle(self, event: Event) -> ControllerSnapshot:
        """Apply one event and return the resulting snapshot."""
        handler = self.handlers.get(type(event))
        if handler:
            handler(event)
        return self.snapshot()

    def snapshot(self) -> ControllerSnapshot:
        tool_call = self.pending_tool_call()
        buffer = self.action_buffer if self.kind is AgentState.REVIEW_ACTION else self.query_buffer
        return ControllerSnapshot(
            state=self.kind,
            pending_command=tool_call.summary() if tool_call is not None else None,
            safety_verdict=self.guard.evaluate_tool(tool_call) if tool_call is not None else None,
            execution_output=self.execution_output,
            error=self.error,
            notice=self.notice,
            error_count=self.error_count,
            pending_tool=tool_call.tool if tool_call is not None else None,
            input_text=buffer.text,
            cursor=buffer.cursor,
            spinner_frame=self.spinner_frame,
            terminal_size=self.terminal_size,
            should_quit=self.should_quit,
            messages=self.context.messages,
        )

    def pending_tool_call(self) -> Optional[ToolCall]:
        """The call awaiting confirmation (with the user's edits) or the one running."""
        if isinstance(self.state, ReviewActionState):
            return self.state.tool_call.with_argument(self.action_buffer.text)
        if isinstance(self.state, ExecutingState):
            return self.state.tool_call
        return None

    def pending_command(self) -> Optional[str]:
        tool_call = self.pending_tool_call()
        return tool_call.summary() if tool_call is not None else None

    def _debug_print(self, message: str) -> None:
        if self.debug:
            print(f"\nDebug - {message}")

    def _set_error(self, message: str) -> None:
        # counted so a repeated message still reads as a new error
        self.error = message
        self.error_count += 1

    def _clear_status(self) -> None:
        self.error = None
        self.notice = None

    def _begin_operation(self) -> int:
        if self._in_flight is not None:
            raise RuntimeError(f"operation {self._in_flight} still in flight")
        self._generation += 1
        self._in_flight = self._generation
        return self._generation

    def _is_current(self, generation: int) -> bool:
        if generation != self._in_flight:
            self._debug_print(f"Discarding stale completion (generation {generation}, in flight {self._in_flight})")
            return False
        return True

    def _start_model_call(self) -> int:
        generation = self._begin_operation()
        messages = self.context.windowed_view(self.system_prompt, self.context.max_history_messages)
        system_prompt = self.system_prompt

        def job() -> ModelReply:
            try:
                return ModelReply(generation, text=self.model.send(system_prompt, messages))
            except ModelCallFailed as exc:
                return ModelReply(generation, error=str(exc))
            except Exception as exc:
                return ModelReply(generation, error=f"{type(exc).__name__}: {exc}")

        self.router.spawn(job, name=f"sabi-model-{generation}")
        return generation

    def _handle_submit(self, event: SubmitText) -> None:
        if self.kind is not AgentState.INPUT:
            return
        text = self.query_buffer.text if event.text is None else event.text
        if not text.strip():
            return

        self._clear_status()
        self.execution_output = ""
        self.context.append(Message.user(text))
        self.query_buffer = TextBuffer()
        generation = self._start_model_call()
        self.state = ThinkingState(generation=generation, query=text)

    def _handle_model_reply(self, event: ModelReply) -> None:
        if not self._is_current(event.generation):
            return
        self._in_flight = None

        if isinstance(self.state, ThinkingState):
            self._finish_thinking(self.state, event)
        elif isinstance(self.state, FinalizingState):
            if event.error is not None:
                self._set_error(event.error)
            else:
                self.context.append(Message.model(event.text or ""))
            self.state = InputState()

    def _finish_thinking(self, state: ThinkingState, event: ModelReply) -> None:
        if event.error is not None:
            self._set_error(event.error)
            self.query_buffer = TextBuffer.of(state.query)
            self.state = InputState()
            return

        text = event.text or ""
        parsed = ParsedResponse.parse(text)
        if not parsed.is_tool_call:
            self.context.append(Message.model(text))
            self.state = InputState()
            return

        tool_call = parsed.tool_call
        if not tool_call.is_supported:
            self.context.append(Message.model(text))
            self.notice = f"Unsupported tool '{tool_call.tool}' ignored; allowed: {', '.join(TOOL_ARGUMENTS)}"
            self.state = InputState()
            return

        self.action_buffer = TextBuffer.of(tool_call.argument)
        self.state = ReviewActionState(tool_call=tool_call)
        if tool_call.is_run_cmd and self.guard.is_interactive(tool_call.command):
            self._set_error(str(CommandBlocked(tool_call.command, self.guard.suggestion(tool_call.command))))

    def _handle_confirm(self, event: Confirm) -> None:
        if self.kind is not AgentState.REVIEW_ACTION:
            return
        tool_call = self.pending_tool_call()
        if not tool_call.argument.strip():
            self._set_error(f"Nothing to run: the {tool_call.argument_name} is empty")
            return

        if tool_call.is_run_cmd:
            try:
                self.guard.check_executable(tool_call.command)
            except CommandBlocked as exc:
                self._set_error(str(exc))
                return

        self._clear_status()
        if self.safe_mode:
            self.context.append(Message.system(f"[SAFE MODE] {dry_run_text(tool_call)}"))
            self.notice = "Safe mode: action not executed"
            self.state = InputState()
            return

        try:
            running = self.executor.start_tool(tool_call)
        except CommandLaunchFailed as exc:
            self._set_error(str(exc))
            self.state = InputState()
            return

        generation = self._begin_operation()
        self._running = running
        self.execution_output = ""
        self.state = ExecutingState(generation=generation, tool_call=tool_call)

        def job() -> Event:
            try:
                return CommandFinished(generation, running.wait())
            except CommandCancelled:
                return CommandAborted(generation, "cancelled")
            except Exception as exc:
                return CommandAborted(generation, f"Command failed: {exc}")

        self.router.spawn(job, name=f"sabi-command-{generation}")

    def _handle_command_finished(self, event: CommandFinished) -> None:
        if not self._is_current(event.generation) or not isinstance(self.state, ExecutingState):
            return
        self._in_flight = None
        self._running = None

        tool_call = self.state.tool_call
        result = event.result
        self.execution_output = result.combined_output()
        heading = "Command" if tool_call.is_run_cmd else "Tool"
        self.context.append(Message.user(format_feedback(tool_call.summary(), result, heading)))
        generation = self._start_model_call()
        self.state = FinalizingState(generation=generation)

    def _handle_command_aborted(self, event: CommandAborted) -> None:
        if not self._is_current(event.generation):
            return
        self._in_flight = None
        self._running = None
        self._set_error(event.reason)
        self.state = InputState()

    def _handle_cancel(self, event: Cancel) -> None:
        if self.kind is AgentState.INPUT:
            return

        self._clear_status()
        if isinstance(self.state, ThinkingState):
            self._abort_model_call()
            self.query_buffer = TextBuffer.of(self.state.query)
            self.notice = "Request cancelled"
        elif isinstance(self.state, ExecutingState):
            if self._running is not None:
                self._running.cancel()
            self.execution_output = ""
            self.notice = "Command cancelled"
        elif isinstance(self.state, FinalizingState):
            self._abort_model_call()
            self.notice = "Summary cancelled"
        elif isinstance(self.state, ReviewActionState):
            self.action_buffer = TextBuffer()
            self.notice = "Command discarded"

        self._running = None
        self._in_flight = None
        self.state = InputState()

    def _abort_model_call(self) -> None:
        abort = getattr(self.model, "abort", None)
        if abort is not None:
            abort()

    def _handle_edit(self, event: EditBuffer) -> None:
        if self.kind is AgentState.INPUT:
            self.query_buffer = self.query_buffer.apply(event.action, event.text)
        elif self.kind is AgentState.REVIEW_ACTION:
            self.action_buffer = self.action_buffer.apply(event.action, event.text)

    def _handle_resize(self, event: Resize) -> None:
        self.terminal_size = (event.width, event.height)

    def _handle_tick(self, event: Tick) -> None:
        self.spinner_frame += 1

    def _handle_quit(self, event: Quit) -> None:
        if self.kind is AgentState.INPUT:
            self.should_quit = True


def dry_run_text(tool_call: ToolCall) -> str:
    """What a confirmed call would have done, recorded while safe mode is on."""
    if tool_call.tool == RUN_PYTHON:
        return f"Would run Python:\n{tool_call.code}"
    if tool_call.tool == READ_FILE:
        return f"Would read: {tool_call.path}"
    if tool_call.tool == WRITE_FILE:
        return f"Would write {len(tool_call.content.encode('utf-8'))} bytes to: {tool_call.path}"
    if tool_call.tool == SEARCH:
        return f"Would search '{tool_call.pattern}' in {tool_call.directory or '.'}"
    return f"Would run: {tool_call.command}"


def format_feedback(command: str, result: CommandResult, heading: str = "Command") -> str:
    """Conversation entry that reports a finished command back to the model."""
    lines = [
        f"{heading}: {command}",
        f"Exit code: {result.exit_code}",
        "Output:",
        result.combined_output().rstrip("\n"),
    ]
    if result.truncated:
        lines.append("[Output truncated due to size limits]")
    return "\n".join(lines)
