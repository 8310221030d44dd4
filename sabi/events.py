import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .agent.executor import CommandResult


@dataclass(frozen=True)
class SubmitText:
    """Submit a query. With text=None the controller's query buffer is used."""

    text: Optional[str] = None


@dataclass(frozen=True)
class Confirm:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class EditBuffer:
    """Edit the active text buffer: insert, backspace, delete, left, right, home, end, clear, set."""

    action: str
    text: str = ""


@dataclass(frozen=True)
class Resize:
    width: int
    height: int


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class ModelReply:
    """Completion of a model call. Exactly one of text/error is set."""

    generation: int
    text: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CommandFinished:
    generation: int
    result: CommandResult


@dataclass(frozen=True)
class CommandAborted:
    """The command ended without a result: cancelled or failed while waiting."""

    generation: int
    reason: str


Event = Union[
    SubmitText,
    Confirm,
    Cancel,
    EditBuffer,
    Resize,
    Tick,
    Quit,
    ModelReply,
    CommandFinished,
    CommandAborted,
]


class EventRouter:
    """Merges presentation input, ticks and async completions into one ordered stream.

    Producers on any thread call post(); a single consumer calls next().
    Ticks are coalesced: while one Tick is waiting to be consumed, further
    ticks are dropped.
    """

    def __init__(self, tick_interval: float = 0.1):
        self.tick_interval = tick_interval
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._tick_lock = threading.Lock()
        self._tick_pending = False
        self._stopped = threading.Event()
        self._ticker: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the periodic ticker thread."""
        if self._ticker is not None:
            return
        self._stopped.clear()
        self._ticker = threading.Thread(target=self._tick_loop, name="sabi-ticker", daemon=True)
        self._ticker.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._ticker is not None:
            self._ticker.join(timeout=self.tick_interval * 2)
            self._ticker = None

    def post(self, event: Event) -> None:
        self._queue.put(event)

    def post_tick(self) -> bool:
        """Queue a Tick unless one is already pending. Returns True when queued."""
        with self._tick_lock:
            if self._tick_pending:
                return False
            self._tick_pending = True
        self._queue.put(Tick())
        return True

    def next(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, or None when the timeout elapses."""
        try:
            event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(event, Tick):
            with self._tick_lock:
                self._tick_pending = False
        return event

    def pending(self) -> int:
        return self._queue.qsize()

    def spawn(self, job: Callable[[], Event], name: str = "sabi-worker") -> threading.Thread:
        """Run job on a daemon thread and post the event it returns."""
        thread = threading.Thread(target=lambda: self.post(job()), name=name, daemon=True)
        thread.start()
        return thread

    def _tick_loop(self) -> None:
        while not self._stopped.wait(self.tick_interval):
            self.post_tick()
