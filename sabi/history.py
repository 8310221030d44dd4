import json
import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple


class MessageRole(Enum):
    USER = "user"
    MODEL = "model"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """One conversation entry. Immutable once created."""

    role: MessageRole
    content: str

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(MessageRole.USER, content)

    @classmethod
    def model(cls, content: str) -> "Message":
        return cls(MessageRole.MODEL, content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(MessageRole.SYSTEM, content)

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(MessageRole(data["role"]), str(data.get("content", "")))


class ConversationContext:
    """Owns the ordered message log and produces size-bounded views of it.

    The stored log only ever grows through append(); bounding happens in
    windowed_view(), which builds a fresh list for each outbound request.
    """

    def __init__(self, max_history_messages: int = 20):
        self.max_history_messages = max_history_messages
        self._messages: List[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def windowed_view(self, system_prompt: Optional[str] = None, max_n: Optional[int] = None) -> List[Message]:
        """Return the system message followed by the last max_n remaining messages.

        An explicit system_prompt takes precedence over a system message stored
        at the head of the log; either way the head entry is not counted in the
        window.
        """
        if max_n is None:
            max_n = self.max_history_messages

        remaining = self._messages
        system_message = None
        if remaining and remaining[0].role is MessageRole.SYSTEM:
            system_message = remaining[0]
            remaining = remaining[1:]
        if system_prompt:
            system_message = Message.system(system_prompt)

        window = remaining[-max_n:] if max_n > 0 else []
        view = [system_message] if system_message else []
        view.extend(window)
        return view

    def clear(self) -> None:
        self._messages = []

    def save(self, filename: str) -> None:
        """Save history to file."""
        data = {"messages": [message.to_dict() for message in self._messages]}
        with open(filename, "w", encoding="utf-8") as file_obj:
            json.dump(data, file_obj, ensure_ascii=False, indent=2)

    def load(self, filename: str) -> bool:
        """Replace the log with one saved by save(). Returns False when the file is missing or unreadable."""
        if not os.path.exists(filename):
            return False

        try:
            with open(filename, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
            loaded = [Message.from_dict(item) for item in data.get("messages", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            print(f"Error loading chat history: {str(exc)}")
            return False

        self._messages = loaded
        return True
