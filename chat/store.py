import threading

from .models import Message


class MessageStore:
    """Append-only conversation storage.

    Implementations keep messages in insertion order; ``list()`` returns a
    copy of the canonical list.
    """

    def append(self, message: Message) -> None:
        raise NotImplementedError

    def list(self) -> list[Message]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def allocate_id(self, now_ms: int) -> int:
        """Return a fresh user id; the id after it is reserved for the reply."""
        raise NotImplementedError


class InMemoryMessageStore(MessageStore):
    def __init__(self):
        self._messages: list[Message] = []
        self._last_id = 0
        self._lock = threading.Lock()

    def append(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)
            self._last_id = max(self._last_id, message.id)

    def list(self) -> list[Message]:
        with self._lock:
            return list(self._messages)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._last_id = 0

    def allocate_id(self, now_ms: int) -> int:
        with self._lock:
            new_id = max(now_ms, self._last_id + 1)
            self._last_id = new_id + 1
            return new_id

    def __len__(self):
        with self._lock:
            return len(self._messages)
