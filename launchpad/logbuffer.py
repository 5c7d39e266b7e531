"""
Log broadcast buffer.

A bounded ring of structured log entries shown to operators. Every append is
fanned out to subscribed observers and mirrored to the service logger; late
joiners receive the current contents as a snapshot.
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

LOG_KINDS = ("info", "warn", "error", "success", "input")

_MIRROR_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
}


def _timestamp() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass(frozen=True)
class LogEntry:
    """One timestamped, severity-tagged line surfaced to operators."""

    kind: str
    text: str
    timestamp: str = field(default_factory=_timestamp)

    def to_dict(self) -> dict:
        return asdict(self)


EntryCallback = Callable[[LogEntry], None]
ResetCallback = Callable[[list[LogEntry]], None]


class LogBuffer:
    """Thread-safe ring buffer of LogEntry with observer fan-out.

    Appends are serialized under a single lock, so entries from one producer
    keep their order in the buffer and in what every observer receives.
    Observer callbacks run while the lock is held and must not block.
    """

    def __init__(self, capacity: int = 50):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._subscribers: dict[EntryCallback, Optional[ResetCallback]] = {}
        self._lock = threading.Lock()

    def append(self, kind: str, text: str) -> LogEntry:
        """Record an entry, evicting the oldest on overflow, and broadcast it."""
        if kind not in LOG_KINDS:
            raise ValueError(f"Unknown log kind: {kind}")
        entry = LogEntry(kind=kind, text=text)
        with self._lock:
            self._entries.append(entry)
            for on_entry in list(self._subscribers):
                self._notify(on_entry, entry)
        logger.log(_MIRROR_LEVELS.get(kind, logging.INFO), f"[{kind.upper()}] {text}")
        return entry

    def snapshot(self) -> list[LogEntry]:
        """Current buffer contents, oldest first."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> list[LogEntry]:
        """Drop all entries, then record a confirmation entry.

        Observers are sent the new (one-entry) history through their reset
        callback rather than a separate entry notification.
        """
        entry = LogEntry(kind="info", text="Log history cleared by operator request.")
        with self._lock:
            self._entries.clear()
            self._entries.append(entry)
            history = list(self._entries)
            for on_entry, on_reset in list(self._subscribers.items()):
                if on_reset is not None:
                    self._notify(on_reset, history)
                else:
                    self._notify(on_entry, entry)
        logger.info(f"[INFO] {entry.text}")
        return history

    def subscribe(self, on_entry: EntryCallback, on_reset: ResetCallback = None) -> list[LogEntry]:
        """Register an observer and return the snapshot it starts from.

        Registration and snapshot happen atomically, so the observer sees
        every later entry exactly once.
        """
        with self._lock:
            self._subscribers[on_entry] = on_reset
            return list(self._entries)

    def unsubscribe(self, on_entry: EntryCallback):
        with self._lock:
            self._subscribers.pop(on_entry, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _notify(callback, payload):
        try:
            callback(payload)
        except Exception as e:
            logger.error(f"Log observer failed: {e}")
