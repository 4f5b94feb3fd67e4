"""In-memory conversation log shared by every connection of a server process."""
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass
class LogEntry:
    timestamp: int  # Unix time in ms
    type: str
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "type": self.type, **self.fields}


class ConversationLog:
    """
    Append-only log of relay activity.

    Lives for the lifetime of the process. There is no retention limit and
    nothing is persisted.
    """

    def __init__(self):
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()

    def append(self, type: str, **fields) -> LogEntry:
        entry = LogEntry(timestamp=int(time.time() * 1000), type=type, fields=fields)
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self, type: Optional[str] = None) -> List[LogEntry]:
        """Snapshot of all entries, optionally filtered by type."""
        with self._lock:
            snapshot = list(self._entries)
        if type is None:
            return snapshot
        return [e for e in snapshot if e.type == type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
