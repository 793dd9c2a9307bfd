import os
import threading
from typing import Callable

from taskloop.event_bus import EventBus, TaskEvent


class AuditLogger:
    """
    Subscribes to a task's event bus and appends every event to a JSONL
    file, one event per line. Lines are buffered and written in batches.
    """

    def __init__(self, file_path: str, event_bus: EventBus, batch_size: int = 10):
        self.file_path = file_path
        self.batch_size = batch_size
        self._buffer: list[str] = []
        self._lock = threading.Lock()

        # Ensure the directory exists
        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)

        self._unsubscribe: Callable[[], None] | None = event_bus.subscribe(self.log_event)

    def log_event(self, event: TaskEvent) -> None:
        with self._lock:
            self._buffer.append(event.model_dump_json() + "\n")
            if len(self._buffer) >= self.batch_size:
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.flush()

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.writelines(self._buffer)
        self._buffer.clear()
