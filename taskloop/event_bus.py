"""
Typed per-task event bus.

Every event is a pydantic model tagged by ``kind``; ``TaskEvent`` is the
discriminated union a subscriber receives. Each TaskController owns its
own bus, so concurrent tasks never share subscribers.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Event(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_now)
    task_id: str


class MessageAppended(_Event):
    kind: Literal["message_appended"] = "message_appended"
    message: dict[str, Any]


class MessageUpdated(_Event):
    kind: Literal["message_updated"] = "message_updated"
    message: dict[str, Any]


class StatusChanged(_Event):
    kind: Literal["status_changed"] = "status_changed"
    previous: str
    status: str


class ToolRequested(_Event):
    kind: Literal["tool_requested"] = "tool_requested"
    tool_name: str
    args: dict[str, str]


class ToolResultEvent(_Event):
    kind: Literal["tool_result"] = "tool_result"
    tool_name: str
    success: bool
    content: str
    error: str | None = None


class RepetitionWarning(_Event):
    kind: Literal["repetition_warning"] = "repetition_warning"
    tool_name: str
    count: int


class ErrorEvent(_Event):
    kind: Literal["error"] = "error"
    error_kind: str
    message: str
    recoverable: bool = True


class ApprovalRecorded(_Event):
    kind: Literal["approval_recorded"] = "approval_recorded"
    request_id: str
    request_kind: str
    description: str
    approved: bool
    auto_approved: bool


class ContextCondensed(_Event):
    kind: Literal["context_condensed"] = "context_condensed"
    dropped: int
    retained: int
    prev_tokens: int
    new_tokens: int
    summary: str | None = None


class CheckpointCreated(_Event):
    kind: Literal["checkpoint_created"] = "checkpoint_created"
    checkpoint_id: str
    description: str
    file_count: int


class CheckpointRestored(_Event):
    kind: Literal["checkpoint_restored"] = "checkpoint_restored"
    checkpoint_id: str
    written: int
    removed: int


class CheckpointDeleted(_Event):
    kind: Literal["checkpoint_deleted"] = "checkpoint_deleted"
    checkpoint_id: str


class CheckpointCleanupCompleted(_Event):
    kind: Literal["checkpoint_cleanup_completed"] = "checkpoint_cleanup_completed"
    deleted: int


class TaskCompleted(_Event):
    kind: Literal["task_completed"] = "task_completed"
    result: str


class SubtaskStarted(_Event):
    kind: Literal["subtask_started"] = "subtask_started"
    subtask_id: str
    mode: str | None = None


class SubtaskCompleted(_Event):
    kind: Literal["subtask_completed"] = "subtask_completed"
    subtask_id: str
    result: str


class SubtaskFailed(_Event):
    kind: Literal["subtask_failed"] = "subtask_failed"
    subtask_id: str
    error: str


TaskEvent = Annotated[
    Union[
        MessageAppended,
        MessageUpdated,
        StatusChanged,
        ToolRequested,
        ToolResultEvent,
        RepetitionWarning,
        ErrorEvent,
        ApprovalRecorded,
        ContextCondensed,
        CheckpointCreated,
        CheckpointRestored,
        CheckpointDeleted,
        CheckpointCleanupCompleted,
        TaskCompleted,
        SubtaskStarted,
        SubtaskCompleted,
        SubtaskFailed,
    ],
    Field(discriminator="kind"),
]

Subscriber = Callable[[TaskEvent], None]


class EventBus:
    """A lightweight, synchronous event bus for one task."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it again."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: TaskEvent) -> None:
        """Broadcast an event to all subscribers, in subscription order."""
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                # A failing subscriber (like a bad file write) must not crash the loop
                logger.exception(f"[EVENTS] Subscriber failed on {event.kind}")

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
