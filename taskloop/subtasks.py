"""
TASKLOOP Subtask Coordinator

Runs child task controllers on a thread pool. Children are kept in an
arena keyed by task id; a child only knows its parent's id, never the
parent object. Lifecycle events are forwarded onto the parent's bus.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from loguru import logger

from taskloop.errors import NotFoundError, SubtaskError, ToolTimeoutError, ValidationError
from taskloop.event_bus import EventBus, SubtaskCompleted, SubtaskFailed, SubtaskStarted

if TYPE_CHECKING:
    from taskloop.controller import TaskController, TaskOutcome

# mode -> fresh child controller
ChildFactory = Callable[["str | None"], "TaskController"]


@dataclass
class _Subtask:
    controller: "TaskController"
    mode: str | None
    future: concurrent.futures.Future | None = None


class SubtaskCoordinator:
    def __init__(
        self,
        parent_task_id: str,
        bus: EventBus,
        child_factory: ChildFactory,
        max_workers: int = 4,
        wait_timeout_seconds: float = 300.0,
    ):
        self.parent_task_id = parent_task_id
        self.wait_timeout_seconds = wait_timeout_seconds
        self._bus = bus
        self._child_factory = child_factory
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=f"subtask-{parent_task_id[:8]}",
        )
        self._subtasks: dict[str, _Subtask] = {}
        self._lock = threading.Lock()

    def start_subtask(self, message: str, mode: str | None = None) -> str:
        """Start a child task in the background and return its id immediately."""
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Subtask message must be a non-empty string")

        child = self._child_factory(mode)
        record = _Subtask(controller=child, mode=mode)
        with self._lock:
            self._subtasks[child.task_id] = record

        logger.info(f"[SUBTASK] Started {child.task_id} (mode={mode or 'default'})")
        self._bus.emit(SubtaskStarted(task_id=self.parent_task_id, subtask_id=child.task_id, mode=mode))
        record.future = self._executor.submit(self._run_child, child.task_id, record, message)
        return child.task_id

    def wait_for_subtask(self, subtask_id: str, timeout: float | None = None) -> "TaskOutcome":
        """
        Block until the subtask finishes. A subtask still running after
        ``timeout`` seconds raises ToolTimeoutError; it keeps running.
        """
        record = self._get(subtask_id)
        timeout = self.wait_timeout_seconds if timeout is None else timeout
        try:
            return record.future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.warning(f"[SUBTASK] {subtask_id} did not finish within {timeout}s")
            raise ToolTimeoutError(f"Subtask {subtask_id} did not finish within {timeout} seconds") from None
        except concurrent.futures.CancelledError:
            raise SubtaskError(f"Subtask {subtask_id} was cancelled before it ran") from None

    def run_subtask(self, message: str, mode: str | None = None) -> str:
        """Start a subtask, wait for it and return its completion result."""
        subtask_id = self.start_subtask(message, mode)
        outcome = self.wait_for_subtask(subtask_id)
        if not outcome.completed:
            raise SubtaskError(f"Subtask {subtask_id} ended {outcome.status.value} without completing")
        return outcome.result or ""

    def abort_subtask(self, subtask_id: str) -> None:
        record = self._get(subtask_id)
        record.controller.abort()

    def status(self, subtask_id: str) -> str:
        return self._get(subtask_id).controller.status.value

    def subtask_ids(self) -> list[str]:
        with self._lock:
            return list(self._subtasks)

    def dispose(self) -> None:
        """Abort every outstanding child and stop accepting work."""
        with self._lock:
            records = list(self._subtasks.values())
        for record in records:
            if record.future is not None and not record.future.done():
                record.controller.abort()
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------

    def _get(self, subtask_id: str) -> _Subtask:
        with self._lock:
            record = self._subtasks.get(subtask_id)
        if record is None:
            raise NotFoundError(f"Subtask {subtask_id} not found")
        return record

    def _run_child(self, subtask_id: str, record: _Subtask, message: str) -> "TaskOutcome":
        try:
            outcome = record.controller.start(message)
        except Exception as e:
            logger.exception(f"[SUBTASK] {subtask_id} failed")
            self._bus.emit(SubtaskFailed(task_id=self.parent_task_id, subtask_id=subtask_id, error=str(e)))
            raise

        if outcome.completed:
            logger.info(f"[SUBTASK] {subtask_id} completed")
            self._bus.emit(SubtaskCompleted(
                task_id=self.parent_task_id,
                subtask_id=subtask_id,
                result=outcome.result or "",
            ))
        else:
            self._bus.emit(SubtaskFailed(
                task_id=self.parent_task_id,
                subtask_id=subtask_id,
                error=f"Subtask ended {outcome.status.value}",
            ))
        return outcome
