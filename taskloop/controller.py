"""
TASKLOOP Controller — The Task Loop

It is NOT smart. It is deterministic.

One TaskController drives one task through repeated iterations:

  model output → tool calls → approval → execution → continue?

States: idle → starting → running → {awaiting_guidance → running |
aborted | completed} → stopped

Responsibilities:
  - Own the message log and the per-task collaborators
  - Trim history to the context budget before every request
  - Count consecutive mistakes and pause for guidance at the limit
  - Classify model failures and apply their recovery step
  - Stop on completion, abort or an unrecoverable failure

The collaborators (dispatcher, approval gate, checkpoint store, ...) are
held by reference, never inherited from, and each task builds its own.
"""

from __future__ import annotations

import threading
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, Field

from taskloop.approval import ApprovalGate, ApprovalKind
from taskloop.checkpoints import CheckpointStore
from taskloop.config_loader import TaskLoopConfig, load_config
from taskloop.context_window import CondenseResult, ContextWindowManager
from taskloop.error_handler import ErrorHandler, ErrorKind, RecoveryAction
from taskloop.errors import (
    AlreadyRunningError,
    NotRunningError,
    TaskDisposedError,
    TaskLoopError,
    ValidationError,
)
from taskloop.event_bus import (
    ContextCondensed,
    EventBus,
    MessageAppended,
    MessageUpdated,
    StatusChanged,
    Subscriber,
    TaskCompleted,
)
from taskloop.interaction import NO, Asker, HeadlessAsker
from taskloop.messages import Message, MessageLog
from taskloop.prompts import NO_TOOL_NUDGE, build_system_prompt
from taskloop.repetition import RepetitionDetector
from taskloop.router import ModelProvider, StreamProcessor, UsageTracker, history_payload
from taskloop.subtasks import SubtaskCoordinator
from taskloop.tools.dispatcher import BatchResult, ToolDispatcher
from taskloop.workspace import Workspace
from taskloop.workspace.shell import ShellRunner


class TaskStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    AWAITING_GUIDANCE = "awaiting_guidance"
    ABORTED = "aborted"
    COMPLETED = "completed"
    STOPPED = "stopped"


_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.IDLE: {TaskStatus.STARTING, TaskStatus.STOPPED},
    TaskStatus.STARTING: {TaskStatus.RUNNING, TaskStatus.STOPPED},
    TaskStatus.RUNNING: {
        TaskStatus.AWAITING_GUIDANCE,
        TaskStatus.ABORTED,
        TaskStatus.COMPLETED,
        TaskStatus.STOPPED,
    },
    TaskStatus.AWAITING_GUIDANCE: {TaskStatus.RUNNING, TaskStatus.ABORTED, TaskStatus.STOPPED},
    TaskStatus.ABORTED: {TaskStatus.STOPPED},
    TaskStatus.COMPLETED: {TaskStatus.STOPPED},
    TaskStatus.STOPPED: {TaskStatus.STARTING},
}

# Approval refusals are the user's call, not the model's mistake
_NOT_A_MISTAKE = {"approval_denied"}


class TaskOutcome(BaseModel):
    task_id: str
    status: TaskStatus  # terminal state the loop reached: completed or aborted
    result: str | None = None
    iterations: int = 0
    usage: dict[str, int] = Field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class TaskController:
    def __init__(
        self,
        workspace_root: Path,
        provider: ModelProvider,
        config: TaskLoopConfig | None = None,
        asker: Asker | None = None,
        task_id: str | None = None,
        mode: str | None = None,
        parent_id: str | None = None,
        enable_checkpoints: bool | None = None,
        allow_subtasks: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.task_id = task_id or str(uuid.uuid4())
        self.workspace = Workspace(workspace_root)
        self.config = config or load_config(self.workspace.root)
        self.provider = provider
        self.asker = asker or HeadlessAsker()
        self.mode = mode
        self.parent_id = parent_id
        self._sleep = sleep

        self.bus = EventBus()
        self.log = MessageLog()

        self._status = TaskStatus.IDLE
        self._status_lock = threading.Lock()
        self._abort = threading.Event()
        self._disposed = False
        self._mistakes = 0

        # Exclusive section for tool batches and checkpoint operations
        self._workspace_lock = threading.RLock()

        # Conversation window: messages before the offset were condensed
        # into the summary carried by the system prompt.
        self._history_offset = 0
        self._summary: str | None = None

        self._previous_response_id: str | None = None
        self._suppress_previous_response_id = False

        cfg = self.config
        self.usage = UsageTracker()
        self.stream = StreamProcessor(self.usage)
        self.context = ContextWindowManager(
            context_window=cfg.model.context_window,
            max_output_tokens=cfg.model.max_output_tokens,
            auto_condense=cfg.context.auto_condense,
            condense_percent=cfg.context.condense_percent,
            overflow_retention_percent=cfg.context.overflow_retention_percent,
        )
        self.repetition = RepetitionDetector(
            consecutive_limit=cfg.repetition.consecutive_limit,
            window_seconds=cfg.repetition.window_seconds,
        )
        self.approval = ApprovalGate(
            cfg.approval, self.asker,
            workspace_root=self.workspace.root,
            bus=self.bus,
            task_id=self.task_id,
        )
        self.errors = ErrorHandler(
            cfg.errors,
            workspace_root=self.workspace.root,
            bus=self.bus,
            task_id=self.task_id,
            sleep=sleep,
        )

        checkpoints_on = cfg.checkpoints.enabled if enable_checkpoints is None else enable_checkpoints
        self.checkpoints: CheckpointStore | None = None
        if checkpoints_on:
            self.checkpoints = CheckpointStore(
                self.workspace, self.task_id,
                directory=cfg.checkpoints.directory,
                bus=self.bus,
                lock=self._workspace_lock,
            )

        self.subtasks: SubtaskCoordinator | None = None
        if allow_subtasks:
            self.subtasks = SubtaskCoordinator(
                self.task_id, self.bus, self._spawn_child,
                max_workers=cfg.subtasks.max_workers,
                wait_timeout_seconds=cfg.subtasks.wait_timeout_seconds,
            )

        self.dispatcher = ToolDispatcher(
            workspace=self.workspace,
            shell=ShellRunner(
                self.workspace.root,
                timeout_seconds=cfg.tools.shell_timeout_seconds,
                max_output_bytes=cfg.tools.max_output_bytes,
            ),
            approval=self.approval,
            repetition=self.repetition,
            asker=self.asker,
            bus=self.bus,
            task_id=self.task_id,
            workspace_lock=self._workspace_lock,
            subtask_runner=self.subtasks.run_subtask if self.subtasks else None,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def consecutive_mistakes(self) -> int:
        return self._mistakes

    @property
    def summary(self) -> str | None:
        return self._summary

    @property
    def messages(self) -> list[Message]:
        return self.log.all()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._ensure_usable()
        return self.bus.subscribe(callback)

    def start(self, message: str, attachments: list[str] | None = None) -> TaskOutcome:
        """
        Run the task loop on the calling thread until it completes or is
        aborted. Authentication failures are re-raised after the task stops.
        """
        self._ensure_usable()
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Task message must be a non-empty string")

        with self._status_lock:
            if self._status not in (TaskStatus.IDLE, TaskStatus.STOPPED):
                raise AlreadyRunningError(f"Task {self.task_id} is already {self._status.value}")
            self._abort.clear()
            self._mistakes = 0
            previous = self._set_status_locked(TaskStatus.STARTING)
        self._emit_status(previous, TaskStatus.STARTING)

        logger.info(f"[TASK] {self.task_id} starting: {message[:80]}")
        try:
            self._append("user", message, attachments=attachments)
            self._transition(TaskStatus.RUNNING)
            return self._run_loop()
        finally:
            self._transition(TaskStatus.STOPPED)

    def send_message(self, text: str, attachments: list[str] | None = None) -> Message:
        self._ensure_usable()
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message must be a non-empty string")
        if self._status != TaskStatus.RUNNING:
            raise NotRunningError(f"Task {self.task_id} is {self._status.value}, not running")
        return self._append("user", text, attachments=attachments)

    def abort(self) -> None:
        """Request a stop at the top of the next iteration. Repeated calls are no-ops."""
        self._ensure_usable()
        if self._abort.is_set():
            return
        logger.info(f"[TASK] {self.task_id} abort requested")
        self._abort.set()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._abort.set()
        if self.subtasks is not None:
            self.subtasks.dispose()
        self.bus.clear()
        self.log.clear()
        self._disposed = True
        logger.debug(f"[TASK] {self.task_id} disposed")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> TaskOutcome:
        limit = self.config.limits.consecutive_mistake_limit
        iterations = 0

        while True:
            if self._abort.is_set():
                self._transition(TaskStatus.ABORTED)
                logger.info(f"[TASK] {self.task_id} aborted after {iterations} iteration(s)")
                return self._outcome(TaskStatus.ABORTED, None, iterations)

            if self._mistakes >= limit:
                if not self._await_guidance():
                    self._abort.set()
                continue

            iterations += 1
            try:
                batch = self._iterate()
            except Exception as e:
                self._handle_iteration_error(e)
                continue

            if batch.completed:
                self._transition(TaskStatus.COMPLETED)
                logger.info(f"[TASK] {self.task_id} completed after {iterations} iteration(s)")
                self.bus.emit(TaskCompleted(task_id=self.task_id, result=batch.completion))
                return self._outcome(TaskStatus.COMPLETED, batch.completion, iterations)

    def _iterate(self) -> BatchResult:
        """One model round-trip plus its tool batch."""
        self._fit_context()

        metadata: dict[str, Any] = {"task_id": self.task_id}
        if self.mode:
            metadata["mode"] = self.mode
        if self._previous_response_id and not self._suppress_previous_response_id:
            metadata["previous_response_id"] = self._previous_response_id
        # One-shot: cleared on the next request whether or not it needed it
        self._suppress_previous_response_id = False

        system_prompt = build_system_prompt(
            str(self.workspace.root),
            self.dispatcher.available_tools,
            summary=self._summary,
            mode=self.mode,
        )
        history = history_payload(self.log.since(self._history_offset))

        streaming: dict[str, str | None] = {"id": None}

        def on_text(text: str) -> None:
            if streaming["id"] is None:
                streaming["id"] = self._append("assistant", text).id
            else:
                self._patch(streaming["id"], content=text)

        def on_reasoning(reasoning: str) -> None:
            if streaming["id"] is None:
                streaming["id"] = self._append("assistant", "", metadata={"reasoning": reasoning}).id
            else:
                self._patch(streaming["id"], metadata={"reasoning": reasoning})

        reply = self.stream.consume(
            self.provider.generate(system_prompt, history, metadata),
            on_text=on_text,
            on_reasoning=on_reasoning,
        )
        if streaming["id"] is None:
            self._append("assistant", reply.text)
        if reply.response_id:
            self._previous_response_id = reply.response_id

        batch = self.dispatcher.dispatch(reply.text)

        if not batch.has_tool_calls:
            self._append("system", NO_TOOL_NUDGE)
            self._mistakes += 1
            logger.warning(f"[TASK] No tool used (mistakes: {self._mistakes})")
            return batch

        for result in batch.results:
            self._append(
                "tool",
                result.render(),
                metadata={"tool_name": result.tool_name, "success": result.success, "error": result.error},
            )

        if any(r.error not in _NOT_A_MISTAKE for r in batch.failures):
            self._mistakes += 1
            logger.warning(f"[TASK] Tool failure (mistakes: {self._mistakes})")
        else:
            self._mistakes = 0
        return batch

    def _handle_iteration_error(self, error: Exception) -> None:
        recovery = self.errors.handle(error, operation="iteration")
        if recovery.action == RecoveryAction.SURFACE:
            raise error

        if recovery.action == RecoveryAction.CONDENSE:
            self._force_condense()

        self._mistakes += 1

        if recovery.kind in (ErrorKind.NETWORK, ErrorKind.RATE_LIMIT, ErrorKind.CONTEXT_WINDOW):
            approval = self.approval.request_approval(
                ApprovalKind.API_REQUEST,
                "Resubmit the request to the model",
                {"error_kind": recovery.kind.value},
            )
            if not approval.approved:
                logger.info(f"[TASK] {self.task_id} resubmission refused, aborting")
                self._abort.set()

    def _await_guidance(self) -> bool:
        """Pause for the human. False means the task should abort."""
        count = self._mistakes
        self._transition(TaskStatus.AWAITING_GUIDANCE)
        self._append(
            "system",
            f"The task made {count} consecutive mistakes and is waiting for guidance.",
        )
        response = self.asker.ask("mistake_limit_reached", {"task_id": self.task_id, "count": count})
        self._mistakes = 0

        if response.response == NO:
            return False
        if response.text:
            self._append("user", response.text)
        self._transition(TaskStatus.RUNNING)
        return True

    # ------------------------------------------------------------------
    # Context window
    # ------------------------------------------------------------------

    def _fit_context(self) -> None:
        result = self.context.truncate_if_needed(self.log.since(self._history_offset))
        if result.truncated:
            self._apply_condense(result)

    def _force_condense(self) -> None:
        result = self.context.force_condense(self.log.since(self._history_offset))
        if result.truncated:
            self._apply_condense(result)
        # The referenced response no longer matches what will be sent
        self._suppress_previous_response_id = True

    def _apply_condense(self, result: CondenseResult) -> None:
        self._history_offset += result.dropped
        if result.summary:
            self._summary = f"{self._summary}\n\n{result.summary}" if self._summary else result.summary
        self.bus.emit(ContextCondensed(
            task_id=self.task_id,
            dropped=result.dropped,
            retained=len(result.messages),
            prev_tokens=result.prev_tokens,
            new_tokens=result.new_tokens,
            summary=result.summary,
        ))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn_child(self, mode: str | None) -> "TaskController":
        return TaskController(
            self.workspace.root,
            self.provider,
            config=self.config,
            asker=self.asker,
            mode=mode,
            parent_id=self.task_id,
            enable_checkpoints=False,
            allow_subtasks=False,
            sleep=self._sleep,
        )

    def _append(
        self,
        role: str,
        content: str,
        attachments: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        message = self.log.append(role, content, attachments=attachments, metadata=metadata)
        self.bus.emit(MessageAppended(task_id=self.task_id, message=message.model_dump(mode="json")))
        return message

    def _patch(self, message_id: str, content: str | None = None, metadata: dict[str, Any] | None = None) -> None:
        message = self.log.patch(message_id, content=content, metadata=metadata)
        self.bus.emit(MessageUpdated(task_id=self.task_id, message=message.model_dump(mode="json")))

    def _transition(self, status: TaskStatus) -> None:
        with self._status_lock:
            previous = self._set_status_locked(status)
        self._emit_status(previous, status)

    def _set_status_locked(self, status: TaskStatus) -> TaskStatus:
        previous = self._status
        if status not in _TRANSITIONS[previous]:
            raise TaskLoopError(f"Invalid transition {previous.value} → {status.value}")
        self._status = status
        return previous

    def _emit_status(self, previous: TaskStatus, status: TaskStatus) -> None:
        logger.debug(f"[TASK] {self.task_id} {previous.value} → {status.value}")
        self.bus.emit(StatusChanged(task_id=self.task_id, previous=previous.value, status=status.value))

    def _outcome(self, status: TaskStatus, result: str | None, iterations: int) -> TaskOutcome:
        return TaskOutcome(
            task_id=self.task_id,
            status=status,
            result=result,
            iterations=iterations,
            usage=self.usage.summary(),
        )

    def _ensure_usable(self) -> None:
        if self._disposed:
            raise TaskDisposedError(f"Task {self.task_id} has been disposed")
