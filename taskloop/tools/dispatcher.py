"""
TASKLOOP Tool Dispatcher

Executes the tool calls parsed from one assistant message, strictly in
document order. For every call:

  requested event → argument validation → repetition check → approval
  → execution → result event

A failing call never stops the rest of the batch. Failures come back as
``ToolResult(success=False, error=<kind>)``.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Callable

import pydantic
from loguru import logger

from taskloop.approval import ApprovalGate, ApprovalKind
from taskloop.errors import (
    ApprovalDeniedError,
    LoopDetectedError,
    TaskLoopError,
    ToolTimeoutError,
    UnknownToolError,
    ValidationError,
)
from taskloop.event_bus import EventBus, RepetitionWarning, ToolRequested, ToolResultEvent
from taskloop.interaction import Asker
from taskloop.repetition import RepetitionDetector, RepetitionVerdict
from taskloop.tools import (
    COMPLETION_TOOL,
    ApplyDiffArgs,
    AskFollowupArgs,
    AttemptCompletionArgs,
    ExecuteCommandArgs,
    ListFilesArgs,
    NewTaskArgs,
    ReadFileArgs,
    SearchFilesArgs,
    ToolInvocation,
    ToolResult,
    WriteFileArgs,
    args_model_for,
)
from taskloop.tools.diff import apply_blocks, apply_search_replace, parse_blocks
from taskloop.tools.parser import parse_tool_calls
from taskloop.workspace import Workspace
from taskloop.workspace.shell import ShellRunner

# (message, mode) -> subtask result text
SubtaskRunner = Callable[[str, "str | None"], str]

MAX_LIST_ENTRIES = 500
MAX_SEARCH_MATCHES = 200


@dataclass
class BatchResult:
    invocations: list[ToolInvocation] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    completion: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.invocations)

    @property
    def completed(self) -> bool:
        return self.completion is not None

    @property
    def failures(self) -> list[ToolResult]:
        return [r for r in self.results if not r.success]


class ToolDispatcher:
    def __init__(
        self,
        workspace: Workspace,
        shell: ShellRunner,
        approval: ApprovalGate,
        repetition: RepetitionDetector,
        asker: Asker,
        bus: EventBus,
        task_id: str,
        workspace_lock: threading.RLock | None = None,
        subtask_runner: SubtaskRunner | None = None,
    ):
        self.workspace = workspace
        self.shell = shell
        self.approval = approval
        self.repetition = repetition
        self.asker = asker
        self.bus = bus
        self.task_id = task_id
        self._lock = workspace_lock or threading.RLock()
        self._subtask_runner = subtask_runner

        self._handlers: dict[str, Callable] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "execute_command": self._execute_command,
            "list_files": self._list_files,
            "search_files": self._search_files,
            "apply_diff": self._apply_diff,
            "ask_followup": self._ask_followup,
            "attempt_completion": self._attempt_completion,
        }
        if subtask_runner is not None:
            self._handlers["new_task"] = self._new_task

    @property
    def available_tools(self) -> list[str]:
        return list(self._handlers)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def dispatch(self, text: str) -> BatchResult:
        """Parse ``text`` and run every tool call it contains."""
        batch = BatchResult(invocations=parse_tool_calls(text))
        if batch.invocations:
            logger.debug(f"[TOOLS] {len(batch.invocations)} call(s): {[c.name for c in batch.invocations]}")

        for invocation in batch.invocations:
            result = self.execute(invocation)
            batch.results.append(result)
            if invocation.name == COMPLETION_TOOL and result.success:
                batch.completion = result.content
        return batch

    def execute(self, invocation: ToolInvocation) -> ToolResult:
        self.bus.emit(ToolRequested(
            task_id=self.task_id,
            tool_name=invocation.name,
            args=dict(invocation.args),
        ))
        result = self._run(invocation)
        level = "INFO" if result.success else "WARNING"
        logger.log(level, f"[TOOLS] {invocation.name} → {'ok' if result.success else result.error}")
        self.bus.emit(ToolResultEvent(
            task_id=self.task_id,
            tool_name=result.tool_name,
            success=result.success,
            content=result.content,
            error=result.error,
        ))
        return result

    # ------------------------------------------------------------------
    # Per call
    # ------------------------------------------------------------------

    def _run(self, invocation: ToolInvocation) -> ToolResult:
        name = invocation.name

        handler = self._handlers.get(name)
        if handler is None:
            return _failure(name, UnknownToolError(
                f"Unknown tool: {name}. Available tools: {', '.join(self._handlers)}"
            ))

        try:
            args = args_model_for(name).model_validate(invocation.args)
        except pydantic.ValidationError as e:
            return _failure(name, ValidationError(f"Invalid arguments for {name}: {e}"))

        try:
            verdict = self.repetition.check(name, invocation.args)
        except LoopDetectedError as e:
            return _failure(name, e)
        if verdict == RepetitionVerdict.WARNING:
            self.bus.emit(RepetitionWarning(
                task_id=self.task_id,
                tool_name=name,
                count=self.repetition.consecutive_count(name),
            ))

        denied = self._check_approval(name, args)
        if denied is not None:
            return denied

        try:
            with self._lock:
                return handler(args)
        except ToolTimeoutError as e:
            content = str(e)
            if e.partial_output:
                content += f"\n\nPartial output:\n{e.partial_output}"
            return ToolResult(tool_name=name, content=content, success=False, error=e.kind)
        except TaskLoopError as e:
            return _failure(name, e)
        except UnicodeDecodeError as e:
            return ToolResult(tool_name=name, content=f"File is not UTF-8 text: {e}", success=False, error="filesystem")
        except OSError as e:
            return ToolResult(tool_name=name, content=str(e), success=False, error="filesystem")

    def _check_approval(self, name: str, args) -> ToolResult | None:
        if name in ("write_file", "apply_diff"):
            kind = ApprovalKind.FILE_OPERATION
            description = f"{'Write' if name == 'write_file' else 'Edit'} file {args.path}"
            details = {"path": args.path, "operation": "write" if name == "write_file" else "edit"}
        elif name == "execute_command":
            kind = ApprovalKind.COMMAND
            description = f"Execute command: {args.command}"
            details = {"command": args.command}
        elif name in ("ask_followup", "attempt_completion"):
            return None
        else:
            kind = ApprovalKind.TOOL_USE
            description = f"Use tool {name}"
            details = {"tool": name, **args.model_dump(exclude_none=True)}

        result = self.approval.request_approval(kind, description, details)
        if result.approved:
            return None
        return _failure(name, ApprovalDeniedError(f"Operation not approved: {description}"))

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _read_file(self, args: ReadFileArgs) -> ToolResult:
        content = self.workspace.read_text(args.path)
        return ToolResult(tool_name="read_file", content=content, success=True)

    def _write_file(self, args: WriteFileArgs) -> ToolResult:
        self.workspace.write_text(args.path, args.content)
        return ToolResult(
            tool_name="write_file",
            content=f"Wrote {len(args.content)} characters to {args.path}",
            success=True,
        )

    def _execute_command(self, args: ExecuteCommandArgs) -> ToolResult:
        result = self.shell.run(args.command)
        return ToolResult(
            tool_name="execute_command",
            content=result.render(),
            success=result.success,
            error=None if result.success else "command_failed",
        )

    def _list_files(self, args: ListFilesArgs) -> ToolResult:
        entries = self.workspace.list_dir(args.path, recursive=args.recursive)
        lines = [f"{e.path}/" if e.is_dir else e.path for e in entries[:MAX_LIST_ENTRIES]]
        if len(entries) > MAX_LIST_ENTRIES:
            lines.append(f"... {len(entries) - MAX_LIST_ENTRIES} more entries")
        return ToolResult(
            tool_name="list_files",
            content="\n".join(lines) if lines else "(empty directory)",
            success=True,
        )

    def _search_files(self, args: SearchFilesArgs) -> ToolResult:
        try:
            pattern = re.compile(args.query)
        except re.error as e:
            raise ValidationError(f"Invalid search pattern {args.query!r}: {e}") from e

        matches: list[str] = []
        for full in self.workspace.iter_files(args.path):
            try:
                text = full.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = self.workspace.relative(full)
            for lineno, line in enumerate(text.splitlines(), start=1):
                if pattern.search(line):
                    matches.append(f"{rel}:{lineno}: {line.strip()}")
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        matches.append(f"... stopped after {MAX_SEARCH_MATCHES} matches")
                        return ToolResult(tool_name="search_files", content="\n".join(matches), success=True)

        return ToolResult(
            tool_name="search_files",
            content="\n".join(matches) if matches else f"No matches for {args.query!r}",
            success=True,
        )

    def _apply_diff(self, args: ApplyDiffArgs) -> ToolResult:
        original = self.workspace.read_text(args.path)
        if args.diff is not None:
            blocks = parse_blocks(args.diff)
            updated = apply_blocks(original, blocks)
            applied = len(blocks)
        else:
            updated = apply_search_replace(original, args.search, args.replace)
            applied = 1
        self.workspace.write_text(args.path, updated)
        return ToolResult(
            tool_name="apply_diff",
            content=f"Applied {applied} change(s) to {args.path}",
            success=True,
        )

    def _ask_followup(self, args: AskFollowupArgs) -> ToolResult:
        response = self.asker.ask("followup", {"question": args.question})
        if not response.text:
            return ToolResult(
                tool_name="ask_followup",
                content="No answer was given.",
                success=False,
                error="no_response",
            )
        return ToolResult(tool_name="ask_followup", content=f"User answer: {response.text}", success=True)

    def _attempt_completion(self, args: AttemptCompletionArgs) -> ToolResult:
        return ToolResult(tool_name="attempt_completion", content=args.result, success=True)

    def _new_task(self, args: NewTaskArgs) -> ToolResult:
        result = self._subtask_runner(args.message, args.mode)
        return ToolResult(tool_name="new_task", content=f"Subtask result:\n{result}", success=True)


def _failure(tool_name: str, error: TaskLoopError) -> ToolResult:
    return ToolResult(tool_name=tool_name, content=str(error), success=False, error=error.kind)
