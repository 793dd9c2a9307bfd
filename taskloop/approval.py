"""
TASKLOOP Approval Gate

Decides, per risky operation, whether it may run automatically or needs
an explicit human decision:

  - approval globally disabled            → always ask
  - kind needs manual approval AND the
    details match a danger pattern        → ask
  - otherwise                             → auto-approve, subject to the
                                            per-window auto-approval cap

Matching is conservative. Anything that cannot be inspected (missing
command, unresolvable path) is treated as dangerous.

Every outcome is appended to a bounded audit history and never edited.
"""

from __future__ import annotations

import re
import time
import uuid
from collections import Counter, deque
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from taskloop.config_loader import ApprovalConfig
from taskloop.errors import ValidationError
from taskloop.event_bus import ApprovalRecorded, EventBus
from taskloop.interaction import Asker


class ApprovalKind(str, Enum):
    COMMAND = "command"
    FILE_OPERATION = "file_operation"
    API_REQUEST = "api_request"
    TOOL_USE = "tool_use"


class ApprovalRequest(BaseModel):
    """One audit entry. Frozen: history entries are never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: ApprovalKind
    description: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: float
    approved: bool
    auto_approved: bool


class ApprovalResult(BaseModel):
    approved: bool
    auto_approved: bool = False
    reason: str | None = None
    request: ApprovalRequest


class ApprovalGate:
    def __init__(
        self,
        config: ApprovalConfig,
        asker: Asker,
        workspace_root: Path | None = None,
        bus: EventBus | None = None,
        task_id: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.asker = asker
        self.workspace_root = Path(workspace_root).resolve() if workspace_root else None
        self._bus = bus
        self._task_id = task_id
        self._clock = clock

        self._history: deque[ApprovalRequest] = deque(maxlen=config.history_size)
        # Timestamps of auto-approvals counted against the cap. Cleared when a
        # human agrees to keep automating; the audit history is untouched.
        self._auto_window: deque[float] = deque()

        self._command_patterns = [
            re.compile(p, re.IGNORECASE) for p in config.dangerous_command_patterns
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request_approval(
        self,
        kind: ApprovalKind | str,
        description: str,
        details: dict[str, Any] | None = None,
    ) -> ApprovalResult:
        try:
            kind = ApprovalKind(kind)
        except ValueError as e:
            raise ValidationError(f"Unknown approval kind: {kind!r}") from e
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("Approval description must be a non-empty string")
        details = dict(details or {})

        if self._needs_manual_approval(kind, details):
            response = self.asker.ask(kind.value, {"description": description, "details": details})
            approved = response.approved
            reason = None if approved else "Denied by user"
            return self._record(kind, description, details, approved, False, reason)

        if not self.check_auto_approval_limits():
            return self._record(
                kind, description, details, False, False,
                "Auto-approval limit reached and automation was not continued",
            )

        self._auto_window.append(self._clock())
        return self._record(kind, description, details, True, True, None)

    def check_auto_approval_limits(self) -> bool:
        """
        True when another auto-approval may be granted. At the cap the human
        is asked whether to keep automating; "yes" restarts the count.
        """
        count = self.auto_approvals_in_window
        if count < self.config.max_auto_approvals:
            return True

        logger.warning(
            f"[APPROVAL] {count} auto-approvals in the last "
            f"{self.config.window_seconds:.0f}s, asking to continue"
        )
        response = self.asker.ask(
            "auto_approval_limit",
            {"count": count, "window_seconds": self.config.window_seconds},
        )
        if response.approved:
            self._auto_window.clear()
            return True
        return False

    @property
    def auto_approvals_in_window(self) -> int:
        horizon = self._clock() - self.config.window_seconds
        while self._auto_window and self._auto_window[0] <= horizon:
            self._auto_window.popleft()
        return len(self._auto_window)

    def history(self) -> list[ApprovalRequest]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def stats(self) -> dict[str, Any]:
        records = list(self._history)
        approved = sum(1 for r in records if r.approved)
        auto = sum(1 for r in records if r.auto_approved)
        return {
            "total": len(records),
            "approved": approved,
            "denied": len(records) - approved,
            "auto_approved": auto,
            "manual": len(records) - auto,
            "by_kind": dict(Counter(r.kind.value for r in records)),
        }

    # ------------------------------------------------------------------
    # Danger assessment
    # ------------------------------------------------------------------

    def _needs_manual_approval(self, kind: ApprovalKind, details: dict[str, Any]) -> bool:
        if not self.config.enabled:
            return True
        if kind == ApprovalKind.COMMAND:
            return self.config.commands_require_approval and self.is_dangerous_command(details.get("command"))
        if kind == ApprovalKind.FILE_OPERATION:
            return self.config.file_operations_require_approval and self.is_protected_path(details.get("path"))
        if kind == ApprovalKind.API_REQUEST:
            return not self.config.always_approve_resubmit
        return False

    def is_dangerous_command(self, command: Any) -> bool:
        if not isinstance(command, str) or not command.strip():
            return True
        return any(p.search(command) for p in self._command_patterns)

    def is_protected_path(self, path: Any) -> bool:
        if not isinstance(path, str) or not path.strip():
            return True
        raw = path.strip()
        if "\x00" in raw:
            return True

        candidates = [raw]
        if self.workspace_root is not None:
            try:
                resolved = (self.workspace_root / raw).resolve()
            except (OSError, RuntimeError, ValueError):
                return True
            candidates.append(str(resolved))
            if resolved != self.workspace_root and self.workspace_root not in resolved.parents:
                # Absolute or ../ paths that land outside the workspace
                return True
        elif ".." in Path(raw).parts:
            return True

        for candidate in candidates:
            for prefix in self.config.protected_path_prefixes:
                if _matches_prefix(candidate, prefix):
                    return True
        return False

    # ------------------------------------------------------------------

    def _record(
        self,
        kind: ApprovalKind,
        description: str,
        details: dict[str, Any],
        approved: bool,
        auto_approved: bool,
        reason: str | None,
    ) -> ApprovalResult:
        request = ApprovalRequest(
            kind=kind,
            description=description,
            details=details,
            timestamp=self._clock(),
            approved=approved,
            auto_approved=auto_approved,
        )
        self._history.append(request)

        verdict = "auto-approved" if auto_approved else ("approved" if approved else "denied")
        logger.info(f"[APPROVAL] {kind.value} {verdict}: {description}")

        if self._bus is not None:
            self._bus.emit(ApprovalRecorded(
                task_id=self._task_id,
                request_id=request.id,
                request_kind=kind.value,
                description=description,
                approved=approved,
                auto_approved=auto_approved,
            ))
        return ApprovalResult(approved=approved, auto_approved=auto_approved, reason=reason, request=request)


def _matches_prefix(candidate: str, prefix: str) -> bool:
    # Windows prefixes compare case-insensitively with either separator
    if "\\" in prefix:
        c = candidate.replace("/", "\\").lower()
        p = prefix.lower()
    else:
        c, p = candidate, prefix
    return c.startswith(p) or c == p.rstrip("/\\")
