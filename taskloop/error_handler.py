"""
Deterministic failure classification and recovery for the task loop.

Exceptions are classified first by type (the ModelError family, OS
errors) and then by ordered substring rules over the message, first match
wins. Every handled error lands in a bounded diagnostic history.
"""

from __future__ import annotations

import re
import time
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from loguru import logger

from taskloop.config_loader import ErrorConfig
from taskloop.errors import AuthError, ContextWindowError, NetworkError, RateLimitError
from taskloop.event_bus import ErrorEvent, EventBus


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    FILESYSTEM = "filesystem"
    CONTEXT_WINDOW = "context_window"
    GENERIC = "generic"


class RecoveryAction(str, Enum):
    BACKOFF = "backoff"
    WAIT = "wait"
    SURFACE = "surface"
    MKDIR = "mkdir"
    CONDENSE = "condense"
    NONE = "none"


_NETWORK_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection refused",
    "connection reset",
    "timeout",
    "timed out",
    "enotfound",
    "econnreset",
    "temporarily unavailable",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "429",
    "too many requests",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "401",
    "invalid api key",
    "authentication",
)
_FILESYSTEM_PATTERNS: tuple[str, ...] = (
    "enoent",
    "eacces",
    "eperm",
    "eisdir",
    "enotdir",
    "no such file or directory",
)
_CONTEXT_WINDOW_PATTERNS: tuple[str, ...] = (
    "context window",
    "token limit",
    "maximum context length",
    "context length exceeded",
)

_RULES: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.NETWORK, _NETWORK_PATTERNS),
    (ErrorKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    (ErrorKind.AUTH, _AUTH_PATTERNS),
    (ErrorKind.FILESYSTEM, _FILESYSTEM_PATTERNS),
    (ErrorKind.CONTEXT_WINDOW, _CONTEXT_WINDOW_PATTERNS),
)

_RETRY_AFTER = re.compile(r"retry after (\d+(?:\.\d+)?)", re.IGNORECASE)

NETWORK_WINDOW_SECONDS = 5 * 60


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def classify(error: BaseException) -> ErrorKind:
    if isinstance(error, AuthError):
        return ErrorKind.AUTH
    if isinstance(error, RateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(error, NetworkError):
        return ErrorKind.NETWORK
    if isinstance(error, ContextWindowError):
        return ErrorKind.CONTEXT_WINDOW
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK
    if isinstance(error, OSError):
        return ErrorKind.FILESYSTEM

    haystack = str(error).lower()
    for kind, patterns in _RULES:
        if _first_match(haystack, patterns) is not None:
            return kind
    return ErrorKind.GENERIC


@dataclass(frozen=True)
class ErrorRecord:
    kind: ErrorKind
    error_type: str
    message: str
    operation: str | None
    timestamp: float


@dataclass
class Recovery:
    kind: ErrorKind
    action: RecoveryAction
    delay_seconds: float = 0.0
    recoverable: bool = True
    detail: str | None = None


class ErrorHandler:
    def __init__(
        self,
        config: ErrorConfig,
        workspace_root: Path | None = None,
        bus: EventBus | None = None,
        task_id: str = "",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.workspace_root = Path(workspace_root).resolve() if workspace_root else None
        self._bus = bus
        self._task_id = task_id
        self._sleep = sleep
        self._clock = clock
        self._history: deque[ErrorRecord] = deque(maxlen=config.history_size)

    def handle(self, error: BaseException, operation: str | None = None) -> Recovery:
        """Record ``error``, perform its recovery step and report what was done."""
        kind = classify(error)
        self._history.append(ErrorRecord(
            kind=kind,
            error_type=type(error).__name__,
            message=str(error),
            operation=operation,
            timestamp=self._clock(),
        ))

        recovery = self._recover(kind, error)
        logger.warning(
            f"[ERRORS] {kind.value} during {operation or 'iteration'}: {error} "
            f"→ {recovery.action.value}"
            + (f" ({recovery.delay_seconds:.1f}s)" if recovery.delay_seconds else "")
        )
        if self._bus is not None:
            self._bus.emit(ErrorEvent(
                task_id=self._task_id,
                error_kind=kind.value,
                message=str(error),
                recoverable=recovery.recoverable,
            ))
        return recovery

    def _recover(self, kind: ErrorKind, error: BaseException) -> Recovery:
        if kind == ErrorKind.NETWORK:
            n = self.recent_count(ErrorKind.NETWORK, NETWORK_WINDOW_SECONDS)
            delay = min(self.config.base_backoff_seconds * 2 ** n, self.config.max_backoff_seconds)
            self._sleep(delay)
            return Recovery(kind, RecoveryAction.BACKOFF, delay_seconds=delay)

        if kind == ErrorKind.RATE_LIMIT:
            delay = self._retry_after(error)
            self._sleep(delay)
            return Recovery(kind, RecoveryAction.WAIT, delay_seconds=delay)

        if kind == ErrorKind.AUTH:
            return Recovery(kind, RecoveryAction.SURFACE, recoverable=False,
                            detail="API key may be invalid or expired")

        if kind == ErrorKind.FILESYSTEM:
            created = self._create_missing_parent(error)
            if created is not None:
                return Recovery(kind, RecoveryAction.MKDIR, detail=str(created))
            return Recovery(kind, RecoveryAction.NONE)

        if kind == ErrorKind.CONTEXT_WINDOW:
            return Recovery(kind, RecoveryAction.CONDENSE)

        return Recovery(kind, RecoveryAction.NONE)

    def _retry_after(self, error: BaseException) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return float(retry_after)
        match = _RETRY_AFTER.search(str(error))
        if match:
            return float(match.group(1))
        return self.config.default_retry_after_seconds

    def _create_missing_parent(self, error: BaseException) -> Path | None:
        if not isinstance(error, FileNotFoundError) or not error.filename or self.workspace_root is None:
            return None
        parent = (self.workspace_root / str(error.filename)).resolve().parent
        if parent != self.workspace_root and self.workspace_root not in parent.parents:
            logger.warning(f"[ERRORS] Not creating {parent}: outside the workspace")
            return None
        parent.mkdir(parents=True, exist_ok=True)
        return parent

    # ------------------------------------------------------------------

    def recent_count(self, kind: ErrorKind, window_seconds: float) -> int:
        horizon = self._clock() - window_seconds
        return sum(1 for r in self._history if r.kind == kind and r.timestamp >= horizon)

    def history(self) -> list[ErrorRecord]:
        return list(self._history)

    def stats(self) -> dict[str, int]:
        return dict(Counter(r.kind.value for r in self._history))

    def clear(self) -> None:
        self._history.clear()
