"""
Exception hierarchy for TASKLOOP.

Every error carries a stable ``kind`` string. Tool failures put that
string into ``ToolResult.error``; the error handler records it in the
diagnostic history.
"""

from __future__ import annotations


class TaskLoopError(Exception):
    kind = "generic"


class ValidationError(TaskLoopError):
    """Malformed input to a public operation. Raised before any state change."""
    kind = "validation"


class NotFoundError(TaskLoopError):
    """Unknown checkpoint or subtask id."""
    kind = "not_found"


class AlreadyRunningError(TaskLoopError):
    kind = "already_running"


class NotRunningError(TaskLoopError):
    kind = "not_running"


class TaskDisposedError(TaskLoopError):
    kind = "disposed"


class UnknownToolError(TaskLoopError):
    kind = "unknown_tool"


class ToolTimeoutError(TaskLoopError):
    """A shell command or subtask wait exceeded its bound."""
    kind = "timeout"

    def __init__(self, message: str, partial_output: str = ""):
        super().__init__(message)
        self.partial_output = partial_output


class LoopDetectedError(TaskLoopError):
    kind = "loop_detected"

    def __init__(self, tool_name: str, count: int):
        super().__init__(
            f"Tool {tool_name} used {count} times consecutively with identical "
            "arguments - possible infinite loop detected"
        )
        self.tool_name = tool_name
        self.count = count


class PathEscapeError(TaskLoopError):
    """A tool path resolved outside the workspace root."""
    kind = "path_escape"


class ApprovalDeniedError(TaskLoopError):
    kind = "approval_denied"


class DiffApplyError(TaskLoopError):
    """A literal search/replace could not be applied cleanly."""
    kind = "diff_failed"


class SubtaskError(TaskLoopError):
    """A subtask ended without completing."""
    kind = "subtask_failed"


# ---------------------------------------------------------------------------
# Model collaborator failures
# ---------------------------------------------------------------------------

class ModelError(TaskLoopError):
    kind = "model"


class NetworkError(ModelError):
    kind = "network"


class RateLimitError(ModelError):
    kind = "rate_limit"

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthError(ModelError):
    kind = "auth"


class ContextWindowError(ModelError):
    kind = "context_window"
