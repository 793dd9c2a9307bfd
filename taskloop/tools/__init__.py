"""
Tool invocation and result types.

Each tool has one closed argument model; the registry maps the tool name
used on the wire to that model.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, model_validator

from taskloop.errors import UnknownToolError


@dataclass
class ToolInvocation:
    name: str
    args: dict[str, str] = field(default_factory=dict)


class ToolResult(BaseModel):
    tool_name: str
    content: str
    success: bool
    error: str | None = None  # TaskLoopError.kind on failure

    def render(self) -> str:
        status = "success" if self.success else f"error: {self.error}"
        return f"[{self.tool_name}] ({status})\n{self.content}"


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ReadFileArgs(_Args):
    path: str = Field(min_length=1)


class WriteFileArgs(_Args):
    path: str = Field(min_length=1)
    content: str


class ExecuteCommandArgs(_Args):
    command: str = Field(min_length=1)


class ListFilesArgs(_Args):
    path: str = "."
    recursive: bool = False


class SearchFilesArgs(_Args):
    query: str = Field(min_length=1)
    path: str = "."


class ApplyDiffArgs(_Args):
    path: str = Field(min_length=1)
    search: str | None = None
    replace: str | None = None
    diff: str | None = None

    @model_validator(mode="after")
    def check_one_form(self) -> "ApplyDiffArgs":
        if self.diff is not None:
            if self.search is not None or self.replace is not None:
                raise ValueError("give either diff or search/replace, not both")
            return self
        if self.search is None or self.replace is None:
            raise ValueError("search and replace are both required without diff")
        if not self.search:
            raise ValueError("search must not be empty")
        return self


class AskFollowupArgs(_Args):
    question: str = Field(min_length=1)


class AttemptCompletionArgs(_Args):
    result: str = Field(default="")


class NewTaskArgs(_Args):
    message: str = Field(min_length=1)
    mode: str | None = None


TOOL_ARGS: dict[str, type[_Args]] = {
    "read_file": ReadFileArgs,
    "write_file": WriteFileArgs,
    "execute_command": ExecuteCommandArgs,
    "list_files": ListFilesArgs,
    "search_files": SearchFilesArgs,
    "apply_diff": ApplyDiffArgs,
    "ask_followup": AskFollowupArgs,
    "attempt_completion": AttemptCompletionArgs,
    "new_task": NewTaskArgs,
}

# Arguments whose inner whitespace is significant
RAW_ARGS = frozenset({"content", "diff", "search", "replace"})

COMPLETION_TOOL = "attempt_completion"


def args_model_for(name: str) -> type[_Args]:
    try:
        return TOOL_ARGS[name]
    except KeyError:
        raise UnknownToolError(f"Unknown tool: {name}") from None
