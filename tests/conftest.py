from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest

# Use litellm's bundled model cost map instead of fetching it over the network
# at import time; offline, the fetch fallback deadlocks under pytest.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from taskloop.config_loader import TaskLoopConfig
from taskloop.errors import ModelError
from taskloop.interaction import NO, AskResponse
from taskloop.router import TextDelta


class ManualClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider:
    """
    Replays canned replies. Each entry is a string (one text delta), a list
    of stream chunks, or an exception to raise when the stream is opened.
    """

    def __init__(self, replies: list[Any] | None = None):
        self.replies = list(replies or [])
        self.calls: list[dict[str, Any]] = []

    def generate(self, system_prompt: str, history: list[dict[str, str]], metadata: dict[str, Any]):
        self.calls.append({
            "system_prompt": system_prompt,
            "history": list(history),
            "metadata": dict(metadata),
        })
        if not self.replies:
            raise ModelError("script exhausted")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return iter([TextDelta(reply)])
        return iter(reply)


class ScriptedAsker:
    """Answers prompts from per-kind queues; falls back to ``default``."""

    def __init__(self, answers: dict[str, list[AskResponse]] | None = None, default: AskResponse | None = None):
        self.answers = {k: list(v) for k, v in (answers or {}).items()}
        self.default = default or AskResponse(response=NO)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def ask(self, prompt_kind: str, payload: dict[str, Any]) -> AskResponse:
        self.calls.append((prompt_kind, payload))
        queue = self.answers.get(prompt_kind)
        if queue:
            return queue.pop(0)
        return self.default

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]


@pytest.fixture
def tmp_workspace(tmp_path_factory: pytest.TempPathFactory) -> Path:
    # Neutral base dir: the default per-test tmp_path embeds the test name,
    # which leaks into prompts that include the workspace path.
    ws = tmp_path_factory.mktemp("ws") / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def config() -> TaskLoopConfig:
    return TaskLoopConfig()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def no_sleep():
    slept: list[float] = []
    return slept.append, slept


def completion(result: str = "done") -> str:
    return f"<attempt_completion><result>{result}</result></attempt_completion>"
