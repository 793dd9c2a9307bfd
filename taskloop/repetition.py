"""Runaway tool-call detection over a trailing time window."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger

from taskloop.errors import LoopDetectedError


class RepetitionVerdict(str, Enum):
    OK = "ok"
    WARNING = "warning"


@dataclass(frozen=True)
class _Entry:
    tool_name: str
    timestamp: float
    args_key: str


def _serialize_args(args: Any) -> str:
    return json.dumps(args, sort_keys=True, default=str)


class RepetitionDetector:
    """
    Keeps (tool name, timestamp, args) for the last ``window_seconds`` and
    inspects the most recent ``consecutive_limit`` entries on every call.

    Identical name and arguments across all of them raises LoopDetectedError;
    same name with differing arguments is only a warning.
    """

    def __init__(
        self,
        consecutive_limit: int = 5,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.consecutive_limit = consecutive_limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._history: list[_Entry] = []

    def check(self, tool_name: str, args: dict[str, Any]) -> RepetitionVerdict:
        now = self._clock()
        self._history.append(_Entry(tool_name, now, _serialize_args(args)))
        self._prune(now)

        recent = self._history[-self.consecutive_limit:]
        same_tool = [e for e in recent if e.tool_name == tool_name]
        if len(same_tool) < self.consecutive_limit:
            return RepetitionVerdict.OK

        if len({e.args_key for e in same_tool}) == 1:
            logger.warning(f"[REPEAT] Loop detected on {tool_name} ({len(same_tool)} identical calls)")
            raise LoopDetectedError(tool_name, len(same_tool))

        logger.info(f"[REPEAT] {tool_name} called {len(same_tool)} times in a row")
        return RepetitionVerdict.WARNING

    def consecutive_count(self, tool_name: str) -> int:
        count = 0
        for entry in reversed(self._history):
            if entry.tool_name != tool_name:
                break
            count += 1
        return count

    def reset(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        self._history = [e for e in self._history if e.timestamp > horizon]
