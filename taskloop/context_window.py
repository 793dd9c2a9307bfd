"""
Context window management.

Decides when conversation history no longer fits the model's budget and
keeps the trailing fraction of messages. With condensation enabled the
discarded prefix is folded into one textual digest which is handed back
to the caller; it is never written into the message log.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Sequence

from loguru import logger

from taskloop.messages import Message, estimate_tokens

Summarizer = Callable[[Sequence[Message]], str]

_DIGEST_LINE_CHARS = 200
_DIGEST_MAX_CHARS = 2000


@dataclass
class CondenseResult:
    messages: list[Message]
    summary: str | None = None
    dropped: int = 0
    prev_tokens: int = 0
    new_tokens: int = 0

    @property
    def truncated(self) -> bool:
        return self.dropped > 0


def digest_messages(messages: Sequence[Message]) -> str:
    """Extractive digest: one clipped line per discarded message."""
    lines = [f"Summary of {len(messages)} earlier messages:"]
    for message in messages:
        text = " ".join(message.content.split())
        if len(text) > _DIGEST_LINE_CHARS:
            text = text[:_DIGEST_LINE_CHARS] + "..."
        lines.append(f"{message.role}: {text}")
    digest = "\n".join(lines)
    if len(digest) > _DIGEST_MAX_CHARS:
        digest = digest[:_DIGEST_MAX_CHARS] + "\n..."
    return digest


class ContextWindowManager:
    def __init__(
        self,
        context_window: int,
        max_output_tokens: int,
        auto_condense: bool = True,
        condense_percent: int = 75,
        overflow_retention_percent: int = 50,
        summarizer: Summarizer | None = None,
    ):
        self.context_window = context_window
        self.max_output_tokens = max_output_tokens
        self.auto_condense = auto_condense
        self.condense_percent = condense_percent
        self.overflow_retention_percent = overflow_retention_percent
        self._summarize = summarizer or digest_messages

    @property
    def available_tokens(self) -> int:
        return self.context_window - self.max_output_tokens

    def truncate_if_needed(
        self,
        messages: Sequence[Message],
        total_tokens: int | None = None,
    ) -> CondenseResult:
        """No-op while the estimate fits; otherwise keep the trailing condense_percent."""
        if total_tokens is None:
            total_tokens = estimate_tokens(messages)

        if total_tokens <= self.available_tokens:
            return CondenseResult(
                messages=list(messages),
                prev_tokens=total_tokens,
                new_tokens=total_tokens,
            )

        logger.info(
            f"[CONTEXT] {total_tokens} tokens > {self.available_tokens} available, "
            f"keeping last {self.condense_percent}%"
        )
        return self._retain(messages, self.condense_percent, total_tokens)

    def force_condense(self, messages: Sequence[Message]) -> CondenseResult:
        """Aggressive retention after the model reported a context overflow."""
        total_tokens = estimate_tokens(messages)
        logger.warning(
            f"[CONTEXT] Context window exceeded, forcing retention of "
            f"{self.overflow_retention_percent}%"
        )
        return self._retain(messages, self.overflow_retention_percent, total_tokens)

    def _retain(
        self,
        messages: Sequence[Message],
        percent: int,
        total_tokens: int,
    ) -> CondenseResult:
        keep = math.floor(len(messages) * percent / 100)
        # The newest message is always sent
        keep = max(keep, 1) if messages else 0
        retained = list(messages[len(messages) - keep:]) if keep else []
        discarded = list(messages[: len(messages) - keep])

        summary = None
        if self.auto_condense and discarded:
            summary = self._summarize(discarded)

        return CondenseResult(
            messages=retained,
            summary=summary,
            dropped=len(discarded),
            prev_tokens=total_tokens,
            new_tokens=estimate_tokens(retained),
        )
