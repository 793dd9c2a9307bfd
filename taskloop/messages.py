"""
Append-only message log for a single task.

The only in-place edit allowed is patching a streaming message by id
(content and metadata); id, role and timestamp never change.
"""

from __future__ import annotations

import math
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Literal

from pydantic import BaseModel, Field

from taskloop.errors import NotFoundError, ValidationError

Role = Literal["user", "assistant", "system", "tool"]
ROLES: tuple[str, ...] = ("user", "assistant", "system", "tool")


class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attachments: list[str] | None = None
    metadata: dict[str, Any] | None = None


def estimate_tokens(messages: Iterable[Message]) -> int:
    """Character count / 4, rounded up per message."""
    return sum(math.ceil(len(m.content) / 4) for m in messages)


class MessageLog:
    def __init__(self):
        self._messages: list[Message] = []
        self._lock = threading.Lock()

    def append(
        self,
        role: str,
        content: str,
        attachments: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        if role not in ROLES:
            raise ValidationError(f"Unknown message role: {role!r}")
        message = Message(
            role=role,
            content=content,
            attachments=attachments,
            metadata=metadata,
        )
        with self._lock:
            self._messages.append(message)
        return message

    def patch(
        self,
        message_id: str,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Replace content and/or merge metadata of an existing message."""
        with self._lock:
            for index, existing in enumerate(self._messages):
                if existing.id != message_id:
                    continue
                updates: dict[str, Any] = {}
                if content is not None:
                    updates["content"] = content
                if metadata is not None:
                    updates["metadata"] = {**(existing.metadata or {}), **metadata}
                patched = existing.model_copy(update=updates)
                self._messages[index] = patched
                return patched
        raise NotFoundError(f"Message {message_id} not found")

    def all(self) -> list[Message]:
        with self._lock:
            return list(self._messages)

    def since(self, start: int) -> list[Message]:
        with self._lock:
            return list(self._messages[start:])

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
