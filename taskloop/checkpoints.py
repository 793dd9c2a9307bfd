"""
TASKLOOP Checkpoint Store

Content-hashed snapshots of the workspace tree. A checkpoint is written
once as ``<dir>/<id>.json`` and never edited afterwards; the only other
mutation is deleting it (explicitly or through age cleanup).

Two files are considered equal exactly when their SHA-256 hashes match.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Literal

import pydantic
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from taskloop.errors import NotFoundError, ValidationError
from taskloop.event_bus import (
    CheckpointCleanupCompleted,
    CheckpointCreated,
    CheckpointDeleted,
    CheckpointRestored,
    EventBus,
)
from taskloop.workspace import Workspace

DEFAULT_MAX_AGE = timedelta(days=7)


def content_hash(content: str | bytes) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class CheckpointFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    hash: str
    encoding: Literal["utf-8", "base64"] = "utf-8"

    @classmethod
    def from_bytes(cls, path: str, data: bytes) -> "CheckpointFile":
        """Text files are stored as-is, anything that is not UTF-8 as base64."""
        try:
            return cls(path=path, content=data.decode("utf-8"), hash=content_hash(data))
        except UnicodeDecodeError:
            return cls(
                path=path,
                content=base64.b64encode(data).decode("ascii"),
                hash=content_hash(data),
                encoding="base64",
            )

    def raw(self) -> bytes:
        if self.encoding == "base64":
            return base64.b64decode(self.content)
        return self.content.encode("utf-8")


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    description: str
    task_id: str
    workspace_root: str
    files: tuple[CheckpointFile, ...] = ()

    def hash_map(self) -> dict[str, CheckpointFile]:
        return {f.path: f for f in self.files}


class DiffEntry(BaseModel):
    path: str
    change: Literal["added", "modified", "deleted"]
    old_content: str | None = None
    new_content: str | None = None


class CheckpointDiff(BaseModel):
    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    details: list[DiffEntry] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)


def calculate_diff(before: dict[str, CheckpointFile], after: dict[str, CheckpointFile]) -> CheckpointDiff:
    """Path only in ``after`` → added, hash mismatch → modified, only in ``before`` → deleted."""
    diff = CheckpointDiff()

    for path in sorted(after):
        new = after[path]
        old = before.get(path)
        if old is None:
            diff.added.append(path)
            diff.details.append(DiffEntry(path=path, change="added", new_content=new.content))
        elif old.hash != new.hash:
            diff.modified.append(path)
            diff.details.append(DiffEntry(
                path=path, change="modified",
                old_content=old.content, new_content=new.content,
            ))

    for path in sorted(before):
        if path not in after:
            diff.deleted.append(path)
            diff.details.append(DiffEntry(path=path, change="deleted", old_content=before[path].content))

    return diff


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class CheckpointStore:
    """
    Snapshot / restore / diff / prune for one task's workspace.

    Pass ``task_id=None`` to browse every checkpoint in the directory
    (read-only use such as the CLI listing); creating then requires a task id.
    """

    def __init__(
        self,
        workspace: Workspace,
        task_id: str | None,
        directory: str = ".taskloop/checkpoints",
        bus: EventBus | None = None,
        lock: threading.RLock | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.workspace = workspace
        self.task_id = task_id
        self.checkpoints_dir = workspace.root / directory
        self._bus = bus
        self._lock = lock or threading.RLock()
        self._clock = clock
        self._checkpoints: dict[str, Checkpoint] = {}

        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        self._load_existing()

    # -- queries ------------------------------------------------------------

    def list(self) -> list[Checkpoint]:
        """All known checkpoints, newest first."""
        return sorted(self._checkpoints.values(), key=lambda c: c.timestamp, reverse=True)

    def get(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint {checkpoint_id} not found")
        return checkpoint

    # -- mutations ----------------------------------------------------------

    def create(self, description: str | None = None) -> str:
        if self.task_id is None:
            raise ValidationError("Creating a checkpoint requires a task id")
        if description is not None and not isinstance(description, str):
            raise ValidationError("Checkpoint description must be a string")

        with self._lock:
            timestamp = self._clock()
            files = tuple(
                CheckpointFile.from_bytes(path, data)
                for path, data in sorted(self.workspace.snapshot_bytes().items())
            )
            checkpoint = Checkpoint(
                id=str(uuid.uuid4()),
                timestamp=timestamp,
                description=description or f"Checkpoint {timestamp.isoformat()}",
                task_id=self.task_id,
                workspace_root=str(self.workspace.root),
                files=files,
            )
            self._persist(checkpoint)
            self._checkpoints[checkpoint.id] = checkpoint

        logger.info(f"[CHECKPOINT] Created {checkpoint.id} ({len(files)} files)")
        self._emit(CheckpointCreated(
            task_id=checkpoint.task_id,
            checkpoint_id=checkpoint.id,
            description=checkpoint.description,
            file_count=len(files),
        ))
        return checkpoint.id

    def restore(self, checkpoint_id: str) -> None:
        """Full replace: write every snapshot file, delete every file the snapshot lacks."""
        checkpoint = self.get(checkpoint_id)

        with self._lock:
            snapshot = checkpoint.hash_map()
            current = [self.workspace.relative(full) for full in self.workspace.iter_files()]

            for f in checkpoint.files:
                self.workspace.write_bytes(f.path, f.raw())

            removed = 0
            for path in current:
                if path not in snapshot:
                    self.workspace.delete(path)
                    removed += 1

        logger.info(
            f"[CHECKPOINT] Restored {checkpoint_id}: "
            f"{len(checkpoint.files)} written, {removed} removed"
        )
        self._emit(CheckpointRestored(
            task_id=checkpoint.task_id,
            checkpoint_id=checkpoint_id,
            written=len(checkpoint.files),
            removed=removed,
        ))

    def delete(self, checkpoint_id: str) -> None:
        checkpoint = self.get(checkpoint_id)
        with self._lock:
            self._record_path(checkpoint_id).unlink(missing_ok=True)
            self._checkpoints.pop(checkpoint_id, None)

        logger.info(f"[CHECKPOINT] Deleted {checkpoint_id}")
        self._emit(CheckpointDeleted(task_id=checkpoint.task_id, checkpoint_id=checkpoint_id))

    def cleanup(self, max_age: timedelta = DEFAULT_MAX_AGE) -> list[str]:
        """Delete every checkpoint older than ``max_age``; returns the deleted ids."""
        if max_age < timedelta(0):
            raise ValidationError("max_age must not be negative")

        now = self._clock()
        expired = [c.id for c in self._checkpoints.values() if now - c.timestamp > max_age]
        for checkpoint_id in expired:
            self.delete(checkpoint_id)

        self._emit(CheckpointCleanupCompleted(task_id=self.task_id or "*", deleted=len(expired)))
        return expired

    # -- diffs --------------------------------------------------------------

    def diff(self, from_id: str, to_id: str) -> CheckpointDiff:
        before = self.get(from_id)
        after = self.get(to_id)
        return calculate_diff(before.hash_map(), after.hash_map())

    def diff_with_current(self, checkpoint_id: str) -> CheckpointDiff:
        checkpoint = self.get(checkpoint_id)
        with self._lock:
            current = {
                path: CheckpointFile.from_bytes(path, data)
                for path, data in self.workspace.snapshot_bytes().items()
            }
        return calculate_diff(checkpoint.hash_map(), current)

    # -- persistence --------------------------------------------------------

    def _record_path(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / f"{checkpoint_id}.json"

    def _persist(self, checkpoint: Checkpoint) -> None:
        path = self._record_path(checkpoint.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def _load_existing(self) -> None:
        for record in sorted(self.checkpoints_dir.glob("*.json")):
            try:
                checkpoint = Checkpoint.model_validate(json.loads(record.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, pydantic.ValidationError) as e:
                logger.warning(f"[CHECKPOINT] Ignoring unreadable record {record.name}: {e}")
                continue
            if self.task_id is None or checkpoint.task_id == self.task_id:
                self._checkpoints[checkpoint.id] = checkpoint

    def _emit(self, event) -> None:
        if self._bus is not None:
            self._bus.emit(event)
