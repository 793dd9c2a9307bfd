"""
TASKLOOP Workspace

File-system access rooted at the workspace path. Every tool path is
resolved against the root and rejected if it escapes it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from loguru import logger

from taskloop.errors import PathEscapeError, ValidationError

# VCS, dependency and build directories never snapshotted or searched
SKIP_DIRS = {
    ".git", ".hg", ".svn", ".taskloop", ".venv", "venv", "env",
    "node_modules", "target", "dist", "build", "__pycache__",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    ".next", ".nuxt", "coverage", ".idea", ".vscode",
}


def read_exact(path: Path) -> str:
    """Read UTF-8 text without newline translation."""
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def write_exact(path: Path, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def is_skipped(name: str) -> bool:
    """Hidden entries and known VCS/dependency/build directories."""
    return name in SKIP_DIRS or name.startswith(".")


@dataclass
class DirEntry:
    path: str
    is_dir: bool


class Workspace:
    """Rooted view of the workspace tree used by tools and checkpoints."""

    def __init__(self, root: Path):
        root = Path(root)
        if not root.exists() or not root.is_dir():
            raise ValidationError(f"Workspace root is not a directory: {root}")
        self.root = root.resolve()

    def resolve(self, path: str) -> Path:
        """Resolve a workspace-relative (or absolute) path, refusing escapes."""
        if path is None or not str(path).strip():
            raise ValidationError("Path must not be empty")
        if "\x00" in str(path):
            raise ValidationError(f"Path contains a NUL byte: {path!r}")
        try:
            candidate = (self.root / str(path).strip()).resolve()
        except ValueError as e:
            raise ValidationError(f"Invalid path {path!r}: {e}") from None
        if candidate != self.root and self.root not in candidate.parents:
            raise PathEscapeError(f"Path escapes workspace: {path}")
        return candidate

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self.root).as_posix()

    def read_text(self, path: str) -> str:
        return read_exact(self.resolve(path))

    def write_text(self, path: str, content: str) -> Path:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        write_exact(target, content)
        return target

    def write_bytes(self, path: str, data: bytes) -> Path:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return target

    def delete(self, path: str) -> None:
        self.resolve(path).unlink(missing_ok=True)

    def list_dir(self, path: str = ".", recursive: bool = False) -> list[DirEntry]:
        base = self.resolve(path)
        if not base.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")

        entries: list[DirEntry] = []
        if not recursive:
            for child in sorted(base.iterdir(), key=lambda p: p.name):
                entries.append(DirEntry(self.relative(child), child.is_dir()))
            return entries

        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if not is_skipped(d))
            current = Path(dirpath)
            for d in dirnames:
                entries.append(DirEntry(self.relative(current / d), True))
            for f in sorted(filenames):
                entries.append(DirEntry(self.relative(current / f), False))
        return entries

    def iter_files(self, path: str = ".") -> Iterator[Path]:
        """Walk regular files below ``path``, pruning skipped entries."""
        base = self.resolve(path)
        if base.is_file():
            yield base
            return
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if not is_skipped(d))
            for name in sorted(filenames):
                if is_skipped(name):
                    continue
                full = Path(dirpath) / name
                if full.is_file() and not full.is_symlink():
                    yield full

    def snapshot_bytes(self) -> dict[str, bytes]:
        """Map of relative path → raw content for every readable file."""
        files: dict[str, bytes] = {}
        for full in self.iter_files():
            try:
                files[self.relative(full)] = full.read_bytes()
            except OSError as e:
                logger.debug(f"[WORKSPACE] Skipping unreadable file {full}: {e}")
        return files
