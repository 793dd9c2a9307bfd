"""Shell execution rooted at the workspace, bounded by a timeout."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from taskloop.errors import ToolTimeoutError, ValidationError

DEFAULT_TIMEOUT = 30.0  # seconds
MAX_OUTPUT_BYTES = 10 * 1024


@dataclass
class ShellResult:
    command: str
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def render(self) -> str:
        out = f"Command: {self.command}\nExit code: {self.exit_code}\n\nOutput:\n{self.stdout}"
        if self.stderr:
            out += f"\nSTDERR:\n{self.stderr}"
        return out


def _truncate_output(output: str, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    """Truncate output to max_bytes."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    encoded = output.encode("utf-8", errors="replace")[:max_bytes]
    truncated = encoded.decode("utf-8", errors="replace")
    return truncated + "\n... [output truncated]"


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class ShellRunner:
    def __init__(
        self,
        cwd: Path,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ):
        self.cwd = Path(cwd)
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes

    def run(self, command: str, timeout_seconds: float | None = None) -> ShellResult:
        """
        Run ``command`` through /bin/sh in the workspace.

        On expiry the whole process group is killed and ToolTimeoutError is
        raised carrying whatever output was produced so far.
        """
        command = (command or "").strip()
        if not command:
            raise ValidationError("Command must not be empty")

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        logger.info(f"[SHELL] Executing: {command} (timeout {timeout}s)")

        start = time.monotonic()
        proc = subprocess.Popen(
            ["/bin/sh", "-c", command],
            cwd=self.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_group(proc)
            stdout, stderr = proc.communicate()
            partial = _truncate_output(_decode(stdout), self.max_output_bytes)
            partial_err = _truncate_output(_decode(stderr), self.max_output_bytes)
            if partial_err:
                partial = f"{partial}\nSTDERR:\n{partial_err}" if partial else f"STDERR:\n{partial_err}"
            logger.warning(f"[SHELL] Command timed out after {timeout}s: {command}")
            raise ToolTimeoutError(
                f"Command timed out after {timeout} seconds: {command}",
                partial_output=partial,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return ShellResult(
            command=command,
            stdout=_truncate_output(_decode(stdout), self.max_output_bytes),
            stderr=_truncate_output(_decode(stderr), self.max_output_bytes),
            exit_code=proc.returncode,
            duration_ms=elapsed_ms,
        )

    @staticmethod
    def _kill_group(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
