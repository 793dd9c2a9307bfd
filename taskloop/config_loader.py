"""
Configuration loader for TASKLOOP.
Merges defaults with per-workspace .taskloop/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from taskloop.errors import ValidationError


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ModelConfig(_Section):
    name: str = "anthropic/claude-sonnet-4-20250514"
    context_window: int = Field(default=128_000, gt=0)
    max_output_tokens: int = Field(default=4096, ge=0)
    temperature: float = 0.2


class LimitsConfig(_Section):
    consecutive_mistake_limit: int = Field(default=3, ge=1)


class ContextConfig(_Section):
    auto_condense: bool = True
    condense_percent: int = Field(default=75, ge=1, le=100)
    overflow_retention_percent: int = Field(default=50, ge=1, le=100)


class RepetitionConfig(_Section):
    consecutive_limit: int = Field(default=5, ge=2)
    window_seconds: float = Field(default=300.0, gt=0)


DEFAULT_DANGEROUS_COMMAND_PATTERNS = [
    # recursive rm, however the flags are split or spelled
    r"\brm\b(?=.*\s(-[a-z]*r|--recursive))",
    r"sudo\s",
    r"del\s+/[sq]",
    r"format\s+[a-z]:",
    r"shutdown",
    r"reboot",
    r"kill\s+-9",
    r"pkill",
    r"chmod\s+(-R\s+)?777",
    r"chown\s+(-R\s+)?root",
    r"dd\s+if=",
    r"mkfs",
    r"fdisk",
    r"crontab\s+-r",
    r">\s*/dev/(sd|hd|nvme)",
    r"git\s+push\s+.*--force",
    r"git\s+reset\s+--hard",
]

DEFAULT_PROTECTED_PATH_PREFIXES = [
    "/etc/",
    "/bin/",
    "/sbin/",
    "/usr/bin/",
    "/usr/sbin/",
    "/boot/",
    "/sys/",
    "/proc/",
    "/dev/",
    "C:\\Windows\\",
    "C:\\Program Files\\",
    "C:\\System32\\",
]


class ApprovalConfig(_Section):
    enabled: bool = True
    always_approve_resubmit: bool = True
    max_auto_approvals: int = Field(default=50, ge=1)
    window_seconds: float = Field(default=3600.0, gt=0)
    commands_require_approval: bool = True
    file_operations_require_approval: bool = True
    history_size: int = Field(default=1000, ge=1)
    dangerous_command_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DANGEROUS_COMMAND_PATTERNS)
    )
    protected_path_prefixes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROTECTED_PATH_PREFIXES)
    )


class ToolsConfig(_Section):
    shell_timeout_seconds: float = Field(default=30.0, gt=0)
    max_output_bytes: int = Field(default=10 * 1024, gt=0)


class CheckpointConfig(_Section):
    enabled: bool = True
    directory: str = ".taskloop/checkpoints"
    max_age_days: float = Field(default=7.0, gt=0)


class SubtaskConfig(_Section):
    wait_timeout_seconds: float = Field(default=300.0, gt=0)
    max_workers: int = Field(default=4, ge=1)


class ErrorConfig(_Section):
    history_size: int = Field(default=100, ge=1)
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    default_retry_after_seconds: float = 60.0


class TaskLoopConfig(_Section):
    model: ModelConfig = Field(default_factory=ModelConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    repetition: RepetitionConfig = Field(default_factory=RepetitionConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    subtasks: SubtaskConfig = Field(default_factory=SubtaskConfig)
    errors: ErrorConfig = Field(default_factory=ErrorConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_TRUTHY = {"1", "true", "yes", "on"}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    model = os.environ.get("TASKLOOP_MODEL")
    if model:
        overrides["model"] = {"name": model}
    auto = os.environ.get("TASKLOOP_AUTO_APPROVE")
    if auto is not None:
        overrides["approval"] = {"enabled": auto.strip().lower() in _TRUTHY}
    return overrides


def load_config(workspace: Path | None = None) -> TaskLoopConfig:
    """
    Load config by merging:
      1. Built-in defaults (taskloop/config.yaml)
      2. Workspace-level overrides (<workspace>/.taskloop/config.yaml)
      3. Environment variable overrides (TASKLOOP_MODEL, TASKLOOP_AUTO_APPROVE)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if workspace:
        ws_config = workspace / ".taskloop" / "config.yaml"
        if ws_config.exists():
            with open(ws_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            if not isinstance(overrides, dict):
                raise ValidationError(f"{ws_config} must contain a mapping")
            base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides())

    try:
        return TaskLoopConfig(**base)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid configuration: {e}") from e


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
