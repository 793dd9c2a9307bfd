import pytest

from taskloop.config_loader import load_config, validate_api_keys
from taskloop.errors import ValidationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("TASKLOOP_MODEL", raising=False)
    monkeypatch.delenv("TASKLOOP_AUTO_APPROVE", raising=False)


def test_defaults():
    config = load_config()

    assert config.limits.consecutive_mistake_limit == 3
    assert config.repetition.consecutive_limit == 5
    assert config.repetition.window_seconds == 300
    assert config.tools.shell_timeout_seconds == 30
    assert config.context.condense_percent == 75
    assert config.context.overflow_retention_percent == 50
    assert config.model.max_output_tokens == 4096
    assert config.approval.max_auto_approvals == 50
    assert config.approval.history_size == 1000
    assert config.errors.history_size == 100
    assert config.subtasks.wait_timeout_seconds == 300
    assert config.checkpoints.directory == ".taskloop/checkpoints"
    assert any("sudo" in p for p in config.approval.dangerous_command_patterns)
    assert "/etc/" in config.approval.protected_path_prefixes


def test_workspace_overrides_merge(tmp_workspace):
    (tmp_workspace / ".taskloop").mkdir()
    (tmp_workspace / ".taskloop" / "config.yaml").write_text(
        "limits:\n  consecutive_mistake_limit: 7\napproval:\n  max_auto_approvals: 5\n"
    )

    config = load_config(tmp_workspace)

    assert config.limits.consecutive_mistake_limit == 7
    assert config.approval.max_auto_approvals == 5
    # Untouched siblings keep their defaults
    assert config.approval.window_seconds == 3600


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TASKLOOP_MODEL", "openai/gpt-4o")
    monkeypatch.setenv("TASKLOOP_AUTO_APPROVE", "false")

    config = load_config()

    assert config.model.name == "openai/gpt-4o"
    assert config.approval.enabled is False


def test_unknown_keys_are_rejected(tmp_workspace):
    (tmp_workspace / ".taskloop").mkdir()
    (tmp_workspace / ".taskloop" / "config.yaml").write_text("limits:\n  max_bananas: 3\n")

    with pytest.raises(ValidationError):
        load_config(tmp_workspace)


def test_validate_api_keys(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    keys = validate_api_keys()

    assert keys["ANTHROPIC_API_KEY"] is True
    assert keys["OPENAI_API_KEY"] is False
