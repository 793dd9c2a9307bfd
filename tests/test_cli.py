import json
import re

import pytest
from typer.testing import CliRunner

from conftest import ScriptedProvider, completion
from taskloop import __version__
from taskloop import cli
from taskloop.cli import app
from taskloop.errors import AuthError

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    monkeypatch.delenv("TASKLOOP_MODEL", raising=False)
    monkeypatch.delenv("TASKLOOP_AUTO_APPROVE", raising=False)


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"TASKLOOP v{__version__}" in result.stdout


def test_status():
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "API Keys" in result.stdout
    assert "Mistakes before guidance: 3" in result.stdout


def test_init_bootstraps_workspace(tmp_workspace):
    result = runner.invoke(app, ["init", str(tmp_workspace)])

    assert result.exit_code == 0
    assert (tmp_workspace / ".taskloop" / "config.yaml").exists()
    assert (tmp_workspace / ".taskloop" / "logs").is_dir()
    assert ".taskloop/checkpoints/" in (tmp_workspace / ".gitignore").read_text()

    # Running twice does not duplicate ignore entries
    runner.invoke(app, ["init", str(tmp_workspace)])
    assert (tmp_workspace / ".gitignore").read_text().count(".taskloop/logs/") == 1


def test_checkpoint_create_diff_restore(tmp_workspace):
    (tmp_workspace / "a.txt").write_text("1")

    created = runner.invoke(app, ["checkpoint", "create", "baseline", "-w", str(tmp_workspace)])
    assert created.exit_code == 0
    checkpoint_id = re.search(r"Checkpoint ([0-9a-f-]{36})", created.stdout).group(1)

    (tmp_workspace / "a.txt").write_text("2")
    (tmp_workspace / "b.txt").write_text("x")

    diff = runner.invoke(app, ["checkpoint", "diff", checkpoint_id, "-w", str(tmp_workspace)])
    assert diff.exit_code == 0
    assert "+ b.txt" in diff.stdout
    assert "~ a.txt" in diff.stdout

    listed = runner.invoke(app, ["checkpoint", "list", "-w", str(tmp_workspace)])
    assert "Checkpoints (1)" in listed.stdout

    restored = runner.invoke(app, ["checkpoint", "restore", checkpoint_id, "-w", str(tmp_workspace), "-t", "cli"])
    assert restored.exit_code == 0
    assert (tmp_workspace / "a.txt").read_text() == "1"
    assert not (tmp_workspace / "b.txt").exists()


def test_restore_unknown_checkpoint_fails(tmp_workspace):
    result = runner.invoke(app, ["checkpoint", "restore", "nope", "-w", str(tmp_workspace)])

    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_cleanup_with_nothing_to_delete(tmp_workspace):
    result = runner.invoke(app, ["checkpoint", "cleanup", "-w", str(tmp_workspace), "--max-age-days", "1"])

    assert result.exit_code == 0
    assert "Deleted 0 checkpoint(s)" in result.stdout


def test_run_drives_a_task_and_writes_the_audit_log(tmp_workspace, monkeypatch):
    provider = ScriptedProvider([
        "<write_file><path>hello.txt</path><content>hi</content></write_file>",
        completion("wrote hello.txt"),
    ])
    monkeypatch.setattr(cli, "LiteLLMProvider", lambda model_config: provider)

    result = runner.invoke(app, ["run", "Say hi in a file", "-w", str(tmp_workspace)])

    assert result.exit_code == 0, result.stdout
    assert "wrote hello.txt" in result.stdout
    assert "Status: completed" in result.stdout
    assert (tmp_workspace / "hello.txt").read_text() == "hi"

    logs = list((tmp_workspace / ".taskloop" / "logs").glob("*.jsonl"))
    assert len(logs) == 1
    kinds = [json.loads(line)["kind"] for line in logs[0].read_text().splitlines()]
    assert "tool_result" in kinds
    assert kinds[-1] == "status_changed"


def test_run_exits_nonzero_on_auth_failure(tmp_workspace, monkeypatch):
    provider = ScriptedProvider([AuthError("invalid api key")])
    monkeypatch.setattr(cli, "LiteLLMProvider", lambda model_config: provider)

    result = runner.invoke(app, ["run", "Anything", "-w", str(tmp_workspace)])

    assert result.exit_code == 1
    assert "Authentication failed" in result.stdout


def test_run_missing_workspace(tmp_path):
    result = runner.invoke(app, ["run", "Anything", "-w", str(tmp_path / "missing")])

    assert result.exit_code == 1
