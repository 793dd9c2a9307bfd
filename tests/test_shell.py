import pytest

from conftest import ScriptedAsker
from taskloop.approval import ApprovalGate
from taskloop.config_loader import ApprovalConfig
from taskloop.errors import ToolTimeoutError, ValidationError
from taskloop.event_bus import EventBus
from taskloop.repetition import RepetitionDetector
from taskloop.tools import ToolInvocation
from taskloop.tools.dispatcher import ToolDispatcher
from taskloop.workspace import Workspace
from taskloop.workspace.shell import ShellRunner, _truncate_output


def test_runs_in_workspace(tmp_workspace):
    (tmp_workspace / "marker.txt").write_text("x")
    result = ShellRunner(tmp_workspace).run("ls")

    assert result.success
    assert "marker.txt" in result.stdout


def test_captures_stderr_and_exit_code(tmp_workspace):
    result = ShellRunner(tmp_workspace).run("echo oops >&2; exit 4")

    assert result.exit_code == 4
    assert result.stderr.strip() == "oops"
    assert "STDERR:\noops" in result.render()


def test_timeout_keeps_partial_output(tmp_workspace):
    runner = ShellRunner(tmp_workspace, timeout_seconds=0.5)

    with pytest.raises(ToolTimeoutError) as exc:
        runner.run("echo started; sleep 5")

    assert "started" in exc.value.partial_output


def test_timeout_through_dispatcher(tmp_workspace, clock):
    asker = ScriptedAsker()
    dispatcher = ToolDispatcher(
        workspace=Workspace(tmp_workspace),
        shell=ShellRunner(tmp_workspace, timeout_seconds=0.5),
        approval=ApprovalGate(ApprovalConfig(), asker, workspace_root=tmp_workspace, clock=clock),
        repetition=RepetitionDetector(clock=clock),
        asker=asker,
        bus=EventBus(),
        task_id="t",
    )

    result = dispatcher.execute(ToolInvocation("execute_command", {"command": "echo partial; sleep 5"}))

    assert not result.success
    assert result.error == "timeout"
    assert "Partial output:\npartial" in result.content


def test_empty_command(tmp_workspace):
    with pytest.raises(ValidationError):
        ShellRunner(tmp_workspace).run("   ")


def test_output_is_truncated():
    text = "a" * 100
    out = _truncate_output(text, max_bytes=10)

    assert out.startswith("a" * 10)
    assert out.endswith("[output truncated]")
    assert _truncate_output("short", max_bytes=10) == "short"
