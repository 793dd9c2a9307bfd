import pytest

from conftest import ScriptedAsker
from taskloop.approval import ApprovalGate, ApprovalKind
from taskloop.config_loader import ApprovalConfig
from taskloop.errors import ValidationError
from taskloop.event_bus import EventBus
from taskloop.interaction import NO, YES, AskResponse


def _gate(tmp_workspace, clock, asker=None, **overrides):
    config = ApprovalConfig(**overrides)
    return ApprovalGate(config, asker or ScriptedAsker(), workspace_root=tmp_workspace, clock=clock)


def test_safe_command_is_auto_approved(tmp_workspace, clock):
    asker = ScriptedAsker()
    gate = _gate(tmp_workspace, clock, asker)

    result = gate.request_approval("command", "run tests", {"command": "pytest -q"})

    assert result.approved and result.auto_approved
    assert asker.calls == []


@pytest.mark.parametrize("command", ["rm --force stale.log", "rm -f notes-r.txt", "npm run format"])
def test_non_recursive_removal_is_auto_approved(tmp_workspace, clock, command):
    gate = _gate(tmp_workspace, clock)

    result = gate.request_approval("command", f"run {command}", {"command": command})

    assert result.auto_approved


@pytest.mark.parametrize("command", [
    "rm -rf /",
    "rm -f -r /",
    "rm --recursive --force /",
    "rm -R build",
    "sudo apt install x",
    "git push origin main --force",
    "SUDO reboot",
    "chmod -R 777 .",
])
def test_dangerous_commands_go_to_a_human(tmp_workspace, clock, command):
    asker = ScriptedAsker({"command": [AskResponse(response=YES)]})
    gate = _gate(tmp_workspace, clock, asker)

    result = gate.request_approval(ApprovalKind.COMMAND, f"run {command}", {"command": command})

    assert result.approved
    assert not result.auto_approved
    assert asker.kinds() == ["command"]


def test_missing_command_fails_toward_approval(tmp_workspace, clock):
    asker = ScriptedAsker()
    gate = _gate(tmp_workspace, clock, asker)

    result = gate.request_approval("command", "run something", {})

    assert not result.approved
    assert asker.kinds() == ["command"]


def test_protected_path_write_needs_manual_approval_even_with_auto_approval(tmp_workspace, clock):
    asker = ScriptedAsker()
    gate = _gate(tmp_workspace, clock, asker, enabled=True)

    result = gate.request_approval("file_operation", "write hosts", {"path": "/etc/hosts", "operation": "write"})

    assert not result.approved
    assert not result.auto_approved
    assert asker.kinds() == ["file_operation"]


@pytest.mark.parametrize("path", ["../outside.txt", "src/../../escape.txt", "/tmp/elsewhere.txt"])
def test_paths_leaving_the_workspace_are_dangerous(tmp_workspace, clock, path):
    gate = _gate(tmp_workspace, clock)
    assert gate.is_protected_path(path)


def test_nul_byte_path_is_treated_as_protected(tmp_workspace, clock):
    gate = _gate(tmp_workspace, clock)
    assert gate.is_protected_path("notes\x00.txt")


def test_windows_prefixes_match_case_insensitively(clock):
    gate = ApprovalGate(ApprovalConfig(), ScriptedAsker(), clock=clock)
    assert gate.is_protected_path("c:/windows/system.ini")
    assert not gate.is_protected_path("docs/windows.md")


def test_workspace_file_is_auto_approved(tmp_workspace, clock):
    gate = _gate(tmp_workspace, clock)
    result = gate.request_approval("file_operation", "write", {"path": "src/app.py"})
    assert result.auto_approved


def test_disabled_gate_asks_for_everything(tmp_workspace, clock):
    asker = ScriptedAsker(default=AskResponse(response=YES))
    gate = _gate(tmp_workspace, clock, asker, enabled=False)

    gate.request_approval("tool_use", "read", {"path": "a"})
    gate.request_approval("command", "ls", {"command": "ls"})

    assert asker.kinds() == ["tool_use", "command"]
    assert gate.stats()["auto_approved"] == 0


def test_resubmission_policy(tmp_workspace, clock):
    asker = ScriptedAsker()
    auto = _gate(tmp_workspace, clock, asker, always_approve_resubmit=True)
    manual = _gate(tmp_workspace, clock, asker, always_approve_resubmit=False)

    assert auto.request_approval("api_request", "retry").auto_approved
    assert not manual.request_approval("api_request", "retry").approved
    assert asker.kinds() == ["api_request"]


def test_auto_approval_cap_prompts_and_yes_restarts_count(tmp_workspace, clock):
    asker = ScriptedAsker({"auto_approval_limit": [AskResponse(response=YES)]})
    gate = _gate(tmp_workspace, clock, asker, max_auto_approvals=3, window_seconds=60)

    for _ in range(3):
        assert gate.request_approval("tool_use", "read").auto_approved
    assert asker.calls == []

    # Fourth needs the continuation prompt
    assert gate.request_approval("tool_use", "read").auto_approved
    assert asker.kinds() == ["auto_approval_limit"]
    assert gate.auto_approvals_in_window == 1

    # History keeps every record
    assert len(gate.history()) == 4


def test_auto_approval_cap_no_blocks(tmp_workspace, clock):
    asker = ScriptedAsker({"auto_approval_limit": [AskResponse(response=NO)]})
    gate = _gate(tmp_workspace, clock, asker, max_auto_approvals=2, window_seconds=60)

    gate.request_approval("tool_use", "a")
    gate.request_approval("tool_use", "b")
    blocked = gate.request_approval("tool_use", "c")

    assert not blocked.approved
    assert "limit" in blocked.reason


def test_window_slides(tmp_workspace, clock):
    asker = ScriptedAsker()
    gate = _gate(tmp_workspace, clock, asker, max_auto_approvals=2, window_seconds=60)

    gate.request_approval("tool_use", "a")
    gate.request_approval("tool_use", "b")
    clock.advance(61)

    assert gate.request_approval("tool_use", "c").auto_approved
    assert asker.calls == []


def test_auto_approvals_never_exceed_cap_without_prompt(tmp_workspace, clock):
    asker = ScriptedAsker(default=AskResponse(response=NO))
    gate = _gate(tmp_workspace, clock, asker, max_auto_approvals=5, window_seconds=100)

    for _ in range(20):
        gate.request_approval("tool_use", "read")
        clock.advance(7)
        assert gate.auto_approvals_in_window <= 5


def test_history_is_bounded_and_records_are_frozen(tmp_workspace, clock):
    gate = _gate(tmp_workspace, clock, history_size=3, max_auto_approvals=100)
    for i in range(5):
        gate.request_approval("tool_use", f"op {i}")

    history = gate.history()
    assert [r.description for r in history] == ["op 2", "op 3", "op 4"]
    with pytest.raises(Exception):
        history[0].approved = False


def test_stats_and_clear(tmp_workspace, clock):
    asker = ScriptedAsker()
    gate = _gate(tmp_workspace, clock, asker)
    gate.request_approval("tool_use", "read")
    gate.request_approval("command", "dangerous", {"command": "sudo ls"})

    stats = gate.stats()
    assert stats == {
        "total": 2,
        "approved": 1,
        "denied": 1,
        "auto_approved": 1,
        "manual": 1,
        "by_kind": {"tool_use": 1, "command": 1},
    }

    gate.clear_history()
    assert gate.history() == []


def test_events_are_emitted(tmp_workspace, clock):
    bus = EventBus()
    received = []
    bus.subscribe(received.append)
    gate = ApprovalGate(ApprovalConfig(), ScriptedAsker(), workspace_root=tmp_workspace, bus=bus, task_id="t", clock=clock)

    gate.request_approval("tool_use", "read")

    assert received[0].kind == "approval_recorded"
    assert received[0].auto_approved


def test_validation(tmp_workspace, clock):
    gate = _gate(tmp_workspace, clock)
    with pytest.raises(ValidationError):
        gate.request_approval("teleport", "x")
    with pytest.raises(ValidationError):
        gate.request_approval("command", "  ")
    assert gate.history() == []
