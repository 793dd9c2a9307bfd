import threading
import time

import pytest

from conftest import ScriptedAsker, ScriptedProvider, completion
from taskloop.config_loader import TaskLoopConfig
from taskloop.controller import TaskController
from taskloop.errors import NotFoundError, SubtaskError, ToolTimeoutError, ValidationError
from taskloop.event_bus import EventBus
from taskloop.router import TextDelta
from taskloop.subtasks import SubtaskCoordinator


class GatedProvider(ScriptedProvider):
    """Blocks every request until the gate opens."""

    def __init__(self, replies):
        super().__init__(replies)
        self.gate = threading.Event()

    def generate(self, system_prompt, history, metadata):
        self.gate.wait(timeout=5)
        return super().generate(system_prompt, history, metadata)


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_coordinator(tmp_workspace, events):
    made = []

    def make(provider, config=None, max_workers=4):
        bus = EventBus()
        bus.subscribe(events.append)
        child_config = config or TaskLoopConfig()

        def factory(mode):
            return TaskController(
                tmp_workspace,
                provider,
                config=child_config,
                asker=ScriptedAsker(),
                mode=mode,
                parent_id="parent",
                enable_checkpoints=False,
                allow_subtasks=False,
            )

        coordinator = SubtaskCoordinator("parent", bus, factory, max_workers=max_workers, wait_timeout_seconds=5)
        made.append(coordinator)
        return coordinator

    yield make
    for coordinator in made:
        coordinator.dispose()


def _wait_until_running(coordinator, subtask_id):
    deadline = time.monotonic() + 5
    while coordinator.status(subtask_id) != "running" and time.monotonic() < deadline:
        time.sleep(0.01)


def test_run_subtask_returns_the_result(make_coordinator, events):
    coordinator = make_coordinator(ScriptedProvider([completion("docs written")]))

    assert coordinator.run_subtask("Write docs", mode="docs") == "docs written"
    kinds = [e.kind for e in events]
    assert kinds == ["subtask_started", "subtask_completed"]
    assert events[1].result == "docs written"
    assert all(e.task_id == "parent" for e in events)


def test_start_returns_immediately_and_wait_times_out(make_coordinator):
    provider = GatedProvider([completion("late")])
    coordinator = make_coordinator(provider)

    subtask_id = coordinator.start_subtask("Slow job")
    assert subtask_id in coordinator.subtask_ids()

    with pytest.raises(ToolTimeoutError):
        coordinator.wait_for_subtask(subtask_id, timeout=0.05)

    provider.gate.set()
    outcome = coordinator.wait_for_subtask(subtask_id)
    assert outcome.completed
    assert outcome.result == "late"
    assert coordinator.status(subtask_id) == "stopped"


def test_aborted_child_is_reported(make_coordinator, events):
    provider = GatedProvider([[TextDelta("<list_files></list_files>")], completion()])
    coordinator = make_coordinator(provider)

    subtask_id = coordinator.start_subtask("Look around")
    _wait_until_running(coordinator, subtask_id)
    coordinator.abort_subtask(subtask_id)
    provider.gate.set()
    outcome = coordinator.wait_for_subtask(subtask_id)

    assert outcome.status.value == "aborted"
    assert events[-1].kind == "subtask_failed"
    assert events[-1].subtask_id == subtask_id


def test_waiting_on_a_subtask_cancelled_by_dispose(make_coordinator):
    provider = GatedProvider([completion("first")])
    coordinator = make_coordinator(provider, max_workers=1)
    running = coordinator.start_subtask("Occupy the only worker")
    queued = coordinator.start_subtask("Never gets a worker")
    _wait_until_running(coordinator, running)

    coordinator.dispose()
    provider.gate.set()

    with pytest.raises(SubtaskError, match="cancelled"):
        coordinator.wait_for_subtask(queued)


def test_run_subtask_raises_when_child_gives_up(make_coordinator):
    config = TaskLoopConfig(limits={"consecutive_mistake_limit": 1})
    coordinator = make_coordinator(ScriptedProvider(["no tools here"]), config)

    with pytest.raises(SubtaskError):
        coordinator.run_subtask("Do something")


def test_unknown_subtask(make_coordinator):
    coordinator = make_coordinator(ScriptedProvider([]))

    with pytest.raises(NotFoundError):
        coordinator.wait_for_subtask("missing")
    with pytest.raises(NotFoundError):
        coordinator.abort_subtask("missing")


def test_empty_message_is_rejected(make_coordinator):
    coordinator = make_coordinator(ScriptedProvider([]))

    with pytest.raises(ValidationError):
        coordinator.start_subtask("  ")
    assert coordinator.subtask_ids() == []
