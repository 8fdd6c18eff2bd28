"""
Tests for the mutation workflow.
"""

import asyncio
import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest

from fakes import START, FakeClock, FakeSource, RecordingExecutor, record
from nixhist.errors import (
    InvalidTransition,
    OperationInProgress,
    UndoPending,
)
from nixhist.executor import CommandExecutor
from nixhist.planner import MutationPlanner, ProfileLayout
from nixhist.registry import GenerationRegistry, MemoryPinStore
from nixhist.source import ProfileKind
from nixhist.workflow import MutationWorkflow, WorkflowState

SYSTEM = ProfileKind.SYSTEM
HOME = ProfileKind.HOME_MANAGER


def make_workflow(
    executor: Optional[CommandExecutor] = None,
    clock: Optional[FakeClock] = None,
    dry_run: bool = False,
    undo_window: timedelta = timedelta(seconds=10),
) -> MutationWorkflow:
    source = FakeSource(
        records={
            SYSTEM: [record(140), record(139), record(138, current=True), record(137)],
            HOME: [record(5, current=True), record(4)],
        }
    )
    registry = GenerationRegistry(source, MemoryPinStore({SYSTEM: [140]}))
    registry.load(SYSTEM)
    registry.load(HOME)
    planner = MutationPlanner(
        registry,
        {
            SYSTEM: ProfileLayout(Path("/nix/var/nix/profiles/system")),
            HOME: ProfileLayout(Path("/nix/var/nix/profiles/per-user/alice/home-manager")),
        },
    )
    return MutationWorkflow(
        registry,
        planner,
        executor or RecordingExecutor(),
        clock=clock or FakeClock(),
        dry_run=dry_run,
        undo_window=undo_window,
    )


def ids(workflow: MutationWorkflow, kind: ProfileKind = SYSTEM) -> list:
    return [g.id for g in workflow.registry.generations(kind)]


def test_delete_confirm_and_undo() -> None:
    """A confirmed deletion can be undone inside the window."""
    executor = RecordingExecutor()
    clock = FakeClock()
    workflow = make_workflow(executor, clock)
    plan = workflow.planner.plan_delete(SYSTEM, [139])

    assert workflow.request(plan) is None
    assert workflow.state is WorkflowState.AWAITING_CONFIRMATION

    outcome = asyncio.run(workflow.confirm())

    assert outcome.ok
    assert workflow.state is WorkflowState.IDLE
    assert workflow.history == [
        WorkflowState.IDLE,
        WorkflowState.AWAITING_CONFIRMATION,
        WorkflowState.EXECUTING,
        WorkflowState.SUCCEEDED,
        WorkflowState.IDLE,
    ]
    assert outcome.pending_undo is not None
    assert outcome.pending_undo.deadline == START + timedelta(seconds=10)
    assert ids(workflow) == [140, 138, 137]

    clock.advance(3)
    undo = asyncio.run(workflow.cancel_undo(SYSTEM))

    assert undo is not None
    assert undo.ok
    assert ids(workflow) == [140, 139, 138, 137]
    assert executor.rendered[-1] == (
        f"sudo ln -sfn /nix/store/{'a' * 32}-generation-139 "
        "/nix/var/nix/profiles/system-139-link"
    )
    assert workflow.pending_undo(SYSTEM) is None


def test_cancel_undo_after_deadline_is_a_no_op() -> None:
    executor = RecordingExecutor()
    clock = FakeClock()
    workflow = make_workflow(executor, clock)
    workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))
    asyncio.run(workflow.confirm())

    clock.advance(10)

    assert asyncio.run(workflow.cancel_undo(SYSTEM)) is None
    assert ids(workflow) == [140, 138, 137]
    assert len(executor.commands) == 1


def test_poll_expires_pending_undo() -> None:
    clock = FakeClock()
    workflow = make_workflow(clock=clock)
    workflow.request(workflow.planner.plan_delete(SYSTEM, [137]))
    asyncio.run(workflow.confirm())

    clock.advance(9.9)
    assert workflow.poll() == []
    assert workflow.pending_undo(SYSTEM) is not None

    clock.advance(0.1)
    expired = workflow.poll()
    assert [p.plan.target_ids for p in expired] == [(137,)]
    assert workflow.pending_undo(SYSTEM) is None


def test_cancel_undo_without_pending_deletion() -> None:
    workflow = make_workflow()

    assert asyncio.run(workflow.cancel_undo(SYSTEM)) is None


def test_second_delete_while_undo_pending() -> None:
    clock = FakeClock()
    workflow = make_workflow(clock=clock)
    workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))
    asyncio.run(workflow.confirm())

    with pytest.raises(UndoPending):
        workflow.request(workflow.planner.plan_delete(SYSTEM, [137]))

    # Other profiles have their own slot
    assert workflow.request(workflow.planner.plan_delete(HOME, [4])) is None
    workflow.cancel()

    clock.advance(10)
    assert workflow.request(workflow.planner.plan_delete(SYSTEM, [137])) is None


def test_cancel_discards_plan() -> None:
    executor = RecordingExecutor()
    workflow = make_workflow(executor)
    workflow.request(workflow.planner.plan_restore(SYSTEM, 139))

    workflow.cancel()

    assert workflow.state is WorkflowState.IDLE
    assert workflow.current_plan is None
    assert executor.commands == []
    assert workflow.registry.current(SYSTEM).id == 138


def test_cancel_and_confirm_require_awaiting_plan() -> None:
    workflow = make_workflow()

    with pytest.raises(InvalidTransition):
        workflow.cancel()
    with pytest.raises(InvalidTransition):
        asyncio.run(workflow.confirm())


def test_restore_marks_generation_current() -> None:
    executor = RecordingExecutor()
    workflow = make_workflow(executor)
    workflow.request(workflow.planner.plan_restore(SYSTEM, 139))

    outcome = asyncio.run(workflow.confirm())

    assert outcome.ok
    assert outcome.pending_undo is None
    assert len(executor.commands) == 2
    assert workflow.registry.current(SYSTEM).id == 139


def test_failure_stops_at_first_failing_command() -> None:
    executor = RecordingExecutor(fail_when=lambda c: "--switch-generation" in c.argv)
    workflow = make_workflow(executor)
    plan = workflow.planner.plan_restore(SYSTEM, 139)
    workflow.request(plan)

    outcome = asyncio.run(workflow.confirm())

    assert not outcome.ok
    assert outcome.error is not None
    assert outcome.error.failed_command == plan.commands[0].render()
    assert len(executor.commands) == 1
    assert len(outcome.error.partial_results) == 1
    assert WorkflowState.FAILED in workflow.history
    assert workflow.state is WorkflowState.IDLE
    assert workflow.registry.current(SYSTEM).id == 138


def test_failure_keeps_results_of_earlier_commands() -> None:
    executor = RecordingExecutor(fail_when=lambda c: "switch" in c.argv)
    workflow = make_workflow(executor)
    plan = workflow.planner.plan_restore(SYSTEM, 139)
    workflow.request(plan)

    outcome = asyncio.run(workflow.confirm())

    assert outcome.error is not None
    assert outcome.error.failed_command == plan.commands[1].render()
    assert [r.ok for r in outcome.results] == [True, False]


def test_failed_delete_leaves_no_pending_undo() -> None:
    executor = RecordingExecutor(fail_when=lambda c: True)
    workflow = make_workflow(executor)
    workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))

    outcome = asyncio.run(workflow.confirm())

    assert not outcome.ok
    assert outcome.pending_undo is None
    assert workflow.pending_undo(SYSTEM) is None
    assert 139 in ids(workflow)


def test_executor_exception_becomes_failed_outcome() -> None:
    executor = RecordingExecutor(raise_when=lambda c: True)
    workflow = make_workflow(executor)
    workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))

    outcome = asyncio.run(workflow.confirm())

    assert not outcome.ok
    assert "executor crashed" in outcome.error.message
    assert workflow.state is WorkflowState.IDLE


def test_dry_run_simulates_commands() -> None:
    executor = RecordingExecutor()
    workflow = make_workflow(executor, dry_run=True)
    plan = workflow.planner.plan_delete(SYSTEM, [139])
    workflow.request(plan)

    outcome = asyncio.run(workflow.confirm())

    assert outcome.ok
    assert outcome.simulated
    assert all(r.simulated for r in outcome.results)
    assert len(outcome.results) == len(plan.commands)
    assert outcome.pending_undo is None
    assert executor.commands == []
    assert 139 in ids(workflow)


def test_pin_is_applied_immediately() -> None:
    executor = RecordingExecutor()
    workflow = make_workflow(executor)

    outcome = workflow.request(workflow.planner.plan_pin_toggle(SYSTEM, 139))

    assert outcome is not None
    assert outcome.ok
    assert workflow.registry.get(SYSTEM, 139).is_pinned
    assert workflow.state is WorkflowState.IDLE
    assert executor.commands == []


def test_only_one_plan_at_a_time() -> None:
    workflow = make_workflow()
    workflow.request(workflow.planner.plan_restore(SYSTEM, 139))

    with pytest.raises(OperationInProgress):
        workflow.request(workflow.planner.plan_delete(HOME, [4]))
    with pytest.raises(OperationInProgress):
        workflow.request(workflow.planner.plan_pin_toggle(SYSTEM, 137))


def test_request_rejected_while_executing() -> None:
    """Requests made while commands run are rejected."""
    gate = threading.Event()
    executor = RecordingExecutor(gate=gate)
    workflow = make_workflow(executor)

    async def scenario() -> None:
        workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))
        task = asyncio.get_running_loop().create_task(workflow.confirm())
        await asyncio.to_thread(executor.started.wait, 5)

        assert workflow.state is WorkflowState.EXECUTING
        with pytest.raises(OperationInProgress):
            workflow.request(workflow.planner.plan_delete(HOME, [4]))

        gate.set()
        outcome = await task
        assert outcome.ok

    asyncio.run(scenario())
    assert ids(workflow, HOME) == [5, 4]


def test_undo_plans_cannot_be_requested() -> None:
    workflow = make_workflow()
    deleted = [workflow.registry.get(SYSTEM, 139)]

    with pytest.raises(ValueError):
        workflow.request(workflow.planner.plan_undo_delete(SYSTEM, deleted))


def test_undo_timer_expires_window() -> None:
    clock = FakeClock()
    workflow = make_workflow(clock=clock, undo_window=timedelta(milliseconds=10))

    async def scenario() -> None:
        workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))
        await workflow.confirm()
        task = workflow.start_undo_timer(SYSTEM)
        assert task is not None
        clock.advance(1)
        await task

    asyncio.run(scenario())
    assert workflow.pending_undo(SYSTEM) is None


def test_cancel_undo_stops_timer() -> None:
    clock = FakeClock()
    workflow = make_workflow(clock=clock)

    async def scenario() -> None:
        workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))
        await workflow.confirm()
        task = workflow.start_undo_timer(SYSTEM)
        outcome = await workflow.cancel_undo(SYSTEM)
        assert outcome is not None and outcome.ok
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert 139 in ids(workflow)


def test_reload_before_confirm_reports_stale_registry() -> None:
    executor = RecordingExecutor()
    workflow = make_workflow(executor)
    workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))

    source = workflow.registry.source
    source.records[SYSTEM] = [r for r in source.records[SYSTEM] if r["id"] != 139]
    workflow.registry.load(SYSTEM)

    outcome = asyncio.run(workflow.confirm())

    assert outcome.ok
    assert outcome.registry_stale
    assert "#139" in str(outcome.registry_error)
    assert [r.ok for r in outcome.results] == [True]
    assert outcome.pending_undo is None
    assert workflow.pending_undo(SYSTEM) is None
    assert workflow.state is WorkflowState.IDLE
    assert WorkflowState.SUCCEEDED in workflow.history


class BrokenBatchExecutor(RecordingExecutor):
    def execute(self, commands):
        raise RuntimeError("batch rejected")


def test_executor_batch_exception_becomes_failed_outcome() -> None:
    workflow = make_workflow(BrokenBatchExecutor())
    workflow.request(workflow.planner.plan_delete(SYSTEM, [139]))

    outcome = asyncio.run(workflow.confirm())

    assert not outcome.ok
    assert "batch rejected" in outcome.error.message
    assert outcome.error.failed_command is None
    assert 139 in ids(workflow)
    assert workflow.state is WorkflowState.IDLE
