"""
Safe-mutation workflow for nixhist.

Drives mutation plans through confirmation, execution and the undo window
that follows a deletion:

    IDLE -> AWAITING_CONFIRMATION -> EXECUTING -> SUCCEEDED | FAILED -> IDLE

Only one plan can be awaiting confirmation or executing at a time, across
all profile kinds. Commands run one by one in a worker thread so that the
caller's event loop stays responsive; the first failing command stops the
plan. Failures are returned on the outcome, never raised.
"""

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from nixhist.errors import (
    ExecutionFailed,
    InvalidTransition,
    NixhistError,
    OperationInProgress,
    UndoPending,
)
from nixhist.executor import CommandExecutor, CommandResult
from nixhist.planner import Action, MutationPlan, MutationPlanner
from nixhist.registry import Generation, GenerationRegistry
from nixhist.source import ProfileKind

logger = logging.getLogger("nixhist.workflow")

UNDO_WINDOW = timedelta(seconds=10)


class WorkflowState(Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting confirmation"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Clock(abc.ABC):
    """Source of the current time, injectable for tests."""

    @abc.abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now()


@dataclass(frozen=True)
class PendingUndo:
    """A completed deletion that can still be reverted until ``deadline``."""

    plan: MutationPlan
    deleted: Tuple[Generation, ...]
    deadline: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.deadline

    def remaining(self, now: datetime) -> timedelta:
        return max(self.deadline - now, timedelta(0))


@dataclass(frozen=True)
class ExecutionOutcome:
    """What happened to a plan."""

    plan: MutationPlan
    results: Tuple[CommandResult, ...] = ()
    simulated: bool = False
    error: Optional[ExecutionFailed] = None
    pending_undo: Optional[PendingUndo] = None
    # Set when the commands succeeded but the registry could not follow them.
    registry_error: Optional[NixhistError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def registry_stale(self) -> bool:
        return self.registry_error is not None


class MutationWorkflow:
    """State machine that owns the command executor."""

    def __init__(
        self,
        registry: GenerationRegistry,
        planner: MutationPlanner,
        executor: CommandExecutor,
        clock: Optional[Clock] = None,
        dry_run: bool = False,
        undo_window: timedelta = UNDO_WINDOW,
    ):
        """
        Initialize the workflow.

        Args:
            registry: Registry that receives the effects of executed plans
            planner: Planner used to build the inverse of a deletion
            executor: Runs plan commands; shared, so used by one plan at a time
            clock: Clock for undo deadlines
            dry_run: Simulate every command instead of running it
            undo_window: How long a deletion can be undone
        """
        self.registry = registry
        self.planner = planner
        self.executor = executor
        self.clock = clock or SystemClock()
        self.dry_run = dry_run
        self.undo_window = undo_window

        self._state = WorkflowState.IDLE
        self._plan: Optional[MutationPlan] = None
        self._pending: Dict[ProfileKind, PendingUndo] = {}
        self._timers: Dict[ProfileKind, "asyncio.Task[None]"] = {}
        self.history: List[WorkflowState] = [WorkflowState.IDLE]

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def current_plan(self) -> Optional[MutationPlan]:
        return self._plan

    def _transition(self, state: WorkflowState) -> None:
        logger.debug(f"Workflow {self._state.value} -> {state.value}")
        self._state = state
        self.history.append(state)

    def _ensure_idle(self, operation: str) -> None:
        if self._state is not WorkflowState.IDLE:
            raise OperationInProgress(
                f"Cannot {operation}: another operation is {self._state.value}"
            )

    def request(self, plan: MutationPlan) -> Optional[ExecutionOutcome]:
        """
        Present a plan.

        Plans without commands (pin and unpin) are applied at once and their
        outcome returned. Any other plan waits for ``confirm`` or ``cancel``
        and None is returned.

        Raises:
            OperationInProgress: If another plan is awaiting confirmation or
                executing
            UndoPending: If a deletion is requested while an earlier deletion
                of the same profile can still be undone
        """
        if plan.action is Action.UNDO_DELETE:
            raise ValueError("Undo plans are run through cancel_undo")
        self._ensure_idle(plan.action.value)

        if not plan.requires_confirmation:
            return self.apply_pin(plan)

        if plan.action is Action.DELETE:
            pending = self.pending_undo(plan.profile_kind)
            if pending is not None:
                raise UndoPending(plan.profile_kind, pending.deadline)

        self._plan = plan
        self._transition(WorkflowState.AWAITING_CONFIRMATION)
        logger.info(f"Awaiting confirmation:\n{plan.preview_text}")
        return None

    def apply_pin(self, plan: MutationPlan) -> ExecutionOutcome:
        """Apply a pin or unpin plan synchronously."""
        if plan.action not in (Action.PIN, Action.UNPIN):
            raise ValueError(f"Not a pin plan: {plan.action.value}")
        pinned = plan.action is Action.PIN
        for gen_id in plan.target_ids:
            self.registry.set_pinned(plan.profile_kind, gen_id, pinned)
        return ExecutionOutcome(plan)

    def cancel(self) -> None:
        """Discard the plan awaiting confirmation. Nothing runs."""
        if self._state is not WorkflowState.AWAITING_CONFIRMATION:
            raise InvalidTransition(self._state.value, "cancel")
        logger.info(f"Cancelled {self._plan.action.value if self._plan else 'plan'}")
        self._plan = None
        self._transition(WorkflowState.IDLE)

    async def confirm(self) -> ExecutionOutcome:
        """
        Execute the plan awaiting confirmation.

        Raises:
            InvalidTransition: If no plan is awaiting confirmation
        """
        if self._state is not WorkflowState.AWAITING_CONFIRMATION or self._plan is None:
            raise InvalidTransition(self._state.value, "confirm")

        plan = self._plan
        self._transition(WorkflowState.EXECUTING)
        try:
            if self.dry_run:
                results = tuple(
                    CommandResult(
                        command, True, f"Dry run: would run {command.render()}", True
                    )
                    for command in plan.commands
                )
                self._transition(WorkflowState.SUCCEEDED)
                logger.info(f"Dry run: simulated {plan.action.value}")
                return ExecutionOutcome(plan, results, simulated=True)

            results, error = await self._dispatch(plan)
            if error is not None:
                self._transition(WorkflowState.FAILED)
                return ExecutionOutcome(plan, results, error=error)

            self._transition(WorkflowState.SUCCEEDED)
            try:
                pending = self._apply_effects(plan)
            except NixhistError as e:
                logger.error(
                    f"{plan.action.value} ran, but the registry no longer matches: {e}; "
                    "reload the profile"
                )
                return ExecutionOutcome(plan, results, registry_error=e)
            return ExecutionOutcome(plan, results, pending_undo=pending)
        finally:
            self._plan = None
            self._transition(WorkflowState.IDLE)

    async def _dispatch(
        self, plan: MutationPlan
    ) -> Tuple[Tuple[CommandResult, ...], Optional[ExecutionFailed]]:
        try:
            results = tuple(
                await asyncio.to_thread(self.executor.execute, plan.commands)
            )
        except Exception as e:
            logger.exception(f"Executor raised during {plan.action.value}")
            return (), ExecutionFailed(None, f"Executor error: {e}")

        failed = next((result for result in results if not result.ok), None)
        if failed is not None:
            logger.error(f"{plan.action.value} failed at: {failed.command.render()}")
            logger.error(failed.message)
            error = ExecutionFailed(failed.command.render(), failed.message, list(results))
            return results, error
        logger.info(f"{plan.action.value} of {plan.profile_kind} completed")
        return results, None

    def _apply_effects(self, plan: MutationPlan) -> Optional[PendingUndo]:
        kind = plan.profile_kind
        if plan.action is Action.RESTORE:
            self.registry.mark_current(kind, plan.target_ids[0])
            return None
        if plan.action is Action.DELETE:
            deleted = self.registry.remove(kind, plan.target_ids)
            pending = PendingUndo(plan, tuple(deleted), self.clock.now() + self.undo_window)
            self._pending[kind] = pending
            logger.info(
                f"Deleted {kind} generation(s); undo possible until "
                f"{pending.deadline:%H:%M:%S}"
            )
            return pending
        return None

    def poll(self) -> List[PendingUndo]:
        """
        Expire undo windows whose deadline has passed.

        Returns:
            The pending undos that just became final
        """
        now = self.clock.now()
        expired = []
        for kind, pending in list(self._pending.items()):
            if not pending.is_live(now):
                del self._pending[kind]
                self._cancel_timer(kind)
                logger.info(f"Deletion of {kind} generation(s) is final")
                expired.append(pending)
        return expired

    def pending_undo(self, profile_kind: ProfileKind) -> Optional[PendingUndo]:
        self.poll()
        return self._pending.get(profile_kind)

    async def cancel_undo(self, profile_kind: ProfileKind) -> Optional[ExecutionOutcome]:
        """
        Revert the last deletion of a profile if its window is still open.

        Whichever of this call and the deadline comes first wins: once the
        deadline has passed this returns None and changes nothing.

        Raises:
            OperationInProgress: If another plan is awaiting confirmation or
                executing
        """
        pending = self._pending.get(profile_kind)
        if pending is None:
            return None
        if not pending.is_live(self.clock.now()):
            self.poll()
            return None
        self._ensure_idle("undo deletion")

        # Claim the slot before the first suspension point.
        del self._pending[profile_kind]
        self._cancel_timer(profile_kind)

        try:
            plan = self.planner.plan_undo_delete(profile_kind, pending.deleted)
        except ValueError as e:
            logger.error(f"Cannot undo deletion: {e}")
            return ExecutionOutcome(pending.plan, error=ExecutionFailed(None, str(e)))

        self._transition(WorkflowState.EXECUTING)
        try:
            results, error = await self._dispatch(plan)
            if error is not None:
                self._transition(WorkflowState.FAILED)
                return ExecutionOutcome(plan, results, error=error)
            self._transition(WorkflowState.SUCCEEDED)
            self.registry.reinsert(profile_kind, pending.deleted)
            logger.info(f"Restored {profile_kind} generation(s) {list(plan.target_ids)}")
            return ExecutionOutcome(plan, results)
        finally:
            self._transition(WorkflowState.IDLE)

    def start_undo_timer(self, profile_kind: ProfileKind) -> Optional["asyncio.Task[None]"]:
        """
        Schedule expiry of a pending undo on the running event loop.

        The task is cancelled by ``cancel_undo``; ``poll`` stays the
        authority on whether the deadline has passed.
        """
        pending = self._pending.get(profile_kind)
        if pending is None:
            return None
        self._cancel_timer(profile_kind)
        delay = pending.remaining(self.clock.now()).total_seconds()
        task = asyncio.get_running_loop().create_task(self._expire_after(delay))
        self._timers[profile_kind] = task
        return task

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self.poll()

    def _cancel_timer(self, profile_kind: ProfileKind) -> None:
        task = self._timers.pop(profile_kind, None)
        if task is None or task.done() or task.get_loop().is_closed():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()
