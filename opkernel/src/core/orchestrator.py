from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .diagnostics import DiagnosticHandoff
from .dispatcher import Dispatcher
from .guardian import BudgetExceeded, BudgetGuardian
from .history import History, serialize_history
from .operations import describe_operation
from .planner import Planner
from .relevance import CatalogSelector, ScoredOperation, lexical_selector, select_operations
from .settings import KernelSettings
from .telemetry import Telemetry
from .types import (
    ClassifiedError,
    ExecutionState,
    OperationCall,
    OutcomeRecord,
    StepStatus,
    SubStepProgress,
    TaskDescriptor,
)


@dataclass
class RunToken:
    """Run/halt flag for one activation of a task.

    Each tick receives the token it was scheduled under and checks it after
    every suspension point.  Halting cancels the token; a token that has been
    replaced by a newer one no longer owns the orchestrator's state.
    """

    run_id: str
    active: bool = True

    def cancel(self) -> None:
        self.active = False


def _new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Orchestrator:
    """Cycle scheduler driving one task at a time.

    Scripted tasks execute ``task.script`` one step per tick.  Open-ended
    tasks ask the planner for the next operation(s) on every tick and
    dispatch them concurrently.  Ticks never overlap: they are driven by a
    single consumer coroutine, and the step debugger's manual ticks share the
    same re-entrancy guard.
    """

    dispatcher: Dispatcher
    planner: Planner | None = None
    guardian: BudgetGuardian | None = None
    settings: KernelSettings = field(default_factory=KernelSettings)
    telemetry: Telemetry | None = None
    diagnostics: DiagnosticHandoff | None = None
    catalog_selector: CatalogSelector | None = None

    _task: TaskDescriptor | None = field(init=False, default=None, repr=False)
    _state: ExecutionState = field(init=False, default=ExecutionState.IDLE, repr=False)
    _history: History = field(init=False, default_factory=History, repr=False)
    # step index -> position of that step's record in the history
    _step_positions: Dict[int, int] = field(init=False, default_factory=dict, repr=False)
    _active_operations: Tuple[ScoredOperation, ...] | None = field(init=False, default=None, repr=False)
    _tick_finished: asyncio.Event | None = field(init=False, default=None, repr=False)
    _last_run: Tuple[OutcomeRecord, ...] | None = field(init=False, default=None, repr=False)
    _statuses: List[StepStatus] = field(init=False, default_factory=list, repr=False)
    _step_index: int = field(init=False, default=0, repr=False)
    _iterations: int = field(init=False, default=0, repr=False)
    _token: RunToken | None = field(init=False, default=None, repr=False)
    _tick_in_progress: bool = field(init=False, default=False, repr=False)
    _driver: Optional["asyncio.Task[None]"] = field(init=False, default=None, repr=False)
    _halt_reason: str | None = field(init=False, default=None, repr=False)
    _sub_progress: SubStepProgress | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.guardian is None:
            self.guardian = self.dispatcher.guardian
        if self.telemetry is None:
            self.telemetry = self.dispatcher.telemetry
        if self.diagnostics is None:
            self.diagnostics = DiagnosticHandoff(
                self.dispatcher,
                operation=self.settings.diagnostic_operation,
                telemetry=self.telemetry,
            )
        if self.guardian is not None:
            self.guardian.add_trip_listener(self._on_budget_trip)
        self.dispatcher.progress_listener = self._set_sub_progress

    def close(self) -> None:
        """Stop the task and detach from the guardian and dispatcher."""

        self.stop("Orchestrator closed.")
        if self.guardian is not None:
            self.guardian.remove_trip_listener(self._on_budget_trip)
        if self.dispatcher.progress_listener == self._set_sub_progress:
            self.dispatcher.progress_listener = None

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            if self._token is not None:
                payload.setdefault("run_id", self._token.run_id)
            self.telemetry.emit(event, **payload)

    # -- read-only views -------------------------------------------------

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._token is not None and self._token.active

    @property
    def task(self) -> TaskDescriptor | None:
        return self._task

    @property
    def history(self) -> Tuple[OutcomeRecord, ...]:
        return self._history.snapshot()

    @property
    def last_run(self) -> Tuple[OutcomeRecord, ...] | None:
        return self._last_run

    @property
    def step_statuses(self) -> Tuple[StepStatus, ...]:
        return tuple(self._statuses)

    @property
    def current_step_index(self) -> int:
        return self._step_index

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def halt_reason(self) -> str | None:
        return self._halt_reason

    @property
    def sub_progress(self) -> SubStepProgress | None:
        return self._sub_progress

    @property
    def run_id(self) -> str | None:
        return self._token.run_id if self._token is not None else None

    @property
    def active_operations(self) -> Tuple[ScoredOperation, ...] | None:
        """Operations offered to the planner on the last tick, when a selection was made."""

        return self._active_operations

    def catalog(self) -> List[Dict[str, Any]]:
        return [describe_operation(definition) for definition in self.dispatcher.registry.list_all()]

    async def _planner_catalog(self, goal: str) -> List[Dict[str, Any]]:
        if self.settings.relevance_mode == "all":
            return self.catalog()
        selected = await select_operations(
            self.catalog_selector or lexical_selector,
            goal,
            self.dispatcher.registry.list_all(),
            top_k=self.settings.relevance_top_k,
            threshold=self.settings.relevance_threshold,
            always_include=(self.settings.terminal_operation,),
        )
        self._active_operations = tuple(selected)
        self._emit(
            "orchestrator.operations_selected",
            message=f"[INFO] Offering {len(selected)} relevant operations to the planner.",
            operations=[item.to_dict() for item in selected],
        )
        return [describe_operation(item.definition) for item in selected]

    def status(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "run_id": self.run_id,
            "state": self._state.value,
            "is_running": self.is_running,
            "scripted": bool(self._task and self._task.is_scripted),
            "goal": self._task.goal if self._task else None,
            "current_step_index": self._step_index,
            "step_statuses": [status.to_dict() for status in self._statuses],
            "iterations": self._iterations,
            "history_length": len(self._history),
            "halt_reason": self._halt_reason,
            "sub_progress": self._sub_progress.to_dict() if self._sub_progress else None,
            "active_operations": (
                [item.to_dict() for item in self._active_operations] if self._active_operations is not None else None
            ),
        }
        if self.guardian is not None:
            payload["guardian"] = self.guardian.snapshot()
        return payload

    # -- task lifecycle --------------------------------------------------

    async def start(
        self,
        task: TaskDescriptor,
        *,
        resume: bool = False,
        inject: OutcomeRecord | None = None,
    ) -> None:
        """Take ownership of ``task`` and schedule its first tick.

        With ``resume`` the history, step index and iteration counter of the
        previous activation are kept and ``inject`` (if given) is appended to
        the history before the first tick.
        """

        if not task.is_scripted and self.planner is None:
            raise ValueError("open-ended tasks require a planner")
        if self.is_running:
            self.stop("Replaced by a new task.")
        driver = self._driver
        if driver is not None and not driver.done():
            await driver

        previous = self._token
        run_id = previous.run_id if resume and previous is not None else _new_run_id()
        self._token = RunToken(run_id=run_id)
        if resume:
            self._emit("orchestrator.resumed", message="[INFO] Resuming task...")
            if inject is not None:
                self._history.append(inject)
            if task.is_scripted and len(self._statuses) != len(task.script or []):
                kept = self._statuses[: len(task.script or [])]
                self._statuses = kept + [StepStatus.pending()] * (len(task.script or []) - len(kept))
        else:
            self._history.clear()
            self._step_positions.clear()
            self._active_operations = None
            self._last_run = None
            self._iterations = 0
            self._step_index = 0
            self._statuses = [StepStatus.pending() for _ in task.script or []]
            self._emit("orchestrator.started", message="[INFO] Starting task...", goal=task.goal)

        self._task = task
        self._halt_reason = None
        self._sub_progress = None
        self._transition(ExecutionState.RUNNING)
        self._schedule()

    async def wait(self) -> None:
        """Return once the driver has stopped (halted or paused)."""

        while True:
            driver = self._driver
            if driver is None or driver.done():
                return
            await driver

    async def run(self, task: TaskDescriptor) -> Tuple[OutcomeRecord, ...]:
        await self.start(task)
        await self.wait()
        return self._last_run if self._last_run is not None else self._history.snapshot()

    def stop(self, reason: str | None = None) -> None:
        """Halt the current task; calling it again has no further effect."""

        self._halt(reason or "stopped by user.")

    # -- scheduling ------------------------------------------------------

    def _schedule(self) -> None:
        token = self._token
        if token is None or not token.active:
            return
        if self._driver is not None and not self._driver.done():
            return
        self._driver = asyncio.get_running_loop().create_task(self._drive(token))

    def _owns(self, token: RunToken) -> bool:
        return token is self._token

    def _should_continue(self, token: RunToken) -> bool:
        return self._owns(token) and token.active and self._state is ExecutionState.RUNNING

    async def _drive(self, token: RunToken) -> None:
        while self._should_continue(token):
            if self._tick_in_progress and self._tick_finished is not None:
                # a manual tick owns the guard; run again once it has finished
                await self._tick_finished.wait()
                continue
            await self._tick(token)
            # yield to the event loop between ticks
            await asyncio.sleep(0)

    async def _tick(self, token: RunToken, *, manual: bool = False) -> bool:
        if self._tick_in_progress or not self._owns(token) or not token.active:
            return False
        if not manual and self._state is not ExecutionState.RUNNING:
            return False
        task = self._task
        assert task is not None
        self._tick_in_progress = True
        finished = self._tick_finished = asyncio.Event()
        try:
            if task.is_scripted:
                await self._scripted_tick(token, task)
            else:
                await self._planner_tick(token, task)
        except BudgetExceeded as exc:
            self._on_budget_exceeded(token, exc)
        except Exception as exc:
            await self._on_cycle_failure(token, task, exc)
        finally:
            self._tick_in_progress = False
            finished.set()
        return True

    # -- scripted tasks --------------------------------------------------

    async def _scripted_tick(self, token: RunToken, task: TaskDescriptor) -> None:
        script = task.script or []
        index = self._step_index
        if index >= len(script):
            self._emit("orchestrator.script_finished", message="[INFO] Script finished.")
            self._transition(ExecutionState.FINISHED)
            self._halt("Script completed successfully.")
            return

        call = script[index]
        if task.context:
            call = call.with_arguments(task.context)
        self._emit(
            "orchestrator.step_started",
            message=f"[SCRIPT] Step {index + 1}/{len(script)}: Executing '{call.name}'",
            step_index=index,
            operation=call.name,
        )
        try:
            record = await self.dispatcher.dispatch(call)
        except BudgetExceeded as exc:
            if self._owns(token):
                self._record_step(index, OutcomeRecord(call=call, error=_budget_error(exc)))
                self._statuses[index] = StepStatus.failed(str(exc))
            raise

        if not self._owns(token):
            self._emit("orchestrator.outcome_discarded", message=f"Discarded outcome of '{call.name}' from a replaced task.")
            return
        self._record_step(index, record)

        if record.error is not None:
            self._statuses[index] = StepStatus.failed(record.error.message)
            self._sub_progress = None
            if not token.active:
                self._last_run = self._history.snapshot()
                return
            self._emit(
                "orchestrator.step_failed",
                message=f"[ERROR] Halting script due to error in '{call.name}'.",
                step_index=index,
                operation=call.name,
            )
            self._transition(ExecutionState.ERROR)
            await self._handoff(task, call, record)
            self._halt("Error during script execution.")
            return

        self._statuses[index] = StepStatus.completed(record.result)
        self._step_index = index + 1
        self._sub_progress = None
        self._emit("orchestrator.step_completed", message=f"[SCRIPT] Step {index + 1} completed.", step_index=index)
        if not token.active:
            self._last_run = self._history.snapshot()
            return
        if call.name == self.settings.terminal_operation:
            self._emit(
                "orchestrator.task_complete",
                message=f"[SUCCESS] Script reached '{self.settings.terminal_operation}'.",
            )
            self._transition(ExecutionState.FINISHED)
            self._halt("Script completed successfully.")

    # -- planner-driven tasks --------------------------------------------

    async def _planner_tick(self, token: RunToken, task: TaskDescriptor) -> None:
        if self._iterations >= self.settings.max_iterations:
            self._emit(
                "orchestrator.max_iterations",
                message=f"[WARN] Max iterations reached ({self.settings.max_iterations}).",
            )
            self._halt("Max iterations reached")
            return

        assert self.planner is not None
        if self.guardian is not None:
            self.guardian.check_and_record()
        history_text = serialize_history(
            self._history.snapshot(),
            result_limit=self.settings.history_result_limit,
            snippet_limit=self.settings.history_snippet_limit,
        )
        catalog = await self._planner_catalog(task.goal)
        proposal = await self.planner.propose(task.goal, history_text, catalog)
        if not self._owns(token) or not token.active:
            return

        if proposal.is_empty:
            message = (
                "The agent did not return an operation call. This may mean it is stuck or believes the task "
                f"is complete without calling '{self.settings.terminal_operation}'."
            )
            if proposal.raw_text.strip():
                message += f' The agent\'s response was: "{proposal.raw_text.strip()}"'
            self._emit("orchestrator.planner_empty", message=f"[SUPERVISOR] {message}")
            self._transition(ExecutionState.ERROR)
            await self._diagnose(task, f'Planning step for goal "{task.goal}"', message)
            self._halt("Agent did not provide a next action.")
            return

        completed: List[OutcomeRecord] = []
        budget_errors: List[BudgetExceeded] = []

        async def _dispatch(call: OperationCall) -> None:
            try:
                record = await self.dispatcher.dispatch(call)
            except BudgetExceeded as exc:
                budget_errors.append(exc)
                record = OutcomeRecord(call=call, error=_budget_error(exc))
            completed.append(record)

        outcomes = await asyncio.gather(
            *(_dispatch(call) for call in proposal.operations),
            return_exceptions=True,
        )
        if not self._owns(token):
            self._emit("orchestrator.outcome_discarded", message="Discarded outcomes from a replaced task.")
            return
        self._history.extend(completed)
        if budget_errors:
            raise budget_errors[0]
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        if not token.active:
            self._last_run = self._history.snapshot()
            return

        terminal = self.settings.terminal_operation
        if any(record.ok and record.name == terminal for record in completed):
            self._emit("orchestrator.task_complete", message="[SUCCESS] Task completed successfully.")
            self._transition(ExecutionState.FINISHED)
            self._halt("Task completed successfully")
            return

        failures = [record for record in completed if not record.ok]
        if failures:
            self._emit(
                "orchestrator.cycle_calls_failed",
                message="[SUPERVISOR] One or more operation calls failed. Halting task after diagnosis.",
                failed=[record.name for record in failures],
            )
            self._transition(ExecutionState.ERROR)
            await self._handoff(task, failures[0].call, failures[0], siblings=failures[1:])
            self._halt("Unrecoverable error during operation execution.")
            return

        self._iterations += 1

    # -- failure handling ------------------------------------------------

    async def _handoff(
        self,
        task: TaskDescriptor,
        call: OperationCall,
        record: OutcomeRecord,
        *,
        siblings: Sequence[OutcomeRecord] = (),
    ) -> None:
        assert record.error is not None
        message = record.error.message
        if siblings:
            message = "; ".join([message, *(r.error.message for r in siblings if r.error is not None)])
        source = record.error.source
        if source is None and record.definition is not None:
            source = record.definition.source_text
        await self._diagnose(task, call, message, source_body=source)

    async def _diagnose(
        self,
        task: TaskDescriptor,
        failed_action: OperationCall | str,
        message: str,
        *,
        source_body: str | None = None,
    ) -> None:
        assert self.diagnostics is not None
        await self.diagnostics.handoff(
            goal=task.goal,
            history=self._history.snapshot(),
            failed_action=failed_action,
            error_message=message,
            source_body=source_body,
        )

    def _on_budget_trip(self, message: str) -> None:
        if not self.is_running:
            return
        self._emit("orchestrator.budget_halt", message=f"[!!! BUDGET GUARDIAN !!!] {message}")
        self._transition(ExecutionState.ERROR)
        self._halt("Budget guardian triggered by high call velocity.")

    def _on_budget_exceeded(self, token: RunToken, exc: BudgetExceeded) -> None:
        if not self._owns(token):
            return
        self._emit("orchestrator.budget_exceeded", message=f"[ERROR] {exc}")
        if self._state is not ExecutionState.ERROR:
            self._transition(ExecutionState.ERROR)
        if token.active:
            self._halt("Budget guardian triggered by high call velocity.")
        else:
            self._last_run = self._history.snapshot()

    async def _on_cycle_failure(self, token: RunToken, task: TaskDescriptor, exc: Exception) -> None:
        if not self._owns(token):
            return
        message = str(exc) or exc.__class__.__name__
        self._emit(
            "orchestrator.cycle_failed",
            message=f"[ERROR] Agent task failed: {message}",
            error_type=exc.__class__.__name__,
        )
        self._transition(ExecutionState.ERROR)
        if task.is_scripted and self._step_index < len(self._statuses):
            self._statuses[self._step_index] = StepStatus.failed(message)
        self._sub_progress = None
        await self._diagnose(task, "Main orchestration cycle execution", message)
        self._halt("Critical agent error")

    # -- state helpers ---------------------------------------------------

    def _record_step(self, index: int, record: OutcomeRecord) -> None:
        """Store the outcome of script step ``index``.

        A step that already has a record (it is being executed again) replaces
        it in place; any other outcome is appended, so records injected on
        resume keep their position.
        """

        position = self._step_positions.get(index)
        if position is not None and position < len(self._history):
            self._history.record_at(position, record)
            return
        self._step_positions[index] = len(self._history)
        self._history.append(record)

    def _transition(self, state: ExecutionState) -> None:
        previous = self._state
        self._state = state
        if previous is not state:
            self._emit(
                "orchestrator.state_changed",
                message=f"State changed from {previous.value} to {state.value}.",
                previous=previous.value,
                state=state.value,
            )

    def _halt(self, reason: str) -> None:
        token = self._token
        if token is None or not token.active:
            return
        token.cancel()
        if self._state in (ExecutionState.RUNNING, ExecutionState.PAUSED):
            self._transition(ExecutionState.IDLE)
        self._sub_progress = None
        self._halt_reason = reason
        self._last_run = self._history.snapshot()
        self._emit("orchestrator.halted", message=f"[INFO] Task halted: {reason}", reason=reason)

    def _rearm(self) -> RunToken:
        token = self._token
        if token is None or not token.active:
            token = RunToken(run_id=token.run_id if token is not None else _new_run_id())
            self._token = token
            self._halt_reason = None
        return token

    def _set_sub_progress(self, progress: SubStepProgress | None) -> None:
        if self.is_running:
            self._sub_progress = progress


def _budget_error(exc: BudgetExceeded) -> ClassifiedError:
    return ClassifiedError.runtime(str(exc), reason="budget")


__all__ = ["Orchestrator", "RunToken"]
