from __future__ import annotations

from dataclasses import dataclass

from .orchestrator import Orchestrator
from .types import ExecutionState, StepStatus


class DebuggerError(RuntimeError):
    """Raised when a debugger control is not valid in the current state."""


@dataclass
class StepDebugger:
    """Manual controls over a scripted task.

    Controls never interrupt an in-flight tick.  ``step_forward`` shares the
    orchestrator's tick guard, so it is a no-op while another tick runs.
    """

    orchestrator: Orchestrator

    def _require_script(self, action: str) -> None:
        task = self.orchestrator.task
        if task is None or not task.is_scripted:
            raise DebuggerError(f"Cannot {action}: no scripted task is loaded.")

    def _require_state(self, action: str, *allowed: ExecutionState) -> None:
        state = self.orchestrator.state
        if state not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise DebuggerError(f"Cannot {action} while {state.value}; expected one of: {names}.")

    def pause(self) -> None:
        self._require_script("pause")
        self._require_state("pause", ExecutionState.RUNNING)
        orch = self.orchestrator
        orch._transition(ExecutionState.PAUSED)
        orch._emit("debugger.paused", message="[DEBUG] Execution paused.", step_index=orch.current_step_index)

    def resume(self) -> None:
        """Continue from Paused, or retry the failed step after an Error."""

        self._require_state("resume", ExecutionState.PAUSED, ExecutionState.ERROR)
        orch = self.orchestrator
        if orch.task is None:
            raise DebuggerError("Cannot resume: no task is loaded.")
        orch._rearm()
        orch._transition(ExecutionState.RUNNING)
        orch._emit("debugger.resumed", message="[DEBUG] Execution resumed.", step_index=orch.current_step_index)
        orch._schedule()

    async def step_forward(self) -> bool:
        """Execute exactly one step and remain paused.

        Returns ``False`` when a tick was already in progress and nothing ran.
        A ``resume`` issued while the step executes takes effect afterwards.
        """

        self._require_script("step forward")
        self._require_state("step forward", ExecutionState.PAUSED)
        orch = self.orchestrator
        token = orch._rearm()
        orch._emit(
            "debugger.step_forward",
            message=f"[DEBUG] Stepping forward to execute step {orch.current_step_index + 1}.",
            step_index=orch.current_step_index,
        )
        # manual ticks never move the task back to Running
        return await orch._tick(token, manual=True)

    def step_backward(self) -> None:
        self._require_script("step backward")
        self._require_state("step backward", ExecutionState.PAUSED, ExecutionState.ERROR)
        orch = self.orchestrator
        if orch._tick_in_progress:
            raise DebuggerError("Cannot step backward while a step is executing.")
        old_index = orch.current_step_index
        if old_index <= 0:
            raise DebuggerError("Cannot step backward from the first step.")
        new_index = old_index - 1
        if old_index < len(orch._statuses):
            orch._statuses[old_index] = StepStatus.pending()
        orch._statuses[new_index] = StepStatus.pending()
        orch._step_index = new_index
        orch._sub_progress = None
        orch._rearm()
        orch._transition(ExecutionState.PAUSED)
        orch._emit(
            "debugger.step_backward",
            message=f"[DEBUG] Stepped back to step {new_index + 1}.",
            step_index=new_index,
        )

    def run_from_step(self, index: int) -> None:
        """Reset every step from ``index`` onwards and run continuously from there."""

        self._require_script("run from step")
        self._require_state(
            "run from step",
            ExecutionState.PAUSED,
            ExecutionState.ERROR,
            ExecutionState.IDLE,
        )
        orch = self.orchestrator
        if orch._tick_in_progress:
            raise DebuggerError("Cannot run from step while a step is executing.")
        script = orch.task.script or []  # type: ignore[union-attr]
        if not 0 <= index < len(script):
            raise DebuggerError(f"Step index {index} is outside the script (0..{len(script) - 1}).")
        if any(status.is_pending for status in orch._statuses[:index]):
            raise DebuggerError(f"Cannot run from step {index + 1}: earlier steps have not been executed.")
        for position in range(index, len(orch._statuses)):
            orch._statuses[position] = StepStatus.pending()
        orch._step_index = index
        orch._sub_progress = None
        orch._rearm()
        orch._transition(ExecutionState.RUNNING)
        orch._emit("debugger.run_from_step", message=f"[DEBUG] Running from step {index + 1}.", step_index=index)
        orch._schedule()


__all__ = ["DebuggerError", "StepDebugger"]
