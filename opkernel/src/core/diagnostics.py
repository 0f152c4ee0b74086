from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .dispatcher import Dispatcher
from .history import summarise_history
from .operations.builtin import DIAGNOSE_FAILURE
from .telemetry import Telemetry
from .types import OperationCall, OutcomeRecord


def describe_failed_action(failed: OperationCall | str) -> str:
    if isinstance(failed, OperationCall):
        try:
            args = json.dumps(dict(failed.arguments), default=str)
        except (TypeError, ValueError):
            args = "{}"
        return f'Operation call "{failed.name}" with args: {args}'
    return str(failed)


@dataclass
class DiagnosticHandoff:
    """Delegate failure analysis to the registered diagnostic operation.

    The handoff is advisory: its result is only logged and it never raises,
    so the orchestrator can always halt right after calling it.
    """

    dispatcher: Dispatcher
    operation: str = DIAGNOSE_FAILURE
    telemetry: Telemetry | None = None

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **payload)

    def build_context(
        self,
        *,
        goal: str,
        history: Sequence[OutcomeRecord],
        failed_action: OperationCall | str,
        error_message: str,
        source_body: str | None = None,
    ) -> Dict[str, Any]:
        available = [
            {"name": definition.name, "description": definition.description}
            for definition in self.dispatcher.registry.list_all()
        ]
        context: Dict[str, Any] = {
            "goal": goal,
            "serializedHistory": summarise_history(history),
            "failedOperation": describe_failed_action(failed_action),
            "errorMessage": error_message,
            "availableOperations": available,
        }
        if source_body:
            context["failedOperationSourceBody"] = source_body
        return context

    async def handoff(
        self,
        *,
        goal: str,
        history: Sequence[OutcomeRecord],
        failed_action: OperationCall | str,
        error_message: str,
        source_body: str | None = None,
    ) -> Optional[OutcomeRecord]:
        self._emit(
            "diagnostics.started",
            message=f"[SUPERVISOR] Anomaly detected. Initiating diagnostic protocol for error: {error_message}",
        )
        if self.dispatcher.registry.lookup(self.operation) is None:
            self._emit(
                "diagnostics.unavailable",
                message=f"[SUPERVISOR] Diagnostic operation '{self.operation}' not found. Cannot perform root cause analysis.",
            )
            return None
        try:
            context = self.build_context(
                goal=goal,
                history=history,
                failed_action=failed_action,
                error_message=error_message,
                source_body=source_body,
            )
            record = await self.dispatcher.dispatch(
                OperationCall(name=self.operation, arguments=context),
                caller="supervisor",
            )
        except Exception as exc:
            self._emit(
                "diagnostics.crashed",
                message=f"[SUPERVISOR] The diagnostic operation itself failed. Error: {exc}",
            )
            return None
        if record.error is not None:
            self._emit(
                "diagnostics.failed",
                message=f"[SUPERVISOR] Diagnostic operation failed to execute: {record.error.message}",
            )
        else:
            analysis = record.result.get("analysis", record.result) if isinstance(record.result, dict) else record.result
            self._emit(
                "diagnostics.completed",
                message=f"[SUPERVISOR] Diagnostic complete. Analysis: {json.dumps(analysis, default=str)}",
                analysis=analysis,
            )
        return record


__all__ = ["DiagnosticHandoff", "describe_failed_action"]
