"""Run record schema and helpers.

A run record is the exported form of a task's history: the outcomes in
completion order, the per-step statuses of scripted tasks and the guardian
state at the time of export.  Records are Pydantic models so that exported
files are versioned and can be validated against a JSON schema.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .types import ClassifiedError, ErrorKind, OperationCall, OutcomeRecord

RECORD_SCHEMA_VERSION = "1.0.0"


class RecordedError(BaseModel):
    kind: ErrorKind
    reason: str = "raised"
    message: str


class RecordedOutcome(BaseModel):
    """Serialised representation of :class:`OutcomeRecord`."""

    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    ok: bool
    location: str | None = None
    result: Any = None
    error: RecordedError | None = None

    @classmethod
    def from_outcome(cls, record: OutcomeRecord) -> "RecordedOutcome":
        payload = record.to_dict()
        return cls(
            name=record.name,
            arguments=payload["call"]["arguments"],
            ok=record.ok,
            location=payload.get("location"),
            result=payload.get("result"),
            error=payload.get("error"),
        )

    def to_outcome(self) -> OutcomeRecord:
        error = None
        if self.error is not None:
            error = ClassifiedError(kind=self.error.kind, message=self.error.message, reason=self.error.reason)
        return OutcomeRecord(
            call=OperationCall(name=self.name, arguments=self.arguments),
            result=self.result,
            error=error,
        )


class RecordedStep(BaseModel):
    status: str
    result: Any = None
    error: str | None = None


class RecordedGuardian(BaseModel):
    tripped: bool
    velocity_limit: int
    window_seconds: float
    recent_calls: int = 0


class RunRecord(BaseModel):
    """Versioned record describing one orchestrator task."""

    model_config = ConfigDict(use_enum_values=True)

    schema_version: str = Field(default=RECORD_SCHEMA_VERSION)
    run_id: str
    created_at: str
    goal: str
    scripted: bool = False
    state: str
    halt_reason: str | None = None
    outcomes: Sequence[RecordedOutcome] = Field(default_factory=list)
    step_statuses: Sequence[RecordedStep] = Field(default_factory=list)
    guardian: RecordedGuardian | None = None

    @field_validator("created_at")
    @classmethod
    def _validate_created_at(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("created_at must be ISO-8601 formatted") from exc
        if parsed.tzinfo is None:
            raise ValueError("created_at must include timezone information")
        return value

    @classmethod
    def build(cls, orchestrator: Any) -> "RunRecord":
        """Capture the orchestrator's current task.

        The last-run snapshot is preferred over the live history so that a
        halted task exports exactly what it had when it stopped.
        """

        task = orchestrator.task
        records = orchestrator.last_run
        if records is None:
            records = orchestrator.history
        guardian = orchestrator.guardian.snapshot() if orchestrator.guardian is not None else None
        return cls(
            run_id=orchestrator.run_id or uuid.uuid4().hex,
            created_at=datetime.now(timezone.utc).isoformat(),
            goal=task.goal if task is not None else "",
            scripted=bool(task is not None and task.is_scripted),
            state=orchestrator.state.value,
            halt_reason=orchestrator.halt_reason,
            outcomes=[RecordedOutcome.from_outcome(record) for record in records],
            step_statuses=[status.to_dict() for status in orchestrator.step_statuses],
            guardian=guardian,
        )

    def to_outcomes(self) -> list[OutcomeRecord]:
        return [outcome.to_outcome() for outcome in self.outcomes]

    def summary(self) -> Dict[str, Any]:
        failures = [outcome for outcome in self.outcomes if not outcome.ok]
        reasons: Dict[str, int] = {}
        for outcome in failures:
            if outcome.error is not None:
                reasons[outcome.error.reason] = reasons.get(outcome.error.reason, 0) + 1
        completed = sum(1 for step in self.step_statuses if step.status == "completed")
        return {
            "run_id": self.run_id,
            "created_at": self.created_at,
            "goal": self.goal,
            "state": self.state,
            "halt_reason": self.halt_reason,
            "operations": len(self.outcomes),
            "successes": len(self.outcomes) - len(failures),
            "failures": len(failures),
            "failure_reasons": reasons,
            "steps": {"total": len(self.step_statuses), "completed": completed} if self.scripted else None,
            "guardian_tripped": self.guardian.tripped if self.guardian is not None else None,
        }

    def write(self, path: Path) -> None:
        """Persist the record to disk in canonical JSON form."""

        path.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")

    @classmethod
    def write_schema(cls, path: Path) -> None:
        path.write_text(json.dumps(load_record_schema(), indent=2), encoding="utf-8")


def load_record_schema() -> Dict[str, Any]:
    return RunRecord.model_json_schema()


__all__ = [
    "RECORD_SCHEMA_VERSION",
    "RecordedError",
    "RecordedGuardian",
    "RecordedOutcome",
    "RecordedStep",
    "RunRecord",
    "load_record_schema",
]
