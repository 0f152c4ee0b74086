"""Shared type definitions for the orchestration kernel."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from .operations import OperationDefinition


class ExecutionState(str, Enum):
    """Lifecycle of the task currently owned by the orchestrator."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"
    FINISHED = "finished"


class ErrorKind(str, Enum):
    COMPILATION = "compilation"
    RUNTIME = "runtime"


def _freeze(arguments: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(arguments or {}))


@dataclass(frozen=True)
class OperationCall:
    """Request to invoke a named operation with keyword arguments."""

    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("operation call requires a non-empty name")
        object.__setattr__(self, "arguments", _freeze(self.arguments))

    @classmethod
    def from_raw(cls, raw: Any) -> "OperationCall":
        """Normalise a mapping such as ``{"name": ..., "arguments": {...}}``."""

        if isinstance(raw, OperationCall):
            return raw
        if not isinstance(raw, Mapping):
            raise TypeError(f"cannot build an operation call from {type(raw).__name__}")
        name = raw.get("name")
        arguments = raw.get("arguments")
        if arguments is None:
            arguments = raw.get("args", {})
        if not isinstance(arguments, Mapping):
            raise TypeError("operation call arguments must be a mapping")
        return cls(name=str(name or ""), arguments=arguments)

    def with_arguments(self, extra: Mapping[str, Any]) -> "OperationCall":
        """Return a copy whose arguments are ``extra`` overlaid by this call's own."""

        merged = dict(extra)
        merged.update(self.arguments)
        return OperationCall(name=self.name, arguments=merged)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments)}


@dataclass(frozen=True)
class ClassifiedError:
    """Failure captured while dispatching a call.

    ``kind`` separates bodies that could not be built (``compilation``) from
    everything that failed afterwards (``runtime``).  ``reason`` narrows the
    runtime case down for callers that care, e.g. ``not_found`` or
    ``unparsable_response``.  ``source`` holds the offending body for
    compilation failures and is never shown to the planner.
    """

    kind: ErrorKind
    message: str
    reason: str = "raised"
    source: Optional[str] = field(default=None, repr=False)

    @classmethod
    def compilation(cls, message: str, *, source: str | None = None) -> "ClassifiedError":
        return cls(kind=ErrorKind.COMPILATION, message=message, reason="compilation", source=source)

    @classmethod
    def runtime(cls, message: str, *, reason: str = "raised") -> "ClassifiedError":
        return cls(kind=ErrorKind.RUNTIME, message=message, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "reason": self.reason, "message": self.message}


@dataclass(frozen=True)
class OutcomeRecord:
    """Result of dispatching exactly one :class:`OperationCall`."""

    call: OperationCall
    definition: Optional["OperationDefinition"] = None
    result: Any = None
    error: Optional[ClassifiedError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def name(self) -> str:
        return self.call.name

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"call": self.call.to_dict(), "ok": self.ok}
        if self.definition is not None:
            payload["location"] = self.definition.location.value
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        else:
            payload["result"] = _jsonable(self.result)
        return payload


def _jsonable(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return repr(value)


@dataclass(frozen=True)
class StepStatus:
    """Progress marker for one index of a scripted task."""

    status: str = "pending"
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def pending(cls) -> "StepStatus":
        return cls()

    @classmethod
    def completed(cls, result: Any) -> "StepStatus":
        return cls(status="completed", result=result)

    @classmethod
    def failed(cls, message: str) -> "StepStatus":
        return cls(status="error", error=message)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status}
        if self.status == "completed":
            payload["result"] = _jsonable(self.result)
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class SubStepProgress:
    """Progress reported by a running operation body."""

    text: str
    current: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "current": self.current, "total": self.total}


@dataclass
class TaskDescriptor:
    """The goal currently owned by the orchestrator."""

    goal: str
    script: Optional[List[OperationCall]] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.script is not None:
            self.script = [OperationCall.from_raw(item) for item in self.script]

    @property
    def is_scripted(self) -> bool:
        return self.script is not None

    @classmethod
    def scripted(
        cls,
        goal: str,
        script: Sequence[OperationCall | Mapping[str, Any]],
        *,
        context: Mapping[str, Any] | None = None,
    ) -> "TaskDescriptor":
        return cls(goal=goal, script=list(script), context=dict(context or {}))  # type: ignore[arg-type]

    @classmethod
    def open_ended(cls, goal: str, *, context: Mapping[str, Any] | None = None) -> "TaskDescriptor":
        return cls(goal=goal, script=None, context=dict(context or {}))


__all__ = [
    "ClassifiedError",
    "ErrorKind",
    "ExecutionState",
    "OperationCall",
    "OutcomeRecord",
    "StepStatus",
    "SubStepProgress",
    "TaskDescriptor",
]
