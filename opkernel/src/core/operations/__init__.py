from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Sequence, Union


class ExecutionLocation(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


_LOCATION_ALIASES = {
    "local": ExecutionLocation.LOCAL,
    "client": ExecutionLocation.LOCAL,
    "remote": ExecutionLocation.REMOTE,
    "server": ExecutionLocation.REMOTE,
}

_PARAM_TYPES = {"string", "number", "integer", "boolean", "array", "object"}


def _normalise_location(value: Any) -> ExecutionLocation:
    if isinstance(value, ExecutionLocation):
        return value
    if value is None:
        return ExecutionLocation.LOCAL
    location = _LOCATION_ALIASES.get(str(value).strip().lower())
    if location is None:
        raise ValueError(f"Unknown execution location: {value}")
    return location


def _normalise_param_type(value: Any) -> str:
    kind = str(value or "string").strip().lower()
    if kind not in _PARAM_TYPES:
        raise ValueError(f"Unknown parameter type: {value}")
    return kind


OperationBody = Union[str, Callable[..., Any]]


@dataclass(frozen=True)
class ParamSpec:
    """Description of a named input accepted by an operation."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = True

    def to_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass(frozen=True)
class OperationDefinition:
    """A named unit of work resolvable through the registry.

    Local definitions carry a ``body``: either a Python callable or Python
    source text that is compiled on dispatch.  Remote definitions are executed
    by the remote execution service and usually have no body.
    """

    name: str
    location: ExecutionLocation = ExecutionLocation.LOCAL
    inputs: Sequence[ParamSpec] = field(default_factory=tuple)
    body: OperationBody | None = field(default=None, compare=False, repr=False)
    description: str = ""
    purpose: str | None = None
    version: int = 1
    metered: bool | None = None
    id: str | None = None

    @property
    def consumes_budget(self) -> bool:
        """Whether dispatching this operation is charged to the budget guardian."""

        if self.metered is not None:
            return self.metered
        return self.location is ExecutionLocation.REMOTE

    @property
    def source_text(self) -> str | None:
        return self.body if isinstance(self.body, str) else None

    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {param.name: param.to_schema() for param in self.inputs},
            "required": [param.name for param in self.inputs if param.required],
        }


def _normalise_inputs(inputs: Sequence[ParamSpec | Mapping[str, Any]] | None) -> tuple[ParamSpec, ...]:
    normalised = []
    for item in inputs or ():
        if isinstance(item, Mapping):
            item = ParamSpec(
                name=str(item.get("name", "")),
                type=item.get("type", "string"),
                description=str(item.get("description", "") or ""),
                required=bool(item.get("required", True)),
            )
        if not isinstance(item, ParamSpec):  # pragma: no cover
            raise TypeError("inputs must be ParamSpec instances or mappings")
        if not item.name:
            raise ValueError("parameter name must not be empty")
        normalised.append(replace(item, type=_normalise_param_type(item.type)))
    return tuple(normalised)


def normalise_definition(definition: OperationDefinition) -> OperationDefinition:
    name = str(definition.name).strip()
    if not name:
        raise ValueError("operation name must not be empty")
    location = _normalise_location(definition.location)
    if location is ExecutionLocation.LOCAL and definition.body is None:
        raise ValueError(f"Local operation '{name}' requires a body")
    return replace(
        definition,
        name=name,
        location=location,
        inputs=_normalise_inputs(definition.inputs),
        description=str(definition.description or "").strip() or name,
        version=int(definition.version),
    )


def definition_from_mapping(raw: Mapping[str, Any], *, location: Any = None) -> OperationDefinition:
    """Build a definition from a JSON-style payload.

    Both the snake_case field names used here and the camelCase catalog shape
    served by the remote execution service (``executionEnvironment``,
    ``implementationCode``, ``parameters``) are accepted.
    """

    if not isinstance(raw, Mapping):
        raise TypeError("operation definition payload must be a mapping")
    resolved_location = location
    if resolved_location is None:
        resolved_location = raw.get("location", raw.get("executionEnvironment"))
    body = raw.get("body", raw.get("implementation_code", raw.get("implementationCode")))
    metered = raw.get("metered")
    definition = OperationDefinition(
        name=str(raw.get("name", "")),
        location=_normalise_location(resolved_location),
        inputs=raw.get("inputs", raw.get("parameters")) or (),
        body=body,
        description=str(raw.get("description", "") or ""),
        purpose=raw.get("purpose"),
        version=int(raw.get("version", 1) or 1),
        metered=None if metered is None else bool(metered),
        id=raw.get("id"),
    )
    return normalise_definition(definition)


def describe_operation(definition: OperationDefinition) -> Dict[str, Any]:
    """Return the catalog entry the planner sees for ``definition``.

    Bodies are left out.
    """

    entry: Dict[str, Any] = {
        "name": definition.name,
        "description": definition.description,
        "location": definition.location.value,
        "input_schema": definition.input_schema(),
    }
    if definition.purpose:
        entry["purpose"] = definition.purpose
    return entry


__all__ = [
    "ExecutionLocation",
    "OperationBody",
    "OperationDefinition",
    "ParamSpec",
    "definition_from_mapping",
    "describe_operation",
    "normalise_definition",
]
