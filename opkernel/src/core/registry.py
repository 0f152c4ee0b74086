from __future__ import annotations

import re
from dataclasses import replace
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Any

from .operations import (
    ExecutionLocation,
    OperationDefinition,
    definition_from_mapping,
    describe_operation,
    normalise_definition,
)
from .operations.builtin import builtin_definitions


class OperationRegistry(Protocol):
    """Resolves operation names to definitions."""

    def lookup(self, name: str) -> Optional[OperationDefinition]:
        """Return the definition registered under ``name`` or ``None``."""

    def list_all(self) -> List[OperationDefinition]:
        """Return every registered definition."""


def machine_readable_id(name: str, existing: Iterable[str] = ()) -> str:
    """Derive a slug id from ``name`` that does not collide with ``existing``."""

    base = name.strip().lower()
    base = re.sub(r"[^a-z0-9\s_]", "", base)
    base = re.sub(r"\s+", "_", base)
    base = re.sub(r"_{2,}", "_", base)[:50]
    if not base:
        base = "unnamed_operation"
    taken = set(existing)
    candidate = base
    counter = 1
    while candidate in taken:
        candidate = f"{base}_{counter}"
        counter += 1
    return candidate


class InMemoryRegistry:
    """Registry backed by a dictionary.

    Local registrations always take precedence over remote catalog entries
    with the same name.
    """

    def __init__(
        self,
        definitions: Iterable[OperationDefinition] = (),
        *,
        include_builtins: bool = True,
    ) -> None:
        self._local: Dict[str, OperationDefinition] = {}
        self._remote: Dict[str, OperationDefinition] = {}
        self._lock = Lock()
        if include_builtins:
            for definition in builtin_definitions():
                self.register(definition)
        for definition in definitions:
            self.register(definition, replace_existing=True)

    def _ids(self) -> List[str]:
        return [d.id for d in [*self._local.values(), *self._remote.values()] if d.id]

    def register(self, definition: OperationDefinition, *, replace_existing: bool = False) -> OperationDefinition:
        definition = normalise_definition(definition)
        with self._lock:
            previous = self._local.get(definition.name)
            if previous is not None and not replace_existing:
                raise ValueError(f"Operation '{definition.name}' is already registered")
            if previous is not None:
                definition = replace(definition, id=previous.id, version=max(definition.version, previous.version + 1))
            elif not definition.id:
                definition = replace(definition, id=machine_readable_id(definition.name, self._ids()))
            self._local[definition.name] = definition
        return definition

    def register_many(self, payloads: Iterable[Mapping[str, Any]]) -> List[OperationDefinition]:
        return [self.register(definition_from_mapping(item), replace_existing=True) for item in payloads]

    def merge_remote(self, definitions: Iterable[OperationDefinition]) -> int:
        """Replace the remote catalog; returns how many entries are visible."""

        remote: Dict[str, OperationDefinition] = {}
        for definition in definitions:
            definition = normalise_definition(replace(definition, location=ExecutionLocation.REMOTE))
            remote[definition.name] = definition
        with self._lock:
            self._remote = remote
            return sum(1 for name in remote if name not in self._local)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._local.pop(name, None) is not None

    def lookup(self, name: str) -> Optional[OperationDefinition]:
        with self._lock:
            return self._local.get(name) or self._remote.get(name)

    def list_all(self) -> List[OperationDefinition]:
        with self._lock:
            merged = list(self._local.values())
            merged.extend(d for name, d in self._remote.items() if name not in self._local)
        return merged

    def catalog(self) -> List[Dict[str, Any]]:
        return [describe_operation(definition) for definition in self.list_all()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.lookup(name) is not None

    def __len__(self) -> int:
        return len(self.list_all())


__all__ = ["InMemoryRegistry", "OperationRegistry", "machine_readable_id"]
