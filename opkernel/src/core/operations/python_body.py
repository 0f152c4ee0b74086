from __future__ import annotations

import textwrap
from functools import lru_cache
from typing import Any, Awaitable, Callable, Mapping

CompiledBody = Callable[[Mapping[str, Any], Any], Awaitable[Any]]

_ENTRYPOINT = "__operation__"


class OperationCompilationError(SyntaxError):
    """Raised when an operation's source body cannot be compiled."""

    def __init__(self, operation: str, message: str, *, source: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.source = source


def _wrap(source: str) -> str:
    code = textwrap.dedent(source).strip("\n")
    if not code.strip():
        code = "return None"
    return f"async def {_ENTRYPOINT}(args, runtime):\n" + textwrap.indent(code, "    ") + "\n"


@lru_cache(maxsize=256)
def _compile_cached(operation: str, source: str) -> Any:
    try:
        return compile(_wrap(source), f"<operation {operation}>", "exec")
    except SyntaxError as exc:
        detail = exc.msg or str(exc)
        if exc.lineno is not None:
            # line 1 is the generated signature
            detail = f"{detail} (line {max(exc.lineno - 1, 1)})"
        raise OperationCompilationError(operation, detail, source=source) from exc


def compile_body(operation: str, source: str) -> CompiledBody:
    """Turn Python source into an ``async (args, runtime)`` callable.

    The source is the body of the function: it sees ``args`` and ``runtime``
    and uses ``return`` to hand back its result.  Compiled code objects are
    cached per operation and source text.
    """

    code = _compile_cached(operation, source)
    namespace: dict[str, Any] = {"__name__": f"opkernel.operations.{operation}"}
    exec(code, namespace)
    return namespace[_ENTRYPOINT]


__all__ = ["CompiledBody", "OperationCompilationError", "compile_body"]
