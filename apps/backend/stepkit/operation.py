"""Uniform dispatch envelope shared by every action.

``Action.execute`` parses the inputs, runs the operation handler and records
timing, metrics and one audit entry per call. ``OperationError`` is observed
and re-raised untouched; anything else is translated to ``internal`` first.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stepkit.audit import AuditEntry, AuditLogger, NullAuditLogger
from stepkit.errors import ErrorKind, OperationCancelled, OperationError
from stepkit.metrics import MetricsSink

PATH_INPUT_KEYS = ("path", "output", "dest", "source", "template", "dir")


class Result(BaseModel):
    response: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Inputs(BaseModel):
    """Base for typed operation inputs; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


class NoInputs(Inputs):
    pass


class CancelToken:
    """Opaque cancellation signal handed to every operation."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to *timeout* seconds; True when cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str) -> None:
        if self.cancelled:
            raise cancelled_error(operation, self)


def cancelled_error(operation: str, token: CancelToken) -> OperationError:
    cause = OperationCancelled(token.reason or "cancelled")
    return OperationError(
        operation,
        ErrorKind.INTERNAL,
        f"{operation} cancelled: {token.reason or 'cancelled'}",
        cause=cause,
    )


@dataclass
class CallContext:
    cancel: CancelToken = field(default_factory=CancelToken)
    workflow_id: str = ""
    step_id: str = ""


Handler = Callable[[Any, CallContext], Result]


@dataclass(frozen=True)
class OperationHandler:
    handler: Handler
    inputs: type[Inputs] = NoInputs
    io: Literal["read", "write"] | None = None


def _describe_location(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "inputs"


def parse_inputs(model: type[Inputs], operation: str, inputs: Any) -> Any:
    if inputs is None:
        inputs = {}
    if not isinstance(inputs, Mapping):
        raise OperationError(
            operation,
            ErrorKind.VALIDATION,
            "inputs must be a mapping of parameter names to values",
        )
    try:
        return model.model_validate(dict(inputs))
    except ValidationError as exc:
        first = exc.errors()[0]
        key = _describe_location(tuple(first.get("loc", ())))
        error_type = str(first.get("type", ""))
        if error_type == "missing":
            message = f"missing required parameter: {key}"
            kind = ErrorKind.VALIDATION
        elif error_type == "extra_forbidden":
            message = f"unknown parameter: {key}"
            kind = ErrorKind.VALIDATION
        elif error_type.endswith("_type"):
            message = f"invalid type for parameter {key}: {first.get('msg', '')}"
            kind = ErrorKind.TYPE
        else:
            message = f"invalid parameter {key}: {first.get('msg', '')}"
            kind = ErrorKind.VALIDATION
        raise OperationError(
            operation,
            kind,
            message,
            suggestion=f"Check the '{key}' input of {operation}",
        ) from None


def best_effort_path(inputs: Any) -> str:
    if not isinstance(inputs, Mapping):
        return ""
    for key in PATH_INPUT_KEYS:
        value = inputs.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class Action:
    """Base class for built-in actions; subclasses fill in ``operations``."""

    name = "action"

    def __init__(
        self,
        *,
        audit: AuditLogger | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self.audit = audit if audit is not None else NullAuditLogger()
        self.metrics = metrics if metrics is not None else MetricsSink(self.name)
        self._operations: dict[str, OperationHandler] = self.operations()

    def operations(self) -> dict[str, OperationHandler]:
        raise NotImplementedError

    def operation_names(self) -> list[str]:
        return sorted(self._operations)

    def execute(
        self,
        operation: str,
        inputs: Mapping[str, Any] | None = None,
        context: CallContext | None = None,
    ) -> Result:
        context = context or CallContext()
        started = time.perf_counter()
        path = best_effort_path(inputs)
        entry = self._operations.get(operation)
        try:
            if entry is None:
                raise OperationError(
                    operation,
                    ErrorKind.VALIDATION,
                    f"unknown {self.name} operation: {operation}",
                    suggestion=f"Use one of: {', '.join(self.operation_names())}",
                )
            params = parse_inputs(entry.inputs, operation, inputs)
            result = entry.handler(params, context)
        except OperationError as exc:
            self._record_error(operation, path, started, exc, context)
            raise
        except Exception as exc:
            wrapped = OperationError(
                operation,
                ErrorKind.INTERNAL,
                f"unexpected failure in {self.name}.{operation}: {type(exc).__name__}",
                cause=exc,
            )
            self._record_error(operation, path, started, wrapped, context)
            raise wrapped from exc

        duration = time.perf_counter() - started
        size = result.metadata.get("bytes", 0)
        size = size if isinstance(size, int) and not isinstance(size, bool) else 0
        bytes_read = size if entry.io == "read" else 0
        bytes_written = size if entry.io == "write" else 0
        result.metadata.setdefault("operation", operation)
        result.metadata["duration_ms"] = round(duration * 1000.0, 3)
        self.metrics.record_success(
            operation, duration, bytes_read=bytes_read, bytes_written=bytes_written
        )
        self.audit.log(
            AuditEntry(
                action=self.name,
                operation=operation,
                path=path,
                result="success",
                duration=duration,
                bytes_read=bytes_read,
                bytes_written=bytes_written,
                workflow_id=context.workflow_id,
                step_id=context.step_id,
            )
        )
        return result

    def _record_error(
        self,
        operation: str,
        path: str,
        started: float,
        error: OperationError,
        context: CallContext,
    ) -> None:
        duration = time.perf_counter() - started
        self.metrics.record_error(operation, duration, error.kind.value)
        self.audit.log(
            AuditEntry(
                action=self.name,
                operation=operation,
                path=path,
                result="error",
                duration=duration,
                error_message=error.message or error.kind.value,
                workflow_id=context.workflow_id,
                step_id=context.step_id,
            )
        )
