from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AuditEntry(BaseModel):
    timestamp: str = Field(default_factory=lambda: iso(now_utc()))
    action: str = ""
    operation: str
    path: str = ""
    result: Literal["success", "error"]
    duration: float = Field(ge=0.0)
    bytes_read: int = 0
    bytes_written: int = 0
    error_message: str = ""
    workflow_id: str = ""
    step_id: str = ""

    def to_record(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "operation": self.operation,
            "path": self.path,
            "result": self.result,
            "duration": self.duration,
            "bytes_read": self.bytes_read,
            "bytes_written": self.bytes_written,
            "error": self.error_message,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
        }


class AuditLogger:
    """Sink for per-operation audit records. Implementations must be thread-safe."""

    def log(self, entry: AuditEntry) -> None:
        raise NotImplementedError


class NullAuditLogger(AuditLogger):
    def log(self, entry: AuditEntry) -> None:
        return None


class LoggingAuditLogger(AuditLogger):
    """Emit each entry as one JSON line on a stdlib logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("stepkit.audit")

    def log(self, entry: AuditEntry) -> None:
        level = logging.ERROR if entry.result == "error" else logging.INFO
        self._logger.log(level, json.dumps(entry.to_record(), ensure_ascii=False, sort_keys=True))
