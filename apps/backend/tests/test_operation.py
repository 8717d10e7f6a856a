import json
import logging

import pytest

from stepkit.audit import AuditEntry, AuditLogger, LoggingAuditLogger, NullAuditLogger
from stepkit.errors import ErrorKind, OperationError
from stepkit.files import FileAction
from stepkit.config import FileSettings
from stepkit.metrics import MetricsSink
from stepkit.operation import CallContext
from stepkit.utility import UtilityAction


class RecordingAudit(AuditLogger):
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def log(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


def test_success_records_one_audit_entry_and_metrics(tmp_path) -> None:
    audit = RecordingAudit()
    action = FileAction(FileSettings(workflow_dir=str(tmp_path)), audit=audit)
    context = CallContext(workflow_id="wf-1", step_id="step-7")

    result = action.execute("write_text", {"path": "a.txt", "content": "Hello"}, context)

    assert result.metadata["operation"] == "write_text"
    assert result.metadata["duration_ms"] >= 0
    assert len(audit.entries) == 1
    entry = audit.entries[0]
    assert entry.result == "success"
    assert entry.action == "file"
    assert entry.path == "a.txt"
    assert entry.bytes_written == 5
    assert entry.workflow_id == "wf-1"
    assert entry.step_id == "step-7"
    assert action.metrics.operation_count("write_text", "ok") == 1
    assert action.metrics.snapshot()["file_bytes_written_total"] == 5


def test_failure_records_error_entry_and_counter(tmp_path) -> None:
    audit = RecordingAudit()
    action = FileAction(FileSettings(workflow_dir=str(tmp_path)), audit=audit)

    with pytest.raises(OperationError) as exc_info:
        action.execute("read_text", {"path": "missing.txt"})

    assert exc_info.value.kind is ErrorKind.FILE_NOT_FOUND
    assert [entry.result for entry in audit.entries] == ["error"]
    assert audit.entries[0].error_message
    assert action.metrics.error_count("file_not_found") == 1
    assert action.metrics.operation_count("read_text", "error") == 1
    assert "file_errors_total{error_type=\"file_not_found\"} 1" in action.metrics.render()


def test_unknown_operation_is_validation_error() -> None:
    action = UtilityAction()
    with pytest.raises(OperationError) as exc_info:
        action.execute("explode", {})
    assert exc_info.value.kind is ErrorKind.VALIDATION
    assert "random_int" in (exc_info.value.suggestion or "")


def test_missing_and_extra_inputs_name_the_key() -> None:
    action = UtilityAction()
    with pytest.raises(OperationError) as missing:
        action.execute("random_int", {"min": 1})
    assert missing.value.kind is ErrorKind.VALIDATION
    assert "max" in missing.value.message

    with pytest.raises(OperationError) as extra:
        action.execute("random_int", {"min": 1, "max": 2, "step": 1})
    assert extra.value.kind is ErrorKind.VALIDATION
    assert "step" in extra.value.message


def test_wrong_input_type_is_type_error() -> None:
    action = UtilityAction()
    with pytest.raises(OperationError) as exc_info:
        action.execute("random_int", {"min": "one", "max": 2})
    assert exc_info.value.kind is ErrorKind.TYPE


def test_unexpected_exception_becomes_internal(monkeypatch) -> None:
    audit = RecordingAudit()
    action = UtilityAction(audit=audit)

    def boom(*_args, **_kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(action.random, "int_between", boom)
    with pytest.raises(OperationError) as exc_info:
        action.execute("random_int", {"min": 1, "max": 2})
    assert exc_info.value.kind is ErrorKind.INTERNAL
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert audit.entries[-1].result == "error"


def test_logging_audit_logger_levels(caplog) -> None:
    audit = LoggingAuditLogger()
    with caplog.at_level(logging.INFO, logger="stepkit.audit"):
        audit.log(AuditEntry(operation="read", path="x", result="success", duration=0.01))
        audit.log(
            AuditEntry(operation="read", path="x", result="error", duration=0.0, error_message="nope")
        )
    levels = [record.levelno for record in caplog.records if record.name == "stepkit.audit"]
    assert levels == [logging.INFO, logging.ERROR]
    record = json.loads(caplog.records[-1].getMessage())
    for key in (
        "operation",
        "path",
        "result",
        "duration",
        "bytes_read",
        "bytes_written",
        "error",
        "workflow_id",
        "step_id",
    ):
        assert key in record
    assert record["error"] == "nope"


def test_null_audit_logger_accepts_entries() -> None:
    NullAuditLogger().log(AuditEntry(operation="x", result="success", duration=0.0))


def test_metrics_names_and_histogram_exposition() -> None:
    sink = MetricsSink("file")
    sink.record_success("read", 0.002, bytes_read=10)
    sink.record_success("read", 0.3, bytes_read=5)
    sink.record_error("read", 0.001, "parse_error")

    assert sink.duration_name == "file_operation_duration_seconds"
    assert sink.bytes_read_name == "file_bytes_read_total"
    assert sink.bytes_written_name == "file_bytes_written_total"
    assert sink.errors_name == "file_errors_total"
    text = sink.render()
    assert 'file_operation_duration_seconds_count{operation="read",status="ok"} 2' in text
    assert "file_bytes_read_total 15" in text
    assert 'file_errors_total{error_type="parse_error"} 1' in text
