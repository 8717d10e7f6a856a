import logging
import threading

import pytest

from stepkit.errors import ErrorKind, OperationError
from stepkit.quota import QuotaTracker


def test_concurrent_writes_cannot_overrun_quota() -> None:
    tracker = QuotaTracker(error_threshold=0.95)
    tracker.set_quota("/out", 1000)
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def write() -> None:
        barrier.wait()
        try:
            tracker.track_write("/out/x", 600)
            result = "ok"
        except OperationError as exc:
            result = exc.kind.value
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=write) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["disk_full", "ok"]
    assert tracker.get_usage("/out").used == 600


def test_usage_equals_sum_of_successful_writes() -> None:
    tracker = QuotaTracker()
    tracker.set_quota("/data", 10_000)
    for size in (100, 250, 1, 0, 649):
        tracker.track_write("/data/f.bin", size)
    usage = tracker.get_usage("/data")
    assert usage.used == 1000
    assert usage.quota == 10_000
    assert usage.fraction == pytest.approx(0.1)


def test_rejected_write_leaves_state_untouched() -> None:
    tracker = QuotaTracker(error_threshold=0.9)
    tracker.set_quota("/q", 100)
    tracker.track_write("/q/a", 50)
    with pytest.raises(OperationError) as exc_info:
        tracker.track_write("/q/b", 40, operation="write_text")
    assert exc_info.value.kind is ErrorKind.DISK_FULL
    assert exc_info.value.operation == "write_text"
    assert tracker.get_usage("/q").used == 50


def test_longest_prefix_wins_and_is_component_aware() -> None:
    tracker = QuotaTracker()
    tracker.set_quota("/tmp/out", 1000)
    tracker.set_quota("/tmp/out/big", 100_000)
    tracker.track_write("/tmp/out/big/file", 5000)
    tracker.track_write("/tmp/out/small", 10)
    tracker.track_write("/tmp/output/file", 999_999)

    assert tracker.get_usage("/tmp/out/big").used == 5000
    assert tracker.get_usage("/tmp/out").used == 10


def test_untracked_paths_are_ignored() -> None:
    tracker = QuotaTracker()
    tracker.track_write("/anywhere/file", 10**12)
    assert tracker.usage() == []


def test_warning_logged_once_when_crossing_threshold(caplog) -> None:
    tracker = QuotaTracker(warn_threshold=0.5, error_threshold=0.95)
    tracker.set_quota("/w", 100)
    with caplog.at_level(logging.WARNING, logger="stepkit.quota"):
        tracker.track_write("/w/a", 40)
        tracker.track_write("/w/b", 20)
        tracker.track_write("/w/c", 10)
    warnings = [record for record in caplog.records if "quota warning" in record.getMessage()]
    assert len(warnings) == 1


def test_set_quota_validation_and_reset() -> None:
    tracker = QuotaTracker()
    with pytest.raises(OperationError) as exc_info:
        tracker.set_quota("/x", 0)
    assert exc_info.value.kind is ErrorKind.VALIDATION

    tracker.set_quota("/x", 100)
    tracker.track_write("/x/y", 30)
    tracker.set_quota("/x", 200)
    assert tracker.get_usage("/x").used == 30
    tracker.reset()
    assert tracker.get_usage("/x").used == 0

    with pytest.raises(OperationError) as exc_info:
        tracker.get_usage("/missing")
    assert exc_info.value.kind is ErrorKind.VALIDATION


def test_bad_thresholds_are_configuration_errors() -> None:
    with pytest.raises(OperationError) as exc_info:
        QuotaTracker(warn_threshold=0.9, error_threshold=0.5)
    assert exc_info.value.kind is ErrorKind.CONFIGURATION
