import re
import threading
import time
from datetime import datetime

import pytest

from stepkit.config import UtilitySettings
from stepkit.errors import ErrorKind, OperationCancelled, OperationError
from stepkit.operation import CallContext, CancelToken
from stepkit.randomness import RandomSource
from stepkit.utility import NANOID_ALPHABET, UtilityAction, parse_duration, round_half_away

UUID_V4 = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")


def error_kind(action: UtilityAction, operation: str, inputs: dict) -> ErrorKind:
    with pytest.raises(OperationError) as exc_info:
        action.execute(operation, inputs)
    return exc_info.value.kind


def test_random_int_inclusive_bounds() -> None:
    action = UtilityAction()
    seen = {action.execute("random_int", {"min": 1, "max": 3}).response for _ in range(300)}
    assert seen == {1, 2, 3}
    assert action.execute("random_int", {"min": 5, "max": 5}).response == 5
    assert error_kind(action, "random_int", {"min": 3, "max": 1}) is ErrorKind.RANGE


def test_seeded_sources_repeat_sequences() -> None:
    first = UtilityAction(UtilitySettings(test_seed=42))
    second = UtilityAction(UtilitySettings(test_seed=42))
    calls = [
        ("random_int", {"min": 0, "max": 1000}),
        ("random_shuffle", {"items": list(range(10))}),
        ("id_uuid", {}),
        ("id_nanoid", {}),
        ("random_weighted", {"items": [{"value": "a", "weight": 1}, {"value": "b", "weight": 3}]}),
    ]
    for operation, inputs in calls:
        assert first.execute(operation, inputs).response == second.execute(operation, inputs).response
    assert RandomSource(7).shuffled("abcdef") == RandomSource(7).shuffled("abcdef")


def test_choose_and_sample() -> None:
    action = UtilityAction()
    items = ["a", "b", "c", "d"]
    assert action.execute("random_choose", {"items": items}).response in items
    sample = action.execute("random_sample", {"items": items, "count": 3}).response
    assert len(sample) == 3
    assert len(set(sample)) == 3
    assert set(sample) <= set(items)
    assert items == ["a", "b", "c", "d"]

    assert error_kind(action, "random_choose", {"items": []}) is ErrorKind.EMPTY
    assert error_kind(action, "random_sample", {"items": [], "count": 1}) is ErrorKind.EMPTY
    assert error_kind(action, "random_sample", {"items": items, "count": 5}) is ErrorKind.RANGE
    assert error_kind(action, "random_sample", {"items": items, "count": 0}) is ErrorKind.RANGE


def test_array_size_limit() -> None:
    action = UtilityAction(UtilitySettings(max_array_size=3))
    assert error_kind(action, "random_shuffle", {"items": [1, 2, 3, 4]}) is ErrorKind.VALIDATION
    assert error_kind(action, "math_min", {"values": [1, 2, 3, 4]}) is ErrorKind.VALIDATION


def test_shuffle_is_a_permutation_of_a_copy() -> None:
    action = UtilityAction()
    items = list(range(20))
    shuffled = action.execute("random_shuffle", {"items": items}).response
    assert sorted(shuffled) == items
    assert items == list(range(20))
    assert action.execute("random_shuffle", {"items": []}).response == []


def test_weighted_selection() -> None:
    action = UtilityAction()
    only_b = [{"value": "a", "weight": 0}, {"value": "b", "weight": 2.5}]
    for _ in range(50):
        assert action.execute("random_weighted", {"items": only_b}).response == "b"

    assert error_kind(action, "random_weighted", {"items": [{"value": 1, "weight": -1}]}) is ErrorKind.RANGE
    assert error_kind(action, "random_weighted", {"items": [{"value": 1, "weight": 0}]}) is ErrorKind.RANGE
    assert error_kind(action, "random_weighted", {"items": ["plain"]}) is ErrorKind.TYPE
    assert error_kind(action, "random_weighted", {"items": [{"weight": 1}]}) is ErrorKind.VALIDATION


def test_weighted_uses_cumulative_thresholds() -> None:
    class FixedSource(RandomSource):
        def __init__(self, draw: float) -> None:
            super().__init__(seed=0)
            self.draw = draw

        def fraction(self) -> float:
            return self.draw

    items = [{"value": "a", "weight": 1}, {"value": "b", "weight": 1}, {"value": "c", "weight": 2}]
    picks = {
        draw: UtilityAction(random_source=FixedSource(draw)).execute("random_weighted", {"items": items}).response
        for draw in (0.0, 0.24, 0.25, 0.49, 0.5, 0.99)
    }
    assert picks == {0.0: "a", 0.24: "a", 0.25: "b", 0.49: "b", 0.5: "c", 0.99: "c"}


def test_uuid_v4_format() -> None:
    action = UtilityAction()
    for _ in range(50):
        assert UUID_V4.match(action.execute("id_uuid", {}).response)


def test_nanoid_and_custom_ids() -> None:
    action = UtilityAction(UtilitySettings(max_id_length=64))
    nanoid = action.execute("id_nanoid", {}).response
    assert len(nanoid) == 21
    assert set(nanoid) <= set(NANOID_ALPHABET)
    assert len(action.execute("id_nanoid", {"length": 64}).response) == 64
    assert error_kind(action, "id_nanoid", {"length": 0}) is ErrorKind.RANGE
    assert error_kind(action, "id_nanoid", {"length": 65}) is ErrorKind.RANGE

    custom = action.execute("id_custom", {"length": 12, "alphabet": "abc123"}).response
    assert len(custom) == 12
    assert set(custom) <= set("abc123")
    for alphabet in ("ab<", "a'b", "a`b", "tab\t", "é", "x" * 257, ""):
        assert error_kind(action, "id_custom", {"length": 5, "alphabet": alphabet}) is ErrorKind.VALIDATION


def test_math_operations() -> None:
    action = UtilityAction()
    clamped = action.execute("math_clamp", {"value": 15, "min": 0, "max": 10})
    assert clamped.response == 10
    assert clamped.metadata["was_clamped"] is True
    assert action.execute("math_clamp", {"value": 5.5, "min": 0, "max": 10}).response == 5.5
    assert error_kind(action, "math_clamp", {"value": 1, "min": 5, "max": 0}) is ErrorKind.RANGE

    assert action.execute("math_round", {"value": 2.5}).response == 3.0
    assert action.execute("math_round", {"value": -2.5}).response == -3.0
    assert action.execute("math_round", {"value": 3.14159, "decimals": 2}).response == 3.14
    assert error_kind(action, "math_round", {"value": 1.0, "decimals": -1}) is ErrorKind.RANGE
    assert error_kind(action, "math_round", {"value": 1.0, "decimals": 16}) is ErrorKind.RANGE

    assert action.execute("math_min", {"values": [3, -1.5, 2]}).response == -1.5
    assert action.execute("math_max", {"values": [3, -1.5, 2]}).response == 3
    assert error_kind(action, "math_max", {"values": []}) is ErrorKind.EMPTY
    assert error_kind(action, "math_min", {"values": [1, "2"]}) is ErrorKind.TYPE


@pytest.mark.parametrize(
    "operation,inputs",
    [
        ("math_clamp", {"value": float("nan"), "min": 0, "max": 1}),
        ("math_round", {"value": float("inf")}),
        ("math_min", {"values": [1.0, float("nan")]}),
        ("math_max", {"values": [float("-inf")]}),
    ],
)
def test_non_finite_numbers_are_range_errors(operation, inputs) -> None:
    assert error_kind(UtilityAction(), operation, inputs) is ErrorKind.RANGE


def test_round_half_away_from_zero() -> None:
    assert round_half_away(0.125, 2) == 0.13
    assert round_half_away(-0.125, 2) == -0.13
    assert round_half_away(1e300, 15) == 1e300


def test_timestamp_formats() -> None:
    action = UtilityAction()
    default = action.execute("timestamp", {})
    assert default.metadata["format"] == "rfc3339"
    assert default.response.endswith("Z")
    datetime.fromisoformat(default.response.replace("Z", "+00:00"))

    before = int(time.time())
    unix = action.execute("timestamp", {"format": "unix"}).response
    assert before <= unix <= int(time.time()) + 1
    unix_ms = action.execute("timestamp", {"format": "unix_ms"}).response
    assert unix_ms > 10**12

    iso = action.execute("timestamp", {"format": "iso8601"}).response
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", iso)
    day = action.execute("timestamp", {"format": "%Y-%m-%d"}).response
    assert re.match(r"^\d{4}-\d{2}-\d{2}$", day)

    new_york = action.execute("timestamp", {"timezone": "America/New_York"}).response
    assert new_york[-6:] in ("-05:00", "-04:00")
    assert action.execute("timestamp", {"timezone": "Local"}).metadata["timezone"] == "Local"


def test_timestamp_errors() -> None:
    action = UtilityAction()
    assert error_kind(action, "timestamp", {"timezone": "Invalid/Timezone"}) is ErrorKind.VALIDATION
    assert error_kind(action, "timestamp", {"format": "not-a-valid-format"}) is ErrorKind.VALIDATION
    assert error_kind(action, "timestamp", {"format": 123}) is ErrorKind.TYPE
    assert error_kind(action, "timestamp", {"timezone": 123}) is ErrorKind.TYPE


def test_parse_duration() -> None:
    assert parse_duration("50ms") == pytest.approx(0.05)
    assert parse_duration("1h2m3s") == pytest.approx(3723)
    assert parse_duration("1.5s") == pytest.approx(1.5)
    assert parse_duration("250us") == pytest.approx(0.00025)
    assert parse_duration("-5s") == pytest.approx(-5)
    for bad in ("", "5", "abc", "5x", "1s2"):
        with pytest.raises(ValueError):
            parse_duration(bad)


def test_sleep_short_durations() -> None:
    action = UtilityAction()
    started = time.perf_counter()
    result = action.execute("sleep", {"duration": "50ms"})
    assert time.perf_counter() - started >= 0.045
    assert result.response == 50
    assert result.metadata["requested_duration"] == "50ms"
    assert result.metadata["operation"] == "sleep"
    assert action.execute("sleep", {"milliseconds": 25}).response == 25
    assert action.execute("sleep", {"milliseconds": 5.0}).response == 5


def test_sleep_input_errors() -> None:
    action = UtilityAction()
    assert error_kind(action, "sleep", {}) is ErrorKind.VALIDATION
    assert error_kind(action, "sleep", {"duration": "1s", "milliseconds": 5}) is ErrorKind.VALIDATION
    assert error_kind(action, "sleep", {"duration": "invalid"}) is ErrorKind.VALIDATION
    assert error_kind(action, "sleep", {"duration": 123}) is ErrorKind.TYPE
    assert error_kind(action, "sleep", {"duration": "-5s"}) is ErrorKind.RANGE
    assert error_kind(action, "sleep", {"duration": "6m"}) is ErrorKind.RANGE
    assert error_kind(action, "sleep", {"milliseconds": -1}) is ErrorKind.RANGE


def test_sleep_returns_promptly_on_cancel() -> None:
    action = UtilityAction()
    token = CancelToken()
    timer = threading.Timer(0.03, token.cancel, args=("step aborted",))
    started = time.perf_counter()
    timer.start()
    try:
        with pytest.raises(OperationError) as exc_info:
            action.execute("sleep", {"milliseconds": 1000}, CallContext(cancel=token))
    finally:
        timer.cancel()
    elapsed = time.perf_counter() - started
    assert elapsed < 0.25
    assert exc_info.value.kind is ErrorKind.INTERNAL
    assert isinstance(exc_info.value.__cause__, OperationCancelled)


def test_long_sleep_parses_before_cancellation() -> None:
    action = UtilityAction()
    token = CancelToken()
    token.cancel()
    for duration in ("1m30s", "4m59s", "299s"):
        with pytest.raises(OperationError) as exc_info:
            action.execute("sleep", {"duration": duration}, CallContext(cancel=token))
        assert exc_info.value.kind is ErrorKind.INTERNAL
