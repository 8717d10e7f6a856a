"""Pure-compute helpers: random draws, identifiers, math, time and sleep."""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Context, Decimal
from typing import Any, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import StrictFloat, StrictInt, StrictStr

from stepkit.config import UtilitySettings
from stepkit.errors import ErrorKind, OperationError
from stepkit.operation import Action, CallContext, Inputs, NoInputs, OperationHandler, Result, cancelled_error
from stepkit.randomness import RandomSource

Number = StrictInt | StrictFloat

NANOID_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-"
NANOID_DEFAULT_LENGTH = 21
MAX_ALPHABET_LENGTH = 256
FORBIDDEN_ALPHABET_CHARS = set("<>\"'&\\`")
MAX_ROUND_DECIMALS = 15
MAX_SLEEP_SECONDS = 5 * 60.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_STRFTIME_DIRECTIVE = re.compile(r"%[A-Za-z]")


def parse_duration(text: str) -> float:
    """Parse ``1h2m3.5s`` style durations into seconds."""
    value = text.strip()
    sign = 1.0
    if value[:1] in ("+", "-"):
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]
    if value == "0":
        return 0.0
    if not value:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return sign * total


def round_half_away(value: float, decimals: int) -> float:
    if abs(value) >= 2**53:
        return float(value)
    exponent = Decimal(1).scaleb(-decimals)
    rounded = Decimal(repr(float(value))).quantize(exponent, rounding=ROUND_HALF_UP, context=Context(prec=64))
    return float(rounded)


class RandomIntInputs(Inputs):
    min: StrictInt
    max: StrictInt


class ItemsInputs(Inputs):
    items: list[Any]


class SampleInputs(ItemsInputs):
    count: StrictInt


class NanoidInputs(Inputs):
    length: StrictInt = NANOID_DEFAULT_LENGTH


class CustomIdInputs(Inputs):
    length: StrictInt
    alphabet: StrictStr


class ClampInputs(Inputs):
    value: Number
    min: Number
    max: Number


class RoundInputs(Inputs):
    value: Number
    decimals: StrictInt = 0


class ValuesInputs(Inputs):
    values: list[Number]


class TimestampInputs(Inputs):
    format: StrictStr = "rfc3339"
    timezone: StrictStr = "UTC"


class SleepInputs(Inputs):
    duration: StrictStr | None = None
    milliseconds: Number | None = None


class UtilityAction(Action):
    name = "utility"

    def __init__(
        self,
        settings: UtilitySettings | None = None,
        *,
        random_source: RandomSource | None = None,
        **kwargs: Any,
    ) -> None:
        self.settings = settings or UtilitySettings()
        self.random = random_source or RandomSource(self.settings.test_seed)
        super().__init__(**kwargs)

    def operations(self) -> dict[str, OperationHandler]:
        return {
            "random_int": OperationHandler(self._random_int, RandomIntInputs),
            "random_choose": OperationHandler(self._random_choose, ItemsInputs),
            "random_sample": OperationHandler(self._random_sample, SampleInputs),
            "random_weighted": OperationHandler(self._random_weighted, ItemsInputs),
            "random_shuffle": OperationHandler(self._random_shuffle, ItemsInputs),
            "id_uuid": OperationHandler(self._id_uuid, NoInputs),
            "id_nanoid": OperationHandler(self._id_nanoid, NanoidInputs),
            "id_custom": OperationHandler(self._id_custom, CustomIdInputs),
            "math_clamp": OperationHandler(self._math_clamp, ClampInputs),
            "math_round": OperationHandler(self._math_round, RoundInputs),
            "math_min": OperationHandler(self._math_min, ValuesInputs),
            "math_max": OperationHandler(self._math_max, ValuesInputs),
            "timestamp": OperationHandler(self._timestamp, TimestampInputs),
            "sleep": OperationHandler(self._sleep, SleepInputs),
        }

    # checks

    def _check_items(self, operation: str, items: Sequence[Any], *, allow_empty: bool = False) -> None:
        if not items and not allow_empty:
            raise OperationError(
                operation,
                ErrorKind.EMPTY,
                "items cannot be empty",
                suggestion="Provide at least one item",
            )
        limit = self.settings.max_array_size
        if len(items) > limit:
            raise OperationError(
                operation,
                ErrorKind.VALIDATION,
                f"array exceeds maximum size of {limit}",
                suggestion=f"Reduce array size to at most {limit} items",
            )

    @staticmethod
    def _check_finite(operation: str, **values: float) -> None:
        for key, value in values.items():
            if math.isnan(value) or math.isinf(value):
                raise OperationError(
                    operation,
                    ErrorKind.RANGE,
                    f"'{key}' must be a finite number",
                    suggestion="Ensure inputs are not NaN or infinite",
                )

    def _check_length(self, operation: str, length: int) -> None:
        limit = self.settings.max_id_length
        if length < 1 or length > limit:
            raise OperationError(
                operation,
                ErrorKind.RANGE,
                f"length must be between 1 and {limit}",
            )

    # random

    def _random_int(self, params: RandomIntInputs, context: CallContext) -> Result:
        if params.min > params.max:
            raise OperationError(
                "random_int",
                ErrorKind.RANGE,
                "min must be <= max",
                suggestion=f"Swap values: min={params.max}, max={params.min}",
            )
        value = self.random.int_between(params.min, params.max)
        return Result(response=value, metadata={"min": params.min, "max": params.max})

    def _random_choose(self, params: ItemsInputs, context: CallContext) -> Result:
        self._check_items("random_choose", params.items)
        idx = self.random.below(len(params.items))
        return Result(
            response=params.items[idx],
            metadata={"total_items": len(params.items), "chosen_idx": idx},
        )

    def _random_sample(self, params: SampleInputs, context: CallContext) -> Result:
        self._check_items("random_sample", params.items)
        if params.count <= 0:
            raise OperationError(
                "random_sample", ErrorKind.RANGE, "count must be positive", suggestion="Provide a count >= 1"
            )
        if params.count > len(params.items):
            raise OperationError(
                "random_sample",
                ErrorKind.RANGE,
                f"count ({params.count}) exceeds items length ({len(params.items)})",
                suggestion=f"Reduce count to at most {len(params.items)}",
            )
        sample = self.random.shuffled(params.items)[: params.count]
        return Result(response=sample, metadata={"total_items": len(params.items), "count": params.count})

    def _random_weighted(self, params: ItemsInputs, context: CallContext) -> Result:
        self._check_items("random_weighted", params.items)
        values: list[Any] = []
        weights: list[float] = []
        for idx, item in enumerate(params.items):
            if not isinstance(item, dict):
                raise OperationError(
                    "random_weighted",
                    ErrorKind.TYPE,
                    f"item at index {idx} must be an object with 'value' and 'weight' fields",
                )
            if "value" not in item:
                raise OperationError(
                    "random_weighted", ErrorKind.VALIDATION, f"item at index {idx} missing 'value' field"
                )
            weight = item.get("weight")
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or math.isnan(weight):
                raise OperationError(
                    "random_weighted",
                    ErrorKind.VALIDATION,
                    f"item at index {idx} has invalid 'weight'",
                    suggestion="Weight must be a non-negative number",
                )
            if weight < 0:
                raise OperationError(
                    "random_weighted", ErrorKind.RANGE, f"item at index {idx} has negative weight"
                )
            values.append(item["value"])
            weights.append(float(weight))

        total = math.fsum(weights)
        if total <= 0 or math.isinf(total):
            raise OperationError(
                "random_weighted",
                ErrorKind.RANGE,
                "total weight must be positive and finite",
                suggestion="At least one item must have a positive weight",
            )
        target = self.random.fraction() * total
        chosen = max(idx for idx, weight in enumerate(weights) if weight > 0)
        cumulative = 0.0
        for idx, weight in enumerate(weights):
            cumulative += weight
            if target < cumulative:
                chosen = idx
                break
        return Result(
            response=values[chosen],
            metadata={"total_items": len(values), "total_weight": total},
        )

    def _random_shuffle(self, params: ItemsInputs, context: CallContext) -> Result:
        self._check_items("random_shuffle", params.items, allow_empty=True)
        return Result(
            response=self.random.shuffled(params.items),
            metadata={"total_items": len(params.items)},
        )

    # identifiers

    def _id_uuid(self, params: NoInputs, context: CallContext) -> Result:
        raw = bytearray(self.random.token_bytes(16))
        raw[6] = (raw[6] & 0x0F) | 0x40
        raw[8] = (raw[8] & 0x3F) | 0x80
        return Result(response=str(uuid.UUID(bytes=bytes(raw))), metadata={"version": 4})

    def _draw(self, alphabet: str, length: int) -> str:
        return "".join(alphabet[self.random.below(len(alphabet))] for _ in range(length))

    def _id_nanoid(self, params: NanoidInputs, context: CallContext) -> Result:
        self._check_length("id_nanoid", params.length)
        return Result(response=self._draw(NANOID_ALPHABET, params.length), metadata={"length": params.length})

    def _id_custom(self, params: CustomIdInputs, context: CallContext) -> Result:
        self._check_length("id_custom", params.length)
        alphabet = params.alphabet
        if not alphabet:
            raise OperationError("id_custom", ErrorKind.VALIDATION, "alphabet cannot be empty")
        if len(alphabet) > MAX_ALPHABET_LENGTH:
            raise OperationError(
                "id_custom",
                ErrorKind.VALIDATION,
                f"alphabet exceeds {MAX_ALPHABET_LENGTH} characters",
            )
        for char in alphabet:
            if not 32 <= ord(char) <= 126:
                raise OperationError(
                    "id_custom",
                    ErrorKind.VALIDATION,
                    "alphabet must contain printable ASCII characters only",
                )
            if char in FORBIDDEN_ALPHABET_CHARS:
                raise OperationError(
                    "id_custom",
                    ErrorKind.VALIDATION,
                    f"alphabet contains a disallowed character: {char!r}",
                    suggestion="Remove < > \" ' & \\ and backtick from the alphabet",
                )
        return Result(
            response=self._draw(alphabet, params.length),
            metadata={"length": params.length, "alphabet_size": len(alphabet)},
        )

    # math

    def _math_clamp(self, params: ClampInputs, context: CallContext) -> Result:
        self._check_finite("math_clamp", value=params.value, min=params.min, max=params.max)
        if params.min > params.max:
            raise OperationError("math_clamp", ErrorKind.RANGE, "min must be <= max")
        clamped = min(max(params.value, params.min), params.max)
        return Result(
            response=clamped,
            metadata={"original_value": params.value, "was_clamped": clamped != params.value},
        )

    def _math_round(self, params: RoundInputs, context: CallContext) -> Result:
        self._check_finite("math_round", value=params.value)
        if params.decimals < 0 or params.decimals > MAX_ROUND_DECIMALS:
            raise OperationError(
                "math_round",
                ErrorKind.RANGE,
                f"decimals must be between 0 and {MAX_ROUND_DECIMALS}",
            )
        return Result(
            response=round_half_away(params.value, params.decimals),
            metadata={"original_value": params.value, "decimals": params.decimals},
        )

    def _extreme(self, operation: str, values: list[float], pick) -> Result:
        if not values:
            raise OperationError(operation, ErrorKind.EMPTY, "values cannot be empty")
        self._check_items(operation, values)
        for idx, value in enumerate(values):
            self._check_finite(operation, **{f"values[{idx}]": value})
        return Result(response=pick(values), metadata={"count": len(values)})

    def _math_min(self, params: ValuesInputs, context: CallContext) -> Result:
        return self._extreme("math_min", params.values, min)

    def _math_max(self, params: ValuesInputs, context: CallContext) -> Result:
        return self._extreme("math_max", params.values, max)

    # time

    def _now(self, zone_name: str) -> datetime:
        if zone_name == "UTC":
            return datetime.now(timezone.utc)
        if zone_name == "Local":
            return datetime.now().astimezone()
        try:
            zone = ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise OperationError(
                "timestamp",
                ErrorKind.VALIDATION,
                f"unknown timezone: {zone_name}",
                cause=exc,
                suggestion="Use UTC, Local or an IANA name such as America/New_York",
            ) from exc
        return datetime.now(zone)

    def _timestamp(self, params: TimestampInputs, context: CallContext) -> Result:
        now = self._now(params.timezone)
        fmt = params.format
        if fmt == "unix":
            value: Any = int(now.timestamp())
        elif fmt == "unix_ms":
            value = int(now.timestamp() * 1000)
        elif fmt == "rfc3339":
            value = now.isoformat(timespec="seconds").replace("+00:00", "Z")
        elif fmt == "iso8601":
            value = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        elif _STRFTIME_DIRECTIVE.search(fmt):
            value = now.strftime(fmt)
        else:
            raise OperationError(
                "timestamp",
                ErrorKind.VALIDATION,
                "format has no recognised directive",
                suggestion="Use unix, unix_ms, rfc3339, iso8601 or a strftime pattern such as %Y-%m-%d",
            )
        return Result(response=value, metadata={"format": fmt, "timezone": params.timezone})

    def _sleep(self, params: SleepInputs, context: CallContext) -> Result:
        if (params.duration is None) == (params.milliseconds is None):
            raise OperationError(
                "sleep",
                ErrorKind.VALIDATION,
                "provide exactly one of 'duration' or 'milliseconds'",
                suggestion="Use duration like '500ms' or '2s', or milliseconds as a number",
            )
        if params.duration is not None:
            try:
                seconds = parse_duration(params.duration)
            except ValueError as exc:
                raise OperationError(
                    "sleep",
                    ErrorKind.VALIDATION,
                    "invalid duration string",
                    cause=exc,
                    suggestion="Use units ns, us, ms, s, m or h, for example '1m30s'",
                ) from exc
            requested = params.duration
        else:
            self._check_finite("sleep", milliseconds=params.milliseconds)
            seconds = params.milliseconds / 1000.0
            requested = f"{params.milliseconds}ms"

        if seconds < 0:
            raise OperationError("sleep", ErrorKind.RANGE, "duration must not be negative")
        if seconds > MAX_SLEEP_SECONDS:
            raise OperationError(
                "sleep",
                ErrorKind.RANGE,
                "duration exceeds the maximum of 5m",
                suggestion="Sleep for at most five minutes per step",
            )
        if context.cancel.wait(seconds):
            raise cancelled_error("sleep", context.cancel)
        return Result(response=round(seconds * 1000), metadata={"requested_duration": requested})
