from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import NamedTuple

from stepkit.errors import ErrorKind, OperationError

logger = logging.getLogger(__name__)


class QuotaUsage(NamedTuple):
    used: int
    quota: int
    fraction: float


@dataclass
class QuotaEntry:
    prefix: str
    quota_bytes: int
    used_bytes: int = 0

    def usage(self) -> QuotaUsage:
        return QuotaUsage(self.used_bytes, self.quota_bytes, self.used_bytes / self.quota_bytes)


def _clean(prefix: str) -> str:
    return os.path.normpath(prefix)


def _covers(prefix: str, path: str) -> bool:
    if path == prefix:
        return True
    base = prefix if prefix.endswith(os.sep) else prefix + os.sep
    return path.startswith(base)


class QuotaTracker:
    """Advisory per-subtree byte ledger; the longest registered prefix wins."""

    def __init__(
        self,
        *,
        warn_threshold: float = 0.8,
        error_threshold: float = 0.95,
        log: logging.Logger | None = None,
    ) -> None:
        if not (0.0 < warn_threshold <= 1.0 and 0.0 < error_threshold <= 1.0):
            raise OperationError(
                "quota",
                ErrorKind.CONFIGURATION,
                "quota thresholds must be within (0, 1]",
            )
        if warn_threshold > error_threshold:
            raise OperationError(
                "quota",
                ErrorKind.CONFIGURATION,
                "quota warn threshold must not exceed the error threshold",
            )
        self._warn_threshold = warn_threshold
        self._error_threshold = error_threshold
        self._log = log or logger
        self._lock = threading.Lock()
        self._entries: dict[str, QuotaEntry] = {}

    def set_quota(self, prefix: str, quota_bytes: int) -> None:
        if quota_bytes <= 0:
            raise OperationError(
                "set_quota",
                ErrorKind.VALIDATION,
                "quota must be a positive number of bytes",
            )
        key = _clean(prefix)
        with self._lock:
            existing = self._entries.get(key)
            used = existing.used_bytes if existing is not None else 0
            self._entries[key] = QuotaEntry(prefix=key, quota_bytes=quota_bytes, used_bytes=used)

    def track_write(self, path: str, nbytes: int, *, operation: str = "track_write") -> None:
        """Charge *nbytes* against the most specific quota covering *path*.

        Raises ``disk_full`` without touching the ledger when the write would
        reach the error threshold.
        """
        if nbytes < 0:
            raise OperationError(operation, ErrorKind.VALIDATION, "byte count must not be negative")
        target = _clean(path)
        with self._lock:
            entry = self._match(target)
            if entry is None:
                return
            after = entry.used_bytes + nbytes
            if after >= self._error_threshold * entry.quota_bytes:
                raise OperationError(
                    operation,
                    ErrorKind.DISK_FULL,
                    f"write of {nbytes} bytes would exceed the quota for {entry.prefix}",
                    suggestion="Free space under the quota prefix or raise its quota",
                )
            warn_at = self._warn_threshold * entry.quota_bytes
            crossed = entry.used_bytes < warn_at <= after
            entry.used_bytes = after
            if crossed:
                self._log.warning(
                    "quota warning: %s at %d of %d bytes (%.0f%%)",
                    entry.prefix,
                    after,
                    entry.quota_bytes,
                    100.0 * after / entry.quota_bytes,
                )

    def get_usage(self, prefix: str) -> QuotaUsage:
        key = _clean(prefix)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise OperationError(
                    "get_usage",
                    ErrorKind.VALIDATION,
                    "no quota registered for prefix",
                )
            return entry.usage()

    def usage(self) -> list[dict]:
        with self._lock:
            return [
                {
                    "prefix": entry.prefix,
                    "used": entry.used_bytes,
                    "quota": entry.quota_bytes,
                    "fraction": entry.used_bytes / entry.quota_bytes,
                }
                for entry in sorted(self._entries.values(), key=lambda item: item.prefix)
            ]

    def reset(self) -> None:
        with self._lock:
            for entry in self._entries.values():
                entry.used_bytes = 0

    def _match(self, path: str) -> QuotaEntry | None:
        best: QuotaEntry | None = None
        for prefix, entry in self._entries.items():
            if _covers(prefix, path) and (best is None or len(prefix) > len(best.prefix)):
                best = entry
        return best
