"""Plain-text backend log with tail/search, plus a logging handler feeding it."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from stepkit.audit import iso, now_utc

MAX_TAIL_LINES = 2000
MAX_SEARCH_MATCHES = 5000


class BackendLog:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, level: str, message: str) -> None:
        line = f"{iso(now_utc())} [{level.upper()}] {message}\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)

    def _lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding="utf-8", errors="ignore").splitlines()

    def tail(self, lines: int = 200) -> list[str]:
        take = max(1, min(lines, MAX_TAIL_LINES))
        return self._lines()[-take:]

    def search(self, query: str, limit: int = 200) -> list[str]:
        needle = query.lower().strip()
        if not needle:
            return []
        cap = max(1, min(limit, MAX_SEARCH_MATCHES))
        matches: list[str] = []
        for line in self._lines():
            if needle in line.lower():
                matches.append(line)
                if len(matches) >= cap:
                    break
        return matches


class BackendLogHandler(logging.Handler):
    """Route ``logging`` records into a :class:`BackendLog`."""

    def __init__(self, log: BackendLog, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.log = log

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.log.append(record.levelname, self.format(record))
        except Exception:
            self.handleError(record)


def attach_backend_log(log: BackendLog, logger_name: str = "stepkit") -> BackendLogHandler:
    """Install a handler for *logger_name*, replacing one installed earlier."""
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        if isinstance(existing, BackendLogHandler):
            logger.removeHandler(existing)
    handler = BackendLogHandler(log)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler
