from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: str
    logger: str
    message: str

    def format(self) -> str:
        return f"[{self.timestamp.isoformat(timespec='seconds')}] {self.message}"


class LogBuffer(logging.Handler):
    """Append-only in-memory log sink shared by every search in the process."""

    def __init__(self, capacity: Optional[int] = None, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.capacity = capacity
        self._entries: List[LogEntry] = []
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=datetime.fromtimestamp(record.created),
                level=record.levelname,
                logger=record.name,
                message=record.getMessage(),
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)
            if self.capacity is not None and len(self._entries) > self.capacity:
                del self._entries[: len(self._entries) - self.capacity]

    def entries(self) -> List[LogEntry]:
        with self._entries_lock:
            return list(self._entries)

    def lines(self) -> List[str]:
        return [entry.format() for entry in self.entries()]

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)


LOG_BUFFER = LogBuffer(capacity=5000)


def configure_logging(verbose: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "_tfdmarket", False) for h in root.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        console._tfdmarket = True  # type: ignore[attr-defined]
        root.addHandler(console)
    if LOG_BUFFER not in root.handlers:
        root.addHandler(LOG_BUFFER)
    # Selenium and urllib3 are chatty at DEBUG
    for noisy in ("selenium", "urllib3", "WDM"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
