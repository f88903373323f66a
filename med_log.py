# med_log.py
# App logger: appends to app.log under the data dir and keeps the most
# recent lines in memory for the in-app log viewer.

import logging
from pathlib import Path
from threading import RLock
from typing import Optional

from med_config import LOG_MAX_LINES

LOGGER_NAME = "mypills"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class RingLog:
    def __init__(self, max_lines=LOG_MAX_LINES):
        self.max_lines = int(max_lines)
        self._lines = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                self._lines = self._lines[-self.max_lines:]

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self):
        with self._lock:
            self._lines = []


RING = RingLog()


class FileAndRingHandler(logging.Handler):
    def __init__(self, log_path: Optional[Path], ring: RingLog = RING):
        super().__init__()
        self.log_path = Path(log_path) if log_path else None
        self.ring = ring
        self._write_lock = RLock()
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        self.ring.add(msg)
        if self.log_path is None:
            return
        try:
            with self._write_lock:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            # read-only or full storage; the ring still has the line
            pass


logger = logging.getLogger(LOGGER_NAME)


def setup_logging(log_path: Optional[Path], level: str = "INFO") -> logging.Logger:
    """Attach the file/ring handler once; later calls only retarget the file."""
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for h in logger.handlers:
        if isinstance(h, FileAndRingHandler):
            h.log_path = Path(log_path) if log_path else None
            return logger
    logger.addHandler(FileAndRingHandler(log_path))
    return logger


def recent_log() -> str:
    return RING.text()


def clear_log(log_path: Optional[Path] = None):
    RING.clear()
    if log_path is not None:
        Path(log_path).unlink(missing_ok=True)
