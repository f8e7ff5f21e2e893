import datetime
import logging
import sys
from collections import deque
from threading import Lock
from typing import Callable, Optional

# Log levels & filtering as shown in the log panel
LEVEL_ORDER = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3}
LOG_FILTER_VALUES = ["All", "INFO", "WARN", "ERROR"]
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

LogLine = tuple[str, str, str]  # (ts, level, message)


def level_label(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "ERROR"
    if levelno >= logging.WARNING:
        return "WARN"
    if levelno >= logging.INFO:
        return "INFO"
    return "DEBUG"


def passes_filter(level: str, selected: str) -> bool:
    sel = (selected or "All").upper()
    if sel == "ALL":
        return True
    try:
        return LEVEL_ORDER[level.upper()] >= LEVEL_ORDER[sel]
    except KeyError:
        return True


class LogBufferHandler(logging.Handler):
    """
    Logging handler that keeps the last ``capacity`` records in memory (FIFO)
    as ``(ts, level, message)`` lines and optionally forwards each one to a
    listener, e.g. a GUI log panel.
    """

    def __init__(self, capacity: int = 2000, listener: Optional[Callable[[LogLine], None]] = None):
        super().__init__()
        self.buffer: deque[LogLine] = deque(maxlen=capacity)
        self.listener = listener
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self.buffer.maxlen or 0

    def set_capacity(self, capacity: int) -> None:
        if capacity <= 0:
            capacity = 2000
        with self._lock:
            self.buffer = deque(self.buffer, maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            ts = datetime.datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
            line = (ts, level_label(record.levelno), record.getMessage())
            with self._lock:
                self.buffer.append(line)
            if self.listener is not None:
                self.listener(line)
        except Exception:
            self.handleError(record)

    def get_lines(self, level: Optional[str] = None) -> list[LogLine]:
        with self._lock:
            lines = list(self.buffer)
        if level is None:
            return lines
        return [line for line in lines if passes_filter(line[1], level)]

    def clear(self) -> None:
        with self._lock:
            self.buffer.clear()

    def __len__(self):
        return len(self.buffer)


def setup_logging(level: int = logging.INFO,
                  buffer_handler: Optional[LogBufferHandler] = None) -> logging.Logger:
    """Attach a stderr handler (and the buffer handler, if given) to the package logger."""
    logger = logging.getLogger("modbus_monitor")
    logger.setLevel(level)

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)

    if buffer_handler is not None and buffer_handler not in logger.handlers:
        logger.addHandler(buffer_handler)

    return logger
