"""Periodic re-read of the monitored range."""

import logging
import threading
from typing import Callable, Optional

from .errors import ModbusMonitorError

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_S = 2.0
POLLABLE_CODES = (1, 2, 3, 4)

# Tick results
TICK_OK = "ok"
TICK_SKIPPED = "skipped"
TICK_FAILED = "failed"


class PollLoop:
    """Re-reads ``request_provider()`` every ``period`` seconds into ``monitor``.

    ``request_provider`` returns ``(function_code, address, count)`` or None;
    it is consulted on every tick so the caller can change the target between
    ticks. A failed read stops the loop; ``on_error`` is called with the
    exception from the poll thread and nothing is raised across it.
    """

    def __init__(self, engine, monitor, request_provider: Callable,
                 period: float = DEFAULT_PERIOD_S,
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.engine = engine
        self.monitor = monitor
        self.request_provider = request_provider
        self.period = float(period)
        self.on_error = on_error
        self._stop_event = threading.Event()
        self._stop_event.set()
        self._thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def start(self) -> None:
        if self.running:
            return
        if self.period <= 0:
            raise ValueError("Polling interval must be > 0.")
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="modbus-poll", daemon=True
        )
        self._thread.start()
        logger.info("Polling started (every %ss).", self.period)

    def stop(self) -> None:
        """Stop ticking. A tick already reading is left to finish."""
        if not self.running:
            return
        self._stop_event.set()
        logger.info("Polling stopped.")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.period):
            self.tick(stop_event)

    def tick(self, stop_event: Optional[threading.Event] = None) -> str:
        """Run one poll cycle. ``stop_event`` is the loop's own event when called from the thread."""
        if stop_event is not None and stop_event.is_set():
            return TICK_SKIPPED
        stop_event = stop_event or self._stop_event
        if not self.engine.connected or self.engine.busy:
            return TICK_SKIPPED
        if not self._tick_lock.acquire(blocking=False):
            return TICK_SKIPPED
        try:
            request = self.request_provider()
            if request is None:
                return TICK_SKIPPED
            function_code, address, count = request
            if function_code not in POLLABLE_CODES:
                return TICK_SKIPPED
            try:
                values = self.engine.read(function_code, address, count)
            except ModbusMonitorError as e:
                self._fail(stop_event, e)
                return TICK_FAILED
            except Exception as e:
                logger.exception("Unexpected poll failure")
                self._fail(stop_event, e)
                return TICK_FAILED
            self.monitor.replace(address, values)
            return TICK_OK
        finally:
            self._tick_lock.release()

    def _fail(self, stop_event: threading.Event, exc: Exception) -> None:
        stop_event.set()
        logger.error("Poll error, auto-read stopped: %s", exc)
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception:
                logger.exception("Poll error callback failed")
