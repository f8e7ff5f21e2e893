"""Broadcast of raw transmitted/received frames."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawLogEntry:
    timestamp: float
    tx: Optional[bytes] = None
    rx: Optional[bytes] = None


Subscriber = Callable[[RawLogEntry], None]


def to_hex(data) -> str:
    """Render bytes as space separated upper-case hex pairs, e.g. ``01 03 00 0A``."""
    if not data:
        return ""
    return " ".join(f"{b:02X}" for b in bytes(data))


class TrafficLogger:
    """Append-only fan-out of (timestamp, tx, rx) entries.

    Delivery is synchronous, on the publisher's thread, in subscription order.
    """

    def __init__(self):
        # (token, handler) pairs; the list is replaced, never mutated in place
        self._subscribers: list[tuple[object, Subscriber]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        token = object()
        with self._lock:
            self._subscribers = self._subscribers + [(token, handler)]

        def unsubscribe():
            with self._lock:
                self._subscribers = [s for s in self._subscribers if s[0] is not token]

        return unsubscribe

    def publish(self, tx: Optional[bytes] = None, rx: Optional[bytes] = None) -> RawLogEntry:
        entry = RawLogEntry(
            timestamp=time.time(),
            tx=bytes(tx) if tx is not None else None,
            rx=bytes(rx) if rx is not None else None,
        )
        with self._lock:
            targets = self._subscribers
        for _, handler in targets:
            try:
                handler(entry)
            except Exception:
                logger.exception("Traffic subscriber %r failed", handler)
        return entry

    def __len__(self):
        return len(self._subscribers)
