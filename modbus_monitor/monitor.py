"""Client-side snapshot of the most recently read register range."""

import enum
import logging
import re
import struct
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from .errors import DataMissing, OutOfRange, ParseError

logger = logging.getLogger(__name__)

_HEX_DIGITS = re.compile(r"^[0-9A-Fa-f]+$")


class DisplayFormat(str, enum.Enum):
    HEX = "HEX"
    DEC_UNSIGNED = "DEC_UNSIGNED"
    DEC_SIGNED = "DEC_SIGNED"
    UINT32 = "UINT32"
    FLOAT32 = "FLOAT32"
    ASCII_PAIR = "ASCII_PAIR"

    @property
    def is_32bit(self) -> bool:
        return self in (DisplayFormat.UINT32, DisplayFormat.FLOAT32)

    @property
    def editable(self) -> bool:
        return not (self.is_32bit or self is DisplayFormat.ASCII_PAIR)


@dataclass
class MonitorSnapshot:
    start_address: int
    values: list[int] = field(default_factory=list)

    def index_of(self, address: int) -> int:
        return address - self.start_address

    def contains(self, address: int) -> bool:
        return 0 <= address - self.start_address < len(self.values)


@dataclass(frozen=True)
class Selection:
    """Range of snapshot indices; either endpoint may be the larger one."""
    start: int
    end: int

    def normalized(self) -> tuple[int, int]:
        return min(self.start, self.end), max(self.start, self.end)


# ------------- Decoding helpers -------------
def to_signed16(value: int) -> int:
    value &= 0xFFFF
    return value - 0x10000 if value > 0x7FFF else value


def _ascii(byte: int) -> str:
    return chr(byte) if 32 <= byte <= 126 else "."


def decode_value(value: int, next_value: Optional[int], fmt: DisplayFormat):
    """Decode one register (plus its neighbour for 32-bit formats)."""
    value &= 0xFFFF
    if fmt is DisplayFormat.HEX:
        return f"0x{value:04X}"
    if fmt is DisplayFormat.DEC_SIGNED:
        return to_signed16(value)
    if fmt.is_32bit:
        word = (value << 16) | ((next_value or 0) & 0xFFFF)
        if fmt is DisplayFormat.UINT32:
            return word
        return struct.unpack(">f", struct.pack(">I", word))[0]
    if fmt is DisplayFormat.ASCII_PAIR:
        return _ascii(value >> 8) + _ascii(value & 0xFF)
    return value


def format_value(value: int, next_value: Optional[int], fmt: DisplayFormat) -> str:
    decoded = decode_value(value, next_value, fmt)
    if fmt is DisplayFormat.FLOAT32:
        return f"{decoded:.4f}"
    return str(decoded)


def parse_register_text(text: str, fmt: DisplayFormat) -> int:
    """Parse user input for one register and return it as an unsigned 16-bit value."""
    s = (text or "").strip()
    try:
        if s.lower().startswith("0x"):
            value = int(s[2:], 16)
        elif fmt is DisplayFormat.HEX and _HEX_DIGITS.match(s):
            value = int(s, 16)
        else:
            value = int(s, 10)
    except ValueError:
        raise ParseError(f"Cannot parse {text!r} as a register value") from None
    if not -0x8000 <= value <= 0xFFFF:
        raise ParseError(f"Value {value} does not fit in a 16-bit register")
    return value & 0xFFFF


class RegisterMonitor:
    """Typed view over the last read ``(start_address, values)`` snapshot.

    Observers registered with :meth:`subscribe` are called with the current
    snapshot after every change, on the thread that made the change.
    """

    def __init__(self, display_format: DisplayFormat = DisplayFormat.DEC_UNSIGNED):
        self.display_format = DisplayFormat(display_format)
        self._snapshot: Optional[MonitorSnapshot] = None
        self._lock = threading.RLock()
        self._observers: list[tuple[object, Callable]] = []

    # ---------- Observers ----------
    def subscribe(self, handler: Callable[[Optional[MonitorSnapshot]], None]) -> Callable[[], None]:
        token = object()
        with self._lock:
            self._observers = self._observers + [(token, handler)]

        def unsubscribe():
            with self._lock:
                self._observers = [o for o in self._observers if o[0] is not token]

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot
        for _, handler in self._observers:
            try:
                handler(snapshot)
            except Exception:
                logger.exception("Monitor observer %r failed", handler)

    # ---------- Snapshot ----------
    @property
    def snapshot(self) -> Optional[MonitorSnapshot]:
        """A copy of the current snapshot, or None before the first read."""
        with self._lock:
            if self._snapshot is None:
                return None
            return MonitorSnapshot(self._snapshot.start_address, list(self._snapshot.values))

    def __len__(self):
        with self._lock:
            return len(self._snapshot.values) if self._snapshot else 0

    def replace(self, start_address: int, values: list[int]) -> None:
        """Swap in a freshly read range. Any selection over the old one is stale."""
        with self._lock:
            self._snapshot = MonitorSnapshot(int(start_address), [int(v) & 0xFFFF for v in values])
        self._notify()

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None
        self._notify()

    # ---------- Decoding ----------
    def _value_at(self, index: int) -> tuple[int, Optional[int]]:
        with self._lock:
            if self._snapshot is None or not 0 <= index < len(self._snapshot.values):
                raise IndexError(f"No register at index {index}")
            values = self._snapshot.values
            return values[index], values[index + 1] if index + 1 < len(values) else None

    def decode(self, index: int, fmt: Optional[DisplayFormat] = None):
        value, next_value = self._value_at(index)
        return decode_value(value, next_value, DisplayFormat(fmt or self.display_format))

    def format_cell(self, index: int, fmt: Optional[DisplayFormat] = None) -> str:
        value, next_value = self._value_at(index)
        return format_value(value, next_value, DisplayFormat(fmt or self.display_format))

    def cells(self, fmt: Optional[DisplayFormat] = None) -> Iterator[tuple[int, int, str]]:
        """Yield ``(index, address, text)`` for every rendered cell.

        In 32-bit formats a pair is rendered once, at its even index.
        """
        fmt = DisplayFormat(fmt or self.display_format)
        snapshot = self.snapshot
        if snapshot is None:
            return
        values = snapshot.values
        for i, value in enumerate(values):
            if fmt.is_32bit and i % 2:
                continue
            next_value = values[i + 1] if i + 1 < len(values) else None
            yield i, snapshot.start_address + i, format_value(value, next_value, fmt)

    def copy_selection(self, selection: Selection, fmt: Optional[DisplayFormat] = None) -> str:
        """Tab-joined rendered values for the selected indices."""
        fmt = DisplayFormat(fmt or self.display_format)
        low, high = selection.normalized()
        snapshot = self.snapshot
        if snapshot is None:
            return ""
        values = snapshot.values
        rows = []
        for i in range(max(low, 0), min(high, len(values) - 1) + 1):
            if fmt.is_32bit and i % 2:
                continue
            next_value = values[i + 1] if i + 1 < len(values) else None
            rows.append(format_value(values[i], next_value, fmt))
        return "\t".join(rows)

    # ---------- Editing ----------
    def edit_cell(self, address: int, raw_text: str) -> int:
        """Set the register at ``address`` from user text; returns the stored value."""
        value = parse_register_text(raw_text, self.display_format)
        with self._lock:
            snapshot = self._snapshot
            if snapshot is None or not snapshot.contains(address):
                raise OutOfRange(f"Address {address} is outside the monitored range")
            snapshot.values[snapshot.index_of(address)] = value
        self._notify()
        return value

    def extract_write_range(self, start_address: int, count: int) -> list[int]:
        with self._lock:
            snapshot = self._snapshot
            if snapshot is None:
                raise DataMissing()
            values = []
            for address in range(start_address, start_address + count):
                if not snapshot.contains(address):
                    raise DataMissing()
                values.append(snapshot.values[snapshot.index_of(address)])
            return values

    def reconcile_after_write(self, start_address: int, fresh_values: list[int]) -> None:
        """Overlay values read back after a write; indices outside the snapshot are ignored."""
        with self._lock:
            snapshot = self._snapshot
            if snapshot is None:
                return
            for i, value in enumerate(fresh_values):
                address = start_address + i
                if snapshot.contains(address):
                    snapshot.values[snapshot.index_of(address)] = int(value) & 0xFFFF
        self._notify()
