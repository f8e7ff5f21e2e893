"""Command surface used by front ends: one engine, one monitor, one poller."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .engine import TransactionEngine
from .errors import DisconnectError, ModbusMonitorError, ParseError
from .monitor import DisplayFormat, RegisterMonitor
from .poll import DEFAULT_PERIOD_S, POLLABLE_CODES, PollLoop
from .ports import SerialPortInfo, scan_serial_ports
from .settings import ConnectionSettings
from .traffic import TrafficLogger

logger = logging.getLogger(__name__)

STANDARD_FUNCTION_CODES = {
    1: "01 Read Coils",
    2: "02 Read Discrete Inputs",
    3: "03 Read Holding Registers",
    4: "04 Read Input Registers",
    5: "05 Write Single Coil",
    6: "06 Write Single Register",
    15: "15 Write Multiple Coils",
    16: "16 Write Multiple Registers",
}


@dataclass(frozen=True)
class ReadRequest:
    function_code: int
    address: int
    count: int


@dataclass(frozen=True)
class WriteRequest:
    function_code: int
    address: int
    values: int | list[int]


@dataclass(frozen=True)
class RefreshOutcome:
    ok: bool
    values: Optional[list[int]] = None
    error: Optional[str] = None


# ------------- Parsing helpers -------------
def parse_function_code(text: str) -> int:
    s = str(text).strip()
    try:
        fc = int(s[2:], 16) if s.lower().startswith("0x") else int(s, 10)
    except ValueError:
        raise ParseError(f"Invalid function code: {text!r}") from None
    if not 1 <= fc <= 0xFF:
        raise ParseError(f"Function code out of range: {fc}")
    return fc


def parse_address(text: str, addr_format: str = "DEC") -> int:
    s = str(text).strip()
    try:
        if s.lower().startswith("0x"):
            addr = int(s[2:], 16)
        else:
            addr = int(s, 16 if addr_format == "HEX" else 10)
    except ValueError:
        raise ParseError("Invalid Address") from None
    if not 0 <= addr <= 0xFFFF:
        raise ParseError(f"Address out of range: {addr}")
    return addr


def format_address(addr: int, addr_format: str = "DEC") -> str:
    if addr_format == "HEX":
        return f"{addr:04X}"
    return str(addr)


def is_write_command(function_code: int, custom: bool = False) -> bool:
    """Standard mode writes only for 6/16; custom mode writes for anything but 1-4."""
    if custom:
        return function_code not in POLLABLE_CODES
    return function_code in (6, 16)


class ModbusSession:
    def __init__(self, poll_period: float = DEFAULT_PERIOD_S,
                 display_format: DisplayFormat = DisplayFormat.DEC_UNSIGNED,
                 on_poll_error: Optional[Callable[[Exception], None]] = None):
        self.traffic = TrafficLogger()
        self.engine = TransactionEngine(self.traffic)
        self.monitor = RegisterMonitor(display_format)
        self.poll_request: Optional[ReadRequest] = None
        self.poller = PollLoop(
            self.engine,
            self.monitor,
            self._current_poll_request,
            period=poll_period,
            on_error=on_poll_error,
        )

    # ---------- Connection ----------
    @property
    def connected(self) -> bool:
        return self.engine.connected

    def connect(self, settings: ConnectionSettings) -> None:
        self.engine.connect(settings)

    def disconnect(self) -> None:
        self.poller.stop()
        self.engine.disconnect()

    def close(self) -> None:
        self.poller.stop()
        try:
            self.engine.disconnect()
        except DisconnectError as e:
            logger.warning("%s", e)

    def scan_serial_ports(self) -> list[SerialPortInfo]:
        return scan_serial_ports()

    # ---------- Raw commands ----------
    def read(self, request: ReadRequest) -> list[int]:
        return self.engine.read(request.function_code, request.address, request.count)

    def write(self, request: WriteRequest) -> None:
        self.engine.write(request.function_code, request.address, request.values)

    # ---------- Monitor commands ----------
    def read_into_monitor(self, function_code: int, address: int, count: int) -> list[int]:
        values = self.engine.read(function_code, address, count)
        self.monitor.replace(address, values)
        logger.info("Read %d items from %d", len(values), address)
        return values

    def write_from_monitor(self, function_code: int, address: int, count: int,
                           custom: bool = False) -> int:
        """Write ``count`` monitored values starting at ``address``; returns the code sent.

        The values come from the snapshot, so the range must have been read first.
        """
        values = self.monitor.extract_write_range(address, count)
        write_fc = function_code
        if not custom and function_code in POLLABLE_CODES:
            write_fc = 6 if count == 1 else 16
        self.engine.write(write_fc, address, values[0] if count == 1 else values)
        logger.info("Write OK to %d (FC%d, %d value(s))", address, write_fc, count)

        refresh = self._refresh_after_write(function_code, address, count)
        # The write already succeeded; a failed read-back is only noted.
        if not refresh.ok:
            logger.debug("Auto-refresh after write skipped: %s", refresh.error)
        return write_fc

    def _refresh_after_write(self, function_code: int, address: int, count: int) -> RefreshOutcome:
        if not self.engine.connected:
            return RefreshOutcome(False, error="not connected")
        read_fc = 1 if function_code in (5, 15) else 3
        try:
            fresh = self.engine.read(read_fc, address, count)
        except ModbusMonitorError as e:
            return RefreshOutcome(False, error=str(e))
        self.monitor.reconcile_after_write(address, fresh)
        return RefreshOutcome(True, values=fresh)

    # ---------- Auto-read ----------
    def _current_poll_request(self):
        request = self.poll_request
        if request is None:
            return None
        return request.function_code, request.address, request.count

    def start_polling(self, request: ReadRequest, period: Optional[float] = None) -> None:
        self.poll_request = request
        if period is not None:
            self.poller.period = float(period)
        self.poller.start()

    def stop_polling(self) -> None:
        self.poller.stop()
