"""Modbus RTU/TCP master with a register monitor and raw traffic log."""

from .engine import CustomFrameOutcome, TransactionEngine
from .errors import (
    ConnectError,
    DataMissing,
    DisconnectError,
    EditError,
    InvalidRequest,
    ModbusMonitorError,
    NotConnected,
    OutOfRange,
    ParseError,
    PayloadTooLarge,
    TransactionError,
    UnsupportedFunctionCode,
)
from .frame_codec import encode_custom_write
from .monitor import DisplayFormat, MonitorSnapshot, RegisterMonitor, Selection
from .poll import PollLoop
from .session import ModbusSession, ReadRequest, WriteRequest
from .settings import ConnectionSettings
from .traffic import RawLogEntry, TrafficLogger

__version__ = "0.1.0"
