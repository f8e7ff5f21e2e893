"""Connection lifecycle and function-code dispatch on top of pymodbus."""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from pymodbus.client import ModbusSerialClient, ModbusTcpClient

from .errors import (
    ConnectError,
    DisconnectError,
    InvalidRequest,
    NotConnected,
    TransactionError,
    UnsupportedFunctionCode,
)
from .frame_codec import custom_pdu_classes, encode_custom_write
from .settings import ConnectionSettings
from .traffic import TrafficLogger

logger = logging.getLogger(__name__)

READ_FUNCTIONS = {
    1: ("read_coils", "Coils"),
    2: ("read_discrete_inputs", "Discrete Inputs"),
    3: ("read_holding_registers", "Holding Registers"),
    4: ("read_input_registers", "Input Registers"),
}
BIT_READS = (1, 2)
WRITE_FUNCTIONS = {
    5: "write_coil",
    6: "write_register",
    15: "write_coils",
    16: "write_registers",
}

# Per-request item limits of the Modbus application protocol
MAX_COUNTS = {1: 2000, 2: 2000, 3: 125, 4: 125, 15: 1968, 16: 123}

STATE_DISCONNECTED = "Disconnected"
STATE_CONNECTED = "Connected"


@dataclass(frozen=True)
class CustomFrameOutcome:
    """Result of sending a vendor-specific frame. Never raised, only returned."""
    function_code: int
    ok: bool
    error: Optional[str] = None


def check_extent(address: int, extent: int, function_code: Optional[int] = None) -> None:
    if not 0 <= address <= 0xFFFF:
        raise InvalidRequest(f"Address out of range: {address}")
    if extent < 1:
        raise InvalidRequest(f"Count must be >= 1, got {extent}")
    if address + extent - 1 > 0xFFFF:
        raise InvalidRequest(
            f"Request {address}+{extent} runs past the end of the address space"
        )
    limit = MAX_COUNTS.get(function_code)
    if limit is not None and extent > limit:
        raise InvalidRequest(f"FC{function_code} allows at most {limit} items per request, got {extent}")


def _as_list(values) -> list:
    if isinstance(values, (list, tuple)):
        return list(values)
    return [values]


class TransactionEngine:
    """Owns the single connection handle and runs one transaction at a time.

    Every transaction (and connect/disconnect) holds ``_client_lock``, so a
    caller that wants to skip instead of wait can check ``busy`` first.
    After each read or write the last raw request/response seen by the
    transport is published to ``traffic``.
    """

    def __init__(self, traffic: Optional[TrafficLogger] = None):
        self.traffic = traffic if traffic is not None else TrafficLogger()
        self._client = None
        self._settings: Optional[ConnectionSettings] = None
        self._slave_id = 1
        self._client_lock = threading.Lock()
        self._last_tx: Optional[bytes] = None
        self._last_rx: Optional[bytes] = None

    # ---------- State ----------
    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def busy(self) -> bool:
        return self._client_lock.locked()

    @property
    def state(self) -> str:
        return STATE_CONNECTED if self.connected else STATE_DISCONNECTED

    @property
    def settings(self) -> Optional[ConnectionSettings]:
        return self._settings

    # ---------- Connection ----------
    def _open_client(self, settings: ConnectionSettings):
        if settings.mode == "TCP":
            return ModbusTcpClient(
                host=settings.ip_address.strip(),
                port=int(settings.port),
                timeout=settings.timeout_s,
                retries=0,
                trace_packet=self._trace_packet,
            )
        return ModbusSerialClient(
            port=settings.serial_port.strip(),
            baudrate=int(settings.baud_rate),
            bytesize=int(settings.data_bits),
            parity=settings.pymodbus_parity,
            stopbits=int(settings.stop_bits),
            timeout=settings.timeout_s,
            retries=0,
            trace_packet=self._trace_packet,
        )

    def _close_current(self) -> None:
        client, self._client = self._client, None
        self._settings = None
        if client is None:
            return
        try:
            client.close()
        except Exception as e:
            logger.warning("Error closing old client: %s", e)

    def connect(self, settings: ConnectionSettings) -> None:
        with self._client_lock:
            self._close_current()
            try:
                settings.validate()
            except ConnectError as e:
                raise ConnectError(f"Connection failed: {e}") from e
            client = self._open_client(settings)
            try:
                ok = client.connect()
                cause = None if ok else (
                    f"unable to reach {settings.ip_address}:{settings.port}"
                    if settings.mode == "TCP"
                    else f"could not open serial port {settings.serial_port}"
                )
            except Exception as e:
                ok, cause = False, e
            if not ok:
                try:
                    client.close()
                except Exception as e:
                    logger.debug("Close after failed connect raised: %s", e)
                error = ConnectError(f"Connection failed: {cause}")
                if isinstance(cause, BaseException):
                    raise error from cause
                raise error
            self._client = client
            self._settings = settings
            self._slave_id = int(settings.slave_id)
        logger.info("Connected: %s, timeout %d ms", settings.describe(), settings.timeout_ms)

    def disconnect(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
            self._settings = None
            if client is None:
                return
            try:
                client.close()
            except Exception as e:
                raise DisconnectError(f"Disconnect failed: {e}") from e
        logger.info("Disconnected from device.")

    # ---------- Telemetry ----------
    def _trace_packet(self, sending: bool, data: bytes) -> bytes:
        if sending:
            self._last_tx = bytes(data)
        else:
            self._last_rx = bytes(data)
        return data

    def _reset_trace(self) -> None:
        self._last_tx = None
        self._last_rx = None

    def _publish_traffic(self) -> None:
        tx, rx = self._last_tx, self._last_rx
        if not tx and not rx:
            return
        self.traffic.publish(tx or None, rx or None)

    # ---------- Transactions ----------
    def _require_client(self):
        if self._client is None:
            raise NotConnected()
        return self._client

    def read(self, function_code: int, address: int, count: int) -> list[int]:
        """Read ``count`` items; coil and discrete input reads come back as 0/1."""
        self._require_client()
        if function_code not in READ_FUNCTIONS:
            raise UnsupportedFunctionCode(function_code, "read")
        check_extent(address, count, function_code)
        method, label = READ_FUNCTIONS[function_code]

        with self._client_lock:
            client = self._require_client()
            self._reset_trace()
            try:
                rr = getattr(client, method)(address=address, count=count, device_id=self._slave_id)
                if rr.isError():
                    raise TransactionError(f"Read {label} @ {address} failed: {rr}")
                if function_code in BIT_READS:
                    values = [1 if b else 0 for b in list(rr.bits or [])[:count]]
                else:
                    values = [int(r) & 0xFFFF for r in (rr.registers or [])]
            except TransactionError:
                raise
            except Exception as e:
                raise TransactionError(f"Read {label} @ {address} failed: {e}") from e
            finally:
                self._publish_traffic()
        logger.debug("Read FC%d @ %d x%d -> %s", function_code, address, count, values)
        return values

    def write(self, function_code: int, address: int, values) -> None:
        self._require_client()
        if function_code in WRITE_FUNCTIONS:
            self._write_standard(function_code, address, _as_list(values))
            return
        if not 0 < function_code < 0x80:
            raise UnsupportedFunctionCode(function_code, "write")

        payload = encode_custom_write(address, _as_list(values))
        outcome = self.send_custom_frame(function_code, payload)
        # A rejected custom frame is a warning, never an error.
        if not outcome.ok:
            logger.warning("CustomFC %d warning: %s", function_code, outcome.error)

    def _write_standard(self, function_code: int, address: int, values: list) -> None:
        if not values:
            raise InvalidRequest("No values to write")
        multiple = function_code in (15, 16)
        check_extent(address, len(values) if multiple else 1, function_code)
        if function_code in (5, 15):
            payload = [bool(v) for v in values]
        else:
            payload = [int(v) & 0xFFFF for v in values]

        with self._client_lock:
            client = self._require_client()
            self._reset_trace()
            try:
                method = getattr(client, WRITE_FUNCTIONS[function_code])
                if multiple:
                    rr = method(address=address, values=payload, device_id=self._slave_id)
                else:
                    rr = method(address=address, value=payload[0], device_id=self._slave_id)
                if rr.isError():
                    raise TransactionError(f"Write FC{function_code} @ {address} failed: {rr}")
            except TransactionError:
                raise
            except Exception as e:
                raise TransactionError(f"Write FC{function_code} @ {address} failed: {e}") from e
            finally:
                self._publish_traffic()
        logger.debug("Write FC%d @ %d <- %s", function_code, address, payload)

    def send_custom_frame(self, function_code: int, payload: bytes) -> CustomFrameOutcome:
        """Send a pre-encoded payload under ``function_code`` and report what happened."""
        request_cls, response_cls = custom_pdu_classes(function_code)
        with self._client_lock:
            client = self._client
            if client is None:
                return CustomFrameOutcome(function_code, False, "not connected")
            self._reset_trace()
            try:
                client.register(response_cls)
                request = request_cls(payload)
                request.dev_id = self._slave_id
                response = client.execute(False, request)
            except Exception as e:
                return CustomFrameOutcome(function_code, False, str(e))
            finally:
                self._publish_traffic()
        if response is None:
            return CustomFrameOutcome(function_code, False, "no response")
        if response.isError():
            return CustomFrameOutcome(function_code, False, str(response))
        return CustomFrameOutcome(function_code, True)
