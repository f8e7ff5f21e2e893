import copy
import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from .errors import ConnectError

logger = logging.getLogger(__name__)

MODES = ("RTU", "TCP")
PARITIES = {"none": "N", "even": "E", "odd": "O"}

# Common baud rates for the RTU combobox
BAUD_RATES = [
    110, 300, 600, 1200, 2400, 4800, 9600, 14400, 19200,
    38400, 56000, 57600, 115200, 128000, 256000,
]

PREFERENCES_PATH = Path.home() / ".modbus_monitor.json"


@dataclass
class ConnectionSettings:
    """Parameters for one connection.

    Both the TCP and the RTU field sets are kept so switching ``mode`` back and
    forth does not lose what was typed; only the active mode's fields are used.
    """
    mode: str = "RTU"
    slave_id: int = 1
    timeout_ms: int = 1000
    # TCP
    ip_address: str = "127.0.0.1"
    port: int = 502
    # RTU
    serial_port: str = ""
    baud_rate: int = 115200
    data_bits: int = 8
    parity: str = "none"
    stop_bits: int = 1

    def validate(self) -> None:
        if self.mode not in MODES:
            raise ConnectError(f"Unknown connection mode: {self.mode!r}")
        if not 1 <= int(self.slave_id) <= 247:
            raise ConnectError(f"Slave id must be 1-247, got {self.slave_id}")
        if int(self.timeout_ms) <= 0:
            raise ConnectError("Timeout must be > 0 ms")
        if self.mode == "TCP":
            if not (self.ip_address or "").strip():
                raise ConnectError("TCP mode requires ip_address")
            if not 0 < int(self.port) <= 0xFFFF:
                raise ConnectError(f"Invalid TCP port: {self.port}")
        else:
            if not (self.serial_port or "").strip():
                raise ConnectError("RTU mode requires serial_port")
            if int(self.data_bits) not in (7, 8):
                raise ConnectError(f"Data bits must be 7 or 8, got {self.data_bits}")
            if self.parity not in PARITIES:
                raise ConnectError(f"Parity must be none, even or odd, got {self.parity!r}")
            if int(self.stop_bits) not in (1, 2):
                raise ConnectError(f"Stop bits must be 1 or 2, got {self.stop_bits}")

    @property
    def timeout_s(self) -> float:
        return int(self.timeout_ms) / 1000.0

    @property
    def pymodbus_parity(self) -> str:
        return PARITIES.get(self.parity, "N")

    def describe(self) -> str:
        if self.mode == "TCP":
            return f"TCP {self.ip_address}:{self.port} (unit {self.slave_id})"
        return (
            f"RTU {self.serial_port}@{self.baud_rate} "
            f"{self.data_bits}{self.pymodbus_parity}{self.stop_bits} (unit {self.slave_id})"
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ConnectionSettings":
        """Build settings from a saved dict, ignoring unknown keys."""
        data = data or {}
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            f = known.get(key)
            if f is None or value is None:
                continue
            default = getattr(cls, key)
            if isinstance(default, int) and not isinstance(value, bool):
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    logger.warning("Ignoring invalid %s=%r in saved settings", key, value)
                    continue
            kwargs[key] = value
        return cls(**kwargs)


# ------------- Preference persistence (UI layer) -------------
DEFAULT_PREFERENCES = {
    "connection": ConnectionSettings().to_dict(),
    "command": {
        "standard_fc": "3",
        "custom_fc": "",
        "custom_mode": False,
        "address": "0",
        "addr_format": "DEC",
        "count": "10",
    },
    "display": {
        "data_format": "DEC_UNSIGNED",
    },
    "poll": {
        "interval": "2.0",
    },
    "log": {
        "filter": "All",
        "max_lines": "100",
        "show_raw": False,
    },
    "window": {
        "geometry": "1100x720",
    },
}


def _merge(default, data):
    if isinstance(default, dict):
        data = data if isinstance(data, dict) else {}
        return {k: _merge(v, data.get(k, v)) for k, v in default.items()}
    return data if data is not None else default


def load_preferences(path: Path = PREFERENCES_PATH) -> dict:
    """Load saved preferences merged over the defaults."""
    path = Path(path)
    if not path.exists():
        return copy.deepcopy(DEFAULT_PREFERENCES)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Could not read preferences from %s: %s", path, e)
        return copy.deepcopy(DEFAULT_PREFERENCES)
    return _merge(DEFAULT_PREFERENCES, data)


def save_preferences(preferences: dict, path: Path = PREFERENCES_PATH) -> None:
    try:
        Path(path).write_text(json.dumps(preferences, indent=2), encoding="utf-8")
    except OSError as e:
        logger.warning("Could not save preferences to %s: %s", path, e)
