import logging
import re
from dataclasses import dataclass
from typing import Optional

from serial.tools import list_ports

logger = logging.getLogger(__name__)

NO_PORTS_LABEL = "(no ports)"


@dataclass(frozen=True)
class SerialPortInfo:
    path: str
    manufacturer: Optional[str] = None
    description: Optional[str] = None
    vid: Optional[int] = None
    pid: Optional[int] = None


def scan_serial_ports() -> list[SerialPortInfo]:
    """List serial ports known to the OS, sorted by device path."""
    try:
        found = list(list_ports.comports())
    except OSError as e:
        logger.error("Serial port scan failed: %s", e)
        return []
    ports = [
        SerialPortInfo(
            path=p.device,
            manufacturer=getattr(p, "manufacturer", None),
            description=getattr(p, "description", None),
            vid=getattr(p, "vid", None),
            pid=getattr(p, "pid", None),
        )
        for p in found
    ]
    ports.sort(key=lambda p: p.path)
    logger.debug("Found %d serial port(s)", len(ports))
    return ports


def format_port_label(port: SerialPortInfo) -> str:
    """
    Build a friendly label for a serial port combobox entry.
    """
    label = port.path
    extras = []
    if port.description and port.description != "n/a":
        extras.append(port.description)
    if port.manufacturer:
        extras.append(port.manufacturer)
    if port.vid is not None and port.pid is not None:
        extras.append(f"VID:PID={port.vid:04X}:{port.pid:04X}")
    if extras:
        label += " – " + " ".join(extras)
    return label


def normalize_device_from_label(value: str) -> str:
    """
    Return the bare device path from a combobox label (or a path typed by hand).
    """
    if not value:
        return ""
    s = value.strip()
    if s == NO_PORTS_LABEL:
        return ""
    m = re.search(r"\((COM\d+)\)", s, flags=re.IGNORECASE)
    if m:
        return m.group(1)
    if " – " in s:
        return s.split(" – ", 1)[0].strip()
    if s.upper().startswith("COM") or s.startswith("/dev/"):
        return s.split()[0]
    return s
