"""Raw PDU payloads for vendor-specific ("custom") function codes.

pymodbus encodes the standard function codes itself. Anything else is sent as
a hand-built payload wrapped in a small ``ModbusPDU`` subclass so the frame still
goes through pymodbus' RTU/TCP framing (slave id, CRC or MBAP header).

Custom write payload layout, big-endian::

    [address:2][registerCount:2][byteCount:1][register0:2]...[registerN-1:2]
"""

import struct
from functools import lru_cache

from pymodbus.pdu import ModbusPDU

from .errors import InvalidRequest, PayloadTooLarge

MAX_BYTE_COUNT = 255
STANDARD_CODES = frozenset((1, 2, 3, 4, 5, 6, 15, 16))


def to_int16(value: int) -> int:
    """Reinterpret a register value (0..65535 or -32768..32767) as signed 16-bit."""
    v = int(value)
    if not -0x8000 <= v <= 0xFFFF:
        raise InvalidRequest(f"Register value out of 16-bit range: {v}")
    return v - 0x10000 if v > 0x7FFF else v


def encode_custom_write(address: int, registers: list[int]) -> bytes:
    if isinstance(address, bool) or not isinstance(address, int) or not 0 <= address <= 0xFFFF:
        raise InvalidRequest(f"Invalid Address: {address!r}")
    count = len(registers)
    byte_count = count * 2
    if byte_count > MAX_BYTE_COUNT:
        raise PayloadTooLarge(byte_count)
    header = struct.pack(">HHB", address, count, byte_count)
    body = struct.pack(f">{count}h", *(to_int16(r) for r in registers))
    return header + body


# ------------- pymodbus PDU wrappers -------------
class RawRequest(ModbusPDU):
    """Request whose payload is already encoded."""

    function_code = 0

    def __init__(self, payload: bytes = b"", **kwargs):
        super().__init__(**kwargs)
        self.payload = bytes(payload)

    def encode(self) -> bytes:
        return self.payload

    def decode(self, data: bytes) -> None:
        self.payload = bytes(data)


class RawResponse(RawRequest):
    """Response to a custom write; assumed to echo address + count like FC16."""

    # slave id + function code + 4 data bytes + CRC
    rtu_frame_size = 8


@lru_cache(maxsize=None)
def custom_pdu_classes(function_code: int) -> tuple[type[RawRequest], type[RawResponse]]:
    """Return (request, response) PDU classes bound to ``function_code``."""
    if not 0 < function_code < 0x80:
        raise InvalidRequest(f"Invalid custom function code: {function_code}")
    suffix = f"{function_code:02X}"
    request = type(f"CustomRequest{suffix}", (RawRequest,), {"function_code": function_code})
    response = type(f"CustomResponse{suffix}", (RawResponse,), {"function_code": function_code})
    return request, response
