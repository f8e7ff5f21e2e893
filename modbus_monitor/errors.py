"""Exception types raised by the Modbus master core."""


class ModbusMonitorError(Exception):
    """Base class for every error raised by modbus_monitor."""


# ------------- Connection -------------
class ConnectError(ModbusMonitorError):
    pass


class DisconnectError(ModbusMonitorError):
    pass


# ------------- Transactions -------------
class TransactionError(ModbusMonitorError):
    """Transport failure, exception response or timeout."""


class NotConnected(TransactionError):
    def __init__(self, message: str = "Modbus client is not connected."):
        super().__init__(message)


class UnsupportedFunctionCode(TransactionError):
    def __init__(self, function_code: int, kind: str = "read"):
        self.function_code = function_code
        super().__init__(f"Unsupported {kind} function code: {function_code}")


class InvalidRequest(TransactionError):
    pass


class PayloadTooLarge(ModbusMonitorError):
    def __init__(self, byte_count: int):
        self.byte_count = byte_count
        super().__init__(
            f"Data length ({byte_count} bytes) exceeds the maximum capacity (255) "
            "for a single-byte Byte Count field."
        )


# ------------- Monitor edits -------------
class EditError(ModbusMonitorError):
    pass


class ParseError(EditError):
    pass


class OutOfRange(EditError):
    pass


class DataMissing(EditError):
    def __init__(self, message: str = "Data missing in monitor range"):
        super().__init__(message)
