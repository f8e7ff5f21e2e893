# tests/conftest.py
import pytest
from unittest.mock import MagicMock

from modbus_monitor.engine import TransactionEngine
from modbus_monitor.monitor import RegisterMonitor
from modbus_monitor.settings import ConnectionSettings
from modbus_monitor.traffic import TrafficLogger


MODULE = "modbus_monitor.engine"


def make_response(registers=None, bits=None, error=False):
    """Fake pymodbus response object."""
    rr = MagicMock()
    rr.isError.return_value = error
    rr.registers = registers or []
    rr.bits = bits or []
    return rr


def _fake_client():
    client = MagicMock()
    client.connect.return_value = True
    client.close.return_value = None
    client.read_holding_registers.return_value = make_response(registers=[0])
    client.write_register.return_value = make_response()
    client.write_registers.return_value = make_response()
    client.write_coil.return_value = make_response()
    client.write_coils.return_value = make_response()
    client.execute.return_value = make_response()
    return client


@pytest.fixture
def fake_tcp_client(monkeypatch):
    """Patch ModbusTcpClient to avoid real network activity.

    Constructor kwargs are kept on ``client.init_kwargs`` so tests can reach
    the ``trace_packet`` hook.
    """
    mock_client = _fake_client()

    def factory(*args, **kwargs):
        mock_client.init_kwargs = kwargs
        return mock_client

    monkeypatch.setattr(f"{MODULE}.ModbusTcpClient", factory)
    return mock_client


@pytest.fixture
def fake_serial_client(monkeypatch):
    """Patch ModbusSerialClient to avoid opening a serial port."""
    mock_client = _fake_client()

    def factory(*args, **kwargs):
        mock_client.init_kwargs = kwargs
        return mock_client

    monkeypatch.setattr(f"{MODULE}.ModbusSerialClient", factory)
    return mock_client


@pytest.fixture
def tcp_settings():
    return ConnectionSettings(mode="TCP", slave_id=1, timeout_ms=1000,
                              ip_address="127.0.0.1", port=1502)


@pytest.fixture
def rtu_settings():
    return ConnectionSettings(mode="RTU", slave_id=3, serial_port="COM3",
                              baud_rate=9600, parity="even")


@pytest.fixture
def traffic():
    return TrafficLogger()


@pytest.fixture
def engine(traffic):
    return TransactionEngine(traffic)


@pytest.fixture
def connected_engine(engine, fake_tcp_client, tcp_settings):
    engine.connect(tcp_settings)
    return engine


@pytest.fixture
def monitor():
    return RegisterMonitor()
