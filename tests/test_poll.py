import logging
import threading
from unittest.mock import MagicMock

import pytest

from modbus_monitor.errors import TransactionError
from modbus_monitor.monitor import RegisterMonitor
from modbus_monitor.poll import TICK_FAILED, TICK_OK, TICK_SKIPPED, PollLoop


@pytest.fixture
def fake_engine():
    engine = MagicMock()
    engine.connected = True
    engine.busy = False
    engine.read.return_value = [1, 2, 3]
    return engine


@pytest.fixture
def loop(fake_engine):
    request = {"value": (3, 100, 3)}
    poller = PollLoop(fake_engine, RegisterMonitor(), lambda: request["value"], period=0.01)
    poller.request = request
    yield poller
    poller.stop()
    poller.join(1)


def test_tick_reads_into_monitor(loop, fake_engine):
    assert loop.tick() == TICK_OK
    fake_engine.read.assert_called_once_with(3, 100, 3)
    assert loop.monitor.snapshot.start_address == 100
    assert loop.monitor.snapshot.values == [1, 2, 3]


def test_tick_skips_when_disconnected(loop, fake_engine):
    fake_engine.connected = False
    assert loop.tick() == TICK_SKIPPED
    fake_engine.read.assert_not_called()


def test_tick_skips_when_engine_busy(loop, fake_engine):
    fake_engine.busy = True
    assert loop.tick() == TICK_SKIPPED
    fake_engine.read.assert_not_called()


@pytest.mark.parametrize("function_code", [5, 6, 15, 16, 0x41])
def test_tick_skips_non_read_codes(loop, fake_engine, function_code):
    loop.request["value"] = (function_code, 0, 1)
    assert loop.tick() == TICK_SKIPPED
    fake_engine.read.assert_not_called()


def test_tick_skips_without_request(loop, fake_engine):
    loop.request["value"] = None
    assert loop.tick() == TICK_SKIPPED


def test_tick_picks_up_new_parameters(loop, fake_engine):
    loop.tick()
    loop.request["value"] = (4, 7, 1)
    loop.tick()
    fake_engine.read.assert_called_with(4, 7, 1)


def test_failed_tick_stops_loop_and_reports(fake_engine, caplog):
    errors = []
    fake_engine.read.side_effect = TransactionError("timeout")
    poller = PollLoop(fake_engine, RegisterMonitor(), lambda: (3, 0, 1),
                      period=60, on_error=errors.append)
    poller.start()
    try:
        with caplog.at_level(logging.ERROR, logger="modbus_monitor.poll"):
            assert poller.tick() == TICK_FAILED
    finally:
        poller.stop()

    assert poller.running is False
    assert len(errors) == 1
    assert "auto-read stopped" in caplog.text
    assert poller.monitor.snapshot is None


def test_failing_error_callback_is_contained(fake_engine, caplog):
    fake_engine.read.side_effect = TransactionError("timeout")

    def bad_callback(_exc):
        raise RuntimeError("ui gone")

    poller = PollLoop(fake_engine, RegisterMonitor(), lambda: (3, 0, 1), on_error=bad_callback)
    assert poller.tick() == TICK_FAILED
    assert "Poll error callback failed" in caplog.text


def test_ticks_never_overlap(loop, fake_engine):
    entered = threading.Event()
    release = threading.Event()

    def slow_read(*args):
        entered.set()
        release.wait(2)
        return [1]

    fake_engine.read.side_effect = slow_read
    first = threading.Thread(target=loop.tick)
    first.start()
    try:
        assert entered.wait(2)
        assert loop.tick() == TICK_SKIPPED
    finally:
        release.set()
        first.join(2)
    assert fake_engine.read.call_count == 1


def test_start_runs_ticks_until_stopped(loop, fake_engine):
    ticked = threading.Event()
    loop.monitor.subscribe(lambda snap: ticked.set())

    loop.start()
    assert loop.running is True
    assert ticked.wait(2)

    loop.stop()
    loop.join(1)
    assert loop.running is False
    calls = fake_engine.read.call_count
    threading.Event().wait(0.05)
    assert fake_engine.read.call_count == calls


def test_start_twice_keeps_one_thread(loop):
    loop.start()
    thread = loop._thread
    loop.start()
    assert loop._thread is thread


def test_start_rejects_non_positive_period(fake_engine):
    poller = PollLoop(fake_engine, RegisterMonitor(), lambda: (3, 0, 1), period=0)
    with pytest.raises(ValueError):
        poller.start()
    assert poller.running is False


def test_stop_when_not_running_is_noop(loop):
    loop.stop()
    assert loop.running is False


def test_oversized_count_reported_through_on_error(connected_engine, fake_tcp_client):
    errors = []
    poller = PollLoop(connected_engine, RegisterMonitor(), lambda: (3, 0, 200),
                      period=60, on_error=errors.append)
    poller.start()
    try:
        assert poller.tick() == TICK_FAILED
    finally:
        poller.stop()

    assert poller.running is False
    assert len(errors) == 1
    fake_tcp_client.read_holding_registers.assert_not_called()


def test_unexpected_exception_stops_loop(fake_engine, caplog):
    errors = []
    fake_engine.read.side_effect = RuntimeError("driver bug")
    poller = PollLoop(fake_engine, RegisterMonitor(), lambda: (3, 0, 1),
                      period=60, on_error=errors.append)
    poller.start()
    try:
        assert poller.tick() == TICK_FAILED
    finally:
        poller.stop()

    assert poller.running is False
    assert isinstance(errors[0], RuntimeError)
    assert "auto-read stopped" in caplog.text


def test_tick_after_stop_does_not_read(loop, fake_engine):
    stopped = threading.Event()
    stopped.set()
    assert loop.tick(stopped) == TICK_SKIPPED
    fake_engine.read.assert_not_called()
