import logging

import pytest

from modbus_monitor.logbuffer import LogBufferHandler, level_label, passes_filter, setup_logging


@pytest.fixture
def buffered_logger():
    handler = LogBufferHandler(capacity=3)
    log = logging.getLogger("modbus_monitor.tests")
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)
    yield log, handler
    log.removeHandler(handler)


def test_level_label():
    assert level_label(logging.ERROR) == "ERROR"
    assert level_label(logging.CRITICAL) == "ERROR"
    assert level_label(logging.WARNING) == "WARN"
    assert level_label(logging.INFO) == "INFO"
    assert level_label(logging.DEBUG) == "DEBUG"


@pytest.mark.parametrize("level, selected, expected", [
    ("INFO", "All", True),
    ("INFO", "WARN", False),
    ("ERROR", "WARN", True),
    ("WARN", "WARN", True),
    ("DEBUG", "INFO", False),
    ("TX", "ERROR", True),
])
def test_passes_filter(level, selected, expected):
    assert passes_filter(level, selected) is expected


def test_buffer_keeps_last_lines(buffered_logger):
    log, handler = buffered_logger
    for i in range(5):
        log.info("line %d", i)

    lines = handler.get_lines()
    assert [msg for _, _, msg in lines] == ["line 2", "line 3", "line 4"]
    assert all(lvl == "INFO" for _, lvl, _ in lines)


def test_get_lines_filters_by_level(buffered_logger):
    log, handler = buffered_logger
    log.info("ok")
    log.warning("careful")
    log.error("broken")

    assert [msg for _, _, msg in handler.get_lines("WARN")] == ["careful", "broken"]


def test_listener_receives_each_line(buffered_logger):
    log, handler = buffered_logger
    seen = []
    handler.listener = seen.append
    log.warning("hello")
    assert seen[0][1:] == ("WARN", "hello")


def test_set_capacity_and_clear(buffered_logger):
    log, handler = buffered_logger
    for i in range(3):
        log.info("x%d", i)
    handler.set_capacity(2)
    assert handler.capacity == 2
    assert len(handler) == 2
    handler.clear()
    assert handler.get_lines() == []


def test_setup_logging_does_not_duplicate_handlers():
    handler = LogBufferHandler()
    log = setup_logging(logging.INFO, handler)
    try:
        setup_logging(logging.INFO, handler)
        assert log.name == "modbus_monitor"
        assert log.handlers.count(handler) == 1
        assert sum(type(h) is logging.StreamHandler for h in log.handlers) == 1
    finally:
        log.removeHandler(handler)
