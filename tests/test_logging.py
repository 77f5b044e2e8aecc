"""Tests for setup_logging: one root handler shared by structlog and stdlib loggers."""

import json
import logging

import pytest
import structlog

from rates.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    root_level = root.level
    names = ("uvicorn", "uvicorn.error", "uvicorn.access", "ccxt", "asyncio")
    loggers = {n: (logging.getLogger(n).level, logging.getLogger(n).propagate) for n in names}
    yield
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(root_level)
    for name, (level, propagate) in loggers.items():
        logging.getLogger(name).setLevel(level)
        logging.getLogger(name).propagate = propagate
    structlog.reset_defaults()


def test_single_root_handler_at_requested_level() -> None:
    setup_logging("debug", "json")
    setup_logging("DEBUG", "json")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
    assert root.level == logging.DEBUG


def test_unknown_level_falls_back_to_info() -> None:
    setup_logging("chatty")
    assert logging.getLogger().level == logging.INFO


def test_third_party_loggers_routed_and_quieted() -> None:
    setup_logging("DEBUG", "json")

    assert logging.getLogger("uvicorn").handlers == []
    assert logging.getLogger("uvicorn").propagate is True
    assert logging.getLogger("uvicorn.error").propagate is True
    for name in ("ccxt", "asyncio", "uvicorn.access"):
        assert logging.getLogger(name).level == logging.WARNING


def test_json_lines_for_structlog_and_stdlib(capsys) -> None:
    setup_logging("INFO", "json")

    get_logger("rates.test").info("cycle_done", appended=3)
    logging.getLogger("uvicorn.error").info("server started")

    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    assert lines[0]["event"] == "cycle_done"
    assert lines[0]["appended"] == 3
    assert lines[0]["level"] == "info"
    assert lines[1]["event"] == "server started"
    assert lines[1]["logger"] == "uvicorn.error"
    assert all("timestamp" in line for line in lines)
