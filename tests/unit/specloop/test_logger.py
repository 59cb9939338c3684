"""Tests for the stderr logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from specloop.logger import bind_run, get_logger, setup_logging


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


def test_stdlib_and_structlog_share_json_output(restore_logging: None, capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging(json_output=True)
    bind_run("run-1")
    logging.getLogger("specloop.coordinator").warning("worktree %s failed", "agent-3-1")
    get_logger("specloop.cli").error("cli.failed", code="E_DEADLOCK")

    captured = capsys.readouterr()
    assert captured.out == ""
    first, second = (json.loads(line) for line in captured.err.splitlines())
    assert first["event"] == "worktree agent-3-1 failed"
    assert first["logger"] == "specloop.coordinator"
    assert first["run_id"] == "run-1"
    assert second["event"] == "cli.failed"
    assert second["code"] == "E_DEADLOCK"
    assert second["level"] == "error"


def test_debug_flag_controls_level(restore_logging: None, capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging()
    logging.getLogger("specloop").info("quiet")
    assert capsys.readouterr().err == ""

    setup_logging(debug=True)
    logging.getLogger("specloop").debug("loud")
    assert "loud" in capsys.readouterr().err
