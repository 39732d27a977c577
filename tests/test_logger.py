"""Tests for structlog setup and the log file lifecycle."""

import json

import structlog

from tccsync.utils import logger as logger_module
from tccsync.utils.logger import close_log_file, setup_logging


def test_log_file_receives_json_lines(tmp_path):
    path = tmp_path / "tccsync.log"

    setup_logging(level="INFO", log_file=str(path))
    structlog.get_logger().info("Sync started", backend="fake")
    close_log_file()

    line = json.loads(path.read_text(encoding="utf-8").splitlines()[-1])
    assert line["event"] == "Sync started"
    assert line["backend"] == "fake"
    assert line["level"] == "info"


def test_reconfigure_closes_previous_file(tmp_path):
    setup_logging(log_file=str(tmp_path / "first.log"))
    first = logger_module._log_stream

    setup_logging(log_file=str(tmp_path / "second.log"))

    assert first.closed
    assert logger_module._log_stream is not first
    assert not logger_module._log_stream.closed


def test_close_log_file_is_idempotent(tmp_path):
    setup_logging(log_file=str(tmp_path / "app.log"))
    stream = logger_module._log_stream

    close_log_file()
    close_log_file()

    assert stream.closed
    assert logger_module._log_stream is None


def test_stderr_logging_opens_no_file(tmp_path):
    setup_logging(log_file=str(tmp_path / "app.log"))
    stream = logger_module._log_stream

    setup_logging(level="DEBUG")

    assert stream.closed
    assert logger_module._log_stream is None
