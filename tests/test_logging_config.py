import json
import logging
import sys

import pytest

from thumbforge.logging_config import JSONFormatter, configure_logging
from thumbforge.models import LoggingConfig


@pytest.fixture
def root_logger():
    """Restore the root logger after configure_logging() replaces its handlers."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg="Job %s completed", args=("abc",), exc_info=None):
    return logging.LogRecord("thumbforge.queue.worker", logging.INFO, __file__, 1, msg, args, exc_info)


def test_json_formatter_fields():
    entry = json.loads(JSONFormatter().format(_record()))

    assert entry["message"] == "Job abc completed"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "thumbforge.queue.worker"
    assert "timestamp" in entry
    assert "exception" not in entry


def test_json_formatter_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record(exc_info=sys.exc_info())

    entry = json.loads(JSONFormatter().format(record))

    assert "RuntimeError: boom" in entry["exception"]


def test_configure_stderr_only(root_logger):
    configure_logging(LoggingConfig(level="warning"))

    assert root_logger.level == logging.WARNING
    assert len(root_logger.handlers) == 1


def test_configure_rotating_file(root_logger, tmp_path):
    log_file = tmp_path / "logs" / "thumbforge.log"
    configure_logging(LoggingConfig(format="json", file=str(log_file)))

    logging.getLogger("thumbforge.test").info("hello %s", "world")
    for handler in root_logger.handlers:
        handler.flush()

    line = log_file.read_text().strip().splitlines()[-1]
    assert json.loads(line)["message"] == "hello world"


def test_reconfigure_replaces_handlers(root_logger):
    configure_logging(LoggingConfig())
    configure_logging(LoggingConfig())

    assert len(root_logger.handlers) == 1
