import json
import logging

import pytest
import structlog

from txqueue.logging_config import NOISY_LOGGERS, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    noisy = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, value in noisy.items():
        logging.getLogger(name).setLevel(value)
    structlog.reset_defaults()


def test_routes_stdlib_logging_through_structlog(restore_logging):
    setup_logging("WARNING", json_logs=True)

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
    assert logging.getLogger("httpx").level == logging.WARNING


def test_stdlib_records_render_as_json(restore_logging, capsys):
    setup_logging("INFO", json_logs=True)

    logging.getLogger("txqueue.core.queue.worker").info("Cycle finished")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "Cycle finished"
    assert payload["level"] == "info"
    assert payload["logger"] == "txqueue.core.queue.worker"
