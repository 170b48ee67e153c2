"""Structured logging setup for the app and pipeline loggers"""

import json
import logging
import sys

from flask import Flask

from flask_app.utils.logging_config import JSONFormatter, setup_logging


def _record(**extra):
    record = logging.LogRecord("flask_app.sync", logging.WARNING, __file__, 10, "run %s failed", (7,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    payload = json.loads(JSONFormatter().format(_record(sync_run_id=7, sync_source="ghl")))

    assert payload["message"] == "run 7 failed"
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "flask_app.sync"
    assert payload["sync_run_id"] == 7
    assert payload["sync_source"] == "ghl"
    assert "args" not in payload


def test_json_formatter_renders_exceptions():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("flask_app", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

    payload = json.loads(JSONFormatter().format(record))

    assert "ValueError: boom" in payload["exception"]


def test_setup_logging_is_idempotent_and_shares_handlers(tmp_path):
    app = Flask(__name__)
    app.config.update(
        LOG_LEVEL="INFO",
        LOG_FORMAT="json",
        ENABLE_CONSOLE_LOGGING=True,
        ENABLE_FILE_LOGGING=True,
        LOG_DIR=str(tmp_path / "logs"),
    )

    setup_logging(app)
    setup_logging(app)

    ours = [handler for handler in app.logger.handlers if getattr(handler, "_client_sync_handler", False)]
    assert len(ours) == 2
    assert all(isinstance(handler.formatter, JSONFormatter) for handler in ours)
    package_logger = logging.getLogger("flask_app")
    assert package_logger.handlers == ours
    assert package_logger.level == logging.INFO
    assert (tmp_path / "logs" / "client_sync.log").exists()

    for handler in ours:
        app.logger.removeHandler(handler)
        handler.close()
    package_logger.handlers = []


def test_text_format_when_configured():
    app = Flask(__name__)
    app.config.update(LOG_FORMAT="text", ENABLE_CONSOLE_LOGGING=True, ENABLE_FILE_LOGGING=False)

    setup_logging(app)

    [handler] = [h for h in app.logger.handlers if getattr(h, "_client_sync_handler", False)]
    assert not isinstance(handler.formatter, JSONFormatter)
    app.logger.removeHandler(handler)
    logging.getLogger("flask_app").handlers = []
