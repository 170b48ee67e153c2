# flask_app/utils/logging_config.py

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Attributes present on every LogRecord; anything else came in through ``extra=``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line, including ``extra`` fields"""

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


TEXT_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app):
    """Configure the Flask app logger from monitoring config values"""
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app)

    # Re-running setup (tests) must not stack duplicate handlers
    for handler in list(app.logger.handlers):
        if getattr(handler, "_client_sync_handler", False):
            app.logger.removeHandler(handler)
            handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        console_handler._client_sync_handler = True
        app.logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "client_sync.log"),
            maxBytes=app.config.get("LOG_FILE_MAX_BYTES", 10485760),
            backupCount=app.config.get("LOG_FILE_BACKUP_COUNT", 10),
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        file_handler._client_sync_handler = True
        app.logger.addHandler(file_handler)

    app.logger.setLevel(level)
    # Pipeline modules log through ``flask_app.*`` loggers; route them to the same handlers
    package_logger = logging.getLogger("flask_app")
    package_logger.setLevel(level)
    package_logger.handlers = [h for h in app.logger.handlers if getattr(h, "_client_sync_handler", False)]
    return app.logger
