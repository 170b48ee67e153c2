# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify
from flask_login import LoginManager
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from flask_app.models import User, db  # noqa: E402
from flask_app.routes import init_routes  # noqa: E402
from flask_app.sync import init_sync  # noqa: E402
from flask_app.utils.logging_config import setup_logging  # noqa: E402
from flask_app.utils.permissions import load_user_from_request  # noqa: E402

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Validate environment variables (only in production)
flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

# Load configuration based on the environment
if flask_env == "production":
    app.config.from_object(ProductionConfig)
    app.config.from_object(ProductionMonitoringConfig)
elif flask_env == "testing":
    app.config.from_object(TestingConfig)
    app.config.from_object(TestingMonitoringConfig)
else:
    app.config.from_object(DevelopmentConfig)
    app.config.from_object(DevelopmentMonitoringConfig)

# Initialize extensions
db.init_app(app)
login_manager = LoginManager()
login_manager.init_app(app)

# Register login manager in app extensions for testing
app.extensions["login_manager"] = login_manager

setup_logging(app)


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        finally:
            cursor.close()

    return _configure_sqlite_connection


with app.app_context():
    engine = db.engine
    if engine.url.drivername.startswith("sqlite"):
        if not getattr(engine, "_sqlite_pragmas_configured", False):
            pragma_hook = _configure_sqlite_connection_factory(
                enable_foreign_keys=not app.config.get("TESTING", False)
            )
            event.listen(engine, "connect", pragma_hook)
            engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]
    # Create the database tables only if not in testing mode
    if not app.config.get("TESTING", False):
        db.create_all()


# User loader callback for Flask-Login (session cookies)
@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (ValueError, TypeError):
        # Invalid user_id format
        return None


# Bearer tokens for API and scheduler callers
login_manager.request_loader(load_user_from_request)


# Initialize routes and the sync feature
init_routes(app)
init_sync(app)


# Register error handlers
@app.errorhandler(404)
def not_found_error(error):
    return jsonify({"ok": False, "error": "Not found."}), 404


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    current_app.logger.error("Unhandled server error: %s", error)
    return jsonify({"ok": False, "error": "Internal server error."}), 500


if __name__ == "__main__":
    # Use production-ready server configuration
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
