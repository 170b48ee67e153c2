# config/base.py
import os
from datetime import timedelta

DEFAULT_SYNC_SOURCES = "stripe,stripe_subscriptions,stripe_invoices,paypal,ghl,manychat,csv"


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_source_list(value):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _env_int(name, default, *, minimum=None):
    """Read an integer setting, falling back to ``default`` on junk input."""
    try:
        value = int(os.environ.get(name, str(default)))
    except ValueError:
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


def _env_float(name, default, *, minimum=0.0):
    try:
        value = float(os.environ.get(name, str(default)))
    except ValueError:
        return default
    return max(value, minimum)


class Config:
    # SECRET_KEY must be set via environment variable for security
    # For production, it must be set via environment variable
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync feature configuration
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=True)
    SYNC_SOURCES = _parse_source_list(os.environ.get("SYNC_SOURCES", DEFAULT_SYNC_SOURCES))

    if SYNC_ENABLED and not SYNC_SOURCES:
        raise ValueError("SYNC_ENABLED is true but SYNC_SOURCES is empty. Provide at least one source name.")

    # Wall-clock budgets (seconds) for one invocation
    SYNC_TIME_BUDGET_SECONDS = _env_float("SYNC_TIME_BUDGET_SECONDS", 50.0)
    SYNC_COORDINATOR_BUDGET_SECONDS = _env_float("SYNC_COORDINATOR_BUDGET_SECONDS", 55.0)
    SYNC_MAX_PAGES_PER_INVOCATION = _env_int("SYNC_MAX_PAGES_PER_INVOCATION", 10, minimum=1)
    SYNC_UNIFY_BATCH_SIZE = _env_int("SYNC_UNIFY_BATCH_SIZE", 200, minimum=1)

    # Staleness and retention
    SYNC_STALE_RUN_MINUTES = _env_int("SYNC_STALE_RUN_MINUTES", 30, minimum=1)
    SYNC_COORDINATOR_STALE_MINUTES = _env_int("SYNC_COORDINATOR_STALE_MINUTES", 10, minimum=1)
    SYNC_RUN_RETENTION_DAYS = _env_int("SYNC_RUN_RETENTION_DAYS", 7, minimum=1)
    SYNC_RAW_RETENTION_DAYS = _env_int("SYNC_RAW_RETENTION_DAYS", 30, minimum=1)

    # Outbound HTTP behaviour shared by provider adapters
    SYNC_HTTP_MAX_ATTEMPTS = _env_int("SYNC_HTTP_MAX_ATTEMPTS", 4, minimum=1)
    SYNC_HTTP_MAX_CONCURRENCY = _env_int("SYNC_HTTP_MAX_CONCURRENCY", 5, minimum=1)
    SYNC_HTTP_BACKOFF_SECONDS = _env_float("SYNC_HTTP_BACKOFF_SECONDS", 0.5)
    SYNC_HTTP_BACKOFF_MAX_SECONDS = _env_float("SYNC_HTTP_BACKOFF_MAX_SECONDS", 8.0)
    SYNC_HTTP_TIMEOUT_SECONDS = _env_float("SYNC_HTTP_TIMEOUT_SECONDS", 20.0)

    SYNC_MERGE_POLICY_PATH = os.environ.get("SYNC_MERGE_POLICY_PATH")
    SYNC_UPLOAD_DIR = os.environ.get("SYNC_UPLOAD_DIR")
    try:
        SYNC_MAX_UPLOAD_MB = int(os.environ.get("SYNC_MAX_UPLOAD_MB", "25"))
    except ValueError:
        SYNC_MAX_UPLOAD_MB = 25

    # Provider credentials
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_API_BASE = os.environ.get("PAYPAL_API_BASE", "https://api-m.paypal.com")
    GHL_API_KEY = os.environ.get("GHL_API_KEY")
    GHL_LOCATION_ID = os.environ.get("GHL_LOCATION_ID")
    MANYCHAT_API_KEY = os.environ.get("MANYCHAT_API_KEY")
    _raw_tags_per_page = os.environ.get("MANYCHAT_TAGS_PER_PAGE", "5")
    try:
        MANYCHAT_TAGS_PER_PAGE = max(1, int(_raw_tags_per_page))
    except ValueError:
        MANYCHAT_TAGS_PER_PAGE = 5

    # Background worker
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, "client_sync_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_HTTP_BACKOFF_SECONDS = 0.0
    SYNC_HTTP_BACKOFF_MAX_SECONDS = 0.0
    SYNC_WORKER_ENABLED = True
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True  # Secure cookies in production
