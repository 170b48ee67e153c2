# config/validation.py

"""
Environment variable validation for the sync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

from config.base import DEFAULT_SYNC_SOURCES

# Credentials each source needs before it can be scheduled
SOURCE_REQUIREMENTS = {
    "stripe": ("STRIPE_SECRET_KEY",),
    "stripe_subscriptions": ("STRIPE_SECRET_KEY",),
    "stripe_invoices": ("STRIPE_SECRET_KEY",),
    "paypal": ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"),
    "ghl": ("GHL_API_KEY", "GHL_LOCATION_ID"),
    "manychat": ("MANYCHAT_API_KEY",),
    "csv": (),
}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    raw_sources = os.environ.get("SYNC_SOURCES", DEFAULT_SYNC_SOURCES)
    for source in (item.strip().lower() for item in raw_sources.split(",")):
        for variable in SOURCE_REQUIREMENTS.get(source, ()):
            if not os.environ.get(variable):
                errors.append(f"{variable} is required when '{source}' is listed in SYNC_SOURCES")

    if os.environ.get("SYNC_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required in production when SYNC_WORKER_ENABLED=true")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
