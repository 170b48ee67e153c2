# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from flask_app.models import User, db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application

    TestingConfig points Flask-SQLAlchemy at an in-memory SQLite database that
    lives for the whole session, so tables are rebuilt around every test.
    """
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "SYNC_ENABLED": True,
            "SYNC_SOURCES": ("stripe", "paypal", "ghl", "manychat", "csv"),
            "SYNC_UPLOAD_DIR": str(tmp_path / "uploads"),
            "SYNC_HTTP_BACKOFF_SECONDS": 0.0,
            "SYNC_HTTP_BACKOFF_MAX_SECONDS": 0.0,
            "STRIPE_SECRET_KEY": "sk_test_123",
            "PAYPAL_CLIENT_ID": "paypal-client",
            "PAYPAL_CLIENT_SECRET": "paypal-secret",
            "GHL_API_KEY": "ghl-key",
            "GHL_LOCATION_ID": "loc-1",
            "MANYCHAT_API_KEY": "manychat-key",
        }
    )

    from flask_app.utils.logging_config import setup_logging

    setup_logging(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def admin_user(app):
    """Persisted admin with a bearer token stored on ``user.plain_token``"""
    user = User(username="admin", email="admin@example.com", is_admin=True, is_active=True)
    user.plain_token = user.issue_api_token()
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def staff_user(app):
    """Persisted non-admin user with a bearer token"""
    user = User(username="staff", email="staff@example.com", is_admin=False, is_active=True)
    user.plain_token = user.issue_api_token()
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {admin_user.plain_token}"}


@pytest.fixture
def staff_headers(staff_user):
    return {"Authorization": f"Bearer {staff_user.plain_token}"}


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
