import pytest
from flask import Flask

from flask_app.sync import SYNC_EXTENSION_KEY, init_sync
from flask_app.sync.registry import get_adapter_registry, resolve_adapters


def build_sync_app(**overrides) -> Flask:
    app = Flask(__name__)
    app.config.update(SECRET_KEY="test-secret", TESTING=True, SYNC_WORKER_ENABLED=False)
    app.config.update(overrides)
    init_sync(app)
    return app


def test_registry_describes_every_source():
    registry = get_adapter_registry()

    assert list(registry) == ["stripe", "stripe_subscriptions", "stripe_invoices", "paypal", "ghl", "manychat", "csv"]
    assert registry["csv"].required_config == ()
    assert registry["paypal"].missing_config({"PAYPAL_CLIENT_ID": "id"}) == ("PAYPAL_CLIENT_SECRET",)


def test_resolve_adapters_rejects_unknown_sources():
    with pytest.raises(ValueError, match="hubspot, zendesk"):
        resolve_adapters(("ghl", "zendesk", "hubspot"))


def test_disabled_sync_mounts_nothing():
    app = build_sync_app(SYNC_ENABLED=False, SYNC_SOURCES=("ghl",))

    state = app.extensions[SYNC_EXTENSION_KEY]
    assert state["enabled"] is False
    assert state["active_adapters"] == ()
    assert "sync" not in app.blueprints

    result = app.test_cli_runner().invoke(args=["sync"])
    assert result.exit_code != 0
    assert "SYNC_ENABLED=false" in result.output


def test_enabled_sync_registers_blueprint_and_reports_missing_config(caplog):
    with caplog.at_level("WARNING"):
        app = build_sync_app(SYNC_ENABLED=True, SYNC_SOURCES=("stripe", "csv"))

    state = app.extensions[SYNC_EXTENSION_KEY]
    assert [adapter.name for adapter in state["active_adapters"]] == ["stripe", "csv"]
    assert state["celery_app"] is None
    assert "sync" in app.blueprints
    assert "STRIPE_SECRET_KEY" in caplog.text


def test_unknown_configured_source_fails_startup():
    with pytest.raises(ValueError, match="Unknown sync sources"):
        build_sync_app(SYNC_ENABLED=True, SYNC_SOURCES=("ghl", "hubspot"))
