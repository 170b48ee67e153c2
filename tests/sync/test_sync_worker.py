import json

import pytest
from flask import Flask

from flask_app.models import SyncRun, SyncRunStatus, db
from flask_app.sync import get_celery_app
from flask_app.sync.celery_app import DEFAULT_QUEUE_NAME, create_celery_app
from sync_fakes import FakeGHLAdapter, ghl_contact

PAGES = [
    [ghl_contact("c1", email="a@example.com")],
    [ghl_contact("c2", email="b@example.com")],
    [ghl_contact("c3", email="c@example.com")],
]


def build_worker_app(tmp_path, **overrides) -> Flask:
    """Minimal Flask app used only to inspect the resolved Celery configuration."""
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir(exist_ok=True)
    app = Flask(__name__, instance_path=str(instance_dir))
    app.config.update(SECRET_KEY="test-secret", TESTING=True)
    app.config.update(overrides)
    return app


@pytest.fixture
def fake_ghl(monkeypatch):
    adapter = FakeGHLAdapter(PAGES)
    monkeypatch.setattr("flask_app.sync.service.build_adapter", lambda source, config, **kwargs: adapter)
    return adapter


def test_celery_defaults_to_sqlite_transport(tmp_path):
    app = build_worker_app(tmp_path, CELERY_SQLITE_PATH="custom.sqlite")

    celery_app = create_celery_app(app)

    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert "custom.sqlite" in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True
    assert "sync.source.run" in celery_app.tasks


def test_celery_time_limits_follow_coordinator_budget(tmp_path):
    app = build_worker_app(tmp_path, SYNC_COORDINATOR_BUDGET_SECONDS=30)

    celery_app = create_celery_app(app)

    assert celery_app.conf.task_soft_time_limit == 60
    assert celery_app.conf.task_time_limit == 90


def test_celery_config_accepts_json_string(tmp_path):
    app = build_worker_app(
        tmp_path,
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG=json.dumps({"worker_concurrency": 3}),
    )

    celery_app = create_celery_app(app)

    assert celery_app.conf.broker_url == "memory://"
    assert celery_app.conf.worker_concurrency == 3


def test_source_task_chains_until_the_run_completes(app, fake_ghl, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_MAX_PAGES_PER_INVOCATION", 1)
    task = get_celery_app(app).tasks["sync.source.run"]

    body = task.apply(kwargs={"source": "ghl", "payload": {"mode": "full"}}).get()

    assert body["status"] == SyncRunStatus.CONTINUING.value
    assert body["hasMore"] is True
    assert body["chainedTaskId"]
    assert fake_ghl.requested == [None, "1", "2"]
    run = db.session.get(SyncRun, body["syncRunId"], populate_existing=True)
    assert run.status is SyncRunStatus.COMPLETED
    assert run.total_inserted == 3


def test_chain_stops_at_max_depth(app, fake_ghl, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_MAX_PAGES_PER_INVOCATION", 1)
    monkeypatch.setattr("flask_app.sync.tasks.MAX_CHAIN_DEPTH", 0)
    task = get_celery_app(app).tasks["sync.source.run"]

    body = task.apply(kwargs={"source": "ghl", "payload": {}}).get()

    assert body["chainStopped"] is True
    assert fake_ghl.requested == [None]
    run = db.session.get(SyncRun, body["syncRunId"], populate_existing=True)
    assert run.status is SyncRunStatus.CONTINUING


def test_housekeeping_task_returns_summary(app):
    task = get_celery_app(app).tasks["sync.housekeeping.cleanup"]

    body = task.apply().get()

    assert body["sync_runs"] == 0
    assert set(body["raw_rows"]) == {"ghl", "manychat", "csv"}


def test_worker_ping_cli(runner):
    result = runner.invoke(args=["sync", "worker", "ping", "--timeout", "1"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
