import json
from unittest.mock import Mock, patch

import pytest

from flask_app.models import SyncRunStatus, SystemSetting, User
from flask_app.sync.pipeline.run_tracker import SyncRunTracker
from sync_fakes import FakeGHLAdapter, ghl_contact

PAGES = [
    [ghl_contact("c1", email="a@example.com")],
    [ghl_contact("c2", email="b@example.com")],
    [ghl_contact("c3", email="c@example.com")],
]


@pytest.fixture
def fake_ghl(app, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_MAX_PAGES_PER_INVOCATION", 1)
    adapter = FakeGHLAdapter(PAGES)
    monkeypatch.setattr("flask_app.sync.service.build_adapter", lambda source, config, **kwargs: adapter)
    return adapter


def test_group_lists_configured_sources(runner):
    result = runner.invoke(args=["sync"])

    assert result.exit_code == 0, result.output
    assert "Configured sync sources:" in result.output
    assert "  - ghl" in result.output


def test_run_follows_continuations_to_completion(runner, fake_ghl):
    result = runner.invoke(args=["sync", "run", "ghl", "--mode", "full"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == SyncRunStatus.COMPLETED.value
    assert payload["invocations"] == 3
    assert fake_ghl.requested == [None, "1", "2"]


def test_run_without_follow_stops_after_one_invocation(runner, fake_ghl):
    result = runner.invoke(args=["sync", "run", "ghl", "--no-follow"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == SyncRunStatus.CONTINUING.value
    assert payload["hasMore"] is True
    assert payload["invocations"] == 1


def test_run_resumes_an_existing_run(runner, fake_ghl):
    first = json.loads(runner.invoke(args=["sync", "run", "ghl", "--no-follow"]).output)

    result = runner.invoke(
        args=["sync", "run", "ghl", "--run-id", str(first["syncRunId"]), "--cursor", first["nextCursor"]]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["syncRunId"] == first["syncRunId"]
    assert payload["status"] == SyncRunStatus.COMPLETED.value


def test_run_rejects_source_outside_configuration(app, runner, fake_ghl):
    app.config["SYNC_SOURCES"] = ("stripe",)

    result = runner.invoke(args=["sync", "run", "ghl"])

    assert result.exit_code != 0
    assert "not enabled" in result.output
    assert fake_ghl.requested == []


def test_run_queue_sends_task(runner, fake_ghl):
    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("flask_app.sync.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["sync", "run", "ghl", "--queue", "--mode", "today"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload == {"status": "queued", "task_id": "celery-task-123", "task": "sync.source.run"}
    _, kwargs = celery_app.send_task.call_args
    assert kwargs["kwargs"]["source"] == "ghl"
    assert kwargs["kwargs"]["payload"]["mode"] == "today"
    assert fake_ghl.requested == []


def test_csv_run_requires_a_file(runner):
    result = runner.invoke(args=["sync", "run", "csv"])

    assert result.exit_code != 0
    assert "CSV source requires --file." in result.output


def test_csv_run_rejects_bad_header(runner, tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("Name,Notes\nAda,x\n", encoding="utf-8")

    result = runner.invoke(args=["sync", "run", "csv", "--file", str(path)])

    assert result.exit_code != 0
    assert "email or phone" in result.output


def test_csv_run_leaves_operator_file_in_place(runner, tmp_path):
    path = tmp_path / "contacts.csv"
    path.write_text("email,name\nada@example.com,Ada\nbob@example.com,Bob\n", encoding="utf-8")

    result = runner.invoke(args=["sync", "run", "csv", "--file", str(path)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == SyncRunStatus.COMPLETED.value
    assert payload["inserted"] == 2
    assert path.exists()


def test_unify_command(runner):
    result = runner.invoke(args=["sync", "unify"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["status"] == SyncRunStatus.COMPLETED.value


def test_command_center_force_cancel(runner):
    SyncRunTracker().start("ghl")

    result = runner.invoke(args=["sync", "command-center", "--force-cancel"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == SyncRunStatus.CANCELLED.value
    assert payload["cancelledRuns"] == 1


def test_cancel_command(runner):
    run = SyncRunTracker().start("ghl")

    cancelled = runner.invoke(args=["sync", "cancel", str(run.id)])
    again = runner.invoke(args=["sync", "cancel", str(run.id)])

    assert cancelled.exit_code == 0
    assert f"Sync run {run.id} cancelled." in cancelled.output
    assert again.exit_code != 0
    assert "is not active" in again.output


def test_pause_and_resume_toggle_the_kill_switch(runner):
    paused = runner.invoke(args=["sync", "pause"])
    assert paused.exit_code == 0
    assert SystemSetting.is_sync_paused() is True

    resumed = runner.invoke(args=["sync", "resume"])
    assert resumed.exit_code == 0
    assert SystemSetting.is_sync_paused() is False


def test_runs_listing(runner):
    empty = runner.invoke(args=["sync", "runs"])
    assert "No sync runs found." in empty.output

    tracker = SyncRunTracker()
    run = tracker.start("stripe")
    tracker.finish(run.id, SyncRunStatus.COMPLETED)

    listed = runner.invoke(args=["sync", "runs", "--status", "completed"])
    as_json = runner.invoke(args=["sync", "runs", "--json"])

    assert f"#{run.id}" in listed.output
    assert "stripe" in listed.output
    assert json.loads(as_json.output)["total"] == 1


def test_cleanup_command(runner):
    result = runner.invoke(args=["sync", "cleanup"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["sync_runs"] == 0
    assert payload["merge_conflicts"] == 0


def test_issue_token_creates_admin(runner):
    result = runner.invoke(args=["sync", "issue-token", "scheduler"])

    assert result.exit_code == 0, result.output
    token = result.output.strip()
    user = User.find_by_api_token(token)
    assert user.username == "scheduler"
    assert user.email == "scheduler@localhost"
    assert user.is_admin is True

    rotated = runner.invoke(args=["sync", "issue-token", "scheduler", "--no-admin"]).output.strip()
    assert rotated != token
    assert User.find_by_api_token(token) is None
    assert User.find_by_api_token(rotated).is_admin is False
