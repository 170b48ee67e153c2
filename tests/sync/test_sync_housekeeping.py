from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from flask_app.models import (
    ConflictStatus,
    ConflictType,
    GhlContactRaw,
    MergeConflict,
    SyncRun,
    SyncRunStatus,
    db,
)
from flask_app.sync.pipeline.housekeeping import HousekeepingService

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _run(source, status, *, age_days):
    finished = NOW - timedelta(days=age_days)
    run = SyncRun(source=source, status=status, started_at=finished, completed_at=finished)
    db.session.add(run)
    return run


def _conflict(external_id, status, *, age_days):
    conflict = MergeConflict(
        source="ghl",
        external_id=external_id,
        conflict_type=ConflictType.EMAIL_PHONE_MISMATCH,
        status=status,
        raw_data={},
        created_at=NOW - timedelta(days=age_days),
    )
    if status is not ConflictStatus.OPEN:
        conflict.resolved_at = NOW - timedelta(days=age_days)
    else:
        conflict.open_key = MergeConflict.build_open_key("ghl", external_id, ConflictType.EMAIL_PHONE_MISMATCH)
    db.session.add(conflict)
    return conflict


def _service(**kwargs):
    return HousekeepingService(clock=lambda: NOW, **kwargs)


def test_old_runs_are_removed_but_latest_completed_is_kept():
    kept_completed = _run("ghl", SyncRunStatus.COMPLETED, age_days=20)
    older_completed = _run("stripe", SyncRunStatus.COMPLETED, age_days=30)
    newest_stripe = _run("stripe", SyncRunStatus.COMPLETED, age_days=10)
    old_failed = _run("ghl", SyncRunStatus.FAILED, age_days=15)
    recent_failed = _run("ghl", SyncRunStatus.FAILED, age_days=2)
    active = SyncRun(
        source="paypal", status=SyncRunStatus.RUNNING, active_source="paypal", started_at=NOW - timedelta(days=40)
    )
    db.session.add(active)
    db.session.commit()
    ids = {run.id for run in (kept_completed, newest_stripe, recent_failed, active)}
    removed_ids = {older_completed.id, old_failed.id}

    summary = _service().cleanup()

    remaining = set(db.session.execute(select(SyncRun.id)).scalars())
    assert summary.sync_runs == 2
    assert remaining == ids
    assert not remaining & removed_ids


def test_staging_rows_pointing_at_purged_runs_are_detached():
    run = _run("ghl", SyncRunStatus.FAILED, age_days=10)
    db.session.flush()
    row = GhlContactRaw(external_id="g-1", payload={}, sync_run_id=run.id)
    db.session.add(row)
    db.session.commit()
    row_id = row.id

    _service().cleanup()

    reloaded = db.session.get(GhlContactRaw, row_id, populate_existing=True)
    assert reloaded is not None
    assert reloaded.sync_run_id is None


def test_processed_raw_rows_past_retention_are_purged():
    db.session.add_all(
        [
            GhlContactRaw(external_id="old", payload={}, processed_at=NOW - timedelta(days=45)),
            GhlContactRaw(external_id="recent", payload={}, processed_at=NOW - timedelta(days=5)),
            GhlContactRaw(external_id="pending", payload={}),
        ]
    )
    db.session.commit()

    summary = _service(raw_retention_days=30).cleanup()

    assert summary.raw_rows["ghl"] == 1
    assert summary.raw_rows["manychat"] == 0
    remaining = set(db.session.execute(select(GhlContactRaw.external_id)).scalars())
    assert remaining == {"recent", "pending"}


def test_only_closed_aged_conflicts_are_purged():
    _conflict("resolved-old", ConflictStatus.RESOLVED, age_days=60)
    _conflict("ignored-old", ConflictStatus.IGNORED, age_days=60)
    _conflict("resolved-new", ConflictStatus.RESOLVED, age_days=3)
    _conflict("open-old", ConflictStatus.OPEN, age_days=60)
    db.session.commit()

    summary = _service().cleanup()

    assert summary.merge_conflicts == 2
    remaining = set(db.session.execute(select(MergeConflict.external_id)).scalars())
    assert remaining == {"resolved-new", "open-old"}


def test_from_config_reads_retention_settings():
    service = HousekeepingService.from_config({"SYNC_RUN_RETENTION_DAYS": 3, "SYNC_RAW_RETENTION_DAYS": 9})

    assert (service.run_retention_days, service.raw_retention_days) == (3, 9)
