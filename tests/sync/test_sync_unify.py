from sqlalchemy import func, select

from flask_app.models import ClientIdentity, CsvContactRaw, CsvProcessingStatus, SyncRun, SyncRunStatus, db
from flask_app.sync.adapters import RawRecord
from flask_app.sync.pipeline.orchestrator import SyncRequest
from flask_app.sync.pipeline.staging import RawStagingStore
from flask_app.sync.pipeline.unify import UNIFY_SOURCE, UnifyService


def _stage(provider, records):
    RawStagingStore(provider).upsert_batch([RawRecord(external_id, payload) for external_id, payload in records])
    db.session.commit()


def _clients():
    return db.session.execute(select(func.count()).select_from(ClientIdentity)).scalar_one()


def test_unify_drains_every_contact_provider():
    _stage("ghl", [("g-1", {"id": "g-1", "email": "ada@example.com", "firstName": "Ada"})])
    _stage("manychat", [("s-1", {"id": "s-1", "email": "ADA@example.com", "phone": "5550102000", "optin_sms": True})])
    _stage("csv", [("bob@example.com", {"email": "bob@example.com", "full_name": "Bob"})])

    result = UnifyService(batch_size=1).run(SyncRequest(source=UNIFY_SOURCE))

    assert result.status == SyncRunStatus.COMPLETED.value
    assert result.processed == 3
    assert (result.counters.inserted, result.counters.updated) == (2, 1)
    assert result.extra["pending"] == {"ghl": 0, "manychat": 0, "csv": 0}
    assert _clients() == 2
    ada = db.session.execute(select(ClientIdentity).where(ClientIdentity.email == "ada@example.com")).scalar_one()
    assert ada.phone == "+15550102000"
    assert ada.sms_opt_in is True
    assert ada.ghl_contact_id == "g-1"
    assert ada.manychat_subscriber_id == "s-1"

    csv_row = db.session.execute(select(CsvContactRaw)).scalar_one()
    assert csv_row.processing_status is CsvProcessingStatus.MERGED
    assert csv_row.merged_client_id is not None


def test_unify_out_of_time_continues_from_checkpoint():
    _stage("ghl", [(f"g-{index}", {"id": f"g-{index}", "email": f"u{index}@example.com"}) for index in range(3)])

    first = UnifyService(time_budget_seconds=0).run(SyncRequest(source=UNIFY_SOURCE))
    assert first.status == SyncRunStatus.CONTINUING.value
    assert first.has_more is True
    assert first.processed == 0

    second = UnifyService().run(SyncRequest(source=UNIFY_SOURCE, sync_run_id=first.sync_run_id))

    assert second.sync_run_id == first.sync_run_id
    assert second.status == SyncRunStatus.COMPLETED.value
    assert _clients() == 3
    run = db.session.get(SyncRun, first.sync_run_id, populate_existing=True)
    assert run.checkpoint["done"] == ["ghl", "manychat", "csv"]


def test_unify_skips_rows_without_identity_and_marks_csv_status():
    _stage("csv", [("row-1", {"full_name": "Nobody"})])

    result = UnifyService().run(SyncRequest(source=UNIFY_SOURCE))

    assert result.counters.skipped == 1
    row = db.session.execute(select(CsvContactRaw)).scalar_one()
    assert row.processing_status is CsvProcessingStatus.SKIPPED
    assert "no usable email or phone" in row.error_message


def test_unify_dry_run_leaves_rows_pending():
    _stage("ghl", [("g-1", {"id": "g-1", "email": "ada@example.com"})])

    result = UnifyService().run(SyncRequest(source=UNIFY_SOURCE, dry_run=True))

    assert result.status == SyncRunStatus.COMPLETED.value
    assert result.counters.inserted == 1
    assert _clients() == 0
    assert result.extra["pending"]["ghl"] == 1


def test_unify_paused_records_skip():
    _stage("ghl", [("g-1", {"id": "g-1", "email": "ada@example.com"})])

    result = UnifyService().run(SyncRequest(source=UNIFY_SOURCE), paused=True)

    assert result.status == SyncRunStatus.SKIPPED.value
    assert _clients() == 0
