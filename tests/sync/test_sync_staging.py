from datetime import timedelta

import pytest
from sqlalchemy import select

from flask_app.models import CsvContactRaw, CsvProcessingStatus, GhlContactRaw, db
from flask_app.models.base import utcnow
from flask_app.sync.adapters import RawRecord
from flask_app.sync.pipeline.staging import RawStagingStore


def test_upsert_batch_counts_new_rows_and_keeps_last_payload():
    store = RawStagingStore("ghl")

    created = store.upsert_batch(
        [
            RawRecord("g-1", {"email": "first@example.com"}),
            RawRecord("g-2", {"email": "two@example.com"}),
            RawRecord("g-1", {"email": "second@example.com"}),
        ]
    )
    db.session.commit()

    assert created == 2
    rows = {row.external_id: row for row in db.session.execute(select(GhlContactRaw)).scalars()}
    assert rows["g-1"].payload == {"email": "second@example.com"}

    again = store.upsert_batch([RawRecord("g-2", {"email": "changed@example.com"}), RawRecord("g-3", {})])
    assert again == 1


def test_refetch_clears_processed_marker():
    store = RawStagingStore("ghl")
    store.upsert_batch([RawRecord("g-1", {"email": "a@example.com"})])
    [row] = store.next_unprocessed(10)
    store.mark_processed([row.id])
    assert store.count_pending() == 0

    store.upsert_batch([RawRecord("g-1", {"email": "a@example.com", "phone": "5550102000"})])

    assert store.count_pending() == 1
    assert store.next_unprocessed(10)[0].payload["phone"] == "5550102000"


def test_next_unprocessed_cursors_on_row_id():
    store = RawStagingStore("manychat")
    store.upsert_batch([RawRecord(f"s-{index}", {"id": index}) for index in range(5)])

    first = store.next_unprocessed(2)
    rest = store.next_unprocessed(10, after_id=first[-1].id)

    assert [row.external_id for row in first] == ["s-0", "s-1"]
    assert [row.external_id for row in rest] == ["s-2", "s-3", "s-4"]


def test_csv_rows_track_processing_status():
    store = RawStagingStore("csv")
    store.upsert_batch([RawRecord("a@example.com", {"email": "a@example.com"}), RawRecord("row-x", {})])
    ids = store.get_by_external_ids(["a@example.com", "row-x"])

    store.mark_processed([ids["a@example.com"]], status=CsvProcessingStatus.MERGED, client_id=None)
    store.record_error(ids["row-x"], "ValueError: bad row")
    db.session.commit()

    merged = db.session.get(CsvContactRaw, ids["a@example.com"], populate_existing=True)
    failed = db.session.get(CsvContactRaw, ids["row-x"], populate_existing=True)
    assert merged.processing_status is CsvProcessingStatus.MERGED
    assert merged.processed_at is not None
    assert failed.processing_status is CsvProcessingStatus.ERROR
    assert failed.processed_at is None
    assert failed.error_message == "ValueError: bad row"


def test_purge_processed_only_removes_old_processed_rows():
    store = RawStagingStore("ghl")
    store.upsert_batch([RawRecord("old", {}), RawRecord("fresh", {}), RawRecord("pending", {})])
    ids = store.get_by_external_ids(["old", "fresh"])
    store.mark_processed([ids["old"], ids["fresh"]])
    db.session.commit()
    old = db.session.get(GhlContactRaw, ids["old"])
    old.processed_at = utcnow() - timedelta(days=60)
    db.session.commit()

    removed = store.purge_processed(timedelta(days=30))
    db.session.commit()

    assert removed == 1
    remaining = set(db.session.execute(select(GhlContactRaw.external_id)).scalars())
    assert remaining == {"fresh", "pending"}


def test_unknown_provider_rejected():
    with pytest.raises(ValueError, match="No staging table"):
        RawStagingStore("stripe")
