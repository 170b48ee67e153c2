"""Raw contact staging: upsert provider payloads and hand them to the merge engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from flask_app.models import RAW_CONTACT_MODELS, CsvContactRaw, CsvProcessingStatus, db
from flask_app.models.base import utcnow

from ..adapters.base import RawRecord

DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


@dataclass(frozen=True)
class StagedRow:
    id: int
    external_id: str
    payload: dict


class RawStagingStore:
    """
    Per-provider staging table access.

    ``upsert_batch`` is last-write-wins on ``external_id`` and clears
    ``processed_at`` so a re-fetched record is merged again.
    ``next_unprocessed`` cursors on the row id, which keeps repeated claims
    within one unify run from overlapping.
    """

    def __init__(self, provider: str, session: Session | None = None) -> None:
        try:
            self.model = RAW_CONTACT_MODELS[provider]
        except KeyError:
            raise ValueError(f"No staging table for provider '{provider}'.") from None
        self.provider = provider
        self.session: Session = session or db.session

    def upsert_batch(self, records: Sequence[RawRecord], *, sync_run_id: int | None = None) -> int:
        """Stage ``records``; returns how many external ids were new."""
        # Last occurrence wins when a page repeats an id
        latest: dict[str, RawRecord] = {}
        for record in records:
            latest[record.external_id] = record
        if not latest:
            return 0

        existing = set(
            self.session.execute(
                select(self.model.external_id).where(self.model.external_id.in_(list(latest)))
            ).scalars()
        )
        now = utcnow()
        rows = [
            {
                "external_id": external_id,
                "payload": dict(record.payload),
                "fetched_at": now,
                "processed_at": None,
                "sync_run_id": sync_run_id,
                "created_at": now,
                "updated_at": now,
            }
            for external_id, record in latest.items()
        ]
        if self.model is CsvContactRaw:
            for row in rows:
                row["processing_status"] = CsvProcessingStatus.STAGED
                row["error_message"] = None

        dialect = self.session.get_bind().dialect.name
        insert_factory = DIALECT_INSERTS.get(dialect)
        if insert_factory is None:
            raise RuntimeError(f"Staging upsert is not supported on the '{dialect}' dialect.")
        statement = insert_factory(self.model).values(rows)
        replaced = {
            "payload": statement.excluded.payload,
            "fetched_at": statement.excluded.fetched_at,
            "processed_at": None,
            "sync_run_id": statement.excluded.sync_run_id,
            "updated_at": statement.excluded.updated_at,
        }
        if self.model is CsvContactRaw:
            replaced["processing_status"] = statement.excluded.processing_status
            replaced["error_message"] = None
        self.session.execute(statement.on_conflict_do_update(index_elements=["external_id"], set_=replaced))
        return len(latest) - len(existing)

    def next_unprocessed(self, limit: int, *, after_id: int | None = None) -> list[StagedRow]:
        statement = select(self.model.id, self.model.external_id, self.model.payload).where(
            self.model.processed_at.is_(None)
        )
        if after_id is not None:
            statement = statement.where(self.model.id > after_id)
        rows = self.session.execute(statement.order_by(self.model.id.asc()).limit(limit)).all()
        return [StagedRow(id=row.id, external_id=row.external_id, payload=row.payload) for row in rows]

    def get_by_external_ids(self, external_ids: Iterable[str]) -> dict[str, int]:
        """Map external ids to staging row ids."""
        ids = list(external_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(self.model.external_id, self.model.id).where(self.model.external_id.in_(ids))
        ).all()
        return {row.external_id: row.id for row in rows}

    def mark_processed(
        self,
        ids: Sequence[int],
        *,
        status: CsvProcessingStatus | None = None,
        client_id: int | None = None,
        error_message: str | None = None,
    ) -> int:
        if not ids:
            return 0
        values: dict = {self.model.processed_at: utcnow()}
        if self.model is CsvContactRaw and status is not None:
            values[CsvContactRaw.processing_status] = status
            values[CsvContactRaw.merged_client_id] = client_id
            values[CsvContactRaw.error_message] = error_message
        result = self.session.execute(
            update(self.model)
            .where(self.model.id.in_(list(ids)))
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def record_error(self, row_id: int, message: str) -> None:
        """Keep a failed CSV row pending but note why it failed."""
        if self.model is not CsvContactRaw:
            return
        self.session.execute(
            update(CsvContactRaw)
            .where(CsvContactRaw.id == row_id)
            .values({CsvContactRaw.processing_status: CsvProcessingStatus.ERROR, CsvContactRaw.error_message: message})
            .execution_options(synchronize_session=False)
        )

    def count_pending(self) -> int:
        return self.session.execute(
            select(func.count()).select_from(self.model).where(self.model.processed_at.is_(None))
        ).scalar_one()

    def purge_processed(self, older_than: datetime | timedelta) -> int:
        cutoff = utcnow() - older_than if isinstance(older_than, timedelta) else older_than
        result = self.session.execute(
            delete(self.model)
            .where(self.model.processed_at.is_not(None), self.model.processed_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
