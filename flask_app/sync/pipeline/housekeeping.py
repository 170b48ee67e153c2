"""Retention sweeps for sync bookkeeping tables."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from flask_app.models import (
    RAW_CONTACT_MODELS,
    TERMINAL_RUN_STATUSES,
    ConflictStatus,
    CsvContactRaw,
    GhlContactRaw,
    ManychatContactRaw,
    MergeConflict,
    SyncRun,
    SyncRunStatus,
    Transaction,
    db,
)
from flask_app.models.base import utcnow

from .staging import RawStagingStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HousekeepingSummary:
    sync_runs: int = 0
    raw_rows: dict[str, int] | None = None
    merge_conflicts: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class HousekeepingService:
    """
    Purge aged rows that the merge path no longer needs.

    - terminal sync runs older than ``run_retention_days``, always keeping
      the latest completed run of each source
    - processed raw staging rows older than ``raw_retention_days``
    - resolved or ignored conflicts older than ``raw_retention_days``
    """

    def __init__(
        self,
        session: Session | None = None,
        *,
        run_retention_days: int = 7,
        raw_retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session: Session = session or db.session
        self.run_retention_days = int(run_retention_days)
        self.raw_retention_days = int(raw_retention_days)
        self.clock = clock

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "HousekeepingService":
        options = {
            "run_retention_days": config.get("SYNC_RUN_RETENTION_DAYS", 7),
            "raw_retention_days": config.get("SYNC_RAW_RETENTION_DAYS", 30),
        }
        options.update(kwargs)
        return cls(**options)

    def cleanup(self) -> HousekeepingSummary:
        now = self.clock()
        raw_cutoff = now - timedelta(days=self.raw_retention_days)
        summary = HousekeepingSummary(raw_rows={})

        for provider in RAW_CONTACT_MODELS:
            summary.raw_rows[provider] = RawStagingStore(provider, self.session).purge_processed(raw_cutoff)

        summary.merge_conflicts = (
            self.session.execute(
                delete(MergeConflict)
                .where(
                    MergeConflict.status.in_((ConflictStatus.RESOLVED, ConflictStatus.IGNORED)),
                    func.coalesce(MergeConflict.resolved_at, MergeConflict.created_at) < raw_cutoff,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            or 0
        )
        summary.sync_runs = self._purge_runs(now - timedelta(days=self.run_retention_days))
        self.session.commit()

        logger.info(
            "Sync housekeeping removed %s run(s), %s raw row(s), %s conflict(s)",
            summary.sync_runs,
            sum(summary.raw_rows.values()),
            summary.merge_conflicts,
            extra={"sync_housekeeping": summary.as_dict()},
        )
        return summary

    def _purge_runs(self, cutoff: datetime) -> int:
        keep = set(
            self.session.execute(
                select(func.max(SyncRun.id))
                .where(SyncRun.status == SyncRunStatus.COMPLETED)
                .group_by(SyncRun.source)
            ).scalars()
        )
        candidates = [
            run_id
            for run_id in self.session.execute(
                select(SyncRun.id).where(
                    SyncRun.status.in_(TERMINAL_RUN_STATUSES),
                    func.coalesce(SyncRun.completed_at, SyncRun.started_at) < cutoff,
                )
            ).scalars()
            if run_id not in keep
        ]
        if not candidates:
            return 0

        # Detach rows that still point at the runs before deleting them
        for model in (GhlContactRaw, ManychatContactRaw, CsvContactRaw, MergeConflict, Transaction):
            self.session.execute(
                update(model)
                .where(model.sync_run_id.in_(candidates))
                .values({model.sync_run_id: None})
                .execution_options(synchronize_session=False)
            )
        result = self.session.execute(
            delete(SyncRun).where(SyncRun.id.in_(candidates)).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
