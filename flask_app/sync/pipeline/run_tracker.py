"""
Persistent state machine for sync runs.

Every write that can race with an operator cancel is a conditional UPDATE
guarded by ``status IN (running, continuing)``; a zero row count means the
run left the active states underneath us and the caller must stop. Creating
a run relies on the unique ``active_source`` column so two concurrent
triggers cannot both hold an active run for the same source.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flask_app.models import ACTIVE_RUN_STATUSES, SyncRun, SyncRunStatus, db
from flask_app.models.base import utcnow

logger = logging.getLogger(__name__)

_UNSET: Any = object()

TERMINAL_WRITE_STATUSES = (
    SyncRunStatus.COMPLETED,
    SyncRunStatus.COMPLETED_WITH_ERRORS,
    SyncRunStatus.COMPLETED_WITH_TIMEOUT,
    SyncRunStatus.FAILED,
)


class SyncRunConflict(RuntimeError):
    """Raised when a source already has a running or continuing run."""

    def __init__(self, source: str, active_run_id: int | None = None) -> None:
        message = f"A sync run for '{source}' is already active"
        if active_run_id is not None:
            message += f" (run {active_run_id})"
        super().__init__(message + ".")
        self.source = source
        self.active_run_id = active_run_id


class SyncRunNotFound(LookupError):
    """Raised when a continuation names a run that does not exist."""


@dataclass(slots=True)
class RunCounters:
    """Per-invocation counters merged into the run totals by SQL increments."""

    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    def add(self, other: "RunCounters") -> None:
        self.fetched += other.fetched
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.conflicts += other.conflicts
        self.errors += other.errors

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_run(cls, run: SyncRun) -> "RunCounters":
        return cls(
            fetched=run.total_fetched,
            inserted=run.total_inserted,
            updated=run.total_updated,
            skipped=run.total_skipped,
            conflicts=run.total_conflicts,
            errors=run.total_errors,
        )


class SyncRunTracker:
    """Create, advance, and close ``SyncRun`` rows."""

    def __init__(self, session: Session | None = None, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.session: Session = session or db.session
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def start(
        self,
        source: str,
        *,
        dry_run: bool = False,
        triggered_by_user_id: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        checkpoint: Mapping[str, Any] | None = None,
    ) -> SyncRun:
        """Insert a ``running`` row, or raise ``SyncRunConflict`` if one is active."""
        now = self.clock()
        run = SyncRun(
            source=source,
            status=SyncRunStatus.RUNNING,
            active_source=source,
            dry_run=dry_run,
            started_at=now,
            heartbeat_at=now,
            checkpoint=dict(checkpoint or {}),
            run_metadata=dict(metadata or {}),
            triggered_by_user_id=triggered_by_user_id,
        )
        self.session.add(run)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            active = self.find_active(source)
            raise SyncRunConflict(source, active.id if active else None) from None
        logger.info(
            "Sync run %s started for %s",
            run.id,
            source,
            extra={"sync_run_id": run.id, "sync_source": source, "sync_dry_run": dry_run},
        )
        return run

    def record_skipped(
        self,
        source: str,
        reason: str,
        *,
        triggered_by_user_id: int | None = None,
    ) -> SyncRun:
        """Record an invocation that did no work (kill-switch engaged)."""
        now = self.clock()
        run = SyncRun(
            source=source,
            status=SyncRunStatus.SKIPPED,
            active_source=None,
            started_at=now,
            completed_at=now,
            error_message=reason,
            run_metadata={"reason": reason},
            triggered_by_user_id=triggered_by_user_id,
        )
        self.session.add(run)
        self.session.commit()
        return run

    def claim(
        self,
        source: str,
        *,
        resume_run_id: int | None = None,
        stale_minutes: int,
        dry_run: bool = False,
        triggered_by_user_id: int | None = None,
        checkpoint: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> SyncRun:
        """
        Resume ``resume_run_id`` or sweep stale runs and start a fresh one.

        A resumed run that is no longer active is returned as-is so the
        caller can report its status instead of doing work.
        """
        if resume_run_id is not None:
            run = self.get(resume_run_id)
            if run is None:
                raise SyncRunNotFound(f"Sync run {resume_run_id} not found.")
            if run.source != source:
                raise ValueError(f"Sync run {run.id} belongs to '{run.source}', not '{source}'.")
            if run.status is SyncRunStatus.CONTINUING:
                self.record_progress(run.id, status=SyncRunStatus.RUNNING)
                run = self.get(run.id)
            return run

        self.cleanup_stale(source, threshold_minutes=stale_minutes)
        return self.start(
            source,
            dry_run=dry_run,
            triggered_by_user_id=triggered_by_user_id,
            checkpoint=checkpoint,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, run_id: int) -> SyncRun | None:
        return self.session.get(SyncRun, run_id, populate_existing=True)

    def find_active(self, source: str) -> SyncRun | None:
        return self.session.execute(
            select(SyncRun).where(SyncRun.active_source == source)
        ).scalar_one_or_none()

    def is_cancelled(self, run_id: int) -> bool:
        status = self.session.execute(select(SyncRun.status).where(SyncRun.id == run_id)).scalar_one_or_none()
        return status is SyncRunStatus.CANCELLED

    # ------------------------------------------------------------------
    # Guarded writes
    # ------------------------------------------------------------------

    def record_progress(
        self,
        run_id: int,
        counters: RunCounters | None = None,
        *,
        checkpoint: Mapping[str, Any] | None = _UNSET,
        metadata: Mapping[str, Any] | None = _UNSET,
        status: SyncRunStatus | None = None,
    ) -> bool:
        """
        Add ``counters`` to the run totals and store the new checkpoint.

        Returns ``False`` when the run is no longer active (cancelled,
        failed by stale cleanup); nothing is written in that case.
        """
        values = self._counter_values(counters)
        values[SyncRun.heartbeat_at] = self.clock()
        if checkpoint is not _UNSET:
            values[SyncRun.checkpoint] = dict(checkpoint or {})
        if metadata is not _UNSET:
            values[SyncRun.run_metadata] = dict(metadata or {})
        if status is not None:
            values[SyncRun.status] = status
        return self._guarded_update(run_id, values)

    def finish(
        self,
        run_id: int,
        status: SyncRunStatus,
        counters: RunCounters | None = None,
        *,
        checkpoint: Mapping[str, Any] | None = _UNSET,
        metadata: Mapping[str, Any] | None = _UNSET,
        error_message: str | None = None,
    ) -> bool:
        """Write the terminal (or ``continuing``) status exactly once."""
        if status not in TERMINAL_WRITE_STATUSES and status is not SyncRunStatus.CONTINUING:
            raise ValueError(f"Cannot finish a run with status '{status.value}'.")
        values = self._counter_values(counters)
        now = self.clock()
        values[SyncRun.status] = status
        values[SyncRun.heartbeat_at] = now
        if status is not SyncRunStatus.CONTINUING:
            values[SyncRun.active_source] = None
            values[SyncRun.completed_at] = now
        if checkpoint is not _UNSET:
            values[SyncRun.checkpoint] = dict(checkpoint or {})
        if metadata is not _UNSET:
            values[SyncRun.run_metadata] = dict(metadata or {})
        if error_message is not None:
            values[SyncRun.error_message] = error_message[:2000]
        updated = self._guarded_update(run_id, values)
        if updated:
            logger.info(
                "Sync run %s -> %s",
                run_id,
                status.value,
                extra={"sync_run_id": run_id, "sync_status": status.value},
            )
        return updated

    def fail(self, run_id: int, error_message: str, counters: RunCounters | None = None) -> bool:
        return self.finish(run_id, SyncRunStatus.FAILED, counters, error_message=error_message)

    def cancel(self, run_id: int, *, reason: str = "Cancelled by operator") -> bool:
        now = self.clock()
        cancelled = self._guarded_update(
            run_id,
            {
                SyncRun.status: SyncRunStatus.CANCELLED,
                SyncRun.active_source: None,
                SyncRun.completed_at: now,
                SyncRun.error_message: reason,
            },
        )
        if cancelled:
            logger.warning("Sync run %s cancelled: %s", run_id, reason, extra={"sync_run_id": run_id})
        return cancelled

    def cancel_all(self, *, reason: str = "Force cancelled", source: str | None = None) -> int:
        """Emergency stop: cancel every active run, or only those of ``source``."""
        now = self.clock()
        statement = update(SyncRun).where(SyncRun.status.in_(ACTIVE_RUN_STATUSES))
        if source is not None:
            statement = statement.where(SyncRun.source == source)
        result = self.session.execute(
            statement.values(
                {
                    SyncRun.status: SyncRunStatus.CANCELLED,
                    SyncRun.active_source: None,
                    SyncRun.completed_at: now,
                    SyncRun.error_message: reason,
                }
            ).execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount:
            logger.warning(
                "Force-cancelled %s active sync run(s)", result.rowcount, extra={"sync_source": source or "all"}
            )
        return result.rowcount or 0

    def cleanup_stale(self, source: str | None = None, *, threshold_minutes: int) -> int:
        """
        Fail active runs whose last heartbeat is older than the threshold.

        Runs without a heartbeat fall back to ``started_at``. With
        ``source=None`` every source is swept.
        """
        now = self.clock()
        cutoff = now - timedelta(minutes=threshold_minutes)
        statement = update(SyncRun).where(
            SyncRun.status.in_(ACTIVE_RUN_STATUSES),
            func.coalesce(SyncRun.heartbeat_at, SyncRun.started_at) < cutoff,
        )
        if source is not None:
            statement = statement.where(SyncRun.source == source)
        result = self.session.execute(
            statement.values(
                {
                    SyncRun.status: SyncRunStatus.FAILED,
                    SyncRun.active_source: None,
                    SyncRun.completed_at: now,
                    SyncRun.error_message: f"Stale run: no progress for more than {threshold_minutes} minutes",
                }
            ).execution_options(synchronize_session=False)
        )
        self.session.commit()
        count = result.rowcount or 0
        if count:
            logger.warning(
                "Marked %s stale sync run(s) as failed",
                count,
                extra={"sync_source": source or "*", "sync_stale_threshold_minutes": threshold_minutes},
            )
        return count

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _counter_values(counters: RunCounters | None) -> dict[Any, Any]:
        if counters is None:
            return {}
        return {
            SyncRun.total_fetched: SyncRun.total_fetched + counters.fetched,
            SyncRun.total_inserted: SyncRun.total_inserted + counters.inserted,
            SyncRun.total_updated: SyncRun.total_updated + counters.updated,
            SyncRun.total_skipped: SyncRun.total_skipped + counters.skipped,
            SyncRun.total_conflicts: SyncRun.total_conflicts + counters.conflicts,
            SyncRun.total_errors: SyncRun.total_errors + counters.errors,
        }

    def _guarded_update(self, run_id: int, values: Mapping[Any, Any]) -> bool:
        result = self.session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_RUN_STATUSES))
            .values(dict(values))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return (result.rowcount or 0) > 0
