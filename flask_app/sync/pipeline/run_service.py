"""
Service helpers for sync run querying and serialization.

The HTTP API and CLI consume these helpers for paginated run listings,
detail payloads, and per-status statistics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from flask_app.models import SyncRun, SyncRunStatus, db

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to sync run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    sources: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
    ) -> "RunFilters":
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        resolved_sources = tuple(sorted({s.strip().lower() for s in (sources or ()) if s and s.strip()}))
        return cls(page=resolved_page, page_size=resolved_size, statuses=resolved_statuses, sources=resolved_sources)


@dataclass(slots=True)
class RunSummary:
    id: int
    source: str
    status: str
    dry_run: bool
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    totals: dict[str, int]
    checkpoint: dict[str, Any]
    error_message: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "status": self.status,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "totals": dict(self.totals),
            "checkpoint": dict(self.checkpoint),
            "error_message": self.error_message,
        }


@dataclass(slots=True)
class RunListResult:
    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": [item.as_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class SyncRunService:
    """Facade for querying sync runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        statement = self._apply_filters(select(SyncRun), filters)
        total = self.session.execute(select(func.count()).select_from(statement.subquery())).scalar_one()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        runs = self.session.execute(
            statement.order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        ).scalars()
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in runs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id, populate_existing=True)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def latest_by_source(self) -> dict[str, RunSummary]:
        latest_ids = select(func.max(SyncRun.id)).group_by(SyncRun.source)
        runs = self.session.execute(select(SyncRun).where(SyncRun.id.in_(latest_ids))).scalars()
        return {run.source: self.summarize(run) for run in runs}

    def status_counts(self) -> dict[str, int]:
        rows = self.session.execute(select(SyncRun.status, func.count()).group_by(SyncRun.status)).all()
        return {
            (status.value if isinstance(status, SyncRunStatus) else str(status)): count for status, count in rows
        }

    def summarize(self, run: SyncRun) -> RunSummary:
        duration_seconds: float | None = None
        if run.started_at:
            finished = run.completed_at or datetime.now(timezone.utc)
            started = run.started_at
            # SQLite hands back naive datetimes
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            if finished.tzinfo is None:
                finished = finished.replace(tzinfo=timezone.utc)
            duration_seconds = round((finished - started).total_seconds(), 3)
        return RunSummary(
            id=run.id,
            source=run.source,
            status=run.status.value,
            dry_run=bool(run.dry_run),
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=duration_seconds,
            totals={
                "fetched": run.total_fetched,
                "inserted": run.total_inserted,
                "updated": run.total_updated,
                "skipped": run.total_skipped,
                "conflicts": run.total_conflicts,
                "errors": run.total_errors,
            },
            checkpoint={key: value for key, value in (run.checkpoint or {}).items() if key != "window"},
            error_message=run.error_message,
        )

    @staticmethod
    def _apply_filters(statement, filters: RunFilters):
        if filters.statuses:
            statement = statement.where(SyncRun.status.in_(filters.statuses))
        if filters.sources:
            statement = statement.where(SyncRun.source.in_(filters.sources))
        return statement


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    try:
        return SyncRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None
