"""
Batch orchestrator: one bounded, checkpointed unit of sync work per call.

``BatchOrchestrator.run`` claims (or resumes) the source's ``SyncRun``,
pulls pages through the provider adapter until the time budget or page cap
is hit, stages contact records, merges every new record, and writes the
checkpoint after each page. The caller gets a ``BatchResult`` carrying a
continuation token (``syncRunId`` + ``nextCursor``) whenever more pages
remain; re-invoking with that token picks the run back up.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from config.monitoring import SyncMonitoring
from flask_app.models import RAW_CONTACT_MODELS, CsvProcessingStatus, SyncRun, SyncRunStatus, db
from flask_app.models.base import utcnow

from ..adapters.base import ProviderAdapter, RawRecord, SyncWindow
from .merge_engine import IdentityMergeEngine, MergeAction, MergeInput
from .run_tracker import RunCounters, SyncRunConflict, SyncRunTracker
from .staging import RawStagingStore
from .transactions import TransactionLoader

logger = logging.getLogger(__name__)

VALID_MODES = ("today", "7d", "month", "full")
DEFAULT_MODE = "7d"
MAX_RECORDED_ERRORS = 50
MAX_TRACKED_IDS = 5000

CSV_STATUS_BY_ACTION = {
    MergeAction.INSERTED: CsvProcessingStatus.MERGED,
    MergeAction.UPDATED: CsvProcessingStatus.MERGED,
    MergeAction.SKIPPED: CsvProcessingStatus.SKIPPED,
    MergeAction.CONFLICT: CsvProcessingStatus.CONFLICT,
}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def _coerce_datetime(value: Any, *, end_of_day: bool = False) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Unable to parse date '{value}'. Expected ISO 8601.") from None
        if end_of_day and len(text) == 10:
            parsed = datetime.combine(date.fromisoformat(text), datetime.max.time())
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _coerce_run_id(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid syncRunId '{value}'.") from None


@dataclass(frozen=True)
class SyncRequest:
    """Trigger parameters for one invocation; camelCase on the wire."""

    source: str
    mode: str = DEFAULT_MODE
    start_date: datetime | None = None
    end_date: datetime | None = None
    cursor: str | None = None
    sync_run_id: int | None = None
    dry_run: bool = False
    stage_only: bool = False
    force_cancel: bool = False
    triggered_by_user_id: int | None = None
    file_path: str | None = None

    @classmethod
    def coerce(
        cls,
        source: str,
        payload: Mapping[str, Any] | None = None,
        *,
        triggered_by_user_id: int | None = None,
    ) -> "SyncRequest":
        data = dict(payload or {})

        def pick(camel: str, snake: str) -> Any:
            return data.get(camel, data.get(snake))

        mode = str(data.get("mode") or DEFAULT_MODE).strip().lower()
        if mode not in VALID_MODES:
            raise ValueError(f"Unsupported mode '{mode}'. Expected one of: {', '.join(VALID_MODES)}.")
        start_date = _coerce_datetime(pick("startDate", "start_date"))
        end_date = _coerce_datetime(pick("endDate", "end_date"), end_of_day=True)
        if start_date and end_date and start_date > end_date:
            raise ValueError("startDate must be before endDate.")
        cursor = pick("cursor", "cursor")
        return cls(
            source=source,
            mode=mode,
            start_date=start_date,
            end_date=end_date,
            cursor=str(cursor) if cursor not in (None, "") else None,
            sync_run_id=_coerce_run_id(pick("syncRunId", "sync_run_id")),
            dry_run=_coerce_bool(pick("dryRun", "dry_run")),
            stage_only=_coerce_bool(pick("stageOnly", "stage_only")),
            force_cancel=_coerce_bool(pick("forceCancel", "force_cancel")),
            triggered_by_user_id=triggered_by_user_id,
            file_path=pick("filePath", "file_path"),
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for a Celery hand-off."""
        payload: dict[str, Any] = {"mode": self.mode, "dryRun": self.dry_run, "stageOnly": self.stage_only}
        if self.start_date:
            payload["startDate"] = self.start_date.isoformat()
        if self.end_date:
            payload["endDate"] = self.end_date.isoformat()
        if self.cursor:
            payload["cursor"] = self.cursor
        if self.sync_run_id:
            payload["syncRunId"] = self.sync_run_id
        if self.force_cancel:
            payload["forceCancel"] = True
        if self.file_path:
            payload["filePath"] = self.file_path
        return payload

    def continuation(self, result: "BatchResult") -> "SyncRequest":
        return replace(self, sync_run_id=result.sync_run_id, cursor=result.next_cursor, force_cancel=False)


@dataclass(slots=True)
class BatchResult:
    """Structured outcome returned to HTTP, Celery, and CLI callers."""

    ok: bool
    status: str
    source: str
    sync_run_id: int | None = None
    processed: int = 0
    counters: RunCounters = field(default_factory=RunCounters)
    has_more: bool = False
    next_cursor: str | None = None
    duration_ms: int = 0
    error: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ok": self.ok,
            "status": self.status,
            "source": self.source,
            "syncRunId": self.sync_run_id,
            "processed": self.processed,
            "hasMore": self.has_more,
            "nextCursor": self.next_cursor,
            "duration_ms": self.duration_ms,
            **self.counters.as_dict(),
        }
        if self.error:
            body["error"] = self.error
        if self.errors:
            body["errors"] = list(self.errors)
        body.update(self.extra)
        return body


class BatchOrchestrator:
    """Drive one provider adapter through a time-boxed invocation."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        session: Session | None = None,
        tracker: SyncRunTracker | None = None,
        merge_engine: IdentityMergeEngine | None = None,
        time_budget_seconds: float = 50.0,
        max_pages: int = 10,
        stale_minutes: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapter = adapter
        self.source = adapter.name
        self.session: Session = session or db.session
        self.tracker = tracker or SyncRunTracker(self.session)
        self.merge_engine = merge_engine or IdentityMergeEngine(self.session)
        self.transaction_loader = TransactionLoader(self.session, merge_engine=self.merge_engine)
        self.staging = RawStagingStore(self.source, self.session) if self.source in RAW_CONTACT_MODELS else None
        self.time_budget_seconds = float(time_budget_seconds)
        self.max_pages = max(1, int(max_pages))
        self.stale_minutes = int(stale_minutes)
        self.clock = clock

    @classmethod
    def from_config(cls, adapter: ProviderAdapter, config: Mapping[str, Any], **kwargs: Any) -> "BatchOrchestrator":
        options = {
            "time_budget_seconds": config.get("SYNC_TIME_BUDGET_SECONDS", 50),
            "max_pages": config.get("SYNC_MAX_PAGES_PER_INVOCATION", 10),
            "stale_minutes": config.get("SYNC_STALE_RUN_MINUTES", 30),
        }
        options.update(kwargs)
        return cls(adapter, **options)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, request: SyncRequest, *, paused: bool = False) -> BatchResult:
        started = self.clock()
        result = self._run(request, paused=paused, started=started)
        result.duration_ms = int((self.clock() - started) * 1000)
        SyncMonitoring.record_invocation(
            source=self.source, status=result.status, duration_seconds=result.duration_ms / 1000.0
        )
        SyncMonitoring.record_outcomes(source=self.source, counts=result.counters.as_dict())
        logger.info(
            "Sync invocation for %s finished with %s",
            self.source,
            result.status,
            extra={
                "sync_run_id": result.sync_run_id,
                "sync_source": self.source,
                "sync_status": result.status,
                "sync_processed": result.processed,
                "sync_has_more": result.has_more,
            },
        )
        return result

    def _run(self, request: SyncRequest, *, paused: bool, started: float) -> BatchResult:
        if request.force_cancel:
            return self._force_cancel()
        if paused:
            run = self.tracker.record_skipped(
                self.source, "Sync paused by kill-switch", triggered_by_user_id=request.triggered_by_user_id
            )
            return BatchResult(ok=True, status=SyncRunStatus.SKIPPED.value, source=self.source, sync_run_id=run.id)

        try:
            run = self._claim_run(request)
        except SyncRunConflict as exc:
            return BatchResult(
                ok=False, status="already_running", source=self.source, sync_run_id=exc.active_run_id, error=str(exc)
            )

        if not run.is_active:
            # Continuation of a run that was cancelled, failed, or already finished
            return BatchResult(ok=True, status=run.status.value, source=self.source, sync_run_id=run.id)

        run_id = run.id
        try:
            return self._drive(run, request, started=started)
        except Exception as exc:
            self.session.rollback()
            message = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "Sync run %s for %s failed",
                run_id,
                self.source,
                extra={"sync_run_id": run_id, "sync_source": self.source},
            )
            self.tracker.fail(run_id, message)
            return BatchResult(
                ok=False, status=SyncRunStatus.FAILED.value, source=self.source, sync_run_id=run_id, error=message
            )

    def _force_cancel(self) -> BatchResult:
        """Stop the source's active run without claiming a new one."""
        cancelled = self.tracker.cancel_all(reason="Force cancelled by operator", source=self.source)
        return BatchResult(
            ok=True,
            status=SyncRunStatus.CANCELLED.value,
            source=self.source,
            extra={"cancelledRuns": cancelled},
        )

    # ------------------------------------------------------------------
    # Run claiming
    # ------------------------------------------------------------------

    def _claim_run(self, request: SyncRequest) -> SyncRun:
        window = None if request.sync_run_id is not None else self._resolve_window(request)
        checkpoint: dict[str, Any] = {"cursor": request.cursor, "page": 0}
        if window is not None:
            checkpoint["window"] = {"start": window.start.isoformat(), "end": window.end.isoformat()}
        metadata = {
            "mode": request.mode,
            "stage_only": request.stage_only,
            "processed_ids": [],
            "errors": [],
        }
        if request.file_path:
            metadata["file_path"] = str(request.file_path)
        return self.tracker.claim(
            self.source,
            resume_run_id=request.sync_run_id,
            stale_minutes=self.stale_minutes,
            dry_run=request.dry_run,
            triggered_by_user_id=request.triggered_by_user_id,
            metadata=metadata,
            checkpoint=checkpoint,
        )

    def _resolve_window(self, request: SyncRequest) -> SyncWindow | None:
        if self.adapter.kind != "transaction":
            return None
        window = SyncWindow.for_mode(request.mode, start=request.start_date, end=request.end_date)
        # Clamped once here; resumed invocations reuse the checkpointed bounds
        return self.adapter.clamp_window(window)

    @staticmethod
    def _window_from_checkpoint(checkpoint: Mapping[str, Any]) -> SyncWindow | None:
        window = checkpoint.get("window")
        if not window:
            return None
        return SyncWindow(
            start=_coerce_datetime(window["start"]),
            end=_coerce_datetime(window["end"]),
        )

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    def _drive(self, run: SyncRun, request: SyncRequest, *, started: float) -> BatchResult:
        run_id = run.id
        dry_run = bool(run.dry_run)
        stage_only = bool((run.run_metadata or {}).get("stage_only", request.stage_only))
        prior_errors = run.total_errors
        checkpoint = dict(run.checkpoint or {})
        metadata = dict(run.run_metadata or {})
        processed_ids: list[str] = list(metadata.get("processed_ids") or [])
        seen = set(processed_ids)
        errors: list[dict[str, Any]] = list(metadata.get("errors") or [])
        window = self._window_from_checkpoint(checkpoint)

        cursor = request.cursor if request.cursor is not None else checkpoint.get("cursor")
        totals = RunCounters()
        processed = 0
        pages = 0
        has_more = True
        cancelled = False

        while pages < self.max_pages:
            if self.tracker.is_cancelled(run_id):
                cancelled = True
                break

            page = self.adapter.fetch_page(cursor, window=window)
            fresh = [record for record in page.records if record.external_id not in seen]
            counters = RunCounters(fetched=len(fresh))

            staged_ids: dict[str, int] = {}
            if self.staging is not None and fresh and not dry_run:
                self.staging.upsert_batch(fresh, sync_run_id=run_id)
                staged_ids = self.staging.get_by_external_ids(record.external_id for record in fresh)

            if not (stage_only and self.staging is not None):
                for record in fresh:
                    self._process_record(run_id, record, staged_ids.get(record.external_id), counters, errors, dry_run)
            processed += len(fresh)

            for record in fresh:
                seen.add(record.external_id)
                processed_ids.append(record.external_id)
            cursor = page.next_cursor
            has_more = bool(page.has_more and page.next_cursor is not None)
            pages += 1
            checkpoint.update(
                {
                    "cursor": cursor,
                    "page": int(checkpoint.get("page") or 0) + 1,
                    "last_page_at": utcnow().isoformat(),
                }
            )
            metadata["processed_ids"] = processed_ids[-MAX_TRACKED_IDS:]
            metadata["errors"] = errors[-MAX_RECORDED_ERRORS:]
            if not self.tracker.record_progress(run_id, counters, checkpoint=checkpoint, metadata=metadata):
                cancelled = True
                break
            totals.add(counters)

            if not has_more or self.clock() - started >= self.time_budget_seconds:
                break

        result = BatchResult(
            ok=True,
            status="",
            source=self.source,
            sync_run_id=run_id,
            processed=processed,
            counters=totals,
            errors=errors[-MAX_RECORDED_ERRORS:],
        )
        if cancelled:
            result.status = SyncRunStatus.CANCELLED.value
            return result

        if has_more:
            if not self.tracker.finish(run_id, SyncRunStatus.CONTINUING, checkpoint=checkpoint):
                result.status = SyncRunStatus.CANCELLED.value
                return result
            result.status = SyncRunStatus.CONTINUING.value
            result.has_more = True
            result.next_cursor = cursor
            return result

        final = SyncRunStatus.COMPLETED
        if prior_errors or totals.errors:
            final = SyncRunStatus.COMPLETED_WITH_ERRORS
        if not self.tracker.finish(run_id, final, checkpoint=checkpoint):
            final = SyncRunStatus.CANCELLED
        result.status = final.value
        return result

    def _process_record(
        self,
        run_id: int,
        record: RawRecord,
        staged_id: int | None,
        counters: RunCounters,
        errors: list[dict[str, Any]],
        dry_run: bool,
    ) -> None:
        """Merge one record inside a savepoint; failures are counted, never raised."""
        try:
            with self.session.begin_nested():
                if self.adapter.kind == "transaction":
                    self._load_transaction(run_id, record, counters, dry_run)
                else:
                    self._merge_contact(run_id, record, staged_id, counters, dry_run)
        except Exception as exc:
            counters.errors += 1
            message = f"{type(exc).__name__}: {exc}"
            errors.append({"external_id": record.external_id, "error": message[:500]})
            logger.warning(
                "Failed to process %s record %s: %s",
                self.source,
                record.external_id,
                message,
                exc_info=True,
                extra={"sync_run_id": run_id, "sync_source": self.source, "sync_external_id": record.external_id},
            )
            if self.staging is not None and staged_id is not None:
                self.staging.record_error(staged_id, message[:500])

    def _merge_contact(
        self, run_id: int, record: RawRecord, staged_id: int | None, counters: RunCounters, dry_run: bool
    ) -> None:
        contact = self.adapter.normalize_contact(record.payload)
        outcome = self.merge_engine.merge(
            MergeInput.from_contact(self.source, record.external_id, contact),
            sync_run_id=run_id,
            dry_run=dry_run,
        )
        tally_action(counters, outcome.action)
        if self.staging is not None and staged_id is not None and not dry_run:
            self.staging.mark_processed(
                [staged_id],
                status=CSV_STATUS_BY_ACTION[outcome.action],
                client_id=outcome.client_id,
                error_message=outcome.reason if outcome.action is not MergeAction.INSERTED else None,
            )

    def _load_transaction(self, run_id: int, record: RawRecord, counters: RunCounters, dry_run: bool) -> None:
        fields = self.adapter.normalize_transaction(record.payload)
        if fields is None:
            counters.skipped += 1
            return
        outcome = self.transaction_loader.load(
            self.source, fields, record.payload, sync_run_id=run_id, dry_run=dry_run
        )
        if outcome.client_result.action is MergeAction.CONFLICT:
            counters.conflicts += 1
        tally_action(counters, outcome.action)


def tally_action(counters: RunCounters, action: MergeAction) -> None:
    if action is MergeAction.INSERTED:
        counters.inserted += 1
    elif action is MergeAction.UPDATED:
        counters.updated += 1
    elif action is MergeAction.CONFLICT:
        counters.conflicts += 1
    else:
        counters.skipped += 1
