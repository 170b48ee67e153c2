"""
Unify pass: drain staged contact rows through the merge engine.

Runs under its own ``unify-all`` source so it is tracked, cancelled, and
resumed like any provider sync. Each provider keeps an id cursor in the
checkpoint; rows are claimed in id order, so repeated batches inside one
run never overlap and a row that errors is retried by the next run.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy.orm import Session

from config.monitoring import SyncMonitoring
from flask_app.models import SyncRun, SyncRunStatus, db

from ..adapters import CSVContactAdapter, GHLAdapter, ManyChatAdapter
from .merge_engine import IdentityMergeEngine, MergeAction, MergeInput
from .orchestrator import CSV_STATUS_BY_ACTION, MAX_RECORDED_ERRORS, BatchResult, SyncRequest, tally_action
from .run_tracker import RunCounters, SyncRunConflict, SyncRunTracker
from .staging import RawStagingStore, StagedRow

logger = logging.getLogger(__name__)

UNIFY_SOURCE = "unify-all"
UNIFY_PROVIDERS = ("ghl", "manychat", "csv")

CONTACT_NORMALIZERS = {
    "ghl": GHLAdapter.normalize_contact,
    "manychat": ManyChatAdapter.normalize_contact,
    "csv": CSVContactAdapter.normalize_contact,
}


class UnifyService:
    def __init__(
        self,
        session: Session | None = None,
        *,
        tracker: SyncRunTracker | None = None,
        merge_engine: IdentityMergeEngine | None = None,
        providers: Sequence[str] = UNIFY_PROVIDERS,
        batch_size: int = 200,
        time_budget_seconds: float = 50.0,
        stale_minutes: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session: Session = session or db.session
        self.tracker = tracker or SyncRunTracker(self.session)
        self.merge_engine = merge_engine or IdentityMergeEngine(self.session)
        self.providers = tuple(providers)
        self.stores = {provider: RawStagingStore(provider, self.session) for provider in self.providers}
        self.batch_size = max(1, int(batch_size))
        self.time_budget_seconds = float(time_budget_seconds)
        self.stale_minutes = int(stale_minutes)
        self.clock = clock

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "UnifyService":
        options = {
            "batch_size": config.get("SYNC_UNIFY_BATCH_SIZE", 200),
            "time_budget_seconds": config.get("SYNC_TIME_BUDGET_SECONDS", 50),
            "stale_minutes": config.get("SYNC_STALE_RUN_MINUTES", 30),
        }
        options.update(kwargs)
        return cls(**options)

    def pending_counts(self) -> dict[str, int]:
        return {provider: store.count_pending() for provider, store in self.stores.items()}

    def run(self, request: SyncRequest, *, paused: bool = False) -> BatchResult:
        started = self.clock()
        result = self._run(request, paused=paused, started=started)
        result.duration_ms = int((self.clock() - started) * 1000)
        result.extra["pending"] = self.pending_counts()
        SyncMonitoring.record_invocation(
            source=UNIFY_SOURCE, status=result.status, duration_seconds=result.duration_ms / 1000.0
        )
        SyncMonitoring.record_outcomes(source=UNIFY_SOURCE, counts=result.counters.as_dict())
        return result

    def _run(self, request: SyncRequest, *, paused: bool, started: float) -> BatchResult:
        if request.force_cancel:
            cancelled = self.tracker.cancel_all(reason="Force cancelled by operator", source=UNIFY_SOURCE)
            return BatchResult(
                ok=True,
                status=SyncRunStatus.CANCELLED.value,
                source=UNIFY_SOURCE,
                extra={"cancelledRuns": cancelled},
            )
        if paused:
            run = self.tracker.record_skipped(
                UNIFY_SOURCE, "Sync paused by kill-switch", triggered_by_user_id=request.triggered_by_user_id
            )
            return BatchResult(ok=True, status=SyncRunStatus.SKIPPED.value, source=UNIFY_SOURCE, sync_run_id=run.id)

        try:
            run = self.tracker.claim(
                UNIFY_SOURCE,
                resume_run_id=request.sync_run_id,
                stale_minutes=self.stale_minutes,
                dry_run=request.dry_run,
                triggered_by_user_id=request.triggered_by_user_id,
                checkpoint={"cursors": {provider: None for provider in self.providers}, "done": []},
                metadata={"errors": []},
            )
        except SyncRunConflict as exc:
            return BatchResult(
                ok=False, status="already_running", source=UNIFY_SOURCE, sync_run_id=exc.active_run_id, error=str(exc)
            )
        if not run.is_active:
            return BatchResult(ok=True, status=run.status.value, source=UNIFY_SOURCE, sync_run_id=run.id)

        run_id = run.id
        try:
            return self._drain(run, started=started)
        except Exception as exc:
            self.session.rollback()
            message = f"{type(exc).__name__}: {exc}"
            logger.exception("Unify run %s failed", run_id, extra={"sync_run_id": run_id, "sync_source": UNIFY_SOURCE})
            self.tracker.fail(run_id, message)
            return BatchResult(
                ok=False, status=SyncRunStatus.FAILED.value, source=UNIFY_SOURCE, sync_run_id=run_id, error=message
            )

    def _drain(self, run: SyncRun, *, started: float) -> BatchResult:
        run_id = run.id
        dry_run = bool(run.dry_run)
        prior_errors = run.total_errors
        checkpoint = dict(run.checkpoint or {})
        cursors: dict[str, int | None] = dict(checkpoint.get("cursors") or {})
        done: list[str] = list(checkpoint.get("done") or [])
        metadata = dict(run.run_metadata or {})
        errors: list[dict[str, Any]] = list(metadata.get("errors") or [])

        totals = RunCounters()
        processed = 0
        cancelled = False
        out_of_time = False

        for provider in self.providers:
            if provider in done:
                continue
            store = self.stores[provider]
            while True:
                if self.clock() - started >= self.time_budget_seconds:
                    out_of_time = True
                    break
                rows = store.next_unprocessed(self.batch_size, after_id=cursors.get(provider))
                if not rows:
                    done.append(provider)
                    break
                counters = RunCounters(fetched=len(rows))
                for row in rows:
                    self._merge_row(run_id, provider, store, row, counters, errors, dry_run)
                processed += len(rows)
                cursors[provider] = rows[-1].id
                checkpoint.update({"cursors": cursors, "done": done})
                metadata["errors"] = errors[-MAX_RECORDED_ERRORS:]
                if not self.tracker.record_progress(run_id, counters, checkpoint=checkpoint, metadata=metadata):
                    cancelled = True
                    break
                totals.add(counters)
            if cancelled or out_of_time:
                break

        checkpoint.update({"cursors": cursors, "done": done})
        result = BatchResult(
            ok=True,
            status="",
            source=UNIFY_SOURCE,
            sync_run_id=run_id,
            processed=processed,
            counters=totals,
            errors=errors[-MAX_RECORDED_ERRORS:],
        )
        if cancelled:
            result.status = SyncRunStatus.CANCELLED.value
            return result
        if out_of_time:
            if self.tracker.finish(run_id, SyncRunStatus.CONTINUING, checkpoint=checkpoint):
                result.status = SyncRunStatus.CONTINUING.value
                result.has_more = True
            else:
                result.status = SyncRunStatus.CANCELLED.value
            return result

        final = SyncRunStatus.COMPLETED_WITH_ERRORS if (prior_errors or totals.errors) else SyncRunStatus.COMPLETED
        if not self.tracker.finish(run_id, final, checkpoint=checkpoint):
            final = SyncRunStatus.CANCELLED
        result.status = final.value
        return result

    def _merge_row(
        self,
        run_id: int,
        provider: str,
        store: RawStagingStore,
        row: StagedRow,
        counters: RunCounters,
        errors: list[dict[str, Any]],
        dry_run: bool,
    ) -> None:
        try:
            with self.session.begin_nested():
                contact = CONTACT_NORMALIZERS[provider](row.payload)
                outcome = self.merge_engine.merge(
                    MergeInput.from_contact(provider, row.external_id, contact),
                    sync_run_id=run_id,
                    dry_run=dry_run,
                )
                if not dry_run:
                    store.mark_processed(
                        [row.id],
                        status=CSV_STATUS_BY_ACTION[outcome.action],
                        client_id=outcome.client_id,
                        error_message=outcome.reason if outcome.action is not MergeAction.INSERTED else None,
                    )
            tally_action(counters, outcome.action)
        except Exception as exc:
            counters.errors += 1
            message = f"{type(exc).__name__}: {exc}"
            errors.append({"provider": provider, "external_id": row.external_id, "error": message[:500]})
            logger.warning(
                "Failed to unify %s row %s: %s",
                provider,
                row.external_id,
                message,
                exc_info=True,
                extra={"sync_run_id": run_id, "sync_source": provider, "sync_external_id": row.external_id},
            )
            store.record_error(row.id, message[:500])
