"""
Command-center coordinator: run several sub-syncs under one parent run.

Steps run sequentially inside one shared wall-clock budget. Before each step
the elapsed time is checked; once the budget is spent the remaining steps
are recorded with the error ``"Timeout"`` instead of being attempted. A
failing step is recorded and the next one still runs.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy.orm import Session

from config.monitoring import SyncMonitoring
from flask_app.models import SyncRunStatus, db

from ..adapters import build_adapter
from .orchestrator import BatchOrchestrator, BatchResult, SyncRequest
from .run_tracker import RunCounters, SyncRunConflict, SyncRunTracker
from .unify import UNIFY_SOURCE, UnifyService

logger = logging.getLogger(__name__)

COMMAND_CENTER_SOURCE = "command-center"
DEFAULT_STEP_ORDER = ("stripe", "stripe_subscriptions", "stripe_invoices", "paypal", "ghl", "manychat", "unify")
TIMEOUT_ERROR = "Timeout"

StepRunner = Callable[[SyncRequest, float], BatchResult]


@dataclass(frozen=True)
class CoordinatorStep:
    """A named sub-sync; ``source`` is the run source it tracks under."""

    name: str
    source: str
    runner: StepRunner


@dataclass(slots=True)
class StepOutcome:
    name: str
    ok: bool
    status: str
    sync_run_id: int | None = None
    error: str | None = None
    duration_ms: int = 0
    has_more: bool = False
    counts: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_default_steps(config: Mapping[str, Any], sources: Sequence[str]) -> list[CoordinatorStep]:
    """
    Build the standard step list for the enabled sources.

    Adapters are constructed lazily inside each step, so a provider with
    missing credentials fails its own step only.
    """

    def provider_runner(source: str) -> StepRunner:
        def run(request: SyncRequest, remaining_seconds: float) -> BatchResult:
            adapter = build_adapter(source, config)
            orchestrator = BatchOrchestrator.from_config(
                adapter,
                config,
                time_budget_seconds=min(float(config.get("SYNC_TIME_BUDGET_SECONDS", 50)), remaining_seconds),
            )
            return orchestrator.run(request)

        return run

    def unify_runner(request: SyncRequest, remaining_seconds: float) -> BatchResult:
        service = UnifyService.from_config(
            config,
            time_budget_seconds=min(float(config.get("SYNC_TIME_BUDGET_SECONDS", 50)), remaining_seconds),
        )
        return service.run(request)

    steps: list[CoordinatorStep] = []
    for name in DEFAULT_STEP_ORDER:
        if name == "unify":
            steps.append(CoordinatorStep(name="unify", source=UNIFY_SOURCE, runner=unify_runner))
        elif name in sources:
            steps.append(CoordinatorStep(name=name, source=name, runner=provider_runner(name)))
    return steps


class CommandCenterCoordinator:
    def __init__(
        self,
        steps: Sequence[CoordinatorStep],
        *,
        session: Session | None = None,
        tracker: SyncRunTracker | None = None,
        time_budget_seconds: float = 55.0,
        stale_minutes: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.steps = tuple(steps)
        self.session: Session = session or db.session
        self.tracker = tracker or SyncRunTracker(self.session)
        self.time_budget_seconds = float(time_budget_seconds)
        self.stale_minutes = int(stale_minutes)
        self.clock = clock

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], sources: Sequence[str], **kwargs: Any
    ) -> "CommandCenterCoordinator":
        options = {
            "time_budget_seconds": config.get("SYNC_COORDINATOR_BUDGET_SECONDS", 55),
            "stale_minutes": config.get("SYNC_COORDINATOR_STALE_MINUTES", 10),
        }
        options.update(kwargs)
        return cls(build_default_steps(config, sources), **options)

    def run(self, request: SyncRequest, *, paused: bool = False) -> BatchResult:
        started = self.clock()
        result = self._run(request, paused=paused, started=started)
        result.duration_ms = int((self.clock() - started) * 1000)
        SyncMonitoring.record_invocation(
            source=COMMAND_CENTER_SOURCE, status=result.status, duration_seconds=result.duration_ms / 1000.0
        )
        return result

    def _run(self, request: SyncRequest, *, paused: bool, started: float) -> BatchResult:
        if request.force_cancel:
            cancelled = self.tracker.cancel_all(reason="Force cancelled from command center")
            return BatchResult(
                ok=True,
                status=SyncRunStatus.CANCELLED.value,
                source=COMMAND_CENTER_SOURCE,
                extra={"cancelledRuns": cancelled},
            )
        if paused:
            run = self.tracker.record_skipped(
                COMMAND_CENTER_SOURCE, "Sync paused by kill-switch", triggered_by_user_id=request.triggered_by_user_id
            )
            return BatchResult(
                ok=True, status=SyncRunStatus.SKIPPED.value, source=COMMAND_CENTER_SOURCE, sync_run_id=run.id
            )

        self.tracker.cleanup_stale(None, threshold_minutes=self.stale_minutes)
        try:
            run = self.tracker.start(
                COMMAND_CENTER_SOURCE,
                dry_run=request.dry_run,
                triggered_by_user_id=request.triggered_by_user_id,
                metadata={"mode": request.mode, "steps": {}},
            )
        except SyncRunConflict as exc:
            return BatchResult(
                ok=False,
                status="already_running",
                source=COMMAND_CENTER_SOURCE,
                sync_run_id=exc.active_run_id,
                error=str(exc),
            )

        run_id = run.id
        outcomes: list[StepOutcome] = []
        totals = RunCounters()
        timed_out = False
        cancelled = False

        for index, step in enumerate(self.steps):
            elapsed = self.clock() - started
            if elapsed >= self.time_budget_seconds:
                timed_out = True
                outcomes.extend(
                    StepOutcome(name=skipped.name, ok=False, status="timeout", error=TIMEOUT_ERROR)
                    for skipped in self.steps[index:]
                )
                break
            if self.tracker.is_cancelled(run_id):
                cancelled = True
                break

            outcome, counters = self._run_step(step, request, self.time_budget_seconds - elapsed)
            outcomes.append(outcome)
            totals.add(counters)
            metadata = {"mode": request.mode, "steps": {item.name: item.as_dict() for item in outcomes}}
            if not self.tracker.record_progress(run_id, counters, metadata=metadata):
                cancelled = True
                break

        step_payload = [outcome.as_dict() for outcome in outcomes]
        result = BatchResult(
            ok=True,
            status="",
            source=COMMAND_CENTER_SOURCE,
            sync_run_id=run_id,
            processed=sum(outcome.counts.get("fetched", 0) for outcome in outcomes),
            counters=totals,
            extra={"steps": step_payload},
        )
        if cancelled:
            result.status = SyncRunStatus.CANCELLED.value
            return result

        if timed_out:
            final = SyncRunStatus.COMPLETED_WITH_TIMEOUT
        elif any(not outcome.ok for outcome in outcomes):
            final = SyncRunStatus.COMPLETED_WITH_ERRORS
        else:
            final = SyncRunStatus.COMPLETED
        failed_steps = [outcome.name for outcome in outcomes if not outcome.ok]
        error_message = f"Steps with errors: {', '.join(failed_steps)}" if failed_steps else None
        metadata = {"mode": request.mode, "steps": {item.name: item.as_dict() for item in outcomes}}
        if not self.tracker.finish(run_id, final, metadata=metadata, error_message=error_message):
            final = SyncRunStatus.CANCELLED
        result.status = final.value
        logger.info(
            "Command center run %s finished with %s",
            run_id,
            final.value,
            extra={"sync_run_id": run_id, "sync_source": COMMAND_CENTER_SOURCE, "sync_failed_steps": failed_steps},
        )
        return result

    def _run_step(
        self, step: CoordinatorStep, request: SyncRequest, remaining_seconds: float
    ) -> tuple[StepOutcome, RunCounters]:
        step_started = self.clock()
        # Pick up a sub-run a previous coordinator pass left continuing
        active = self.tracker.find_active(step.source)
        resume_id = active.id if active is not None and active.status is SyncRunStatus.CONTINUING else None
        step_request = SyncRequest(
            source=step.source,
            mode=request.mode,
            start_date=request.start_date,
            end_date=request.end_date,
            sync_run_id=resume_id,
            dry_run=request.dry_run,
            triggered_by_user_id=request.triggered_by_user_id,
        )
        try:
            result = step.runner(step_request, remaining_seconds)
        except Exception as exc:
            self.session.rollback()
            message = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Command center step %s failed: %s",
                step.name,
                message,
                exc_info=True,
                extra={"sync_source": step.source},
            )
            outcome = StepOutcome(
                name=step.name,
                ok=False,
                status=SyncRunStatus.FAILED.value,
                error=message,
                duration_ms=int((self.clock() - step_started) * 1000),
            )
            return outcome, RunCounters()

        ok = result.ok and result.status not in (SyncRunStatus.FAILED.value, SyncRunStatus.COMPLETED_WITH_ERRORS.value)
        outcome = StepOutcome(
            name=step.name,
            ok=ok,
            status=result.status,
            sync_run_id=result.sync_run_id,
            error=result.error,
            duration_ms=int((self.clock() - step_started) * 1000),
            has_more=result.has_more,
            counts=result.counters.as_dict(),
        )
        return outcome, result.counters
