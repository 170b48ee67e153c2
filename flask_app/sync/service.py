"""
Entry points shared by the HTTP API, Celery tasks, and CLI.

Each function reads the kill-switch once per invocation and hands it to the
pipeline explicitly, builds the pipeline object from Flask config, and
returns the pipeline's structured result.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping

from flask import current_app

from flask_app.models import SyncRun, SyncRunStatus, SystemSetting, db

from .adapters import ProviderAdapter, build_adapter
from .pipeline.coordinator import CommandCenterCoordinator
from .pipeline.housekeeping import HousekeepingService, HousekeepingSummary
from .pipeline.orchestrator import BatchOrchestrator, BatchResult, SyncRequest
from .pipeline.run_tracker import SyncRunTracker
from .pipeline.unify import UnifyService
from .utils import cleanup_upload, resolve_upload_directory

# A skipped or cancelled CSV run may be started again from the same upload
UPLOAD_FINAL_STATUSES = frozenset(
    {
        SyncRunStatus.COMPLETED.value,
        SyncRunStatus.COMPLETED_WITH_ERRORS.value,
        SyncRunStatus.COMPLETED_WITH_TIMEOUT.value,
        SyncRunStatus.FAILED.value,
    }
)


def _config(config: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return config if config is not None else current_app.config


def resolve_csv_upload(request: SyncRequest) -> SyncRequest:
    """Continuations of a CSV run reuse the upload recorded on the run."""
    if request.source != "csv" or request.file_path or request.sync_run_id is None:
        return request
    run = db.session.get(SyncRun, request.sync_run_id)
    if run is None or run.source != "csv":
        return request
    return replace(request, file_path=(run.run_metadata or {}).get("file_path"))


def _discard_upload(path: Path) -> None:
    """Delete consumed HTTP uploads; files an operator passed to the CLI stay put."""
    if path.resolve().parent == resolve_upload_directory(current_app).resolve():
        cleanup_upload(path)


def run_source_sync(
    request: SyncRequest,
    *,
    config: Mapping[str, Any] | None = None,
    adapter: ProviderAdapter | None = None,
) -> BatchResult:
    config = _config(config)
    request = resolve_csv_upload(request)
    if adapter is None:
        extra = {"file_path": request.file_path} if request.source == "csv" else {}
        adapter = build_adapter(request.source, config, **extra)
    orchestrator = BatchOrchestrator.from_config(adapter, config)
    result = orchestrator.run(request, paused=SystemSetting.is_sync_paused())
    if request.source == "csv" and request.file_path and not result.has_more and result.status in UPLOAD_FINAL_STATUSES:
        _discard_upload(Path(request.file_path))
    return result


def run_unify(request: SyncRequest, *, config: Mapping[str, Any] | None = None) -> BatchResult:
    service = UnifyService.from_config(_config(config))
    return service.run(request, paused=SystemSetting.is_sync_paused())


def run_command_center(request: SyncRequest, *, config: Mapping[str, Any] | None = None) -> BatchResult:
    config = _config(config)
    sources = tuple(config.get("SYNC_SOURCES", ()))
    coordinator = CommandCenterCoordinator.from_config(config, sources)
    return coordinator.run(request, paused=SystemSetting.is_sync_paused())


def run_housekeeping(*, config: Mapping[str, Any] | None = None) -> HousekeepingSummary:
    return HousekeepingService.from_config(_config(config)).cleanup()


def cancel_run(run_id: int) -> bool:
    return SyncRunTracker().cancel(run_id)
