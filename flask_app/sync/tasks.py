"""
Sync Celery tasks.

Provider and unify tasks chain themselves: when an invocation reports
``hasMore`` the task enqueues its own continuation (same run id, next
cursor), so a single trigger drives a long sync to completion while every
invocation stays inside the time budget.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from celery import shared_task
from flask import current_app

from .pipeline.orchestrator import BatchResult, SyncRequest
from .service import run_command_center, run_housekeeping, run_source_sync, run_unify

MAX_CHAIN_DEPTH = 200


def _chain(task, result: BatchResult, request: SyncRequest, kwargs: Mapping[str, Any], depth: int) -> dict[str, Any]:
    body = result.as_dict()
    if not result.has_more:
        return body
    if depth >= MAX_CHAIN_DEPTH:
        current_app.logger.warning(
            "Sync chain for %s stopped at depth %s; resume run %s manually",
            request.source,
            depth,
            result.sync_run_id,
            extra={"sync_run_id": result.sync_run_id, "sync_source": request.source},
        )
        body["chainStopped"] = True
        return body
    next_kwargs = dict(kwargs)
    next_kwargs["payload"] = request.continuation(result).to_payload()
    next_kwargs["depth"] = depth + 1
    async_result = task.apply_async(kwargs=next_kwargs)
    body["chainedTaskId"] = async_result.id
    return body


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by the worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="sync.source.run", bind=True)
def run_source_sync_task(
    self,
    *,
    source: str,
    payload: dict[str, Any] | None = None,
    triggered_by_user_id: int | None = None,
    depth: int = 0,
) -> dict[str, Any]:
    request = SyncRequest.coerce(source, payload, triggered_by_user_id=triggered_by_user_id)
    result = run_source_sync(request)
    kwargs = {"source": source, "triggered_by_user_id": triggered_by_user_id}
    return _chain(self, result, request, kwargs, depth)


@shared_task(name="sync.unify.run", bind=True)
def run_unify_task(
    self,
    *,
    payload: dict[str, Any] | None = None,
    triggered_by_user_id: int | None = None,
    depth: int = 0,
) -> dict[str, Any]:
    request = SyncRequest.coerce("unify-all", payload, triggered_by_user_id=triggered_by_user_id)
    result = run_unify(request)
    return _chain(self, result, request, {"triggered_by_user_id": triggered_by_user_id}, depth)


@shared_task(name="sync.command_center.run", bind=True)
def run_command_center_task(
    self,
    *,
    payload: dict[str, Any] | None = None,
    triggered_by_user_id: int | None = None,
) -> dict[str, Any]:
    request = SyncRequest.coerce("command-center", payload, triggered_by_user_id=triggered_by_user_id)
    return run_command_center(request).as_dict()


@shared_task(name="sync.housekeeping.cleanup", bind=True)
def housekeeping_cleanup_task(self) -> dict[str, Any]:
    return run_housekeeping().as_dict()
