"""
Sync blueprint: trigger, cancel, and inspect sync runs over HTTP.

Every endpoint authenticates through the Flask-Login request loader
(``Authorization: Bearer <token>``) and requires an admin before any sync
logic runs. Triggers run inline by default; ``"background": true`` in the
body enqueues the matching Celery task and answers ``202``.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import NoResultFound

from flask_app.models import SystemSetting
from flask_app.utils.permissions import admin_api_required
from flask_app.utils.sync import is_source_enabled, is_sync_enabled

from .adapters import CSVAdapterError, CSVContactAdapter, ProviderConfigurationError
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .pipeline.orchestrator import BatchResult, SyncRequest
from .pipeline.run_service import RunFilters, SyncRunService
from .pipeline.run_tracker import SyncRunNotFound
from .registry import AdapterDescriptor
from .service import cancel_run, run_command_center, run_housekeeping, run_source_sync, run_unify
from .utils import allowed_file, cleanup_upload, persist_upload

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

API_SOURCES = ("stripe", "stripe_subscriptions", "stripe_invoices", "paypal", "ghl", "manychat")
STATUS_BY_RESULT = {
    "already_running": HTTPStatus.CONFLICT,
    "failed": HTTPStatus.INTERNAL_SERVER_ERROR,
}
# Server-side only; uploads are resolved from the run itself.
_CLIENT_FORBIDDEN_KEYS = ("filePath", "file_path")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"ok": False, "error": message}), status


def _ensure_sync_enabled_api():
    if not is_sync_enabled(current_app):
        return _json_error("Sync is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _ensure_source_enabled_api(source: str):
    if not is_source_enabled(source, current_app):
        return _json_error(f"Sync source '{source}' is not enabled.", HTTPStatus.NOT_FOUND)
    return None


def _request_payload() -> dict[str, Any]:
    payload = dict(request.get_json(silent=True) or {})
    for key in _CLIENT_FORBIDDEN_KEYS:
        payload.pop(key, None)
    return payload


def _wants_background(payload: dict[str, Any]) -> bool:
    return str(payload.pop("background", "")).strip().lower() in ("1", "true", "yes", "on")


def _result_response(result: BatchResult):
    status = STATUS_BY_RESULT.get(result.status, HTTPStatus.OK)
    return jsonify(result.as_dict()), status


def _enqueue(task_name: str, **kwargs: Any):
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return _json_error("Background worker is not enabled.", HTTPStatus.SERVICE_UNAVAILABLE)
    task = celery_app.tasks.get(task_name)
    if task is None:
        return _json_error(f"Task '{task_name}' is not registered.", HTTPStatus.INTERNAL_SERVER_ERROR)
    async_result = task.apply_async(kwargs=kwargs)
    current_app.logger.info(
        "Queued %s",
        task_name,
        extra={"sync_task_name": task_name, "sync_task_id": async_result.id},
    )
    return jsonify({"ok": True, "status": "queued", "task_id": async_result.id, "queue": DEFAULT_QUEUE_NAME}), (
        HTTPStatus.ACCEPTED
    )


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "kind": adapter.kind,
        "missing_config": list(adapter.missing_config(current_app.config)),
    }


@sync_blueprint.get("/health")
@admin_api_required
def sync_healthcheck():
    """Report sync configuration and, with ``?worker=1``, ping the Celery worker."""
    state = current_app.extensions.get("sync", {})
    payload: dict[str, Any] = {
        "status": "ok",
        "enabled": state.get("enabled", False),
        "paused": SystemSetting.is_sync_paused(),
        "worker_enabled": state.get("worker_enabled", False),
        "adapters": [_serialize_adapter(adapter) for adapter in state.get("active_adapters", ())],
        "latest_runs": {
            source: summary.as_dict() for source, summary in SyncRunService().latest_by_source().items()
        },
    }
    if request.args.get("worker") not in ("1", "true"):
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    if celery_app is None or not state.get("worker_enabled"):
        payload["worker"] = {"status": "disabled"}
        return jsonify(payload), HTTPStatus.OK
    timeout_seconds = float(request.args.get("timeout", 5))
    result = celery_app.tasks["sync.healthcheck"].apply_async()
    try:
        payload["worker"] = {"status": "ok", "heartbeat": result.get(timeout=timeout_seconds)}
        return jsonify(payload), HTTPStatus.OK
    except CeleryTimeoutError:
        payload["status"] = "degraded"
        payload["worker"] = {"status": "timeout", "timeout_seconds": timeout_seconds}
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT


@sync_blueprint.post("/unify")
@admin_api_required
def sync_unify():
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    payload = _request_payload()
    background = _wants_background(payload)
    try:
        sync_request = SyncRequest.coerce("unify-all", payload, triggered_by_user_id=current_user.id)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if background:
        return _enqueue("sync.unify.run", payload=sync_request.to_payload(), triggered_by_user_id=current_user.id)
    try:
        result = run_unify(sync_request)
    except SyncRunNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return _result_response(result)


@sync_blueprint.post("/command-center")
@admin_api_required
def sync_command_center():
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    payload = _request_payload()
    background = _wants_background(payload)
    try:
        sync_request = SyncRequest.coerce("command-center", payload, triggered_by_user_id=current_user.id)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if background:
        payload_out = sync_request.to_payload()
        payload_out["forceCancel"] = sync_request.force_cancel
        return _enqueue("sync.command_center.run", payload=payload_out, triggered_by_user_id=current_user.id)
    return _result_response(run_command_center(sync_request))


@sync_blueprint.post("/housekeeping")
@admin_api_required
def sync_housekeeping():
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    if _wants_background(_request_payload()):
        return _enqueue("sync.housekeeping.cleanup")
    summary = run_housekeeping()
    return jsonify({"ok": True, "status": "completed", **summary.as_dict()}), HTTPStatus.OK


@sync_blueprint.post("/csv")
@admin_api_required
def sync_csv_upload():
    """
    Upload a contact CSV (``multipart/form-data`` field ``file``) and sync it.

    A JSON body carrying ``syncRunId`` and ``cursor`` continues an earlier
    upload instead.
    """
    disabled = _ensure_sync_enabled_api() or _ensure_source_enabled_api("csv")
    if disabled:
        return disabled

    upload = request.files.get("file")
    if upload is None:
        payload = _request_payload()
        background = _wants_background(payload)
        if not payload.get("syncRunId") and not payload.get("sync_run_id"):
            return _json_error("No file part in request.", HTTPStatus.BAD_REQUEST)
        file_path = None
    else:
        payload = {key: value for key, value in request.form.items() if key not in _CLIENT_FORBIDDEN_KEYS}
        background = _wants_background(payload)
        if not upload.filename:
            return _json_error("No file selected.", HTTPStatus.BAD_REQUEST)
        if not allowed_file(upload.filename):
            return _json_error("Only .csv uploads are supported.", HTTPStatus.BAD_REQUEST)
        file_path = persist_upload(upload, current_app)
        try:
            CSVContactAdapter(file_path).validate_header()
        except CSVAdapterError as exc:
            cleanup_upload(file_path)
            return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
        payload["filePath"] = str(file_path)

    try:
        sync_request = SyncRequest.coerce("csv", payload, triggered_by_user_id=current_user.id)
    except ValueError as exc:
        if file_path is not None:
            cleanup_upload(file_path)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    if background:
        return _enqueue(
            "sync.source.run",
            source="csv",
            payload=sync_request.to_payload(),
            triggered_by_user_id=current_user.id,
        )
    try:
        result = run_source_sync(sync_request)
    except SyncRunNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (CSVAdapterError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return _result_response(result)


@sync_blueprint.post("/<source>")
@admin_api_required
def sync_source(source: str):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    source = source.strip().lower()
    if source not in API_SOURCES:
        return _json_error(f"Unknown sync source '{source}'.", HTTPStatus.NOT_FOUND)
    disabled = _ensure_source_enabled_api(source)
    if disabled:
        return disabled

    payload = _request_payload()
    background = _wants_background(payload)
    try:
        sync_request = SyncRequest.coerce(source, payload, triggered_by_user_id=current_user.id)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if background:
        return _enqueue(
            "sync.source.run",
            source=source,
            payload=sync_request.to_payload(),
            triggered_by_user_id=current_user.id,
        )
    try:
        result = run_source_sync(sync_request)
    except SyncRunNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (ProviderConfigurationError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return _result_response(result)


@sync_blueprint.post("/runs/<int:run_id>/cancel")
@admin_api_required
def sync_run_cancel(run_id: int):
    if not cancel_run(run_id):
        return _json_error(f"Sync run {run_id} is not active.", HTTPStatus.NOT_FOUND)
    current_app.logger.info(
        "Sync run %s cancelled by %s",
        run_id,
        current_user.email,
        extra={"sync_run_id": run_id},
    )
    return jsonify({"ok": True, "status": "cancelled", "syncRunId": run_id}), HTTPStatus.OK


def _split_csv(value: str | None):
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@sync_blueprint.get("/runs")
@admin_api_required
def sync_runs_list():
    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            statuses=_split_csv(raw.get("status")),
            sources=_split_csv(raw.get("source")),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    service = SyncRunService()
    body = service.list_runs(filters).as_dict()
    body["status_counts"] = service.status_counts()
    return jsonify(body), HTTPStatus.OK


@sync_blueprint.get("/runs/<int:run_id>")
@admin_api_required
def sync_run_detail(run_id: int):
    service = SyncRunService()
    try:
        run = service.get_run(run_id)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    body = service.summarize(run).as_dict()
    metadata = dict(run.run_metadata or {})
    body["errors"] = list(metadata.get("errors") or [])
    steps = metadata.get("steps") or {}
    body["steps"] = list(steps.values()) if isinstance(steps, dict) else list(steps)
    body["triggered_by_user_id"] = run.triggered_by_user_id
    return jsonify(body), HTTPStatus.OK
