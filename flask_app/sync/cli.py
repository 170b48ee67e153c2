"""
``flask sync`` command group.

Inline commands act as their own continuation supervisor: with ``--follow``
they keep re-invoking a run with its continuation token until the provider
reports no more pages. ``--queue`` hands the first invocation to Celery,
whose tasks chain themselves instead.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo, with_appcontext
from sqlalchemy import select

from flask_app.models import SYNC_PAUSED_KEY, SyncRunStatus, SystemSetting, User, db
from flask_app.utils.sync import get_sync_sources, is_sync_enabled

from .adapters import CSVAdapterError, CSVContactAdapter, ProviderConfigurationError
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .pipeline.orchestrator import VALID_MODES, BatchResult, SyncRequest
from .pipeline.run_service import RunFilters, SyncRunService
from .pipeline.run_tracker import SyncRunNotFound
from .service import cancel_run, run_command_center, run_housekeeping, run_source_sync, run_unify

MAX_FOLLOW_INVOCATIONS = 500


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Cross-source sync commands.

    Lists the configured sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync commands.")
    if ctx.invoked_subcommand is None:
        click.echo("Configured sync sources:")
        for source in get_sync_sources(app):
            click.echo(f"  - {source}")


def get_disabled_sync_group() -> click.Group:
    """
    Return a minimal command group that informs the operator sync is disabled.
    """

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Set SYNC_WORKER_ENABLED=true and configure CELERY_BROKER_URL."
        )
    return celery_app


def _echo_result(ctx, body: dict[str, Any], ok: bool = True) -> None:
    click.echo(json.dumps(body, indent=2, sort_keys=True, default=str))
    if not ok:
        ctx.exit(1)


def _drive(
    invoke: Callable[[SyncRequest], BatchResult], request: SyncRequest, *, follow: bool
) -> tuple[BatchResult, int]:
    result = invoke(request)
    invocations = 1
    while follow and result.has_more and invocations < MAX_FOLLOW_INVOCATIONS:
        request = request.continuation(result)
        result = invoke(request)
        invocations += 1
    return result, invocations


def _enqueue(app, task_name: str, **kwargs: Any) -> dict[str, Any]:
    celery_app = _resolve_celery(app)
    async_result = celery_app.send_task(task_name, kwargs=kwargs)
    app.logger.info(
        "Sync task queued via CLI",
        extra={"sync_task_name": task_name, "sync_task_id": async_result.id},
    )
    return {"status": "queued", "task_id": async_result.id, "task": task_name}


def _request_payload(**options: Any) -> dict[str, Any]:
    return {key: value for key, value in options.items() if value not in (None, False)}


@sync_cli.command("run")
@click.argument("source")
@click.option("--mode", type=click.Choice(VALID_MODES), default="7d", show_default=True)
@click.option("--start-date", help="ISO date overriding the mode window start.")
@click.option("--end-date", help="ISO date overriding the mode window end.")
@click.option("--cursor", help="Resume from this provider cursor.")
@click.option("--run-id", type=int, help="Continue an existing sync run.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Contact CSV (csv source only).",
)
@click.option("--dry-run", is_flag=True, help="Resolve identities without writing client records.")
@click.option("--stage-only", is_flag=True, help="Stage raw contacts without merging them.")
@click.option("--follow/--no-follow", default=True, help="Keep invoking until no pages remain.")
@click.option("--queue", "queue", is_flag=True, help="Enqueue on the Celery worker instead of running inline.")
@with_appcontext
@click.pass_context
def sync_run(
    ctx,
    source: str,
    mode: str,
    start_date: Optional[str],
    end_date: Optional[str],
    cursor: Optional[str],
    run_id: Optional[int],
    file_path: Optional[Path],
    dry_run: bool,
    stage_only: bool,
    follow: bool,
    queue: bool,
):
    """Sync one provider SOURCE."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    source = source.strip().lower()
    if source not in get_sync_sources(app):
        configured = ", ".join(get_sync_sources(app))
        raise click.ClickException(f"Sync source '{source}' is not enabled. Configured: {configured}.")
    if source == "csv":
        if file_path is None and run_id is None:
            raise click.ClickException("CSV source requires --file.")
        if file_path is not None:
            try:
                CSVContactAdapter(file_path).validate_header()
            except CSVAdapterError as exc:
                raise click.ClickException(str(exc)) from exc
    payload = _request_payload(
        mode=mode,
        startDate=start_date,
        endDate=end_date,
        cursor=cursor,
        syncRunId=run_id,
        dryRun=dry_run,
        stageOnly=stage_only,
        filePath=str(file_path.resolve()) if file_path else None,
    )
    try:
        request = SyncRequest.coerce(source, payload)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if queue:
        _echo_result(ctx, _enqueue(app, "sync.source.run", source=source, payload=request.to_payload()))
        return

    try:
        result, invocations = _drive(run_source_sync, request, follow=follow)
    except (ProviderConfigurationError, CSVAdapterError, SyncRunNotFound, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    body = result.as_dict()
    body["invocations"] = invocations
    _echo_result(ctx, body, ok=result.ok)


@sync_cli.command("unify")
@click.option("--run-id", type=int, help="Continue an existing unify run.")
@click.option("--dry-run", is_flag=True, help="Resolve identities without writing client records.")
@click.option("--follow/--no-follow", default=True, help="Keep invoking until the staging tables drain.")
@click.option("--queue", "queue", is_flag=True, help="Enqueue on the Celery worker instead of running inline.")
@with_appcontext
@click.pass_context
def sync_unify(ctx, run_id: Optional[int], dry_run: bool, follow: bool, queue: bool):
    """Merge staged contacts from every contact provider into clients."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    request = SyncRequest.coerce("unify-all", _request_payload(syncRunId=run_id, dryRun=dry_run))
    if queue:
        _echo_result(ctx, _enqueue(app, "sync.unify.run", payload=request.to_payload()))
        return
    try:
        result, invocations = _drive(run_unify, request, follow=follow)
    except SyncRunNotFound as exc:
        raise click.ClickException(str(exc)) from exc
    body = result.as_dict()
    body["invocations"] = invocations
    _echo_result(ctx, body, ok=result.ok)


@sync_cli.command("command-center")
@click.option("--force-cancel", is_flag=True, help="Cancel every active run instead of syncing.")
@click.option("--queue", "queue", is_flag=True, help="Enqueue on the Celery worker instead of running inline.")
@with_appcontext
@click.pass_context
def sync_command_center(ctx, force_cancel: bool, queue: bool):
    """Run every provider step followed by unify within one time budget."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    payload = _request_payload(forceCancel=force_cancel)
    if queue:
        _echo_result(ctx, _enqueue(app, "sync.command_center.run", payload=payload))
        return
    result = run_command_center(SyncRequest.coerce("command-center", payload))
    _echo_result(ctx, result.as_dict(), ok=result.ok)


@sync_cli.command("cancel")
@click.argument("run_id", type=int)
@with_appcontext
def sync_cancel(run_id: int):
    """Cancel an active sync run."""
    if not cancel_run(run_id):
        raise click.ClickException(f"Sync run {run_id} is not active.")
    click.echo(f"Sync run {run_id} cancelled.")


@sync_cli.command("cleanup")
@with_appcontext
def sync_cleanup():
    """Purge old runs, processed raw rows, and resolved conflicts."""
    click.echo(json.dumps(run_housekeeping().as_dict(), indent=2, sort_keys=True))


@sync_cli.command("pause")
@with_appcontext
def sync_pause():
    """Engage the global kill-switch."""
    if not SystemSetting.put(SYNC_PAUSED_KEY, True, description="Global sync kill-switch"):
        raise click.ClickException("Failed to update the sync kill-switch.")
    click.echo("Sync paused. Invocations will be recorded as skipped.")


@sync_cli.command("resume")
@with_appcontext
def sync_resume():
    """Release the global kill-switch."""
    if not SystemSetting.put(SYNC_PAUSED_KEY, False, description="Global sync kill-switch"):
        raise click.ClickException("Failed to update the sync kill-switch.")
    click.echo("Sync resumed.")


@sync_cli.command("runs")
@click.option("--source", "sources", multiple=True, help="Filter by source (repeatable).")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([status.value for status in SyncRunStatus]),
    help="Filter by status (repeatable).",
)
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit the full run summaries as JSON.")
@with_appcontext
def sync_runs(sources: tuple[str, ...], statuses: tuple[str, ...], limit: int, as_json: bool):
    """List recent sync runs, newest first."""
    filters = RunFilters.coerce(page=1, page_size=limit, statuses=statuses, sources=sources)
    result = SyncRunService().list_runs(filters)
    if as_json:
        click.echo(json.dumps(result.as_dict(), indent=2, default=str))
        return
    if not result.items:
        click.echo("No sync runs found.")
        return
    for summary in result.items:
        totals = summary.totals
        click.echo(
            f"#{summary.id:<6} {summary.source:<15} {summary.status:<26} "
            f"fetched={totals.get('fetched', 0)} inserted={totals.get('inserted', 0)} "
            f"updated={totals.get('updated', 0)} conflicts={totals.get('conflicts', 0)} "
            f"errors={totals.get('errors', 0)}"
        )


@sync_cli.command("issue-token")
@click.argument("username")
@click.option("--email", help="Email for a new user (defaults to <username>@localhost).")
@click.option("--admin/--no-admin", default=True, show_default=True)
@with_appcontext
def sync_issue_token(username: str, email: Optional[str], admin: bool):
    """Create USERNAME if needed and print a fresh bearer token."""
    user = db.session.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None:
        user = User(username=username, email=email or f"{username}@localhost", is_admin=admin)
        db.session.add(user)
    else:
        user.is_admin = admin
    token = user.issue_api_token()
    db.session.commit()
    click.echo(token)


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    state = app.extensions.get("sync", {})
    if not state.get("worker_enabled") and not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag so HTTP triggers can queue work.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    state = app.extensions.get("sync")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
