"""
Sync feature package.

Mounts the sync blueprint, CLI, and Celery worker based on configuration and
validates the configured sources against the adapter registry at startup.
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple

from flask import Flask

from flask_app.utils.sync import get_sync_sources, is_sync_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .registry import AdapterDescriptor, get_adapter_registry, resolve_adapters
from .views import sync_blueprint

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_sources": (),
            "active_adapters": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint, CLI, and worker.

    State lives in ``app.extensions['sync']`` for the views, CLI, and tasks.
    """
    enabled = is_sync_enabled(app)
    configured: Tuple[str, ...] = get_sync_sources(app)
    worker_enabled = bool(app.config.get("SYNC_WORKER_ENABLED", False))

    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "configured_sources": configured, "worker_enabled": worker_enabled})

    if not enabled:
        state["active_adapters"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    active: Iterable[AdapterDescriptor] = resolve_adapters(configured, get_adapter_registry())
    state["active_adapters"] = tuple(active)
    for descriptor in state["active_adapters"]:
        missing = descriptor.missing_config(app.config)
        if missing:
            app.logger.warning(
                "Sync source '%s' is missing configuration: %s",
                descriptor.name,
                ", ".join(missing),
                extra={"sync_source": descriptor.name, "sync_missing_config": list(missing)},
            )

    if worker_enabled:
        ensure_celery_app(app, state)

    if sync_blueprint.name not in app.blueprints:
        app.register_blueprint(sync_blueprint)
    _set_cli(app, enabled=True)

    app.logger.info("Sync enabled with sources: %s", ", ".join(configured) or "none")
