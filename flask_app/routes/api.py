# flask_app/routes/api.py

"""
Service-level JSON endpoints
"""

from datetime import datetime, timezone

from flask import Response, current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flask_app.models import SystemSetting, db


def register_api_routes(app):
    """Register API routes"""

    @app.route("/api/health", methods=["GET"])
    def api_health():
        """Liveness plus a database round-trip; used by load balancers"""
        payload = {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sync_enabled": bool(current_app.config.get("SYNC_ENABLED", False)),
        }
        try:
            db.session.execute(text("SELECT 1"))
            payload["database"] = "ok"
            payload["sync_paused"] = SystemSetting.is_sync_paused()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Health check database error: {str(e)}")
            payload["status"] = "degraded"
            payload["database"] = "error"
            return jsonify(payload), 503
        return jsonify(payload), 200

    if app.config.get("MONITORING_ENABLED", False):

        @app.route(app.config.get("METRICS_ENDPOINT", "/metrics"), methods=["GET"])
        def api_metrics():
            """Prometheus scrape target for the sync counters"""
            return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
