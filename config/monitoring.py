# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Logging and metrics configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "client-sync")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    MONITORING_ENABLED = True
    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class SyncMonitoring:
    """Prometheus metric helpers for sync runs and provider calls."""

    RUNS_COUNTER = Counter(
        "sync_runs_total",
        "Sync invocations by source and resulting status.",
        labelnames=("source", "status"),
    )
    RUN_LATENCY = Histogram(
        "sync_run_invocation_seconds",
        "Wall-clock duration of one sync invocation.",
        labelnames=("source",),
        buckets=(0.5, 1, 2, 5, 10, 20, 30, 45, 60, 120),
    )
    RECORDS_COUNTER = Counter(
        "sync_records_total",
        "Records processed by source and outcome.",
        labelnames=("source", "outcome"),
    )
    PROVIDER_RETRIES = Counter(
        "sync_provider_retries_total",
        "Provider HTTP retries by provider and status code.",
        labelnames=("provider", "status"),
    )

    @classmethod
    def record_invocation(cls, *, source: str, status: str, duration_seconds: float):
        cls.RUNS_COUNTER.labels(source=source, status=status).inc()
        cls.RUN_LATENCY.labels(source=source).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_outcomes(cls, *, source: str, counts: dict):
        for outcome, value in counts.items():
            if value:
                cls.RECORDS_COUNTER.labels(source=source, outcome=outcome).inc(value)

    @classmethod
    def record_retry(cls, *, provider: str, status: str):
        cls.PROVIDER_RETRIES.labels(provider=provider, status=status).inc()
