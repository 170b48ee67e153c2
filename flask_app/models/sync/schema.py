"""
SQLAlchemy models for sync run tracking, raw staging, and merge conflicts.

Two nullable "key while open" columns (``SyncRun.active_source`` and
``MergeConflict.open_key``) carry unique constraints so that the database
itself rejects a second active run per source and a second open conflict per
provider record. NULLs never collide, so closed rows do not participate.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    COMPLETED_WITH_TIMEOUT = "completed_with_timeout"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


ACTIVE_RUN_STATUSES = (SyncRunStatus.RUNNING, SyncRunStatus.CONTINUING)
TERMINAL_RUN_STATUSES = tuple(status for status in SyncRunStatus if status not in ACTIVE_RUN_STATUSES)


class SyncRun(BaseModel):
    """One tracked execution of a sync process, resumable across invocations."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    active_source: Mapped[str | None] = mapped_column(db.String(50), nullable=True, unique=True)
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    heartbeat_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    run_metadata: Mapped[dict | None] = mapped_column("metadata", db.JSON, nullable=True)
    total_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_conflicts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    triggered_by_user = relationship("User", foreign_keys=[triggered_by_user_id])

    __table_args__ = (Index("idx_sync_runs_source_status", "source", "status"),)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.source} {self.status.value}>"


class RawContactMixin:
    """Columns shared by every per-provider raw contact staging table."""

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    payload: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True, index=True)

    @declared_attr
    def sync_run_id(cls) -> Mapped[int | None]:
        return mapped_column(ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True, index=True)


class GhlContactRaw(RawContactMixin, BaseModel):
    __tablename__ = "ghl_contacts_raw"


class ManychatContactRaw(RawContactMixin, BaseModel):
    __tablename__ = "manychat_contacts_raw"


class CsvProcessingStatus(str, enum.Enum):
    STAGED = "staged"
    MERGED = "merged"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    ERROR = "error"


class CsvContactRaw(RawContactMixin, BaseModel):
    """CSV upload rows; keeps a per-row outcome for operator review."""

    __tablename__ = "csv_contacts_raw"

    processing_status: Mapped[CsvProcessingStatus] = mapped_column(
        Enum(CsvProcessingStatus, name="csv_processing_status_enum"),
        nullable=False,
        default=CsvProcessingStatus.STAGED,
        index=True,
    )
    merged_client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)


RAW_CONTACT_MODELS = {
    "ghl": GhlContactRaw,
    "manychat": ManychatContactRaw,
    "csv": CsvContactRaw,
}


class ConflictType(str, enum.Enum):
    EMAIL_PHONE_MISMATCH = "email_phone_mismatch"
    DUPLICATE_CANDIDATE = "duplicate_candidate"


class ConflictStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class MergeConflict(BaseModel):
    """Identity ambiguity that needs manual review."""

    __tablename__ = "merge_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    conflict_type: Mapped[ConflictType] = mapped_column(
        Enum(ConflictType, name="merge_conflict_type_enum"),
        nullable=False,
    )
    status: Mapped[ConflictStatus] = mapped_column(
        Enum(ConflictStatus, name="merge_conflict_status_enum"),
        nullable=False,
        default=ConflictStatus.OPEN,
        index=True,
    )
    open_key: Mapped[str | None] = mapped_column(db.String(400), nullable=True, unique=True)
    email_found: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone_found: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    raw_data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    suggested_client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    conflicting_client_ids: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    resolution: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    sync_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (Index("idx_merge_conflicts_source_external", "source", "external_id"),)

    @staticmethod
    def build_open_key(source: str, external_id: str, conflict_type: ConflictType) -> str:
        return f"{source}:{external_id}:{conflict_type.value}"

    def close(self, status: ConflictStatus, *, resolution: str | None = None, resolved_by: str | None = None) -> None:
        """Close the conflict; a later fetch of the same record may open a fresh one."""
        if status is ConflictStatus.OPEN:
            raise ValueError("Use a closing status to resolve a conflict.")
        self.status = status
        self.open_key = None
        self.resolution = resolution
        self.resolved_by = resolved_by
        self.resolved_at = utcnow()
