# flask_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .client import ClientIdentity, ContactIdentityLink, LifecycleStage, Transaction, TransactionStatus
from .sync import (
    ACTIVE_RUN_STATUSES,
    RAW_CONTACT_MODELS,
    TERMINAL_RUN_STATUSES,
    ConflictStatus,
    ConflictType,
    CsvContactRaw,
    CsvProcessingStatus,
    GhlContactRaw,
    ManychatContactRaw,
    MergeConflict,
    SyncRun,
    SyncRunStatus,
)
from .system_setting import SYNC_PAUSED_KEY, SystemSetting
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "SystemSetting",
    "SYNC_PAUSED_KEY",
    # Identity graph
    "ClientIdentity",
    "ContactIdentityLink",
    "LifecycleStage",
    "Transaction",
    "TransactionStatus",
    # Sync bookkeeping
    "SyncRun",
    "SyncRunStatus",
    "ACTIVE_RUN_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "GhlContactRaw",
    "ManychatContactRaw",
    "CsvContactRaw",
    "CsvProcessingStatus",
    "RAW_CONTACT_MODELS",
    "MergeConflict",
    "ConflictStatus",
    "ConflictType",
]
