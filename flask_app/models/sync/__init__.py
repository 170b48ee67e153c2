from .schema import (
    ACTIVE_RUN_STATUSES,
    ConflictStatus,
    ConflictType,
    CsvContactRaw,
    CsvProcessingStatus,
    GhlContactRaw,
    ManychatContactRaw,
    MergeConflict,
    RAW_CONTACT_MODELS,
    SyncRun,
    SyncRunStatus,
    TERMINAL_RUN_STATUSES,
)

__all__ = [
    "ACTIVE_RUN_STATUSES",
    "ConflictStatus",
    "ConflictType",
    "CsvContactRaw",
    "CsvProcessingStatus",
    "GhlContactRaw",
    "ManychatContactRaw",
    "MergeConflict",
    "RAW_CONTACT_MODELS",
    "SyncRun",
    "SyncRunStatus",
    "TERMINAL_RUN_STATUSES",
]
