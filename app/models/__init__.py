"""Database models."""
from app.models.server import Server
from app.models.access_key import AccessKey, KeyStatus, ExpirationType, DataLimitResetStrategy
from app.models.connection_session import ConnectionSession
from app.models.traffic_log import TrafficLog
from app.models.archived_key import ArchivedKey, ArchiveReason
from app.models.sync_lock import SyncLock

__all__ = [
    "Server",
    "AccessKey",
    "KeyStatus",
    "ExpirationType",
    "DataLimitResetStrategy",
    "ConnectionSession",
    "TrafficLog",
    "ArchivedKey",
    "ArchiveReason",
    "SyncLock",
]
