"""ORM models exposed by the SpareTime application."""
from .task import Task
from .sync_state import PendingChangeRecord, SyncConflictRecord, SyncStateRecord

__all__ = ["Task", "SyncStateRecord", "PendingChangeRecord", "SyncConflictRecord"]
