"""SQLModel tables backing the singleton sync state."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from utils.datetime_utils import now_iso


SYNC_STATE_ID = 1


class SyncStateRecord(SQLModel, table=True):
    """One row, ``id == 1``; created on first load, deleted when backup is disabled."""

    id: int = Field(default=SYNC_STATE_ID, primary_key=True)
    token_ciphertext: Optional[str] = None
    token_salt: Optional[str] = None
    token_iv: Optional[str] = None
    last_synced_at: Optional[str] = None
    last_synced_checksum: Optional[str] = None
    backup_file_id: Optional[str] = None


class PendingChangeRecord(SQLModel, table=True):
    __tablename__ = "pendingchange"

    seq: Optional[int] = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    operation: str
    timestamp: str = Field(default_factory=now_iso)
    data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))


class SyncConflictRecord(SQLModel, table=True):
    __tablename__ = "syncconflict"

    task_id: str = Field(primary_key=True)
    local_data: Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    remote_data: Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    detected_at: str = Field(default_factory=now_iso)


__all__ = [
    "SYNC_STATE_ID",
    "SyncStateRecord",
    "PendingChangeRecord",
    "SyncConflictRecord",
]
