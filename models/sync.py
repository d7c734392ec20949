"""Value objects exchanged between the store, the Drive client and the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    REMOTE_NEWER = "remote-newer"


PENDING_OPERATIONS = ("create", "update", "delete")
CONFLICT_RESOLUTIONS = ("local", "remote", "merge")
FIRST_CONNECT_DECISIONS = ("merge", "use-remote", "use-local")


@dataclass(frozen=True)
class PendingChange:
    task_id: str
    operation: str
    timestamp: str
    data: Optional[Dict[str, Any]] = None
    seq: Optional[int] = None


@dataclass(frozen=True)
class SyncConflict:
    task_id: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    detected_at: str


@dataclass(frozen=True)
class EncryptedToken:
    ciphertext: str
    salt: str
    iv: str


@dataclass
class SyncState:
    encrypted_token: Optional[EncryptedToken] = None
    last_synced_at: Optional[str] = None
    last_synced_checksum: Optional[str] = None
    backup_file_id: Optional[str] = None
    pending_changes: List[PendingChange] = field(default_factory=list)
    conflicts: List[SyncConflict] = field(default_factory=list)


@dataclass
class GoogleDriveBackup:
    version: int
    export_timestamp: str
    tasks: List[Dict[str, Any]]
    checksum: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "exportTimestamp": self.export_timestamp,
            "tasks": self.tasks,
            "checksum": self.checksum,
        }


@dataclass
class SyncResult:
    success: bool
    tasks_uploaded: int = 0
    tasks_downloaded: int = 0
    conflicts_detected: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    auth_required: bool = False
    coalesced: bool = False
    status: Optional[SyncStatus] = None

    @classmethod
    def failure(
        cls,
        error: str,
        kind: str,
        *,
        auth_required: bool = False,
        status: Optional[SyncStatus] = None,
    ) -> "SyncResult":
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            auth_required=auth_required,
            status=status,
        )


@dataclass(frozen=True)
class FirstConnectInfo:
    has_local_data: bool
    has_remote_data: bool
    needs_merge_decision: bool
    error: Optional[str] = None


__all__ = [
    "SyncStatus",
    "PENDING_OPERATIONS",
    "CONFLICT_RESOLUTIONS",
    "FIRST_CONNECT_DECISIONS",
    "PendingChange",
    "SyncConflict",
    "EncryptedToken",
    "SyncState",
    "GoogleDriveBackup",
    "SyncResult",
    "FirstConnectInfo",
]
