"""Local store for tasks and the singleton sync state."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func
from sqlmodel import Session, select

from models.sync import EncryptedToken, PendingChange, SyncConflict, SyncState, PENDING_OPERATIONS
from models.sync_state import (
    SYNC_STATE_ID,
    PendingChangeRecord,
    SyncConflictRecord,
    SyncStateRecord,
)
from models.task import Task, task_to_wire
from storage.db import get_session
from utils.datetime_utils import is_after, now_iso


_UNSET: Any = object()


@dataclass
class SyncCommit:
    """Everything one successful sync step persists, applied in a single transaction.

    ``replace_tasks`` swaps the whole task table; ``upsert_tasks`` writes
    individual rows. ``clear_pending_upto`` drops queue entries with
    ``seq <= value`` so changes recorded while the cycle was in flight stay
    queued.
    """

    replace_tasks: Optional[List[Task]] = None
    upsert_tasks: List[Task] = field(default_factory=list)
    clear_pending_upto: Optional[int] = None
    conflicts: List[SyncConflict] = field(default_factory=list)
    last_synced_at: Any = _UNSET
    last_synced_checksum: Any = _UNSET
    backup_file_id: Any = _UNSET


def _to_pending(row: PendingChangeRecord) -> PendingChange:
    return PendingChange(
        task_id=row.task_id,
        operation=row.operation,
        timestamp=row.timestamp,
        data=dict(row.data) if row.data else None,
        seq=row.seq,
    )


def _to_conflict(row: SyncConflictRecord) -> SyncConflict:
    return SyncConflict(
        task_id=row.task_id,
        local_version=dict(row.local_data),
        remote_version=dict(row.remote_data),
        detected_at=row.detected_at,
    )


class LocalStore:
    """High level helper around the task and sync-state tables.

    Every public method opens its own session and commits at most once, so
    each call is atomic.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    # ----- tasks -----
    def get_task(self, task_id: str) -> Optional[Task]:
        with self._session_factory() as session:
            return session.get(Task, task_id)

    def list_tasks(self, *, include_deleted: bool = True) -> List[Task]:
        with self._session_factory() as session:
            stmt = select(Task)
            if not include_deleted:
                stmt = stmt.where(Task.deleted_at.is_(None))
            return list(session.exec(stmt.order_by(Task.created_at, Task.id)))

    def put_task(
        self,
        task: Task,
        *,
        change: Optional[str] = None,
        stamp: bool = True,
    ) -> Task:
        """Write ``task``; with ``change`` also append the pending change in the same transaction."""

        if change is not None and change not in PENDING_OPERATIONS:
            raise ValueError(f"Unsupported operation: {change}")
        if stamp:
            task.updated_at = now_iso()
        with self._session_factory() as session:
            obj = session.merge(task)
            if change is not None:
                session.add(
                    PendingChangeRecord(
                        task_id=obj.id,
                        operation=change,
                        timestamp=task.updated_at,
                        data=task_to_wire(task),
                    )
                )
            session.commit()
            session.refresh(obj)
            return obj

    def purge_tasks(self, task_ids: Iterable[str]) -> int:
        ids = list(task_ids)
        if not ids:
            return 0
        with self._session_factory() as session:
            result = session.exec(delete(Task).where(Task.id.in_(ids)))
            session.commit()
            return int(result.rowcount or 0)

    # ----- sync state -----
    def load_sync_state(self) -> SyncState:
        with self._session_factory() as session:
            record = session.get(SyncStateRecord, SYNC_STATE_ID)
            if record is None:
                record = SyncStateRecord(id=SYNC_STATE_ID)
                session.add(record)
                session.commit()
                session.refresh(record)
            pending = session.exec(select(PendingChangeRecord).order_by(PendingChangeRecord.seq))
            conflicts = session.exec(select(SyncConflictRecord).order_by(SyncConflictRecord.detected_at))
            token = None
            if record.token_ciphertext and record.token_salt and record.token_iv:
                token = EncryptedToken(
                    ciphertext=record.token_ciphertext,
                    salt=record.token_salt,
                    iv=record.token_iv,
                )
            return SyncState(
                encrypted_token=token,
                last_synced_at=record.last_synced_at,
                last_synced_checksum=record.last_synced_checksum,
                backup_file_id=record.backup_file_id,
                pending_changes=[_to_pending(row) for row in pending],
                conflicts=[_to_conflict(row) for row in conflicts],
            )

    def save_encrypted_token(self, token: Optional[EncryptedToken]) -> None:
        with self._session_factory() as session:
            record = session.get(SyncStateRecord, SYNC_STATE_ID) or SyncStateRecord(id=SYNC_STATE_ID)
            record.token_ciphertext = token.ciphertext if token else None
            record.token_salt = token.salt if token else None
            record.token_iv = token.iv if token else None
            session.add(record)
            session.commit()

    def append_pending_change(
        self,
        task_id: str,
        operation: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> PendingChange:
        if operation not in PENDING_OPERATIONS:
            raise ValueError(f"Unsupported operation: {operation}")
        row = PendingChangeRecord(task_id=task_id, operation=operation, timestamp=now_iso(), data=data)
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_pending(row)

    def pending_count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(PendingChangeRecord)).one())

    def last_pending_seq(self) -> Optional[int]:
        with self._session_factory() as session:
            return session.exec(select(func.max(PendingChangeRecord.seq))).one()

    def resolve_conflict(self, task_id: str, task: Task) -> Task:
        """Write the chosen version, queue it for upload and drop the conflict, atomically."""

        task.updated_at = now_iso()
        with self._session_factory() as session:
            conflict = session.get(SyncConflictRecord, task_id)
            if conflict is None:
                raise KeyError(task_id)
            # the remote version has been seen; later cycles must not count it as a new remote edit
            seen_upto = conflict.detected_at
            remote_updated = (conflict.remote_data or {}).get("updatedAt")
            if is_after(remote_updated, seen_upto):
                seen_upto = remote_updated
            record = session.get(SyncStateRecord, SYNC_STATE_ID) or SyncStateRecord(id=SYNC_STATE_ID)
            if is_after(seen_upto, record.last_synced_at):
                record.last_synced_at = seen_upto
                session.add(record)
            obj = session.merge(task)
            session.add(
                PendingChangeRecord(
                    task_id=task_id,
                    operation="update",
                    timestamp=task.updated_at,
                    data=task_to_wire(task),
                )
            )
            session.delete(conflict)
            session.commit()
            session.refresh(obj)
            return obj

    def commit_sync(self, commit: SyncCommit) -> None:
        with self._session_factory() as session:
            record = session.get(SyncStateRecord, SYNC_STATE_ID) or SyncStateRecord(id=SYNC_STATE_ID)
            if commit.replace_tasks is not None:
                session.exec(delete(Task))
                for task in commit.replace_tasks:
                    session.merge(task)
            for task in commit.upsert_tasks:
                session.merge(task)
            if commit.clear_pending_upto is not None:
                session.exec(delete(PendingChangeRecord).where(PendingChangeRecord.seq <= commit.clear_pending_upto))
            for conflict in commit.conflicts:
                row = session.get(SyncConflictRecord, conflict.task_id)
                if row is None:
                    row = SyncConflictRecord(task_id=conflict.task_id, local_data={}, remote_data={})
                row.local_data = dict(conflict.local_version)
                row.remote_data = dict(conflict.remote_version)
                row.detected_at = conflict.detected_at
                session.add(row)
            if commit.last_synced_at is not _UNSET:
                record.last_synced_at = commit.last_synced_at
            if commit.last_synced_checksum is not _UNSET:
                record.last_synced_checksum = commit.last_synced_checksum
            if commit.backup_file_id is not _UNSET:
                record.backup_file_id = commit.backup_file_id
            session.add(record)
            session.commit()

    def delete_sync_state(self) -> None:
        with self._session_factory() as session:
            session.exec(delete(PendingChangeRecord))
            session.exec(delete(SyncConflictRecord))
            session.exec(delete(SyncStateRecord))
            session.commit()


__all__ = ["LocalStore", "SyncCommit"]
