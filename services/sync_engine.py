"""Local-first synchronization of the task table with one Drive backup file."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from core.errors import (
    AuthExpiredError,
    IntegrityMismatchError,
    MalformedBackupError,
    RemoteError,
    SyncError,
    SyncInitializationError,
    TokenUnreadableError,
    TransientError,
)
from core.logging_setup import get_logger
from core.settings import DRIVE_SYNC
from models.sync import (
    CONFLICT_RESOLUTIONS,
    FIRST_CONNECT_DECISIONS,
    FirstConnectInfo,
    GoogleDriveBackup,
    SyncConflict,
    SyncResult,
    SyncState,
    SyncStatus,
)
from models.task import Task, task_from_wire, task_to_wire
from services.checksum import digest_active
from services.drive_backup import DriveBackupClient, create_backup_payload, verify_backup
from services.token_vault import TokenVault
from storage.device import get_device_secret
from storage.store import LocalStore, SyncCommit
from utils.datetime_utils import is_after, now_iso, parse_rfc3339


_REMOTE_FAILURES = (TransientError, MalformedBackupError, IntegrityMismatchError, RemoteError)


class _CycleAbandoned(Exception):
    """The engine went offline before the commit point."""


class _MergeOutcome:
    def __init__(self) -> None:
        self.merged: List[Dict[str, Any]] = []
        self.apply_locally: List[Dict[str, Any]] = []
        self.conflicts: List[SyncConflict] = []
        self.uploaded = 0
        self.downloaded = 0


class SyncEngine:
    """Owns the sync state machine, the pending-change queue and conflicts.

    Status values: ``uninitialized`` until :meth:`load_sync_state`, then
    ``idle`` / ``syncing`` / ``synced`` / ``error`` / ``remote-newer``.
    ``is_online`` is tracked separately. Every transition happens inside one
    of the public methods; callers only read the projections.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: DriveBackupClient,
        *,
        vault: Optional[TokenVault] = None,
        secret_provider: Callable[[], str] = get_device_secret,
        auth: Any = None,
        poll_interval_sec: float = DRIVE_SYNC.poll_interval_sec,
        debounce_sec: float = DRIVE_SYNC.debounce_sec,
    ):
        self._store = store
        self._remote = remote
        self._vault = vault or TokenVault()
        self._secret_provider = secret_provider
        self._device_secret: Optional[str] = None
        self._auth = auth
        self._poll_interval = poll_interval_sec
        self._debounce = debounce_sec

        self._state: Optional[SyncState] = None
        self._status = SyncStatus.UNINITIALIZED
        self._online = True
        self._last_error: Optional[str] = None
        self._remote_last_modified = None

        self._syncing = False
        self._sync_pending = False
        self._cycle_abandoned = False
        self._polling_requested = False
        self._poll_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._monitor: Any = None
        self.logger = get_logger()

    # ------------------------------------------------------------------
    # Read-only projections
    @property
    def sync_status(self) -> SyncStatus:
        return self._status

    @property
    def is_initialized(self) -> bool:
        return self._status is not SyncStatus.UNINITIALIZED

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_backup_enabled(self) -> bool:
        return bool(self._state and self._state.encrypted_token)

    @property
    def has_pending_changes(self) -> bool:
        return self.pending_change_count > 0

    @property
    def pending_change_count(self) -> int:
        return len(self._state.pending_changes) if self._state else 0

    @property
    def has_conflicts(self) -> bool:
        return self.conflict_count > 0

    @property
    def conflict_count(self) -> int:
        return len(self._state.conflicts) if self._state else 0

    @property
    def conflicts(self) -> List[SyncConflict]:
        return list(self._state.conflicts) if self._state else []

    @property
    def last_sync_time(self) -> Optional[str]:
        return self._state.last_synced_at if self._state else None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def remote_last_modified(self):
        return self._remote_last_modified

    @property
    def auth(self):
        return self._auth

    @property
    def is_sync_pending(self) -> bool:
        return self._debounce_task is not None and not self._debounce_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    def load_sync_state(self) -> SyncState:
        try:
            state = self._store.load_sync_state()
        except (SQLAlchemyError, OSError) as exc:
            self.logger.error("Failed to load sync state: %s", exc)
            raise SyncInitializationError(f"sync state is unreadable: {exc}") from exc
        self._state = state
        if state.conflicts:
            self._status = SyncStatus.REMOTE_NEWER
        elif state.last_synced_at and not state.pending_changes:
            self._status = SyncStatus.SYNCED
        else:
            self._status = SyncStatus.IDLE
        self.logger.info(
            "Sync state loaded: enabled=%s pending=%d conflicts=%d",
            bool(state.encrypted_token),
            len(state.pending_changes),
            len(state.conflicts),
        )
        return state

    def _reload(self) -> SyncState:
        self._state = self._store.load_sync_state()
        return self._state

    def _ensure_loaded(self) -> None:
        if self._state is None:
            self.load_sync_state()

    async def store_access_token(self, token: str) -> None:
        if not token:
            raise ValueError("token must not be empty")
        self._ensure_loaded()
        secret = self._secret()
        encrypted = await asyncio.to_thread(self._vault.encrypt, token, secret)
        self._store.save_encrypted_token(encrypted)
        self._reload()
        self._last_error = None
        self._status = SyncStatus.IDLE
        self.logger.info("Stored Drive credential")

    def clear_auth(self) -> None:
        """Forget the credential but keep queued changes and conflicts."""

        self._ensure_loaded()
        self._pause_polling()
        self._polling_requested = False
        self._store.save_encrypted_token(None)
        self._reload()
        self._status = SyncStatus.IDLE
        self.logger.info("Drive credential cleared")

    async def disable_backup(self, *, revoke: bool = True) -> None:
        self.stop_remote_check_polling()
        self._cancel_debounce()
        if revoke and self._auth is not None and self.is_backup_enabled:
            try:
                token = await self._credential()
            except TokenUnreadableError:
                token = None
            if token:
                await asyncio.to_thread(self._auth.revoke, token)
        self._store.delete_sync_state()
        self._state = SyncState()
        self._remote_last_modified = None
        self._last_error = None
        self._status = SyncStatus.IDLE
        self.logger.info("Backup disabled; sync state removed")

    async def close(self) -> None:
        self.stop_remote_check_polling()
        self._cancel_debounce()
        self.unregister_online_listeners()

    # ------------------------------------------------------------------
    # Connectivity
    def register_online_listeners(self, monitor) -> None:
        if self._monitor is monitor:
            return
        self.unregister_online_listeners()
        self._monitor = monitor
        monitor.add_listener(self._on_network_change)
        self._online = bool(monitor.is_online)

    def unregister_online_listeners(self) -> None:
        if self._monitor is not None:
            self._monitor.remove_listener(self._on_network_change)
            self._monitor = None

    def _on_network_change(self, online: bool) -> None:
        if online:
            self.handle_online()
        else:
            self.handle_offline()

    def handle_online(self) -> None:
        self._online = True
        self.logger.info("Back online")
        if self._polling_requested:
            self.start_remote_check_polling()
        if self.is_backup_enabled and self.has_pending_changes:
            self.schedule_debounced_sync()

    def handle_offline(self) -> None:
        self._online = False
        self.logger.info("Gone offline; suspending sync")
        self._pause_polling()
        self._cancel_debounce()
        if self._syncing:
            self._cycle_abandoned = True

    # ------------------------------------------------------------------
    # Local changes
    def record_change(self, task_id: str, operation: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._ensure_loaded()
        if not self.is_backup_enabled:
            return
        self._store.append_pending_change(task_id, operation, data)
        self.notify_local_change()

    def notify_local_change(self) -> None:
        """Refresh the queue projection after a write and schedule a sync."""

        self._reload()
        self.schedule_debounced_sync()

    # ------------------------------------------------------------------
    # First connect
    async def check_first_time_connect(self) -> FirstConnectInfo:
        self._ensure_loaded()
        if not self.is_backup_enabled:
            return FirstConnectInfo(False, False, False)
        has_local = any(not task.deleted_at for task in self._store.list_tasks())
        try:
            credential = await self._credential()
            modified = await asyncio.to_thread(self._remote.last_modified, credential)
        except (TokenUnreadableError, AuthExpiredError) + _REMOTE_FAILURES as exc:
            self.logger.warning("First-connect check failed: %s", exc)
            return FirstConnectInfo(has_local, False, False, error=str(exc))
        has_remote = modified is not None
        needs_decision = has_local and has_remote and not self.last_sync_time
        return FirstConnectInfo(has_local, has_remote, needs_decision)

    async def handle_first_time_merge(self, decision: str) -> SyncResult:
        if decision not in FIRST_CONNECT_DECISIONS:
            raise ValueError(f"Unsupported decision: {decision}")
        if decision == "merge":
            return await self.perform_sync()
        guard = self._preflight()
        if guard is not None:
            return guard
        self._syncing = True
        try:
            return await self._guarded(self._first_time_overwrite, decision)
        finally:
            self._syncing = False

    async def _first_time_overwrite(self, decision: str) -> SyncResult:
        credential = await self._credential()
        state = self._reload()
        pending_upto = state.pending_changes[-1].seq if state.pending_changes else None
        file_id = await asyncio.to_thread(self._remote.find_backup, credential)
        if decision == "use-remote":
            remote = None
            if file_id:
                remote = await asyncio.to_thread(self._remote.download, credential, file_id)
            if remote is None:
                return await self._upload_and_commit(credential, state, None, pending_upto)
            verify_backup(remote)
            return self._commit_replace(remote, file_id, pending_upto)
        return await self._upload_and_commit(credential, state, file_id, pending_upto)

    # ------------------------------------------------------------------
    # Sync
    async def perform_sync(self) -> SyncResult:
        guard = self._preflight()
        if guard is not None:
            return guard
        if self.has_conflicts:
            self._status = SyncStatus.REMOTE_NEWER
            return SyncResult(success=True, status=self._status)

        self._syncing = True
        try:
            while True:
                self._sync_pending = False
                result = await self._guarded(self._sync_cycle)
                if not (self._sync_pending and result.success and self._online and not self.has_conflicts):
                    return result
                self.logger.info("Running coalesced sync request")
        finally:
            self._syncing = False

    def _preflight(self) -> Optional[SyncResult]:
        if self._state is None:
            return SyncResult.failure("Sync state not loaded", "init", status=self._status)
        if not self.is_backup_enabled:
            return SyncResult.failure("Not authenticated", "auth", auth_required=True, status=self._status)
        if not self._online:
            return SyncResult.failure("Offline", "offline", status=self._status)
        if self._syncing:
            self._sync_pending = True
            return SyncResult(success=True, coalesced=True, status=self._status)
        return None

    async def _guarded(self, step, *args) -> SyncResult:
        self._status = SyncStatus.SYNCING
        self._last_error = None
        self._cycle_abandoned = False
        try:
            result = await step(*args)
        except (TokenUnreadableError, AuthExpiredError) as exc:
            self._fail(exc)
            return SyncResult.failure(str(exc), exc.kind, auth_required=True, status=self._status)
        except _REMOTE_FAILURES as exc:
            self._fail(exc)
            return SyncResult.failure(str(exc), exc.kind, status=self._status)
        except SQLAlchemyError as exc:
            self.logger.exception("Local store failure during sync")
            self._last_error = str(exc)
            self._status = SyncStatus.ERROR
            return SyncResult.failure(str(exc), "store", status=self._status)
        except _CycleAbandoned:
            self.logger.info("Sync abandoned: went offline before commit")
            self._status = SyncStatus.IDLE
            return SyncResult.failure("Went offline during sync", "offline", status=self._status)
        result.status = self._status
        return result

    def _fail(self, exc: SyncError) -> None:
        self._last_error = str(exc)
        self._status = SyncStatus.ERROR
        if isinstance(exc, (TokenUnreadableError, AuthExpiredError)):
            self.logger.warning("Sync needs re-authorization: %s", exc)
        else:
            self.logger.error("Sync failed (%s): %s", exc.kind, exc)

    async def _sync_cycle(self) -> SyncResult:
        credential = await self._credential()
        state = self._reload()
        pending = state.pending_changes
        pending_upto = pending[-1].seq if pending else None
        local_wire = [task_to_wire(task) for task in self._store.list_tasks()]
        local_checksum = digest_active(local_wire)

        file_id = await asyncio.to_thread(self._remote.find_backup, credential)
        remote: Optional[GoogleDriveBackup] = None
        if file_id:
            remote = await asyncio.to_thread(self._remote.download, credential, file_id)

        if remote is None:
            self.logger.info("No remote backup; uploading local baseline")
            return await self._upload_and_commit(credential, state, None, pending_upto, local_wire)

        verify_backup(remote)
        never_synced = state.last_synced_checksum is None
        remote_changed = remote.checksum != state.last_synced_checksum

        if not remote_changed:
            if not pending:
                self._status = SyncStatus.SYNCED
                return SyncResult(success=True)
            self.logger.info("Remote unchanged; uploading %d pending change(s)", len(pending))
            return await self._upload_and_commit(credential, state, file_id, pending_upto, local_wire)

        has_active_local = any(not item.get("deletedAt") for item in local_wire)
        if not pending and not (never_synced and has_active_local):
            self.logger.info("Remote changed; replacing local tasks")
            return self._commit_replace(remote, file_id, pending_upto)

        if pending and local_checksum == digest_active(remote.tasks):
            self.logger.info("Remote already matches local changes; adopting it")
            return self._commit_replace(remote, file_id, pending_upto)

        outcome = self._merge(local_wire, remote.tasks, {change.task_id for change in pending}, state.last_synced_at)
        applied = [task_from_wire(item) for item in outcome.apply_locally]
        if outcome.conflicts:
            self._check_still_online()
            self._store.commit_sync(
                SyncCommit(
                    upsert_tasks=applied,
                    conflicts=outcome.conflicts,
                    last_synced_checksum=remote.checksum,
                    backup_file_id=file_id,
                )
            )
            self._reload()
            self._status = SyncStatus.REMOTE_NEWER
            self.logger.info("Sync found %d conflict(s)", len(outcome.conflicts))
            return SyncResult(
                success=True,
                tasks_downloaded=outcome.downloaded,
                conflicts_detected=len(outcome.conflicts),
            )

        result = await self._upload_and_commit(
            credential,
            state,
            file_id,
            pending_upto,
            outcome.merged,
            upsert_tasks=applied,
        )
        result.tasks_uploaded = outcome.uploaded
        result.tasks_downloaded = outcome.downloaded
        return result

    def _merge(
        self,
        local_wire: Iterable[Dict[str, Any]],
        remote_wire: Iterable[Dict[str, Any]],
        pending_ids: set,
        last_synced_at: Optional[str],
    ) -> _MergeOutcome:
        """Per-task three-way decision against the last confirmed sync point.

        A task counts as changed locally when it is in the queue, and as
        changed remotely when its ``updatedAt`` is later than the last sync.
        Without a previous sync both sides count as changed.
        """

        outcome = _MergeOutcome()
        never_synced = last_synced_at is None
        local_map = {item["id"]: item for item in local_wire}
        remote_map = {item["id"]: item for item in remote_wire}
        ordered_ids = list(local_map) + [task_id for task_id in remote_map if task_id not in local_map]
        detected_at = now_iso()

        for task_id in ordered_ids:
            local = local_map.get(task_id)
            remote = remote_map.get(task_id)
            if remote is None:
                outcome.merged.append(local)
                outcome.uploaded += 1
                continue
            if local is None:
                outcome.merged.append(remote)
                outcome.apply_locally.append(remote)
                outcome.downloaded += 1
                continue
            if local == remote:
                outcome.merged.append(local)
                continue

            local_changed = never_synced or task_id in pending_ids
            remote_changed = never_synced or is_after(remote.get("updatedAt"), last_synced_at)
            if local_changed and remote_changed:
                outcome.conflicts.append(
                    SyncConflict(
                        task_id=task_id,
                        local_version=local,
                        remote_version=remote,
                        detected_at=detected_at,
                    )
                )
                outcome.merged.append(local)
            elif local_changed:
                outcome.merged.append(local)
                outcome.uploaded += 1
            elif remote_changed or not is_after(local.get("updatedAt"), remote.get("updatedAt")):
                outcome.merged.append(remote)
                outcome.apply_locally.append(remote)
                outcome.downloaded += 1
            else:
                outcome.merged.append(local)
                outcome.uploaded += 1
        return outcome

    async def _upload_and_commit(
        self,
        credential: str,
        state: SyncState,
        file_id: Optional[str],
        pending_upto: Optional[int],
        tasks_wire: Optional[List[Dict[str, Any]]] = None,
        *,
        upsert_tasks: Optional[List[Task]] = None,
    ) -> SyncResult:
        if tasks_wire is None:
            tasks_wire = [task_to_wire(task) for task in self._store.list_tasks()]
        backup = create_backup_payload(tasks_wire)
        new_file_id = await asyncio.to_thread(self._remote.upload, credential, backup, file_id)
        self._check_still_online()
        self._store.commit_sync(
            SyncCommit(
                upsert_tasks=upsert_tasks or [],
                clear_pending_upto=pending_upto,
                last_synced_at=now_iso(),
                last_synced_checksum=backup.checksum,
                backup_file_id=new_file_id,
            )
        )
        self._reload()
        self._status = SyncStatus.SYNCED
        self.logger.info("Sync complete: uploaded %d task(s)", len(tasks_wire))
        return SyncResult(success=True, tasks_uploaded=len(tasks_wire))

    def _commit_replace(
        self,
        backup: GoogleDriveBackup,
        file_id: Optional[str],
        pending_upto: Optional[int],
    ) -> SyncResult:
        self._check_still_online()
        if self._store.last_pending_seq() != pending_upto:
            # a local edit landed while downloading; replacing now would drop it
            self._sync_pending = True
            self._status = SyncStatus.IDLE
            return SyncResult(success=True)
        self._store.commit_sync(
            SyncCommit(
                replace_tasks=[task_from_wire(item) for item in backup.tasks],
                clear_pending_upto=pending_upto,
                last_synced_at=now_iso(),
                last_synced_checksum=backup.checksum,
                backup_file_id=file_id,
            )
        )
        self._reload()
        self._status = SyncStatus.SYNCED
        self.logger.info("Sync complete: downloaded %d task(s)", len(backup.tasks))
        return SyncResult(success=True, tasks_downloaded=len(backup.tasks))

    def _check_still_online(self) -> None:
        if not self._online or self._cycle_abandoned:
            raise _CycleAbandoned()

    # ------------------------------------------------------------------
    # Remote checks and polling
    async def check_for_remote_changes(self) -> bool:
        if not self.is_backup_enabled or not self._online:
            return False
        try:
            credential = await self._credential()
            modified = await asyncio.to_thread(self._remote.last_modified, credential)
        except (TokenUnreadableError, AuthExpiredError) as exc:
            self._fail(exc)
            return False
        except _REMOTE_FAILURES as exc:
            self.logger.warning("Remote change check failed: %s", exc)
            return False
        self._remote_last_modified = modified
        if modified is None:
            return False
        last = parse_rfc3339(self.last_sync_time)
        if last is None or modified > last:
            if not self.has_conflicts and not self._syncing:
                self._status = SyncStatus.REMOTE_NEWER
            return True
        if not self.has_pending_changes and not self.has_conflicts and not self._syncing:
            self._status = SyncStatus.SYNCED
        return False

    def start_remote_check_polling(self) -> None:
        self._polling_requested = True
        if not (self._online and self.is_backup_enabled):
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def stop_remote_check_polling(self) -> None:
        self._polling_requested = False
        self._pause_polling()

    def _pause_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._poll_task = None

    async def _poll_loop(self) -> None:
        while self._online and self.is_backup_enabled:
            try:
                if await self.check_for_remote_changes():
                    await self.perform_sync()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Remote check polling tick failed")
            await asyncio.sleep(self._poll_interval)

    def schedule_debounced_sync(self) -> None:
        if not self.is_backup_enabled or not self._online:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop (one-shot CLI); the change stays queued for the next sync
            return
        self._cancel_debounce()
        self._debounce_task = loop.create_task(self._debounced_sync())

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = None

    async def _debounced_sync(self) -> None:
        await asyncio.sleep(self._debounce)
        # detach first so a new schedule cannot cancel the running sync
        self._debounce_task = None
        if self._online:
            await self.perform_sync()

    # ------------------------------------------------------------------
    # Conflicts
    def resolve_conflict(
        self,
        task_id: str,
        resolution: str,
        merged: Union[Task, Dict[str, Any], None] = None,
    ) -> Optional[Task]:
        if resolution not in CONFLICT_RESOLUTIONS:
            raise ValueError(f"Unsupported resolution: {resolution}")
        self._ensure_loaded()
        conflict = next((c for c in self._state.conflicts if c.task_id == task_id), None)
        if conflict is None:
            return None
        if resolution == "local":
            chosen = task_from_wire(conflict.local_version)
        elif resolution == "remote":
            chosen = task_from_wire(conflict.remote_version)
        else:
            if merged is None:
                raise ValueError("a merged version is required for the 'merge' resolution")
            chosen = merged if isinstance(merged, Task) else task_from_wire(merged)
            if chosen.id != task_id:
                raise ValueError("merged version must keep the task id")
        resolved = self._store.resolve_conflict(task_id, chosen)
        self._reload()
        self.logger.info("Conflict on %s resolved with %s version", task_id, resolution)
        if not self.has_conflicts:
            if self._status is SyncStatus.REMOTE_NEWER:
                self._status = SyncStatus.IDLE
            self._schedule_if_running()
        return resolved

    def _schedule_if_running(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.schedule_debounced_sync()

    # ------------------------------------------------------------------
    # Manual export / import
    def export_to_backup(self) -> GoogleDriveBackup:
        return create_backup_payload([task_to_wire(task) for task in self._store.list_tasks()])

    def import_from_backup(self, backup: GoogleDriveBackup) -> SyncResult:
        self._ensure_loaded()
        try:
            verify_backup(backup)
        except IntegrityMismatchError as exc:
            self._last_error = str(exc)
            return SyncResult.failure(str(exc), exc.kind, status=self._status)
        self._store.commit_sync(
            SyncCommit(
                replace_tasks=[task_from_wire(item) for item in backup.tasks],
                last_synced_at=now_iso(),
            )
        )
        self._reload()
        return SyncResult(success=True, tasks_downloaded=len(backup.tasks), status=self._status)

    # ------------------------------------------------------------------
    def _secret(self) -> str:
        if self._device_secret is None:
            self._device_secret = self._secret_provider()
        return self._device_secret

    async def _credential(self) -> str:
        token = self._state.encrypted_token if self._state else None
        if token is None:
            raise TokenUnreadableError("no stored credential")
        return await asyncio.to_thread(self._vault.decrypt, token, self._secret())


__all__ = ["SyncEngine"]
