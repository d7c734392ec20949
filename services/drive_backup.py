"""Single-file backup storage in the Google Drive ``appDataFolder``."""
from __future__ import annotations

import io
import json
import time
from typing import Any, Callable, Dict, List, Optional, Union

import httplib2
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from core.errors import (
    AuthExpiredError,
    IntegrityMismatchError,
    MalformedBackupError,
    RemoteError,
    TransientError,
)
from core.logging_setup import get_logger
from core.settings import DRIVE_SYNC
from models.sync import GoogleDriveBackup
from services.checksum import digest
from utils.datetime_utils import now_iso, parse_rfc3339


_AUTH_STATUS = {401, 403}
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_NETWORK_ERRORS = (httplib2.HttpLib2Error, TransportError, OSError)

APPDATA = "appDataFolder"


def _status_of(exc: HttpError) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


# ----- payload helpers -----
def create_backup_payload(
    tasks: List[Dict[str, Any]],
    *,
    version: int = DRIVE_SYNC.backup_version,
) -> GoogleDriveBackup:
    return GoogleDriveBackup(
        version=version,
        export_timestamp=now_iso(),
        tasks=list(tasks),
        checksum=digest(tasks),
    )


def parse_backup_payload(raw: Union[bytes, str, Dict[str, Any]]) -> GoogleDriveBackup:
    """Turn a downloaded body into a backup or raise :class:`MalformedBackupError`."""

    data: Any = raw
    if isinstance(raw, bytes):
        try:
            data = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedBackupError("backup is not UTF-8") from exc
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise MalformedBackupError(f"backup is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedBackupError("backup must be a JSON object")
    version = data.get("version")
    tasks = data.get("tasks")
    checksum = data.get("checksum")
    exported = data.get("exportTimestamp")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise MalformedBackupError("backup has no valid version")
    if not isinstance(tasks, list) or not all(isinstance(item, dict) and item.get("id") for item in tasks):
        raise MalformedBackupError("backup tasks must be a list of task objects")
    if not isinstance(checksum, str) or not checksum:
        raise MalformedBackupError("backup has no checksum")
    if not isinstance(exported, str) or not exported:
        raise MalformedBackupError("backup has no export timestamp")
    return GoogleDriveBackup(version=version, export_timestamp=exported, tasks=tasks, checksum=checksum)


def validate_backup_payload(backup: GoogleDriveBackup) -> bool:
    return digest(backup.tasks) == backup.checksum


def verify_backup(backup: GoogleDriveBackup) -> GoogleDriveBackup:
    if not validate_backup_payload(backup):
        raise IntegrityMismatchError("Backup integrity check failed: invalid checksum")
    return backup


def _default_service_factory(credential: str):
    creds = Credentials(token=credential)
    return build("drive", "v3", credentials=creds, cache_discovery=False)


class DriveBackupClient:
    """CRUD over the one backup file, plus a cheap last-modified lookup.

    ``credential`` is the plaintext bearer token; it is only held for the
    duration of a call. ``service_factory`` maps a token to a Drive v3
    service object and is replaced by a fake in tests.
    """

    def __init__(
        self,
        *,
        file_name: str = DRIVE_SYNC.backup_file_name,
        service_factory: Callable[[str], Any] = _default_service_factory,
        max_retries: int = DRIVE_SYNC.max_retries,
        initial_backoff: float = DRIVE_SYNC.initial_backoff_sec,
        max_backoff: float = DRIVE_SYNC.max_backoff_sec,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.file_name = file_name
        self._service_factory = service_factory
        self._max_retries = max(1, max_retries)
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._sleep = sleep
        self.logger = get_logger("sparetime.drive")

    # ----- public API -----
    def find_backup(self, credential: str) -> Optional[str]:
        entry = self._find_entry(credential, "files(id, name)")
        return entry["id"] if entry else None

    def upload(
        self,
        credential: str,
        backup: GoogleDriveBackup,
        existing_file_id: Optional[str] = None,
    ) -> str:
        service = self._service(credential)
        if existing_file_id:
            try:
                response = self._call_with_backoff(
                    service.files().update,
                    fileId=existing_file_id,
                    body={"name": self.file_name, "mimeType": "application/json"},
                    media_body=self._media(backup),
                    fields="id",
                )
                self.logger.info("Updated backup file %s (%d tasks)", existing_file_id, len(backup.tasks))
                return self._require_id(response)
            except RemoteError as exc:
                if exc.status != 404:
                    raise
                self.logger.warning("Backup file %s vanished; creating a new one", existing_file_id)
        response = self._call_with_backoff(
            service.files().create,
            body={"name": self.file_name, "parents": [APPDATA], "mimeType": "application/json"},
            media_body=self._media(backup),
            fields="id",
        )
        file_id = self._require_id(response)
        self.logger.info("Created backup file %s (%d tasks)", file_id, len(backup.tasks))
        return file_id

    def download(self, credential: str, file_id: Optional[str] = None) -> Optional[GoogleDriveBackup]:
        file_id = file_id or self.find_backup(credential)
        if not file_id:
            return None
        service = self._service(credential)
        try:
            raw = self._call_with_backoff(service.files().get_media, fileId=file_id)
        except RemoteError as exc:
            if exc.status == 404:
                return None
            raise
        if not raw:
            raise MalformedBackupError("backup file is empty")
        return parse_backup_payload(raw)

    def delete(self, credential: str) -> bool:
        file_id = self.find_backup(credential)
        if not file_id:
            return False
        service = self._service(credential)
        try:
            self._call_with_backoff(service.files().delete, fileId=file_id)
        except RemoteError as exc:
            if exc.status == 404:
                return False
            raise
        self.logger.info("Deleted backup file %s", file_id)
        return True

    def last_modified(self, credential: str):
        entry = self._find_entry(credential, "files(id, modifiedTime)")
        if not entry:
            return None
        modified = parse_rfc3339(entry.get("modifiedTime"))
        if modified is None:
            raise MalformedBackupError("backup file has no modifiedTime")
        return modified

    # ----- internal helpers -----
    def _service(self, credential: str):
        if not credential:
            raise AuthExpiredError("no Drive credential available")
        return self._service_factory(credential)

    def _find_entry(self, credential: str, fields: str) -> Optional[Dict[str, Any]]:
        service = self._service(credential)
        escaped = self.file_name.replace("\\", "\\\\").replace("'", "\\'")
        response = self._call_with_backoff(
            service.files().list,
            spaces=APPDATA,
            q=f"name = '{escaped}' and trashed = false",
            fields=fields,
            pageSize=10,
        )
        files = response.get("files") if isinstance(response, dict) else None
        if not isinstance(files, list):
            raise MalformedBackupError("Drive file listing has no 'files' array")
        for item in files:
            if isinstance(item, dict) and item.get("id"):
                return item
        return None

    def _media(self, backup: GoogleDriveBackup) -> MediaIoBaseUpload:
        return MediaIoBaseUpload(
            io.BytesIO(self._encode_json(backup.to_wire())),
            mimetype="application/json",
            resumable=False,
        )

    @staticmethod
    def _require_id(response: Any) -> str:
        file_id = response.get("id") if isinstance(response, dict) else None
        if not file_id:
            raise MalformedBackupError("Drive did not return a file id")
        return str(file_id)

    def _call_with_backoff(self, method, *args, **kwargs) -> Any:
        delay = self._initial_backoff
        for attempt in range(self._max_retries):
            last_attempt = attempt == self._max_retries - 1
            try:
                return method(*args, **kwargs).execute()
            except HttpError as exc:
                status = _status_of(exc)
                if status in _AUTH_STATUS:
                    raise AuthExpiredError(f"Drive rejected the credential ({status})") from exc
                if status not in _RETRYABLE_STATUS:
                    raise RemoteError(f"Drive request failed with status {status}", status) from exc
                if last_attempt:
                    raise TransientError(f"Drive unavailable after {self._max_retries} attempts", status) from exc
                self.logger.warning("Drive returned %s, retrying in %.1fs", status, delay)
            except _NETWORK_ERRORS as exc:
                if last_attempt:
                    raise TransientError(f"network failure: {exc}") from exc
                self.logger.warning("Network error talking to Drive (%s), retrying in %.1fs", exc, delay)
            except ValueError as exc:
                # googleapiclient failed to decode a 2xx body
                raise MalformedBackupError(f"unparsable Drive response: {exc}") from exc
            self._sleep(delay)
            delay = min(delay * 2, self._max_backoff)
        raise TransientError("Drive request was not attempted")

    @staticmethod
    def _encode_json(payload: Dict[str, Any]) -> bytes:
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        return text.encode("utf-8")


__all__ = [
    "DriveBackupClient",
    "create_backup_payload",
    "parse_backup_payload",
    "validate_backup_payload",
    "verify_backup",
]
