import itertools
import json
import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep logs and secrets of the test run out of the user's data dir
os.environ.setdefault("SPARETIME_DATA_DIR", tempfile.mkdtemp(prefix="sparetime-tests-"))

import httplib2
import pytest
from googleapiclient.errors import HttpError

from services.drive_backup import DriveBackupClient
from services.sync_engine import SyncEngine
from services.token_vault import TokenVault
from storage.db import create_db_engine, init_db, session_factory_for
from storage.store import LocalStore
from utils.datetime_utils import now_iso


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "fake"}}')


class _Request:
    def __init__(self, drive, op, fn):
        self._drive = drive
        self._op = op
        self._fn = fn

    def execute(self):
        self._drive.executed.append(self._op)
        if self._drive.offline:
            raise httplib2.ServerNotFoundError("offline")
        if self._drive.failures:
            raise self._drive.failures.pop(0)
        return self._fn()


class _Files:
    def __init__(self, drive):
        self._drive = drive

    def list(self, *, spaces=None, q="", fields=None, pageSize=None):
        drive = self._drive

        def run():
            assert spaces == "appDataFolder"
            return {
                "files": [
                    {"id": file_id, "name": entry["name"], "modifiedTime": entry["modifiedTime"]}
                    for file_id, entry in drive.entries.items()
                    if f"name = '{entry['name']}'" in q
                ]
            }

        return _Request(drive, "list", run)

    def create(self, *, body, media_body, fields=None):
        drive = self._drive

        def run():
            file_id = f"file-{next(drive.ids)}"
            drive.entries[file_id] = {
                "name": body["name"],
                "parents": list(body.get("parents") or []),
                "content": _read_media(media_body),
                "modifiedTime": now_iso(),
            }
            return {"id": file_id}

        return _Request(drive, "create", run)

    def update(self, *, fileId, body=None, media_body=None, fields=None):
        drive = self._drive

        def run():
            if fileId not in drive.entries:
                raise http_error(404)
            entry = drive.entries[fileId]
            entry["content"] = _read_media(media_body)
            entry["modifiedTime"] = now_iso()
            return {"id": fileId}

        return _Request(drive, "update", run)

    def get_media(self, *, fileId):
        drive = self._drive

        def run():
            if fileId not in drive.entries:
                raise http_error(404)
            return drive.entries[fileId]["content"]

        return _Request(drive, "get_media", run)

    def delete(self, *, fileId):
        drive = self._drive

        def run():
            if drive.entries.pop(fileId, None) is None:
                raise http_error(404)
            return b""

        return _Request(drive, "delete", run)


def _read_media(media_body) -> bytes:
    return media_body.getbytes(0, media_body.size())


class FakeDrive:
    """In-memory stand-in for a Drive v3 service built by ``service_factory``."""

    def __init__(self):
        self.entries = {}
        self.executed = []
        self.failures = []
        self.credentials = []
        self.offline = False
        self.ids = itertools.count(1)

    def factory(self, credential):
        self.credentials.append(credential)
        return self

    def files(self):
        return _Files(self)

    def fail_next(self, status: int, times: int = 1) -> None:
        self.failures.extend(http_error(status) for _ in range(times))

    def count(self, op: str) -> int:
        return sum(1 for item in self.executed if item == op)

    def backup(self):
        assert len(self.entries) == 1
        entry = next(iter(self.entries.values()))
        return json.loads(entry["content"].decode("utf-8"))

    def write_backup(self, payload) -> None:
        entry = next(iter(self.entries.values()))
        entry["content"] = json.dumps(payload).encode("utf-8")
        entry["modifiedTime"] = now_iso()


@pytest.fixture()
def drive():
    return FakeDrive()


@pytest.fixture()
def make_store():
    def factory():
        engine = create_db_engine()
        init_db(engine)
        return LocalStore(session_factory_for(engine))

    return factory


@pytest.fixture()
def store(make_store):
    return make_store()


@pytest.fixture()
def make_remote(drive):
    def factory(**kwargs):
        kwargs.setdefault("service_factory", drive.factory)
        kwargs.setdefault("sleep", lambda _seconds: None)
        return DriveBackupClient(**kwargs)

    return factory


@pytest.fixture()
def make_engine(make_remote):
    def factory(store, *, secret="device-secret", debounce_sec=60.0, auth=None):
        engine = SyncEngine(
            store,
            make_remote(),
            vault=TokenVault(iterations=1000),
            secret_provider=lambda: secret,
            auth=auth,
            poll_interval_sec=3600,
            debounce_sec=debounce_sec,
        )
        engine.load_sync_state()
        return engine

    return factory
