import json

import pytest

from core.errors import AuthExpiredError, IntegrityMismatchError, MalformedBackupError, TransientError
from services.drive_backup import (
    create_backup_payload,
    parse_backup_payload,
    validate_backup_payload,
    verify_backup,
)


TASKS = [
    {"id": "t1", "name": "Read", "updatedAt": "2024-03-01T09:00:00.000Z"},
    {"id": "t2", "name": "Walk", "updatedAt": "2024-03-01T10:00:00.000Z"},
]


def test_upload_creates_file_in_appdata_when_absent(drive, make_remote):
    remote = make_remote()
    backup = create_backup_payload(TASKS)

    file_id = remote.upload("token", backup)

    assert drive.count("create") == 1
    assert drive.count("update") == 0
    entry = drive.entries[file_id]
    assert entry["name"] == "sparetime-backup.json"
    assert entry["parents"] == ["appDataFolder"]
    assert drive.backup()["checksum"] == backup.checksum
    assert drive.credentials == ["token"]


def test_upload_updates_existing_file_in_place(drive, make_remote):
    remote = make_remote()
    file_id = remote.upload("token", create_backup_payload(TASKS))

    again = remote.upload("token", create_backup_payload(TASKS[:1]), existing_file_id=file_id)

    assert again == file_id
    assert drive.count("create") == 1
    assert drive.count("update") == 1
    assert [item["id"] for item in drive.backup()["tasks"]] == ["t1"]


def test_upload_recreates_file_when_existing_id_is_gone(drive, make_remote):
    remote = make_remote()
    file_id = remote.upload("token", create_backup_payload(TASKS), existing_file_id="missing")
    assert file_id in drive.entries
    assert drive.count("update") == 1
    assert drive.count("create") == 1


def test_download_round_trips_and_missing_file_is_none(drive, make_remote):
    remote = make_remote()
    assert remote.download("token") is None
    assert remote.last_modified("token") is None

    remote.upload("token", create_backup_payload(TASKS))
    backup = remote.download("token")

    assert backup is not None
    assert backup.tasks == TASKS
    assert validate_backup_payload(backup)
    assert remote.last_modified("token") is not None


def test_auth_failure_is_not_retried(drive, make_remote):
    remote = make_remote()
    drive.fail_next(401)
    with pytest.raises(AuthExpiredError):
        remote.find_backup("token")
    assert drive.count("list") == 1


def test_server_errors_retry_with_backoff_then_give_up(drive, make_remote):
    delays = []
    remote = make_remote(max_retries=5, sleep=delays.append)
    drive.fail_next(503, times=5)

    with pytest.raises(TransientError) as info:
        remote.find_backup("token")

    assert info.value.status == 503
    assert drive.count("list") == 5
    assert delays == [1.0, 2.0, 4.0, 8.0]


def test_transient_error_recovers_on_retry(drive, make_remote):
    delays = []
    remote = make_remote(sleep=delays.append)
    drive.fail_next(429)
    assert remote.find_backup("token") is None
    assert delays == [1.0]


def test_network_errors_are_transient(drive, make_remote):
    remote = make_remote(max_retries=2)
    drive.offline = True
    with pytest.raises(TransientError):
        remote.find_backup("token")
    assert drive.count("list") == 2


def test_malformed_remote_body(drive, make_remote):
    remote = make_remote()
    remote.upload("token", create_backup_payload(TASKS))
    entry = next(iter(drive.entries.values()))
    entry["content"] = b"not json"
    with pytest.raises(MalformedBackupError):
        remote.download("token")

    entry["content"] = json.dumps({"version": 2, "tasks": []}).encode("utf-8")
    with pytest.raises(MalformedBackupError):
        remote.download("token")


def test_delete_removes_backup(drive, make_remote):
    remote = make_remote()
    assert remote.delete("token") is False
    remote.upload("token", create_backup_payload(TASKS))
    assert remote.delete("token") is True
    assert drive.entries == {}


def test_parse_and_verify_payload():
    backup = create_backup_payload(TASKS)
    parsed = parse_backup_payload(json.dumps(backup.to_wire()))
    assert parsed.checksum == backup.checksum
    assert parsed.version == 2

    parsed.tasks[0]["name"] = "Tampered"
    assert not validate_backup_payload(parsed)
    with pytest.raises(IntegrityMismatchError):
        verify_backup(parsed)

    with pytest.raises(MalformedBackupError):
        parse_backup_payload(b"[]")
