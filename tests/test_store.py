import pytest

from models.sync import EncryptedToken, SyncConflict
from models.task import Task, copy_task, task_to_wire
from storage.store import SyncCommit


def _task(name="Read", **kwargs):
    return Task(name=name, **kwargs)


def test_load_sync_state_creates_singleton(store):
    state = store.load_sync_state()
    assert state.encrypted_token is None
    assert state.last_synced_at is None
    assert state.pending_changes == []
    assert state.conflicts == []
    # a second load returns the same row rather than a fresh one
    store.commit_sync(SyncCommit(last_synced_at="2024-03-01T10:00:00.000Z"))
    assert store.load_sync_state().last_synced_at == "2024-03-01T10:00:00.000Z"


def test_put_task_with_change_queues_in_same_write(store):
    saved = store.put_task(_task(), change="create")

    state = store.load_sync_state()
    assert [c.task_id for c in state.pending_changes] == [saved.id]
    assert state.pending_changes[0].operation == "create"
    assert state.pending_changes[0].data["name"] == "Read"
    assert store.get_task(saved.id).name == "Read"


def test_put_task_rejects_unknown_operation(store):
    with pytest.raises(ValueError):
        store.put_task(_task(), change="rename")
    assert store.list_tasks() == []


def test_encrypted_token_is_persisted_and_cleared(store):
    token = EncryptedToken(ciphertext="c", salt="s", iv="i")
    store.save_encrypted_token(token)
    assert store.load_sync_state().encrypted_token == token
    store.save_encrypted_token(None)
    assert store.load_sync_state().encrypted_token is None


def test_commit_sync_clears_queue_only_up_to_captured_seq(store):
    first = store.put_task(_task("One"), change="create")
    upto = store.last_pending_seq()
    store.put_task(_task("Two"), change="create")

    store.commit_sync(SyncCommit(clear_pending_upto=upto, last_synced_checksum="abc"))

    state = store.load_sync_state()
    assert len(state.pending_changes) == 1
    assert state.pending_changes[0].task_id != first.id
    assert state.last_synced_checksum == "abc"


def test_commit_sync_replaces_tasks_wholesale(store):
    store.put_task(_task("Local"))
    incoming = Task(id="remote-1", name="Remote")

    store.commit_sync(SyncCommit(replace_tasks=[incoming], backup_file_id="file-1"))

    assert [t.id for t in store.list_tasks()] == ["remote-1"]
    assert store.load_sync_state().backup_file_id == "file-1"


def test_resolve_conflict_writes_queues_and_drops_conflict(store):
    task = store.put_task(_task("Mine"))
    theirs = copy_task(task, name="Theirs")
    conflict = SyncConflict(
        task_id=task.id,
        local_version=task_to_wire(task),
        remote_version=task_to_wire(theirs),
        detected_at="2024-03-01T10:00:00.000Z",
    )
    store.commit_sync(SyncCommit(conflicts=[conflict]))
    assert len(store.load_sync_state().conflicts) == 1

    store.resolve_conflict(task.id, theirs)

    state = store.load_sync_state()
    assert state.conflicts == []
    assert [(c.task_id, c.operation) for c in state.pending_changes] == [(task.id, "update")]
    assert store.get_task(task.id).name == "Theirs"


def _seed_conflict(store, remote_updated_at, detected_at):
    task = store.put_task(_task("Mine"))
    theirs = copy_task(task, name="Theirs", updated_at=remote_updated_at)
    conflict = SyncConflict(
        task_id=task.id,
        local_version=task_to_wire(task),
        remote_version=task_to_wire(theirs),
        detected_at=detected_at,
    )
    store.commit_sync(SyncCommit(conflicts=[conflict]))
    return task


def test_resolve_conflict_moves_sync_point_past_seen_remote(store):
    store.commit_sync(SyncCommit(last_synced_at="2024-03-01T09:00:00.000Z"))
    task = _seed_conflict(store, "2024-03-01T09:30:00.000Z", "2024-03-01T10:00:00.000Z")
    store.resolve_conflict(task.id, copy_task(task))
    assert store.load_sync_state().last_synced_at == "2024-03-01T10:00:00.000Z"

    # a remote clock running ahead of ours still counts as seen
    other = _seed_conflict(store, "2099-01-01T00:00:00.000Z", "2024-03-02T10:00:00.000Z")
    store.resolve_conflict(other.id, copy_task(other))
    assert store.load_sync_state().last_synced_at == "2099-01-01T00:00:00.000Z"


def test_resolve_conflict_never_moves_sync_point_back(store):
    store.commit_sync(SyncCommit(last_synced_at="2024-05-01T00:00:00.000Z"))
    task = _seed_conflict(store, "2024-03-01T09:30:00.000Z", "2024-03-01T10:00:00.000Z")
    store.resolve_conflict(task.id, copy_task(task))
    assert store.load_sync_state().last_synced_at == "2024-05-01T00:00:00.000Z"


def test_resolve_conflict_without_conflict_raises(store):
    task = store.put_task(_task())
    with pytest.raises(KeyError):
        store.resolve_conflict(task.id, copy_task(task))


def test_list_tasks_can_hide_tombstones_and_purge(store):
    alive = store.put_task(_task("Alive"))
    gone = store.put_task(_task("Gone", deleted_at="2024-01-01T00:00:00.000Z"))

    assert [t.id for t in store.list_tasks(include_deleted=False)] == [alive.id]
    assert store.purge_tasks([gone.id]) == 1
    assert [t.id for t in store.list_tasks()] == [alive.id]


def test_delete_sync_state_removes_queue_and_token(store):
    store.save_encrypted_token(EncryptedToken(ciphertext="c", salt="s", iv="i"))
    store.append_pending_change("t1", "update")
    store.delete_sync_state()
    state = store.load_sync_state()
    assert state.encrypted_token is None
    assert state.pending_changes == []
    assert store.pending_count() == 0
