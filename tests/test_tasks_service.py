import pytest

from models.task import DEFAULT_PRIORITY, Task
from services.tasks import TaskService, normalize_priority


class RecordingEngine:
    def __init__(self, enabled=True):
        self.is_backup_enabled = enabled
        self.notified = 0

    def notify_local_change(self):
        self.notified += 1


def test_create_without_backup_records_nothing(store):
    service = TaskService(store)
    task = service.create("  Read  ")
    assert task.name == "Read"
    assert task.priority == DEFAULT_PRIORITY
    assert store.pending_count() == 0


def test_mutations_are_queued_when_backup_enabled(store):
    engine = RecordingEngine()
    service = TaskService(store, engine)

    task = service.create("Read")
    service.update(task.id, name="Read more", priority=42)
    service.set_status(task.id, "completed")
    assert service.delete(task.id)

    ops = [c.operation for c in store.load_sync_state().pending_changes]
    assert ops == ["create", "update", "update", "delete"]
    assert engine.notified == 4
    saved = store.get_task(task.id)
    assert saved.name == "Read more"
    assert saved.priority == 10
    assert saved.status == "completed"
    assert saved.deleted_at


def test_disabled_backup_does_not_queue(store):
    service = TaskService(store, RecordingEngine(enabled=False))
    service.create("Read")
    assert store.pending_count() == 0


def test_deleted_tasks_are_hidden_and_not_editable(store):
    service = TaskService(store)
    keep = service.create("Keep", priority=1)
    top = service.create("Top", priority=8)
    gone = service.create("Gone")
    service.delete(gone.id)

    assert [t.name for t in service.list_active()] == ["Top", "Keep"]
    assert service.update(gone.id, name="Back") is None
    assert service.delete(gone.id) is False
    assert service.get(keep.id).name == "Keep"
    assert top.priority == 8


def test_validation(store):
    service = TaskService(store)
    with pytest.raises(ValueError):
        service.create("   ")
    with pytest.raises(ValueError):
        service.create("Read", type="weekly")
    task = service.create("Read")
    with pytest.raises(ValueError):
        service.update(task.id, colour="red")
    with pytest.raises(ValueError):
        service.set_status(task.id, "doing")


def test_cleanup_deleted_respects_retention(store):
    service = TaskService(store)
    store.put_task(Task(name="Old", deleted_at="2020-01-01T00:00:00.000Z"))
    store.put_task(Task(name="Recent"))
    recent = next(t for t in store.list_tasks() if t.name == "Recent")
    service.delete(recent.id)

    assert service.cleanup_deleted(30) == 1
    assert [t.name for t in store.list_tasks()] == ["Recent"]


def test_normalize_priority():
    assert normalize_priority(None) == DEFAULT_PRIORITY
    assert normalize_priority("7") == 7
    assert normalize_priority(-3) == 0
    assert normalize_priority("high") == DEFAULT_PRIORITY
