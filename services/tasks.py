# sparetime/services/tasks.py
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from core.logging_setup import get_logger
from core.settings import RETENTION
from models.task import (
    DEFAULT_PRIORITY,
    EFFORT_LEVELS,
    LOCATIONS,
    TASK_STATUSES,
    TASK_TYPES,
    Task,
    copy_task,
)
from storage.store import LocalStore
from utils.datetime_utils import days_ago_iso, is_after, now_iso


_EDITABLE = {
    "name",
    "type",
    "time_estimate_minutes",
    "effort_level",
    "location",
    "status",
    "priority",
    "deadline",
    "depends_on_id",
    "recurring_pattern",
    "project_session",
}


def normalize_priority(value: Any) -> int:
    """Clamp external values to the 0..10 priority range."""
    if value is None:
        return DEFAULT_PRIORITY
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return max(0, min(10, ivalue))


def _check_choice(value: Optional[str], allowed, field: str) -> None:
    if value is not None and value not in allowed:
        raise ValueError(f"Unsupported {field}: {value}")


class TaskService:
    """Task mutations for the app; every write is mirrored into the sync queue.

    With an engine attached and backup enabled, the task row and its pending
    change are written in one transaction and a debounced sync is scheduled.
    """

    def __init__(self, store: LocalStore, engine=None):
        self.store = store
        self.engine = engine
        self._listeners: Dict[str, List[Callable[[str], None]]] = {
            "after_create": [],
            "after_update": [],
            "after_delete": [],
        }
        self.logger = get_logger("sparetime.tasks")

    def subscribe(self, event: str, callback: Callable[[str], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        if callback not in self._listeners[event]:
            self._listeners[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable[[str], None]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, task_id: str) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(task_id)
            except Exception:
                self.logger.exception("Task listener for %s failed", event)

    # ----- writes -----
    def _write(self, task: Task, operation: str) -> Task:
        tracked = self.engine is not None and self.engine.is_backup_enabled
        saved = self.store.put_task(task, change=operation if tracked else None)
        if tracked:
            self.engine.notify_local_change()
        return saved

    def create(
        self,
        name: str,
        *,
        type: str = "one-off",
        time_estimate_minutes: int = 30,
        effort_level: str = "medium",
        location: str = "anywhere",
        priority: Optional[int] = None,
        deadline: Optional[str] = None,
        depends_on_id: Optional[str] = None,
        recurring_pattern: Optional[Dict[str, Any]] = None,
        project_session: Optional[Dict[str, Any]] = None,
    ) -> Task:
        name = (name or "").strip()
        if not name:
            raise ValueError("Task name must not be empty")
        _check_choice(type, TASK_TYPES, "type")
        _check_choice(effort_level, EFFORT_LEVELS, "effort level")
        _check_choice(location, LOCATIONS, "location")
        stamp = now_iso()
        task = Task(
            name=name,
            type=type,
            time_estimate_minutes=time_estimate_minutes,
            effort_level=effort_level,
            location=location,
            priority=normalize_priority(priority),
            deadline=deadline,
            depends_on_id=depends_on_id,
            recurring_pattern=recurring_pattern,
            project_session=project_session,
            created_at=stamp,
            updated_at=stamp,
        )
        saved = self._write(task, "create")
        self._emit("after_create", saved.id)
        return saved

    def get(self, task_id: str) -> Optional[Task]:
        return self.store.get_task(task_id)

    def update(self, task_id: str, **fields: Any) -> Optional[Task]:
        unknown = set(fields) - _EDITABLE
        if unknown:
            raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}")
        current = self.store.get_task(task_id)
        if current is None or current.is_deleted:
            return None
        if "name" in fields:
            fields["name"] = (fields["name"] or "").strip()
            if not fields["name"]:
                raise ValueError("Task name must not be empty")
        if "priority" in fields:
            fields["priority"] = normalize_priority(fields["priority"])
        _check_choice(fields.get("type"), TASK_TYPES, "type")
        _check_choice(fields.get("status"), TASK_STATUSES, "status")
        _check_choice(fields.get("effort_level"), EFFORT_LEVELS, "effort level")
        _check_choice(fields.get("location"), LOCATIONS, "location")
        saved = self._write(copy_task(current, **fields), "update")
        self._emit("after_update", task_id)
        return saved

    def set_status(self, task_id: str, status: str) -> Optional[Task]:
        return self.update(task_id, status=status)

    def delete(self, task_id: str) -> bool:
        """Soft delete: the tombstone travels to other devices through the backup."""
        current = self.store.get_task(task_id)
        if current is None or current.is_deleted:
            return False
        self._write(copy_task(current, deleted_at=now_iso()), "delete")
        self._emit("after_delete", task_id)
        return True

    # ----- reads -----
    def list_active(self) -> List[Task]:
        tasks = self.store.list_tasks(include_deleted=False)
        return sorted(tasks, key=lambda t: (-int(t.priority or 0), t.created_at))

    def cleanup_deleted(self, retention_days: int = RETENTION.deleted_task_days) -> int:
        """Hard-remove tombstones older than ``retention_days``; returns the count."""
        cutoff = days_ago_iso(retention_days)
        expired = [
            task.id
            for task in self.store.list_tasks()
            if task.deleted_at and not is_after(task.deleted_at, cutoff)
        ]
        removed = self.store.purge_tasks(expired)
        if removed:
            self.logger.info("Purged %d deleted task(s) older than %d days", removed, retention_days)
        return removed


__all__ = ["TaskService", "normalize_priority"]
