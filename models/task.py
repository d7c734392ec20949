# sparetime/models/task.py
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from utils.datetime_utils import now_iso


TASK_TYPES = ("one-off", "recurring", "project")
TASK_STATUSES = ("active", "completed", "archived")
EFFORT_LEVELS = ("low", "medium", "high")
LOCATIONS = ("home", "outside", "anywhere")
DEFAULT_PRIORITY = 5

# column name -> wire (backup JSON) name
_WIRE_FIELDS = {
    "id": "id",
    "name": "name",
    "type": "type",
    "time_estimate_minutes": "timeEstimateMinutes",
    "effort_level": "effortLevel",
    "location": "location",
    "status": "status",
    "priority": "priority",
    "deadline": "deadline",
    "depends_on_id": "dependsOnId",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "deleted_at": "deletedAt",
    "recurring_pattern": "recurringPattern",
    "project_session": "projectSession",
}
_OPTIONAL_FIELDS = {
    "deadline",
    "depends_on_id",
    "deleted_at",
    "recurring_pattern",
    "project_session",
}


class Task(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    type: str = Field(default="one-off", index=True)
    time_estimate_minutes: int = 30
    effort_level: str = "medium"
    location: str = "anywhere"
    status: str = Field(default="active", index=True)
    priority: int = DEFAULT_PRIORITY
    deadline: Optional[str] = None
    depends_on_id: Optional[str] = Field(default=None, index=True)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    deleted_at: Optional[str] = Field(default=None, index=True)
    recurring_pattern: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    project_session: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    @property
    def is_deleted(self) -> bool:
        return bool(self.deleted_at)


def task_to_wire(task: Task) -> Dict[str, Any]:
    """Serialize a task to the camelCase record stored in the Drive backup.

    Absent optional fields are omitted rather than written as ``null`` so
    that a task keeps the same shape (and checksum) after a round-trip.
    """

    payload: Dict[str, Any] = {}
    for column, wire in _WIRE_FIELDS.items():
        value = getattr(task, column)
        if value is None and column in _OPTIONAL_FIELDS:
            continue
        if isinstance(value, dict):
            value = dict(value)
        payload[wire] = value
    return payload


def task_from_wire(payload: Dict[str, Any]) -> Task:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise ValueError("task record must be an object with an id")
    fields: Dict[str, Any] = {}
    for column, wire in _WIRE_FIELDS.items():
        if wire in payload:
            fields[column] = payload[wire]
    if "name" not in fields:
        raise ValueError(f"task {payload.get('id')!r} has no name")
    return Task(**fields)


def copy_task(task: Task, **changes: Any) -> Task:
    """Detached copy of ``task`` with ``changes`` applied."""

    payload = task_to_wire(task)
    clone = task_from_wire(payload)
    for key, value in changes.items():
        setattr(clone, key, value)
    return clone


__all__ = [
    "Task",
    "TASK_TYPES",
    "TASK_STATUSES",
    "EFFORT_LEVELS",
    "LOCATIONS",
    "DEFAULT_PRIORITY",
    "task_to_wire",
    "task_from_wire",
    "copy_task",
]
