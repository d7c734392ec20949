"""Ad-hoc database migrations for SpareTime."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def _table_exists(conn, table: str) -> bool:
    result = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"),
        {"name": table},
    )
    return result.first() is not None


def ensure_sync_state_columns(conn) -> None:
    """Databases from the first release stored only the token and last sync time."""

    if not _table_exists(conn, "syncstaterecord"):
        return
    columns = {
        "last_synced_checksum": "TEXT",
        "backup_file_id": "TEXT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "syncstaterecord", name):
            conn.execute(text(f"ALTER TABLE syncstaterecord ADD COLUMN {name} {ddl_type}"))


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_sync_state_columns(conn)


__all__ = ["run_all", "ensure_sync_state_columns"]
