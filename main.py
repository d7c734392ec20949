"""Command line front-end for the SpareTime Drive backup sync."""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from core.errors import AuthorizationCancelledError, AuthorizationError, SyncInitializationError
from core.logging_setup import get_logger
from models.sync import CONFLICT_RESOLUTIONS, FIRST_CONNECT_DECISIONS, SyncResult
from services.drive_backup import DriveBackupClient
from services.google_auth import GoogleAuth
from services.sync_engine import SyncEngine
from storage.db import init_db
from storage.store import LocalStore


logger = get_logger("sparetime.cli")


def build_engine(auth: Optional[GoogleAuth] = None) -> SyncEngine:
    init_db()
    engine = SyncEngine(LocalStore(), DriveBackupClient(), auth=auth or GoogleAuth())
    engine.load_sync_state()
    return engine


def _print_result(result: SyncResult) -> int:
    if result.success:
        print(
            f"Sync ok: {result.tasks_uploaded} uploaded, {result.tasks_downloaded} downloaded, "
            f"{result.conflicts_detected} conflict(s)"
        )
        return 0
    print(f"Sync failed ({result.error_kind}): {result.error}")
    if result.auth_required:
        print("Run `connect` again to re-authorize Google Drive.")
    return 1


def cmd_status(engine: SyncEngine, args) -> int:
    print(f"Backup enabled:  {'yes' if engine.is_backup_enabled else 'no'}")
    print(f"Status:          {engine.sync_status.value}")
    print(f"Last sync:       {engine.last_sync_time or 'never'}")
    print(f"Pending changes: {engine.pending_change_count}")
    print(f"Conflicts:       {engine.conflict_count}")
    return 0


async def cmd_connect(engine: SyncEngine, args) -> int:
    auth = engine.auth
    try:
        token = await auth.authorize()
    except AuthorizationCancelledError as exc:
        print(f"Authorization cancelled: {exc}")
        return 1
    except AuthorizationError as exc:
        print(f"Authorization failed: {exc}")
        return 1
    await engine.store_access_token(token)

    info = await engine.check_first_time_connect()
    if info.error:
        print(f"Could not inspect the Drive backup: {info.error}")
        return 1
    if info.needs_merge_decision:
        if args.decision is None:
            print("Both this device and Drive hold tasks. Re-run with --decision merge|use-remote|use-local.")
            return 2
        return _print_result(await engine.handle_first_time_merge(args.decision))
    return _print_result(await engine.perform_sync())


async def cmd_sync(engine: SyncEngine, args) -> int:
    return _print_result(await engine.perform_sync())


async def cmd_disconnect(engine: SyncEngine, args) -> int:
    await engine.disable_backup(revoke=not args.keep_token)
    print("Google Drive backup disabled.")
    return 0


def cmd_conflicts(engine: SyncEngine, args) -> int:
    if not engine.has_conflicts:
        print("No conflicts.")
        return 0
    for conflict in engine.conflicts:
        local = conflict.local_version
        remote = conflict.remote_version
        print(f"{conflict.task_id}")
        print(f"  local:  {local.get('name')!r} updated {local.get('updatedAt')}")
        print(f"  remote: {remote.get('name')!r} updated {remote.get('updatedAt')}")
    return 0


def cmd_resolve(engine: SyncEngine, args) -> int:
    task = engine.resolve_conflict(args.task_id, args.resolution)
    if task is None:
        print(f"No conflict for task {args.task_id}")
        return 1
    print(f"Resolved {args.task_id} with the {args.resolution} version.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show backup and queue state")

    connect = sub.add_parser("connect", help="Authorize Google Drive and run the first sync")
    connect.add_argument("--decision", choices=FIRST_CONNECT_DECISIONS, default=None)

    sub.add_parser("sync", help="Run one sync cycle")

    disconnect = sub.add_parser("disconnect", help="Disable backup and forget the credential")
    disconnect.add_argument("--keep-token", action="store_true", help="Do not revoke the token at Google")

    sub.add_parser("conflicts", help="List unresolved conflicts")

    resolve = sub.add_parser("resolve", help="Resolve one conflict")
    resolve.add_argument("task_id")
    resolve.add_argument("resolution", choices=[r for r in CONFLICT_RESOLUTIONS if r != "merge"])
    return parser


_ASYNC_COMMANDS = {
    "connect": cmd_connect,
    "sync": cmd_sync,
    "disconnect": cmd_disconnect,
}
_SYNC_COMMANDS = {
    "status": cmd_status,
    "conflicts": cmd_conflicts,
    "resolve": cmd_resolve,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        engine = build_engine()
    except SyncInitializationError as exc:
        print(f"Cannot open the local sync state: {exc}")
        return 1

    if args.command in _SYNC_COMMANDS:
        return _SYNC_COMMANDS[args.command](engine, args)

    async def _run() -> int:
        try:
            return await _ASYNC_COMMANDS[args.command](engine, args)
        finally:
            await engine.close()

    try:
        return asyncio.run(_run())
    except Exception as exc:  # pragma: no cover - CLI entry point
        logger.exception("Command %s failed: %s", args.command, exc)
        raise


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
