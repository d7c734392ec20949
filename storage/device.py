"""Helpers for generating and storing the per-install device secret."""
from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Optional

from core.settings import DEVICE_SECRET_PATH


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _read_existing(path: Path) -> str | None:
    try:
        if path.exists():
            value = path.read_text(encoding="utf-8").strip()
            if value:
                return value
    except OSError:
        return None
    return None


def _write_value(path: Path, value: str) -> None:
    tmp = path.with_suffix(".tmp")
    _ensure_parent(path)
    try:
        tmp.write_text(value, encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def get_device_secret(path: Optional[Path] = None) -> str:
    """Return the stable secret the token vault derives its key from.

    The value never leaves this machine. Unlike a display identifier it must
    persist: if it cannot be written, the stored credential could never be
    decrypted again, so the error propagates.
    """

    target = Path(path or DEVICE_SECRET_PATH)
    existing = _read_existing(target)
    if existing:
        return existing

    new_secret = secrets.token_hex(32)
    _write_value(target, new_secret)
    return new_secret


__all__ = ["get_device_secret"]
