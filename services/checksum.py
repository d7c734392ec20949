"""Deterministic content digests over task collections."""
from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, Mapping


def _canonical(tasks: Iterable[Mapping[str, Any]]) -> bytes:
    ordered = sorted(tasks, key=lambda item: str(item.get("id", "")))
    text = json.dumps(ordered, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return text.encode("utf-8")


def digest(tasks: Iterable[Mapping[str, Any]]) -> str:
    """SHA-256 hex digest of ``tasks`` (wire dicts).

    Key order and list order do not matter; any change to a value does.
    """

    return hashlib.sha256(_canonical(tasks)).hexdigest()


def digest_active(tasks: Iterable[Mapping[str, Any]]) -> str:
    return digest(item for item in tasks if not item.get("deletedAt"))


__all__ = ["digest", "digest_active"]
