#!/usr/bin/env python3
"""Persist the last-seen review state of every page as a single JSON file."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from snapshot_diff import MalformedRecordError, normalize_entry

DEFAULT_STATE_FILE = "cache.json"


class StoreError(Exception):
    """The snapshot file could not be read, parsed or written."""


def validate_snapshot(data) -> dict:
    """Check that *data* is a title -> entry mapping and return it.

    Raises StoreError on the first invalid entry.
    """
    if not isinstance(data, dict):
        raise StoreError(f"snapshot must be a JSON object, got {type(data).__name__}")
    for title, entry in data.items():
        try:
            normalize_entry(entry, title)
        except MalformedRecordError as exc:
            raise StoreError(f"invalid snapshot entry: {exc}") from exc
    return data


def load_snapshot(path: str | Path = DEFAULT_STATE_FILE) -> dict | None:
    """Load the stored snapshot.

    Returns None if the file does not exist (fresh start). A file that exists
    but cannot be read or parsed raises StoreError so history is never
    silently discarded.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise StoreError(f"snapshot file {path} is corrupt: {exc}") from exc
    except OSError as exc:
        raise StoreError(f"failed to read snapshot file {path}: {exc}") from exc
    return validate_snapshot(data)


def save_snapshot(snapshot: dict, path: str | Path = DEFAULT_STATE_FILE) -> Path:
    """Atomically overwrite *path* with *snapshot*.

    The JSON is written to a temporary file next to the target and moved into
    place with ``os.replace``; either the whole new snapshot lands or the old
    file stays as it was.

    Returns the path written.
    """
    path = Path(path)
    try:
        content = json.dumps(snapshot, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
    except (TypeError, ValueError) as exc:
        raise StoreError(f"snapshot is not serializable: {exc}") from exc

    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise StoreError(f"failed to write snapshot file {path}: {exc}") from exc
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.remove(tmp_name)

    return path
