"""
Record Store
=============
Durable, versioned persistence for invitations, letters of credit,
escrow receipts, disputes and trade records.

One JSON file per record, one directory per collection. Every record
carries an integer ``version``; writes are compare-and-swap against the
version the writer read, so a writer that lost a race gets a
ConflictError instead of silently overwriting.

LockRegistry serialises work on one subject (an LC id) while leaving
different subjects fully parallel.
"""

from __future__ import annotations

import copy
import hashlib
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from lc_engine.errors import ConflictError, NotFoundError
from lc_engine.schema_loader import RECORDS_DIR


def _filename(collection: str, key: str) -> str:
    """Readable slug of the key plus a digest of the exact key."""
    slug = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)[:48]
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{collection}_{slug}_{digest}.json"


# ---------------------------------------------------------------------------
# Store base
# ---------------------------------------------------------------------------

class _VersionedStore:
    """Compare-and-swap logic shared by the file and memory stores."""

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    # --- Backend hooks ---

    def _read(self, collection: str, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _write(self, collection: str, key: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def _keys(self, collection: str) -> list[str]:
        raise NotImplementedError

    # --- Public API ---

    def find(self, collection: str, key: str) -> dict[str, Any] | None:
        return self._read(collection, key)

    def get(self, collection: str, key: str) -> dict[str, Any]:
        record = self._read(collection, key)
        if record is None:
            raise NotFoundError(
                f"{collection} record not found: {key}",
                details={"collection": collection, "key": key},
            )
        return record

    def put(self, collection: str, key: str, data: dict[str, Any],
            expected_version: int) -> dict[str, Any]:
        """
        Write ``data`` if the stored version still equals ``expected_version``.

        ``expected_version=0`` means "create; the record must not exist".
        Returns the written record with its new version.
        """
        with self._write_lock:
            current = self._read(collection, key)
            current_version = current.get("version", 0) if current else 0
            if current_version != expected_version:
                raise ConflictError(
                    f"{collection} record {key} changed concurrently "
                    f"(expected version {expected_version}, found {current_version}). "
                    "Re-read and retry.",
                    details={
                        "collection": collection,
                        "key": key,
                        "expected_version": expected_version,
                        "current_version": current_version,
                    },
                )
            record = copy.deepcopy(data)
            record["version"] = current_version + 1
            self._write(collection, key, record)
            return record

    def create(self, collection: str, key: str, data: dict[str, Any]) -> dict[str, Any]:
        return self.put(collection, key, data, expected_version=0)

    def all(self, collection: str) -> list[dict[str, Any]]:
        records = []
        for key in self._keys(collection):
            record = self._read(collection, key)
            if record is not None:
                records.append(record)
        return records

    def next_sequence(self, name: str) -> int:
        """Monotonic counter, used for human-referenceable numbers."""
        while True:
            current = self._read("sequences", name)
            value = (current or {}).get("value", 0) + 1
            try:
                self.put("sequences", name, {"name": name, "value": value},
                         expected_version=(current or {}).get("version", 0))
            except ConflictError:
                continue
            return value


# ---------------------------------------------------------------------------
# File-backed store
# ---------------------------------------------------------------------------

class RecordStore(_VersionedStore):
    """JSON file per record under ``root/<collection>/``."""

    def __init__(self, root: Path | None = None) -> None:
        super().__init__()
        self._root = root or RECORDS_DIR
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, collection: str, key: str) -> Path:
        return self._root / collection / _filename(collection, key)

    def _read(self, collection: str, key: str) -> dict[str, Any] | None:
        path = self._path(collection, key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, collection: str, key: str, data: dict[str, Any]) -> None:
        path = self._path(collection, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str, ensure_ascii=False)
        os.replace(tmp, path)

    def _keys(self, collection: str) -> list[str]:
        folder = self._root / collection
        if not folder.exists():
            return []
        keys = []
        for path in sorted(folder.glob(f"{collection}_*.json")):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            keys.append(data["_key"])
        return keys

    def put(self, collection: str, key: str, data: dict[str, Any],
            expected_version: int) -> dict[str, Any]:
        data = dict(data)
        data["_key"] = key
        record = super().put(collection, key, data, expected_version)
        record.pop("_key", None)
        return record

    def find(self, collection: str, key: str) -> dict[str, Any] | None:
        record = super().find(collection, key)
        if record is not None:
            record.pop("_key", None)
        return record

    def get(self, collection: str, key: str) -> dict[str, Any]:
        record = super().get(collection, key)
        record.pop("_key", None)
        return record

    def all(self, collection: str) -> list[dict[str, Any]]:
        records = super().all(collection)
        for record in records:
            record.pop("_key", None)
        return records


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryRecordStore(_VersionedStore):
    """Process-local store with the same semantics; records are deep-copied."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    def _read(self, collection: str, key: str) -> dict[str, Any] | None:
        record = self._data.get(collection, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    def _write(self, collection: str, key: str, data: dict[str, Any]) -> None:
        self._data.setdefault(collection, {})[key] = copy.deepcopy(data)

    def _keys(self, collection: str) -> list[str]:
        return sorted(self._data.get(collection, {}).keys())


# ---------------------------------------------------------------------------
# Per-subject locks
# ---------------------------------------------------------------------------

class LockRegistry:
    """
    One re-entrant lock per subject id. A lock lives only while some
    caller holds or waits on it, so the registry does not grow with
    every LC and user it has ever seen.
    """

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self._timeout = timeout_seconds
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}
        self._guard = threading.Lock()

    def active(self) -> int:
        """Number of subjects currently held or waited on."""
        with self._guard:
            return len(self._locks)

    def _checkout(self, subject_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[subject_id] = lock
            self._users[subject_id] = self._users.get(subject_id, 0) + 1
            return lock

    def _checkin(self, subject_id: str) -> None:
        with self._guard:
            self._users[subject_id] -= 1
            if not self._users[subject_id]:
                del self._users[subject_id]
                del self._locks[subject_id]

    @contextmanager
    def hold(self, subject_id: str) -> Iterator[None]:
        lock = self._checkout(subject_id)
        try:
            if not lock.acquire(timeout=self._timeout):
                raise ConflictError(
                    f"{subject_id} is busy with another operation. Re-read and retry.",
                    details={"subject_id": subject_id},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(subject_id)
