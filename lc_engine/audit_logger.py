"""
Audit Logger
=============
Writes replayable audit records for every workflow mutation.

Each mutation (invitation response, LC transition, escrow funding,
escrow release, dispute resolution) produces a timestamped JSON file
containing:
  - Operation and subject (invitation / LC / dispute id)
  - Acting user
  - Idempotency key of any money movement
  - Status before and after
  - Amount and currency moved
  - Ledger outcome (SUCCEEDED / FAILED / PENDING) and transaction ref
  - Git commit hash (if available)
  - A record hash for tamper detection

This is not debug logging. It is the record an operator replays when a
settlement has to be audited or reconciled by hand.
"""

from __future__ import annotations

import hashlib
import json
import subprocess
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any

from lc_engine.schema_loader import AUDIT_DIR, ROOT_DIR
from lc_engine.timeutils import Clock, utc_now


# ---------------------------------------------------------------------------
# Audit Logger
# ---------------------------------------------------------------------------

class AuditLogger:
    """
    Writes structured audit records for every workflow mutation.
    """

    def __init__(self, logs_dir: Path | None = None, clock: Clock | None = None,
                 enabled: bool = True) -> None:
        self._logs_dir = logs_dir or AUDIT_DIR
        self._clock = clock or utc_now
        self._enabled = enabled
        self._commit: str | None = None
        if self._enabled:
            self._logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def log_event(
        self,
        *,
        operation: str,
        subject_id: str,
        actor: str | None = None,
        idempotency_key: str | None = None,
        before_status: str | None = None,
        after_status: str | None = None,
        amount: Decimal | str | None = None,
        currency: str | None = None,
        outcome: str | None = None,
        tx_ref: str | None = None,
        error: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Path | None:
        """
        Write a single audit record.

        Returns:
            Path to the written audit file, or None when auditing is off.
        """
        if not self._enabled:
            return None

        now = self._clock()
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S")

        record: dict[str, Any] = {
            "audit_version": "1.0",
            "timestamp_utc": now.isoformat(),
            "operation": operation,
            "subject_id": subject_id,
            "git_commit": self._git_commit(),
        }

        if actor:
            record["actor"] = actor
        if idempotency_key:
            record["idempotency_key"] = idempotency_key
        if before_status is not None or after_status is not None:
            record["before_status"] = before_status
            record["after_status"] = after_status
        if amount is not None:
            record["amount"] = str(amount)
            record["currency"] = currency
        if outcome:
            record["outcome"] = outcome
        if tx_ref:
            record["tx_ref"] = tx_ref
        if error:
            record["error"] = error
        if extra:
            record["extra"] = extra

        # Compute record hash for tamper detection
        record["record_hash"] = self.hash_dict(record)

        op_slug = operation.replace(" ", "_").replace("-", "_").lower()
        filename = f"{timestamp}_{op_slug}_{uuid.uuid4().hex[:8]}.json"
        filepath = self._logs_dir / filename

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, default=str, ensure_ascii=False)

        return filepath

    def read_records(self, operation: str | None = None,
                     subject_id: str | None = None) -> list[dict[str, Any]]:
        """Load written records, oldest first."""
        if not self._logs_dir.exists():
            return []
        records = []
        for path in sorted(self._logs_dir.glob("*.json")):
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
            if operation and record.get("operation") != operation:
                continue
            if subject_id and record.get("subject_id") != subject_id:
                continue
            records.append(record)
        records.sort(key=lambda r: r.get("timestamp_utc", ""))
        return records

    @classmethod
    def verify_record(cls, record: dict[str, Any]) -> bool:
        """Recompute the record hash and compare."""
        body = {k: v for k, v in record.items() if k != "record_hash"}
        return cls.hash_dict(body) == record.get("record_hash")

    # --- Helpers ---

    @staticmethod
    def hash_dict(d: dict[str, Any]) -> str:
        """SHA256 hash of a dictionary for tamper detection."""
        canonical = json.dumps(d, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def _git_commit(self) -> str | None:
        """Current git commit hash, looked up once; None if not in a repo."""
        if self._commit is None:
            self._commit = ""
            try:
                result = subprocess.run(
                    ["git", "rev-parse", "--short", "HEAD"],
                    capture_output=True,
                    text=True,
                    timeout=5,
                    cwd=str(ROOT_DIR),
                )
                if result.returncode == 0:
                    self._commit = result.stdout.strip()
            except (OSError, subprocess.SubprocessError):
                pass
        return self._commit or None
