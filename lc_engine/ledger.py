"""
Ledger Backend
===============
The settlement ledger / wallet collaborator. The escrow coordinator only
depends on the LedgerBackend protocol:

  query_balance(account, currency)                       -> Decimal
  transfer(source, destination, amount, currency,
           idempotency_key, authorization)               -> TransferResult
  transfer_status(idempotency_key)                       -> TransferResult | None

Every transfer outcome is one of three classes:

  SUCCEEDED  funds moved
  FAILED     nothing moved; safe to retry with the same key
  PENDING    submitted, outcome unknown; must be reconciled by a
             transfer_status query, never blindly retried

InMemoryLedger honours idempotency keys the way a real ledger does (a
repeated key returns the recorded result without moving funds twice)
and can be scripted to fail, hang or stay pending for tests.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class SettlementOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass
class TransferResult:
    status: SettlementOutcome
    tx_ref: str | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == SettlementOutcome.SUCCEEDED


class LedgerBackend(Protocol):
    def query_balance(self, account: str, currency: str) -> Decimal: ...

    def transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        authorization: str | None = None,
    ) -> TransferResult: ...

    def transfer_status(self, idempotency_key: str) -> TransferResult | None: ...


# ---------------------------------------------------------------------------
# In-memory ledger
# ---------------------------------------------------------------------------

class InMemoryLedger:
    """Balances and transfers held in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._balances: dict[tuple[str, str], Decimal] = {}
        self._secrets: dict[str, str] = {}
        self._transfers: dict[str, dict[str, Any]] = {}
        self._script: list[tuple[SettlementOutcome, str]] = []
        self._hang: threading.Event | None = None
        self.transfer_calls: list[str] = []

    # --- Setup ---

    def deposit(self, account: str, currency: str, amount: Decimal | str | int) -> None:
        with self._lock:
            key = (account, currency)
            self._balances[key] = self._balances.get(key, Decimal("0")) + Decimal(str(amount))
            self._persist()

    def register_account(self, account: str, secret: str) -> None:
        """Require ``secret`` as authorization for transfers out of ``account``."""
        with self._lock:
            self._secrets[account] = secret
            self._persist()

    def script_outcomes(self, *outcomes: SettlementOutcome, message: str = "") -> None:
        """Force the next transfers to end FAILED or PENDING."""
        with self._lock:
            self._script.extend((o, message) for o in outcomes)

    def hang_transfers(self) -> threading.Event:
        """Block transfers until the returned event is set."""
        self._hang = threading.Event()
        return self._hang

    def settle_pending(self, idempotency_key: str, succeed: bool = True) -> None:
        """Resolve a PENDING transfer the way the network eventually would."""
        with self._lock:
            record = self._transfers[idempotency_key]
            if record["status"] != SettlementOutcome.PENDING.value:
                return
            if succeed:
                self._move(record["source"], record["destination"],
                           Decimal(record["amount"]), record["currency"])
                record["status"] = SettlementOutcome.SUCCEEDED.value
            else:
                record["status"] = SettlementOutcome.FAILED.value
            self._persist()

    # --- LedgerBackend ---

    def query_balance(self, account: str, currency: str) -> Decimal:
        with self._lock:
            return self._balances.get((account, currency), Decimal("0"))

    def transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        authorization: str | None = None,
    ) -> TransferResult:
        if self._hang is not None:
            self._hang.wait()

        with self._lock:
            self.transfer_calls.append(idempotency_key)

            previous = self._transfers.get(idempotency_key)
            if previous and previous["status"] != SettlementOutcome.FAILED.value:
                return self._result(previous)

            tx_ref = uuid.uuid4().hex
            record = {
                "idempotency_key": idempotency_key,
                "source": source,
                "destination": destination,
                "amount": str(amount),
                "currency": currency,
                "tx_ref": tx_ref,
                "status": SettlementOutcome.FAILED.value,
                "message": "",
            }

            if self._script:
                outcome, message = self._script.pop(0)
                record["status"] = outcome.value
                record["message"] = message or f"scripted {outcome.value.lower()}"
            elif source in self._secrets and self._secrets[source] != authorization:
                record["message"] = "authorization rejected"
            elif self._balances.get((source, currency), Decimal("0")) < amount:
                record["message"] = "insufficient funds"
            else:
                self._move(source, destination, amount, currency)
                record["status"] = SettlementOutcome.SUCCEEDED.value

            self._transfers[idempotency_key] = record
            self._persist()
            return self._result(record)

    def transfer_status(self, idempotency_key: str) -> TransferResult | None:
        with self._lock:
            record = self._transfers.get(idempotency_key)
            return self._result(record) if record else None

    # --- Internals ---

    def debit_count(self, idempotency_key: str | None = None) -> int:
        """Number of transfers that actually moved funds."""
        with self._lock:
            return sum(
                1 for key, r in self._transfers.items()
                if r["status"] == SettlementOutcome.SUCCEEDED.value
                and (idempotency_key is None or key == idempotency_key)
            )

    def _move(self, source: str, destination: str, amount: Decimal, currency: str) -> None:
        src, dst = (source, currency), (destination, currency)
        self._balances[src] = self._balances.get(src, Decimal("0")) - amount
        self._balances[dst] = self._balances.get(dst, Decimal("0")) + amount

    @staticmethod
    def _result(record: dict[str, Any]) -> TransferResult:
        return TransferResult(
            status=SettlementOutcome(record["status"]),
            tx_ref=record["tx_ref"],
            message=record.get("message", ""),
        )

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


# ---------------------------------------------------------------------------
# JSON-file ledger
# ---------------------------------------------------------------------------

class JsonFileLedger(InMemoryLedger):
    """InMemoryLedger that survives between CLI invocations."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        if self._path.exists():
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            for entry in data.get("balances", []):
                self._balances[(entry["account"], entry["currency"])] = Decimal(entry["amount"])
            self._secrets = data.get("secrets", {})
            self._transfers = data.get("transfers", {})

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "balances": [
                {"account": a, "currency": c, "amount": str(v)}
                for (a, c), v in sorted(self._balances.items())
            ],
            "secrets": self._secrets,
            "transfers": self._transfers,
        }
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
