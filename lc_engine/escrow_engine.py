"""
Escrow Settlement Coordinator
==============================
Mediates fund custody for Letters of Credit. The ledger is an external
collaborator; this module decides WHEN money may move and records WHAT
happened, it never assumes a local balance.

Every money movement is keyed by an idempotency key and recorded as a
SettlementReceipt before the ledger is called (write-ahead):

  PENDING    written first, and kept if the ledger times out or its
             answer is unknown. Further calls with the key refuse with
             LedgerPendingError until reconcile() asks the ledger.
  SUCCEEDED  funds moved. Repeating the call replays the receipt.
  FAILED     nothing moved. Retrying with the same key is safe.

Funding: buyer -> escrow, key ``fund:<lc_id>``, at most one success
per LC, triggers SIGNED -> FUNDED.

Release: escrow -> recipient after a fresh balance query; a full
settlement triggers DELIVERED -> COMPLETED. Dispute legs and refunds
use the same path with their own purpose.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from lc_engine._icons import OUTCOME_ICONS
from lc_engine.audit_logger import AuditLogger
from lc_engine.errors import (
    AlreadyFundedError,
    IllegalTransitionError,
    LCEngineError,
    LedgerFailedError,
    LedgerPendingError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from lc_engine.lc_lifecycle import (
    ESCROW_AGENT,
    ESCROW_OPS,
    POST_FUNDING,
    LCLifecycleManager,
    LCStatus,
    LetterOfCredit,
    parse_decimal,
)
from lc_engine.ledger import LedgerBackend, SettlementOutcome, TransferResult
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import _VersionedStore
from lc_engine.timeutils import Clock, to_iso, utc_now


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FUNDING = "funding"
SETTLEMENT = "settlement"
REFUND = "refund"
DISPUTE_BUYER = "dispute_buyer"
DISPUTE_SELLER = "dispute_seller"

RELEASE_PURPOSES = {SETTLEMENT, REFUND, DISPUTE_BUYER, DISPUTE_SELLER}

# Which LC party a release purpose pays, and the statuses it is valid in
_PURPOSE_RULES: dict[str, tuple[str, set[LCStatus]]] = {
    SETTLEMENT: ("seller", {LCStatus.DELIVERED}),
    REFUND: ("buyer", set(POST_FUNDING)),
    DISPUTE_BUYER: ("buyer", {LCStatus.DISPUTED}),
    DISPUTE_SELLER: ("seller", {LCStatus.DISPUTED}),
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class FundingCheck:
    """Advisory answer to "could this buyer fund the LC right now?"."""
    account: str
    currency: str
    required: Decimal
    available: Decimal

    @property
    def sufficient(self) -> bool:
        return self.available >= self.required

    @property
    def shortfall(self) -> Decimal:
        return max(self.required - self.available, Decimal("0"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "currency": self.currency,
            "required": str(self.required),
            "available": str(self.available),
            "sufficient": self.sufficient,
            "shortfall": str(self.shortfall),
        }


@dataclass
class EscrowAccount:
    address: str
    lc_id: str
    currency: str
    balance: Decimal
    locked: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "lc_id": self.lc_id,
            "currency": self.currency,
            "balance": str(self.balance),
            "locked": self.locked,
        }


@dataclass
class SettlementReceipt:
    """Durable record of one keyed money movement."""
    idempotency_key: str
    lc_id: str
    purpose: str
    source: str
    destination: str
    amount: Decimal
    currency: str
    outcome: SettlementOutcome = SettlementOutcome.PENDING
    tx_ref: str | None = None
    message: str = ""
    actor: str = ""
    memo: str = ""
    attempts: int = 0
    created_at: str = ""
    updated_at: str = ""
    version: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome == SettlementOutcome.SUCCEEDED

    def summary(self) -> str:
        icon = OUTCOME_ICONS.get(self.outcome.value, "?")
        return (f"{icon} {self.purpose} {self.amount:,} {self.currency} "
                f"{self.source} -> {self.destination} [{self.outcome.value}] "
                f"key={self.idempotency_key} tx={self.tx_ref or '-'}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "lc_id": self.lc_id,
            "purpose": self.purpose,
            "source": self.source,
            "destination": self.destination,
            "amount": str(self.amount),
            "currency": self.currency,
            "outcome": self.outcome.value,
            "tx_ref": self.tx_ref,
            "message": self.message,
            "actor": self.actor,
            "memo": self.memo,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SettlementReceipt":
        data = dict(data)
        data["amount"] = Decimal(data["amount"])
        data["outcome"] = SettlementOutcome(data["outcome"])
        return cls(**data)


# ---------------------------------------------------------------------------
# Escrow Coordinator
# ---------------------------------------------------------------------------

class EscrowCoordinator:
    """
    Moves LC funds through the ledger and feeds confirmed outcomes back
    into the LC state machine.
    """

    def __init__(
        self,
        store: _VersionedStore,
        ledger: LedgerBackend,
        lifecycle: LCLifecycleManager,
        *,
        policy: PolicyEngine | None = None,
        audit: AuditLogger | None = None,
        clock: Clock | None = None,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._lifecycle = lifecycle
        self.policy = policy or lifecycle.policy
        self._clock = clock or utc_now
        self._audit = audit or AuditLogger(clock=self._clock,
                                           enabled=self.policy.should_audit())
        self._locks = lifecycle.locks
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="ledger")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # --- Read-only ---

    def check_funding_capacity(self, buyer: str, amount: Decimal | str,
                               currency: str) -> FundingCheck:
        """
        Advisory only. fund_escrow is the sole authority on whether the
        debit happens; a sufficient answer here guarantees nothing.
        """
        return FundingCheck(
            account=buyer,
            currency=currency,
            required=parse_decimal(amount, "amount"),
            available=self._fresh_balance(buyer, currency),
        )

    def get_escrow_balance(self, escrow_address: str, currency: str) -> Decimal:
        return self._fresh_balance(escrow_address, currency)

    def escrow_account(self, lc_id: str) -> EscrowAccount:
        lc = self._lifecycle.load_lc(lc_id)
        if not lc.escrow_address:
            raise NotFoundError(f"LC {lc_id} has no escrow account yet.",
                                details={"lc_id": lc_id})
        return EscrowAccount(
            address=lc.escrow_address,
            lc_id=lc_id,
            currency=lc.terms.currency,
            balance=self._fresh_balance(lc.escrow_address, lc.terms.currency),
            locked=lc.status == LCStatus.DISPUTED,
        )

    def get_receipt(self, idempotency_key: str) -> SettlementReceipt:
        return SettlementReceipt.from_dict(self._store.get(ESCROW_OPS, idempotency_key))

    def receipts_for(self, lc_id: str, purpose: str | None = None) -> list[SettlementReceipt]:
        receipts = [SettlementReceipt.from_dict(d) for d in self._store.all(ESCROW_OPS)]
        return sorted(
            (r for r in receipts
             if r.lc_id == lc_id and (purpose is None or r.purpose == purpose)),
            key=lambda r: r.created_at,
        )

    # --- Funding ---

    def fund_escrow(
        self,
        lc_id: str,
        buyer: str,
        escrow_address: str,
        amount: Decimal | str,
        currency: str,
        auth_secret: str,
        idempotency_key: str | None = None,
    ) -> SettlementReceipt:
        """
        Move the LC amount from the buyer into escrow.

        Raises:
            AlreadyFundedError: a different key already funded this LC
            LedgerFailedError: ledger refused; LC stays SIGNED, retry same key
            LedgerPendingError: outcome unknown; call reconcile()
        """
        key = idempotency_key or f"fund:{lc_id}"
        amount = parse_decimal(amount, "amount")

        with self._locks.hold(lc_id):
            lc = self._lifecycle.load_lc(lc_id)
            existing = self._existing(key, lc_id, FUNDING, amount)
            if existing is not None and existing.succeeded:
                if lc.status == LCStatus.SIGNED:
                    self._lifecycle.advance(lc_id, LCStatus.FUNDED, ESCROW_AGENT,
                                            evidence={"settlement_key": key,
                                                      "escrow_address": existing.destination})
                return existing

            for other in self.receipts_for(lc_id, FUNDING):
                if other.idempotency_key == key:
                    continue
                if other.succeeded:
                    raise AlreadyFundedError(
                        f"LC {lc_id} is already funded under key {other.idempotency_key}.",
                        details={"lc_id": lc_id, "idempotency_key": other.idempotency_key,
                                 "tx_ref": other.tx_ref},
                    )
                if other.outcome == SettlementOutcome.PENDING:
                    raise LedgerPendingError(
                        f"Funding {other.idempotency_key} for LC {lc_id} is still pending; "
                        "reconcile it first.",
                        idempotency_key=other.idempotency_key,
                        tx_ref=other.tx_ref,
                    )

            if "buyer" not in lc.role_of(buyer):
                raise UnauthorizedError("Only the LC buyer may fund escrow.",
                                        details={"lc_id": lc_id, "actor": buyer})
            if lc.status != LCStatus.SIGNED:
                raise IllegalTransitionError(lc.status.value, LCStatus.FUNDED.value,
                                             "escrow is funded only once the LC is signed")
            if amount != lc.terms.amount or currency != lc.terms.currency:
                raise ValidationError(
                    f"Funding must be exactly {lc.terms.amount} {lc.terms.currency}.",
                    details={"expected_amount": str(lc.terms.amount),
                             "expected_currency": lc.terms.currency,
                             "amount": str(amount), "currency": currency},
                )
            if not escrow_address:
                raise ValidationError("An escrow address is required.")

            receipt = existing or SettlementReceipt(
                idempotency_key=key,
                lc_id=lc_id,
                purpose=FUNDING,
                source=lc.terms.buyer.account,
                destination=escrow_address,
                amount=amount,
                currency=currency,
                actor=buyer,
                created_at=to_iso(self._clock()),
            )
            result = self._execute(receipt, auth_secret)
            self._log(receipt, lc, LCStatus.FUNDED if result.succeeded else lc.status)

            if result.succeeded:
                self._lifecycle.advance(lc_id, LCStatus.FUNDED, ESCROW_AGENT,
                                        evidence={"settlement_key": key,
                                                  "escrow_address": receipt.destination})
            self._raise_unless_succeeded(receipt)
        return receipt

    # --- Release ---

    def release_funds(
        self,
        lc_id: str,
        escrow_address: str,
        recipient: str,
        amount: Decimal | str,
        currency: str,
        release_authorization: str | None,
        purpose: str = SETTLEMENT,
        idempotency_key: str | None = None,
        actor: str = ESCROW_AGENT,
        memo: str = "",
    ) -> SettlementReceipt:
        """
        Move funds out of escrow after a fresh balance query.

        A settlement that empties escrow completes the LC. Refund and
        dispute releases leave the LC transition to their callers.
        """
        if purpose not in RELEASE_PURPOSES:
            raise ValidationError(f"Unknown release purpose: {purpose}",
                                  details={"allowed": sorted(RELEASE_PURPOSES)})
        key = idempotency_key or f"{purpose}:{lc_id}"
        amount = parse_decimal(amount, "amount")

        with self._locks.hold(lc_id):
            lc = self._lifecycle.load_lc(lc_id)
            existing = self._existing(key, lc_id, purpose, amount)
            if existing is not None and existing.succeeded:
                return existing

            party, statuses = _PURPOSE_RULES[purpose]
            if lc.status not in statuses:
                raise IllegalTransitionError(
                    lc.status.value, f"{purpose} release",
                    f"{purpose} release is not allowed while {lc.status.value}",
                )
            if not lc.escrow_address or escrow_address != lc.escrow_address:
                raise ValidationError("Escrow address does not belong to this LC.",
                                      details={"lc_id": lc_id, "escrow_address": escrow_address})
            if currency != lc.terms.currency:
                raise ValidationError(f"LC currency is {lc.terms.currency}.",
                                      details={"currency": currency})
            expected_recipient = getattr(lc.terms, party).account
            if recipient != expected_recipient:
                raise ValidationError(
                    f"{purpose} must be paid to the {party} ({expected_recipient}).",
                    details={"recipient": recipient, "expected": expected_recipient},
                )
            if amount <= 0:
                raise ValidationError("Release amount must be positive.",
                                      details={"amount": str(amount)})

            balance = self._fresh_balance(escrow_address, currency)
            if amount > balance:
                raise ValidationError(
                    f"Release of {amount} exceeds escrow balance {balance}.",
                    code="INSUFFICIENT_ESCROW",
                    details={"amount": str(amount), "balance": str(balance)},
                )

            receipt = existing or SettlementReceipt(
                idempotency_key=key,
                lc_id=lc_id,
                purpose=purpose,
                source=escrow_address,
                destination=recipient,
                amount=amount,
                currency=currency,
                actor=actor,
                memo=memo,
                created_at=to_iso(self._clock()),
            )
            result = self._execute(receipt, release_authorization)

            completes = (result.succeeded and purpose == SETTLEMENT
                         and balance - amount == 0)
            self._log(receipt, lc, LCStatus.COMPLETED if completes else lc.status,
                      extra={"balance_before": str(balance)})
            if completes:
                self._lifecycle.advance(lc_id, LCStatus.COMPLETED, ESCROW_AGENT,
                                        evidence={"settlement_key": key})
            self._raise_unless_succeeded(receipt)
        return receipt

    def refund_buyer(
        self,
        lc_id: str,
        actor: str,
        release_authorization: str | None,
        reason: str,
        idempotency_key: str | None = None,
    ) -> SettlementReceipt:
        """
        Return the whole escrow balance to the buyer and cancel the LC.
        The seller (giving up its claim) or the escrow agent may do this.
        """
        if not reason:
            raise ValidationError("A refund reason is required.")
        with self._locks.hold(lc_id):
            lc = self._lifecycle.load_lc(lc_id)
            if actor != ESCROW_AGENT and "seller" not in lc.role_of(actor):
                raise UnauthorizedError("Only the seller or the escrow agent may refund the buyer.",
                                        details={"lc_id": lc_id, "actor": actor})
            key = idempotency_key or f"{REFUND}:{lc_id}"
            existing = self._store.find(ESCROW_OPS, key)
            if (existing is not None and lc.status == LCStatus.CANCELLED
                    and existing.get("outcome") == SettlementOutcome.SUCCEEDED.value):
                return SettlementReceipt.from_dict(existing)
            if lc.status not in POST_FUNDING:
                raise IllegalTransitionError(lc.status.value, LCStatus.CANCELLED.value,
                                             "refunds apply only to funded LCs")
            if existing is not None:
                amount = Decimal(existing["amount"])
            else:
                amount = self._fresh_balance(lc.escrow_address, lc.terms.currency)
            receipt = self.release_funds(
                lc_id, lc.escrow_address, lc.terms.buyer.account, amount,
                lc.terms.currency, release_authorization, purpose=REFUND,
                idempotency_key=key, actor=actor, memo=reason,
            )
            self._lifecycle.cancel(lc_id, ESCROW_AGENT, reason, refund_receipt=key)
        return receipt

    # --- Reconciliation ---

    def reconcile(self, idempotency_key: str) -> SettlementReceipt:
        """
        Settle a PENDING receipt from the ledger's own record of the
        transfer, then apply the LC transition the success implies.
        """
        receipt = self.get_receipt(idempotency_key)
        if receipt.outcome != SettlementOutcome.PENDING:
            return receipt

        with self._locks.hold(receipt.lc_id):
            receipt = self.get_receipt(idempotency_key)
            if receipt.outcome != SettlementOutcome.PENDING:
                return receipt

            status = self._call(self._ledger.transfer_status, idempotency_key)
            if status is None or status.status == SettlementOutcome.PENDING:
                raise LedgerPendingError(
                    f"Ledger has not settled {idempotency_key} yet.",
                    idempotency_key=idempotency_key,
                    tx_ref=status.tx_ref if status else receipt.tx_ref,
                )

            lc = self._lifecycle.load_lc(receipt.lc_id)
            receipt.outcome = status.status
            receipt.tx_ref = status.tx_ref or receipt.tx_ref
            receipt.message = status.message
            self._save(receipt)
            self._audit.log_event(
                operation="escrow_reconcile",
                subject_id=receipt.lc_id,
                actor=receipt.actor,
                idempotency_key=idempotency_key,
                amount=receipt.amount,
                currency=receipt.currency,
                outcome=receipt.outcome.value,
                tx_ref=receipt.tx_ref,
                extra={"purpose": receipt.purpose},
            )

            if receipt.succeeded:
                self._follow_up(receipt, lc)
        return receipt

    # --- Internals ---

    def _follow_up(self, receipt: SettlementReceipt, lc: LetterOfCredit) -> None:
        key = receipt.idempotency_key
        if receipt.purpose == FUNDING and lc.status == LCStatus.SIGNED:
            self._lifecycle.advance(lc.lc_id, LCStatus.FUNDED, ESCROW_AGENT,
                                    evidence={"settlement_key": key,
                                              "escrow_address": receipt.destination})
        elif receipt.purpose == SETTLEMENT and lc.status == LCStatus.DELIVERED:
            if self._fresh_balance(receipt.source, receipt.currency) == 0:
                self._lifecycle.advance(lc.lc_id, LCStatus.COMPLETED, ESCROW_AGENT,
                                        evidence={"settlement_key": key})
        elif receipt.purpose == REFUND and lc.status in POST_FUNDING:
            self._lifecycle.cancel(lc.lc_id, ESCROW_AGENT, receipt.memo or "refunded",
                                   refund_receipt=key)

    def _existing(self, key: str, lc_id: str, purpose: str,
                  amount: Decimal) -> SettlementReceipt | None:
        """Stored receipt for ``key``; refuses reuse and pending keys."""
        data = self._store.find(ESCROW_OPS, key)
        if data is None:
            return None
        receipt = SettlementReceipt.from_dict(data)
        if receipt.lc_id != lc_id or receipt.purpose != purpose or receipt.amount != amount:
            raise ValidationError(
                f"Idempotency key {key} was already used for a different operation.",
                details={"idempotency_key": key, "lc_id": receipt.lc_id,
                         "purpose": receipt.purpose, "amount": str(receipt.amount)},
            )
        if receipt.outcome == SettlementOutcome.PENDING:
            raise LedgerPendingError(
                f"{purpose} {key} is pending on the ledger; reconcile before retrying.",
                idempotency_key=key,
                tx_ref=receipt.tx_ref,
            )
        return receipt

    def _execute(self, receipt: SettlementReceipt,
                 authorization: str | None) -> TransferResult:
        # Write-ahead: the key is PENDING before the ledger ever sees it
        receipt.outcome = SettlementOutcome.PENDING
        receipt.message = ""
        receipt.attempts += 1
        self._save(receipt)

        result = self._call(
            self._ledger.transfer,
            receipt.source,
            receipt.destination,
            receipt.amount,
            receipt.currency,
            receipt.idempotency_key,
            authorization,
            default=TransferResult(SettlementOutcome.PENDING),
        )
        receipt.outcome = result.status
        receipt.tx_ref = result.tx_ref or receipt.tx_ref
        receipt.message = result.message
        self._save(receipt)
        return result

    def _call(self, fn: Callable[..., Any], *args: Any, default: Any = None) -> Any:
        """
        Run a ledger call with the policy timeout. Timeouts and ledger
        errors on a transfer become PENDING (``default``).
        """
        timeout = self.policy.ledger_timeout_seconds
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            if default is None:
                raise LedgerPendingError(
                    f"Ledger did not answer within {timeout:g}s.",
                    idempotency_key=str(args[0]) if args else "",
                )
            default.message = f"ledger did not answer within {timeout:g}s"
            return default
        except Exception as e:
            if default is None:
                raise
            default.message = f"ledger error: {type(e).__name__}: {e}"
            return default

    def _fresh_balance(self, account: str, currency: str) -> Decimal:
        timeout = self.policy.ledger_timeout_seconds
        future = self._executor.submit(self._ledger.query_balance, account, currency)
        try:
            return Decimal(str(future.result(timeout=timeout)))
        except FuturesTimeout:
            raise LedgerFailedError(
                f"Balance query for {account} timed out after {timeout:g}s.",
                details={"account": account, "currency": currency},
            )
        except LCEngineError:
            raise
        except Exception as e:
            raise LedgerFailedError(
                f"Balance query for {account} failed: {type(e).__name__}: {e}",
                details={"account": account, "currency": currency},
            ) from e

    def _raise_unless_succeeded(self, receipt: SettlementReceipt) -> None:
        if receipt.outcome == SettlementOutcome.FAILED:
            raise LedgerFailedError(
                f"Ledger rejected {receipt.purpose} {receipt.idempotency_key}: {receipt.message}",
                idempotency_key=receipt.idempotency_key,
                details={"outcome": receipt.outcome.value, "lc_id": receipt.lc_id},
            )
        if receipt.outcome == SettlementOutcome.PENDING:
            raise LedgerPendingError(
                f"{receipt.purpose} {receipt.idempotency_key} is pending: "
                f"{receipt.message or 'outcome unknown'}. Reconcile before retrying.",
                idempotency_key=receipt.idempotency_key,
                tx_ref=receipt.tx_ref,
                details={"outcome": receipt.outcome.value, "lc_id": receipt.lc_id},
            )

    def _log(self, receipt: SettlementReceipt, lc: LetterOfCredit, after: LCStatus,
             extra: dict[str, Any] | None = None) -> None:
        self._audit.log_event(
            operation="escrow_fund" if receipt.purpose == FUNDING else "escrow_release",
            subject_id=lc.lc_id,
            actor=receipt.actor,
            idempotency_key=receipt.idempotency_key,
            before_status=lc.status.value,
            after_status=after.value,
            amount=receipt.amount,
            currency=receipt.currency,
            outcome=receipt.outcome.value,
            tx_ref=receipt.tx_ref,
            error={"message": receipt.message} if not receipt.succeeded else None,
            extra={"purpose": receipt.purpose, "source": receipt.source,
                   "destination": receipt.destination, "attempt": receipt.attempts,
                   **(extra or {})},
        )

    def _save(self, receipt: SettlementReceipt) -> None:
        receipt.updated_at = to_iso(self._clock())
        record = self._store.put(ESCROW_OPS, receipt.idempotency_key, receipt.to_dict(),
                                 expected_version=receipt.version)
        receipt.version = record["version"]
