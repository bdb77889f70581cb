"""
Trade Finance Desk
===================
The upward surface of the workflow. Wires the invitation manager, LC
state machine, escrow coordinator, dispute manager and archive service
to one store, one message log and one ledger, and exposes every named
operation as a call returning OperationResult:

  OperationResult(success=True,  data=<payload>)
  OperationResult(success=False, error={code, type, message, retryable, details})

Only LCEngineError is converted. Anything else is a bug and propagates.

When an operation leaves an LC terminal (completed / cancelled), the
desk seals it: the negotiation window is archived and an archived
TradeRecord is written to the trade history.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from lc_engine.audit_logger import AuditLogger
from lc_engine.dispute_resolution import DisputeManager
from lc_engine.errors import LCEngineError, NotFoundError
from lc_engine.escrow_engine import EscrowCoordinator
from lc_engine.invitations import InvitationManager, InvitationParty, PreliminaryInfo
from lc_engine.lc_lifecycle import LCLifecycleManager, LetterOfCredit
from lc_engine.ledger import JsonFileLedger, LedgerBackend
from lc_engine.messaging import JsonMessageLog, MessagingLayer
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import LockRegistry, RecordStore, _VersionedStore
from lc_engine.timeutils import Clock, utc_now
from lc_engine.trade_archive import (
    ArchiveService,
    ChatArchive,
    TradeHistory,
    TradeRecord,
    verify_archive_integrity,
)


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    error: dict[str, Any] | None = None

    @property
    def code(self) -> str | None:
        return self.error["code"] if self.error else None


def _operation(method: Callable[..., Any]) -> Callable[..., OperationResult]:
    @functools.wraps(method)
    def wrapper(self: "TradeFinanceDesk", *args: Any, **kwargs: Any) -> OperationResult:
        try:
            return OperationResult(success=True, data=method(self, *args, **kwargs))
        except LCEngineError as e:
            return OperationResult(success=False, error=e.to_dict())
    return wrapper


# ---------------------------------------------------------------------------
# Desk
# ---------------------------------------------------------------------------

class TradeFinanceDesk:
    """One entry point for the whole LC workflow."""

    def __init__(
        self,
        store: _VersionedStore,
        messaging: MessagingLayer,
        ledger: LedgerBackend,
        *,
        policy: PolicyEngine | None = None,
        audit: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.policy = policy or PolicyEngine()
        clock = clock or utc_now
        self.audit = audit or AuditLogger(clock=clock, enabled=self.policy.should_audit())
        self.store = store
        self.messaging = messaging
        self.ledger = ledger
        locks = LockRegistry(self.policy.lock_timeout_seconds)

        shared = {"policy": self.policy, "audit": self.audit, "clock": clock}
        self.invitations = InvitationManager(store, messaging, locks=locks, **shared)
        self.lifecycle = LCLifecycleManager(store, messaging, locks=locks, **shared)
        self.escrow = EscrowCoordinator(store, ledger, self.lifecycle, **shared)
        self.disputes = DisputeManager(store, self.lifecycle, self.escrow, **shared)
        self.archive = ArchiveService(messaging, policy=self.policy, clock=clock)
        self.history = TradeHistory(store)

    @classmethod
    def bootstrap(cls, home: Path, policy_path: Path | None = None) -> "TradeFinanceDesk":
        """File-backed desk rooted at ``home`` (used by the CLI)."""
        home.mkdir(parents=True, exist_ok=True)
        policy = PolicyEngine(policy_path)
        return cls(
            RecordStore(home / "records"),
            JsonMessageLog(home / "messages.json"),
            JsonFileLedger(home / "ledger.json"),
            policy=policy,
            audit=AuditLogger(home / "audit", enabled=policy.should_audit()),
        )

    def close(self) -> None:
        self.escrow.close()

    # --- Invitations ---

    @_operation
    def send_invitation(
        self,
        initiator: InvitationParty,
        invitee: InvitationParty,
        lc_title: str,
        message: str = "",
        preliminary_info: PreliminaryInfo | None = None,
    ):
        return self.invitations.send_invitation(initiator, invitee, lc_title,
                                                message, preliminary_info)

    @_operation
    def respond_to_invitation(self, invitation_id: str, responder: str, accepted: bool,
                              message: str = ""):
        return self.invitations.respond_to_invitation(invitation_id, responder, accepted, message)

    @_operation
    def cancel_invitation(self, invitation_id: str, requestor: str):
        return self.invitations.cancel_invitation(invitation_id, requestor)

    @_operation
    def list_invitations(self, user_id: str):
        return self.invitations.list_invitations(user_id)

    @_operation
    def get_invitation(self, invitation_id: str):
        return self.invitations.get_invitation(invitation_id)

    @_operation
    def invitation_stats(self, user_id: str):
        return self.invitations.invitation_stats(user_id)

    # --- Letters of credit ---

    @_operation
    def create_lc(self, terms: Any, authorization_id: str, actor: str):
        return self.lifecycle.create_lc(terms, authorization_id, actor)

    @_operation
    def advance(self, lc_id: str, target: str, actor: str,
                evidence: dict[str, Any] | None = None,
                expected_version: int | None = None, reason: str = ""):
        return self.lifecycle.advance(lc_id, target, actor, evidence, expected_version, reason)

    @_operation
    def cancel_lc(self, lc_id: str, actor: str, reason: str, refund_receipt: str | None = None):
        lc = self.lifecycle.cancel(lc_id, actor, reason, refund_receipt)
        self._seal_if_terminal(lc.lc_id)
        return lc

    @_operation
    def sign_lc(self, lc_id: str, actor: str):
        return self.lifecycle.sign(lc_id, actor)

    @_operation
    def update_terms(self, lc_id: str, actor: str, updates: dict[str, Any]):
        return self.lifecycle.update_terms(lc_id, actor, updates)

    @_operation
    def upload_document(self, lc_id: str, actor: str, document_type: str, name: str,
                        content: bytes | str):
        return self.lifecycle.upload_document(lc_id, actor, document_type, name, content)

    @_operation
    def verify_document(self, lc_id: str, actor: str, document_id: str,
                        approved: bool = True, reason: str = ""):
        return self.lifecycle.verify_document(lc_id, actor, document_id, approved, reason)

    @_operation
    def get_lc(self, lc_id: str):
        return self.lifecycle.load_lc(lc_id)

    @_operation
    def list_lcs(self, **filters: Any):
        return self.lifecycle.list_lcs(**filters)

    @_operation
    def status_history(self, lc_id: str):
        return self.lifecycle.status_history(lc_id)

    # --- Escrow ---

    @_operation
    def check_funding_capacity(self, buyer: str, amount: Any, currency: str):
        return self.escrow.check_funding_capacity(buyer, amount, currency)

    @_operation
    def fund_escrow(self, lc_id: str, buyer: str, escrow_address: str, amount: Any,
                    currency: str, auth_secret: str, idempotency_key: str | None = None):
        return self.escrow.fund_escrow(lc_id, buyer, escrow_address, amount, currency,
                                       auth_secret, idempotency_key)

    @_operation
    def release_funds(self, lc_id: str, escrow_address: str, recipient: str, amount: Any,
                      currency: str, release_authorization: str | None,
                      purpose: str = "settlement", idempotency_key: str | None = None):
        receipt = self.escrow.release_funds(lc_id, escrow_address, recipient, amount, currency,
                                            release_authorization, purpose=purpose,
                                            idempotency_key=idempotency_key)
        self._seal_if_terminal(lc_id)
        return receipt

    @_operation
    def refund_buyer(self, lc_id: str, actor: str, release_authorization: str | None,
                     reason: str):
        receipt = self.escrow.refund_buyer(lc_id, actor, release_authorization, reason)
        self._seal_if_terminal(lc_id)
        return receipt

    @_operation
    def get_escrow_balance(self, escrow_address: str, currency: str):
        return self.escrow.get_escrow_balance(escrow_address, currency)

    @_operation
    def escrow_account(self, lc_id: str):
        return self.escrow.escrow_account(lc_id)

    @_operation
    def reconcile(self, idempotency_key: str):
        receipt = self.escrow.reconcile(idempotency_key)
        self._seal_if_terminal(receipt.lc_id)
        return receipt

    # --- Disputes ---

    @_operation
    def raise_dispute(self, lc_id: str, raised_by: str, reason: str,
                      evidence: list[dict[str, Any]] | None = None):
        return self.disputes.raise_dispute(lc_id, raised_by, reason, evidence)

    @_operation
    def begin_review(self, dispute_id: str, arbiter: str):
        return self.disputes.begin_review(dispute_id, arbiter)

    @_operation
    def submit_evidence(self, dispute_id: str, submitter: str, evidence: list[dict[str, Any]]):
        return self.disputes.submit_evidence(dispute_id, submitter, evidence)

    @_operation
    def resolve_dispute(self, dispute_id: str, arbiter: str, decision: str,
                        buyer_amount: Any, seller_amount: Any, reasoning: str,
                        release_authorization: str | None = None):
        dispute = self.disputes.resolve(dispute_id, arbiter, decision, buyer_amount,
                                        seller_amount, reasoning, release_authorization)
        self._seal_if_terminal(dispute.lc_id)
        return dispute

    @_operation
    def appeal(self, dispute_id: str, appellant: str, reason: str = ""):
        return self.disputes.appeal(dispute_id, appellant, reason)

    @_operation
    def get_dispute(self, dispute_id: str):
        return self.disputes.get_dispute(dispute_id)

    # --- Archives and trades ---

    @_operation
    def archive_conversation(self, room_id: str, window_start: int, window_end: int):
        return self.archive.archive_conversation(room_id, window_start, window_end)

    @_operation
    def link_trade_to_archive(self, trade: TradeRecord, archive: ChatArchive):
        return self.history.save(self.archive.link_trade_to_archive(trade, archive))

    @_operation
    def verify_archive_integrity(self, archive: ChatArchive):
        return verify_archive_integrity(archive)

    @_operation
    def export_archive(self, archive: ChatArchive, fmt: str = "json"):
        return self.archive.export_archive(archive, fmt)

    @_operation
    def seal_lc(self, lc_id: str):
        return self._seal(self.lifecycle.load_lc(lc_id))

    @_operation
    def get_trade(self, trade_id: str):
        return self.history.get(trade_id)

    @_operation
    def query_trades(self, **filters: Any):
        return self.history.query(**filters)

    @_operation
    def trade_statistics(self):
        return self.history.statistics()

    # --- Internals ---

    def _seal(self, lc: LetterOfCredit) -> TradeRecord:
        try:
            return self.history.get(f"trade_{lc.lc_id}")
        except NotFoundError:
            return self.archive.seal_lc(lc, self.history)

    def _seal_if_terminal(self, lc_id: str) -> None:
        lc = self.lifecycle.load_lc(lc_id)
        if not lc.is_terminal:
            return
        # Funds already moved; a failed seal is audited and can be redone with seal_lc
        try:
            self._seal(lc)
        except LCEngineError as e:
            self.audit.log_event(
                operation="seal_failed",
                subject_id=lc_id,
                error=e.to_dict(),
            )
