"""
Dispute Resolution
===================
Lets either LC party freeze a Letter of Credit, collect evidence, and
have a neutral arbiter issue a binding split of the escrowed funds:

  OPEN → UNDER_REVIEW → RESOLVED → APPEALED → UNDER_REVIEW → RESOLVED
                                   (at most max_appeals times)

Raising a dispute moves the LC to DISPUTED, which freezes every normal
transition. Only a resolution moves it on: COMPLETED when the seller
receives funds, CANCELLED on a full refund to the buyer.

A resolution must conserve funds: buyer_amount + seller_amount equals
the escrow balance queried at resolution time (plus any leg of the same
round that already settled on an earlier, partially failed attempt).
An imbalanced split is refused before anything moves.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from lc_engine._icons import ICON_CHECK, ICON_LOCK, ICON_WARN
from lc_engine.audit_logger import AuditLogger
from lc_engine.errors import (
    IllegalTransitionError,
    ImbalancedResolutionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from lc_engine.escrow_engine import DISPUTE_BUYER, DISPUTE_SELLER, EscrowCoordinator
from lc_engine.lc_lifecycle import (
    DISPUTABLE,
    DISPUTES,
    ESCROW_OPS,
    LCLifecycleManager,
    LCStatus,
    LetterOfCredit,
    parse_decimal,
)
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import _VersionedStore
from lc_engine.timeutils import Clock, to_iso, utc_now
from lc_engine.trade_archive import ChatArchive, verify_archive_integrity


# ---------------------------------------------------------------------------
# State Model
# ---------------------------------------------------------------------------

class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    APPEALED = "appealed"


class Decision(str, Enum):
    RELEASE_TO_SELLER = "release_to_seller"
    REFUND_TO_BUYER = "refund_to_buyer"
    SPLIT = "split"


RESOLVABLE = {DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW, DisputeStatus.APPEALED}
ACCEPTS_EVIDENCE = {DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class EvidenceItem:
    evidence_id: str
    submitted_by: str
    submitted_at: str
    description: str
    kind: str = "statement"
    content_hash: str | None = None
    archive: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at,
            "description": self.description,
            "kind": self.kind,
            "content_hash": self.content_hash,
            "archive": self.archive,
        }


@dataclass
class Resolution:
    decision: Decision
    buyer_amount: Decimal
    seller_amount: Decimal
    reasoning: str
    resolved_at: str
    resolved_by: str
    review_round: int
    escrow_balance: Decimal
    tx_refs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "buyer_amount": str(self.buyer_amount),
            "seller_amount": str(self.seller_amount),
            "reasoning": self.reasoning,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
            "review_round": self.review_round,
            "escrow_balance": str(self.escrow_balance),
            "tx_refs": list(self.tx_refs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resolution":
        data = dict(data)
        data["decision"] = Decision(data["decision"])
        for key in ("buyer_amount", "seller_amount", "escrow_balance"):
            data[key] = Decimal(data[key])
        return cls(**data)


@dataclass
class DisputeCase:
    dispute_id: str
    lc_id: str
    raised_by: str
    raised_at: str
    reason: str
    status_before_dispute: str
    status: DisputeStatus = DisputeStatus.OPEN
    evidence: list[EvidenceItem] = field(default_factory=list)
    arbiter: str | None = None
    resolution: Resolution | None = None
    prior_resolutions: list[Resolution] = field(default_factory=list)
    review_round: int = 1
    appeals: int = 0
    appealed_by: str | None = None
    updated_at: str = ""
    version: int = 0

    def summary(self) -> str:
        icons = {"open": ICON_WARN, "under_review": ICON_LOCK,
                 "resolved": ICON_CHECK, "appealed": ICON_WARN}
        lines = [
            f"DISPUTE -- {self.dispute_id}",
            f"Status:      {icons.get(self.status.value, '?')} {self.status.value}",
            f"LC:          {self.lc_id} (was {self.status_before_dispute})",
            f"Raised by:   {self.raised_by} at {self.raised_at}",
            f"Reason:      {self.reason}",
            f"Arbiter:     {self.arbiter or 'unassigned'}",
            f"Evidence:    {len(self.evidence)} item(s)",
            f"Round:       {self.review_round} (appeals used: {self.appeals})",
        ]
        if self.resolution:
            r = self.resolution
            lines += [
                "",
                "RESOLUTION:",
                f"  Decision:  {r.decision.value}",
                f"  Buyer:     {r.buyer_amount:,}",
                f"  Seller:    {r.seller_amount:,}",
                f"  Escrow:    {r.escrow_balance:,}",
                f"  By:        {r.resolved_by} at {r.resolved_at}",
                f"  Reasoning: {r.reasoning}",
            ]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispute_id": self.dispute_id,
            "lc_id": self.lc_id,
            "raised_by": self.raised_by,
            "raised_at": self.raised_at,
            "reason": self.reason,
            "status_before_dispute": self.status_before_dispute,
            "status": self.status.value,
            "evidence": [e.to_dict() for e in self.evidence],
            "arbiter": self.arbiter,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "prior_resolutions": [r.to_dict() for r in self.prior_resolutions],
            "review_round": self.review_round,
            "appeals": self.appeals,
            "appealed_by": self.appealed_by,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DisputeCase":
        data = dict(data)
        data["status"] = DisputeStatus(data["status"])
        data["evidence"] = [EvidenceItem(**e) for e in data.get("evidence", [])]
        data["resolution"] = (Resolution.from_dict(data["resolution"])
                              if data.get("resolution") else None)
        data["prior_resolutions"] = [Resolution.from_dict(r)
                                     for r in data.get("prior_resolutions", [])]
        return cls(**data)


# ---------------------------------------------------------------------------
# Dispute Manager
# ---------------------------------------------------------------------------

class DisputeManager:
    """
    Runs the dispute sub-process on top of the LC state machine and the
    escrow coordinator.
    """

    def __init__(
        self,
        store: _VersionedStore,
        lifecycle: LCLifecycleManager,
        escrow: EscrowCoordinator,
        *,
        policy: PolicyEngine | None = None,
        audit: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._escrow = escrow
        self.policy = policy or lifecycle.policy
        self._clock = clock or utc_now
        self._audit = audit or AuditLogger(clock=self._clock,
                                           enabled=self.policy.should_audit())
        self._locks = lifecycle.locks

    # --- Operations ---

    def raise_dispute(
        self,
        lc_id: str,
        raised_by: str,
        reason: str,
        evidence: list[dict[str, Any]] | None = None,
    ) -> DisputeCase:
        """Open a dispute and freeze the LC."""
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required.", details={"field": "reason"})

        with self._locks.hold(lc_id):
            lc = self._lifecycle.load_lc(lc_id)
            if not lc.role_of(raised_by) & {"buyer", "seller"}:
                raise UnauthorizedError("Only the buyer or seller may raise a dispute.",
                                        details={"lc_id": lc_id, "actor": raised_by})
            if lc.status not in DISPUTABLE:
                raise IllegalTransitionError(
                    lc.status.value, LCStatus.DISPUTED.value,
                    "disputes may be raised from signed through delivered",
                )
            if lc.status == LCStatus.SIGNED:
                self._lifecycle.require_no_pending_funding(lc)
            items = [self._evidence_item(raised_by, raw) for raw in evidence or []]

            now = to_iso(self._clock())
            dispute = DisputeCase(
                dispute_id=f"dsp_{uuid.uuid4().hex[:16]}",
                lc_id=lc_id,
                raised_by=raised_by,
                raised_at=now,
                reason=reason.strip(),
                status_before_dispute=lc.status.value,
                evidence=items,
                updated_at=now,
            )
            self._save(dispute)
            self._lifecycle.advance(lc_id, LCStatus.DISPUTED, raised_by,
                                    evidence={"dispute_id": dispute.dispute_id},
                                    reason=dispute.reason)

        self._audit.log_event(
            operation="dispute_raised",
            subject_id=dispute.dispute_id,
            actor=raised_by,
            before_status=dispute.status_before_dispute,
            after_status=LCStatus.DISPUTED.value,
            extra={"lc_id": lc_id, "reason": dispute.reason, "evidence": len(items)},
        )
        return dispute

    def begin_review(self, dispute_id: str, arbiter: str) -> DisputeCase:
        """Assign a neutral arbiter; OPEN or APPEALED -> UNDER_REVIEW."""
        dispute = self.get_dispute(dispute_id)
        with self._locks.hold(dispute.lc_id):
            dispute = self.get_dispute(dispute_id)
            if dispute.status not in (DisputeStatus.OPEN, DisputeStatus.APPEALED):
                raise IllegalTransitionError(dispute.status.value,
                                             DisputeStatus.UNDER_REVIEW.value)
            lc = self._lifecycle.load_lc(dispute.lc_id)
            self._require_arbiter(dispute, lc, arbiter)
            before = dispute.status
            dispute.arbiter = arbiter
            dispute.status = DisputeStatus.UNDER_REVIEW
            self._save(dispute)

        self._audit.log_event(
            operation="dispute_review_started",
            subject_id=dispute_id,
            actor=arbiter,
            before_status=before.value,
            after_status=dispute.status.value,
            extra={"review_round": dispute.review_round},
        )
        return dispute

    def submit_evidence(
        self,
        dispute_id: str,
        submitter: str,
        evidence: list[dict[str, Any]],
    ) -> DisputeCase:
        """
        Append evidence. Chat archives are verified before they are
        accepted; a tampered archive is a ValidationError.
        """
        if not evidence:
            raise ValidationError("No evidence supplied.")
        dispute = self.get_dispute(dispute_id)
        with self._locks.hold(dispute.lc_id):
            dispute = self.get_dispute(dispute_id)
            if dispute.status not in ACCEPTS_EVIDENCE:
                raise ValidationError(
                    f"Evidence is closed for a dispute that is {dispute.status.value}.",
                    code="EVIDENCE_CLOSED",
                    details={"dispute_id": dispute_id, "status": dispute.status.value},
                )
            lc = self._lifecycle.load_lc(dispute.lc_id)
            if not lc.role_of(submitter) & {"buyer", "seller"} and submitter != dispute.arbiter:
                raise UnauthorizedError("Only the parties or the arbiter may submit evidence.",
                                        details={"dispute_id": dispute_id, "actor": submitter})
            items = [self._evidence_item(submitter, raw) for raw in evidence]
            dispute.evidence.extend(items)
            self._save(dispute)

        self._audit.log_event(
            operation="dispute_evidence",
            subject_id=dispute_id,
            actor=submitter,
            extra={"evidence_ids": [i.evidence_id for i in items]},
        )
        return dispute

    def resolve(
        self,
        dispute_id: str,
        arbiter: str,
        decision: Decision | str,
        buyer_amount: Decimal | str | int,
        seller_amount: Decimal | str | int,
        reasoning: str,
        release_authorization: str | None = None,
    ) -> DisputeCase:
        """
        Issue a binding resolution and release the escrowed funds.

        Raises:
            ImbalancedResolutionError: amounts do not sum to escrow;
                nothing moves and the dispute keeps its status
            LedgerFailedError / LedgerPendingError: a release leg did not
                settle; the dispute stays unresolved and resolve() may be
                repeated with the same amounts (settled legs replay)
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}",
                                  details={"allowed": [d.value for d in Decision]})
        buyer_amount = _amount(buyer_amount, "buyer_amount")
        seller_amount = _amount(seller_amount, "seller_amount")
        if not reasoning or not reasoning.strip():
            raise ValidationError("Resolution reasoning is required.")
        _check_decision(decision, buyer_amount, seller_amount)

        dispute = self.get_dispute(dispute_id)
        with self._locks.hold(dispute.lc_id):
            dispute = self.get_dispute(dispute_id)
            lc = self._lifecycle.load_lc(dispute.lc_id)

            if dispute.status == DisputeStatus.RESOLVED:
                if lc.status == LCStatus.DISPUTED and arbiter == dispute.arbiter:
                    # Resolution is recorded; only the LC transition is outstanding
                    self._close_lc(dispute, lc)
                    return dispute
                raise IllegalTransitionError(
                    dispute.status.value, DisputeStatus.RESOLVED.value,
                    f"round {dispute.review_round} already has a resolution",
                )
            if dispute.status not in RESOLVABLE:
                raise IllegalTransitionError(dispute.status.value, DisputeStatus.RESOLVED.value)
            self._require_arbiter(dispute, lc, arbiter)

            settled = self._settled_legs(dispute)
            balance = Decimal("0")
            if lc.escrow_address:
                balance = self._escrow.get_escrow_balance(lc.escrow_address, lc.terms.currency)
            escrow_total = balance + sum(settled.values(), Decimal("0"))

            if buyer_amount + seller_amount != escrow_total:
                self._audit.log_event(
                    operation="dispute_resolution_rejected",
                    subject_id=dispute_id,
                    actor=arbiter,
                    amount=buyer_amount + seller_amount,
                    currency=lc.terms.currency,
                    error={"code": ImbalancedResolutionError.code},
                    extra={"buyer_amount": str(buyer_amount),
                           "seller_amount": str(seller_amount),
                           "escrow_balance": str(escrow_total)},
                )
                raise ImbalancedResolutionError(
                    f"Resolution {buyer_amount} + {seller_amount} does not equal "
                    f"escrow balance {escrow_total} {lc.terms.currency}.",
                    details={"buyer_amount": str(buyer_amount),
                             "seller_amount": str(seller_amount),
                             "escrow_balance": str(escrow_total),
                             "dispute_id": dispute_id},
                )
            for side, amount in (("buyer", buyer_amount), ("seller", seller_amount)):
                if side in settled and settled[side] != amount:
                    raise ValidationError(
                        f"The {side} leg already settled {settled[side]} this round.",
                        details={"side": side, "settled": str(settled[side])},
                    )

            tx_refs = []
            for side, amount, purpose in (("buyer", buyer_amount, DISPUTE_BUYER),
                                          ("seller", seller_amount, DISPUTE_SELLER)):
                if amount == 0:
                    continue
                receipt = self._escrow.release_funds(
                    lc.lc_id,
                    lc.escrow_address,
                    getattr(lc.terms, side).account,
                    amount,
                    lc.terms.currency,
                    release_authorization,
                    purpose=purpose,
                    idempotency_key=self._leg_key(dispute, side),
                    actor=arbiter,
                    memo=f"dispute {dispute_id} round {dispute.review_round}",
                )
                if receipt.tx_ref:
                    tx_refs.append(receipt.tx_ref)

            before = dispute.status
            dispute.arbiter = arbiter
            dispute.resolution = Resolution(
                decision=decision,
                buyer_amount=buyer_amount,
                seller_amount=seller_amount,
                reasoning=reasoning.strip(),
                resolved_at=to_iso(self._clock()),
                resolved_by=arbiter,
                review_round=dispute.review_round,
                escrow_balance=escrow_total,
                tx_refs=tx_refs,
            )
            dispute.status = DisputeStatus.RESOLVED
            self._save(dispute)

            self._audit.log_event(
                operation="dispute_resolved",
                subject_id=dispute_id,
                actor=arbiter,
                before_status=before.value,
                after_status=dispute.status.value,
                amount=escrow_total,
                currency=lc.terms.currency,
                outcome="SUCCEEDED",
                tx_ref=tx_refs[-1] if tx_refs else None,
                extra={"lc_id": lc.lc_id, "decision": decision.value,
                       "buyer_amount": str(buyer_amount),
                       "seller_amount": str(seller_amount),
                       "review_round": dispute.review_round},
            )
            self._close_lc(dispute, lc)
        return dispute

    def appeal(self, dispute_id: str, appellant: str, reason: str = "") -> DisputeCase:
        """Reopen a resolved dispute for another review round."""
        dispute = self.get_dispute(dispute_id)
        with self._locks.hold(dispute.lc_id):
            dispute = self.get_dispute(dispute_id)
            lc = self._lifecycle.load_lc(dispute.lc_id)
            if not lc.role_of(appellant) & {"buyer", "seller"}:
                raise UnauthorizedError("Only the buyer or seller may appeal.",
                                        details={"dispute_id": dispute_id, "actor": appellant})
            if dispute.status != DisputeStatus.RESOLVED:
                raise IllegalTransitionError(dispute.status.value, DisputeStatus.APPEALED.value,
                                             "only a resolved dispute can be appealed")
            if dispute.appeals >= self.policy.max_appeals:
                raise IllegalTransitionError(
                    dispute.status.value, DisputeStatus.APPEALED.value,
                    f"appeal limit of {self.policy.max_appeals} reached",
                )
            dispute.prior_resolutions.append(dispute.resolution)
            dispute.resolution = None
            dispute.arbiter = None
            dispute.appeals += 1
            dispute.appealed_by = appellant
            dispute.review_round += 1
            dispute.status = DisputeStatus.APPEALED
            self._save(dispute)

        self._audit.log_event(
            operation="dispute_appealed",
            subject_id=dispute_id,
            actor=appellant,
            before_status=DisputeStatus.RESOLVED.value,
            after_status=DisputeStatus.APPEALED.value,
            extra={"reason": reason or None, "review_round": dispute.review_round},
        )
        return dispute

    # --- Queries ---

    def get_dispute(self, dispute_id: str) -> DisputeCase:
        data = self._store.find(DISPUTES, dispute_id)
        if data is None:
            raise NotFoundError(f"Dispute not found: {dispute_id}",
                                details={"dispute_id": dispute_id})
        return DisputeCase.from_dict(data)

    def list_disputes(self, lc_id: str | None = None) -> list[DisputeCase]:
        disputes = [DisputeCase.from_dict(d) for d in self._store.all(DISPUTES)]
        if lc_id:
            disputes = [d for d in disputes if d.lc_id == lc_id]
        return sorted(disputes, key=lambda d: d.raised_at)

    # --- Internals ---

    def _close_lc(self, dispute: DisputeCase, lc: LetterOfCredit) -> None:
        if lc.status != LCStatus.DISPUTED:
            return
        target = (LCStatus.COMPLETED if dispute.resolution.seller_amount > 0
                  else LCStatus.CANCELLED)
        self._lifecycle.advance(lc.lc_id, target, dispute.arbiter,
                                evidence={"dispute_id": dispute.dispute_id},
                                reason=dispute.resolution.reasoning)

    def _require_arbiter(self, dispute: DisputeCase, lc: LetterOfCredit, arbiter: str) -> None:
        if lc.role_of(arbiter):
            raise UnauthorizedError("An LC party cannot arbitrate its own dispute.",
                                    details={"dispute_id": dispute.dispute_id, "actor": arbiter})
        if dispute.arbiter and dispute.arbiter != arbiter:
            raise UnauthorizedError(
                f"Dispute {dispute.dispute_id} is assigned to {dispute.arbiter}.",
                details={"dispute_id": dispute.dispute_id, "actor": arbiter},
            )

    @staticmethod
    def _leg_key(dispute: DisputeCase, side: str) -> str:
        return f"dispute:{dispute.dispute_id}:{dispute.review_round}:{side}"

    def _settled_legs(self, dispute: DisputeCase) -> dict[str, Decimal]:
        settled = {}
        for side in ("buyer", "seller"):
            receipt = self._store.find(ESCROW_OPS, self._leg_key(dispute, side))
            if receipt and receipt.get("outcome") == "SUCCEEDED":
                settled[side] = Decimal(receipt["amount"])
        return settled

    def _evidence_item(self, submitter: str, raw: dict[str, Any]) -> EvidenceItem:
        description = str(raw.get("description", "")).strip()
        archive = raw.get("archive")
        content = raw.get("content")
        if not description and archive is None and content is None:
            raise ValidationError("Evidence needs a description, content or an archive.")

        kind = raw.get("kind", "statement")
        archive_dict = None
        if archive is not None:
            if isinstance(archive, dict):
                archive = ChatArchive.from_dict(archive)
            if not verify_archive_integrity(archive):
                raise ValidationError(
                    f"Chat archive for {archive.room_id} failed its integrity check.",
                    code="ARCHIVE_TAMPERED",
                    details={"room_id": archive.room_id, "archive_hash": archive.archive_hash},
                )
            kind = "chat_archive"
            archive_dict = archive.to_dict()

        content_hash = None
        if content is not None:
            if isinstance(content, str):
                content = content.encode("utf-8")
            content_hash = hashlib.sha256(content).hexdigest()
            if kind == "statement":
                kind = "document"

        return EvidenceItem(
            evidence_id=f"evd_{uuid.uuid4().hex[:12]}",
            submitted_by=submitter,
            submitted_at=to_iso(self._clock()),
            description=description,
            kind=kind,
            content_hash=content_hash,
            archive=archive_dict,
        )

    def _save(self, dispute: DisputeCase) -> None:
        dispute.updated_at = to_iso(self._clock())
        record = self._store.put(DISPUTES, dispute.dispute_id, dispute.to_dict(),
                                 expected_version=dispute.version)
        dispute.version = record["version"]


def _amount(value: Any, field_name: str) -> Decimal:
    amount = parse_decimal(value, field_name)
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative.", details={"field": field_name})
    return amount


def _check_decision(decision: Decision, buyer_amount: Decimal, seller_amount: Decimal) -> None:
    if decision == Decision.RELEASE_TO_SELLER and buyer_amount != 0:
        raise ValidationError("release_to_seller gives the buyer nothing.",
                              details={"buyer_amount": str(buyer_amount)})
    if decision == Decision.REFUND_TO_BUYER and seller_amount != 0:
        raise ValidationError("refund_to_buyer gives the seller nothing.",
                              details={"seller_amount": str(seller_amount)})
    if decision == Decision.SPLIT and (buyer_amount <= 0 or seller_amount <= 0):
        raise ValidationError("A split pays both parties.",
                              details={"buyer_amount": str(buyer_amount),
                                       "seller_amount": str(seller_amount)})
