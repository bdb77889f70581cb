"""
Letter of Credit State Machine
===============================
Owns the canonical status of a Letter of Credit:

  DRAFT → NEGOTIATING → SIGNED → FUNDED → SHIPPED → DOCUMENTS_SUBMITTED
        → DELIVERED → COMPLETED
                   ↘ DISPUTED (from SIGNED … DELIVERED, via a dispute)
                   ↘ CANCELLED (pre-funding by a party; post-funding only
                                with a confirmed refund receipt)

A transition is legal only if all three hold:
  (a) the current status is a listed predecessor of the target
  (b) the actor holds one of the roles allowed for that edge
  (c) the edge's precondition has already completed (both signatures,
      escrow funding receipt, shipment details, documents, release
      receipt, dispute resolution)

Receipts and dispute records are read from the store, never trusted
from the caller: the evidence dict only names WHICH record to check.

Every transition is a compare-and-swap against the stored version and
is audit-logged. The returned LC is always the persisted one.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from lc_engine._icons import ICON_CHECK, ICON_CROSS, ICON_DOC, ICON_HOURGLASS, LC_STATUS_ICONS
from lc_engine.audit_logger import AuditLogger
from lc_engine.errors import (
    ConflictError,
    IllegalTransitionError,
    LedgerPendingError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from lc_engine.invitations import AUTHORIZATIONS, LCCreationAuthorized
from lc_engine.messaging import MessagingLayer
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import LockRegistry, _VersionedStore
from lc_engine.timeutils import Clock, to_iso, utc_now


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LCS = "lcs"
ESCROW_OPS = "escrow_ops"
DISPUTES = "disputes"

ESCROW_AGENT = "@escrow:lc-engine"

_LC_NUMBER = re.compile(r"^LC(\d{4})(\d{6})$")


# ---------------------------------------------------------------------------
# State Model
# ---------------------------------------------------------------------------

class LCStatus(str, Enum):
    DRAFT = "draft"
    NEGOTIATING = "negotiating"
    SIGNED = "signed"
    FUNDED = "funded"
    SHIPPED = "shipped"
    DOCUMENTS_SUBMITTED = "documents_submitted"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class LCType(str, Enum):
    SIGHT = "sight"
    USANCE = "usance"
    REVOLVING = "revolving"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    VERIFIED = "verified"
    REJECTED = "rejected"


DISPUTABLE = {
    LCStatus.SIGNED,
    LCStatus.FUNDED,
    LCStatus.SHIPPED,
    LCStatus.DOCUMENTS_SUBMITTED,
    LCStatus.DELIVERED,
}

POST_FUNDING = {
    LCStatus.FUNDED,
    LCStatus.SHIPPED,
    LCStatus.DOCUMENTS_SUBMITTED,
    LCStatus.DELIVERED,
}

TERMINAL = {LCStatus.COMPLETED, LCStatus.CANCELLED}

EDITABLE = {LCStatus.DRAFT, LCStatus.NEGOTIATING}

# Valid transitions
TRANSITIONS: dict[LCStatus, set[LCStatus]] = {
    LCStatus.DRAFT: {LCStatus.NEGOTIATING, LCStatus.CANCELLED},
    LCStatus.NEGOTIATING: {LCStatus.SIGNED, LCStatus.CANCELLED},
    LCStatus.SIGNED: {LCStatus.FUNDED, LCStatus.DISPUTED, LCStatus.CANCELLED},
    LCStatus.FUNDED: {LCStatus.SHIPPED, LCStatus.DISPUTED, LCStatus.CANCELLED},
    LCStatus.SHIPPED: {LCStatus.DOCUMENTS_SUBMITTED, LCStatus.DISPUTED, LCStatus.CANCELLED},
    LCStatus.DOCUMENTS_SUBMITTED: {LCStatus.DELIVERED, LCStatus.DISPUTED, LCStatus.CANCELLED},
    LCStatus.DELIVERED: {LCStatus.COMPLETED, LCStatus.DISPUTED, LCStatus.CANCELLED},
    LCStatus.DISPUTED: {LCStatus.COMPLETED, LCStatus.CANCELLED},
    LCStatus.COMPLETED: set(),
    LCStatus.CANCELLED: set(),
}

_PARTIES = frozenset({"buyer", "seller"})

# Roles allowed per edge; every edge in TRANSITIONS has an entry
TRANSITION_ROLES: dict[tuple[LCStatus, LCStatus], frozenset[str]] = {
    (LCStatus.DRAFT, LCStatus.NEGOTIATING): _PARTIES,
    (LCStatus.NEGOTIATING, LCStatus.SIGNED): _PARTIES,
    (LCStatus.SIGNED, LCStatus.FUNDED): frozenset({"escrow"}),
    (LCStatus.FUNDED, LCStatus.SHIPPED): frozenset({"seller"}),
    (LCStatus.SHIPPED, LCStatus.DOCUMENTS_SUBMITTED): frozenset({"seller"}),
    (LCStatus.DOCUMENTS_SUBMITTED, LCStatus.DELIVERED): frozenset({"buyer"}),
    (LCStatus.DELIVERED, LCStatus.COMPLETED): frozenset({"escrow"}),
    (LCStatus.DISPUTED, LCStatus.COMPLETED): frozenset({"arbiter"}),
    (LCStatus.DISPUTED, LCStatus.CANCELLED): frozenset({"arbiter"}),
    (LCStatus.DRAFT, LCStatus.CANCELLED): _PARTIES,
    (LCStatus.NEGOTIATING, LCStatus.CANCELLED): _PARTIES,
    (LCStatus.SIGNED, LCStatus.CANCELLED): _PARTIES,
}
for _status in DISPUTABLE:
    TRANSITION_ROLES[(_status, LCStatus.DISPUTED)] = _PARTIES
for _status in POST_FUNDING:
    TRANSITION_ROLES[(_status, LCStatus.CANCELLED)] = frozenset({"escrow"})

# Display only; never a gate
LC_PROGRESS: dict[LCStatus, int] = {
    LCStatus.DRAFT: 10,
    LCStatus.NEGOTIATING: 25,
    LCStatus.SIGNED: 40,
    LCStatus.FUNDED: 55,
    LCStatus.SHIPPED: 70,
    LCStatus.DOCUMENTS_SUBMITTED: 85,
    LCStatus.DELIVERED: 95,
    LCStatus.COMPLETED: 100,
    LCStatus.DISPUTED: 50,
    LCStatus.CANCELLED: 0,
}


def progress(status: LCStatus | str) -> int:
    """Progress percentage for a status."""
    return LC_PROGRESS[LCStatus(status)]


def format_lc_number(lc_number: str) -> str:
    """LC2026000042 -> LC-2026-000042. Unknown formats pass through."""
    match = _LC_NUMBER.match(lc_number)
    if not match:
        return lc_number
    return f"LC-{match.group(1)}-{match.group(2)}"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def parse_decimal(value: Any, field_name: str) -> Decimal:
    """Finite Decimal from user input; NaN, Infinity and junk are ValidationError."""
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid decimal for {field_name}: {value!r}",
                              details={"field": field_name})
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}",
                              details={"field": field_name})
    return result


def _date(value: str, field_name: str) -> date:
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date for {field_name}: {value!r}",
                              details={"field": field_name})


@dataclass
class LCParty:
    name: str
    address: str
    matrix_id: str
    wallet_address: str | None = None

    @property
    def account(self) -> str:
        """Ledger account that holds this party's funds."""
        return self.wallet_address or self.matrix_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "matrix_id": self.matrix_id,
            "wallet_address": self.wallet_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LCParty":
        return cls(
            name=data.get("name", ""),
            address=data.get("address", ""),
            matrix_id=data.get("matrix_id", ""),
            wallet_address=data.get("wallet_address"),
        )


@dataclass
class LCTerms:
    lc_type: LCType
    amount: Decimal
    currency: str
    buyer: LCParty
    seller: LCParty
    commodity: str
    quantity: Decimal
    unit_price: Decimal
    incoterms: str
    port_of_loading: str
    port_of_destination: str
    expiry_date: str
    latest_shipment_date: str
    required_documents: list[str] = field(default_factory=list)
    issuing_bank: str | None = None
    confirming_bank: str | None = None
    additional_terms: str | None = None
    partial_shipments: bool = False
    transhipment: bool = False

    @property
    def total_value(self) -> Decimal:
        return self.quantity * self.unit_price

    def validate(self, policy: PolicyEngine) -> None:
        """Business rules. Collects every problem before raising."""
        errors: list[str] = []

        if self.amount <= 0:
            errors.append("amount must be positive")
        if self.quantity <= 0:
            errors.append("quantity must be positive")
        if self.unit_price <= 0:
            errors.append("unit_price must be positive")
        if self.amount != self.total_value:
            errors.append(
                f"amount {self.amount} does not equal quantity x unit_price ({self.total_value})"
            )

        latest = _date(self.latest_shipment_date, "latest_shipment_date")
        expiry = _date(self.expiry_date, "expiry_date")
        if not latest < expiry:
            errors.append("latest_shipment_date must be before expiry_date")

        if not self.required_documents:
            errors.append("required_documents must not be empty")
        allowed_docs = policy.document_types
        if allowed_docs:
            unknown = [d for d in self.required_documents if d not in allowed_docs]
            if unknown:
                errors.append(f"unknown document types: {', '.join(unknown)}")

        if self.lc_type.value not in policy.lc_types:
            errors.append(f"LC type {self.lc_type.value} not permitted")
        if self.currency not in policy.supported_currencies:
            errors.append(f"currency {self.currency} not supported")
        if self.incoterms not in policy.incoterms:
            errors.append(f"incoterms {self.incoterms} not recognised")

        for side, party in (("buyer", self.buyer), ("seller", self.seller)):
            if not party.name or not party.matrix_id:
                errors.append(f"{side} name and matrix_id are required")
        if self.buyer.matrix_id and self.buyer.matrix_id == self.seller.matrix_id:
            errors.append("buyer and seller must be different parties")

        if errors:
            raise ValidationError(
                "Invalid LC terms: " + "; ".join(errors),
                details={"errors": errors},
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "lc_type": self.lc_type.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "buyer": self.buyer.to_dict(),
            "seller": self.seller.to_dict(),
            "commodity": self.commodity,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "total_value": str(self.total_value),
            "incoterms": self.incoterms,
            "port_of_loading": self.port_of_loading,
            "port_of_destination": self.port_of_destination,
            "expiry_date": self.expiry_date,
            "latest_shipment_date": self.latest_shipment_date,
            "required_documents": list(self.required_documents),
            "issuing_bank": self.issuing_bank,
            "confirming_bank": self.confirming_bank,
            "additional_terms": self.additional_terms,
            "partial_shipments": self.partial_shipments,
            "transhipment": self.transhipment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LCTerms":
        try:
            lc_type = LCType(data.get("lc_type", ""))
        except ValueError:
            raise ValidationError(f"Unknown LC type: {data.get('lc_type')!r}",
                                  details={"field": "lc_type"})
        return cls(
            lc_type=lc_type,
            amount=parse_decimal(data.get("amount"), "amount"),
            currency=str(data.get("currency", "")),
            buyer=LCParty.from_dict(data.get("buyer") or {}),
            seller=LCParty.from_dict(data.get("seller") or {}),
            commodity=str(data.get("commodity", "")),
            quantity=parse_decimal(data.get("quantity"), "quantity"),
            unit_price=parse_decimal(data.get("unit_price"), "unit_price"),
            incoterms=str(data.get("incoterms", "")),
            port_of_loading=str(data.get("port_of_loading", "")),
            port_of_destination=str(data.get("port_of_destination", "")),
            expiry_date=str(data.get("expiry_date", "")),
            latest_shipment_date=str(data.get("latest_shipment_date", "")),
            required_documents=list(data.get("required_documents") or []),
            issuing_bank=data.get("issuing_bank"),
            confirming_bank=data.get("confirming_bank"),
            additional_terms=data.get("additional_terms"),
            partial_shipments=bool(data.get("partial_shipments", False)),
            transhipment=bool(data.get("transhipment", False)),
        )


@dataclass
class LCDocument:
    document_id: str
    document_type: str
    name: str
    content_hash: str
    uploaded_by: str
    uploaded_at: str
    status: DocumentStatus = DocumentStatus.UPLOADED
    verified_by: str | None = None
    verified_at: str | None = None
    rejection_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "document_type": self.document_type,
            "name": self.name,
            "content_hash": self.content_hash,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at,
            "status": self.status.value,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LCDocument":
        data = dict(data)
        data["status"] = DocumentStatus(data["status"])
        return cls(**data)


@dataclass
class StatusChange:
    """Record of a single status transition."""
    from_status: str
    to_status: str
    actor: str
    timestamp: str
    reason: str = ""
    tx_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "tx_ref": self.tx_ref,
        }


@dataclass
class LetterOfCredit:
    """Persistent record of one LC."""
    lc_id: str
    lc_number: str
    terms: LCTerms
    status: LCStatus = LCStatus.DRAFT
    invitation_id: str | None = None
    authorization_id: str | None = None
    created_by: str = ""
    matrix_room_id: str | None = None
    escrow_address: str | None = None
    contract_address: str | None = None
    deployment_tx: str | None = None
    funding_tx: str | None = None
    settlement_tx: str | None = None
    refund_tx: str | None = None
    dispute_id: str | None = None
    signatures: dict[str, str] = field(default_factory=dict)
    shipment: dict[str, Any] | None = None
    documents: list[LCDocument] = field(default_factory=list)
    history: list[StatusChange] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    funded_at: str | None = None
    shipped_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    cancellation_reason: str | None = None
    version: int = 0

    @property
    def display_number(self) -> str:
        return format_lc_number(self.lc_number)

    @property
    def progress(self) -> int:
        return progress(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE

    def available_transitions(self) -> list[str]:
        return sorted(s.value for s in TRANSITIONS.get(self.status, set()))

    def role_of(self, actor: str) -> set[str]:
        roles = set()
        if actor == self.terms.buyer.matrix_id:
            roles.add("buyer")
        if actor == self.terms.seller.matrix_id:
            roles.add("seller")
        if actor == ESCROW_AGENT:
            roles.add("escrow")
        return roles

    def current_documents(self) -> dict[str, LCDocument]:
        """Latest document per type."""
        latest: dict[str, LCDocument] = {}
        for doc in self.documents:
            latest[doc.document_type] = doc
        return latest

    def missing_documents(self, accepted: set[DocumentStatus]) -> list[str]:
        current = self.current_documents()
        return [
            doc_type for doc_type in self.terms.required_documents
            if doc_type not in current or current[doc_type].status not in accepted
        ]

    def summary(self) -> str:
        icon = LC_STATUS_ICONS.get(self.status.value, "?")
        t = self.terms
        lines = [
            f"LETTER OF CREDIT -- {self.display_number}",
            f"Status:        {icon} {self.status.value} ({self.progress}%)",
            f"Type:          {t.lc_type.value}",
            f"Amount:        {t.amount:,} {t.currency}",
            f"Buyer:         {t.buyer.name} ({t.buyer.matrix_id})",
            f"Seller:        {t.seller.name} ({t.seller.matrix_id})",
            f"Commodity:     {t.commodity} x {t.quantity} @ {t.unit_price}",
            f"Route:         {t.port_of_loading} -> {t.port_of_destination} ({t.incoterms})",
            f"Ship by:       {t.latest_shipment_date}",
            f"Expires:       {t.expiry_date}",
            f"Available:     {', '.join(self.available_transitions()) or 'NONE (terminal)'}",
        ]
        if self.escrow_address:
            lines.append(f"Escrow:        {self.escrow_address}")
        if self.dispute_id:
            lines.append(f"Dispute:       {self.dispute_id}")
        lines.append("")

        if t.required_documents:
            lines.append("DOCUMENTS:")
            current = self.current_documents()
            for doc_type in t.required_documents:
                doc = current.get(doc_type)
                if doc is None:
                    lines.append(f"  {ICON_HOURGLASS} {doc_type}: not uploaded")
                elif doc.status == DocumentStatus.VERIFIED:
                    lines.append(f"  {ICON_CHECK} {doc_type}: verified by {doc.verified_by}")
                elif doc.status == DocumentStatus.REJECTED:
                    lines.append(f"  {ICON_CROSS} {doc_type}: rejected ({doc.rejection_reason})")
                else:
                    lines.append(f"  {ICON_DOC} {doc_type}: {doc.status.value}")
            lines.append("")

        if self.history:
            lines.append("STATUS HISTORY:")
            for h in self.history:
                lines.append(f"  {h.timestamp}: {h.from_status} -> {h.to_status}")
                lines.append(f"    Actor: {h.actor}" + (f" | Reason: {h.reason}" if h.reason else ""))
            lines.append("")

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lc_id": self.lc_id,
            "lc_number": self.lc_number,
            "terms": self.terms.to_dict(),
            "status": self.status.value,
            "invitation_id": self.invitation_id,
            "authorization_id": self.authorization_id,
            "created_by": self.created_by,
            "matrix_room_id": self.matrix_room_id,
            "escrow_address": self.escrow_address,
            "contract_address": self.contract_address,
            "deployment_tx": self.deployment_tx,
            "funding_tx": self.funding_tx,
            "settlement_tx": self.settlement_tx,
            "refund_tx": self.refund_tx,
            "dispute_id": self.dispute_id,
            "signatures": dict(self.signatures),
            "shipment": self.shipment,
            "documents": [d.to_dict() for d in self.documents],
            "history": [h.to_dict() for h in self.history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "funded_at": self.funded_at,
            "shipped_at": self.shipped_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
            "cancellation_reason": self.cancellation_reason,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LetterOfCredit":
        data = dict(data)
        data["terms"] = LCTerms.from_dict(data["terms"])
        data["status"] = LCStatus(data["status"])
        data["documents"] = [LCDocument.from_dict(d) for d in data.get("documents", [])]
        data["history"] = [StatusChange(**h) for h in data.get("history", [])]
        return cls(**data)


# ---------------------------------------------------------------------------
# LC Lifecycle Manager
# ---------------------------------------------------------------------------

class LCLifecycleManager:
    """
    Creates LCs from accepted invitations and drives them through the
    state machine.
    """

    def __init__(
        self,
        store: _VersionedStore,
        messaging: MessagingLayer,
        *,
        policy: PolicyEngine | None = None,
        audit: AuditLogger | None = None,
        locks: LockRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._messaging = messaging
        self.policy = policy or PolicyEngine()
        self._clock = clock or utc_now
        self._audit = audit or AuditLogger(clock=self._clock,
                                           enabled=self.policy.should_audit())
        self.locks = locks or LockRegistry(self.policy.lock_timeout_seconds)

    # --- Creation ---

    def create_lc(
        self,
        terms: LCTerms | dict[str, Any],
        authorization_id: str,
        actor: str,
    ) -> LetterOfCredit:
        """
        Create a DRAFT LC. Requires an unused LCCreationAuthorized whose
        buyer/seller pair matches the terms.
        """
        if isinstance(terms, dict):
            terms = LCTerms.from_dict(terms)

        record = self._store.find(AUTHORIZATIONS, authorization_id)
        if record is None:
            raise UnauthorizedError(
                "No accepted invitation authorizes this LC.",
                details={"authorization_id": authorization_id},
            )
        authorization = LCCreationAuthorized.from_dict(record)
        if authorization.is_consumed:
            raise UnauthorizedError(
                f"Authorization {authorization_id} was already used by {authorization.consumed_by}.",
                details={"authorization_id": authorization_id},
            )
        if not authorization.matches(terms.buyer.matrix_id, terms.seller.matrix_id):
            raise UnauthorizedError(
                "LC buyer/seller do not match the accepted invitation.",
                details={
                    "authorization_id": authorization_id,
                    "authorized_buyer": authorization.buyer_matrix_id,
                    "authorized_seller": authorization.seller_matrix_id,
                },
            )
        if actor not in (authorization.buyer_user_id, authorization.buyer_matrix_id,
                         authorization.seller_user_id, authorization.seller_matrix_id):
            raise UnauthorizedError("Only the invited parties may create this LC.",
                                    details={"actor": actor})

        terms.validate(self.policy)

        now = self._clock()
        lc_id = f"lc_{uuid.uuid4().hex[:16]}"
        sequence = self._store.next_sequence(f"lc_number_{now.year}")
        lc_number = f"LC{now.year}{sequence:06d}"

        with self.locks.hold(authorization_id):
            authorization.consumed_by = lc_id
            self._store.put(AUTHORIZATIONS, authorization_id, authorization.to_dict(),
                            expected_version=authorization.version)

        room_id = self._messaging.create_negotiation_channel(
            [terms.buyer.matrix_id, terms.seller.matrix_id],
            f"{format_lc_number(lc_number)}: {terms.commodity}",
        )

        lc = LetterOfCredit(
            lc_id=lc_id,
            lc_number=lc_number,
            terms=terms,
            invitation_id=authorization.invitation_id,
            authorization_id=authorization_id,
            created_by=actor,
            matrix_room_id=room_id,
            created_at=to_iso(now),
            updated_at=to_iso(now),
        )
        self._save(lc)

        self._audit.log_event(
            operation="lc_created",
            subject_id=lc_id,
            actor=actor,
            after_status=lc.status.value,
            amount=terms.amount,
            currency=terms.currency,
            extra={"lc_number": lc_number, "authorization_id": authorization_id,
                   "room_id": room_id},
        )
        self._notify(lc, f"{lc.display_number} created in draft for "
                         f"{terms.amount:,} {terms.currency}.")
        return lc

    # --- Transitions ---

    def advance(
        self,
        lc_id: str,
        target: LCStatus | str,
        actor: str,
        evidence: dict[str, Any] | None = None,
        expected_version: int | None = None,
        reason: str = "",
    ) -> LetterOfCredit:
        """
        Move an LC to ``target`` if predecessor, role and precondition
        all pass.

        Raises:
            IllegalTransitionError: not a legal edge, or precondition unmet
            UnauthorizedError: actor lacks the role for this edge
            ConflictError: expected_version is stale or a concurrent write won
        """
        try:
            target = LCStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown LC status: {target!r}", details={"target": target})
        evidence = evidence or {}

        with self.locks.hold(lc_id):
            lc = self.load_lc(lc_id)
            if expected_version is not None and expected_version != lc.version:
                raise ConflictError(
                    f"LC {lc_id} changed (expected version {expected_version}, "
                    f"found {lc.version}). Re-read and retry.",
                    details={"lc_id": lc_id, "expected_version": expected_version,
                             "current_version": lc.version},
                )
            before = lc.status
            tx_ref = self._check_transition(lc, target, actor, evidence)
            self._apply(lc, target, actor, evidence, reason, tx_ref)
            self._save(lc)

        self._audit.log_event(
            operation="lc_transition",
            subject_id=lc_id,
            actor=actor,
            idempotency_key=evidence.get("settlement_key"),
            before_status=before.value,
            after_status=target.value,
            tx_ref=tx_ref,
            extra={k: v for k, v in evidence.items() if k != "shipment"} or None,
        )
        self._notify(lc, f"{lc.display_number}: {before.value} -> {target.value} by {actor}.")
        return lc

    def cancel(
        self,
        lc_id: str,
        actor: str,
        reason: str,
        refund_receipt: str | None = None,
    ) -> LetterOfCredit:
        """
        Cancel an LC. Pre-funding any party may cancel; post-funding the
        escrow agent cancels once ``refund_receipt`` (the idempotency key
        of a succeeded refund) confirms the buyer was made whole.
        """
        if not reason:
            raise ValidationError("A cancellation reason is required.")
        evidence = {"settlement_key": refund_receipt} if refund_receipt else {}
        return self.advance(lc_id, LCStatus.CANCELLED, actor, evidence=evidence, reason=reason)

    def sign(self, lc_id: str, actor: str) -> LetterOfCredit:
        """Record a party's sign-off; the second signature moves the LC to SIGNED."""
        with self.locks.hold(lc_id):
            lc = self.load_lc(lc_id)
            if lc.status != LCStatus.NEGOTIATING:
                raise IllegalTransitionError(
                    lc.status.value, LCStatus.SIGNED.value,
                    "signatures are collected while negotiating",
                )
            roles = lc.role_of(actor) & _PARTIES
            if not roles:
                raise UnauthorizedError("Only the buyer or seller may sign.",
                                        details={"lc_id": lc_id, "actor": actor})
            for role in roles:
                lc.signatures.setdefault(role, to_iso(self._clock()))
            lc.updated_at = to_iso(self._clock())
            self._save(lc)

            self._audit.log_event(
                operation="lc_signed",
                subject_id=lc_id,
                actor=actor,
                extra={"signatures": sorted(lc.signatures)},
            )
            if _PARTIES <= set(lc.signatures):
                return self.advance(lc_id, LCStatus.SIGNED, actor, reason="signed by both parties")
        return lc

    def update_terms(self, lc_id: str, actor: str, updates: dict[str, Any]) -> LetterOfCredit:
        """Amend terms while draft or negotiating. Resets collected signatures."""
        with self.locks.hold(lc_id):
            lc = self.load_lc(lc_id)
            if not lc.is_editable:
                raise ValidationError(
                    f"LC terms cannot be edited in status {lc.status.value}.",
                    code="LC_NOT_EDITABLE",
                    details={"lc_id": lc_id, "status": lc.status.value},
                )
            if not lc.role_of(actor) & _PARTIES:
                raise UnauthorizedError("Only the buyer or seller may amend terms.",
                                        details={"lc_id": lc_id, "actor": actor})
            if "currency" in updates and updates["currency"] != lc.terms.currency:
                raise ValidationError("LC currency is fixed at creation.",
                                      details={"field": "currency"})
            for side in ("buyer", "seller"):
                if side in updates:
                    raise ValidationError(f"LC {side} is fixed by the accepted invitation.",
                                          details={"field": side})

            previous = lc.terms.to_dict()
            terms = LCTerms.from_dict({**previous, **updates})
            terms.validate(self.policy)

            current = terms.to_dict()
            changed = sorted(k for k in current if current[k] != previous.get(k))
            lc.terms = terms
            lc.signatures = {}
            lc.updated_at = to_iso(self._clock())
            self._save(lc)

        self._audit.log_event(
            operation="lc_terms_updated",
            subject_id=lc_id,
            actor=actor,
            amount=terms.amount,
            currency=terms.currency,
            extra={"changed": changed},
        )
        return lc

    # --- Documents ---

    def upload_document(
        self,
        lc_id: str,
        actor: str,
        document_type: str,
        name: str,
        content: bytes | str,
    ) -> LCDocument:
        """Seller uploads a required document. A newer upload supersedes older ones."""
        if isinstance(content, str):
            content = content.encode("utf-8")
        with self.locks.hold(lc_id):
            lc = self.load_lc(lc_id)
            if lc.status not in (LCStatus.FUNDED, LCStatus.SHIPPED, LCStatus.DOCUMENTS_SUBMITTED):
                raise ValidationError(
                    f"Documents cannot be uploaded in status {lc.status.value}.",
                    details={"lc_id": lc_id, "status": lc.status.value},
                )
            if "seller" not in lc.role_of(actor):
                raise UnauthorizedError("Only the seller may upload documents.",
                                        details={"lc_id": lc_id, "actor": actor})
            if document_type not in lc.terms.required_documents:
                raise ValidationError(
                    f"{document_type} is not a required document for this LC.",
                    details={"document_type": document_type,
                             "required": lc.terms.required_documents},
                )
            existing = lc.current_documents().get(document_type)
            if existing and existing.status == DocumentStatus.VERIFIED:
                raise ValidationError(f"{document_type} is already verified.",
                                      details={"document_id": existing.document_id})

            doc = LCDocument(
                document_id=f"doc_{uuid.uuid4().hex[:12]}",
                document_type=document_type,
                name=name,
                content_hash=hashlib.sha256(content).hexdigest(),
                uploaded_by=actor,
                uploaded_at=to_iso(self._clock()),
            )
            lc.documents.append(doc)
            lc.updated_at = doc.uploaded_at
            self._save(lc)

        self._audit.log_event(
            operation="lc_document_uploaded",
            subject_id=lc_id,
            actor=actor,
            extra={"document_id": doc.document_id, "document_type": document_type,
                   "content_hash": doc.content_hash},
        )
        return doc

    def verify_document(
        self,
        lc_id: str,
        actor: str,
        document_id: str,
        approved: bool = True,
        reason: str = "",
    ) -> LCDocument:
        """Buyer verifies or rejects a submitted document."""
        with self.locks.hold(lc_id):
            lc = self.load_lc(lc_id)
            if lc.status != LCStatus.DOCUMENTS_SUBMITTED:
                raise ValidationError(
                    f"Documents cannot be verified in status {lc.status.value}.",
                    details={"lc_id": lc_id, "status": lc.status.value},
                )
            if "buyer" not in lc.role_of(actor):
                raise UnauthorizedError("Only the buyer may verify documents.",
                                        details={"lc_id": lc_id, "actor": actor})
            doc = next((d for d in lc.documents if d.document_id == document_id), None)
            if doc is None:
                raise NotFoundError(f"Document not found: {document_id}",
                                    details={"lc_id": lc_id, "document_id": document_id})
            if doc.status != DocumentStatus.UPLOADED:
                raise ValidationError(f"Document {document_id} is already {doc.status.value}.",
                                      details={"document_id": document_id})
            if not approved and not reason:
                raise ValidationError("A rejection reason is required.")

            now = to_iso(self._clock())
            doc.status = DocumentStatus.VERIFIED if approved else DocumentStatus.REJECTED
            doc.verified_by = actor
            doc.verified_at = now
            doc.rejection_reason = reason or None
            lc.updated_at = now
            self._save(lc)

        self._audit.log_event(
            operation="lc_document_verified",
            subject_id=lc_id,
            actor=actor,
            outcome=doc.status.value,
            extra={"document_id": document_id, "document_type": doc.document_type,
                   "reason": reason or None},
        )
        return doc

    # --- Queries ---

    def load_lc(self, lc_id: str) -> LetterOfCredit:
        data = self._store.find(LCS, lc_id)
        if data is None:
            raise NotFoundError(f"LC not found: {lc_id}", details={"lc_id": lc_id})
        return LetterOfCredit.from_dict(data)

    def require_no_pending_funding(self, lc: LetterOfCredit) -> None:
        """
        A SIGNED LC with a funding transfer in flight may only move to
        FUNDED; reconcile the transfer before cancelling or disputing.
        """
        for record in self._store.all(ESCROW_OPS):
            if (record.get("lc_id") == lc.lc_id and record.get("purpose") == "funding"
                    and record.get("outcome") == "PENDING"):
                raise LedgerPendingError(
                    f"Funding {record['idempotency_key']} for LC {lc.lc_id} is still pending; "
                    "reconcile it first.",
                    idempotency_key=record["idempotency_key"],
                    tx_ref=record.get("tx_ref"),
                )

    def status_history(self, lc_id: str) -> list[StatusChange]:
        return list(self.load_lc(lc_id).history)

    def list_lcs(
        self,
        status: LCStatus | str | None = None,
        currency: str | None = None,
        party: str | None = None,
        commodity: str | None = None,
    ) -> list[LetterOfCredit]:
        """All LCs matching the filters, newest first."""
        results = []
        for data in self._store.all(LCS):
            lc = LetterOfCredit.from_dict(data)
            if status and lc.status != LCStatus(status):
                continue
            if currency and lc.terms.currency != currency:
                continue
            if party and party not in (lc.terms.buyer.matrix_id, lc.terms.seller.matrix_id):
                continue
            if commodity and commodity.lower() not in lc.terms.commodity.lower():
                continue
            results.append(lc)
        results.sort(key=lambda lc: lc.created_at, reverse=True)
        return results

    # --- Internals ---

    def _check_transition(
        self,
        lc: LetterOfCredit,
        target: LCStatus,
        actor: str,
        evidence: dict[str, Any],
    ) -> str | None:
        """Raise unless the edge is legal. Returns the settling tx ref, if any."""
        current = lc.status
        if target not in TRANSITIONS[current]:
            reason = ""
            if current == LCStatus.DISPUTED:
                reason = "LC is frozen by an open dispute"
            elif current in TERMINAL:
                reason = "LC is terminal"
            raise IllegalTransitionError(current.value, target.value, reason)

        allowed = TRANSITION_ROLES[(current, target)]
        roles = lc.role_of(actor)
        if "arbiter" in allowed:
            dispute = self._dispute(lc, evidence, target)
            if actor == dispute.get("arbiter"):
                roles.add("arbiter")
        if not roles & allowed:
            raise UnauthorizedError(
                f"{actor} may not move LC from {current.value} to {target.value}.",
                details={"lc_id": lc.lc_id, "actor": actor, "allowed_roles": sorted(allowed)},
            )
        if current == LCStatus.SIGNED and target in (LCStatus.CANCELLED, LCStatus.DISPUTED):
            self.require_no_pending_funding(lc)

        if target == LCStatus.SIGNED:
            missing = sorted(_PARTIES - set(lc.signatures))
            if missing:
                raise IllegalTransitionError(current.value, target.value,
                                             f"awaiting signature from {', '.join(missing)}")
        elif target == LCStatus.FUNDED:
            receipt = self._receipt(lc, evidence, target, {"funding"})
            if (Decimal(receipt["amount"]) != lc.terms.amount
                    or receipt["currency"] != lc.terms.currency):
                raise IllegalTransitionError(current.value, target.value,
                                             "funding receipt does not match LC amount")
            return receipt.get("tx_ref")
        elif target == LCStatus.SHIPPED:
            shipment = evidence.get("shipment") or lc.shipment or {}
            missing = [k for k in ("bill_of_lading_number", "carrier", "shipment_date")
                       if not shipment.get(k)]
            if missing:
                raise IllegalTransitionError(current.value, target.value,
                                             f"shipment details missing: {', '.join(missing)}")
        elif target == LCStatus.DOCUMENTS_SUBMITTED:
            missing = lc.missing_documents({DocumentStatus.UPLOADED, DocumentStatus.VERIFIED})
            if missing:
                raise IllegalTransitionError(current.value, target.value,
                                             f"documents not uploaded: {', '.join(missing)}")
        elif target == LCStatus.DELIVERED:
            missing = lc.missing_documents({DocumentStatus.VERIFIED})
            if missing:
                raise IllegalTransitionError(current.value, target.value,
                                             f"documents not verified: {', '.join(missing)}")
        elif target == LCStatus.DISPUTED:
            dispute = self._dispute(lc, evidence, target)
            if dispute.get("status") != "open":
                raise IllegalTransitionError(current.value, target.value,
                                             "dispute is not open")
        elif current == LCStatus.DISPUTED:
            dispute = self._dispute(lc, evidence, target)
            if dispute.get("status") != "resolved" or not dispute.get("resolution"):
                raise IllegalTransitionError(current.value, target.value,
                                             "dispute has not been resolved")
            return (dispute["resolution"].get("tx_refs") or [None])[-1]
        elif target == LCStatus.COMPLETED:
            receipt = self._receipt(lc, evidence, target, {"settlement"})
            return receipt.get("tx_ref")
        elif target == LCStatus.CANCELLED and current in POST_FUNDING:
            receipt = self._receipt(lc, evidence, target, {"refund"})
            return receipt.get("tx_ref")
        return None

    def _receipt(self, lc: LetterOfCredit, evidence: dict[str, Any], target: LCStatus,
                 purposes: set[str]) -> dict[str, Any]:
        key = evidence.get("settlement_key")
        receipt = self._store.find(ESCROW_OPS, key) if key else None
        if (receipt is None or receipt.get("lc_id") != lc.lc_id
                or receipt.get("purpose") not in purposes):
            raise IllegalTransitionError(lc.status.value, target.value,
                                         f"no {'/'.join(sorted(purposes))} receipt for this LC")
        if receipt.get("outcome") != "SUCCEEDED":
            raise IllegalTransitionError(
                lc.status.value, target.value,
                f"{receipt['purpose']} {key} is {receipt.get('outcome')}, not SUCCEEDED",
            )
        return receipt

    def _dispute(self, lc: LetterOfCredit, evidence: dict[str, Any],
                 target: LCStatus) -> dict[str, Any]:
        dispute_id = evidence.get("dispute_id") or lc.dispute_id
        dispute = self._store.find(DISPUTES, dispute_id) if dispute_id else None
        if dispute is None or dispute.get("lc_id") != lc.lc_id:
            raise IllegalTransitionError(lc.status.value, target.value,
                                         "no dispute on record for this LC")
        return dispute

    def _apply(
        self,
        lc: LetterOfCredit,
        target: LCStatus,
        actor: str,
        evidence: dict[str, Any],
        reason: str,
        tx_ref: str | None,
    ) -> None:
        now = to_iso(self._clock())
        change = StatusChange(
            from_status=lc.status.value,
            to_status=target.value,
            actor=actor,
            timestamp=now,
            reason=reason,
            tx_ref=tx_ref,
        )
        lc.history.append(change)

        if target == LCStatus.FUNDED:
            lc.funded_at = now
            lc.funding_tx = tx_ref
            lc.escrow_address = evidence.get("escrow_address") or lc.escrow_address
        elif target == LCStatus.SHIPPED:
            if evidence.get("shipment"):
                lc.shipment = dict(evidence["shipment"])
            lc.shipped_at = now
        elif target == LCStatus.DISPUTED:
            lc.dispute_id = evidence.get("dispute_id") or lc.dispute_id
        elif target == LCStatus.COMPLETED:
            lc.completed_at = now
            lc.settlement_tx = tx_ref
        elif target == LCStatus.CANCELLED:
            lc.cancelled_at = now
            lc.cancellation_reason = reason or None
            if tx_ref:
                lc.refund_tx = tx_ref

        lc.status = target
        lc.updated_at = now

    def _save(self, lc: LetterOfCredit) -> None:
        record = self._store.put(LCS, lc.lc_id, lc.to_dict(), expected_version=lc.version)
        lc.version = record["version"]

    def _notify(self, lc: LetterOfCredit, text: str) -> None:
        if not lc.matrix_room_id:
            return
        # The record is already committed; a lost notice is audited, not raised
        try:
            self._messaging.post_system_notice(lc.matrix_room_id, text)
        except Exception as e:
            self._audit.log_event(
                operation="notice_failed",
                subject_id=lc.lc_id,
                error={"type": type(e).__name__, "message": str(e)},
                extra={"room_id": lc.matrix_room_id, "text": text},
            )
