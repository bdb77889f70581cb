"""
Invitation Manager
===================
The handshake that must precede any Letter of Credit:

  PENDING → ACCEPTED     (invitee agrees; LC creation is authorized)
          → REJECTED     (invitee declines)
          → CANCELLED    (initiator withdraws)
          → EXPIRED      (now > expires_at while still pending)

Two independent traders must mutually agree before any financial
commitment exists. Acceptance emits an LCCreationAuthorized record for
exactly that buyer/seller pair; the LC state machine consumes it once.

Expiry is time-driven, not event-driven. Every read re-derives the
status from the clock, so an invitation past its expiry is reported as
EXPIRED even if nothing ever swept it. sweep_expired() exists only to
persist what reads already derive.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable

from lc_engine._icons import INVITATION_STATUS_ICONS
from lc_engine.audit_logger import AuditLogger
from lc_engine.errors import (
    AlreadyRespondedError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from lc_engine.messaging import MessagingLayer
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import LockRegistry, _VersionedStore
from lc_engine.timeutils import Clock, parse_iso, to_iso, utc_now


INVITATIONS = "invitations"
AUTHORIZATIONS = "authorizations"


# ---------------------------------------------------------------------------
# State Model
# ---------------------------------------------------------------------------

class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    InvitationStatus.ACCEPTED,
    InvitationStatus.REJECTED,
    InvitationStatus.EXPIRED,
    InvitationStatus.CANCELLED,
}


class TradeRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class InvitationParty:
    user_id: str
    role: TradeRole
    matrix_id: str = ""
    display_name: str = ""

    def __post_init__(self) -> None:
        self.role = TradeRole(self.role)
        if not self.matrix_id:
            self.matrix_id = self.user_id
        if not self.display_name:
            self.display_name = self.user_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "matrix_id": self.matrix_id,
            "display_name": self.display_name,
        }


@dataclass
class PreliminaryInfo:
    commodity: str = ""
    estimated_amount: str = ""
    currency: str = ""
    timeline: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "commodity": self.commodity,
            "estimated_amount": self.estimated_amount,
            "currency": self.currency,
            "timeline": self.timeline,
        }


@dataclass
class InvitationResponse:
    accepted: bool
    responded_by: str
    responded_at: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "responded_by": self.responded_by,
            "responded_at": self.responded_at,
            "message": self.message,
        }


@dataclass
class Invitation:
    invitation_id: str
    initiator: InvitationParty
    invitee: InvitationParty
    lc_title: str
    created_at: str
    expires_at: str
    status: InvitationStatus = InvitationStatus.PENDING
    message: str = ""
    preliminary_info: PreliminaryInfo | None = None
    response: InvitationResponse | None = None
    notifications_sent: bool = False
    authorization_id: str | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_past_expiry(self, now: Any) -> bool:
        return now > parse_iso(self.expires_at)

    def effective_status(self, now: Any) -> InvitationStatus:
        """Stored status with lazy expiry applied."""
        if self.status == InvitationStatus.PENDING and self.is_past_expiry(now):
            return InvitationStatus.EXPIRED
        return self.status

    def with_derived_status(self, now: Any) -> "Invitation":
        self.status = self.effective_status(now)
        return self

    def summary(self) -> str:
        icon = INVITATION_STATUS_ICONS.get(self.status.value, "?")
        lines = [
            f"INVITATION -- {self.invitation_id}",
            f"Status:     {icon} {self.status.value}",
            f"LC Title:   {self.lc_title}",
            f"Initiator:  {self.initiator.display_name} ({self.initiator.role.value})",
            f"Invitee:    {self.invitee.display_name} ({self.invitee.role.value})",
            f"Created:    {self.created_at}",
            f"Expires:    {self.expires_at}",
        ]
        if self.message:
            lines.append(f"Message:    {self.message}")
        if self.response:
            verb = "accepted" if self.response.accepted else "rejected"
            lines.append(f"Response:   {verb} by {self.response.responded_by} "
                         f"at {self.response.responded_at}")
        if self.authorization_id:
            lines.append(f"LC Authorization: {self.authorization_id}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "invitation_id": self.invitation_id,
            "initiator": self.initiator.to_dict(),
            "invitee": self.invitee.to_dict(),
            "lc_title": self.lc_title,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "message": self.message,
            "preliminary_info": self.preliminary_info.to_dict() if self.preliminary_info else None,
            "response": self.response.to_dict() if self.response else None,
            "notifications_sent": self.notifications_sent,
            "authorization_id": self.authorization_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Invitation":
        return cls(
            invitation_id=data["invitation_id"],
            initiator=InvitationParty(**data["initiator"]),
            invitee=InvitationParty(**data["invitee"]),
            lc_title=data["lc_title"],
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            status=InvitationStatus(data["status"]),
            message=data.get("message", ""),
            preliminary_info=(PreliminaryInfo(**data["preliminary_info"])
                              if data.get("preliminary_info") else None),
            response=(InvitationResponse(**data["response"])
                      if data.get("response") else None),
            notifications_sent=data.get("notifications_sent", False),
            authorization_id=data.get("authorization_id"),
            version=data.get("version", 0),
        )


@dataclass
class LCCreationAuthorized:
    """Single-use permission to create an LC for one buyer/seller pair."""
    authorization_id: str
    invitation_id: str
    lc_title: str
    buyer_user_id: str
    buyer_matrix_id: str
    seller_user_id: str
    seller_matrix_id: str
    authorized_at: str
    consumed_by: str | None = None
    version: int = 0

    @property
    def is_consumed(self) -> bool:
        return self.consumed_by is not None

    def matches(self, buyer_matrix_id: str, seller_matrix_id: str) -> bool:
        return (self.buyer_matrix_id == buyer_matrix_id
                and self.seller_matrix_id == seller_matrix_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "authorization_id": self.authorization_id,
            "invitation_id": self.invitation_id,
            "lc_title": self.lc_title,
            "buyer_user_id": self.buyer_user_id,
            "buyer_matrix_id": self.buyer_matrix_id,
            "seller_user_id": self.seller_user_id,
            "seller_matrix_id": self.seller_matrix_id,
            "authorized_at": self.authorized_at,
            "consumed_by": self.consumed_by,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LCCreationAuthorized":
        return cls(**data)


@dataclass
class InvitationListing:
    sent: list[Invitation] = field(default_factory=list)
    received: list[Invitation] = field(default_factory=list)

    @property
    def sent_pending(self) -> int:
        return sum(1 for i in self.sent if i.status == InvitationStatus.PENDING)

    @property
    def received_pending(self) -> int:
        return sum(1 for i in self.received if i.status == InvitationStatus.PENDING)

    @property
    def total_pending(self) -> int:
        return self.sent_pending + self.received_pending

    @property
    def counts(self) -> dict[str, int]:
        return {
            "sent_pending": self.sent_pending,
            "received_pending": self.received_pending,
            "total_pending": self.total_pending,
        }


@dataclass
class InvitationStats:
    total_sent: int
    total_received: int
    acceptance_rate: float
    average_response_hours: float


# ---------------------------------------------------------------------------
# Invitation Manager
# ---------------------------------------------------------------------------

class InvitationManager:
    """
    Creates, tracks, expires and resolves LC collaboration invitations.
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
        self._locks = locks or LockRegistry(self.policy.lock_timeout_seconds)
        self._listeners: list[Callable[[LCCreationAuthorized], None]] = []

    def subscribe(self, listener: Callable[[LCCreationAuthorized], None]) -> None:
        """Register a consumer of LCCreationAuthorized events."""
        self._listeners.append(listener)

    # --- Operations ---

    def send_invitation(
        self,
        initiator: InvitationParty,
        invitee: InvitationParty,
        lc_title: str,
        message: str = "",
        preliminary_info: PreliminaryInfo | None = None,
    ) -> Invitation:
        """Create a PENDING invitation that expires after the policy timeout."""
        if not lc_title or not lc_title.strip():
            raise ValidationError("LC title is required.", details={"field": "lc_title"})
        if initiator.user_id == invitee.user_id:
            raise ValidationError("Cannot invite yourself.", details={"field": "invitee"})
        if initiator.role == invitee.role:
            raise ValidationError(
                "Initiator and invitee must take opposite roles (buyer / seller).",
                code="INVALID_ROLE",
            )

        with self._locks.hold(f"invitations:{initiator.user_id}"):
            now = self._clock()
            outstanding = [
                inv for inv in self._all()
                if inv.initiator.user_id == initiator.user_id
                and inv.effective_status(now) == InvitationStatus.PENDING
            ]
            if not self.policy.allow_duplicate_pending and any(
                inv.invitee.user_id == invitee.user_id for inv in outstanding
            ):
                raise ValidationError(
                    "Invitation already pending with this user.",
                    code="ALREADY_INVITED",
                    details={"invitee": invitee.user_id},
                )
            if len(outstanding) >= self.policy.max_pending_invitations:
                raise ValidationError(
                    f"Maximum of {self.policy.max_pending_invitations} pending invitations reached.",
                    code="MAX_INVITATIONS_EXCEEDED",
                )

            invitation = Invitation(
                invitation_id=f"inv_{uuid.uuid4().hex[:16]}",
                initiator=initiator,
                invitee=invitee,
                lc_title=lc_title.strip(),
                created_at=to_iso(now),
                expires_at=to_iso(now + timedelta(days=self.policy.invitation_timeout_days)),
                message=message,
                preliminary_info=preliminary_info,
            )
            self._save(invitation)

        # Delivery belongs to the messaging layer; a failed notice is recorded, not fatal
        try:
            self._messaging.send_invite_notification(invitation)
            invitation.notifications_sent = True
            self._save(invitation)
        except Exception as e:
            self._audit.log_event(
                operation="invitation_notification_failed",
                subject_id=invitation.invitation_id,
                actor=initiator.user_id,
                error={"type": type(e).__name__, "message": str(e)},
            )

        self._audit.log_event(
            operation="invitation_sent",
            subject_id=invitation.invitation_id,
            actor=initiator.user_id,
            after_status=invitation.status.value,
            extra={"invitee": invitee.user_id, "expires_at": invitation.expires_at},
        )
        return invitation

    def respond_to_invitation(
        self,
        invitation_id: str,
        responder: str,
        accepted: bool,
        message: str = "",
    ) -> Invitation:
        """
        Accept or reject an invitation. Only the invitee may respond.

        Raises:
            NotFoundError, UnauthorizedError, AlreadyRespondedError, ExpiredError
        """
        with self._locks.hold(invitation_id):
            invitation = self.load_invitation(invitation_id)
            if responder != invitation.invitee.user_id:
                raise UnauthorizedError(
                    "Only the invitee can respond to this invitation.",
                    details={"invitation_id": invitation_id, "responder": responder},
                )
            self._require_pending(invitation)

            now = self._clock()
            before = invitation.status.value
            invitation.response = InvitationResponse(
                accepted=accepted,
                responded_by=responder,
                responded_at=to_iso(now),
                message=message,
            )
            authorization = None
            if accepted:
                invitation.status = InvitationStatus.ACCEPTED
                authorization = self._authorize(invitation, now)
                invitation.authorization_id = authorization.authorization_id
            else:
                invitation.status = InvitationStatus.REJECTED
            self._save(invitation)

        self._audit.log_event(
            operation="invitation_response",
            subject_id=invitation_id,
            actor=responder,
            before_status=before,
            after_status=invitation.status.value,
            extra={"authorization_id": invitation.authorization_id},
        )

        if authorization is not None:
            for listener in self._listeners:
                listener(authorization)
        return invitation

    def cancel_invitation(self, invitation_id: str, requestor: str) -> Invitation:
        """Withdraw a pending invitation. Only the initiator may cancel."""
        with self._locks.hold(invitation_id):
            invitation = self.load_invitation(invitation_id)
            if requestor != invitation.initiator.user_id:
                raise UnauthorizedError(
                    "Only the initiator can cancel this invitation.",
                    details={"invitation_id": invitation_id, "requestor": requestor},
                )
            self._require_pending(invitation)
            invitation.status = InvitationStatus.CANCELLED
            self._save(invitation)

        self._audit.log_event(
            operation="invitation_cancelled",
            subject_id=invitation_id,
            actor=requestor,
            before_status=InvitationStatus.PENDING.value,
            after_status=InvitationStatus.CANCELLED.value,
        )
        return invitation

    def list_invitations(self, user_id: str) -> InvitationListing:
        """Sent / received partitions with lazily derived expiry."""
        now = self._clock()
        listing = InvitationListing()
        for invitation in self._all():
            invitation.with_derived_status(now)
            if invitation.initiator.user_id == user_id:
                listing.sent.append(invitation)
            if invitation.invitee.user_id == user_id:
                listing.received.append(invitation)
        listing.sent.sort(key=lambda i: i.created_at, reverse=True)
        listing.received.sort(key=lambda i: i.created_at, reverse=True)
        return listing

    def get_invitation(self, invitation_id: str) -> Invitation:
        return self.load_invitation(invitation_id).with_derived_status(self._clock())

    def get_authorization(self, authorization_id: str) -> LCCreationAuthorized:
        return LCCreationAuthorized.from_dict(self._store.get(AUTHORIZATIONS, authorization_id))

    def sweep_expired(self) -> list[str]:
        """Persist EXPIRED for pending invitations past their expiry."""
        now = self._clock()
        swept = []
        for invitation in self._all():
            if invitation.effective_status(now) != InvitationStatus.EXPIRED:
                continue
            if invitation.status == InvitationStatus.EXPIRED:
                continue
            with self._locks.hold(invitation.invitation_id):
                fresh = self.load_invitation(invitation.invitation_id)
                if fresh.effective_status(now) != InvitationStatus.EXPIRED \
                        or fresh.status == InvitationStatus.EXPIRED:
                    continue
                try:
                    self._expire(fresh, now)
                except ConflictError:
                    continue
            swept.append(invitation.invitation_id)
        return swept

    def invitation_stats(self, user_id: str) -> InvitationStats:
        listing = self.list_invitations(user_id)
        answered = [i for i in listing.sent if i.response is not None]
        accepted = [i for i in answered if i.response.accepted]
        hours = [
            (parse_iso(i.response.responded_at) - parse_iso(i.created_at)).total_seconds() / 3600
            for i in listing.sent + listing.received if i.response is not None
        ]
        return InvitationStats(
            total_sent=len(listing.sent),
            total_received=len(listing.received),
            acceptance_rate=(len(accepted) / len(answered)) if answered else 0.0,
            average_response_hours=(sum(hours) / len(hours)) if hours else 0.0,
        )

    # --- Internals ---

    def _require_pending(self, invitation: Invitation) -> None:
        now = self._clock()
        if invitation.status == InvitationStatus.PENDING and invitation.is_past_expiry(now):
            self._expire(invitation, now)
        if invitation.status == InvitationStatus.EXPIRED:
            raise ExpiredError(
                f"Invitation {invitation.invitation_id} expired at {invitation.expires_at}.",
                details={"invitation_id": invitation.invitation_id,
                         "expires_at": invitation.expires_at},
            )
        if invitation.status != InvitationStatus.PENDING:
            raise AlreadyRespondedError(
                f"Invitation {invitation.invitation_id} is already {invitation.status.value}.",
                details={"invitation_id": invitation.invitation_id,
                         "status": invitation.status.value},
            )

    def _expire(self, invitation: Invitation, now: Any) -> None:
        invitation.status = InvitationStatus.EXPIRED
        self._save(invitation)
        self._audit.log_event(
            operation="invitation_expired",
            subject_id=invitation.invitation_id,
            before_status=InvitationStatus.PENDING.value,
            after_status=InvitationStatus.EXPIRED.value,
            extra={"expires_at": invitation.expires_at, "observed_at": to_iso(now)},
        )

    def _authorize(self, invitation: Invitation, now: Any) -> LCCreationAuthorized:
        if invitation.initiator.role == TradeRole.BUYER:
            buyer, seller = invitation.initiator, invitation.invitee
        else:
            buyer, seller = invitation.invitee, invitation.initiator
        authorization = LCCreationAuthorized(
            authorization_id=f"auth_{uuid.uuid4().hex[:16]}",
            invitation_id=invitation.invitation_id,
            lc_title=invitation.lc_title,
            buyer_user_id=buyer.user_id,
            buyer_matrix_id=buyer.matrix_id,
            seller_user_id=seller.user_id,
            seller_matrix_id=seller.matrix_id,
            authorized_at=to_iso(now),
        )
        record = self._store.create(AUTHORIZATIONS, authorization.authorization_id,
                                    authorization.to_dict())
        authorization.version = record["version"]
        return authorization

    def load_invitation(self, invitation_id: str) -> Invitation:
        data = self._store.find(INVITATIONS, invitation_id)
        if data is None:
            raise NotFoundError(f"Invitation not found: {invitation_id}",
                                details={"invitation_id": invitation_id})
        return Invitation.from_dict(data)

    def _all(self) -> list[Invitation]:
        return [Invitation.from_dict(d) for d in self._store.all(INVITATIONS)]

    def _save(self, invitation: Invitation) -> None:
        record = self._store.put(INVITATIONS, invitation.invitation_id,
                                 invitation.to_dict(), expected_version=invitation.version)
        invitation.version = record["version"]
