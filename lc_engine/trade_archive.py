"""
Trade Archival & Reconciliation
================================
Binds the negotiation transcript to the financial outcome.

archive_conversation() snapshots a CLOSED window of a negotiation room
into an immutable ChatArchive whose archive_hash is a SHA-256 over the
canonical JSON of:

  room_id, room_name, participants (sorted), window_start, window_end,
  messages: [event_id, sender, timestamp, message_type, content]
            ordered by (timestamp, event_id)

archive_timestamp is deliberately outside the hash: re-archiving the
same window of the same log reproduces the same hash.

link_trade_to_archive() attaches an archive to a TradeRecord only if
the archive window lies inside the trade's lifetime, covers the trade's
room, and still verifies. An archived trade always carries a verifiable
archive.
"""

from __future__ import annotations

import csv
import hashlib
import io
import json
from collections import Counter
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from jinja2 import BaseLoader, Environment

from lc_engine.errors import NotFoundError, ValidationError, WindowMismatchError
from lc_engine.lc_lifecycle import LCStatus, LetterOfCredit
from lc_engine.messaging import MessagingLayer
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import _VersionedStore
from lc_engine.timeutils import Clock, from_millis, parse_iso, to_iso, to_millis, utc_now


TRADES = "trades"

TRANSCRIPT_TEMPLATE = """\
Chat Archive: {{ archive.room_name }}
Room ID: {{ archive.room_id }}
Archived: {{ archived_at }}
Window: {{ window_start }} -> {{ window_end }}
Participants: {{ archive.participants | join(', ') }}
Messages: {{ archive.message_count }}
Hash: {{ archive.archive_hash }}

--- MESSAGES ---
{% for m in messages %}
[{{ m.at }}] {{ m.name }}: {{ m.content }}
{%- endfor %}
"""


# ---------------------------------------------------------------------------
# Archive Models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArchivedMessage:
    event_id: str
    sender: str
    timestamp: int
    message_type: str
    content: str
    sender_name: str | None = None
    is_encrypted: bool = False
    decrypted_content: str | None = None

    def canonical(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "message_type": self.message_type,
            "content": self.content,
            "sender_name": self.sender_name,
            "is_encrypted": self.is_encrypted,
            "decrypted_content": self.decrypted_content,
        }

    def to_dict(self) -> dict[str, Any]:
        return self.canonical()


@dataclass(frozen=True)
class ChatArchive:
    """Immutable snapshot of one closed message window."""
    room_id: str
    room_name: str
    archive_timestamp: int
    start_timestamp: int
    end_timestamp: int
    participants: tuple[str, ...]
    message_count: int
    messages: tuple[ArchivedMessage, ...]
    archive_hash: str
    encryption_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "room_name": self.room_name,
            "archive_timestamp": self.archive_timestamp,
            "start_timestamp": self.start_timestamp,
            "end_timestamp": self.end_timestamp,
            "participants": list(self.participants),
            "message_count": self.message_count,
            "messages": [m.to_dict() for m in self.messages],
            "archive_hash": self.archive_hash,
            "encryption_key": self.encryption_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatArchive":
        return cls(
            room_id=data["room_id"],
            room_name=data["room_name"],
            archive_timestamp=data["archive_timestamp"],
            start_timestamp=data["start_timestamp"],
            end_timestamp=data["end_timestamp"],
            participants=tuple(data["participants"]),
            message_count=data["message_count"],
            messages=tuple(ArchivedMessage(**m) for m in data["messages"]),
            archive_hash=data["archive_hash"],
            encryption_key=data.get("encryption_key"),
        )


@dataclass
class ArchiveSummary:
    message_count: int
    participant_count: int
    time_span: str
    message_types: dict[str, int]
    top_senders: list[tuple[str, int]]


def compute_archive_hash(
    room_id: str,
    room_name: str,
    participants: list[str] | tuple[str, ...],
    window_start: int,
    window_end: int,
    messages: list[ArchivedMessage] | tuple[ArchivedMessage, ...],
    encryption_key: str | None = None,
) -> str:
    """SHA-256 over the canonical JSON of everything but archive_timestamp."""
    payload = {
        "room_id": room_id,
        "room_name": room_name,
        "participants": sorted(participants),
        "window_start": window_start,
        "window_end": window_end,
        "messages": [m.canonical() for m in messages],
        "encryption_key": encryption_key,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_archive_integrity(archive: ChatArchive) -> bool:
    """Recompute the hash and check the structural invariants."""
    if archive.message_count != len(archive.messages):
        return False
    keys = [(m.timestamp, m.event_id) for m in archive.messages]
    if keys != sorted(keys):
        return False
    if any(not archive.start_timestamp <= m.timestamp <= archive.end_timestamp
           for m in archive.messages):
        return False
    expected = compute_archive_hash(
        archive.room_id,
        archive.room_name,
        archive.participants,
        archive.start_timestamp,
        archive.end_timestamp,
        archive.messages,
        archive.encryption_key,
    )
    return expected == archive.archive_hash


def _format_span(milliseconds: int) -> str:
    seconds = milliseconds // 1000
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


# ---------------------------------------------------------------------------
# Trade Models
# ---------------------------------------------------------------------------

class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeType(str, Enum):
    OTC = "otc"
    MARKET = "market"
    LIMIT = "limit"
    LC = "lc"


class TradeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class AssetInfo:
    code: str
    name: str = ""
    issuer: str | None = None
    asset_type: str = "token"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "name": self.name, "issuer": self.issuer,
                "asset_type": self.asset_type}


@dataclass
class TradeParticipant:
    matrix_user_id: str
    username: str
    role: str

    def to_dict(self) -> dict[str, Any]:
        return {"matrix_user_id": self.matrix_user_id, "username": self.username,
                "role": self.role}


@dataclass
class SettlementTransaction:
    hash: str
    source_account: str
    operation_type: str
    success: bool
    ledger: int | None = None
    fee: str | None = None
    memo: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "source_account": self.source_account,
            "operation_type": self.operation_type,
            "success": self.success,
            "ledger": self.ledger,
            "fee": self.fee,
            "memo": self.memo,
            "error_message": self.error_message,
        }


@dataclass
class TradeRecord:
    trade_id: str
    order_id: str
    room_id: str
    direction: TradeDirection
    trade_type: TradeType
    status: TradeStatus
    base_asset: AssetInfo
    counter_asset: AssetInfo
    amount: Decimal
    price: Decimal
    total_value: Decimal
    initiator: TradeParticipant
    created_at: int
    counterparty: TradeParticipant | None = None
    completed_at: int | None = None
    expires_at: int | None = None
    settlement_transaction: SettlementTransaction | None = None
    chat_archive: ChatArchive | None = None
    notes: str | None = None
    tags: list[str] = field(default_factory=list)
    is_archived: bool = False
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "order_id": self.order_id,
            "room_id": self.room_id,
            "direction": self.direction.value,
            "trade_type": self.trade_type.value,
            "status": self.status.value,
            "base_asset": self.base_asset.to_dict(),
            "counter_asset": self.counter_asset.to_dict(),
            "amount": str(self.amount),
            "price": str(self.price),
            "total_value": str(self.total_value),
            "initiator": self.initiator.to_dict(),
            "created_at": self.created_at,
            "counterparty": self.counterparty.to_dict() if self.counterparty else None,
            "completed_at": self.completed_at,
            "expires_at": self.expires_at,
            "settlement_transaction": (self.settlement_transaction.to_dict()
                                       if self.settlement_transaction else None),
            "chat_archive": self.chat_archive.to_dict() if self.chat_archive else None,
            "notes": self.notes,
            "tags": list(self.tags),
            "is_archived": self.is_archived,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TradeRecord":
        return cls(
            trade_id=data["trade_id"],
            order_id=data["order_id"],
            room_id=data["room_id"],
            direction=TradeDirection(data["direction"]),
            trade_type=TradeType(data["trade_type"]),
            status=TradeStatus(data["status"]),
            base_asset=AssetInfo(**data["base_asset"]),
            counter_asset=AssetInfo(**data["counter_asset"]),
            amount=Decimal(data["amount"]),
            price=Decimal(data["price"]),
            total_value=Decimal(data["total_value"]),
            initiator=TradeParticipant(**data["initiator"]),
            created_at=data["created_at"],
            counterparty=(TradeParticipant(**data["counterparty"])
                          if data.get("counterparty") else None),
            completed_at=data.get("completed_at"),
            expires_at=data.get("expires_at"),
            settlement_transaction=(SettlementTransaction(**data["settlement_transaction"])
                                    if data.get("settlement_transaction") else None),
            chat_archive=(ChatArchive.from_dict(data["chat_archive"])
                          if data.get("chat_archive") else None),
            notes=data.get("notes"),
            tags=list(data.get("tags", [])),
            is_archived=data.get("is_archived", False),
            version=data.get("version", 0),
        )


# ---------------------------------------------------------------------------
# Archive Service
# ---------------------------------------------------------------------------

class ArchiveService:
    """
    Snapshots negotiation rooms and links them to trade records.
    Read-only with respect to the live conversation.
    """

    def __init__(
        self,
        messaging: MessagingLayer,
        *,
        policy: PolicyEngine | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._messaging = messaging
        self.policy = policy or PolicyEngine()
        self._clock = clock or utc_now
        self.env = Environment(loader=BaseLoader(), autoescape=False)

    def archive_conversation(self, room_id: str, window_start: int,
                             window_end: int) -> ChatArchive:
        """Snapshot the messages of ``room_id`` in [window_start, window_end] (ms)."""
        if window_start > window_end:
            raise ValidationError("Archive window starts after it ends.",
                                  details={"window_start": window_start, "window_end": window_end})
        now = to_millis(self._clock())
        if window_end > now:
            raise ValidationError(
                "Archive window is still open; only closed windows can be archived.",
                details={"window_end": window_end, "now": now},
            )

        archivable = set(self.policy.archivable_message_types)
        events = self._messaging.fetch_messages(room_id, window_start, window_end)
        messages = sorted(
            (
                ArchivedMessage(
                    event_id=e.event_id,
                    sender=e.sender,
                    timestamp=e.timestamp,
                    message_type=e.msgtype,
                    content=e.body,
                    sender_name=e.sender_name,
                    is_encrypted=e.encrypted,
                )
                for e in events
                if e.event_type in archivable and window_start <= e.timestamp <= window_end
            ),
            key=lambda m: (m.timestamp, m.event_id),
        )
        room_name = self._messaging.room_name(room_id)
        participants = sorted(set(self._messaging.room_members(room_id))
                              | {m.sender for m in messages})

        return ChatArchive(
            room_id=room_id,
            room_name=room_name,
            archive_timestamp=now,
            start_timestamp=window_start,
            end_timestamp=window_end,
            participants=tuple(participants),
            message_count=len(messages),
            messages=tuple(messages),
            archive_hash=compute_archive_hash(room_id, room_name, participants,
                                              window_start, window_end, messages),
        )

    def link_trade_to_archive(self, trade: TradeRecord, archive: ChatArchive) -> TradeRecord:
        """
        Return ``trade`` with the archive attached and is_archived set.

        Raises:
            WindowMismatchError: the archive is for another room, falls
                outside the trade lifetime, or no longer verifies
            ValidationError: the trade is already archived
        """
        if trade.is_archived:
            raise ValidationError(f"Trade {trade.trade_id} is already archived.",
                                  code="ALREADY_ARCHIVED", details={"trade_id": trade.trade_id})
        details = {
            "trade_id": trade.trade_id,
            "trade_window": [trade.created_at, trade.completed_at],
            "archive_window": [archive.start_timestamp, archive.end_timestamp],
        }
        if trade.completed_at is None:
            raise WindowMismatchError("Trade has not completed; its window is still open.",
                                      details=details)
        if archive.room_id != trade.room_id:
            raise WindowMismatchError(
                f"Archive room {archive.room_id} is not the trade room {trade.room_id}.",
                details=details,
            )
        if archive.start_timestamp < trade.created_at or archive.end_timestamp > trade.completed_at:
            raise WindowMismatchError("Archive window falls outside the trade lifetime.",
                                      details=details)
        if not verify_archive_integrity(archive):
            raise WindowMismatchError("Archive hash does not match its contents.",
                                      details={**details, "archive_hash": archive.archive_hash})
        return replace(trade, chat_archive=archive, is_archived=True)

    def archive_trade(self, trade: TradeRecord) -> TradeRecord:
        """Archive the trade's own lifetime window and link it."""
        if trade.completed_at is None:
            raise WindowMismatchError("Trade has not completed; its window is still open.",
                                      details={"trade_id": trade.trade_id})
        archive = self.archive_conversation(trade.room_id, trade.created_at, trade.completed_at)
        return self.link_trade_to_archive(trade, archive)

    def seal_lc(self, lc: LetterOfCredit, history: "TradeHistory | None" = None) -> TradeRecord:
        """Build the archived TradeRecord for a terminal LC."""
        if not lc.is_terminal:
            raise ValidationError(f"LC {lc.lc_id} is {lc.status.value}; only terminal LCs are sealed.",
                                  details={"lc_id": lc.lc_id, "status": lc.status.value})
        if not lc.matrix_room_id:
            raise ValidationError(f"LC {lc.lc_id} has no negotiation room.",
                                  details={"lc_id": lc.lc_id})

        completed = lc.status == LCStatus.COMPLETED
        closed_at = lc.completed_at if completed else lc.cancelled_at
        settlement_hash = lc.settlement_tx if completed else lc.refund_tx
        t = lc.terms
        trade = TradeRecord(
            trade_id=f"trade_{lc.lc_id}",
            order_id=lc.lc_number,
            room_id=lc.matrix_room_id,
            direction=TradeDirection.BUY,
            trade_type=TradeType.LC,
            status=TradeStatus.COMPLETED if completed else TradeStatus.CANCELLED,
            base_asset=AssetInfo(code=t.commodity, name=t.commodity, asset_type="commodity"),
            counter_asset=AssetInfo(code=t.currency, name=t.currency),
            amount=t.quantity,
            price=t.unit_price,
            total_value=t.amount,
            initiator=TradeParticipant(t.buyer.matrix_id, t.buyer.name, "buyer"),
            counterparty=TradeParticipant(t.seller.matrix_id, t.seller.name, "seller"),
            created_at=to_millis(parse_iso(lc.created_at)),
            completed_at=to_millis(parse_iso(closed_at or lc.updated_at)),
            settlement_transaction=SettlementTransaction(
                hash=settlement_hash,
                source_account=lc.escrow_address or "",
                operation_type="payment",
                success=True,
                memo=lc.display_number,
            ) if settlement_hash else None,
            notes=lc.cancellation_reason,
            tags=["lc", t.lc_type.value, lc.status.value],
        )
        trade = self.archive_trade(trade)
        if history is not None:
            history.save(trade)
        return trade

    # --- Presentation ---

    def summarize_archive(self, archive: ChatArchive) -> ArchiveSummary:
        senders = Counter(m.sender for m in archive.messages)
        return ArchiveSummary(
            message_count=archive.message_count,
            participant_count=len(archive.participants),
            time_span=_format_span(archive.end_timestamp - archive.start_timestamp),
            message_types=dict(Counter(m.message_type for m in archive.messages)),
            top_senders=senders.most_common(5),
        )

    def export_archive(self, archive: ChatArchive, fmt: str = "json") -> str:
        if fmt == "json":
            return json.dumps(archive.to_dict(), indent=2, ensure_ascii=False)
        if fmt == "txt":
            template = self.env.from_string(TRANSCRIPT_TEMPLATE)
            return template.render(
                archive=archive,
                archived_at=to_iso(from_millis(archive.archive_timestamp)),
                window_start=to_iso(from_millis(archive.start_timestamp)),
                window_end=to_iso(from_millis(archive.end_timestamp)),
                messages=[
                    {"at": to_iso(from_millis(m.timestamp)),
                     "name": m.sender_name or m.sender,
                     "content": m.content}
                    for m in archive.messages
                ],
            )
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(["timestamp", "sender", "sender_name", "message_type",
                             "content", "event_id"])
            for m in archive.messages:
                writer.writerow([m.timestamp, m.sender, m.sender_name or "",
                                 m.message_type, m.content, m.event_id])
            return buffer.getvalue()
        raise ValidationError(f"Unknown export format: {fmt}",
                              details={"allowed": ["json", "txt", "csv"]})


# ---------------------------------------------------------------------------
# Trade History
# ---------------------------------------------------------------------------

@dataclass
class TradeQueryResult:
    trades: list[TradeRecord]
    total: int
    has_more: bool


@dataclass
class TradeStatistics:
    total_trades: int
    completed_trades: int
    total_volume: Decimal
    average_trade_value: Decimal
    most_traded_asset: str
    top_counterparties: list[dict[str, Any]]


_SORT_KEYS = {"created_at", "completed_at", "amount", "price", "total_value", "status"}


class TradeHistory:
    """Durable trade records with filtered, paginated queries."""

    def __init__(self, store: _VersionedStore) -> None:
        self._store = store

    def save(self, trade: TradeRecord) -> TradeRecord:
        if trade.is_archived and (trade.chat_archive is None
                                  or not verify_archive_integrity(trade.chat_archive)):
            raise ValidationError("An archived trade must carry a verifiable chat archive.",
                                  details={"trade_id": trade.trade_id})
        record = self._store.put(TRADES, trade.trade_id, trade.to_dict(),
                                 expected_version=trade.version)
        trade.version = record["version"]
        return trade

    def get(self, trade_id: str) -> TradeRecord:
        data = self._store.find(TRADES, trade_id)
        if data is None:
            raise NotFoundError(f"Trade not found: {trade_id}", details={"trade_id": trade_id})
        return TradeRecord.from_dict(data)

    def query(
        self,
        status: list[str] | None = None,
        direction: list[str] | None = None,
        trade_type: list[str] | None = None,
        asset_code: str | None = None,
        counterparty: str | None = None,
        date_from: int | None = None,
        date_to: int | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> TradeQueryResult:
        if sort_by not in _SORT_KEYS:
            raise ValidationError(f"Cannot sort by {sort_by}.",
                                  details={"allowed": sorted(_SORT_KEYS)})
        trades = []
        for data in self._store.all(TRADES):
            t = TradeRecord.from_dict(data)
            if status and t.status.value not in status:
                continue
            if direction and t.direction.value not in direction:
                continue
            if trade_type and t.trade_type.value not in trade_type:
                continue
            if asset_code and asset_code.lower() not in (t.base_asset.code.lower(),
                                                         t.counter_asset.code.lower()):
                continue
            if counterparty:
                needle = counterparty.lower()
                if t.counterparty is None or (
                        needle not in t.counterparty.username.lower()
                        and needle != t.counterparty.matrix_user_id.lower()):
                    continue
            if date_from is not None and t.created_at < date_from:
                continue
            if date_to is not None and t.created_at > date_to:
                continue
            if search:
                haystack = " ".join(filter(None, [
                    t.order_id, t.base_asset.code, t.counter_asset.code, t.notes,
                    t.counterparty.username if t.counterparty else None, *t.tags,
                ])).lower()
                if search.lower() not in haystack:
                    continue
            trades.append(t)

        def sort_key(t: TradeRecord) -> Any:
            value = getattr(t, sort_by)
            if sort_by == "status":
                return value.value
            return value if value is not None else 0

        trades.sort(key=sort_key, reverse=sort_order == "desc")
        page = trades[offset:offset + limit]
        return TradeQueryResult(trades=page, total=len(trades),
                                has_more=offset + limit < len(trades))

    def statistics(self) -> TradeStatistics:
        trades = [TradeRecord.from_dict(d) for d in self._store.all(TRADES)]
        completed = [t for t in trades if t.status == TradeStatus.COMPLETED]
        volume = sum((t.total_value for t in completed), Decimal("0"))

        assets = Counter(t.base_asset.code for t in completed)
        counterparties: dict[str, dict[str, Any]] = {}
        for t in completed:
            if t.counterparty is None:
                continue
            stats = counterparties.setdefault(t.counterparty.matrix_user_id, {
                "user_id": t.counterparty.matrix_user_id,
                "username": t.counterparty.username,
                "trade_count": 0,
                "total_volume": Decimal("0"),
            })
            stats["trade_count"] += 1
            stats["total_volume"] += t.total_value

        return TradeStatistics(
            total_trades=len(trades),
            completed_trades=len(completed),
            total_volume=volume,
            average_trade_value=(volume / len(completed)) if completed else Decimal("0"),
            most_traded_asset=assets.most_common(1)[0][0] if assets else "N/A",
            top_counterparties=sorted(counterparties.values(),
                                      key=lambda s: s["trade_count"], reverse=True)[:5],
        )
