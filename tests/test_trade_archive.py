"""
Trade Archive Tests
====================
Tests for: archive_conversation window rules, deterministic hashing,
           integrity verification, trade linking, LC sealing, exports,
           trade history queries and statistics
"""

import json
from dataclasses import replace
from decimal import Decimal

import pytest

from lc_engine.errors import NotFoundError, ValidationError, WindowMismatchError
from lc_engine.lc_lifecycle import LCStatus
from lc_engine.timeutils import to_millis
from lc_engine.trade_archive import (
    ArchiveService,
    AssetInfo,
    ChatArchive,
    TradeDirection,
    TradeHistory,
    TradeParticipant,
    TradeRecord,
    TradeStatus,
    TradeType,
    verify_archive_integrity,
)

from conftest import BUYER, SELLER


MINUTE = 60_000


@pytest.fixture
def service(messaging, policy, clock):
    return ArchiveService(messaging, policy=policy, clock=clock)


@pytest.fixture
def room(messaging, clock):
    """A room with four chat messages a minute apart and one reaction."""
    room_id = messaging.create_negotiation_channel([BUYER, SELLER], "XLM/USDC desk")
    base = to_millis(clock())
    messaging.post_message(room_id, BUYER, "Offer 1000 XLM at 0.12", timestamp=base + MINUTE)
    messaging.post_message(room_id, SELLER, "Counter at 0.125", timestamp=base + 2 * MINUTE,
                           sender_name="Bob")
    messaging.post_message(room_id, SELLER, "thumbs up", timestamp=base + 2 * MINUTE,
                           event_type="m.reaction")
    messaging.post_message(room_id, BUYER, "Deal at 0.12", timestamp=base + 3 * MINUTE)
    messaging.post_message(room_id, BUYER, "Sent", timestamp=base + 10 * MINUTE)
    clock.advance(hours=1)
    return room_id, base


def _trade(room_id, created, completed, **overrides):
    fields = dict(
        trade_id="trade_otc_1",
        order_id="ORD-0001",
        room_id=room_id,
        direction=TradeDirection.BUY,
        trade_type=TradeType.OTC,
        status=TradeStatus.COMPLETED,
        base_asset=AssetInfo("XLM", "Stellar Lumens", None, "native"),
        counter_asset=AssetInfo("USDC", "USD Coin"),
        amount=Decimal("1000"),
        price=Decimal("0.12"),
        total_value=Decimal("120"),
        initiator=TradeParticipant(BUYER, "alice", "buyer"),
        counterparty=TradeParticipant(SELLER, "bob", "seller"),
        created_at=created,
        completed_at=completed,
    )
    fields.update(overrides)
    return TradeRecord(**fields)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 1: Archiving
# ══════════════════════════════════════════════════════════════════

class TestArchiveConversation:

    def test_window_selects_messages(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base + MINUTE, base + 3 * MINUTE)
        assert archive.message_count == 3
        assert [m.content for m in archive.messages] == [
            "Offer 1000 XLM at 0.12", "Counter at 0.125", "Deal at 0.12"]
        assert archive.participants == (BUYER, SELLER)
        assert archive.room_name == "XLM/USDC desk"
        assert verify_archive_integrity(archive)

    def test_hash_is_reproducible(self, service, room, clock):
        room_id, base = room
        first = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        clock.advance(minutes=30)
        second = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        assert first.archive_timestamp != second.archive_timestamp
        assert first.archive_hash == second.archive_hash

    def test_open_window_refused(self, service, room, clock):
        room_id, _ = room
        with pytest.raises(ValidationError):
            service.archive_conversation(room_id, 0, to_millis(clock()) + 1)

    def test_inverted_window_refused(self, service, room):
        room_id, base = room
        with pytest.raises(ValidationError):
            service.archive_conversation(room_id, base + MINUTE, base)

    def test_empty_window_still_verifies(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base + 4 * MINUTE, base + 5 * MINUTE)
        assert archive.message_count == 0
        assert verify_archive_integrity(archive)

    def test_unknown_room(self, service, clock):
        with pytest.raises(NotFoundError):
            service.archive_conversation("!nowhere:lc-engine", 0, to_millis(clock()))


class TestVerify:

    def test_edited_content_detected(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        edited = replace(archive.messages[1], content="Counter at 0.10")
        forged = replace(archive, messages=(archive.messages[0], edited, *archive.messages[2:]))
        assert not verify_archive_integrity(forged)

    def test_dropped_message_detected(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        forged = replace(archive, messages=archive.messages[1:],
                         message_count=archive.message_count - 1)
        assert not verify_archive_integrity(forged)

    def test_reordered_messages_detected(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        forged = replace(archive, messages=tuple(reversed(archive.messages)))
        assert not verify_archive_integrity(forged)

    @pytest.mark.parametrize("change", [
        {"sender_name": "Mallory"},
        {"is_encrypted": True},
        {"decrypted_content": "Counter at 0.10"},
    ])
    def test_edited_message_metadata_detected(self, service, room, change):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        edited = replace(archive.messages[1], **change)
        forged = replace(archive, messages=(archive.messages[0], edited, *archive.messages[2:]))
        assert not verify_archive_integrity(forged)

    def test_added_encryption_key_detected(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        assert not verify_archive_integrity(replace(archive, encryption_key="k-forged"))

    def test_survives_json_transport(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        restored = ChatArchive.from_dict(json.loads(json.dumps(archive.to_dict())))
        assert verify_archive_integrity(restored)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 2: Linking
# ══════════════════════════════════════════════════════════════════

class TestLink:

    def test_link_inside_lifetime(self, service, room):
        room_id, base = room
        trade = _trade(room_id, base, base + 10 * MINUTE)
        archive = service.archive_conversation(room_id, base, base + 10 * MINUTE)
        linked = service.link_trade_to_archive(trade, archive)
        assert linked.is_archived
        assert linked.chat_archive.archive_hash == archive.archive_hash
        assert not trade.is_archived

    def test_window_outside_lifetime(self, service, room):
        room_id, base = room
        trade = _trade(room_id, base + MINUTE, base + 3 * MINUTE)
        archive = service.archive_conversation(room_id, base, base + 3 * MINUTE)
        with pytest.raises(WindowMismatchError):
            service.link_trade_to_archive(trade, archive)

    def test_other_room_refused(self, service, room, messaging):
        room_id, base = room
        other = messaging.create_negotiation_channel([BUYER, SELLER], "Other desk")
        trade = _trade(other, base, base + 10 * MINUTE)
        archive = service.archive_conversation(room_id, base, base + 10 * MINUTE)
        with pytest.raises(WindowMismatchError):
            service.link_trade_to_archive(trade, archive)

    def test_open_trade_refused(self, service, room):
        room_id, base = room
        trade = _trade(room_id, base, None, status=TradeStatus.PENDING)
        archive = service.archive_conversation(room_id, base, base + MINUTE)
        with pytest.raises(WindowMismatchError):
            service.link_trade_to_archive(trade, archive)

    def test_tampered_archive_refused(self, service, room):
        room_id, base = room
        trade = _trade(room_id, base, base + 10 * MINUTE)
        archive = service.archive_conversation(room_id, base, base + 10 * MINUTE)
        forged = replace(archive, room_name="Renamed desk")
        with pytest.raises(WindowMismatchError):
            service.link_trade_to_archive(trade, forged)

    def test_relink_refused(self, service, room):
        room_id, base = room
        trade = service.archive_trade(_trade(room_id, base, base + 10 * MINUTE))
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        with pytest.raises(ValidationError) as exc:
            service.link_trade_to_archive(trade, archive)
        assert exc.value.code == "ALREADY_ARCHIVED"


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 3: Sealing LCs
# ══════════════════════════════════════════════════════════════════

class TestSealLC:

    def test_completed_lc_sealed(self, workflow, desk):
        lc = workflow.to_status(LCStatus.COMPLETED)
        trade = desk.archive.seal_lc(lc, desk.history)
        assert trade.trade_id == f"trade_{lc.lc_id}"
        assert trade.trade_type == TradeType.LC
        assert trade.status == TradeStatus.COMPLETED
        assert trade.order_id == lc.lc_number
        assert trade.settlement_transaction.hash == lc.settlement_tx
        assert trade.is_archived and verify_archive_integrity(trade.chat_archive)
        bodies = [m.content for m in trade.chat_archive.messages]
        assert "Can you ship by end of May?" in bodies
        assert desk.history.get(trade.trade_id).version == 1

    def test_cancelled_lc_sealed_with_reason(self, workflow, desk):
        lc = workflow.create()
        workflow.clock.advance(minutes=10)
        lc = desk.lifecycle.cancel(lc.lc_id, SELLER, "price moved")
        trade = desk.archive.seal_lc(lc)
        assert trade.status == TradeStatus.CANCELLED
        assert trade.notes == "price moved"
        assert trade.settlement_transaction is None

    def test_live_lc_not_sealed(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(ValidationError):
            desk.archive.seal_lc(lc)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 4: Export and summary
# ══════════════════════════════════════════════════════════════════

class TestExport:

    def test_json_export(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        data = json.loads(service.export_archive(archive, "json"))
        assert data["archive_hash"] == archive.archive_hash

    def test_txt_export(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        text = service.export_archive(archive, "txt")
        assert text.startswith("Chat Archive: XLM/USDC desk")
        assert f"Hash: {archive.archive_hash}" in text
        assert "Bob: Counter at 0.125" in text
        assert f"{BUYER}: Deal at 0.12" in text

    def test_csv_export(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        lines = service.export_archive(archive, "csv").splitlines()
        assert lines[0] == "timestamp,sender,sender_name,message_type,content,event_id"
        assert len(lines) == 1 + archive.message_count

    def test_unknown_format(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 5 * MINUTE)
        with pytest.raises(ValidationError):
            service.export_archive(archive, "pdf")

    def test_summary(self, service, room):
        room_id, base = room
        archive = service.archive_conversation(room_id, base, base + 10 * MINUTE)
        summary = service.summarize_archive(archive)
        assert summary.message_count == 4
        assert summary.time_span == "10m 0s"
        assert summary.top_senders[0] == (BUYER, 3)
        assert summary.message_types == {"m.text": 4}


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 5: Trade history
# ══════════════════════════════════════════════════════════════════

class TestTradeHistory:

    @pytest.fixture
    def history(self, store):
        history = TradeHistory(store)
        history.save(_trade("!a:x", 1_000, 2_000))
        history.save(_trade("!b:x", 3_000, 4_000, trade_id="trade_otc_2", order_id="ORD-0002",
                            direction=TradeDirection.SELL, total_value=Decimal("300"),
                            counterparty=TradeParticipant("@dan:trade.example", "dan", "buyer")))
        history.save(_trade("!c:x", 5_000, None, trade_id="trade_otc_3", order_id="ORD-0003",
                            status=TradeStatus.PENDING, notes="awaiting fill"))
        return history

    def test_default_sort_newest_first(self, history):
        result = history.query()
        assert [t.trade_id for t in result.trades] == ["trade_otc_3", "trade_otc_2",
                                                       "trade_otc_1"]
        assert result.total == 3 and not result.has_more

    def test_filters(self, history):
        assert history.query(status=["pending"]).total == 1
        assert history.query(direction=["sell"]).trades[0].trade_id == "trade_otc_2"
        assert history.query(counterparty="dan").total == 1
        assert history.query(asset_code="usdc").total == 3
        assert history.query(date_from=2_000, date_to=4_000).total == 1
        assert history.query(search="awaiting").total == 1

    def test_pagination(self, history):
        page = history.query(sort_by="total_value", sort_order="asc", limit=2)
        assert [t.total_value for t in page.trades] == [Decimal("120"), Decimal("120")]
        assert page.has_more
        assert history.query(limit=2, offset=2).has_more is False

    def test_bad_sort_key(self, history):
        with pytest.raises(ValidationError):
            history.query(sort_by="trade_id")

    def test_statistics(self, history):
        stats = history.statistics()
        assert stats.total_trades == 3
        assert stats.completed_trades == 2
        assert stats.total_volume == Decimal("420")
        assert stats.average_trade_value == Decimal("210")
        assert stats.most_traded_asset == "XLM"
        assert {c["username"] for c in stats.top_counterparties} == {"bob", "dan"}

    def test_archived_flag_needs_archive(self, history):
        with pytest.raises(ValidationError):
            history.save(_trade("!d:x", 1, 2, trade_id="trade_otc_4", is_archived=True))

    def test_unknown_trade(self, history):
        with pytest.raises(NotFoundError):
            history.get("trade_missing")
