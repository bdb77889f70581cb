"""
Shared fixtures: a whole-second fake clock, in-memory store, message log
and ledger, and a Workflow driver that walks an LC to any status.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from lc_engine.audit_logger import AuditLogger
from lc_engine.desk import TradeFinanceDesk
from lc_engine.invitations import InvitationParty
from lc_engine.lc_lifecycle import LCStatus
from lc_engine.ledger import InMemoryLedger
from lc_engine.messaging import InMemoryMessageLog
from lc_engine.policy_engine import PolicyEngine
from lc_engine.store import MemoryRecordStore


BUYER = "@alice:trade.example"
SELLER = "@bob:trade.example"
ARBITER = "@carol:arbitration.example"
BUYER_WALLET = "GBUYERWALLET"
SELLER_WALLET = "GSELLERWALLET"
ESCROW = "GESCROW0001"
BUYER_SECRET = "buyer-secret"
ESCROW_KEY = "escrow-release-key"

REQUIRED_DOCS = ["Commercial Invoice", "Bill of Lading"]


class FakeClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_terms(**overrides) -> dict:
    terms = {
        "lc_type": "sight",
        "amount": "98500",
        "currency": "USDC",
        "buyer": {"name": "Alice Imports Ltd", "address": "1 Dock Rd, Rotterdam",
                  "matrix_id": BUYER, "wallet_address": BUYER_WALLET},
        "seller": {"name": "Bob Exports SA", "address": "9 Rua do Porto, Santos",
                   "matrix_id": SELLER, "wallet_address": SELLER_WALLET},
        "commodity": "Arabica Coffee",
        "quantity": "50000",
        "unit_price": "1.97",
        "incoterms": "FOB",
        "port_of_loading": "Santos",
        "port_of_destination": "Rotterdam",
        "expiry_date": "2026-06-30",
        "latest_shipment_date": "2026-05-31",
        "required_documents": list(REQUIRED_DOCS),
    }
    terms.update(overrides)
    return terms


class Workflow:
    """Drives one LC through the desk's managers, raising on any error."""

    def __init__(self, desk: TradeFinanceDesk, ledger: InMemoryLedger,
                 messaging: InMemoryMessageLog, clock: FakeClock) -> None:
        self.desk = desk
        self.ledger = ledger
        self.messaging = messaging
        self.clock = clock

    def authorize(self) -> str:
        invitation = self.desk.invitations.send_invitation(
            InvitationParty("alice", "buyer", BUYER, "Alice Imports"),
            InvitationParty("bob", "seller", SELLER, "Bob Exports"),
            "Coffee shipment Q2",
        )
        self.clock.advance(hours=2)
        accepted = self.desk.invitations.respond_to_invitation(
            invitation.invitation_id, "bob", True, "Happy to proceed")
        return accepted.authorization_id

    def create(self, **overrides):
        self.clock.advance(minutes=5)
        return self.desk.lifecycle.create_lc(make_terms(**overrides), self.authorize(), BUYER)

    def chat(self, lc, sender: str, body: str) -> None:
        self.clock.advance(minutes=1)
        self.messaging.post_message(lc.matrix_room_id, sender, body)

    def open_accounts(self, amount) -> None:
        self.ledger.deposit(BUYER_WALLET, "USDC", Decimal(str(amount)) + Decimal("1000"))
        self.ledger.register_account(BUYER_WALLET, BUYER_SECRET)
        self.ledger.register_account(ESCROW, ESCROW_KEY)

    def to_status(self, target: LCStatus, **overrides):
        """Create an LC and walk it along the happy path up to ``target``."""
        lc = self.create(**overrides)
        path = [LCStatus.NEGOTIATING, LCStatus.SIGNED, LCStatus.FUNDED, LCStatus.SHIPPED,
                LCStatus.DOCUMENTS_SUBMITTED, LCStatus.DELIVERED, LCStatus.COMPLETED]
        lifecycle, escrow = self.desk.lifecycle, self.desk.escrow
        for step in path[:path.index(target) + 1]:
            self.clock.advance(hours=1)
            if step == LCStatus.NEGOTIATING:
                lc = lifecycle.advance(lc.lc_id, step, BUYER)
                self.chat(lc, BUYER, "Can you ship by end of May?")
                self.chat(lc, SELLER, "Yes, FOB Santos.")
            elif step == LCStatus.SIGNED:
                lifecycle.sign(lc.lc_id, BUYER)
                lc = lifecycle.sign(lc.lc_id, SELLER)
            elif step == LCStatus.FUNDED:
                self.open_accounts(lc.terms.amount)
                escrow.fund_escrow(lc.lc_id, BUYER, ESCROW, lc.terms.amount, "USDC", BUYER_SECRET)
            elif step == LCStatus.SHIPPED:
                lifecycle.advance(lc.lc_id, step, SELLER, evidence={"shipment": {
                    "bill_of_lading_number": "MAEU123456789",
                    "carrier": "Maersk",
                    "shipment_date": "2026-05-20",
                }})
            elif step == LCStatus.DOCUMENTS_SUBMITTED:
                for doc_type in lc.terms.required_documents:
                    lifecycle.upload_document(lc.lc_id, SELLER, doc_type,
                                              f"{doc_type}.pdf", f"{doc_type} contents")
                lifecycle.advance(lc.lc_id, step, SELLER)
            elif step == LCStatus.DELIVERED:
                current = lifecycle.load_lc(lc.lc_id)
                for doc in current.current_documents().values():
                    lifecycle.verify_document(lc.lc_id, BUYER, doc.document_id)
                lifecycle.advance(lc.lc_id, step, BUYER)
            elif step == LCStatus.COMPLETED:
                escrow.release_funds(lc.lc_id, ESCROW, SELLER_WALLET, lc.terms.amount,
                                     "USDC", ESCROW_KEY)
            lc = lifecycle.load_lc(lc.lc_id)
        return lc


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def messaging(clock):
    return InMemoryMessageLog(clock)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def policy():
    return PolicyEngine(overrides={"escrow_controls": {"ledger_timeout_seconds": 0.5}})


@pytest.fixture
def audit(tmp_path, clock):
    return AuditLogger(tmp_path / "audit", clock=clock)


@pytest.fixture
def desk(store, messaging, ledger, policy, audit, clock):
    desk = TradeFinanceDesk(store, messaging, ledger, policy=policy, audit=audit, clock=clock)
    yield desk
    desk.close()


@pytest.fixture
def workflow(desk, ledger, messaging, clock):
    return Workflow(desk, ledger, messaging, clock)
