"""
Dispute Resolution Tests
=========================
Tests for: raising (LC freeze), arbiter assignment, evidence intake
           with archive verification, fund-conserving resolution,
           partially failed resolution retry, appeals
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from lc_engine.dispute_resolution import Decision, DisputeStatus
from lc_engine.errors import (
    IllegalTransitionError,
    ImbalancedResolutionError,
    LedgerFailedError,
    LedgerPendingError,
    UnauthorizedError,
    ValidationError,
)
from lc_engine.lc_lifecycle import LCStatus
from lc_engine.ledger import SettlementOutcome, TransferResult
from lc_engine.timeutils import parse_iso, to_millis

from conftest import (
    ARBITER,
    BUYER,
    BUYER_SECRET,
    BUYER_WALLET,
    ESCROW,
    ESCROW_KEY,
    SELLER,
    SELLER_WALLET,
)


SMALL_LC = {"amount": "10000", "quantity": "1000", "unit_price": "10"}


def _disputed(workflow, desk, status=LCStatus.SHIPPED):
    lc = workflow.to_status(status, **SMALL_LC)
    workflow.clock.advance(hours=1)
    dispute = desk.disputes.raise_dispute(lc.lc_id, BUYER, "Goods arrived water damaged")
    return lc, dispute


def _under_review(workflow, desk, status=LCStatus.SHIPPED):
    lc, dispute = _disputed(workflow, desk, status)
    return lc, desk.disputes.begin_review(dispute.dispute_id, ARBITER)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 1: Raising
# ══════════════════════════════════════════════════════════════════

class TestRaise:

    def test_raise_freezes_lc(self, workflow, desk):
        lc, dispute = _disputed(workflow, desk)
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.status_before_dispute == "shipped"
        lc = desk.lifecycle.load_lc(lc.lc_id)
        assert lc.status == LCStatus.DISPUTED
        assert lc.dispute_id == dispute.dispute_id

    def test_frozen_lc_refuses_normal_transitions(self, workflow, desk):
        lc, _ = _disputed(workflow, desk)
        with pytest.raises(IllegalTransitionError) as exc:
            desk.lifecycle.advance(lc.lc_id, LCStatus.DOCUMENTS_SUBMITTED, SELLER)
        assert "frozen" in str(exc.value)

    def test_escrow_reports_locked(self, workflow, desk):
        lc, _ = _disputed(workflow, desk)
        assert desk.escrow.escrow_account(lc.lc_id).locked is True

    def test_draft_cannot_be_disputed(self, workflow, desk):
        lc = workflow.create()
        with pytest.raises(IllegalTransitionError):
            desk.disputes.raise_dispute(lc.lc_id, BUYER, "Not happy")

    def test_outsider_cannot_raise(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(UnauthorizedError):
            desk.disputes.raise_dispute(lc.lc_id, ARBITER, "Suspicious")

    def test_reason_required(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(ValidationError):
            desk.disputes.raise_dispute(lc.lc_id, BUYER, "  ")

    def test_pending_funding_blocks_dispute(self, workflow, desk, ledger):
        lc = workflow.to_status(LCStatus.SIGNED, **SMALL_LC)
        workflow.open_accounts(lc.terms.amount)
        ledger.script_outcomes(SettlementOutcome.PENDING)
        with pytest.raises(LedgerPendingError):
            desk.escrow.fund_escrow(lc.lc_id, BUYER, ESCROW, "10000", "USDC", BUYER_SECRET)

        with pytest.raises(LedgerPendingError):
            desk.disputes.raise_dispute(lc.lc_id, BUYER, "Seller stopped answering")
        assert desk.disputes.list_disputes(lc.lc_id) == []
        assert desk.lifecycle.load_lc(lc.lc_id).status == LCStatus.SIGNED

    def test_initial_evidence_recorded(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        dispute = desk.disputes.raise_dispute(
            lc.lc_id, SELLER, "Buyer refuses inspection",
            evidence=[{"description": "Surveyor report", "content": b"report bytes"}],
        )
        assert dispute.evidence[0].kind == "document"
        assert dispute.evidence[0].content_hash


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 2: Review and evidence
# ══════════════════════════════════════════════════════════════════

class TestReviewAndEvidence:

    def test_party_cannot_arbitrate(self, workflow, desk):
        _, dispute = _disputed(workflow, desk)
        with pytest.raises(UnauthorizedError):
            desk.disputes.begin_review(dispute.dispute_id, SELLER)

    def test_begin_review_assigns_arbiter(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.arbiter == ARBITER

    def test_review_cannot_restart(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        with pytest.raises(IllegalTransitionError):
            desk.disputes.begin_review(dispute.dispute_id, ARBITER)

    def test_chat_archive_evidence_is_verified(self, workflow, desk, clock):
        lc, dispute = _under_review(workflow, desk)
        archive = desk.archive.archive_conversation(
            lc.matrix_room_id, to_millis(parse_iso(lc.created_at)), to_millis(clock()))
        updated = desk.disputes.submit_evidence(dispute.dispute_id, SELLER, [
            {"description": "Negotiation transcript", "archive": archive},
        ])
        item = updated.evidence[-1]
        assert item.kind == "chat_archive"
        assert item.archive["archive_hash"] == archive.archive_hash

    def test_tampered_archive_refused(self, workflow, desk, clock):
        lc, dispute = _under_review(workflow, desk)
        archive = desk.archive.archive_conversation(
            lc.matrix_room_id, to_millis(parse_iso(lc.created_at)), to_millis(clock()))
        first = archive.messages[0]
        forged = replace(archive, messages=(replace(first, content="We agreed on 5000"),
                                            *archive.messages[1:]))
        with pytest.raises(ValidationError) as exc:
            desk.disputes.submit_evidence(dispute.dispute_id, SELLER,
                                          [{"description": "Transcript", "archive": forged}])
        assert exc.value.code == "ARCHIVE_TAMPERED"
        assert len(desk.disputes.get_dispute(dispute.dispute_id).evidence) == 0

    def test_outsider_cannot_submit(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        with pytest.raises(UnauthorizedError):
            desk.disputes.submit_evidence(dispute.dispute_id, "@mallory:evil.example",
                                          [{"description": "trust me"}])

    def test_empty_evidence_refused(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        with pytest.raises(ValidationError):
            desk.disputes.submit_evidence(dispute.dispute_id, BUYER, [{}])


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 3: Resolution
# ══════════════════════════════════════════════════════════════════

class TestResolve:

    def test_split_conserves_funds_and_completes(self, workflow, desk, ledger):
        lc, dispute = _under_review(workflow, desk)
        resolved = desk.disputes.resolve(dispute.dispute_id, ARBITER, "split",
                                         "6000", "4000", "Partial damage confirmed", ESCROW_KEY)
        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.resolution.escrow_balance == Decimal("10000")
        assert len(resolved.resolution.tx_refs) == 2
        assert ledger.query_balance(BUYER_WALLET, "USDC") == Decimal("7000")
        assert ledger.query_balance(SELLER_WALLET, "USDC") == Decimal("4000")
        assert ledger.query_balance(ESCROW, "USDC") == Decimal("0")
        assert desk.lifecycle.load_lc(lc.lc_id).status == LCStatus.COMPLETED

    def test_imbalanced_split_moves_nothing(self, workflow, desk, ledger, audit):
        lc, dispute = _under_review(workflow, desk)
        calls = list(ledger.transfer_calls)
        with pytest.raises(ImbalancedResolutionError):
            desk.disputes.resolve(dispute.dispute_id, ARBITER, Decision.SPLIT,
                                  "7000", "4000", "Generous to buyer", ESCROW_KEY)
        assert ledger.transfer_calls == calls
        assert ledger.query_balance(ESCROW, "USDC") == Decimal("10000")
        assert desk.disputes.get_dispute(dispute.dispute_id).status == DisputeStatus.UNDER_REVIEW
        assert desk.lifecycle.load_lc(lc.lc_id).status == LCStatus.DISPUTED
        assert audit.read_records(operation="dispute_resolution_rejected",
                                  subject_id=dispute.dispute_id)

    @pytest.mark.parametrize("buyer_amount", ["NaN", "Infinity", "six thousand"])
    def test_non_numeric_amount_moves_nothing(self, workflow, desk, ledger, buyer_amount):
        _, dispute = _under_review(workflow, desk)
        calls = list(ledger.transfer_calls)
        with pytest.raises(ValidationError):
            desk.disputes.resolve(dispute.dispute_id, ARBITER, "split",
                                  buyer_amount, "4000", "Partial damage", ESCROW_KEY)
        assert ledger.transfer_calls == calls
        assert desk.disputes.get_dispute(dispute.dispute_id).status == DisputeStatus.UNDER_REVIEW

    def test_full_refund_cancels(self, workflow, desk, ledger):
        lc, dispute = _under_review(workflow, desk)
        desk.disputes.resolve(dispute.dispute_id, ARBITER, "refund_to_buyer",
                              "10000", "0", "Goods never shipped", ESCROW_KEY)
        lc = desk.lifecycle.load_lc(lc.lc_id)
        assert lc.status == LCStatus.CANCELLED
        assert ledger.query_balance(BUYER_WALLET, "USDC") == Decimal("11000")

    def test_unfunded_dispute_resolves_with_nothing_to_move(self, workflow, desk):
        lc, dispute = _under_review(workflow, desk, status=LCStatus.SIGNED)
        desk.disputes.resolve(dispute.dispute_id, ARBITER, "refund_to_buyer",
                              "0", "0", "Deal abandoned before funding")
        assert desk.lifecycle.load_lc(lc.lc_id).status == LCStatus.CANCELLED

    def test_decision_must_match_amounts(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        with pytest.raises(ValidationError):
            desk.disputes.resolve(dispute.dispute_id, ARBITER, "release_to_seller",
                                  "1", "9999", "Mostly seller", ESCROW_KEY)

    def test_only_assigned_arbiter_resolves(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        with pytest.raises(UnauthorizedError):
            desk.disputes.resolve(dispute.dispute_id, "@dave:arbitration.example",
                                  "release_to_seller", "0", "10000", "Seller wins", ESCROW_KEY)

    def test_evidence_closed_after_resolution(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        desk.disputes.resolve(dispute.dispute_id, ARBITER, "release_to_seller",
                              "0", "10000", "Seller performed", ESCROW_KEY)
        with pytest.raises(ValidationError) as exc:
            desk.disputes.submit_evidence(dispute.dispute_id, BUYER, [{"description": "late"}])
        assert exc.value.code == "EVIDENCE_CLOSED"

    def test_failed_leg_retries_without_paying_twice(self, workflow, desk, ledger, monkeypatch):
        lc, dispute = _under_review(workflow, desk)
        original = ledger.transfer
        failed = []

        def flaky(source, destination, amount, currency, key, authorization=None):
            if key.endswith(":seller") and not failed:
                failed.append(key)
                return TransferResult(SettlementOutcome.FAILED, None, "node busy")
            return original(source, destination, amount, currency, key, authorization)
        monkeypatch.setattr(ledger, "transfer", flaky)

        with pytest.raises(LedgerFailedError):
            desk.disputes.resolve(dispute.dispute_id, ARBITER, "split",
                                  "6000", "4000", "Partial damage", ESCROW_KEY)
        assert desk.disputes.get_dispute(dispute.dispute_id).status == DisputeStatus.UNDER_REVIEW
        assert ledger.query_balance(ESCROW, "USDC") == Decimal("4000")

        resolved = desk.disputes.resolve(dispute.dispute_id, ARBITER, "split",
                                         "6000", "4000", "Partial damage", ESCROW_KEY)
        assert resolved.resolution.escrow_balance == Decimal("10000")
        buyer_key = f"dispute:{dispute.dispute_id}:1:buyer"
        assert ledger.debit_count(buyer_key) == 1
        assert ledger.query_balance(BUYER_WALLET, "USDC") == Decimal("7000")
        assert desk.lifecycle.load_lc(lc.lc_id).status == LCStatus.COMPLETED


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 4: Appeals
# ══════════════════════════════════════════════════════════════════

class TestAppeal:

    def _resolved(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        return desk.disputes.resolve(dispute.dispute_id, ARBITER, "release_to_seller",
                                     "0", "10000", "Seller performed", ESCROW_KEY)

    def test_appeal_opens_new_round(self, workflow, desk):
        dispute = self._resolved(workflow, desk)
        appealed = desk.disputes.appeal(dispute.dispute_id, BUYER, "Arbiter ignored photos")
        assert appealed.status == DisputeStatus.APPEALED
        assert appealed.review_round == 2
        assert appealed.arbiter is None
        assert appealed.resolution is None
        assert len(appealed.prior_resolutions) == 1

    def test_arbiter_cannot_appeal(self, workflow, desk):
        dispute = self._resolved(workflow, desk)
        with pytest.raises(UnauthorizedError):
            desk.disputes.appeal(dispute.dispute_id, ARBITER)

    def test_unresolved_dispute_cannot_be_appealed(self, workflow, desk):
        _, dispute = _under_review(workflow, desk)
        with pytest.raises(IllegalTransitionError):
            desk.disputes.appeal(dispute.dispute_id, BUYER)

    def test_appeal_limit(self, workflow, desk):
        dispute = self._resolved(workflow, desk)
        desk.disputes.appeal(dispute.dispute_id, BUYER, "second look")
        desk.disputes.begin_review(dispute.dispute_id, "@dave:arbitration.example")
        desk.disputes.resolve(dispute.dispute_id, "@dave:arbitration.example",
                              "release_to_seller", "0", "0", "Funds already released")
        with pytest.raises(IllegalTransitionError) as exc:
            desk.disputes.appeal(dispute.dispute_id, BUYER, "third look")
        assert "appeal limit" in str(exc.value)

    def test_listing_by_lc(self, workflow, desk):
        lc, dispute = _disputed(workflow, desk)
        assert [d.dispute_id for d in desk.disputes.list_disputes(lc.lc_id)] \
            == [dispute.dispute_id]
        assert "Goods arrived water damaged" in dispute.summary()
