"""
LC State Machine Tests
=======================
Tests for: LCTerms validation, create_lc authorization, transition
           legality (predecessor, role, precondition), signatures,
           documents, terms amendment, CAS versioning, numbering
"""

from decimal import Decimal

import pytest

from lc_engine.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from lc_engine.lc_lifecycle import (
    ESCROW_AGENT,
    TRANSITION_ROLES,
    TRANSITIONS,
    DocumentStatus,
    LCStatus,
    LCTerms,
    format_lc_number,
    progress,
)

from conftest import BUYER, ESCROW, SELLER, make_terms


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 1: Terms
# ══════════════════════════════════════════════════════════════════

class TestTerms:

    def test_valid_terms(self, policy):
        terms = LCTerms.from_dict(make_terms())
        terms.validate(policy)
        assert terms.total_value == Decimal("98500")

    def test_amount_must_equal_quantity_times_price(self, policy):
        terms = LCTerms.from_dict(make_terms(amount="99000"))
        with pytest.raises(ValidationError) as exc:
            terms.validate(policy)
        assert any("does not equal" in e for e in exc.value.details["errors"])

    def test_shipment_must_precede_expiry(self, policy):
        terms = LCTerms.from_dict(make_terms(latest_shipment_date="2026-06-30"))
        with pytest.raises(ValidationError):
            terms.validate(policy)

    def test_all_problems_reported_together(self, policy):
        terms = LCTerms.from_dict(make_terms(currency="DOGE", incoterms="XYZ",
                                             required_documents=[]))
        with pytest.raises(ValidationError) as exc:
            terms.validate(policy)
        assert len(exc.value.details["errors"]) == 3

    def test_unknown_lc_type(self):
        with pytest.raises(ValidationError):
            LCTerms.from_dict(make_terms(lc_type="standby"))

    def test_bad_decimal(self):
        with pytest.raises(ValidationError):
            LCTerms.from_dict(make_terms(quantity="lots"))

    @pytest.mark.parametrize("value", ["NaN", "sNaN", "Infinity", "-Infinity"])
    def test_non_finite_amount(self, value):
        with pytest.raises(ValidationError) as exc:
            LCTerms.from_dict(make_terms(amount=value))
        assert exc.value.details["field"] == "amount"

    def test_buyer_and_seller_must_differ(self, policy):
        terms = make_terms()
        terms["seller"] = dict(terms["buyer"])
        with pytest.raises(ValidationError):
            LCTerms.from_dict(terms).validate(policy)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 2: Creation
# ══════════════════════════════════════════════════════════════════

class TestCreate:

    def test_create_from_accepted_invitation(self, workflow, messaging):
        lc = workflow.create()
        assert lc.status == LCStatus.DRAFT
        assert lc.lc_number == "LC2026000001"
        assert lc.display_number == "LC-2026-000001"
        assert lc.version == 1
        assert set(messaging.room_members(lc.matrix_room_id)) == {BUYER, SELLER}

    def test_numbers_are_sequential(self, workflow):
        first = workflow.create()
        second = workflow.create()
        assert second.lc_number == "LC2026000002"
        assert first.lc_id != second.lc_id

    def test_authorization_is_single_use(self, workflow, desk):
        auth_id = workflow.authorize()
        desk.lifecycle.create_lc(make_terms(), auth_id, BUYER)
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.create_lc(make_terms(), auth_id, BUYER)

    def test_no_invitation_no_lc(self, desk):
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.create_lc(make_terms(), "auth_forged", BUYER)

    def test_parties_must_match_invitation(self, workflow, desk):
        auth_id = workflow.authorize()
        terms = make_terms()
        terms["seller"] = {**terms["seller"], "matrix_id": "@mallory:evil.example"}
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.create_lc(terms, auth_id, BUYER)

    def test_outsider_cannot_create(self, workflow, desk):
        auth_id = workflow.authorize()
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.create_lc(make_terms(), auth_id, "@mallory:evil.example")

    def test_invalid_terms_leave_authorization_unused(self, workflow, desk):
        auth_id = workflow.authorize()
        with pytest.raises(ValidationError):
            desk.lifecycle.create_lc(make_terms(amount="1"), auth_id, BUYER)
        lc = desk.lifecycle.create_lc(make_terms(), auth_id, BUYER)
        assert lc.authorization_id == auth_id

    def test_lost_authorization_race_opens_no_room(self, workflow, desk, messaging,
                                                   monkeypatch):
        auth_id = workflow.authorize()
        rooms = len(messaging._rooms)
        put = desk.store.put

        def racing_put(collection, key, data, expected_version):
            if collection == "authorizations":
                raise ConflictError(f"{collection} record {key} changed concurrently")
            return put(collection, key, data, expected_version)
        monkeypatch.setattr(desk.store, "put", racing_put)

        with pytest.raises(ConflictError):
            desk.lifecycle.create_lc(make_terms(), auth_id, BUYER)
        assert len(messaging._rooms) == rooms


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 3: Transitions
# ══════════════════════════════════════════════════════════════════

class TestTransitions:

    def test_every_edge_has_roles(self):
        for source, targets in TRANSITIONS.items():
            for target in targets:
                assert (source, target) in TRANSITION_ROLES

    def test_no_skipping_states(self, workflow, desk):
        lc = workflow.create()
        with pytest.raises(IllegalTransitionError) as exc:
            desk.lifecycle.advance(lc.lc_id, LCStatus.FUNDED, ESCROW_AGENT)
        assert exc.value.details == {"current": "draft", "target": "funded"}

    def test_outsider_cannot_advance(self, workflow, desk):
        lc = workflow.create()
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.NEGOTIATING, "@mallory:evil.example")

    def test_signed_needs_both_signatures(self, workflow, desk):
        lc = workflow.to_status(LCStatus.NEGOTIATING)
        desk.lifecycle.sign(lc.lc_id, BUYER)
        with pytest.raises(IllegalTransitionError) as exc:
            desk.lifecycle.advance(lc.lc_id, LCStatus.SIGNED, BUYER)
        assert "seller" in str(exc.value)

    def test_second_signature_signs(self, workflow):
        lc = workflow.to_status(LCStatus.SIGNED)
        assert lc.status == LCStatus.SIGNED
        assert set(lc.signatures) == {"buyer", "seller"}

    def test_funded_needs_receipt_not_a_claim(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SIGNED)
        with pytest.raises(IllegalTransitionError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.FUNDED, ESCROW_AGENT,
                                   evidence={"settlement_key": "fund:made-up"})

    def test_parties_cannot_mark_funded(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SIGNED)
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.FUNDED, BUYER)

    def test_shipped_needs_shipment_details(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(IllegalTransitionError) as exc:
            desk.lifecycle.advance(lc.lc_id, LCStatus.SHIPPED, SELLER,
                                   evidence={"shipment": {"carrier": "Maersk"}})
        assert "bill_of_lading_number" in str(exc.value)

    def test_only_seller_ships(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.SHIPPED, BUYER)

    def test_documents_submitted_needs_every_document(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SHIPPED)
        desk.lifecycle.upload_document(lc.lc_id, SELLER, "Commercial Invoice",
                                       "invoice.pdf", b"%PDF invoice")
        with pytest.raises(IllegalTransitionError) as exc:
            desk.lifecycle.advance(lc.lc_id, LCStatus.DOCUMENTS_SUBMITTED, SELLER)
        assert "Bill of Lading" in str(exc.value)

    def test_delivered_needs_verified_documents(self, workflow, desk):
        lc = workflow.to_status(LCStatus.DOCUMENTS_SUBMITTED)
        with pytest.raises(IllegalTransitionError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.DELIVERED, BUYER)

    def test_completed_needs_settlement_receipt(self, workflow, desk):
        lc = workflow.to_status(LCStatus.DELIVERED)
        with pytest.raises(IllegalTransitionError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.COMPLETED, ESCROW_AGENT)

    def test_full_path_history(self, workflow):
        lc = workflow.to_status(LCStatus.COMPLETED)
        steps = [(h.from_status, h.to_status) for h in lc.history]
        assert steps == [
            ("draft", "negotiating"), ("negotiating", "signed"), ("signed", "funded"),
            ("funded", "shipped"), ("shipped", "documents_submitted"),
            ("documents_submitted", "delivered"), ("delivered", "completed"),
        ]
        assert lc.funding_tx and lc.settlement_tx
        assert lc.escrow_address == ESCROW
        assert lc.progress == 100

    def test_terminal_is_final(self, workflow, desk):
        lc = workflow.to_status(LCStatus.COMPLETED)
        with pytest.raises(IllegalTransitionError):
            desk.lifecycle.cancel(lc.lc_id, BUYER, "changed my mind")

    def test_stale_version_conflicts(self, workflow, desk):
        lc = workflow.create()
        desk.lifecycle.advance(lc.lc_id, LCStatus.NEGOTIATING, BUYER,
                               expected_version=lc.version)
        with pytest.raises(ConflictError):
            desk.lifecycle.advance(lc.lc_id, LCStatus.CANCELLED, SELLER,
                                   expected_version=lc.version, reason="late")

    def test_unknown_lc(self, desk):
        with pytest.raises(NotFoundError):
            desk.lifecycle.advance("lc_missing", LCStatus.NEGOTIATING, BUYER)

    def test_transition_is_audited(self, workflow, audit):
        lc = workflow.to_status(LCStatus.NEGOTIATING)
        records = audit.read_records(operation="lc_transition", subject_id=lc.lc_id)
        assert records[-1]["before_status"] == "draft"
        assert records[-1]["after_status"] == "negotiating"
        assert all(audit.verify_record(r) for r in records)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 4: Cancellation
# ══════════════════════════════════════════════════════════════════

class TestCancel:

    def test_party_cancels_before_funding(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SIGNED)
        cancelled = desk.lifecycle.cancel(lc.lc_id, SELLER, "buyer went quiet")
        assert cancelled.status == LCStatus.CANCELLED
        assert cancelled.cancellation_reason == "buyer went quiet"

    def test_reason_required(self, workflow, desk):
        lc = workflow.create()
        with pytest.raises(ValidationError):
            desk.lifecycle.cancel(lc.lc_id, BUYER, "")

    def test_party_cannot_cancel_funded(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.cancel(lc.lc_id, BUYER, "cold feet")

    def test_funded_cancel_needs_refund_receipt(self, workflow, desk):
        lc = workflow.to_status(LCStatus.FUNDED)
        with pytest.raises(IllegalTransitionError):
            desk.lifecycle.cancel(lc.lc_id, ESCROW_AGENT, "cold feet")


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 5: Amendments and documents
# ══════════════════════════════════════════════════════════════════

class TestAmendAndDocuments:

    def test_update_terms_resets_signatures(self, workflow, desk, audit):
        lc = workflow.to_status(LCStatus.NEGOTIATING)
        desk.lifecycle.sign(lc.lc_id, BUYER)
        updated = desk.lifecycle.update_terms(
            lc.lc_id, SELLER, {"quantity": "40000", "amount": "78800"})
        assert updated.terms.amount == Decimal("78800")
        assert updated.signatures == {}
        changed = audit.read_records(operation="lc_terms_updated")[-1]["extra"]["changed"]
        assert "amount" in changed and "quantity" in changed

    def test_currency_is_fixed(self, workflow, desk):
        lc = workflow.create()
        with pytest.raises(ValidationError):
            desk.lifecycle.update_terms(lc.lc_id, BUYER, {"currency": "EUR"})

    def test_terms_frozen_after_signing(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SIGNED)
        with pytest.raises(ValidationError) as exc:
            desk.lifecycle.update_terms(lc.lc_id, BUYER, {"port_of_loading": "Vitoria"})
        assert exc.value.code == "LC_NOT_EDITABLE"

    def test_only_seller_uploads(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SHIPPED)
        with pytest.raises(UnauthorizedError):
            desk.lifecycle.upload_document(lc.lc_id, BUYER, "Commercial Invoice",
                                           "invoice.pdf", b"x")

    def test_unlisted_document_refused(self, workflow, desk):
        lc = workflow.to_status(LCStatus.SHIPPED)
        with pytest.raises(ValidationError):
            desk.lifecycle.upload_document(lc.lc_id, SELLER, "Packing List", "pl.pdf", b"x")

    def test_rejected_document_can_be_replaced(self, workflow, desk):
        lc = workflow.to_status(LCStatus.DOCUMENTS_SUBMITTED)
        invoice = lc.current_documents()["Commercial Invoice"]
        rejected = desk.lifecycle.verify_document(lc.lc_id, BUYER, invoice.document_id,
                                                  approved=False, reason="wrong consignee")
        assert rejected.status == DocumentStatus.REJECTED

        replacement = desk.lifecycle.upload_document(lc.lc_id, SELLER, "Commercial Invoice",
                                                     "invoice-v2.pdf", b"corrected")
        current = desk.lifecycle.load_lc(lc.lc_id).current_documents()
        assert current["Commercial Invoice"].document_id == replacement.document_id

    def test_rejection_needs_reason(self, workflow, desk):
        lc = workflow.to_status(LCStatus.DOCUMENTS_SUBMITTED)
        invoice = lc.current_documents()["Commercial Invoice"]
        with pytest.raises(ValidationError):
            desk.lifecycle.verify_document(lc.lc_id, BUYER, invoice.document_id, approved=False)


# ══════════════════════════════════════════════════════════════════
# TEST CLASS 6: Queries and display
# ══════════════════════════════════════════════════════════════════

class TestQueries:

    def test_list_filters(self, workflow, desk):
        workflow.create()
        workflow.to_status(LCStatus.SIGNED)
        assert len(desk.lifecycle.list_lcs()) == 2
        assert len(desk.lifecycle.list_lcs(status="signed")) == 1
        assert len(desk.lifecycle.list_lcs(party=SELLER)) == 2
        assert desk.lifecycle.list_lcs(commodity="cocoa") == []

    def test_room_receives_notices(self, workflow, messaging):
        lc = workflow.to_status(LCStatus.NEGOTIATING)
        bodies = [e.body for e in messaging.fetch_messages(lc.matrix_room_id, 0, 10**15)]
        assert any("draft -> negotiating" in b for b in bodies)

    def test_summary_mentions_number_and_documents(self, workflow):
        lc = workflow.to_status(LCStatus.SHIPPED)
        text = lc.summary()
        assert "LC-2026-000001" in text
        assert "Bill of Lading: not uploaded" in text

    def test_format_and_progress_helpers(self):
        assert format_lc_number("LC2026000042") == "LC-2026-000042"
        assert format_lc_number("legacy-7") == "legacy-7"
        assert progress("disputed") == 50
