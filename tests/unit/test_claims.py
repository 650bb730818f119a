"""Tests for price_protect.claims."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from price_protect.claims import (
    days_remaining,
    delete_draft_claim,
    filing_instructions,
    mark_filed,
    proof_bundle,
    update_claim_status,
)
from price_protect.eligibility import create_claim
from price_protect.errors import InvariantViolation
from price_protect.models import (
    ClaimStatus,
    FilingChannel,
    NotificationKind,
    PurchaseStatus,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from price_protect.issuers import IssuerRegistry
    from price_protect.models import Claim, PaymentInstrument, TrackedPurchase, UserProfile
    from price_protect.repository import MemoryRepository


@pytest.fixture
def claim(
    repository: MemoryRepository,
    make_purchase: Callable[..., TrackedPurchase],
    now: datetime,
) -> Claim:
    purchase = make_purchase(
        status=PurchaseStatus.CLAIM_ELIGIBLE, lowest_price=Decimal("80.00")
    )
    return create_claim(repository, purchase.id, now=now)


def _sent(repository: MemoryRepository, claim: Claim) -> Claim:
    repository.transition_purchase(
        claim.purchase_id, {PurchaseStatus.CLAIM_ELIGIBLE}, PurchaseStatus.CLAIM_FILED
    )
    sent = repository.transition_claim(
        claim.id,
        {ClaimStatus.DRAFT},
        ClaimStatus.EMAIL_SENT,
        "sent",
        filing_channel=FilingChannel.SECONDARY_EMAIL,
        destination="cardbenefitservices@eclaimsline.com",
        message_id="<relay-1@pricewatch.example>",
        email_subject="Chase Price Protection Claim - Card ending 1111",
        email_body="Dear Chase Benefits Services,",
        document_ref="claims/c/claim.pdf",
        submission_proof_ref="claims/c/proof.pdf",
    )
    assert sent is not None
    return sent


class TestDaysRemaining:
    """Tests for days_remaining."""

    def test_rounds_up(self, now: datetime) -> None:
        assert days_remaining(now + timedelta(days=2, hours=1), now) == 3

    def test_exact_days(self, now: datetime) -> None:
        assert days_remaining(now + timedelta(days=5), now) == 5

    def test_past_window_is_negative(self, now: datetime) -> None:
        assert days_remaining(now - timedelta(days=2), now) == -2

    def test_no_window(self, now: datetime) -> None:
        assert days_remaining(None, now) is None


class TestFilingInstructions:
    """Tests for filing_instructions."""

    def test_issuer_defaults(
        self,
        repository: MemoryRepository,
        registry: IssuerRegistry,
        claim: Claim,
        now: datetime,
    ) -> None:
        instructions = filing_instructions(repository, registry, claim.id, now=now)

        assert instructions.issuer == "Chase"
        assert instructions.claim_amount == Decimal("20.00")
        assert instructions.email == "cardbenefitservices@eclaimsline.com"
        assert instructions.portal == "https://www.chasebenefits.com/chase"
        assert "Log in to the Chase Benefits portal" in instructions.instructions
        assert len(instructions.required_documents) == 3
        assert instructions.days_remaining == 110
        assert instructions.tips[-1] == "Follow up if you don't hear back within 2 weeks"

    def test_card_contacts_win(
        self,
        repository: MemoryRepository,
        registry: IssuerRegistry,
        instrument: PaymentInstrument,
        claim: Claim,
        now: datetime,
    ) -> None:
        repository.update_instrument(
            instrument.id,
            claim_email="claims@mybank.example",
            claim_portal_url="https://mybank.example/claims",
            claim_phone="1-800-555-0100",
        )

        instructions = filing_instructions(repository, registry, claim.id, now=now)

        assert instructions.email == "claims@mybank.example"
        assert instructions.portal == "https://mybank.example/claims"
        assert instructions.phone == "1-800-555-0100"


class TestProofBundle:
    """Tests for proof_bundle."""

    def test_sent_claim(self, repository: MemoryRepository, claim: Claim) -> None:
        _sent(repository, claim)

        bundle = proof_bundle(repository, claim.id)

        assert bundle.status == ClaimStatus.EMAIL_SENT
        assert bundle.channel == FilingChannel.SECONDARY_EMAIL
        assert bundle.subject == "Chase Price Protection Claim - Card ending 1111"
        assert bundle.artifacts == {
            "document": "claims/c/claim.pdf",
            "submission_proof": "claims/c/proof.pdf",
        }
        assert [e.status for e in bundle.timeline] == [
            ClaimStatus.DRAFT,
            ClaimStatus.EMAIL_SENT,
        ]

    def test_draft_has_no_artifacts(self, repository: MemoryRepository, claim: Claim) -> None:
        bundle = proof_bundle(repository, claim.id)
        assert bundle.artifacts == {}
        assert bundle.filed_at is None


class TestMarkFiled:
    """Tests for mark_filed."""

    def test_manual_filing(
        self,
        repository: MemoryRepository,
        claim: Claim,
        user: UserProfile,
        now: datetime,
    ) -> None:
        filed = mark_filed(repository, claim.id, "CLM-5521", now=now)

        assert filed.status == ClaimStatus.FILED
        assert filed.claim_number == "CLM-5521"
        assert filed.filing_channel == FilingChannel.MANUAL
        assert filed.filed_at == now
        assert filed.status_history[-1].note == "Filed manually by cardholder"
        assert repository.get_purchase(claim.purchase_id).status == PurchaseStatus.CLAIM_FILED
        [notice] = repository.list_notifications(user.id)
        assert notice.title == "Claim Filed Successfully"

    def test_already_sent(self, repository: MemoryRepository, claim: Claim) -> None:
        _sent(repository, claim)
        with pytest.raises(InvariantViolation, match="cannot be filed"):
            mark_filed(repository, claim.id)


class TestUpdateClaimStatus:
    """Tests for update_claim_status."""

    def test_approval_defaults_to_claimed_amount(
        self,
        repository: MemoryRepository,
        claim: Claim,
        user: UserProfile,
        now: datetime,
    ) -> None:
        _sent(repository, claim)

        approved = update_claim_status(repository, claim.id, ClaimStatus.APPROVED, now=now)

        assert approved.status == ClaimStatus.APPROVED
        assert approved.approved_amount == Decimal("20.00")
        assert approved.resolved_at == now
        purchase = repository.get_purchase(claim.purchase_id)
        assert purchase.status == PurchaseStatus.CLAIM_APPROVED
        notice = repository.list_notifications(user.id)[-1]
        assert notice.kind == NotificationKind.CLAIM_STATUS_UPDATE
        assert notice.message.endswith("for $20.00!")

    def test_partial_approval(self, repository: MemoryRepository, claim: Claim) -> None:
        _sent(repository, claim)
        approved = update_claim_status(
            repository, claim.id, ClaimStatus.APPROVED, approved_amount=Decimal("15.00")
        )
        assert approved.approved_amount == Decimal("15.00")

    def test_denial(
        self, repository: MemoryRepository, claim: Claim, user: UserProfile
    ) -> None:
        _sent(repository, claim)

        denied = update_claim_status(
            repository, claim.id, ClaimStatus.DENIED, note="Item was on clearance"
        )

        assert denied.status_history[-1].note == "Item was on clearance"
        assert repository.get_purchase(claim.purchase_id).status == PurchaseStatus.CLAIM_DENIED
        assert repository.list_notifications(user.id)[-1].title == "Claim Denied"

    def test_review_then_payout(self, repository: MemoryRepository, claim: Claim) -> None:
        _sent(repository, claim)

        update_claim_status(
            repository, claim.id, ClaimStatus.PENDING_REVIEW, claim_number="CLM-9"
        )
        update_claim_status(repository, claim.id, ClaimStatus.APPROVED)
        paid = update_claim_status(repository, claim.id, ClaimStatus.MONEY_RECEIVED)

        assert paid.claim_number == "CLM-9"
        assert paid.payout_received_at is not None
        assert [e.status for e in paid.status_history][-3:] == [
            ClaimStatus.PENDING_REVIEW,
            ClaimStatus.APPROVED,
            ClaimStatus.MONEY_RECEIVED,
        ]

    def test_payout_requires_approval(self, repository: MemoryRepository, claim: Claim) -> None:
        _sent(repository, claim)
        with pytest.raises(InvariantViolation, match="cannot move"):
            update_claim_status(repository, claim.id, ClaimStatus.MONEY_RECEIVED)

    def test_draft_cannot_be_approved(self, repository: MemoryRepository, claim: Claim) -> None:
        with pytest.raises(InvariantViolation):
            update_claim_status(repository, claim.id, ClaimStatus.APPROVED)
        assert repository.get_claim(claim.id).status == ClaimStatus.DRAFT

    def test_not_an_issuer_status(self, repository: MemoryRepository, claim: Claim) -> None:
        with pytest.raises(ValueError, match="not an issuer status"):
            update_claim_status(repository, claim.id, ClaimStatus.EMAIL_SENT)


class TestDeleteDraftClaim:
    """Tests for delete_draft_claim."""

    def test_deletes_and_reopens_purchase(
        self, repository: MemoryRepository, claim: Claim
    ) -> None:
        delete_draft_claim(repository, claim.id)

        assert repository.list_claims(purchase_id=claim.purchase_id) == []
        purchase = repository.get_purchase(claim.purchase_id)
        assert purchase.status == PurchaseStatus.PRICE_DROP_DETECTED

    def test_sent_claim_kept(self, repository: MemoryRepository, claim: Claim) -> None:
        _sent(repository, claim)

        with pytest.raises(InvariantViolation, match="Only draft"):
            delete_draft_claim(repository, claim.id)
        assert repository.get_claim(claim.id).status == ClaimStatus.EMAIL_SENT
