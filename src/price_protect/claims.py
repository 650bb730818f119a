"""Claim lifecycle after creation: instructions, proof, manual and issuer updates."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from price_protect.errors import InvariantViolation
from price_protect.models import (
    FILEABLE_CLAIM_STATUSES,
    ClaimStatus,
    FilingChannel,
    NotificationKind,
    PurchaseStatus,
    utcnow,
)
from price_protect.notifications import notify

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from price_protect.issuers import IssuerRegistry
    from price_protect.models import Claim, StatusEntry
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)

FILING_TIPS = (
    "File within the protection window (check your card terms)",
    "Have all documentation ready before starting",
    "Keep the claim reference number",
    "Follow up if you don't hear back within 2 weeks",
)

SUBMITTED_STATUSES = frozenset(
    {
        ClaimStatus.EMAIL_SENT,
        ClaimStatus.FILED,
        ClaimStatus.PENDING_REVIEW,
        ClaimStatus.ADDITIONAL_INFO_NEEDED,
    }
)

# Target status -> statuses it may be reached from by an issuer update.
ISSUER_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.PENDING_REVIEW: frozenset(
        {ClaimStatus.EMAIL_SENT, ClaimStatus.FILED, ClaimStatus.ADDITIONAL_INFO_NEEDED}
    ),
    ClaimStatus.ADDITIONAL_INFO_NEEDED: frozenset(
        {ClaimStatus.EMAIL_SENT, ClaimStatus.FILED, ClaimStatus.PENDING_REVIEW}
    ),
    ClaimStatus.APPROVED: SUBMITTED_STATUSES,
    ClaimStatus.DENIED: SUBMITTED_STATUSES,
    ClaimStatus.MONEY_RECEIVED: frozenset({ClaimStatus.APPROVED}),
}

PURCHASE_OUTCOMES = {
    ClaimStatus.APPROVED: PurchaseStatus.CLAIM_APPROVED,
    ClaimStatus.DENIED: PurchaseStatus.CLAIM_DENIED,
}


@dataclass
class FilingInstructions:
    """What a person needs to file a claim by hand."""

    claim_id: UUID
    issuer: str
    claim_amount: Decimal
    method: str
    email: str
    portal: str | None
    phone: str | None
    required_documents: list[str]
    instructions: list[str]
    tips: list[str] = field(default_factory=lambda: list(FILING_TIPS))
    protection_ends: datetime | None = None
    days_remaining: int | None = None


@dataclass
class ProofBundle:
    """Evidence that a claim was submitted, and its timeline."""

    claim_id: UUID
    status: ClaimStatus
    channel: FilingChannel | None
    destination: str | None
    message_id: str | None
    claim_number: str | None
    subject: str | None
    body: str | None
    filed_at: datetime | None
    artifacts: dict[str, str]
    timeline: list[StatusEntry]


def days_remaining(protection_ends: datetime | None, now: datetime) -> int | None:
    """Whole days left in the window, rounded up, or None without a window."""
    if protection_ends is None:
        return None
    return math.ceil((protection_ends - now).total_seconds() / 86400)


def filing_instructions(
    repository: Repository,
    registry: IssuerRegistry,
    claim_id: UUID,
    *,
    now: datetime | None = None,
) -> FilingInstructions:
    """Build manual filing instructions, preferring the card's own contacts."""
    now = now or utcnow()
    claim = repository.get_claim(claim_id)
    purchase = repository.get_purchase(claim.purchase_id)
    instrument = repository.get_instrument(claim.instrument_id)
    profile = registry.get(instrument.issuer_key or instrument.issuer)

    return FilingInstructions(
        claim_id=claim.id,
        issuer=instrument.issuer,
        claim_amount=claim.claimed_amount,
        method=str(instrument.claim_method),
        email=registry.claim_email(
            instrument.issuer_key or instrument.issuer,
            override=instrument.claim_email,
            network=instrument.network,
        ),
        portal=instrument.claim_portal_url or profile.portal_url,
        phone=instrument.claim_phone or profile.claim_phone,
        required_documents=list(profile.required_docs),
        instructions=list(profile.instructions),
        protection_ends=purchase.protection_ends,
        days_remaining=days_remaining(purchase.protection_ends, now),
    )


def proof_bundle(repository: Repository, claim_id: UUID) -> ProofBundle:
    claim = repository.get_claim(claim_id)
    artifacts = {
        name: ref
        for name, ref in (
            ("document", claim.document_ref),
            ("price_evidence", claim.price_evidence_ref),
            ("submission_proof", claim.submission_proof_ref),
        )
        if ref
    }
    return ProofBundle(
        claim_id=claim.id,
        status=claim.status,
        channel=claim.filing_channel,
        destination=claim.destination,
        message_id=claim.message_id,
        claim_number=claim.claim_number,
        subject=claim.email_subject,
        body=claim.email_body,
        filed_at=claim.filed_at,
        artifacts=artifacts,
        timeline=list(claim.status_history),
    )


def mark_filed(
    repository: Repository,
    claim_id: UUID,
    claim_number: str | None = None,
    *,
    now: datetime | None = None,
) -> Claim:
    """Record that the user filed the claim themselves."""
    now = now or utcnow()
    fields = {"filed_at": now, "filing_channel": FilingChannel.MANUAL}
    if claim_number:
        fields["claim_number"] = claim_number
    claim = repository.transition_claim(
        claim_id,
        FILEABLE_CLAIM_STATUSES,
        ClaimStatus.FILED,
        "Filed manually by cardholder",
        **fields,
    )
    if claim is None:
        msg = f"Claim {claim_id} cannot be filed in its current status"
        raise InvariantViolation(msg)

    repository.transition_purchase(
        claim.purchase_id,
        {PurchaseStatus.PRICE_DROP_DETECTED, PurchaseStatus.CLAIM_ELIGIBLE},
        PurchaseStatus.CLAIM_FILED,
    )
    purchase = repository.get_purchase(claim.purchase_id)
    notify(
        repository,
        claim.user_id,
        NotificationKind.CLAIM_STATUS_UPDATE,
        "Claim Filed Successfully",
        f"Your claim for {purchase.product_name} has been filed.",
        claim_id=str(claim.id),
        purchase_id=str(purchase.id),
    )
    return claim


def update_claim_status(
    repository: Repository,
    claim_id: UUID,
    status: ClaimStatus,
    *,
    note: str | None = None,
    claim_number: str | None = None,
    approved_amount: Decimal | None = None,
    now: datetime | None = None,
) -> Claim:
    """Apply an issuer-side status change and propagate outcomes to the purchase."""
    allowed = ISSUER_TRANSITIONS.get(status)
    if allowed is None:
        msg = f"{status} is not an issuer status update"
        raise ValueError(msg)

    now = now or utcnow()
    current = repository.get_claim(claim_id)
    fields: dict[str, object] = {}
    if claim_number:
        fields["claim_number"] = claim_number
    if status == ClaimStatus.APPROVED:
        fields["resolved_at"] = now
        fields["approved_amount"] = approved_amount or current.claimed_amount
    elif status == ClaimStatus.DENIED:
        fields["resolved_at"] = now
    elif status == ClaimStatus.MONEY_RECEIVED:
        fields["payout_received_at"] = now

    claim = repository.transition_claim(claim_id, allowed, status, note, **fields)
    if claim is None:
        msg = f"Claim {claim_id} cannot move from {current.status} to {status}"
        raise InvariantViolation(msg)

    outcome = PURCHASE_OUTCOMES.get(status)
    if outcome is not None:
        repository.transition_purchase(claim.purchase_id, {PurchaseStatus.CLAIM_FILED}, outcome)

    purchase = repository.get_purchase(claim.purchase_id)
    if status == ClaimStatus.APPROVED:
        title = "Claim Approved!"
        message = (
            f"Your claim for {purchase.product_name} was approved "
            f"for ${claim.approved_amount:.2f}!"
        )
    else:
        title = "Claim Denied" if status == ClaimStatus.DENIED else "Claim Updated"
        message = f"Your claim status has been updated to: {status.replace('_', ' ')}"
    notify(
        repository,
        claim.user_id,
        NotificationKind.CLAIM_STATUS_UPDATE,
        title,
        message,
        claim_id=str(claim.id),
        purchase_id=str(purchase.id),
    )
    logger.info("Claim %s moved to %s", claim.id, status)
    return claim


def delete_draft_claim(repository: Repository, claim_id: UUID) -> None:
    """Delete a DRAFT claim and return its purchase to PRICE_DROP_DETECTED."""
    claim = repository.get_claim(claim_id)
    if not repository.delete_claim(claim_id, {ClaimStatus.DRAFT}):
        msg = "Only draft claims can be deleted"
        raise InvariantViolation(msg)
    repository.transition_purchase(
        claim.purchase_id, {PurchaseStatus.CLAIM_ELIGIBLE}, PurchaseStatus.PRICE_DROP_DETECTED
    )
    logger.info("Deleted draft claim %s", claim_id)
