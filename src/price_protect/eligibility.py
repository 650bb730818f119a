"""Eligibility decisions and claim creation.

The decision functions are pure. ``create_claim`` is the only place a
Claim is born, and it relies on the repository's conditional insert to
keep at most one active claim per purchase.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from price_protect.errors import InvariantViolation, NotEligible
from price_protect.models import (
    Claim,
    ClaimStatus,
    PurchaseStatus,
    StatusEntry,
    utcnow,
)

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from price_protect.repository import Repository

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

CLAIMABLE_PURCHASE_STATUSES = frozenset(
    {PurchaseStatus.PRICE_DROP_DETECTED, PurchaseStatus.CLAIM_ELIGIBLE}
)


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def protection_end(purchase_date: datetime, protection_days: int) -> datetime:
    """End of the protection window for a purchase."""
    return purchase_date + timedelta(days=protection_days)


def evaluate_drop(
    purchase_price: Decimal,
    current_price: Decimal,
    threshold: Decimal,
    *,
    window_active: bool,
) -> PurchaseStatus | None:
    """Decide the purchase status implied by a price reading.

    Returns ``CLAIM_ELIGIBLE`` when the drop meets the threshold inside an
    active protection window, ``PRICE_DROP_DETECTED`` when only the
    threshold is met, and ``None`` when the status should not change.
    """
    drop = purchase_price - current_price
    if drop <= 0 or drop < threshold:
        return None
    if window_active:
        return PurchaseStatus.CLAIM_ELIGIBLE
    return PurchaseStatus.PRICE_DROP_DETECTED


def claimable_amount(
    purchase_price: Decimal, lowest_price: Decimal, max_claim_amount: Decimal
) -> Decimal:
    """Price difference capped at the instrument's per-claim maximum."""
    return money(min(purchase_price - lowest_price, max_claim_amount))


def create_claim(
    repository: Repository,
    purchase_id: UUID,
    *,
    auto_file: bool = False,
    note: str = "Claim created",
    now: datetime | None = None,
) -> Claim:
    """Create a DRAFT claim for a purchase with a confirmed price drop.

    Raises NotEligible when the purchase cannot be claimed, and
    InvariantViolation when an active claim already exists.
    """
    now = now or utcnow()
    purchase = repository.get_purchase(purchase_id)

    if purchase.status not in CLAIMABLE_PURCHASE_STATUSES:
        msg = f"Purchase {purchase_id} is not eligible for a claim ({purchase.status})"
        raise NotEligible(msg)
    if purchase.instrument_id is None:
        msg = f"Purchase {purchase_id} must be linked to a card"
        raise NotEligible(msg)
    if not purchase.protection_active(now):
        msg = f"Price protection period has expired for purchase {purchase_id}"
        raise NotEligible(msg)

    instrument = repository.get_instrument(purchase.instrument_id)
    amount = claimable_amount(
        purchase.purchase_price, purchase.lowest_price, instrument.max_claim_amount
    )
    if amount <= 0:
        msg = f"No claimable price drop for purchase {purchase_id}"
        raise NotEligible(msg)

    claim = Claim(
        user_id=purchase.user_id,
        purchase_id=purchase.id,
        instrument_id=instrument.id,
        original_price=purchase.purchase_price,
        new_price=purchase.lowest_price,
        claimed_amount=amount,
        status=ClaimStatus.DRAFT,
        auto_file=auto_file,
        status_history=(StatusEntry(status=ClaimStatus.DRAFT, timestamp=now, note=note),),
        created_at=now,
        updated_at=now,
    )
    created = repository.insert_claim_if_no_active(claim)
    if created is None:
        msg = f"A claim already exists for purchase {purchase_id}"
        logger.warning(msg)
        raise InvariantViolation(msg)

    repository.transition_purchase(
        purchase.id, {PurchaseStatus.PRICE_DROP_DETECTED}, PurchaseStatus.CLAIM_ELIGIBLE
    )
    logger.info(
        "Created claim %s for purchase %s: $%s", created.id, purchase.id, created.claimed_amount
    )
    return created
