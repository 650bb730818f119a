"""Manual entry points for purchases and cards."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from price_protect.cards import NETWORK_KEYS, classify_card_number, default_nickname
from price_protect.eligibility import money, protection_end
from price_protect.errors import ParseFailure
from price_protect.models import (
    InstrumentSource,
    PaymentInstrument,
    PriceObservation,
    PurchaseStatus,
    SourceType,
    TrackedPurchase,
)

if TYPE_CHECKING:
    from decimal import Decimal
    from uuid import UUID

    from price_protect.cards import CardClassification
    from price_protect.issuers import IssuerRegistry
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def add_manual_purchase(
    repository: Repository,
    user_id: UUID,
    *,
    product_name: str,
    retailer: str,
    purchase_price: Decimal,
    purchase_date: datetime,
    product_url: str | None = None,
    instrument_id: UUID | None = None,
    order_id: str | None = None,
    category: str | None = None,
) -> TrackedPurchase:
    """Record a purchase entered by hand and seed its price history."""
    purchase_date = _aware(purchase_date)
    protection_ends = None
    if instrument_id is not None:
        instrument = repository.get_instrument(instrument_id)
        if instrument.user_id != user_id:
            msg = f"Instrument {instrument_id} does not belong to user {user_id}"
            raise ValueError(msg)
        protection_ends = protection_end(purchase_date, instrument.protection_days)

    price = money(purchase_price)
    purchase = repository.add_purchase(
        TrackedPurchase(
            user_id=user_id,
            product_name=product_name,
            retailer=retailer,
            purchase_price=price,
            current_price=price,
            lowest_price=price,
            lowest_price_date=purchase_date,
            purchase_date=purchase_date,
            product_url=product_url,
            order_id=order_id,
            category=category,
            instrument_id=instrument_id,
            protection_ends=protection_ends,
            status=PurchaseStatus.MONITORING,
            source_type=SourceType.MANUAL,
        )
    )
    repository.add_observation(
        PriceObservation(
            purchase_id=purchase.id,
            price=price,
            source=retailer.lower(),
            observed_at=purchase_date,
        )
    )
    logger.info("Added manual purchase %s: %s", purchase.id, product_name)
    return purchase


def link_instrument(
    repository: Repository, purchase_id: UUID, instrument_id: UUID
) -> TrackedPurchase:
    """Attach a purchase to a card and recompute its protection window."""
    purchase = repository.get_purchase(purchase_id)
    instrument = repository.get_instrument(instrument_id)
    if instrument.user_id != purchase.user_id:
        msg = f"Instrument {instrument_id} does not belong to the purchase owner"
        raise ValueError(msg)
    return repository.update_purchase(
        purchase_id,
        instrument_id=instrument.id,
        protection_ends=protection_end(purchase.purchase_date, instrument.protection_days),
    )


def quick_add_card(
    repository: Repository,
    registry: IssuerRegistry,
    user_id: UUID,
    card_number: str,
    nickname: str | None = None,
) -> tuple[PaymentInstrument, CardClassification]:
    """Add a card from its full number.

    Only the classification survives: the number itself is never stored.
    Auto-claim starts disabled until the user reviews the card's terms.
    """
    detected = classify_card_number(card_number, registry)
    if not detected.is_valid:
        msg = "Invalid card number"
        raise ParseFailure(msg)

    profile = detected.issuer
    issuer = profile.short_name if profile.key != "unknown" else "Other"
    instrument = repository.add_instrument(
        PaymentInstrument(
            user_id=user_id,
            nickname=nickname or default_nickname(profile, detected.last_four),
            issuer=issuer,
            issuer_key=profile.key,
            network=detected.network if detected.network in NETWORK_KEYS else None,
            card_type=detected.card_type,
            last_four=detected.last_four,
            protection_days=profile.protection_days,
            max_claim_amount=profile.max_claim_amount,
            claim_method=profile.claim_method,
            claim_portal_url=profile.portal_url,
            claim_phone=profile.claim_phone,
            claim_email=profile.claim_email,
            auto_claim_enabled=False,
            source=InstrumentSource.QUICK_ADD,
        )
    )
    logger.info("Quick-added card %s for user %s", detected.masked_number, user_id)
    return instrument, detected
