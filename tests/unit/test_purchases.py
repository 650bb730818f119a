"""Tests for price_protect.purchases."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from price_protect.errors import InvariantViolation, ParseFailure
from price_protect.models import (
    InstrumentSource,
    PaymentInstrument,
    PurchaseStatus,
    SourceType,
    UserProfile,
)
from price_protect.purchases import add_manual_purchase, link_instrument, quick_add_card

if TYPE_CHECKING:
    from collections.abc import Callable

    from price_protect.issuers import IssuerRegistry
    from price_protect.models import TrackedPurchase
    from price_protect.repository import MemoryRepository


class TestAddManualPurchase:
    """Tests for add_manual_purchase."""

    def test_linked_purchase(
        self,
        repository: MemoryRepository,
        user: UserProfile,
        instrument: PaymentInstrument,
    ) -> None:
        bought = datetime(2025, 6, 1, 15, 30, tzinfo=UTC)

        purchase = add_manual_purchase(
            repository,
            user.id,
            product_name="Dyson V15",
            retailer="Target",
            purchase_price=Decimal("649.999"),
            purchase_date=bought,
            product_url="https://www.target.com/p/dyson-v15/-/A-1",
            instrument_id=instrument.id,
        )

        assert purchase.purchase_price == Decimal("650.00")
        assert purchase.lowest_price == Decimal("650.00")
        assert purchase.status == PurchaseStatus.MONITORING
        assert purchase.source_type == SourceType.MANUAL
        assert purchase.protection_ends == bought + timedelta(days=120)
        [seed] = repository.list_observations(purchase.id)
        assert seed.price == Decimal("650.00")
        assert seed.source == "target"
        assert seed.observed_at == bought

    def test_naive_date_is_utc(self, repository: MemoryRepository, user: UserProfile) -> None:
        purchase = add_manual_purchase(
            repository,
            user.id,
            product_name="Desk Lamp",
            retailer="IKEA",
            purchase_price=Decimal("39.99"),
            purchase_date=datetime(2025, 6, 1),
        )

        assert purchase.purchase_date == datetime(2025, 6, 1, tzinfo=UTC)
        assert purchase.instrument_id is None
        assert purchase.protection_ends is None

    def test_other_users_card_rejected(
        self, repository: MemoryRepository, instrument: PaymentInstrument
    ) -> None:
        stranger = repository.add_user(UserProfile(email="sam@example.com"))

        with pytest.raises(ValueError, match="does not belong"):
            add_manual_purchase(
                repository,
                stranger.id,
                product_name="Desk Lamp",
                retailer="IKEA",
                purchase_price=Decimal("39.99"),
                purchase_date=datetime(2025, 6, 1, tzinfo=UTC),
                instrument_id=instrument.id,
            )
        assert repository.list_purchases(stranger.id) == []


class TestLinkInstrument:
    """Tests for link_instrument."""

    def test_sets_window_from_card(
        self,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        user: UserProfile,
    ) -> None:
        purchase = make_purchase(instrument_id=None, protection_ends=None)
        amex = repository.add_instrument(
            PaymentInstrument(
                user_id=user.id,
                nickname="Gold",
                issuer="Amex",
                issuer_key="amex",
                last_four="1005",
                protection_days=90,
            )
        )

        linked = link_instrument(repository, purchase.id, amex.id)

        assert linked.instrument_id == amex.id
        assert linked.protection_ends == purchase.purchase_date + timedelta(days=90)

    def test_other_users_card_rejected(
        self,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
    ) -> None:
        purchase = make_purchase(instrument_id=None, protection_ends=None)
        stranger = repository.add_user(UserProfile(email="sam@example.com"))
        card = repository.add_instrument(
            PaymentInstrument(
                user_id=stranger.id,
                nickname="Card",
                issuer="Visa",
                issuer_key="visa",
                last_four="4242",
            )
        )

        with pytest.raises(ValueError, match="does not belong"):
            link_instrument(repository, purchase.id, card.id)
        assert repository.get_purchase(purchase.id).instrument_id is None


class TestQuickAddCard:
    """Tests for quick_add_card."""

    def test_visa_terms(
        self, repository: MemoryRepository, registry: IssuerRegistry, user: UserProfile
    ) -> None:
        instrument, detected = quick_add_card(repository, registry, user.id, "4111 1111 1111 1111")

        assert detected.masked_number == "411111******1111"
        assert instrument.issuer == "Visa"
        assert instrument.issuer_key == "visa"
        assert instrument.network == "visa"
        assert instrument.nickname == "Visa ****1111"
        assert instrument.protection_days == 60
        assert instrument.max_claim_amount == Decimal("250.00")
        assert instrument.claim_email == "visabenefits@cardbenefitservices.com"
        assert instrument.auto_claim_enabled is False
        assert instrument.source == InstrumentSource.QUICK_ADD

    def test_nickname_kept(
        self, repository: MemoryRepository, registry: IssuerRegistry, user: UserProfile
    ) -> None:
        instrument, _ = quick_add_card(
            repository, registry, user.id, "378282246310005", nickname="Travel card"
        )
        assert instrument.nickname == "Travel card"
        assert instrument.protection_days == 90

    def test_bad_checksum(
        self, repository: MemoryRepository, registry: IssuerRegistry, user: UserProfile
    ) -> None:
        with pytest.raises(ParseFailure, match="Invalid card number"):
            quick_add_card(repository, registry, user.id, "4111111111111112")
        assert repository.list_instruments(user.id) == []

    def test_duplicate_card(
        self, repository: MemoryRepository, registry: IssuerRegistry, user: UserProfile
    ) -> None:
        quick_add_card(repository, registry, user.id, "4111111111111111")
        with pytest.raises(InvariantViolation, match="already exists"):
            quick_add_card(repository, registry, user.id, "4111111111111111")
