"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from price_protect.config import ImapConfig
from price_protect.issuers import IssuerRegistry
from price_protect.models import (
    CardType,
    ClaimMethod,
    InboundMessage,
    PaymentInstrument,
    TrackedPurchase,
    UserProfile,
)
from price_protect.repository import MemoryRepository

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

NOW = datetime(2025, 6, 20, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    """Provide a temporary directory as the artifact store root."""
    root = tmp_path / "artifacts"
    root.mkdir()
    return root


@pytest.fixture
def imap_config() -> ImapConfig:
    """Provide a test IMAP configuration."""
    return ImapConfig(
        host="imap.example.com",
        username="test@example.com",
        password="secret",  # pragma: allowlist secret
        port=993,
        folder="INBOX",
    )


@pytest.fixture
def repository() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture
def registry() -> IssuerRegistry:
    return IssuerRegistry()


@pytest.fixture
def user(repository: MemoryRepository) -> UserProfile:
    return repository.add_user(
        UserProfile(email="pat@example.com", name="Pat Doe", auto_file_enabled=True)
    )


@pytest.fixture
def instrument(repository: MemoryRepository, user: UserProfile) -> PaymentInstrument:
    """A Chase Visa with a 120-day window and a $500 cap."""
    return repository.add_instrument(
        PaymentInstrument(
            user_id=user.id,
            nickname="Chase Sapphire",
            issuer="Chase",
            issuer_key="chase",
            network="visa",
            card_type=CardType.VISA,
            last_four="1111",
            protection_days=120,
            max_claim_amount=Decimal("500.00"),
            claim_method=ClaimMethod.ONLINE_PORTAL,
        )
    )


@pytest.fixture
def make_purchase(
    repository: MemoryRepository, user: UserProfile, instrument: PaymentInstrument
) -> Callable[..., TrackedPurchase]:
    """Factory for stored purchases bought ten days before NOW."""

    def factory(**overrides: object) -> TrackedPurchase:
        bought = NOW - timedelta(days=10)
        price = Decimal(str(overrides.pop("price", "100.00")))
        fields: dict[str, object] = {
            "user_id": user.id,
            "product_name": "Noise Cancelling Headphones",
            "retailer": "Best Buy",
            "purchase_price": price,
            "current_price": price,
            "lowest_price": price,
            "lowest_price_date": bought,
            "purchase_date": bought,
            "product_url": "https://www.bestbuy.com/site/headphones/123.p",
            "instrument_id": instrument.id,
            "protection_ends": bought + timedelta(days=instrument.protection_days),
        }
        fields.update(overrides)
        return repository.add_purchase(TrackedPurchase.model_validate(fields))

    return factory


@pytest.fixture
def amazon_message() -> InboundMessage:
    """An Amazon order confirmation paid with a card ending in 4242."""
    return InboundMessage(
        source_id="<order-4242@amazon.com>",
        subject='Your Amazon.com order of "Kindle Paperwhite"',
        sender="auto-confirm@amazon.com",
        date=datetime(2025, 6, 15, 10, 30, 0, tzinfo=UTC),
        text_body=(
            "Thanks for your order!\n"
            "Order #112-1234567-7654321\n"
            "Kindle Paperwhite\n"
            "https://www.amazon.com/dp/B08KTZ8249\n"
            "Order Total: $59.99\n"
            "Payment method: Visa ending in 4242\n"
        ),
    )
