"""Tests for price_protect.ingest."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from price_protect.cards import CardMatcher
from price_protect.errors import MailboxNotConnected
from price_protect.extraction import RuleExtractor
from price_protect.ingest import PurchaseIngestor
from price_protect.models import (
    InstrumentSource,
    PurchaseStatus,
    RunStatus,
    SourceType,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from price_protect.issuers import IssuerRegistry
    from price_protect.models import InboundMessage, PaymentInstrument, UserProfile
    from price_protect.repository import MemoryRepository


class FakeAdapter:
    """Yields canned messages, honouring the processed-id filter."""

    def __init__(self, messages: list[InboundMessage], error: Exception | None = None) -> None:
        self.messages = messages
        self.error = error
        self.seen_processed: set[str] | None = None

    def fetch_unprocessed(self, processed_ids: set[str]) -> Iterator[InboundMessage]:
        self.seen_processed = set(processed_ids)
        for message in self.messages:
            if message.source_id not in processed_ids:
                yield message
        if self.error is not None:
            raise self.error


@pytest.fixture
def ingestor(repository: MemoryRepository, registry: IssuerRegistry) -> PurchaseIngestor:
    return PurchaseIngestor(repository, RuleExtractor(), CardMatcher(repository, registry))


class TestProcessMessage:
    """Tests for PurchaseIngestor.process_message."""

    def test_creates_purchase_and_provisions_card(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        [purchase] = ingestor.process_message(user.id, amazon_message)

        assert purchase.product_name == "Kindle Paperwhite"
        assert purchase.purchase_price == Decimal("59.99")
        assert purchase.lowest_price == Decimal("59.99")
        assert purchase.status == PurchaseStatus.MONITORING
        assert purchase.source_type == SourceType.EMAIL
        assert purchase.source_message_id == "<order-4242@amazon.com>"

        [card] = repository.list_instruments(user.id)
        assert card.last_four == "4242"
        assert card.issuer_key == "visa"
        assert card.source == InstrumentSource.AUTO_DETECTED
        assert purchase.instrument_id == card.id
        assert purchase.protection_ends == amazon_message.date + timedelta(days=60)

    def test_seeds_first_observation(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        [purchase] = ingestor.process_message(user.id, amazon_message)

        [observation] = repository.list_observations(purchase.id)
        assert observation.price == Decimal("59.99")
        assert observation.observed_at == amazon_message.date

    def test_notifies_new_purchase(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        ingestor.process_message(user.id, amazon_message)

        titles = [n.title for n in repository.list_notifications(user.id)]
        assert titles == ["New Card Detected", "New Purchase Detected"]

    def test_notice_store_failure_keeps_purchase(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        with patch.object(
            repository, "add_notification", side_effect=RuntimeError("notification store down")
        ):
            [purchase] = ingestor.process_message(user.id, amazon_message)

        [card] = repository.list_instruments(user.id)
        assert card.last_four == "4242"
        assert repository.get_purchase(purchase.id).instrument_id == card.id
        assert repository.list_notifications(user.id) == []

    def test_same_message_twice_is_ignored(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        ingestor.process_message(user.id, amazon_message)
        assert ingestor.process_message(user.id, amazon_message) == []
        assert len(repository.list_purchases(user.id)) == 1

    def test_links_existing_card(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        instrument: PaymentInstrument,
        amazon_message: InboundMessage,
    ) -> None:
        message = replace(
            amazon_message,
            text_body=amazon_message.text_body.replace("4242", "1111"),  # type: ignore[union-attr]
        )
        [purchase] = ingestor.process_message(user.id, message)

        assert purchase.instrument_id == instrument.id
        assert purchase.protection_ends == message.date + timedelta(days=120)
        assert len(repository.list_instruments(user.id)) == 1

    def test_no_card_leaves_purchase_unlinked(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        message = replace(
            amazon_message,
            text_body="Order #112-1234567-7654321\nOrder Total: $59.99\n",
        )
        [purchase] = ingestor.process_message(user.id, message)

        assert purchase.instrument_id is None
        assert purchase.protection_ends is None
        assert repository.list_instruments(user.id) == []


class TestSync:
    """Tests for PurchaseIngestor.sync."""

    def test_records_completed_run(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        result = ingestor.sync(user.id, FakeAdapter([amazon_message]))

        assert result.run.status == RunStatus.COMPLETED
        assert result.run.messages_scanned == 1
        assert result.run.purchases_found == 1
        assert result.run.completed_at is not None
        [stored_run] = repository.list_runs(user.id)
        assert stored_run.status == RunStatus.COMPLETED

    def test_second_sync_skips_processed_messages(
        self,
        ingestor: PurchaseIngestor,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        ingestor.sync(user.id, FakeAdapter([amazon_message]))
        adapter = FakeAdapter([amazon_message])
        result = ingestor.sync(user.id, adapter)

        assert adapter.seen_processed == {"<order-4242@amazon.com>"}
        assert result.purchases == []
        assert result.run.messages_scanned == 0

    def test_queues_price_check_for_purchases_with_url(
        self,
        repository: MemoryRepository,
        registry: IssuerRegistry,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        price_check = MagicMock()
        ingestor = PurchaseIngestor(
            repository,
            RuleExtractor(),
            CardMatcher(repository, registry),
            price_check=price_check,
        )
        result = ingestor.sync(user.id, FakeAdapter([amazon_message]))

        price_check.assert_called_once_with(result.purchases[0].id)

    def test_failed_price_check_does_not_fail_sync(
        self,
        repository: MemoryRepository,
        registry: IssuerRegistry,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        ingestor = PurchaseIngestor(
            repository,
            RuleExtractor(),
            CardMatcher(repository, registry),
            price_check=MagicMock(side_effect=RuntimeError("browser crashed")),
        )
        result = ingestor.sync(user.id, FakeAdapter([amazon_message]))

        assert result.run.status == RunStatus.COMPLETED

    def test_extractor_error_is_counted(
        self,
        repository: MemoryRepository,
        registry: IssuerRegistry,
        user: UserProfile,
        amazon_message: InboundMessage,
    ) -> None:
        extractor = MagicMock()
        extractor.extract.side_effect = ValueError("bad markup")
        ingestor = PurchaseIngestor(repository, extractor, CardMatcher(repository, registry))

        result = ingestor.sync(user.id, FakeAdapter([amazon_message]))

        assert result.errors == 1
        assert result.run.status == RunStatus.COMPLETED

    def test_disconnected_mailbox_fails_run(
        self,
        ingestor: PurchaseIngestor,
        repository: MemoryRepository,
        user: UserProfile,
    ) -> None:
        adapter = FakeAdapter([], error=MailboxNotConnected("token expired"))

        with pytest.raises(MailboxNotConnected):
            ingestor.sync(user.id, adapter)

        [run] = repository.list_runs(user.id)
        assert run.status == RunStatus.FAILED
        assert run.error_message == "token expired"
