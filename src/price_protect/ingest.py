"""Mailbox sync: messages in, tracked purchases out."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from price_protect.eligibility import protection_end
from price_protect.errors import InvariantViolation, MailboxNotConnected
from price_protect.models import (
    ExtractionRun,
    NotificationKind,
    PriceObservation,
    PurchaseStatus,
    RunStatus,
    SourceType,
    TrackedPurchase,
    utcnow,
)
from price_protect.notifications import notify

if TYPE_CHECKING:
    from collections.abc import Callable
    from uuid import UUID

    from price_protect.adapters.base import SourceAdapter
    from price_protect.cards import CardMatcher
    from price_protect.extraction import PurchaseExtractor
    from price_protect.models import CardEvidence, InboundMessage, PaymentInstrument
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Counts and outputs of one sync."""

    run: ExtractionRun
    purchases: list[TrackedPurchase] = field(default_factory=list)
    queued_checks: list[UUID] = field(default_factory=list)
    errors: int = 0


class PurchaseIngestor:
    """Create tracked purchases from inbound messages.

    A message whose id is already stored on a purchase is never
    processed again. New purchases with a product URL are queued for an
    immediate price check, run through ``price_check`` after the sync.
    """

    def __init__(
        self,
        repository: Repository,
        extractor: PurchaseExtractor,
        matcher: CardMatcher,
        *,
        price_check: Callable[[UUID], Any] | None = None,
    ) -> None:
        self.repository = repository
        self.extractor = extractor
        self.matcher = matcher
        self.price_check = price_check

    def process_message(self, user_id: UUID, message: InboundMessage) -> list[TrackedPurchase]:
        """Extract and store the purchases in one message."""
        if self.repository.find_purchase_by_source(user_id, message.source_id) is not None:
            logger.info("Message %s already processed, skipping", message.source_id)
            return []

        candidates = self.extractor.extract(message)
        created: list[TrackedPurchase] = []
        matched: dict[CardEvidence, PaymentInstrument | None] = {}

        for candidate in candidates:
            if not candidate.product_name.strip() or candidate.price <= 0:
                continue

            instrument = None
            if candidate.card is not None:
                if candidate.card not in matched:
                    matched[candidate.card] = self.matcher.match(user_id, candidate.card)
                instrument = matched[candidate.card]

            purchase = TrackedPurchase(
                user_id=user_id,
                product_name=candidate.product_name,
                retailer=candidate.retailer,
                purchase_price=candidate.price,
                current_price=candidate.price,
                lowest_price=candidate.price,
                lowest_price_date=candidate.purchase_date,
                purchase_date=candidate.purchase_date,
                product_url=candidate.product_url,
                order_id=candidate.order_id,
                category=candidate.category,
                instrument_id=instrument.id if instrument else None,
                protection_ends=(
                    protection_end(candidate.purchase_date, instrument.protection_days)
                    if instrument
                    else None
                ),
                status=PurchaseStatus.MONITORING,
                source_type=SourceType.EMAIL,
                source_message_id=message.source_id,
            )
            try:
                stored = self.repository.add_purchase(purchase)
            except InvariantViolation:
                logger.info("Purchase from %s already recorded", message.source_id)
                continue

            self.repository.add_observation(
                PriceObservation(
                    purchase_id=stored.id,
                    price=stored.purchase_price,
                    source=stored.retailer.lower(),
                    observed_at=stored.purchase_date,
                )
            )
            notify(
                self.repository,
                user_id,
                NotificationKind.SYSTEM,
                "New Purchase Detected",
                f"Found: {stored.product_name} from {stored.retailer} "
                f"for ${stored.purchase_price:.2f}",
                purchase_id=str(stored.id),
            )
            logger.info(
                "Created purchase %s from message %s: %s",
                stored.id,
                message.source_id,
                stored.product_name,
            )
            created.append(stored)
        return created

    def sync(self, user_id: UUID, adapter: SourceAdapter) -> IngestResult:
        """Pull new messages from ``adapter`` and record an audit run.

        MailboxNotConnected ends the run as FAILED and is re-raised;
        any other per-message error is logged and counted.
        """
        run = self.repository.add_run(ExtractionRun(user_id=user_id))
        result = IngestResult(run=run)
        processed = self.repository.processed_source_ids(user_id)

        try:
            for message in adapter.fetch_unprocessed(processed):
                run.messages_scanned += 1
                try:
                    purchases = self.process_message(user_id, message)
                except Exception:
                    result.errors += 1
                    logger.exception("Error processing message %s", message.source_id)
                    continue
                result.purchases.extend(purchases)
                result.queued_checks.extend(p.id for p in purchases if p.product_url)
        except MailboxNotConnected as exc:
            run.status = RunStatus.FAILED
            run.error_message = str(exc)
            run.purchases_found = len(result.purchases)
            run.completed_at = utcnow()
            self.repository.update_run(run)
            logger.error("Mailbox sync failed for user %s: %s", user_id, exc)
            raise

        run.status = RunStatus.COMPLETED
        run.purchases_found = len(result.purchases)
        run.completed_at = utcnow()
        result.run = self.repository.update_run(run)
        logger.info(
            "Mailbox sync completed for user %s: %d scanned, %d purchases found",
            user_id,
            run.messages_scanned,
            run.purchases_found,
        )
        self._run_price_checks(result.queued_checks)
        return result

    def _run_price_checks(self, purchase_ids: list[UUID]) -> None:
        if self.price_check is None:
            return
        for purchase_id in purchase_ids:
            try:
                self.price_check(purchase_id)
            except Exception:
                logger.warning("Initial price check failed for %s", purchase_id, exc_info=True)
