"""Domain and extraction models for price-protection claims."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class PurchaseStatus(StrEnum):
    MONITORING = "MONITORING"
    PRICE_DROP_DETECTED = "PRICE_DROP_DETECTED"
    CLAIM_ELIGIBLE = "CLAIM_ELIGIBLE"
    CLAIM_FILED = "CLAIM_FILED"
    CLAIM_APPROVED = "CLAIM_APPROVED"
    CLAIM_DENIED = "CLAIM_DENIED"
    EXPIRED = "EXPIRED"


class ClaimStatus(StrEnum):
    DRAFT = "DRAFT"
    READY_TO_FILE = "READY_TO_FILE"
    PENDING = "PENDING"
    EMAIL_SENT = "EMAIL_SENT"
    FILED = "FILED"
    PENDING_REVIEW = "PENDING_REVIEW"
    ADDITIONAL_INFO_NEEDED = "ADDITIONAL_INFO_NEEDED"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    MONEY_RECEIVED = "MONEY_RECEIVED"
    EXPIRED = "EXPIRED"


# Purchases the price monitor may still move between drop states.
MONITORED_STATUSES = frozenset(
    {
        PurchaseStatus.MONITORING,
        PurchaseStatus.PRICE_DROP_DETECTED,
        PurchaseStatus.CLAIM_ELIGIBLE,
    }
)

# Claims in these states do not block a new claim for the same purchase.
INACTIVE_CLAIM_STATUSES = frozenset({ClaimStatus.DENIED, ClaimStatus.EXPIRED})

FILEABLE_CLAIM_STATUSES = frozenset({ClaimStatus.DRAFT, ClaimStatus.READY_TO_FILE})


class CardType(StrEnum):
    VISA = "VISA"
    MASTERCARD = "MASTERCARD"
    AMEX = "AMEX"
    DISCOVER = "DISCOVER"
    OTHER = "OTHER"


class ClaimMethod(StrEnum):
    ONLINE_PORTAL = "ONLINE_PORTAL"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    MAIL = "MAIL"


class FilingChannel(StrEnum):
    PORTAL = "portal"
    PRIMARY_EMAIL = "primary_email"
    SECONDARY_EMAIL = "secondary_email"
    MANUAL = "manual"


class SourceType(StrEnum):
    MANUAL = "MANUAL"
    EMAIL = "EMAIL"


class InstrumentSource(StrEnum):
    MANUAL = "MANUAL"
    QUICK_ADD = "QUICK_ADD"
    AUTO_DETECTED = "AUTO_DETECTED"


class NotificationKind(StrEnum):
    SYSTEM = "SYSTEM"
    PRICE_DROP = "PRICE_DROP"
    CLAIM_ELIGIBLE = "CLAIM_ELIGIBLE"
    CLAIM_FILED = "CLAIM_FILED"
    CLAIM_STATUS_UPDATE = "CLAIM_STATUS_UPDATE"
    FILING_FAILED = "FILING_FAILED"


class RunStatus(StrEnum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Attachment:
    """A file attached to an outgoing claim email."""

    filename: str
    content_type: str
    data: bytes


@dataclass
class InboundMessage:
    """A normalized inbound email from a source adapter."""

    source_id: str
    subject: str
    sender: str
    date: datetime
    html_body: str | None = None
    text_body: str | None = None


@dataclass(frozen=True)
class CardEvidence:
    """Fragmentary card details found in a message."""

    last_four: str
    hint: str = ""


@dataclass
class PurchaseCandidate:
    """One purchase pulled out of a message by either extraction strategy."""

    product_name: str
    price: Decimal
    retailer: str
    purchase_date: datetime
    order_id: str | None = None
    product_url: str | None = None
    category: str | None = None
    card: CardEvidence | None = None


class ExtractedItem(BaseModel):
    """A line item returned by the semantic extractor."""

    name: str = ""
    price: Decimal | None = None
    quantity: int = Field(default=1, ge=1)
    product_url: str | None = None


class PurchaseExtraction(BaseModel):
    """Structured verdict returned by the semantic extractor."""

    is_purchase: bool
    reason: str | None = None
    items: list[ExtractedItem] = Field(default_factory=list)
    retailer: str | None = None
    order_id: str | None = None
    purchase_date: date | None = None
    category: str | None = None
    card_last_four: str | None = Field(default=None, pattern=r"^\d{4}$")
    card_hint: str | None = None


class UserProfile(BaseModel):
    """Owner of instruments, purchases and claims."""

    id: UUID = Field(default_factory=uuid4)
    email: str
    name: str | None = None
    price_drop_threshold: Decimal = Decimal("5.00")
    auto_file_enabled: bool = False
    gmail_access_token: str | None = None
    gmail_refresh_token: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0] or "Cardholder"


class PaymentInstrument(BaseModel):
    """A user's credit card as known to the system."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    nickname: str
    issuer: str
    issuer_key: str
    network: str | None = None
    card_type: CardType = CardType.OTHER
    last_four: str = Field(pattern=r"^\d{4}$")
    protection_days: int = Field(default=60, ge=1)
    max_claim_amount: Decimal = Field(default=Decimal("250.00"), ge=0)
    claim_method: ClaimMethod = ClaimMethod.PHONE
    claim_portal_url: str | None = None
    claim_phone: str | None = None
    claim_email: str | None = None
    auto_claim_enabled: bool = True
    source: InstrumentSource = InstrumentSource.MANUAL
    created_at: datetime = Field(default_factory=utcnow)


class TrackedPurchase(BaseModel):
    """One purchased item under price monitoring."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    product_name: str = Field(min_length=1)
    retailer: str
    purchase_price: Decimal = Field(gt=0)
    current_price: Decimal
    lowest_price: Decimal
    lowest_price_date: datetime
    purchase_date: datetime
    product_url: str | None = None
    order_id: str | None = None
    category: str | None = None
    instrument_id: UUID | None = None
    protection_ends: datetime | None = None
    status: PurchaseStatus = PurchaseStatus.MONITORING
    source_type: SourceType = SourceType.MANUAL
    source_message_id: str | None = None
    last_checked_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def protection_active(self, now: datetime) -> bool:
        return self.protection_ends is not None and self.protection_ends > now


class PriceObservation(BaseModel):
    """An immutable price reading for a tracked purchase."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    purchase_id: UUID
    price: Decimal
    source: str
    observed_at: datetime = Field(default_factory=utcnow)


class StatusEntry(BaseModel):
    """One append-only entry in a claim's status history."""

    model_config = ConfigDict(frozen=True)

    status: ClaimStatus
    timestamp: datetime = Field(default_factory=utcnow)
    note: str | None = None


class Claim(BaseModel):
    """A reimbursement request for one purchase on one instrument."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    purchase_id: UUID
    instrument_id: UUID
    original_price: Decimal
    new_price: Decimal
    claimed_amount: Decimal = Field(gt=0)
    status: ClaimStatus = ClaimStatus.DRAFT
    auto_file: bool = False
    filing_channel: FilingChannel | None = None
    destination: str | None = None
    message_id: str | None = None
    claim_number: str | None = None
    email_subject: str | None = None
    email_body: str | None = None
    filed_at: datetime | None = None
    failure_reason: str | None = None
    approved_amount: Decimal | None = None
    resolved_at: datetime | None = None
    payout_received_at: datetime | None = None
    document_ref: str | None = None
    price_evidence_ref: str | None = None
    submission_proof_ref: str | None = None
    status_history: tuple[StatusEntry, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_CLAIM_STATUSES


class Notification(BaseModel):
    """A user-visible notice."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    kind: NotificationKind
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ExtractionRun(BaseModel):
    """Audit record for one mailbox sync."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    status: RunStatus = RunStatus.IN_PROGRESS
    messages_scanned: int = 0
    purchases_found: int = 0
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
