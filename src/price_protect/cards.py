"""Card-number classification and card matching from fragmentary evidence."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from price_protect.errors import InvariantViolation, ParseFailure
from price_protect.issuers import BANK_FAMILIES, NETWORK_FAMILIES, IssuerProfile, IssuerRegistry
from price_protect.models import (
    CardType,
    InstrumentSource,
    NotificationKind,
    PaymentInstrument,
)
from price_protect.notifications import notify

if TYPE_CHECKING:
    from uuid import UUID

    from price_protect.models import CardEvidence
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)

NETWORK_KEYS = frozenset(family.key for family in NETWORK_FAMILIES)


@dataclass(frozen=True)
class CardClassification:
    """Result of classifying a full card number."""

    network: str
    card_type: CardType
    issuer: IssuerProfile
    last_four: str
    masked_number: str
    is_valid: bool


def _digits(card_number: str) -> str:
    return re.sub(r"\D", "", card_number)


def luhn_check(card_number: str) -> bool:
    """Validate a card number with the mod-10 checksum."""
    digits = _digits(card_number)
    if not digits:
        return False
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def mask_card_number(card_number: str) -> str:
    """Keep the first six and last four digits, starring the rest."""
    digits = _digits(card_number)
    if len(digits) < 10:
        return digits
    return digits[:6] + "*" * (len(digits) - 10) + digits[-4:]


def classify_card_number(
    card_number: str, registry: IssuerRegistry | None = None
) -> CardClassification:
    """Classify a full card number by network pattern and bank BIN.

    Classification and checksum are independent: an unrecognized number
    is reported as ``OTHER`` with ``is_valid`` still computed.
    """
    registry = registry or IssuerRegistry()
    digits = _digits(card_number)
    if len(digits) < 13:
        msg = "Card number must contain at least 13 digits"
        raise ParseFailure(msg)

    network = "unknown"
    for family in NETWORK_FAMILIES:
        if len(digits) in family.lengths and any(p.match(digits) for p in family.patterns):
            network = family.key
            break

    network_profile = registry.get(network)
    issuer = network_profile
    for bank in BANK_FAMILIES:
        if digits[:6] in bank.bins:
            issuer = registry.get(bank.key)
            break

    return CardClassification(
        network=network,
        card_type=network_profile.card_type,
        issuer=issuer,
        last_four=digits[-4:],
        masked_number=mask_card_number(digits),
        is_valid=luhn_check(digits),
    )


def default_nickname(profile: IssuerProfile, last_four: str) -> str:
    label = profile.name if profile.key != "unknown" else "Card"
    return f"{label} ****{last_four}"


class CardMatcher:
    """Resolve card evidence to an instrument, provisioning one if unseen."""

    def __init__(self, repository: Repository, registry: IssuerRegistry) -> None:
        self.repository = repository
        self.registry = registry

    def match(self, user_id: UUID, evidence: CardEvidence) -> PaymentInstrument | None:
        """Return the user's instrument for the evidence.

        Existing instruments are matched by last four digits only. An
        unseen card is auto-provisioned with issuer defaults; if that
        fails the purchase simply stays unlinked.
        """
        for instrument in self.repository.list_instruments(user_id):
            if instrument.last_four == evidence.last_four:
                return instrument

        profile = self.registry.classify_hint(evidence.hint)
        instrument = self._provision(user_id, evidence.last_four, profile)
        try:
            created = self.repository.add_instrument(instrument)
        except InvariantViolation:
            logger.warning(
                "Card ****%s already exists for user %s", evidence.last_four, user_id
            )
            return None
        except Exception:
            logger.warning(
                "Failed to provision card ****%s for user %s",
                evidence.last_four,
                user_id,
                exc_info=True,
            )
            return None

        logger.info(
            "Auto-provisioned %s card ****%s for user %s",
            profile.short_name,
            evidence.last_four,
            user_id,
        )
        notify(
            self.repository,
            user_id,
            NotificationKind.SYSTEM,
            "New Card Detected",
            f"Added {created.nickname} from a purchase email. "
            "Review its protection terms if they look wrong.",
            instrument_id=str(created.id),
        )
        return created

    @staticmethod
    def _provision(user_id: UUID, last_four: str, profile: IssuerProfile) -> PaymentInstrument:
        return PaymentInstrument(
            user_id=user_id,
            nickname=default_nickname(profile, last_four),
            issuer=profile.short_name,
            issuer_key=profile.key,
            network=profile.key if profile.key in NETWORK_KEYS else None,
            card_type=profile.card_type,
            last_four=last_four,
            protection_days=profile.protection_days,
            max_claim_amount=profile.max_claim_amount,
            claim_method=profile.claim_method,
            claim_portal_url=profile.portal_url,
            claim_phone=profile.claim_phone,
            claim_email=None,
            auto_claim_enabled=True,
            source=InstrumentSource.AUTO_DETECTED,
        )
