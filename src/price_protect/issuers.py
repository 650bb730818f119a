"""Issuer registry: card networks, bank issuers and their claim conventions.

Every lookup resolves to a profile. Unknown issuers fall back to the
``unknown`` entry, which carries generic protection terms (60 days, $250).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict

from price_protect.config import get_issuer_overrides_path
from price_protect.models import CardType, ClaimMethod

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

GENERIC_CLAIM_EMAIL = "cardbenefitservices@eclaimsline.com"

DEFAULT_CONFIRMATION_PATTERN = (
    r"(?:confirmation|claim|reference|case)\s*(?:number|no\.?|#|id)?\s*[:#]?\s*"
    r"([A-Z0-9][A-Z0-9-]{4,})"
)

DEFAULT_REQUIRED_DOCS = ("receipt", "price_screenshot")

DEFAULT_INSTRUCTIONS = (
    "Contact your credit card issuer",
    "Request a price protection claim form",
    "Submit with documentation of the original purchase and the lower price",
)


class PortalStep(BaseModel):
    """One step of an issuer portal workflow.

    ``value`` is a ``str.format`` template over claim fields; for
    ``upload`` steps it names an artifact (``document`` or
    ``price_evidence``).
    """

    model_config = ConfigDict(frozen=True)

    action: Literal["navigate", "click", "select", "fill", "upload", "submit", "wait_for"]
    selector: str | None = None
    value: str | None = None
    url: str | None = None
    required: bool = True


class PortalWorkflow(BaseModel):
    """Ordered automation steps for an issuer claim portal."""

    model_config = ConfigDict(frozen=True)

    start_url: str
    steps: tuple[PortalStep, ...]
    confirmation_pattern: str = DEFAULT_CONFIRMATION_PATTERN


class IssuerProfile(BaseModel):
    """Static knowledge about one network or issuing bank."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    short_name: str
    card_type: CardType = CardType.OTHER
    protection_days: int = 60
    max_claim_amount: Decimal = Decimal("250.00")
    claim_method: ClaimMethod = ClaimMethod.PHONE
    claim_email: str | None = None
    claim_phone: str | None = None
    portal_url: str | None = None
    required_docs: tuple[str, ...] = DEFAULT_REQUIRED_DOCS
    instructions: tuple[str, ...] = DEFAULT_INSTRUCTIONS
    email_subject: str = "Price Protection Claim - {product_name} - Card ending {last_four}"
    email_greeting: str = "Dear Price Protection Claims Department,"
    portal_workflow: PortalWorkflow | None = None
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkFamily:
    """Leading-digit and length rules for a card network."""

    key: str
    patterns: tuple[re.Pattern[str], ...]
    lengths: tuple[int, ...]


@dataclass(frozen=True)
class BankFamily:
    """Known BIN prefixes for an issuing bank."""

    key: str
    bins: tuple[str, ...]


NETWORK_FAMILIES: tuple[NetworkFamily, ...] = (
    NetworkFamily("amex", (re.compile(r"^3[47]"),), (15,)),
    NetworkFamily("visa", (re.compile(r"^4"),), (13, 16, 19)),
    NetworkFamily("mastercard", (re.compile(r"^5[1-5]"), re.compile(r"^2[2-7]")), (16,)),
    NetworkFamily(
        "discover",
        (re.compile(r"^6011"), re.compile(r"^65"), re.compile(r"^64[4-9]")),
        (16, 19),
    ),
)

BANK_FAMILIES: tuple[BankFamily, ...] = (
    BankFamily("chase", ("414720", "414721", "421413", "423456")),
    BankFamily("citi", ("417500", "541234")),
    BankFamily("capitalone", ("414709", "524896")),
)

# Ordered: network names win over bank names in free-text hints.
HINT_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("amex", re.compile(r"\bamex\b|american\s+express", re.IGNORECASE)),
    ("visa", re.compile(r"\bvisa\b", re.IGNORECASE)),
    ("mastercard", re.compile(r"master\s*card|\bmc\b", re.IGNORECASE)),
    ("discover", re.compile(r"\bdiscover\b", re.IGNORECASE)),
    ("chase", re.compile(r"\bchase\b", re.IGNORECASE)),
    ("citi", re.compile(r"\bciti(?:bank)?\b", re.IGNORECASE)),
    ("capitalone", re.compile(r"capital\s*one", re.IGNORECASE)),
    ("wellsfargo", re.compile(r"wells\s*fargo", re.IGNORECASE)),
    ("barclays", re.compile(r"\bbarclays\b", re.IGNORECASE)),
    ("usbank", re.compile(r"\bu\.?\s?s\.?\s*bank\b", re.IGNORECASE)),
)

_BUILTIN_PROFILES: tuple[IssuerProfile, ...] = (
    IssuerProfile(
        key="amex",
        name="American Express",
        short_name="Amex",
        card_type=CardType.AMEX,
        protection_days=90,
        max_claim_amount=Decimal("300.00"),
        claim_method=ClaimMethod.EMAIL,
        claim_email="purchaseprotection@aexp.com",
        claim_phone="1-800-297-8019",
        required_docs=("receipt", "price_screenshot", "item_details"),
        instructions=(
            "Call American Express Purchase Protection",
            "Provide card details and explain the price drop",
            "Email required documentation as instructed",
            "Receive confirmation via email",
        ),
        email_subject="American Express Purchase Protection Claim - {product_name}",
        email_greeting="Dear American Express Purchase Protection Team,",
        aliases=("americanexpress",),
    ),
    IssuerProfile(
        key="visa",
        name="Visa",
        short_name="Visa",
        card_type=CardType.VISA,
        claim_email="visabenefits@cardbenefitservices.com",
    ),
    IssuerProfile(
        key="mastercard",
        name="Mastercard",
        short_name="Mastercard",
        card_type=CardType.MASTERCARD,
        claim_email="mastercardbenefits@cardbenefitservices.com",
    ),
    IssuerProfile(
        key="discover",
        name="Discover",
        short_name="Discover",
        card_type=CardType.DISCOVER,
        protection_days=90,
        max_claim_amount=Decimal("500.00"),
        claim_method=ClaimMethod.ONLINE_PORTAL,
        claim_email="discover@cardbenefitservices.com",
        claim_phone="1-800-347-2683",
        portal_url="https://www.discover.com/credit-cards/member-benefits/",
        instructions=(
            "Log in to your Discover account",
            "Navigate to Card Benefits",
            "Select Price Protection",
            "Submit the claim with documentation",
            "Track the claim in your account",
        ),
        email_subject="Discover Price Protection Claim - {product_name}",
        email_greeting="Dear Discover Card Member Benefits,",
    ),
    IssuerProfile(
        key="chase",
        name="Chase",
        short_name="Chase",
        protection_days=120,
        max_claim_amount=Decimal("500.00"),
        claim_method=ClaimMethod.ONLINE_PORTAL,
        claim_email="cardbenefitservices@eclaimsline.com",
        claim_phone="1-888-320-9961",
        portal_url="https://www.chasebenefits.com/chase",
        required_docs=("receipt", "price_screenshot", "credit_card_statement"),
        instructions=(
            "Log in to the Chase Benefits portal",
            'Select "Price Protection" from the menu',
            "Fill out the claim form with purchase details",
            "Upload required documentation",
            "Submit the claim and note the confirmation number",
        ),
        email_subject="Chase Price Protection Claim - Card ending {last_four}",
        email_greeting="Dear Chase Benefits Services,",
    ),
    IssuerProfile(
        key="citi",
        name="Citi",
        short_name="Citi",
        claim_email="citibenefit@aon.com",
        claim_phone="1-866-918-4969",
        portal_url="https://www.cardbenefitservices.com/ebdcaz/completeReg.do",
        instructions=(
            "Call the Citi Benefits Center",
            "Provide your card number and purchase details",
            "Complete and return the emailed claim form with documentation",
            "Track claim status online",
        ),
        email_subject="Citi Price Rewind Claim - {product_name}",
        email_greeting="Dear Citi Card Benefit Services,",
        aliases=("citibank",),
    ),
    IssuerProfile(
        key="capitalone",
        name="Capital One",
        short_name="Capital One",
        claim_email="priceprotection@capitalone.com",
        claim_phone="1-800-227-4825",
        instructions=(
            "Check your specific card benefits to confirm price protection eligibility",
            "Call the number on the back of your card",
            "Request a price protection claim form",
            "Submit with required documentation",
        ),
    ),
    IssuerProfile(
        key="wellsfargo",
        name="Wells Fargo",
        short_name="Wells Fargo",
        claim_email="priceprotection@wellsfargo.com",
    ),
    IssuerProfile(
        key="barclays",
        name="Barclays",
        short_name="Barclays",
        claim_email="benefits@barclaysus.com",
    ),
    IssuerProfile(
        key="usbank",
        name="U.S. Bank",
        short_name="US Bank",
        claim_email="cardmemberservice@usbank.com",
    ),
)

UNKNOWN_PROFILE = IssuerProfile(key="unknown", name="Unknown Card Issuer", short_name="Unknown")


def normalize_issuer_key(name: str | None) -> str:
    """Collapse an issuer display name to a lookup key (``Capital One`` -> ``capitalone``)."""
    return re.sub(r"[^a-z]", "", (name or "").lower())


class IssuerRegistry:
    """Lookup table of issuer profiles with a mandatory default entry."""

    def __init__(
        self,
        profiles: tuple[IssuerProfile, ...] | list[IssuerProfile] = _BUILTIN_PROFILES,
        default: IssuerProfile = UNKNOWN_PROFILE,
    ) -> None:
        self.default = default
        self._profiles: dict[str, IssuerProfile] = {}
        self._aliases: dict[str, str] = {}
        for profile in profiles:
            self.register(profile)

    def register(self, profile: IssuerProfile) -> None:
        """Add or replace a profile, indexing its aliases."""
        self._profiles[profile.key] = profile
        for alias in (profile.key, *profile.aliases):
            self._aliases[normalize_issuer_key(alias)] = profile.key

    def find(self, name: str | None) -> IssuerProfile | None:
        """Return the profile for an issuer name or key, or None."""
        key = self._aliases.get(normalize_issuer_key(name))
        return self._profiles.get(key) if key else None

    def get(self, name: str | None) -> IssuerProfile:
        """Return the profile for an issuer name or key, else the default."""
        return self.find(name) or self.default

    def claim_email(
        self,
        issuer: str | None,
        *,
        override: str | None = None,
        network: str | None = None,
    ) -> str:
        """Resolve the claim-intake address.

        Order: instrument override, issuer entry, network entry, generic.
        """
        if override:
            return override
        for name in (issuer, network):
            profile = self.find(name)
            if profile is not None and profile.claim_email:
                return profile.claim_email
        return GENERIC_CLAIM_EMAIL

    def classify_hint(self, hint: str | None) -> IssuerProfile:
        """Map free-text network/issuer evidence to a profile."""
        for key, pattern in HINT_RULES:
            if hint and pattern.search(hint):
                return self.get(key)
        return self.default

    @classmethod
    def from_file(cls, path: Path) -> IssuerRegistry:
        """Build the built-in registry with profiles from a JSON file merged over it.

        The file holds ``{"profiles": [{"key": ..., ...}, ...]}``; fields
        omitted for an existing key keep their built-in values.
        """
        registry = cls()
        payload = json.loads(path.read_text(encoding="utf-8"))
        for raw in payload.get("profiles", []):
            base = registry._profiles.get(raw.get("key", ""))
            if base is not None:
                merged = base.model_dump() | raw
                profile = IssuerProfile.model_validate(merged)
            else:
                profile = IssuerProfile.model_validate(raw)
            registry.register(profile)
            logger.info("Loaded issuer profile override for %s", profile.key)
        return registry


def load_registry() -> IssuerRegistry:
    """Return the registry, applying ISSUER_OVERRIDES_PATH when set."""
    path = get_issuer_overrides_path()
    if path is None:
        return IssuerRegistry()
    return IssuerRegistry.from_file(path)

