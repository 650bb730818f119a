"""Purchase extraction from inbound email.

Two interchangeable strategies: ``RuleExtractor`` applies per-retailer
pattern rules, ``LlmExtractor`` delegates to a pydantic-ai agent after a
cheap keyword/sender pre-filter.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, time
from decimal import Decimal, InvalidOperation
from html.parser import HTMLParser
from typing import TYPE_CHECKING, Any, Protocol

from pydantic_ai import Agent

from price_protect.config import get_anthropic_api_key, get_extraction_strategy, get_llm_model
from price_protect.errors import ConfigurationError
from price_protect.models import CardEvidence, PurchaseCandidate, PurchaseExtraction

if TYPE_CHECKING:
    from price_protect.models import InboundMessage

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 8000

PURCHASE_KEYWORDS = (
    "order",
    "receipt",
    "confirmation",
    "purchase",
    "invoice",
    "booking",
    "itinerary",
    "shipped",
    "shipping",
    "delivery",
    "payment",
    "transaction",
    "thank you for your",
)

PURCHASE_SENDER_DOMAINS = (
    "amazon",
    "bestbuy",
    "walmart",
    "target",
    "costco",
    "newegg",
    "homedepot",
    "lowes",
    "ebay",
    "apple",
    "microsoft",
    "dell",
    "hp.com",
    "lenovo",
    "samsung",
    "lg.com",
    "sony",
    "nike",
    "adidas",
    "nordstrom",
    "macys",
    "kohls",
    "wayfair",
    "overstock",
    "chewy",
    "petco",
    "petsmart",
)

PAYMENT_WORDS = (
    "payment",
    "paid",
    "card",
    "charged",
    "billed",
    "visa",
    "mastercard",
    "amex",
    "american express",
    "discover",
)

PRICE_PATTERN = re.compile(r"\$\s?(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)")
CARD_PATTERN = re.compile(
    r"(?:ending(?:\s+in)?|last\s+(?:4|four)(?:\s+digits)?|[x*•]{2,})\s*[:#-]?\s*(\d{4})\b",
    re.IGNORECASE,
)
URL_PATTERN = re.compile(r"https?://[^\s<>\"')]+")
DEFAULT_ORDER_PATTERN = re.compile(
    r"order\s*(?:number|no\.?|#|id)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{4,})", re.IGNORECASE
)
ITEM_LINE_PATTERN = re.compile(
    r"^\s*(?:item|product|description)s?\s*[:\-]\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE
)
# Labels on lines that carry order totals rather than item names.
SUMMARY_LABELS = re.compile(
    r"\b(?:total|subtotal|tax|shipping|discount|savings|balance|amount)\b", re.IGNORECASE
)


@dataclass(frozen=True)
class RetailerRule:
    """Pattern rules for one retailer's order emails."""

    name: str
    senders: tuple[str, ...]
    subjects: tuple[re.Pattern[str], ...]
    product_url: re.Pattern[str]
    order_id: re.Pattern[str] = DEFAULT_ORDER_PATTERN
    category: str | None = None

    def matches(self, message: InboundMessage) -> bool:
        sender = message.sender.lower()
        if not any(s in sender for s in self.senders):
            return False
        return any(p.search(message.subject) for p in self.subjects)

    def product_from_subject(self, subject: str) -> str | None:
        for pattern in self.subjects:
            match = pattern.search(subject)
            if match and "product" in match.groupdict() and match.group("product"):
                return match.group("product").strip()
        return None


def _subjects(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


RETAILER_RULES: tuple[RetailerRule, ...] = (
    RetailerRule(
        name="Amazon",
        senders=("amazon.com",),
        subjects=_subjects(
            r"your amazon\.com order of \"?(?P<product>[^\"]+?)\"?(?:\s+(?:and|has)\b.*)?$",
            r"\border\b",
            r"\bshipped\b",
        ),
        product_url=re.compile(r"https?://(?:www\.)?amazon\.com/(?:[^\s]*/)?(?:dp|gp/product)/"),
        order_id=re.compile(r"\b(\d{3}-\d{7}-\d{7})\b"),
    ),
    RetailerRule(
        name="Best Buy",
        senders=("bestbuy.com",),
        subjects=_subjects(r"\border\b", r"\breceipt\b", r"thanks for your purchase"),
        product_url=re.compile(r"https?://(?:www\.)?bestbuy\.com/(?:site|product)/"),
        order_id=re.compile(r"\b(BBY01-\d{12})\b", re.IGNORECASE),
        category="electronics",
    ),
    RetailerRule(
        name="Walmart",
        senders=("walmart.com",),
        subjects=_subjects(r"\border\b", r"\breceipt\b"),
        product_url=re.compile(r"https?://(?:www\.)?walmart\.com/ip/"),
    ),
    RetailerRule(
        name="Target",
        senders=("target.com",),
        subjects=_subjects(r"\border\b", r"\breceipt\b"),
        product_url=re.compile(r"https?://(?:www\.)?target\.com/p/"),
    ),
    RetailerRule(
        name="Costco",
        senders=("costco.com",),
        subjects=_subjects(r"\border\b", r"\breceipt\b"),
        product_url=re.compile(r"https?://(?:www\.)?costco\.com/.+\.product\."),
    ),
    RetailerRule(
        name="Newegg",
        senders=("newegg.com",),
        subjects=_subjects(r"\border\b"),
        product_url=re.compile(r"https?://(?:www\.)?newegg\.com/(?:[^\s]*/)?p/"),
        category="electronics",
    ),
    RetailerRule(
        name="The Home Depot",
        senders=("homedepot.com",),
        subjects=_subjects(r"\border\b", r"\breceipt\b"),
        product_url=re.compile(r"https?://(?:www\.)?homedepot\.com/p/"),
        category="home",
    ),
    RetailerRule(
        name="Lowe's",
        senders=("lowes.com",),
        subjects=_subjects(r"\border\b", r"\breceipt\b"),
        product_url=re.compile(r"https?://(?:www\.)?lowes\.com/pd/"),
        category="home",
    ),
)


class PurchaseExtractor(Protocol):
    """Turns one message into zero or more purchase candidates."""

    def extract(self, message: InboundMessage) -> list[PurchaseCandidate]: ...


def message_text(message: InboundMessage) -> str:
    """Plain text of a message, preferring the text part over stripped HTML."""
    if message.text_body:
        return message.text_body
    if message.html_body:
        return _strip_html_tags(message.html_body)
    return ""


def is_likely_purchase(message: InboundMessage) -> bool:
    """Cheap pre-filter on subject keywords and known retailer senders."""
    subject = message.subject.lower()
    sender = message.sender.lower()
    return any(kw in subject for kw in PURCHASE_KEYWORDS) or any(
        domain in sender for domain in PURCHASE_SENDER_DOMAINS
    )


def find_card_evidence(text: str) -> CardEvidence | None:
    """Find a card's last four digits mentioned near payment vocabulary.

    The lines around the match are kept as the hint so issuer names such
    as "Visa" on an adjacent line still reach the classifier.
    """
    lines = text.splitlines()
    for index, line in enumerate(lines):
        for match in CARD_PATTERN.finditer(line):
            window = " ".join(lines[max(index - 1, 0) : index + 2])
            if any(word in window.lower() for word in PAYMENT_WORDS):
                return CardEvidence(last_four=match.group(1), hint=window.strip())
    return None


def _to_decimal(raw: str) -> Decimal | None:
    try:
        value = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    return value if value > 0 else None


def _prices_by_line(lines: list[str]) -> list[tuple[int, Decimal]]:
    found = []
    for index, line in enumerate(lines):
        for match in PRICE_PATTERN.finditer(line):
            value = _to_decimal(match.group(1))
            if value is not None:
                found.append((index, value))
    return found


def _nearest_url(
    lines: list[str], pattern: re.Pattern[str], anchor: int | None
) -> str | None:
    candidates = [
        (index, url.rstrip(".,;"))
        for index, line in enumerate(lines)
        for url in URL_PATTERN.findall(line)
        if pattern.match(url)
    ]
    if not candidates:
        return None
    if anchor is None:
        return candidates[0][1]
    return min(candidates, key=lambda c: abs(c[0] - anchor))[1]


def _item_line(lines: list[str], price_line: int) -> str | None:
    """Best guess at an item name near the line carrying a price."""
    for index in (price_line, price_line - 1, price_line + 1):
        if not 0 <= index < len(lines):
            continue
        line = lines[index]
        if SUMMARY_LABELS.search(line):
            continue
        name = PRICE_PATTERN.sub("", line).strip(" \t:-|")
        if re.search(r"[A-Za-z]{3,}", name):
            return name
    return None


class RuleExtractor:
    """Deterministic extraction for known retailers.

    One candidate per message: the highest dollar amount found is taken
    as the order total.
    """

    def __init__(self, rules: tuple[RetailerRule, ...] = RETAILER_RULES) -> None:
        self.rules = rules

    def match_rule(self, message: InboundMessage) -> RetailerRule | None:
        for rule in self.rules:
            if rule.matches(message):
                return rule
        return None

    def extract(self, message: InboundMessage) -> list[PurchaseCandidate]:
        rule = self.match_rule(message)
        if rule is None:
            return []

        text = message_text(message)
        lines = text.splitlines()
        prices = _prices_by_line(lines)
        if not prices:
            logger.debug("No prices in %s message %s", rule.name, message.source_id)
            return []
        price_line, total = max(prices, key=lambda p: p[1])

        item_match = ITEM_LINE_PATTERN.search(text)
        anchor = price_line
        if item_match:
            product = PRICE_PATTERN.sub("", item_match.group(1)).strip(" :-")
            anchor = text.count("\n", 0, item_match.start())
        else:
            product = (
                rule.product_from_subject(message.subject)
                or _item_line(lines, price_line)
                or ""
            )

        order_match = rule.order_id.search(text) or DEFAULT_ORDER_PATTERN.search(text)
        order_id = order_match.group(1) if order_match else None
        if not product:
            product = f"{rule.name} order {order_id}" if order_id else f"{rule.name} order"

        return [
            PurchaseCandidate(
                product_name=product[:255],
                price=total,
                retailer=rule.name,
                purchase_date=message.date,
                order_id=order_id,
                product_url=_nearest_url(lines, rule.product_url, anchor),
                category=rule.category,
                card=find_card_evidence(text),
            )
        ]


_SYSTEM_PROMPT = """\
You are a purchase extractor. Given an email, decide whether it confirms an \
actual product purchase (order confirmation, receipt, or shipping notice). \
Marketing, newsletters and account notices are not purchases.

If it is a purchase, extract:
- items: each product bought, with its real name from the email body (not the \
subject), unit price, quantity, and product page URL when present
- retailer: the store's canonical name (e.g. "Best Buy", not an email address)
- order_id: the retailer's order number, if present
- purchase_date: the order date (YYYY-MM-DD), not the email send date
- category: one of electronics, clothing, travel, food, services, home, other
- card_last_four and card_hint: the last four digits of the payment card and \
the surrounding text naming it (e.g. "Visa ending in 4242"), if shown

If it is not a purchase, set is_purchase to false and give a brief reason.\
"""


def create_extraction_agent() -> Agent[None, PurchaseExtraction]:
    """Create a pydantic-ai Agent configured for purchase extraction."""
    # Ensure API key is available (fail fast)
    get_anthropic_api_key()

    model_name = get_llm_model()
    return Agent(
        f"anthropic:{model_name}",
        output_type=PurchaseExtraction,
        system_prompt=_SYSTEM_PROMPT,
    )


class LlmExtractor:
    """Semantic extraction via an LLM agent.

    Accepts an optional agent for dependency injection in tests.
    """

    def __init__(self, agent: Agent[None, PurchaseExtraction] | None = None) -> None:
        self._agent = agent

    @property
    def agent(self) -> Agent[None, PurchaseExtraction]:
        if self._agent is None:
            self._agent = create_extraction_agent()
        return self._agent

    def extract(self, message: InboundMessage) -> list[PurchaseCandidate]:
        if not is_likely_purchase(message):
            logger.debug("Pre-filter skipped message %s", message.source_id)
            return []

        result: Any = self.agent.run_sync(_build_prompt(message))
        extraction: PurchaseExtraction = result.output
        if not extraction.is_purchase:
            logger.info("Not a purchase (%s): %s", message.subject, extraction.reason)
            return []
        return candidates_from_extraction(extraction, message)


def candidates_from_extraction(
    extraction: PurchaseExtraction, message: InboundMessage
) -> list[PurchaseCandidate]:
    """Convert an agent verdict to candidates, dropping malformed items."""
    purchase_date = message.date
    if extraction.purchase_date is not None:
        purchase_date = datetime.combine(extraction.purchase_date, time(12), tzinfo=UTC)

    card = None
    if extraction.card_last_four:
        card = CardEvidence(
            last_four=extraction.card_last_four, hint=extraction.card_hint or ""
        )

    candidates = []
    for item in extraction.items:
        if not item.name.strip() or item.price is None or item.price <= 0:
            continue
        candidates.append(
            PurchaseCandidate(
                product_name=item.name.strip(),
                price=item.price,
                retailer=extraction.retailer or "Unknown",
                purchase_date=purchase_date,
                order_id=extraction.order_id,
                product_url=item.product_url,
                category=extraction.category or "other",
                card=card,
            )
        )
    return candidates


def create_extractor(strategy: str | None = None) -> PurchaseExtractor:
    """Build the extractor named by ``strategy`` or EXTRACTION_STRATEGY."""
    strategy = strategy or get_extraction_strategy()
    if strategy == "rules":
        return RuleExtractor()
    if strategy == "llm":
        return LlmExtractor()
    msg = f"Unknown extraction strategy: {strategy!r} (expected 'rules' or 'llm')"
    raise ConfigurationError(msg)


def _build_prompt(message: InboundMessage) -> str:
    """Build the user prompt from an inbound message."""
    body = message_text(message) or "(no body content)"
    parts = [
        f"Subject: {message.subject}",
        f"From: {message.sender}",
        f"Date: {message.date.isoformat()}",
        "",
        "--- Email Body ---",
        body[:MAX_BODY_CHARS],
    ]
    return "\n".join(parts)


def _strip_html_tags(html: str) -> str:
    """Remove HTML tags, returning only text content."""
    stripper = _HTMLTagStripper()
    stripper.feed(html)
    return stripper.get_text()


class _HTMLTagStripper(HTMLParser):
    """HTMLParser subclass that strips tags and returns text.

    Block-level tags become line breaks so line-based heuristics still
    work on HTML-only mail. Style and script contents are dropped.
    """

    _BLOCK_TAGS = frozenset({"p", "div", "br", "tr", "li", "table", "h1", "h2", "h3", "h4"})
    _SKIP_TAGS = frozenset({"style", "script"})

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skipping = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP_TAGS:
            self._skipping += 1
        elif tag in self._BLOCK_TAGS:
            self._parts.append("\n")
        elif tag == "a":
            href = dict(attrs).get("href")
            if href and href.startswith("http"):
                self._parts.append(f" {href} ")

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP_TAGS:
            self._skipping = max(self._skipping - 1, 0)
        elif tag in self._BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if not self._skipping:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        lines = (re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.splitlines())
        return "\n".join(line for line in lines if line)
