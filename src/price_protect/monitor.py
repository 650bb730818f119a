"""Price monitoring for tracked purchases.

Prices come from, in order: a structured API for the product's domain
when one is configured, the domain's own page selectors, then a broad set
of generic "looks like a price" selectors on the same page.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import requests
from playwright.sync_api import Error as PlaywrightError

from price_protect.config import MonitorConfig
from price_protect.eligibility import evaluate_drop, money
from price_protect.errors import NotFound, SourceUnavailable
from price_protect.models import MONITORED_STATUSES, NotificationKind, utcnow
from price_protect.notifications import notify

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from playwright.sync_api import Page

    from price_protect.browser import SharedBrowser
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)

DOMAIN_SELECTORS: dict[str, tuple[str, ...]] = {
    "amazon.com": (
        "#priceblock_ourprice",
        "#priceblock_dealprice",
        ".a-price .a-offscreen",
        "#corePrice_feature_div .a-price .a-offscreen",
        "#apex_offerDisplay_desktop .a-price .a-offscreen",
        'span[data-a-color="price"] .a-offscreen',
    ),
    "bestbuy.com": (
        ".priceView-customer-price span",
        ".priceView-hero-price span",
        '[data-testid="customer-price"] span',
    ),
    "walmart.com": (
        '[itemprop="price"]',
        ".price-characteristic",
        'span[data-automation="buybox-price"]',
    ),
    "target.com": (
        '[data-test="product-price"]',
        ".h-text-bs span",
    ),
    "costco.com": ("#pull-right-price", ".your-price .value"),
    "newegg.com": (".price-current", ".product-price .price-current"),
    "homedepot.com": (".price__dollars", '[data-testid="productPrice"] .price'),
    "lowes.com": (".main-price", '[data-selector="splp-item-price"]'),
}

GENERIC_SELECTORS = (
    '[itemprop="price"]',
    "[data-price]",
    ".product-price",
    ".sale-price",
    ".current-price",
    '[class*="price"]',
    '[class*="Price"]',
)

# Generic matches outside this range are almost always not the item price.
GENERIC_PRICE_CEILING = Decimal(50000)

KEEPA_URL = "https://api.keepa.com/product"
ASIN_PATTERN = re.compile(r"/(?:dp|gp/product)/([A-Z0-9]{10})", re.IGNORECASE)

_CURRENCY = re.compile(r"[$£€¥₹]|\b(?:USD|US)\b", re.IGNORECASE)
_THOUSANDS = re.compile(r"(?<=\d),(?=\d{3}\b)")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def parse_price(text: str | None) -> Decimal | None:
    """Parse a displayed price such as ``$1,299.99``.

    Only text holding exactly one numeric token is accepted; anything
    else is treated as no price rather than guessed at.
    """
    if not text:
        return None
    cleaned = _THOUSANDS.sub("", _CURRENCY.sub("", text))
    tokens = _NUMBER.findall(cleaned)
    if len(tokens) != 1:
        return None
    try:
        price = Decimal(tokens[0])
    except InvalidOperation:
        return None
    return money(price) if price > 0 else None


def domain_of(url: str) -> str | None:
    host = urlparse(url).hostname
    if not host:
        return None
    return host.removeprefix("www.")


def selectors_for(domain: str | None) -> tuple[str, ...]:
    if domain is None:
        return ()
    for known, selectors in DOMAIN_SELECTORS.items():
        if domain == known or domain.endswith(f".{known}"):
            return selectors
    return ()


@dataclass
class PriceCheckResult:
    """Outcome of one price check."""

    purchase_id: UUID
    success: bool
    previous_price: Decimal | None = None
    current_price: Decimal | None = None
    price_drop: Decimal | None = None
    new_status: str | None = None
    is_eligible: bool = False
    error: str | None = None


class KeepaClient:
    """Amazon price lookups through the Keepa product API."""

    def __init__(self, api_key: str, *, timeout: float = 30.0, session: Any = requests) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.session = session

    def price_for(self, url: str) -> Decimal | None:
        match = ASIN_PATTERN.search(url)
        if match is None:
            return None
        params = {"key": self.api_key, "domain": 1, "asin": match.group(1)}
        try:
            resp = self.session.get(KEEPA_URL, params=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Keepa API error for %s: %s", match.group(1), e)
            return None

        products = data.get("products") or []
        history = products[0].get("csv") if products else None
        if not history or not history[0]:
            return None
        # Keepa reports prices in cents; -1 means out of stock
        latest = history[0][-1]
        if latest is None or latest <= 0:
            return None
        return money(Decimal(latest) / 100)


class PriceMonitor:
    """Fetch current prices, record them, and flag qualifying drops."""

    def __init__(
        self,
        repository: Repository,
        browser: SharedBrowser,
        config: MonitorConfig | None = None,
        *,
        keepa: KeepaClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.browser = browser
        self.config = config or MonitorConfig()
        self.apis: dict[str, KeepaClient] = {"amazon.com": keepa} if keepa else {}
        self._sleep = sleep

    def fetch_price(self, url: str) -> tuple[Decimal, str] | None:
        """Return the current price and its source label, or None.

        Raises SourceUnavailable when the page cannot be loaded.
        """
        domain = domain_of(url)
        api = self.apis.get(domain or "")
        if api is not None:
            price = api.price_for(url)
            if price is not None:
                return price, "keepa"

        specific = selectors_for(domain)
        with self.browser.page() as page:
            self.browser.goto(page, url)
            price = self._first_price(page, specific)
            if price is not None:
                return price, domain or "web"
            price = self._first_price(page, GENERIC_SELECTORS, ceiling=GENERIC_PRICE_CEILING)
            if price is not None:
                return price, f"{domain or 'web'} (generic)"
        return None

    @staticmethod
    def _first_price(
        page: Page, selectors: tuple[str, ...], ceiling: Decimal | None = None
    ) -> Decimal | None:
        for selector in selectors:
            try:
                element = page.query_selector(selector)
                if element is None:
                    continue
                text = element.get_attribute("content") or element.inner_text()
            except PlaywrightError:
                continue
            price = parse_price(text)
            if price is not None and (ceiling is None or price < ceiling):
                return price
        return None

    def check_price(self, purchase_id: UUID, *, now: datetime | None = None) -> PriceCheckResult:
        """Check one purchase's price and update its status."""
        now = now or utcnow()
        purchase = self.repository.get_purchase(purchase_id)
        if not purchase.product_url:
            return PriceCheckResult(purchase_id, success=False, error="No product URL")

        try:
            found = self.fetch_price(purchase.product_url)
        except SourceUnavailable as exc:
            logger.warning("Price source unavailable for %s: %s", purchase_id, exc)
            return PriceCheckResult(purchase_id, success=False, error=str(exc))
        if found is None:
            logger.info("No price found for purchase %s", purchase_id)
            return PriceCheckResult(purchase_id, success=False, error="Could not fetch price")

        price, source = found
        updated = self.repository.record_observation(purchase_id, price, source, now)
        user = self.repository.get_user(purchase.user_id)
        drop = purchase.purchase_price - price
        window_active = purchase.protection_active(now)
        new_status = evaluate_drop(
            purchase.purchase_price,
            price,
            user.price_drop_threshold,
            window_active=window_active,
        )

        result = PriceCheckResult(
            purchase_id,
            success=True,
            previous_price=purchase.current_price,
            current_price=updated.current_price,
            price_drop=drop,
        )
        if new_status is None:
            return result

        result.is_eligible = window_active
        if purchase.status in MONITORED_STATUSES and self.repository.transition_purchase(
            purchase_id, MONITORED_STATUSES, new_status
        ):
            result.new_status = str(new_status)

        if price != purchase.current_price:
            self._notify_drop(
                purchase.user_id,
                purchase_id,
                purchase.product_name,
                purchase.purchase_price,
                price,
                eligible=window_active,
            )
        logger.info(
            "Price drop for %s: $%s (now $%s, eligible=%s)", purchase_id, drop, price, window_active
        )
        return result

    def _notify_drop(
        self,
        user_id: UUID,
        purchase_id: UUID,
        product_name: str,
        purchase_price: Decimal,
        price: Decimal,
        *,
        eligible: bool,
    ) -> None:
        drop = purchase_price - price
        percent = (drop / purchase_price * 100).quantize(Decimal("0.1"))
        suffix = " - Eligible for claim!" if eligible else ""
        notify(
            self.repository,
            user_id,
            NotificationKind.PRICE_DROP,
            "Price Drop Detected!",
            f"{product_name} dropped by ${drop} ({percent}%){suffix}",
            purchase_id=str(purchase_id),
            price_drop=str(drop),
            new_price=str(price),
            is_eligible=eligible,
        )

    def check_all_eligible_purchases(self, *, now: datetime | None = None) -> dict[str, int]:
        """Sweep the oldest-checked purchases, pausing between requests."""
        now = now or utcnow()
        due = self.repository.purchases_due_for_check(now, self.config.max_checks_per_sweep)
        logger.info("Starting price check for %d purchases", len(due))

        counts = {"checked": 0, "price_drops": 0, "errors": 0}
        for index, purchase in enumerate(due):
            if index:
                self._sleep(self.config.delay_seconds)
            try:
                result = self.check_price(purchase.id, now=now)
            except NotFound:
                logger.info("Purchase %s removed during sweep", purchase.id)
                continue
            except Exception:
                counts["errors"] += 1
                logger.exception("Price check error for %s", purchase.id)
                continue
            if not result.success:
                counts["errors"] += 1
                continue
            counts["checked"] += 1
            if result.new_status is not None:
                counts["price_drops"] += 1

        logger.info(
            "Price check completed: %d checked, %d drops, %d errors",
            counts["checked"],
            counts["price_drops"],
            counts["errors"],
        )
        return counts
