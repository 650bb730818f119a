"""Tests for price_protect.monitor."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest
import requests

from price_protect.eligibility import create_claim
from price_protect.errors import NotEligible, SourceUnavailable
from price_protect.monitor import (
    KeepaClient,
    PriceMonitor,
    domain_of,
    parse_price,
    selectors_for,
)
from price_protect.models import NotificationKind, PurchaseStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from price_protect.models import TrackedPurchase, UserProfile
    from price_protect.repository import MemoryRepository


@pytest.fixture
def monitor(repository: MemoryRepository) -> PriceMonitor:
    return PriceMonitor(repository, MagicMock(), sleep=MagicMock())


def _element(text: str, content: str | None = None) -> MagicMock:
    element = MagicMock()
    element.get_attribute.return_value = content
    element.inner_text.return_value = text
    return element


class TestParsePrice:
    """Tests for parse_price."""

    def test_dollar_amount(self) -> None:
        assert parse_price("$1,299.99") == Decimal("1299.99")

    def test_currency_code(self) -> None:
        assert parse_price("USD 19.99") == Decimal("19.99")

    def test_whole_dollars(self) -> None:
        assert parse_price(" $45 ") == Decimal("45.00")

    def test_range_is_rejected(self) -> None:
        assert parse_price("$10.00 - $20.00") is None

    def test_no_number(self) -> None:
        assert parse_price("Free") is None
        assert parse_price(None) is None

    def test_zero_is_rejected(self) -> None:
        assert parse_price("$0.00") is None


class TestDomainSelectors:
    """Tests for domain_of and selectors_for."""

    def test_strips_www(self) -> None:
        assert domain_of("https://www.bestbuy.com/site/x.p") == "bestbuy.com"

    def test_no_host(self) -> None:
        assert domain_of("not a url") is None

    def test_subdomain_uses_parent_rules(self) -> None:
        assert selectors_for("smile.amazon.com") == selectors_for("amazon.com")
        assert selectors_for("amazon.com")

    def test_unknown_domain(self) -> None:
        assert selectors_for("example.com") == ()
        assert selectors_for(None) == ()


class TestKeepaClient:
    """Tests for KeepaClient."""

    def _session(self, payload: object) -> MagicMock:
        session = MagicMock()
        session.get.return_value.json.return_value = payload
        return session

    def test_latest_price_in_cents(self) -> None:
        session = self._session({"products": [{"csv": [[1, 5999, 2, 4999]]}]})
        client = KeepaClient("key", session=session)

        assert client.price_for("https://www.amazon.com/dp/B08KTZ8249") == Decimal("49.99")
        params = session.get.call_args.kwargs["params"]
        assert params["asin"] == "B08KTZ8249"

    def test_out_of_stock(self) -> None:
        client = KeepaClient("key", session=self._session({"products": [{"csv": [[1, -1]]}]}))
        assert client.price_for("https://www.amazon.com/dp/B08KTZ8249") is None

    def test_no_asin(self) -> None:
        session = MagicMock()
        assert KeepaClient("key", session=session).price_for("https://www.amazon.com/") is None
        session.get.assert_not_called()

    def test_http_error(self) -> None:
        session = MagicMock()
        session.get.return_value.raise_for_status.side_effect = requests.HTTPError("429")
        client = KeepaClient("key", session=session)
        assert client.price_for("https://www.amazon.com/dp/B08KTZ8249") is None


class TestFetchPrice:
    """Tests for PriceMonitor.fetch_price."""

    def test_domain_selector(self, repository: MemoryRepository) -> None:
        browser = MagicMock()
        page = browser.page.return_value.__enter__.return_value
        page.query_selector.side_effect = lambda sel: (
            _element("$79.99") if sel == ".priceView-customer-price span" else None
        )
        monitor = PriceMonitor(repository, browser)

        found = monitor.fetch_price("https://www.bestbuy.com/site/headphones/123.p")

        assert found == (Decimal("79.99"), "bestbuy.com")
        browser.goto.assert_called_once_with(
            page, "https://www.bestbuy.com/site/headphones/123.p"
        )

    def test_generic_selector_fallback(self, repository: MemoryRepository) -> None:
        browser = MagicMock()
        page = browser.page.return_value.__enter__.return_value
        page.query_selector.side_effect = lambda sel: (
            _element("", content="24.50") if sel == '[itemprop="price"]' else None
        )
        monitor = PriceMonitor(repository, browser)

        assert monitor.fetch_price("https://shop.example.com/item") == (
            Decimal("24.50"),
            "shop.example.com (generic)",
        )

    def test_generic_price_above_ceiling_ignored(self, repository: MemoryRepository) -> None:
        browser = MagicMock()
        page = browser.page.return_value.__enter__.return_value
        page.query_selector.return_value = _element("$99,999.00")

        assert PriceMonitor(repository, browser).fetch_price("https://x.example.com/a") is None

    def test_api_preferred_for_amazon(self, repository: MemoryRepository) -> None:
        browser = MagicMock()
        keepa = MagicMock()
        keepa.price_for.return_value = Decimal("49.99")
        monitor = PriceMonitor(repository, browser, keepa=keepa)

        found = monitor.fetch_price("https://www.amazon.com/dp/B08KTZ8249")

        assert found == (Decimal("49.99"), "keepa")
        browser.page.assert_not_called()


class TestCheckPrice:
    """Tests for PriceMonitor.check_price."""

    def test_qualifying_drop_in_window(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        purchase = make_purchase(price="100.00")
        with patch.object(monitor, "fetch_price", return_value=(Decimal("80.00"), "bestbuy.com")):
            result = monitor.check_price(purchase.id, now=now)

        assert result.success is True
        assert result.price_drop == Decimal("20.00")
        assert result.is_eligible is True
        assert result.new_status == PurchaseStatus.CLAIM_ELIGIBLE

        stored = repository.get_purchase(purchase.id)
        assert stored.status == PurchaseStatus.CLAIM_ELIGIBLE
        assert stored.current_price == Decimal("80.00")
        assert stored.lowest_price == Decimal("80.00")
        assert stored.last_checked_at == now

        claim = create_claim(repository, purchase.id, now=now)
        assert claim.claimed_amount == Decimal("20.00")

    def test_drop_notification(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        user: UserProfile,
        now: datetime,
    ) -> None:
        purchase = make_purchase(price="100.00")
        with patch.object(monitor, "fetch_price", return_value=(Decimal("80.00"), "bestbuy.com")):
            monitor.check_price(purchase.id, now=now)

        [notice] = repository.list_notifications(user.id)
        assert notice.kind == NotificationKind.PRICE_DROP
        assert "(20.0%)" in notice.message
        assert notice.message.endswith("Eligible for claim!")
        assert notice.data["purchase_id"] == str(purchase.id)

    def test_unchanged_price_does_not_renotify(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        user: UserProfile,
        now: datetime,
    ) -> None:
        purchase = make_purchase(price="100.00")
        with patch.object(monitor, "fetch_price", return_value=(Decimal("80.00"), "bestbuy.com")):
            monitor.check_price(purchase.id, now=now)
            monitor.check_price(purchase.id, now=now + timedelta(hours=6))

        assert len(repository.list_notifications(user.id)) == 1

    def test_lowest_price_never_rises(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        purchase = make_purchase(price="100.00")
        for hours, price in ((0, "80.00"), (6, "90.00")):
            with patch.object(monitor, "fetch_price", return_value=(Decimal(price), "web")):
                monitor.check_price(purchase.id, now=now + timedelta(hours=hours))

        stored = repository.get_purchase(purchase.id)
        assert stored.current_price == Decimal("90.00")
        assert stored.lowest_price == Decimal("80.00")
        assert stored.lowest_price_date == now
        assert len(repository.list_observations(purchase.id)) == 2

    def test_below_threshold(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        purchase = make_purchase(price="100.00")
        with patch.object(monitor, "fetch_price", return_value=(Decimal("97.00"), "web")):
            result = monitor.check_price(purchase.id, now=now)

        assert result.new_status is None
        assert repository.get_purchase(purchase.id).status == PurchaseStatus.MONITORING

    def test_lapsed_window(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        purchase = make_purchase(price="100.00", protection_ends=now - timedelta(days=1))
        with patch.object(monitor, "fetch_price", return_value=(Decimal("80.00"), "web")):
            result = monitor.check_price(purchase.id, now=now)

        assert result.is_eligible is False
        assert repository.get_purchase(purchase.id).status == PurchaseStatus.PRICE_DROP_DETECTED
        with pytest.raises(NotEligible, match="expired"):
            create_claim(repository, purchase.id, now=now)

    def test_no_url(
        self,
        monitor: PriceMonitor,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        purchase = make_purchase(product_url=None)
        result = monitor.check_price(purchase.id, now=now)

        assert result.success is False
        assert result.error == "No product URL"

    def test_source_unavailable(
        self,
        monitor: PriceMonitor,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        purchase = make_purchase()
        with patch.object(monitor, "fetch_price", side_effect=SourceUnavailable("timeout")):
            result = monitor.check_price(purchase.id, now=now)

        assert result.success is False
        assert repository.list_observations(purchase.id) == []


class TestSweep:
    """Tests for PriceMonitor.check_all_eligible_purchases."""

    def test_counts_and_pacing(
        self,
        repository: MemoryRepository,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        sleep = MagicMock()
        monitor = PriceMonitor(repository, MagicMock(), sleep=sleep)
        make_purchase(price="100.00")
        make_purchase(price="50.00", product_name="Lamp")
        make_purchase(price="30.00", product_name="Mug", product_url=None)

        with patch.object(monitor, "fetch_price", return_value=(Decimal("40.00"), "web")):
            counts = monitor.check_all_eligible_purchases(now=now)

        assert counts == {"checked": 2, "price_drops": 2, "errors": 0}
        sleep.assert_called_once_with(monitor.config.delay_seconds)

    def test_errors_do_not_stop_sweep(
        self,
        monitor: PriceMonitor,
        make_purchase: Callable[..., TrackedPurchase],
        now: datetime,
    ) -> None:
        make_purchase()
        make_purchase(product_name="Lamp")

        with patch.object(
            monitor,
            "fetch_price",
            side_effect=[RuntimeError("boom"), (Decimal("100.00"), "web")],
        ):
            counts = monitor.check_all_eligible_purchases(now=now)

        assert counts == {"checked": 1, "price_drops": 0, "errors": 1}
