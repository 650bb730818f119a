"""Issuer portal automation driven by a PortalWorkflow."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from playwright.sync_api import Error as PlaywrightError

from price_protect.errors import ChannelFailure, SourceUnavailable
from price_protect.mail import fill_template

if TYPE_CHECKING:
    from pathlib import Path

    from playwright.sync_api import Page

    from price_protect.browser import SharedBrowser
    from price_protect.issuers import PortalStep, PortalWorkflow
    from price_protect.models import Claim, PaymentInstrument, TrackedPurchase, UserProfile

logger = logging.getLogger(__name__)

CHANNEL = "portal"


@dataclass
class PortalResult:
    """Outcome of a successful portal submission."""

    confirmation: str | None
    url: str
    screenshot: bytes


def claim_values(
    claim: Claim, purchase: TrackedPurchase, instrument: PaymentInstrument, user: UserProfile
) -> dict[str, str]:
    """Flatten claim facts into the names portal step templates may use."""
    return {
        "claim_id": str(claim.id),
        "cardholder": user.display_name,
        "email": user.email,
        "last_four": instrument.last_four,
        "product_name": purchase.product_name,
        "retailer": purchase.retailer,
        "order_id": purchase.order_id or "",
        "purchase_date": f"{purchase.purchase_date:%m/%d/%Y}",
        "original_price": f"{claim.original_price:.2f}",
        "new_price": f"{claim.new_price:.2f}",
        "claimed_amount": f"{claim.claimed_amount:.2f}",
        "product_url": purchase.product_url or "",
    }


def extract_confirmation(text: str, pattern: str) -> str | None:
    match = re.search(pattern, text, re.IGNORECASE)
    if match is None:
        return None
    return match.group(1) if match.groups() else match.group(0)


class PortalFiler:
    """Drive a headless browser through an issuer's claim workflow.

    Every required step must find its element. If one cannot, the run
    stops before any later ``submit`` step and raises ChannelFailure.
    """

    def __init__(self, browser: SharedBrowser) -> None:
        self.browser = browser

    def submit(
        self,
        workflow: PortalWorkflow,
        values: dict[str, str],
        uploads: dict[str, Path],
    ) -> PortalResult:
        try:
            with self.browser.page() as page:
                self.browser.goto(page, workflow.start_url)
                for index, step in enumerate(workflow.steps, start=1):
                    try:
                        self._run_step(page, step, values, uploads)
                    except (PlaywrightError, SourceUnavailable, LookupError) as exc:
                        if step.required:
                            reason = f"step {index} ({step.action}) failed: {exc}"
                            raise ChannelFailure(CHANNEL, reason) from exc
                        logger.info("Skipping optional portal step %d: %s", index, exc)
                text = page.inner_text("body")
                result = PortalResult(
                    confirmation=extract_confirmation(text, workflow.confirmation_pattern),
                    url=page.url,
                    screenshot=page.screenshot(full_page=True),
                )
        except SourceUnavailable as exc:
            raise ChannelFailure(CHANNEL, str(exc)) from exc
        except PlaywrightError as exc:
            raise ChannelFailure(CHANNEL, str(exc)) from exc

        logger.info(
            "Portal submission finished at %s (confirmation %s)", result.url, result.confirmation
        )
        return result

    def _run_step(
        self,
        page: Page,
        step: PortalStep,
        values: dict[str, str],
        uploads: dict[str, Path],
    ) -> None:
        if step.action == "navigate":
            self.browser.goto(page, fill_template(step.url or "", values))
            return

        selector = step.selector
        if not selector:
            msg = f"{step.action} step has no selector"
            raise LookupError(msg)
        locator = page.locator(selector).first
        if step.action == "wait_for":
            locator.wait_for(state="visible")
        elif step.action in ("click", "submit"):
            locator.click()
            if step.action == "submit":
                page.wait_for_load_state("networkidle")
        elif step.action == "fill":
            locator.fill(fill_template(step.value or "", values))
        elif step.action == "select":
            locator.select_option(fill_template(step.value or "", values))
        elif step.action == "upload":
            path = uploads.get(step.value or "")
            if path is None:
                msg = f"no artifact named {step.value!r} to upload"
                raise LookupError(msg)
            locator.set_input_files(str(path))
