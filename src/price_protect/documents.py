"""Claim artifact rendering: summary PDF, price evidence, submission proof."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from playwright.sync_api import Error as PlaywrightError

from price_protect.errors import SourceUnavailable
from price_protect.models import utcnow

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from price_protect.browser import SharedBrowser
    from price_protect.issuers import IssuerProfile
    from price_protect.mail import ClaimEmail
    from price_protect.models import Claim, PaymentInstrument, TrackedPurchase, UserProfile
    from price_protect.store import FileStore

logger = logging.getLogger(__name__)

DOC_DESCRIPTIONS = {
    "receipt": "Original purchase receipt",
    "price_screenshot": "Screenshot of lower advertised price",
    "credit_card_statement": "Credit card statement showing the charge",
    "item_details": "Product details/specifications",
}

CLAIM_DOCUMENT_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<style>
  @page {{ size: letter; margin: 0.7in; }}
  body {{ font-family: Helvetica, Arial, sans-serif; font-size: 11pt; color: #222; }}
  h1 {{ color: #1a1a80; font-size: 22pt; margin-bottom: 0.2em; }}
  h2 {{ font-size: 13pt; border-bottom: 1px solid #ccc; padding-bottom: 0.2em; margin-top: 1.6em; }}
  .meta {{ font-size: 9pt; color: #555; }}
  table {{ border-collapse: collapse; }}
  td {{ padding: 0.15em 1em 0.15em 0; vertical-align: top; }}
  td.label {{ font-weight: bold; white-space: nowrap; }}
  .amount {{ border: 2px solid #1a801a; padding: 0.6em 1em; display: inline-block; margin-top: 1.5em; }}
  .amount .value {{ color: #1a801a; font-size: 20pt; font-weight: bold; }}
  .instructions {{ page-break-before: always; }}
  ul.checklist {{ list-style: none; padding-left: 0; }}
  .footer {{ position: fixed; bottom: 0; font-size: 8pt; color: #888; }}
</style>
</head>
<body>
<h1>PRICE PROTECTION CLAIM</h1>
<p class="meta">Claim ID: {claim_id}<br>Generated: {generated}</p>

<h2>CARDHOLDER</h2>
<table>
  <tr><td class="label">Name:</td><td>{cardholder}</td></tr>
  <tr><td class="label">Email:</td><td>{user_email}</td></tr>
</table>

<h2>PURCHASE DETAILS</h2>
<table>
  <tr><td class="label">Product:</td><td>{product_name}</td></tr>
  <tr><td class="label">Retailer:</td><td>{retailer}</td></tr>
  <tr><td class="label">Order ID:</td><td>{order_id}</td></tr>
  <tr><td class="label">Purchase Date:</td><td>{purchase_date}</td></tr>
  <tr><td class="label">Original Price:</td><td>${original_price}</td></tr>
</table>

<h2>PRICE DROP INFORMATION</h2>
<table>
  <tr><td class="label">New Price Found:</td><td>${new_price}</td></tr>
  <tr><td class="label">Price Difference:</td><td>${difference}</td></tr>
  <tr><td class="label">Date Found:</td><td>{date_found}</td></tr>
  <tr><td class="label">Source:</td><td>{source}</td></tr>
</table>

<h2>CREDIT CARD DETAILS</h2>
<p>Card: {nickname} ({issuer} ending in {last_four})<br>
Protection Period: {protection_days} days<br>
Max Claim Amount: ${max_claim}</p>

<div class="amount">CLAIM AMOUNT<br><span class="value">${claimed_amount}</span></div>

<div class="instructions">
<h1>FILING INSTRUCTIONS</h1>
<h2>For {issuer_name} cardholders:</h2>
<ol>{instructions}</ol>
<h2>Contact Information</h2>
<p>{contacts}</p>
<h2>Required Documents</h2>
<ul class="checklist">{checklist}</ul>
</div>
</body>
</html>
"""

PROOF_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<style>
  body {{ font-family: Helvetica, Arial, sans-serif; font-size: 11pt; margin: 2em; }}
  .banner {{ background: #4f46e5; color: #fff; padding: 0.8em 1.2em; font-weight: bold; }}
  .header {{ background: #f9fafb; border-bottom: 1px solid #e5e7eb; padding: 0.8em 1.2em; }}
  .header p {{ margin: 0.2em 0; }}
  pre {{ white-space: pre-wrap; word-wrap: break-word; font-family: inherit; padding: 0 1.2em; }}
  .footer {{ border-top: 1px solid #e5e7eb; font-size: 9pt; color: #6b7280; padding: 0.6em 1.2em; }}
</style>
</head>
<body>
<div class="banner">&#10003; Claim Email Sent Successfully</div>
<div class="header">
  <p><strong>From:</strong> {sender}</p>
  <p><strong>To:</strong> {to}</p>
  <p><strong>Subject:</strong> {subject}</p>
  <p><strong>Sent:</strong> {sent_at}</p>
  <p><strong>Channel:</strong> {channel} ({message_id})</p>
  <p><strong>Attachments:</strong> {attachments}</p>
</div>
<pre>{body}</pre>
<div class="footer">Proof of submission recorded {sent_iso}</div>
</body>
</html>
"""


@dataclass
class ClaimArtifacts:
    """Generated claim artifacts, as bytes and store references."""

    document: bytes
    document_ref: str
    price_evidence: bytes | None = None
    price_evidence_ref: str | None = None


def _e(value: object) -> str:
    return html.escape(str(value))


def _short_date(value: datetime) -> str:
    return f"{value:%m/%d/%Y}"


def render_claim_document(
    claim: Claim,
    purchase: TrackedPurchase,
    instrument: PaymentInstrument,
    user: UserProfile,
    profile: IssuerProfile,
    *,
    generated: datetime | None = None,
) -> bytes:
    """Render the two-page claim summary and filing instructions to PDF."""
    source = urlparse(purchase.product_url).hostname if purchase.product_url else None
    contacts = []
    phone = instrument.claim_phone or profile.claim_phone
    portal = instrument.claim_portal_url or profile.portal_url
    if phone:
        contacts.append(f"Phone: {_e(phone)}")
    if portal:
        contacts.append(f"Portal: {_e(portal)}")
    if instrument.claim_email or profile.claim_email:
        contacts.append(f"Email: {_e(instrument.claim_email or profile.claim_email)}")

    rendered = CLAIM_DOCUMENT_TEMPLATE.format(
        claim_id=_e(claim.id),
        generated=_short_date(generated or utcnow()),
        cardholder=_e(user.display_name),
        user_email=_e(user.email),
        product_name=_e(purchase.product_name),
        retailer=_e(purchase.retailer),
        order_id=_e(purchase.order_id or "N/A"),
        purchase_date=_short_date(purchase.purchase_date),
        original_price=f"{claim.original_price:.2f}",
        new_price=f"{claim.new_price:.2f}",
        difference=f"{claim.original_price - claim.new_price:.2f}",
        date_found=_short_date(purchase.lowest_price_date),
        source=_e(source or "N/A"),
        nickname=_e(instrument.nickname),
        issuer=_e(instrument.issuer),
        last_four=_e(instrument.last_four),
        protection_days=instrument.protection_days,
        max_claim=f"{instrument.max_claim_amount:.2f}",
        claimed_amount=f"{claim.claimed_amount:.2f}",
        issuer_name=_e(profile.short_name if profile.key != "unknown" else instrument.issuer),
        instructions="".join(f"<li>{_e(step)}</li>" for step in profile.instructions),
        contacts="<br>".join(contacts) or "See the back of your card",
        checklist="".join(
            f"<li>&#9744; {_e(DOC_DESCRIPTIONS.get(doc, doc))}</li>"
            for doc in profile.required_docs
        ),
    )
    return _html_to_pdf_bytes(rendered)


def render_submission_proof(
    email: ClaimEmail, channel: str, message_id: str, sent_at: datetime
) -> bytes:
    """Render the exact message sent, with destination and time, to PDF."""
    rendered = PROOF_TEMPLATE.format(
        sender=_e(email.sender),
        to=_e(email.to),
        subject=_e(email.subject),
        sent_at=_e(f"{sent_at:%A, %B} {sent_at.day}, {sent_at:%Y %H:%M} UTC"),
        channel=_e(channel),
        message_id=_e(message_id),
        attachments=_e(", ".join(a.filename for a in email.attachments) or "none"),
        body=_e(email.body),
        sent_iso=_e(sent_at.isoformat()),
    )
    return _html_to_pdf_bytes(rendered)


def capture_price_screenshot(browser: SharedBrowser, url: str) -> bytes | None:
    """Screenshot the product page as it looks now, or None if unreachable."""
    try:
        with browser.page() as page:
            browser.goto(page, url)
            return page.screenshot(full_page=False)
    except (SourceUnavailable, PlaywrightError) as exc:
        logger.warning("Could not capture price screenshot for %s: %s", url, exc)
        return None


class ClaimDocumentBuilder:
    """Render claim artifacts and save them to the artifact store."""

    def __init__(self, store: FileStore, browser: SharedBrowser | None = None) -> None:
        self.store = store
        self.browser = browser

    def build(
        self,
        claim: Claim,
        purchase: TrackedPurchase,
        instrument: PaymentInstrument,
        user: UserProfile,
        profile: IssuerProfile,
    ) -> ClaimArtifacts:
        document = render_claim_document(claim, purchase, instrument, user, profile)
        artifacts = ClaimArtifacts(
            document=document,
            document_ref=self.store.save(
                claim.id, "claim", purchase.product_name, document, "pdf"
            ),
        )
        if purchase.product_url and self.browser is not None:
            screenshot = capture_price_screenshot(self.browser, purchase.product_url)
            if screenshot is not None:
                artifacts.price_evidence = screenshot
                artifacts.price_evidence_ref = self.store.save(
                    claim.id, "price", purchase.retailer, screenshot, "png"
                )
        logger.info("Generated claim documentation for %s", claim.id)
        return artifacts

    def save_proof(self, claim_id: UUID, label: str, data: bytes, ext: str = "pdf") -> str:
        return self.store.save(claim_id, "proof", label, data, ext)


def _html_to_pdf_bytes(html_content: str) -> bytes:
    """Convert HTML string to PDF bytes via weasyprint."""
    import weasyprint

    doc = weasyprint.HTML(string=html_content)
    return doc.write_pdf()  # type: ignore[no-any-return]
