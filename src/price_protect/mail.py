"""Claim email composition and the two sending transports."""

from __future__ import annotations

import base64
import html
import logging
import re
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import TYPE_CHECKING, Any, Protocol

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from price_protect.errors import ChannelFailure

if TYPE_CHECKING:
    from collections.abc import Callable

    from price_protect.config import GoogleClientConfig, SmtpConfig
    from price_protect.issuers import IssuerProfile
    from price_protect.models import (
        Attachment,
        Claim,
        PaymentInstrument,
        TrackedPurchase,
        UserProfile,
    )

logger = logging.getLogger(__name__)

GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"

CLAIM_BODY_TEMPLATE = """\
{greeting}

I am writing to submit a Price Protection claim for a recent purchase.

CARDHOLDER INFORMATION:
- Cardholder Name: {cardholder}
- Card Ending In: ****{last_four}
- Email: {user_email}

PURCHASE DETAILS:
- Product: {product_name}
- Retailer: {retailer}
- Order ID: {order_id}
- Purchase Date: {purchase_date}
- Original Purchase Price: ${original_price}

PRICE DROP INFORMATION:
- Current Lower Price: ${new_price}
- Price Difference: ${price_difference}
- Date Lower Price Found: {price_found_date}{source_line}

CLAIM AMOUNT REQUESTED: ${claimed_amount}

I have attached the following documentation:
1. Claim summary document (PDF) with full details
2. Screenshot of the current lower price (if available)

Please process this claim at your earliest convenience. I understand the claim \
is subject to the standard terms and conditions of my card's price protection \
benefit.

Thank you for your assistance.

Best regards,
{cardholder}

---
Claim Reference: {claim_id}
"""


@dataclass
class ClaimEmail:
    """A composed claim message, independent of transport."""

    to: str
    sender: str
    subject: str
    body: str
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def html_body(self) -> str:
        return html.escape(self.body).replace("\n", "<br>\n")


def fill_template(template: str, values: dict[str, Any]) -> str:
    """Substitute ``{name}`` placeholders, blanking unknown names."""
    return re.sub(r"\{(\w+)\}", lambda m: str(values.get(m.group(1), "")), template)


def _long_date(value: Any) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def compose_claim_email(
    claim: Claim,
    purchase: TrackedPurchase,
    instrument: PaymentInstrument,
    user: UserProfile,
    profile: IssuerProfile,
    to: str,
) -> ClaimEmail:
    """Build the issuer-flavored claim message for one claim."""
    values = {
        "product_name": purchase.product_name,
        "retailer": purchase.retailer,
        "last_four": instrument.last_four,
        "claim_id": claim.id,
    }
    body = CLAIM_BODY_TEMPLATE.format(
        greeting=fill_template(profile.email_greeting, values),
        cardholder=user.display_name,
        last_four=instrument.last_four,
        user_email=user.email,
        product_name=purchase.product_name,
        retailer=purchase.retailer,
        order_id=purchase.order_id or "See attached receipt",
        purchase_date=_long_date(purchase.purchase_date),
        original_price=f"{claim.original_price:.2f}",
        new_price=f"{claim.new_price:.2f}",
        price_difference=f"{claim.original_price - claim.new_price:.2f}",
        price_found_date=f"{purchase.lowest_price_date:%m/%d/%Y}",
        source_line=(
            f"\n- Price Source URL: {purchase.product_url}" if purchase.product_url else ""
        ),
        claimed_amount=f"{claim.claimed_amount:.2f}",
        claim_id=claim.id,
    )
    return ClaimEmail(
        to=to,
        sender=user.email,
        subject=fill_template(profile.email_subject, values),
        body=body,
    )


def build_mime(
    email: ClaimEmail, *, from_address: str | None = None, reply_to: str | None = None
) -> EmailMessage:
    """Render a ClaimEmail as a MIME message with plain and HTML parts."""
    msg = EmailMessage()
    msg["From"] = from_address or email.sender
    msg["To"] = email.to
    msg["Subject"] = email.subject
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    if reply_to:
        msg["Reply-To"] = reply_to
    domain = (from_address or email.sender).rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg.set_content(email.body)
    msg.add_alternative(email.html_body, subtype="html")
    for att in email.attachments:
        maintype, _, subtype = att.content_type.partition("/")
        msg.add_attachment(
            att.data,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=att.filename,
        )
    return msg


class MailTransport(Protocol):
    """A way of delivering a claim email; returns a message identifier."""

    name: str

    def send(self, email: ClaimEmail) -> str: ...


class GmailTransport:
    """Send as the user through the Gmail API with their OAuth tokens."""

    name = "gmail"

    def __init__(self, credentials: Credentials, *, service: Any = None) -> None:
        self.credentials = credentials
        self._service = service

    @classmethod
    def for_user(
        cls, user: UserProfile, client: GoogleClientConfig | None
    ) -> GmailTransport | None:
        """Return a transport for the user, or None when Gmail is not connected."""
        if client is None or not user.gmail_access_token:
            return None
        credentials = Credentials(
            token=user.gmail_access_token,
            refresh_token=user.gmail_refresh_token,
            token_uri=client.token_uri,
            client_id=client.client_id,
            client_secret=client.client_secret,
            scopes=[GMAIL_SEND_SCOPE],
        )
        return cls(credentials)

    @property
    def service(self) -> Any:
        if self._service is None:
            self._service = build(
                "gmail", "v1", credentials=self.credentials, cache_discovery=False
            )
        return self._service

    def send(self, email: ClaimEmail) -> str:
        raw = base64.urlsafe_b64encode(build_mime(email).as_bytes()).decode("ascii")
        try:
            response = (
                self.service.users()
                .messages()
                .send(userId="me", body={"raw": raw})
                .execute()
            )
        except (HttpError, GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            raise ChannelFailure(self.name, str(exc)) from exc
        message_id = str(response.get("id", ""))
        logger.info("Sent claim email to %s via Gmail (%s)", email.to, message_id)
        return message_id


class SmtpRelayTransport:
    """Send from the service identity through an SMTP relay.

    The user's address goes in Reply-To so issuer replies reach them.
    """

    name = "smtp"

    def __init__(
        self,
        config: SmtpConfig,
        *,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        timeout: float = 30.0,
    ) -> None:
        self.config = config
        self._smtp_factory = smtp_factory
        self.timeout = timeout

    def send(self, email: ClaimEmail) -> str:
        msg = build_mime(email, from_address=self.config.from_address, reply_to=email.sender)
        try:
            with self._smtp_factory(
                self.config.host, self.config.port, timeout=self.timeout
            ) as server:
                server.starttls()
                server.login(self.config.username, self.config.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelFailure(self.name, str(exc)) from exc
        message_id = str(msg["Message-ID"])
        logger.info("Sent claim email to %s via SMTP relay (%s)", email.to, message_id)
        return message_id
