"""Tests for price_protect.adapters.imap."""

from __future__ import annotations

import hashlib
import imaplib
from datetime import UTC, datetime
from email import message_from_bytes
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from price_protect.adapters.imap import (
    FULL_MESSAGE,
    IDENTITY_FIELDS,
    ImapAdapter,
    header_text,
    message_bodies,
    message_identity,
    parse_message,
)
from price_protect.errors import MailboxNotConnected

if TYPE_CHECKING:
    from price_protect.config import ImapConfig


def _order_email(
    *,
    message_id: str | None = "<order-1@bestbuy.com>",
    subject: str = "Your Best Buy order BBY01-123456789012",
    sender: str = "BestBuyInfo@emailinfo.bestbuy.com",
    date: str | None = "Tue, 10 Jun 2025 14:02:00 -0400",
    text: str | None = "Sony WH-1000XM5 $349.99\nVisa ending in 4242",
    html: str | None = None,
    invoice: bytes | None = None,
) -> bytes:
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = sender
    if date:
        msg["Date"] = date
    if message_id:
        msg["Message-ID"] = message_id

    alternative = MIMEMultipart("alternative")
    if text is not None:
        alternative.attach(MIMEText(text, "plain"))
    if html is not None:
        alternative.attach(MIMEText(html, "html"))
    msg.attach(alternative)

    if invoice is not None:
        part = MIMEApplication(invoice, "pdf")
        part.add_header("Content-Disposition", "attachment", filename="invoice.pdf")
        msg.attach(part)
    return msg.as_bytes()


def _mailbox(messages: dict[bytes, bytes]) -> MagicMock:
    """A mock IMAP connection serving ``messages`` by sequence number."""
    conn = MagicMock()
    conn.select.return_value = ("OK", [str(len(messages)).encode()])
    conn.search.return_value = ("OK", [b" ".join(messages)])

    def fetch(seq: str, _parts: str) -> tuple[str, list[object]]:
        raw = messages.get(seq.encode())
        if raw is None:
            return ("OK", [None])
        return ("OK", [(seq.encode() + b" (BODY[] {100})", raw), b")"])

    conn.fetch.side_effect = fetch
    return conn


class TestHeaderText:
    """Tests for header_text."""

    def test_plain(self) -> None:
        assert header_text("Your order has shipped") == "Your order has shipped"

    def test_encoded_word(self) -> None:
        assert header_text("=?utf-8?q?Caf=C3=A9_order_confirmed?=") == "Café order confirmed"

    def test_missing(self) -> None:
        assert header_text(None) == ""
        assert header_text("") == ""


class TestMessageIdentity:
    """Tests for message_identity."""

    def test_uses_message_id(self) -> None:
        msg = message_from_bytes(_order_email(message_id="  <order-7@target.com>  "))
        assert message_identity(msg) == "<order-7@target.com>"

    def test_digest_without_message_id(self) -> None:
        msg = message_from_bytes(_order_email(message_id=None))
        expected = hashlib.sha256(
            b"BestBuyInfo@emailinfo.bestbuy.com|Tue, 10 Jun 2025 14:02:00 -0400|"
            b"Your Best Buy order BBY01-123456789012"
        ).hexdigest()
        assert message_identity(msg) == expected

    def test_digest_is_stable(self) -> None:
        raw = _order_email(message_id=None)
        assert message_identity(message_from_bytes(raw)) == message_identity(
            message_from_bytes(raw)
        )


class TestMessageBodies:
    """Tests for message_bodies."""

    def test_text_and_html(self) -> None:
        msg = message_from_bytes(
            _order_email(text="Total $349.99", html="<p>Total <b>$349.99</b></p>")
        )
        html_body, text_body = message_bodies(msg)
        assert html_body == "<p>Total <b>$349.99</b></p>"
        assert text_body == "Total $349.99"

    def test_html_only(self) -> None:
        msg = message_from_bytes(_order_email(text=None, html="<p>Order placed</p>"))
        assert message_bodies(msg) == ("<p>Order placed</p>", None)

    def test_attached_invoice_is_not_a_body(self) -> None:
        msg = message_from_bytes(_order_email(invoice=b"%PDF-1.4 invoice"))
        html_body, text_body = message_bodies(msg)
        assert html_body is None
        assert text_body is not None
        assert "4242" in text_body

    def test_attached_text_file_is_skipped(self) -> None:
        msg = MIMEMultipart("mixed")
        notes = MIMEText("gift receipt notes", "plain")
        notes.add_header("Content-Disposition", "attachment", filename="notes.txt")
        msg.attach(notes)
        msg.attach(MIMEText("Order total $20.00", "plain"))

        assert message_bodies(message_from_bytes(msg.as_bytes())) == (None, "Order total $20.00")


class TestParseMessage:
    """Tests for parse_message."""

    def test_fields(self) -> None:
        message = parse_message(_order_email())

        assert message.source_id == "<order-1@bestbuy.com>"
        assert message.subject == "Your Best Buy order BBY01-123456789012"
        assert message.sender == "BestBuyInfo@emailinfo.bestbuy.com"
        assert message.date == datetime(2025, 6, 10, 18, 2, tzinfo=UTC)
        assert message.text_body is not None
        assert "Visa ending in 4242" in message.text_body

    def test_given_source_id_wins(self) -> None:
        assert parse_message(_order_email(), "known-id").source_id == "known-id"

    def test_date_without_zone_is_utc(self) -> None:
        message = parse_message(_order_email(date="Tue, 10 Jun 2025 14:02:00 -0000"))
        assert message.date == datetime(2025, 6, 10, 14, 2, tzinfo=UTC)

    def test_missing_date_uses_now(self) -> None:
        message = parse_message(_order_email(date=None))
        assert message.date.tzinfo is not None


class TestImapAdapter:
    """Tests for ImapAdapter.fetch_unprocessed."""

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_yields_new_messages(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        mock_ssl.return_value = _mailbox(
            {
                b"1": _order_email(message_id="<a@amazon.com>"),
                b"2": _order_email(message_id="<b@amazon.com>"),
            }
        )

        messages = list(ImapAdapter(imap_config).fetch_unprocessed(set()))

        assert [m.source_id for m in messages] == ["<a@amazon.com>", "<b@amazon.com>"]

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_ingested_messages_not_downloaded(
        self, mock_ssl: MagicMock, imap_config: ImapConfig
    ) -> None:
        conn = _mailbox(
            {
                b"1": _order_email(message_id="<a@amazon.com>"),
                b"2": _order_email(message_id="<b@amazon.com>"),
            }
        )
        mock_ssl.return_value = conn

        messages = list(ImapAdapter(imap_config).fetch_unprocessed({"<a@amazon.com>"}))

        assert [m.source_id for m in messages] == ["<b@amazon.com>"]
        full_fetches = [c.args[0] for c in conn.fetch.call_args_list if c.args[1] == FULL_MESSAGE]
        assert full_fetches == ["2"]
        header_fetches = [
            c.args[0] for c in conn.fetch.call_args_list if c.args[1] == IDENTITY_FIELDS
        ]
        assert header_fetches == ["1", "2"]

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_empty_window(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        mock_ssl.return_value = _mailbox({})

        assert list(ImapAdapter(imap_config).fetch_unprocessed(set())) == []

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_expunged_message_skipped(
        self, mock_ssl: MagicMock, imap_config: ImapConfig
    ) -> None:
        conn = _mailbox({b"2": _order_email(message_id="<b@amazon.com>")})
        conn.search.return_value = ("OK", [b"1 2"])
        mock_ssl.return_value = conn

        messages = list(ImapAdapter(imap_config).fetch_unprocessed(set()))

        assert [m.source_id for m in messages] == ["<b@amazon.com>"]

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_session_setup(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        conn = _mailbox({})
        mock_ssl.return_value = conn
        adapter = ImapAdapter(imap_config, now=datetime(2025, 6, 20, tzinfo=UTC))

        list(adapter.fetch_unprocessed(set()))

        mock_ssl.assert_called_once_with("imap.example.com", 993)
        conn.login.assert_called_once_with("test@example.com", "secret")
        conn.select.assert_called_once_with("INBOX", readonly=True)
        conn.search.assert_called_once_with(None, "SINCE", "22-Mar-2025")
        conn.logout.assert_called_once()

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_logout_after_failure(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        conn = _mailbox({})
        conn.search.side_effect = imaplib.IMAP4.abort("connection reset")
        mock_ssl.return_value = conn

        with pytest.raises(imaplib.IMAP4.abort):
            list(ImapAdapter(imap_config).fetch_unprocessed(set()))
        conn.logout.assert_called_once()

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_logout_when_consumer_stops_early(
        self, mock_ssl: MagicMock, imap_config: ImapConfig
    ) -> None:
        conn = _mailbox(
            {
                b"1": _order_email(message_id="<a@amazon.com>"),
                b"2": _order_email(message_id="<b@amazon.com>"),
            }
        )
        mock_ssl.return_value = conn

        stream = ImapAdapter(imap_config).fetch_unprocessed(set())
        next(stream)
        stream.close()

        conn.logout.assert_called_once()

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_unreachable_host(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        mock_ssl.side_effect = OSError("Name or service not known")

        with pytest.raises(MailboxNotConnected, match="Cannot reach mailbox"):
            list(ImapAdapter(imap_config).fetch_unprocessed(set()))

    @patch("price_protect.adapters.imap.imaplib.IMAP4_SSL")
    def test_rejected_login(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        conn = _mailbox({})
        conn.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
        mock_ssl.return_value = conn

        with pytest.raises(MailboxNotConnected, match="login rejected"):
            list(ImapAdapter(imap_config).fetch_unprocessed(set()))
        conn.select.assert_not_called()
        conn.logout.assert_called_once()
