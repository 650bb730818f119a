"""IMAP mailbox adapter for purchase confirmations.

Messages are identified from their headers first, so mail that has
already been ingested is never downloaded again.
"""

from __future__ import annotations

import hashlib
import imaplib
import logging
from contextlib import contextmanager
from datetime import UTC, timedelta
from email import message_from_bytes
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

from price_protect.errors import MailboxNotConnected
from price_protect.models import InboundMessage, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime
    from email.message import Message

    from price_protect.config import ImapConfig

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = "(BODY.PEEK[HEADER.FIELDS (MESSAGE-ID SUBJECT DATE FROM)])"
FULL_MESSAGE = "(BODY.PEEK[])"


def header_text(value: str | None) -> str:
    """Decode an RFC 2047 header into plain text."""
    if not value:
        return ""
    return "".join(
        chunk.decode(charset or "utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
        for chunk, charset in decode_header(value)
    )


def message_identity(msg: Message) -> str:
    """The Message-ID, or a digest of sender, date and subject without one."""
    message_id = str(msg.get("Message-ID") or "").strip()
    if message_id:
        return message_id
    key = "|".join(str(msg.get(name, "")) for name in ("From", "Date", "Subject"))
    return hashlib.sha256(key.encode()).hexdigest()


def message_bodies(msg: Message) -> tuple[str | None, str | None]:
    """First inline HTML and plain-text bodies; attached files are skipped."""
    html_body: str | None = None
    text_body: str | None = None
    for part in msg.walk():
        if part.is_multipart() or part.get_filename():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")).lower():
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/html", "text/plain"):
            continue
        payload = part.get_payload(decode=True)
        if not isinstance(payload, bytes):
            continue
        text = payload.decode(part.get_content_charset() or "utf-8", errors="replace")
        if content_type == "text/html" and html_body is None:
            html_body = text
        elif content_type == "text/plain" and text_body is None:
            text_body = text
    return html_body, text_body


def _sent_at(msg: Message) -> datetime:
    header = msg.get("Date")
    if not header:
        return utcnow()
    try:
        sent = parsedate_to_datetime(str(header))
    except (TypeError, ValueError):
        logger.debug("Unparseable Date header %r", header)
        return utcnow()
    return sent if sent.tzinfo else sent.replace(tzinfo=UTC)


def parse_message(raw: bytes, source_id: str | None = None) -> InboundMessage:
    """Normalize a raw RFC 822 message."""
    msg = message_from_bytes(raw)
    html_body, text_body = message_bodies(msg)
    return InboundMessage(
        source_id=source_id or message_identity(msg),
        subject=header_text(msg.get("Subject")),
        sender=header_text(msg.get("From")),
        date=_sent_at(msg),
        html_body=html_body,
        text_body=text_body,
    )


class ImapAdapter:
    """Read purchase mail from one IMAP folder within a lookback window."""

    def __init__(self, config: ImapConfig, *, now: datetime | None = None) -> None:
        self.config = config
        self._now = now

    def since_criterion(self) -> str:
        """IMAP SINCE date for the configured lookback window."""
        start = (self._now or utcnow()) - timedelta(days=self.config.lookback_days)
        return start.strftime("%d-%b-%Y")

    def fetch_unprocessed(self, processed_ids: set[str]) -> Iterator[InboundMessage]:
        """Yield messages in the window whose identity is not in ``processed_ids``."""
        with self._session() as conn:
            for seq in self._search(conn):
                header = self._fetch(conn, seq, IDENTITY_FIELDS)
                if header is None:
                    continue
                source_id = message_identity(message_from_bytes(header))
                if source_id in processed_ids:
                    logger.debug("Skipping already-ingested message %s", source_id)
                    continue

                raw = self._fetch(conn, seq, FULL_MESSAGE)
                if raw is None:
                    continue
                try:
                    yield parse_message(raw, source_id)
                except (LookupError, ValueError):
                    logger.warning("Could not parse message %s", source_id, exc_info=True)

    @contextmanager
    def _session(self) -> Iterator[imaplib.IMAP4_SSL]:
        try:
            conn = imaplib.IMAP4_SSL(self.config.host, self.config.port)
        except OSError as exc:
            msg = f"Cannot reach mailbox {self.config.host}: {exc}"
            raise MailboxNotConnected(msg) from exc
        try:
            try:
                conn.login(self.config.username, self.config.password)
            except imaplib.IMAP4.error as exc:
                msg = f"Mailbox login rejected for {self.config.username}"
                raise MailboxNotConnected(msg) from exc
            conn.select(self.config.folder, readonly=True)
            yield conn
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError):
                logger.debug("Error during IMAP logout", exc_info=True)

    def _search(self, conn: imaplib.IMAP4_SSL) -> list[bytes]:
        status, data = conn.search(None, "SINCE", self.since_criterion())
        if status != "OK" or not data or not data[0]:
            return []
        return data[0].split()

    @staticmethod
    def _fetch(conn: imaplib.IMAP4_SSL, seq: bytes, parts: str) -> bytes | None:
        _status, data = conn.fetch(seq.decode(), parts)
        for item in data or ():
            if isinstance(item, tuple):
                return item[1]
        return None
