"""Mail retrieval adapter protocol."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator

    from price_protect.models import InboundMessage


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for inbound mail sources.

    Implementations raise MailboxNotConnected when the mailbox cannot be
    reached or its credentials are rejected.
    """

    def fetch_unprocessed(self, processed_ids: set[str]) -> Iterator[InboundMessage]: ...
