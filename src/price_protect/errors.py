"""Exception hierarchy for the claim pipeline."""

from __future__ import annotations


class PriceProtectError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(PriceProtectError):
    """A price source or issuer portal could not be reached in time.

    Recoverable: the item is retried on the next scheduled sweep.
    """


class ParseFailure(PriceProtectError):
    """Price, card, or purchase text did not match any known pattern."""


class ChannelFailure(PriceProtectError):
    """A single filing channel failed; the cascade moves to the next one."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason


class InvariantViolation(PriceProtectError):
    """An operation would break a data invariant (e.g. a second active claim)."""


class NotEligible(PriceProtectError):
    """A claim cannot be created for the purchase in its current state."""


class NotFound(PriceProtectError):
    """A referenced record does not exist."""


class MailboxNotConnected(PriceProtectError):
    """Mail retrieval credentials are missing or expired."""


class ConfigurationError(PriceProtectError, ValueError):
    """Required credentials or settings are missing."""
