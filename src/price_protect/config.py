"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

from price_protect.errors import ConfigurationError

load_dotenv()

_TRUTHY = ("true", "1", "yes")


@dataclass(frozen=True)
class ImapConfig:
    """IMAP connection configuration."""

    host: str
    username: str
    password: str
    port: int = 993
    folder: str = "INBOX"
    lookback_days: int = 90


@dataclass(frozen=True)
class SmtpConfig:
    """Service-level mail relay used as the secondary claim channel."""

    host: str
    username: str
    password: str
    from_address: str
    port: int = 587


@dataclass(frozen=True)
class GoogleClientConfig:
    """OAuth client used to act on behalf of a user's Gmail account."""

    client_id: str
    client_secret: str
    token_uri: str = "https://oauth2.googleapis.com/token"


@dataclass(frozen=True)
class MonitorConfig:
    """Price monitor tuning."""

    delay_seconds: float = 2.0
    timeout_seconds: float = 30.0
    max_checks_per_sweep: int = 1000
    headless: bool = True
    default_threshold: Decimal = Decimal("5.00")


@dataclass(frozen=True)
class FilingConfig:
    """Auto-filer retry and staleness windows."""

    retry_days: int = 7
    claim_stale_days: int = 30
    lease_minutes: int = 30


def _require(*names: str) -> dict[str, str]:
    """Read required variables, raising once with every missing name."""
    values = {name: os.environ.get(name, "") for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        msg = f"Required environment variables not set: {', '.join(missing)}"
        raise ConfigurationError(msg)
    return values


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ConfigurationError(msg)
    return url


def get_artifact_store_path() -> Path:
    """Absolute ARTIFACT_STORE_PATH for claim documents and proofs.

    Defaults to ./data/artifacts under the current directory.
    """
    return Path(os.environ.get("ARTIFACT_STORE_PATH", "./data/artifacts")).resolve()


def get_imap_config() -> ImapConfig:
    """Build IMAP configuration from environment variables.

    Required: IMAP_HOST, IMAP_USERNAME, IMAP_PASSWORD
    Optional: IMAP_PORT (default 993), IMAP_FOLDER (default INBOX),
    IMAP_LOOKBACK_DAYS (default 90)
    """
    values = _require("IMAP_HOST", "IMAP_USERNAME", "IMAP_PASSWORD")
    return ImapConfig(
        host=values["IMAP_HOST"],
        username=values["IMAP_USERNAME"],
        password=values["IMAP_PASSWORD"],
        port=int(os.environ.get("IMAP_PORT", "993")),
        folder=os.environ.get("IMAP_FOLDER", "INBOX"),
        lookback_days=int(os.environ.get("IMAP_LOOKBACK_DAYS", "90")),
    )


def get_smtp_config() -> SmtpConfig | None:
    """Return relay settings, or None when the relay is not configured."""
    host = os.environ.get("SMTP_HOST")
    if not host:
        return None
    values = _require("SMTP_USER", "SMTP_PASS")
    return SmtpConfig(
        host=host,
        username=values["SMTP_USER"],
        password=values["SMTP_PASS"],
        from_address=os.environ.get("CLAIM_FROM_EMAIL", values["SMTP_USER"]),
        port=int(os.environ.get("SMTP_PORT", "587")),
    )


def get_google_client_config() -> GoogleClientConfig | None:
    """Return the Google OAuth client, or None when not configured."""
    client_id = os.environ.get("GOOGLE_CLIENT_ID")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    return GoogleClientConfig(client_id=client_id, client_secret=client_secret)


def get_anthropic_api_key() -> str:
    """Return the ANTHROPIC_API_KEY from the environment."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    if not key:
        msg = "ANTHROPIC_API_KEY environment variable is required"
        raise ConfigurationError(msg)
    return key


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def get_extraction_strategy() -> str:
    """Return ``rules`` or ``llm``."""
    strategy = os.environ.get("EXTRACTION_STRATEGY", "rules").lower()
    if strategy not in ("rules", "llm"):
        msg = f"EXTRACTION_STRATEGY must be 'rules' or 'llm', got {strategy!r}"
        raise ConfigurationError(msg)
    return strategy


def get_keepa_api_key() -> str | None:
    """Return the Keepa key used for the amazon.com price API, if any."""
    return os.environ.get("KEEPA_API_KEY") or None


def get_monitor_config() -> MonitorConfig:
    """Build price monitor settings from the environment."""
    return MonitorConfig(
        delay_seconds=float(os.environ.get("PRICE_CHECK_DELAY_SECONDS", "2.0")),
        timeout_seconds=float(os.environ.get("PRICE_CHECK_TIMEOUT_SECONDS", "30")),
        max_checks_per_sweep=int(os.environ.get("MAX_PRICE_CHECKS_PER_SWEEP", "1000")),
        headless=os.environ.get("BROWSER_HEADLESS", "true").lower() in _TRUTHY,
    )


def get_filing_config() -> FilingConfig:
    """Build auto-filer settings from the environment."""
    return FilingConfig(
        retry_days=int(os.environ.get("AUTO_FILE_RETRY_DAYS", "7")),
        claim_stale_days=int(os.environ.get("CLAIM_STALE_DAYS", "30")),
        lease_minutes=int(os.environ.get("FILING_LEASE_MINUTES", "30")),
    )


def get_issuer_overrides_path() -> Path | None:
    """Return the optional JSON file of issuer profile overrides."""
    raw = os.environ.get("ISSUER_OVERRIDES_PATH")
    return Path(raw).resolve() if raw else None
