"""CLI entry point for price-protect."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from functools import cached_property
from typing import Any
from uuid import UUID

import click
from pydantic import BaseModel

from price_protect.config import (
    get_artifact_store_path,
    get_filing_config,
    get_google_client_config,
    get_imap_config,
    get_keepa_api_key,
    get_monitor_config,
    get_smtp_config,
)
from price_protect.errors import PriceProtectError


class Services:
    """Lazily wired collaborators for one CLI invocation."""

    @cached_property
    def repository(self) -> Any:
        from price_protect.db import PostgresRepository

        return PostgresRepository()

    @cached_property
    def registry(self) -> Any:
        from price_protect.issuers import load_registry

        return load_registry()

    @cached_property
    def browser(self) -> Any:
        from price_protect.browser import SharedBrowser

        config = get_monitor_config()
        return SharedBrowser(headless=config.headless, timeout_seconds=config.timeout_seconds)

    @cached_property
    def monitor(self) -> Any:
        from price_protect.monitor import KeepaClient, PriceMonitor

        config = get_monitor_config()
        key = get_keepa_api_key()
        keepa = KeepaClient(key, timeout=config.timeout_seconds) if key else None
        return PriceMonitor(self.repository, self.browser, config, keepa=keepa)

    @cached_property
    def filer(self) -> Any:
        from price_protect.documents import ClaimDocumentBuilder
        from price_protect.filer import AutoFiler
        from price_protect.mail import SmtpRelayTransport
        from price_protect.portal import PortalFiler
        from price_protect.store import LocalFileStore

        smtp = get_smtp_config()
        return AutoFiler(
            self.repository,
            self.registry,
            ClaimDocumentBuilder(LocalFileStore(get_artifact_store_path()), self.browser),
            portal=PortalFiler(self.browser),
            primary=AutoFiler.gmail_for(get_google_client_config()),
            secondary=SmtpRelayTransport(smtp) if smtp else None,
            config=get_filing_config(),
        )

    def sync(self, email: str | None = None) -> Any:
        """Run one mailbox sync for the user owning the configured mailbox."""
        from price_protect.adapters.imap import ImapAdapter
        from price_protect.cards import CardMatcher
        from price_protect.extraction import create_extractor
        from price_protect.ingest import PurchaseIngestor
        from price_protect.models import UserProfile

        imap = get_imap_config()
        address = email or imap.username
        user = self.repository.find_user_by_email(address)
        if user is None:
            user = self.repository.add_user(UserProfile(email=address))
        ingestor = PurchaseIngestor(
            self.repository,
            create_extractor(),
            CardMatcher(self.repository, self.registry),
            price_check=self.monitor.check_price,
        )
        return ingestor.sync(user.id, ImapAdapter(imap))

    def close(self) -> None:
        if "browser" in self.__dict__:
            self.browser.close()


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return {k: _jsonable(v) for k, v in asdict(value).items()}
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return value


def _echo(value: Any) -> None:
    click.echo(json.dumps(_jsonable(value), indent=2, default=str))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Price Protect: catch price drops and file card claims."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = Services()
    ctx.obj = services
    ctx.call_on_close(services.close)


def _run(func: Any, *args: Any, **kwargs: Any) -> Any:
    try:
        return func(*args, **kwargs)
    except PriceProtectError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("init-db")
def init_db() -> None:
    """Create database tables."""
    from price_protect.db import init_schema

    init_schema()
    click.echo("Database schema ready.")


@cli.command()
@click.option("--email", default=None, help="User email (defaults to IMAP_USERNAME).")
@click.pass_obj
def sync(services: Services, email: str | None) -> None:
    """Ingest purchases from the configured mailbox."""
    result = _run(services.sync, email)
    _echo(
        {
            "run": result.run,
            "purchases": [p.product_name for p in result.purchases],
            "errors": result.errors,
        }
    )


@cli.command("check-price")
@click.argument("purchase_id", type=click.UUID)
@click.pass_obj
def check_price(services: Services, purchase_id: UUID) -> None:
    """Re-check the price of one purchase."""
    _echo(_run(services.monitor.check_price, purchase_id))


@cli.command()
@click.pass_obj
def sweep(services: Services) -> None:
    """Check prices for every purchase due for a check."""
    _echo(_run(services.monitor.check_all_eligible_purchases))


@cli.command("create-claim")
@click.argument("purchase_id", type=click.UUID)
@click.option("--auto-file", is_flag=True, help="File the claim right away.")
@click.pass_obj
def create_claim_command(services: Services, purchase_id: UUID, auto_file: bool) -> None:
    """Create a claim for a purchase with an eligible price drop."""
    from price_protect.eligibility import create_claim

    claim = _run(create_claim, services.repository, purchase_id, auto_file=auto_file)
    if auto_file:
        _echo(_run(services.filer.file_claim, claim.id))
    else:
        _echo(claim)


@cli.command("file-claim")
@click.argument("claim_id", type=click.UUID)
@click.pass_obj
def file_claim(services: Services, claim_id: UUID) -> None:
    """Auto-file a claim through the channel cascade."""
    result = _run(services.filer.file_claim, claim_id)
    _echo(result)
    if not result.success:
        raise SystemExit(1)


@cli.command()
@click.argument("claim_id", type=click.UUID)
@click.pass_obj
def instructions(services: Services, claim_id: UUID) -> None:
    """Show manual filing instructions for a claim."""
    from price_protect.claims import filing_instructions

    _echo(_run(filing_instructions, services.repository, services.registry, claim_id))


@cli.command()
@click.argument("claim_id", type=click.UUID)
@click.pass_obj
def proof(services: Services, claim_id: UUID) -> None:
    """Show proof of filing for a claim."""
    from price_protect.claims import proof_bundle

    _echo(_run(proof_bundle, services.repository, claim_id))


@cli.command("classify-card")
@click.argument("number")
def classify_card(number: str) -> None:
    """Identify a card's network and issuer from its number."""
    from price_protect.cards import classify_card_number

    detected = _run(classify_card_number, number)
    _echo(
        {
            "network": detected.network,
            "card_type": detected.card_type,
            "issuer": detected.issuer.name,
            "last_four": detected.last_four,
            "masked_number": detected.masked_number,
            "is_valid": detected.is_valid,
            "protection_days": detected.issuer.protection_days,
            "max_claim_amount": str(detected.issuer.max_claim_amount),
        }
    )


@cli.command()
@click.pass_obj
def schedule(services: Services) -> None:
    """Run the background sweeps until interrupted."""
    from price_protect.scheduler import SweepJobs, build_scheduler

    jobs = SweepJobs(
        services.repository,
        services.monitor,
        services.filer,
        sync=services.sync,
        config=get_filing_config(),
    )
    scheduler = build_scheduler(jobs)
    click.echo("Scheduler started; press Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown(wait=False)
