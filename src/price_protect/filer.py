"""Auto-filing: portal, then the user's mail, then the relay, then manual.

A claim is leased (moved to PENDING) by a conditional update before any
channel is touched, so two triggers for the same claim cannot both send.
Each channel attempt either returns a FilingAttempt, returns None when
the channel is not available for this claim, or raises ChannelFailure.
Any other error from a channel counts as that channel failing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from price_protect.claims import filing_instructions
from price_protect.config import FilingConfig
from price_protect.documents import render_submission_proof
from price_protect.eligibility import create_claim
from price_protect.errors import (
    ChannelFailure,
    ConfigurationError,
    InvariantViolation,
    NotEligible,
)
from price_protect.mail import GmailTransport, compose_claim_email
from price_protect.models import (
    FILEABLE_CLAIM_STATUSES,
    Attachment,
    ClaimStatus,
    FilingChannel,
    NotificationKind,
    PurchaseStatus,
    utcnow,
)
from price_protect.notifications import notify
from price_protect.portal import claim_values

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from price_protect.claims import FilingInstructions
    from price_protect.config import GoogleClientConfig
    from price_protect.documents import ClaimArtifacts, ClaimDocumentBuilder
    from price_protect.issuers import IssuerProfile, IssuerRegistry, PortalWorkflow
    from price_protect.mail import ClaimEmail, MailTransport
    from price_protect.models import Claim, PaymentInstrument, TrackedPurchase, UserProfile
    from price_protect.portal import PortalFiler
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)

PDF_NAME = "PriceProtection_Claim.pdf"
SCREENSHOT_NAME = "Current_Price_Screenshot.png"


@dataclass
class FilingContext:
    """Everything a channel needs to submit one claim."""

    claim: Claim
    purchase: TrackedPurchase
    instrument: PaymentInstrument
    user: UserProfile
    profile: IssuerProfile
    artifacts: ClaimArtifacts
    email: ClaimEmail


@dataclass
class FilingAttempt:
    """A successful submission on one channel."""

    channel: FilingChannel
    status: ClaimStatus
    destination: str
    proof: bytes | None = None
    proof_ext: str = "pdf"
    message_id: str | None = None
    claim_number: str | None = None
    email: ClaimEmail | None = None


@dataclass
class FilingResult:
    """What happened when a claim was filed."""

    claim: Claim
    success: bool
    channel: FilingChannel
    destination: str | None = None
    message_id: str | None = None
    proof_ref: str | None = None
    failures: list[str] = field(default_factory=list)
    instructions: FilingInstructions | None = None


class AutoFiler:
    """File claims through an ordered cascade of channels."""

    def __init__(
        self,
        repository: Repository,
        registry: IssuerRegistry,
        builder: ClaimDocumentBuilder,
        *,
        portal: PortalFiler | None = None,
        primary: Callable[[UserProfile], MailTransport | None] | None = None,
        secondary: MailTransport | None = None,
        config: FilingConfig | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.builder = builder
        self.portal = portal
        self.primary = primary
        self.secondary = secondary
        self.config = config or FilingConfig()
        self.attempts: list[
            tuple[FilingChannel, Callable[[FilingContext], FilingAttempt | None]]
        ] = [
            (FilingChannel.PORTAL, self._try_portal),
            (FilingChannel.PRIMARY_EMAIL, self._try_primary_email),
            (FilingChannel.SECONDARY_EMAIL, self._try_secondary_email),
        ]

    @staticmethod
    def gmail_for(
        client: GoogleClientConfig | None,
    ) -> Callable[[UserProfile], MailTransport | None]:
        """Primary transport factory sending as each user through Gmail."""

        def factory(user: UserProfile) -> MailTransport | None:
            return GmailTransport.for_user(user, client)

        return factory

    def _portal_workflow(self, profile: IssuerProfile) -> PortalWorkflow | None:
        if self.portal is None:
            return None
        return profile.portal_workflow

    def _primary_transport(self, user: UserProfile) -> MailTransport | None:
        return self.primary(user) if self.primary is not None else None

    def file_claim(self, claim_id: UUID, *, now: datetime | None = None) -> FilingResult:
        """File one claim, leaving it EMAIL_SENT, FILED, or READY_TO_FILE.

        Raises InvariantViolation when the claim is not fileable (or is
        already being filed), and ConfigurationError when no channel at
        all could send it.
        """
        now = now or utcnow()
        claim = self.repository.get_claim(claim_id)
        purchase = self.repository.get_purchase(claim.purchase_id)
        instrument = self.repository.get_instrument(claim.instrument_id)
        user = self.repository.get_user(claim.user_id)
        profile = self.registry.get(instrument.issuer_key or instrument.issuer)

        if (
            self._portal_workflow(profile) is None
            and self._primary_transport(user) is None
            and self.secondary is None
        ):
            msg = "No filing channel configured: connect Gmail or set SMTP_HOST"
            raise ConfigurationError(msg)

        lease_cutoff = now - timedelta(minutes=self.config.lease_minutes)
        leased = self.repository.transition_claim(
            claim_id,
            {*FILEABLE_CLAIM_STATUSES, ClaimStatus.PENDING},
            ClaimStatus.PENDING,
            "Filing started",
            stale_before=lease_cutoff,
        )
        if leased is None:
            msg = f"Claim {claim_id} is not in a fileable status or is already being filed"
            logger.warning(msg)
            raise InvariantViolation(msg)
        logger.info("Filing claim %s for %s (%s)", claim_id, purchase.product_name, profile.key)

        failures: list[str] = []
        try:
            artifacts = self.builder.build(leased, purchase, instrument, user, profile)
        except Exception as exc:
            logger.exception("Claim document generation failed for %s", claim_id)
            failures.append(f"document generation failed: {exc}")
            return self._fall_back_to_manual(leased, failures, now)

        leased = self.repository.update_claim(
            claim_id,
            document_ref=artifacts.document_ref,
            price_evidence_ref=artifacts.price_evidence_ref,
        )
        context = FilingContext(
            claim=leased,
            purchase=purchase,
            instrument=instrument,
            user=user,
            profile=profile,
            artifacts=artifacts,
            email=self._compose(leased, purchase, instrument, user, profile, artifacts),
        )

        for channel, attempt_channel in self.attempts:
            try:
                attempt = attempt_channel(context)
            except ChannelFailure as exc:
                logger.warning(
                    "Filing channel %s failed for %s: %s", exc.channel, claim_id, exc.reason
                )
                failure = exc
            except Exception as exc:
                logger.warning(
                    "Unexpected error on %s channel for %s", channel, claim_id, exc_info=True
                )
                failure = ChannelFailure(channel, str(exc) or type(exc).__name__)
            else:
                if attempt is not None:
                    return self._record_success(context, attempt, failures, now)
                continue
            failures.append(str(failure))
            self.repository.transition_claim(
                claim_id,
                {ClaimStatus.PENDING},
                ClaimStatus.PENDING,
                f"{failure.channel} attempt failed ({failure.reason}); trying next channel",
            )

        return self._fall_back_to_manual(leased, failures, now)

    def _compose(
        self,
        claim: Claim,
        purchase: TrackedPurchase,
        instrument: PaymentInstrument,
        user: UserProfile,
        profile: IssuerProfile,
        artifacts: ClaimArtifacts,
    ) -> ClaimEmail:
        to = self.registry.claim_email(
            instrument.issuer_key or instrument.issuer,
            override=instrument.claim_email,
            network=instrument.network,
        )
        email = compose_claim_email(claim, purchase, instrument, user, profile, to)
        email.attachments.append(Attachment(PDF_NAME, "application/pdf", artifacts.document))
        if artifacts.price_evidence is not None:
            email.attachments.append(
                Attachment(SCREENSHOT_NAME, "image/png", artifacts.price_evidence)
            )
        return email

    def _try_portal(self, context: FilingContext) -> FilingAttempt | None:
        workflow = self._portal_workflow(context.profile)
        if workflow is None or self.portal is None:
            return None
        uploads = {"document": self.builder.store.get_path(context.artifacts.document_ref)}
        if context.artifacts.price_evidence_ref:
            uploads["price_evidence"] = self.builder.store.get_path(
                context.artifacts.price_evidence_ref
            )
        values = claim_values(context.claim, context.purchase, context.instrument, context.user)
        result = self.portal.submit(workflow, values, uploads)
        return FilingAttempt(
            channel=FilingChannel.PORTAL,
            status=ClaimStatus.FILED,
            destination=result.url,
            proof=result.screenshot,
            proof_ext="png",
            claim_number=result.confirmation,
        )

    def _send(
        self, channel: FilingChannel, transport: MailTransport, context: FilingContext
    ) -> FilingAttempt:
        message_id = transport.send(context.email)
        return FilingAttempt(
            channel=channel,
            status=ClaimStatus.EMAIL_SENT,
            destination=context.email.to,
            message_id=message_id,
            email=context.email,
        )

    def _try_primary_email(self, context: FilingContext) -> FilingAttempt | None:
        transport = self._primary_transport(context.user)
        if transport is None:
            return None
        return self._send(FilingChannel.PRIMARY_EMAIL, transport, context)

    def _try_secondary_email(self, context: FilingContext) -> FilingAttempt | None:
        if self.secondary is None:
            return None
        return self._send(FilingChannel.SECONDARY_EMAIL, self.secondary, context)

    def _proof_for(self, attempt: FilingAttempt, now: datetime) -> tuple[bytes, str]:
        if attempt.email is None:
            return attempt.proof or b"", attempt.proof_ext
        proof = render_submission_proof(
            attempt.email, attempt.channel, attempt.message_id or "", now
        )
        return proof, "pdf"

    def _record_success(
        self,
        context: FilingContext,
        attempt: FilingAttempt,
        failures: list[str],
        now: datetime,
    ) -> FilingResult:
        claim = context.claim
        proof_ref = None
        try:
            proof, ext = self._proof_for(attempt, now)
            proof_ref = self.builder.save_proof(claim.id, attempt.channel, proof, ext)
        except Exception:
            # The claim is already submitted; losing the proof must not reopen it.
            logger.exception("Could not save submission proof for claim %s", claim.id)

        if attempt.email is not None:
            note = (
                f"Claim email sent to {attempt.destination} via "
                f"{attempt.channel} ({attempt.message_id})"
            )
        else:
            note = f"Submitted through issuer portal (confirmation {attempt.claim_number})"
        fields = {
            "filing_channel": attempt.channel,
            "destination": attempt.destination,
            "message_id": attempt.message_id,
            "filed_at": now,
            "submission_proof_ref": proof_ref,
            "failure_reason": None,
        }
        if attempt.claim_number:
            fields["claim_number"] = attempt.claim_number
        if attempt.email is not None:
            fields["email_subject"] = attempt.email.subject
            fields["email_body"] = attempt.email.body

        updated = self.repository.transition_claim(
            claim.id, {ClaimStatus.PENDING}, attempt.status, note, **fields
        )
        if updated is None:
            msg = f"Claim {claim.id} left PENDING while it was being filed"
            raise InvariantViolation(msg)

        self.repository.transition_purchase(
            context.purchase.id,
            {PurchaseStatus.PRICE_DROP_DETECTED, PurchaseStatus.CLAIM_ELIGIBLE},
            PurchaseStatus.CLAIM_FILED,
        )
        notify(
            self.repository,
            claim.user_id,
            NotificationKind.CLAIM_FILED,
            "Claim Filed Automatically!",
            f"Your ${claim.claimed_amount:.2f} claim for {context.purchase.product_name} "
            f"was submitted to {context.instrument.issuer} ({attempt.destination}). "
            "Check your claim details for proof of filing.",
            claim_id=str(claim.id),
            purchase_id=str(context.purchase.id),
            sent_to=attempt.destination,
            amount=str(claim.claimed_amount),
            message_id=attempt.message_id,
        )
        logger.info("Claim %s filed via %s", claim.id, attempt.channel)
        return FilingResult(
            claim=updated,
            success=True,
            channel=attempt.channel,
            destination=attempt.destination,
            message_id=attempt.message_id,
            proof_ref=proof_ref,
            failures=failures,
        )

    def _fall_back_to_manual(
        self, claim: Claim, failures: list[str], now: datetime
    ) -> FilingResult:
        reason = "; ".join(failures) or "no filing channel succeeded"
        updated = self.repository.transition_claim(
            claim.id,
            {ClaimStatus.PENDING},
            ClaimStatus.READY_TO_FILE,
            f"Auto-file failed: {reason}",
            failure_reason=reason,
            filing_channel=FilingChannel.MANUAL,
        )
        purchase = self.repository.get_purchase(claim.purchase_id)
        notify(
            self.repository,
            claim.user_id,
            NotificationKind.FILING_FAILED,
            "Claim Needs Manual Filing",
            f"We could not file your claim for {purchase.product_name} automatically. "
            "Open the claim for filing instructions.",
            claim_id=str(claim.id),
            purchase_id=str(purchase.id),
            reason=reason,
        )
        logger.error("Auto-filing failed for claim %s: %s", claim.id, reason)
        return FilingResult(
            claim=updated or self.repository.get_claim(claim.id),
            success=False,
            channel=FilingChannel.MANUAL,
            failures=failures,
            instructions=filing_instructions(self.repository, self.registry, claim.id, now=now),
        )

    def retry_failed(self, *, now: datetime | None = None) -> dict[str, int]:
        """Re-attempt recent auto-file claims that were never sent."""
        now = now or utcnow()
        since = now - timedelta(days=self.config.retry_days)
        lease_cutoff = now - timedelta(minutes=self.config.lease_minutes)
        counts = {"retried": 0, "filed": 0, "skipped": 0, "errors": 0}

        for claim in self.repository.claims_for_retry(since, lease_cutoff):
            instrument = self.repository.get_instrument(claim.instrument_id)
            purchase = self.repository.get_purchase(claim.purchase_id)
            if not instrument.auto_claim_enabled or not purchase.protection_active(now):
                counts["skipped"] += 1
                continue
            counts["retried"] += 1
            try:
                result = self.file_claim(claim.id, now=now)
            except Exception:
                counts["errors"] += 1
                logger.warning("Retry failed for claim %s", claim.id, exc_info=True)
                continue
            if result.success:
                counts["filed"] += 1

        logger.info("Auto-file retry sweep: %s", counts)
        return counts

    def catch_up(self, *, now: datetime | None = None) -> dict[str, int]:
        """Create and file claims for eligible purchases auto-filing has missed."""
        now = now or utcnow()
        counts = {"created": 0, "filed": 0, "errors": 0}
        auto_users = {u.id for u in self.repository.list_users(auto_file_only=True)}

        for purchase in self.repository.eligible_purchases_without_claim(now):
            if purchase.user_id not in auto_users or purchase.instrument_id is None:
                continue
            instrument = self.repository.get_instrument(purchase.instrument_id)
            if not instrument.auto_claim_enabled:
                continue
            try:
                claim = create_claim(
                    self.repository,
                    purchase.id,
                    auto_file=True,
                    note="Claim created by catch-up auto-file",
                    now=now,
                )
            except (NotEligible, InvariantViolation) as exc:
                logger.info("Catch-up skipped purchase %s: %s", purchase.id, exc)
                continue
            counts["created"] += 1
            try:
                result = self.file_claim(claim.id, now=now)
            except Exception:
                counts["errors"] += 1
                logger.warning("Catch-up filing failed for claim %s", claim.id, exc_info=True)
                continue
            if result.success:
                counts["filed"] += 1

        logger.info("Catch-up auto-file: %s", counts)
        return counts
