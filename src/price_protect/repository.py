"""Repository protocol and an in-process implementation.

Every state change the pipeline makes concurrently with other triggers
goes through a conditional primitive (``transition_purchase``,
``transition_claim``, ``insert_claim_if_no_active``): the write only
happens if the stored status still matches the expected pre-state.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Protocol

from price_protect.errors import InvariantViolation, NotFound
from price_protect.models import (
    FILEABLE_CLAIM_STATUSES,
    INACTIVE_CLAIM_STATUSES,
    Claim,
    ClaimStatus,
    PriceObservation,
    PurchaseStatus,
    StatusEntry,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from price_protect.models import (
        ExtractionRun,
        Notification,
        NotificationKind,
        PaymentInstrument,
        TrackedPurchase,
        UserProfile,
    )

CHECKABLE_STATUSES = (PurchaseStatus.MONITORING, PurchaseStatus.PRICE_DROP_DETECTED)

EXPIRABLE_PURCHASE_STATUSES = (
    PurchaseStatus.MONITORING,
    PurchaseStatus.PRICE_DROP_DETECTED,
    PurchaseStatus.CLAIM_ELIGIBLE,
)


class Repository(Protocol):
    """Persistence operations used by the pipeline."""

    # Users
    def add_user(self, user: UserProfile) -> UserProfile: ...
    def get_user(self, user_id: UUID) -> UserProfile: ...
    def find_user_by_email(self, email: str) -> UserProfile | None: ...
    def list_users(self, *, auto_file_only: bool = False) -> list[UserProfile]: ...

    # Instruments
    def add_instrument(self, instrument: PaymentInstrument) -> PaymentInstrument: ...
    def get_instrument(self, instrument_id: UUID) -> PaymentInstrument: ...
    def list_instruments(self, user_id: UUID) -> list[PaymentInstrument]: ...
    def update_instrument(self, instrument_id: UUID, **fields: Any) -> PaymentInstrument: ...
    def delete_instrument(self, instrument_id: UUID) -> None: ...

    # Purchases
    def add_purchase(self, purchase: TrackedPurchase) -> TrackedPurchase: ...
    def get_purchase(self, purchase_id: UUID) -> TrackedPurchase: ...
    def list_purchases(self, user_id: UUID) -> list[TrackedPurchase]: ...
    def find_purchase_by_source(
        self, user_id: UUID, source_message_id: str
    ) -> TrackedPurchase | None: ...
    def processed_source_ids(self, user_id: UUID) -> set[str]: ...
    def update_purchase(self, purchase_id: UUID, **fields: Any) -> TrackedPurchase: ...
    def transition_purchase(
        self,
        purchase_id: UUID,
        expected: Collection[PurchaseStatus],
        new_status: PurchaseStatus,
        **fields: Any,
    ) -> bool: ...
    def delete_purchase(self, purchase_id: UUID) -> None: ...
    def purchases_due_for_check(self, now: datetime, limit: int) -> list[TrackedPurchase]: ...
    def purchases_nearing_deadline(
        self, now: datetime, until: datetime
    ) -> list[TrackedPurchase]: ...
    def eligible_purchases_without_claim(self, now: datetime) -> list[TrackedPurchase]: ...
    def expire_purchases(self, now: datetime) -> int: ...

    # Observations
    def add_observation(self, observation: PriceObservation) -> PriceObservation: ...
    def record_observation(
        self, purchase_id: UUID, price: Decimal, source: str, observed_at: datetime
    ) -> TrackedPurchase: ...
    def list_observations(self, purchase_id: UUID) -> list[PriceObservation]: ...

    # Claims
    def insert_claim_if_no_active(self, claim: Claim) -> Claim | None: ...
    def get_claim(self, claim_id: UUID) -> Claim: ...
    def list_claims(
        self, *, user_id: UUID | None = None, purchase_id: UUID | None = None
    ) -> list[Claim]: ...
    def update_claim(self, claim_id: UUID, **fields: Any) -> Claim: ...
    def transition_claim(
        self,
        claim_id: UUID,
        expected: Collection[ClaimStatus],
        new_status: ClaimStatus,
        note: str | None = None,
        *,
        stale_before: datetime | None = None,
        **fields: Any,
    ) -> Claim | None: ...
    def delete_claim(self, claim_id: UUID, expected: Collection[ClaimStatus]) -> bool: ...
    def claims_for_retry(self, since: datetime, lease_cutoff: datetime) -> list[Claim]: ...
    def expire_stale_claims(self, before: datetime) -> int: ...

    # Notifications
    def add_notification(self, notification: Notification) -> Notification: ...
    def list_notifications(self, user_id: UUID) -> list[Notification]: ...
    def has_recent_notification(
        self, user_id: UUID, kind: NotificationKind, purchase_id: UUID, since: datetime
    ) -> bool: ...

    # Extraction runs
    def add_run(self, run: ExtractionRun) -> ExtractionRun: ...
    def update_run(self, run: ExtractionRun) -> ExtractionRun: ...
    def list_runs(self, user_id: UUID) -> list[ExtractionRun]: ...


def _claim_matches(
    claim: Claim,
    expected: Collection[ClaimStatus],
    stale_before: datetime | None,
) -> bool:
    if claim.status not in expected:
        return False
    if stale_before is not None and claim.status == ClaimStatus.PENDING:
        return claim.updated_at < stale_before
    return True


class MemoryRepository:
    """Thread-safe in-process repository.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: dict[UUID, UserProfile] = {}
        self._instruments: dict[UUID, PaymentInstrument] = {}
        self._purchases: dict[UUID, TrackedPurchase] = {}
        self._observations: dict[UUID, list[PriceObservation]] = {}
        self._claims: dict[UUID, Claim] = {}
        self._notifications: list[Notification] = []
        self._runs: dict[UUID, ExtractionRun] = {}

    # Users

    def add_user(self, user: UserProfile) -> UserProfile:
        with self._lock:
            self._users[user.id] = user.model_copy()
            return user.model_copy()

    def get_user(self, user_id: UUID) -> UserProfile:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                msg = f"User {user_id} not found"
                raise NotFound(msg)
            return user.model_copy()

    def find_user_by_email(self, email: str) -> UserProfile | None:
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email.lower():
                    return user.model_copy()
            return None

    def list_users(self, *, auto_file_only: bool = False) -> list[UserProfile]:
        with self._lock:
            return [
                u.model_copy()
                for u in self._users.values()
                if u.auto_file_enabled or not auto_file_only
            ]

    # Instruments

    def add_instrument(self, instrument: PaymentInstrument) -> PaymentInstrument:
        with self._lock:
            for existing in self._instruments.values():
                if (
                    existing.user_id == instrument.user_id
                    and existing.last_four == instrument.last_four
                    and existing.issuer == instrument.issuer
                ):
                    msg = (
                        f"Card {instrument.issuer} ****{instrument.last_four} "
                        "already exists for this user"
                    )
                    raise InvariantViolation(msg)
            self._instruments[instrument.id] = instrument.model_copy()
            return instrument.model_copy()

    def get_instrument(self, instrument_id: UUID) -> PaymentInstrument:
        with self._lock:
            instrument = self._instruments.get(instrument_id)
            if instrument is None:
                msg = f"Instrument {instrument_id} not found"
                raise NotFound(msg)
            return instrument.model_copy()

    def list_instruments(self, user_id: UUID) -> list[PaymentInstrument]:
        with self._lock:
            found = [i for i in self._instruments.values() if i.user_id == user_id]
            return [i.model_copy() for i in sorted(found, key=lambda i: i.created_at)]

    def update_instrument(self, instrument_id: UUID, **fields: Any) -> PaymentInstrument:
        with self._lock:
            updated = self.get_instrument(instrument_id).model_copy(update=fields)
            self._instruments[instrument_id] = updated
            return updated.model_copy()

    def delete_instrument(self, instrument_id: UUID) -> None:
        with self._lock:
            if any(c.instrument_id == instrument_id for c in self._claims.values()):
                msg = f"Instrument {instrument_id} is referenced by a claim"
                raise InvariantViolation(msg)
            self.get_instrument(instrument_id)
            del self._instruments[instrument_id]
            for purchase_id, purchase in self._purchases.items():
                if purchase.instrument_id == instrument_id:
                    self._purchases[purchase_id] = purchase.model_copy(
                        update={"instrument_id": None, "protection_ends": None}
                    )

    # Purchases

    def add_purchase(self, purchase: TrackedPurchase) -> TrackedPurchase:
        with self._lock:
            if purchase.source_message_id is not None:
                duplicate = any(
                    p.user_id == purchase.user_id
                    and p.source_message_id == purchase.source_message_id
                    and p.product_name == purchase.product_name
                    for p in self._purchases.values()
                )
                if duplicate:
                    msg = f"Message {purchase.source_message_id} already recorded"
                    raise InvariantViolation(msg)
            self._purchases[purchase.id] = purchase.model_copy()
            self._observations.setdefault(purchase.id, [])
            return purchase.model_copy()

    def get_purchase(self, purchase_id: UUID) -> TrackedPurchase:
        with self._lock:
            purchase = self._purchases.get(purchase_id)
            if purchase is None:
                msg = f"Purchase {purchase_id} not found"
                raise NotFound(msg)
            return purchase.model_copy()

    def list_purchases(self, user_id: UUID) -> list[TrackedPurchase]:
        with self._lock:
            found = [p for p in self._purchases.values() if p.user_id == user_id]
            return [p.model_copy() for p in sorted(found, key=lambda p: p.created_at)]

    def find_purchase_by_source(
        self, user_id: UUID, source_message_id: str
    ) -> TrackedPurchase | None:
        with self._lock:
            for purchase in self._purchases.values():
                if (
                    purchase.user_id == user_id
                    and purchase.source_message_id == source_message_id
                ):
                    return purchase.model_copy()
            return None

    def processed_source_ids(self, user_id: UUID) -> set[str]:
        with self._lock:
            return {
                p.source_message_id
                for p in self._purchases.values()
                if p.user_id == user_id and p.source_message_id is not None
            }

    def update_purchase(self, purchase_id: UUID, **fields: Any) -> TrackedPurchase:
        with self._lock:
            fields.setdefault("updated_at", utcnow())
            updated = self.get_purchase(purchase_id).model_copy(update=fields)
            self._purchases[purchase_id] = updated
            return updated.model_copy()

    def transition_purchase(
        self,
        purchase_id: UUID,
        expected: Collection[PurchaseStatus],
        new_status: PurchaseStatus,
        **fields: Any,
    ) -> bool:
        with self._lock:
            current = self.get_purchase(purchase_id)
            if current.status not in expected:
                return False
            self.update_purchase(purchase_id, status=new_status, **fields)
            return True

    def delete_purchase(self, purchase_id: UUID) -> None:
        with self._lock:
            if any(c.purchase_id == purchase_id for c in self._claims.values()):
                msg = f"Purchase {purchase_id} is referenced by a claim"
                raise InvariantViolation(msg)
            self.get_purchase(purchase_id)
            del self._purchases[purchase_id]
            self._observations.pop(purchase_id, None)

    def purchases_due_for_check(self, now: datetime, limit: int) -> list[TrackedPurchase]:
        with self._lock:
            due = [
                p
                for p in self._purchases.values()
                if p.status in CHECKABLE_STATUSES
                and p.product_url
                and (p.protection_ends is None or p.protection_ends >= now)
            ]
            due.sort(key=lambda p: (p.last_checked_at is not None, p.last_checked_at or now))
            return [p.model_copy() for p in due[:limit]]

    def purchases_nearing_deadline(
        self, now: datetime, until: datetime
    ) -> list[TrackedPurchase]:
        with self._lock:
            return [
                p.model_copy()
                for p in self._purchases.values()
                if p.status == PurchaseStatus.CLAIM_ELIGIBLE
                and p.protection_ends is not None
                and now <= p.protection_ends <= until
            ]

    def eligible_purchases_without_claim(self, now: datetime) -> list[TrackedPurchase]:
        with self._lock:
            return [
                p.model_copy()
                for p in self._purchases.values()
                if p.status == PurchaseStatus.CLAIM_ELIGIBLE
                and p.protection_active(now)
                and self._active_claim(p.id) is None
            ]

    def expire_purchases(self, now: datetime) -> int:
        with self._lock:
            count = 0
            for purchase in list(self._purchases.values()):
                if (
                    purchase.status in EXPIRABLE_PURCHASE_STATUSES
                    and purchase.protection_ends is not None
                    and purchase.protection_ends < now
                ):
                    self.update_purchase(purchase.id, status=PurchaseStatus.EXPIRED)
                    count += 1
            return count

    # Observations

    def add_observation(self, observation: PriceObservation) -> PriceObservation:
        with self._lock:
            self.get_purchase(observation.purchase_id)
            self._observations.setdefault(observation.purchase_id, []).append(observation)
            return observation

    def record_observation(
        self, purchase_id: UUID, price: Decimal, source: str, observed_at: datetime
    ) -> TrackedPurchase:
        with self._lock:
            purchase = self.get_purchase(purchase_id)
            self.add_observation(
                PriceObservation(
                    purchase_id=purchase_id,
                    price=price,
                    source=source,
                    observed_at=observed_at,
                )
            )
            fields: dict[str, Any] = {"current_price": price, "last_checked_at": observed_at}
            if price < purchase.lowest_price:
                fields["lowest_price"] = price
                fields["lowest_price_date"] = observed_at
            return self.update_purchase(purchase_id, **fields)

    def list_observations(self, purchase_id: UUID) -> list[PriceObservation]:
        with self._lock:
            return list(self._observations.get(purchase_id, []))

    # Claims

    def _active_claim(self, purchase_id: UUID) -> Claim | None:
        for claim in self._claims.values():
            if claim.purchase_id == purchase_id and claim.status not in INACTIVE_CLAIM_STATUSES:
                return claim
        return None

    def insert_claim_if_no_active(self, claim: Claim) -> Claim | None:
        with self._lock:
            if self._active_claim(claim.purchase_id) is not None:
                return None
            self._claims[claim.id] = claim.model_copy()
            return claim.model_copy()

    def get_claim(self, claim_id: UUID) -> Claim:
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                msg = f"Claim {claim_id} not found"
                raise NotFound(msg)
            return claim.model_copy()

    def list_claims(
        self, *, user_id: UUID | None = None, purchase_id: UUID | None = None
    ) -> list[Claim]:
        with self._lock:
            found = [
                c
                for c in self._claims.values()
                if (user_id is None or c.user_id == user_id)
                and (purchase_id is None or c.purchase_id == purchase_id)
            ]
            return [c.model_copy() for c in sorted(found, key=lambda c: c.created_at)]

    def update_claim(self, claim_id: UUID, **fields: Any) -> Claim:
        with self._lock:
            fields.pop("status", None)
            fields.pop("status_history", None)
            fields.setdefault("updated_at", utcnow())
            updated = self.get_claim(claim_id).model_copy(update=fields)
            self._claims[claim_id] = updated
            return updated.model_copy()

    def transition_claim(
        self,
        claim_id: UUID,
        expected: Collection[ClaimStatus],
        new_status: ClaimStatus,
        note: str | None = None,
        *,
        stale_before: datetime | None = None,
        **fields: Any,
    ) -> Claim | None:
        with self._lock:
            current = self.get_claim(claim_id)
            if not _claim_matches(current, expected, stale_before):
                return None
            now = utcnow()
            entry = StatusEntry(status=new_status, timestamp=now, note=note)
            updated = current.model_copy(
                update={
                    **fields,
                    "status": new_status,
                    "status_history": (*current.status_history, entry),
                    "updated_at": now,
                }
            )
            self._claims[claim_id] = updated
            return updated.model_copy()

    def delete_claim(self, claim_id: UUID, expected: Collection[ClaimStatus]) -> bool:
        with self._lock:
            if self.get_claim(claim_id).status not in expected:
                return False
            del self._claims[claim_id]
            return True

    def claims_for_retry(self, since: datetime, lease_cutoff: datetime) -> list[Claim]:
        with self._lock:
            return [
                c.model_copy()
                for c in self._claims.values()
                if c.auto_file
                and c.created_at >= since
                and (
                    c.status in FILEABLE_CLAIM_STATUSES
                    or (c.status == ClaimStatus.PENDING and c.updated_at < lease_cutoff)
                )
            ]

    def expire_stale_claims(self, before: datetime) -> int:
        with self._lock:
            stale = [
                c.id
                for c in self._claims.values()
                if c.status in FILEABLE_CLAIM_STATUSES and c.created_at < before
            ]
            for claim_id in stale:
                self.transition_claim(
                    claim_id,
                    FILEABLE_CLAIM_STATUSES,
                    ClaimStatus.EXPIRED,
                    "Expired: not filed before the staleness timeout",
                )
            return len(stale)

    # Notifications

    def add_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._notifications.append(notification)
            return notification

    def list_notifications(self, user_id: UUID) -> list[Notification]:
        with self._lock:
            return [n for n in self._notifications if n.user_id == user_id]

    def has_recent_notification(
        self, user_id: UUID, kind: NotificationKind, purchase_id: UUID, since: datetime
    ) -> bool:
        with self._lock:
            return any(
                n.user_id == user_id
                and n.kind == kind
                and n.data.get("purchase_id") == str(purchase_id)
                and n.created_at >= since
                for n in self._notifications
            )

    # Extraction runs

    def add_run(self, run: ExtractionRun) -> ExtractionRun:
        with self._lock:
            self._runs[run.id] = run.model_copy()
            return run

    def update_run(self, run: ExtractionRun) -> ExtractionRun:
        with self._lock:
            self._runs[run.id] = run.model_copy()
            return run

    def list_runs(self, user_id: UUID) -> list[ExtractionRun]:
        with self._lock:
            found = [r for r in self._runs.values() if r.user_id == user_id]
            return [r.model_copy() for r in sorted(found, key=lambda r: r.started_at)]
