"""Database connection helper and the Postgres repository."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import BaseModel

from price_protect.config import get_database_url
from price_protect.errors import InvariantViolation, NotFound
from price_protect.models import (
    FILEABLE_CLAIM_STATUSES,
    INACTIVE_CLAIM_STATUSES,
    Claim,
    ClaimStatus,
    ExtractionRun,
    Notification,
    PaymentInstrument,
    PriceObservation,
    PurchaseStatus,
    StatusEntry,
    TrackedPurchase,
    UserProfile,
    utcnow,
)
from price_protect.repository import CHECKABLE_STATUSES, EXPIRABLE_PURCHASE_STATUSES

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from price_protect.models import NotificationKind

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_JSON_COLUMNS = frozenset({"status_history", "data"})

SCHEMA = """\
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    price_drop_threshold NUMERIC(12, 2) NOT NULL DEFAULT 5.00,
    auto_file_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    gmail_access_token TEXT,
    gmail_refresh_token TEXT
);

CREATE TABLE IF NOT EXISTS instruments (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users (id),
    nickname TEXT NOT NULL,
    issuer TEXT NOT NULL,
    issuer_key TEXT NOT NULL,
    network TEXT,
    card_type TEXT NOT NULL,
    last_four CHAR(4) NOT NULL,
    protection_days INTEGER NOT NULL,
    max_claim_amount NUMERIC(12, 2) NOT NULL,
    claim_method TEXT NOT NULL,
    claim_portal_url TEXT,
    claim_phone TEXT,
    claim_email TEXT,
    auto_claim_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    source TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, last_four, issuer)
);

CREATE TABLE IF NOT EXISTS purchases (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users (id),
    product_name TEXT NOT NULL,
    retailer TEXT NOT NULL,
    purchase_price NUMERIC(12, 2) NOT NULL,
    current_price NUMERIC(12, 2) NOT NULL,
    lowest_price NUMERIC(12, 2) NOT NULL,
    lowest_price_date TIMESTAMPTZ NOT NULL,
    purchase_date TIMESTAMPTZ NOT NULL,
    product_url TEXT,
    order_id TEXT,
    category TEXT,
    instrument_id UUID REFERENCES instruments (id) ON DELETE SET NULL,
    protection_ends TIMESTAMPTZ,
    status TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_message_id TEXT,
    last_checked_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, source_message_id, product_name)
);

CREATE TABLE IF NOT EXISTS observations (
    id UUID PRIMARY KEY,
    purchase_id UUID NOT NULL REFERENCES purchases (id) ON DELETE CASCADE,
    price NUMERIC(12, 2) NOT NULL,
    source TEXT NOT NULL,
    observed_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS claims (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users (id),
    purchase_id UUID NOT NULL REFERENCES purchases (id),
    instrument_id UUID NOT NULL REFERENCES instruments (id),
    original_price NUMERIC(12, 2) NOT NULL,
    new_price NUMERIC(12, 2) NOT NULL,
    claimed_amount NUMERIC(12, 2) NOT NULL CHECK (claimed_amount > 0),
    status TEXT NOT NULL,
    auto_file BOOLEAN NOT NULL DEFAULT FALSE,
    filing_channel TEXT,
    destination TEXT,
    message_id TEXT,
    claim_number TEXT,
    email_subject TEXT,
    email_body TEXT,
    filed_at TIMESTAMPTZ,
    failure_reason TEXT,
    approved_amount NUMERIC(12, 2),
    resolved_at TIMESTAMPTZ,
    payout_received_at TIMESTAMPTZ,
    document_ref TEXT,
    price_evidence_ref TEXT,
    submission_proof_ref TEXT,
    status_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS claims_one_active_per_purchase
    ON claims (purchase_id) WHERE status NOT IN ('DENIED', 'EXPIRED');

CREATE TABLE IF NOT EXISTS notifications (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users (id),
    kind TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS extraction_runs (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users (id),
    status TEXT NOT NULL,
    messages_scanned INTEGER NOT NULL DEFAULT 0,
    purchases_found INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);
"""


def get_connection() -> psycopg.Connection[dict[str, Any]]:
    """Create and return a new database connection."""
    return psycopg.connect(get_database_url(), row_factory=dict_row)


def init_schema() -> None:
    """Create tables and indexes if they do not exist."""
    with get_connection() as conn:
        conn.execute(SCHEMA)
    logger.info("Database schema ready")


def _params(fields: dict[str, Any]) -> dict[str, Any]:
    """Adapt field values for psycopg: JSON columns wrapped, enums by value."""
    return {
        k: Jsonb(v) if k in _JSON_COLUMNS else v.value if isinstance(v, Enum) else v
        for k, v in fields.items()
    }


def _values(model: BaseModel) -> dict[str, Any]:
    """Model fields as query parameters."""
    values = model.model_dump()
    as_json = model.model_dump(mode="json")
    for column in _JSON_COLUMNS & values.keys():
        values[column] = as_json[column]
    return _params(values)


def _statuses(statuses: Iterable[str]) -> list[str]:
    return [str(s) for s in statuses]


class PostgresRepository:
    """Repository backed by Postgres via psycopg.

    Each operation runs on its own connection and commits on exit, so
    the conditional updates below are atomic with respect to any other
    process acting on the same rows.
    """

    def __init__(self, connect: Any = get_connection) -> None:
        self._connect = connect

    # Generic helpers

    def _one(self, model: type[M], query: sql.Composable | str, params: Any = None) -> M | None:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return model.model_validate(row) if row else None

    def _all(self, model: type[M], query: sql.Composable | str, params: Any = None) -> list[M]:
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [model.model_validate(row) for row in rows]

    def _get(self, model: type[M], table: str, record_id: UUID) -> M:
        found = self._one(
            model,
            sql.SQL("SELECT * FROM {} WHERE id = %s").format(sql.Identifier(table)),
            (record_id,),
        )
        if found is None:
            msg = f"{model.__name__} {record_id} not found"
            raise NotFound(msg)
        return found

    def _insert(self, table: str, record: M) -> M:
        values = _values(record)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, values)),
            sql.SQL(", ").join(map(sql.Placeholder, values)),
        )
        try:
            inserted = self._one(type(record), query, values)
        except psycopg.errors.UniqueViolation as exc:
            msg = f"Duplicate {table} record: {exc.diag.message_detail or exc}"
            raise InvariantViolation(msg) from exc
        if inserted is None:
            msg = f"Insert into {table} returned no row"
            raise InvariantViolation(msg)
        return inserted

    def _update(self, model: type[M], table: str, record_id: UUID, fields: dict[str, Any]) -> M:
        if not fields:
            return self._get(model, table, record_id)
        params = _params(fields)
        query = sql.SQL("UPDATE {} SET {} WHERE id = %(_id)s RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder(k)) for k in params
            ),
        )
        updated = self._one(model, query, {**params, "_id": record_id})
        if updated is None:
            msg = f"{model.__name__} {record_id} not found"
            raise NotFound(msg)
        return updated

    # Users

    def add_user(self, user: UserProfile) -> UserProfile:
        return self._insert("users", user)

    def get_user(self, user_id: UUID) -> UserProfile:
        return self._get(UserProfile, "users", user_id)

    def find_user_by_email(self, email: str) -> UserProfile | None:
        return self._one(UserProfile, "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,))

    def list_users(self, *, auto_file_only: bool = False) -> list[UserProfile]:
        if auto_file_only:
            return self._all(UserProfile, "SELECT * FROM users WHERE auto_file_enabled")
        return self._all(UserProfile, "SELECT * FROM users")

    # Instruments

    def add_instrument(self, instrument: PaymentInstrument) -> PaymentInstrument:
        return self._insert("instruments", instrument)

    def get_instrument(self, instrument_id: UUID) -> PaymentInstrument:
        return self._get(PaymentInstrument, "instruments", instrument_id)

    def list_instruments(self, user_id: UUID) -> list[PaymentInstrument]:
        return self._all(
            PaymentInstrument,
            "SELECT * FROM instruments WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )

    def update_instrument(self, instrument_id: UUID, **fields: Any) -> PaymentInstrument:
        return self._update(PaymentInstrument, "instruments", instrument_id, fields)

    def delete_instrument(self, instrument_id: UUID) -> None:
        with self._connect() as conn:
            try:
                conn.execute(
                    "UPDATE purchases SET protection_ends = NULL WHERE instrument_id = %s",
                    (instrument_id,),
                )
                cur = conn.execute("DELETE FROM instruments WHERE id = %s", (instrument_id,))
            except psycopg.errors.ForeignKeyViolation as exc:
                msg = f"Instrument {instrument_id} is referenced by a claim"
                raise InvariantViolation(msg) from exc
        if cur.rowcount == 0:
            msg = f"Instrument {instrument_id} not found"
            raise NotFound(msg)

    # Purchases

    def add_purchase(self, purchase: TrackedPurchase) -> TrackedPurchase:
        return self._insert("purchases", purchase)

    def get_purchase(self, purchase_id: UUID) -> TrackedPurchase:
        return self._get(TrackedPurchase, "purchases", purchase_id)

    def list_purchases(self, user_id: UUID) -> list[TrackedPurchase]:
        return self._all(
            TrackedPurchase,
            "SELECT * FROM purchases WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )

    def find_purchase_by_source(
        self, user_id: UUID, source_message_id: str
    ) -> TrackedPurchase | None:
        return self._one(
            TrackedPurchase,
            "SELECT * FROM purchases WHERE user_id = %s AND source_message_id = %s LIMIT 1",
            (user_id, source_message_id),
        )

    def processed_source_ids(self, user_id: UUID) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT source_message_id FROM purchases "
                "WHERE user_id = %s AND source_message_id IS NOT NULL",
                (user_id,),
            ).fetchall()
        return {row["source_message_id"] for row in rows}

    def update_purchase(self, purchase_id: UUID, **fields: Any) -> TrackedPurchase:
        fields.setdefault("updated_at", utcnow())
        return self._update(TrackedPurchase, "purchases", purchase_id, fields)

    def transition_purchase(
        self,
        purchase_id: UUID,
        expected: Collection[PurchaseStatus],
        new_status: PurchaseStatus,
        **fields: Any,
    ) -> bool:
        params = _params({**fields, "status": new_status, "updated_at": utcnow()})
        query = sql.SQL(
            "UPDATE purchases SET {} WHERE id = %(_id)s AND status = ANY(%(_expected)s)"
        ).format(
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder(k)) for k in params
            )
        )
        with self._connect() as conn:
            cur = conn.execute(
                query, {**params, "_id": purchase_id, "_expected": _statuses(expected)}
            )
        return cur.rowcount == 1

    def delete_purchase(self, purchase_id: UUID) -> None:
        with self._connect() as conn:
            try:
                cur = conn.execute("DELETE FROM purchases WHERE id = %s", (purchase_id,))
            except psycopg.errors.ForeignKeyViolation as exc:
                msg = f"Purchase {purchase_id} is referenced by a claim"
                raise InvariantViolation(msg) from exc
        if cur.rowcount == 0:
            msg = f"Purchase {purchase_id} not found"
            raise NotFound(msg)

    def purchases_due_for_check(self, now: datetime, limit: int) -> list[TrackedPurchase]:
        return self._all(
            TrackedPurchase,
            "SELECT * FROM purchases WHERE status = ANY(%s) AND product_url IS NOT NULL "
            "AND (protection_ends IS NULL OR protection_ends >= %s) "
            "ORDER BY last_checked_at ASC NULLS FIRST LIMIT %s",
            (_statuses(CHECKABLE_STATUSES), now, limit),
        )

    def purchases_nearing_deadline(
        self, now: datetime, until: datetime
    ) -> list[TrackedPurchase]:
        return self._all(
            TrackedPurchase,
            "SELECT * FROM purchases WHERE status = %s "
            "AND protection_ends BETWEEN %s AND %s",
            (PurchaseStatus.CLAIM_ELIGIBLE, now, until),
        )

    def eligible_purchases_without_claim(self, now: datetime) -> list[TrackedPurchase]:
        return self._all(
            TrackedPurchase,
            "SELECT p.* FROM purchases p WHERE p.status = %s AND p.protection_ends > %s "
            "AND NOT EXISTS (SELECT 1 FROM claims c WHERE c.purchase_id = p.id "
            "AND c.status <> ALL(%s))",
            (PurchaseStatus.CLAIM_ELIGIBLE, now, _statuses(INACTIVE_CLAIM_STATUSES)),
        )

    def expire_purchases(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE purchases SET status = %s, updated_at = %s "
                "WHERE protection_ends < %s AND status = ANY(%s)",
                (PurchaseStatus.EXPIRED, utcnow(), now, _statuses(EXPIRABLE_PURCHASE_STATUSES)),
            )
        return cur.rowcount

    # Observations

    def add_observation(self, observation: PriceObservation) -> PriceObservation:
        return self._insert("observations", observation)

    def record_observation(
        self, purchase_id: UUID, price: Decimal, source: str, observed_at: datetime
    ) -> TrackedPurchase:
        observation = PriceObservation(
            purchase_id=purchase_id, price=price, source=source, observed_at=observed_at
        )
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "INSERT INTO observations (id, purchase_id, price, source, observed_at) "
                "VALUES (%s, %s, %s, %s, %s)",
                (observation.id, purchase_id, price, source, observed_at),
            )
            row = conn.execute(
                "UPDATE purchases SET current_price = %(price)s, "
                "last_checked_at = %(at)s, updated_at = %(now)s, "
                "lowest_price_date = CASE WHEN %(price)s < lowest_price "
                "THEN %(at)s ELSE lowest_price_date END, "
                "lowest_price = LEAST(lowest_price, %(price)s) "
                "WHERE id = %(id)s RETURNING *",
                {"price": price, "at": observed_at, "now": utcnow(), "id": purchase_id},
            ).fetchone()
        if row is None:
            msg = f"Purchase {purchase_id} not found"
            raise NotFound(msg)
        return TrackedPurchase.model_validate(row)

    def list_observations(self, purchase_id: UUID) -> list[PriceObservation]:
        return self._all(
            PriceObservation,
            "SELECT * FROM observations WHERE purchase_id = %s ORDER BY observed_at",
            (purchase_id,),
        )

    # Claims

    def insert_claim_if_no_active(self, claim: Claim) -> Claim | None:
        values = _values(claim)
        query = sql.SQL(
            "INSERT INTO claims ({}) VALUES ({}) "
            "ON CONFLICT (purchase_id) WHERE status NOT IN ('DENIED', 'EXPIRED') "
            "DO NOTHING RETURNING *"
        ).format(
            sql.SQL(", ").join(map(sql.Identifier, values)),
            sql.SQL(", ").join(map(sql.Placeholder, values)),
        )
        return self._one(Claim, query, values)

    def get_claim(self, claim_id: UUID) -> Claim:
        return self._get(Claim, "claims", claim_id)

    def list_claims(
        self, *, user_id: UUID | None = None, purchase_id: UUID | None = None
    ) -> list[Claim]:
        return self._all(
            Claim,
            "SELECT * FROM claims WHERE (%(user)s::uuid IS NULL OR user_id = %(user)s) "
            "AND (%(purchase)s::uuid IS NULL OR purchase_id = %(purchase)s) "
            "ORDER BY created_at",
            {"user": user_id, "purchase": purchase_id},
        )

    def update_claim(self, claim_id: UUID, **fields: Any) -> Claim:
        fields.pop("status", None)
        fields.pop("status_history", None)
        fields.setdefault("updated_at", utcnow())
        return self._update(Claim, "claims", claim_id, fields)

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
        now = utcnow()
        entry = StatusEntry(status=new_status, timestamp=now, note=note)
        params = _params({**fields, "status": new_status, "updated_at": now})
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder(k)) for k in params
        ]
        assignments.append(sql.SQL("status_history = status_history || %(_entry)s"))
        guard = sql.SQL("")
        if stale_before is not None:
            guard = sql.SQL(" AND (status <> 'PENDING' OR updated_at < %(_stale)s)")
        query = sql.SQL(
            "UPDATE claims SET {} WHERE id = %(_id)s AND status = ANY(%(_expected)s){} RETURNING *"
        ).format(sql.SQL(", ").join(assignments), guard)
        return self._one(
            Claim,
            query,
            {
                **params,
                "_entry": Jsonb([entry.model_dump(mode="json")]),
                "_id": claim_id,
                "_expected": _statuses(expected),
                "_stale": stale_before,
            },
        )

    def delete_claim(self, claim_id: UUID, expected: Collection[ClaimStatus]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM claims WHERE id = %s AND status = ANY(%s)",
                (claim_id, _statuses(expected)),
            )
        return cur.rowcount == 1

    def claims_for_retry(self, since: datetime, lease_cutoff: datetime) -> list[Claim]:
        return self._all(
            Claim,
            "SELECT * FROM claims WHERE auto_file AND created_at >= %s "
            "AND (status = ANY(%s) OR (status = %s AND updated_at < %s)) "
            "ORDER BY created_at",
            (since, _statuses(FILEABLE_CLAIM_STATUSES), ClaimStatus.PENDING, lease_cutoff),
        )

    def expire_stale_claims(self, before: datetime) -> int:
        entry = StatusEntry(
            status=ClaimStatus.EXPIRED, note="Expired: not filed before the staleness timeout"
        )
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE claims SET status = %s, updated_at = %s, "
                "status_history = status_history || %s "
                "WHERE status = ANY(%s) AND created_at < %s",
                (
                    ClaimStatus.EXPIRED,
                    utcnow(),
                    Jsonb([entry.model_dump(mode="json")]),
                    _statuses(FILEABLE_CLAIM_STATUSES),
                    before,
                ),
            )
        return cur.rowcount

    # Notifications

    def add_notification(self, notification: Notification) -> Notification:
        return self._insert("notifications", notification)

    def list_notifications(self, user_id: UUID) -> list[Notification]:
        return self._all(
            Notification,
            "SELECT * FROM notifications WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )

    def has_recent_notification(
        self, user_id: UUID, kind: NotificationKind, purchase_id: UUID, since: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM notifications WHERE user_id = %s AND kind = %s "
                "AND data->>'purchase_id' = %s AND created_at >= %s LIMIT 1",
                (user_id, kind, str(purchase_id), since),
            ).fetchone()
        return row is not None

    # Extraction runs

    def add_run(self, run: ExtractionRun) -> ExtractionRun:
        return self._insert("extraction_runs", run)

    def update_run(self, run: ExtractionRun) -> ExtractionRun:
        fields = run.model_dump(exclude={"id", "user_id", "started_at"})
        return self._update(ExtractionRun, "extraction_runs", run.id, fields)

    def list_runs(self, user_id: UUID) -> list[ExtractionRun]:
        return self._all(
            ExtractionRun,
            "SELECT * FROM extraction_runs WHERE user_id = %s ORDER BY started_at",
            (user_id,),
        )
