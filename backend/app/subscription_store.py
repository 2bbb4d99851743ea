from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import asyncpg

from .db import fetch_named, fetchrow_named, fetchval_named
from .subscription import STATUS_ACTIVE, STATUS_CANCELED, STATUS_EXPIRED, SubscriptionRecord, Transition


SUBSCRIPTION_COLUMNS = """
    id, creator_id, subscriber_id, kind, start_date, end_date, amount_paid,
    currency, renewal_count, status, last_update_time
"""


async def get_subscription_by_id(
    conn: asyncpg.Connection,
    subscription_id: str,
) -> Optional[SubscriptionRecord]:
    row = await fetchrow_named(
        conn,
        "subscriptions.by_id",
        f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = $1::uuid",
        subscription_id,
    )
    return SubscriptionRecord.from_row(row) if row else None


async def lock_subscription(
    conn: asyncpg.Connection,
    *,
    creator_id: str,
    subscriber_id: str,
    kind: str,
) -> Optional[SubscriptionRecord]:
    """Read the record for the composite key and hold its row lock until commit."""
    row = await fetchrow_named(
        conn,
        "subscriptions.lock_by_key",
        f"""
        SELECT {SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE creator_id = $1::uuid
          AND subscriber_id = $2::uuid
          AND kind = $3
        FOR UPDATE
        """,
        creator_id,
        subscriber_id,
        kind,
    )
    return SubscriptionRecord.from_row(row) if row else None


async def insert_subscription(
    conn: asyncpg.Connection,
    *,
    creator_id: str,
    subscriber_id: str,
    kind: str,
    transition: Transition,
    amount_paid: Decimal,
    currency: str,
    now: datetime,
) -> SubscriptionRecord:
    # A concurrent first payment for the same key loses on the UNIQUE
    # (creator_id, subscriber_id, kind) constraint and is retried by the engine.
    row = await fetchrow_named(
        conn,
        "subscriptions.insert",
        f"""
        INSERT INTO subscriptions (
            creator_id, subscriber_id, kind, start_date, end_date, amount_paid,
            currency, renewal_count, status, last_update_time
        )
        VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10)
        RETURNING {SUBSCRIPTION_COLUMNS}
        """,
        creator_id,
        subscriber_id,
        kind,
        transition.start_date,
        transition.end_date,
        amount_paid,
        currency,
        transition.renewal_count,
        transition.status,
        now,
    )
    return SubscriptionRecord.from_row(row)


async def update_subscription(
    conn: asyncpg.Connection,
    *,
    subscription_id: str,
    transition: Transition,
    amount_paid: Decimal,
    currency: str,
    now: datetime,
) -> SubscriptionRecord:
    row = await fetchrow_named(
        conn,
        "subscriptions.apply_transition",
        f"""
        UPDATE subscriptions
        SET
            start_date = $2,
            end_date = $3,
            renewal_count = $4,
            status = $5,
            amount_paid = $6,
            currency = $7,
            last_update_time = $8
        WHERE id = $1::uuid
        RETURNING {SUBSCRIPTION_COLUMNS}
        """,
        subscription_id,
        transition.start_date,
        transition.end_date,
        transition.renewal_count,
        transition.status,
        amount_paid,
        currency,
        now,
    )
    return SubscriptionRecord.from_row(row)


async def cancel_subscription(
    conn: asyncpg.Connection,
    subscription_id: str,
    *,
    now: datetime,
) -> Optional[SubscriptionRecord]:
    row = await fetchrow_named(
        conn,
        "subscriptions.cancel",
        f"""
        UPDATE subscriptions
        SET status = '{STATUS_CANCELED}', last_update_time = $2
        WHERE id = $1::uuid
          AND status <> '{STATUS_CANCELED}'
        RETURNING {SUBSCRIPTION_COLUMNS}
        """,
        subscription_id,
        now,
    )
    return SubscriptionRecord.from_row(row) if row else None


async def expire_lapsed_subscriptions(
    conn: asyncpg.Connection,
    *,
    now: datetime,
    limit: int,
) -> list[dict[str, Any]]:
    # SKIP LOCKED leaves rows that a payment is renewing right now for the next run.
    rows = await fetch_named(
        conn,
        "subscriptions.expire_lapsed",
        f"""
        UPDATE subscriptions
        SET status = '{STATUS_EXPIRED}', last_update_time = $1
        WHERE id IN (
            SELECT id
            FROM subscriptions
            WHERE status = '{STATUS_ACTIVE}'
              AND end_date <= $1
            ORDER BY end_date ASC
            LIMIT $2
            FOR UPDATE SKIP LOCKED
        )
        RETURNING id, creator_id, subscriber_id, kind
        """,
        now,
        limit,
    )
    return [dict(row) for row in rows]


async def count_active_subscriptions(conn: asyncpg.Connection) -> int:
    count = await fetchval_named(
        conn,
        "subscriptions.count_active",
        f"SELECT COUNT(*) FROM subscriptions WHERE status = '{STATUS_ACTIVE}'",
    )
    return int(count or 0)


async def find_subscription(
    conn: asyncpg.Connection,
    *,
    creator_id: str,
    subscriber_id: str,
    kind: str,
) -> Optional[SubscriptionRecord]:
    row = await fetchrow_named(
        conn,
        "subscriptions.by_key",
        f"""
        SELECT {SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE creator_id = $1::uuid
          AND subscriber_id = $2::uuid
          AND kind = $3
        """,
        creator_id,
        subscriber_id,
        kind,
    )
    return SubscriptionRecord.from_row(row) if row else None


async def list_subscriptions_for_subscriber(
    conn: asyncpg.Connection,
    subscriber_id: str,
    *,
    kind: str,
) -> list[SubscriptionRecord]:
    rows = await fetch_named(
        conn,
        "subscriptions.by_subscriber",
        f"""
        SELECT {SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE subscriber_id = $1::uuid
          AND kind = $2
        ORDER BY start_date DESC
        """,
        subscriber_id,
        kind,
    )
    return [SubscriptionRecord.from_row(row) for row in rows]


async def list_subscriptions_for_creator(
    conn: asyncpg.Connection,
    creator_id: str,
    *,
    kind: str,
) -> list[SubscriptionRecord]:
    rows = await fetch_named(
        conn,
        "subscriptions.by_creator",
        f"""
        SELECT {SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE creator_id = $1::uuid
          AND kind = $2
        ORDER BY start_date DESC
        """,
        creator_id,
        kind,
    )
    return [SubscriptionRecord.from_row(row) for row in rows]
