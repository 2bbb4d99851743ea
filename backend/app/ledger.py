from decimal import Decimal
from typing import Any, Optional

import asyncpg

from .db import fetch_named, fetchrow_named


TRANSACTION_COLUMNS = """
    id, subscription_id, subscriber_id, creator_id, amount, currency,
    status, provider, provider_transaction_id, payment_method, created_at
"""


async def get_transaction_by_provider_transaction_id(
    conn: asyncpg.Connection,
    provider_transaction_id: str,
) -> Optional[dict[str, Any]]:
    row = await fetchrow_named(
        conn,
        "ledger.by_provider_transaction_id",
        f"""
        SELECT {TRANSACTION_COLUMNS}
        FROM transactions
        WHERE provider_transaction_id = $1
        """,
        provider_transaction_id,
    )
    return dict(row) if row else None


async def insert_transaction(
    conn: asyncpg.Connection,
    *,
    subscription_id: str,
    subscriber_id: str,
    creator_id: str,
    amount: Decimal,
    currency: str,
    provider: str,
    provider_transaction_id: str,
    payment_method: Optional[str],
) -> dict[str, Any]:
    # No ON CONFLICT: a duplicate provider_transaction_id must abort the
    # surrounding transaction with asyncpg.UniqueViolationError.
    row = await fetchrow_named(
        conn,
        "ledger.insert",
        f"""
        INSERT INTO transactions (
            subscription_id, subscriber_id, creator_id, amount, currency,
            status, provider, provider_transaction_id, payment_method
        )
        VALUES ($1::uuid, $2::uuid, $3::uuid, $4, $5, 'succeeded', $6, $7, $8)
        RETURNING {TRANSACTION_COLUMNS}
        """,
        subscription_id,
        subscriber_id,
        creator_id,
        amount,
        currency,
        provider,
        provider_transaction_id,
        payment_method,
    )
    return dict(row)


async def list_transactions_for_subscription(
    conn: asyncpg.Connection,
    subscription_id: str,
) -> list[dict[str, Any]]:
    rows = await fetch_named(
        conn,
        "ledger.by_subscription",
        f"""
        SELECT {TRANSACTION_COLUMNS}
        FROM transactions
        WHERE subscription_id = $1::uuid
        ORDER BY created_at DESC, id DESC
        """,
        subscription_id,
    )
    return [dict(row) for row in rows]
