import logging
import time
import asyncpg
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Optional, cast
from .config import settings
from .observability import current_request_context

logger = logging.getLogger("tribe-db")


def _statement_timeout_ms() -> int:
    return max(0, int(settings.DB_STATEMENT_TIMEOUT_MS))


def _slow_query_threshold_ms() -> int:
    return max(0, int(settings.DB_SLOW_QUERY_MS))


def _log_slow_query(query_name: str, started_at: float) -> None:
    threshold_ms = _slow_query_threshold_ms()
    if threshold_ms <= 0:
        return

    duration = int((time.monotonic() - started_at) * 1000)
    if duration < threshold_ms:
        return

    context = current_request_context()
    payload = {
        "request_id": context.get("request_id", ""),
        "path": context.get("path", ""),
        "query_name": query_name,
        "duration_ms": duration,
        "threshold_ms": threshold_ms,
    }
    logger.warning("DB_SLOW_QUERY context=%s", payload)


async def fetch_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetch(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def fetchrow_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetchrow(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def fetchval_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetchval(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def execute_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.execute(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


@asynccontextmanager
async def db_transaction(conn: Any):
    """Run the block inside ``conn.transaction()``.

    Every statement of the block commits together or not at all; an exception
    escaping the block rolls the transaction back before it propagates.
    """
    tx = getattr(conn, "transaction", None)
    if callable(tx):
        tx_ctx = tx()
        enter = getattr(tx_ctx, "__aenter__", None)
        exit_ = getattr(tx_ctx, "__aexit__", None)
        if callable(enter) and callable(exit_):
            tx_ctx_cm = cast(AsyncContextManager[Any], tx_ctx)
            async with tx_ctx_cm:
                yield
            return
    yield


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        username TEXT,
        name TEXT,
        account_type TEXT NOT NULL DEFAULT 'USER'
            CHECK (account_type IN ('USER', 'CREATOR', 'SUPERUSER')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS subscriptions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        creator_id UUID NOT NULL REFERENCES users(id),
        subscriber_id UUID NOT NULL REFERENCES users(id),
        kind TEXT NOT NULL CHECK (kind IN ('content_access', 'messaging_access')),
        start_date TIMESTAMPTZ NOT NULL,
        end_date TIMESTAMPTZ NOT NULL,
        amount_paid NUMERIC(14, 2) NOT NULL DEFAULT 0,
        currency TEXT NOT NULL,
        renewal_count INT NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('pending', 'active', 'expired', 'canceled')),
        last_update_time TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (creator_id, subscriber_id, kind),
        CONSTRAINT subscriptions_dates_ordered CHECK (end_date >= start_date),
        CONSTRAINT subscriptions_renewal_count_non_negative CHECK (renewal_count >= 0)
    );

    CREATE INDEX IF NOT EXISTS idx_subscriptions_status_end_date
        ON subscriptions (status, end_date);

    CREATE INDEX IF NOT EXISTS idx_subscriptions_subscriber_kind
        ON subscriptions (subscriber_id, kind);

    CREATE TABLE IF NOT EXISTS transactions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        subscription_id UUID NOT NULL REFERENCES subscriptions(id),
        subscriber_id UUID NOT NULL REFERENCES users(id),
        creator_id UUID NOT NULL REFERENCES users(id),
        amount NUMERIC(14, 2) NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'succeeded' CHECK (status = 'succeeded'),
        provider TEXT NOT NULL,
        provider_transaction_id TEXT NOT NULL,
        payment_method TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_provider_transaction_id
        ON transactions (provider_transaction_id);

    CREATE INDEX IF NOT EXISTS idx_transactions_subscription_id
        ON transactions (subscription_id);

    CREATE TABLE IF NOT EXISTS user_stats (
        user_id UUID PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        subscribers_count INT NOT NULL DEFAULT 0 CHECK (subscribers_count >= 0),
        posts_count INT NOT NULL DEFAULT 0,
        total_likes INT NOT NULL DEFAULT 0,
        last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS notifications (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        type TEXT NOT NULL,
        recipient_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        actor_id UUID REFERENCES users(id) ON DELETE SET NULL,
        read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_notifications_recipient_created
        ON notifications (recipient_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS creator_applications (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'approved', 'rejected')),
        application_reason TEXT NOT NULL DEFAULT '',
        attempt_number INT NOT NULL DEFAULT 1,
        rejection_count INT NOT NULL DEFAULT 0,
        admin_notes TEXT,
        submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        reviewed_at TIMESTAMPTZ,
        reapplication_allowed_at TIMESTAMPTZ
    );

    CREATE INDEX IF NOT EXISTS idx_creator_applications_user_status
        ON creator_applications (user_id, status);

    CREATE INDEX IF NOT EXISTS idx_creator_applications_status_submitted
        ON creator_applications (status, submitted_at);
"""


class Database:
    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def create_pool(self):
        if not settings.DATABASE_URL:
            logger.warning("DATABASE_URL is not set, database pool will not be created.")
            return

        try:
            self.pool = await asyncpg.create_pool(
                dsn=settings.DATABASE_URL,
                min_size=2,
                max_size=10,
                max_queries=50000,
                max_inactive_connection_lifetime=300.0,
                command_timeout=60.0,
                statement_cache_size=0,
                server_settings={"statement_timeout": f"{_statement_timeout_ms()}ms"},
            )
            logger.info("Database pool created.")

            await self.init_db()
        except Exception as e:
            logger.error(f"Failed to create database pool: {e}")
            self.pool = None

    async def init_db(self):
        if not self.pool:
            return

        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
            logger.info("Database tables initialized.")

    async def close_pool(self):
        if self.pool:
            await self.pool.close()
            logger.info("Database pool closed.")

    async def db_check(self) -> str:
        if not settings.DATABASE_URL:
            return "disabled"

        if not self.pool:
            # The database may have been down during startup
            await self.create_pool()
            if not self.pool:
                return "fail"

        try:
            async with self.pool.acquire(timeout=5.0) as conn:
                await conn.execute("SELECT 1")
            return "ok"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return "fail"

db = Database()

async def get_db():
    if not db.pool:
        if settings.DATABASE_URL:
            await db.create_pool()

        if not db.pool:
            raise RuntimeError("Database pool is not initialized and DATABASE_URL is missing or invalid")

    async with db.pool.acquire() as conn:
        yield conn
