import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import asyncpg


CREATOR_ID = "00000000-0000-0000-0000-00000000c001"
SUBSCRIBER_ID = "00000000-0000-0000-0000-00000000a001"
OTHER_USER_ID = "00000000-0000-0000-0000-00000000a002"
PLAIN_USER_ID = "00000000-0000-0000-0000-00000000b001"
ADMIN_ID = "00000000-0000-0000-0000-00000000f001"


def _q(query: str) -> str:
    return " ".join(query.split())


def _takes_lock(query: str) -> bool:
    return query.startswith(("INSERT", "UPDATE", "DELETE")) or "FOR UPDATE" in query


class FakeBillingStore:
    """In-memory tables shared by every FakeBillingConn of one test."""

    TABLES = ("users", "subscriptions", "transactions", "user_stats", "notifications", "creator_applications")

    def __init__(self):
        self.users: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.user_stats: dict[str, dict[str, Any]] = {}
        self.notifications: list[dict[str, Any]] = []
        self.creator_applications: dict[str, dict[str, Any]] = {}
        # One writer at a time stands in for the row locks.
        self.write_lock = asyncio.Lock()
        self.commits = 0
        self.rollbacks = 0

    def snapshot(self) -> dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}

    def restore(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def add_user(self, user_id: str, account_type: str = "USER", username: Optional[str] = None) -> dict[str, Any]:
        user = {
            "id": user_id,
            "username": username or f"user-{user_id[-4:]}",
            "name": None,
            "account_type": account_type,
        }
        self.users[user_id] = user
        return user

    def add_subscription(
        self,
        *,
        creator_id: str,
        subscriber_id: str,
        start_date: datetime,
        end_date: datetime,
        status: str = "active",
        renewal_count: int = 0,
        kind: str = "content_access",
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "creator_id": creator_id,
            "subscriber_id": subscriber_id,
            "kind": kind,
            "start_date": start_date,
            "end_date": end_date,
            "amount_paid": Decimal("5000"),
            "currency": "XAF",
            "renewal_count": renewal_count,
            "status": status,
            "last_update_time": start_date,
        }
        self.subscriptions[row["id"]] = row
        return row

    def subscribers_count(self, user_id: str) -> int:
        return int(self.user_stats.get(user_id, {}).get("subscribers_count", 0))

    def subscription_for(self, creator_id: str, subscriber_id: str, kind: str = "content_access") -> Optional[dict]:
        for row in self.subscriptions.values():
            if (row["creator_id"], row["subscriber_id"], row["kind"]) == (creator_id, subscriber_id, kind):
                return row
        return None


class _FakeTx:
    """Takes the store-wide write lock at the first row lock or write, like a row lock."""

    def __init__(self, conn: "FakeBillingConn"):
        self.conn = conn
        self.locked = False
        self._snapshot: Optional[dict[str, Any]] = None

    async def __aenter__(self):
        self.conn._tx = self
        return self

    async def lock(self) -> None:
        if self.locked:
            return
        store = self.conn.store
        await store.write_lock.acquire()
        self.locked = True
        # Nothing was written before the lock, so this is the rollback point.
        self._snapshot = store.snapshot()

    async def __aexit__(self, exc_type, exc, tb):
        store = self.conn.store
        self.conn._tx = None
        try:
            if exc_type is not None:
                if self.locked:
                    store.restore(self._snapshot)
                store.rollbacks += 1
            else:
                store.commits += 1
        finally:
            if self.locked:
                store.write_lock.release()
        return False


class FakeBillingConn:
    """Fake asyncpg connection that dispatches on the SQL text of the stores."""

    def __init__(self, store: Optional[FakeBillingStore] = None):
        self.store = store or FakeBillingStore()
        self.queries: list[str] = []
        # (sql fragment, exception, remaining count) injected failures
        self.failures: list[list[Any]] = []
        self._tx: Optional[_FakeTx] = None

    def fail_on(self, fragment: str, exc: Exception, times: int = 1) -> None:
        self.failures.append([fragment, exc, times])

    def transaction(self):
        return _FakeTx(self)

    def _maybe_fail(self, query: str) -> None:
        for failure in self.failures:
            fragment, exc, remaining = failure
            if remaining > 0 and fragment in query:
                failure[2] = remaining - 1
                raise exc

    async def _record(self, query: str) -> str:
        normalized = _q(query)
        self.queries.append(normalized)
        # Every statement is a suspension point, so concurrent callers interleave.
        await asyncio.sleep(0)
        self._maybe_fail(normalized)
        if self._tx is not None and _takes_lock(normalized):
            await self._tx.lock()
        return normalized

    # users

    def _user_row(self, user_id: str) -> Optional[dict[str, Any]]:
        user = self.store.users.get(str(user_id))
        return dict(user) if user else None

    # ledger

    def _ledger_by_ptid(self, provider_transaction_id: str) -> Optional[dict[str, Any]]:
        for row in self.store.transactions.values():
            if row["provider_transaction_id"] == provider_transaction_id:
                return dict(row)
        return None

    def _insert_transaction(self, args) -> dict[str, Any]:
        (subscription_id, subscriber_id, creator_id, amount, currency, provider, ptid, payment_method) = args
        if self._ledger_by_ptid(ptid) is not None:
            raise asyncpg.UniqueViolationError("duplicate key value violates idx_transactions_provider_transaction_id")
        row = {
            "id": str(uuid.uuid4()),
            "subscription_id": str(subscription_id),
            "subscriber_id": str(subscriber_id),
            "creator_id": str(creator_id),
            "amount": amount,
            "currency": currency,
            "status": "succeeded",
            "provider": provider,
            "provider_transaction_id": ptid,
            "payment_method": payment_method,
            "created_at": datetime.now(timezone.utc),
        }
        self.store.transactions[row["id"]] = row
        return dict(row)

    # subscriptions

    def _insert_subscription(self, args) -> dict[str, Any]:
        (creator_id, subscriber_id, kind, start, end, amount, currency, renewal_count, status, now) = args
        if self.store.subscription_for(str(creator_id), str(subscriber_id), kind) is not None:
            raise asyncpg.UniqueViolationError("duplicate key value violates subscriptions_creator_id_subscriber_id_kind_key")
        if end < start:
            raise asyncpg.CheckViolationError("subscriptions_dates_ordered")
        row = {
            "id": str(uuid.uuid4()),
            "creator_id": str(creator_id),
            "subscriber_id": str(subscriber_id),
            "kind": kind,
            "start_date": start,
            "end_date": end,
            "amount_paid": amount,
            "currency": currency,
            "renewal_count": renewal_count,
            "status": status,
            "last_update_time": now,
        }
        self.store.subscriptions[row["id"]] = row
        return dict(row)

    def _update_subscription(self, args) -> Optional[dict[str, Any]]:
        (subscription_id, start, end, renewal_count, status, amount, currency, now) = args
        row = self.store.subscriptions.get(str(subscription_id))
        if row is None:
            return None
        if end < start:
            raise asyncpg.CheckViolationError("subscriptions_dates_ordered")
        if renewal_count < row["renewal_count"]:
            raise AssertionError("renewal_count must never decrease")
        row.update(
            {
                "start_date": start,
                "end_date": end,
                "renewal_count": renewal_count,
                "status": status,
                "amount_paid": amount,
                "currency": currency,
                "last_update_time": now,
            }
        )
        return dict(row)

    def _subscriptions_where(self, column: str, args) -> list[dict[str, Any]]:
        party_id, kind = args
        rows = [
            dict(row)
            for row in self.store.subscriptions.values()
            if row[column] == str(party_id) and row["kind"] == kind
        ]
        return sorted(rows, key=lambda row: row["start_date"], reverse=True)

    # creator applications

    def _with_user(self, application: dict[str, Any]) -> dict[str, Any]:
        user = self.store.users[application["user_id"]]
        return {**application, "username": user["username"], "account_type": user["account_type"]}

    def _applications_for(self, user_id: str) -> list[dict[str, Any]]:
        rows = [dict(app) for app in self.store.creator_applications.values() if app["user_id"] == str(user_id)]
        return sorted(rows, key=lambda app: app["submitted_at"])

    async def fetchrow(self, query, *args):
        q = await self._record(query)

        if "FROM users WHERE id = $1::uuid" in q:
            return self._user_row(args[0])

        if "FROM transactions WHERE provider_transaction_id = $1" in q:
            return self._ledger_by_ptid(args[0])

        if q.startswith("INSERT INTO transactions"):
            return self._insert_transaction(args)

        if "FROM subscriptions WHERE id = $1::uuid" in q:
            row = self.store.subscriptions.get(str(args[0]))
            return dict(row) if row else None

        if "FROM subscriptions WHERE creator_id = $1::uuid AND subscriber_id = $2::uuid AND kind = $3" in q:
            row = self.store.subscription_for(str(args[0]), str(args[1]), args[2])
            return dict(row) if row else None

        if q.startswith("INSERT INTO subscriptions"):
            return self._insert_subscription(args)

        if q.startswith("UPDATE subscriptions SET start_date = $2"):
            return self._update_subscription(args)

        if q.startswith("UPDATE subscriptions SET status = 'canceled'"):
            row = self.store.subscriptions.get(str(args[0]))
            if row is None or row["status"] == "canceled":
                return None
            row.update({"status": "canceled", "last_update_time": args[1]})
            return dict(row)

        if "FROM user_stats WHERE user_id = $1::uuid" in q:
            row = self.store.user_stats.get(str(args[0]))
            return dict(row) if row else None

        if "FROM creator_applications a JOIN users u ON u.id = a.user_id WHERE a.id = $1::uuid" in q:
            row = self.store.creator_applications.get(str(args[0]))
            return self._with_user(row) if row else None

        if "FROM creator_applications WHERE id = $1::uuid FOR UPDATE" in q:
            row = self.store.creator_applications.get(str(args[0]))
            return dict(row) if row else None

        if q.startswith("INSERT INTO creator_applications"):
            user_id, reason, attempt_number, rejection_count, now = args
            row = {
                "id": str(uuid.uuid4()),
                "user_id": str(user_id),
                "status": "pending",
                "application_reason": reason,
                "attempt_number": attempt_number,
                "rejection_count": rejection_count,
                "admin_notes": None,
                "submitted_at": now,
                "reviewed_at": None,
                "reapplication_allowed_at": None,
            }
            self.store.creator_applications[row["id"]] = row
            return dict(row)

        if q.startswith("UPDATE creator_applications SET status = 'rejected'"):
            application_id, notes, now, rejection_count, allowed_at = args
            row = self.store.creator_applications[str(application_id)]
            row.update(
                {
                    "status": "rejected",
                    "admin_notes": notes,
                    "reviewed_at": now,
                    "rejection_count": rejection_count,
                    "reapplication_allowed_at": allowed_at,
                }
            )
            return dict(row)

        if q.startswith("UPDATE creator_applications SET status = 'approved'"):
            application_id, notes, now = args
            row = self.store.creator_applications[str(application_id)]
            row.update({"status": "approved", "admin_notes": notes, "reviewed_at": now})
            return dict(row)

        raise AssertionError(f"unexpected fetchrow: {q}")

    async def fetch(self, query, *args):
        q = await self._record(query)

        if "FROM transactions WHERE subscription_id = $1::uuid" in q:
            rows = [dict(row) for row in self.store.transactions.values() if row["subscription_id"] == str(args[0])]
            return sorted(rows, key=lambda row: row["created_at"], reverse=True)

        if q.startswith("UPDATE subscriptions SET status = 'expired'"):
            now, limit = args
            lapsed = sorted(
                (
                    row
                    for row in self.store.subscriptions.values()
                    if row["status"] == "active" and row["end_date"] <= now
                ),
                key=lambda row: row["end_date"],
            )[:limit]
            result = []
            for row in lapsed:
                row.update({"status": "expired", "last_update_time": now})
                result.append(
                    {
                        "id": row["id"],
                        "creator_id": row["creator_id"],
                        "subscriber_id": row["subscriber_id"],
                        "kind": row["kind"],
                    }
                )
            return result

        if "FROM creator_applications WHERE user_id = $1::uuid" in q:
            return self._applications_for(args[0])

        if "FROM creator_applications a JOIN users u ON u.id = a.user_id WHERE a.status = $1" in q:
            rows = [self._with_user(row) for row in self.store.creator_applications.values() if row["status"] == args[0]]
            return sorted(rows, key=lambda row: row["submitted_at"])

        if "FROM subscriptions WHERE subscriber_id = $1::uuid AND kind = $2" in q:
            return self._subscriptions_where("subscriber_id", args)

        if "FROM subscriptions WHERE creator_id = $1::uuid AND kind = $2" in q:
            return self._subscriptions_where("creator_id", args)

        raise AssertionError(f"unexpected fetch: {q}")

    async def fetchval(self, query, *args):
        q = await self._record(query)

        if q.startswith("SELECT COUNT(*) FROM subscriptions WHERE status = 'active'"):
            return sum(1 for row in self.store.subscriptions.values() if row["status"] == "active")

        raise AssertionError(f"unexpected fetchval: {q}")

    async def execute(self, query, *args):
        q = await self._record(query)

        if q.startswith("INSERT INTO user_stats"):
            user_id, subscribers, posts, likes = args
            row = self.store.user_stats.setdefault(
                str(user_id),
                {"user_id": str(user_id), "subscribers_count": 0, "posts_count": 0, "total_likes": 0},
            )
            row["subscribers_count"] = max(0, row["subscribers_count"] + subscribers)
            row["posts_count"] = max(0, row["posts_count"] + posts)
            row["total_likes"] = max(0, row["total_likes"] + likes)
            row["last_updated"] = datetime.now(timezone.utc)
            return "INSERT 0 1"

        if q.startswith("INSERT INTO notifications"):
            notification_type, recipient_id, actor_id = args
            self.store.notifications.append(
                {"type": notification_type, "recipient_id": str(recipient_id), "actor_id": actor_id, "read": False}
            )
            return "INSERT 0 1"

        if q.startswith("UPDATE users SET account_type"):
            user_id, account_type, _now = args
            self.store.users[str(user_id)]["account_type"] = account_type
            return "UPDATE 1"

        raise AssertionError(f"unexpected execute: {q}")


class FakePool:
    """Hands out the same fake connection on every acquire."""

    def __init__(self, conn: FakeBillingConn):
        self.conn = conn
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn


def seeded_store() -> FakeBillingStore:
    store = FakeBillingStore()
    store.add_user(CREATOR_ID, "CREATOR", "creator")
    store.add_user(SUBSCRIBER_ID, "USER", "fan")
    store.add_user(OTHER_USER_ID, "USER", "other")
    store.add_user(PLAIN_USER_ID, "USER", "plain")
    store.add_user(ADMIN_ID, "SUPERUSER", "admin")
    return store
