import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .db import db_transaction
from .notifications import NOTIFY_SUBSCRIPTION_EXPIRED, NotificationRequest, NotificationSender, default_sender, dispatch_best_effort
from .subscription import to_utc
from .subscription_store import count_active_subscriptions, expire_lapsed_subscriptions


logger = logging.getLogger("tribe-expiry")

EXPIRY_BATCH_SIZE = 500


@dataclass
class ExpiryRunStats:
    scanned: int = 0
    expired: int = 0
    notified: int = 0


async def run_expire_subscriptions(
    conn: Any,
    now: Optional[datetime] = None,
    *,
    sender: Optional[NotificationSender] = None,
    job_run_id: Optional[str] = None,
    batch_size: int = EXPIRY_BATCH_SIZE,
) -> ExpiryRunStats:
    """Mark lapsed active subscriptions as expired and tell each subscriber.

    ``scanned`` is the number of active rows when the run starts, lapsed or not.

    Subscriber counters are left alone; a later reactivation adds to them.
    """
    now_utc = to_utc(now) if now else datetime.now(timezone.utc)
    run_id = job_run_id or str(uuid.uuid4())
    notify = sender or default_sender(conn)
    stats = ExpiryRunStats(scanned=await count_active_subscriptions(conn))

    while True:
        async with db_transaction(conn):
            rows = await expire_lapsed_subscriptions(conn, now=now_utc, limit=batch_size)

        stats.expired += len(rows)
        for row in rows:
            stats.notified += await dispatch_best_effort(
                notify,
                [
                    NotificationRequest(
                        type=NOTIFY_SUBSCRIPTION_EXPIRED,
                        recipient_id=str(row["subscriber_id"]),
                        actor_id=str(row["creator_id"]),
                    )
                ],
            )
            logger.info(
                "SUBSCRIPTION_EXPIRED job_run_id=%s subscription_id=%s kind=%s",
                run_id,
                row["id"],
                row["kind"],
            )

        if len(rows) < batch_size:
            break

    return stats
