import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from .config import settings
from .db import db, execute_named
from .observability import log_ctx, log_ctx_json


logger = logging.getLogger("tribe-notifications")

NOTIFY_NEW_SUBSCRIPTION = "newSubscription"
NOTIFY_RENEW_SUBSCRIPTION = "renewSubscription"
NOTIFY_SUBSCRIPTION_CONFIRMED = "subscriptionConfirmed"
NOTIFY_SUBSCRIPTION_EXPIRED = "subscriptionExpired"


@dataclass(frozen=True)
class NotificationRequest:
    type: str
    recipient_id: str
    actor_id: Optional[str] = None

    def as_payload(self) -> dict[str, Any]:
        return {"type": self.type, "recipientId": self.recipient_id, "actorId": self.actor_id}


NotificationSender = Callable[[NotificationRequest], Awaitable[None]]


async def store_notification(conn: Any, request: NotificationRequest) -> None:
    await execute_named(
        conn,
        "notifications.insert",
        """
        INSERT INTO notifications (type, recipient_id, actor_id, read)
        VALUES ($1, $2::uuid, $3::uuid, FALSE)
        """,
        request.type,
        request.recipient_id,
        request.actor_id,
    )


def database_sender(conn: Any) -> NotificationSender:
    async def _send(request: NotificationRequest) -> None:
        await store_notification(conn, request)

    return _send


def pooled_database_sender() -> NotificationSender:
    # For work that outlives the request, whose connection is back in the pool by then.
    async def _send_pooled(request: NotificationRequest) -> None:
        if db.pool is None:
            raise RuntimeError("Database pool is not initialized")
        async with db.pool.acquire() as conn:
            await store_notification(conn, request)

    return _send_pooled


def default_sender(conn: Any = None) -> NotificationSender:
    if settings.NOTIFICATIONS_RELAY_URL.strip():
        from .integrations.notification_relay import notification_relay_client

        return notification_relay_client.send
    if conn is None:
        return pooled_database_sender()
    return database_sender(conn)


def payment_notifications(action: str, *, creator_id: str, subscriber_id: str) -> list[NotificationRequest]:
    creator_type = NOTIFY_NEW_SUBSCRIPTION if action in {"created", "reactivated"} else NOTIFY_RENEW_SUBSCRIPTION
    return [
        NotificationRequest(type=creator_type, recipient_id=creator_id, actor_id=subscriber_id),
        NotificationRequest(type=NOTIFY_SUBSCRIPTION_CONFIRMED, recipient_id=subscriber_id, actor_id=creator_id),
    ]


async def dispatch_best_effort(
    sender: NotificationSender,
    requests: Iterable[NotificationRequest],
) -> int:
    """Send every request, logging failures instead of raising. Returns the number sent."""
    sent = 0
    for request in requests:
        try:
            await sender(request)
        except Exception as exc:
            logger.warning(
                "NOTIFICATION_DISPATCH_FAIL context=%s",
                log_ctx_json(
                    log_ctx(
                        user_id=request.recipient_id,
                        extra={"type": request.type, "reason": type(exc).__name__},
                    )
                ),
            )
            continue
        sent += 1
    return sent
