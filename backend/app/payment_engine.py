"""Apply confirmed payments to subscriptions exactly once.

``apply_payment`` is the only code path that writes subscription or ledger
rows for a payment. The ledger lookup, the subscription transition, the
ledger insert and the stats delta run inside one database transaction; the
unique index on ``transactions.provider_transaction_id`` decides the winner
when the webhook and the return-URL handler report the same payment at the
same time. Notifications go out after commit and never affect the outcome.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import asyncpg
from fastapi import BackgroundTasks

from .config import settings
from .db import db_transaction
from .deps import ACCOUNT_CREATOR, fetch_user, is_uuid
from .errors import BillingError, InvalidTargetError, StoreUnavailableError, validation_error
from .ledger import get_transaction_by_provider_transaction_id, insert_transaction
from .notifications import NotificationSender, default_sender, dispatch_best_effort, payment_notifications
from .observability import duration_ms, log_ctx, log_ctx_json
from .schemas import PaymentConfirmation, PaymentOutcomeResponse
from .subscription import ACTION_NOOP, decide, to_utc
from .subscription_store import get_subscription_by_id, insert_subscription, lock_subscription, update_subscription
from .user_stats import apply_stats_delta


logger = logging.getLogger("tribe-payments")

# Rolled back by the server; the same request can simply run again.
# QueryCanceledError is statement_timeout firing, usually while waiting on a row lock.
RETRYABLE_DB_ERRORS = (
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
    asyncpg.QueryCanceledError,
    asyncpg.LockNotAvailableError,
)
UNAVAILABLE_DB_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def get_now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PaymentOutcome:
    success: bool
    message: str
    action: str
    already_processed: bool
    provider: str
    provider_transaction_id: str
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    renewal_count: Optional[int] = None
    previous_end_date: Optional[datetime] = None
    new_end_date: Optional[datetime] = None
    transaction_id: Optional[str] = None

    def to_response(self) -> PaymentOutcomeResponse:
        return PaymentOutcomeResponse(
            success=self.success,
            message=self.message,
            subscriptionId=self.subscription_id,
            status=self.status,
            action=self.action,
            alreadyProcessed=self.already_processed,
            renewalCount=self.renewal_count,
            previousEndDate=self.previous_end_date,
            newEndDate=self.new_end_date,
            transactionId=self.transaction_id,
            providerTransactionId=self.provider_transaction_id,
            provider=self.provider,
        )


async def _ensure_valid_target(conn: Any, confirmation: PaymentConfirmation) -> None:
    creator_id = confirmation.creatorId
    if not is_uuid(creator_id):
        raise InvalidTargetError(creator_id, reason="unknown_creator")
    if not is_uuid(confirmation.subscriberId):
        raise validation_error("subscriberId", "must be a UUID")
    if str(creator_id).lower() == str(confirmation.subscriberId).lower():
        raise InvalidTargetError(creator_id, reason="self")

    creator = await fetch_user(conn, creator_id)
    if creator is None:
        raise InvalidTargetError(creator_id, reason="unknown_creator")
    if creator.get("account_type") != ACCOUNT_CREATOR:
        raise InvalidTargetError(creator_id, reason="not_creator")

    subscriber = await fetch_user(conn, confirmation.subscriberId)
    if subscriber is None:
        raise BillingError(
            code="UNKNOWN_SUBSCRIBER",
            message="Unknown subscriber",
            status_code=422,
            details={"subscriberId": confirmation.subscriberId},
        )


async def _replay_outcome(
    conn: Any,
    transaction: dict[str, Any],
    confirmation: PaymentConfirmation,
) -> PaymentOutcome:
    subscription = await get_subscription_by_id(conn, str(transaction["subscription_id"]))
    return PaymentOutcome(
        success=True,
        message="Already processed",
        action=ACTION_NOOP,
        already_processed=True,
        provider=str(transaction.get("provider") or confirmation.provider),
        provider_transaction_id=confirmation.providerTransactionId,
        subscription_id=subscription.id if subscription else str(transaction["subscription_id"]),
        status=subscription.status if subscription else None,
        renewal_count=subscription.renewal_count if subscription else None,
        previous_end_date=subscription.end_date if subscription else None,
        new_end_date=subscription.end_date if subscription else None,
        transaction_id=str(transaction["id"]),
    )


async def _apply_once(
    conn: Any,
    confirmation: PaymentConfirmation,
    *,
    now: datetime,
    start: datetime,
    duration: timedelta,
) -> tuple[PaymentOutcome, bool]:
    async with db_transaction(conn):
        existing = await get_transaction_by_provider_transaction_id(conn, confirmation.providerTransactionId)
        if existing is not None:
            return await _replay_outcome(conn, existing, confirmation), False

        current = await lock_subscription(
            conn,
            creator_id=confirmation.creatorId,
            subscriber_id=confirmation.subscriberId,
            kind=confirmation.kind,
        )
        transition = decide(current, now=now, start=start, duration=duration)
        amount = Decimal(confirmation.amount)

        if current is None:
            record = await insert_subscription(
                conn,
                creator_id=confirmation.creatorId,
                subscriber_id=confirmation.subscriberId,
                kind=confirmation.kind,
                transition=transition,
                amount_paid=amount,
                currency=confirmation.currency,
                now=now,
            )
        else:
            record = await update_subscription(
                conn,
                subscription_id=current.id,
                transition=transition,
                amount_paid=amount,
                currency=confirmation.currency,
                now=now,
            )

        transaction = await insert_transaction(
            conn,
            subscription_id=record.id,
            subscriber_id=confirmation.subscriberId,
            creator_id=confirmation.creatorId,
            amount=amount,
            currency=confirmation.currency,
            provider=confirmation.provider,
            provider_transaction_id=confirmation.providerTransactionId,
            payment_method=confirmation.paymentMethod,
        )

        if transition.subscribers_delta:
            await apply_stats_delta(
                conn,
                confirmation.creatorId,
                subscribers_count=transition.subscribers_delta,
            )

    outcome = PaymentOutcome(
        success=True,
        message="Payment processed",
        action=transition.action,
        already_processed=False,
        provider=confirmation.provider,
        provider_transaction_id=confirmation.providerTransactionId,
        subscription_id=record.id,
        status=record.status,
        renewal_count=record.renewal_count,
        previous_end_date=transition.previous_end_date,
        new_end_date=record.end_date,
        transaction_id=str(transaction["id"]),
    )
    return outcome, True


async def _apply_with_retries(
    conn: Any,
    confirmation: PaymentConfirmation,
    *,
    now: datetime,
    start: datetime,
    duration: timedelta,
) -> tuple[PaymentOutcome, bool]:
    max_attempts = settings.payments_apply_attempts()
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await _apply_once(conn, confirmation, now=now, start=start, duration=duration)
        except asyncpg.UniqueViolationError as exc:
            # Either the ledger key or the subscription key was taken by a
            # concurrent caller; the whole unit rolled back.
            existing = await get_transaction_by_provider_transaction_id(conn, confirmation.providerTransactionId)
            if existing is not None:
                logger.info(
                    "PAYMENT_APPLY_RACE context=%s",
                    log_ctx_json(
                        log_ctx(
                            provider_transaction_id=confirmation.providerTransactionId,
                            extra={"attempt": attempt, "constraint": getattr(exc, "constraint_name", None)},
                        )
                    ),
                )
                return await _replay_outcome(conn, existing, confirmation), False
            last_error = exc
        except RETRYABLE_DB_ERRORS as exc:
            last_error = exc

        logger.warning(
            "PAYMENT_APPLY_RETRY context=%s",
            log_ctx_json(
                log_ctx(
                    provider_transaction_id=confirmation.providerTransactionId,
                    extra={"attempt": attempt, "reason": type(last_error).__name__},
                )
            ),
        )

    raise StoreUnavailableError(
        stage="apply_payment",
        reason=type(last_error).__name__ if last_error else None,
    ) from last_error


async def apply_payment(
    conn: Any,
    confirmation: PaymentConfirmation,
    *,
    now: Optional[datetime] = None,
    duration: Optional[timedelta] = None,
    sender: Optional[NotificationSender] = None,
    background_tasks: Optional[BackgroundTasks] = None,
) -> PaymentOutcome:
    """Apply one payment confirmation and return its outcome.

    Calling this again with the same ``providerTransactionId`` returns the
    stored outcome with ``already_processed=True`` and changes nothing.

    Raises ``InvalidTargetError`` before any read of the ledger when the
    creator is not a creator account, and ``StoreUnavailableError`` when the
    write could not complete (nothing was persisted, the call can be repeated).

    With ``background_tasks`` the notifications are queued there instead of
    being awaited, so a slow dispatcher does not hold up the response.
    """
    started_at = time.monotonic()
    now_utc = to_utc(now) if now else get_now_utc()
    start = to_utc(confirmation.startedAt) if confirmation.startedAt else now_utc
    period = duration or settings.subscription_duration(confirmation.kind)

    try:
        await _ensure_valid_target(conn, confirmation)
        outcome, fresh = await _apply_with_retries(
            conn,
            confirmation,
            now=now_utc,
            start=start,
            duration=period,
        )
    except BillingError as exc:
        logger.warning(
            "PAYMENT_APPLY_FAIL context=%s",
            log_ctx_json(
                log_ctx(
                    user_id=confirmation.subscriberId,
                    provider_transaction_id=confirmation.providerTransactionId,
                    extra={
                        "duration_ms": duration_ms(started_at),
                        "code": exc.code,
                        "creator_id": confirmation.creatorId,
                    },
                )
            ),
        )
        raise
    except UNAVAILABLE_DB_ERRORS as exc:
        logger.error(
            "PAYMENT_APPLY_FAIL context=%s",
            log_ctx_json(
                log_ctx(
                    user_id=confirmation.subscriberId,
                    provider_transaction_id=confirmation.providerTransactionId,
                    extra={
                        "duration_ms": duration_ms(started_at),
                        "code": "STORE_UNAVAILABLE",
                        "reason": type(exc).__name__,
                    },
                )
            ),
        )
        raise StoreUnavailableError(stage="apply_payment", reason=type(exc).__name__) from exc

    if not fresh:
        logger.info(
            "PAYMENT_APPLY_REPLAY context=%s",
            log_ctx_json(
                log_ctx(
                    user_id=confirmation.subscriberId,
                    provider_transaction_id=confirmation.providerTransactionId,
                    extra={
                        "duration_ms": duration_ms(started_at),
                        "subscription_id": outcome.subscription_id,
                        "transaction_id": outcome.transaction_id,
                    },
                )
            ),
        )
        return outcome

    logger.info(
        "PAYMENT_APPLY_OK context=%s",
        log_ctx_json(
            log_ctx(
                user_id=confirmation.subscriberId,
                provider_transaction_id=confirmation.providerTransactionId,
                extra={
                    "duration_ms": duration_ms(started_at),
                    "provider": confirmation.provider,
                    "creator_id": confirmation.creatorId,
                    "action": outcome.action,
                    "subscription_id": outcome.subscription_id,
                    "renewal_count": outcome.renewal_count,
                    "old_until": outcome.previous_end_date.isoformat() if outcome.previous_end_date else None,
                    "new_until": outcome.new_end_date.isoformat() if outcome.new_end_date else None,
                },
            )
        ),
    )

    requests = payment_notifications(
        outcome.action,
        creator_id=confirmation.creatorId,
        subscriber_id=confirmation.subscriberId,
    )
    if background_tasks is not None:
        background_tasks.add_task(dispatch_best_effort, sender or default_sender(), requests)
    else:
        await dispatch_best_effort(sender or default_sender(conn), requests)
    return outcome
