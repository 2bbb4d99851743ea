import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from .db import db_transaction, get_db
from .deps import ACCOUNT_CREATOR, ACCOUNT_SUPERUSER, fetch_user, get_current_user
from .errors import BillingError, NotFoundError
from .ledger import list_transactions_for_subscription
from .observability import log_ctx, log_ctx_json
from .payments import build_transaction_response
from .schemas import (
    CancelSubscriptionResponse,
    SubscribeEligibilityResponse,
    SubscriptionKind,
    SubscriptionResponse,
    TransactionResponse,
)
from .subscription import (
    SubscriptionRecord,
    compute_days_left,
    evaluate_subscribe_eligibility,
    get_effective_subscription_status,
)
from .subscription_store import (
    cancel_subscription,
    find_subscription,
    get_subscription_by_id,
    list_subscriptions_for_creator,
    list_subscriptions_for_subscriber,
)

logger = logging.getLogger("tribe-subscriptions")

router = APIRouter(prefix="/v1/subscriptions", tags=["Subscriptions"])
users_router = APIRouter(prefix="/v1/users", tags=["Subscriptions"])


def get_now_utc() -> datetime:
    return datetime.now(timezone.utc)


def build_subscription_response(record: SubscriptionRecord, *, now: datetime) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=record.id,
        creatorId=record.creator_id,
        subscriberId=record.subscriber_id,
        kind=record.kind,
        startDate=record.start_date,
        endDate=record.end_date,
        amountPaid=record.amount_paid,
        currency=record.currency,
        renewalCount=record.renewal_count,
        status=record.status,
        effectiveStatus=get_effective_subscription_status(record.status, record.end_date, now=now),
        daysLeft=compute_days_left(record.end_date, now=now),
        lastUpdateTime=record.last_update_time,
    )


def _is_party(user: dict, record: SubscriptionRecord) -> bool:
    return str(user.get("id")) in {record.subscriber_id, record.creator_id}


def _can_read(user: dict, record: SubscriptionRecord) -> bool:
    return _is_party(user, record) or user.get("account_type") == ACCOUNT_SUPERUSER


def _ensure_self_or_superuser(user: dict, user_id: UUID) -> None:
    if str(user.get("id")) != str(user_id) and user.get("account_type") != ACCOUNT_SUPERUSER:
        raise BillingError(code="FORBIDDEN", message="Access denied", status_code=403)


@router.get("/eligibility/{creator_id}", response_model=SubscribeEligibilityResponse)
async def read_subscribe_eligibility(
    creator_id: str,
    kind: SubscriptionKind = "content_access",
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    user_id = str(user["id"])
    if user_id.lower() == creator_id.lower():
        return SubscribeEligibilityResponse(canSubscribe=False, reason="self")

    creator = await fetch_user(conn, creator_id)
    if creator is None or creator.get("account_type") != ACCOUNT_CREATOR:
        return SubscribeEligibilityResponse(canSubscribe=False, reason="not_creator")

    existing = await find_subscription(
        conn,
        creator_id=str(creator["id"]),
        subscriber_id=user_id,
        kind=kind,
    )
    eligibility = evaluate_subscribe_eligibility(existing, now=get_now_utc())
    return SubscribeEligibilityResponse(
        canSubscribe=eligibility.can_subscribe,
        reason=eligibility.reason,
        subscriptionId=existing.id if existing else None,
        endDate=existing.end_date if existing else None,
    )


@router.get("/lookup", response_model=SubscriptionResponse)
async def lookup_subscription(
    creator_id: UUID = Query(..., alias="creatorId"),
    subscriber_id: UUID = Query(..., alias="subscriberId"),
    kind: SubscriptionKind = "content_access",
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    record = await find_subscription(
        conn,
        creator_id=str(creator_id),
        subscriber_id=str(subscriber_id),
        kind=kind,
    )
    if record is None or not _can_read(user, record):
        raise NotFoundError("subscription")
    return build_subscription_response(record, now=get_now_utc())


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def read_subscription(
    subscription_id: UUID,
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    record = await get_subscription_by_id(conn, str(subscription_id))
    if record is None or not _can_read(user, record):
        raise NotFoundError("subscription")
    return build_subscription_response(record, now=get_now_utc())


@router.post("/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
async def cancel(
    subscription_id: UUID,
    request: Request,
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    now = get_now_utc()
    async with db_transaction(conn):
        record = await get_subscription_by_id(conn, str(subscription_id))
        if record is None:
            raise NotFoundError("subscription")
        if not _is_party(user, record):
            raise BillingError(code="FORBIDDEN", message="Access denied", status_code=403)

        canceled = await cancel_subscription(conn, record.id, now=now)

    if canceled is None:
        return CancelSubscriptionResponse(
            canceled=False,
            reason="already_canceled",
            subscription=build_subscription_response(record, now=now),
        )

    logger.info(
        "SUBSCRIPTION_CANCELED context=%s",
        log_ctx_json(
            log_ctx(
                request,
                user_id=user.get("id"),
                extra={"subscription_id": canceled.id, "kind": canceled.kind},
            )
        ),
    )
    return CancelSubscriptionResponse(
        canceled=True,
        subscription=build_subscription_response(canceled, now=now),
    )


@router.get("/{subscription_id}/transactions", response_model=list[TransactionResponse])
async def read_subscription_transactions(
    subscription_id: UUID,
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    record = await get_subscription_by_id(conn, str(subscription_id))
    if record is None or not _can_read(user, record):
        raise NotFoundError("subscription")
    rows = await list_transactions_for_subscription(conn, record.id)
    return [build_transaction_response(row) for row in rows]


@users_router.get("/{user_id}/subscriptions", response_model=list[SubscriptionResponse])
async def read_user_subscriptions(
    user_id: UUID,
    kind: SubscriptionKind = "content_access",
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    _ensure_self_or_superuser(user, user_id)
    now = get_now_utc()
    records = await list_subscriptions_for_subscriber(conn, str(user_id), kind=kind)
    return [build_subscription_response(record, now=now) for record in records]


@users_router.get("/{user_id}/subscribers", response_model=list[SubscriptionResponse])
async def read_creator_subscribers(
    user_id: UUID,
    kind: SubscriptionKind = "content_access",
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    _ensure_self_or_superuser(user, user_id)
    now = get_now_utc()
    records = await list_subscriptions_for_creator(conn, str(user_id), kind=kind)
    return [build_subscription_response(record, now=now) for record in records]
