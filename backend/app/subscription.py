"""Subscription lifecycle rules.

Everything in this module is pure: callers pass the current time in, nothing
reads the wall clock or touches storage. The payment engine feeds the stored
row into :func:`decide` and persists whatever transition comes back.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional


ACTION_CREATED = "created"
ACTION_RENEWED = "renewed"
ACTION_REACTIVATED = "reactivated"
ACTION_NOOP = "noop"

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_CANCELED = "canceled"


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    creator_id: str
    subscriber_id: str
    kind: str
    start_date: datetime
    end_date: datetime
    amount_paid: Decimal
    currency: str
    renewal_count: int
    status: str
    last_update_time: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SubscriptionRecord":
        return cls(
            id=str(row["id"]),
            creator_id=str(row["creator_id"]),
            subscriber_id=str(row["subscriber_id"]),
            kind=str(row["kind"]),
            start_date=to_utc(row["start_date"]),
            end_date=to_utc(row["end_date"]),
            amount_paid=Decimal(str(row["amount_paid"])),
            currency=str(row["currency"]),
            renewal_count=int(row["renewal_count"]),
            status=str(row["status"]),
            last_update_time=to_utc(row["last_update_time"]) if row.get("last_update_time") else None,
        )


@dataclass(frozen=True)
class Transition:
    action: str
    start_date: datetime
    end_date: datetime
    renewal_count: int
    previous_end_date: Optional[datetime]
    subscribers_delta: int
    status: str = STATUS_ACTIVE


def decide(
    existing: Optional[SubscriptionRecord],
    *,
    now: datetime,
    start: datetime,
    duration: timedelta,
) -> Transition:
    """Pick the transition a confirmed payment applies to ``existing``.

    A renewal extends from the current expiry, never from ``now``. Anything
    that is not active-and-unexpired restarts the window at ``start`` while
    keeping the renewal history.
    """
    if duration <= timedelta(0):
        raise ValueError("subscription duration must be positive")

    now = to_utc(now)
    start = to_utc(start)

    if existing is None:
        return Transition(
            action=ACTION_CREATED,
            start_date=start,
            end_date=start + duration,
            renewal_count=0,
            previous_end_date=None,
            subscribers_delta=1,
        )

    if existing.status == STATUS_ACTIVE and existing.end_date > now:
        return Transition(
            action=ACTION_RENEWED,
            start_date=existing.start_date,
            end_date=existing.end_date + duration,
            renewal_count=existing.renewal_count + 1,
            previous_end_date=existing.end_date,
            subscribers_delta=0,
        )

    return Transition(
        action=ACTION_REACTIVATED,
        start_date=start,
        end_date=start + duration,
        renewal_count=existing.renewal_count + 1,
        previous_end_date=existing.end_date,
        subscribers_delta=1,
    )


def get_effective_subscription_status(
    raw_status: str,
    end_date: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> str:
    # An active row past its end date is already expired, even before the sweep job marks it.
    if raw_status != STATUS_ACTIVE:
        return raw_status
    if end_date is None:
        return STATUS_EXPIRED

    now_utc = to_utc(now) if now else datetime.now(timezone.utc)
    return STATUS_ACTIVE if to_utc(end_date) > now_utc else STATUS_EXPIRED


def compute_days_left(end_date: Optional[datetime], *, now: Optional[datetime] = None) -> int:
    if end_date is None:
        return 0

    now_utc = to_utc(now) if now else datetime.now(timezone.utc)
    remaining_seconds = (to_utc(end_date) - now_utc).total_seconds()
    if remaining_seconds <= 0:
        return 0
    return max(1, int((remaining_seconds + 86399) // 86400))


@dataclass(frozen=True)
class SubscribeEligibility:
    can_subscribe: bool
    reason: Optional[str] = None


def evaluate_subscribe_eligibility(
    existing: Optional[SubscriptionRecord],
    *,
    now: datetime,
) -> SubscribeEligibility:
    """Whether a new checkout makes sense for this pair, given the stored record.

    Callers check ``self`` and ``not_creator`` first; this only looks at the record.
    """
    if existing is None:
        return SubscribeEligibility(True)

    now_utc = to_utc(now)
    if existing.status == STATUS_ACTIVE and existing.end_date > now_utc:
        return SubscribeEligibility(False, "already_active")
    if existing.status == STATUS_PENDING:
        return SubscribeEligibility(False, "pending")
    # Canceled keeps access until the paid period ends.
    if existing.status == STATUS_CANCELED and existing.end_date > now_utc:
        return SubscribeEligibility(False, "still_valid_until_expiry")
    return SubscribeEligibility(True)
