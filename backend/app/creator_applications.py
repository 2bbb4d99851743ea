"""Creator applications and the reapplication soft-lock.

After the first rejection a user may reapply right away, after the second
they wait a cooldown, from the third on they must contact support. The lock
is always derived from the stored rejected rows, never from a counter the
client sends.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional, Sequence
from uuid import UUID

import asyncpg
from fastapi import APIRouter, Depends, Query, Request

from .config import settings
from .db import db_transaction, execute_named, fetch_named, fetchrow_named, get_db
from .deps import ACCOUNT_CREATOR, get_current_user, require_superuser
from .errors import BillingError, NotFoundError
from .observability import log_ctx, log_ctx_json
from .schemas import (
    AdminCreatorApplicationResponse,
    CreatorApplicationResponse,
    CreatorApplicationSubmitRequest,
    ReapplicationEligibilityResponse,
    ReviewApplicationRequest,
)
from .subscription import to_utc

logger = logging.getLogger("tribe-creator-applications")

router = APIRouter(prefix="/v1/creator-applications", tags=["Creator applications"])
admin_router = APIRouter(prefix="/v1/admin/creator-applications", tags=["Admin"])

APPLICATION_PENDING = "pending"
APPLICATION_APPROVED = "approved"
APPLICATION_REJECTED = "rejected"

APPLICATION_COLUMNS = """
    id, user_id, status, application_reason, attempt_number, rejection_count,
    admin_notes, submitted_at, reviewed_at, reapplication_allowed_at
"""


def get_now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReapplicationEligibility:
    can_reapply: bool
    must_contact_support: bool
    wait_until: Optional[datetime]
    rejection_count: int


def compute_reapplication_allowed_at(
    rejection_count: int,
    reviewed_at: datetime,
    *,
    cooldown: Optional[timedelta] = None,
    max_rejections: Optional[int] = None,
) -> Optional[datetime]:
    """When the user may apply again after their ``rejection_count``-th rejection.

    ``None`` means never without support.
    """
    if rejection_count < 1:
        raise ValueError("rejection_count must be at least 1")

    limit = max_rejections if max_rejections is not None else settings.max_creator_rejections()
    if rejection_count >= limit:
        return None
    if rejection_count == 1:
        return to_utc(reviewed_at)
    return to_utc(reviewed_at) + (cooldown if cooldown is not None else settings.reapply_cooldown())


def evaluate_reapplication(
    rejections: Sequence[dict[str, Any]],
    *,
    now: datetime,
    max_rejections: Optional[int] = None,
) -> ReapplicationEligibility:
    rejection_count = len(rejections)
    limit = max_rejections if max_rejections is not None else settings.max_creator_rejections()

    if rejection_count >= limit:
        return ReapplicationEligibility(False, True, None, rejection_count)
    if rejection_count == 0:
        return ReapplicationEligibility(True, False, None, 0)

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    latest = max(
        rejections,
        key=lambda row: (
            to_utc(row["reviewed_at"]) if row.get("reviewed_at") else epoch,
            int(row.get("rejection_count") or 0),
        ),
    )
    allowed_at = latest.get("reapplication_allowed_at")
    if allowed_at is not None and to_utc(now) < to_utc(allowed_at):
        return ReapplicationEligibility(False, False, to_utc(allowed_at), rejection_count)
    return ReapplicationEligibility(True, False, None, rejection_count)


async def list_applications(conn: asyncpg.Connection, user_id: str) -> list[dict[str, Any]]:
    rows = await fetch_named(
        conn,
        "creator_applications.by_user",
        f"""
        SELECT {APPLICATION_COLUMNS}
        FROM creator_applications
        WHERE user_id = $1::uuid
        ORDER BY submitted_at ASC
        """,
        user_id,
    )
    return [dict(row) for row in rows]


ADMIN_APPLICATION_COLUMNS = """
    a.id, a.user_id, a.status, a.application_reason, a.attempt_number,
    a.rejection_count, a.admin_notes, a.submitted_at, a.reviewed_at,
    a.reapplication_allowed_at, u.username, u.account_type
"""


def pick_current_application(applications: Sequence[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """The application a user sees as theirs: pending, else approved, else the latest rejection."""
    for status in (APPLICATION_PENDING, APPLICATION_APPROVED):
        for app in applications:
            if app["status"] == status:
                return app

    rejections = [app for app in applications if app["status"] == APPLICATION_REJECTED]
    if not rejections:
        return None
    return max(rejections, key=lambda app: to_utc(app["submitted_at"]))


async def list_applications_by_status(conn: asyncpg.Connection, status: str) -> list[dict[str, Any]]:
    rows = await fetch_named(
        conn,
        "creator_applications.by_status",
        f"""
        SELECT {ADMIN_APPLICATION_COLUMNS}
        FROM creator_applications a
        JOIN users u ON u.id = a.user_id
        WHERE a.status = $1
        ORDER BY a.submitted_at ASC
        """,
        status,
    )
    return [dict(row) for row in rows]


async def get_application_with_user(conn: asyncpg.Connection, application_id: str) -> Optional[dict[str, Any]]:
    row = await fetchrow_named(
        conn,
        "creator_applications.by_id_with_user",
        f"""
        SELECT {ADMIN_APPLICATION_COLUMNS}
        FROM creator_applications a
        JOIN users u ON u.id = a.user_id
        WHERE a.id = $1::uuid
        """,
        application_id,
    )
    return dict(row) if row else None


async def _lock_user(conn: asyncpg.Connection, user_id: str) -> None:
    # Serializes submit and review for the same user.
    await fetchrow_named(
        conn,
        "users.lock",
        "SELECT id FROM users WHERE id = $1::uuid FOR UPDATE",
        user_id,
    )


def _to_response(row: dict[str, Any]) -> CreatorApplicationResponse:
    return CreatorApplicationResponse(
        id=str(row["id"]),
        status=row["status"],
        attemptNumber=int(row["attempt_number"]),
        rejectionCount=int(row["rejection_count"]),
        submittedAt=row["submitted_at"],
        reviewedAt=row.get("reviewed_at"),
        reapplicationAllowedAt=row.get("reapplication_allowed_at"),
    )


def _to_admin_response(row: dict[str, Any]) -> AdminCreatorApplicationResponse:
    return AdminCreatorApplicationResponse(
        **_to_response(row).model_dump(),
        userId=str(row["user_id"]),
        username=row.get("username"),
        accountType=row.get("account_type"),
        applicationReason=row.get("application_reason") or "",
        adminNotes=row.get("admin_notes"),
    )


def _eligibility_response(eligibility: ReapplicationEligibility) -> ReapplicationEligibilityResponse:
    return ReapplicationEligibilityResponse(
        canReapply=eligibility.can_reapply,
        mustContactSupport=eligibility.must_contact_support,
        waitUntil=eligibility.wait_until,
        rejectionCount=eligibility.rejection_count,
    )


async def submit_application(
    conn: asyncpg.Connection,
    user_id: str,
    application_reason: str,
    *,
    now: datetime,
) -> dict[str, Any]:
    async with db_transaction(conn):
        await _lock_user(conn, user_id)
        applications = await list_applications(conn, user_id)

        if any(app["status"] != APPLICATION_REJECTED for app in applications):
            raise BillingError(
                code="APPLICATION_EXISTS",
                message="An application is already pending or approved",
                status_code=409,
            )

        rejections = [app for app in applications if app["status"] == APPLICATION_REJECTED]
        eligibility = evaluate_reapplication(rejections, now=now)
        if not eligibility.can_reapply:
            raise BillingError(
                code="REAPPLICATION_LOCKED",
                message="Reapplication is not allowed yet",
                status_code=409,
                details={
                    "mustContactSupport": eligibility.must_contact_support,
                    "waitUntil": eligibility.wait_until.isoformat() if eligibility.wait_until else None,
                    "rejectionCount": eligibility.rejection_count,
                },
            )

        row = await fetchrow_named(
            conn,
            "creator_applications.insert",
            f"""
            INSERT INTO creator_applications (
                user_id, status, application_reason, attempt_number, rejection_count, submitted_at
            )
            VALUES ($1::uuid, '{APPLICATION_PENDING}', $2, $3, $4, $5)
            RETURNING {APPLICATION_COLUMNS}
            """,
            user_id,
            application_reason,
            len(applications) + 1,
            len(rejections),
            now,
        )
    return dict(row)


async def review_application(
    conn: asyncpg.Connection,
    application_id: str,
    decision: str,
    admin_notes: Optional[str],
    *,
    now: datetime,
) -> dict[str, Any]:
    async with db_transaction(conn):
        application = await fetchrow_named(
            conn,
            "creator_applications.lock_by_id",
            f"SELECT {APPLICATION_COLUMNS} FROM creator_applications WHERE id = $1::uuid FOR UPDATE",
            application_id,
        )
        if application is None:
            raise NotFoundError("creator_application")
        if application["status"] != APPLICATION_PENDING:
            raise BillingError(
                code="APPLICATION_ALREADY_REVIEWED",
                message="Application was already reviewed",
                status_code=409,
                details={"status": application["status"]},
            )

        user_id = str(application["user_id"])
        await _lock_user(conn, user_id)

        if decision == APPLICATION_REJECTED:
            previous = [
                app
                for app in await list_applications(conn, user_id)
                if app["status"] == APPLICATION_REJECTED
            ]
            rejection_count = len(previous) + 1
            row = await fetchrow_named(
                conn,
                "creator_applications.reject",
                f"""
                UPDATE creator_applications
                SET status = '{APPLICATION_REJECTED}',
                    admin_notes = $2,
                    reviewed_at = $3,
                    rejection_count = $4,
                    reapplication_allowed_at = $5
                WHERE id = $1::uuid
                RETURNING {APPLICATION_COLUMNS}
                """,
                application_id,
                admin_notes,
                now,
                rejection_count,
                compute_reapplication_allowed_at(rejection_count, now),
            )
        else:
            row = await fetchrow_named(
                conn,
                "creator_applications.approve",
                f"""
                UPDATE creator_applications
                SET status = '{APPLICATION_APPROVED}', admin_notes = $2, reviewed_at = $3
                WHERE id = $1::uuid
                RETURNING {APPLICATION_COLUMNS}
                """,
                application_id,
                admin_notes,
                now,
            )
            await execute_named(
                conn,
                "users.promote_creator",
                "UPDATE users SET account_type = $2, updated_at = $3 WHERE id = $1::uuid",
                user_id,
                ACCOUNT_CREATOR,
                now,
            )
    return dict(row)


@router.get("/reapplication", response_model=ReapplicationEligibilityResponse)
async def read_reapplication_eligibility(
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    applications = await list_applications(conn, str(user["id"]))
    rejections = [app for app in applications if app["status"] == APPLICATION_REJECTED]
    return _eligibility_response(evaluate_reapplication(rejections, now=get_now_utc()))


@router.post("", response_model=CreatorApplicationResponse)
async def create_application(
    payload: CreatorApplicationSubmitRequest,
    request: Request,
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    row = await submit_application(conn, str(user["id"]), payload.applicationReason, now=get_now_utc())
    logger.info(
        "CREATOR_APPLICATION_SUBMITTED context=%s",
        log_ctx_json(
            log_ctx(request, user_id=user["id"], extra={"attempt_number": row["attempt_number"]})
        ),
    )
    return _to_response(row)


@admin_router.post("/{application_id}/review", response_model=CreatorApplicationResponse)
async def review(
    application_id: UUID,
    payload: ReviewApplicationRequest,
    request: Request,
    admin=Depends(require_superuser),
    conn=Depends(get_db),
):
    row = await review_application(
        conn,
        str(application_id),
        payload.decision,
        payload.adminNotes,
        now=get_now_utc(),
    )
    logger.info(
        "CREATOR_APPLICATION_REVIEWED context=%s",
        log_ctx_json(
            log_ctx(
                request,
                user_id=admin["id"],
                extra={
                    "application_id": str(application_id),
                    "decision": payload.decision,
                    "rejection_count": row["rejection_count"],
                },
            )
        ),
    )
    return _to_response(row)


@router.get("/me", response_model=Optional[CreatorApplicationResponse])
async def read_my_application(
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    application = pick_current_application(await list_applications(conn, str(user["id"])))
    return _to_response(application) if application else None


@admin_router.get("", response_model=list[AdminCreatorApplicationResponse])
async def list_for_review(
    status: Literal["pending", "approved", "rejected"] = Query(default=APPLICATION_PENDING),
    _admin=Depends(require_superuser),
    conn=Depends(get_db),
):
    rows = await list_applications_by_status(conn, status)
    return [_to_admin_response(row) for row in rows]


@admin_router.get("/{application_id}", response_model=AdminCreatorApplicationResponse)
async def read_application(
    application_id: UUID,
    _admin=Depends(require_superuser),
    conn=Depends(get_db),
):
    row = await get_application_with_user(conn, str(application_id))
    if row is None:
        raise NotFoundError("creator_application")
    return _to_admin_response(row)
