from typing import Any, Optional
from uuid import UUID

import asyncpg
from fastapi import Depends, Header

from .auth import decode_access_token, extract_bearer_token, internal_token_ok
from .db import fetchrow_named, get_db
from .errors import BillingError


ACCOUNT_USER = "USER"
ACCOUNT_CREATOR = "CREATOR"
ACCOUNT_SUPERUSER = "SUPERUSER"


def is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


async def fetch_user(conn: asyncpg.Connection, user_id: str) -> Optional[dict[str, Any]]:
    if not is_uuid(user_id):
        return None
    row = await fetchrow_named(
        conn,
        "users.by_id",
        "SELECT id, username, name, account_type FROM users WHERE id = $1::uuid",
        str(user_id),
    )
    return dict(row) if row else None


def _unauthorized(reason: str) -> BillingError:
    return BillingError(
        code="UNAUTHORIZED",
        message="Authentication required",
        status_code=401,
        details={"reason": reason},
    )


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    conn=Depends(get_db),
) -> dict[str, Any]:
    token = extract_bearer_token(authorization)
    if not token:
        raise _unauthorized("missing_token")

    claims = decode_access_token(token)
    if not claims or not claims.get("sub"):
        raise _unauthorized("invalid_token")

    user = await fetch_user(conn, str(claims["sub"]))
    if not user:
        raise _unauthorized("unknown_user")
    return user


async def require_superuser(user=Depends(get_current_user)) -> dict[str, Any]:
    if user.get("account_type") != ACCOUNT_SUPERUSER:
        raise BillingError(code="FORBIDDEN", message="Access denied", status_code=403)
    return user


async def require_internal_caller(authorization: Optional[str] = Header(default=None)) -> None:
    if not internal_token_ok(authorization):
        raise BillingError(
            code="PAYMENT_CALLER_INVALID",
            message="Invalid internal credentials",
            status_code=401,
        )
