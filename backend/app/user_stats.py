from typing import Any, Optional
from uuid import UUID

import asyncpg
from fastapi import APIRouter, Depends

from .db import execute_named, fetchrow_named, get_db
from .deps import get_current_user
from .schemas import UserStatsResponse


router = APIRouter(prefix="/v1/users", tags=["Stats"])


async def apply_stats_delta(
    conn: asyncpg.Connection,
    user_id: str,
    *,
    subscribers_count: int = 0,
    posts_count: int = 0,
    total_likes: int = 0,
) -> None:
    """Add deltas to a user's counters in one statement.

    The increment happens in the database, so concurrent writers never lose
    updates. Counters are clamped at zero; a missing row is created.
    """
    if not (subscribers_count or posts_count or total_likes):
        return

    await execute_named(
        conn,
        "user_stats.apply_delta",
        """
        INSERT INTO user_stats (user_id, subscribers_count, posts_count, total_likes, last_updated)
        VALUES ($1::uuid, GREATEST(0, $2), GREATEST(0, $3), GREATEST(0, $4), NOW())
        ON CONFLICT (user_id)
        DO UPDATE SET
            subscribers_count = GREATEST(0, user_stats.subscribers_count + $2),
            posts_count = GREATEST(0, user_stats.posts_count + $3),
            total_likes = GREATEST(0, user_stats.total_likes + $4),
            last_updated = NOW()
        """,
        user_id,
        int(subscribers_count),
        int(posts_count),
        int(total_likes),
    )


async def get_user_stats(conn: asyncpg.Connection, user_id: str) -> Optional[dict[str, Any]]:
    row = await fetchrow_named(
        conn,
        "user_stats.by_user",
        """
        SELECT user_id, subscribers_count, posts_count, total_likes, last_updated
        FROM user_stats
        WHERE user_id = $1::uuid
        """,
        user_id,
    )
    return dict(row) if row else None


@router.get("/{user_id}/stats", response_model=UserStatsResponse)
async def read_user_stats(
    user_id: UUID,
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    stats = await get_user_stats(conn, str(user_id)) or {}
    return UserStatsResponse(
        userId=str(user_id),
        subscribersCount=int(stats.get("subscribers_count") or 0),
        postsCount=int(stats.get("posts_count") or 0),
        totalLikes=int(stats.get("total_likes") or 0),
        lastUpdated=stats.get("last_updated"),
    )
