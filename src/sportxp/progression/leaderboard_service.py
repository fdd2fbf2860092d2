"""Leaderboard cache: rank projection of users.total_xp.

Incremental refresh: every XP write calls update_user_rank(), which counts
users with strictly more XP. That is a full scan per XP change; fine at
the user counts this service targets, and the scalability ceiling to watch.
The Redis sorted set mirror (leaderboard_redis_index) is the O(log N)
path if the scan ever becomes the bottleneck.

Ties: equal XP gives equal rank on the incremental path, while the full
rebuild hands out distinct ranks in (total_xp desc, user id asc) order.
The hourly rebuild is the authority and corrects any drift.
"""

from __future__ import annotations

import logging
import math

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.config import get_settings
from sportxp.db.models import LeaderboardEntry, User
from sportxp.progression.level_table import level_for
from sportxp.progression.time_utils import utcnow

logger = logging.getLogger(__name__)

LEADERBOARD_KEY = "leaderboard:xp"

MEDALS: dict[int, str] = {1: "🥇", 2: "🥈", 3: "🥉"}


def medal_for(rank: int) -> str | None:
    return MEDALS.get(rank)


def _entry_to_dict(entry: LeaderboardEntry) -> dict:
    return {
        "rank": entry.rank,
        "user_id": entry.user_id,
        "username": entry.username,
        "total_xp": entry.total_xp,
        "level": level_for(entry.total_xp),
        "medal": medal_for(entry.rank),
    }


async def _mirror_score(redis: object | None, user_id: int, total_xp: int) -> None:
    if redis is None or not get_settings().leaderboard_redis_index:
        return
    try:
        await redis.zadd(LEADERBOARD_KEY, {str(user_id): total_xp})  # type: ignore[union-attr]
    except Exception:
        logger.warning("Failed to mirror leaderboard score for user %s", user_id, exc_info=True)


async def update_user_rank(db: AsyncSession, user_id: int, redis: object | None = None) -> dict | None:
    """Recompute one user's rank and upsert their cache entry.

    rank = (count of users with strictly greater total_xp) + 1
    """
    user = await db.get(User, user_id)
    if user is None:
        logger.warning("update_user_rank: user %s not found", user_id)
        return None

    greater = await db.scalar(
        select(func.count()).select_from(User).where(User.total_xp > user.total_xp)
    )
    rank = (greater or 0) + 1
    now = utcnow()

    result = await db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user_id))
    entry = result.scalar_one_or_none()
    if entry is None:
        entry = LeaderboardEntry(
            user_id=user_id,
            username=user.username,
            total_xp=user.total_xp,
            rank=rank,
            updated_at=now,
        )
        db.add(entry)
        try:
            await db.flush()
        except IntegrityError:
            # Concurrent first insert for this user; fall back to updating theirs
            await db.rollback()
            result = await db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user_id))
            entry = result.scalar_one()
            user = await db.get(User, user_id)
            if user is None:
                return None

    entry.username = user.username
    entry.total_xp = user.total_xp
    entry.rank = rank
    entry.updated_at = now
    await db.commit()

    await _mirror_score(redis, user_id, user.total_xp)
    return _entry_to_dict(entry)


async def get_leaderboard(db: AsyncSession, page: int = 1, limit: int | None = None) -> dict:
    """Paginated leaderboard sorted by rank, medals on ranks 1-3."""
    settings = get_settings()
    if limit is None:
        limit = settings.leaderboard_page_size
    limit = max(1, min(limit, settings.leaderboard_max_page_size))
    page = max(1, page)
    offset = (page - 1) * limit

    total = await db.scalar(select(func.count()).select_from(LeaderboardEntry)) or 0

    result = await db.execute(
        select(LeaderboardEntry)
        .order_by(LeaderboardEntry.rank.asc(), LeaderboardEntry.user_id.asc())
        .offset(offset)
        .limit(limit)
    )
    entries = [_entry_to_dict(e) for e in result.scalars()]

    return {
        "entries": entries,
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


async def get_user_leaderboard_position(
    db: AsyncSession, user_id: int, redis: object | None = None
) -> dict | None:
    """Cached position; computed on demand on a cold cache."""
    result = await db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user_id))
    entry = result.scalar_one_or_none()
    if entry is not None:
        return _entry_to_dict(entry)
    return await update_user_rank(db, user_id, redis)


async def rebuild_leaderboard_cache(db: AsyncSession, redis: object | None = None) -> int:
    """Full rebuild: clear the cache and reinsert with rank = index + 1."""
    result = await db.execute(
        select(User.id, User.username, User.total_xp).order_by(User.total_xp.desc(), User.id.asc())
    )
    users = result.all()
    now = utcnow()

    rows = [
        {
            "user_id": row.id,
            "username": row.username,
            "total_xp": row.total_xp,
            "rank": index + 1,
            "updated_at": now,
        }
        for index, row in enumerate(users)
    ]

    await db.execute(delete(LeaderboardEntry))
    if rows:
        await db.execute(insert(LeaderboardEntry), rows)
    await db.commit()

    if redis is not None and get_settings().leaderboard_redis_index:
        try:
            pipe = redis.pipeline()  # type: ignore[union-attr]
            pipe.delete(LEADERBOARD_KEY)
            for row in rows:
                pipe.zadd(LEADERBOARD_KEY, {str(row["user_id"]): row["total_xp"]})
            await pipe.execute()
        except Exception:
            logger.warning("Failed to rebuild leaderboard sorted set", exc_info=True)

    logger.info("Leaderboard rebuilt: %d entries", len(rows))
    return len(rows)


async def get_indexed_rank(redis: object, user_id: int) -> int | None:
    """1-based rank from the sorted-set mirror (None if the user is not indexed)."""
    rank = await redis.zrevrank(LEADERBOARD_KEY, str(user_id))  # type: ignore[union-attr]
    if rank is None:
        return None
    return int(rank) + 1
