"""XP ledger: the only writer of users.total_xp / users.current_level.

Every grant is an idempotent command when the caller passes an
idempotency_key; the unique key on xp_ledger backs that up at the data layer.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.db.models import User, XPLedger
from sportxp.exceptions import UserNotFoundError
from sportxp.progression.leaderboard_service import update_user_rank
from sportxp.progression.level_table import compute_level, level_for, round_half_up
from sportxp.progression.notifications import NotificationKind, emit_notification
from sportxp.progression.time_utils import utcnow

logger = logging.getLogger(__name__)

XP_REWARDS: dict[str, float] = {
    "BASE_ACTIVITY": 10,
    "DURATION_PER_MINUTE": 0.5,
    "DISTANCE_PER_KM": 2,
    "HOST_EVENT": 100,
    "JOIN_EVENT": 30,
    "NEW_CONNECTION": 25,
    "DAILY_LOGIN": 10,
    "COMPLETE_CHALLENGE": 100,
    "EARN_BADGE": 75,
    "STREAK_BONUS": 5,
}

# Keys are lower-cased sport names, English and French
ACTIVITY_TYPE_MULTIPLIER: dict[str, float] = {
    "swimming": 1.5,
    "natation": 1.5,
    "running": 1.2,
    "course à pied": 1.2,
    "football": 1.2,
    "basketball": 1.2,
    "cycling": 1.0,
    "vélo": 1.0,
    "yoga": 1.0,
    "hiking": 1.0,
    "randonnée": 1.0,
}
DEFAULT_ACTIVITY_MULTIPLIER = 1.0

BADGE_XP_MULTIPLIER: dict[str, float] = {
    "common": 1.0,
    "uncommon": 1.5,
    "rare": 2.0,
    "epic": 3.0,
    "legendary": 5.0,
}


def activity_multiplier(activity_type: str | None) -> float:
    if not activity_type:
        return DEFAULT_ACTIVITY_MULTIPLIER
    return ACTIVITY_TYPE_MULTIPLIER.get(activity_type.strip().lower(), DEFAULT_ACTIVITY_MULTIPLIER)


def calculate_activity_xp(
    activity_type: str | None,
    duration_minutes: float,
    distance_km: float | None = None,
) -> int:
    """(base + duration bonus + distance bonus) x sport multiplier, rounded half up."""
    base = XP_REWARDS["BASE_ACTIVITY"]
    duration_bonus = max(duration_minutes, 0) * XP_REWARDS["DURATION_PER_MINUTE"]
    distance_bonus = distance_km * XP_REWARDS["DISTANCE_PER_KM"] if distance_km else 0
    return round_half_up((base + duration_bonus + distance_bonus) * activity_multiplier(activity_type))


def get_badge_xp_reward(rarity: str, base_xp: int | None = None) -> int:
    """round(base_xp * rarity multiplier); unknown rarity counts as common."""
    if base_xp is None:
        base_xp = int(XP_REWARDS["EARN_BADGE"])
    return round_half_up(base_xp * BADGE_XP_MULTIPLIER.get(rarity, 1.0))


async def _idempotency_key_used(db: AsyncSession, key: str) -> bool:
    result = await db.execute(select(XPLedger.id).where(XPLedger.idempotency_key == key))
    return result.scalar_one_or_none() is not None


async def add_xp(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    source: str,
    *,
    source_id: str | None = None,
    description: str | None = None,
    idempotency_key: str | None = None,
) -> dict | None:
    """Add XP to a user, recompute the level and refresh the user's rank.

    Returns None when the idempotency key was already used.
    Raises UserNotFoundError for an unknown user; the caller decides whether
    that aborts anything.

    After committing the new total:
    1. Emit level_up notification if the level increased
    2. Refresh the user's leaderboard rank
    Neither step can undo the XP write; failures there are logged.
    """
    if idempotency_key is not None and await _idempotency_key_used(db, idempotency_key):
        logger.debug("XP grant %s already applied", idempotency_key)
        return None

    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise UserNotFoundError(user_id, operation="add_xp")

    now = utcnow()
    old_level = user.current_level
    user.total_xp += amount
    user.current_level = level_for(user.total_xp)

    db.add(
        XPLedger(
            user_id=user_id,
            amount=amount,
            source=source,
            source_id=source_id,
            description=description,
            idempotency_key=idempotency_key,
            created_at=now,
        )
    )

    try:
        await db.commit()
    except IntegrityError:
        # Lost the race on the idempotency key
        await db.rollback()
        logger.debug("XP grant %s applied concurrently", idempotency_key)
        return None

    total_xp = user.total_xp
    new_level = user.current_level
    logger.info(
        "Added %d XP to user %s from %s. Total: %d, Level: %d",
        amount, user_id, source, total_xp, new_level,
    )

    if new_level > old_level:
        try:
            await _emit_level_up(db, redis, user_id, old_level, new_level, total_xp)
        except Exception:
            await db.rollback()
            logger.warning("Failed to emit level_up for user %s", user_id, exc_info=True)

    try:
        await update_user_rank(db, user_id, redis)
    except Exception:
        await db.rollback()
        logger.warning("Failed to refresh leaderboard rank for user %s", user_id, exc_info=True)

    return {
        "user_id": user_id,
        "amount": amount,
        "total_xp": total_xp,
        "old_level": old_level,
        "level": new_level,
        "leveled_up": new_level > old_level,
    }


async def _emit_level_up(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    old_level: int,
    new_level: int,
    total_xp: int,
) -> None:
    info = compute_level(total_xp)
    await emit_notification(
        db,
        redis,
        user_id,
        NotificationKind.LEVEL_UP,
        "Level Up!",
        f"You reached level {new_level}",
        {
            "old_level": old_level,
            "new_level": new_level,
            "total_xp": total_xp,
            "xp_for_next_level": info["xp_for_next_level"],
        },
    )


async def get_xp_history(db: AsyncSession, user_id: int, limit: int = 50) -> list[dict]:
    """Most recent ledger entries for a user."""
    result = await db.execute(
        select(XPLedger)
        .where(XPLedger.user_id == user_id)
        .order_by(XPLedger.id.desc())
        .limit(limit)
    )
    return [
        {
            "amount": row.amount,
            "source": row.source,
            "source_id": row.source_id,
            "description": row.description,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.scalars()
    ]
