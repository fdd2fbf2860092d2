"""Streak tracking: consecutive calendar days with at least one activity.

State is (last_activity_day, current_streak). Times of day are dropped
before comparing, so 23:59 and 00:01 the next day are one day apart.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.config import get_settings
from sportxp.db.models import User, UserStreak
from sportxp.progression.badge_engine import BadgeEngine
from sportxp.progression.criteria import TRIGGER_STREAK
from sportxp.progression.notifications import NotificationKind, emit_notification
from sportxp.progression.time_utils import normalize_to_day, utcnow
from sportxp.progression.xp_service import add_xp

logger = logging.getLogger(__name__)

EVENT_STARTED = "started"
EVENT_SAME_DAY = "same_day"
EVENT_INCREMENTED = "incremented"
EVENT_RESET = "reset"
EVENT_BACKDATED = "backdated"


def days_between(earlier: date, later: date) -> int:
    return (later - earlier).days


def streak_bonus_xp(current_streak: int) -> int:
    """Bonus for reaching day n of a streak: 5 * n, nothing on day 1."""
    if current_streak <= 1:
        return 0
    return get_settings().streak_bonus_per_day * current_streak


def _result(streak: UserStreak | None, event: str, changed: bool, bonus_xp: int = 0) -> dict:
    return {
        "current_streak": streak.current_streak if streak else 0,
        "best_streak": streak.best_streak if streak else 0,
        "last_activity_day": streak.last_activity_day.isoformat() if streak else None,
        "event": event,
        "changed": changed,
        "bonus_xp": bonus_xp,
    }


async def _mirror_to_user(db: AsyncSession, user_id: int, current: int, best: int) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(current_streak=current, best_streak=best)
        .execution_options(synchronize_session=False)
    )


async def get_streak(db: AsyncSession, user_id: int) -> dict | None:
    """Current streak state, or None before the first activity."""
    result = await db.execute(select(UserStreak).where(UserStreak.user_id == user_id))
    streak = result.scalar_one_or_none()
    if streak is None:
        return None
    return {
        "user_id": user_id,
        "current_streak": streak.current_streak,
        "best_streak": streak.best_streak,
        "last_activity_day": streak.last_activity_day.isoformat(),
    }


async def update_streak(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    activity_date: date | datetime,
) -> dict:
    """Advance the streak state machine for one activity.

    - no record: create with 1/1
    - same day: no-op
    - next day: +1, best = max, bonus XP 5*n for n > 1, streak badge re-check
    - gap of 2+ days: reset to 1, no bonus
    - earlier than the last recorded day: no-op
    """
    activity_day = normalize_to_day(activity_date)
    now = utcnow()

    result = await db.execute(
        select(UserStreak)
        .where(UserStreak.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    streak = result.scalar_one_or_none()

    if streak is None:
        streak = UserStreak(
            user_id=user_id,
            last_activity_day=activity_day,
            current_streak=1,
            best_streak=1,
            updated_at=now,
        )
        db.add(streak)
        try:
            await db.flush()
        except IntegrityError:
            # Another request created the row first; replay against it
            await db.rollback()
            return await update_streak(db, redis, user_id, activity_day)
        await _mirror_to_user(db, user_id, 1, 1)
        await db.commit()
        logger.info("Initialized streak for user %s: Day 1", user_id)
        return _result(streak, EVENT_STARTED, changed=True)

    diff = days_between(streak.last_activity_day, activity_day)

    if diff == 0:
        logger.debug("Same day activity for user %s, streak unchanged", user_id)
        return _result(streak, EVENT_SAME_DAY, changed=False)

    if diff < 0:
        logger.debug("Backdated activity %s for user %s ignored", activity_day, user_id)
        return _result(streak, EVENT_BACKDATED, changed=False)

    if diff > 1:
        streak.current_streak = 1
        streak.last_activity_day = activity_day
        streak.updated_at = now
        await _mirror_to_user(db, user_id, 1, streak.best_streak)
        await db.commit()
        logger.info("User %s streak broken after %d days, reset to 1", user_id, diff)
        return _result(streak, EVENT_RESET, changed=True)

    # Consecutive day
    streak.current_streak += 1
    streak.best_streak = max(streak.best_streak, streak.current_streak)
    streak.last_activity_day = activity_day
    streak.updated_at = now
    current, best = streak.current_streak, streak.best_streak
    await _mirror_to_user(db, user_id, current, best)
    await db.commit()
    snapshot = _result(streak, EVENT_INCREMENTED, changed=True)

    bonus = streak_bonus_xp(current)
    if bonus:
        await add_xp(
            db,
            redis,
            user_id,
            bonus,
            "streak_bonus",
            source_id=activity_day.isoformat(),
            description=f"{current}-day streak bonus",
            idempotency_key=f"streak:{user_id}:{activity_day.isoformat()}",
        )
        snapshot["bonus_xp"] = bonus
        logger.info("User %s streak: %d days, awarded %d XP bonus", user_id, current, bonus)

        try:
            await emit_notification(
                db,
                redis,
                user_id,
                NotificationKind.STREAK_UPDATED,
                f"{current}-day streak!",
                f"+{bonus} XP streak bonus",
                {"current_streak": current, "best_streak": best, "bonus_xp": bonus},
            )
        except Exception:
            await db.rollback()
            logger.warning("Failed to emit streak_updated for user %s", user_id, exc_info=True)

    await BadgeEngine(db, redis).check_and_award_badges(
        user_id, TRIGGER_STREAK, {"current_streak": current}
    )
    return snapshot


async def expire_streaks(db: AsyncSession, today: date | None = None) -> int:
    """Daily sweep: zero current streaks with no activity today or yesterday.

    best_streak is never touched. Returns the number of streaks zeroed.
    """
    if today is None:
        today = utcnow().date()
    cutoff = today - timedelta(days=1)

    result = await db.execute(
        select(UserStreak.user_id).where(
            UserStreak.current_streak > 0,
            UserStreak.last_activity_day < cutoff,
        )
    )
    user_ids = list(result.scalars())
    if not user_ids:
        return 0

    now = utcnow()
    await db.execute(
        update(UserStreak)
        .where(UserStreak.user_id.in_(user_ids), UserStreak.current_streak > 0)
        .values(current_streak=0, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(User)
        .where(User.id.in_(user_ids))
        .values(current_streak=0)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info("Expired %d streaks (no activity since before %s)", len(user_ids), cutoff)
    return len(user_ids)
