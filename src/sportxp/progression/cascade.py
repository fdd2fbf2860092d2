"""Reward cascades run when an activity is created, completed or joined.

Completed: fact → XP → streak → badges → challenges.
Created: XP → badges → fact → challenges.

Stages commit independently. A failing stage is logged and rolled back
and the next one still runs, except the XP stage: without XP the level and
rank would be wrong, so the rest of the cascade is skipped. Nothing is
raised to the caller; the triggering action always succeeds.

The XP idempotency key doubles as the replay guard: an activity whose XP
was already granted stops after the XP stage.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.db.models import UserBadge
from sportxp.progression import activity_facts
from sportxp.progression.badge_engine import BadgeEngine
from sportxp.progression.challenge_service import (
    ACTION_COMPLETE_ACTIVITY,
    ACTION_CREATE_ACTIVITY,
    ACTION_NEW_CONNECTION,
    activate_challenges_for_user,
    get_user_active_challenges,
    update_challenge_progress,
)
from sportxp.progression.criteria import TRIGGER_ACTIVITY_COMPLETE, TRIGGER_ACTIVITY_CREATED
from sportxp.progression.leaderboard_service import get_user_leaderboard_position
from sportxp.progression.level_table import get_level_info
from sportxp.progression.notifications import NotificationKind, emit_notification
from sportxp.progression.streak_service import get_streak, update_streak
from sportxp.progression.time_utils import ensure_utc, utcnow
from sportxp.progression.xp_service import XP_REWARDS, add_xp, calculate_activity_xp

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DURATION_MINUTES = 30


class ActivityContext(BaseModel):
    """The activity fields the progression engine reads."""

    model_config = ConfigDict(extra="ignore")

    activity_id: str | None = None
    sport_type: str = "Other"
    name: str | None = None
    date: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    duration_minutes: int = Field(default=DEFAULT_DURATION_MINUTES, ge=0)
    distance_km: float | None = Field(default=None, ge=0)
    is_host: bool = False
    participants_count: int | None = None

    def occurred_at(self, now: datetime) -> datetime:
        return ensure_utc(self.completed_at or self.date or now)

    def as_context(self, **extra: Any) -> dict[str, Any]:
        return {"activity": self.model_dump(), **extra}


async def _stage(
    db: AsyncSession,
    stage: str,
    user_id: int,
    step: Callable[[], Awaitable[T]],
) -> tuple[bool, T | None]:
    try:
        return True, await step()
    except Exception:
        logger.exception("Progression stage %s failed for user %s", stage, user_id)
        await db.rollback()
        return False, None


def _summary() -> dict[str, Any]:
    return {
        "xp": None,
        "streak": None,
        "badges": [],
        "challenges_activated": 0,
        "challenges_completed": [],
        "failed_stages": [],
    }


async def on_activity_completed(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    activity: ActivityContext,
) -> dict[str, Any]:
    """Run the completion cascade for one participant of an activity."""
    now = utcnow()
    occurred = activity.occurred_at(now)
    xp_amount = calculate_activity_xp(activity.sport_type, activity.duration_minutes, activity.distance_km)
    summary = _summary()

    ok, _ = await _stage(
        db, "activity_fact", user_id,
        lambda: activity_facts.record_activity_fact(
            db,
            user_id,
            activity_facts.KIND_COMPLETED,
            activity.sport_type,
            occurred,
            activity_id=activity.activity_id,
            activity_name=activity.name,
            duration_minutes=activity.duration_minutes,
            distance_km=activity.distance_km,
            is_host=activity.is_host,
            participants_count=activity.participants_count,
            xp_earned=xp_amount,
        ),
    )
    if not ok:
        summary["failed_stages"].append("activity_fact")

    ok, xp_result = await _stage(
        db, "xp", user_id,
        lambda: add_xp(
            db,
            redis,
            user_id,
            xp_amount,
            "complete_activity",
            source_id=activity.activity_id,
            description=f"Completed {activity.name or activity.sport_type}",
            idempotency_key=f"activity:{activity.activity_id}:{user_id}" if activity.activity_id else None,
        ),
    )
    if not ok:
        summary["failed_stages"].append("xp")
        return summary
    if xp_result is None:
        logger.info("Activity %s already processed for user %s", activity.activity_id, user_id)
        return summary
    summary["xp"] = xp_result

    try:
        await emit_notification(
            db, redis, user_id, NotificationKind.XP_EARNED,
            f"+{xp_amount} XP",
            f"Activity completed: {activity.name or activity.sport_type}",
            {"amount": xp_amount, "activity_id": activity.activity_id},
        )
    except Exception:
        await db.rollback()
        logger.warning("Failed to emit xp_earned for user %s", user_id, exc_info=True)

    ok, summary["streak"] = await _stage(
        db, "streak", user_id, lambda: update_streak(db, redis, user_id, occurred)
    )
    if not ok:
        summary["failed_stages"].append("streak")

    engine = BadgeEngine(db, redis)
    _, badges = await _stage(
        db, "badges", user_id,
        lambda: engine.check_and_award_badges(user_id, TRIGGER_ACTIVITY_COMPLETE, activity.as_context()),
    )
    summary["badges"] = badges or []

    await _run_challenge_stages(db, redis, user_id, ACTION_COMPLETE_ACTIVITY, activity, now, summary)
    return summary


async def on_activity_created(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    activity: ActivityContext,
) -> dict[str, Any]:
    """Run the creation cascade for the host of a new activity."""
    now = utcnow()
    summary = _summary()

    ok, xp_result = await _stage(
        db, "xp", user_id,
        lambda: add_xp(
            db,
            redis,
            user_id,
            int(XP_REWARDS["HOST_EVENT"]),
            "host_event",
            source_id=activity.activity_id,
            description=f"Created {activity.name or activity.sport_type}",
            idempotency_key=f"host:{activity.activity_id}:{user_id}" if activity.activity_id else None,
        ),
    )
    if not ok:
        summary["failed_stages"].append("xp")
        return summary
    if xp_result is None:
        logger.info("Activity %s already processed for user %s", activity.activity_id, user_id)
        return summary
    summary["xp"] = xp_result

    # Badges run before the created fact is stored; the context makes the
    # creation count include this activity.
    engine = BadgeEngine(db, redis)
    _, badges = await _stage(
        db, "badges", user_id,
        lambda: engine.check_and_award_badges(
            user_id, TRIGGER_ACTIVITY_CREATED, activity.as_context(action=ACTION_CREATE_ACTIVITY)
        ),
    )
    summary["badges"] = badges or []

    ok, _ = await _stage(
        db, "activity_fact", user_id,
        lambda: activity_facts.record_activity_fact(
            db,
            user_id,
            activity_facts.KIND_CREATED,
            activity.sport_type,
            ensure_utc(activity.created_at or now),
            activity_id=activity.activity_id,
            activity_name=activity.name,
            duration_minutes=activity.duration_minutes,
            distance_km=activity.distance_km,
            is_host=True,
            participants_count=activity.participants_count,
        ),
    )
    if not ok:
        summary["failed_stages"].append("activity_fact")

    await _run_challenge_stages(db, redis, user_id, ACTION_CREATE_ACTIVITY, activity, now, summary)
    return summary


async def _run_challenge_stages(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    action_type: str,
    activity: ActivityContext,
    now: datetime,
    summary: dict[str, Any],
) -> None:
    ok, activated = await _stage(
        db, "challenge_activation", user_id, lambda: activate_challenges_for_user(db, user_id, now)
    )
    if not ok:
        summary["failed_stages"].append("challenge_activation")
    summary["challenges_activated"] = activated or 0

    ok, completed = await _stage(
        db, "challenges", user_id,
        lambda: update_challenge_progress(db, redis, user_id, action_type, activity.as_context(), now),
    )
    if not ok:
        summary["failed_stages"].append("challenges")
    summary["challenges_completed"] = completed or []


async def on_activity_joined(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    activity_id: str | None = None,
) -> dict | None:
    """Join XP. Failures are logged; joining itself never fails because of them."""
    _, result = await _stage(
        db, "xp", user_id,
        lambda: add_xp(
            db,
            redis,
            user_id,
            int(XP_REWARDS["JOIN_EVENT"]),
            "join_event",
            source_id=activity_id,
            idempotency_key=f"join:{activity_id}:{user_id}" if activity_id else None,
        ),
    )
    return result


async def on_new_connection(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    connection_id: str | None = None,
) -> dict[str, Any]:
    summary = _summary()
    ok, summary["xp"] = await _stage(
        db, "xp", user_id,
        lambda: add_xp(
            db,
            redis,
            user_id,
            int(XP_REWARDS["NEW_CONNECTION"]),
            "new_connection",
            source_id=connection_id,
            idempotency_key=f"connection:{connection_id}:{user_id}" if connection_id else None,
        ),
    )
    if not ok:
        summary["failed_stages"].append("xp")
        return summary

    ok, completed = await _stage(
        db, "challenges", user_id,
        lambda: update_challenge_progress(db, redis, user_id, ACTION_NEW_CONNECTION, {}),
    )
    if not ok:
        summary["failed_stages"].append("challenges")
    summary["challenges_completed"] = completed or []
    return summary


async def initialize_user_progression(db: AsyncSession, user_id: int) -> int:
    """Hook for newly registered users: give them the currently running challenges."""
    return await activate_challenges_for_user(db, user_id)


async def get_progression_summary(db: AsyncSession, user_id: int) -> dict[str, Any]:
    """Level, streak, badge count, leaderboard position and active challenges."""
    level = await get_level_info(db, user_id)
    streak = await get_streak(db, user_id)
    badges_earned = await db.scalar(
        select(func.count(UserBadge.id)).where(UserBadge.user_id == user_id)
    )
    position = await get_user_leaderboard_position(db, user_id)
    challenges = await get_user_active_challenges(db, user_id)

    return {
        "level": level,
        "streak": streak or {"current_streak": 0, "best_streak": 0, "last_activity_day": None},
        "badges_earned": badges_earned or 0,
        "leaderboard": position,
        "active_challenges": len(challenges),
    }
