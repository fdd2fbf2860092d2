"""Challenge tracker: per-user progress against time-boxed challenge definitions.

Period windows are evaluated against the wall clock at the time the action
is processed, not against the definition's own start/end dates:

- day: same calendar day as now
- week: on or after the most recent Sunday 00:00
- month: same calendar month and year as now
- weekend: the activity fell on a Saturday or Sunday

A failed window check means the action does not count at all.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from sportxp.config import get_settings
from sportxp.db.models import ChallengeDefinition, User, UserChallenge
from sportxp.exceptions import ChallengeNotFoundError, NotFoundError
from sportxp.progression.badge_engine import BadgeEngine
from sportxp.progression.criteria import PERIOD_METRICS, ChallengeCriteria, parse_challenge_criteria
from sportxp.progression.notifications import NotificationKind, emit_notification
from sportxp.progression.seed import RECURRING_CHALLENGES
from sportxp.progression.time_utils import (
    ensure_utc,
    get_day_boundaries,
    get_month_boundaries,
    get_most_recent_sunday,
    get_week_boundaries,
    get_week_iso,
    start_of_day,
    utcnow,
)
from sportxp.progression.xp_service import add_xp

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"

ACTION_COMPLETE_ACTIVITY = "complete_activity"
ACTION_CREATE_ACTIVITY = "create_activity"
ACTION_NEW_CONNECTION = "new_connection"

DEFAULT_PERIODS: dict[str, str] = {
    "daily": "day",
    "weekly": "week",
    "monthly": "month",
    "limited_time": "any",
}


def default_period_for(challenge_type: str | None) -> str:
    return DEFAULT_PERIODS.get(challenge_type or "", "any")


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return start_of_day(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def effective_activity_date(activity: dict[str, Any]) -> datetime | None:
    """Completion timestamp first, then the scheduled date."""
    for key in ("completed_at", "date", "time", "created_at"):
        value = _coerce_datetime(activity.get(key))
        if value is not None:
            return value
    return None


def in_period(period: str | None, when: datetime, now: datetime) -> bool:
    """Whether ``when`` falls in the ``period`` window relative to ``now``."""
    when = ensure_utc(when)
    now = ensure_utc(now)

    if period is None or period == "any":
        return True
    if period == "day":
        return when.date() == now.date()
    if period == "week":
        return when >= start_of_day(get_most_recent_sunday(now))
    if period == "month":
        return (when.year, when.month) == (now.year, now.month)
    if period == "weekend":
        return when.weekday() in (5, 6)
    return False


def calculate_progress_increment(
    action_type: str,
    criteria: ChallengeCriteria | None,
    context: dict[str, Any] | None = None,
    *,
    challenge_type: str | None = None,
    now: datetime | None = None,
    progress_metadata: dict[str, Any] | None = None,
) -> float:
    """How much one action advances a challenge. 0 means it does not count."""
    if criteria is None or not criteria.is_known:
        return 0

    if criteria.type == "social_connections":
        return 1 if action_type == ACTION_NEW_CONNECTION else 0

    expected_action = ACTION_CREATE_ACTIVITY if criteria.action == "create" else ACTION_COMPLETE_ACTIVITY
    if action_type != expected_action or not context or not context.get("activity"):
        return 0

    activity: dict[str, Any] = context["activity"]
    sport = activity.get("sport_type") or activity.get("activity_type")

    allowed = criteria.allowed_activity_types()
    if allowed is not None and sport not in allowed:
        return 0

    metric = criteria.type
    if metric in PERIOD_METRICS:
        period = criteria.period or default_period_for(challenge_type)
    else:
        period = criteria.period if metric in ("sport_specific", "sport_variety") else None

    if period not in (None, "any"):
        now = now or utcnow()
        when = effective_activity_date(activity) or now
        if not in_period(period, when, now):
            return 0

    if metric in ("activities_in_period", "activity_count"):
        return 1
    if metric in ("distance_in_period", "distance_total"):
        return float(activity.get("distance_km") or 0)
    if metric in ("duration_in_period", "duration_total"):
        return float(activity.get("duration_minutes") or 0)
    if metric == "sport_specific":
        return 1 if criteria.sport_type and sport == criteria.sport_type else 0
    if metric == "sport_variety":
        if get_settings().sport_variety_distinct:
            counted = (progress_metadata or {}).get("sports", [])
            return 0 if sport in counted else 1
        return 1
    return 0


def does_action_count(
    action_type: str,
    criteria: ChallengeCriteria | None,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> bool:
    return calculate_progress_increment(action_type, criteria, context, **kwargs) > 0


# ---------------------------------------------------------------------------
# Progress & completion
# ---------------------------------------------------------------------------


async def update_challenge_progress(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    action_type: str,
    context: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> list[int]:
    """Apply one action to every active challenge of a user.

    Returns ids of the instances this call completed. A failure on one
    instance is logged and the others still get evaluated.
    """
    now = now or utcnow()
    result = await db.execute(
        select(UserChallenge.id)
        .where(UserChallenge.user_id == user_id, UserChallenge.status == STATUS_ACTIVE)
        .order_by(UserChallenge.id)
    )
    instance_ids = list(result.scalars())

    completed: list[int] = []
    for instance_id in instance_ids:
        try:
            if await _apply_to_instance(db, redis, instance_id, action_type, context, now):
                completed.append(instance_id)
        except NotFoundError as exc:
            # Instance deleted between the id query and the update
            logger.warning("%s (user %s)", exc.message, user_id)
            await db.rollback()
        except Exception:
            logger.exception("Challenge progress failed for instance %s (user %s)", instance_id, user_id)
            await db.rollback()
    return completed


async def _apply_to_instance(
    db: AsyncSession,
    redis: object | None,
    instance_id: int,
    action_type: str,
    context: dict[str, Any] | None,
    now: datetime,
) -> bool:
    instance = await db.get(UserChallenge, instance_id, populate_existing=True)
    if instance is None:
        raise ChallengeNotFoundError(instance_id)
    if instance.status != STATUS_ACTIVE:
        return False

    definition = instance.challenge
    criteria = parse_challenge_criteria(definition.unlock_criteria)
    if criteria is None or not criteria.is_known:
        logger.warning(
            "Unknown challenge criteria %s on challenge %s",
            (definition.unlock_criteria or {}).get("type"),
            definition.id,
        )
        return False

    increment = calculate_progress_increment(
        action_type,
        criteria,
        context,
        challenge_type=definition.challenge_type,
        now=now,
        progress_metadata=instance.progress_metadata,
    )
    if increment <= 0:
        return False

    values: dict[str, Any] = {"current_progress": UserChallenge.current_progress + increment}
    if criteria.type == "sport_variety" and context:
        sport = context["activity"].get("sport_type") or context["activity"].get("activity_type")
        sports = list((instance.progress_metadata or {}).get("sports", []))
        if sport not in sports:
            sports.append(sport)
        values["progress_metadata"] = {**(instance.progress_metadata or {}), "sports": sports}

    await db.execute(
        update(UserChallenge)
        .where(UserChallenge.id == instance_id, UserChallenge.status == STATUS_ACTIVE)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(instance, ["current_progress", "progress_metadata", "status"])

    if instance.status == STATUS_ACTIVE and instance.current_progress >= instance.target_count:
        return await complete_challenge(db, redis, instance, now)
    return False


async def complete_challenge(
    db: AsyncSession,
    redis: object | None,
    instance: UserChallenge,
    now: datetime | None = None,
) -> bool:
    """Move an instance active→completed and pay out its rewards.

    The status change is a conditional update, so only one caller wins and
    rewards are paid once. Returns False if the instance was not active.
    """
    now = now or utcnow()
    instance_id = instance.id
    user_id = instance.user_id
    definition = instance.challenge
    challenge_id = definition.id
    name = definition.name
    xp_reward = definition.xp_reward
    badge_reward_id = definition.badge_reward_id

    result = await db.execute(
        update(UserChallenge)
        .where(UserChallenge.id == instance_id, UserChallenge.status == STATUS_ACTIVE)
        .values(status=STATUS_COMPLETED, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        return False

    set_committed_value(instance, "status", STATUS_COMPLETED)
    set_committed_value(instance, "completed_at", now)

    if xp_reward > 0:
        await add_xp(
            db,
            redis,
            user_id,
            xp_reward,
            "complete_challenge",
            source_id=str(challenge_id),
            description=f'Completed challenge: "{name}"',
            idempotency_key=f"challenge:{instance_id}",
        )

    if badge_reward_id is not None:
        await BadgeEngine(db, redis).award_badge(user_id, badge_reward_id, {"challenge_id": challenge_id})

    try:
        await emit_notification(
            db,
            redis,
            user_id,
            NotificationKind.CHALLENGE_COMPLETED,
            f'Challenge Completed: "{name}"',
            f"+{xp_reward} XP",
            {"challenge_id": challenge_id, "instance_id": instance_id, "xp_reward": xp_reward},
        )
    except Exception:
        await db.rollback()
        logger.warning("Failed to emit challenge_completed for user %s", user_id, exc_info=True)

    logger.info('Challenge "%s" completed by user %s, awarded %d XP', name, user_id, xp_reward)
    return True


# ---------------------------------------------------------------------------
# Activation, reads, expiry
# ---------------------------------------------------------------------------


async def activate_challenges_for_user(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> int:
    """Create missing instances for every active definition whose window contains now.

    Safe to call repeatedly; the (user_id, challenge_id) unique constraint
    settles concurrent calls. Returns the number of instances created.
    """
    now = now or utcnow()
    result = await db.execute(
        select(ChallengeDefinition.id, ChallengeDefinition.target_count, ChallengeDefinition.end_date).where(
            ChallengeDefinition.is_active.is_(True),
            ChallengeDefinition.start_date <= now,
            ChallengeDefinition.end_date >= now,
        )
    )
    definitions = result.all()
    if not definitions:
        return 0

    existing_result = await db.execute(
        select(UserChallenge.challenge_id).where(UserChallenge.user_id == user_id)
    )
    existing = set(existing_result.scalars())

    created = 0
    for definition in definitions:
        if definition.id in existing:
            continue
        db.add(
            UserChallenge(
                user_id=user_id,
                challenge_id=definition.id,
                current_progress=0.0,
                target_count=definition.target_count,
                status=STATUS_ACTIVE,
                started_at=now,
                expires_at=definition.end_date,
                progress_metadata={},
            )
        )
        try:
            await db.commit()
            created += 1
        except IntegrityError:
            await db.rollback()

    if created:
        logger.info("Activated %d challenges for user %s", created, user_id)
    return created


async def get_user_active_challenges(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    now = now or utcnow()
    result = await db.execute(
        select(UserChallenge)
        .where(UserChallenge.user_id == user_id, UserChallenge.status == STATUS_ACTIVE)
        .order_by(UserChallenge.expires_at.asc(), UserChallenge.id.asc())
    )

    challenges: list[dict[str, Any]] = []
    for uc in result.scalars():
        definition = uc.challenge
        expires_at = ensure_utc(uc.expires_at)
        days_left = max(0, math.ceil((expires_at - now).total_seconds() / 86400))
        challenges.append(
            {
                "instance_id": uc.id,
                "challenge": {
                    "id": definition.id,
                    "name": definition.name,
                    "description": definition.description,
                    "challenge_type": definition.challenge_type,
                    "xp_reward": definition.xp_reward,
                    "badge_reward_id": definition.badge_reward_id,
                },
                "current_progress": uc.current_progress,
                "target": uc.target_count,
                "days_left": days_left,
                "expires_at": expires_at.isoformat(),
            }
        )
    return challenges


async def expire_challenges(db: AsyncSession, now: datetime | None = None) -> int:
    """Hourly sweep: active instances past expires_at become expired."""
    now = now or utcnow()
    result = await db.execute(
        update(UserChallenge)
        .where(UserChallenge.status == STATUS_ACTIVE, UserChallenge.expires_at < now)
        .values(status=STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    expired = result.rowcount or 0
    if expired:
        logger.info("Expired %d challenges", expired)
    return expired


# ---------------------------------------------------------------------------
# Recurring challenges
# ---------------------------------------------------------------------------


def period_label(challenge_type: str, now: datetime) -> str:
    if challenge_type == "daily":
        return now.date().isoformat()
    if challenge_type == "weekly":
        return get_week_iso(now)
    if challenge_type == "monthly":
        return now.strftime("%Y-%m")
    raise ValueError(f"Not a recurring challenge type: {challenge_type}")


def period_window(challenge_type: str, now: datetime) -> tuple[datetime, datetime]:
    if challenge_type == "daily":
        return get_day_boundaries(now)
    if challenge_type == "weekly":
        return get_week_boundaries(now)
    if challenge_type == "monthly":
        return get_month_boundaries(now)
    raise ValueError(f"Not a recurring challenge type: {challenge_type}")


async def _find_definition(db: AsyncSession, name: str, challenge_type: str) -> int | None:
    result = await db.execute(
        select(ChallengeDefinition.id).where(
            ChallengeDefinition.name == name,
            ChallengeDefinition.challenge_type == challenge_type,
        )
    )
    return result.scalar_one_or_none()


async def ensure_recurring_challenges(
    db: AsyncSession,
    challenge_type: str,
    now: datetime | None = None,
) -> list[int]:
    """Create this period's recurring definitions if absent. Keyed by (name, type)."""
    now = ensure_utc(now or utcnow())
    label = period_label(challenge_type, now)
    start, end = period_window(challenge_type, now)

    ids: list[int] = []
    for template in RECURRING_CHALLENGES[challenge_type]:
        name = f"{template['name']} ({label})"
        existing_id = await _find_definition(db, name, challenge_type)
        if existing_id is not None:
            ids.append(existing_id)
            continue

        definition = ChallengeDefinition(
            name=name,
            description=template["description"],
            challenge_type=challenge_type,
            start_date=start,
            end_date=end,
            target_count=template["target_count"],
            unlock_criteria=template["unlock_criteria"],
            xp_reward=template["xp_reward"],
            is_active=True,
            created_at=now,
        )
        db.add(definition)
        try:
            await db.commit()
            ids.append(definition.id)
        except IntegrityError:
            await db.rollback()
            existing_id = await _find_definition(db, name, challenge_type)
            if existing_id is not None:
                ids.append(existing_id)

    return ids


async def provision_recurring_challenges(
    db: AsyncSession,
    challenge_type: str,
    now: datetime | None = None,
) -> int:
    """Ensure this period's definitions exist, then activate them for every user.

    Returns the number of instances created.
    """
    now = ensure_utc(now or utcnow())
    await ensure_recurring_challenges(db, challenge_type, now)

    batch_size = get_settings().recurring_user_batch_size
    created = 0
    last_id = 0
    while True:
        result = await db.execute(
            select(User.id).where(User.id > last_id).order_by(User.id).limit(batch_size)
        )
        user_ids = list(result.scalars())
        if not user_ids:
            break
        for user_id in user_ids:
            created += await activate_challenges_for_user(db, user_id, now)
        last_id = user_ids[-1]

    logger.info("Provisioned %s challenges: %d instances created", challenge_type, created)
    return created
