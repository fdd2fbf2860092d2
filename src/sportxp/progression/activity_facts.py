"""Append-only activity facts and the aggregate queries criteria run on."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, and_, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from sportxp.db.models import ActivityFact
from sportxp.progression.time_utils import utcnow

KIND_CREATED = "created"
KIND_COMPLETED = "completed"


def _normalize_type(activity_type: str | None) -> str | None:
    if activity_type is None or activity_type.lower() == "any":
        return None
    return activity_type


def _completed_filter(
    stmt: Select,
    user_id: int,
    activity_type: str | None,
    since: datetime | None,
    until: datetime | None,
) -> Select:
    stmt = stmt.where(ActivityFact.user_id == user_id, ActivityFact.kind == KIND_COMPLETED)
    activity_type = _normalize_type(activity_type)
    if activity_type is not None:
        stmt = stmt.where(ActivityFact.activity_type == activity_type)
    if since is not None:
        stmt = stmt.where(ActivityFact.occurred_at >= since)
    if until is not None:
        stmt = stmt.where(ActivityFact.occurred_at <= until)
    return stmt


async def record_activity_fact(
    db: AsyncSession,
    user_id: int,
    kind: str,
    activity_type: str,
    occurred_at: datetime,
    *,
    activity_id: str | None = None,
    activity_name: str | None = None,
    duration_minutes: int = 0,
    distance_km: float | None = None,
    is_host: bool = False,
    participants_count: int | None = None,
    xp_earned: int = 0,
) -> ActivityFact:
    """Append a fact. With an activity_id, a repeat of the same (user, activity, kind) is a no-op."""
    if activity_id is not None:
        result = await db.execute(
            select(ActivityFact).where(
                ActivityFact.user_id == user_id,
                ActivityFact.activity_id == activity_id,
                ActivityFact.kind == kind,
            )
        )
        existing = result.scalars().first()
        if existing is not None:
            return existing

    fact = ActivityFact(
        user_id=user_id,
        activity_id=activity_id,
        kind=kind,
        activity_type=activity_type,
        activity_name=activity_name,
        occurred_at=occurred_at,
        duration_minutes=duration_minutes,
        distance_km=distance_km,
        is_host=is_host,
        participants_count=participants_count,
        xp_earned=xp_earned,
        created_at=utcnow(),
    )
    db.add(fact)
    await db.commit()
    return fact


async def count_completed(
    db: AsyncSession,
    user_id: int,
    activity_type: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> int:
    stmt = _completed_filter(select(func.count(ActivityFact.id)), user_id, activity_type, since, until)
    return int(await db.scalar(stmt) or 0)


async def sum_distance(
    db: AsyncSession,
    user_id: int,
    activity_type: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> float:
    stmt = _completed_filter(
        select(func.coalesce(func.sum(ActivityFact.distance_km), 0.0)), user_id, activity_type, since, until
    )
    return float(await db.scalar(stmt) or 0.0)


async def sum_duration(
    db: AsyncSession,
    user_id: int,
    activity_type: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> int:
    stmt = _completed_filter(
        select(func.coalesce(func.sum(ActivityFact.duration_minutes), 0)), user_id, activity_type, since, until
    )
    return int(await db.scalar(stmt) or 0)


async def count_created_activities(db: AsyncSession, user_id: int) -> int:
    """Hosted activities that were completed plus created ones not completed yet.

    A created fact without an activity_id cannot be paired with its completion,
    so it is never pending; it counts once the host completes the activity.
    """
    hosted_completed = await db.scalar(
        select(func.count(ActivityFact.id)).where(
            ActivityFact.user_id == user_id,
            ActivityFact.kind == KIND_COMPLETED,
            ActivityFact.is_host.is_(True),
        )
    )

    completed = aliased(ActivityFact)
    pending_created = await db.scalar(
        select(func.count(ActivityFact.id)).where(
            ActivityFact.user_id == user_id,
            ActivityFact.kind == KIND_CREATED,
            ActivityFact.activity_id.is_not(None),
            ~exists().where(
                and_(
                    completed.user_id == ActivityFact.user_id,
                    completed.kind == KIND_COMPLETED,
                    completed.activity_id.is_not(None),
                    completed.activity_id == ActivityFact.activity_id,
                )
            ),
        )
    )
    return int(hosted_completed or 0) + int(pending_created or 0)
