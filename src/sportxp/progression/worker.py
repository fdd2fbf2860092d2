"""Progression arq worker: scheduled sweeps and recurring challenge provisioning.

Schedule (UTC):
- Challenge expiry: every hour
- Leaderboard rebuild: every hour
- Daily challenges: every day 00:00
- Weekly challenges: Monday 00:00 (definitions span the ISO week)
- Monthly challenges: 1st of the month 00:00
- Streak expiry: every day 00:05
- Read notification cleanup: every day 03:00
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.config import get_settings
from sportxp.database import close_db, get_session, init_db
from sportxp.logging_setup import setup_logging
from sportxp.progression.challenge_service import expire_challenges, provision_recurring_challenges
from sportxp.progression.leaderboard_service import rebuild_leaderboard_cache
from sportxp.progression.level_table import seed_levels
from sportxp.progression.notifications import delete_old_notifications
from sportxp.progression.seed import seed_badges
from sportxp.progression.streak_service import expire_streaks

logger = logging.getLogger(__name__)


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


async def progression_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections and seed static tables on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )

    db = await _get_db_session()
    try:
        await seed_levels(db)
        await seed_badges(db)
    finally:
        await db.close()
    logger.info("Progression worker started")


async def progression_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Progression worker shut down")


async def expire_challenges_job(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: expire overdue challenge instances. Runs every hour."""
    db = await _get_db_session()
    try:
        return await expire_challenges(db)
    finally:
        await db.close()


async def rebuild_leaderboard_job(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: full leaderboard rebuild. Runs every hour."""
    redis_client: aioredis.Redis = ctx["redis"]
    db = await _get_db_session()
    try:
        return await rebuild_leaderboard_cache(db, redis_client)
    finally:
        await db.close()


async def _provision(challenge_type: str) -> int:
    db = await _get_db_session()
    try:
        return await provision_recurring_challenges(db, challenge_type)
    finally:
        await db.close()


async def provision_daily_challenges_job(ctx: dict) -> int:  # type: ignore[type-arg]
    return await _provision("daily")


async def provision_weekly_challenges_job(ctx: dict) -> int:  # type: ignore[type-arg]
    return await _provision("weekly")


async def provision_monthly_challenges_job(ctx: dict) -> int:  # type: ignore[type-arg]
    return await _provision("monthly")


async def expire_streaks_job(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: zero streaks with no activity today or yesterday."""
    db = await _get_db_session()
    try:
        return await expire_streaks(db)
    finally:
        await db.close()


async def delete_old_notifications_job(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: drop read notifications past the retention period."""
    db = await _get_db_session()
    try:
        return await delete_old_notifications(db)
    finally:
        await db.close()


class ProgressionWorkerSettings:
    """arq worker settings for the progression scheduler."""

    functions = [
        expire_challenges_job,
        rebuild_leaderboard_job,
        provision_daily_challenges_job,
        provision_weekly_challenges_job,
        provision_monthly_challenges_job,
        expire_streaks_job,
        delete_old_notifications_job,
    ]
    cron_jobs = [
        cron(expire_challenges_job, minute=0),
        cron(rebuild_leaderboard_job, minute=0),
        cron(provision_daily_challenges_job, hour=0, minute=0),
        cron(provision_weekly_challenges_job, weekday=0, hour=0, minute=0),  # Monday
        cron(provision_monthly_challenges_job, day=1, hour=0, minute=0),
        cron(expire_streaks_job, hour=0, minute=5),
        cron(delete_old_notifications_job, hour=3, minute=0),
    ]
    on_startup = progression_startup
    on_shutdown = progression_shutdown
    max_jobs = 4
    job_timeout = get_settings().worker_timeout_seconds
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
