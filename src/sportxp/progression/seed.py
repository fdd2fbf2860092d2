"""Seed data: badge definitions and recurring challenge templates."""

from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.db.models import BadgeDefinition
from sportxp.progression.criteria import parse_badge_criteria_strict
from sportxp.progression.time_utils import utcnow

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    # Hosting
    {
        "slug": "first_host",
        "name": "First Host",
        "description": "Create your first activity",
        "icon": "megaphone",
        "category": "activity",
        "rarity": "common",
        "xp_reward": 100,
        "unlock_criteria": {"type": "activity_creation_count", "count": 1},
        "sort_order": 1,
    },
    {
        "slug": "host_5",
        "name": "Organizer",
        "description": "Create 5 activities",
        "icon": "calendar",
        "category": "activity",
        "rarity": "uncommon",
        "xp_reward": 250,
        "unlock_criteria": {"type": "activity_creation_count", "count": 5},
        "sort_order": 2,
    },
    {
        "slug": "host_10",
        "name": "Community Builder",
        "description": "Create 10 activities",
        "icon": "users",
        "category": "activity",
        "rarity": "rare",
        "xp_reward": 500,
        "unlock_criteria": {"type": "activity_creation_count", "count": 10},
        "sort_order": 3,
    },
    # Completions
    {
        "slug": "first_activity",
        "name": "First Step",
        "description": "Complete your first activity",
        "icon": "flag",
        "category": "milestone",
        "rarity": "common",
        "xp_reward": 100,
        "unlock_criteria": {"type": "activity_count", "count": 1},
        "sort_order": 10,
    },
    {
        "slug": "activities_5",
        "name": "Getting Started",
        "description": "Complete 5 activities",
        "icon": "trending-up",
        "category": "milestone",
        "rarity": "uncommon",
        "xp_reward": 250,
        "unlock_criteria": {"type": "activity_count", "count": 5},
        "sort_order": 11,
    },
    {
        "slug": "activities_10",
        "name": "Regular",
        "description": "Complete 10 activities",
        "icon": "award",
        "category": "milestone",
        "rarity": "rare",
        "xp_reward": 500,
        "unlock_criteria": {"type": "activity_count", "count": 10},
        "sort_order": 12,
    },
    # Distance & duration
    {
        "slug": "distance_10k",
        "name": "10K Club",
        "description": "Cover 10 km in total",
        "icon": "map",
        "category": "activity",
        "rarity": "common",
        "xp_reward": 150,
        "unlock_criteria": {"type": "distance_total", "km": 10},
        "sort_order": 20,
    },
    {
        "slug": "distance_50k",
        "name": "Ultra Distance",
        "description": "Cover 50 km in total",
        "icon": "globe",
        "category": "activity",
        "rarity": "rare",
        "xp_reward": 500,
        "unlock_criteria": {"type": "distance_total", "km": 50},
        "sort_order": 21,
    },
    {
        "slug": "duration_60",
        "name": "First Hour",
        "description": "Accumulate 60 minutes of activity",
        "icon": "clock",
        "category": "activity",
        "rarity": "common",
        "xp_reward": 100,
        "unlock_criteria": {"type": "duration_total", "minutes": 60},
        "sort_order": 22,
    },
    {
        "slug": "duration_300",
        "name": "Endurance",
        "description": "Accumulate 300 minutes of activity",
        "icon": "battery",
        "category": "activity",
        "rarity": "uncommon",
        "xp_reward": 500,
        "unlock_criteria": {"type": "duration_total", "minutes": 300},
        "sort_order": 23,
    },
    # Streaks
    {
        "slug": "streak_3",
        "name": "On Fire",
        "description": "Stay active 3 days in a row",
        "icon": "flame",
        "category": "streak",
        "rarity": "common",
        "xp_reward": 150,
        "unlock_criteria": {"type": "streak_days", "days": 3},
        "sort_order": 30,
    },
    {
        "slug": "streak_7",
        "name": "Unstoppable",
        "description": "Stay active 7 days in a row",
        "icon": "zap",
        "category": "streak",
        "rarity": "uncommon",
        "xp_reward": 300,
        "unlock_criteria": {"type": "streak_days", "days": 7},
        "sort_order": 31,
    },
    # Combined
    {
        "slug": "runner_week",
        "name": "Road Warrior",
        "description": "Run 20 km and keep a 5-day streak",
        "icon": "shield",
        "category": "milestone",
        "rarity": "epic",
        "xp_reward": 400,
        "unlock_criteria": {
            "type": "combined",
            "criteria": [
                {"type": "distance_total", "activity_type": "Running", "km": 20},
                {"type": "streak_days", "days": 5},
            ],
        },
        "sort_order": 40,
    },
    # Social (no social graph yet, never unlocks)
    {
        "slug": "connector_10",
        "name": "Connector",
        "description": "Make 10 connections",
        "icon": "link",
        "category": "social",
        "rarity": "uncommon",
        "xp_reward": 200,
        "unlock_criteria": {"type": "social_connections", "count": 10},
        "sort_order": 50,
    },
]


RECURRING_CHALLENGES: dict[str, list[dict]] = {
    "daily": [
        {
            "name": "Daily Double",
            "description": "Complete 2 activities today",
            "target_count": 2,
            "xp_reward": 200,
            "unlock_criteria": {"type": "activities_in_period", "period": "day", "count": 2},
        },
        {
            "name": "Daily 5K",
            "description": "Cover 5 km today",
            "target_count": 5,
            "xp_reward": 150,
            "unlock_criteria": {"type": "distance_in_period", "period": "day", "km": 5},
        },
        {
            "name": "Daily Hour",
            "description": "Accumulate 60 minutes of activity today",
            "target_count": 60,
            "xp_reward": 180,
            "unlock_criteria": {"type": "duration_in_period", "period": "day", "minutes": 60},
        },
        {
            "name": "Daily Host",
            "description": "Create 1 activity today",
            "target_count": 1,
            "xp_reward": 100,
            "unlock_criteria": {"type": "activities_in_period", "period": "day", "count": 1, "action": "create"},
        },
    ],
    "weekly": [
        {
            "name": "Weekly Five",
            "description": "Complete 5 activities this week",
            "target_count": 5,
            "xp_reward": 500,
            "unlock_criteria": {"type": "activities_in_period", "period": "week", "count": 5},
        },
        {
            "name": "Weekly 25K",
            "description": "Cover 25 km this week",
            "target_count": 25,
            "xp_reward": 600,
            "unlock_criteria": {"type": "distance_in_period", "period": "week", "km": 25},
        },
        {
            "name": "Weekly Regular",
            "description": "Accumulate 300 minutes of activity this week",
            "target_count": 300,
            "xp_reward": 550,
            "unlock_criteria": {"type": "duration_in_period", "period": "week", "minutes": 300},
        },
        {
            "name": "Sport Variety",
            "description": "Practice 3 different sports this week",
            "target_count": 3,
            "xp_reward": 400,
            "unlock_criteria": {"type": "sport_variety", "period": "week", "unique_sports": 3},
        },
        {
            "name": "Active Weekend",
            "description": "Complete 2 activities over the weekend",
            "target_count": 2,
            "xp_reward": 300,
            "unlock_criteria": {"type": "activities_in_period", "period": "weekend", "count": 2},
        },
        {
            "name": "Weekly Organizer",
            "description": "Create 3 activities this week",
            "target_count": 3,
            "xp_reward": 350,
            "unlock_criteria": {"type": "activities_in_period", "period": "week", "count": 3, "action": "create"},
        },
    ],
    "monthly": [
        {
            "name": "Monthly Marathon",
            "description": "Complete 20 activities this month",
            "target_count": 20,
            "xp_reward": 1500,
            "unlock_criteria": {"type": "activities_in_period", "period": "month", "count": 20},
        },
        {
            "name": "Monthly Explorer",
            "description": "Cover 100 km this month",
            "target_count": 100,
            "xp_reward": 2000,
            "unlock_criteria": {"type": "distance_in_period", "period": "month", "km": 100},
        },
        {
            "name": "Monthly Endurance",
            "description": "Accumulate 1200 minutes of activity this month",
            "target_count": 1200,
            "xp_reward": 1800,
            "unlock_criteria": {"type": "duration_in_period", "period": "month", "minutes": 1200},
        },
        {
            "name": "Master Organizer",
            "description": "Create 10 activities this month",
            "target_count": 10,
            "xp_reward": 1200,
            "unlock_criteria": {"type": "activities_in_period", "period": "month", "count": 10, "action": "create"},
        },
        {
            "name": "All-Rounder",
            "description": "Practice 5 different sports this month",
            "target_count": 5,
            "xp_reward": 1000,
            "unlock_criteria": {"type": "sport_variety", "period": "month", "unique_sports": 5},
        },
    ],
}


def _insert_for(db: AsyncSession):  # type: ignore[no-untyped-def]
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def seed_badges(db: AsyncSession) -> int:
    """Upsert all badge definitions by slug. Returns number of badges seeded.

    Raises InvalidCriteriaError before writing anything if an entry's criteria
    do not parse.
    """
    for badge_data in BADGE_SEED_DATA:
        parse_badge_criteria_strict(badge_data["unlock_criteria"])

    insert = _insert_for(db)
    now = utcnow()
    seeded = 0
    for badge_data in BADGE_SEED_DATA:
        stmt = insert(BadgeDefinition).values(**badge_data, is_active=True, created_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "icon": stmt.excluded.icon,
                "category": stmt.excluded.category,
                "rarity": stmt.excluded.rarity,
                "xp_reward": stmt.excluded.xp_reward,
                "unlock_criteria": stmt.excluded.unlock_criteria,
                "sort_order": stmt.excluded.sort_order,
            },
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d badge definitions", seeded)
    return seeded
