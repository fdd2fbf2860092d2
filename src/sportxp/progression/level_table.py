"""Level table and computation.

Flat curve: every level costs 150 XP, capped at level 100. This is the
product rule, not a placeholder for an exponential curve.
"""

from __future__ import annotations

import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.db.models import LevelRow, User
from sportxp.exceptions import UserNotFoundError

LEVEL_XP_STEP = 150
MAX_LEVEL = 100


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Python's round() is banker's)."""
    return math.floor(value + 0.5)


def level_for(total_xp: int) -> int:
    """level = min(100, floor(total_xp / 150) + 1)."""
    if total_xp < 0:
        return 1
    return min(MAX_LEVEL, total_xp // LEVEL_XP_STEP + 1)


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP.

    >>> compute_level(225)["progress_percentage"]
    50
    """
    level = level_for(total_xp)
    xp_for_next_level = LEVEL_XP_STEP if level < MAX_LEVEL else 0
    xp_progress = total_xp - (level - 1) * LEVEL_XP_STEP

    if xp_for_next_level == 0:
        percentage = 100
    else:
        percentage = round_half_up(100 * xp_progress / xp_for_next_level)

    return {
        "level": level,
        "total_xp": total_xp,
        "xp_progress": xp_progress,
        "xp_for_next_level": xp_for_next_level,
        "progress_percentage": percentage,
    }


def build_level_table() -> list[dict]:
    """Rows 1..100 with cumulative XP; level 100 has xp_for_next_level = 0."""
    return [
        {
            "level_number": n,
            "xp_required_cumulative": (n - 1) * LEVEL_XP_STEP,
            "xp_for_next_level": LEVEL_XP_STEP if n < MAX_LEVEL else 0,
        }
        for n in range(1, MAX_LEVEL + 1)
    ]


async def seed_levels(db: AsyncSession) -> int:
    """Populate the levels table once. Returns rows inserted (0 if already seeded)."""
    existing = await db.scalar(select(func.count()).select_from(LevelRow))
    if existing:
        return 0

    rows = build_level_table()
    db.add_all([LevelRow(**row) for row in rows])
    await db.commit()
    return len(rows)


async def get_level_info(db: AsyncSession, user_id: int) -> dict:
    """Level block for a user's stored total."""
    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFoundError(user_id, operation="get_level_info")
    return {"user_id": user_id, **compute_level(user.total_xp)}
