"""Badge engine: evaluates unlock criteria against activity aggregates and streaks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.db.models import BadgeDefinition, UserBadge, UserStreak
from sportxp.exceptions import BadgeNotFoundError, DuplicateGrantError
from sportxp.progression import activity_facts
from sportxp.progression.criteria import (
    ActivityCountCriteria,
    ActivityCreationCountCriteria,
    AnyBadgeCriteria,
    CombinedCriteria,
    DistanceTotalCriteria,
    DurationTotalCriteria,
    SocialConnectionsCriteria,
    StreakDaysCriteria,
    UnknownCriteria,
    is_relevant,
    parse_badge_criteria,
)
from sportxp.progression.level_table import round_half_up
from sportxp.progression.notifications import NotificationKind, NotificationSink, database_sink
from sportxp.progression.time_utils import utcnow
from sportxp.progression.xp_service import add_xp, get_badge_xp_reward

logger = logging.getLogger(__name__)

CREATE_ACTIVITY_ACTION = "create_activity"


@dataclass(frozen=True)
class LoadedBadge:
    """Plain snapshot of a badge row, safe to use after a session rollback."""

    id: int
    slug: str
    name: str
    description: str
    icon: str | None
    category: str
    rarity: str
    xp_reward: int
    criteria_type: str | None
    criteria: AnyBadgeCriteria

    @classmethod
    def from_row(cls, badge: BadgeDefinition) -> LoadedBadge:
        raw = badge.unlock_criteria or {}
        return cls(
            id=badge.id,
            slug=badge.slug,
            name=badge.name,
            description=badge.description,
            icon=badge.icon,
            category=badge.category,
            rarity=badge.rarity,
            xp_reward=badge.xp_reward,
            criteria_type=raw.get("type") if isinstance(raw, dict) else None,
            criteria=parse_badge_criteria(raw),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "category": self.category,
            "rarity": self.rarity,
            "xp_reward": self.xp_reward,
        }


async def get_badge(db: AsyncSession, badge_ref: int | str) -> BadgeDefinition | None:
    """Fetch a badge definition by id or slug."""
    if isinstance(badge_ref, int):
        return await db.get(BadgeDefinition, badge_ref)
    result = await db.execute(select(BadgeDefinition).where(BadgeDefinition.slug == badge_ref))
    return result.scalar_one_or_none()


async def require_badge(db: AsyncSession, badge_ref: int | str, user_id: int | None = None) -> LoadedBadge:
    row = await get_badge(db, badge_ref)
    if row is None:
        raise BadgeNotFoundError(badge_ref, user_id)
    return LoadedBadge.from_row(row)


async def has_badge(db: AsyncSession, user_id: int, badge_id: int) -> bool:
    """Check if user already has a specific badge."""
    result = await db.execute(
        select(UserBadge.id).where(
            UserBadge.user_id == user_id,
            UserBadge.badge_id == badge_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def earned_badge_ids(db: AsyncSession, user_id: int) -> set[int]:
    result = await db.execute(select(UserBadge.badge_id).where(UserBadge.user_id == user_id))
    return set(result.scalars())


class BadgeEngine:
    """Evaluates badge criteria for a user and awards the ones that are met."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.notify = notifier or database_sink(db, redis)
        self._badge_cache: list[LoadedBadge] | None = None

    async def _load_badges(self) -> list[LoadedBadge]:
        """Load and cache all active badge definitions."""
        if self._badge_cache is None:
            result = await self.db.execute(
                select(BadgeDefinition)
                .where(BadgeDefinition.is_active.is_(True))
                .order_by(BadgeDefinition.sort_order.asc(), BadgeDefinition.id.asc())
            )
            self._badge_cache = [LoadedBadge.from_row(b) for b in result.scalars()]
        return self._badge_cache

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    async def check_and_award_badges(
        self,
        user_id: int,
        trigger_type: str,
        context: dict[str, Any] | None = None,
    ) -> list[str]:
        """Evaluate relevant, unearned badges and award the ones that are met.

        Returns the slugs awarded. A failure on one badge is logged and the
        batch moves on; nothing is raised to the caller.
        """
        try:
            badges = await self._load_badges()
            earned = await earned_badge_ids(self.db, user_id)
        except Exception:
            logger.exception("Failed to load badges for user %s", user_id)
            await self.db.rollback()
            return []

        awarded: list[str] = []
        for badge in badges:
            if badge.id in earned or not is_relevant(trigger_type, badge.criteria_type):
                continue
            try:
                if not await self.evaluate(user_id, badge.criteria, context):
                    continue
                if await self.award_badge(user_id, badge.id, {"trigger": trigger_type}):
                    awarded.append(badge.slug)
            except Exception:
                logger.exception("Badge %s check failed for user %s", badge.slug, user_id)
                await self.db.rollback()

        if awarded:
            logger.info("User %s earned badges %s on %s", user_id, awarded, trigger_type)
        return awarded

    async def evaluate(
        self,
        user_id: int,
        criteria: AnyBadgeCriteria,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """True when the criterion is met. Unknown criteria are never met."""
        if isinstance(criteria, UnknownCriteria):
            logger.warning("Unknown badge criteria type: %s", criteria.type)
            return False
        if isinstance(criteria, SocialConnectionsCriteria):
            logger.debug("Social connections criteria not implemented, user %s", user_id)
            return False
        if isinstance(criteria, CombinedCriteria):
            for child in criteria.criteria:
                if not await self.evaluate(user_id, child, context):
                    return False
            return True

        current, target = await self._measure(user_id, criteria, context)
        return current >= target

    async def _measure(
        self,
        user_id: int,
        criteria: AnyBadgeCriteria,
        context: dict[str, Any] | None = None,
    ) -> tuple[float, float]:
        """(current, target) for a single numeric criterion."""
        if isinstance(criteria, ActivityCountCriteria):
            count = await activity_facts.count_completed(self.db, user_id, criteria.activity_type)
            return count, criteria.count

        if isinstance(criteria, ActivityCreationCountCriteria):
            count = await activity_facts.count_created_activities(self.db, user_id)
            # The activity being created right now has no fact row yet
            if context and context.get("action") == CREATE_ACTIVITY_ACTION:
                count += 1
            return count, criteria.count

        if isinstance(criteria, DistanceTotalCriteria):
            km = await activity_facts.sum_distance(self.db, user_id, criteria.activity_type)
            return km, criteria.km

        if isinstance(criteria, DurationTotalCriteria):
            minutes = await activity_facts.sum_duration(self.db, user_id, criteria.activity_type)
            return minutes, criteria.minutes

        if isinstance(criteria, StreakDaysCriteria):
            return await self._current_streak(user_id), criteria.days

        if isinstance(criteria, SocialConnectionsCriteria):
            return 0, criteria.count

        if isinstance(criteria, CombinedCriteria):
            met = 0
            for child in criteria.criteria:
                if await self.evaluate(user_id, child, context):
                    met += 1
            return met, len(criteria.criteria)

        return 0, 0

    async def _current_streak(self, user_id: int) -> int:
        result = await self.db.execute(
            select(UserStreak.current_streak).where(UserStreak.user_id == user_id)
        )
        return result.scalar_one_or_none() or 0

    # ------------------------------------------------------------------
    # Awarding
    # ------------------------------------------------------------------

    async def award_badge(
        self,
        user_id: int,
        badge_ref: int | str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Award a badge to a user.

        Returns True if awarded, False if already earned or badge not found.
        1. Insert into user_badges (UNIQUE(user_id, badge_id) decides races)
        2. Grant rarity-weighted XP (idempotent via idempotency_key)
        3. Emit badge_unlocked notification (failure logged only)
        """
        try:
            badge = await require_badge(self.db, badge_ref, user_id)
            await self._insert_grant(user_id, badge, metadata)
        except BadgeNotFoundError:
            logger.warning("Badge not found: %s", badge_ref)
            return False
        except DuplicateGrantError:
            logger.debug("User %s already has badge %s", user_id, badge_ref)
            return False

        xp_reward = get_badge_xp_reward(badge.rarity, badge.xp_reward)
        await add_xp(
            self.db,
            self.redis,
            user_id,
            xp_reward,
            "earn_badge",
            source_id=badge.slug,
            description=f'Earned badge: "{badge.name}"',
            idempotency_key=f"badge:{badge.id}:{user_id}",
        )
        logger.info('Badge "%s" awarded to user %s with %d XP', badge.name, user_id, xp_reward)

        try:
            await self.notify(
                user_id,
                NotificationKind.BADGE_UNLOCKED,
                f'Badge Unlocked: "{badge.name}"',
                f"+{xp_reward} XP - {badge.description}",
                {"badge_id": badge.id, "slug": badge.slug, "rarity": badge.rarity, "xp_reward": xp_reward},
            )
        except Exception:
            await self.db.rollback()
            logger.warning("Failed to emit badge_unlocked for user %s", user_id, exc_info=True)

        return True

    async def _insert_grant(self, user_id: int, badge: LoadedBadge, metadata: dict[str, Any] | None) -> None:
        """Commit the user_badges row. UNIQUE(user_id, badge_id) decides races."""
        if await has_badge(self.db, user_id, badge.id):
            raise DuplicateGrantError(f"Badge {badge.slug} already granted", user_id=user_id, operation="award_badge")

        self.db.add(
            UserBadge(
                user_id=user_id,
                badge_id=badge.id,
                earned_at=utcnow(),
                badge_metadata=metadata or {},
            )
        )
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicateGrantError(
                f"Badge {badge.slug} granted concurrently", user_id=user_id, operation="award_badge"
            ) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_user_badges(self, user_id: int) -> list[dict[str, Any]]:
        """Earned badges, newest first."""
        result = await self.db.execute(
            select(UserBadge)
            .where(UserBadge.user_id == user_id)
            .order_by(UserBadge.earned_at.desc(), UserBadge.id.desc())
        )
        return [
            {
                **LoadedBadge.from_row(ub.badge).to_dict(),
                "earned_at": ub.earned_at.isoformat(),
                "metadata": ub.badge_metadata,
            }
            for ub in result.scalars().unique()
        ]

    async def get_badge_progress(self, user_id: int) -> list[dict[str, Any]]:
        """Progress toward every active badge the user has not earned. Read-only."""
        badges = await self._load_badges()
        earned = await earned_badge_ids(self.db, user_id)

        progress: list[dict[str, Any]] = []
        for badge in badges:
            if badge.id in earned:
                continue
            current, target = await self._measure(user_id, badge.criteria)
            percentage = min(100, round_half_up(100 * current / target)) if target > 0 else 0
            progress.append(
                {
                    "badge": badge.to_dict(),
                    "current_progress": current,
                    "target": target,
                    "percentage": percentage,
                }
            )
        return progress
