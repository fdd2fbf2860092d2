"""Integration tests for challenge activation, progress, completion and expiry."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from sportxp.db.models import ChallengeDefinition, Notification, UserBadge, UserChallenge, XPLedger
from sportxp.progression.badge_engine import get_badge
from sportxp.progression.challenge_service import (
    ACTION_COMPLETE_ACTIVITY,
    ACTION_CREATE_ACTIVITY,
    ACTION_NEW_CONNECTION,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_EXPIRED,
    activate_challenges_for_user,
    complete_challenge,
    ensure_recurring_challenges,
    expire_challenges,
    get_user_active_challenges,
    provision_recurring_challenges,
    update_challenge_progress,
)
from sportxp.progression.time_utils import ensure_utc


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


NOW = utc(2026, 10, 21, 12, 0)  # Wednesday
DAY_START = utc(2026, 10, 21)
DAY_END = utc(2026, 10, 21, 23, 59, 59)


async def _definition(
    db,
    name,
    criteria,
    *,
    challenge_type="daily",
    target=2,
    xp=200,
    start=DAY_START,
    end=DAY_END,
    badge_reward_id=None,
    is_active=True,
) -> ChallengeDefinition:
    definition = ChallengeDefinition(
        name=name,
        description=name,
        challenge_type=challenge_type,
        start_date=start,
        end_date=end,
        target_count=target,
        unlock_criteria=criteria,
        xp_reward=xp,
        badge_reward_id=badge_reward_id,
        is_active=is_active,
    )
    db.add(definition)
    await db.commit()
    return definition


async def _instance(db, user_id, challenge_id) -> UserChallenge:
    result = await db.execute(
        select(UserChallenge)
        .where(UserChallenge.user_id == user_id, UserChallenge.challenge_id == challenge_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _done(when=NOW, sport="Running", **extra):
    return {"activity": {"sport_type": sport, "completed_at": when, **extra}}


DAILY_DOUBLE = {"type": "activities_in_period", "period": "day", "count": 2}


class TestActivation:
    @pytest.mark.asyncio
    async def test_activates_running_definitions_once(self, db_session, make_user):
        user = await make_user()
        current = await _definition(db_session, "Daily Double", DAILY_DOUBLE)
        await _definition(db_session, "Past", DAILY_DOUBLE, start=utc(2026, 10, 1), end=utc(2026, 10, 2))
        await _definition(db_session, "Retired", DAILY_DOUBLE, is_active=False)

        assert await activate_challenges_for_user(db_session, user.id, NOW) == 1
        assert await activate_challenges_for_user(db_session, user.id, NOW) == 0

        instance = await _instance(db_session, user.id, current.id)
        assert instance.status == STATUS_ACTIVE
        assert instance.current_progress == 0
        assert instance.target_count == 2
        assert ensure_utc(instance.expires_at) == DAY_END

    @pytest.mark.asyncio
    async def test_days_left_rounds_up(self, db_session, make_user):
        user = await make_user()
        await _definition(db_session, "Sprint", {"type": "activity_count"}, end=NOW + timedelta(hours=36))
        await activate_challenges_for_user(db_session, user.id, NOW)

        challenges = await get_user_active_challenges(db_session, user.id, NOW)

        assert len(challenges) == 1
        assert challenges[0]["days_left"] == 2
        assert challenges[0]["challenge"]["name"] == "Sprint"


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_then_completion(self, db_session, make_user, redis_mock):
        user = await make_user()
        definition = await _definition(db_session, "Daily Double", DAILY_DOUBLE)
        await activate_challenges_for_user(db_session, user.id, NOW)

        first = await update_challenge_progress(db_session, redis_mock, user.id, ACTION_COMPLETE_ACTIVITY, _done(), NOW)
        assert first == []
        assert (await _instance(db_session, user.id, definition.id)).current_progress == 1

        second = await update_challenge_progress(db_session, redis_mock, user.id, ACTION_COMPLETE_ACTIVITY, _done(), NOW)
        instance = await _instance(db_session, user.id, definition.id)
        assert second == [instance.id]
        assert instance.status == STATUS_COMPLETED
        assert ensure_utc(instance.completed_at) == NOW

        await db_session.refresh(user)
        assert user.total_xp == 200
        kinds = (await db_session.execute(select(Notification.kind))).scalars().all()
        assert "challenge_completed" in kinds

        third = await update_challenge_progress(db_session, redis_mock, user.id, ACTION_COMPLETE_ACTIVITY, _done(), NOW)
        assert third == []
        assert (await _instance(db_session, user.id, definition.id)).current_progress == 2

    @pytest.mark.asyncio
    async def test_one_second_before_midnight_does_not_count(self, db_session, make_user):
        now = utc(2026, 10, 22, 0, 0, 1)
        user = await make_user()
        definition = await _definition(
            db_session, "Daily Double", DAILY_DOUBLE, start=utc(2026, 10, 22), end=utc(2026, 10, 22, 23, 59, 59)
        )
        await activate_challenges_for_user(db_session, user.id, now)

        await update_challenge_progress(
            db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(utc(2026, 10, 21, 23, 59, 59)), now
        )
        assert (await _instance(db_session, user.id, definition.id)).current_progress == 0

        await update_challenge_progress(db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(now), now)
        assert (await _instance(db_session, user.id, definition.id)).current_progress == 1

    @pytest.mark.asyncio
    async def test_distance_accumulates(self, db_session, make_user):
        user = await make_user()
        definition = await _definition(
            db_session,
            "Weekly 25K",
            {"type": "distance_in_period", "period": "week", "km": 25},
            challenge_type="weekly",
            target=25,
            start=utc(2026, 10, 19),
            end=utc(2026, 10, 25, 23, 59, 59),
        )
        await activate_challenges_for_user(db_session, user.id, NOW)

        for km in (3, 2.5):
            await update_challenge_progress(
                db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(distance_km=km), NOW
            )

        instance = await _instance(db_session, user.id, definition.id)
        assert instance.current_progress == pytest.approx(5.5)
        assert instance.status == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_action_must_match(self, db_session, make_user):
        user = await make_user()
        host = await _definition(
            db_session, "Daily Host", {"type": "activities_in_period", "period": "day", "action": "create"}, target=1
        )
        double = await _definition(db_session, "Daily Double", DAILY_DOUBLE)
        await activate_challenges_for_user(db_session, user.id, NOW)

        completed = await update_challenge_progress(
            db_session, None, user.id, ACTION_CREATE_ACTIVITY, {"activity": {"sport_type": "Yoga", "created_at": NOW}}, NOW
        )

        assert completed == [(await _instance(db_session, user.id, host.id)).id]
        assert (await _instance(db_session, user.id, double.id)).current_progress == 0

    @pytest.mark.asyncio
    async def test_unknown_criteria_do_not_block_siblings(self, db_session, make_user):
        user = await make_user()
        broken = await _definition(db_session, "Broken", {"type": "mystery"})
        valid = await _definition(db_session, "Daily Double", DAILY_DOUBLE)
        await activate_challenges_for_user(db_session, user.id, NOW)

        await update_challenge_progress(db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(), NOW)

        assert (await _instance(db_session, user.id, broken.id)).current_progress == 0
        assert (await _instance(db_session, user.id, valid.id)).current_progress == 1

    @pytest.mark.asyncio
    async def test_social_connection_challenge(self, db_session, make_user):
        user = await make_user()
        definition = await _definition(
            db_session,
            "Say Hello",
            {"type": "social_connections", "count": 1},
            challenge_type="limited_time",
            target=1,
            start=utc(2026, 10, 1),
            end=utc(2026, 10, 31),
        )
        await activate_challenges_for_user(db_session, user.id, NOW)

        completed = await update_challenge_progress(db_session, None, user.id, ACTION_NEW_CONNECTION, {}, NOW)

        assert completed == [(await _instance(db_session, user.id, definition.id)).id]


class TestSportVariety:
    CRITERIA = {"type": "sport_variety", "period": "week", "unique_sports": 3}

    async def _setup(self, db, make_user):
        user = await make_user()
        definition = await _definition(
            db,
            "Sport Variety",
            self.CRITERIA,
            challenge_type="weekly",
            target=3,
            xp=400,
            start=utc(2026, 10, 19),
            end=utc(2026, 10, 25, 23, 59, 59),
        )
        await activate_challenges_for_user(db, user.id, NOW)
        return user, definition

    @pytest.mark.asyncio
    async def test_counts_repeats_by_default(self, db_session, make_user):
        user, definition = await self._setup(db_session, make_user)
        for sport in ("Running", "Running"):
            await update_challenge_progress(db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(sport=sport), NOW)

        assert (await _instance(db_session, user.id, definition.id)).current_progress == 2

    @pytest.mark.asyncio
    async def test_distinct_mode(self, db_session, make_user, monkeypatch):
        monkeypatch.setenv("SPORTXP_SPORT_VARIETY_DISTINCT", "true")
        user, definition = await self._setup(db_session, make_user)
        for sport in ("Running", "Running", "Yoga"):
            await update_challenge_progress(db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(sport=sport), NOW)

        instance = await _instance(db_session, user.id, definition.id)
        assert instance.current_progress == 2
        assert instance.progress_metadata["sports"] == ["Running", "Yoga"]

        completed = await update_challenge_progress(
            db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(sport="Cycling"), NOW
        )
        assert completed == [instance.id]


class TestCompletion:
    @pytest.mark.asyncio
    async def test_rewards_paid_once(self, db_session, make_user):
        user = await make_user()
        definition = await _definition(db_session, "Daily Double", DAILY_DOUBLE)
        await activate_challenges_for_user(db_session, user.id, NOW)
        instance = await _instance(db_session, user.id, definition.id)

        assert await complete_challenge(db_session, None, instance, NOW) is True
        assert await complete_challenge(db_session, None, instance, NOW) is False

        credits = await db_session.scalar(
            select(func.count()).select_from(XPLedger).where(XPLedger.source == "complete_challenge")
        )
        assert credits == 1
        await db_session.refresh(user)
        assert user.total_xp == 200

    @pytest.mark.asyncio
    async def test_badge_reward(self, seeded_db, make_user):
        user = await make_user()
        badge = await get_badge(seeded_db, "first_host")
        definition = await _definition(
            seeded_db, "Host Once", {"type": "activity_count"}, target=1, badge_reward_id=badge.id
        )
        await activate_challenges_for_user(seeded_db, user.id, NOW)

        await update_challenge_progress(seeded_db, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(), NOW)

        grant = (await seeded_db.execute(select(UserBadge).where(UserBadge.user_id == user.id))).scalar_one()
        assert grant.badge_id == badge.id
        assert grant.badge_metadata == {"challenge_id": definition.id}
        await seeded_db.refresh(user)
        assert user.total_xp == 200 + 100


class TestExpiry:
    @pytest.mark.asyncio
    async def test_overdue_instances_expire(self, db_session, make_user):
        user = await make_user()
        old = await _definition(db_session, "Last Week", DAILY_DOUBLE, start=utc(2026, 10, 12), end=utc(2026, 10, 18))
        await activate_challenges_for_user(db_session, user.id, utc(2026, 10, 15))

        assert await expire_challenges(db_session, NOW) == 1
        assert await expire_challenges(db_session, NOW) == 0

        instance = await _instance(db_session, user.id, old.id)
        assert instance.status == STATUS_EXPIRED
        assert await update_challenge_progress(db_session, None, user.id, ACTION_COMPLETE_ACTIVITY, _done(), NOW) == []
        assert (await _instance(db_session, user.id, old.id)).current_progress == 0

    @pytest.mark.asyncio
    async def test_running_instances_stay_active(self, db_session, make_user):
        user = await make_user()
        await _definition(db_session, "Daily Double", DAILY_DOUBLE)
        await activate_challenges_for_user(db_session, user.id, NOW)

        assert await expire_challenges(db_session, NOW) == 0


class TestRecurring:
    @pytest.mark.asyncio
    async def test_daily_definitions_created_once(self, db_session):
        ids = await ensure_recurring_challenges(db_session, "daily", NOW)
        again = await ensure_recurring_challenges(db_session, "daily", NOW)

        assert len(ids) == 4
        assert again == ids
        names = set((await db_session.execute(select(ChallengeDefinition.name))).scalars())
        assert "Daily Double (2026-10-21)" in names
        assert len(names) == 4

    @pytest.mark.asyncio
    async def test_next_period_gets_new_definitions(self, db_session):
        await ensure_recurring_challenges(db_session, "daily", NOW)
        await ensure_recurring_challenges(db_session, "daily", NOW + timedelta(days=1))

        count = await db_session.scalar(select(func.count()).select_from(ChallengeDefinition))
        assert count == 8

    @pytest.mark.asyncio
    async def test_weekly_provisioning_in_batches(self, db_session, make_user, monkeypatch):
        monkeypatch.setenv("SPORTXP_RECURRING_USER_BATCH_SIZE", "2")
        users = [await make_user() for _ in range(3)]

        created = await provision_recurring_challenges(db_session, "weekly", NOW)

        assert created == 3 * 6
        assert await provision_recurring_challenges(db_session, "weekly", NOW) == 0
        expires = (
            await db_session.execute(select(UserChallenge.expires_at).where(UserChallenge.user_id == users[0].id))
        ).scalars().all()
        assert {ensure_utc(e) for e in expires} == {utc(2026, 10, 25, 23, 59, 59)}
