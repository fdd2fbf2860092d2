"""Integration tests for the XP ledger: totals, levels, idempotency, side effects."""

from __future__ import annotations

import json

import pytest
from sqlalchemy import func, select

from sportxp.db.models import LeaderboardEntry, LevelRow, Notification, XPLedger
from sportxp.exceptions import UserNotFoundError
from sportxp.progression.level_table import get_level_info, seed_levels
from sportxp.progression.xp_service import add_xp, get_xp_history


class TestAddXP:
    """Test XP grants."""

    @pytest.mark.asyncio
    async def test_adds_to_total_and_ledger(self, db_session, make_user):
        user = await make_user()

        result = await add_xp(db_session, None, user.id, 42, "complete_activity", source_id="a1")

        assert result["total_xp"] == 42
        assert result["level"] == 1
        assert result["leveled_up"] is False
        await db_session.refresh(user)
        assert user.total_xp == 42

        rows = (await db_session.execute(select(XPLedger).where(XPLedger.user_id == user.id))).scalars().all()
        assert len(rows) == 1
        assert rows[0].amount == 42
        assert rows[0].source == "complete_activity"

    @pytest.mark.asyncio
    async def test_level_up_at_150(self, db_session, make_user, redis_mock):
        user = await make_user(total_xp=140)

        result = await add_xp(db_session, redis_mock, user.id, 20, "host_event")

        assert result["old_level"] == 1
        assert result["level"] == 2
        assert result["leveled_up"] is True
        await db_session.refresh(user)
        assert user.current_level == 2

        notification = (
            await db_session.execute(select(Notification).where(Notification.user_id == user.id))
        ).scalar_one()
        assert notification.kind == "level_up"
        assert notification.notification_metadata["new_level"] == 2

        channel, payload = redis_mock.publish.await_args.args
        assert channel == f"notifications:user:{user.id}"
        assert json.loads(payload)["data"]["kind"] == "level_up"

    @pytest.mark.asyncio
    async def test_idempotency_key_applies_once(self, db_session, make_user):
        user = await make_user()

        first = await add_xp(db_session, None, user.id, 100, "earn_badge", idempotency_key="badge:1:1")
        second = await add_xp(db_session, None, user.id, 100, "earn_badge", idempotency_key="badge:1:1")

        assert first is not None
        assert second is None
        await db_session.refresh(user)
        assert user.total_xp == 100
        count = await db_session.scalar(select(func.count()).select_from(XPLedger))
        assert count == 1

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, db_session):
        with pytest.raises(UserNotFoundError) as exc_info:
            await add_xp(db_session, None, 9999, 10, "daily_login")
        assert exc_info.value.user_id == 9999
        assert exc_info.value.operation == "add_xp"

    @pytest.mark.asyncio
    async def test_refreshes_leaderboard_rank(self, db_session, make_user):
        await make_user(total_xp=500)
        user = await make_user()

        await add_xp(db_session, None, user.id, 50, "join_event")

        entry = (
            await db_session.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user.id))
        ).scalar_one()
        assert entry.total_xp == 50
        assert entry.rank == 2

    @pytest.mark.asyncio
    async def test_push_failure_does_not_fail_grant(self, db_session, make_user, redis_mock):
        redis_mock.publish.side_effect = ConnectionError("redis down")
        user = await make_user(total_xp=149)

        result = await add_xp(db_session, redis_mock, user.id, 1, "daily_login")

        assert result["leveled_up"] is True
        count = await db_session.scalar(select(func.count()).select_from(Notification))
        assert count == 1


class TestXPHistory:
    @pytest.mark.asyncio
    async def test_newest_first(self, db_session, make_user):
        user = await make_user()
        await add_xp(db_session, None, user.id, 10, "daily_login")
        await add_xp(db_session, None, user.id, 30, "join_event")

        history = await get_xp_history(db_session, user.id)

        assert [h["amount"] for h in history] == [30, 10]
        assert history[0]["source"] == "join_event"


class TestLevelTableStorage:
    @pytest.mark.asyncio
    async def test_seed_levels_once(self, db_session):
        assert await seed_levels(db_session) == 100
        assert await seed_levels(db_session) == 0

        top = await db_session.get(LevelRow, 100)
        assert top.xp_required_cumulative == 14850
        assert top.xp_for_next_level == 0

    @pytest.mark.asyncio
    async def test_level_info(self, db_session, make_user):
        user = await make_user(total_xp=225)
        info = await get_level_info(db_session, user.id)
        assert info["user_id"] == user.id
        assert info["level"] == 2
        assert info["progress_percentage"] == 50

    @pytest.mark.asyncio
    async def test_level_info_unknown_user(self, db_session):
        with pytest.raises(UserNotFoundError):
            await get_level_info(db_session, 404)
