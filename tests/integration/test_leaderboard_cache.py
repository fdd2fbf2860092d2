"""Integration tests for the leaderboard cache: ranks, ties, pagination, rebuild."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from sportxp.db.models import LeaderboardEntry
from sportxp.progression.leaderboard_service import (
    LEADERBOARD_KEY,
    get_indexed_rank,
    get_leaderboard,
    get_user_leaderboard_position,
    rebuild_leaderboard_cache,
    update_user_rank,
)
from sportxp.progression.xp_service import add_xp


class TestUpdateUserRank:
    @pytest.mark.asyncio
    async def test_single_user_is_first(self, db_session, make_user):
        user = await make_user(username="solo")

        await add_xp(db_session, None, user.id, 10, "daily_login")
        position = await get_user_leaderboard_position(db_session, user.id)

        assert position["rank"] == 1
        assert position["medal"] == "🥇"
        assert position["total_xp"] == 10
        assert position["username"] == "solo"

    @pytest.mark.asyncio
    async def test_ties_share_rank(self, db_session, make_user):
        first = await make_user(total_xp=300)
        second = await make_user(total_xp=300)
        third = await make_user(total_xp=100)

        ranks = [(await update_user_rank(db_session, u.id))["rank"] for u in (first, second, third)]

        assert ranks == [1, 1, 3]

    @pytest.mark.asyncio
    async def test_entry_is_updated_in_place(self, db_session, make_user):
        user = await make_user(total_xp=50)
        await update_user_rank(db_session, user.id)
        await add_xp(db_session, None, user.id, 200, "host_event")

        count = await db_session.scalar(select(func.count()).select_from(LeaderboardEntry))
        entry = (await db_session.execute(select(LeaderboardEntry))).scalar_one()
        assert count == 1
        assert entry.total_xp == 250

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        assert await update_user_rank(db_session, 404) is None

    @pytest.mark.asyncio
    async def test_cold_cache_position_is_computed(self, db_session, make_user):
        await make_user(total_xp=900)
        user = await make_user(total_xp=400)

        position = await get_user_leaderboard_position(db_session, user.id)

        assert position["rank"] == 2
        assert position["medal"] == "🥈"
        assert position["level"] == 3
        stored = await db_session.scalar(select(func.count()).select_from(LeaderboardEntry))
        assert stored == 1


class TestRebuild:
    @pytest.mark.asyncio
    async def test_rebuild_ranks_by_xp_then_id(self, db_session, make_user):
        low = await make_user(total_xp=10)
        tie_a = await make_user(total_xp=500)
        tie_b = await make_user(total_xp=500)
        top = await make_user(total_xp=900)

        assert await rebuild_leaderboard_cache(db_session) == 4

        board = await get_leaderboard(db_session)
        assert [e["user_id"] for e in board["entries"]] == [top.id, tie_a.id, tie_b.id, low.id]
        assert [e["rank"] for e in board["entries"]] == [1, 2, 3, 4]
        assert [e["medal"] for e in board["entries"]] == ["🥇", "🥈", "🥉", None]

    @pytest.mark.asyncio
    async def test_rebuild_replaces_stale_entries(self, db_session, make_user):
        user = await make_user(total_xp=100)
        await update_user_rank(db_session, user.id)
        user.total_xp = 700
        await db_session.commit()

        await rebuild_leaderboard_cache(db_session)

        entry = (
            await db_session.execute(select(LeaderboardEntry).execution_options(populate_existing=True))
        ).scalar_one()
        assert entry.total_xp == 700
        assert entry.rank == 1

    @pytest.mark.asyncio
    async def test_rebuild_empty(self, db_session):
        assert await rebuild_leaderboard_cache(db_session) == 0
        board = await get_leaderboard(db_session)
        assert board["entries"] == []
        assert board["total_pages"] == 0


class TestPagination:
    @pytest.mark.asyncio
    async def test_second_page(self, db_session, make_user):
        for xp in range(25):
            await make_user(total_xp=xp * 10)
        await rebuild_leaderboard_cache(db_session)

        board = await get_leaderboard(db_session, page=2, limit=10)

        assert board["total"] == 25
        assert board["total_pages"] == 3
        assert [e["rank"] for e in board["entries"]] == list(range(11, 21))
        assert all(e["medal"] is None for e in board["entries"])

    @pytest.mark.asyncio
    async def test_limits_are_clamped(self, db_session, make_user):
        await make_user(total_xp=1)
        await rebuild_leaderboard_cache(db_session)

        assert (await get_leaderboard(db_session, limit=1000))["limit"] == 100
        assert (await get_leaderboard(db_session, limit=0))["limit"] == 1
        assert (await get_leaderboard(db_session, page=-3))["page"] == 1
        assert (await get_leaderboard(db_session))["limit"] == 20


class TestRedisIndex:
    @pytest.mark.asyncio
    async def test_disabled_by_default(self, db_session, make_user, redis_mock):
        user = await make_user(total_xp=10)
        await update_user_rank(db_session, user.id, redis_mock)
        redis_mock.zadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scores_mirrored_when_enabled(self, db_session, make_user, redis_mock, monkeypatch):
        monkeypatch.setenv("SPORTXP_LEADERBOARD_REDIS_INDEX", "true")
        user = await make_user(total_xp=10)

        await update_user_rank(db_session, user.id, redis_mock)

        redis_mock.zadd.assert_awaited_once_with(LEADERBOARD_KEY, {str(user.id): 10})

    @pytest.mark.asyncio
    async def test_rebuild_refills_sorted_set(self, db_session, make_user, redis_mock, monkeypatch):
        monkeypatch.setenv("SPORTXP_LEADERBOARD_REDIS_INDEX", "true")
        for xp in (10, 20, 30):
            await make_user(total_xp=xp)

        await rebuild_leaderboard_cache(db_session, redis_mock)

        pipe = redis_mock.pipeline.return_value
        pipe.delete.assert_called_once_with(LEADERBOARD_KEY)
        assert pipe.zadd.call_count == 3
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_indexed_rank_is_one_based(self):
        redis = AsyncMock()
        redis.zrevrank.return_value = 0
        assert await get_indexed_rank(redis, 7) == 1
        redis.zrevrank.return_value = None
        assert await get_indexed_rank(redis, 8) is None
