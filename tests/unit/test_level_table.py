"""Level table tests: flat 150 XP curve capped at level 100."""

import pytest

from sportxp.progression.level_table import (
    LEVEL_XP_STEP,
    MAX_LEVEL,
    build_level_table,
    compute_level,
    level_for,
    round_half_up,
)


class TestLevelFor:
    """Test level lookup from total XP."""

    @pytest.mark.parametrize(
        ("total_xp", "level"),
        [(0, 1), (149, 1), (150, 2), (299, 2), (300, 3), (14849, 99), (14850, 100), (1_000_000, 100)],
    )
    def test_boundaries(self, total_xp, level):
        assert level_for(total_xp) == level

    def test_negative_xp_is_level_one(self):
        assert level_for(-50) == 1


class TestComputeLevel:
    """Test the level block returned to callers."""

    def test_mid_level_progress(self):
        info = compute_level(225)
        assert info == {
            "level": 2,
            "total_xp": 225,
            "xp_progress": 75,
            "xp_for_next_level": 150,
            "progress_percentage": 50,
        }

    def test_zero_xp(self):
        info = compute_level(0)
        assert info["level"] == 1
        assert info["xp_progress"] == 0
        assert info["progress_percentage"] == 0

    def test_percentage_rounds(self):
        # 76 / 150 = 50.67%
        assert compute_level(76)["progress_percentage"] == 51
        # 1 / 150 = 0.67%
        assert compute_level(1)["progress_percentage"] == 1

    def test_max_level_is_full(self):
        info = compute_level(20_000)
        assert info["level"] == MAX_LEVEL
        assert info["xp_for_next_level"] == 0
        assert info["progress_percentage"] == 100


class TestRoundHalfUp:
    def test_half_rounds_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(32.5) == 33

    def test_below_half_rounds_down(self):
        assert round_half_up(2.49) == 2


class TestBuildLevelTable:
    def test_has_one_row_per_level(self):
        table = build_level_table()
        assert len(table) == MAX_LEVEL
        assert [row["level_number"] for row in table] == list(range(1, MAX_LEVEL + 1))

    def test_cumulative_xp(self):
        table = build_level_table()
        assert table[0]["xp_required_cumulative"] == 0
        assert table[1]["xp_required_cumulative"] == LEVEL_XP_STEP
        assert table[-1]["xp_required_cumulative"] == 99 * LEVEL_XP_STEP

    def test_last_level_has_no_next(self):
        table = build_level_table()
        assert table[-2]["xp_for_next_level"] == LEVEL_XP_STEP
        assert table[-1]["xp_for_next_level"] == 0
