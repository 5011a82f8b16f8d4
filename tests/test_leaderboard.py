"""
Tests for leaderboard periods and ranking

Covers:
- Period boundaries (daily, weekly, monthly, all_time, non-UTC midnight)
- Rank ordering and tie-breaks
- Partition upserts, re-ranking under the lease, batch re-ranking
"""
import logging
import time
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from progression.dynamo import BOARD_LOCK_SK, board_pk
from progression.exceptions import InvalidInput, LeaderboardBusy
from progression.logic.leaderboard import (
    EPOCH,
    FAR_FUTURE,
    changed_ranks,
    period_bounds,
    rank_entries,
)
from progression.schemas import LEADERBOARD_PERIODS, LeaderboardEntry

NOW = datetime(2025, 11, 19, 15, 0, tzinfo=timezone.utc)  # a Wednesday


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestPeriodBounds:

    def test_daily(self):
        start, end = period_bounds("daily", NOW)

        assert start == utc(2025, 11, 19)
        assert end == utc(2025, 11, 19, 23, 59, 59, 999999)

    def test_weekly_starts_sunday(self):
        start, end = period_bounds("weekly", NOW)

        assert start == utc(2025, 11, 16)
        assert end == utc(2025, 11, 22, 23, 59, 59, 999999)

    def test_weekly_on_the_first_day(self):
        start, _end = period_bounds("weekly", utc(2025, 11, 16, 0, 0))
        assert start == utc(2025, 11, 16)

    def test_weekly_monday_start(self):
        start, end = period_bounds("weekly", NOW, week_start=0)

        assert start == utc(2025, 11, 17)
        assert end == utc(2025, 11, 23, 23, 59, 59, 999999)

    def test_monthly(self):
        start, end = period_bounds("monthly", NOW)

        assert start == utc(2025, 11, 1)
        assert end == utc(2025, 11, 30, 23, 59, 59, 999999)

    def test_monthly_december_rolls_over(self):
        start, end = period_bounds("monthly", utc(2025, 12, 31, 23, 0))

        assert start == utc(2025, 12, 1)
        assert end == utc(2025, 12, 31, 23, 59, 59, 999999)

    def test_all_time(self):
        assert period_bounds("all_time", NOW) == (EPOCH, FAR_FUTURE)

    def test_local_midnight(self):
        """Sao Paulo is UTC-3: 01:00 UTC on the 20th is still the 19th locally"""
        zoneinfo = pytest.importorskip("zoneinfo")
        try:
            zoneinfo.ZoneInfo("America/Sao_Paulo")
        except zoneinfo.ZoneInfoNotFoundError:
            pytest.skip("tz database not available")

        start, end = period_bounds("daily", utc(2025, 11, 20, 1, 0), "America/Sao_Paulo")

        assert start == utc(2025, 11, 19, 3, 0)
        assert end == utc(2025, 11, 20, 2, 59, 59, 999999)

    @pytest.mark.parametrize("period", LEADERBOARD_PERIODS)
    def test_now_is_inside_its_period(self, period):
        start, end = period_bounds(period, NOW)
        assert start <= NOW <= end

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            period_bounds("yearly", NOW)

    def test_invalid_week_start(self):
        with pytest.raises(ValueError):
            period_bounds("weekly", NOW, week_start=7)


def _entry(learner_id, xp, created_at=NOW, rank=0):
    return LeaderboardEntry(
        id=f"entry-{learner_id}",
        learner_id=learner_id,
        period="weekly",
        period_start=utc(2025, 11, 16),
        period_end=utc(2025, 11, 22, 23, 59, 59, 999999),
        xp=xp,
        rank=rank,
        created_at=created_at,
    )


class TestRankEntries:

    def test_ranks_by_xp(self):
        ranked = rank_entries([_entry("a", 10), _entry("b", 50), _entry("c", 30)])

        assert [(entry.learner_id, rank) for entry, rank in ranked] == [("b", 1), ("c", 2), ("a", 3)]

    def test_tie_goes_to_earliest_entry(self):
        ranked = rank_entries([
            _entry("late", 20, NOW + timedelta(minutes=5)),
            _entry("early", 20, NOW),
        ])

        assert [entry.learner_id for entry, _rank in ranked] == ["early", "late"]

    def test_full_tie_goes_to_learner_id(self):
        ranked = rank_entries([_entry("zed", 20), _entry("amy", 20)])

        assert [entry.learner_id for entry, _rank in ranked] == ["amy", "zed"]

    def test_ranks_are_one_to_n(self):
        ranked = rank_entries([_entry(f"u{i}", i % 3) for i in range(7)])

        assert sorted(rank for _entry, rank in ranked) == list(range(1, 8))

    def test_changed_ranks_skips_unchanged(self):
        changes = changed_ranks([_entry("a", 50, rank=1), _entry("b", 60, rank=2)])

        assert [(entry.learner_id, rank) for entry, rank in changes] == [("b", 1), ("a", 2)]
        assert changed_ranks([_entry("a", 50, rank=1)]) == []


def _partition(engine, period, now, language_id=None):
    start, _end = engine.leaderboard.bounds(period, now)
    return engine.leaderboard.repository.list_partition(board_pk(period, start, language_id))


class TestRecordXP:

    def test_writes_every_global_partition(self, engine, now):
        engine.leaderboard.record_xp("u1", 10, now=now)

        for period in LEADERBOARD_PERIODS:
            entries = _partition(engine, period, now)
            assert [(entry.learner_id, entry.xp, entry.rank) for entry in entries] == [("u1", 10, 1)]
            assert _partition(engine, period, now, "es") == []

    def test_language_partitions(self, engine, now):
        engine.leaderboard.record_xp("u1", 10, "es", now=now)

        for period in LEADERBOARD_PERIODS:
            assert len(_partition(engine, period, now)) == 1
            entries = _partition(engine, period, now, "es")
            assert len(entries) == 1
            assert entries[0].language_id == "es"

    def test_xp_accumulates(self, engine, now):
        engine.leaderboard.record_xp("u1", 10, now=now)
        engine.leaderboard.record_xp("u1", 15, now=now + timedelta(minutes=1))

        entry = engine.leaderboard.get_learner_position("u1", "daily", now=now)
        assert entry.xp == 25
        assert entry.created_at == now

    @pytest.mark.parametrize("xp", [0, -200])
    def test_non_positive_xp_ignored(self, engine, now, xp):
        engine.leaderboard.record_xp("u1", xp, now=now)

        assert _partition(engine, "all_time", now) == []

    def test_ranking_across_learners(self, engine, now):
        engine.leaderboard.record_xp("u1", 30, now=now)
        engine.leaderboard.record_xp("u2", 50, now=now)
        engine.leaderboard.record_xp("u3", 10, now=now)

        board = engine.leaderboard.get_leaderboard("weekly", now=now)

        assert [(entry.learner_id, entry.rank) for entry in board] == [("u2", 1), ("u1", 2), ("u3", 3)]

    def test_tie_keeps_first_to_score_ahead(self, engine, now):
        engine.leaderboard.record_xp("u2", 20, now=now)
        engine.leaderboard.record_xp("u1", 20, now=now + timedelta(minutes=1))

        board = engine.leaderboard.get_leaderboard("daily", now=now)

        assert [entry.learner_id for entry in board] == ["u2", "u1"]

    def test_busy_partition_is_skipped(self, engine, now, caplog):
        start, _end = engine.leaderboard.bounds("weekly", now)
        pk = board_pk("weekly", start, None)
        assert engine.leaderboard.repository.acquire_lock(pk, "other-worker", int(time.time()), 60)

        with caplog.at_level(logging.WARNING):
            engine.leaderboard.record_xp("u1", 10, now=now)

        assert "Skipped re-ranking" in caplog.text
        weekly = engine.leaderboard.get_learner_position("u1", "weekly", now=now)
        assert (weekly.xp, weekly.rank) == (10, 0)
        assert engine.leaderboard.get_learner_position("u1", "daily", now=now).rank == 1

    def test_missing_learner_id(self, engine, now):
        with pytest.raises(InvalidInput):
            engine.leaderboard.record_xp("", 10, now=now)

    @pytest.mark.parametrize("language_id", ["ALL", "all", "es#1", "  "])
    def test_reserved_language_id(self, engine, now, language_id):
        """A language id must never resolve to the global partition key"""
        with pytest.raises(InvalidInput):
            engine.leaderboard.record_xp("u1", 10, language_id, now=now)

        assert engine.leaderboard.get_learner_position("u1", "daily", now=now) is None

    def test_global_xp_counted_once_with_language(self, engine, now):
        engine.leaderboard.record_xp("u1", 10, "es", now=now)

        assert engine.leaderboard.get_learner_position("u1", "daily", now=now).xp == 10


class TestRecalculateRanks:

    def test_only_changed_ranks_written(self, engine, now):
        engine.leaderboard.record_xp("u1", 30, now=now)
        engine.leaderboard.record_xp("u2", 10, now=now)
        start, _end = engine.leaderboard.bounds("weekly", now)

        with patch.object(engine.leaderboard.repository, 'set_rank') as mock_set_rank:
            changed = engine.leaderboard.recalculate_ranks("weekly", start)

        assert changed == 0
        mock_set_rank.assert_not_called()

    def test_overtake_rewrites_both_ranks(self, engine, now):
        engine.leaderboard.record_xp("u1", 30, now=now)
        engine.leaderboard.record_xp("u2", 10, now=now)
        start, end = engine.leaderboard.bounds("weekly", now)
        pk = board_pk("weekly", start, None)
        engine.leaderboard.repository.upsert("u2", "weekly", start, end, None, 100, now)

        assert engine.leaderboard.recalculate_ranks("weekly", start) == 2
        assert engine.leaderboard.repository.get_entry(pk, "u2").rank == 1
        assert engine.leaderboard.repository.get_entry(pk, "u1").rank == 2

    def test_busy_lock_raises(self, engine, now):
        start, _end = engine.leaderboard.bounds("weekly", now)
        pk = board_pk("weekly", start, None)
        engine.leaderboard.repository.acquire_lock(pk, "other-worker", int(time.time()), 60)

        with pytest.raises(LeaderboardBusy):
            engine.leaderboard.recalculate_ranks("weekly", start)

    def test_expired_lock_is_taken_over(self, engine, now):
        start, _end = engine.leaderboard.bounds("weekly", now)
        pk = board_pk("weekly", start, None)
        engine.leaderboard.repository.acquire_lock(pk, "crashed-worker", int(time.time()) - 100, 10)

        engine.leaderboard.recalculate_ranks("weekly", start)

        lock = engine.db.progression_table.get_item(Key={'PK': pk, 'SK': BOARD_LOCK_SK})
        assert 'Item' not in lock

    def test_lock_released_after_run(self, engine, now):
        engine.leaderboard.record_xp("u1", 10, now=now)
        start, _end = engine.leaderboard.bounds("daily", now)

        assert engine.leaderboard.repository.acquire_lock(
            board_pk("daily", start, None), "next-worker", int(time.time()), 60
        )

    def test_recalculate_current(self, engine, now):
        engine.leaderboard.record_xp("u1", 10, "es", now=now)

        results = engine.leaderboard.recalculate_current(["es"], now=now)

        assert len(results) == 8
        assert sum(results.values()) == 0

    def test_invalid_period(self, engine, now):
        with pytest.raises(InvalidInput):
            engine.leaderboard.recalculate_ranks("yearly", now)


class TestQueries:

    def test_get_learner_position(self, engine, now):
        engine.leaderboard.record_xp("u1", 30, now=now)
        engine.leaderboard.record_xp("u2", 50, now=now)

        position = engine.leaderboard.get_learner_position("u1", "monthly", now=now)

        assert position.rank == 2
        assert position.xp == 30
        assert engine.leaderboard.get_learner_position("ghost", "monthly", now=now) is None

    def test_limit(self, engine, now):
        for index in range(3):
            engine.leaderboard.record_xp(f"u{index}", 10 * (index + 1), now=now)

        board = engine.leaderboard.get_leaderboard("all_time", limit=2, now=now)

        assert [entry.learner_id for entry in board] == ["u2", "u1"]

    @pytest.mark.parametrize("limit", [0, -1, 1001])
    def test_invalid_limit(self, engine, now, limit):
        with pytest.raises(InvalidInput):
            engine.leaderboard.get_leaderboard("weekly", limit=limit, now=now)

    def test_invalid_period(self, engine, now):
        with pytest.raises(InvalidInput):
            engine.leaderboard.get_leaderboard("yearly", now=now)

    def test_reserved_language_id(self, engine, now):
        with pytest.raises(InvalidInput):
            engine.leaderboard.get_leaderboard("daily", "ALL", now=now)
        with pytest.raises(InvalidInput):
            engine.leaderboard.get_learner_position("u1", "daily", "ALL", now=now)
        with pytest.raises(InvalidInput):
            engine.leaderboard.recalculate_current(["ALL"], now=now)
