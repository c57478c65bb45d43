"""Tests for the consolidation candidate policy."""

from datetime import datetime, timedelta, timezone

from recollect.models import Memory
from recollect.policy import (
    DELETE_DUPLICATE,
    KEEP_BOTH,
    MERGE,
    determine_action,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def memory(id, content="content", quality=None, age_days=10):
    return Memory(
        id=id,
        content=content,
        quality_score=quality,
        created_at=NOW - timedelta(days=age_days)
    )


class TestNearIdentical:

    def test_keeps_higher_quality_with_margin(self):
        m1 = memory(1, quality=0.9, age_days=30)
        m2 = memory(2, quality=0.5, age_days=1)

        decision = determine_action(m1, m2, 0.97)

        assert decision.action == DELETE_DUPLICATE
        assert decision.keep_id == 1
        assert "#1" in decision.reason

    def test_keeps_newer_when_quality_close(self):
        m1 = memory(1, quality=0.6, age_days=1)
        m2 = memory(2, quality=0.55, age_days=30)

        decision = determine_action(m1, m2, 0.99)

        assert decision.keep_id == 1
        assert "#1" in decision.reason

    def test_missing_quality_counts_as_neutral(self):
        m1 = memory(1, quality=None, age_days=30)
        m2 = memory(2, quality=0.7, age_days=1)

        # 0.5 vs 0.7 is outside the margin
        assert determine_action(m1, m2, 0.96).keep_id == 2
        # 0.5 vs 0.55 is inside: newer wins
        m3 = memory(3, quality=0.55, age_days=40)
        assert determine_action(m1, m3, 0.96).keep_id == 1

    def test_same_age_tie_keeps_second(self):
        m1 = memory(1, age_days=5)
        m2 = memory(2, age_days=5)
        assert determine_action(m1, m2, 0.99).keep_id == 2

    def test_naive_and_aware_timestamps_compare(self):
        m1 = memory(1, age_days=1)
        m2 = Memory(id=2, content="x", created_at=(NOW - timedelta(days=3)).replace(tzinfo=None))
        assert determine_action(m1, m2, 0.99).keep_id == 1


class TestOverlapBand:

    def test_containment_keeps_longer(self):
        m1 = memory(1, content="Use WAL mode")
        m2 = memory(2, content="Always use wal mode for the SQLite store")

        decision = determine_action(m1, m2, 0.9)

        assert decision.action == DELETE_DUPLICATE
        assert decision.keep_id == 2
        assert "#2" in decision.reason

    def test_equal_length_containment_keeps_second(self):
        m1 = memory(1, content="Same Text")
        m2 = memory(2, content="same text")
        assert determine_action(m1, m2, 0.9).keep_id == 2

    def test_distinct_content_merges(self):
        m1 = memory(1, content="Auth uses JWT")
        m2 = memory(2, content="Tokens expire after an hour")

        decision = determine_action(m1, m2, 0.9)

        assert decision.action == MERGE
        assert decision.keep_id is None

    def test_band_edges(self):
        m1 = memory(1, content="alpha")
        m2 = memory(2, content="beta")
        assert determine_action(m1, m2, 0.95).action == MERGE
        assert determine_action(m1, m2, 0.85).action == KEEP_BOTH


class TestKeepBoth:

    def test_low_similarity_keeps_both(self):
        decision = determine_action(memory(1, "a"), memory(2, "b"), 0.8)
        assert decision.action == KEEP_BOTH
        assert decision.keep_id is None
