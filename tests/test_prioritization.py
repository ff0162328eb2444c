"""Tests for tiered insight prioritization."""

from datetime import datetime, timedelta, timezone

import pytest

from insight_engine.core.prioritization import (
    get_insights_for_generation,
    is_recent,
    matches_audience,
    prioritize_insights_for_generation,
    score_insight,
)
from insight_engine.core.schemas_insights import RawInsight

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
OLD = NOW - timedelta(days=90)
RECENT = NOW - timedelta(days=3)


def make_insight(idx: int, created_at: datetime = OLD, **fields) -> dict:
    return {"id": f"i-{idx:04d}", "statement": f"Insight {idx}", "created_at": created_at, **fields}


def ids(insights) -> list[str]:
    return [i.id for i in insights]


def assert_partition(result) -> None:
    """Every kept insight lands in exactly one tier."""
    all_ids = ids(result.tier1) + ids(result.tier2) + ids(result.tier3)
    assert result.tier1_count + result.tier2_count + result.tier3_count == result.total_count
    assert len(all_ids) == len(set(all_ids)) == result.total_count


class TestScoring:
    def test_defaults(self):
        insight = RawInsight(id="x", statement="s")
        # importance 2, Medium actionability, Other evidence
        assert score_insight(insight, recent=False) == 2 * 10 + 2 * 5 + 1 * 3

    def test_full_score(self):
        insight = RawInsight(
            id="x", statement="s", importance=3, actionability="High", evidence_type="MetaAnalysis"
        )
        assert score_insight(insight, recent=True) == 30 + 15 + 15 + 5

    def test_unknown_labels_score_as_defaults(self):
        insight = RawInsight(id="x", statement="s", actionability="Urgent", evidence_type="Anecdote")
        assert score_insight(insight, recent=False) == 33

    def test_expert_opinion_and_background(self):
        insight = RawInsight(
            id="x", statement="s", importance=1, actionability="Background", evidence_type="ExpertOpinion"
        )
        assert score_insight(insight, recent=False) == 10


class TestRecency:
    def test_within_window(self):
        assert is_recent(RawInsight(id="x", statement="s", created_at=RECENT), NOW)

    def test_outside_window(self):
        assert not is_recent(RawInsight(id="x", statement="s", created_at=OLD), NOW)

    def test_naive_timestamp_treated_as_utc(self):
        naive = (NOW - timedelta(days=1)).replace(tzinfo=None)
        assert is_recent(RawInsight(id="x", statement="s", created_at=naive), NOW)

    def test_missing_timestamp(self):
        assert not is_recent(RawInsight(id="x", statement="s"), NOW)


class TestAudience:
    @pytest.mark.parametrize(
        "primary, audience, expected",
        [
            ("Patient", "patient", True),
            ("Both", "patient", True),
            (None, "patient", True),
            ("Clinician", "patient", False),
            ("Clinician", "clinician", True),
            ("Patient", "clinician", False),
            ("Patient", "both", True),
            ("Clinician", None, True),
        ],
    )
    def test_matches_audience(self, primary, audience, expected):
        insight = RawInsight(id="x", statement="s", primary_audience=primary)
        assert matches_audience(insight, audience) is expected

    def test_filter_applied_before_tiering(self):
        insights = [
            make_insight(1, primary_audience="Patient"),
            make_insight(2, primary_audience="Clinician"),
            make_insight(3, primary_audience="Both"),
        ]

        result = prioritize_insights_for_generation(insights, audience="clinician", now=NOW)

        assert result.total_count == 2
        assert ids(result.tier1) == ["i-0002", "i-0003"]
        assert_partition(result)

    def test_filtered_large_set_partitions(self):
        insights = [
            make_insight(i, primary_audience=("Patient", "Clinician", "Both", None)[i % 4], importance=(i % 3) + 1)
            for i in range(600)
        ]

        result = prioritize_insights_for_generation(insights, audience="patient", now=NOW)

        assert result.total_count == 450
        assert "Clinician" not in {i.primary_audience for i in result.tier1 + result.tier2 + result.tier3}
        assert_partition(result)


class TestTiers:
    def test_empty(self):
        result = prioritize_insights_for_generation([], now=NOW)

        assert result.total_count == 0
        assert result.tier1 == [] and result.tier2 == [] and result.tier3 == []

    def test_small_set_fits_tier1(self):
        result = prioritize_insights_for_generation([make_insight(i) for i in range(10)], now=NOW)

        assert result.tier1_count == 10
        assert result.tier2_count == 0
        assert result.tier3_count == 0

    def test_budget_split(self):
        result = prioritize_insights_for_generation([make_insight(i) for i in range(400)], now=NOW)

        assert (result.tier1_count, result.tier2_count, result.tier3_count) == (100, 250, 50)
        assert result.total_count == 400
        assert len(get_insights_for_generation(result)) == 350

    def test_tiers_partition_input(self):
        insights = [make_insight(i, importance=(i % 3) + 1) for i in range(420)]

        result = prioritize_insights_for_generation(insights, now=NOW)

        all_ids = ids(result.tier1) + ids(result.tier2) + ids(result.tier3)
        assert len(all_ids) == len(set(all_ids)) == 420

    def test_sorted_by_score(self):
        insights = [
            make_insight(1, importance=1),
            make_insight(2, importance=3, evidence_type="RCT"),
            make_insight(3, importance=2),
        ]

        result = prioritize_insights_for_generation(insights, now=NOW)

        assert ids(result.tier1) == ["i-0002", "i-0003", "i-0001"]

    def test_equal_scores_keep_input_order(self):
        insights = [make_insight(i) for i in range(120)]

        result = prioritize_insights_for_generation(insights, max_count=110, now=NOW)

        assert ids(result.tier1) == [f"i-{i:04d}" for i in range(100)]
        assert ids(result.tier2) == [f"i-{i:04d}" for i in range(100, 110)]

    def test_recent_insights_beyond_top_100_join_tier1(self):
        high_old = [make_insight(i, importance=3) for i in range(100)]
        low_recent = [make_insight(100 + i, created_at=RECENT, importance=1) for i in range(60)]
        low_old = [make_insight(200 + i, importance=1) for i in range(40)]

        result = prioritize_insights_for_generation(high_old + low_recent + low_old, max_count=160, now=NOW)

        assert result.tier1_count == 150
        assert ids(result.tier1)[100:] == ids(RawInsight(**i) for i in low_recent[:50])
        assert ids(result.tier2) == ids(RawInsight(**i) for i in low_recent[50:])
        assert result.tier3_count == 40

    def test_recent_cap_leaves_151st_in_tier2(self):
        insights = [make_insight(i, created_at=RECENT) for i in range(151)]

        result = prioritize_insights_for_generation(insights, max_count=350, now=NOW)

        assert result.tier1_count == 150
        assert ids(result.tier2) == ["i-0150"]
        assert result.tier3_count == 0

    def test_tier1_may_exceed_budget(self):
        insights = [make_insight(i, created_at=RECENT) for i in range(200)]

        result = prioritize_insights_for_generation(insights, max_count=120, now=NOW)

        assert result.tier1_count == 150
        assert result.tier2_count == 0
        assert result.tier3_count == 50

    def test_recency_bonus_moves_insight_up(self):
        insights = [make_insight(1), make_insight(2, created_at=RECENT)]

        result = prioritize_insights_for_generation(insights, now=NOW)

        assert ids(result.tier1) == ["i-0002", "i-0001"]

    def test_accepts_models(self):
        insights = [RawInsight(id="a", statement="s"), RawInsight(id="b", statement="t")]

        result = prioritize_insights_for_generation(insights, now=NOW)

        assert ids(result.tier1) == ["a", "b"]

    def test_same_input_same_tiers(self):
        insights = [
            make_insight(i, created_at=RECENT if i % 7 == 0 else OLD, importance=(i % 3) + 1)
            for i in range(500)
        ]

        first = prioritize_insights_for_generation(insights, max_count=300, now=NOW)
        second = prioritize_insights_for_generation(insights, max_count=300, now=NOW)

        assert ids(first.tier1) == ids(second.tier1)
        assert ids(first.tier2) == ids(second.tier2)
        assert ids(first.tier3) == ids(second.tier3)
        assert_partition(first)
