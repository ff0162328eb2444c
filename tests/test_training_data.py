"""Tests for exporting reviewed clusters as dedup training data."""

import json

import pytest

from insight_engine.core.dedup_model import DEDUP_SYSTEM_PROMPT
from insight_engine.core.training_data import (
    KEEP_SEPARATE_REPLY,
    MERGE_REPLY,
    export_training_data,
    to_json,
    to_openai_jsonl,
)
from tests.fakes.fake_db import FakeInsightStore


@pytest.fixture
def store():
    return FakeInsightStore()


def approved_cluster(store, canonical_first: bool = False):
    a = store.add_insight("Creatine improves strength", confidence="high", evidence_type="RCT")
    b = store.add_insight("Creatine boosts strength")
    c = store.add_insight("Creatine increases power output")
    d = store.add_insight("Creatine causes hair loss")
    canonical = a if canonical_first else b
    unique_id = store.add_unique_insight("Creatine improves strength", canonical)
    for insight_id in (a, b, c):
        store.insights[insight_id]["unique_insight_id"] = unique_id
    store.add_cluster(
        "approved",
        [
            {"raw_insight_id": a, "similarity": 1.0},
            {"raw_insight_id": b, "similarity": 0.96},
            {"raw_insight_id": c, "similarity": 0.92},
            {"raw_insight_id": d, "similarity": 0.9, "is_selected": False},
        ],
    )
    return a, b, c, d


class TestApprovedClusters:
    def test_positive_pairs_use_canonical(self, store):
        a, b, c, d = approved_cluster(store)

        export = export_training_data(store)

        assert {(e.insight1.id, e.insight2.id) for e in export.positive} == {(b, a), (b, c)}
        assert all(e.label_source == "approved_merge" for e in export.positive)
        assert all(e.canonical_selected == b for e in export.positive)

    def test_unselected_members_become_partial_merge_negatives(self, store):
        a, b, c, d = approved_cluster(store)

        export = export_training_data(store)

        partial = [e for e in export.negative if e.label_source == "partial_merge"]
        assert {(e.insight1.id, e.insight2.id) for e in partial} == {(a, d), (b, d), (c, d)}
        assert all(e.similarity_score == 0.9 for e in partial)

    def test_stats(self, store):
        approved_cluster(store, canonical_first=True)

        export = export_training_data(store)

        assert export.stats == {"approved_merge": 2, "rejected_cluster": 0, "partial_merge": 3}
        assert export.total == 5
        assert len(export.examples) == 5

    def test_approved_but_never_merged_skipped(self, store):
        a = store.add_insight("a")
        b = store.add_insight("b")
        store.add_cluster("approved", [{"raw_insight_id": a, "similarity": 1.0}, {"raw_insight_id": b, "similarity": 0.95}])

        assert export_training_data(store).total == 0

    def test_missing_canonical_falls_back_to_first_selected(self, store):
        a, b, c, d = approved_cluster(store)
        unique_id = store.insights[a]["unique_insight_id"]
        store.unique_insights[unique_id]["canonical_raw_id"] = d

        export = export_training_data(store)

        assert {e.insight1.id for e in export.positive} == {a}


class TestRejectedClusters:
    def test_every_pair_negative(self, store):
        a = store.add_insight("a")
        b = store.add_insight("b")
        c = store.add_insight("c")
        store.add_cluster(
            "rejected",
            [
                {"raw_insight_id": a, "similarity": 0.91},
                {"raw_insight_id": b, "similarity": 1.0},
                {"raw_insight_id": c, "similarity": 0.95},
            ],
        )

        export = export_training_data(store)

        assert export.positive == []
        assert [(e.insight1.id, e.insight2.id) for e in export.negative] == [(b, c), (b, a), (c, a)]
        assert all(e.label_source == "rejected_cluster" for e in export.negative)

    def test_pending_clusters_ignored(self, store):
        a = store.add_insight("a")
        b = store.add_insight("b")
        store.add_cluster("pending", [{"raw_insight_id": a, "similarity": 1.0}, {"raw_insight_id": b, "similarity": 0.95}])

        assert export_training_data(store).total == 0


class TestFormats:
    def test_openai_jsonl(self, store):
        approved_cluster(store, canonical_first=True)
        export = export_training_data(store)

        lines = to_openai_jsonl(export.examples).splitlines()

        assert len(lines) == 5
        first = json.loads(lines[0])
        roles = [m["role"] for m in first["messages"]]
        assert roles == ["system", "user", "assistant"]
        assert first["messages"][0]["content"] == DEDUP_SYSTEM_PROMPT
        assert "Insight 1: Creatine improves strength" in first["messages"][1]["content"]
        assert first["messages"][2]["content"] == MERGE_REPLY
        assert json.loads(lines[-1])["messages"][2]["content"] == KEEP_SEPARATE_REPLY

    def test_json(self, store):
        approved_cluster(store)
        export = export_training_data(store)

        rows = json.loads(to_json(export.examples))

        assert len(rows) == export.total
        assert {"insight1", "insight2", "should_merge", "label_source"} <= set(rows[0])

    def test_empty(self):
        assert to_openai_jsonl([]) == ""
