"""Tests for merge-cluster building against the in-memory store."""

import math
from unittest.mock import MagicMock

import pytest

from insight_engine.core.clustering import ClusteringEngine
from insight_engine.core.config import Settings
from insight_engine.core.errors import PersistenceError
from insight_engine.core.similarity import compute_insight_hash
from tests.fakes.fake_db import FakeEmbeddingService, FakeInsightStore

QUERY = [1, 0, 0, 0, 0, 0]
AT_THRESHOLD = [9, 3, 3, 1, 0, 0]
BELOW_THRESHOLD = [8999, 4360, 91, 10, 3, 3]


@pytest.fixture
def store():
    return FakeInsightStore()


@pytest.fixture
def engine(store):
    return ClusteringEngine(store, FakeEmbeddingService())


class TestNeighborClusters:
    def test_close_insights_form_one_cluster(self, store, engine):
        a = store.add_insight("Creatine improves strength", [1.0, 0.0, 0.0])
        b = store.add_insight("Creatine increases strength", [1.0, 0.1, 0.0])
        store.add_insight("Sleep deprivation raises cortisol", [0.0, 0.0, 1.0])

        result = engine.build_merge_clusters_for_new_insights()

        assert result.processed == 3
        assert result.clusters_created == 1
        assert result.members_added == 2
        assert result.skipped_already_clustered == 1
        assert result.errors == 0

        (cluster_id,) = store.clusters
        members = {m["raw_insight_id"]: m for m in store.cluster_members(cluster_id)}
        assert set(members) == {a, b}
        assert members[a]["similarity"] == 1.0
        assert members[b]["similarity"] == pytest.approx(1 / (1.01 ** 0.5))
        assert all(m["is_selected"] for m in members.values())
        assert store.clusters[cluster_id]["status"] == "pending"
        assert store.clusters[cluster_id]["created_by"] == "system"

    def test_threshold_boundary(self, store, engine):
        """A neighbor at exactly 0.90 joins; one at 0.8999 does not."""
        anchor = store.add_insight("anchor", QUERY)
        at = store.add_insight("at threshold", AT_THRESHOLD)
        store.add_insight("below threshold", BELOW_THRESHOLD)

        engine.build_merge_clusters_for_batch([anchor])

        (cluster_id,) = store.clusters
        assert {m["raw_insight_id"] for m in store.cluster_members(cluster_id)} == {anchor, at}

    def test_no_neighbors_no_cluster(self, store, engine):
        store.add_insight("one", [1.0, 0.0])
        store.add_insight("two", [0.0, 1.0])

        result = engine.build_merge_clusters_for_new_insights()

        assert result.clusters_created == 0
        assert store.clusters == {}

    def test_neighbor_count_capped(self, store):
        engine = ClusteringEngine(store, FakeEmbeddingService(), max_matches=3)
        anchor = store.add_insight("anchor", [1.0, 0.0])
        for i in range(5):
            store.add_insight(f"near {i}", [1.0, 0.01 * (i + 1)])

        engine.build_merge_clusters_for_batch([anchor])

        (cluster_id,) = store.clusters
        # The search returns the anchor itself among the top matches
        assert len(store.cluster_members(cluster_id)) == 3

    def test_rejected_cluster_does_not_block(self, store, engine):
        a = store.add_insight("a", [1.0, 0.0])
        b = store.add_insight("b", [1.0, 0.05])
        store.add_cluster("rejected", [{"raw_insight_id": a, "similarity": 1.0}, {"raw_insight_id": b, "similarity": 0.99}])

        result = engine.build_merge_clusters_for_new_insights()

        assert result.clusters_created == 1

    def test_active_cluster_excludes_candidates(self, store, engine):
        a = store.add_insight("a", [1.0, 0.0])
        store.add_insight("b", [1.0, 0.05])
        store.add_cluster("approved", [{"raw_insight_id": a, "similarity": 1.0}])

        assert len(engine.get_candidate_insight_ids()) == 1

    def test_overlap_with_active_cluster_skips(self, store, engine):
        a = store.add_insight("a", [1.0, 0.0])
        b = store.add_insight("b", [1.0, 0.05])
        store.add_cluster("pending", [{"raw_insight_id": b, "similarity": 1.0}])

        result = engine.build_merge_clusters_for_batch([a])

        assert result.skipped_already_clustered == 1
        assert len(store.clusters) == 1


class TestUniqueInsightSuggestions:
    def test_suggests_merge_into_unique(self, store, engine):
        canonical = store.add_insight("Omega-3 lowers triglycerides", [1.0, 0.0, 0.0])
        unique_id = store.add_unique_insight("Omega-3 lowers triglycerides", canonical)
        raw = store.add_insight("Fish oil reduces triglycerides", [1.0, 0.2, 0.0])

        result = engine.build_merge_clusters_for_new_insights()

        assert result.merge_into_unique_suggestions == 1
        assert result.clusters_created == 0
        (cluster_id,) = store.clusters
        assert store.clusters[cluster_id]["suggested_unique_insight_id"] == unique_id
        (member,) = store.cluster_members(cluster_id)
        assert member["raw_insight_id"] == raw
        assert member["similarity"] == pytest.approx(1 / (1.04 ** 0.5))

    @pytest.mark.parametrize(
        "vector, suggested", [(AT_THRESHOLD, True), (BELOW_THRESHOLD, False)], ids=["at-0.90", "below-0.8999"]
    )
    def test_unique_match_threshold_boundary(self, store, engine, vector, suggested):
        """A canonical match at exactly 0.90 is suggested; one at 0.8999 is not."""
        canonical = store.add_insight("canonical", QUERY)
        unique_id = store.add_unique_insight("canonical", canonical)
        raw = store.add_insight("raw", vector)

        result = engine.build_merge_clusters_for_batch([raw])

        if not suggested:
            assert result.merge_into_unique_suggestions == 0
            assert store.clusters == {}
            return

        assert result.merge_into_unique_suggestions == 1
        (cluster_id,) = store.clusters
        assert store.clusters[cluster_id]["suggested_unique_insight_id"] == unique_id
        (member,) = store.cluster_members(cluster_id)
        assert member["raw_insight_id"] == raw
        assert member["similarity"] == pytest.approx(0.9)

    def test_best_unique_match_wins(self, store, engine):
        far = store.add_insight("far", [1.0, 0.3, 0.0])
        near = store.add_insight("near", [1.0, 0.05, 0.0])
        store.add_unique_insight("far", far)
        near_unique = store.add_unique_insight("near", near)
        store.add_insight("raw", [1.0, 0.0, 0.0])

        engine.build_merge_clusters_for_new_insights()

        (cluster,) = store.clusters.values()
        assert cluster["suggested_unique_insight_id"] == near_unique

    def test_thresholds_are_independent(self, store):
        engine = ClusteringEngine(
            store, FakeEmbeddingService(), unique_match_threshold=0.95, neighbor_threshold=0.90
        )
        canonical = store.add_insight("canonical", [1.0, 0.0, 0.0])
        store.add_unique_insight("canonical", canonical)
        store.add_insight("raw", [1.0, 0.4, 0.0])  # similarity ~0.928

        result = engine.build_merge_clusters_for_new_insights()

        assert result.merge_into_unique_suggestions == 0
        assert result.clusters_created == 1

    def test_rpc_search_mode(self, store):
        store.search_similar_unique_insights = MagicMock(return_value=[])
        store.list_unique_insights_with_embeddings = MagicMock()
        engine = ClusteringEngine(store, FakeEmbeddingService(), unique_search_mode="rpc")

        engine.find_similar_unique_insights([1.0, 0.0])

        store.search_similar_unique_insights.assert_called_once_with([1.0, 0.0], 0.9, 20)
        store.list_unique_insights_with_embeddings.assert_not_called()

    def test_failed_suggestion_falls_through_to_neighbors(self, store, engine):
        canonical = store.add_insight("canonical", [1.0, 0.0])
        store.add_unique_insight("canonical", canonical)
        raw = store.add_insight("raw", [1.0, 0.1])
        calls = []

        def fail_first(members):
            calls.append(members)
            if len(calls) == 1:
                raise PersistenceError("connection reset", code="08006")

        store.before_member_insert = fail_first

        result = engine.build_merge_clusters_for_batch([raw])

        assert result.merge_into_unique_suggestions == 0
        assert result.clusters_created == 1
        (cluster,) = store.clusters.values()
        assert cluster["suggested_unique_insight_id"] is None


class TestFullRuns:
    def test_run_without_stored_embeddings(self, store):
        """Both embeddings are generated and the pair lands in one cluster."""
        neighbor_vector = [0.95, math.sqrt(1 - 0.95 ** 2)]
        embeddings = FakeEmbeddingService(vectors={"first": [1.0, 0.0], "second": neighbor_vector})
        engine = ClusteringEngine(store, embeddings)
        first = store.add_insight("first")
        second = store.add_insight("second")

        result = engine.build_merge_clusters_for_new_insights()

        assert result.clusters_created == 1
        assert store.insights[first]["embedding"] == [1.0, 0.0]
        assert store.insights[second]["embedding"] == neighbor_vector
        (cluster_id,) = store.clusters
        similarities = sorted(m["similarity"] for m in store.cluster_members(cluster_id))
        assert similarities[0] == pytest.approx(0.95)
        assert similarities[1] == 1.0

    def test_second_run_creates_no_overlapping_cluster(self, store, engine):
        a = store.add_insight("a", [1.0, 0.0])
        b = store.add_insight("b", [1.0, 0.05])

        first = engine.build_merge_clusters_for_new_insights()
        second = engine.build_merge_clusters_for_new_insights()

        assert first.clusters_created == 1
        assert second.clusters_created == 0
        assert len(store.clusters) == 1
        assert sorted(m["raw_insight_id"] for m in store.members) == sorted([a, b])

    def test_paraphrases_cluster_and_unrelated_insight_untouched(self, store):
        statement_a = "Vitamin D supplementation reduces fracture risk in elderly patients"
        statement_b = "Supplementing vitamin D lowers fracture risk for elderly patients"
        statement_c = "Exercise improves VO2 max"
        embeddings = FakeEmbeddingService(
            vectors={
                statement_a: [1.0, 0.0, 0.0],
                statement_b: [0.96, 0.28, 0.0],
                statement_c: [0.0, 0.1, 1.0],
            }
        )
        engine = ClusteringEngine(store, embeddings)
        a = store.add_insight(statement_a)
        b = store.add_insight(statement_b)
        c = store.add_insight(statement_c)

        result = engine.build_merge_clusters_for_new_insights()

        assert result.processed == 3
        assert result.clusters_created == 1
        assert result.members_added == 2
        assert result.merge_into_unique_suggestions == 0
        (cluster_id,) = store.clusters
        assert {m["raw_insight_id"] for m in store.cluster_members(cluster_id)} == {a, b}
        assert c not in {m["raw_insight_id"] for m in store.members}
        assert store.insights[c]["unique_insight_id"] is None


class TestFailureHandling:
    def test_member_insert_failure_leaves_no_cluster(self, store, engine):
        a = store.add_insight("a", [1.0, 0.0])
        store.add_insight("b", [1.0, 0.05])
        store.fail_member_insert = PersistenceError("insert failed", code="XX000")

        result = engine.build_merge_clusters_for_batch([a])

        assert result.errors == 1
        assert result.clusters_created == 0
        assert store.clusters == {}
        assert store.members == []

    def test_concurrent_claim_counts_as_skipped(self, store, engine):
        """A unique violation on member insert means another run got there first."""
        a = store.add_insight("a", [1.0, 0.0])
        b = store.add_insight("b", [1.0, 0.05])
        competing = {}

        def competing_run(members):
            if not competing:
                competing["id"] = store.add_cluster("pending", [{"raw_insight_id": b, "similarity": 1.0}])

        store.before_member_insert = competing_run

        result = engine.build_merge_clusters_for_batch([a])

        assert result.skipped_already_clustered == 1
        assert result.errors == 0
        assert list(store.clusters) == [competing["id"]]
        assert {m["raw_insight_id"] for m in store.members} == {b}

    def test_fetch_failure_counts_every_id(self, store, engine):
        store.list_unlinked_insights = MagicMock(side_effect=RuntimeError("timeout"))

        result = engine.build_merge_clusters_for_batch(["x", "y", "z"])

        assert result.errors == 3

    def test_per_insight_error_does_not_stop_batch(self, store, engine):
        a = store.add_insight("a", [1.0, 0.0])
        b = store.add_insight("b", [0.0, 1.0])
        original = store.search_similar_insights

        def flaky(embedding, *args, **kwargs):
            if embedding == [1.0, 0.0]:
                raise RuntimeError("rpc failed")
            return original(embedding, *args, **kwargs)

        store.search_similar_insights = flaky

        result = engine.build_merge_clusters_for_batch([a, b])

        assert result.errors == 1

    def test_candidate_fetch_failure_returns_empty_result(self, store, engine):
        store.list_candidate_insight_ids = MagicMock(side_effect=RuntimeError("down"))

        result = engine.build_merge_clusters_for_new_insights()

        assert result.model_dump() == {
            "processed": 0,
            "clusters_created": 0,
            "members_added": 0,
            "merge_into_unique_suggestions": 0,
            "errors": 0,
            "skipped_already_clustered": 0,
        }


class TestEmbeddingsAndLinks:
    def test_missing_embedding_generated_and_stored(self, store):
        embeddings = FakeEmbeddingService(vectors={"Magnesium aids sleep": [0.0, 1.0]})
        engine = ClusteringEngine(store, embeddings)
        insight_id = store.add_insight("Magnesium aids sleep")

        engine.build_merge_clusters_for_batch([insight_id])

        assert store.insights[insight_id]["embedding"] == [0.0, 1.0]
        assert store.insights[insight_id]["content_hash"] == compute_insight_hash("Magnesium aids sleep")
        assert embeddings.calls == ["Magnesium aids sleep"]

    def test_linked_insight_is_skipped(self, store, engine):
        canonical = store.add_insight("canonical", [1.0, 0.0])
        store.add_unique_insight("canonical", canonical)

        assert engine.is_linked_to_unique_insight(canonical) is True
        assert engine.get_candidate_insight_ids() == []

    def test_source_filter(self, store, engine):
        store.add_insight("a", [1.0, 0.0], source_id="s1")
        b = store.add_insight("b", [1.0, 0.0], source_id="s2")

        assert engine.get_candidate_insight_ids(source_id="s2") == [b]


def test_from_settings(store):
    settings = Settings(
        SUPABASE_URL="https://test.supabase.co",
        SUPABASE_SERVICE_ROLE_KEY="key",
        OPENAI_API_KEY="key",
        CLUSTER_UNIQUE_MATCH_THRESHOLD=0.95,
        CLUSTER_NEIGHBOR_THRESHOLD=0.88,
        CLUSTER_MAX_MATCHES=10,
        UNIQUE_INSIGHT_SEARCH_MODE="rpc",
    )

    engine = ClusteringEngine.from_settings(store, FakeEmbeddingService(), settings)

    assert engine.unique_match_threshold == 0.95
    assert engine.neighbor_threshold == 0.88
    assert engine.max_matches == 10
    assert engine.unique_search_mode == "rpc"
