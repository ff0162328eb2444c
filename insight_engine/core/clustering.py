"""
Insight clustering.

Groups semantically similar raw insights into merge-cluster proposals for
human review, and suggests merging a raw insight into an existing unique
insight when its embedding is close enough to that insight's canonical
statement.

Per candidate:
1. Skip if already linked to a unique insight
2. Ensure it has an embedding (generated on demand as a fallback)
3. Best unique-insight match >= threshold: single-member cluster with
   `suggested_unique_insight_id`, then stop
4. Otherwise search raw neighbors (>= threshold, max 20)
5. Skip when any of {anchor} + neighbors is already in a pending/approved cluster
6. Create a pending cluster: anchor at similarity 1.0, neighbors at their scores,
   all pre-selected

Cluster membership is also guarded by a partial unique index in the database.
A member insert that trips it is treated as "already clustered".
"""

from typing import Any

from insight_engine.core.config import Settings
from insight_engine.core.embeddings import EmbeddingService
from insight_engine.core.errors import PersistenceError
from insight_engine.core.logging import get_logger
from insight_engine.core.schemas_insights import ClusteringResult
from insight_engine.core.similarity import compute_insight_hash, rank_by_similarity

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 0.90
MAX_MATCHES = 20
BATCH_SIZE = 500


class ClusteringEngine:
    """Builds merge clusters for batches of raw insights."""

    def __init__(
        self,
        store: Any,
        embeddings: EmbeddingService,
        unique_match_threshold: float = DEFAULT_THRESHOLD,
        neighbor_threshold: float = DEFAULT_THRESHOLD,
        max_matches: int = MAX_MATCHES,
        batch_size: int = BATCH_SIZE,
        unique_search_mode: str = "scan",
    ):
        self.store = store
        self.embeddings = embeddings
        self.unique_match_threshold = unique_match_threshold
        self.neighbor_threshold = neighbor_threshold
        self.max_matches = max_matches
        self.batch_size = batch_size
        self.unique_search_mode = unique_search_mode

    @classmethod
    def from_settings(cls, store: Any, embeddings: EmbeddingService, settings: Settings) -> "ClusteringEngine":
        return cls(
            store,
            embeddings,
            unique_match_threshold=settings.CLUSTER_UNIQUE_MATCH_THRESHOLD,
            neighbor_threshold=settings.CLUSTER_NEIGHBOR_THRESHOLD,
            max_matches=settings.CLUSTER_MAX_MATCHES,
            batch_size=settings.CLUSTER_BATCH_SIZE,
            unique_search_mode=settings.UNIQUE_INSIGHT_SEARCH_MODE,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def ensure_embedding(self, insight: dict[str, Any]) -> list[float]:
        """Return the stored embedding, generating and caching it when missing."""
        if insight.get("embedding"):
            return insight["embedding"]

        logger.warning(
            f"Generating embedding on demand for insight {insight['id'][:8]} "
            "(embeddings should be backfilled before clustering)"
        )
        embedding = self.embeddings.generate_insight_embedding(insight)
        self.store.update_insight_embedding(
            insight["id"], embedding, content_hash=compute_insight_hash(insight.get("statement") or "")
        )
        insight["embedding"] = embedding
        return embedding

    def find_similar_unique_insights(self, embedding: list[float]) -> list[dict[str, Any]]:
        """
        Unique insights at or above the match threshold, best first.

        In "scan" mode every unique insight's canonical embedding is loaded and
        compared in-process; this is linear in the number of unique insights.
        """
        if self.unique_search_mode == "rpc":
            return self.store.search_similar_unique_insights(
                embedding, self.unique_match_threshold, self.max_matches
            )

        unique_insights = self.store.list_unique_insights_with_embeddings()
        ranked = rank_by_similarity(
            embedding,
            unique_insights,
            self.unique_match_threshold,
            vector_of=lambda u: u.get("embedding"),
        )
        return [
            {
                "id": unique["id"],
                "canonical_statement": unique.get("canonical_statement"),
                "similarity": similarity,
            }
            for unique, similarity in ranked
        ]

    def find_similar_raw_insights(
        self, embedding: list[float], exclude_ids: set[str]
    ) -> list[dict[str, Any]]:
        """Raw-insight neighbors from the indexed search, minus excluded ids."""
        matches = self.store.search_similar_insights(
            embedding, self.neighbor_threshold, self.max_matches
        )
        return [
            {"id": m["id"], "statement": m.get("statement"), "similarity": float(m["similarity"])}
            for m in matches
            if m["id"] not in exclude_ids and float(m["similarity"]) >= self.neighbor_threshold
        ]

    def is_linked_to_unique_insight(self, insight_id: str) -> bool:
        current = self.store.get_insight(insight_id)
        return bool(current and current.get("unique_insight_id"))

    # ------------------------------------------------------------------
    # Cluster creation
    # ------------------------------------------------------------------

    def _create_cluster(
        self,
        members: list[dict[str, Any]],
        suggested_unique_insight_id: str | None = None,
    ) -> str | None:
        """
        Create a cluster and its members, deleting the cluster if members fail.

        Returns:
            Cluster id, or None when a member already sits in another active cluster

        Raises:
            PersistenceError: For any other failure (the cluster is removed first)
        """
        cluster_id = self.store.create_merge_cluster(suggested_unique_insight_id)
        rows = [{"cluster_id": cluster_id, **member, "is_selected": True} for member in members]

        try:
            self.store.insert_cluster_members(rows)
        except PersistenceError as e:
            self.store.delete_merge_cluster(cluster_id)
            if e.is_unique_violation:
                return None
            raise

        return cluster_id

    def _process_insight(self, raw: dict[str, Any], result: ClusteringResult) -> None:
        raw_id = raw["id"]

        if self.is_linked_to_unique_insight(raw_id):
            return

        embedding = self.ensure_embedding(raw)

        similar_unique = self.find_similar_unique_insights(embedding)
        if similar_unique:
            best = similar_unique[0]
            try:
                cluster_id = self._create_cluster(
                    [{"raw_insight_id": raw_id, "similarity": min(1.0, best["similarity"])}],
                    suggested_unique_insight_id=best["id"],
                )
            except PersistenceError as e:
                logger.error(f"Merge-into-unique suggestion failed for insight {raw_id}: {e}")
                cluster_id = None
            else:
                if cluster_id is None:
                    result.skipped_already_clustered += 1
                    return

            if cluster_id:
                result.merge_into_unique_suggestions += 1
                logger.info(
                    f"Suggested merge: raw {raw_id[:8]} -> unique {best['id'][:8]} "
                    f"(similarity {best['similarity']:.3f})"
                )
                return

        neighbors = self.find_similar_raw_insights(embedding, exclude_ids={raw_id})
        if not neighbors:
            return

        all_ids = [raw_id] + [n["id"] for n in neighbors]
        if self.store.list_clustered_insight_ids(all_ids):
            result.skipped_already_clustered += 1
            return

        members = [{"raw_insight_id": raw_id, "similarity": 1.0}] + [
            {"raw_insight_id": n["id"], "similarity": min(1.0, max(0.0, n["similarity"]))}
            for n in neighbors
        ]

        try:
            cluster_id = self._create_cluster(members)
        except PersistenceError as e:
            logger.error(f"Error inserting cluster members for insight {raw_id}: {e}")
            result.errors += 1
            return

        if cluster_id is None:
            result.skipped_already_clustered += 1
            return

        result.clusters_created += 1
        result.members_added += len(members)
        logger.info(f"Created cluster {cluster_id[:8]} with {len(members)} members")

    def build_merge_clusters_for_batch(self, insight_ids: list[str]) -> ClusteringResult:
        """
        Cluster a batch of insight ids, one insight at a time.

        Per-insight failures are logged and counted; this never raises for them.
        """
        result = ClusteringResult()

        try:
            raw_insights = self.store.list_unlinked_insights(insight_ids)
        except Exception as e:
            logger.error(f"Error fetching insights for clustering: {e}")
            result.errors = len(insight_ids)
            return result

        for raw in raw_insights:
            try:
                self._process_insight(raw, result)
            except Exception as e:
                logger.error(f"Error processing insight {raw.get('id')}: {e}")
                result.errors += 1

        return result

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def get_candidate_insight_ids(
        self,
        source_id: str | None = None,
        run_id: str | None = None,
        limit: int | None = None,
    ) -> list[str]:
        """Unlinked, non-deleted insights that are not in a pending/approved cluster."""
        candidate_ids = self.store.list_candidate_insight_ids(
            source_id=source_id, run_id=run_id, limit=limit or self.batch_size
        )
        if not candidate_ids:
            return []

        try:
            clustered = self.store.list_clustered_insight_ids(candidate_ids)
        except Exception as e:
            # The per-insight overlap check still runs before any cluster is created
            logger.warning(f"Could not check existing clusters, keeping all candidates: {e}")
            return candidate_ids

        return [insight_id for insight_id in candidate_ids if insight_id not in clustered]

    def build_merge_clusters_for_new_insights(
        self,
        source_id: str | None = None,
        run_id: str | None = None,
        limit: int | None = None,
    ) -> ClusteringResult:
        """
        Cluster up to `limit` (default 500) candidate insights.

        Args:
            source_id: Only cluster insights from this source
            run_id: Only cluster insights from this processing run
            limit: Candidate batch size

        Returns:
            ClusteringResult with processed, clusters_created, members_added,
            merge_into_unique_suggestions, errors and skipped_already_clustered
        """
        logger.info(
            "Starting clustering run",
            extra={"extra_data": {"source_id": source_id, "run_id": run_id, "limit": limit}},
        )

        try:
            candidate_ids = self.get_candidate_insight_ids(source_id, run_id, limit)
        except Exception as e:
            logger.error(f"Error fetching candidate insights: {e}")
            return ClusteringResult()

        if not candidate_ids:
            logger.info("No candidate insights found")
            return ClusteringResult()

        logger.info(f"Found {len(candidate_ids)} candidate insights")

        result = self.build_merge_clusters_for_batch(candidate_ids)
        result.processed = len(candidate_ids)

        logger.info("Completed clustering run", extra={"extra_data": result.model_dump()})
        return result
