"""Raw insight, unique insight and merge cluster database operations."""

from typing import Any

from postgrest.exceptions import APIError
from supabase import Client

from insight_engine.core.errors import NotFoundError
from insight_engine.core.logging import get_logger
from insight_engine.core.similarity import coerce_vector
from insight_engine.db.supabase_client import as_persistence_error

logger = get_logger(__name__)

ACTIVE_CLUSTER_STATUSES = ["pending", "approved"]

INSIGHT_COLUMNS = (
    "id, statement, context_note, evidence_type, confidence, importance, actionability, "
    "primary_audience, insight_type, qualifiers, unique_insight_id, deleted_at, created_at, "
    "source_id, run_id, locator"
)


class InsightStore:
    """Supabase-backed persistence for the clustering pipeline."""

    def __init__(self, client: Client):
        self.client = client

    # ------------------------------------------------------------------
    # Raw insights
    # ------------------------------------------------------------------

    def get_insight(self, insight_id: str) -> dict[str, Any] | None:
        """
        Get a single insight including its embedding.

        Returns:
            Insight dict with `embedding` as a list of floats (or None), or None if not found
        """
        try:
            response = (
                self.client.table("insights")
                .select(f"{INSIGHT_COLUMNS}, embedding")
                .eq("id", insight_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to get insight {insight_id}: {e}")
            raise

        if not response.data:
            return None

        row = response.data[0]
        row["embedding"] = coerce_vector(row.get("embedding"))
        return row

    def update_insight_embedding(
        self, insight_id: str, embedding: list[float], content_hash: str | None = None
    ) -> None:
        """Persist an insight's embedding, and its statement hash when given."""
        payload: dict[str, Any] = {"embedding": embedding}
        if content_hash:
            payload["content_hash"] = content_hash

        try:
            self.client.table("insights").update(payload).eq("id", insight_id).execute()
        except APIError as e:
            logger.error(f"Failed to store embedding for insight {insight_id}: {e.message}")
            raise as_persistence_error(e, f"store embedding for insight {insight_id}") from e

    def list_candidate_insight_ids(
        self,
        source_id: str | None = None,
        run_id: str | None = None,
        limit: int = 500,
    ) -> list[str]:
        """
        List ids of insights that are not linked to a unique insight and not soft-deleted.

        Args:
            source_id: Optional source filter
            run_id: Optional processing run filter
            limit: Maximum ids to return
        """
        try:
            query = (
                self.client.table("insights")
                .select("id")
                .is_("unique_insight_id", "null")
                .is_("deleted_at", "null")
            )
            if source_id:
                query = query.eq("source_id", source_id)
            if run_id:
                query = query.eq("run_id", run_id)

            response = query.limit(limit).execute()
            return [row["id"] for row in response.data or []]

        except Exception as e:
            logger.error(f"Failed to list candidate insights: {e}")
            raise

    def list_unlinked_insights(self, insight_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch the given insights that are still not linked to a unique insight."""
        if not insight_ids:
            return []

        try:
            response = (
                self.client.table("insights")
                .select("id, statement, context_note, embedding")
                .in_("id", insight_ids)
                .is_("unique_insight_id", "null")
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to fetch insights for clustering: {e}")
            raise

        rows = response.data or []
        for row in rows:
            row["embedding"] = coerce_vector(row.get("embedding"))
        return rows

    def list_insights(self, insight_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch the given non-deleted insights, without embeddings."""
        if not insight_ids:
            return []

        response = (
            self.client.table("insights")
            .select(INSIGHT_COLUMNS)
            .in_("id", insight_ids)
            .is_("deleted_at", "null")
            .execute()
        )
        return response.data or []

    def list_insights_missing_embeddings(self, start_from: int, batch_size: int) -> list[dict[str, Any]]:
        response = (
            self.client.table("insights")
            .select("id, statement, context_note")
            .is_("embedding", "null")
            .is_("deleted_at", "null")
            .range(start_from, start_from + batch_size - 1)
            .execute()
        )
        return response.data or []

    def count_insights_missing_embeddings(self) -> int:
        response = (
            self.client.table("insights")
            .select("id", count="exact", head=True)
            .is_("embedding", "null")
            .is_("deleted_at", "null")
            .execute()
        )
        return response.count or 0

    def search_similar_insights(
        self,
        embedding: list[float],
        threshold: float,
        match_count: int,
        concept_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Nearest raw insights via the search_insights_semantic RPC.

        Returns:
            Rows with id, statement and similarity, ordered by the database
        """
        try:
            response = self.client.rpc(
                "search_insights_semantic",
                {
                    "query_embedding": embedding,
                    "match_threshold": threshold,
                    "match_count": match_count,
                    "concept_id": concept_id,
                },
            ).execute()
            return response.data or []

        except Exception as e:
            logger.error(f"Semantic insight search failed: {e}")
            raise

    def list_source_insights(self, source_id: str) -> list[dict[str, Any]]:
        """Insights linked to a source through insight_sources."""
        try:
            response = (
                self.client.table("insight_sources")
                .select("insight_id, insights(id, statement, context_note)")
                .eq("source_id", source_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to list insights for source {source_id}: {e}")
            raise

        return [row["insights"] for row in response.data or [] if row.get("insights")]

    def get_source(self, source_id: str) -> dict[str, Any] | None:
        response = (
            self.client.table("sources").select("id, title").eq("id", source_id).limit(1).execute()
        )
        return response.data[0] if response.data else None

    # ------------------------------------------------------------------
    # Unique insights
    # ------------------------------------------------------------------

    def list_unique_insights_with_embeddings(self) -> list[dict[str, Any]]:
        """
        Load every unique insight with its canonical raw insight's embedding.

        Unique insights whose canonical raw has no embedding are dropped.
        """
        try:
            response = (
                self.client.table("unique_insights")
                .select("id, canonical_statement, canonical_raw_id, insights!canonical_raw_id(embedding)")
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to fetch unique insights: {e}")
            raise

        unique_insights = []
        for row in response.data or []:
            canonical = row.pop("insights", None) or {}
            embedding = coerce_vector(canonical.get("embedding"))
            if embedding is None:
                continue
            row["embedding"] = embedding
            unique_insights.append(row)
        return unique_insights

    def search_similar_unique_insights(
        self, embedding: list[float], threshold: float, match_count: int
    ) -> list[dict[str, Any]]:
        """Nearest unique insights via the search_unique_insights_semantic RPC."""
        try:
            response = self.client.rpc(
                "search_unique_insights_semantic",
                {
                    "query_embedding": embedding,
                    "match_threshold": threshold,
                    "match_count": match_count,
                },
            ).execute()
            return response.data or []

        except Exception as e:
            logger.error(f"Semantic unique insight search failed: {e}")
            raise

    def get_unique_insight(self, unique_insight_id: str) -> dict[str, Any] | None:
        response = (
            self.client.table("unique_insights")
            .select("id, canonical_statement, canonical_raw_id")
            .eq("id", unique_insight_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    # ------------------------------------------------------------------
    # Merge clusters
    # ------------------------------------------------------------------

    def list_clustered_insight_ids(self, insight_ids: list[str]) -> set[str]:
        """Ids among `insight_ids` that belong to a pending or approved cluster."""
        if not insight_ids:
            return set()

        try:
            response = (
                self.client.table("merge_cluster_members")
                .select("raw_insight_id, merge_clusters!inner(status)")
                .in_("raw_insight_id", insight_ids)
                .in_("merge_clusters.status", ACTIVE_CLUSTER_STATUSES)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to check existing clusters: {e}")
            raise

        return {row["raw_insight_id"] for row in response.data or []}

    def create_merge_cluster(self, suggested_unique_insight_id: str | None = None) -> str:
        """
        Insert a pending, system-created cluster.

        Returns:
            New cluster id

        Raises:
            PersistenceError: If the insert fails
        """
        payload: dict[str, Any] = {"created_by": "system", "status": "pending"}
        if suggested_unique_insight_id:
            payload["suggested_unique_insight_id"] = suggested_unique_insight_id

        try:
            response = self.client.table("merge_clusters").insert(payload).execute()
        except APIError as e:
            logger.error(f"Failed to create merge cluster: {e.message}")
            raise as_persistence_error(e, "create merge cluster") from e

        if not response.data:
            raise ValueError("No data returned from create_merge_cluster")
        return response.data[0]["id"]

    def insert_cluster_members(self, members: list[dict[str, Any]]) -> int:
        """
        Insert cluster member rows in one statement.

        Raises:
            PersistenceError: If the insert fails; `is_unique_violation` is set when a
                member is already in another pending/approved cluster
        """
        if not members:
            return 0

        try:
            response = self.client.table("merge_cluster_members").insert(members).execute()
        except APIError as e:
            raise as_persistence_error(e, "insert cluster members") from e

        return len(response.data) if response.data else len(members)

    def delete_merge_cluster(self, cluster_id: str) -> None:
        """Delete a cluster (members cascade)."""
        try:
            self.client.table("merge_clusters").delete().eq("id", cluster_id).execute()
        except Exception as e:
            logger.error(f"Failed to delete merge cluster {cluster_id}: {e}")
            raise

    def list_clusters_with_members(self, status: str) -> list[dict[str, Any]]:
        """
        Clusters in a given status with their members' insight text.

        Each cluster dict carries `members`: a list of dicts with raw_insight_id,
        similarity, is_selected and `insight` (statement, context_note, confidence,
        evidence_type).
        """
        response = (
            self.client.table("merge_clusters")
            .select(
                "id, status, suggested_unique_insight_id, "
                "merge_cluster_members(raw_insight_id, similarity, is_selected, "
                "insights(id, statement, context_note, confidence, evidence_type, unique_insight_id))"
            )
            .eq("status", status)
            .execute()
        )

        clusters = []
        for row in response.data or []:
            members = []
            for member in row.pop("merge_cluster_members", None) or []:
                member["insight"] = member.pop("insights", None)
                members.append(member)
            row["members"] = members
            clusters.append(row)
        return clusters

    # ------------------------------------------------------------------
    # Deduplication models
    # ------------------------------------------------------------------

    def get_active_dedup_model_id(self) -> str | None:
        """Model id of the active fine-tuned dedup classifier, if any."""
        response = (
            self.client.table("deduplication_models")
            .select("model_id")
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return response.data[0]["model_id"]

    def list_dedup_models(self) -> list[dict[str, Any]]:
        """Every registered dedup model, newest version first."""
        response = (
            self.client.table("deduplication_models")
            .select("*")
            .order("version", desc=True)
            .execute()
        )
        return response.data or []

    def get_latest_dedup_model_version(self) -> int:
        response = (
            self.client.table("deduplication_models")
            .select("version")
            .order("version", desc=True)
            .limit(1)
            .execute()
        )
        if not response.data:
            return 0
        return response.data[0]["version"] or 0

    def register_dedup_model(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Insert an inactive model row.

        Raises:
            PersistenceError: If the insert fails
        """
        try:
            response = (
                self.client.table("deduplication_models")
                .insert({**payload, "is_active": False})
                .execute()
            )
        except APIError as e:
            raise as_persistence_error(e, "register dedup model") from e

        if not response.data:
            raise ValueError("No data returned from register_dedup_model")
        return response.data[0]

    def activate_dedup_model(self, model_row_id: str) -> dict[str, Any]:
        """
        Make one model the active classifier.

        The current active model is switched off first; at most one row may
        be active at a time.

        Raises:
            NotFoundError: If no model row has this id
            PersistenceError: If either update fails
        """
        if not self._dedup_model_exists(model_row_id):
            raise NotFoundError("Dedup model", model_row_id)

        try:
            self.client.table("deduplication_models").update({"is_active": False}).eq(
                "is_active", True
            ).execute()
            response = (
                self.client.table("deduplication_models")
                .update({"is_active": True})
                .eq("id", model_row_id)
                .execute()
            )
        except APIError as e:
            raise as_persistence_error(e, "activate dedup model") from e

        logger.info(f"Activated dedup model {model_row_id}")
        return response.data[0] if response.data else {"id": model_row_id, "is_active": True}

    def deactivate_dedup_model(self, model_row_id: str) -> dict[str, Any]:
        """
        Switch a model off; the similarity fallback applies until another is activated.

        Raises:
            NotFoundError: If no model row has this id
            PersistenceError: If the update fails
        """
        if not self._dedup_model_exists(model_row_id):
            raise NotFoundError("Dedup model", model_row_id)

        try:
            response = (
                self.client.table("deduplication_models")
                .update({"is_active": False})
                .eq("id", model_row_id)
                .execute()
            )
        except APIError as e:
            raise as_persistence_error(e, "deactivate dedup model") from e

        logger.info(f"Deactivated dedup model {model_row_id}")
        return response.data[0] if response.data else {"id": model_row_id, "is_active": False}

    def record_fine_tuned_model(self, fine_tune_job_id: str, model_id: str) -> int:
        """Swap the job id placeholder for the finished model's id. Returns rows updated."""
        try:
            response = (
                self.client.table("deduplication_models")
                .update({"model_id": model_id, "notes": f"Fine-tuning completed. Job: {fine_tune_job_id}"})
                .eq("fine_tune_job_id", fine_tune_job_id)
                .execute()
            )
        except APIError as e:
            raise as_persistence_error(e, "record fine-tuned model") from e
        return len(response.data or [])

    def _dedup_model_exists(self, model_row_id: str) -> bool:
        response = (
            self.client.table("deduplication_models")
            .select("id")
            .eq("id", model_row_id)
            .limit(1)
            .execute()
        )
        return bool(response.data)
