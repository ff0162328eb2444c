"""Concept and insight-concept link database operations."""

from typing import Any

from postgrest.exceptions import APIError
from supabase import Client

from insight_engine.core.logging import get_logger
from insight_engine.core.similarity import coerce_vector
from insight_engine.db.supabase_client import as_persistence_error

logger = get_logger(__name__)

GENERATION_INSIGHT_COLUMNS = (
    "id, statement, context_note, evidence_type, qualifiers, confidence, importance, "
    "actionability, primary_audience, insight_type, direct_quote, tone, created_at, deleted_at"
)


class ConceptStore:
    """Supabase-backed persistence for concepts and their insight links."""

    def __init__(self, client: Client):
        self.client = client

    def get_concept(self, concept_id: str) -> dict[str, Any] | None:
        response = (
            self.client.table("concepts")
            .select("id, name, slug, description")
            .eq("id", concept_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def get_concept_by_slug(self, slug: str) -> dict[str, Any] | None:
        response = (
            self.client.table("concepts")
            .select("id, name, slug, description")
            .eq("slug", slug)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def list_concepts(self) -> list[dict[str, Any]]:
        """All concepts (id, name, slug, description), no embeddings."""
        try:
            response = self.client.table("concepts").select("id, name, slug, description").execute()
            return response.data or []
        except Exception as e:
            logger.error(f"Failed to list concepts: {e}")
            raise

    def list_concepts_with_embeddings(self) -> list[dict[str, Any]]:
        """Concepts that already have an embedding, with vectors decoded."""
        try:
            response = (
                self.client.table("concepts")
                .select("id, name, slug, embedding")
                .not_.is_("embedding", "null")
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to list concept embeddings: {e}")
            raise

        concepts = []
        for row in response.data or []:
            row["embedding"] = coerce_vector(row.get("embedding"))
            if row["embedding"] is not None:
                concepts.append(row)
        return concepts

    def list_concepts_missing_embeddings(self, start_from: int, batch_size: int) -> list[dict[str, Any]]:
        response = (
            self.client.table("concepts")
            .select("id, name, description")
            .is_("embedding", "null")
            .range(start_from, start_from + batch_size - 1)
            .execute()
        )
        return response.data or []

    def count_concepts_missing_embeddings(self) -> int:
        response = (
            self.client.table("concepts")
            .select("id", count="exact", head=True)
            .is_("embedding", "null")
            .execute()
        )
        return response.count or 0

    def update_concept_embedding(self, concept_id: str, embedding: list[float]) -> None:
        try:
            self.client.table("concepts").update({"embedding": embedding}).eq(
                "id", concept_id
            ).execute()
        except APIError as e:
            logger.error(f"Failed to store embedding for concept {concept_id}: {e.message}")
            raise as_persistence_error(e, f"store embedding for concept {concept_id}") from e

    def insert_concept(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a concept row.

        Raises:
            PersistenceError: If the insert fails (e.g. slug already taken)
        """
        try:
            response = self.client.table("concepts").insert(payload).execute()
        except APIError as e:
            logger.error(f"Failed to create concept {payload.get('slug')}: {e.message}")
            raise as_persistence_error(e, "create concept") from e

        if not response.data:
            raise ValueError("No data returned from insert_concept")
        return response.data[0]

    def upsert_insight_concept_links(self, insight_ids: list[str], concept_id: str) -> int:
        """Link insights to a concept, ignoring links that already exist."""
        if not insight_ids:
            return 0

        rows = [{"insight_id": insight_id, "concept_id": concept_id} for insight_id in insight_ids]
        try:
            self.client.table("insight_concepts").upsert(
                rows, on_conflict="insight_id,concept_id"
            ).execute()
        except APIError as e:
            raise as_persistence_error(e, f"link insights to concept {concept_id}") from e
        return len(rows)

    def link_insight_to_concepts(self, insight_id: str, concept_ids: list[str]) -> int:
        """
        Link one insight to concepts.

        Existing links are skipped row by row (ON CONFLICT DO NOTHING).

        Raises:
            PersistenceError: If the write fails
        """
        if not concept_ids:
            return 0

        rows = [{"insight_id": insight_id, "concept_id": concept_id} for concept_id in concept_ids]
        try:
            self.client.table("insight_concepts").upsert(
                rows, on_conflict="insight_id,concept_id", ignore_duplicates=True
            ).execute()
        except APIError as e:
            raise as_persistence_error(e, f"tag insight {insight_id}") from e
        return len(rows)

    def list_concept_insights(self, concept_id: str) -> list[dict[str, Any]]:
        """Non-deleted insights tagged to a concept, with generation fields."""
        try:
            response = (
                self.client.table("insight_concepts")
                .select(f"insights!inner({GENERATION_INSIGHT_COLUMNS})")
                .eq("concept_id", concept_id)
                .is_("insights.deleted_at", "null")
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to list insights for concept {concept_id}: {e}")
            raise

        return [row["insights"] for row in response.data or [] if (row.get("insights") or {}).get("id")]
