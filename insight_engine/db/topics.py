"""Topic article and protocol database operations."""

from typing import Any

from postgrest.exceptions import APIError
from supabase import Client

from insight_engine.core.logging import get_logger
from insight_engine.db.supabase_client import as_persistence_error

logger = get_logger(__name__)

ARTICLES_TABLE = "topic_articles"
PROTOCOLS_TABLE = "topic_protocols"


class TopicStore:
    """Versioned generated documents per concept."""

    def __init__(self, client: Client):
        self.client = client

    def get_latest_version(self, table: str, concept_id: str, audience: str | None = None) -> int:
        """Highest stored version for a concept (and audience), 0 when none."""
        query = self.client.table(table).select("version").eq("concept_id", concept_id)
        if audience:
            query = query.eq("audience", audience)
        response = query.order("version", desc=True).limit(1).execute()
        if not response.data:
            return 0
        return int(response.data[0].get("version") or 0)

    def save_document(
        self,
        table: str,
        concept_id: str,
        payload: dict[str, Any],
        audience: str | None = None,
        replace_existing: bool = True,
    ) -> None:
        """
        Insert a new document version.

        Args:
            table: topic_articles or topic_protocols
            concept_id: Concept UUID
            payload: version, title, outline, body_markdown
            audience: Article audience; None for protocols
            replace_existing: Delete older versions first

        Raises:
            PersistenceError: If the insert fails
        """
        if replace_existing:
            delete_query = self.client.table(table).delete().eq("concept_id", concept_id)
            if audience:
                delete_query = delete_query.eq("audience", audience)
            delete_query.execute()

        row = {"concept_id": concept_id, **payload}
        if audience:
            row["audience"] = audience

        try:
            self.client.table(table).insert(row).execute()
        except APIError as e:
            logger.error(f"Failed to save {table} row for concept {concept_id}: {e.message}")
            raise as_persistence_error(e, f"save {table} for concept {concept_id}") from e
