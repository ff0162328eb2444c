"""
Concept discovery.

Proposes topic concepts for a source's insights with a JSON chat call, reuses
an existing concept when one is semantically close (or shares the slug), and
links the batch's insights to every resulting concept.
"""

import re
from typing import Any

from insight_engine.core.embeddings import EmbeddingService
from insight_engine.core.errors import NotFoundError
from insight_engine.core.llm import invoke_json
from insight_engine.core.logging import get_logger
from insight_engine.core.schemas_insights import ConceptExtraction
from insight_engine.core.similarity import rank_by_similarity

logger = get_logger(__name__)

# ruff: noqa: E501
CONCEPT_EXTRACTION_PROMPT = """You are analyzing medical insights to identify potential topic concepts.

For each insight, extract 1-3 potential topic keywords or phrases that could be used as concept names.

Return JSON: {"concepts": ["concept1", "concept2", "concept3"]}

Examples:
- "Insulin sensitivity protocols" -> ["Insulin Sensitivity", "Metabolic Health"]
- "Sleep optimization strategies" -> ["Sleep Optimization", "Circadian Health"]

Only extract concepts that are clearly medical/health topics. Return an empty array if no clear concepts are found."""

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to "-", trim dashes."""
    return _NON_SLUG.sub("-", name.lower()).strip("-")


def format_insights_for_prompt(insights: list[dict[str, Any]]) -> str:
    lines = []
    for idx, insight in enumerate(insights, start=1):
        line = f"{idx}. {insight.get('statement', '')}"
        if insight.get("context_note"):
            line += f" [Context: {insight['context_note']}]"
        lines.append(line)
    return "\n\n".join(lines)


class ConceptDiscovery:
    """Discovers concepts from insights and links insights to them."""

    def __init__(
        self,
        llm: Any,
        concept_store: Any,
        insight_store: Any,
        embeddings: EmbeddingService,
        similarity_threshold: float = 0.85,
        batch_size: int = 10,
    ):
        self.llm = llm
        self.concept_store = concept_store
        self.insight_store = insight_store
        self.embeddings = embeddings
        self.similarity_threshold = similarity_threshold
        self.batch_size = batch_size

    def extract_concepts_from_insights(self, insights: list[dict[str, Any]]) -> list[str]:
        """
        Ask the LLM for concept names covering a batch of insights.

        Returns:
            Distinct, stripped names in first-seen order; [] on any LLM failure
        """
        if not insights:
            return []

        user_prompt = f"Extract concepts from these insights:\n\n{format_insights_for_prompt(insights)}"
        try:
            extraction = invoke_json(self.llm, CONCEPT_EXTRACTION_PROMPT, user_prompt, ConceptExtraction)
        except Exception as e:
            logger.error(f"Concept extraction failed: {e}")
            return []

        names: list[str] = []
        for name in extraction.concepts:
            cleaned = name.strip()
            if cleaned and cleaned not in names:
                names.append(cleaned)
        return names

    def find_similar_concepts(
        self, name: str, threshold: float | None = None
    ) -> list[dict[str, Any]]:
        """
        Existing concepts whose embedding is strictly above `threshold`.

        Returns:
            Dicts with id, name and similarity, best first
        """
        threshold = self.similarity_threshold if threshold is None else threshold
        query = self.embeddings.generate_embedding(name)

        ranked = rank_by_similarity(
            query,
            self.concept_store.list_concepts_with_embeddings(),
            threshold,
            vector_of=lambda c: c.get("embedding"),
            inclusive=False,
        )
        return [
            {"id": concept["id"], "name": concept["name"], "similarity": similarity}
            for concept, similarity in ranked
        ]

    def create_concept_if_new(self, name: str, description: str, source_id: str) -> tuple[str, bool]:
        """
        Resolve a concept name to an id, creating the concept when nothing matches.

        Returns:
            (concept_id, is_new)
        """
        similar = self.find_similar_concepts(name)
        if similar:
            best = similar[0]
            logger.info(
                f"Found similar concept '{best['name']}' "
                f"(similarity {best['similarity']:.2f}) for '{name}'"
            )
            return best["id"], False

        slug = slugify(name)
        existing = self.concept_store.get_concept_by_slug(slug)
        if existing:
            return existing["id"], False

        embedding = self.embeddings.generate_concept_embedding({"name": name, "description": description})
        concept = self.concept_store.insert_concept(
            {
                "name": name,
                "slug": slug,
                "description": description,
                "auto_created": True,
                "needs_review": True,
                "created_from_source_id": source_id,
                "embedding": embedding,
            }
        )
        logger.info(f"Created new concept '{name}' (slug: {slug})")
        return concept["id"], True

    def discover_concepts_from_source(self, source_id: str) -> dict[str, int]:
        """
        Discover concepts for every insight of a source.

        Args:
            source_id: Source UUID

        Returns:
            {"processed": concept names handled, "created": new concepts, "linked": links written}

        Raises:
            NotFoundError: If the source does not exist
        """
        source = self.insight_store.get_source(source_id)
        if not source:
            raise NotFoundError("Source", source_id)

        insights = [i for i in self.insight_store.list_source_insights(source_id) if i.get("id")]
        stats = {"processed": 0, "created": 0, "linked": 0}
        if not insights:
            return stats

        description = f"Auto-detected from source: {source.get('title') or source_id}"

        for start in range(0, len(insights), self.batch_size):
            batch = insights[start : start + self.batch_size]
            insight_ids = [insight["id"] for insight in batch]

            for name in self.extract_concepts_from_insights(batch):
                try:
                    concept_id, is_new = self.create_concept_if_new(name, description, source_id)
                    if is_new:
                        stats["created"] += 1

                    try:
                        stats["linked"] += self.concept_store.upsert_insight_concept_links(
                            insight_ids, concept_id
                        )
                    except Exception as e:
                        logger.warning(f"Failed to link insights to concept {concept_id}: {e}")

                    stats["processed"] += 1

                except Exception as e:
                    logger.error(f"Error processing concept '{name}': {e}")

        logger.info(
            f"Concept discovery complete: processed={stats['processed']}, "
            f"created={stats['created']}, linked={stats['linked']}",
            extra={"extra_data": {"source_id": source_id}},
        )
        return stats
