"""Auto-tagging of insights to existing concepts."""

from typing import Any, Mapping

from insight_engine.core.errors import PersistenceError
from insight_engine.core.llm import invoke_json
from insight_engine.core.logging import get_logger
from insight_engine.core.schemas_insights import AutoTagResult, BatchAutoTagResult

logger = get_logger(__name__)

AUTOTAG_SYSTEM_PROMPT = (
    'Classify medical insights into topic categories. Return JSON: {"concept_slugs": ["slug1", "slug2"]} '
    'or {"concept_slugs": []}. Tag only if clearly relevant. Multiple tags allowed.'
)

BATCH_AUTOTAG_SYSTEM_PROMPT = (
    AUTOTAG_SYSTEM_PROMPT
    + ' For batch processing, return {"results": [{"index": 1, "concept_slugs": [...]}, ...]} '
    "matching input order."
)

MIN_KEYWORD_LENGTH = 4
NAME_MATCH_BONUS = 50
FALLBACK_CONCEPT_COUNT = 10


def _insight_text(insight: Mapping[str, Any]) -> str:
    qualifiers = insight.get("qualifiers") or {}
    parts = [
        insight.get("statement") or "",
        insight.get("context_note") or "",
        str(qualifiers.get("population") or ""),
        str(qualifiers.get("dose") or ""),
        str(qualifiers.get("duration") or ""),
    ]
    return " ".join(parts).lower()


def filter_relevant_concepts(
    insight: Mapping[str, Any], concepts: list[dict[str, Any]], top_n: int = 15
) -> list[dict[str, Any]]:
    """
    Keyword pre-filter: the `top_n` concepts sharing the most text with the insight.

    Each concept keyword longer than three characters found in the insight
    scores its length; a direct name or slug hit adds 50. Ties keep list order.
    """
    if not concepts:
        return []

    text = _insight_text(insight)

    def score(concept: dict[str, Any]) -> int:
        name = (concept.get("name") or "").lower()
        slug = (concept.get("slug") or "").lower()
        concept_text = f"{name} {slug} {(concept.get('description') or '').lower()}"
        total = sum(len(word) for word in concept_text.split() if len(word) >= MIN_KEYWORD_LENGTH and word in text)
        if (name and name in text) or (slug and slug in text):
            total += NAME_MATCH_BONUS
        return total

    top = sorted(concepts, key=score, reverse=True)[:top_n]
    return top or concepts[:FALLBACK_CONCEPT_COUNT]


def format_concept_list(concepts: list[dict[str, Any]]) -> str:
    lines = []
    for c in concepts:
        line = f"{c['slug']}: {c['name']}"
        if c.get("description"):
            line += f" - {c['description']}"
        lines.append(line)
    return "\n".join(lines)


def slugs_to_ids(slugs: list[str], concepts: list[dict[str, Any]]) -> list[str]:
    """Map slugs against the full concept list, dropping unknown ones."""
    by_slug = {c["slug"]: c["id"] for c in concepts}
    ids: list[str] = []
    for slug in slugs:
        concept_id = by_slug.get(slug)
        if concept_id and concept_id not in ids:
            ids.append(concept_id)
    return ids


class AutoTagger:
    """
    Tags insights to concepts with a JSON chat call.

    The concept list is read from the store on every call unless one is
    passed in, so concepts created by discovery are offered immediately.
    """

    def __init__(self, llm: Any, concept_store: Any, max_concepts: int = 15):
        self.llm = llm
        self.concept_store = concept_store
        self.max_concepts = max_concepts

    def get_concepts(self) -> list[dict[str, Any]]:
        return self.concept_store.list_concepts()

    def auto_tag_insight(
        self, insight: Mapping[str, Any], concepts: list[dict[str, Any]] | None = None
    ) -> list[str]:
        """
        Choose concepts for one insight.

        Returns:
            Concept ids; [] when nothing applies or the LLM call fails
        """
        concepts = self.get_concepts() if concepts is None else concepts
        if not concepts:
            return []

        relevant = filter_relevant_concepts(insight, concepts, self.max_concepts)
        user_prompt = f"Insight: {insight.get('statement', '')}"
        if insight.get("context_note"):
            user_prompt += f"\nContext: {insight['context_note']}"
        user_prompt += (
            f"\nType: {insight.get('insight_type') or 'Explanation'}"
            f"\n\nConcepts:\n{format_concept_list(relevant)}\n\nWhich slugs apply?"
        )

        try:
            result = invoke_json(self.llm, AUTOTAG_SYSTEM_PROMPT, user_prompt, AutoTagResult)
        except Exception as e:
            logger.error(f"Auto-tagging failed: {e}")
            return []

        return slugs_to_ids(result.concept_slugs, concepts)

    def auto_tag_batch(
        self,
        items: list[tuple[str, Mapping[str, Any]]],
        concepts: list[dict[str, Any]] | None = None,
        batch_size: int = 8,
    ) -> dict[str, list[str]]:
        """
        Tag several insights per LLM call.

        Args:
            items: (insight_id, insight) pairs
            concepts: Concept list, defaults to the current list (read once per call)
            batch_size: Insights per call

        Returns:
            insight_id -> concept ids; every input id is present
        """
        concepts = self.get_concepts() if concepts is None else concepts
        results: dict[str, list[str]] = {}

        for start in range(0, len(items), batch_size):
            batch = items[start : start + batch_size]

            relevant: list[dict[str, Any]] = []
            seen: set[str] = set()
            for _, insight in batch:
                for concept in filter_relevant_concepts(insight, concepts, self.max_concepts):
                    if concept["id"] not in seen:
                        seen.add(concept["id"])
                        relevant.append(concept)

            insights_list = "\n\n".join(
                f"{idx}. {insight.get('statement', '')}"
                + (f" [Context: {insight['context_note']}]" if insight.get("context_note") else "")
                for idx, (_, insight) in enumerate(batch, start=1)
            )
            user_prompt = (
                f"Classify these insights:\n\n{insights_list}\n\n"
                f"Available concepts:\n{format_concept_list(relevant)}\n\n"
                'Return JSON: {"results": [{"index": 1, "concept_slugs": ["slug1"]}, '
                '{"index": 2, "concept_slugs": []}]}'
            )

            try:
                parsed = invoke_json(self.llm, BATCH_AUTOTAG_SYSTEM_PROMPT, user_prompt, BatchAutoTagResult)
            except Exception as e:
                logger.error(f"Batch auto-tagging failed for items {start}-{start + len(batch)}: {e}")
                parsed = BatchAutoTagResult()

            for entry in parsed.results:
                position = entry.index - 1
                if 0 <= position < len(batch):
                    results[batch[position][0]] = slugs_to_ids(entry.concept_slugs, concepts)

            for insight_id, _ in batch:
                if insight_id not in results:
                    logger.warning(f"No auto-tag result for insight {insight_id}, marking as untagged")
                    results[insight_id] = []

        return results

    def auto_tag_and_link(self, insight_id: str, insight: Mapping[str, Any]) -> list[str]:
        """
        Tag one insight and write the links.

        Links that already exist are left as they are and the remaining ones
        are still written. Failures are logged. Never raises.

        Returns:
            Concept ids now linked to the insight; [] if the write failed
        """
        try:
            concept_ids = self.auto_tag_insight(insight)
            if not concept_ids:
                logger.info(f"No concepts matched for insight {insight_id}")
                return []

            try:
                self.concept_store.link_insight_to_concepts(insight_id, concept_ids)
            except PersistenceError as e:
                logger.error(f"Error inserting auto-tags for insight {insight_id}: {e}")
                return []

            logger.info(f"Auto-tagged insight {insight_id} to {len(concept_ids)} concepts")
            return concept_ids

        except Exception as e:
            logger.error(f"Error auto-tagging insight {insight_id}: {e}")
            return []

    def auto_tag_batch_and_link(
        self, items: list[tuple[str, Mapping[str, Any]]], batch_size: int = 8
    ) -> dict[str, Any]:
        """
        Tag several insights per LLM call and write each insight's links.

        Returns:
            {"processed", "tagged", "links", "errors", "results": {insight_id: concept ids}}
        """
        tags = self.auto_tag_batch(items, batch_size=batch_size)
        summary: dict[str, Any] = {"processed": len(items), "tagged": 0, "links": 0, "errors": 0, "results": {}}

        for insight_id, concept_ids in tags.items():
            if concept_ids:
                try:
                    self.concept_store.link_insight_to_concepts(insight_id, concept_ids)
                except PersistenceError as e:
                    logger.error(f"Error inserting auto-tags for insight {insight_id}: {e}")
                    summary["errors"] += 1
                    concept_ids = []
                else:
                    summary["tagged"] += 1
                    summary["links"] += len(concept_ids)
            summary["results"][insight_id] = concept_ids

        logger.info(
            f"Batch auto-tagged {summary['tagged']} of {summary['processed']} insights",
            extra={"extra_data": {"links": summary["links"], "errors": summary["errors"]}},
        )
        return summary
