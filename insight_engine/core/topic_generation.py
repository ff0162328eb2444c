"""
Topic article and protocol generation.

A topic's insights are prioritized into tiers, tier 1 and tier 2 are sent to
the chat model, and the returned JSON outline is rendered to markdown and
saved as a new document version.
"""

import json
import re
from typing import Any

from insight_engine.core.errors import NotFoundError
from insight_engine.core.llm import invoke_json
from insight_engine.core.logging import get_logger
from insight_engine.core.prioritization import (
    get_insights_for_generation,
    prioritize_insights_for_generation,
)
from insight_engine.core.schemas_insights import RawInsight, TopicDocument
from insight_engine.db.topics import ARTICLES_TABLE, PROTOCOLS_TABLE

logger = get_logger(__name__)

ARTICLE_AUDIENCES = ("clinician", "patient")

# ruff: noqa: E501
_SHARED_RULES = """Rules:
- Use ONLY the provided insights as your factual source. Do not introduce new factual claims.
- Preserve numeric details, dose ranges, frequencies, lab thresholds, time frames and population qualifiers.
- Use numbered lists for ordered steps and "-" bullets for unordered items. Put each list item on its own line.
- Do not mention insights, chunks or transcripts.
- Do NOT include an H1 title heading; start directly with section content.

Output JSON:
{"title": "string", "sections": [{"id": "string", "title": "string", "paragraphs": [{"id": "p1", "text": "string", "insight_ids": ["uuid"]}]}]}

Every paragraph lists the insight_ids it primarily relied on."""

CLINICIAN_SYSTEM_PROMPT = f"""You are assisting a physician building an up-to-date lifestyle medicine reference.

Write a clinician-level topic article with sections: Overview; Key Mechanisms & Pathophysiology; Practical Protocols & Implementation; Risks, Caveats & Contraindications; Controversies & Areas of Uncertainty.
Write clear, professional prose for physicians and state the strength of evidence where relevant.

{_SHARED_RULES}"""

PATIENT_SYSTEM_PROMPT = f"""You are assisting a physician building an up-to-date lifestyle medicine reference for patients.

Write a patient-level topic article at roughly a 10th-grade reading level with sections: Big Picture; How This Affects Your Body; What You Can Do; Risks & When to Be Careful; Open Questions.
Minimize jargon, emphasize high-confidence actionable steps and suggest discussing changes with a clinician.

{_SHARED_RULES}"""

PROTOCOL_SYSTEM_PROMPT = f"""You are assisting a physician building a lifestyle medicine reference.

Create clinical protocols for the topic: clear, safe, actionable steps rather than general education. Use sections such as Overview; Phased Plan; Daily & Weekly Habits; Decision Paths & Tailoring; Monitoring, Labs & Follow-up; Contraindications & Safety.
Mark what is high-confidence versus speculative, and keep caveats in the Contraindications & Safety section.

{_SHARED_RULES}"""

SYSTEM_PROMPTS = {"clinician": CLINICIAN_SYSTEM_PROMPT, "patient": PATIENT_SYSTEM_PROMPT}

_H1 = re.compile(r"^#\s+.*$")
_LIST_ITEM = re.compile(r"^\s*(?:\d+\.\s|[-*]\s)")


def _tidy_markdown(markdown: str) -> str:
    """Drop H1 lines, open lists with a blank line, allow at most one blank line in a row."""
    lines: list[str] = []
    for line in markdown.splitlines():
        if _H1.match(line):
            continue

        is_item = bool(_LIST_ITEM.match(line))
        if is_item and lines and lines[-1].strip() and not _LIST_ITEM.match(lines[-1]):
            lines.append("")

        if not line.strip() and lines and not lines[-1].strip():
            continue
        lines.append(line.rstrip())

    return "\n".join(lines).strip()


def render_markdown(document: TopicDocument) -> str:
    """Render an outline as "## Section" blocks of paragraphs."""
    blocks = []
    for section in document.sections:
        paragraphs = "\n\n".join(p.text for p in section.paragraphs)
        blocks.append(f"## {section.title}\n\n{paragraphs}")
    return _tidy_markdown("\n\n".join(blocks))


def _insights_payload(insights: list[RawInsight]) -> str:
    fields = [
        "id",
        "statement",
        "context_note",
        "evidence_type",
        "qualifiers",
        "confidence",
        "importance",
        "actionability",
        "insight_type",
        "direct_quote",
        "tone",
    ]
    rows = []
    for insight in insights:
        data = insight.model_dump()
        rows.append({field: data.get(field) for field in fields if data.get(field) is not None})
    return json.dumps(rows, indent=2, default=str)


def build_user_prompt(concept: dict[str, Any], insights: list[RawInsight], request: str) -> str:
    return (
        f"Topic: {concept['name']}\n"
        f"Description: {concept.get('description') or 'No description'}\n\n"
        f"Insights ({len(insights)} total):\n{_insights_payload(insights)}\n\n"
        f"{request}"
    )


class TopicGenerator:
    """Generates versioned topic articles and protocols for a concept."""

    def __init__(self, llm: Any, concept_store: Any, topic_store: Any, max_count: int = 350):
        self.llm = llm
        self.concept_store = concept_store
        self.topic_store = topic_store
        self.max_count = max_count

    def _load_topic(self, concept_id: str) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        concept = self.concept_store.get_concept(concept_id)
        if not concept:
            raise NotFoundError("Concept", concept_id)

        insights = self.concept_store.list_concept_insights(concept_id)
        if not insights:
            raise NotFoundError("Insights for concept", concept_id)

        return concept, insights

    def _generate(
        self,
        system_prompt: str,
        concept: dict[str, Any],
        insights: list[RawInsight],
        request: str,
    ) -> tuple[TopicDocument, str]:
        document = invoke_json(
            self.llm, system_prompt, build_user_prompt(concept, insights, request), TopicDocument
        )
        return document, render_markdown(document)

    def generate_topic_articles(self, concept_id: str) -> dict[str, int]:
        """
        Generate clinician and patient articles for a concept.

        Each audience gets its own prioritized insight set and replaces the
        audience's previous article with version + 1.

        Returns:
            audience -> saved version

        Raises:
            NotFoundError: If the concept does not exist or has no insights
        """
        concept, rows = self._load_topic(concept_id)
        versions: dict[str, int] = {}

        for audience in ARTICLE_AUDIENCES:
            prioritized = prioritize_insights_for_generation(
                rows, max_count=self.max_count, audience=audience
            )
            selected = get_insights_for_generation(prioritized)
            logger.info(
                f"Generating {audience} article for {concept['name']}: "
                f"{len(selected)} of {prioritized.total_count} insights "
                f"(tier1={prioritized.tier1_count}, tier2={prioritized.tier2_count})"
            )

            try:
                document, body = self._generate(
                    SYSTEM_PROMPTS[audience],
                    concept,
                    selected,
                    f"Generate a {audience} article for this topic.",
                )
                version = self.topic_store.get_latest_version(ARTICLES_TABLE, concept_id, audience) + 1
                self.topic_store.save_document(
                    ARTICLES_TABLE,
                    concept_id,
                    {
                        "version": version,
                        "title": document.title,
                        "outline": {"sections": [s.model_dump() for s in document.sections]},
                        "body_markdown": body,
                    },
                    audience=audience,
                )
            except Exception as e:
                logger.error(f"Error generating {audience} article for concept {concept_id}: {e}")
                raise

            versions[audience] = version
            logger.info(f"Generated {audience} article for {concept['name']} (version {version})")

        return versions

    def generate_topic_protocol(self, concept_id: str) -> int:
        """
        Generate a protocol document for a concept.

        Older protocol versions are kept.

        Returns:
            Saved version

        Raises:
            NotFoundError: If the concept does not exist or has no insights
        """
        concept, rows = self._load_topic(concept_id)

        prioritized = prioritize_insights_for_generation(rows, max_count=self.max_count)
        selected = get_insights_for_generation(prioritized)

        document, body = self._generate(
            PROTOCOL_SYSTEM_PROMPT,
            concept,
            selected,
            "Generate protocols for this topic.",
        )
        if not document.sections:
            raise ValueError("Invalid protocol structure: no sections")

        version = self.topic_store.get_latest_version(PROTOCOLS_TABLE, concept_id) + 1
        self.topic_store.save_document(
            PROTOCOLS_TABLE,
            concept_id,
            {
                "version": version,
                "title": document.title,
                "outline": {"sections": [s.model_dump() for s in document.sections]},
                "body_markdown": body,
            },
            replace_existing=False,
        )

        logger.info(f"Generated protocol for {concept['name']} (version {version})")
        return version
