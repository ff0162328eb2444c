"""
Export of reviewed merge decisions as fine-tuning data for the dedup model.

Approved clusters yield positive pairs (canonical insight vs. each other
selected member) and "partial merge" negatives (selected vs. unselected
members). Rejected clusters yield negatives for every member pair.
"""

import json
from itertools import combinations
from typing import Any, Literal

from pydantic import BaseModel, Field

from insight_engine.core.dedup_model import DEDUP_SYSTEM_PROMPT, build_merge_prompt
from insight_engine.core.logging import get_logger

logger = get_logger(__name__)

LabelSource = Literal["approved_merge", "rejected_cluster", "partial_merge"]

MERGE_REPLY = "MERGE - These insights express the same idea and should be combined."
KEEP_SEPARATE_REPLY = "DON'T MERGE - These insights are different and should remain separate."


class TrainingInsight(BaseModel):
    id: str
    statement: str
    context_note: str | None = None
    confidence: str = "medium"
    evidence_type: str = "Other"
    similarity: float | None = None


class TrainingExample(BaseModel):
    """One labeled insight pair."""

    insight1: TrainingInsight
    insight2: TrainingInsight
    should_merge: bool
    label_source: LabelSource
    cluster_id: str | None = None
    similarity_score: float | None = None
    canonical_selected: str | None = None


class TrainingDataExport(BaseModel):
    positive: list[TrainingExample] = Field(default_factory=list)
    negative: list[TrainingExample] = Field(default_factory=list)
    total: int = 0
    stats: dict[str, int] = Field(default_factory=dict)

    @property
    def examples(self) -> list[TrainingExample]:
        return [*self.positive, *self.negative]


def _training_insight(member: dict[str, Any]) -> TrainingInsight | None:
    insight = member.get("insight") or {}
    if not insight.get("id"):
        return None
    return TrainingInsight(
        id=insight["id"],
        statement=insight.get("statement") or "",
        context_note=insight.get("context_note"),
        confidence=insight.get("confidence") or "medium",
        evidence_type=insight.get("evidence_type") or "Other",
        similarity=member.get("similarity") or None,
    )


def _approved_cluster_examples(store: Any, cluster: dict[str, Any]) -> list[TrainingExample]:
    members = [m for m in cluster.get("members", []) if _training_insight(m)]
    selected = [m for m in members if m.get("is_selected")]
    if not selected:
        return []

    unique_insight_id = next(
        (m["insight"].get("unique_insight_id") for m in members if m["insight"].get("unique_insight_id")),
        None,
    )
    if not unique_insight_id:
        # Approved but never merged
        return []

    unique = store.get_unique_insight(unique_insight_id)
    canonical_id = (unique or {}).get("canonical_raw_id")
    canonical = next((m for m in selected if m["raw_insight_id"] == canonical_id), selected[0])
    canonical_insight = _training_insight(canonical)

    examples = []
    for member in selected:
        if member["raw_insight_id"] == canonical["raw_insight_id"]:
            continue
        examples.append(
            TrainingExample(
                insight1=canonical_insight,
                insight2=_training_insight(member),
                should_merge=True,
                label_source="approved_merge",
                cluster_id=cluster["id"],
                similarity_score=member.get("similarity") or None,
                canonical_selected=canonical["raw_insight_id"],
            )
        )

    for chosen in selected:
        for left_out in (m for m in members if not m.get("is_selected")):
            examples.append(
                TrainingExample(
                    insight1=_training_insight(chosen),
                    insight2=_training_insight(left_out),
                    should_merge=False,
                    label_source="partial_merge",
                    cluster_id=cluster["id"],
                    similarity_score=left_out.get("similarity") or None,
                    canonical_selected=canonical["raw_insight_id"],
                )
            )

    return examples


def _rejected_cluster_examples(cluster: dict[str, Any]) -> list[TrainingExample]:
    members = sorted(
        (m for m in cluster.get("members", []) if _training_insight(m)),
        key=lambda m: m.get("similarity") or 0.0,
        reverse=True,
    )
    return [
        TrainingExample(
            insight1=_training_insight(first),
            insight2=_training_insight(second),
            should_merge=False,
            label_source="rejected_cluster",
            cluster_id=cluster["id"],
            similarity_score=second.get("similarity") or None,
        )
        for first, second in combinations(members, 2)
    ]


def export_training_data(store: Any) -> TrainingDataExport:
    """
    Build labeled pairs from reviewed clusters.

    Args:
        store: InsightStore (list_clusters_with_members, get_unique_insight)

    Returns:
        TrainingDataExport with positive/negative examples and per-source counts
    """
    logger.info("Starting training data export")

    labeled: list[TrainingExample] = []
    for cluster in store.list_clusters_with_members("approved"):
        labeled.extend(_approved_cluster_examples(store, cluster))
    for cluster in store.list_clusters_with_members("rejected"):
        labeled.extend(_rejected_cluster_examples(cluster))

    positive = [e for e in labeled if e.should_merge]
    negative = [e for e in labeled if not e.should_merge]
    stats = {
        source: sum(1 for e in labeled if e.label_source == source)
        for source in ("approved_merge", "rejected_cluster", "partial_merge")
    }

    logger.info(f"Exported {len(positive)} positive and {len(negative)} negative examples")
    return TrainingDataExport(
        positive=positive, negative=negative, total=len(labeled), stats=stats
    )


def to_openai_jsonl(examples: list[TrainingExample]) -> str:
    """Chat fine-tuning JSONL, one example per line."""
    lines = []
    for example in examples:
        record = {
            "messages": [
                {"role": "system", "content": DEDUP_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": build_merge_prompt(
                        example.insight1.model_dump(),
                        example.insight2.model_dump(),
                        example.similarity_score,
                    ),
                },
                {
                    "role": "assistant",
                    "content": MERGE_REPLY if example.should_merge else KEEP_SEPARATE_REPLY,
                },
            ]
        }
        lines.append(json.dumps(record))
    return "\n".join(lines)


def to_json(examples: list[TrainingExample]) -> str:
    return json.dumps([e.model_dump() for e in examples], indent=2)
