"""
Tiered prioritization of a topic's insights for article/protocol generation.

Keeps the LLM context bounded (~350 insights by default) while guaranteeing
that recently added insights are included. Composite score:

    importance * 10 + actionability * 5 + evidence strength * 3 + 5 if recent

Tier 1 is the top 100 by score plus up to 50 further recent insights, tier 2
fills the remaining budget by score, tier 3 is everything else.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from insight_engine.core.schemas_insights import PrioritizedInsights, RawInsight

RECENT_WINDOW = timedelta(days=30)
TOP_BY_SCORE = 100
MAX_EXTRA_RECENT = 50
DEFAULT_MAX_COUNT = 350

DEFAULT_IMPORTANCE = 2

ACTIONABILITY_SCORES = {
    "Background": 0,
    "Low": 1,
    "Medium": 2,
    "High": 3,
}
DEFAULT_ACTIONABILITY = "Medium"

EVIDENCE_STRENGTH = {
    "MetaAnalysis": 5,
    "RCT": 4,
    "Cohort": 3,
    "CaseSeries": 2,
    "Other": 1,
    "Mechanistic": 1,
    "Animal": 1,
    "ExpertOpinion": 0,
}
DEFAULT_EVIDENCE = "Other"

AUDIENCE_LABELS = {"patient": "Patient", "clinician": "Clinician"}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_recent(insight: RawInsight, now: datetime) -> bool:
    """True when the insight was created within the last 30 days."""
    if insight.created_at is None:
        return False
    return _as_utc(insight.created_at) >= _as_utc(now) - RECENT_WINDOW


def score_insight(insight: RawInsight, recent: bool) -> int:
    """Composite priority score; unknown labels score like the defaults."""
    importance = insight.importance if insight.importance is not None else DEFAULT_IMPORTANCE
    actionability = ACTIONABILITY_SCORES.get(
        insight.actionability or DEFAULT_ACTIONABILITY, ACTIONABILITY_SCORES[DEFAULT_ACTIONABILITY]
    )
    evidence = EVIDENCE_STRENGTH.get(
        insight.evidence_type or DEFAULT_EVIDENCE, EVIDENCE_STRENGTH[DEFAULT_EVIDENCE]
    )

    return importance * 10 + actionability * 5 + evidence * 3 + (5 if recent else 0)


def matches_audience(insight: RawInsight, audience: str | None) -> bool:
    """Patient/clinician filters keep their own audience plus "Both"."""
    if not audience or audience == "both":
        return True
    primary = insight.primary_audience or "Both"
    return primary in (AUDIENCE_LABELS[audience], "Both")


def prioritize_insights_for_generation(
    insights: Iterable[RawInsight | Mapping[str, Any]],
    max_count: int = DEFAULT_MAX_COUNT,
    audience: str | None = None,
    now: datetime | None = None,
) -> PrioritizedInsights:
    """
    Split insights into generation tiers.

    Args:
        insights: All insights for a concept (models or database rows)
        max_count: Budget for tier 1 + tier 2
        audience: Optional "patient", "clinician" or "both"
        now: Reference time for recency, defaults to the current UTC time

    Returns:
        PrioritizedInsights; the tiers partition the audience-filtered input
    """
    now = now or datetime.now(timezone.utc)

    models = [i if isinstance(i, RawInsight) else RawInsight.model_validate(i) for i in insights]
    filtered = [i for i in models if matches_audience(i, audience)]

    if not filtered:
        return PrioritizedInsights()

    recent_ids = {i.id for i in filtered if is_recent(i, now)}

    # list.sort is stable, so equal scores keep their input order
    scored = sorted(
        filtered,
        key=lambda i: score_insight(i, i.id in recent_ids),
        reverse=True,
    )

    tier1: list[RawInsight] = []
    tier1_ids: set[str] = set()
    for insight in scored[:TOP_BY_SCORE]:
        if insight.id not in tier1_ids:
            tier1.append(insight)
            tier1_ids.add(insight.id)

    extra_recent = 0
    for insight in scored[TOP_BY_SCORE:]:
        if extra_recent >= MAX_EXTRA_RECENT:
            break
        if insight.id in recent_ids and insight.id not in tier1_ids:
            tier1.append(insight)
            tier1_ids.add(insight.id)
            extra_recent += 1

    tier2_max = max(0, max_count - len(tier1))
    tier2 = [i for i in scored if i.id not in tier1_ids][:tier2_max]

    tier12_ids = tier1_ids | {i.id for i in tier2}
    tier3 = [i for i in scored if i.id not in tier12_ids]

    return PrioritizedInsights(
        tier1=tier1,
        tier2=tier2,
        tier3=tier3,
        total_count=len(filtered),
        tier1_count=len(tier1),
        tier2_count=len(tier2),
        tier3_count=len(tier3),
    )


def get_insights_for_generation(prioritized: PrioritizedInsights) -> list[RawInsight]:
    """Insights sent to the LLM: tier 1 followed by tier 2."""
    return [*prioritized.tier1, *prioritized.tier2]
