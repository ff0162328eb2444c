"""Pydantic schemas for insights, clusters, concepts and pipeline results."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

Confidence = Literal["high", "medium", "low"]
Audience = Literal["patient", "clinician", "both"]
ClusterStatus = Literal["pending", "approved", "rejected"]
EmbeddingKind = Literal["insights", "concepts", "both"]
JobStatus = Literal["queued", "processing", "completed", "failed"]
JobType = Literal[
    "cluster_insights",
    "generate_embeddings",
    "autotag_insights",
    "discover_concepts",
    "generate_articles",
    "generate_protocol",
]


class InsightText(BaseModel):
    """The fields of an insight that the dedup model compares."""

    statement: str = Field(..., min_length=1, description="Insight statement")
    context_note: str | None = Field(default=None, description="Optional context")
    confidence: str = Field(default="medium", description="high, medium or low")
    evidence_type: str = Field(default="Other", description="Evidence tag (RCT, Cohort, ...)")


class RawInsight(InsightText):
    """An atomic extracted statement as stored in the insights table."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Insight UUID")
    importance: int | None = Field(default=None, ge=1, le=3, description="1 (low) to 3 (high)")
    actionability: str | None = Field(
        default=None, description="Background, Low, Medium or High"
    )
    primary_audience: str | None = Field(default=None, description="Patient, Clinician or Both")
    insight_type: str | None = Field(default=None, description="Protocol, Mechanism, ...")
    qualifiers: dict[str, Any] | None = Field(default=None, description="Population, dose, ...")
    unique_insight_id: str | None = Field(default=None, description="Canonical insight link")
    deleted_at: datetime | None = Field(default=None, description="Soft-delete timestamp")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")


class UniqueInsight(BaseModel):
    """Canonical deduplicated representative of one or more raw insights."""

    id: str
    canonical_statement: str
    canonical_raw_id: str | None = None


class MergeCluster(BaseModel):
    """A proposed grouping of raw insights expressing the same idea."""

    id: str
    status: ClusterStatus = "pending"
    created_by: str = "system"
    suggested_unique_insight_id: str | None = None


class MergeClusterMember(BaseModel):
    """Cluster membership row."""

    cluster_id: str
    raw_insight_id: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    is_selected: bool = True


class Concept(BaseModel):
    """A topic/category that insights are tagged to."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    slug: str
    description: str | None = None
    auto_created: bool = False
    needs_review: bool = False


class MergeDecision(BaseModel):
    """Verdict from the deduplication model adapter."""

    should_merge: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str | None = None


class ClusteringResult(BaseModel):
    """Aggregate counts for one clustering run."""

    processed: int = 0
    clusters_created: int = 0
    members_added: int = 0
    merge_into_unique_suggestions: int = 0
    errors: int = 0
    skipped_already_clustered: int = 0


class PrioritizedInsights(BaseModel):
    """Insights for a topic split into generation tiers."""

    tier1: list[RawInsight] = Field(default_factory=list, description="Must include")
    tier2: list[RawInsight] = Field(default_factory=list, description="Supporting")
    tier3: list[RawInsight] = Field(default_factory=list, description="Excluded from context")
    total_count: int = 0
    tier1_count: int = 0
    tier2_count: int = 0
    tier3_count: int = 0


# ============================================================================
# LLM output schemas
# ============================================================================


class ConceptExtraction(BaseModel):
    """Concept names proposed for a batch of insights."""

    concepts: list[str] = Field(default_factory=list)


class AutoTagResult(BaseModel):
    """Concept slugs chosen for a single insight."""

    concept_slugs: list[str] = Field(default_factory=list)


class BatchAutoTagEntry(BaseModel):
    index: int
    concept_slugs: list[str] = Field(default_factory=list)


class BatchAutoTagResult(BaseModel):
    results: list[BatchAutoTagEntry] = Field(default_factory=list)


class TopicParagraph(BaseModel):
    id: str
    text: str
    insight_ids: list[str] = Field(default_factory=list)


class TopicSection(BaseModel):
    id: str
    title: str
    paragraphs: list[TopicParagraph] = Field(default_factory=list)


class TopicDocument(BaseModel):
    """Outline returned by the article and protocol generators."""

    title: str
    sections: list[TopicSection] = Field(default_factory=list)


# ============================================================================
# API request/response schemas
# ============================================================================


class ClusteringRequest(BaseModel):
    """Request body for a clustering run."""

    source_id: UUID | None = Field(default=None, description="Only cluster this source")
    run_id: UUID | None = Field(default=None, description="Only cluster this processing run")
    limit: int | None = Field(default=None, description="Batch size, clamped to 1..1000")

    @field_validator("limit")
    @classmethod
    def clamp_limit(cls, v: int | None) -> int | None:
        if v is None:
            return None
        return min(max(1, v), 1000)


class EmbeddingBackfillRequest(BaseModel):
    """Request body for the embedding backfill job."""

    kind: EmbeddingKind = Field(default="both", description="insights, concepts or both")
    batch_size: int = Field(default=50, ge=1, le=500, description="Rows per kind")
    insights_start_from: int = Field(default=0, ge=0, description="Offset into insights without embeddings")
    concepts_start_from: int = Field(default=0, ge=0, description="Offset into concepts without embeddings")


class MergeDecisionRequest(BaseModel):
    """Request body for a single merge prediction."""

    insight_a: InsightText
    insight_b: InsightText
    similarity_score: float | None = Field(default=None, ge=-1.0, le=1.0)


class ModelStatusUpdate(BaseModel):
    """Request body for switching a dedup model on or off."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(..., description="deduplication_models row id")
    action: Literal["activate", "deactivate"]


class FineTuneRequest(BaseModel):
    base_model: str | None = Field(default=None, description="Defaults to FINE_TUNE_BASE_MODEL")
    n_epochs: int = Field(default=3, ge=1, le=50)


class InsightSearchRequest(BaseModel):
    """Request body for semantic insight search."""

    query: str = Field(..., min_length=1, max_length=2000)
    concept_id: UUID | None = Field(default=None, description="Only insights tagged to this concept")
    limit: int = Field(default=50, ge=1, le=200)
    threshold: float = Field(default=0.7, ge=0.0, le=1.0, description="Minimum cosine similarity")


class AutoTagBatchRequest(BaseModel):
    insight_ids: list[str] = Field(..., min_length=1, max_length=200)
    batch_size: int = Field(default=8, ge=1, le=20, description="Insights per LLM call")


class ConceptDiscoveryRequest(BaseModel):
    source_id: UUID = Field(..., description="Source whose insights are scanned")


class PrioritizeRequest(BaseModel):
    max_count: int = Field(default=350, ge=1, description="Tier 1 + tier 2 budget")
    audience: Audience | None = Field(default=None, description="Optional audience filter")


class PrioritizeResponse(BaseModel):
    concept_id: str
    total_count: int
    tier1_count: int
    tier2_count: int
    tier3_count: int
    tier1_ids: list[str]
    tier2_ids: list[str]


class JobAccepted(BaseModel):
    """Response for endpoints that schedule background work."""

    job_id: UUID
    run_id: UUID
    status: str = "queued"
