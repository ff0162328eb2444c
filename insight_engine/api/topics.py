"""API endpoints for topic prioritization and document generation."""

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends

from insight_engine.api.background import run_job
from insight_engine.api.deps import get_concept_store, get_job_store, get_topic_generator
from insight_engine.core.errors import NotFoundError
from insight_engine.core.prioritization import prioritize_insights_for_generation
from insight_engine.core.schemas_insights import JobAccepted, PrioritizeRequest, PrioritizeResponse
from insight_engine.core.topic_generation import TopicGenerator
from insight_engine.db.concepts import ConceptStore
from insight_engine.db.jobs import JobStore

router = APIRouter()


def _concept_for_slug(store: ConceptStore, slug: str) -> dict:
    concept = store.get_concept_by_slug(slug)
    if not concept:
        raise NotFoundError("Concept", slug)
    return concept


@router.post("/{slug}/prioritize", response_model=PrioritizeResponse)
def prioritize_topic(
    slug: str,
    request: PrioritizeRequest | None = None,
    store: ConceptStore = Depends(get_concept_store),
) -> PrioritizeResponse:
    """Tier counts and the ids that would be sent to the LLM for a topic."""
    request = request or PrioritizeRequest()
    concept = _concept_for_slug(store, slug)

    prioritized = prioritize_insights_for_generation(
        store.list_concept_insights(concept["id"]),
        max_count=request.max_count,
        audience=request.audience,
    )
    return PrioritizeResponse(
        concept_id=concept["id"],
        total_count=prioritized.total_count,
        tier1_count=prioritized.tier1_count,
        tier2_count=prioritized.tier2_count,
        tier3_count=prioritized.tier3_count,
        tier1_ids=[i.id for i in prioritized.tier1],
        tier2_ids=[i.id for i in prioritized.tier2],
    )


@router.post("/{slug}/articles", response_model=JobAccepted)
def generate_articles(
    slug: str,
    background_tasks: BackgroundTasks,
    store: ConceptStore = Depends(get_concept_store),
    generator: TopicGenerator = Depends(get_topic_generator),
    job_store: JobStore = Depends(get_job_store),
) -> JobAccepted:
    """Queue clinician and patient article generation for a topic."""
    concept = _concept_for_slug(store, slug)

    run_id = uuid.uuid4()
    job_id = job_store.create_job(
        "generate_articles", {"slug": slug, "concept_id": concept["id"]}, run_id
    )
    background_tasks.add_task(
        run_job, job_store, job_id, generator.generate_topic_articles, concept["id"]
    )
    return JobAccepted(job_id=job_id, run_id=run_id)


@router.post("/{slug}/protocol", response_model=JobAccepted)
def generate_protocol(
    slug: str,
    background_tasks: BackgroundTasks,
    store: ConceptStore = Depends(get_concept_store),
    generator: TopicGenerator = Depends(get_topic_generator),
    job_store: JobStore = Depends(get_job_store),
) -> JobAccepted:
    """Queue protocol generation for a topic."""
    concept = _concept_for_slug(store, slug)

    run_id = uuid.uuid4()
    job_id = job_store.create_job(
        "generate_protocol", {"slug": slug, "concept_id": concept["id"]}, run_id
    )
    background_tasks.add_task(
        run_job, job_store, job_id, generator.generate_topic_protocol, concept["id"]
    )
    return JobAccepted(job_id=job_id, run_id=run_id)
