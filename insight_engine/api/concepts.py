"""API endpoints for concept discovery."""

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends

from insight_engine.api.background import run_job
from insight_engine.api.deps import get_concept_discovery, get_insight_store, get_job_store
from insight_engine.core.concept_discovery import ConceptDiscovery
from insight_engine.core.errors import NotFoundError
from insight_engine.core.schemas_insights import ConceptDiscoveryRequest, JobAccepted
from insight_engine.db.insights import InsightStore
from insight_engine.db.jobs import JobStore

router = APIRouter()


@router.post("/discover", response_model=JobAccepted)
def discover_concepts(
    request: ConceptDiscoveryRequest,
    background_tasks: BackgroundTasks,
    discovery: ConceptDiscovery = Depends(get_concept_discovery),
    insight_store: InsightStore = Depends(get_insight_store),
    job_store: JobStore = Depends(get_job_store),
) -> JobAccepted:
    """
    Queue concept discovery for a source's insights.

    Raises:
        NotFoundError: If the source does not exist (404)
    """
    source_id = str(request.source_id)
    if not insight_store.get_source(source_id):
        raise NotFoundError("Source", source_id)

    run_id = uuid.uuid4()
    job_id = job_store.create_job("discover_concepts", {"source_id": source_id}, run_id)
    background_tasks.add_task(
        run_job, job_store, job_id, discovery.discover_concepts_from_source, source_id
    )
    return JobAccepted(job_id=job_id, run_id=run_id)
