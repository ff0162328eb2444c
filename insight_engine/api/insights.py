"""API endpoints for insight clustering, embeddings, search, tagging and the dedup model."""

import uuid
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import PlainTextResponse

from insight_engine.api.background import run_job
from insight_engine.api.deps import (
    get_app_settings,
    get_autotagger,
    get_clustering_engine,
    get_concept_store,
    get_dedup_model,
    get_embedding_service,
    get_insight_store,
    get_job_store,
    get_openai_client,
)
from insight_engine.core.autotag import AutoTagger
from insight_engine.core.clustering import ClusteringEngine
from insight_engine.core.config import Settings
from insight_engine.core.dedup_model import DeduplicationModel
from insight_engine.core.embedding_backfill import backfill_embeddings
from insight_engine.core.embeddings import EmbeddingService
from insight_engine.core.errors import NotFoundError
from insight_engine.core.fine_tuning import (
    FineTuneLaunch,
    FineTuneStatus,
    launch_fine_tune,
    sync_fine_tune_status,
)
from insight_engine.core.logging import get_logger
from insight_engine.core.schemas_insights import (
    AutoTagBatchRequest,
    ClusteringRequest,
    ClusteringResult,
    EmbeddingBackfillRequest,
    FineTuneRequest,
    InsightSearchRequest,
    JobAccepted,
    MergeDecision,
    MergeDecisionRequest,
    ModelStatusUpdate,
)
from insight_engine.core.training_data import export_training_data, to_json, to_openai_jsonl
from insight_engine.db.concepts import ConceptStore
from insight_engine.db.insights import InsightStore
from insight_engine.db.jobs import JobStore

logger = get_logger(__name__)

router = APIRouter()


@router.post("/cluster", response_model=ClusteringResult | JobAccepted)
def cluster_insights(
    request: ClusteringRequest,
    background_tasks: BackgroundTasks,
    wait: bool = Query(False, description="Run inline and return the counts"),
    engine: ClusteringEngine = Depends(get_clustering_engine),
    job_store: JobStore = Depends(get_job_store),
) -> ClusteringResult | JobAccepted:
    """
    Build merge clusters for new insights.

    With `wait=true` the run happens inside the request and the counts are
    returned. Otherwise a `cluster_insights` job is queued; poll
    `/v1/jobs/{job_id}` for its output.
    """
    source_id = str(request.source_id) if request.source_id else None
    run_filter = str(request.run_id) if request.run_id else None

    if wait:
        return engine.build_merge_clusters_for_new_insights(source_id, run_filter, request.limit)

    run_id = uuid.uuid4()
    job_id = job_store.create_job(
        "cluster_insights",
        request.model_dump(mode="json"),
        run_id,
    )
    background_tasks.add_task(
        run_job,
        job_store,
        job_id,
        engine.build_merge_clusters_for_new_insights,
        source_id,
        run_filter,
        request.limit,
    )
    return JobAccepted(job_id=job_id, run_id=run_id)


@router.post("/embeddings", response_model=JobAccepted)
def generate_embeddings(
    request: EmbeddingBackfillRequest,
    background_tasks: BackgroundTasks,
    insight_store: InsightStore = Depends(get_insight_store),
    concept_store: ConceptStore = Depends(get_concept_store),
    embeddings: EmbeddingService = Depends(get_embedding_service),
    job_store: JobStore = Depends(get_job_store),
) -> JobAccepted:
    """Queue one backfill batch for rows without embeddings."""
    run_id = uuid.uuid4()
    job_id = job_store.create_job("generate_embeddings", request.model_dump(mode="json"), run_id)
    background_tasks.add_task(
        run_job,
        job_store,
        job_id,
        backfill_embeddings,
        insight_store,
        concept_store,
        embeddings,
        kind=request.kind,
        batch_size=request.batch_size,
        insights_start_from=request.insights_start_from,
        concepts_start_from=request.concepts_start_from,
    )
    return JobAccepted(job_id=job_id, run_id=run_id)


@router.post("/merge-decision", response_model=MergeDecision)
def predict_merge(
    request: MergeDecisionRequest,
    model: DeduplicationModel = Depends(get_dedup_model),
) -> MergeDecision:
    """Should two insights be merged? Falls back to the similarity rule without a model."""
    return model.predict_merge_decision(request.insight_a, request.insight_b, request.similarity_score)


@router.get("/model-status")
def model_status(
    model: DeduplicationModel = Depends(get_dedup_model),
    store: InsightStore = Depends(get_insight_store),
) -> dict:
    model_id = model.get_active_model_id()
    return {
        "active_model_id": model_id,
        "using_fine_tuned_model": model_id is not None,
        "models": store.list_dedup_models(),
    }


@router.post("/model-status")
def update_model_status(
    request: ModelStatusUpdate,
    store: InsightStore = Depends(get_insight_store),
) -> dict:
    """Activate a registered dedup model (switching off the current one) or deactivate it."""
    if request.action == "activate":
        row = store.activate_dedup_model(request.model_id)
    else:
        row = store.deactivate_dedup_model(request.model_id)
    return {"model_id": request.model_id, "action": request.action, "model": row}


@router.post("/fine-tune", response_model=FineTuneLaunch)
def start_fine_tune(
    request: FineTuneRequest | None = None,
    store: InsightStore = Depends(get_insight_store),
    client: Any = Depends(get_openai_client),
    settings: Settings = Depends(get_app_settings),
) -> FineTuneLaunch:
    """
    Upload the current training data and start an OpenAI fine-tuning job.

    The new model is registered inactive; once the job succeeds, poll
    `/fine-tune/{job_id}` to record its model id, then activate it through
    `/model-status`. Too little training data is a 422.
    """
    request = request or FineTuneRequest()
    return launch_fine_tune(
        store,
        client,
        base_model=request.base_model or settings.FINE_TUNE_BASE_MODEL,
        n_epochs=request.n_epochs,
        min_examples=settings.FINE_TUNE_MIN_EXAMPLES,
    )


@router.get("/fine-tune/{fine_tune_job_id}", response_model=FineTuneStatus)
def fine_tune_status(
    fine_tune_job_id: str,
    store: InsightStore = Depends(get_insight_store),
    client: Any = Depends(get_openai_client),
) -> FineTuneStatus:
    return sync_fine_tune_status(store, client, fine_tune_job_id)


@router.get("/training-data", response_class=PlainTextResponse)
def training_data(
    format: str = Query("openai", pattern="^(openai|json)$"),
    store: InsightStore = Depends(get_insight_store),
) -> PlainTextResponse:
    """Labeled merge pairs as OpenAI fine-tuning JSONL or a JSON array."""
    export = export_training_data(store)
    if format == "json":
        return PlainTextResponse(to_json(export.examples), media_type="application/json")
    return PlainTextResponse(
        to_openai_jsonl(export.examples),
        media_type="application/jsonl",
        headers={"Content-Disposition": 'attachment; filename="training-data.jsonl"'},
    )


@router.post("/{insight_id}/autotag")
def autotag_insight(
    insight_id: str,
    store: InsightStore = Depends(get_insight_store),
    tagger: AutoTagger = Depends(get_autotagger),
) -> dict:
    """Tag one insight to concepts and write the links."""
    insight = store.get_insight(insight_id)
    if not insight:
        raise NotFoundError("Insight", insight_id)

    concept_ids = tagger.auto_tag_and_link(insight_id, insight)
    return {"insight_id": insight_id, "concept_ids": concept_ids}


@router.post("/search")
def search_insights(
    request: InsightSearchRequest,
    store: InsightStore = Depends(get_insight_store),
    embeddings: EmbeddingService = Depends(get_embedding_service),
) -> dict:
    """
    Semantic search over raw insights.

    The query is embedded and matched through the indexed
    search_insights_semantic RPC, optionally limited to one concept.
    """
    query = request.query.strip()
    if not query:
        return {"query": request.query, "results": [], "count": 0}

    embedding = embeddings.generate_embedding(query)
    concept_id = str(request.concept_id) if request.concept_id else None
    results = store.search_similar_insights(embedding, request.threshold, request.limit, concept_id)
    return {"query": query, "results": results, "count": len(results)}


def _autotag_insights(
    store: InsightStore, tagger: AutoTagger, insight_ids: list[str], batch_size: int
) -> dict:
    insights = store.list_insights(insight_ids)
    return tagger.auto_tag_batch_and_link([(i["id"], i) for i in insights], batch_size=batch_size)


@router.post("/autotag-batch", response_model=JobAccepted)
def autotag_batch(
    request: AutoTagBatchRequest,
    background_tasks: BackgroundTasks,
    store: InsightStore = Depends(get_insight_store),
    tagger: AutoTagger = Depends(get_autotagger),
    job_store: JobStore = Depends(get_job_store),
) -> JobAccepted:
    """Queue an `autotag_insights` job that tags several insights per LLM call."""
    run_id = uuid.uuid4()
    job_id = job_store.create_job("autotag_insights", request.model_dump(mode="json"), run_id)
    background_tasks.add_task(
        run_job,
        job_store,
        job_id,
        _autotag_insights,
        store,
        tagger,
        request.insight_ids,
        request.batch_size,
    )
    return JobAccepted(job_id=job_id, run_id=run_id)
