"""FastAPI dependency providers built from the clients on app.state."""

from typing import Any

from fastapi import Depends, Request

from insight_engine.core.autotag import AutoTagger
from insight_engine.core.clustering import ClusteringEngine
from insight_engine.core.concept_discovery import ConceptDiscovery
from insight_engine.core.config import Settings
from insight_engine.core.dedup_model import DeduplicationModel
from insight_engine.core.embeddings import EmbeddingService
from insight_engine.core.topic_generation import TopicGenerator
from insight_engine.db.concepts import ConceptStore
from insight_engine.db.insights import InsightStore
from insight_engine.db.jobs import JobStore
from insight_engine.db.topics import TopicStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_llm(request: Request) -> Any:
    return request.app.state.llm


def get_openai_client(request: Request) -> Any:
    return request.app.state.openai


def get_insight_store(request: Request) -> InsightStore:
    return InsightStore(request.app.state.supabase)


def get_concept_store(request: Request) -> ConceptStore:
    return ConceptStore(request.app.state.supabase)


def get_topic_store(request: Request) -> TopicStore:
    return TopicStore(request.app.state.supabase)


def get_job_store(request: Request) -> JobStore:
    return JobStore(request.app.state.supabase)


def get_embedding_service(
    client: Any = Depends(get_openai_client), settings: Settings = Depends(get_app_settings)
) -> EmbeddingService:
    return EmbeddingService.from_settings(client, settings)


def get_dedup_model(
    client: Any = Depends(get_openai_client),
    store: InsightStore = Depends(get_insight_store),
    settings: Settings = Depends(get_app_settings),
) -> DeduplicationModel:
    return DeduplicationModel(
        client,
        store,
        threshold=settings.DEDUP_MERGE_THRESHOLD,
        batch_size=settings.DEDUP_BATCH_SIZE,
        batch_delay_seconds=settings.DEDUP_BATCH_DELAY_SECONDS,
    )


def get_clustering_engine(
    store: InsightStore = Depends(get_insight_store),
    embeddings: EmbeddingService = Depends(get_embedding_service),
    settings: Settings = Depends(get_app_settings),
) -> ClusteringEngine:
    return ClusteringEngine.from_settings(store, embeddings, settings)


def get_concept_discovery(
    llm: Any = Depends(get_llm),
    concept_store: ConceptStore = Depends(get_concept_store),
    insight_store: InsightStore = Depends(get_insight_store),
    embeddings: EmbeddingService = Depends(get_embedding_service),
    settings: Settings = Depends(get_app_settings),
) -> ConceptDiscovery:
    return ConceptDiscovery(
        llm,
        concept_store,
        insight_store,
        embeddings,
        similarity_threshold=settings.CONCEPT_SIMILARITY_THRESHOLD,
        batch_size=settings.CONCEPT_DISCOVERY_BATCH_SIZE,
    )


def get_autotagger(
    llm: Any = Depends(get_llm),
    concept_store: ConceptStore = Depends(get_concept_store),
    settings: Settings = Depends(get_app_settings),
) -> AutoTagger:
    return AutoTagger(llm, concept_store, max_concepts=settings.AUTOTAG_MAX_CONCEPTS)


def get_topic_generator(
    llm: Any = Depends(get_llm),
    concept_store: ConceptStore = Depends(get_concept_store),
    topic_store: TopicStore = Depends(get_topic_store),
    settings: Settings = Depends(get_app_settings),
) -> TopicGenerator:
    return TopicGenerator(llm, concept_store, topic_store, max_count=settings.PRIORITIZATION_MAX_COUNT)
