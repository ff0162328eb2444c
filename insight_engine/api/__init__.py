"""API router for v1 endpoints."""

from fastapi import APIRouter

from insight_engine.api import concepts, insights, jobs, topics

router = APIRouter()

# Clustering, embeddings, merge decisions, training data, auto-tagging
router.include_router(insights.router, prefix="/insights", tags=["insights"])

# Concept discovery
router.include_router(concepts.router, prefix="/concepts", tags=["concepts"])

# Topic prioritization and article/protocol generation
router.include_router(topics.router, prefix="/topics", tags=["topics"])

# Job status routes
router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
