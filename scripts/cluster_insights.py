#!/usr/bin/env python3
"""
Run one clustering batch from the command line.

Usage:
    python scripts/cluster_insights.py [--source-id SOURCE_ID] [--run-id RUN_ID] [--limit 500]

Options:
    --source-id: Only cluster insights from this source
    --run-id: Only cluster insights from this processing run
    --limit: Candidate batch size, 1..1000 (default: 500)
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from insight_engine.core.clustering import ClusteringEngine
from insight_engine.core.config import get_settings
from insight_engine.core.embeddings import EmbeddingService, create_openai_client
from insight_engine.core.logging import get_logger
from insight_engine.core.schemas_insights import ClusteringRequest
from insight_engine.db.insights import InsightStore
from insight_engine.db.supabase_client import create_supabase_client

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build merge clusters for new insights")
    parser.add_argument("--source-id", type=str, help="Only cluster insights from this source")
    parser.add_argument("--run-id", type=str, help="Only cluster insights from this processing run")
    parser.add_argument(
        "--limit",
        type=int,
        default=500,
        help="Candidate batch size, clamped to 1..1000 (default: 500)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    request = ClusteringRequest(source_id=args.source_id, run_id=args.run_id, limit=args.limit)

    settings = get_settings()
    engine = ClusteringEngine.from_settings(
        InsightStore(create_supabase_client(settings)),
        EmbeddingService.from_settings(create_openai_client(settings), settings),
        settings,
    )

    logger.info("=" * 60)
    logger.info("INSIGHT CLUSTERING")
    logger.info("=" * 60)

    try:
        result = engine.build_merge_clusters_for_new_insights(
            str(request.source_id) if request.source_id else None,
            str(request.run_id) if request.run_id else None,
            request.limit,
        )
    except Exception as e:
        logger.error(f"Clustering failed: {e}")
        return 1

    for field, value in result.model_dump().items():
        print(f"{field}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
