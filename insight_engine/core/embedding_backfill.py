"""Backfill of missing insight and concept embeddings."""

import time
from typing import Any, Callable

from insight_engine.core.embeddings import EmbeddingService
from insight_engine.core.logging import get_logger
from insight_engine.core.similarity import compute_insight_hash

logger = get_logger(__name__)


def _backfill_rows(
    label: str,
    rows: list[dict[str, Any]],
    embed: Callable[[dict[str, Any]], list[float]],
    store_embedding: Callable[[dict[str, Any], list[float]], None],
    total: int,
    delay_seconds: float,
) -> dict[str, int]:
    stats = {"processed": 0, "errors": 0, "total": total}

    for row in rows:
        try:
            store_embedding(row, embed(row))
            stats["processed"] += 1
            logger.debug(f"Generated embedding for {label} {row['id']} ({stats['processed']}/{total})")
        except Exception as e:
            logger.error(f"Error generating embedding for {label} {row['id']}: {e}")
            stats["errors"] += 1

        if delay_seconds > 0:
            time.sleep(delay_seconds)

    return stats


def _next_cursor(stats: dict[str, int], start_from: int) -> dict[str, Any]:
    # Embedded rows leave the missing set; failed ones stay ahead of the cursor
    next_start = start_from + stats["errors"]
    still_missing = stats["total"] - stats["processed"]
    return {"start_from": next_start, "has_more": still_missing > next_start}


def backfill_embeddings(
    insight_store: Any,
    concept_store: Any,
    embeddings: EmbeddingService,
    kind: str = "both",
    batch_size: int = 50,
    insights_start_from: int = 0,
    concepts_start_from: int = 0,
    delay_seconds: float = 0.1,
) -> dict[str, Any]:
    """
    Embed one batch of insights and/or concepts that have no embedding yet.

    Each kind keeps its own offset into the rows still missing an embedding.
    Rows that get one drop out of that set, so a kind's next batch starts past
    only the rows that failed in this one.

    Args:
        insight_store: Store with list/count_insights_missing_embeddings
        concept_store: Store with list/count_concepts_missing_embeddings
        embeddings: Embedding service
        kind: "insights", "concepts" or "both"
        batch_size: Rows per kind
        insights_start_from: Offset into insights missing embeddings
        concepts_start_from: Offset into concepts missing embeddings
        delay_seconds: Pause after each row

    Returns:
        {"insights": {...}, "concepts": {...},
         "next_batch": {"insights": {"start_from", "has_more"}, "concepts": {...}, "has_more"}}
    """
    empty = {"processed": 0, "errors": 0, "total": 0}
    results: dict[str, Any] = {"insights": dict(empty), "concepts": dict(empty)}

    if kind in ("insights", "both"):
        total = insight_store.count_insights_missing_embeddings()
        rows = insight_store.list_insights_missing_embeddings(insights_start_from, batch_size)
        results["insights"] = _backfill_rows(
            "insight",
            rows,
            embeddings.generate_insight_embedding,
            lambda row, embedding: insight_store.update_insight_embedding(
                row["id"], embedding, content_hash=compute_insight_hash(row.get("statement") or "")
            ),
            total,
            delay_seconds,
        )

    if kind in ("concepts", "both"):
        total = concept_store.count_concepts_missing_embeddings()
        rows = concept_store.list_concepts_missing_embeddings(concepts_start_from, batch_size)
        results["concepts"] = _backfill_rows(
            "concept",
            rows,
            embeddings.generate_concept_embedding,
            lambda row, embedding: concept_store.update_concept_embedding(row["id"], embedding),
            total,
            delay_seconds,
        )

    cursors = {
        "insights": _next_cursor(results["insights"], insights_start_from),
        "concepts": _next_cursor(results["concepts"], concepts_start_from),
    }
    has_more = cursors["insights"]["has_more"] or cursors["concepts"]["has_more"]
    results["next_batch"] = {**cursors, "has_more": has_more}

    logger.info(
        f"Embedding backfill: insights={results['insights']['processed']}, "
        f"concepts={results['concepts']['processed']}, has_more={has_more}"
    )
    return results
