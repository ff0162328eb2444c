"""Job-tracked execution of background work."""

import logging
from typing import Any, Callable
from uuid import UUID

from pydantic import BaseModel

from insight_engine.core.logging import get_logger, log_with_context
from insight_engine.db.jobs import JobStore

logger = get_logger(__name__)


def _as_output(result: Any) -> dict[str, Any]:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, dict):
        return result
    return {"result": result}


def run_job(job_store: JobStore, job_id: UUID, work: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """
    Run `work` as job `job_id`: mark it processing, then completed with the
    result as output, or failed with the error message.
    """
    try:
        job_store.start_job(job_id)
        result = work(*args, **kwargs)
        job_store.complete_job(job_id, _as_output(result))
        log_with_context(
            logger,
            logging.INFO,
            f"Job {job_id} finished",
            job_id=str(job_id),
            task=getattr(work, "__name__", "job"),
        )

    except Exception as e:
        logger.error(f"Job {job_id} failed: {e}", exc_info=True, extra={"job_id": str(job_id)})
        try:
            job_store.fail_job(job_id, str(e))
        except Exception as fail_error:
            logger.error(f"Could not record failure for job {job_id}: {fail_error}")
