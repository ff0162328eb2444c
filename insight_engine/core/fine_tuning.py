"""
Fine-tuning of the dedup classifier on reviewed merge decisions.

A launch exports the labeled pairs, uploads them as chat JSONL, starts an
OpenAI fine-tuning job and registers an inactive model row whose `model_id`
holds the job id until the job finishes. Activation is a separate, manual
step once the model has been evaluated.
"""

import time
from typing import Any

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field

from insight_engine.core.errors import InsufficientTrainingDataError, PersistenceError
from insight_engine.core.logging import get_logger
from insight_engine.core.training_data import export_training_data, to_openai_jsonl

logger = get_logger(__name__)

DEFAULT_BASE_MODEL = "gpt-4o-mini-2024-07-18"
DEFAULT_EPOCHS = 3
MIN_EXAMPLES_PER_LABEL = 10


class FineTuneLaunch(BaseModel):
    """What was started by one fine-tuning request."""

    model_config = ConfigDict(protected_namespaces=())

    fine_tune_job_id: str
    training_file_id: str
    model_version: int
    model_record_id: str | None = None
    base_model: str
    training_stats: dict[str, int] = Field(default_factory=dict)


class FineTuneStatus(BaseModel):
    job_id: str
    status: str
    fine_tuned_model: str | None = None
    trained_tokens: int | None = None
    error: str | None = None


def launch_fine_tune(
    store: Any,
    client: OpenAI,
    base_model: str = DEFAULT_BASE_MODEL,
    n_epochs: int = DEFAULT_EPOCHS,
    min_examples: int = MIN_EXAMPLES_PER_LABEL,
) -> FineTuneLaunch:
    """
    Start a fine-tuning job from the current training data.

    Args:
        store: InsightStore (cluster reads plus the dedup model registry)
        client: OpenAI client
        base_model: Model to fine-tune
        n_epochs: Training epochs
        min_examples: Required count of both positive and negative pairs

    Returns:
        FineTuneLaunch with the job, file and registry ids

    Raises:
        InsufficientTrainingDataError: If either label has fewer than `min_examples` pairs
    """
    export = export_training_data(store)
    if len(export.positive) < min_examples or len(export.negative) < min_examples:
        raise InsufficientTrainingDataError(len(export.positive), len(export.negative), min_examples)

    jsonl = to_openai_jsonl(export.examples)
    training_file = client.files.create(
        file=(f"training-data-{int(time.time())}.jsonl", jsonl.encode("utf-8")),
        purpose="fine-tune",
    )
    logger.info(f"Uploaded training file {training_file.id} ({export.total} examples)")

    job = client.fine_tuning.jobs.create(
        training_file=training_file.id,
        model=base_model,
        hyperparameters={"n_epochs": n_epochs},
    )
    logger.info(f"Created fine-tuning job {job.id} on {base_model}")

    version = store.get_latest_dedup_model_version() + 1
    record_id = None
    try:
        record = store.register_dedup_model(
            {
                "model_id": job.id,
                "fine_tune_job_id": job.id,
                "base_model": base_model,
                "version": version,
                "training_examples": export.total,
                "positive_examples": len(export.positive),
                "negative_examples": len(export.negative),
                "notes": f"Fine-tuning job created. Base model: {base_model}",
            }
        )
        record_id = record.get("id")
    except PersistenceError as e:
        # The job is already running upstream; the row can be added later
        logger.error(f"Could not register model version {version} for job {job.id}: {e}")

    return FineTuneLaunch(
        fine_tune_job_id=job.id,
        training_file_id=training_file.id,
        model_version=version,
        model_record_id=record_id,
        base_model=base_model,
        training_stats=export.stats,
    )


def sync_fine_tune_status(store: Any, client: OpenAI, fine_tune_job_id: str) -> FineTuneStatus:
    """Fetch a job's status; on success, record the fine-tuned model id in the registry."""
    job = client.fine_tuning.jobs.retrieve(fine_tune_job_id)

    if job.status == "succeeded" and job.fine_tuned_model:
        updated = store.record_fine_tuned_model(fine_tune_job_id, job.fine_tuned_model)
        logger.info(f"Fine-tuning job {fine_tune_job_id} succeeded; {updated} model row(s) updated")

    error = getattr(job.error, "message", None) if job.error else None
    return FineTuneStatus(
        job_id=job.id,
        status=job.status,
        fine_tuned_model=job.fine_tuned_model,
        trained_tokens=job.trained_tokens,
        error=error,
    )
