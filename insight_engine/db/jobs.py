"""Job lifecycle database operations."""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from supabase import Client

from insight_engine.core.logging import get_logger

logger = get_logger(__name__)


def _utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


class JobStore:
    """
    Persisted job state and progress.

    Background work writes its status here so any number of clients can poll
    it, independent of the request that started the job.
    """

    def __init__(self, client: Client):
        self.client = client

    def create_job(self, job_type: str, input_json: dict[str, Any], run_id: UUID) -> UUID:
        """
        Create a new job record.

        Args:
            job_type: Type of job (e.g., "cluster_insights", "discover_concepts")
            input_json: Input parameters for the job
            run_id: Run tracking UUID

        Returns:
            Job UUID

        Raises:
            Exception: If database operation fails
        """
        try:
            response = (
                self.client.table("jobs")
                .insert(
                    {
                        "job_type": job_type,
                        "status": "queued",
                        "input": input_json,
                        "output": {},
                        "progress": {},
                        "run_id": str(run_id),
                    }
                )
                .execute()
            )

            if not response.data:
                raise ValueError("No data returned from create_job")

            job_id = UUID(response.data[0]["id"])
            logger.info(
                f"Created job {job_id} of type {job_type}",
                extra={"run_id": str(run_id), "job_id": str(job_id)},
            )
            return job_id

        except Exception as e:
            logger.error(f"Failed to create job: {e}", extra={"run_id": str(run_id)})
            raise

    def start_job(self, job_id: UUID) -> None:
        """Mark a job as processing."""
        try:
            self.client.table("jobs").update(
                {
                    "status": "processing",
                    "started_at": _utc_now_iso(),
                }
            ).eq("id", str(job_id)).execute()

            logger.info(f"Started job {job_id}", extra={"job_id": str(job_id)})

        except Exception as e:
            logger.error(f"Failed to start job: {e}", extra={"job_id": str(job_id)})
            raise

    def update_progress(self, job_id: UUID, progress: dict[str, Any]) -> None:
        """
        Record job progress.

        Best effort: a failed write is logged and the job keeps running.
        """
        try:
            self.client.table("jobs").update({"progress": progress}).eq(
                "id", str(job_id)
            ).execute()
        except Exception as e:
            logger.warning(f"Failed to record progress: {e}", extra={"job_id": str(job_id)})

    def complete_job(self, job_id: UUID, output_json: dict[str, Any]) -> None:
        """Mark a job as completed with output."""
        try:
            self.client.table("jobs").update(
                {
                    "status": "completed",
                    "output": output_json,
                    "completed_at": _utc_now_iso(),
                }
            ).eq("id", str(job_id)).execute()

            logger.info(f"Completed job {job_id}", extra={"job_id": str(job_id)})

        except Exception as e:
            logger.error(f"Failed to complete job: {e}", extra={"job_id": str(job_id)})
            raise

    def fail_job(self, job_id: UUID, error_message: str) -> None:
        """Mark a job as failed with error message."""
        try:
            self.client.table("jobs").update(
                {
                    "status": "failed",
                    "error": error_message,
                    "completed_at": _utc_now_iso(),
                }
            ).eq("id", str(job_id)).execute()

            logger.info(f"Failed job {job_id}: {error_message}", extra={"job_id": str(job_id)})

        except Exception as e:
            logger.error(f"Failed to update job as failed: {e}", extra={"job_id": str(job_id)})
            raise

    def get_job(self, job_id: UUID) -> dict[str, Any] | None:
        """
        Get a job by ID.

        Returns:
            Job dict or None if not found
        """
        try:
            response = self.client.table("jobs").select("*").eq("id", str(job_id)).execute()

            if response.data:
                return response.data[0]

            logger.warning(f"Job {job_id} not found")
            return None

        except Exception as e:
            logger.error(f"Failed to get job {job_id}: {e}")
            raise

    def list_jobs(
        self,
        job_type: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """
        List jobs, newest first, optionally filtered by type and status.

        Raises:
            Exception: If database operation fails
        """
        try:
            query = self.client.table("jobs").select("*").order("created_at", desc=True)

            if job_type:
                query = query.eq("job_type", job_type)
            if status:
                query = query.eq("status", status)

            response = query.range(offset, offset + limit - 1).execute()

            return response.data or []

        except Exception as e:
            logger.error(f"Failed to list jobs: {e}")
            raise
