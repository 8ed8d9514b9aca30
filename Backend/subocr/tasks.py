import logging
import time
from typing import Optional

from subocr.core.celery_app import celery_app
from subocr.core.config import settings
from subocr.core.errors import RecordedJobError
from subocr.services.batch import get_batch_client
from subocr.services.pipeline import JobPipeline, StepOutcome
from subocr.services.storage import get_storage_provider
from subocr.services.task_manager import JobStatus, job_manager

logger = logging.getLogger(__name__)

_pipeline: Optional[JobPipeline] = None


def get_pipeline() -> JobPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = JobPipeline(job_manager, get_storage_provider(), get_batch_client)
    return _pipeline


def _is_eager() -> bool:
    return bool(celery_app.conf.task_always_eager)


@celery_app.task(bind=True, name="subocr.tasks.process_job")
def process_job_task(self, job_id: str, attempt: int = 0):
    """
    Runs one durable step of a job and schedules whatever comes next.

    With a broker, every step is its own task message: CONTINUE re-enqueues
    immediately, WAIT re-enqueues after the poll interval under a deterministic
    task id. In eager mode the job is driven inline until it settles.
    """
    pipeline = get_pipeline()

    try:
        if _is_eager():
            job = pipeline.run_until_settled(job_id, sleep=time.sleep)
            return job.status.value if job else None

        result = pipeline.run_next_step(job_id, attempt)

    except RecordedJobError as e:
        logger.error(f"Task {self.request.id}: {e}")
        return JobStatus.ERROR.value

    if result.outcome == StepOutcome.CONTINUE:
        process_job_task.delay(job_id)
    elif result.outcome == StepOutcome.WAIT:
        process_job_task.apply_async(
            (job_id, result.attempt),
            countdown=settings.BATCH_POLL_INTERVAL_SECONDS,
            task_id=result.wait_id,
        )
    return result.outcome.value


def dispatch_job(job_id: str) -> None:
    """Hand a freshly created or re-armed job to the worker."""
    if _is_eager():
        # No broker: the whole job, batch wait included, runs in this process
        logger.warning(f"Dispatching job {job_id} inline (eager mode, development only)")
    else:
        logger.info(f"Dispatching job {job_id}")
    process_job_task.delay(job_id)
