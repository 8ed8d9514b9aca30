import uuid
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List, Iterable
from enum import Enum

import redis

from subocr.db import get_db_connection, get_async_db_connection
from subocr.core.config import settings
from subocr.core.errors import RetryNotAllowedError
from subocr.services.storage import StorageProvider, job_prefix

logger = logging.getLogger(__name__)

# Redis Client for PubSub (Status Updates)
redis_client = None
try:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
    redis_client.ping()
    logger.info(f"Connected to Redis for Pub/Sub at {settings.REDIS_URL}")
except Exception as e:
    redis_client = None
    logger.warning(f"Redis not available ({e}). WebSockets will fallback to polling.")

def publish_update(job_id: str, data: Dict[str, Any]):
    """Publish update to Redis channel"""
    if redis_client:
        try:
            redis_client.publish(f"job:{job_id}", json.dumps(data, default=str))
        except Exception as e:
            logger.error(f"Redis publish failed: {e}")

class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    ERROR = "ERROR"

class JobStep(str, Enum):
    PREPROCESSING = "PREPROCESSING"
    BATCH_SUBMITTED = "BATCH_SUBMITTED"
    RESULTS_SAVED = "RESULTS_SAVED"
    DOCS_BUILT = "DOCS_BUILT"

class JobKind(str, Enum):
    OCR = "OCR"
    SUBTITLE_REMOVAL = "SUBTITLE_REMOVAL"

STEP_ORDER: List[JobStep] = [
    JobStep.PREPROCESSING,
    JobStep.BATCH_SUBMITTED,
    JobStep.RESULTS_SAVED,
    JobStep.DOCS_BUILT,
]

# Counters and external ids owned by each step; cleared when a job is retried from that step.
_STEP_RESETS: Dict[JobStep, Dict[str, Any]] = {
    JobStep.PREPROCESSING: {
        "total_images": 0,
        "processed_images": 0,
        "total_batches": 0,
        "batches_completed": 0,
    },
    JobStep.BATCH_SUBMITTED: {
        "submitted_images": 0,
        "batch_id": None,
        "batch_input_id": None,
        "batch_output_id": None,
    },
    JobStep.RESULTS_SAVED: {},
    JobStep.DOCS_BUILT: {},
}

@dataclass
class Job:
    job_id: str
    owner_id: str
    job_kind: JobKind
    status: JobStatus
    step: JobStep
    zip_key: str
    parent_job_id: Optional[str] = None
    error: Optional[str] = None
    total_images: int = 0
    processed_images: int = 0
    total_batches: int = 0
    batches_completed: int = 0
    submitted_images: int = 0
    batch_id: Optional[str] = None
    batch_input_id: Optional[str] = None
    batch_output_id: Optional[str] = None
    raw_zip_key: Optional[str] = None
    raw_zip_size_bytes: Optional[int] = None
    cropped_zip_key: Optional[str] = None
    cropped_zip_size_bytes: Optional[int] = None
    thumbnail_key: Optional[str] = None
    txt_key: Optional[str] = None
    txt_size_bytes: Optional[int] = None
    docx_key: Optional[str] = None
    docx_size_bytes: Optional[int] = None
    created_at: Any = None
    updated_at: Any = None
    version: int = 0  # For Optimistic Locking

    @property
    def progress(self) -> int:
        return compute_progress(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["job_kind"] = self.job_kind.value
        data["status"] = self.status.value
        data["step"] = self.step.value
        data["progress"] = self.progress
        return data

@dataclass
class Frame:
    job_id: str
    filename: str
    base_key: str
    index: int
    text: str

JOB_COLUMNS = tuple(Job.__dataclass_fields__.keys())

# Columns the pipeline may write through update_fields()
_UPDATABLE_COLUMNS = frozenset(JOB_COLUMNS) - {"job_id", "owner_id", "job_kind", "created_at", "updated_at", "version"}

def _row_to_job(row) -> Job:
    data = {column: row[column] for column in JOB_COLUMNS}
    data["job_kind"] = JobKind(data["job_kind"])
    data["status"] = JobStatus(data["status"])
    data["step"] = JobStep(data["step"])
    data["version"] = data["version"] or 0
    return Job(**data)

def _serialize(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value

def compute_progress(job: Job) -> int:
    """
    Overall progress in percent. Reaches 100 only once the job is DONE.
    """
    if job.status == JobStatus.DONE:
        return 100

    def ratio(done: int, total: int) -> float:
        if not total:
            return 0.0
        return min(1.0, max(0.0, (done or 0) / total))

    if job.job_kind == JobKind.SUBTITLE_REMOVAL:
        # Only PREPROCESSING runs; it maps to 0-50%
        if job.step == JobStep.PREPROCESSING:
            return round(ratio(job.processed_images, job.total_images) * 50)
        return 0

    step_index = STEP_ORDER.index(job.step)
    step_range = 1 / len(STEP_ORDER)  # 25% per step

    if job.step == JobStep.PREPROCESSING:
        within = ratio(job.processed_images, job.total_images)
    elif job.step == JobStep.BATCH_SUBMITTED:
        within = 0.5 if job.batch_id else 0.0
    elif job.step == JobStep.RESULTS_SAVED:
        within = 0.5
    else:
        within = 0.75

    overall = step_index * step_range + within * step_range
    return round(min(100.0, max(0.0, overall * 100)))

class TaskManager:
    """
    Manages OCR job rows and their frames using Database persistence.
    Supports both Sync (Celery) and Async (FastAPI) contexts.
    """

    # ─── ASYNC METHODS (For FastAPI) ─────────────────────────────────────────

    async def create_job_async(
        self,
        owner_id: str,
        zip_key: str,
        job_kind: JobKind = JobKind.OCR,
        parent_job_id: Optional[str] = None,
    ) -> str:
        job_id = str(uuid.uuid4())
        query = (
            "INSERT INTO ocr_jobs (job_id, owner_id, job_kind, parent_job_id, status, step, zip_key, version) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        args = (job_id, owner_id, job_kind.value, parent_job_id,
                JobStatus.PENDING.value, JobStep.PREPROCESSING.value, zip_key, 1)

        async with get_async_db_connection() as conn:
            await conn.execute(query, args)
            await conn.commit()

        logger.info(f"Job {job_id} ({job_kind.value}) created in DB (Async).")
        return job_id

    async def get_job_async(self, job_id: str) -> Optional[Job]:
        async with get_async_db_connection() as conn:
            cursor = await conn.execute("SELECT * FROM ocr_jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_job(row)

    # ─── SYNC METHODS (Celery) ───────────────────────────────────────────────

    def create_job(
        self,
        owner_id: str,
        zip_key: str,
        job_kind: JobKind = JobKind.OCR,
        parent_job_id: Optional[str] = None,
    ) -> str:
        job_id = str(uuid.uuid4())
        query = (
            "INSERT INTO ocr_jobs (job_id, owner_id, job_kind, parent_job_id, status, step, zip_key, version) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        args = (job_id, owner_id, job_kind.value, parent_job_id,
                JobStatus.PENDING.value, JobStep.PREPROCESSING.value, zip_key, 1)

        with get_db_connection() as conn:
            conn.execute(query, args)
            conn.commit()

        logger.info(f"Job {job_id} ({job_kind.value}) created in DB (Sync).")
        return job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM ocr_jobs WHERE job_id = ?", (job_id,)).fetchone()

        if not row: return None
        return _row_to_job(row)

    def update_fields(self, job_id: str, **fields: Any) -> None:
        """
        Single-row update of pipeline-owned columns. Bumps version and publishes the change.
        """
        if not fields:
            return
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable job columns: {sorted(unknown)}")

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = tuple(_serialize(value) for value in fields.values()) + (job_id,)

        with get_db_connection() as conn:
            conn.execute(
                f"UPDATE ocr_jobs SET {assignments}, updated_at = CURRENT_TIMESTAMP, version = version + 1 WHERE job_id = ?",
                params
            )
            conn.commit()

        publish_update(job_id, {"job_id": job_id, **{k: _serialize(v) for k, v in fields.items()}})

    def set_step(self, job_id: str, step: JobStep) -> None:
        self.update_fields(job_id, step=step)
        logger.info(f"Job {job_id} advanced to step {step.value}")

    def fail_job(self, job_id: str, error_msg: str):
        with get_db_connection() as conn:
            conn.execute(
                """
                UPDATE ocr_jobs
                SET status = ?,
                    error = ?,
                    updated_at = CURRENT_TIMESTAMP,
                    version = version + 1
                WHERE job_id = ?
                """,
                (JobStatus.ERROR.value, error_msg, job_id)
            )
            conn.commit()
            logger.error(f"Job {job_id} marked as ERROR in DB: {error_msg}")

        publish_update(job_id, {
            "job_id": job_id,
            "status": JobStatus.ERROR.value,
            "error": error_msg
        })

    def complete_job(self, job_id: str, **artifacts: Any):
        self.update_fields(job_id, status=JobStatus.DONE, error=None, **artifacts)
        logger.info(f"Job {job_id} completed.")

    def delete_job(self, job_id: str, storage: StorageProvider) -> bool:
        """
        Remove every stored object under the job's prefix, then the row.
        Frames go with the row (ON DELETE CASCADE). Storage cleanup is best-effort.
        """
        job = self.get_job(job_id)
        if not job:
            return False

        try:
            storage.delete_prefix(job_prefix(job_id))
        except Exception as e:
            logger.warning(f"Job {job_id}: failed to delete stored objects: {e}")

        with get_db_connection() as conn:
            conn.execute("DELETE FROM ocr_jobs WHERE job_id = ?", (job_id,))
            conn.commit()

        logger.info(f"Job {job_id} deleted.")
        publish_update(job_id, {"job_id": job_id, "deleted": True})
        return True

    # ─── Worker Lease ────────────────────────────────────────────────────────

    def claim_job(self, job_id: str, lease_seconds: int) -> Optional[str]:
        """
        Take the job's worker lease. Returns a token for release_job(), or None
        when another worker holds an unexpired lease (or the job is gone).
        """
        token = str(uuid.uuid4())
        now = time.time()
        with get_db_connection() as conn:
            cursor = conn.execute(
                "UPDATE ocr_jobs SET locked_by = ?, locked_until = ? "
                "WHERE job_id = ? AND (locked_by IS NULL OR locked_until < ?)",
                (token, now + lease_seconds, job_id, now)
            )
            conn.commit()
            claimed = cursor.rowcount == 1

        return token if claimed else None

    def release_job(self, job_id: str, token: str) -> None:
        with get_db_connection() as conn:
            conn.execute(
                "UPDATE ocr_jobs SET locked_by = NULL, locked_until = NULL WHERE job_id = ? AND locked_by = ?",
                (job_id, token)
            )
            conn.commit()

    # ─── Retry ───────────────────────────────────────────────────────────────

    def _ensure_source_archive(self, job: Job, storage: StorageProvider) -> None:
        if not storage.exists(job.zip_key):
            raise RetryNotAllowedError(f"Zip file not found in storage for job {job.job_id}")

    def retry_job(self, job_id: str, storage: StorageProvider) -> Job:
        """
        Re-arm a failed job at its persisted step.
        """
        job = self.get_job(job_id)
        if not job:
            raise RetryNotAllowedError(f"Job {job_id} not found")
        if job.status != JobStatus.ERROR:
            raise RetryNotAllowedError(
                f"Job {job_id} is {job.status.value}; only failed jobs can be retried."
            )
        self._ensure_source_archive(job, storage)

        self.update_fields(job_id, status=JobStatus.PROCESSING, error=None)
        logger.info(f"Job {job_id} re-armed at step {job.step.value}")
        return self.get_job(job_id)

    def retry_from_step(self, job_id: str, step: JobStep, storage: StorageProvider) -> Job:
        """
        Re-arm a failed job at an earlier (or the same) step, discarding what that
        step and every later one produced.
        """
        job = self.get_job(job_id)
        if not job:
            raise RetryNotAllowedError(f"Job {job_id} not found")
        if job.status != JobStatus.ERROR:
            raise RetryNotAllowedError(
                "Job is not in ERROR state. Only failed jobs can be retried from a specific step."
            )
        if job.job_kind == JobKind.SUBTITLE_REMOVAL and step != JobStep.PREPROCESSING:
            raise RetryNotAllowedError("Subtitle removal jobs can only be retried from PREPROCESSING.")
        if STEP_ORDER.index(step) > STEP_ORDER.index(job.step):
            raise RetryNotAllowedError(
                f"Cannot retry from {step.value}: job has only reached {job.step.value}."
            )
        self._ensure_source_archive(job, storage)

        resets: Dict[str, Any] = {}
        for later_step in STEP_ORDER[STEP_ORDER.index(step):]:
            resets.update(_STEP_RESETS[later_step])

        self.update_fields(job_id, step=step, status=JobStatus.PROCESSING, error=None, **resets)
        logger.info(f"Job {job_id} re-armed from step {step.value}")
        return self.get_job(job_id)

    # ─── Frames ──────────────────────────────────────────────────────────────

    def replace_frames(self, job_id: str, frames: Iterable[Frame]) -> int:
        """
        Delete-then-insert in one transaction, so re-running reconciliation never
        leaves duplicate or stale rows.
        """
        rows = [
            (str(uuid.uuid4()), job_id, frame.filename, frame.base_key, frame.index, frame.text)
            for frame in frames
        ]
        with get_db_connection() as conn:
            try:
                conn.execute("DELETE FROM ocr_job_frames WHERE job_id = ?", (job_id,))
                conn.executemany(
                    "INSERT INTO ocr_job_frames (frame_id, job_id, filename, base_key, frame_index, text) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    rows
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.info(f"Job {job_id}: persisted {len(rows)} frames")
        return len(rows)

    def list_frames(self, job_id: str) -> List[Frame]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT job_id, filename, base_key, frame_index, text FROM ocr_job_frames "
                "WHERE job_id = ? ORDER BY frame_index",
                (job_id,)
            ).fetchall()

        return [
            Frame(
                job_id=row["job_id"],
                filename=row["filename"],
                base_key=row["base_key"],
                index=row["frame_index"],
                text=row["text"],
            )
            for row in rows
        ]

job_manager = TaskManager()
