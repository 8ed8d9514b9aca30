"""
Job Routes: create, inspect, retry and delete OCR jobs.
"""
from fastapi import APIRouter, HTTPException, BackgroundTasks, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from typing import Dict, Any, List, Optional
import logging
import time

from subocr.core.limiter import limiter, CREATE_JOB_LIMIT, RETRY_LIMIT, STATUS_LIMIT
from subocr.core.config import settings
from subocr.core.errors import RetryNotAllowedError
from subocr.services.cleanup import cleanup_old_files
from subocr.services.storage import get_storage_provider
from subocr.services.task_manager import job_manager, JobKind, JobStatus, JobStep
from subocr.tasks import dispatch_job

storage = get_storage_provider()
logger = logging.getLogger(__name__)
router = APIRouter()

# Global state for lazy cleanup (DoS prevention)
_last_cleanup_time = 0.0

# ─── Data Models ─────────────────────────────────────────────────────────────

class CreateJobRequest(BaseModel):
    zip_key: str
    owner_id: str
    job_kind: JobKind = JobKind.OCR

class RemoveSubtitlesRequest(BaseModel):
    owner_id: Optional[str] = None

class RetryFromStepRequest(BaseModel):
    step: JobStep

class JobCreatedResponse(BaseModel):
    job_id: str
    parent_job_id: Optional[str] = None
    message: str

class FrameResponse(BaseModel):
    filename: str
    base_key: str
    index: int
    text: str

def _schedule_workspace_cleanup(background_tasks: BackgroundTasks) -> None:
    """Lazy cleanup of abandoned job workspaces: max once per hour."""
    global _last_cleanup_time
    now = time.time()
    if now - _last_cleanup_time > 3600:
        background_tasks.add_task(cleanup_old_files, settings.WORKSPACE_DIR, 86400)
        _last_cleanup_time = now

# ─── Endpoints ───────────────────────────────────────────────────────────────

@router.post("/jobs", response_model=JobCreatedResponse)
@limiter.limit(CREATE_JOB_LIMIT)
async def create_job(request: Request, payload: CreateJobRequest, background_tasks: BackgroundTasks):
    """
    Registers a job for an already-uploaded ZIP and starts processing.
    """
    exists = await run_in_threadpool(storage.exists, payload.zip_key)
    if not exists:
        raise HTTPException(status_code=404, detail="ZIP file not found in storage")

    job_id = await job_manager.create_job_async(payload.owner_id, payload.zip_key, payload.job_kind)
    background_tasks.add_task(dispatch_job, job_id)

    _schedule_workspace_cleanup(background_tasks)

    return JobCreatedResponse(job_id=job_id, message="Job created. Processing started.")

@router.post("/jobs/{job_id}/remove-subtitles", response_model=JobCreatedResponse)
@limiter.limit(CREATE_JOB_LIMIT)
async def remove_subtitles(request: Request, job_id: str, background_tasks: BackgroundTasks,
                           payload: Optional[RemoveSubtitlesRequest] = None):
    """
    Starts a subtitle-removal job from the filtered archive of a finished OCR job.
    """
    parent = await job_manager.get_job_async(job_id)
    if not parent:
        raise HTTPException(status_code=404, detail="Job not found")
    if parent.status != JobStatus.DONE:
        raise HTTPException(status_code=412, detail="Job must be completed before removing subtitles")
    if not parent.raw_zip_key:
        raise HTTPException(status_code=412, detail="Raw ZIP not found. Job must be processed first.")

    owner_id = payload.owner_id if payload and payload.owner_id else parent.owner_id
    child_id = await job_manager.create_job_async(
        owner_id, parent.raw_zip_key, JobKind.SUBTITLE_REMOVAL, parent_job_id=job_id
    )
    background_tasks.add_task(dispatch_job, child_id)

    return JobCreatedResponse(job_id=child_id, parent_job_id=job_id, message="Remove subtitles job started")

@router.get("/jobs/{job_id}")
@limiter.limit(STATUS_LIMIT)
async def get_job(request: Request, job_id: str) -> Dict[str, Any]:
    job = await job_manager.get_job_async(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()

@router.get("/jobs/{job_id}/frames", response_model=List[FrameResponse])
@limiter.limit(STATUS_LIMIT)
async def get_job_frames(request: Request, job_id: str):
    job = await job_manager.get_job_async(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    frames = await run_in_threadpool(job_manager.list_frames, job_id)
    return [
        FrameResponse(filename=f.filename, base_key=f.base_key, index=f.index, text=f.text)
        for f in frames
    ]

@router.post("/jobs/{job_id}/retry")
@limiter.limit(RETRY_LIMIT)
async def retry_job(request: Request, job_id: str, background_tasks: BackgroundTasks):
    """
    Re-dispatches a failed job from the step it stopped at.
    """
    try:
        job = await run_in_threadpool(job_manager.retry_job, job_id, storage)
    except RetryNotAllowedError as e:
        raise HTTPException(status_code=_retry_error_status(e), detail=str(e))

    background_tasks.add_task(dispatch_job, job_id)
    return {"job_id": job_id, "step": job.step.value, "message": "Job retry started"}

@router.post("/jobs/{job_id}/retry-from-step")
@limiter.limit(RETRY_LIMIT)
async def retry_job_from_step(request: Request, job_id: str, payload: RetryFromStepRequest,
                              background_tasks: BackgroundTasks):
    """
    Re-runs a failed job from an earlier step, discarding that step's outputs.
    """
    try:
        job = await run_in_threadpool(job_manager.retry_from_step, job_id, payload.step, storage)
    except RetryNotAllowedError as e:
        raise HTTPException(status_code=_retry_error_status(e), detail=str(e))

    background_tasks.add_task(dispatch_job, job_id)
    return {"job_id": job_id, "step": job.step.value, "message": f"Job retry started from {job.step.value}"}

def _retry_error_status(error: RetryNotAllowedError) -> int:
    return 404 if "not found" in str(error) else 400

@router.delete("/jobs/{job_id}")
@limiter.limit(RETRY_LIMIT)
async def delete_job(request: Request, job_id: str):
    """
    Deletes the job, its frames and every stored object under its prefix.
    """
    deleted = await run_in_threadpool(job_manager.delete_job, job_id, storage)
    if not deleted:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, "deleted": True}
