"""
pipeline.py
~~~~~~~~~~~
Durable, step-based state machine that turns an uploaded ZIP of video
frames into OCR text and documents.

The job row is the only state carried between invocations. Each call to
``JobPipeline.run_next_step`` reads the persisted step, rebuilds its working
set from storage and the database, runs one unit of work, commits the
result and tells the caller what to do next:

    CONTINUE  run the next unit right away
    WAIT      run again after the poll interval (batch still in flight)
    FINISHED  nothing left to do (job DONE, ERROR or gone)

Any failure inside a unit is written to the job row (status ERROR) before
being re-raised as RecordedJobError.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from subocr.core.config import settings
from subocr.core.errors import PreconditionError, RecordedJobError
from subocr.services import storage as keys
from subocr.services.archive import (
    ArchiveEntry,
    build_image_archive,
    canonical_archive_name,
    chunk_entries,
    download_source_archive,
    iter_entry_data,
    list_processable_entries,
)
from subocr.services.batch import (
    BatchClient,
    CropMeta,
    resolve_poll,
    wait_id,
    write_manifest,
)
from subocr.services.cleanup import JobWorkspace, remove_job_workspace
from subocr.services.documents import (
    DOCX_CONTENT_TYPE,
    TXT_CONTENT_TYPE,
    render_documents,
)
from subocr.services.frames import FrameTransformer
from subocr.services.results import parse_batch_output
from subocr.services.storage import StorageProvider
from subocr.services.task_manager import (
    Job,
    JobKind,
    JobStatus,
    JobStep,
    TaskManager,
)

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    CONTINUE = "continue"
    WAIT = "wait"
    FINISHED = "finished"


@dataclass(frozen=True)
class StepResult:
    outcome: StepOutcome
    attempt: int = 0
    wait_id: Optional[str] = None

    @classmethod
    def proceed(cls) -> "StepResult":
        return cls(StepOutcome.CONTINUE)

    @classmethod
    def finished(cls) -> "StepResult":
        return cls(StepOutcome.FINISHED)


class JobPipeline:
    def __init__(
        self,
        task_manager: TaskManager,
        storage: StorageProvider,
        batch_client_factory: Callable[[], BatchClient],
        transformer: Optional[FrameTransformer] = None,
        batch_size: Optional[int] = None,
        workspace_dir: Optional[str] = None,
    ):
        self.jobs = task_manager
        self.storage = storage
        self.batch_client_factory = batch_client_factory
        self.transformer = transformer or FrameTransformer(storage)
        self.batch_size = batch_size or settings.PREPROCESS_BATCH_SIZE
        self.workspace_dir = workspace_dir

    # ─── Dispatcher ──────────────────────────────────────────────────────────

    def run_next_step(self, job_id: str, attempt: int = 0) -> StepResult:
        """
        Run one durable unit of work for the job, resuming at its persisted step.

        Steps of one job never overlap: the unit runs under the job's worker
        lease, and a wake-up that finds the lease held is dropped, since the
        holder schedules whatever comes next.
        """
        token = self.jobs.claim_job(job_id, settings.JOB_LEASE_SECONDS)
        if token is None:
            if self.jobs.get_job(job_id) is None:
                logger.error(f"Job {job_id} not found; nothing to run.")
            else:
                logger.warning(f"Job {job_id} is being run by another worker; dropping duplicate wake-up.")
            return StepResult.finished()

        try:
            return self._run_claimed(job_id, attempt)
        finally:
            self.jobs.release_job(job_id, token)

    def _run_claimed(self, job_id: str, attempt: int) -> StepResult:
        job = self.jobs.get_job(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found; nothing to run.")
            return StepResult.finished()

        if job.status in (JobStatus.DONE, JobStatus.ERROR):
            logger.info(f"Job {job_id} is {job.status.value}; ignoring wake-up.")
            return StepResult.finished()

        try:
            if job.status == JobStatus.PENDING:
                self.jobs.update_fields(job_id, status=JobStatus.PROCESSING)

            if job.step == JobStep.PREPROCESSING:
                return self.preprocess(job)
            if job.job_kind == JobKind.SUBTITLE_REMOVAL:
                raise PreconditionError(
                    f"Subtitle removal jobs have no {job.step.value} step."
                )
            if job.step == JobStep.BATCH_SUBMITTED:
                return self.submit_and_poll(job, attempt)
            if job.step == JobStep.RESULTS_SAVED:
                return self.save_results(job)
            return self.build_documents(job)

        except RecordedJobError:
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Job {job_id} failed at step {job.step.value}: {message}", exc_info=True)
            self.jobs.fail_job(job_id, message)
            raise RecordedJobError(job_id, job.step.value, message) from e

    def run_until_settled(self, job_id: str, sleep: Callable[[float], None] = time.sleep,
                          poll_interval: Optional[float] = None) -> Job:
        """
        Drive a job inline until it is finished. Used when no broker is available.
        """
        interval = settings.BATCH_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        attempt = 0
        while True:
            result = self.run_next_step(job_id, attempt)
            if result.outcome == StepOutcome.FINISHED:
                return self.jobs.get_job(job_id)
            if result.outcome == StepOutcome.WAIT:
                logger.info(f"Job {job_id}: waiting ({result.wait_id})")
                sleep(interval)
                attempt = result.attempt
            else:
                attempt = 0

    def _workspace(self, job_id: str) -> JobWorkspace:
        return JobWorkspace.for_job(job_id, self.workspace_dir).ensure()

    def _load_entries(self, job: Job, workspace: JobWorkspace) -> List[ArchiveEntry]:
        zip_path = download_source_archive(self.storage, job.zip_key, workspace.zip_path)
        entries = list_processable_entries(zip_path)
        if not entries:
            raise PreconditionError("No processable images found in the archive.")
        return entries

    # ─── Step 1: PREPROCESSING ───────────────────────────────────────────────

    def preprocess(self, job: Job) -> StepResult:
        """
        Transform the next batch of images; after the last one, package the
        archive and move on.
        """
        workspace = self._workspace(job.job_id)
        entries = self._load_entries(job, workspace)
        batches = chunk_entries(entries, self.batch_size)
        batch_index = job.batches_completed

        if batch_index == 0:
            prefix = keys.job_prefix(job.job_id)
            for folder in ("crops/", "normalized/", "cropped/"):
                self.storage.delete_prefix(prefix + folder)
            self.jobs.update_fields(
                job.job_id,
                total_images=len(entries),
                processed_images=0,
                total_batches=len(batches),
            )
            logger.info(f"Job {job.job_id}: {len(entries)} images in {len(batches)} batches")

        if batch_index < len(batches):
            self._transform_batch(job, workspace, batches[batch_index], batch_index)
            self.jobs.update_fields(job.job_id, batches_completed=batch_index + 1)
            if batch_index + 1 < len(batches):
                return StepResult.proceed()

        if job.job_kind == JobKind.SUBTITLE_REMOVAL:
            return self._finish_subtitle_removal(job, workspace)
        return self._finish_preprocessing(job, workspace, entries)

    def _transform_batch(self, job: Job, workspace: JobWorkspace,
                         batch: List[ArchiveEntry], batch_index: int) -> None:
        is_ocr = job.job_kind == JobKind.OCR
        first_processed = batch_index * self.batch_size

        for offset, (entry, data) in enumerate(iter_entry_data(workspace.zip_path, batch)):
            frame = self.transformer.transform(
                job.job_id,
                entry,
                data,
                keep_crop=is_ocr,
                keep_without_subtitles=not is_ocr,
            )
            if batch_index == 0 and offset == 0:
                thumbnail = self.transformer.store_thumbnail(job.job_id, frame)
                if thumbnail:
                    self.jobs.update_fields(job.job_id, thumbnail_key=thumbnail)
            del frame
            self.jobs.update_fields(job.job_id, processed_images=first_processed + offset + 1)

    def _package(self, job_id: str, folder: str, dest_path: str) -> tuple:
        stored = self.storage.list_prefix(keys.job_prefix(job_id) + folder)
        if not stored:
            return None, None
        objects = [(key, canonical_archive_name(key.rsplit("/", 1)[-1])) for key, _ in stored]
        size = build_image_archive(self.storage, objects, dest_path)
        return objects, size

    def _finish_preprocessing(self, job: Job, workspace: JobWorkspace,
                              entries: List[ArchiveEntry]) -> StepResult:
        objects, size = self._package(job.job_id, "normalized/", workspace.archive_path)
        if objects:
            archive_key = keys.raw_zip_key(job.job_id)
            self.storage.put_file(archive_key, workspace.archive_path, "application/zip")
            self.jobs.update_fields(job.job_id, raw_zip_key=archive_key, raw_zip_size_bytes=size)
        else:
            logger.warning(f"Job {job.job_id}: no archive-eligible images; skipping filtered archive")

        if not self._load_crops(job.job_id, entries, signed=False):
            raise PreconditionError(f"No crops were produced for job {job.job_id}.")

        self.jobs.set_step(job.job_id, JobStep.BATCH_SUBMITTED)
        return StepResult.proceed()

    def _finish_subtitle_removal(self, job: Job, workspace: JobWorkspace) -> StepResult:
        objects, size = self._package(job.job_id, "cropped/", workspace.archive_path)
        if not objects:
            raise PreconditionError("No archive-eligible images to strip subtitles from.")

        archive_key = keys.cropped_zip_key(job.job_id)
        self.storage.put_file(archive_key, workspace.archive_path, "application/zip")
        self.jobs.complete_job(job.job_id, cropped_zip_key=archive_key, cropped_zip_size_bytes=size)
        self._cleanup(job.job_id, workspace, ("cropped/", "normalized/"))
        return StepResult.finished()

    # ─── Step 2: BATCH_SUBMITTED ─────────────────────────────────────────────

    def _load_crops(self, job_id: str, entries: List[ArchiveEntry], signed: bool = True) -> List[CropMeta]:
        """Crops in submission (natural) order, rebuilt from the archive listing and storage."""
        stored = {key for key, _ in self.storage.list_prefix(keys.job_prefix(job_id) + "crops/")}
        crops = []
        for entry in entries:
            key = keys.crop_key(job_id, entry.filename)
            if key not in stored:
                continue
            url = self.storage.create_signed_url(key, settings.SIGNED_URL_TTL_SECONDS) if signed else ""
            crops.append(CropMeta(filename=entry.filename, crop_key=key, signed_url=url))
        return crops

    def submit_and_poll(self, job: Job, attempt: int) -> StepResult:
        # Batch ids are decided by the row, never by a caller's snapshot
        job = self.jobs.get_job(job.job_id) or job
        client = self.batch_client_factory()
        batch_id = job.batch_id

        if not job.batch_id or not job.batch_input_id:
            workspace = self._workspace(job.job_id)
            crops = self._load_crops(job.job_id, self._load_entries(job, workspace))
            if not crops:
                raise PreconditionError(f"No crops found for job {job.job_id} when creating the batch.")

            write_manifest(workspace.manifest_path, job.job_id, crops)
            artifacts = client.submit(workspace.manifest_path)
            # Recorded before anything else so a restart never submits twice
            self.jobs.update_fields(
                job.job_id,
                batch_id=artifacts.batch_id,
                batch_input_id=artifacts.batch_input_id,
                submitted_images=len(crops),
            )
            batch_id = artifacts.batch_id
            logger.info(f"Job {job.job_id}: submitted {len(crops)} crops as batch {batch_id}")

        poll = client.poll(batch_id)
        output_file_id = resolve_poll(poll)
        if output_file_id is None:
            logger.info(f"Job {job.job_id}: batch {batch_id} is {poll.status} (attempt {attempt})")
            return StepResult(StepOutcome.WAIT, attempt=attempt + 1, wait_id=wait_id(job.job_id, attempt))

        self.jobs.update_fields(job.job_id, batch_output_id=output_file_id, step=JobStep.RESULTS_SAVED)
        logger.info(f"Job {job.job_id}: batch {batch_id} completed (output {output_file_id})")
        return StepResult.proceed()

    # ─── Step 3: RESULTS_SAVED ───────────────────────────────────────────────

    def save_results(self, job: Job) -> StepResult:
        if not job.batch_output_id:
            raise PreconditionError("Batch output file id missing")

        output = self.batch_client_factory().fetch_output(job.batch_output_id)
        expected = job.submitted_images or job.total_images
        frames = parse_batch_output(job.job_id, output, expected)
        self.jobs.replace_frames(job.job_id, frames)
        self.jobs.set_step(job.job_id, JobStep.DOCS_BUILT)
        return StepResult.proceed()

    # ─── Step 4: DOCS_BUILT ──────────────────────────────────────────────────

    def build_documents(self, job: Job) -> StepResult:
        frames = self.jobs.list_frames(job.job_id)
        paragraphs, txt_bytes, docx_bytes = render_documents(frames)

        txt_key = keys.txt_key(job.job_id)
        docx_key = keys.docx_key(job.job_id)
        self.storage.put_bytes(txt_key, txt_bytes, TXT_CONTENT_TYPE)
        self.storage.put_bytes(docx_key, docx_bytes, DOCX_CONTENT_TYPE)

        self.jobs.complete_job(
            job.job_id,
            txt_key=txt_key,
            txt_size_bytes=len(txt_bytes),
            docx_key=docx_key,
            docx_size_bytes=len(docx_bytes),
        )
        logger.info(f"Job {job.job_id}: {len(paragraphs)} paragraphs written")

        self._cleanup(job.job_id, JobWorkspace.for_job(job.job_id, self.workspace_dir), ("crops/", "normalized/"))
        return StepResult.finished()

    def _cleanup(self, job_id: str, workspace: JobWorkspace, folders) -> None:
        """Best-effort: local scratch and intermediate objects. Never fails the job."""
        remove_job_workspace(workspace)
        for folder in folders:
            try:
                self.storage.delete_prefix(keys.job_prefix(job_id) + folder)
            except Exception as e:
                logger.warning(f"Job {job_id}: failed to delete intermediate {folder}: {e}")
