from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from openai import OpenAI

from subocr.core.config import settings
from subocr.core.errors import BatchServiceError, PreconditionError

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────
COMPLETIONS_ENDPOINT: str   = "/v1/chat/completions"
EMPTY_SENTINEL: str         = "<EMPTY>"
API_TIMEOUT_SECONDS: float  = 60.0                # hard timeout so calls never hang
MAX_RETRIES: int            = 3                   # client-side retries on transient errors
WAIT_ID_PREFIX: str         = "wait-batch-completion"

TERMINAL_FAILURE_STATES = frozenset({"failed", "cancelled"})

OCR_PROMPT: str = (
    "This image is the bottom strip of a video frame. Transcribe the burnt-in "
    "subtitle text exactly as written, keeping the original language, "
    "punctuation and line order, joined into a single line. Do not translate, "
    "describe the image or add commentary. If there is no subtitle text, "
    f"answer with exactly {EMPTY_SENTINEL}."
)


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class MissingAPIKeyError(EnvironmentError):
    """Raised when OPENAI_API_KEY is not configured."""


# ─── Correlation Key ─────────────────────────────────────────────────────────
@dataclass(frozen=True)
class CustomId:
    """
    Correlates a manifest line with a frame: job, submission index and filename.
    Wire form: job-<jobId>-frame-<index>-<filename>
    """
    job_id: str
    index: int
    filename: str

    _TAIL = re.compile(r"^(\d+)-(.+)$", re.ASCII | re.DOTALL)

    def encode(self) -> str:
        return f"job-{self.job_id}-frame-{self.index}-{self.filename}"

    @classmethod
    def decode(cls, value: Optional[str], job_id: str) -> Optional["CustomId"]:
        """
        Parse a custom id produced for job_id. Returns None for anything else.
        """
        if not value:
            return None
        prefix = f"job-{job_id}-frame-"
        if not value.startswith(prefix):
            return None
        match = cls._TAIL.match(value[len(prefix):])
        if not match:
            return None
        return cls(job_id=job_id, index=int(match.group(1)), filename=match.group(2))


@dataclass(frozen=True)
class CropMeta:
    filename: str
    crop_key: str
    signed_url: str


@dataclass(frozen=True)
class BatchArtifacts:
    batch_id: str
    batch_input_id: str


@dataclass(frozen=True)
class BatchPoll:
    status: str
    output_file_id: Optional[str] = None
    error_file_id: Optional[str] = None


def wait_id(job_id: str, attempt: int) -> str:
    """Deterministic identifier of the wait that follows poll attempt `attempt`."""
    return f"{WAIT_ID_PREFIX}-{job_id}-{attempt}"


# ─── Manifest ────────────────────────────────────────────────────────────────
def build_manifest_line(job_id: str, index: int, crop: CropMeta,
                        model: Optional[str] = None, max_tokens: Optional[int] = None) -> dict[str, Any]:
    return {
        "custom_id": CustomId(job_id, index, crop.filename).encode(),
        "method": "POST",
        "url": COMPLETIONS_ENDPOINT,
        "body": {
            "model": model or settings.OCR_MODEL,
            "temperature": 0,
            "max_tokens": max_tokens or settings.OCR_MAX_TOKENS,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": OCR_PROMPT},
                        {"type": "image_url", "image_url": {"url": crop.signed_url}},
                    ],
                }
            ],
        },
    }


def write_manifest(path: str, job_id: str, crops: Sequence[CropMeta]) -> int:
    """
    Write one JSON line per crop, in submission order. Returns the line count.
    """
    if not crops:
        raise PreconditionError(f"No crops found for job {job_id} when creating the batch manifest.")

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for index, crop in enumerate(crops):
            f.write(json.dumps(build_manifest_line(job_id, index, crop), ensure_ascii=False))
            f.write("\n")
    return len(crops)


def resolve_poll(poll: BatchPoll) -> Optional[str]:
    """
    Output file id once the batch completed, None while it should be awaited.
    Raises BatchServiceError on terminal failure.
    """
    if poll.status in TERMINAL_FAILURE_STATES:
        raise BatchServiceError(f"Batch failed with status={poll.status}")
    if poll.status == "completed":
        if not poll.output_file_id:
            raise BatchServiceError(
                f"Batch completed without an output file (error file: {poll.error_file_id or 'none'})"
            )
        return poll.output_file_id
    return None


# ─── Client ──────────────────────────────────────────────────────────────────
class BatchClient:
    """Thin wrapper over the OpenAI Files + Batches APIs."""

    def __init__(self, client: OpenAI):
        self.client = client

    def submit(self, manifest_path: str) -> BatchArtifacts:
        with open(manifest_path, "rb") as f:
            input_file = self.client.files.create(file=f, purpose="batch")

        batch = self.client.batches.create(
            input_file_id=input_file.id,
            endpoint=COMPLETIONS_ENDPOINT,
            completion_window=settings.OCR_COMPLETION_WINDOW,
        )
        logger.info(f"Submitted batch {batch.id} (input file {input_file.id})")
        return BatchArtifacts(batch_id=batch.id, batch_input_id=input_file.id)

    def poll(self, batch_id: str) -> BatchPoll:
        batch = self.client.batches.retrieve(batch_id)
        return BatchPoll(
            status=batch.status,
            output_file_id=getattr(batch, "output_file_id", None),
            error_file_id=getattr(batch, "error_file_id", None),
        )

    def fetch_output(self, file_id: str) -> str:
        response = self.client.files.content(file_id)
        return response.read().decode("utf-8")


def get_batch_client() -> BatchClient:
    if not settings.OPENAI_API_KEY:
        raise MissingAPIKeyError("OPENAI_API_KEY is not configured; cannot reach the batch service.")
    return BatchClient(OpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        timeout=API_TIMEOUT_SECONDS,
        max_retries=MAX_RETRIES,
    ))
