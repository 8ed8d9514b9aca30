"""
errors.py
~~~~~~~~~
Failure taxonomy for the OCR job pipeline.
"""
from typing import Optional


class PipelineError(RuntimeError):
    """Base class for every failure raised by the job pipeline."""


class PreconditionError(PipelineError):
    """Input is missing or unusable (no archive, no images, no crops)."""


class BatchServiceError(PipelineError):
    """The external batch completion service reported a terminal failure."""


class ConsistencyError(PipelineError):
    """Batch output does not line up with what was submitted."""


class RetryNotAllowedError(PipelineError):
    """A retry was requested for a job that cannot be retried."""


class RecordedJobError(PipelineError):
    """
    Raised after the failure has already been written to the job row.
    Callers can treat it as final: the job is in ERROR with this message.
    """

    def __init__(self, job_id: str, step: Optional[str], message: str):
        super().__init__(message)
        self.job_id = job_id
        self.step = step
        self.message = message
