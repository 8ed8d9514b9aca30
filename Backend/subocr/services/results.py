"""
Result reconciliation: batch output JSONL -> frame rows.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from subocr.core.errors import BatchServiceError, ConsistencyError
from subocr.services.batch import EMPTY_SENTINEL, CustomId
from subocr.services.filenames import base_key
from subocr.services.task_manager import Frame

logger = logging.getLogger(__name__)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ContentPart(_Lenient):
    type: Optional[str] = None
    text: Optional[str] = None


# A completion's content is either plain text or a list of parts. Parts are
# validated one at a time in extract_text so unknown shapes are skipped.
CompletionContent = Union[str, List[Any]]


class CompletionMessage(_Lenient):
    content: Optional[CompletionContent] = None


class CompletionChoice(_Lenient):
    message: Optional[CompletionMessage] = None


class CompletionBody(_Lenient):
    choices: List[CompletionChoice] = []


class LineResponse(_Lenient):
    body: Optional[CompletionBody] = None


class LineError(_Lenient):
    message: Optional[str] = None
    code: Optional[Union[str, int]] = None


class BatchOutputLine(_Lenient):
    custom_id: Optional[str] = None
    error: Optional[LineError] = None
    response: Optional[LineResponse] = None

    def content(self) -> Optional[CompletionContent]:
        if not self.response or not self.response.body or not self.response.body.choices:
            return None
        message = self.response.body.choices[0].message
        return message.content if message else None


def _part_text(part: Any) -> Optional[str]:
    if isinstance(part, str):
        return part
    if not isinstance(part, dict):
        return None
    try:
        parsed = ContentPart.model_validate(part)
    except ValidationError:
        return None
    if parsed.type == "text" and parsed.text is not None:
        return parsed.text
    return None


def extract_text(content: Optional[CompletionContent]) -> str:
    """Only plain strings and text-typed parts contribute."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()

    pieces = [text for text in (_part_text(part) for part in content) if text is not None]
    return "".join(pieces).strip()


def split_output_lines(output: str) -> List[str]:
    return [line.strip() for line in output.split("\n") if line.strip()]


def parse_batch_output(job_id: str, output: str, expected_total: int) -> List[Frame]:
    """
    Recover recognized frames from a batch output file.

    Every line counts toward the expected total, including lines whose
    custom id does not belong to this job. Any line-level error fails the
    whole job.
    """
    lines = split_output_lines(output)
    if not lines:
        raise ConsistencyError("Batch output file is empty.")

    if expected_total > 0 and len(lines) != expected_total:
        raise ConsistencyError(
            f"Batch output mismatch: expected {expected_total} responses but got {len(lines)}."
        )

    frames: List[Frame] = []
    dropped_empty = 0
    unmatched = 0

    for line_number, line in enumerate(lines, start=1):
        try:
            parsed = BatchOutputLine.model_validate_json(line)
        except ValidationError as e:
            raise ConsistencyError(f"Invalid JSON line {line_number} in batch output: {e}") from e

        if parsed.error is not None:
            message = parsed.error.message or str(parsed.error.code or "Unknown batch error")
            raise BatchServiceError(
                f"Batch entry failed ({parsed.custom_id or 'unknown'}): {message}"
            )

        custom_id = CustomId.decode(parsed.custom_id, job_id)
        if custom_id is None:
            unmatched += 1
            continue

        text = extract_text(parsed.content())
        if not text or text == EMPTY_SENTINEL:
            dropped_empty += 1
            continue

        frames.append(Frame(
            job_id=job_id,
            filename=custom_id.filename,
            base_key=base_key(custom_id.filename),
            index=custom_id.index,
            text=text,
        ))

    logger.info(
        f"Job {job_id}: {len(frames)} frames recognized, {dropped_empty} empty, {unmatched} unmatched lines"
    )

    if not frames:
        raise ConsistencyError("No OCR frames were parsed from the batch output.")

    frames.sort(key=lambda frame: frame.index)
    return frames
