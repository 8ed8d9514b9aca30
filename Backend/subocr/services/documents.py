import io
import logging
from collections import OrderedDict
from typing import List, Sequence

from docx import Document as DocxDocument

from subocr.core.errors import ConsistencyError
from subocr.services.filenames import natural_key
from subocr.services.task_manager import Frame

logger = logging.getLogger(__name__)

TXT_CONTENT_TYPE = "text/plain; charset=utf-8"
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

def build_paragraphs(frames: Sequence[Frame]) -> List[str]:
    """
    One paragraph per base key: texts of a primary frame and its variants are
    joined in submission order; paragraphs follow natural base-key order.
    """
    groups: "OrderedDict[str, List[Frame]]" = OrderedDict()
    for frame in sorted(frames, key=lambda f: f.index):
        groups.setdefault(frame.base_key, []).append(frame)

    paragraphs = []
    for key in sorted(groups, key=natural_key):
        text = " ".join(frame.text.strip() for frame in groups[key] if frame.text.strip())
        if text:
            paragraphs.append(text)
    return paragraphs

def render_txt(paragraphs: Sequence[str]) -> bytes:
    """UTF-8 text, paragraphs separated by one blank line."""
    return "\n\n".join(paragraphs).encode("utf-8")

def render_docx(paragraphs: Sequence[str]) -> bytes:
    document = DocxDocument()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()

def render_documents(frames: Sequence[Frame]) -> tuple:
    """
    Returns (paragraphs, txt_bytes, docx_bytes). Raises ConsistencyError when
    the frames yield no paragraph at all.
    """
    paragraphs = build_paragraphs(frames)
    if not paragraphs:
        raise ConsistencyError("Unable to build OCR paragraphs for this job.")

    logger.info(f"Assembled {len(paragraphs)} paragraphs from {len(frames)} frames")
    return paragraphs, render_txt(paragraphs), render_docx(paragraphs)
