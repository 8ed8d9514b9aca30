"""
test_documents.py
~~~~~~~~~~~~~~~~~
Paragraph assembly and the txt/docx renderings.
"""
from __future__ import annotations

import io

import pytest
from docx import Document as DocxDocument

from subocr.core.errors import ConsistencyError
from subocr.services.documents import build_paragraphs, render_documents, render_txt
from subocr.services.task_manager import Frame


def _frame(index, filename, base, text):
    return Frame(job_id="j1", filename=filename, base_key=base, index=index, text=text)


def test_variants_join_their_primary_paragraph():
    frames = [
        _frame(3, "10.png", "10", "Ten"),
        _frame(2, "2.1.png", "2", "and the rest"),
        _frame(1, "2.png", "2", "Two"),
        _frame(0, "1.png", "1", "One"),
    ]
    assert build_paragraphs(frames) == ["One", "Two and the rest", "Ten"]


def test_group_order_is_natural():
    frames = [
        _frame(0, "intro.png", "intro", "Intro"),
        _frame(1, "10.png", "10", "Ten"),
        _frame(2, "9.png", "9", "Nine"),
    ]
    assert build_paragraphs(frames) == ["Nine", "Ten", "Intro"]


def test_txt_uses_blank_line_between_paragraphs():
    assert render_txt(["Ünïcode", "second"]) == "Ünïcode\n\nsecond".encode("utf-8")


def test_render_documents_produces_same_paragraphs():
    frames = [_frame(0, "1.png", "1", "One"), _frame(1, "2.png", "2", "Two")]
    paragraphs, txt_bytes, docx_bytes = render_documents(frames)

    assert paragraphs == ["One", "Two"]
    assert txt_bytes == b"One\n\nTwo"
    document = DocxDocument(io.BytesIO(docx_bytes))
    assert [p.text for p in document.paragraphs] == ["One", "Two"]


def test_no_paragraphs_is_an_error():
    with pytest.raises(ConsistencyError):
        render_documents([])
