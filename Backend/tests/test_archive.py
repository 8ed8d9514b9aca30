"""
test_archive.py
~~~~~~~~~~~~~~~
Source archive download, entry filtering/dedupe and deliverable archive packing.
"""
from __future__ import annotations

import zipfile

import pytest

from conftest import make_zip
from subocr.core.errors import PreconditionError
from subocr.core.file_validation import validate_zip_signature
from subocr.services.archive import (
    build_image_archive,
    canonical_archive_name,
    chunk_entries,
    download_source_archive,
    iter_entry_data,
    list_processable_entries,
)


def _write_zip(tmp_path, names, filename="input.zip"):
    path = tmp_path / filename
    path.write_bytes(make_zip(names))
    return str(path)


class TestListProcessableEntries:

    def test_filters_and_orders_naturally(self, tmp_path):
        path = _write_zip(tmp_path, [
            "10.png", "intro.png", "2.1.png", "1.png", "2.png",
            "__MACOSX/._1.png", "notes.txt",
        ])
        entries = list_processable_entries(path)

        assert [e.filename for e in entries] == ["1.png", "2.png", "2.1.png", "10.png"]
        assert [e.include_in_final_archive for e in entries] == [True, True, False, True]
        assert [e.base_name for e in entries] == ["1", "2", "2", "10"]

    def test_duplicate_basenames_become_variants(self, tmp_path):
        path = _write_zip(tmp_path, ["a/3.png", "b/3.PNG", "c/3.jpg"])
        entries = list_processable_entries(path)

        filenames = sorted(e.filename for e in entries)
        assert filenames == ["3-1.PNG", "3-2.jpg", "3.png"]
        archived = [e.filename for e in entries if e.include_in_final_archive]
        assert archived == ["3.png"]
        assert {e.base_name for e in entries} == {"3"}

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "broken.zip"
        path.write_bytes(b"PK\x03\x04 definitely not a zip")
        with pytest.raises(PreconditionError):
            list_processable_entries(str(path))


class TestDownloadSourceArchive:

    def test_missing_object(self, storage, tmp_path):
        with pytest.raises(PreconditionError):
            download_source_archive(storage, "uploads/missing.zip", str(tmp_path / "w" / "input.zip"))

    def test_empty_object(self, storage, tmp_path):
        storage.put_bytes("uploads/empty.zip", b"", "application/zip")
        with pytest.raises(PreconditionError):
            download_source_archive(storage, "uploads/empty.zip", str(tmp_path / "w" / "input.zip"))

    def test_rejects_non_zip_content(self, storage, tmp_path):
        storage.put_bytes("uploads/fake.zip", b"just some text", "application/zip")
        with pytest.raises(PreconditionError):
            download_source_archive(storage, "uploads/fake.zip", str(tmp_path / "w" / "input.zip"))

    def test_downloads_valid_archive(self, storage, tmp_path):
        data = make_zip(["1.png"])
        storage.put_bytes("uploads/ok.zip", data, "application/zip")
        dest = str(tmp_path / "w" / "input.zip")

        assert download_source_archive(storage, "uploads/ok.zip", dest) == dest
        with open(dest, "rb") as f:
            assert f.read() == data


def test_empty_zip_signature_rejected(tmp_path):
    path = tmp_path / "empty.zip"
    with zipfile.ZipFile(path, "w"):
        pass
    with pytest.raises(PreconditionError):
        validate_zip_signature(str(path))


def test_chunking_and_streaming(tmp_path):
    path = _write_zip(tmp_path, [f"{i}.png" for i in range(1, 8)])
    entries = list_processable_entries(path)

    chunks = chunk_entries(entries, 3)
    assert [len(c) for c in chunks] == [3, 3, 1]

    streamed = [entry.filename for entry, data in iter_entry_data(path, chunks[1]) if data]
    assert streamed == ["4.png", "5.png", "6.png"]


def test_canonical_archive_name():
    assert canonical_archive_name("05.png") == "5.png"
    assert canonical_archive_name("12.JPG") == "12.jpg"
    assert canonical_archive_name("2.1.png") == "2.1.png"


def test_build_image_archive_orders_and_dedupes(storage, tmp_path):
    storage.put_bytes("jobs/j/normalized/10.png", b"ten", "image/png")
    storage.put_bytes("jobs/j/normalized/2.png", b"two", "image/png")
    storage.put_bytes("jobs/j/normalized/02.png", b"zero-two", "image/png")

    objects = [
        ("jobs/j/normalized/10.png", "10.png"),
        ("jobs/j/normalized/2.png", "2.png"),
        ("jobs/j/normalized/02.png", "2.png"),
    ]
    dest = str(tmp_path / "out" / "images.zip")
    size = build_image_archive(storage, objects, dest)

    assert size > 0
    with zipfile.ZipFile(dest) as zf:
        assert zf.namelist() == ["2.png", "10.png"]
        assert zf.read("2.png") == b"zero-two"
