"""
archive.py
~~~~~~~~~~
Source-archive handling: download, entry filtering and the filtered
deliverable archives.

The ZIP is read through its central directory and each entry is
decompressed on demand, so an archive is never held in memory as a whole.
"""
from __future__ import annotations

import logging
import os
import posixpath
import zipfile
from dataclasses import dataclass
from typing import Iterator, List, Sequence, Tuple

from subocr.core.errors import PreconditionError
from subocr.core.file_validation import validate_zip_signature
from subocr.services.filenames import (
    natural_key,
    strip_extension,
    validate_processable_entry,
)
from subocr.services.storage import StorageProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveEntry:
    entry_name: str               # path inside the ZIP
    filename: str                 # unique basename used for keys and custom ids
    base_name: str
    include_in_final_archive: bool


def download_source_archive(storage: StorageProvider, zip_key: str, dest_path: str) -> str:
    """
    Fetch the source ZIP into the workspace. A previously downloaded copy of
    the same size is reused.
    """
    remote_size = storage.size(zip_key)
    if remote_size is None:
        raise PreconditionError(f"Source archive {zip_key} does not exist in storage.")
    if remote_size == 0:
        raise PreconditionError(f"Source archive {zip_key} is empty.")

    if not (os.path.exists(dest_path) and os.path.getsize(dest_path) == remote_size):
        logger.info(f"Downloading source archive {zip_key} ({remote_size} bytes)")
        storage.download_to_file(zip_key, dest_path)

    validate_zip_signature(dest_path)
    return dest_path


def _unique_filename(original_name: str, used_stems: set) -> str:
    stem = strip_extension(original_name)
    ext = original_name[len(stem):]
    candidate = original_name
    counter = 1
    while strip_extension(candidate).lower() in used_stems:
        candidate = f"{stem}-{counter}{ext}"
        counter += 1
    used_stems.add(strip_extension(candidate).lower())
    return candidate


def list_processable_entries(zip_path: str) -> List[ArchiveEntry]:
    """
    Processable image entries in natural filename order.

    Names colliding with an earlier entry (same stem, case-insensitive) get a
    "-N" suffix, which turns them into variants that are OCR'd but never
    archived.
    """
    entries: List[ArchiveEntry] = []
    used_stems: set = set()
    skipped = 0

    try:
        with zipfile.ZipFile(zip_path) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                accepted = validate_processable_entry(info.filename)
                if accepted is None:
                    skipped += 1
                    continue

                filename = _unique_filename(accepted.original_name, used_stems)
                if filename != accepted.original_name:
                    accepted = validate_processable_entry(filename)

                entries.append(ArchiveEntry(
                    entry_name=info.filename,
                    filename=filename,
                    base_name=accepted.base_name,
                    include_in_final_archive=accepted.include_in_final_archive,
                ))
    except zipfile.BadZipFile as e:
        raise PreconditionError(f"Source archive is not a readable ZIP: {e}") from e

    entries.sort(key=lambda entry: (natural_key(entry.filename), entry.entry_name))
    logger.info(f"Archive {zip_path}: {len(entries)} processable entries, {skipped} skipped")
    return entries


def chunk_entries(entries: Sequence[ArchiveEntry], size: int) -> List[List[ArchiveEntry]]:
    if size <= 0:
        raise ValueError("Batch size must be positive")
    return [list(entries[start:start + size]) for start in range(0, len(entries), size)]


def iter_entry_data(zip_path: str, entries: Sequence[ArchiveEntry]) -> Iterator[Tuple[ArchiveEntry, bytes]]:
    """Yield (entry, bytes) one image at a time."""
    with zipfile.ZipFile(zip_path) as zf:
        for entry in entries:
            with zf.open(entry.entry_name) as handle:
                yield entry, handle.read()


def build_image_archive(storage: StorageProvider, objects: Sequence[Tuple[str, str]], dest_path: str) -> int:
    """
    Pack stored images into a ZIP at dest_path.

    Args:
        objects: (storage key, name inside the archive) pairs. Archive names are
                 sorted naturally; a repeated name keeps its first object.
    Returns:
        Size of the written archive in bytes.
    """
    seen = set()
    ordered = sorted(objects, key=lambda item: (natural_key(item[1]), item[0]))

    os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
    with zipfile.ZipFile(dest_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for key, name in ordered:
            if name in seen:
                logger.warning(f"Skipping duplicate archive name {name} ({key})")
                continue
            seen.add(name)
            zf.writestr(name, storage.get_bytes(key))

    return os.path.getsize(dest_path)


def canonical_archive_name(filename: str) -> str:
    """'05.png' -> '5.png'. Only meaningful for purely numeric stems."""
    stem = strip_extension(posixpath.basename(filename))
    ext = filename[len(strip_extension(filename)):].lower()
    return f"{int(stem)}{ext}" if stem.isascii() and stem.isdigit() else posixpath.basename(filename)
