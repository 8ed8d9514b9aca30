"""
filenames.py
~~~~~~~~~~~~
Parsing, natural ordering and grouping of video-frame image filenames.

Frames are named after their position in the video ("1.png", "2.png",
"10.png"). Supplemental captures of the same moment carry a decimal or
hyphen suffix ("2.1.png", "2-1.png") and share the base key of their
primary frame.
"""
from __future__ import annotations

import functools
import posixpath
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

Token = Union[int, str]

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg")
METADATA_DIR = "__MACOSX"
APPLEDOUBLE_PREFIX = "._"

_EXTENSION_RE = re.compile(r"\.[^.]+$")
_TOKEN_RE = re.compile(r"\d+|\D+", re.ASCII)
_LEADING_DIGITS_RE = re.compile(r"^(\d+)", re.ASCII)
_DIGITS_RE = re.compile(r"\d+", re.ASCII)


@dataclass(frozen=True)
class ProcessableEntry:
    """An archive entry accepted for OCR."""
    base_name: str
    original_name: str
    include_in_final_archive: bool


def strip_extension(name: str) -> str:
    return _EXTENSION_RE.sub("", name)


def tokenize(name: str) -> List[Token]:
    """Split a filename (without extension, lower-cased) into digit and non-digit runs."""
    stem = strip_extension(name.lower())
    raw_tokens = _TOKEN_RE.findall(stem)
    if not raw_tokens:
        return [stem]
    return [int(token) if _DIGITS_RE.fullmatch(token) else token for token in raw_tokens]


def compare(a: str, b: str) -> int:
    """
    Natural comparison: numbers by value, text lexically, shorter token
    sequences first, and numbers before text at the same position.
    """
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)

    for index in range(max(len(tokens_a), len(tokens_b))):
        if index >= len(tokens_a):
            return -1
        if index >= len(tokens_b):
            return 1

        token_a = tokens_a[index]
        token_b = tokens_b[index]

        if isinstance(token_a, int) and isinstance(token_b, int):
            if token_a != token_b:
                return -1 if token_a < token_b else 1
            continue

        if isinstance(token_a, int):
            return -1
        if isinstance(token_b, int):
            return 1

        if token_a != token_b:
            return -1 if token_a < token_b else 1

    return 0


def _compare_with_tiebreak(a: str, b: str) -> int:
    result = compare(a, b)
    if result != 0:
        return result
    # "01.png" and "1.png" tokenize identically; keep the order total.
    return (a > b) - (a < b)


natural_key = functools.cmp_to_key(_compare_with_tiebreak)


def natural_sorted(names: Iterable[str]) -> List[str]:
    return sorted(names, key=natural_key)


def base_key(name: str) -> str:
    """
    Canonical grouping key: the leading integer without zero padding
    ("05.png" -> "5", "5.1.png" -> "5"), or the stem when there is none.
    """
    stem = strip_extension(posixpath.basename(name))
    match = _LEADING_DIGITS_RE.match(stem)
    if not match:
        return stem
    return str(int(match.group(1)))


def is_image_name(name: str) -> bool:
    return name.lower().endswith(IMAGE_EXTENSIONS)


def validate_processable_entry(entry_name: str) -> Optional[ProcessableEntry]:
    """
    Decide whether an archive entry is a frame worth OCR-ing.

    Returns None for platform metadata, non-image files and names without a
    leading number. Only purely numeric stems go into the final archive;
    decimal/hyphen variants are recognized but kept out of it.
    """
    normalized = entry_name.replace("\\", "/")
    parts = normalized.split("/")
    if METADATA_DIR in parts:
        return None

    base = parts[-1]
    if not base or base.startswith(APPLEDOUBLE_PREFIX):
        return None

    if not is_image_name(base):
        return None

    stem = strip_extension(base)
    match = _LEADING_DIGITS_RE.match(stem)
    if not match:
        return None

    return ProcessableEntry(
        base_name=str(int(match.group(1))),
        original_name=base,
        include_in_final_archive=_DIGITS_RE.fullmatch(stem) is not None,
    )
