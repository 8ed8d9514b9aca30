"""
file_validation.py
~~~~~~~~~~~~~~~~~~
Validates the source archive using Magic Numbers (signatures) instead of
trusting the storage key's extension.
"""
import logging
import os

from subocr.core.errors import PreconditionError

logger = logging.getLogger(__name__)

# Magic Numbers (File Signatures)
SIGNATURES = {
    # Local file header
    "zip": b"\x50\x4B\x03\x04",
    # End-of-central-directory record of an archive with no entries
    "zip_empty": b"\x50\x4B\x05\x06",
}


def validate_zip_signature(path: str) -> None:
    """
    Validate that a downloaded archive really is a ZIP with entries.
    Raises PreconditionError if the file is missing, empty or not a ZIP.
    """
    if not os.path.exists(path):
        raise PreconditionError(f"Source archive not found at {path}.")

    if os.path.getsize(path) == 0:
        raise PreconditionError("Source archive is empty.")

    with open(path, "rb") as f:
        header = f.read(4)

    if header.startswith(SIGNATURES["zip_empty"]):
        logger.warning(f"Validation failed: {path} is a ZIP without entries.")
        raise PreconditionError("Source archive contains no files.")

    if not header.startswith(SIGNATURES["zip"]):
        logger.warning(f"Validation failed: {path} lacks the ZIP signature.")
        raise PreconditionError(
            "Invalid archive content. The uploaded object is not a ZIP file (signature missing)."
        )
