"""
Marker-delimited status block in a human-maintained verification document.

Auditors keep a Markdown document (e.g. VERIFICATION.md) describing how to
check the ledger. complyvault owns only the text between two HTML comment
markers and leaves everything else untouched:

    <!-- complyvault:status:start -->
    ...generated status...
    <!-- complyvault:status:end -->

Marker Rules:
    - Exactly one start marker and one end marker, start before end
    - Anything else (missing, unpaired, duplicated, out of order) is an
      error; the document is never guessed at or repaired
    - A missing document is created with a title and an empty block
"""

from __future__ import annotations

import logging
from pathlib import Path

from complyvault.storage.fileio import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Evidence Ledger Verification"


class VerificationDocumentError(Exception):
    """Raised when the verification document's markers are unusable."""

    pass


def check_markers(text: str, start_marker: str, end_marker: str) -> tuple[int, int]:
    """
    Locate the marked block.

    Returns:
        Tuple of (offset just after the start marker, offset of the end marker).

    Raises:
        VerificationDocumentError: If the markers are not exactly one
            ordered pair.
    """
    starts = text.count(start_marker)
    ends = text.count(end_marker)

    if starts == 0 and ends == 0:
        raise VerificationDocumentError(
            f"Status markers not found; add {start_marker} and {end_marker}"
        )
    if starts != ends:
        raise VerificationDocumentError(
            f"Unpaired status markers ({starts} start, {ends} end)"
        )
    if starts > 1:
        raise VerificationDocumentError(f"Duplicated status markers ({starts} pairs)")

    start = text.index(start_marker)
    end = text.index(end_marker)
    if end < start:
        raise VerificationDocumentError("Status end marker appears before start marker")
    return start + len(start_marker), end


def replace_marked_block(text: str, block: str, start_marker: str, end_marker: str) -> str:
    """Replace the content between the markers, leaving the rest byte-identical."""
    if start_marker in block or end_marker in block:
        raise VerificationDocumentError("Status block must not contain the markers")
    inner_start, inner_end = check_markers(text, start_marker, end_marker)
    return text[:inner_start] + "\n" + block.strip("\n") + "\n" + text[inner_end:]


def new_document(
    block: str,
    start_marker: str,
    end_marker: str,
    title: str = DEFAULT_TITLE,
) -> str:
    body = block.strip("\n")
    return f"# {title}\n\n{start_marker}\n{body}\n{end_marker}\n"


def check_document(path: Path, start_marker: str, end_marker: str) -> None:
    """
    Pre-flight check of an existing document. A missing document is fine.

    Raises:
        VerificationDocumentError: If the document exists with bad markers.
    """
    if not path.exists():
        logger.debug(f"Verification document {path} does not exist yet")
        return
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise VerificationDocumentError(f"Cannot read {path}: {e}") from e
    try:
        check_markers(text, start_marker, end_marker)
    except VerificationDocumentError as e:
        raise VerificationDocumentError(f"{path}: {e}") from e


def write_status_block(path: Path, block: str, start_marker: str, end_marker: str) -> bool:
    """
    Write the status block into the document, creating it if needed.

    Returns:
        True if the file changed.
    """
    if path.exists():
        current = path.read_text(encoding="utf-8")
        try:
            updated = replace_marked_block(current, block, start_marker, end_marker)
        except VerificationDocumentError as e:
            raise VerificationDocumentError(f"{path}: {e}") from e
    else:
        current = None
        updated = new_document(block, start_marker, end_marker)

    if updated == current:
        logger.debug(f"Verification document {path} already up to date")
        return False

    atomic_write_text(path, updated)
    logger.info(f"Updated verification document {path}")
    return True
