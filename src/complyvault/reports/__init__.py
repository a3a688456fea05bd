"""
Index publishing and derived snapshot documents.
"""

from complyvault.reports.index import (
    IndexPublisher,
    build_snapshot_index,
    render_snapshot_markdown,
    write_rollup_index,
)
from complyvault.reports.oscal import build_oscal_assessment_results
from complyvault.reports.posture import build_posture_summary
from complyvault.reports.verification import (
    VerificationDocumentError,
    check_document,
    check_markers,
    replace_marked_block,
    write_status_block,
)

__all__ = [
    "IndexPublisher",
    "VerificationDocumentError",
    "build_oscal_assessment_results",
    "build_posture_summary",
    "build_snapshot_index",
    "check_document",
    "check_markers",
    "render_snapshot_markdown",
    "replace_marked_block",
    "write_rollup_index",
    "write_status_block",
]
