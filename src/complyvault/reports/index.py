"""
Snapshot and rollup indices, and the verification document status block.

Every snapshot and rollup directory carries an INDEX.md for people and an
index.json for tooling. Links in both are relative to the directory they
sit in, so a snapshot can be copied or archived without breaking them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from complyvault.collectors.base import CollectionResult
from complyvault.config.settings import PublishingConfig
from complyvault.mapping.control_mapper import FrameworkEvidence
from complyvault.reports.verification import check_document, write_status_block
from complyvault.storage.fileio import dump_json
from complyvault.storage.ledger import SnapshotStage
from complyvault.storage.models import SnapshotMetadata

if TYPE_CHECKING:
    from complyvault.analysis.rollup import RollupResult

logger = logging.getLogger(__name__)

INDEX_MARKDOWN = "INDEX.md"
INDEX_JSON = "index.json"

SNAPSHOT_DOCUMENTS = {
    "metadata": "metadata.json",
    "manifest": "manifest.json",
    "posture": "posture.json",
    "oscal": "oscal/assessment-results.json",
}


def build_snapshot_index(
    metadata: SnapshotMetadata,
    collection: CollectionResult,
    evidence: list[FrameworkEvidence],
) -> dict[str, Any]:
    """Machine-readable index of one snapshot."""
    artifacts = [
        {
            "name": name,
            "optional": artifact.optional,
            "row_count": artifact.tabular.row_count if artifact.tabular is not None else None,
            "files": [f"artifacts/{f}" for f in artifact.file_names()],
        }
        for name, artifact in sorted(collection.artifacts.items())
    ]

    controls = {}
    for framework in evidence:
        controls[framework.framework] = {
            "version": framework.version,
            "audit": f"{framework.base_dir}/audit.csv",
            "coverage": f"{framework.base_dir}/coverage.json",
            "controls": {
                c.control_id: {
                    "title": c.title,
                    "status": c.status,
                    "evidence": c.evidence,
                }
                for c in framework.coverage
            },
        }

    return {
        "date": metadata.date,
        "iso_week": metadata.iso_week,
        "iso_month": metadata.iso_month,
        "artifacts": artifacts,
        "controls": controls,
        "warnings": [w.to_dict() for w in collection.warnings],
        "documents": SNAPSHOT_DOCUMENTS,
    }


def render_snapshot_markdown(index: dict[str, Any]) -> str:
    lines = []

    lines.append(f"# Evidence Snapshot {index['date']}")
    lines.append("")
    lines.append(f"ISO week {index['iso_week']} | Month {index['iso_month']}")
    lines.append("")

    lines.append("## Artifacts")
    lines.append("")
    lines.append("| Artifact | Rows | Files |")
    lines.append("|----------|------|-------|")
    for artifact in index["artifacts"]:
        links = ", ".join(f"[{p.rsplit('/', 1)[-1]}]({p})" for p in artifact["files"])
        rows = "" if artifact["row_count"] is None else str(artifact["row_count"])
        name = artifact["name"] + (" (optional)" if artifact["optional"] else "")
        lines.append(f"| {name} | {rows} | {links} |")
    lines.append("")

    if index["warnings"]:
        lines.append("## Not Collected")
        lines.append("")
        for warning in index["warnings"]:
            lines.append(f"- **{warning['artifact']}**: {warning['reason']}")
        lines.append("")

    for framework, data in index["controls"].items():
        lines.append(f"## {framework} ({data['version']})")
        lines.append("")
        lines.append(f"Audit table: [audit.csv]({data['audit']})")
        lines.append("")
        for control_id, control in data["controls"].items():
            heading = f"- **{control_id}** {control['title']}".rstrip()
            if not control["evidence"]:
                lines.append(f"{heading}: no automated evidence")
                continue
            lines.append(heading)
            for path in control["evidence"]:
                lines.append(f"  - [{path.rsplit('/', 1)[-1]}]({path})")
        lines.append("")

    lines.append("## Documents")
    lines.append("")
    for label, path in index["documents"].items():
        lines.append(f"- {label}: [{path}]({path})")
    lines.append("")

    return "\n".join(lines)


def write_rollup_index(directory: Path, result: RollupResult) -> dict[str, Any]:
    """Write INDEX.md and index.json into a staged rollup directory."""
    index = {
        "period": result.period.value,
        "key": result.key,
        "snapshots": result.snapshots,
        "artifacts": [
            {
                "name": name,
                "file": artifact.file_name,
                "row_count": len(artifact.rows),
            }
            for name, artifact in sorted(result.artifacts.items())
        ],
    }

    lines = [f"# {result.period.value.capitalize()} Rollup {result.key}", ""]
    if result.snapshots:
        lines.append(f"Snapshots: {', '.join(result.snapshots)}")
    else:
        lines.append("No snapshots were committed in this period.")
    lines.append("")
    if index["artifacts"]:
        lines.append("| Artifact | Rows |")
        lines.append("|----------|------|")
        for entry in index["artifacts"]:
            lines.append(f"| [{entry['name']}]({entry['file']}) | {entry['row_count']} |")
        lines.append("")

    for name, text in ((INDEX_JSON, dump_json(index)), (INDEX_MARKDOWN, "\n".join(lines))):
        with open(directory / name, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    return index


class IndexPublisher:
    """
    Publishes indices and the verification document status block.

    Example:
        publisher = IndexPublisher(settings.publishing)
        publisher.check_verification_document()   # before collecting
        ...
        publisher.write_snapshot_index(stage, collection, evidence)
        ...
        publisher.update_verification_document(stage.metadata, posture)
    """

    def __init__(self, config: PublishingConfig) -> None:
        self.config = config

    @property
    def document_path(self) -> Path | None:
        if not self.config.verification_document:
            return None
        return Path(self.config.verification_document).expanduser()

    def write_snapshot_index(
        self,
        stage: SnapshotStage,
        collection: CollectionResult,
        evidence: list[FrameworkEvidence],
    ) -> dict[str, Any]:
        index = build_snapshot_index(stage.metadata, collection, evidence)
        stage.write_json(INDEX_JSON, index)
        stage.write_text(INDEX_MARKDOWN, render_snapshot_markdown(index))
        return index

    def check_verification_document(self) -> None:
        """
        Raises:
            VerificationDocumentError: If the document has unusable markers.
        """
        path = self.document_path
        if path is None:
            return
        check_document(path, self.config.start_marker, self.config.end_marker)

    def render_status_block(self, metadata: SnapshotMetadata, posture: dict[str, Any]) -> str:
        lines = []
        lines.append(f"**Latest snapshot:** `snapshots/{metadata.date}/`")
        lines.append("")
        lines.append(f"- ISO week: {metadata.iso_week}")
        lines.append(f"- Month: {metadata.iso_month}")

        drift = posture.get("drift", {})
        drift_line = f"- Protection policy: {drift.get('status', 'not_checked')}"
        if drift.get("policy_hash"):
            drift_line += f" (`{drift['policy_hash']}`)"
        lines.append(drift_line)

        alerts = posture.get("open_vulnerability_alerts", {})
        if alerts.get("total") is not None:
            lines.append(f"- Open vulnerability alerts: {alerts['total']}")
        lines.append("")

        lines.append("| Framework | Controls | With evidence | Coverage |")
        lines.append("|-----------|----------|---------------|----------|")
        for name, data in posture.get("frameworks", {}).items():
            lines.append(
                f"| {name} | {data['controls_total']} | {data['controls_with_evidence']} "
                f"| {data['coverage_percentage']:.1f}% |"
            )

        warnings = posture.get("warnings", [])
        if warnings:
            lines.append("")
            lines.append("Not collected: " + ", ".join(w["artifact"] for w in warnings))

        return "\n".join(lines)

    def update_verification_document(
        self,
        metadata: SnapshotMetadata,
        posture: dict[str, Any],
    ) -> bool:
        """
        Replace the status block with the state of a committed snapshot.

        Returns:
            True if the document changed.
        """
        path = self.document_path
        if path is None:
            return False
        block = self.render_status_block(metadata, posture)
        return write_status_block(path, block, self.config.start_marker, self.config.end_marker)
