"""
Posture summary written into every snapshot as posture.json.

The summary answers the first questions an auditor asks of a snapshot:
which controls have automated evidence, which artifacts were collected and
how many rows they hold, what could not be collected, how many open
vulnerability alerts exist, and whether the protection policy matched its
baseline. It contains no wall-clock timestamps so that the same inputs on
the same date produce the same file.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from complyvault.collectors.base import CollectionResult
from complyvault.drift.detector import DriftCheckResult
from complyvault.mapping.control_mapper import FrameworkEvidence
from complyvault.storage.models import SnapshotMetadata

SEVERITY_ORDER = ["critical", "high", "medium", "low", "unknown"]


def _alerts_by_severity(collection: CollectionResult) -> dict[str, int] | None:
    artifact = collection.get("dependabot_alerts")
    if artifact is None or artifact.tabular is None:
        return None
    counts = Counter(
        str(row.get("severity") or "unknown").lower() for row in artifact.tabular.rows
    )
    result = {severity: counts.pop(severity, 0) for severity in SEVERITY_ORDER}
    result.update(sorted(counts.items()))
    return result


def build_posture_summary(
    metadata: SnapshotMetadata,
    collection: CollectionResult,
    evidence: list[FrameworkEvidence],
    drift: DriftCheckResult | None = None,
) -> dict[str, Any]:
    """
    Build the posture summary of a snapshot.

    Args:
        metadata: Snapshot metadata.
        collection: Collected artifacts and warnings.
        evidence: Control mapper output, one entry per framework.
        drift: Result of the pre-flight drift check.

    Returns:
        JSON-serializable summary.
    """
    frameworks = {}
    for framework in evidence:
        total = len(framework.coverage)
        automated = len(framework.controls_with_evidence)
        frameworks[framework.framework] = {
            "mapping_version": framework.version,
            "controls_total": total,
            "controls_with_evidence": automated,
            "coverage_percentage": round(automated / total * 100, 1) if total else 0.0,
            "controls_without_evidence": framework.controls_without_evidence,
            "tagged_copies": len(framework.copies),
        }

    artifacts = {
        name: {
            "present": True,
            "optional": artifact.optional,
            "row_count": artifact.tabular.row_count if artifact.tabular is not None else None,
            "files": artifact.file_names(),
        }
        for name, artifact in sorted(collection.artifacts.items())
    }
    for warning in collection.warnings:
        artifacts.setdefault(
            warning.artifact,
            {"present": False, "optional": True, "row_count": None, "files": []},
        )

    alerts = _alerts_by_severity(collection)

    return {
        "date": metadata.date,
        "iso_week": metadata.iso_week,
        "iso_month": metadata.iso_month,
        "platform": collection.platform,
        "frameworks": frameworks,
        "artifacts": dict(sorted(artifacts.items())),
        "warnings": [w.to_dict() for w in collection.warnings],
        "open_vulnerability_alerts": {
            "total": sum(alerts.values()) if alerts is not None else None,
            "by_severity": alerts,
        },
        "drift": {
            "status": drift.status if drift else "not_checked",
            "ruleset": drift.ruleset_name if drift else None,
            "policy_hash": drift.actual_hash if drift else None,
            "baseline_hash": drift.baseline_hash if drift else None,
        },
    }
