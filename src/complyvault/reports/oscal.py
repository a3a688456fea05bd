"""
Minimal OSCAL assessment-results projection of a snapshot.

Produces one result per framework and one observation per control, with
the control's tagged copies as relevant evidence. This is a projection for
tooling that ingests OSCAL, not a complete assessment: there is no
assessment plan, no findings and no risk model.

All UUIDs are uuid5 values derived from the snapshot date, framework and
control, and every timestamp is the snapshot date at midnight UTC, so the
document is identical for identical inputs.
"""

from __future__ import annotations

import uuid
from typing import Any

from complyvault import __version__
from complyvault.mapping.control_mapper import FrameworkEvidence
from complyvault.storage.models import SnapshotMetadata

OSCAL_VERSION = "1.1.2"


def _uuid(*parts: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, "complyvault:" + ":".join(parts)))


def _observation(
    date: str,
    timestamp: str,
    framework: FrameworkEvidence,
    control_id: str,
    title: str,
    evidence: list[str],
) -> dict[str, Any]:
    automated = bool(evidence)
    observation: dict[str, Any] = {
        "uuid": _uuid(date, framework.framework, control_id),
        "title": f"{control_id} {title}".strip(),
        "description": (
            f"{len(evidence)} automated evidence file(s) collected for {control_id}."
            if automated
            else f"No automated evidence is mapped to {control_id}."
        ),
        "props": [
            {"name": "control-id", "value": control_id},
            {"name": "evidence-status", "value": "automated" if automated else "not_automated"},
        ],
        "methods": ["EXAMINE"] if automated else ["INTERVIEW"],
        "collected": timestamp,
    }
    if automated:
        observation["relevant-evidence"] = [
            {"href": path, "description": path.rsplit("/", 1)[-1]} for path in evidence
        ]
    return observation


def build_oscal_assessment_results(
    metadata: SnapshotMetadata,
    evidence: list[FrameworkEvidence],
) -> dict[str, Any]:
    """
    Build the assessment-results document for a snapshot.

    Evidence hrefs are relative to the snapshot root.
    """
    date = metadata.date
    timestamp = f"{date}T00:00:00+00:00"

    results = []
    for framework in evidence:
        results.append(
            {
                "uuid": _uuid(date, framework.framework),
                "title": f"{framework.framework} automated evidence",
                "description": (
                    f"Evidence snapshot {date} mapped through {framework.framework} "
                    f"table version {framework.version}."
                ),
                "start": timestamp,
                "props": [
                    {"name": "framework", "value": framework.framework},
                    {"name": "mapping-version", "value": framework.version},
                ],
                "reviewed-controls": {
                    "control-selections": [
                        {
                            "include-controls": [
                                {"control-id": c.control_id.lower()} for c in framework.coverage
                            ]
                        }
                    ]
                },
                "observations": [
                    _observation(date, timestamp, framework, c.control_id, c.title, c.evidence)
                    for c in framework.coverage
                ],
            }
        )

    return {
        "assessment-results": {
            "uuid": _uuid(date, "assessment-results"),
            "metadata": {
                "title": f"complyvault evidence snapshot {date}",
                "last-modified": timestamp,
                "version": date,
                "oscal-version": OSCAL_VERSION,
                "props": [{"name": "generator", "value": f"complyvault {__version__}"}],
            },
            "import-ap": {"href": "#"},
            "results": results,
        }
    }
