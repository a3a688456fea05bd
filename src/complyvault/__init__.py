"""
complyvault - Compliance Evidence Archival and Policy-Drift Detection

Every day, a dated and immutable record of who can touch your code.

complyvault captures the authorization and configuration state of a code
hosting organization, tags each artifact against regulatory control
frameworks, refuses to run when the policy guarding its own ledger has
drifted, and keeps an append-only evidence trail with weekly and monthly
rollups.

Key Features:
    - Read-only, paginated collection from the platform REST API
    - Declarative control mapping tables (NIST SP 800-53, CMMC 2.0)
    - Fail-closed drift detection against a seeded policy baseline
    - Dated snapshots committed with a staging-then-publish discipline
    - Idempotent weekly/monthly rollups of tabular evidence
    - Markdown/JSON indices and a maintained verification document

Design Principles:
    - Append-only: past snapshots are never rewritten
    - Fail-closed: a loosened protection policy halts the run
    - Determinism: the same input produces the same bytes
    - Security: read-only by design
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from complyvault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
