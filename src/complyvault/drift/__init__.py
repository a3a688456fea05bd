"""
Drift detection for the protection policy guarding the evidence ledger.
"""

from complyvault.drift.baseline import Baseline, BaselineError, BaselineStore
from complyvault.drift.canonical import (
    CANONICALIZATION_VERSION,
    canonical_bytes,
    canonicalize_ruleset,
    policy_hash,
)
from complyvault.drift.detector import (
    DRIFT_STATUS_BOOTSTRAP,
    DRIFT_STATUS_MATCH,
    DriftCheckResult,
    DriftDetectedError,
    DriftDetector,
    PolicySource,
)

__all__ = [
    "Baseline",
    "BaselineError",
    "BaselineStore",
    "CANONICALIZATION_VERSION",
    "DRIFT_STATUS_BOOTSTRAP",
    "DRIFT_STATUS_MATCH",
    "DriftCheckResult",
    "DriftDetectedError",
    "DriftDetector",
    "PolicySource",
    "canonical_bytes",
    "canonicalize_ruleset",
    "policy_hash",
]
