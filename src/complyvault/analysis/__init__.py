"""
Analysis over committed snapshots.
"""

from complyvault.analysis.rollup import (
    SNAPSHOT_DATE_COLUMN,
    RollupAggregator,
    RollupArtifact,
    RollupError,
    RollupPeriod,
    RollupResult,
    period_key,
    validate_period_key,
)

__all__ = [
    "SNAPSHOT_DATE_COLUMN",
    "RollupAggregator",
    "RollupArtifact",
    "RollupError",
    "RollupPeriod",
    "RollupResult",
    "period_key",
    "validate_period_key",
]
