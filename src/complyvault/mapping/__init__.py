"""
Control mapping for compliance frameworks.

Declarative tables link control ids to artifact file-name patterns. Two
framework families ship with the package:

    - nist-800-53: NIST SP 800-53 rev5 controls
    - cmmc-2: CMMC 2.0 Level 2 practices

The ControlMapper fans a snapshot's artifact files out into per-control
tagged copies, one framework at a time.
"""

from complyvault.mapping.control_mapper import (
    AUDIT_COLUMNS,
    ControlCoverage,
    ControlDefinition,
    ControlMapper,
    ControlMappingTable,
    FrameworkEvidence,
    MappingConfigError,
    TaggedCopy,
    load_mapping_table,
    load_mapping_tables,
)

__all__ = [
    "ControlMapper",
    "ControlMappingTable",
    "ControlDefinition",
    "ControlCoverage",
    "FrameworkEvidence",
    "TaggedCopy",
    "MappingConfigError",
    "load_mapping_table",
    "load_mapping_tables",
    "AUDIT_COLUMNS",
]
