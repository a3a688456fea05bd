"""
Control mapping tables and evidence fan-out.

A control mapping table is a static, versioned YAML document linking control
ids of one framework to artifact file-name glob patterns:

    framework: nist-800-53
    version: rev5-2025.1
    controls:
      AC-2:
        title: Account Management
        patterns: ["org_members.*", "repo_collaborators.*"]

Tables are loaded once per run, validated before any collection starts, and
then treated as immutable values. The ControlMapper matches the files of a
snapshot against each control's patterns and produces the list of tagged
copies to materialize, an audit table, and a coverage record.

Mapping Rules:
    - Patterns use fnmatch syntax and are matched case-sensitively
    - Each matching file is copied (never moved) to
      controls/<framework>/<control_id>/<control_id>__<file>
    - A control with no matching file is "not_automated", not an error
    - Frameworks are independent; the same file may appear under many
      controls of many frameworks
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONTROL_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._()-]*$")
FRAMEWORK_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

AUDIT_COLUMNS = ["framework", "control_id", "source_artifact", "destination"]


class MappingConfigError(Exception):
    """
    Raised when a control mapping table is malformed.

    Attributes:
        problems: Every problem found, so operators can fix them in one pass.
    """

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = problems or []
        detail = "; ".join(self.problems)
        super().__init__(f"{message}: {detail}" if detail else message)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key {key!r}", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


@dataclass(frozen=True)
class ControlDefinition:
    """One control and the artifact patterns that evidence it."""

    control_id: str
    title: str
    patterns: tuple[str, ...]

    def matches(self, file_name: str) -> bool:
        return any(fnmatchcase(file_name, pattern) for pattern in self.patterns)


@dataclass(frozen=True)
class ControlMappingTable:
    """
    A validated control mapping table for one framework.

    Attributes:
        framework: Framework identifier (e.g., "nist-800-53").
        version: Version string of the table itself.
        controls: Control definitions in file order.
        source_path: Where the table was loaded from.
    """

    framework: str
    version: str
    controls: tuple[ControlDefinition, ...]
    source_path: str = ""

    @classmethod
    def from_dict(cls, data: Any, source_path: str = "") -> ControlMappingTable:
        """
        Build and validate a table from parsed YAML.

        Raises:
            MappingConfigError: Listing every problem found.
        """
        problems: list[str] = []
        if not isinstance(data, dict):
            raise MappingConfigError(
                f"Invalid mapping table {source_path}",
                ["top level must be a mapping"],
            )

        framework = data.get("framework")
        if not isinstance(framework, str) or not FRAMEWORK_PATTERN.match(framework):
            problems.append(
                "'framework' must be a lowercase identifier (letters, digits, . _ -)"
            )

        version = data.get("version")
        if not isinstance(version, (str, int, float)) or str(version) == "":
            problems.append("'version' is required")

        raw_controls = data.get("controls")
        controls: list[ControlDefinition] = []
        if not isinstance(raw_controls, dict) or not raw_controls:
            problems.append("'controls' must be a non-empty mapping")
            raw_controls = {}

        for control_id, entry in raw_controls.items():
            control_id = str(control_id)
            if not CONTROL_ID_PATTERN.match(control_id):
                problems.append(f"invalid control id {control_id!r}")
                continue
            if isinstance(entry, list):
                entry = {"patterns": entry}
            if not isinstance(entry, dict):
                problems.append(f"{control_id}: entry must be a mapping or pattern list")
                continue
            patterns = entry.get("patterns")
            if not isinstance(patterns, list) or not patterns:
                problems.append(f"{control_id}: 'patterns' must be a non-empty list")
                continue
            bad = [p for p in patterns if not _valid_pattern(p)]
            if bad:
                problems.append(f"{control_id}: invalid patterns {bad!r}")
                continue
            controls.append(
                ControlDefinition(
                    control_id=control_id,
                    title=str(entry.get("title", "")),
                    patterns=tuple(patterns),
                )
            )

        if problems:
            raise MappingConfigError(f"Invalid mapping table {source_path}", problems)

        return cls(
            framework=str(framework),
            version=str(version),
            controls=tuple(controls),
            source_path=source_path,
        )

    @property
    def control_ids(self) -> list[str]:
        return [c.control_id for c in self.controls]


def _valid_pattern(pattern: Any) -> bool:
    if not isinstance(pattern, str) or not pattern.strip():
        return False
    if "/" in pattern or "\\" in pattern or ".." in pattern:
        return False
    return True


def load_mapping_table(path: Path | str) -> ControlMappingTable:
    """
    Load and validate one mapping table from a YAML file.

    Raises:
        MappingConfigError: If the file is missing, unparsable, or invalid.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.load(f, Loader=_UniqueKeyLoader)  # noqa: S506 - SafeLoader subclass
    except OSError as e:
        raise MappingConfigError(f"Cannot read mapping table {path}", [str(e)]) from e
    except yaml.YAMLError as e:
        raise MappingConfigError(f"Invalid YAML in mapping table {path}", [str(e)]) from e

    return ControlMappingTable.from_dict(data, source_path=str(path))


def load_mapping_tables(paths: dict[str, str]) -> tuple[ControlMappingTable, ...]:
    """
    Load every configured mapping table.

    Args:
        paths: Framework name to YAML path. The name must match the
            table's ``framework`` field.

    Returns:
        Tables sorted by framework name.

    Raises:
        MappingConfigError: Aggregating the problems of every table.
    """
    problems: list[str] = []
    tables: list[ControlMappingTable] = []

    for name, path in sorted(paths.items()):
        try:
            table = load_mapping_table(path)
        except MappingConfigError as e:
            problems.append(str(e))
            continue
        if table.framework != name:
            problems.append(
                f"{path}: declares framework {table.framework!r} but is configured as {name!r}"
            )
            continue
        tables.append(table)

    if problems:
        raise MappingConfigError("Control mapping validation failed", problems)

    for table in tables:
        logger.info(
            f"Loaded {len(table.controls)} controls for {table.framework} "
            f"(version {table.version})"
        )
    return tuple(tables)


@dataclass(frozen=True)
class TaggedCopy:
    """
    One control-tagged copy of an artifact file.

    Attributes:
        framework: Framework the control belongs to.
        control_id: Control the copy evidences.
        source_artifact: Artifact file name in the snapshot's artifacts/ dir.
        destination: Snapshot-relative path of the copy.
    """

    framework: str
    control_id: str
    source_artifact: str
    destination: str

    def to_row(self) -> dict[str, str]:
        return {
            "framework": self.framework,
            "control_id": self.control_id,
            "source_artifact": self.source_artifact,
            "destination": self.destination,
        }


@dataclass
class ControlCoverage:
    """Evidence found for one control."""

    control_id: str
    title: str
    patterns: list[str]
    evidence: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "automated" if self.evidence else "not_automated"

    def to_dict(self) -> dict[str, Any]:
        return {
            "control_id": self.control_id,
            "title": self.title,
            "patterns": self.patterns,
            "status": self.status,
            "evidence": self.evidence,
        }


@dataclass
class FrameworkEvidence:
    """
    Fan-out result for one framework.

    Attributes:
        framework: Framework identifier.
        version: Mapping table version used.
        copies: Every tagged copy, ordered by control then file.
        coverage: One entry per control in table order.
    """

    framework: str
    version: str
    copies: list[TaggedCopy] = field(default_factory=list)
    coverage: list[ControlCoverage] = field(default_factory=list)

    @property
    def base_dir(self) -> str:
        return f"controls/{self.framework}"

    def audit_rows(self) -> list[dict[str, str]]:
        return [copy.to_row() for copy in self.copies]

    def copies_for(self, control_id: str) -> list[TaggedCopy]:
        return [c for c in self.copies if c.control_id == control_id]

    @property
    def controls_with_evidence(self) -> list[str]:
        return [c.control_id for c in self.coverage if c.evidence]

    @property
    def controls_without_evidence(self) -> list[str]:
        return [c.control_id for c in self.coverage if not c.evidence]

    def coverage_document(self) -> dict[str, Any]:
        return {
            "framework": self.framework,
            "version": self.version,
            "controls_total": len(self.coverage),
            "controls_with_evidence": len(self.controls_with_evidence),
            "controls": [c.to_dict() for c in self.coverage],
        }


class ControlMapper:
    """
    Fans collected artifact files out to per-control tagged copies.

    The mapper is pure: it decides which copies exist and where they go.
    The snapshot ledger materializes them.

    Example:
        tables = load_mapping_tables(settings.mappings)
        mapper = ControlMapper(tables)
        for evidence in mapper.map_artifacts(result.file_names()):
            print(evidence.framework, evidence.controls_without_evidence)
    """

    def __init__(self, tables: Iterable[ControlMappingTable]) -> None:
        self.tables = tuple(tables)
        frameworks = [t.framework for t in self.tables]
        duplicates = sorted({f for f in frameworks if frameworks.count(f) > 1})
        if duplicates:
            raise MappingConfigError(
                "Duplicate framework tables", [f"framework {d!r} loaded twice" for d in duplicates]
            )

    def map_artifacts(self, file_names: Iterable[str]) -> list[FrameworkEvidence]:
        """Map the same artifact files through every loaded framework."""
        names = sorted(set(file_names))
        return [self.map_framework(table, names) for table in self.tables]

    def map_framework(
        self,
        table: ControlMappingTable,
        file_names: Iterable[str],
    ) -> FrameworkEvidence:
        """
        Map artifact files through one framework table.

        Args:
            table: Validated mapping table.
            file_names: Artifact file names present in the snapshot.

        Returns:
            FrameworkEvidence with copies, audit rows and coverage.
        """
        names = sorted(set(file_names))
        result = FrameworkEvidence(framework=table.framework, version=table.version)

        for control in table.controls:
            matched = [name for name in names if control.matches(name)]
            coverage = ControlCoverage(
                control_id=control.control_id,
                title=control.title,
                patterns=list(control.patterns),
            )
            for file_name in matched:
                destination = (
                    f"{result.base_dir}/{control.control_id}/"
                    f"{control.control_id}__{file_name}"
                )
                result.copies.append(
                    TaggedCopy(
                        framework=table.framework,
                        control_id=control.control_id,
                        source_artifact=file_name,
                        destination=destination,
                    )
                )
                coverage.evidence.append(destination)
            result.coverage.append(coverage)

            if not matched:
                logger.debug(f"{table.framework} {control.control_id}: no automated evidence")

        logger.info(
            f"Mapped {table.framework}: {len(result.controls_with_evidence)}/"
            f"{len(result.coverage)} controls with evidence, {len(result.copies)} copies"
        )
        return result
