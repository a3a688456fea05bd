"""
Periodic rollups of tabular evidence.

A rollup concatenates the CSV rows of every snapshot dated within an ISO
week or a calendar month, per artifact, in chronological order. Each row is
prefixed with the date of the snapshot it came from, so a weekly rollup
answers "who had admin on repo X at any point during 2025-W32" with a
single file.

Rollup Rules:
    - Only committed snapshots are read
    - Columns are the union of the snapshots' columns in first-seen order,
      always led by snapshot_date; missing cells are empty
    - Snapshots that lack an artifact are skipped for that artifact
    - Output carries no timestamps, so recomputing an unchanged period
      produces byte-identical files
    - The period directory is rebuilt in staging and replaced wholesale
    - Rollups work in their own staging area, so a concurrent run's
      staging cleanup never touches them

Output Layout:
    rollups/weekly/2025-W32/
        <artifact>.csv
        rollup.json
        INDEX.md, index.json
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from complyvault.collectors.tabular import read_csv, render_csv
from complyvault.reports.index import write_rollup_index
from complyvault.storage.fileio import dump_json, replace_tree
from complyvault.storage.ledger import SnapshotLedger
from complyvault.storage.lock import RunLock
from complyvault.storage.models import iso_month_key, iso_week_key, parse_date_key

logger = logging.getLogger(__name__)

SNAPSHOT_DATE_COLUMN = "snapshot_date"
ROLLUP_FILE = "rollup.json"

WEEK_KEY_PATTERN = re.compile(r"^\d{4}-W(0[1-9]|[1-4]\d|5[0-3])$")
MONTH_KEY_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class RollupError(Exception):
    """Raised for an invalid rollup period or key."""

    pass


class RollupPeriod(str, Enum):
    """Rollup period kinds."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"


def period_key(period: RollupPeriod, day: date) -> str:
    """Key of the period containing a date."""
    if period == RollupPeriod.WEEKLY:
        return iso_week_key(day)
    return iso_month_key(day)


def validate_period_key(period: RollupPeriod, key: str) -> str:
    """
    Raises:
        RollupError: If key does not name a period of this kind.
    """
    pattern = WEEK_KEY_PATTERN if period == RollupPeriod.WEEKLY else MONTH_KEY_PATTERN
    if not pattern.match(key):
        example = "2025-W32" if period == RollupPeriod.WEEKLY else "2025-08"
        raise RollupError(f"Invalid {period.value} key {key!r} (expected e.g. {example})")
    return key


@dataclass
class RollupArtifact:
    """One concatenated artifact table."""

    name: str
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, str]] = field(default_factory=list)
    snapshots: list[str] = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return f"{self.name}.csv"

    def add(self, snapshot_date: str, columns: list[str], rows: list[dict[str, str]]) -> None:
        if not self.columns:
            self.columns.append(SNAPSHOT_DATE_COLUMN)
        for column in columns:
            if column not in self.columns:
                self.columns.append(column)
        for row in rows:
            self.rows.append({SNAPSHOT_DATE_COLUMN: snapshot_date, **row})
        self.snapshots.append(snapshot_date)

    def to_csv(self) -> str:
        return render_csv(self.columns, self.rows)


@dataclass
class RollupResult:
    """
    Outcome of a rollup computation.

    Attributes:
        period: Period kind.
        key: Period key (e.g., 2025-W32).
        snapshots: Snapshot dates included, oldest first.
        artifacts: Concatenated tables keyed by artifact name.
        path: Directory the rollup was published to.
        warnings: Non-fatal conditions, such as an empty period.
    """

    period: RollupPeriod
    key: str
    snapshots: list[str] = field(default_factory=list)
    artifacts: dict[str, RollupArtifact] = field(default_factory=dict)
    path: Path | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.snapshots

    def to_dict(self) -> dict[str, Any]:
        """Deterministic summary written as rollup.json."""
        return {
            "period": self.period.value,
            "key": self.key,
            "snapshots": self.snapshots,
            "artifacts": {
                name: {
                    "file": artifact.file_name,
                    "columns": artifact.columns,
                    "row_count": len(artifact.rows),
                    "snapshots": artifact.snapshots,
                }
                for name, artifact in sorted(self.artifacts.items())
            },
            "warnings": self.warnings,
        }


class RollupAggregator:
    """
    Builds weekly and monthly rollups from committed snapshots.

    Example:
        aggregator = RollupAggregator(ledger)
        result = aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        print(result.path, result.snapshots)
    """

    def __init__(self, ledger: SnapshotLedger) -> None:
        self.ledger = ledger

    def rollup_path(self, period: RollupPeriod, key: str) -> Path:
        return self.ledger.rollups_dir / period.value / key

    def select_snapshots(self, period: RollupPeriod, key: str) -> list[str]:
        """Committed snapshot dates that fall within the period, oldest first."""
        return [
            snapshot
            for snapshot in self.ledger.list_snapshots()
            if period_key(period, parse_date_key(snapshot)) == key
        ]

    def aggregate(self, period: RollupPeriod, key: str) -> RollupResult:
        """Read and concatenate the period's tables without writing anything."""
        result = RollupResult(period=period, key=key)
        result.snapshots = self.select_snapshots(period, key)

        if result.is_empty:
            message = f"No snapshots found for {period.value} rollup {key}"
            logger.warning(message)
            result.warnings.append(message)
            return result

        for snapshot in result.snapshots:
            artifacts_dir = self.ledger.snapshot_path(snapshot) / "artifacts"
            if not artifacts_dir.is_dir():
                logger.debug(f"Snapshot {snapshot} has no artifacts directory")
                continue
            for csv_path in sorted(artifacts_dir.glob("*.csv")):
                name = csv_path.stem
                columns, rows = read_csv(csv_path)
                if not columns:
                    continue
                artifact = result.artifacts.setdefault(name, RollupArtifact(name=name))
                artifact.add(snapshot, columns, rows)

        return result

    def compute(
        self,
        period: RollupPeriod | str,
        key: str | None = None,
        today: date | None = None,
    ) -> RollupResult:
        """
        Compute and publish a rollup.

        Args:
            period: "weekly" or "monthly".
            key: Period key; defaults to the period containing today.
            today: Reference date for the default key (UTC today if None).

        Returns:
            RollupResult with the published path.

        Raises:
            RollupError: If the period or key is invalid.
            RunLockError: If the same period is being rolled up already.
        """
        try:
            period = RollupPeriod(period)
        except ValueError as e:
            raise RollupError(f"Unknown rollup period {period!r}") from e

        if key is None:
            key = period_key(period, today or datetime.now(UTC).date())
        validate_period_key(period, key)

        lock = RunLock(
            self.ledger.state_dir / f"rollup-{period.value}-{key}.lock",
            purpose=f"rollup {period.value} {key}",
        )
        with lock:
            self._clear_debris(period, key)
            result = self.aggregate(period, key)
            result.path = self._publish(result)

        logger.info(
            f"Rollup {period.value} {key}: {len(result.snapshots)} snapshots, "
            f"{len(result.artifacts)} artifacts"
        )
        return result

    def _clear_debris(self, period: RollupPeriod, key: str) -> None:
        """Remove work left by an interrupted rollup of the same period."""
        work_dir = self.ledger.rollup_staging_dir
        if not work_dir.is_dir():
            return
        prefixes = (f"rollup-{period.value}-{key}-", f"retired-{key}-")
        for entry in work_dir.iterdir():
            if entry.name.startswith(prefixes):
                logger.info(f"Removing stale rollup work {entry}")
                shutil.rmtree(entry, ignore_errors=True)

    def _publish(self, result: RollupResult) -> Path:
        work_dir = self.ledger.rollup_staging_dir
        staged = self.ledger.new_staging_dir(
            f"rollup-{result.period.value}-{result.key}", parent=work_dir
        )
        try:
            for artifact in result.artifacts.values():
                self._write(staged / artifact.file_name, artifact.to_csv())
            self._write(staged / ROLLUP_FILE, dump_json(result.to_dict()))
            write_rollup_index(staged, result)

            target = self.rollup_path(result.period, result.key)
            replace_tree(staged, target, work_dir)
        except BaseException:
            shutil.rmtree(staged, ignore_errors=True)
            raise
        return target

    @staticmethod
    def _write(path: Path, text: str) -> None:
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(text)
