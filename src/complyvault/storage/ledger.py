"""
Snapshot ledger for compliance evidence.

The ledger is an append-only directory tree. Each run produces one snapshot
keyed by its UTC calendar date. A snapshot is assembled in a staging
directory and only becomes visible when it is renamed into place, so readers
see either the previous state or the complete new snapshot.

Directory Structure:
    <ledger>/
        snapshots/
            2025-08-08/
                artifacts/<name>.json, <name>.csv
                controls/<framework>/<control_id>/<control_id>__<file>
                controls/<framework>/audit.csv, coverage.json
                posture.json
                oscal/assessment-results.json
                INDEX.md, index.json
                metadata.json
                manifest.json
        latest/              # copy of the newest snapshot
        latest.json          # metadata of the newest snapshot
        rollups/weekly/<YYYY-Www>/, rollups/monthly/<YYYY-MM>/
        baseline/<name>.json, baseline/audit.log
        .staging/            # in-progress work, removed at next run
        .staging/rollups/    # in-progress rollups
        .state/run.lock, .state/journal.db

Commit Rules:
    - Committed snapshots are never modified, except that a re-run on the
      same date replaces that date's snapshot as a whole
    - A date earlier than the newest committed date is refused
    - latest/ and latest.json only move forward with a successful publish
    - Every snapshot carries a SHA-256 manifest of its files
"""

from __future__ import annotations

import logging
import shutil
import uuid
from datetime import date, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from complyvault.storage.fileio import (
    atomic_write_json,
    compute_file_hash,
    dump_json,
    read_json,
    restore_tree,
    swap_tree,
    tree_files,
)
from complyvault.storage.models import SnapshotMetadata, date_key, parse_date_key

logger = logging.getLogger(__name__)

SNAPSHOTS_DIR = "snapshots"
LATEST_DIR = "latest"
LATEST_FILE = "latest.json"
ROLLUPS_DIR = "rollups"
BASELINE_DIR = "baseline"
STAGING_DIR = ".staging"
ROLLUP_STAGING_DIR = "rollups"
STATE_DIR = ".state"

METADATA_FILE = "metadata.json"
MANIFEST_FILE = "manifest.json"
MANIFEST_ALGORITHM = "sha256"


class LedgerCommitError(Exception):
    """Raised when a snapshot cannot be committed."""

    pass


class IntegrityError(Exception):
    """
    Raised when a snapshot no longer matches its manifest.

    Attributes:
        mismatches: Human-readable description of every difference.
    """

    def __init__(self, message: str, mismatches: list[str] | None = None) -> None:
        super().__init__(message)
        self.mismatches = mismatches or []


class SnapshotStage:
    """
    A snapshot under construction in the staging area.

    Paths passed to the write methods are relative to the snapshot root and
    use forward slashes. The stage is removed on exit unless it was
    published.

    Example:
        with ledger.begin(day, created_at) as stage:
            stage.write_json("artifacts/teams.json", document)
            ledger.publish(stage)
    """

    def __init__(
        self,
        ledger: SnapshotLedger,
        metadata: SnapshotMetadata,
        path: Path,
    ) -> None:
        self.ledger = ledger
        self.metadata = metadata
        self.path = path
        self.published = False

    @property
    def date(self) -> str:
        return self.metadata.date

    def _resolve(self, relative: str) -> Path:
        target = (self.path / relative).resolve()
        if self.path.resolve() not in target.parents:
            raise LedgerCommitError(f"Path escapes snapshot: {relative}")
        return target

    def write_text(self, relative: str, text: str) -> Path:
        target = self._resolve(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        return target

    def write_json(self, relative: str, data: Any) -> Path:
        return self.write_text(relative, dump_json(data))

    def copy_file(self, source: str, destination: str) -> Path:
        """Copy a staged file to another staged path. The source stays in place."""
        src = self._resolve(source)
        if not src.is_file():
            raise LedgerCommitError(f"Cannot copy missing staged file: {source}")
        dst = self._resolve(destination)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        return dst

    def exists(self, relative: str) -> bool:
        return self._resolve(relative).exists()

    def files(self) -> list[str]:
        return tree_files(self.path)

    def write_manifest(self) -> dict[str, Any]:
        """
        Hash every staged file into manifest.json.

        Must be the last write before publishing.
        """
        files = {
            name: compute_file_hash(self.path / name)
            for name in self.files()
            if name != MANIFEST_FILE
        }
        manifest = {
            "date": self.date,
            "algorithm": MANIFEST_ALGORITHM,
            "file_count": len(files),
            "files": files,
        }
        self.write_json(MANIFEST_FILE, manifest)
        return manifest

    def discard(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug(f"Discarded staged snapshot {self.path}")

    def __enter__(self) -> SnapshotStage:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self.published:
            if exc_type is not None:
                logger.warning(f"Snapshot {self.date} not committed: {exc}")
            self.discard()


class SnapshotLedger:
    """
    Filesystem ledger of dated evidence snapshots.

    Example:
        ledger = SnapshotLedger(Path("~/evidence-ledger").expanduser())
        ledger.cleanup_staging()
        with ledger.begin(date.today(), datetime.now(UTC)) as stage:
            ...
            ledger.publish(stage)
        print(ledger.list_snapshots())
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    @property
    def snapshots_dir(self) -> Path:
        return self.root / SNAPSHOTS_DIR

    @property
    def latest_dir(self) -> Path:
        return self.root / LATEST_DIR

    @property
    def latest_file(self) -> Path:
        return self.root / LATEST_FILE

    @property
    def rollups_dir(self) -> Path:
        return self.root / ROLLUPS_DIR

    @property
    def baseline_dir(self) -> Path:
        return self.root / BASELINE_DIR

    @property
    def staging_dir(self) -> Path:
        return self.root / STAGING_DIR

    @property
    def rollup_staging_dir(self) -> Path:
        """Rollup work area; owned by the rollup period locks, not the run lock."""
        return self.staging_dir / ROLLUP_STAGING_DIR

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "run.lock"

    @property
    def journal_path(self) -> Path:
        return self.state_dir / "journal.db"

    def initialize(self) -> None:
        for directory in (self.snapshots_dir, self.staging_dir, self.state_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def list_snapshots(self) -> list[str]:
        """Committed snapshot date keys, oldest first."""
        if not self.snapshots_dir.exists():
            return []
        keys = []
        for entry in self.snapshots_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                parse_date_key(entry.name)
            except ValueError:
                logger.debug(f"Ignoring non-snapshot directory {entry}")
                continue
            keys.append(entry.name)
        return sorted(keys)

    def newest_snapshot(self) -> str | None:
        keys = self.list_snapshots()
        return keys[-1] if keys else None

    def snapshot_path(self, key: str) -> Path:
        parse_date_key(key)
        return self.snapshots_dir / key

    def read_metadata(self, key: str) -> SnapshotMetadata:
        path = self.snapshot_path(key) / METADATA_FILE
        if not path.exists():
            raise IntegrityError(f"Snapshot {key} has no metadata", [f"missing {METADATA_FILE}"])
        return SnapshotMetadata.from_dict(read_json(path))

    def latest_metadata(self) -> SnapshotMetadata | None:
        if not self.latest_file.exists():
            return None
        return SnapshotMetadata.from_dict(read_json(self.latest_file))

    def cleanup_staging(self) -> int:
        """
        Remove leftovers of interrupted runs.

        Only call while holding the run lock. The rollup work area is left
        alone; rollups run under their own locks and clear their own debris.

        Returns:
            Number of entries removed.
        """
        if not self.staging_dir.exists():
            return 0
        removed = 0
        for entry in self.staging_dir.iterdir():
            if entry.name == ROLLUP_STAGING_DIR:
                continue
            if entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info(f"Removed {removed} stale staging entries")
        return removed

    def check_commit_date(self, day: date) -> None:
        """
        Raises:
            LedgerCommitError: If day is older than the newest snapshot.
        """
        newest = self.newest_snapshot()
        key = date_key(day)
        if newest is not None and key < newest:
            raise LedgerCommitError(
                f"Refusing to commit snapshot {key}: newer snapshot {newest} already exists"
            )

    def begin(self, day: date, created_at: datetime) -> SnapshotStage:
        """
        Allocate a staging directory for the snapshot of a date.

        Raises:
            LedgerCommitError: If the date would rewrite history.
        """
        self.check_commit_date(day)
        metadata = SnapshotMetadata.for_day(day, created_at)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        path = self.staging_dir / f"snapshot-{metadata.date}-{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True)

        stage = SnapshotStage(self, metadata, path)
        stage.write_json(METADATA_FILE, metadata.to_dict())
        logger.debug(f"Staging snapshot {metadata.date} in {path}")
        return stage

    def new_staging_dir(self, prefix: str, parent: Path | None = None) -> Path:
        parent = parent or self.staging_dir
        parent.mkdir(parents=True, exist_ok=True)
        path = parent / f"{prefix}-{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True)
        return path

    def publish(self, stage: SnapshotStage) -> Path:
        """
        Commit a staged snapshot and move "latest" to it.

        The manifest is written here if the caller has not written one.

        Returns:
            Path of the committed snapshot.

        Raises:
            LedgerCommitError: If the commit cannot complete.
        """
        if stage.published:
            raise LedgerCommitError(f"Snapshot {stage.date} already published")
        self.check_commit_date(parse_date_key(stage.date))

        if not stage.exists(MANIFEST_FILE):
            stage.write_manifest()

        target = self.snapshot_path(stage.date)
        latest_copy = self.staging_dir / f"latest-{uuid.uuid4().hex[:8]}"

        try:
            shutil.copytree(stage.path, latest_copy)
            retired_snapshot = swap_tree(stage.path, target, self.staging_dir)
        except OSError as e:
            shutil.rmtree(latest_copy, ignore_errors=True)
            raise LedgerCommitError(f"Failed to commit snapshot {stage.date}: {e}") from e

        swapped: list[tuple[Path, Path | None]] = [(target, retired_snapshot)]
        try:
            swapped.append(
                (self.latest_dir, swap_tree(latest_copy, self.latest_dir, self.staging_dir))
            )
            atomic_write_json(self.latest_file, stage.metadata.to_dict())
        except OSError as e:
            shutil.rmtree(latest_copy, ignore_errors=True)
            self._roll_back(stage.date, swapped)
            raise LedgerCommitError(f"Failed to commit snapshot {stage.date}: {e}") from e

        stage.published = True
        for _, retired in swapped:
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)

        logger.info(f"Committed snapshot {stage.date} to {target}")
        return target

    def _roll_back(self, key: str, swapped: list[tuple[Path, Path | None]]) -> None:
        """Restore every swapped tree, newest swap first."""
        for target, retired in reversed(swapped):
            try:
                restore_tree(target, retired, self.staging_dir)
            except OSError as e:
                logger.error(
                    f"Could not roll back {target} after failed commit of {key}: {e}. "
                    f"Previous contents remain at {retired}"
                )

    def verify_snapshot(self, key: str | None = None) -> dict[str, Any]:
        """
        Re-hash a committed snapshot against its manifest.

        Args:
            key: Snapshot date; defaults to the newest snapshot.

        Returns:
            Summary with the date and number of verified files.

        Raises:
            IntegrityError: On any missing, altered or unlisted file.
        """
        key = key or self.newest_snapshot()
        if key is None:
            raise IntegrityError("Ledger has no snapshots to verify")
        path = self.snapshot_path(key)
        if not path.is_dir():
            raise IntegrityError(f"Snapshot {key} does not exist")

        manifest_path = path / MANIFEST_FILE
        if not manifest_path.exists():
            raise IntegrityError(f"Snapshot {key} has no manifest", [f"missing {MANIFEST_FILE}"])
        manifest = read_json(manifest_path)
        expected: dict[str, str] = manifest.get("files", {})

        mismatches = []
        present = [name for name in tree_files(path) if name != MANIFEST_FILE]
        for name in sorted(expected):
            file_path = path / name
            if not file_path.exists():
                mismatches.append(f"missing: {name}")
            elif compute_file_hash(file_path) != expected[name]:
                mismatches.append(f"modified: {name}")
        for name in present:
            if name not in expected:
                mismatches.append(f"unexpected: {name}")

        if mismatches:
            raise IntegrityError(
                f"Snapshot {key} failed verification ({len(mismatches)} problems)",
                mismatches,
            )

        logger.info(f"Snapshot {key} verified: {len(expected)} files match manifest")
        return {"date": key, "files_verified": len(expected)}
