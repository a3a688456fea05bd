"""
Trusted baseline storage.

A baseline is the canonical policy document and hash an operator has
accepted as correct. Baselines live under <ledger>/baseline/, outside the
snapshot stream, and change only through an explicit seed. Every seed is
appended to baseline/audit.log as one JSON line.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from complyvault.storage.fileio import atomic_write_json, read_json

logger = logging.getLogger(__name__)

AUDIT_LOG_FILE = "audit.log"
BASELINE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class BaselineError(Exception):
    """Raised when a baseline cannot be read, trusted or seeded."""

    pass


@dataclass
class Baseline:
    """
    A trusted policy baseline.

    Attributes:
        name: Ruleset name the baseline guards.
        hash: "sha256:<hex>" of the canonical policy.
        policy: Canonical policy document.
        canonicalization_version: Version of the canonical form used.
        seeded_at: When the baseline was seeded (UTC, ISO format).
        seeded_by: Actor who seeded it.
        reason: Justification recorded at seed time.
    """

    name: str
    hash: str
    policy: dict[str, Any]
    canonicalization_version: int
    seeded_at: str
    seeded_by: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "hash": self.hash,
            "policy": self.policy,
            "canonicalization_version": self.canonicalization_version,
            "seeded_at": self.seeded_at,
            "seeded_by": self.seeded_by,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Baseline:
        return cls(
            name=data["name"],
            hash=data["hash"],
            policy=data["policy"],
            canonicalization_version=int(data["canonicalization_version"]),
            seeded_at=data["seeded_at"],
            seeded_by=data["seeded_by"],
            reason=data.get("reason", ""),
        )


class BaselineStore:
    """
    Reads and writes baselines in a directory.

    Example:
        store = BaselineStore(ledger.baseline_dir)
        baseline = store.load("evidence-branch-protection-ruleset")
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    @property
    def audit_log_path(self) -> Path:
        return self.directory / AUDIT_LOG_FILE

    def path_for(self, name: str) -> Path:
        if not BASELINE_NAME_PATTERN.match(name):
            raise BaselineError(f"Invalid baseline name: {name!r}")
        return self.directory / f"{name}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def load(self, name: str) -> Baseline | None:
        """
        Load a baseline.

        Returns:
            The baseline, or None if none has been seeded.

        Raises:
            BaselineError: If the file exists but is unreadable or malformed.
        """
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            data = read_json(path)
            baseline = Baseline.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise BaselineError(f"Baseline {path} is unreadable: {e}") from e
        if baseline.name != name:
            raise BaselineError(
                f"Baseline {path} is for {baseline.name!r}, expected {name!r}"
            )
        return baseline

    def save(self, baseline: Baseline, previous_hash: str | None = None) -> Path:
        """
        Write a baseline atomically and append the seed to the audit log.

        Returns:
            Path of the baseline file.
        """
        path = self.path_for(baseline.name)
        self.directory.mkdir(parents=True, exist_ok=True)
        atomic_write_json(path, baseline.to_dict())
        self._append_audit(
            {
                "event": "seed",
                "name": baseline.name,
                "seeded_at": baseline.seeded_at,
                "actor": baseline.seeded_by,
                "reason": baseline.reason,
                "previous_hash": previous_hash,
                "new_hash": baseline.hash,
                "canonicalization_version": baseline.canonicalization_version,
            }
        )
        logger.info(f"Baseline {baseline.name} saved ({baseline.hash})")
        return path

    def _append_audit(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, sort_keys=True, ensure_ascii=False)
        with open(self.audit_log_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def history(self, name: str | None = None) -> list[dict[str, Any]]:
        """Audit log entries, oldest first, optionally for one baseline."""
        if not self.audit_log_path.exists():
            return []
        entries = []
        with open(self.audit_log_path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed audit log line {line_no}")
                    continue
                if name is None or entry.get("name") == name:
                    entries.append(entry)
        return entries
