"""
Data models for the evidence ledger.

Schema Design Decisions:
    - Snapshots are keyed by UTC calendar date (YYYY-MM-DD)
    - Timestamps are stored as ISO format strings in UTC
    - Period keys follow ISO 8601: weeks as YYYY-Www, months as YYYY-MM
    - Run ids are UUIDs stored as strings
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def date_key(day: date) -> str:
    return day.strftime("%Y-%m-%d")


def parse_date_key(key: str) -> date:
    """
    Parse a snapshot date key.

    Raises:
        ValueError: If the key is not a valid YYYY-MM-DD date.
    """
    if not DATE_KEY_PATTERN.match(key):
        raise ValueError(f"Invalid snapshot date key: {key!r}")
    return date.fromisoformat(key)


def iso_week_key(day: date) -> str:
    """ISO week key, e.g. 2025-W32. Uses the ISO year, not the calendar year."""
    iso = day.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"


def iso_month_key(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


@dataclass
class SnapshotMetadata:
    """
    Metadata record of one snapshot, also published as latest.json.

    Attributes:
        date: Snapshot date key (YYYY-MM-DD).
        created_at: When the snapshot was committed (UTC, ISO format).
        iso_week: ISO week key of the date.
        iso_month: Month key of the date.
    """

    date: str
    created_at: str
    iso_week: str
    iso_month: str

    @classmethod
    def for_day(cls, day: date, created_at: datetime) -> SnapshotMetadata:
        return cls(
            date=date_key(day),
            created_at=created_at.astimezone(UTC).isoformat(),
            iso_week=iso_week_key(day),
            iso_month=iso_month_key(day),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "created_at": self.created_at,
            "iso_week": self.iso_week,
            "iso_month": self.iso_month,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotMetadata:
        return cls(
            date=data["date"],
            created_at=data["created_at"],
            iso_week=data["iso_week"],
            iso_month=data["iso_month"],
        )


@dataclass
class RunRecord:
    """
    Journal record of one command invocation.

    Database Table: pipeline_runs
        - id TEXT PRIMARY KEY
        - command TEXT NOT NULL
        - started_at TEXT NOT NULL
        - finished_at TEXT
        - status TEXT NOT NULL
        - exit_code INTEGER NOT NULL
        - snapshot_date TEXT
        - warnings_json TEXT
        - error_json TEXT
    """

    id: str
    command: str
    started_at: datetime
    status: str
    exit_code: int
    finished_at: datetime | None = None
    snapshot_date: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None

    @classmethod
    def create(
        cls,
        command: str,
        started_at: datetime,
        status: str,
        exit_code: int,
        snapshot_date: str | None = None,
        warnings: list[str] | None = None,
        error: dict[str, Any] | None = None,
    ) -> RunRecord:
        return cls(
            id=str(uuid.uuid4()),
            command=command,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            status=status,
            exit_code=exit_code,
            snapshot_date=snapshot_date,
            warnings=warnings or [],
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "exit_code": self.exit_code,
            "snapshot_date": self.snapshot_date,
            "warnings": self.warnings,
            "error": self.error,
        }


@dataclass
class BaselineEvent:
    """
    Journal record of a baseline seed or re-seed.

    Database Table: baseline_events
    """

    id: str
    name: str
    seeded_at: datetime
    actor: str
    reason: str
    new_hash: str
    previous_hash: str | None = None

    @classmethod
    def create(
        cls,
        name: str,
        actor: str,
        reason: str,
        new_hash: str,
        previous_hash: str | None = None,
        seeded_at: datetime | None = None,
    ) -> BaselineEvent:
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            seeded_at=seeded_at or datetime.now(UTC),
            actor=actor,
            reason=reason,
            new_hash=new_hash,
            previous_hash=previous_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "seeded_at": self.seeded_at.isoformat(),
            "actor": self.actor,
            "reason": self.reason,
            "previous_hash": self.previous_hash,
            "new_hash": self.new_hash,
        }
