"""
Tests for the rollup aggregator.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import unittest
from datetime import UTC, date, datetime
from pathlib import Path
from unittest.mock import patch

from complyvault.analysis.rollup import (
    RollupAggregator,
    RollupError,
    RollupPeriod,
    period_key,
    validate_period_key,
)
from complyvault.collectors.tabular import render_csv
from complyvault.reports.index import write_rollup_index
from complyvault.storage import RunLock, RunLockError, SnapshotLedger

CREATED = datetime(2025, 8, 12, 1, 0, tzinfo=UTC)


class TestPeriodKeys(unittest.TestCase):
    """Tests for period key helpers."""

    def test_period_key(self) -> None:
        self.assertEqual(period_key(RollupPeriod.WEEKLY, date(2025, 8, 8)), "2025-W32")
        self.assertEqual(period_key(RollupPeriod.MONTHLY, date(2025, 8, 8)), "2025-08")

    def test_validate_period_key(self) -> None:
        self.assertEqual(validate_period_key(RollupPeriod.WEEKLY, "2025-W01"), "2025-W01")
        self.assertEqual(validate_period_key(RollupPeriod.MONTHLY, "2025-12"), "2025-12")
        for period, key in (
            (RollupPeriod.WEEKLY, "2025-W54"),
            (RollupPeriod.WEEKLY, "2025-08"),
            (RollupPeriod.MONTHLY, "2025-13"),
            (RollupPeriod.MONTHLY, "../2025-08"),
        ):
            with self.assertRaises(RollupError):
                validate_period_key(period, key)


class TestRollupAggregator(unittest.TestCase):
    """Tests for aggregation and publishing."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.ledger = SnapshotLedger(self.temp_dir / "ledger")
        self.ledger.initialize()
        self.aggregator = RollupAggregator(self.ledger)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _commit(self, day: date, tables: dict[str, tuple[list[str], list[dict]]]) -> None:
        with self.ledger.begin(day, CREATED) as stage:
            for name, (columns, rows) in tables.items():
                stage.write_text(f"artifacts/{name}.csv", render_csv(columns, rows))
                stage.write_json(f"artifacts/{name}.json", {"rows": rows})
            self.ledger.publish(stage)

    def _members(self, *logins: str) -> dict[str, tuple[list[str], list[dict]]]:
        return {
            "org_members": (
                ["login", "role"],
                [{"login": login, "role": "admin"} for login in logins],
            )
        }

    def test_weekly_concatenation(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))
        self._commit(date(2025, 8, 8), self._members("alice", "bob"))
        self._commit(date(2025, 8, 11), self._members("carol"))

        result = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")

        self.assertEqual(result.snapshots, ["2025-08-04", "2025-08-08"])
        self.assertEqual(result.path, self.ledger.rollups_dir / "weekly" / "2025-W32")
        self.assertEqual(
            (result.path / "org_members.csv").read_text(),
            "snapshot_date,login,role\n"
            "2025-08-04,alice,admin\n"
            "2025-08-08,alice,admin\n"
            "2025-08-08,bob,admin\n",
        )
        summary = json.loads((result.path / "rollup.json").read_text())
        self.assertEqual(summary["artifacts"]["org_members"]["row_count"], 3)
        self.assertTrue((result.path / "INDEX.md").exists())
        self.assertTrue((result.path / "index.json").exists())

    def test_monthly_selection(self) -> None:
        self._commit(date(2025, 7, 31), self._members("alice"))
        self._commit(date(2025, 8, 1), self._members("bob"))

        result = self.aggregator.compute("monthly", "2025-08")

        self.assertEqual(result.snapshots, ["2025-08-01"])

    def test_column_union_in_first_seen_order(self) -> None:
        self._commit(
            date(2025, 8, 4),
            {"repo_collaborators": (["repository", "login"], [{"repository": "a", "login": "x"}])},
        )
        self._commit(
            date(2025, 8, 5),
            {
                "repo_collaborators": (
                    ["repository", "role_name", "login"],
                    [{"repository": "a", "role_name": "admin", "login": "y"}],
                )
            },
        )

        result = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        artifact = result.artifacts["repo_collaborators"]

        self.assertEqual(artifact.columns, ["snapshot_date", "repository", "login", "role_name"])
        self.assertEqual(
            artifact.to_csv().splitlines(),
            [
                "snapshot_date,repository,login,role_name",
                "2025-08-04,a,x,",
                "2025-08-05,a,y,admin",
            ],
        )

    def test_missing_artifact_skipped(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))
        teams = {"teams": (["slug"], [{"slug": "core"}])}
        self._commit(date(2025, 8, 5), {**self._members("alice"), **teams})

        result = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")

        self.assertEqual(result.artifacts["teams"].snapshots, ["2025-08-05"])
        self.assertEqual(result.artifacts["org_members"].snapshots, ["2025-08-04", "2025-08-05"])

    def test_recompute_is_byte_identical(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))
        self._commit(date(2025, 8, 5), self._members("bob"))

        first = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        before = {p.name: p.read_bytes() for p in first.path.iterdir()}
        second = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        after = {p.name: p.read_bytes() for p in second.path.iterdir()}

        self.assertEqual(before, after)

    def test_recompute_picks_up_new_snapshot(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))
        self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        self._commit(date(2025, 8, 6), self._members("bob"))

        result = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")

        self.assertEqual(result.snapshots, ["2025-08-04", "2025-08-06"])
        self.assertIn("bob", (result.path / "org_members.csv").read_text())

    def test_empty_period(self) -> None:
        result = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W40")

        self.assertTrue(result.is_empty)
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue((result.path / "rollup.json").exists())

    def test_default_key_uses_today(self) -> None:
        self._commit(date(2025, 8, 8), self._members("alice"))
        result = self.aggregator.compute(RollupPeriod.WEEKLY, today=date(2025, 8, 10))
        self.assertEqual(result.key, "2025-W32")

    def test_invalid_period(self) -> None:
        with self.assertRaises(RollupError):
            self.aggregator.compute("daily", "2025-08-08")

    def test_invalid_key(self) -> None:
        with self.assertRaises(RollupError):
            self.aggregator.compute(RollupPeriod.MONTHLY, "2025-W32")

    def test_concurrent_rollup_refused(self) -> None:
        lock_path = self.ledger.state_dir / "rollup-weekly-2025-W32.lock"
        with RunLock(lock_path):
            with self.assertRaises(RunLockError):
                self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")

    def test_staging_left_clean(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))
        self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")
        self.assertEqual(os.listdir(self.ledger.staging_dir), ["rollups"])
        self.assertEqual(os.listdir(self.ledger.rollup_staging_dir), [])

    def test_snapshot_cleanup_during_rollup(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))

        def index_then_cleanup(staged: Path, result: object) -> None:
            write_rollup_index(staged, result)
            self.ledger.cleanup_staging()

        with patch(
            "complyvault.analysis.rollup.write_rollup_index", side_effect=index_then_cleanup
        ):
            result = self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")

        self.assertTrue((result.path / "org_members.csv").exists())
        self.assertTrue((result.path / "index.json").exists())

    def test_interrupted_rollup_debris_removed(self) -> None:
        self._commit(date(2025, 8, 4), self._members("alice"))
        work_dir = self.ledger.rollup_staging_dir
        stale = self.ledger.new_staging_dir("rollup-weekly-2025-W32", parent=work_dir)
        other = self.ledger.new_staging_dir("rollup-monthly-2025-08", parent=work_dir)

        self.aggregator.compute(RollupPeriod.WEEKLY, "2025-W32")

        self.assertFalse(stale.exists())
        self.assertTrue(other.exists())


if __name__ == "__main__":
    unittest.main()
