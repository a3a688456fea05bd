"""Tests for the CLI module."""

from __future__ import annotations

import io
import json
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import UTC, date, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

from complyvault import __version__
from complyvault.cli import create_parser, main
from complyvault.drift import CANONICALIZATION_VERSION, Baseline, BaselineStore
from complyvault.pipeline import PipelineResult, RunStatus
from complyvault.storage import SnapshotLedger

STARTED = datetime(2025, 8, 8, 12, 0, tzinfo=UTC)


class TestArgumentParser(unittest.TestCase):
    """Tests for argument parsing."""

    def setUp(self) -> None:
        self.parser = create_parser()

    def test_parser_creation(self) -> None:
        self.assertEqual(self.parser.prog, "complyvault")

    def test_version_argument(self) -> None:
        stdout = io.StringIO()
        with redirect_stdout(stdout), self.assertRaises(SystemExit) as cm:
            self.parser.parse_args(["--version"])
        self.assertEqual(cm.exception.code, 0)
        self.assertIn(__version__, stdout.getvalue())

    def test_no_command(self) -> None:
        args = self.parser.parse_args([])
        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)

    def test_global_flags(self) -> None:
        args = self.parser.parse_args(["--config", "/tmp/c.yaml", "-vv", "run"])
        self.assertEqual(args.config, "/tmp/c.yaml")
        self.assertEqual(args.verbose, 2)
        self.assertEqual(args.command, "run")

    def test_seed_baseline_requires_reason(self) -> None:
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            self.parser.parse_args(["seed-baseline"])

        args = self.parser.parse_args(
            ["seed-baseline", "--reason", "initial", "--actor", "alice", "--force"]
        )
        self.assertEqual(args.reason, "initial")
        self.assertEqual(args.actor, "alice")
        self.assertTrue(args.force)

    def test_rollup_arguments(self) -> None:
        args = self.parser.parse_args(["rollup", "--period", "weekly", "--key", "2025-W32"])
        self.assertEqual(args.period, "weekly")
        self.assertEqual(args.key, "2025-W32")

        args = self.parser.parse_args(["rollup", "--period", "monthly"])
        self.assertIsNone(args.key)

    def test_rollup_invalid_period(self) -> None:
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            self.parser.parse_args(["rollup", "--period", "daily"])

    def test_verify_date_optional(self) -> None:
        self.assertIsNone(self.parser.parse_args(["verify"]).date)
        self.assertEqual(self.parser.parse_args(["verify", "2025-08-08"]).date, "2025-08-08")

    def test_status_json(self) -> None:
        self.assertTrue(self.parser.parse_args(["status", "--json"]).json)


class CliTestCase(unittest.TestCase):
    """Runs main() against a temporary config file."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.ledger_root = self.temp_dir / "ledger"
        self.config_path = self.temp_dir / "config.yaml"
        self.config_path.write_text(
            "ledger:\n"
            f"  root: {self.ledger_root}\n"
            "platform:\n"
            "  organization: example-org\n"
            "  repositories: [evidence]\n"
            "drift:\n"
            "  ledger_repository: evidence\n"
        )
        self.env = patch.dict(os.environ, {}, clear=True)
        self.env.start()

    def tearDown(self) -> None:
        self.env.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, *argv: str) -> tuple[int, str, str]:
        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("sys.argv", ["complyvault", "--config", str(self.config_path), *argv]):
            with redirect_stdout(stdout), redirect_stderr(stderr):
                with self.assertRaises(SystemExit) as cm:
                    main()
        return cm.exception.code, stdout.getvalue(), stderr.getvalue()

    def commit_snapshot(self, day: date) -> Path:
        ledger = SnapshotLedger(self.ledger_root)
        with ledger.begin(day, STARTED) as stage:
            stage.write_text("artifacts/org_members.csv", "login\nalice\n")
            return ledger.publish(stage)


class TestMain(CliTestCase):
    """Tests for main() exit codes and output."""

    def test_no_command_prints_help(self) -> None:
        code, stdout, _ = self.invoke()
        self.assertEqual(code, 0)
        self.assertIn("usage:", stdout)

    @patch("complyvault.cli.EvidencePipeline")
    def test_run_success(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.return_value.run.return_value = PipelineResult(
            command="run",
            status=RunStatus.SUCCESS,
            started_at=STARTED,
            finished_at=STARTED,
            snapshot_date="2025-08-08",
            details={
                "snapshot_path": "/ledger/snapshots/2025-08-08",
                "drift": {"status": "match", "actual_hash": "sha256:aa"},
                "frameworks": {"nist-800-53": {"controls_total": 14, "controls_with_evidence": 12}},
            },
        )

        code, stdout, stderr = self.invoke("run")

        self.assertEqual(code, 0)
        self.assertIn("Snapshot 2025-08-08 committed", stdout)
        self.assertIn("nist-800-53: 12/14 controls with evidence", stdout)
        self.assertNotIn('"status"', stderr)

    @patch("complyvault.cli.EvidencePipeline")
    def test_run_drift_exit_code(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.return_value.run.return_value = PipelineResult(
            command="run",
            status=RunStatus.DRIFT_DETECTED,
            started_at=STARTED,
            finished_at=STARTED,
            error={"type": "DriftDetectedError", "violations": ["required rule missing"]},
        )

        code, _, stderr = self.invoke("run")

        self.assertEqual(code, 2)
        report = json.loads(stderr[stderr.index("{"):])
        self.assertEqual(report["status"], "drift_detected")
        self.assertEqual(report["error"]["violations"], ["required rule missing"])

    @patch("complyvault.cli.EvidencePipeline")
    def test_seed_baseline_passes_actor(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.return_value.seed_baseline.return_value = PipelineResult(
            command="seed-baseline",
            status=RunStatus.SUCCESS,
            started_at=STARTED,
            details={
                "baseline": {
                    "name": "evidence-branch-protection-ruleset",
                    "hash": "sha256:aa",
                    "seeded_by": "alice",
                    "seeded_at": STARTED.isoformat(),
                }
            },
        )

        code, stdout, _ = self.invoke("seed-baseline", "--reason", "initial", "--actor", "alice")

        self.assertEqual(code, 0)
        mock_pipeline.return_value.seed_baseline.assert_called_once_with(
            "alice", "initial", force=False
        )
        self.assertIn("sha256:aa", stdout)

    def test_rollup(self) -> None:
        self.commit_snapshot(date(2025, 8, 8))

        code, stdout, _ = self.invoke("rollup", "--period", "weekly", "--key", "2025-W32")

        self.assertEqual(code, 0)
        self.assertIn("Weekly rollup 2025-W32 written", stdout)
        self.assertTrue(
            (self.ledger_root / "rollups" / "weekly" / "2025-W32" / "org_members.csv").exists()
        )

    def test_rollup_bad_key(self) -> None:
        code, _, stderr = self.invoke("rollup", "--period", "monthly", "--key", "2025-W32")
        self.assertEqual(code, 3)
        self.assertIn("config_error", stderr)

    def test_validate_mappings(self) -> None:
        code, stdout, _ = self.invoke("validate-mappings")
        self.assertEqual(code, 0)
        self.assertIn("nist-800-53", stdout)
        self.assertIn("cmmc-2", stdout)

    def test_validate_mappings_reports_problems(self) -> None:
        bad = self.temp_dir / "bad.yaml"
        bad.write_text("framework: nist-800-53\ncontrols: {}\n")
        with open(self.config_path, "a") as f:
            f.write(f"mappings:\n  nist-800-53: {bad}\n")

        code, _, stderr = self.invoke("validate-mappings")

        self.assertEqual(code, 3)
        self.assertIn("'version' is required", stderr)

    def test_invalid_config(self) -> None:
        self.config_path.write_text("complyvault:\n  log_level: LOUD\n")
        code, _, stderr = self.invoke("status")
        self.assertEqual(code, 3)
        self.assertIn("Configuration error", stderr)

    def test_status_json(self) -> None:
        self.commit_snapshot(date(2025, 8, 8))

        code, stdout, _ = self.invoke("-q", "status", "--json")

        self.assertEqual(code, 0)
        data = json.loads(stdout)
        self.assertEqual(data["latest"]["date"], "2025-08-08")
        self.assertEqual(data["snapshot_count"], 1)
        self.assertIsNone(data["baseline"])
        self.assertEqual(data["baseline_history"], [])
        self.assertEqual(data["recent_runs"], [])

    def test_status_shows_baseline_history(self) -> None:
        store = BaselineStore(SnapshotLedger(self.ledger_root).baseline_dir)
        for digest, reason in (("sha256:aa", "initial"), ("sha256:bb", "approved rule change")):
            store.save(
                Baseline(
                    name="evidence-branch-protection-ruleset",
                    hash=digest,
                    policy={},
                    canonicalization_version=CANONICALIZATION_VERSION,
                    seeded_at=STARTED.isoformat(),
                    seeded_by="alice",
                    reason=reason,
                ),
                previous_hash=None if digest == "sha256:aa" else "sha256:aa",
            )

        code, stdout, _ = self.invoke("-q", "status", "--json")
        data = json.loads(stdout)
        self.assertEqual(
            [(e["previous_hash"], e["new_hash"]) for e in data["baseline_history"]],
            [(None, "sha256:aa"), ("sha256:aa", "sha256:bb")],
        )

        code, stdout, _ = self.invoke("status")
        self.assertEqual(code, 0)
        self.assertIn("alice: sha256:aa -> sha256:bb (approved rule change)", stdout)

    def test_status_text(self) -> None:
        code, stdout, _ = self.invoke("status")
        self.assertEqual(code, 0)
        self.assertIn("No snapshots committed yet", stdout)
        self.assertIn("Not seeded", stdout)

    def test_verify(self) -> None:
        self.commit_snapshot(date(2025, 8, 8))

        code, stdout, _ = self.invoke("verify")

        self.assertEqual(code, 0)
        self.assertIn("Snapshot 2025-08-08: 2 files verified", stdout)

    def test_verify_tampered(self) -> None:
        path = self.commit_snapshot(date(2025, 8, 8))
        (path / "artifacts" / "org_members.csv").write_text("login\nmallory\n")

        code, _, stderr = self.invoke("verify", "2025-08-08")

        self.assertEqual(code, 4)
        self.assertIn("modified: artifacts/org_members.csv", stderr)

    def test_verify_bad_date(self) -> None:
        code, _, _ = self.invoke("verify", "08/08/2025")
        self.assertEqual(code, 3)

    @patch("complyvault.cli.EvidencePipeline")
    def test_keyboard_interrupt(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.return_value.run.side_effect = KeyboardInterrupt
        code, _, _ = self.invoke("run")
        self.assertEqual(code, 130)


if __name__ == "__main__":
    unittest.main()
