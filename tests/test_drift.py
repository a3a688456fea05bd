"""
Tests for policy canonicalization, baseline storage, and drift detection.
"""

from __future__ import annotations

import copy
import json
import shutil
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from fakes import (
    FakePolicySource,
    MissingPolicySource,
    fetch_failure,
    make_settings,
    protection_ruleset,
)

from complyvault.collectors.base import CollectionError
from complyvault.drift import (
    CANONICALIZATION_VERSION,
    DRIFT_STATUS_BOOTSTRAP,
    DRIFT_STATUS_MATCH,
    Baseline,
    BaselineError,
    BaselineStore,
    DriftDetectedError,
    DriftDetector,
    canonical_bytes,
    canonicalize_ruleset,
    policy_hash,
)
from complyvault.storage import RunJournal

SEEDED = datetime(2025, 8, 7, 9, 0, tzinfo=UTC)


class TestCanonicalization(unittest.TestCase):
    """Tests for the canonical policy form."""

    def test_volatile_fields_dropped(self) -> None:
        canonical = canonicalize_ruleset(protection_ruleset())
        self.assertEqual(
            sorted(canonical),
            ["bypass_actors", "conditions", "enforcement", "name", "rules", "target"],
        )

    def test_volatile_fields_do_not_change_hash(self) -> None:
        a = protection_ruleset()
        b = protection_ruleset(
            id=9, updated_at="2025-08-09T00:00:00Z", current_user_can_bypass="never"
        )
        self.assertEqual(policy_hash(a), policy_hash(b))

    def test_order_does_not_change_hash(self) -> None:
        a = protection_ruleset(
            conditions={"ref_name": {"include": ["refs/heads/main", "~DEFAULT_BRANCH"], "exclude": []}},
            bypass_actors=[
                {"actor_type": "Integration", "actor_id": 123456, "bypass_mode": "always"},
                {"actor_type": "Team", "actor_id": 7, "bypass_mode": "pull_request"},
            ],
        )
        b = copy.deepcopy(a)
        b["rules"].reverse()
        b["bypass_actors"].reverse()
        b["conditions"]["ref_name"]["include"].reverse()

        self.assertEqual(canonical_bytes(a), canonical_bytes(b))
        self.assertEqual(policy_hash(a), policy_hash(b))

    def test_policy_change_changes_hash(self) -> None:
        a = protection_ruleset()
        b = protection_ruleset(rules=[{"type": "update"}, {"type": "deletion"}])
        self.assertNotEqual(policy_hash(a), policy_hash(b))

    def test_rule_parameters_are_part_of_policy(self) -> None:
        a = protection_ruleset(
            rules=[{"type": "pull_request", "parameters": {"required_approving_review_count": 1}}]
        )
        b = protection_ruleset(
            rules=[{"type": "pull_request", "parameters": {"required_approving_review_count": 2}}]
        )
        self.assertNotEqual(policy_hash(a), policy_hash(b))

    def test_hash_format(self) -> None:
        digest = policy_hash(protection_ruleset())
        self.assertTrue(digest.startswith("sha256:"))
        self.assertEqual(len(digest), len("sha256:") + 64)

    def test_input_not_modified(self) -> None:
        ruleset = protection_ruleset()
        before = copy.deepcopy(ruleset)
        canonicalize_ruleset(ruleset)
        self.assertEqual(ruleset, before)


class TestBaselineStore(unittest.TestCase):
    """Tests for baseline persistence and the audit log."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.store = BaselineStore(self.temp_dir / "baseline")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _baseline(self, digest: str = "sha256:aa") -> Baseline:
        return Baseline(
            name="ruleset",
            hash=digest,
            policy={"name": "ruleset"},
            canonicalization_version=CANONICALIZATION_VERSION,
            seeded_at=SEEDED.isoformat(),
            seeded_by="alice",
            reason="initial",
        )

    def test_load_missing(self) -> None:
        self.assertIsNone(self.store.load("ruleset"))

    def test_save_and_load(self) -> None:
        self.store.save(self._baseline())
        self.assertEqual(self.store.load("ruleset"), self._baseline())

    def test_audit_log_appends(self) -> None:
        self.store.save(self._baseline("sha256:aa"))
        self.store.save(self._baseline("sha256:bb"), previous_hash="sha256:aa")

        history = self.store.history("ruleset")

        self.assertEqual([h["new_hash"] for h in history], ["sha256:aa", "sha256:bb"])
        self.assertIsNone(history[0]["previous_hash"])
        self.assertEqual(history[1]["previous_hash"], "sha256:aa")
        self.assertEqual(self.store.history("other"), [])

    def test_corrupt_baseline(self) -> None:
        self.store.directory.mkdir(parents=True)
        self.store.path_for("ruleset").write_text("{not json")
        with self.assertRaises(BaselineError):
            self.store.load("ruleset")

    def test_name_mismatch(self) -> None:
        self.store.directory.mkdir(parents=True)
        data = self._baseline().to_dict()
        data["name"] = "other"
        self.store.path_for("ruleset").write_text(json.dumps(data))
        with self.assertRaises(BaselineError):
            self.store.load("ruleset")

    def test_invalid_name(self) -> None:
        with self.assertRaises(BaselineError):
            self.store.path_for("../escape")


class TestDriftDetector(unittest.TestCase):
    """Tests for guardrails, verification, and seeding."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.settings = make_settings(self.temp_dir)
        self.store = BaselineStore(self.temp_dir / "baseline")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _detector(self, source: FakePolicySource | None = None) -> DriftDetector:
        return DriftDetector(self.settings.drift, self.store, source or FakePolicySource())

    def _seed(self, ruleset: dict | None = None) -> Baseline:
        return self._detector(FakePolicySource(ruleset)).seed("alice", "initial", now=SEEDED)

    def test_guardrails_pass(self) -> None:
        self.assertEqual(self._detector().check_guardrails(protection_ruleset()), [])

    def test_guardrails_report_every_violation(self) -> None:
        ruleset = protection_ruleset(
            enforcement="evaluate",
            rules=[{"type": "deletion"}],
            bypass_actors=[{"actor_type": "RepositoryRole", "actor_id": 5, "bypass_mode": "always"}],
        )

        violations = self._detector().check_guardrails(ruleset)

        self.assertEqual(len(violations), 4)
        self.assertIn("'evaluate'", violations[0])
        self.assertIn("'required_signatures'", violations[1])
        self.assertIn("'update'", violations[2])
        self.assertIn("RepositoryRole:5", violations[3])

    def test_guardrails_require_bypass_actor(self) -> None:
        violations = self._detector().check_guardrails(protection_ruleset(bypass_actors=[]))
        self.assertEqual(violations, ["ruleset has no bypass actors"])

    def test_empty_allowlist_fails_closed(self) -> None:
        self.settings.drift.allowed_bypass_actors = []
        violations = self._detector().check_guardrails(protection_ruleset())
        self.assertEqual(len(violations), 1)

    def test_missing_ruleset(self) -> None:
        with self.assertRaises(DriftDetectedError) as cm:
            self._detector(MissingPolicySource()).verify()
        self.assertIn("not found", cm.exception.violations[0])

    def test_bootstrap_without_baseline(self) -> None:
        result = self._detector().verify()

        self.assertEqual(result.status, DRIFT_STATUS_BOOTSTRAP)
        self.assertIsNone(result.baseline_hash)
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("seed-baseline", result.warnings[0])

    def test_bootstrap_still_checks_guardrails(self) -> None:
        source = FakePolicySource(protection_ruleset(enforcement="disabled"))
        with self.assertRaises(DriftDetectedError):
            self._detector(source).verify()

    def test_match(self) -> None:
        baseline = self._seed()

        result = self._detector(FakePolicySource(protection_ruleset(id=77))).verify()

        self.assertEqual(result.status, DRIFT_STATUS_MATCH)
        self.assertEqual(result.actual_hash, baseline.hash)
        self.assertEqual(result.baseline_hash, baseline.hash)

    def test_hash_mismatch(self) -> None:
        baseline = self._seed()
        changed = protection_ruleset(
            rules=[{"type": "update"}, {"type": "required_signatures"}]
        )

        with self.assertRaises(DriftDetectedError) as cm:
            self._detector(FakePolicySource(changed)).verify()

        self.assertEqual(cm.exception.expected_hash, baseline.hash)
        self.assertEqual(cm.exception.actual_hash, policy_hash(changed))
        self.assertIn("does not match baseline", cm.exception.violations[0])

    def test_removed_rule_is_guardrail_drift(self) -> None:
        """Test a ruleset losing required_signatures is drift even with a baseline."""
        self._seed()
        weakened = protection_ruleset(rules=[{"type": "update"}, {"type": "deletion"}])

        with self.assertRaises(DriftDetectedError) as cm:
            self._detector(FakePolicySource(weakened)).verify()

        self.assertEqual(cm.exception.violations, ["required rule 'required_signatures' is missing"])

    def test_canonicalization_version_change(self) -> None:
        baseline = self._seed()
        baseline.canonicalization_version = CANONICALIZATION_VERSION + 1
        self.store.path_for(baseline.name).write_text(json.dumps(baseline.to_dict()))

        with self.assertRaises(DriftDetectedError) as cm:
            self._detector().verify()
        self.assertIn("canonicalization", cm.exception.violations[0])

    def test_corrupt_baseline_is_drift(self) -> None:
        self.store.directory.mkdir(parents=True)
        self.store.path_for(self.settings.drift.ruleset_name).write_text("[]")

        with self.assertRaises(DriftDetectedError):
            self._detector().verify()

    def test_fetch_failure_is_collection_error(self) -> None:
        with self.assertRaises(CollectionError) as cm:
            self._detector(FakePolicySource(fetch_failure("503"))).verify()
        self.assertEqual(cm.exception.artifact, "protection_policy")

    def test_transport_failure_is_collection_error(self) -> None:
        with self.assertRaises(CollectionError) as cm:
            self._detector(FakePolicySource(OSError("connection reset"))).verify()
        self.assertEqual(cm.exception.artifact, "protection_policy")
        self.assertIsInstance(cm.exception.__cause__, OSError)

    def test_missing_ruleset_with_baseline(self) -> None:
        self._detector().seed("alice", "initial")

        with self.assertRaises(DriftDetectedError) as cm:
            self._detector(MissingPolicySource()).verify()
        self.assertIsNone(cm.exception.actual_hash)
        self.assertIsNotNone(cm.exception.expected_hash)

    def test_seed_writes_baseline_and_journal(self) -> None:
        journal = RunJournal(self.temp_dir / "journal.db")

        baseline = self._detector().seed("alice", "initial setup", journal=journal, now=SEEDED)

        self.assertEqual(baseline.hash, policy_hash(protection_ruleset()))
        self.assertEqual(baseline.seeded_at, "2025-08-07T09:00:00+00:00")
        self.assertEqual(baseline.policy, canonicalize_ruleset(protection_ruleset()))
        self.assertEqual(self.store.load(baseline.name), baseline)
        events = journal.baseline_events(baseline.name)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].actor, "alice")
        self.assertIsNone(events[0].previous_hash)

    def test_reseed_records_previous_hash(self) -> None:
        first = self._seed()
        changed = protection_ruleset(
            rules=[{"type": "update"}, {"type": "required_signatures"}]
        )

        second = self._detector(FakePolicySource(changed)).seed("bob", "approved change")

        history = self.store.history(first.name)
        self.assertEqual(history[-1]["previous_hash"], first.hash)
        self.assertEqual(history[-1]["new_hash"], second.hash)
        self.assertEqual(history[-1]["actor"], "bob")

    def test_seed_requires_reason(self) -> None:
        with self.assertRaises(BaselineError):
            self._detector().seed("alice", "  ")
        with self.assertRaises(BaselineError):
            self._detector().seed("", "reason")
        self.assertFalse(self.store.exists(self.settings.drift.ruleset_name))

    def test_seed_refuses_violating_policy(self) -> None:
        source = FakePolicySource(protection_ruleset(enforcement="evaluate"))
        with self.assertRaises(DriftDetectedError):
            self._detector(source).seed("alice", "initial")
        self.assertFalse(self.store.exists(self.settings.drift.ruleset_name))

    def test_seed_force(self) -> None:
        source = FakePolicySource(protection_ruleset(enforcement="evaluate"))
        baseline = self._detector(source).seed("alice", "migration", force=True)
        self.assertTrue(self.store.exists(baseline.name))

    def test_seed_missing_ruleset_never_forced(self) -> None:
        with self.assertRaises(DriftDetectedError):
            self._detector(MissingPolicySource()).seed("alice", "initial", force=True)


if __name__ == "__main__":
    unittest.main()
