"""
Policy drift detection for the evidence ledger's protection ruleset.

The ledger is only trustworthy while the branch-protection ruleset guarding
it is intact. Before any snapshot is written the detector fetches the live
ruleset, checks a fixed set of guardrails, hashes the canonical form and
compares it with the trusted baseline.

Outcomes:
    - Guardrail violation: DriftDetectedError (with or without a baseline)
    - No baseline: warning, run proceeds (bootstrap)
    - Hash match: run proceeds
    - Hash mismatch or canonicalization version change: DriftDetectedError

The detector fails closed. An unreadable baseline is drift, and a policy
that cannot be fetched aborts the run as a collection error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from complyvault.collectors.base import CollectionError, CollectorError
from complyvault.config.settings import DriftConfig
from complyvault.drift.baseline import Baseline, BaselineError, BaselineStore
from complyvault.drift.canonical import (
    CANONICALIZATION_VERSION,
    canonicalize_ruleset,
    policy_hash,
)
from complyvault.storage.journal import RunJournal
from complyvault.storage.models import BaselineEvent

logger = logging.getLogger(__name__)

DRIFT_STATUS_BOOTSTRAP = "bootstrap"
DRIFT_STATUS_MATCH = "match"


class PolicySource(Protocol):
    """Anything that can fetch a ruleset by name. GitHubCollector satisfies it."""

    def fetch_ruleset(self, repository: str, name: str) -> dict[str, Any] | None: ...


class DriftDetectedError(Exception):
    """
    Raised when the protection policy differs from the trusted state.

    Attributes:
        violations: Guardrail or comparison failures, one per entry.
        expected_hash: Baseline hash, if a baseline exists.
        actual_hash: Hash of the live policy, if it was fetched.
    """

    def __init__(
        self,
        message: str,
        violations: list[str] | None = None,
        expected_hash: str | None = None,
        actual_hash: str | None = None,
    ) -> None:
        super().__init__(message)
        self.violations = violations or []
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "violations": self.violations,
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
        }


@dataclass
class DriftCheckResult:
    """Outcome of a successful pre-flight check."""

    status: str
    ruleset_name: str
    repository: str
    actual_hash: str
    baseline_hash: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "ruleset_name": self.ruleset_name,
            "repository": self.repository,
            "actual_hash": self.actual_hash,
            "baseline_hash": self.baseline_hash,
            "warnings": self.warnings,
        }


class DriftDetector:
    """
    Compares the live protection ruleset with its trusted baseline.

    Example:
        detector = DriftDetector(settings.drift, BaselineStore(ledger.baseline_dir), collector)
        result = detector.verify()  # raises DriftDetectedError on drift
        print(result.status, result.actual_hash)
    """

    def __init__(
        self,
        config: DriftConfig,
        store: BaselineStore,
        source: PolicySource,
    ) -> None:
        self.config = config
        self.store = store
        self.source = source

    @property
    def ruleset_name(self) -> str:
        return self.config.ruleset_name

    def fetch_policy(self) -> dict[str, Any] | None:
        """
        Fetch the live ruleset.

        Raises:
            CollectionError: If the platform cannot be read.
        """
        try:
            return self.source.fetch_ruleset(self.config.ledger_repository, self.ruleset_name)
        except CollectionError:
            raise
        except (CollectorError, OSError) as e:
            raise CollectionError(
                f"Failed to fetch protection policy {self.ruleset_name!r}: {e}",
                platform=getattr(e, "platform", None),
                artifact="protection_policy",
            ) from e

    def check_guardrails(self, ruleset: dict[str, Any] | None) -> list[str]:
        """
        Evaluate the fixed guardrails against a live ruleset.

        Returns:
            Violations; empty when every guardrail holds.
        """
        if ruleset is None:
            return [
                f"ruleset {self.ruleset_name!r} not found on "
                f"repository {self.config.ledger_repository!r}"
            ]

        violations = []
        enforcement = ruleset.get("enforcement")
        if enforcement != "active":
            violations.append(f"ruleset enforcement is {enforcement!r}, expected 'active'")

        rule_types = {
            rule.get("type") for rule in ruleset.get("rules") or [] if isinstance(rule, dict)
        }
        for required in self.config.required_rule_types:
            if required not in rule_types:
                violations.append(f"required rule {required!r} is missing")

        actors = ruleset.get("bypass_actors") or []
        if not actors:
            violations.append("ruleset has no bypass actors")
        allowed = {(a.actor_type, a.actor_id) for a in self.config.allowed_bypass_actors}
        for actor in actors:
            key = (actor.get("actor_type"), actor.get("actor_id"))
            if key not in allowed:
                violations.append(
                    f"bypass actor {key[0]}:{key[1]} is not in the allowed bypass list"
                )

        return violations

    def verify(self) -> DriftCheckResult:
        """
        Run the pre-flight drift check.

        Returns:
            DriftCheckResult with status "bootstrap" or "match".

        Raises:
            DriftDetectedError: On any guardrail violation or hash mismatch.
            CollectionError: If the live policy cannot be fetched.
        """
        ruleset = self.fetch_policy()
        violations = self.check_guardrails(ruleset)
        actual = policy_hash(ruleset) if ruleset is not None else None

        try:
            baseline = self.store.load(self.ruleset_name)
        except BaselineError as e:
            raise DriftDetectedError(
                f"Baseline for {self.ruleset_name!r} cannot be trusted",
                violations + [str(e)],
                actual_hash=actual,
            ) from e

        expected = baseline.hash if baseline else None

        if violations or ruleset is None or actual is None:
            raise DriftDetectedError(
                f"Protection policy {self.ruleset_name!r} violates guardrails",
                violations,
                expected_hash=expected,
                actual_hash=actual,
            )

        if baseline is None:
            message = (
                f"No baseline for {self.ruleset_name!r}; proceeding in bootstrap mode. "
                f"Run 'complyvault seed-baseline' to record {actual} as trusted."
            )
            logger.warning(message)
            return DriftCheckResult(
                status=DRIFT_STATUS_BOOTSTRAP,
                ruleset_name=self.ruleset_name,
                repository=self.config.ledger_repository,
                actual_hash=actual,
                warnings=[message],
            )

        if baseline.canonicalization_version != CANONICALIZATION_VERSION:
            raise DriftDetectedError(
                f"Baseline for {self.ruleset_name!r} uses canonicalization "
                f"v{baseline.canonicalization_version}, current is v{CANONICALIZATION_VERSION}",
                ["canonicalization version changed; re-seed the baseline"],
                expected_hash=expected,
                actual_hash=actual,
            )

        if baseline.hash != actual:
            raise DriftDetectedError(
                f"Protection policy {self.ruleset_name!r} drifted from baseline",
                [f"policy hash {actual} does not match baseline {baseline.hash}"],
                expected_hash=expected,
                actual_hash=actual,
            )

        logger.info(f"Protection policy {self.ruleset_name!r} matches baseline ({actual})")
        return DriftCheckResult(
            status=DRIFT_STATUS_MATCH,
            ruleset_name=self.ruleset_name,
            repository=self.config.ledger_repository,
            actual_hash=actual,
            baseline_hash=baseline.hash,
        )

    def seed(
        self,
        actor: str,
        reason: str,
        force: bool = False,
        journal: RunJournal | None = None,
        now: datetime | None = None,
    ) -> Baseline:
        """
        Record the live policy as the trusted baseline.

        Args:
            actor: Who is seeding.
            reason: Justification, recorded in the audit log.
            force: Seed even if the live policy violates guardrails.
            journal: Run journal to record the event in.
            now: Seed timestamp (defaults to the current time).

        Raises:
            BaselineError: If reason or actor is empty.
            DriftDetectedError: If the policy is missing, or violates
                guardrails and force is not set.
            CollectionError: If the live policy cannot be fetched.
        """
        if not reason.strip():
            raise BaselineError("A reason is required to seed a baseline")
        if not actor.strip():
            raise BaselineError("An actor is required to seed a baseline")

        ruleset = self.fetch_policy()
        violations = self.check_guardrails(ruleset)
        if ruleset is None or (violations and not force):
            raise DriftDetectedError(
                f"Refusing to seed baseline for {self.ruleset_name!r}",
                violations,
            )
        if violations:
            logger.warning(f"Seeding baseline despite guardrail violations: {violations}")

        try:
            previous = self.store.load(self.ruleset_name)
        except BaselineError as e:
            logger.warning(f"Replacing unreadable baseline: {e}")
            previous = None

        seeded_at = (now or datetime.now(UTC)).astimezone(UTC)
        baseline = Baseline(
            name=self.ruleset_name,
            hash=policy_hash(ruleset),
            policy=canonicalize_ruleset(ruleset),
            canonicalization_version=CANONICALIZATION_VERSION,
            seeded_at=seeded_at.isoformat(),
            seeded_by=actor,
            reason=reason,
        )
        previous_hash = previous.hash if previous else None
        self.store.save(baseline, previous_hash=previous_hash)

        if journal is not None:
            journal.record_baseline_event(
                BaselineEvent.create(
                    name=baseline.name,
                    actor=actor,
                    reason=reason,
                    new_hash=baseline.hash,
                    previous_hash=previous_hash,
                    seeded_at=seeded_at,
                )
            )

        if previous_hash and previous_hash != baseline.hash:
            logger.warning(
                f"Baseline {baseline.name} re-seeded by {actor}: {previous_hash} -> {baseline.hash}"
            )
        else:
            logger.info(f"Baseline {baseline.name} seeded by {actor}: {baseline.hash}")
        return baseline
