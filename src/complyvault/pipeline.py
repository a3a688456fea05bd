"""
Evidence pipeline orchestration.

Composes the collector, control mapper, drift detector, snapshot ledger and
index publisher into the commands the CLI exposes. Every command returns a
PipelineResult instead of raising, so the CLI maps outcomes to exit codes in
one place and every invocation is recorded in the run journal.

Run Order:
    1. Validate settings and load every mapping table
    2. Pre-flight check of the verification document markers
    3. Acquire the run lock and clear staging debris
    4. Drift check of the ledger's protection policy
    5. Collect artifacts
    6. Map artifacts to controls, once per framework
    7. Stage the snapshot, write the manifest, publish, move "latest"
    8. Update the verification document
    9. Record the run in the journal

Nothing is written to the ledger before step 7, so a failure at steps 1-6
leaves the ledger exactly as it was. Step 7 commits all or nothing. Once it
has committed, a failure at step 8 is reported as a warning on a successful
run.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from complyvault.analysis.rollup import RollupAggregator, RollupError, RollupPeriod
from complyvault.collectors.base import (
    BaseCollector,
    CollectionError,
    CollectionResult,
    CollectorError,
    RunDeadline,
)
from complyvault.collectors.github_collector import GitHubCollector
from complyvault.collectors.tabular import render_csv
from complyvault.config.settings import ConfigurationError, Settings, validate_for_collection
from complyvault.drift.baseline import BaselineError, BaselineStore
from complyvault.drift.detector import (
    DriftCheckResult,
    DriftDetectedError,
    DriftDetector,
    PolicySource,
)
from complyvault.mapping.control_mapper import (
    AUDIT_COLUMNS,
    ControlMapper,
    FrameworkEvidence,
    MappingConfigError,
    load_mapping_tables,
)
from complyvault.reports.index import IndexPublisher
from complyvault.reports.oscal import build_oscal_assessment_results
from complyvault.reports.posture import build_posture_summary
from complyvault.reports.verification import VerificationDocumentError
from complyvault.storage.journal import RunJournal
from complyvault.storage.ledger import (
    IntegrityError,
    LedgerCommitError,
    SnapshotLedger,
    SnapshotStage,
)
from complyvault.storage.lock import RunLock, RunLockError
from complyvault.storage.models import RunRecord

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Outcome of a pipeline command."""

    SUCCESS = "success"
    COLLECTION_ERROR = "collection_error"
    DRIFT_DETECTED = "drift_detected"
    CONFIG_ERROR = "config_error"
    LEDGER_ERROR = "ledger_error"
    LOCKED = "locked"
    ERROR = "error"


EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.SUCCESS: 0,
    RunStatus.COLLECTION_ERROR: 1,
    RunStatus.DRIFT_DETECTED: 2,
    RunStatus.CONFIG_ERROR: 3,
    RunStatus.LEDGER_ERROR: 4,
    RunStatus.LOCKED: 5,
    RunStatus.ERROR: 1,
}

# Exception type to status, most specific first
_ERROR_STATUS: list[tuple[tuple[type[BaseException], ...], RunStatus]] = [
    ((DriftDetectedError,), RunStatus.DRIFT_DETECTED),
    ((RunLockError,), RunStatus.LOCKED),
    (
        (
            ConfigurationError,
            MappingConfigError,
            VerificationDocumentError,
            RollupError,
            BaselineError,
        ),
        RunStatus.CONFIG_ERROR,
    ),
    ((CollectionError, CollectorError), RunStatus.COLLECTION_ERROR),
    ((LedgerCommitError, IntegrityError, OSError), RunStatus.LEDGER_ERROR),
]


@dataclass
class PipelineResult:
    """
    Tagged result of one pipeline command.

    Attributes:
        command: Command that ran (run, seed-baseline, rollup).
        status: Outcome.
        started_at: When the command started.
        finished_at: When it finished.
        snapshot_date: Date of the committed snapshot, for successful runs.
        warnings: Non-fatal conditions.
        error: Structured error report, for failed commands.
        details: Command-specific output.
    """

    command: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    snapshot_date: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_report(self) -> dict[str, Any]:
        """Structured report, printed to stderr when a command fails."""
        return {
            "command": self.command,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "snapshot_date": self.snapshot_date,
            "warnings": self.warnings,
            "error": self.error,
            "details": self.details,
        }


def classify_error(error: BaseException) -> RunStatus:
    for types, status in _ERROR_STATUS:
        if isinstance(error, types):
            return status
    return RunStatus.ERROR


def error_report(error: BaseException) -> dict[str, Any]:
    """Structured description of a pipeline error."""
    report: dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    if isinstance(error, DriftDetectedError):
        report.update(error.to_dict())
    elif isinstance(error, MappingConfigError):
        report["problems"] = error.problems
    elif isinstance(error, CollectionError):
        report["artifact"] = error.artifact
        report["platform"] = error.platform
    elif isinstance(error, CollectorError):
        report["platform"] = error.platform
    elif isinstance(error, RunLockError):
        report["holder"] = error.holder
    elif isinstance(error, IntegrityError):
        report["mismatches"] = error.mismatches
    return report


class EvidencePipeline:
    """
    Runs the complyvault commands against one ledger.

    Example:
        settings = load_config()
        pipeline = EvidencePipeline(settings)
        result = pipeline.run()
        sys.exit(result.exit_code)

    Args:
        settings: Loaded settings.
        collector: Collector to use instead of the GitHub collector.
        policy_source: Source of the guarded ruleset; defaults to the collector.
        clock: Returns the current UTC time; the snapshot date derives from it.
    """

    def __init__(
        self,
        settings: Settings,
        collector: BaseCollector | None = None,
        policy_source: PolicySource | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = SnapshotLedger(Path(settings.ledger.root))
        self._collector = collector
        self._policy_source = policy_source
        self._clock = clock or (lambda: datetime.now(UTC))

    def _now(self) -> datetime:
        return self._clock().astimezone(UTC)

    def _get_collector(self) -> BaseCollector:
        if self._collector is None:
            deadline = RunDeadline(self.settings.ledger.run_timeout_seconds)
            self._collector = GitHubCollector(self.settings, deadline)
        return self._collector

    def _get_policy_source(self) -> PolicySource:
        if self._policy_source is not None:
            return self._policy_source
        collector = self._get_collector()
        if not hasattr(collector, "fetch_ruleset"):
            raise ConfigurationError(
                f"Collector {type(collector).__name__} cannot fetch the protection policy"
            )
        return collector  # type: ignore[return-value]

    def _detector(self) -> DriftDetector:
        return DriftDetector(
            self.settings.drift,
            BaselineStore(self.ledger.baseline_dir),
            self._get_policy_source(),
        )

    def journal(self) -> RunJournal:
        return RunJournal(self.ledger.journal_path)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def run(self) -> PipelineResult:
        """Collect, map and commit one snapshot."""
        return self._execute("run", self._run)

    def seed_baseline(self, actor: str, reason: str, force: bool = False) -> PipelineResult:
        """Record the live protection policy as the trusted baseline."""
        return self._execute(
            "seed-baseline",
            lambda result: self._seed_baseline(result, actor, reason, force),
        )

    def rollup(self, period: RollupPeriod | str, key: str | None = None) -> PipelineResult:
        """Recompute a weekly or monthly rollup."""
        return self._execute("rollup", lambda result: self._rollup(result, period, key))

    # -------------------------------------------------------------------------
    # Implementation
    # -------------------------------------------------------------------------

    def _execute(
        self,
        command: str,
        body: Callable[[PipelineResult], None],
    ) -> PipelineResult:
        result = PipelineResult(
            command=command,
            status=RunStatus.SUCCESS,
            started_at=self._now(),
        )
        try:
            body(result)
        except Exception as e:
            status = classify_error(e)
            result.status = status
            result.error = error_report(e)
            if status == RunStatus.ERROR:
                logger.exception(f"{command} failed unexpectedly: {e}")
            elif status == RunStatus.DRIFT_DETECTED:
                logger.critical(f"DRIFT DETECTED: {e}")
                for violation in result.error.get("violations", []):
                    logger.critical(f"  {violation}")
            else:
                logger.error(f"{command} failed ({status.value}): {e}")

        result.finished_at = self._now()
        self._record(result)
        return result

    def _record(self, result: PipelineResult) -> None:
        record = RunRecord.create(
            command=result.command,
            started_at=result.started_at,
            status=result.status.value,
            exit_code=result.exit_code,
            snapshot_date=result.snapshot_date,
            warnings=result.warnings,
            error=result.error,
        )
        record.finished_at = result.finished_at
        try:
            self.journal().record_run(record)
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Could not record {result.command} in run journal: {e}")

    def _run(self, result: PipelineResult) -> None:
        validate_for_collection(self.settings)
        mapper = ControlMapper(load_mapping_tables(self.settings.mappings))
        publisher = IndexPublisher(self.settings.publishing)
        publisher.check_verification_document()

        self.ledger.initialize()
        with RunLock(self.ledger.lock_path, purpose="run"):
            self.ledger.cleanup_staging()

            started_at = result.started_at
            day = started_at.date()
            self.ledger.check_commit_date(day)

            drift = self._detector().verify()
            result.warnings.extend(drift.warnings)
            result.details["drift"] = drift.to_dict()

            collection = self._get_collector().collect()
            result.warnings.extend(str(w) for w in collection.warnings)
            logger.info(
                f"Collected {collection.artifact_count} artifacts "
                f"in {collection.duration_seconds:.1f}s"
            )

            evidence = mapper.map_artifacts(collection.file_names())

            with self.ledger.begin(day, started_at) as stage:
                posture = self._write_snapshot(stage, collection, evidence, drift, publisher)
                path = self.ledger.publish(stage)

            result.snapshot_date = stage.date
            result.details["snapshot_path"] = str(path)
            result.details["frameworks"] = {
                name: {
                    "controls_total": data["controls_total"],
                    "controls_with_evidence": data["controls_with_evidence"],
                }
                for name, data in posture["frameworks"].items()
            }

            try:
                publisher.update_verification_document(stage.metadata, posture)
            except (VerificationDocumentError, OSError) as e:
                # The snapshot is already committed; the run still succeeds
                message = f"Verification document not updated for {stage.date}: {e}"
                logger.error(message)
                result.warnings.append(message)

    def _write_snapshot(
        self,
        stage: SnapshotStage,
        collection: CollectionResult,
        evidence: list[FrameworkEvidence],
        drift: DriftCheckResult,
        publisher: IndexPublisher,
    ) -> dict[str, Any]:
        """Write every file of a snapshot into its staging directory."""
        for artifact in collection.artifacts.values():
            stage.write_json(f"artifacts/{artifact.json_file}", artifact.to_document())
            if artifact.tabular is not None:
                stage.write_text(f"artifacts/{artifact.csv_file}", artifact.tabular.to_csv())

        for framework in evidence:
            for copy in framework.copies:
                stage.copy_file(f"artifacts/{copy.source_artifact}", copy.destination)
            stage.write_text(
                f"{framework.base_dir}/audit.csv",
                render_csv(AUDIT_COLUMNS, framework.audit_rows()),
            )
            stage.write_json(f"{framework.base_dir}/coverage.json", framework.coverage_document())

        posture = build_posture_summary(stage.metadata, collection, evidence, drift)
        stage.write_json("posture.json", posture)
        stage.write_json(
            "oscal/assessment-results.json",
            build_oscal_assessment_results(stage.metadata, evidence),
        )
        publisher.write_snapshot_index(stage, collection, evidence)
        stage.write_manifest()
        return posture

    def _seed_baseline(
        self,
        result: PipelineResult,
        actor: str,
        reason: str,
        force: bool,
    ) -> None:
        validate_for_collection(self.settings)
        self.ledger.initialize()
        with RunLock(self.ledger.lock_path, purpose="seed-baseline"):
            baseline = self._detector().seed(
                actor=actor,
                reason=reason,
                force=force,
                journal=self.journal(),
                now=result.started_at,
            )
        result.details["baseline"] = {
            "name": baseline.name,
            "hash": baseline.hash,
            "seeded_by": baseline.seeded_by,
            "seeded_at": baseline.seeded_at,
        }

    def _rollup(
        self,
        result: PipelineResult,
        period: RollupPeriod | str,
        key: str | None,
    ) -> None:
        self.ledger.initialize()
        rollup = RollupAggregator(self.ledger).compute(
            period, key, today=result.started_at.date()
        )
        result.warnings.extend(rollup.warnings)
        result.details["rollup"] = rollup.to_dict()
        result.details["path"] = str(rollup.path)
