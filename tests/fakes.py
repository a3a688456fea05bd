"""
Offline stand-ins for the platform shared by the test modules.

FakeCollector serves fixed artifact tables through the real BaseCollector
collect() loop, and FakePolicySource serves a ruleset to the drift
detector, so pipeline tests exercise everything except HTTP.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from pathlib import Path
from typing import Any

from complyvault.collectors.base import (
    Artifact,
    ArtifactSpec,
    BaseCollector,
    CollectionResult,
    CollectorError,
)
from complyvault.collectors.github_collector import (
    COLLABORATOR_COLUMNS,
    DEPENDABOT_ALERT_COLUMNS,
    MFA_COLUMNS,
    ORG_MEMBER_COLUMNS,
)
from complyvault.collectors.tabular import TabularForm
from complyvault.config.settings import BypassActor, Settings

PIPELINE_ACTOR = {"actor_type": "Integration", "actor_id": 123456, "bypass_mode": "always"}


def make_settings(root: Path, **publishing: str) -> Settings:
    """Settings for a ledger under root, ready for collection."""
    settings = Settings()
    settings.ledger.root = str(root / "ledger")
    settings.platform.organization = "example-org"
    settings.platform.repositories = ["evidence", "service-a"]
    settings.platform.rate_limit_delay = 0.0
    settings.platform.retry_base_delay = 0.0
    settings.drift.ledger_repository = "evidence"
    settings.drift.allowed_bypass_actors = [BypassActor("Integration", 123456)]
    for key, value in publishing.items():
        setattr(settings.publishing, key, value)
    return settings


def protection_ruleset(**overrides: Any) -> dict[str, Any]:
    """A ruleset that passes every guardrail, as returned by the API."""
    ruleset: dict[str, Any] = {
        "id": 4242,
        "name": "evidence-branch-protection-ruleset",
        "target": "branch",
        "source_type": "Repository",
        "source": "example-org/evidence",
        "enforcement": "active",
        "conditions": {"ref_name": {"include": ["~DEFAULT_BRANCH"], "exclude": []}},
        "rules": [
            {"type": "update"},
            {"type": "required_signatures"},
            {"type": "deletion"},
        ],
        "bypass_actors": [dict(PIPELINE_ACTOR)],
        "current_user_can_bypass": "always",
        "created_at": "2025-07-01T10:00:00Z",
        "updated_at": "2025-07-01T10:00:00Z",
        "_links": {"self": {"href": "https://api.github.com/repos/example-org/evidence/rulesets/4242"}},
    }
    ruleset.update(overrides)
    return ruleset


DEFAULT_TABLES: dict[str, tuple[list[str], list[dict[str, Any]]]] = {
    "org_members": (
        ORG_MEMBER_COLUMNS,
        [
            {"login": "alice", "id": 1, "role": "admin", "type": "User", "site_admin": False},
            {"login": "bob", "id": 2, "role": "member", "type": "User", "site_admin": False},
        ],
    ),
    "repo_collaborators": (
        COLLABORATOR_COLUMNS,
        [
            {
                "repository": "evidence",
                "login": "alice",
                "id": 1,
                "role_name": "admin",
                "admin": True,
                "maintain": True,
                "push": True,
                "triage": True,
                "pull": True,
                "site_admin": False,
            },
        ],
    ),
    "dependabot_alerts": (
        DEPENDABOT_ALERT_COLUMNS,
        [
            {"repository": "service-a", "number": 7, "state": "open", "severity": "high"},
            {"repository": "service-a", "number": 9, "state": "open", "severity": "low"},
        ],
    ),
    "org_mfa_enforcement": (
        MFA_COLUMNS,
        [
            {
                "organization": "example-org",
                "two_factor_requirement_enabled": True,
                "members_without_2fa": 0,
            }
        ],
    ),
}

OPTIONAL_ARTIFACTS = {"org_mfa_enforcement"}


class FakeCollector(BaseCollector):
    """
    Collector that serves fixed tables.

    Args:
        settings: Settings.
        tables: Artifact name to (columns, rows); defaults to DEFAULT_TABLES.
        failures: Artifact name to the error its fetcher raises.
    """

    platform = "github"

    def __init__(
        self,
        settings: Settings,
        tables: dict[str, tuple[list[str], list[dict[str, Any]]]] | None = None,
        failures: dict[str, Exception] | None = None,
    ) -> None:
        super().__init__(settings)
        self.tables = copy.deepcopy(tables if tables is not None else DEFAULT_TABLES)
        self.failures = failures or {}
        self.collect_calls = 0

    def collect(self) -> CollectionResult:
        self.collect_calls += 1
        return super().collect()

    def _fetcher(self, name: str) -> Callable[[], Artifact]:
        def fetch() -> Artifact:
            if name in self.failures:
                raise self.failures[name]
            columns, rows = self.tables[name]
            table = TabularForm.from_records(rows, columns)
            return self.make_artifact(name, {"rows": table.rows}, table, [f"/fake/{name}"])

        return fetch

    def artifact_specs(self) -> list[ArtifactSpec]:
        names = list(self.tables) + [n for n in self.failures if n not in self.tables]
        return [
            ArtifactSpec(name, self._fetcher(name), optional=name in OPTIONAL_ARTIFACTS)
            for name in names
        ]


class FakePolicySource:
    """Serves a ruleset, or raises, to the drift detector."""

    def __init__(self, ruleset: dict[str, Any] | None | Exception = None) -> None:
        self.ruleset = protection_ruleset() if ruleset is None else ruleset
        self.calls: list[tuple[str, str]] = []

    def fetch_ruleset(self, repository: str, name: str) -> dict[str, Any] | None:
        self.calls.append((repository, name))
        if isinstance(self.ruleset, Exception):
            raise self.ruleset
        if self.ruleset.get("name") != name:
            return None
        return copy.deepcopy(self.ruleset)


class MissingPolicySource(FakePolicySource):
    def fetch_ruleset(self, repository: str, name: str) -> dict[str, Any] | None:
        self.calls.append((repository, name))
        return None


def fetch_failure(message: str = "boom") -> CollectorError:
    return CollectorError(message, platform="github")
