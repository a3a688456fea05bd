"""
Platform collectors for evidence gathering.

A collector authenticates with the source platform, fetches every declared
artifact via read-only API calls, and returns each artifact in raw and
tabular form.

Supported platforms:
    - GitHub (members, collaborators, teams, branch protection, rulesets,
      Dependabot alerts, PR approvals, MFA enforcement)
"""

from complyvault.collectors.base import (
    Artifact,
    ArtifactSpec,
    AuthenticationError,
    BaseCollector,
    CollectionError,
    CollectionResult,
    CollectorError,
    FetchConnectionError,
    OptionalArtifactWarning,
    RateLimitError,
    ResourceNotFoundError,
    RunDeadline,
    RunTimeoutError,
    TransientFetchError,
)
from complyvault.collectors.github_collector import GitHubCollector
from complyvault.collectors.tabular import TabularForm, read_csv, render_csv

__all__ = [
    # Base classes and types
    "BaseCollector",
    "Artifact",
    "ArtifactSpec",
    "CollectionResult",
    "OptionalArtifactWarning",
    "RunDeadline",
    "TabularForm",
    "render_csv",
    "read_csv",
    # Error classes
    "CollectorError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "TransientFetchError",
    "RateLimitError",
    "FetchConnectionError",
    "CollectionError",
    "RunTimeoutError",
    # Platform collectors
    "GitHubCollector",
]
