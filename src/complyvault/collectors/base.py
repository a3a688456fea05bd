"""
Base collector interface for evidence gathering.

This module provides the abstract base class for platform collectors, the
Artifact data structure shared by every later stage, and the collection
error taxonomy.

Design Principles:
    - All API calls are read-only (no write operations)
    - Built-in rate limiting and retry logic with bounded backoff
    - Mandatory artifacts abort the run when they cannot be fetched
    - Optional artifacts degrade to a recorded warning
    - All API calls are logged for audit trail

Error Handling:
    TransientFetchError (rate limits, timeouts, 5xx) is retried locally.
    When retries are exhausted for a mandatory artifact, the collector
    raises CollectionError. Authentication and not-found errors are never
    retried.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from complyvault.collectors.tabular import TabularForm

if TYPE_CHECKING:
    from complyvault.config.settings import Settings


# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class CollectorError(Exception):
    """Base exception for collector errors."""

    def __init__(self, message: str, platform: str | None = None) -> None:
        self.message = message
        self.platform = platform
        super().__init__(f"[{platform}] {message}" if platform else message)


class AuthenticationError(CollectorError):
    """
    Raised when authentication with a platform fails.

    This includes missing tokens, invalid tokens, and permission denials.
    """

    pass


class ResourceNotFoundError(CollectorError):
    """Raised when the platform answers 404 for a resource."""

    pass


class TransientFetchError(CollectorError):
    """
    Raised for failures that may succeed on retry.

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by API).
    """

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, platform)
        self.retry_after = retry_after


class RateLimitError(TransientFetchError):
    """Raised when a platform rate limit is exceeded."""

    pass


class FetchConnectionError(TransientFetchError):
    """
    Raised when connection to a platform fails.

    This includes network errors, DNS failures, and timeout errors.
    """

    pass


class CollectionError(CollectorError):
    """
    Raised when a mandatory artifact cannot be collected.

    The run is aborted and no snapshot is committed.

    Attributes:
        artifact: Name of the artifact that failed, if known.
    """

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        artifact: str | None = None,
    ) -> None:
        super().__init__(message, platform)
        self.artifact = artifact


class RunTimeoutError(CollectionError):
    """Raised when the overall run deadline has passed."""

    pass


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class OptionalArtifactWarning:
    """
    Record of an optional artifact that could not be collected.

    Not an exception: these are accumulated on the CollectionResult and
    written into the snapshot's posture summary.
    """

    artifact: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"artifact": self.artifact, "reason": self.reason}

    def __str__(self) -> str:
        return f"{self.artifact}: {self.reason}"


@dataclass
class Artifact:
    """
    A named unit of collected evidence.

    Attributes:
        name: Artifact name (e.g., "org_members"). Also the file stem.
        fetched_at: UTC timestamp when the fetch completed.
        raw: The normalized record or list of records from the platform.
        tabular: Flattened rows for aggregation, if the artifact has any.
        optional: True if the artifact may be unavailable on some tiers.
        sources: API endpoints the artifact was assembled from.
    """

    name: str
    fetched_at: datetime
    raw: dict[str, Any] | list[Any]
    tabular: TabularForm | None = None
    optional: bool = False
    sources: list[str] = field(default_factory=list)

    @property
    def json_file(self) -> str:
        return f"{self.name}.json"

    @property
    def csv_file(self) -> str | None:
        return f"{self.name}.csv" if self.tabular is not None else None

    def file_names(self) -> list[str]:
        """File names this artifact occupies in a snapshot."""
        names = [self.json_file]
        if self.csv_file:
            names.append(self.csv_file)
        return names

    def to_document(self) -> dict[str, Any]:
        """
        JSON document written to ``<name>.json``.

        ``fetched_at`` is the only volatile field.
        """
        return {
            "artifact": self.name,
            "fetched_at": self.fetched_at.isoformat(),
            "optional": self.optional,
            "sources": sorted(self.sources),
            "row_count": self.tabular.row_count if self.tabular is not None else None,
            "data": self.raw,
        }


@dataclass
class ArtifactSpec:
    """
    Declaration of one artifact type a collector can fetch.

    Attributes:
        name: Artifact name.
        fetcher: Callable returning the populated Artifact.
        optional: If True, failures become warnings instead of aborting.
    """

    name: str
    fetcher: Callable[[], Artifact]
    optional: bool = False


@dataclass
class CollectionResult:
    """
    Result of one collection pass.

    Attributes:
        platform: The platform that was collected from.
        started_at: UTC timestamp when collection started.
        artifacts: Collected artifacts keyed by name.
        warnings: Optional artifacts that could not be collected.
        duration_seconds: Total time taken for collection.
    """

    platform: str
    started_at: datetime
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    warnings: list[OptionalArtifactWarning] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def artifact_count(self) -> int:
        return len(self.artifacts)

    def file_names(self) -> list[str]:
        """All artifact file names, sorted."""
        names: list[str] = []
        for artifact in self.artifacts.values():
            names.extend(artifact.file_names())
        return sorted(names)

    def get(self, name: str) -> Artifact | None:
        return self.artifacts.get(name)


class RunDeadline:
    """
    Overall wall-clock budget for a run.

    Collectors call check() before every request; once the budget is spent
    the run fails with RunTimeoutError.
    """

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds if seconds is not None else None

    @property
    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def check(self) -> None:
        if self._expires_at is not None and self._clock() >= self._expires_at:
            raise RunTimeoutError(
                f"Run exceeded its {self.seconds:.0f}s time budget"
            )


# -----------------------------------------------------------------------------
# Base Collector
# -----------------------------------------------------------------------------


class BaseCollector(ABC):
    """
    Abstract base class for platform collectors.

    Features:
        - Built-in rate limiting with configurable delays
        - Automatic retry logic with bounded exponential backoff
        - Logging of all API calls
        - Mandatory/optional artifact handling in collect()

    Subclasses implement artifact_specs() and the transport; collect() is
    shared.

    Retry Logic:
        Use _with_retry() wrapper for API calls that should be retried
        on transient failures.
    """

    # Subclasses must set this to their platform identifier
    platform: str = "base"

    # Default rate limit delay in seconds between API calls
    default_rate_limit_delay: float = 0.1

    # Default retry configuration
    default_max_retries: int = 3
    default_retry_base_delay: float = 1.0
    default_retry_max_delay: float = 60.0

    def __init__(
        self,
        config: Settings,
        deadline: RunDeadline | None = None,
    ) -> None:
        """
        Initialize the collector.

        Args:
            config: Settings object containing platform configuration.
            deadline: Optional overall run deadline.
        """
        self.config = config
        self.deadline = deadline or RunDeadline(None)
        self.logger = logging.getLogger(f"complyvault.collectors.{self.platform}")

        platform_config = config.platform

        # Rate limiting state
        self._last_api_call: float = 0.0
        self._rate_limit_delay = platform_config.rate_limit_delay

        # Retry configuration
        self._max_retries = platform_config.max_retries
        self._retry_base_delay = platform_config.retry_base_delay
        self._retry_max_delay = platform_config.retry_max_delay

    @abstractmethod
    def artifact_specs(self) -> list[ArtifactSpec]:
        """
        Declare the artifact types this collector fetches, in fetch order.
        """
        pass

    def collect(self) -> CollectionResult:
        """
        Collect every declared artifact.

        Returns:
            CollectionResult with all collected artifacts and warnings for
            optional artifacts that could not be fetched.

        Raises:
            CollectionError: If a mandatory artifact could not be fetched,
                or the run deadline passed.
        """
        start_time = time.time()
        result = CollectionResult(platform=self.platform, started_at=datetime.now(UTC))

        for spec in self.artifact_specs():
            self.logger.info(f"Collecting {spec.name}...")
            try:
                artifact = spec.fetcher()
            except CollectionError:
                raise
            except (CollectorError, ValueError, OSError) as e:
                if spec.optional:
                    self.logger.warning(f"Optional artifact {spec.name} unavailable: {e}")
                    result.warnings.append(OptionalArtifactWarning(spec.name, str(e)))
                    continue
                self.logger.error(f"Failed to collect mandatory artifact {spec.name}: {e}")
                raise CollectionError(
                    f"Mandatory artifact '{spec.name}' could not be collected: {e}",
                    platform=self.platform,
                    artifact=spec.name,
                ) from e

            artifact.optional = spec.optional
            result.artifacts[artifact.name] = artifact
            rows = artifact.tabular.row_count if artifact.tabular is not None else 0
            self.logger.info(f"Collected {spec.name} ({rows} rows)")

        result.duration_seconds = time.time() - start_time
        return result

    def make_artifact(
        self,
        name: str,
        raw: dict[str, Any] | list[Any],
        tabular: TabularForm | None = None,
        sources: list[str] | None = None,
    ) -> Artifact:
        """
        Build an Artifact stamped with the current UTC time.
        """
        return Artifact(
            name=name,
            fetched_at=datetime.now(UTC),
            raw=raw,
            tabular=tabular,
            sources=sources or [],
        )

    def _rate_limit(self) -> None:
        """
        Apply rate limiting before an API call.

        Sleeps if necessary to maintain the configured delay between calls.
        """
        now = time.time()
        elapsed = now - self._last_api_call
        if elapsed < self._rate_limit_delay:
            sleep_time = self._rate_limit_delay - elapsed
            self.logger.debug(f"Rate limiting: sleeping {sleep_time:.3f}s")
            time.sleep(sleep_time)
        self._last_api_call = time.time()

    def _with_retry(
        self,
        func: Any,
        *args: Any,
        max_retries: int | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Execute a function with retry logic and exponential backoff.

        Retries on TransientFetchError but not on authentication errors,
        missing resources, or other permanent failures. Backoff never
        sleeps past the run deadline.

        Returns:
            The return value of the function.

        Raises:
            The last exception if all retries are exhausted.
        """
        retries = max_retries if max_retries is not None else self._max_retries
        last_exception: Exception | None = None

        for attempt in range(retries + 1):
            self.deadline.check()
            try:
                self._rate_limit()
                return func(*args, **kwargs)
            except TransientFetchError as e:
                last_exception = e
                if e.retry_after is not None:
                    delay = min(e.retry_after, self._retry_max_delay)
                else:
                    delay = min(
                        self._retry_base_delay * (2**attempt),
                        self._retry_max_delay,
                    )
                remaining = self.deadline.remaining
                if remaining is not None:
                    delay = min(delay, remaining)
                if attempt < retries:
                    self.logger.warning(
                        f"Transient failure, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{retries}): {e}"
                    )
                    time.sleep(delay)

        # All retries exhausted
        if last_exception:
            raise last_exception
        raise CollectorError("Unknown error during retry", platform=self.platform)

    def _log_api_call(
        self,
        method: str,
        endpoint: str,
        status_code: int | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """
        Log an API call for audit trail.
        """
        msg = f"API call: {method} {endpoint}"
        if status_code is not None:
            msg += f" -> {status_code}"
        if duration_ms is not None:
            msg += f" ({duration_ms:.0f}ms)"
        self.logger.info(msg)
