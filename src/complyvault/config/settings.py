"""
Configuration settings management for complyvault.

This module handles loading and validating configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.complyvault/config.yaml by default, with the
path overridable via the COMPLYVAULT_CONFIG environment variable.

Example config.yaml:

    complyvault:
      log_level: INFO
    ledger:
      root: /srv/evidence
      run_timeout_seconds: 1800
    platform:
      api_url: https://api.github.com
      organization: example-org
      repositories: [evidence, service-a]
      token_env: GITHUB_TOKEN
    drift:
      ledger_repository: evidence
      ruleset_name: evidence-branch-protection-ruleset
      allowed_bypass_actors:
        - {actor_type: Integration, actor_id: 123456}
    mappings:
      nist-800-53: /etc/complyvault/nist_800_53.yaml
    publishing:
      verification_document: /srv/evidence-repo/VERIFICATION.md
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".complyvault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Mapping tables shipped with the package
PACKAGE_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_MAPPING_FILES: dict[str, str] = {
    "nist-800-53": str(PACKAGE_DATA_DIR / "mappings" / "nist_800_53.yaml"),
    "cmmc-2": str(PACKAGE_DATA_DIR / "mappings" / "cmmc_2.yaml"),
}

DEFAULT_START_MARKER = "<!-- complyvault:status:start -->"
DEFAULT_END_MARKER = "<!-- complyvault:status:end -->"


@dataclass
class LedgerConfig:
    """Evidence ledger location and run limits."""

    root: str = str(DEFAULT_CONFIG_DIR / "ledger")
    run_timeout_seconds: int = 1800


@dataclass
class PlatformConfig:
    """Source platform API settings."""

    api_url: str = "https://api.github.com"
    organization: str = ""
    repositories: list[str] = field(default_factory=list)
    token_env: str = "GITHUB_TOKEN"
    per_page: int = 100
    request_timeout: float = 30.0
    rate_limit_delay: float = 0.1
    max_retries: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    pr_history_limit: int = 50


@dataclass
class BypassActor:
    """An identity allowed to bypass the ledger's protection ruleset."""

    actor_type: str
    actor_id: int


@dataclass
class DriftConfig:
    """Protection policy guarded by the drift detector."""

    ledger_repository: str = ""
    ruleset_name: str = "evidence-branch-protection-ruleset"
    required_rule_types: list[str] = field(
        default_factory=lambda: ["required_signatures", "update"]
    )
    allowed_bypass_actors: list[BypassActor] = field(default_factory=list)


@dataclass
class PublishingConfig:
    """Verification document settings. An empty path disables publishing."""

    verification_document: str = ""
    start_marker: str = DEFAULT_START_MARKER
    end_marker: str = DEFAULT_END_MARKER


@dataclass
class Settings:
    """
    Complete complyvault configuration settings.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        ledger: Ledger root directory and run timeout.
        platform: Source platform API configuration.
        drift: Guarded protection policy configuration.
        mappings: Framework name to control mapping table path.
        publishing: Verification document configuration.
    """

    log_level: str = "INFO"

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)
    mappings: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_MAPPING_FILES)
    )
    publishing: PublishingConfig = field(default_factory=PublishingConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from COMPLYVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.complyvault/config.yaml).
    """
    env_path = os.environ.get("COMPLYVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses COMPLYVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at top level")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def validate_for_collection(settings: Settings) -> None:
    """
    Check the settings a pipeline run needs beyond the base validation.

    Mapping validation and status queries work without a platform
    configured; collection and baseline seeding do not.

    Raises:
        ConfigurationError: If a required setting is missing.
    """
    missing = []
    if not settings.platform.organization:
        missing.append("platform.organization")
    if not settings.platform.repositories:
        missing.append("platform.repositories")
    if not settings.drift.ledger_repository:
        missing.append("drift.ledger_repository")
    if missing:
        raise ConfigurationError(
            f"Missing required settings: {', '.join(missing)}"
        )


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("complyvault", {}) or {}
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()

    ledger = data.get("ledger", {}) or {}
    if "root" in ledger:
        settings.ledger.root = str(ledger["root"])
    if "run_timeout_seconds" in ledger:
        settings.ledger.run_timeout_seconds = int(ledger["run_timeout_seconds"])

    platform = data.get("platform", {}) or {}
    settings.platform.api_url = platform.get("api_url", settings.platform.api_url)
    settings.platform.organization = platform.get("organization", "")
    settings.platform.repositories = list(platform.get("repositories", []) or [])
    settings.platform.token_env = platform.get("token_env", settings.platform.token_env)
    for key in ("per_page", "max_retries", "pr_history_limit"):
        if key in platform:
            setattr(settings.platform, key, int(platform[key]))
    for key in ("request_timeout", "rate_limit_delay", "retry_base_delay", "retry_max_delay"):
        if key in platform:
            setattr(settings.platform, key, float(platform[key]))

    drift = data.get("drift", {}) or {}
    settings.drift.ledger_repository = drift.get("ledger_repository", "")
    settings.drift.ruleset_name = drift.get("ruleset_name", settings.drift.ruleset_name)
    if "required_rule_types" in drift:
        settings.drift.required_rule_types = list(drift["required_rule_types"] or [])
    actors = drift.get("allowed_bypass_actors", []) or []
    try:
        settings.drift.allowed_bypass_actors = [
            BypassActor(actor_type=str(a["actor_type"]), actor_id=int(a["actor_id"]))
            for a in actors
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid drift.allowed_bypass_actors entry: {e}"
        ) from e

    if "mappings" in data:
        mappings = data["mappings"] or {}
        if not isinstance(mappings, dict):
            raise ConfigurationError("mappings must map framework names to file paths")
        settings.mappings = {str(k): str(v) for k, v in mappings.items()}

    publishing = data.get("publishing", {}) or {}
    settings.publishing.verification_document = str(
        publishing.get("verification_document", "") or ""
    )
    settings.publishing.start_marker = publishing.get(
        "start_marker", settings.publishing.start_marker
    )
    settings.publishing.end_marker = publishing.get(
        "end_marker", settings.publishing.end_marker
    )

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "COMPLYVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "COMPLYVAULT_LEDGER_ROOT": ("ledger.root", str),
        "COMPLYVAULT_RUN_TIMEOUT": ("ledger.run_timeout_seconds", int),
        "COMPLYVAULT_API_URL": ("platform.api_url", str),
        "COMPLYVAULT_ORG": ("platform.organization", str),
        "COMPLYVAULT_REPOSITORIES": (
            "platform.repositories",
            lambda x: [r.strip() for r in x.split(",") if r.strip()],
        ),
        "COMPLYVAULT_LEDGER_REPOSITORY": ("drift.ledger_repository", str),
        "COMPLYVAULT_VERIFICATION_DOC": ("publishing.verification_document", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {e}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.ledger.run_timeout_seconds < 1:
        raise ConfigurationError("run_timeout_seconds must be at least 1")

    if not 1 <= settings.platform.per_page <= 100:
        raise ConfigurationError("per_page must be between 1 and 100")

    if settings.platform.max_retries < 0:
        raise ConfigurationError("max_retries cannot be negative")

    if not settings.mappings:
        raise ConfigurationError("At least one control mapping table is required")

    if settings.publishing.start_marker == settings.publishing.end_marker:
        raise ConfigurationError("Verification start and end markers must differ")

