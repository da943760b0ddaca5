"""
Centralized configuration loader for the pin publish scheduler.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - PublishSchedulerConfig: Publish loop interval, batch size, recovery
    - RetryConfig: Backoff parameters for failed publish attempts
    - AnalyticsConfig: Metrics refresh cadence, staleness and rate limits
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from pinscheduler.exceptions import ConfigurationError
from pinscheduler.scheduling.models import DEFAULT_PLAN_LIMITS
from pinscheduler.scheduling.retry_policy import RetryPolicy

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of pinscheduler/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _apply_env_overrides(
    target: Any, overrides: Dict[str, Tuple[str, Callable[[str], Any]]]
) -> None:
    """Set attributes on *target* from environment variables when present.

    Raises:
        ConfigurationError: If a variable cannot be cast.
    """
    for env_key, (attr_name, cast_fn) in overrides.items():
        env_val = os.environ.get(env_key)
        if env_val is not None:
            try:
                setattr(target, attr_name, cast_fn(env_val))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _section_kwargs(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are fields of dataclass *cls*."""
    return {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}


# ===========================================================================
# PUBLISH SCHEDULER CONFIGURATION
# ===========================================================================


@dataclass
class PublishSchedulerConfig:
    """
    Publish loop settings.

    Env overrides: ``SCHEDULER_INTERVAL_SECONDS``, ``SCHEDULER_BATCH_SIZE``,
    ``SCHEDULER_MATERIALIZE_RECURRENCE``.
    """

    interval_seconds: float = 60.0
    startup_delay_seconds: float = 5.0
    batch_size: int = 10
    recovery_interval_cycles: int = 10
    stuck_timeout_minutes: int = 10
    credit_cost: int = 1
    max_schedule_days: int = 365
    materialize_recurrence: bool = False

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "SCHEDULER_INTERVAL_SECONDS": ("interval_seconds", float),
            "SCHEDULER_BATCH_SIZE": ("batch_size", int),
            "SCHEDULER_MATERIALIZE_RECURRENCE": ("materialize_recurrence", _parse_bool),
        })
        if self.interval_seconds <= 0:
            raise ConfigurationError(
                f"scheduler.interval_seconds must be positive, got {self.interval_seconds}"
            )
        if self.startup_delay_seconds < 0:
            raise ConfigurationError("scheduler.startup_delay_seconds must be >= 0")
        for name in (
            "batch_size",
            "recovery_interval_cycles",
            "stuck_timeout_minutes",
            "max_schedule_days",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"scheduler.{name} must be positive, got {getattr(self, name)}"
                )
        if self.credit_cost < 0:
            raise ConfigurationError("scheduler.credit_cost must be >= 0")


# ===========================================================================
# RETRY CONFIGURATION
# ===========================================================================


@dataclass
class RetryConfig:
    """Backoff parameters (env override: ``RETRY_MAX_RETRIES``)."""

    max_retries: int = 3
    base_delay_minutes: float = 5.0
    multiplier: float = 3.0

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "RETRY_MAX_RETRIES": ("max_retries", int),
        })
        # Validates the values.
        self.to_policy()

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_minutes=self.base_delay_minutes,
            multiplier=self.multiplier,
        )


# ===========================================================================
# ANALYTICS CONFIGURATION
# ===========================================================================


@dataclass
class AnalyticsConfig:
    """
    Metrics refresh loop settings.

    Env overrides: ``ANALYTICS_INTERVAL_HOURS``,
    ``ANALYTICS_JOB_DELAY_SECONDS``, ``ANALYTICS_ACCOUNT_DELAY_SECONDS``.
    """

    interval_hours: float = 12.0
    startup_delay_seconds: float = 30.0
    staleness_hours: float = 12.0
    per_account_limit: int = 20
    lookback_days: int = 90
    job_delay_seconds: float = 1.0
    account_delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "ANALYTICS_INTERVAL_HOURS": ("interval_hours", float),
            "ANALYTICS_JOB_DELAY_SECONDS": ("job_delay_seconds", float),
            "ANALYTICS_ACCOUNT_DELAY_SECONDS": ("account_delay_seconds", float),
        })
        for name in (
            "interval_hours",
            "staleness_hours",
            "per_account_limit",
            "lookback_days",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"analytics.{name} must be positive, got {getattr(self, name)}"
                )
        for name in ("startup_delay_seconds", "job_delay_seconds", "account_delay_seconds"):
            if getattr(self, name) < 0:
                raise ConfigurationError(
                    f"analytics.{name} must be >= 0, got {getattr(self, name)}"
                )


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    deployment-specific configuration.
    """

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    mirror_events_to_db: bool = False

    # Pinterest API
    pinterest_api_base: str = "https://api.pinterest.com/v5"
    pinterest_timeout_seconds: float = 30.0

    scheduler: PublishSchedulerConfig = field(default_factory=PublishSchedulerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    plan_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PLAN_LIMITS))

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "PINTEREST_API_BASE": ("pinterest_api_base", str),
            "LOG_LEVEL": ("log_level", str),
            "LOG_DIR": ("log_dir", str),
        })
        for plan, limit in self.plan_limits.items():
            if not isinstance(limit, int) or limit <= 0:
                raise ConfigurationError(
                    f"plan_limits.{plan} must be a positive integer, got {limit!r}"
                )

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed
                or holds invalid values.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings YAML at {path} must be a mapping")

        plan_limits = dict(DEFAULT_PLAN_LIMITS)
        plan_limits.update(data.get("plan_limits") or {})

        pinterest = data.get("pinterest") or {}

        return cls(
            log_level=data.get("log_level", "INFO"),
            log_dir=data.get("log_dir", "logs"),
            mirror_events_to_db=data.get("mirror_events_to_db", False),
            pinterest_api_base=pinterest.get("api_base", "https://api.pinterest.com/v5"),
            pinterest_timeout_seconds=pinterest.get("timeout_seconds", 30.0),
            scheduler=PublishSchedulerConfig(
                **_section_kwargs(PublishSchedulerConfig, data.get("scheduler"))
            ),
            retry=RetryConfig(**_section_kwargs(RetryConfig, data.get("retry"))),
            analytics=AnalyticsConfig(
                **_section_kwargs(AnalyticsConfig, data.get("analytics"))
            ),
            plan_limits=plan_limits,
        )


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton (used by tests)."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the system to function
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Optional but recommended environment variables
OPTIONAL_ENV_VARS: List[str] = [
    "PINTEREST_API_BASE",
    "LOG_LEVEL",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


__all__ = [
    "PublishSchedulerConfig",
    "RetryConfig",
    "AnalyticsConfig",
    "Settings",
    "DEFAULT_PLAN_LIMITS",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    "PROJECT_ROOT",
]
