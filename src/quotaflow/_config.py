"""
Global configuration for the quotaflow package.

This module provides a simple configuration system following Convention over Configuration (CoC).
Users can optionally call QUOTAFLOW.configure() at application startup to customize defaults.
If not called, sensible defaults are used.

Hierarchy of precedence (highest to lowest):
1. Keyword overrides passed to the AdaptiveLimiter constructor
2. Values set via QUOTAFLOW.configure()
3. Environment variables (QUOTAFLOW_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from quotaflow import QUOTAFLOW
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> threshold = QUOTAFLOW.config.limiter.threshold
    >>>
    >>> # Custom configuration
    >>> QUOTAFLOW.configure(limiter={"threshold": 10, "max_concurrency": 20})
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Literal, Self

if TYPE_CHECKING:
    from quotaflow._limiter import RateState

# Type alias for concurrency strategies
LimiterStrategy = Literal["burst_first", "uniform"]

# Type alias for the optional rate-data puller
RateUpdater = Callable[["RateState"], Mapping[str, Any] | None]

_UNLIMITED_VALUES = ("none", "null", "unlimited")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Reads QUOTAFLOW_* environment variables, converted to the field type they feed.

    Example:
        >>> EnvVars.get("QUOTAFLOW_LIMITER_THRESHOLD", type_hint=int)
        5
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(var_name: str, type_hint: Any = str) -> Any:
        """
        Read an environment variable as int, float or str, following `type_hint`.

        Args:
            var_name: The environment variable name.
            type_hint: Field type, either a class or its string annotation.

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        converter = EnvVars._converter_for(type_hint)
        try:
            return converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _converter_for(type_hint: Any) -> Callable[[str], Any]:
        # Annotations are strings under `from __future__ import annotations`
        name = getattr(type_hint, "__name__", str(type_hint))
        return {"int": int, "float": float}.get(name, str)


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` method for creating new instances
    with partial field updates. Uses strict validation to catch
    typos and invalid field names early.

    Example:
        >>> config = LimiterConfig()
        >>> custom = config.with_overrides({"threshold": 10})
        >>> custom.threshold
        10
    """

    def with_overrides(
        self,
        overrides: Mapping[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Mapping of field names to new values.
                       Only existing fields are allowed.
            allow_none_fields: Set of field names that accept None as a valid value.
                       By default, None values are filtered out.

        Returns:
            New instance with updated values.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.
        Fields with metadata={"skip": True} are ignored (for subclass handling).

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            skip = f.metadata.get("skip", False)
            if env_var and not skip:
                value = EnvVars.get(env_var, type_hint=f.type)
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class LimiterConfig(OverridableConfig):
    """
    Configuration for AdaptiveLimiter instances.

    Available strategies:
        - "burst_first": Use as much of the remaining quota as possible right
            away (minus the reserved threshold), pausing until the window
            resets once the headroom is exhausted.
        - "uniform": Reserved. Spreading requests evenly across the window is
            not implemented; selecting it fails validation.

    Attributes:
        strategy: Concurrency strategy to use.
            Env var: QUOTAFLOW_LIMITER_STRATEGY

        threshold: Number of requests always kept in reserve below the
            reported remaining quota (minimum: 1).
            Env var: QUOTAFLOW_LIMITER_THRESHOLD

        max_concurrency: Upper bound applied to every concurrency value the
            limiter computes. None means unbounded.
            Env var: QUOTAFLOW_LIMITER_MAX_CONCURRENCY

        reset_grace: Seconds added to the reset delay before resuming a
            paused limiter.
            Env var: QUOTAFLOW_LIMITER_RESET_GRACE

        rate_updater: Optional callable invoked after every completed task
            with a snapshot of the current RateState. A returned mapping with
            `limit`, `remaining` and/or `reset_at` keys is applied as a rate
            update. Not configurable via env vars.

    Example:
        >>> from quotaflow import QUOTAFLOW
        >>> QUOTAFLOW.configure(limiter={"threshold": 10, "max_concurrency": 50})
    """

    strategy: LimiterStrategy = field(default="burst_first", metadata={"env": "QUOTAFLOW_LIMITER_STRATEGY"})
    threshold: int = field(default=5, metadata={"env": "QUOTAFLOW_LIMITER_THRESHOLD"})
    # Special field (processed manually - can be None for "unlimited")
    max_concurrency: int | None = field(
        default=None,
        metadata={"env": "QUOTAFLOW_LIMITER_MAX_CONCURRENCY", "skip": True},
    )
    reset_grace: float = field(default=0.001, metadata={"env": "QUOTAFLOW_LIMITER_RESET_GRACE"})
    rate_updater: RateUpdater | None = field(default=None, compare=False)

    def with_overrides(
        self,
        overrides: Mapping[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Extends base implementation to support special values:
        - max_concurrency: Can be None, an int, or "unlimited"/"none"/"null"
          (strings are converted to None for unbounded concurrency).
        - rate_updater: Can be reset to None.
        """
        if not overrides:
            return self

        processed = dict(overrides)
        if "max_concurrency" in processed:
            value = processed["max_concurrency"]
            if isinstance(value, str) and value.lower() in _UNLIMITED_VALUES:
                processed["max_concurrency"] = None

        merged_allow_none = {"max_concurrency", "rate_updater"} | (allow_none_fields or set())
        return super().with_overrides(processed, allow_none_fields=merged_allow_none)

    def with_env_vars(self) -> Self:
        """Override to handle max_concurrency (can be None for 'unlimited')."""
        result = super().with_env_vars()

        env_var = "QUOTAFLOW_LIMITER_MAX_CONCURRENCY"
        raw_value = os.environ.get(env_var)
        if not raw_value:
            return result
        if raw_value.lower() in _UNLIMITED_VALUES:
            return result.with_overrides({"max_concurrency": None})
        return result.with_overrides({"max_concurrency": EnvVars.get(env_var, type_hint=int)})

    def validate(self) -> Self:
        """Validate limiter configuration fields."""
        if self.strategy == "uniform":
            raise ConfigValidationError(
                "strategy", self.strategy,
                "The 'uniform' strategy is reserved and not implemented yet. Use 'burst_first'.",
                section="limiter",
            )
        if self.strategy != "burst_first":
            raise ConfigValidationError(
                "strategy", self.strategy,
                "Must be one of: ('burst_first', 'uniform').", section="limiter"
            )
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, int):
            raise ConfigValidationError(
                "threshold", self.threshold,
                "Must be an integer.", section="limiter"
            )
        if self.threshold < 1:
            raise ConfigValidationError(
                "threshold", self.threshold,
                "Must be >= 1.", section="limiter"
            )
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ConfigValidationError(
                "max_concurrency", self.max_concurrency,
                "Must be >= 1 (or None for unbounded).", section="limiter"
            )
        if self.reset_grace < 0:
            raise ConfigValidationError(
                "reset_grace", self.reset_grace,
                "Must be >= 0.", section="limiter"
            )
        if self.rate_updater is not None and not callable(self.rate_updater):
            raise ConfigValidationError(
                "rate_updater", self.rate_updater,
                "Must be callable (or None).", section="limiter"
            )
        return self


@dataclass(frozen=True)
class QuotaFlowConfig:
    """
    Root configuration aggregating all sections.

    Attributes:
        limiter: Defaults used by AdaptiveLimiter instances.

    Example:
        >>> config = QuotaFlowConfig().with_env_vars()
        >>> config.limiter.threshold
        5
    """

    limiter: LimiterConfig = field(default_factory=LimiterConfig)

    def with_env_vars(self) -> QuotaFlowConfig:
        """Return a new config with environment variables applied to every section."""
        return QuotaFlowConfig(
            limiter=self.limiter.with_env_vars(),
        )

    def with_section_overrides(
        self,
        *,
        limiter: Mapping[str, Any] | None = None,
    ) -> QuotaFlowConfig:
        """
        Return a new config with overrides applied to nested sections.

        Args:
            limiter: Limiter config overrides.

        Returns:
            New QuotaFlowConfig instance with overrides applied.
        """
        return QuotaFlowConfig(
            limiter=self.limiter.with_overrides(limiter or {}),
        )


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _QuotaFlow:
    """
    Singleton for package configuration.

    Use `QUOTAFLOW.configure()` to customize settings and `QUOTAFLOW.config`
    to access current configuration.

    Example:
        >>> from quotaflow import QUOTAFLOW
        >>> QUOTAFLOW.configure(limiter={"threshold": 3})
        >>> print(QUOTAFLOW.config.limiter.threshold)
        3
    """

    def __init__(self) -> None:
        """Initialize with defaults and environment variables."""
        self._config: QuotaFlowConfig = QuotaFlowConfig().with_env_vars()

    def configure(
        self,
        *,
        limiter: Mapping[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> QuotaFlowConfig:
        """
        Configure package defaults.

        Call at application startup. Limiters created afterwards pick up the
        new defaults; existing limiters keep the configuration they were
        built with.

        Args:
            limiter: Limiter config overrides (strategy, threshold, max_concurrency, ...).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured QuotaFlowConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = QuotaFlowConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(limiter=limiter)
        return self.validate()

    @property
    def config(self) -> QuotaFlowConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> QuotaFlowConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = QuotaFlowConfig().with_env_vars()
        return self.validate()

    def validate(self) -> QuotaFlowConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.limiter.validate()
        return self._config

    def __repr__(self) -> str:
        return f"QUOTAFLOW(config={self._config!r})"


# Global singleton instance - always reflects current configuration
QUOTAFLOW: _QuotaFlow = _QuotaFlow()
QUOTAFLOW.validate()  # Validate defaults + env vars on module load
