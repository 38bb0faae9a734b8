"""
Sync engine configuration.

All tunables are plain dataclasses validated in ``__post_init__``. A complete
``SyncConfig`` can be built from defaults, from ``DONORSYNC_*`` environment
variables, or from a YAML file using the same flat option names.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

# Minimum delay between requests to the same vendor (ms)
DEFAULT_PROVIDER_DELAYS_MS: dict[str, int] = {
    "blackbaud": 200,
    "bloomerang": 100,
    "donorperfect": 250,
    "everyaction": 200,
    "neoncrm": 200,
    "salesforce": 100,
    "virtuous": 400,
}
DEFAULT_DELAY_MS = 500

_LOG_LEVELS = frozenset({"debug", "info", "warn", "error"})


@dataclass
class RetryConfig:
    """Bounded retry with exponential backoff and jitter."""

    max_retries: int = 3  # Additional attempts after the first
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter_ratio: float = 0.3  # Jitter is uniform in [0, ratio * base delay]

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay_ms < 0:
            raise ValueError(f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f"max_delay_ms must be >= initial_delay_ms, got {self.max_delay_ms}"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError(f"jitter_ratio must be in [0, 1], got {self.jitter_ratio}")


@dataclass
class RateLimitConfig:
    """Static per-provider pacing table."""

    delays_ms: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PROVIDER_DELAYS_MS))
    default_delay_ms: int = DEFAULT_DELAY_MS

    def __post_init__(self) -> None:
        if self.default_delay_ms < 0:
            raise ValueError(f"default_delay_ms must be >= 0, got {self.default_delay_ms}")
        for key, delay in self.delays_ms.items():
            if delay < 0:
                raise ValueError(f"delays_ms[{key!r}] must be >= 0, got {delay}")

    def delay_for(self, service_key: str) -> int:
        """Delay for a service, falling back to the conservative default."""
        return self.delays_ms.get(service_key.lower(), self.default_delay_ms)


@dataclass
class PaginationLimits:
    """Hard ceilings for any paging loop."""

    max_iterations: int = 1000  # Page-fetch calls per run
    max_records: int = 50000  # Account-level record quota per run
    max_empty_batches: int = 10  # Consecutive zero-length pages

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.max_records < 1:
            raise ValueError(f"max_records must be >= 1, got {self.max_records}")
        if self.max_empty_batches < 1:
            raise ValueError(f"max_empty_batches must be >= 1, got {self.max_empty_batches}")


@dataclass
class FailureThresholdConfig:
    """Run-level abort policy."""

    failure_threshold: float = 0.10
    min_records_for_threshold: int = 10
    max_consecutive_failures: int = 5
    enable_rollback_on_threshold: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.failure_threshold <= 1.0:
            raise ValueError(
                f"failure_threshold must be in [0, 1], got {self.failure_threshold}"
            )
        if self.min_records_for_threshold < 0:
            raise ValueError(
                f"min_records_for_threshold must be >= 0, got {self.min_records_for_threshold}"
            )
        if self.max_consecutive_failures < 1:
            raise ValueError(
                f"max_consecutive_failures must be >= 1, got {self.max_consecutive_failures}"
            )


@dataclass
class CircuitBreakerPolicy:
    """Per-service breaker policy."""

    failure_threshold: int = 5  # Consecutive failures to open
    recovery_timeout_ms: int = 60000  # Cool-down before half-open
    half_open_max_requests: int = 1  # Probes allowed while half-open
    # Optional sliding-window failure-rate trigger (None disables it)
    failure_rate_threshold: float | None = None
    window_ms: int = 60000
    min_calls_in_window: int = 10

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.recovery_timeout_ms < 0:
            raise ValueError(
                f"recovery_timeout_ms must be >= 0, got {self.recovery_timeout_ms}"
            )
        if self.half_open_max_requests < 1:
            raise ValueError(
                f"half_open_max_requests must be >= 1, got {self.half_open_max_requests}"
            )
        if self.failure_rate_threshold is not None and not (
            0.0 < self.failure_rate_threshold <= 1.0
        ):
            raise ValueError(
                f"failure_rate_threshold must be in (0, 1], got {self.failure_rate_threshold}"
            )
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be > 0, got {self.window_ms}")
        if self.min_calls_in_window < 1:
            raise ValueError(f"min_calls_in_window must be >= 1, got {self.min_calls_in_window}")


# Presets per kind of external service
CIRCUIT_BREAKER_POLICIES: dict[str, CircuitBreakerPolicy] = {
    "vendor_api": CircuitBreakerPolicy(failure_threshold=5, recovery_timeout_ms=60000),
    "search_api": CircuitBreakerPolicy(failure_threshold=3, recovery_timeout_ms=30000),
    "primary_llm": CircuitBreakerPolicy(failure_threshold=5, recovery_timeout_ms=60000),
    "verification_api": CircuitBreakerPolicy(failure_threshold=5, recovery_timeout_ms=120000),
}


@dataclass
class LoggingConfig:
    """Structured sync event logging."""

    structured_enabled: bool = True
    level: str = "info"
    json_format: bool = True

    def __post_init__(self) -> None:
        self.level = self.level.lower()
        if self.level == "warning":
            self.level = "warn"
        if self.level not in _LOG_LEVELS:
            raise ValueError(f"level must be one of {sorted(_LOG_LEVELS)}, got {self.level!r}")


@dataclass
class SyncConfig:
    """Main engine configuration."""

    request_timeout_ms: int = 30000
    default_page_size: int = 100
    max_page_size: int = 500

    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pagination: PaginationLimits = field(default_factory=PaginationLimits)
    threshold: FailureThresholdConfig = field(default_factory=FailureThresholdConfig)
    # Policy for services without an entry in breaker_policies
    breaker: CircuitBreakerPolicy = field(
        default_factory=lambda: replace(CIRCUIT_BREAKER_POLICIES["vendor_api"])
    )
    breaker_policies: dict[str, CircuitBreakerPolicy] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self) -> None:
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")
        if self.max_page_size < 1:
            raise ValueError(f"max_page_size must be >= 1, got {self.max_page_size}")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError(
                f"default_page_size must be in [1, {self.max_page_size}], "
                f"got {self.default_page_size}"
            )

    def breaker_for(self, service: str) -> CircuitBreakerPolicy:
        """Breaker policy for a service key, falling back to ``breaker``."""
        return self.breaker_policies.get(service.lower(), self.breaker)

    def page_size(self, requested: int | None = None) -> int:
        """Clamp a requested page size to the configured bounds."""
        if requested is None:
            return self.default_page_size
        return max(1, min(requested, self.max_page_size))

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> SyncConfig:
        """Build from flat option names (see ``OPTION_NAMES``)."""
        unknown = set(options) - OPTION_NAMES
        if unknown:
            raise ValueError(f"Unknown config options: {sorted(unknown)}")

        def get(name: str, default: Any) -> Any:
            return options.get(name, default)

        delays = dict(DEFAULT_PROVIDER_DELAYS_MS)
        delays.update({str(k).lower(): int(v) for k, v in get("rate_limit_delays_ms", {}).items()})

        return cls(
            request_timeout_ms=int(get("request_timeout_ms", 30000)),
            default_page_size=int(get("default_page_size", 100)),
            max_page_size=int(get("max_page_size", 500)),
            retry=RetryConfig(
                max_retries=int(get("max_retries", 3)),
                initial_delay_ms=int(get("retry_delay_ms", 1000)),
                max_delay_ms=int(get("max_retry_delay_ms", 30000)),
            ),
            rate_limit=RateLimitConfig(
                delays_ms=delays,
                default_delay_ms=int(get("default_rate_limit_delay_ms", DEFAULT_DELAY_MS)),
            ),
            pagination=PaginationLimits(
                max_iterations=int(get("max_iterations", 1000)),
                max_records=int(get("max_records", 50000)),
                max_empty_batches=int(get("max_empty_batches", 10)),
            ),
            threshold=FailureThresholdConfig(
                failure_threshold=float(get("failure_threshold", 0.10)),
                min_records_for_threshold=int(get("min_records_for_threshold", 10)),
                max_consecutive_failures=int(get("max_consecutive_failures", 5)),
                enable_rollback_on_threshold=_as_bool(get("enable_rollback_on_threshold", False)),
            ),
            breaker=CircuitBreakerPolicy(
                failure_threshold=int(get("breaker_failure_threshold", 5)),
                recovery_timeout_ms=int(get("breaker_recovery_timeout_ms", 60000)),
            ),
            breaker_policies={
                str(service).lower(): _breaker_policy(value)
                for service, value in get("breaker_policies", {}).items()
            },
            logging=LoggingConfig(
                structured_enabled=_as_bool(get("structured_logging", True)),
                level=str(get("log_level", "info")),
            ),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SyncConfig:
        """Build from ``DONORSYNC_*`` environment variables.

        Per-provider delays use ``DONORSYNC_RATE_LIMIT_<PROVIDER>_MS``.
        Per-service breaker presets use ``DONORSYNC_BREAKER_<SERVICE>=<preset>``.
        """
        env = os.environ if environ is None else environ
        options: dict[str, Any] = {}
        delays: dict[str, int] = {}
        breakers: dict[str, str] = {}

        for key, value in env.items():
            if not key.startswith(_ENV_PREFIX):
                continue
            name = key[len(_ENV_PREFIX) :].lower()
            if name.startswith("rate_limit_") and name.endswith("_ms"):
                delays[name[len("rate_limit_") : -len("_ms")]] = int(value)
            elif name in OPTION_NAMES:
                if name != "breaker_policies":
                    options[name] = value
            elif name.startswith("breaker_"):
                breakers[name[len("breaker_") :]] = value

        if delays:
            options["rate_limit_delays_ms"] = delays
        if breakers:
            options["breaker_policies"] = breakers
        return cls.from_mapping(options)

    @classmethod
    def from_yaml(cls, path: str | Path) -> SyncConfig:
        """Build from a YAML mapping of flat option names."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_mapping(data)


_ENV_PREFIX = "DONORSYNC_"

OPTION_NAMES: frozenset[str] = frozenset(
    {
        "request_timeout_ms",
        "default_page_size",
        "max_page_size",
        "max_retries",
        "retry_delay_ms",
        "max_retry_delay_ms",
        "rate_limit_delays_ms",
        "default_rate_limit_delay_ms",
        "max_iterations",
        "max_records",
        "max_empty_batches",
        "failure_threshold",
        "min_records_for_threshold",
        "max_consecutive_failures",
        "enable_rollback_on_threshold",
        "breaker_failure_threshold",
        "breaker_recovery_timeout_ms",
        "breaker_policies",
        "structured_logging",
        "log_level",
    }
)


def _breaker_policy(value: Any) -> CircuitBreakerPolicy:
    """A preset name or a mapping of CircuitBreakerPolicy fields."""
    if isinstance(value, CircuitBreakerPolicy):
        return value
    if isinstance(value, str):
        preset = CIRCUIT_BREAKER_POLICIES.get(value.strip().lower())
        if preset is None:
            presets = sorted(CIRCUIT_BREAKER_POLICIES)
            raise ValueError(f"Unknown breaker preset {value!r}, expected one of {presets}")
        return replace(preset)
    if isinstance(value, Mapping):
        try:
            return CircuitBreakerPolicy(**value)
        except TypeError as e:
            raise ValueError(f"Invalid breaker policy {dict(value)!r}: {e}") from None
    raise ValueError(f"Breaker policy must be a preset name or a mapping, got {value!r}")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
