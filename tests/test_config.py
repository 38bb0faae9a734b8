"""
Config validation tests for SyncConfig and its sections.

Tests __post_init__ validation, page-size clamping, and loading from flat
option mappings, DONORSYNC_* environment variables and YAML files.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from donorsync.config import (
    CIRCUIT_BREAKER_POLICIES,
    CircuitBreakerPolicy,
    LoggingConfig,
    RateLimitConfig,
    RetryConfig,
    SyncConfig,
)


class TestConfigValidation:
    """__post_init__ validation."""

    def test_default_config_valid(self) -> None:
        config = SyncConfig()
        assert config.request_timeout_ms == 30000
        assert config.pagination.max_iterations == 1000
        assert config.pagination.max_records == 50000
        assert config.pagination.max_empty_batches == 10
        assert config.breaker.failure_threshold == 5
        assert config.breaker.recovery_timeout_ms == 60000

    def test_invalid_timeout(self) -> None:
        with pytest.raises(ValueError, match="request_timeout_ms"):
            SyncConfig(request_timeout_ms=0)

    def test_default_page_size_above_max(self) -> None:
        with pytest.raises(ValueError, match="default_page_size"):
            SyncConfig(default_page_size=600, max_page_size=500)

    def test_retry_negative_retries(self) -> None:
        with pytest.raises(ValueError, match="max_retries"):
            RetryConfig(max_retries=-1)

    def test_retry_max_below_initial(self) -> None:
        with pytest.raises(ValueError, match="max_delay_ms"):
            RetryConfig(initial_delay_ms=5000, max_delay_ms=1000)

    def test_retry_jitter_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="jitter_ratio"):
            RetryConfig(jitter_ratio=1.5)

    def test_negative_provider_delay(self) -> None:
        with pytest.raises(ValueError, match="delays_ms"):
            RateLimitConfig(delays_ms={"neoncrm": -1})

    def test_breaker_rate_threshold_range(self) -> None:
        with pytest.raises(ValueError, match="failure_rate_threshold"):
            CircuitBreakerPolicy(failure_rate_threshold=0.0)

    def test_breaker_presets(self) -> None:
        assert CIRCUIT_BREAKER_POLICIES["search_api"].failure_threshold == 3
        assert CIRCUIT_BREAKER_POLICIES["search_api"].recovery_timeout_ms == 30000
        assert CIRCUIT_BREAKER_POLICIES["verification_api"].recovery_timeout_ms == 120000

    def test_breaker_for_falls_back_to_default(self) -> None:
        config = SyncConfig(
            breaker_policies={"salesforce": replace(CIRCUIT_BREAKER_POLICIES["search_api"])}
        )
        assert config.breaker_for("salesforce").failure_threshold == 3
        assert config.breaker_for("SalesForce").recovery_timeout_ms == 30000
        assert config.breaker_for("neoncrm") is config.breaker

    def test_default_breaker_is_independent_copy(self) -> None:
        config = SyncConfig()
        config.breaker.failure_threshold = 1
        assert CIRCUIT_BREAKER_POLICIES["vendor_api"].failure_threshold == 5

    def test_log_level_normalized(self) -> None:
        assert LoggingConfig(level="WARNING").level == "warn"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValueError, match="level"):
            LoggingConfig(level="verbose")


class TestPageSize:
    """Page size clamping."""

    def test_default(self) -> None:
        assert SyncConfig().page_size() == 100

    def test_clamped_to_max(self) -> None:
        assert SyncConfig().page_size(10_000) == 500

    def test_clamped_to_one(self) -> None:
        assert SyncConfig().page_size(0) == 1


class TestFromMapping:
    """SyncConfig.from_mapping."""

    def test_flat_options(self) -> None:
        config = SyncConfig.from_mapping(
            {
                "max_retries": 5,
                "retry_delay_ms": 250,
                "max_empty_batches": 3,
                "failure_threshold": 0.25,
                "enable_rollback_on_threshold": "true",
                "rate_limit_delays_ms": {"Virtuous": 1000},
                "log_level": "debug",
            }
        )
        assert config.retry.max_retries == 5
        assert config.retry.initial_delay_ms == 250
        assert config.pagination.max_empty_batches == 3
        assert config.threshold.failure_threshold == 0.25
        assert config.threshold.enable_rollback_on_threshold is True
        assert config.rate_limit.delay_for("virtuous") == 1000
        # Untouched providers keep their defaults
        assert config.rate_limit.delay_for("bloomerang") == 100
        assert config.logging.level == "debug"

    def test_breaker_policies_by_preset_and_mapping(self) -> None:
        """Two services configured differently trip at different thresholds."""
        config = SyncConfig.from_mapping(
            {
                "breaker_failure_threshold": 4,
                "breaker_policies": {
                    "Salesforce": "search_api",
                    "virtuous": {"failure_threshold": 8, "recovery_timeout_ms": 5000},
                },
            }
        )
        assert config.breaker_for("salesforce").failure_threshold == 3
        assert config.breaker_for("virtuous").failure_threshold == 8
        assert config.breaker_for("virtuous").recovery_timeout_ms == 5000
        assert config.breaker_for("bloomerang").failure_threshold == 4

    def test_unknown_breaker_preset_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown breaker preset"):
            SyncConfig.from_mapping({"breaker_policies": {"neoncrm": "fastest"}})

    def test_invalid_breaker_policy_rejected(self) -> None:
        with pytest.raises(ValueError, match="breaker policy"):
            SyncConfig.from_mapping({"breaker_policies": {"neoncrm": {"threshold": 2}}})

    def test_unknown_option_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_retry"):
            SyncConfig.from_mapping({"max_retry": 2})

    def test_invalid_value_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_iterations"):
            SyncConfig.from_mapping({"max_iterations": 0})


class TestFromEnv:
    """SyncConfig.from_env."""

    def test_reads_prefixed_variables(self) -> None:
        config = SyncConfig.from_env(
            {
                "DONORSYNC_MAX_RECORDS": "1200",
                "DONORSYNC_STRUCTURED_LOGGING": "false",
                "DONORSYNC_RATE_LIMIT_NEONCRM_MS": "750",
                "UNRELATED": "ignored",
            }
        )
        assert config.pagination.max_records == 1200
        assert config.logging.structured_enabled is False
        assert config.rate_limit.delay_for("neoncrm") == 750

    def test_breaker_preset_per_service(self) -> None:
        config = SyncConfig.from_env(
            {
                "DONORSYNC_BREAKER_SALESFORCE": "search_api",
                "DONORSYNC_BREAKER_FAILURE_THRESHOLD": "6",
            }
        )
        assert config.breaker_for("salesforce").failure_threshold == 3
        assert config.breaker_for("neoncrm").failure_threshold == 6

    def test_empty_environment_gives_defaults(self) -> None:
        config = SyncConfig.from_env({})
        assert config.retry.max_retries == 3
        assert config.threshold.max_consecutive_failures == 5


class TestFromYaml:
    """SyncConfig.from_yaml."""

    def test_loads_file(self, tmp_path: Path) -> None:
        path = tmp_path / "donorsync.yaml"
        path.write_text(
            "max_consecutive_failures: 2\n"
            "breaker_failure_threshold: 3\n"
            "rate_limit_delays_ms:\n"
            "  blackbaud: 400\n",
            encoding="utf-8",
        )
        config = SyncConfig.from_yaml(path)
        assert config.threshold.max_consecutive_failures == 2
        assert config.breaker.failure_threshold == 3
        assert config.rate_limit.delay_for("blackbaud") == 400

    def test_nested_breaker_policies(self, tmp_path: Path) -> None:
        path = tmp_path / "breakers.yaml"
        path.write_text(
            "breaker_policies:\n"
            "  blackbaud: verification_api\n"
            "  everyaction:\n"
            "    failure_threshold: 2\n",
            encoding="utf-8",
        )
        config = SyncConfig.from_yaml(path)
        assert config.breaker_for("blackbaud").recovery_timeout_ms == 120000
        assert config.breaker_for("everyaction").failure_threshold == 2

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert SyncConfig.from_yaml(path).default_page_size == 100

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            SyncConfig.from_yaml(path)
