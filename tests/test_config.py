"""Tests for global configuration module."""

import os
import unittest
from unittest.mock import patch

from quotaflow._config import (
    QUOTAFLOW,
    ConfigEnvVarError,
    ConfigValidationError,
    EnvVars,
    LimiterConfig,
    QuotaFlowConfig,
)


class TestDefaults(unittest.TestCase):
    """Tests for default configuration values."""

    def setUp(self):
        QUOTAFLOW.reset()

    def tearDown(self):
        QUOTAFLOW.reset()

    def test_limiter_defaults(self):
        """Should return sensible defaults for limiter config."""
        self.assertEqual(QUOTAFLOW.config.limiter.strategy, "burst_first")
        self.assertEqual(QUOTAFLOW.config.limiter.threshold, 5)
        self.assertIsNone(QUOTAFLOW.config.limiter.max_concurrency)
        self.assertEqual(QUOTAFLOW.config.limiter.reset_grace, 0.001)
        self.assertIsNone(QUOTAFLOW.config.limiter.rate_updater)

    def test_default_config_is_valid(self):
        config = LimiterConfig()
        self.assertIs(config.validate(), config)


class TestQuotaFlowConfigure(unittest.TestCase):
    """Tests for QUOTAFLOW.configure() method."""

    def setUp(self):
        QUOTAFLOW.reset()

    def tearDown(self):
        QUOTAFLOW.reset()

    def test_user_limiter_values(self):
        """Should override limiter defaults with QUOTAFLOW.configure()."""
        QUOTAFLOW.configure(limiter={"threshold": 10, "max_concurrency": 50})
        self.assertEqual(QUOTAFLOW.config.limiter.threshold, 10)
        self.assertEqual(QUOTAFLOW.config.limiter.max_concurrency, 50)
        # Other values should remain default
        self.assertEqual(QUOTAFLOW.config.limiter.strategy, "burst_first")

    def test_configure_returns_config(self):
        result = QUOTAFLOW.configure(limiter={"threshold": 3})
        self.assertIsInstance(result, QuotaFlowConfig)
        self.assertIs(result, QUOTAFLOW.config)

    def test_configure_rejects_unknown_fields(self):
        with self.assertRaises(ValueError) as ctx:
            QUOTAFLOW.configure(limiter={"thresold": 3})
        self.assertIn("Unknown config fields", str(ctx.exception))

    def test_configure_validates(self):
        with self.assertRaises(ConfigValidationError):
            QUOTAFLOW.configure(limiter={"threshold": 0})

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_THRESHOLD": "8"})
    def test_env_vars_used_as_fallback(self):
        QUOTAFLOW.configure(limiter={"max_concurrency": 4})
        self.assertEqual(QUOTAFLOW.config.limiter.threshold, 8)
        self.assertEqual(QUOTAFLOW.config.limiter.max_concurrency, 4)

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_THRESHOLD": "8"})
    def test_configure_wins_over_env_vars(self):
        QUOTAFLOW.configure(limiter={"threshold": 2})
        self.assertEqual(QUOTAFLOW.config.limiter.threshold, 2)

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_THRESHOLD": "8"})
    def test_env_vars_ignored_when_override_disabled(self):
        QUOTAFLOW.configure(limiter={}, allow_env_override=False)
        self.assertEqual(QUOTAFLOW.config.limiter.threshold, 5)

    def test_reset_restores_defaults(self):
        QUOTAFLOW.configure(limiter={"threshold": 9})
        QUOTAFLOW.reset()
        self.assertEqual(QUOTAFLOW.config.limiter.threshold, 5)


class TestEnvVars(unittest.TestCase):
    """Tests for environment variable parsing."""

    @patch.dict(os.environ, {
        "QUOTAFLOW_LIMITER_STRATEGY": "burst_first",
        "QUOTAFLOW_LIMITER_THRESHOLD": "12",
        "QUOTAFLOW_LIMITER_RESET_GRACE": "0.25",
        "QUOTAFLOW_LIMITER_MAX_CONCURRENCY": "30",
    })
    def test_limiter_env_vars(self):
        config = LimiterConfig().with_env_vars()
        self.assertEqual(config.strategy, "burst_first")
        self.assertEqual(config.threshold, 12)
        self.assertEqual(config.reset_grace, 0.25)
        self.assertEqual(config.max_concurrency, 30)

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_MAX_CONCURRENCY": "unlimited"})
    def test_max_concurrency_unlimited(self):
        config = LimiterConfig(max_concurrency=10).with_env_vars()
        self.assertIsNone(config.max_concurrency)

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_MAX_CONCURRENCY": "lots"})
    def test_invalid_max_concurrency_raises(self):
        with self.assertRaises(ConfigEnvVarError) as ctx:
            LimiterConfig().with_env_vars()
        self.assertEqual(ctx.exception.env_var, "QUOTAFLOW_LIMITER_MAX_CONCURRENCY")

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_THRESHOLD": "five"})
    def test_invalid_int_raises(self):
        with self.assertRaises(ConfigEnvVarError) as ctx:
            LimiterConfig().with_env_vars()
        self.assertIn("QUOTAFLOW_LIMITER_THRESHOLD", str(ctx.exception))
        self.assertEqual(ctx.exception.value, "five")

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_THRESHOLD": ""})
    def test_empty_env_var_is_ignored(self):
        self.assertIsNone(EnvVars.get("QUOTAFLOW_LIMITER_THRESHOLD", type_hint=int))

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_RESET_GRACE": "soon"})
    def test_invalid_float_raises(self):
        with self.assertRaises(ConfigEnvVarError) as ctx:
            LimiterConfig().with_env_vars()
        self.assertEqual(ctx.exception.env_var, "QUOTAFLOW_LIMITER_RESET_GRACE")

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_STRATEGY": "burst_first"})
    def test_string_annotations_are_converted(self):
        self.assertEqual(EnvVars.get("QUOTAFLOW_LIMITER_STRATEGY", type_hint="LimiterStrategy"), "burst_first")

    @patch.dict(os.environ, {"QUOTAFLOW_LIMITER_THRESHOLD": "7"})
    def test_int_annotation_as_string(self):
        self.assertEqual(EnvVars.get("QUOTAFLOW_LIMITER_THRESHOLD", type_hint="int"), 7)


class TestLimiterConfigOverrides(unittest.TestCase):
    """Tests for LimiterConfig.with_overrides()."""

    def test_returns_new_instance(self):
        config = LimiterConfig()
        custom = config.with_overrides({"threshold": 10})
        self.assertEqual(custom.threshold, 10)
        self.assertEqual(config.threshold, 5)

    def test_empty_overrides_return_same_instance(self):
        config = LimiterConfig()
        self.assertIs(config.with_overrides({}), config)

    def test_none_values_are_ignored_for_regular_fields(self):
        config = LimiterConfig(threshold=3).with_overrides({"threshold": None})
        self.assertEqual(config.threshold, 3)

    def test_max_concurrency_accepts_none(self):
        config = LimiterConfig(max_concurrency=10).with_overrides({"max_concurrency": None})
        self.assertIsNone(config.max_concurrency)

    def test_max_concurrency_accepts_unlimited_string(self):
        config = LimiterConfig(max_concurrency=10).with_overrides({"max_concurrency": "Unlimited"})
        self.assertIsNone(config.max_concurrency)

    def test_rate_updater_can_be_set_and_cleared(self):
        def updater(state):
            return None

        config = LimiterConfig().with_overrides({"rate_updater": updater})
        self.assertIs(config.rate_updater, updater)
        self.assertIsNone(config.with_overrides({"rate_updater": None}).rate_updater)


class TestLimiterConfigValidation(unittest.TestCase):
    """Tests for LimiterConfig.validate()."""

    def test_uniform_strategy_is_reserved(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            LimiterConfig(strategy="uniform").validate()
        self.assertIn("not implemented", str(ctx.exception))
        self.assertEqual(ctx.exception.section, "limiter")

    def test_unknown_strategy(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            LimiterConfig(strategy="round_robin").validate()
        self.assertEqual(ctx.exception.field, "strategy")

    def test_threshold_must_be_at_least_one(self):
        for value in (0, -5):
            with self.subTest(value=value):
                with self.assertRaises(ConfigValidationError):
                    LimiterConfig(threshold=value).validate()

    def test_threshold_must_be_integer(self):
        for value in (2.5, "5", True):
            with self.subTest(value=value):
                with self.assertRaises(ConfigValidationError):
                    LimiterConfig(threshold=value).validate()

    def test_max_concurrency_must_be_positive(self):
        with self.assertRaises(ConfigValidationError):
            LimiterConfig(max_concurrency=0).validate()

    def test_reset_grace_must_not_be_negative(self):
        with self.assertRaises(ConfigValidationError):
            LimiterConfig(reset_grace=-0.1).validate()

    def test_reset_grace_zero_is_valid(self):
        LimiterConfig(reset_grace=0).validate()

    def test_rate_updater_must_be_callable(self):
        with self.assertRaises(ConfigValidationError):
            LimiterConfig(rate_updater="not callable").validate()

    def test_error_message_contains_field_and_value(self):
        error = ConfigValidationError("threshold", 0, "Must be >= 1.", section="limiter")
        self.assertEqual(str(error), "[limiter] Invalid value for 'threshold': 0. Must be >= 1.")


if __name__ == "__main__":
    unittest.main()
