"""Tests for configuration loading and validation."""

import dataclasses

import pytest

from leadflow.config import (
    AppConfig,
    ComparatorConfig,
    RolloutConfig,
    SessionConfig,
    TimeoutConfig,
    _validate_config,
    load_config,
)


class TestConfigValidation:
    def test_default_config_passes_validation(self):
        config = AppConfig()
        _validate_config(config)  # should not raise

    def test_rollout_percentage_above_100(self):
        config = AppConfig(rollout=RolloutConfig(agent_rollout_percentage=101))
        with pytest.raises(ValueError, match="AGENT_ROLLOUT_PERCENTAGE"):
            _validate_config(config)

    def test_rollout_percentage_negative(self):
        config = AppConfig(rollout=RolloutConfig(agent_rollout_percentage=-1))
        with pytest.raises(ValueError, match="AGENT_ROLLOUT_PERCENTAGE"):
            _validate_config(config)

    def test_sample_rate_out_of_range(self):
        config = AppConfig(rollout=RolloutConfig(shadow_mode_sample_rate=1.5))
        with pytest.raises(ValueError, match="SHADOW_MODE_SAMPLE_RATE"):
            _validate_config(config)

    def test_zero_expiry(self):
        config = AppConfig(session=SessionConfig(expiry_hours=0))
        with pytest.raises(ValueError, match="SESSION_EXPIRY_HOURS"):
            _validate_config(config)

    def test_zero_capture_retries(self):
        config = AppConfig(session=SessionConfig(max_capture_retries=0))
        with pytest.raises(ValueError, match="MAX_CAPTURE_RETRIES"):
            _validate_config(config)

    def test_negative_min_exchanges(self):
        config = AppConfig(session=SessionConfig(min_exchanges_before_capture=-1))
        with pytest.raises(ValueError, match="MIN_EXCHANGES_BEFORE_CAPTURE"):
            _validate_config(config)

    def test_zero_timeout(self):
        config = AppConfig(timeouts=TimeoutConfig(agent_timeout_sec=0))
        with pytest.raises(ValueError, match="AGENT_TIMEOUT_SEC"):
            _validate_config(config)

    def test_weights_must_sum_to_100(self):
        config = AppConfig(comparator=ComparatorConfig(mode_weight=60))
        with pytest.raises(ValueError, match="sum to 100"):
            _validate_config(config)

    def test_config_is_frozen(self):
        config = AppConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.log_level = "DEBUG"


class TestLoadConfig:
    def test_defaults_from_empty_env(self):
        config = load_config({})
        assert config.rollout.agent_rollout_percentage == 0
        assert not config.rollout.use_agent
        assert config.session.expiry_hours == 24
        assert config.session.max_message_history == 10
        assert config.comparator.mode_weight == 50

    def test_env_overrides(self):
        config = load_config({
            "USE_AGENT": "true",
            "AGENT_ROLLOUT_PERCENTAGE": "25",
            "AGENT_SHADOW_MODE": "1",
            "SHADOW_MODE_CHATBOTS": "bot-1, bot-2,,",
            "SESSION_EXPIRY_HOURS": "12",
            "ANSWER_TIMEOUT_SEC": "2.5",
        })
        assert config.rollout.use_agent
        assert config.rollout.agent_rollout_percentage == 25
        assert config.rollout.shadow_mode_enabled
        assert config.rollout.shadow_mode_chatbots == ("bot-1", "bot-2")
        assert config.session.expiry_hours == 12
        assert config.timeouts.answer_timeout_sec == 2.5

    def test_bool_parsing(self):
        assert not load_config({"USE_AGENT": "nope"}).rollout.use_agent
        assert load_config({"USE_AGENT": " YES "}).rollout.use_agent

    def test_invalid_integer(self):
        with pytest.raises(ValueError, match="Invalid integer for AGENT_ROLLOUT_PERCENTAGE"):
            load_config({"AGENT_ROLLOUT_PERCENTAGE": "ten"})

    def test_invalid_float(self):
        with pytest.raises(ValueError, match="Invalid float for ANSWER_TIMEOUT_SEC"):
            load_config({"ANSWER_TIMEOUT_SEC": "fast"})

    def test_out_of_range_env_rejected(self):
        with pytest.raises(ValueError, match="AGENT_ROLLOUT_PERCENTAGE"):
            load_config({"AGENT_ROLLOUT_PERCENTAGE": "150"})
