"""
Centralized configuration with environment variable overrides.

Rollout percentages, session limits, collaborator timeouts and comparator
weights are all configurable here. The configuration is built once by
``load_config()`` at startup and handed to each component; nothing reads
the environment at import time.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _safe_int(env: Mapping[str, str], env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = env.get(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env: Mapping[str, str], env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = env.get(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env: Mapping[str, str], env_var: str, default: str) -> bool:
    raw = env.get(env_var, default)
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _csv(env: Mapping[str, str], env_var: str) -> tuple[str, ...]:
    raw = env.get(env_var, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class SessionConfig:
    """Conversation session lifetime and history limits."""

    expiry_hours: int = 24
    max_message_history: int = 10
    context_window: int = 5
    min_exchanges_before_capture: int = 2
    max_capture_retries: int = 3
    sweep_interval_sec: float = 300.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "SessionConfig":
        return cls(
            expiry_hours=_safe_int(env, "SESSION_EXPIRY_HOURS", "24"),
            max_message_history=_safe_int(env, "MAX_MESSAGE_HISTORY", "10"),
            context_window=_safe_int(env, "CONTEXT_WINDOW", "5"),
            min_exchanges_before_capture=_safe_int(env, "MIN_EXCHANGES_BEFORE_CAPTURE", "2"),
            max_capture_retries=_safe_int(env, "MAX_CAPTURE_RETRIES", "3"),
            sweep_interval_sec=_safe_float(env, "SESSION_SWEEP_INTERVAL", "300"),
        )


@dataclass(frozen=True)
class RolloutConfig:
    """Agent rollout and shadow-mode feature flags."""

    use_agent: bool = False
    agent_rollout_percentage: int = 0
    shadow_mode_enabled: bool = False
    shadow_mode_chatbots: tuple[str, ...] = ()
    shadow_mode_sample_rate: float = 1.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "RolloutConfig":
        return cls(
            use_agent=_safe_bool(env, "USE_AGENT", "false"),
            agent_rollout_percentage=_safe_int(env, "AGENT_ROLLOUT_PERCENTAGE", "0"),
            shadow_mode_enabled=_safe_bool(env, "AGENT_SHADOW_MODE", "false"),
            shadow_mode_chatbots=_csv(env, "SHADOW_MODE_CHATBOTS"),
            shadow_mode_sample_rate=_safe_float(env, "SHADOW_MODE_SAMPLE_RATE", "1.0"),
        )


@dataclass(frozen=True)
class TimeoutConfig:
    """Upper bounds for calls that suspend on network I/O."""

    answer_timeout_sec: float = 15.0
    agent_timeout_sec: float = 15.0
    notification_timeout_sec: float = 10.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "TimeoutConfig":
        return cls(
            answer_timeout_sec=_safe_float(env, "ANSWER_TIMEOUT_SEC", "15.0"),
            agent_timeout_sec=_safe_float(env, "AGENT_TIMEOUT_SEC", "15.0"),
            notification_timeout_sec=_safe_float(env, "NOTIFICATION_TIMEOUT_SEC", "10.0"),
        )


@dataclass(frozen=True)
class ComparatorConfig:
    """Weights for the shadow-mode decision alignment score (sum to 100)."""

    mode_weight: int = 50
    intent_weight: int = 25
    similarity_weight: int = 25
    mismatch_threshold: int = 70

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "ComparatorConfig":
        return cls(
            mode_weight=_safe_int(env, "ALIGNMENT_MODE_WEIGHT", "50"),
            intent_weight=_safe_int(env, "ALIGNMENT_INTENT_WEIGHT", "25"),
            similarity_weight=_safe_int(env, "ALIGNMENT_SIMILARITY_WEIGHT", "25"),
            mismatch_threshold=_safe_int(env, "ALIGNMENT_MISMATCH_THRESHOLD", "70"),
        )


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    session: SessionConfig = field(default_factory=SessionConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    comparator: ComparatorConfig = field(default_factory=ComparatorConfig)
    log_level: str = "INFO"
    service_name: str = "leadflow"


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    rollout = config.rollout
    if not 0 <= rollout.agent_rollout_percentage <= 100:
        raise ValueError(
            "AGENT_ROLLOUT_PERCENTAGE must be between 0 and 100, "
            f"got {rollout.agent_rollout_percentage}"
        )
    if not 0.0 <= rollout.shadow_mode_sample_rate <= 1.0:
        raise ValueError(
            "SHADOW_MODE_SAMPLE_RATE must be between 0.0 and 1.0, "
            f"got {rollout.shadow_mode_sample_rate}"
        )

    for name, value in [
        ("SESSION_EXPIRY_HOURS", config.session.expiry_hours),
        ("MAX_MESSAGE_HISTORY", config.session.max_message_history),
        ("CONTEXT_WINDOW", config.session.context_window),
        ("MAX_CAPTURE_RETRIES", config.session.max_capture_retries),
    ]:
        if value < 1:
            raise ValueError(f"{name} must be >= 1, got {value}")
    if config.session.min_exchanges_before_capture < 0:
        raise ValueError(
            "MIN_EXCHANGES_BEFORE_CAPTURE must be >= 0, "
            f"got {config.session.min_exchanges_before_capture}"
        )
    if config.session.sweep_interval_sec <= 0:
        raise ValueError(
            f"SESSION_SWEEP_INTERVAL must be > 0, got {config.session.sweep_interval_sec}"
        )

    for name, value in [
        ("ANSWER_TIMEOUT_SEC", config.timeouts.answer_timeout_sec),
        ("AGENT_TIMEOUT_SEC", config.timeouts.agent_timeout_sec),
        ("NOTIFICATION_TIMEOUT_SEC", config.timeouts.notification_timeout_sec),
    ]:
        if value <= 0:
            raise ValueError(f"{name} must be > 0, got {value}")

    comparator = config.comparator
    total = comparator.mode_weight + comparator.intent_weight + comparator.similarity_weight
    if total != 100:
        raise ValueError(f"Alignment weights must sum to 100, got {total}")
    if not 0 <= comparator.mismatch_threshold <= 100:
        raise ValueError(
            "ALIGNMENT_MISMATCH_THRESHOLD must be between 0 and 100, "
            f"got {comparator.mismatch_threshold}"
        )


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load and validate application configuration.

    Reads ``.env`` and the process environment unless an explicit mapping
    is given (tests pass a plain dict).
    """
    if env is None:
        load_dotenv()
        env = os.environ

    config = AppConfig(
        session=SessionConfig.from_env(env),
        rollout=RolloutConfig.from_env(env),
        timeouts=TimeoutConfig.from_env(env),
        comparator=ComparatorConfig.from_env(env),
        log_level=env.get("LOG_LEVEL", "INFO"),
        service_name=env.get("SERVICE_NAME", "leadflow"),
    )
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info(
        "Configuration loaded for '%s' (rollout=%d%%, shadow=%s)",
        config.service_name,
        config.rollout.agent_rollout_percentage,
        config.rollout.shadow_mode_enabled,
    )
    return config
