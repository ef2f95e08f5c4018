"""Feature-flag checks for the agent rollout and shadow mode."""

from leadflow.config import RolloutConfig
from leadflow.rollout.cohorts import hash_bucket


def should_use_agent(rollout: RolloutConfig) -> bool:
    """Global gate for the agent path.

    Which chatbots actually get the agent during a partial rollout is
    decided by the persisted cohort, not here.
    """
    return rollout.use_agent and rollout.agent_rollout_percentage > 0


def is_partial_rollout(rollout: RolloutConfig) -> bool:
    return 0 < rollout.agent_rollout_percentage < 100


def should_use_shadow_mode(chatbot_id: str, rollout: RolloutConfig) -> bool:
    """Shadow mode runs both paths; an explicit chatbot list wins over sampling."""
    if not rollout.shadow_mode_enabled:
        return False
    if rollout.shadow_mode_chatbots:
        return chatbot_id in rollout.shadow_mode_chatbots
    if rollout.shadow_mode_sample_rate < 1.0:
        return hash_bucket(chatbot_id) < rollout.shadow_mode_sample_rate * 100
    return True
