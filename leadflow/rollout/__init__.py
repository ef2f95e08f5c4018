from leadflow.rollout.cohorts import CohortAssigner, InMemoryCohortRepository, hash_bucket
from leadflow.rollout.flags import is_partial_rollout, should_use_agent, should_use_shadow_mode
from leadflow.rollout.metrics import CohortMetricsTracker
from leadflow.rollout.shadow import ComparisonLog, ShadowComparator, compare_results

__all__ = [
    "CohortAssigner", "InMemoryCohortRepository", "hash_bucket",
    "should_use_agent", "should_use_shadow_mode", "is_partial_rollout",
    "ShadowComparator", "ComparisonLog", "compare_results",
    "CohortMetricsTracker",
]
