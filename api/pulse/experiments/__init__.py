"""Feature flags and experiment assignment.

Public API:
- FeatureFlags: flag evaluation, remote refresh, sticky experiment assignment
- FeatureFlagsConfig: endpoint / polling / default flags
- pick_variant: deterministic weighted variant selection (FNV-1a)
- check_guardrails: compare live experiment metrics with safety thresholds
"""

from pulse.experiments.assignment import fnv1a, pick_variant
from pulse.experiments.flags import DEFAULT_FLAGS, FeatureFlags, FeatureFlagsConfig
from pulse.experiments.guardrails import (
    GuardrailMetrics,
    GuardrailResult,
    GuardrailThresholds,
    check_guardrails,
)

__all__ = [
    "fnv1a",
    "pick_variant",
    "DEFAULT_FLAGS",
    "FeatureFlags",
    "FeatureFlagsConfig",
    "GuardrailMetrics",
    "GuardrailResult",
    "GuardrailThresholds",
    "check_guardrails",
]
