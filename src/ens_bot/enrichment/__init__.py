"""
Enrichment Layer - acceptance policy and display metadata.

    - PatternClassifier: club tags from the name ("999", "10k")
    - FilterStage: status / identity / age / value checks with reason codes
    - PolicyStore: operator-tuned thresholds persisted in system_state
    - Enricher: ENS metadata + USD quote, degrading instead of failing
"""
from .classifier import (
    CLUB_10K,
    CLUB_999,
    Classifier,
    ClassifierResult,
    PatternClassifier,
)
from .filters import (
    FilterDecision,
    FilterPolicy,
    FilterReason,
    FilterStage,
    POLICY_STATE_KEYS,
    PolicyStore,
    apply_policy_changes,
    default_policies,
)
from .metadata import Enricher, MetadataResolver, PriceOracle

__all__ = [
    "CLUB_10K",
    "CLUB_999",
    "Classifier",
    "ClassifierResult",
    "PatternClassifier",
    "FilterDecision",
    "FilterPolicy",
    "FilterReason",
    "FilterStage",
    "POLICY_STATE_KEYS",
    "PolicyStore",
    "apply_policy_changes",
    "default_policies",
    "Enricher",
    "MetadataResolver",
    "PriceOracle",
]
