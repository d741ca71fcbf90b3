"""Policy evaluation: rule matching, message tiers, violation tracking and blocks."""

from trafficlight.policies.models import (
    ACADEMIC_PLATFORMS,
    AI_WEBSITES,
    BlockState,
    PolicyConfig,
    Rule,
    RuleSet,
)
from trafficlight.policies.rule_matcher import BUILTIN_RULES, build_rule_set, classify_url
from trafficlight.policies.message_classifier import MessageClassifier, detect_grading_context
from trafficlight.policies.violation_tracker import RETENTION, ViolationTracker
from trafficlight.policies.block_state import BlockStateMachine
from trafficlight.policies.policy_engine import PolicyEngine, evaluate_url

__all__ = [
    "ACADEMIC_PLATFORMS",
    "AI_WEBSITES",
    "BlockState",
    "PolicyConfig",
    "Rule",
    "RuleSet",
    "BUILTIN_RULES",
    "build_rule_set",
    "classify_url",
    "MessageClassifier",
    "detect_grading_context",
    "RETENTION",
    "ViolationTracker",
    "BlockStateMachine",
    "PolicyEngine",
    "evaluate_url",
]
