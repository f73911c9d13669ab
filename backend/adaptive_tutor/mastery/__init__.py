"""Mastery rules, engine and tracker."""

from .engine import MasteryDecision, MasteryEngine, compute_statistics, decide, evaluate_criteria
from .rules import MasteryRuleService, MasteryRules, default_rules
from .tracker import MasterySnapshot, MasteryTracker

__all__ = [
    "MasteryDecision",
    "MasteryEngine",
    "compute_statistics",
    "decide",
    "evaluate_criteria",
    "MasteryRuleService",
    "MasteryRules",
    "default_rules",
    "MasterySnapshot",
    "MasteryTracker",
]
