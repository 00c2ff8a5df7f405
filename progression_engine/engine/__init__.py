"""
Engine components.

- MasteryAggregator: per-concept mastery estimates
- RewardLedger / compute_tokens: token economy
- SessionCoordinator: practice session lifecycle
- GradePlacementAssessor: placement probe battery
- RecommendationRanker: next-best-question ranking
"""

from .mastery import MasteryAggregator
from .rewards import (
    RewardEvent,
    RewardLedger,
    compute_tokens,
    streak_milestones_crossed,
    time_milestones_crossed,
)
from .sessions import SessionCoordinator
from .placement import GradePlacementAssessor
from .ranker import RecommendationRanker

__all__ = [
    "MasteryAggregator",
    "RewardEvent",
    "RewardLedger",
    "compute_tokens",
    "streak_milestones_crossed",
    "time_milestones_crossed",
    "SessionCoordinator",
    "GradePlacementAssessor",
    "RecommendationRanker",
]
