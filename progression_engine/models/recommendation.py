"""Ranked question recommendation (computed on demand, never persisted)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal

RecommendationType = Literal["review", "advance", "reinforce", "challenge", "remediate"]
Priority = Literal["high", "medium", "low"]


@dataclass
class Recommendation:
    question_id: str
    score: float
    recommendation_type: RecommendationType
    priority: Priority
    concepts: List[str] = field(default_factory=list)
    mastery_level: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "score": round(self.score, 4),
            "recommendation_type": self.recommendation_type,
            "priority": self.priority,
            "concepts": list(self.concepts),
            "mastery_level": round(self.mastery_level, 2),
        }
