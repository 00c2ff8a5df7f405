"""
Recommendation Ranker: classifies candidate questions by the learner's
concept mastery and orders them by urgency, recency and grade fit.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..config import config
from ..models.grade import Grade
from ..models.learner_profile import ConceptMastery
from ..models.question import Question
from ..models.recommendation import Priority, Recommendation, RecommendationType
from ..utils.persistence import ProfileStore
from .mastery import current_difficulty


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify(
    mastery_level: float,
    last_practiced_at: Optional[datetime],
    difficulty: int,
    learner_difficulty: int,
    now: datetime,
) -> Optional[Tuple[RecommendationType, Priority]]:
    """
    Recommendation type and priority for one candidate, or None to drop it.

    - remediate (high): mastery below the remediate threshold
    - review (medium): below the review threshold
    - reinforce (medium): below the advance threshold and not practiced
      within the spaced-repetition interval
    - challenge (medium) / advance (low): at or above the advance threshold
      with a question harder than the learner's current difficulty
    """
    r = config.recommendation
    if mastery_level < r.remediate_threshold:
        return "remediate", "high"
    if mastery_level < r.review_threshold:
        return "review", "medium"
    if mastery_level < r.advance_threshold:
        if last_practiced_at is None:
            return "reinforce", "medium"
        elapsed = (now - last_practiced_at).total_seconds()
        if elapsed >= r.spaced_repetition_interval_seconds:
            return "reinforce", "medium"
        return None

    gap = difficulty - learner_difficulty
    if gap > r.challenge_gap:
        return "challenge", "medium"
    if gap > 0:
        return "advance", "low"
    return None


def recency(last_practiced_at: Optional[datetime], now: datetime) -> float:
    """1 - exp(-elapsed / interval); 1.0 when never practiced."""
    if last_practiced_at is None:
        return 1.0
    elapsed = max(0.0, (now - last_practiced_at).total_seconds())
    interval = max(1, config.recommendation.spaced_repetition_interval_seconds)
    return 1.0 - math.exp(-elapsed / interval)


def grade_fit(question_grade: Grade, learner_grade: Grade) -> float:
    return 1.0 / (1 + abs(int(question_grade) - int(learner_grade)))


def diversify(ranked: List[Recommendation], window: float) -> List[Recommendation]:
    """
    Reorder so adjacent items avoid sharing a concept.

    An item may only jump ahead of higher-scored items within `window` of
    the best remaining score.
    """
    remaining = list(ranked)
    ordered: List[Recommendation] = []
    while remaining:
        pick = 0
        if ordered:
            previous = set(ordered[-1].concepts)
            floor = remaining[0].score - window
            for i, rec in enumerate(remaining):
                if rec.score < floor:
                    break
                if not previous.intersection(rec.concepts):
                    pick = i
                    break
        ordered.append(remaining.pop(pick))
    return ordered


class RecommendationRanker:
    """
    Ranks candidate questions for a learner.

    Usage:
        ranker = RecommendationRanker(store)
        recommendations = ranker.rank("learner-1", bank_questions)[:5]
    """

    def __init__(self, store: ProfileStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or _utc_now

    def _weakest(
        self, question: Question, masteries: Dict[str, ConceptMastery]
    ) -> ConceptMastery:
        """Mastery record of the question's least-mastered concept (seeded if unseen)."""
        concepts = question.concepts or (config.mastery.general_concept,)
        records = [
            masteries.get(c) or ConceptMastery(concept=c, mastery_level=config.mastery.seed_level)
            for c in concepts
        ]
        return min(records, key=lambda cm: cm.mastery_level)

    def rank(self, learner_id: str, candidate_pool: Iterable[Question]) -> List[Recommendation]:
        """
        Classify and score candidate questions.

        Args:
            learner_id: Learner to rank for
            candidate_pool: Candidate questions (duplicates ignored)

        Returns:
            Recommendations, best first; unmatched candidates are dropped

        Raises:
            ProfileNotFound: If the learner doesn't exist
        """
        profile = self.store.get(learner_id)
        masteries = profile.all_concept_mastery()
        learner_difficulty = current_difficulty(masteries)
        now = self.clock()
        r = config.recommendation

        seen = set()
        scored: List[Recommendation] = []
        for question in candidate_pool:
            if question.question_id in seen:
                continue
            seen.add(question.question_id)

            record = self._weakest(question, masteries)
            label = classify(
                record.mastery_level, record.last_practiced_at, question.difficulty, learner_difficulty, now
            )
            if label is None:
                continue
            rec_type, priority = label
            score = (
                r.urgency_weight * r.urgency[rec_type]
                + r.recency_weight * recency(record.last_practiced_at, now)
                + r.grade_fit_weight * grade_fit(question.grade, profile.grade)
            )
            scored.append(
                Recommendation(
                    question_id=question.question_id,
                    score=score,
                    recommendation_type=rec_type,
                    priority=priority,
                    concepts=list(question.concepts),
                    mastery_level=record.mastery_level,
                )
            )

        scored.sort(key=lambda rec: (-rec.score, rec.question_id))
        ranked = diversify(scored, r.diversity_window)
        logger.debug(f"Ranked {len(ranked)} of {len(seen)} candidates for {learner_id}")
        return ranked
