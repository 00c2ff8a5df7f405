"""
Mastery Aggregator: turns (concept, correct?, latency) observations into a
0-100 mastery estimate per concept per learner.

Each answer moves the estimate toward 100 (correct) or 0 (incorrect) by a
smoothing factor k that shrinks as attempts accumulate, so early answers
swing the estimate widely and later ones refine it.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..config import config
from ..models.learner_profile import ConceptMastery, LearnerProfile
from ..utils.persistence import ProfileStore
from ..utils.progress import mastery_bands, mastery_by_category, mastery_histogram, mastery_summary


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def smoothing_factor(attempts: int) -> float:
    """
    Per-answer weight after `attempts` answers (counting the current one).

    k = max(k_floor, k_initial / (1 + k_decay * (attempts - 1)))
    """
    m = config.mastery
    return max(m.k_floor, m.k_initial / (1 + m.k_decay * max(0, attempts - 1)))


def update_level(level: float, is_correct: bool, attempts: int) -> float:
    """New mastery level after one answer, clamped to [0, 100]."""
    target = 100.0 if is_correct else 0.0
    updated = level + smoothing_factor(attempts) * (target - level)
    return max(0.0, min(100.0, updated))


def current_difficulty(masteries: Dict[str, ConceptMastery]) -> int:
    """
    Difficulty (1-5) a learner is currently working at.

    ceil(mean mastery / 20) over attempted concepts; the seed level when none.
    """
    levels = [cm.mastery_level for cm in masteries.values() if cm.total_attempts > 0]
    mean = sum(levels) / len(levels) if levels else config.mastery.seed_level
    return max(1, min(5, math.ceil(mean / 20)))


class MasteryAggregator:
    """
    Maintains ConceptMastery records on learner profiles.

    Usage:
        aggregator = MasteryAggregator(store)
        aggregator.record_answer("learner-1", "addition", True, latency_ms=2500)
        weak = aggregator.get_weaknesses("learner-1", n=3)
    """

    def __init__(self, store: ProfileStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or _utc_now

    def _concept_key(self, concept: Optional[str]) -> str:
        concept = (concept or "").strip()
        return concept or config.mastery.general_concept

    def apply_answer(
        self,
        profile: LearnerProfile,
        concept: Optional[str],
        is_correct: bool,
        latency_ms: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> ConceptMastery:
        """
        Fold one answer into a profile without saving it.

        Callers that batch several profile changes save once afterwards.
        """
        key = self._concept_key(concept)
        with profile.lock:
            record = profile.get_concept_mastery(key) or ConceptMastery(
                concept=key, mastery_level=config.mastery.seed_level
            )
            record.total_attempts += 1
            if is_correct:
                record.correct_attempts += 1
            record.mastery_level = update_level(record.mastery_level, is_correct, record.total_attempts)
            record.last_practiced_at = at or self.clock()

            if latency_ms is not None:
                if record.average_latency_ms is None:
                    record.average_latency_ms = float(latency_ms)
                else:
                    # Incremental mean over attempts
                    record.average_latency_ms += (latency_ms - record.average_latency_ms) / record.total_attempts

            profile.put_concept_mastery(record)
            self._update_pace(profile)

        logger.debug(
            f"{profile.learner_id} {key}: {'correct' if is_correct else 'incorrect'} "
            f"-> mastery {record.mastery_level:.1f} after {record.total_attempts} attempts"
        )
        return record

    def _update_pace(self, profile: LearnerProfile) -> None:
        latencies = [
            cm.average_latency_ms
            for cm in profile.all_concept_mastery().values()
            if cm.average_latency_ms is not None
        ]
        if not latencies:
            return
        mean = sum(latencies) / len(latencies)
        if mean < config.mastery.fast_latency_ms:
            profile.set_pace("fast")
        elif mean > config.mastery.slow_latency_ms:
            profile.set_pace("slow")
        else:
            profile.set_pace("moderate")

    def record_answer(
        self,
        learner_id: str,
        concept: Optional[str],
        is_correct: bool,
        latency_ms: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> ConceptMastery:
        """
        Record one answer for a learner and persist the profile.

        Args:
            learner_id: Learner who answered
            concept: Concept exercised ("general" when None or blank)
            is_correct: Whether the answer was correct
            latency_ms: Time taken to answer
            at: Observation time (defaults to the clock)

        Returns:
            Updated ConceptMastery

        Raises:
            ProfileNotFound: If the learner doesn't exist
            ValueError: If latency is negative
        """
        if latency_ms is not None and latency_ms < 0:
            raise ValueError(f"latency_ms cannot be negative: {latency_ms}")
        profile = self.store.get(learner_id)
        with profile.lock:
            record = self.apply_answer(profile, concept, is_correct, latency_ms, at)
            self.store.save(profile)
        return record

    def get_mastery(self, learner_id: str, concept: str) -> ConceptMastery:
        """Mastery for one concept; an unsaved seed record if never attempted."""
        key = self._concept_key(concept)
        profile = self.store.get(learner_id)
        return profile.get_concept_mastery(key) or ConceptMastery(
            concept=key, mastery_level=config.mastery.seed_level
        )

    def get_all_mastery(self, learner_id: str) -> Dict[str, ConceptMastery]:
        return self.store.get(learner_id).all_concept_mastery()

    def _ranked_candidates(self, learner_id: str) -> List[ConceptMastery]:
        general = config.mastery.general_concept
        return [
            cm
            for cm in self.get_all_mastery(learner_id).values()
            if cm.total_attempts > 0 and cm.concept != general
        ]

    def get_strengths(self, learner_id: str, n: int = 5) -> List[ConceptMastery]:
        """Top-N attempted concepts at or above the strength threshold, strongest first."""
        threshold = config.mastery.strength_threshold
        strong = [cm for cm in self._ranked_candidates(learner_id) if cm.mastery_level >= threshold]
        strong.sort(key=lambda cm: (-cm.mastery_level, cm.concept))
        return strong[: max(0, n)]

    def get_weaknesses(self, learner_id: str, n: int = 5) -> List[ConceptMastery]:
        """
        Bottom-N attempted concepts at or below the weakness threshold, weakest first.

        A concept that also qualifies as a strength is left out.
        """
        m = config.mastery
        weak = [
            cm
            for cm in self._ranked_candidates(learner_id)
            if cm.mastery_level <= m.weakness_threshold and cm.mastery_level < m.strength_threshold
        ]
        weak.sort(key=lambda cm: (cm.mastery_level, cm.concept))
        return weak[: max(0, n)]

    def mastery_report(self, learner_id: str, n: int = 5) -> dict:
        """
        Mastery overview for a learner.

        Returns:
            Dict with summary statistics, band grouping, histogram,
            strengths, weaknesses, pace and current difficulty
        """
        profile = self.store.get(learner_id)
        masteries = profile.all_concept_mastery()
        levels = {c: cm.mastery_level for c, cm in masteries.items() if cm.total_attempts > 0}
        rec = config.recommendation

        return {
            "learner_id": learner_id,
            "summary": mastery_summary(levels),
            "by_category": mastery_by_category(
                levels, mastery_bands(rec.remediate_threshold, rec.review_threshold, rec.advance_threshold)
            ),
            "histogram": mastery_histogram(levels),
            "strengths": [cm.concept for cm in self.get_strengths(learner_id, n)],
            "weaknesses": [cm.concept for cm in self.get_weaknesses(learner_id, n)],
            "pace": profile.pace,
            "current_difficulty": current_difficulty(masteries),
        }
