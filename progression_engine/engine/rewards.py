"""
Reward Calculator: session outcome -> tokens, milestone bonuses, and the
exactly-once ledger that applies them to a learner's balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from loguru import logger

from ..config import RewardRules, config
from ..models.grade import Grade
from ..models.learner_profile import LearnerProfile
from ..models.session import SessionSummary
from ..utils.persistence import ProfileStore

MAX_TOKENS = 2_147_483_647


def compute_tokens(summary: SessionSummary, rules: RewardRules) -> int:
    """
    Tokens earned by a finished session.

    base  = floor(correct / group_size) * tokens_per_group
    bonus = perfect_bonus when correct == total == expected_question_count

    Invalid summaries (negative counts, correct > total) earn nothing.

    Example:
        >>> compute_tokens(SessionSummary("ps-1", 20, 20, 300.0), RewardRules())
        32
    """
    correct, total = summary.correct, summary.total
    if correct < 0 or total < 0 or correct > total or rules.group_size <= 0:
        return 0

    base = (correct // rules.group_size) * rules.tokens_per_group
    expected = summary.expected_question_count or rules.expected_question_count
    bonus = rules.perfect_bonus if correct == total == expected else 0
    return max(0, min(MAX_TOKENS, base + bonus))


def streak_milestones_crossed(
    previous: int, current: int, milestones: Iterable[int], already_awarded: Iterable[int] = ()
) -> List[int]:
    """Milestones reached by moving the streak from `previous` to `current`, not yet awarded."""
    awarded = set(already_awarded)
    return [m for m in sorted(milestones) if previous < m <= current and m not in awarded]


def time_milestones_crossed(
    seconds_before: float, seconds_after: float, milestones_minutes: Iterable[int]
) -> List[int]:
    """Minute milestones passed when daily time grows from `seconds_before` to `seconds_after`."""
    return [
        m for m in sorted(milestones_minutes) if seconds_before < m * 60 <= seconds_after
    ]


def advancement_threshold(grade: Grade) -> Optional[int]:
    """Token balance that promotes a learner out of `grade` (None if unset)."""
    return config.grades.advancement_thresholds.get(grade.label)


def promoted_grade(grade: Grade, balance: int) -> Optional[Grade]:
    """
    Grade after a credit leaves the balance at `balance`, or None if no promotion.

    A balance at or past the current grade's threshold promotes, so a learner
    placed below their balance still advances on the next credit. Promotes at
    most one grade per call, and never past the ceiling.
    """
    ceiling = Grade(config.grades.ceiling)
    if grade >= ceiling:
        return None
    threshold = advancement_threshold(grade)
    if threshold is None or balance < threshold:
        return None
    return grade.next(ceiling)


@dataclass
class RewardEvent:
    """
    Outcome of one credit request.

    Attributes:
        learner_id: Learner credited
        event_key: Unique key of the qualifying event
        amount: Tokens requested
        reason: Short label (session_complete, streak, time, assessment)
        applied: False when the event was already credited
        balance_after: Balance after the request
        promoted_to: New grade if the credit triggered advancement
    """

    learner_id: str
    event_key: str
    amount: int
    reason: str
    applied: bool
    balance_after: int
    promoted_to: Optional[Grade] = None

    @property
    def tokens_awarded(self) -> int:
        return self.amount if self.applied else 0


class RewardLedger:
    """
    Applies token credits exactly once per event key.

    Credits are additive deltas taken under the profile lock, so concurrent
    events for one learner never overwrite each other.
    """

    def __init__(self, store: ProfileStore):
        self.store = store

    def credit_profile(
        self,
        profile: LearnerProfile,
        amount: int,
        event_key: str,
        reason: str,
        advance: bool = True,
    ) -> RewardEvent:
        """
        Credit an already-loaded profile without saving it.

        Args:
            advance: Run the grade advancement rule after an applied credit
        """
        amount = max(0, min(MAX_TOKENS, int(amount)))
        with profile.lock:
            change = profile.credit_tokens(amount, event_key)
            if change is None:
                logger.debug(f"Reward {event_key} for {profile.learner_id} already credited")
                return RewardEvent(
                    profile.learner_id, event_key, amount, reason, False, profile.token_balance
                )

            _, after = change
            promoted = promoted_grade(profile.grade, after) if advance else None
            if promoted is not None:
                profile.set_grade(promoted)
                logger.info(
                    f"{profile.learner_id} advanced to grade {promoted.label} "
                    f"at {after} tokens"
                )

        if amount:
            logger.info(f"Credited {amount} tokens to {profile.learner_id} ({reason}, {event_key})")
        return RewardEvent(profile.learner_id, event_key, amount, reason, True, after, promoted)

    def credit(
        self,
        learner_id: str,
        amount: int,
        event_key: str,
        reason: str,
        advance: bool = True,
    ) -> RewardEvent:
        """
        Credit tokens to a learner and persist the profile.

        Raises:
            ProfileNotFound: If the learner doesn't exist
        """
        profile = self.store.get(learner_id)
        with profile.lock:
            event = self.credit_profile(profile, amount, event_key, reason, advance=advance)
            if event.applied:
                self.store.save(profile)
        return event
