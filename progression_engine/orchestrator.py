"""
Practice Engine Orchestrator

Wires the engine components into one operation surface:
1. Grade placement assessment
2. Practice sessions (sequencing, streaks, completion, expiry)
3. Mastery tracking and reports
4. Token rewards and grade advancement
5. Ranked recommendations

This is the main entry point for callers such as HTTP handlers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from loguru import logger

from .config import config
from .engine.mastery import MasteryAggregator
from .engine.placement import GradePlacementAssessor
from .engine.ranker import RecommendationRanker
from .engine.rewards import RewardLedger, advancement_threshold
from .engine.sessions import SessionCoordinator
from .models.grade import Grade
from .models.learner_profile import ConceptMastery, LearnerProfile
from .models.question import Question
from .models.recommendation import Recommendation
from .models.session import (
    AnswerOutcome,
    AssessmentState,
    PracticeConfig,
    ProbeResult,
    Session,
    SessionSummary,
)
from .question_bank import InMemoryQuestionBank, QuestionBank
from .utils.persistence import InMemoryProfileStore, ProfileStore


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PracticeEngine:
    """
    Adaptive practice and progression engine.

    Usage:
        engine = PracticeEngine(store=JsonProfileStore(), bank=InMemoryQuestionBank.from_json("bank.json"))
        engine.register_learner("learner-1", display_name="Ada", grade="3")
        session = engine.start_practice_session("learner-1", {"targetType": "questions", "targetValue": 20})
        question = engine.next_question(session.session_id)
        outcome = engine.submit_answer(session.session_id, question.question_id, "12", latency_ms=3100)
    """

    def __init__(
        self,
        store: Optional[ProfileStore] = None,
        bank: Optional[QuestionBank] = None,
        clock: Optional[Callable[[], datetime]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Learner profile store (in-memory if None)
            bank: Question bank (empty in-memory bank if None)
            clock: Source of the current UTC time
            options: camelCase option surface applied to the global config

        Raises:
            ValueError: If options or the resulting config are invalid
        """
        if options:
            config.apply_options(options)
        errors = config.validate()
        if errors:
            raise ValueError("Invalid engine configuration: " + "; ".join(errors))

        self.store = store if store is not None else InMemoryProfileStore()
        self.bank = bank if bank is not None else InMemoryQuestionBank()
        self.clock = clock or _utc_now

        self.mastery = MasteryAggregator(self.store, clock=self.clock)
        self.ledger = RewardLedger(self.store)
        self.sessions = SessionCoordinator(
            self.store, self.bank, mastery=self.mastery, ledger=self.ledger, clock=self.clock
        )
        self.placement = GradePlacementAssessor(self.sessions)
        self.ranker = RecommendationRanker(self.store, clock=self.clock)

    # ==================== Learners ====================

    def register_learner(
        self,
        learner_id: str,
        display_name: str = "Anonymous Learner",
        grade: Union[Grade, str, int] = Grade.K,
        learning_style: str = "visual",
    ) -> LearnerProfile:
        """
        Create and store a new learner profile.

        Raises:
            ValueError: If the learner already exists or the grade is above the ceiling
        """
        grade = Grade.parse(grade)
        if grade > config.grades.ceiling:
            raise ValueError(f"Grade {grade.label} is above the ceiling grade {config.grades.ceiling}")
        profile = LearnerProfile(
            learner_id=learner_id,
            display_name=display_name,
            grade=grade,
            learning_style=learning_style,
        )
        return self.store.create(profile)

    # ==================== Placement ====================

    def start_assessment(self, learner_id: str, concept: Optional[str] = None) -> AssessmentState:
        return self.placement.start_assessment(learner_id, concept=concept)

    def next_probe(self, session_id: str) -> Question:
        return self.placement.next_probe(session_id)

    def submit_probe_answer(
        self, session_id: str, question_id: str, answer: Any, latency_ms: Optional[int] = None
    ) -> ProbeResult:
        return self.placement.submit_probe_answer(session_id, question_id, answer, latency_ms)

    # ==================== Practice ====================

    def start_practice_session(
        self, learner_id: str, practice: Union[PracticeConfig, Mapping[str, Any], None] = None
    ) -> Session:
        return self.sessions.start_practice_session(learner_id, practice)

    def next_question(self, session_id: str) -> Question:
        return self.sessions.next_question(session_id)

    def submit_answer(
        self, session_id: str, question_id: str, answer: Any, latency_ms: Optional[int] = None
    ) -> AnswerOutcome:
        return self.sessions.submit_answer(session_id, question_id, answer, latency_ms)

    def complete_session(self, session_id: str) -> SessionSummary:
        return self.sessions.complete_session(session_id)

    def abandon_session(self, session_id: str) -> Session:
        return self.sessions.abandon_session(session_id)

    def get_active_session(self, learner_id: str) -> Optional[Session]:
        return self.sessions.get_active_session(learner_id)

    def expire_idle_sessions(self) -> List[str]:
        """Sweep hook for an external scheduler."""
        return self.sessions.expire_idle_sessions()

    # ==================== Mastery ====================

    def record_answer(
        self,
        learner_id: str,
        concept: Optional[str],
        is_correct: bool,
        latency_ms: Optional[int] = None,
    ) -> ConceptMastery:
        return self.mastery.record_answer(learner_id, concept, is_correct, latency_ms)

    def get_mastery(
        self, learner_id: str, concept: Optional[str] = None
    ) -> Union[ConceptMastery, Dict[str, ConceptMastery]]:
        """One concept's mastery, or every recorded concept when `concept` is None."""
        if concept is None:
            return self.mastery.get_all_mastery(learner_id)
        return self.mastery.get_mastery(learner_id, concept)

    # ==================== Recommendations ====================

    def candidate_pool(self, learner_id: str) -> List[Question]:
        """Questions at the learner's grade and the next one up, recent ones left out when possible."""
        profile = self.store.get(learner_id)
        ceiling = Grade(config.grades.ceiling)
        grade = min(profile.grade, ceiling)
        grades = [grade] if grade >= ceiling else [grade, grade.next(ceiling)]
        recent = profile.recent_question_ids
        size = config.recommendation.pool_size

        pool: List[Question] = []
        for g in grades:
            questions = self.bank.next_questions(g, None, recent, size)
            if not questions:
                questions = self.bank.next_questions(g, None, [], size)
            pool.extend(questions)
        return pool

    def get_recommendations(self, learner_id: str, n: int = 5) -> List[Recommendation]:
        """
        Top-N recommended questions for a learner.

        Raises:
            ProfileNotFound: If the learner doesn't exist
        """
        ranked = self.ranker.rank(learner_id, self.candidate_pool(learner_id))
        logger.debug(f"Returning {min(n, len(ranked))} recommendations for {learner_id}")
        return ranked[: max(0, n)]

    # ==================== Summary ====================

    def get_learner_summary(self, learner_id: str) -> Dict[str, Any]:
        """Learner overview: grade, tokens, goals, mastery and active session."""
        profile = self.store.get(learner_id)
        report = self.mastery.mastery_report(learner_id)
        today = self.clock().date().isoformat()
        minutes_today = profile.time_on_task_seconds(today) / 60.0
        goal = config.session.daily_goal_minutes
        balance = profile.token_balance

        next_milestone = next((m for m in config.rewards.token_milestones if m > balance), None)
        threshold = advancement_threshold(profile.grade)
        active = self.get_active_session(learner_id)

        return {
            "learner_id": profile.learner_id,
            "display_name": profile.display_name,
            "grade": profile.grade.label,
            "token_balance": balance,
            "next_token_milestone": next_milestone,
            "next_grade_threshold": (
                threshold if profile.grade < config.grades.ceiling and threshold is not None else None
            ),
            "questions_answered": profile.questions_answered,
            "correct_answers": profile.correct_answers,
            "accuracy": (
                round(profile.correct_answers / profile.questions_answered, 4)
                if profile.questions_answered
                else 0.0
            ),
            "sessions_completed": profile.sessions_completed,
            "minutes_today": round(minutes_today, 1),
            "daily_goal_minutes": goal,
            "daily_goal_met": minutes_today >= goal,
            "learning_style": profile.learning_style,
            "pace": profile.pace,
            "mastery_summary": report["summary"],
            "strengths": report["strengths"],
            "weaknesses": report["weaknesses"],
            "current_difficulty": report["current_difficulty"],
            "active_session_id": active.session_id if active else None,
            "active_session": active.to_dict() if active else None,
            "assessments_completed": len(profile.assessment_history),
        }
