"""
Session Coordinator: lifecycle of practice sessions.

Responsibilities:
- Single active session per learner (per-learner slot lock)
- Question sequencing with duplicate avoidance and staged relaxation
- Streak tracking and streak milestone bonuses
- Daily time-on-task accounting and time milestone bonuses
- Completion, abandonment and lazy inactivity expiry
- Per-session serialization of answer submissions
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from loguru import logger

from ..config import RewardRules, config
from ..errors import (
    InvalidAnswerFormat,
    QuestionPoolExhausted,
    SessionAlreadyCompleted,
    SessionConflict,
    SessionExpired,
    SessionNotFound,
    SubmissionInProgress,
)
from ..models.grade import Grade
from ..models.learner_profile import LearnerProfile
from ..models.question import Question, QuestionBatch
from ..models.session import (
    AnswerOutcome,
    AnswerRecord,
    PracticeConfig,
    Session,
    SessionSummary,
    normalize_submission,
)
from ..question_bank import QuestionBank
from ..utils.persistence import ProfileStore
from .mastery import MasteryAggregator
from .rewards import RewardLedger, compute_tokens, streak_milestones_crossed, time_milestones_crossed

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionCoordinator:
    """
    Owns every live session and each learner's single active slot.

    Usage:
        coordinator = SessionCoordinator(store, bank)
        session = coordinator.start_practice_session("learner-1", {"targetType": "questions", "targetValue": 10})
        question = coordinator.next_question(session.session_id)
        outcome = coordinator.submit_answer(session.session_id, question.question_id, "42")
    """

    def __init__(
        self,
        store: ProfileStore,
        bank: QuestionBank,
        mastery: Optional[MasteryAggregator] = None,
        ledger: Optional[RewardLedger] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.bank = bank
        self.clock = clock or _utc_now
        self.mastery = mastery or MasteryAggregator(store, clock=self.clock)
        self.ledger = ledger or RewardLedger(store)

        self._sessions: Dict[str, Session] = {}
        self._active: Dict[str, str] = {}  # learner_id -> session_id
        self._slot_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ==================== Active slot ====================

    def _slot_lock(self, learner_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._slot_locks.setdefault(learner_id, threading.Lock())

    def acquire_slot(self, learner_id: str, factory: Callable[[datetime], Session]) -> Session:
        """
        Atomically claim the learner's active slot for a new session.

        Args:
            learner_id: Learner starting a session
            factory: Builds the session given the start time

        Raises:
            SessionConflict: If the learner already holds an active session
        """
        with self._slot_lock(learner_id):
            now = self.clock()
            existing = self._current_session(learner_id, now)
            if existing is not None:
                age = (now - existing.started_at).total_seconds()
                logger.warning(
                    f"Start rejected for {learner_id}: active {existing.kind} session "
                    f"{existing.session_id} ({age:.0f}s old)"
                )
                raise SessionConflict(learner_id, existing.session_id, age, kind=existing.kind)

            session = factory(now)
            with self._registry_lock:
                self._sessions[session.session_id] = session
                self._active[learner_id] = session.session_id
            logger.info(f"Started {session.kind} session {session.session_id} for {learner_id}")
            return session

    def release_slot(self, session: Session) -> None:
        with self._registry_lock:
            if self._active.get(session.learner_id) == session.session_id:
                del self._active[session.learner_id]

    def _current_session(self, learner_id: str, now: datetime) -> Optional[Session]:
        """Active session for a learner, expiring it first if idle past the TTL."""
        with self._registry_lock:
            session_id = self._active.get(learner_id)
            session = self._sessions.get(session_id) if session_id else None
        if session is None or not session.is_active:
            return None
        if self._expire_if_idle(session, now):
            return None
        return session

    def get_active_session(self, learner_id: str) -> Optional[Session]:
        return self._current_session(learner_id, self.clock())

    def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFound: If the id is unknown
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    # ==================== Expiry ====================

    def _is_idle(self, session: Session, now: datetime) -> bool:
        return session.idle_seconds(now) > config.session.inactivity_ttl_seconds

    def _expire(self, session: Session, now: datetime) -> None:
        idle = session.idle_seconds(now)
        session.finish("expired", now)
        self.release_slot(session)
        logger.info(f"Session {session.session_id} expired after {idle:.0f}s idle; no reward")

    def _expire_if_idle(self, session: Session, now: datetime) -> bool:
        """
        Expire `session` if it is still active and idle past the TTL.

        A session whose submit lock is held by an in-flight submission is left
        alone; the next sweep or lookup sees it again.
        """
        if not session.submit_lock.acquire(blocking=False):
            logger.debug(f"Skipping expiry of {session.session_id}: submission in flight")
            return False
        try:
            if not (session.is_active and self._is_idle(session, now)):
                return False
            self._expire(session, now)
            return True
        finally:
            session.submit_lock.release()

    def expire_idle_sessions(self) -> List[str]:
        """
        Expire every active session idle past the TTL.

        Returns:
            Ids of the sessions expired by this sweep
        """
        now = self.clock()
        with self._registry_lock:
            active = [self._sessions[sid] for sid in self._active.values()]
        expired = []
        for session in active:
            with self._slot_lock(session.learner_id):
                if self._expire_if_idle(session, now):
                    expired.append(session.session_id)
        return expired

    def require_active(self, session_id: str) -> Session:
        """
        Look up a session that must still be accepting answers.

        Raises:
            SessionNotFound: If the id is unknown
            SessionExpired: If the session timed out (now or earlier)
            SessionAlreadyCompleted: If it was completed or abandoned
        """
        session = self.get_session(session_id)
        now = self.clock()
        if session.is_active and self._is_idle(session, now):
            with self._slot_lock(session.learner_id):
                self._expire_if_idle(session, now)
        self.ensure_active(session)
        return session

    def ensure_active(self, session: Session) -> None:
        """Raise SessionExpired or SessionAlreadyCompleted unless the session is active."""
        if session.status == "expired":
            idle = session.idle_seconds(session.completed_at or self.clock())
            raise SessionExpired(session.session_id, idle)
        if not session.is_active:
            raise SessionAlreadyCompleted(session.session_id, session.status)

    # ==================== Question supply ====================

    def fetch_questions(
        self,
        session: Session,
        profile: LearnerProfile,
        grade: Grade,
        concept: Optional[str],
        count: int = 1,
    ) -> QuestionBatch:
        """
        Ask the bank for questions, relaxing exclusions when it comes up short.

        Stage 1 excludes this session's served ids plus the learner's recent
        tail, stage 2 only the session's ids, stage 3 nothing.

        Raises:
            QuestionPoolExhausted: If even the unrestricted request is empty
        """
        session_ids = set(session.served_ids)
        stages = [
            ("none", session_ids | set(profile.recent_question_ids)),
            ("session_only", session_ids),
            ("all", set(session.pending_ids)),
        ]
        best = QuestionBatch()
        for relaxation, excluded in stages:
            questions = self.bank.next_questions(grade, concept, sorted(excluded), count)
            if len(questions) > len(best.questions):
                best = QuestionBatch(list(questions), relaxation)
            if len(questions) >= count:
                break
            logger.debug(
                f"Bank returned {len(questions)}/{count} for grade {grade.label} "
                f"with exclusions at '{relaxation}'; relaxing"
            )

        if not best.questions:
            raise QuestionPoolExhausted(grade.label, concept)
        if best.relaxation != "none":
            logger.info(
                f"Session {session.session_id}: exclusion window relaxed to '{best.relaxation}'"
            )
        return best

    def serve_questions(
        self,
        session: Session,
        grade: Grade,
        concept: Optional[str],
        count: int = 1,
    ) -> List[Question]:
        """Fetch, serve and remember questions for a session."""
        profile = self.store.get(session.learner_id)
        with profile.lock:
            batch = self.fetch_questions(session, profile, grade, concept, count)
            session.serve(batch.questions, self.clock())
            profile.remember_served(
                [q.question_id for q in batch.questions], config.session.recent_history_size
            )
            self.store.save(profile)
        return batch.questions

    # ==================== Practice lifecycle ====================

    def start_practice_session(
        self,
        learner_id: str,
        practice: Union[PracticeConfig, Mapping[str, Any], None] = None,
    ) -> Session:
        """
        Start a practice session.

        Args:
            learner_id: Learner starting the session
            practice: PracticeConfig or {targetType, targetValue, concept?, module?}

        Raises:
            ProfileNotFound: If the learner doesn't exist
            SessionConflict: If the learner already holds an active session
            ValueError: If the session config is invalid
        """
        if practice is None:
            practice = PracticeConfig(target_value=config.session.default_question_count)
        elif not isinstance(practice, PracticeConfig):
            practice = PracticeConfig.from_mapping(practice)
        if practice.module is not None and practice.module not in config.rewards.modules:
            raise ValueError(f"Unknown reward module: {practice.module}")

        profile = self.store.get(learner_id)
        grade = min(profile.grade, Grade(config.grades.ceiling))
        return self.acquire_slot(
            learner_id, lambda now: Session(learner_id, grade, now, target=practice)
        )

    def next_question(self, session_id: str) -> Question:
        """
        Question to present next. Repeated calls return the same question until it is answered.

        Raises:
            SessionNotFound / SessionExpired / SessionAlreadyCompleted
            QuestionPoolExhausted: If the bank has nothing for the session
        """
        session = self.require_active(session_id)
        pending = session.pending_questions()
        if pending:
            return pending[0]
        return self.serve_questions(session, session.grade, session.target.concept)[0]

    def _rules(self, session: Session) -> RewardRules:
        return config.rewards.rules_for(session.target.module)

    def claim_submission(self, session: Session) -> None:
        if not session.submit_lock.acquire(blocking=False):
            logger.warning(f"Concurrent submission rejected for session {session.session_id}")
            raise SubmissionInProgress(session.session_id)

    def submit_answer(
        self,
        session_id: str,
        question_id: str,
        answer: Any,
        latency_ms: Optional[int] = None,
    ) -> AnswerOutcome:
        """
        Grade and record an answer to a served question.

        Replaying an already-recorded (session, question) returns the recorded
        outcome with duplicate=True and changes nothing.

        Raises:
            SessionNotFound / SessionExpired / SessionAlreadyCompleted
            InvalidAnswerFormat: Malformed answer or question not served
            SubmissionInProgress: Another answer for this session is in flight
        """
        session = self.get_session(session_id)
        if session.kind != "practice":
            raise SessionNotFound(session_id, f"Session {session_id} is not a practice session")
        replay = self._replay(session, question_id)
        if replay is not None:
            return replay

        session = self.require_active(session_id)
        self.claim_submission(session)
        try:
            replay = self._replay(session, question_id)
            if replay is not None:
                return replay
            self.ensure_active(session)
            text, latency_ms = normalize_submission(answer, latency_ms)
            question = self.pending_question(session, question_id)

            profile = self.store.get(session.learner_id)
            with profile.lock:
                record = self.record_answer(session, profile, question, text, latency_ms)
                outcome = AnswerOutcome(
                    session_id=session.session_id,
                    question_id=question_id,
                    is_correct=record.is_correct,
                    correct_answer=question.answer,
                    streak=session.streak,
                )
                self._award_streak(session, profile, outcome)

                if session.target_met(record.timestamp):
                    summary, tokens = self._complete(session, profile, record.timestamp)
                    outcome.session_completed = True
                    outcome.summary = summary
                    outcome.tokens_awarded += tokens
                session.outcomes[question_id] = outcome
                self.save_recorded(session, profile)
            return outcome
        finally:
            session.submit_lock.release()

    def save_recorded(self, session: Session, profile: LearnerProfile) -> None:
        """
        Save the profile after an answer was recorded on the session.

        A failed save flags the session so a retried submission replays the
        recorded outcome and saves again instead of grading twice.
        """
        try:
            self.store.save(profile)
        except Exception:
            session.unsaved = True
            logger.error(f"Saving {profile.learner_id} failed after an answer in {session.session_id}")
            raise
        session.unsaved = False

    def flush_unsaved(self, session: Session) -> None:
        if not session.unsaved:
            return
        profile = self.store.get(session.learner_id)
        with profile.lock:
            self.store.save(profile)
        session.unsaved = False
        logger.info(f"Saved {session.learner_id} after retried submission in {session.session_id}")

    def _replay(self, session: Session, question_id: str) -> Optional[AnswerOutcome]:
        recorded = session.outcomes.get(question_id)
        if recorded is None or session.is_pending(question_id):
            return None
        self.flush_unsaved(session)
        logger.debug(f"Replayed answer for {session.session_id}/{question_id}")
        return replace(recorded, duplicate=True)

    def pending_question(self, session: Session, question_id: str) -> Question:
        if not session.is_pending(question_id):
            raise InvalidAnswerFormat(
                f"Question {question_id} was not served in session {session.session_id}"
            )
        return session.find_served(question_id)

    def record_answer(
        self,
        session: Session,
        profile: LearnerProfile,
        question: Question,
        text: str,
        latency_ms: Optional[int],
    ) -> AnswerRecord:
        """
        Shared answer pipeline for practice and assessment sessions.

        Grades the answer, appends the record, updates lifetime counters,
        mastery and time-on-task, and pays any time milestones. The caller
        holds the profile lock and saves the profile.
        """
        now = self.clock()
        if latency_ms is not None:
            spent = latency_ms / 1000.0
        else:
            spent = session.idle_seconds(now)
        spent = min(spent, config.session.max_seconds_per_answer)

        record = AnswerRecord(
            session_id=session.session_id,
            question_id=question.question_id,
            submitted_value=text,
            is_correct=question.is_correct(text),
            latency_ms=latency_ms,
            timestamp=now,
        )
        session.record(record)

        profile.record_answer_totals(record.is_correct)
        for concept in question.concepts or (None,):
            self.mastery.apply_answer(profile, concept, record.is_correct, latency_ms, at=now)
        self._accrue_time(session, profile, spent, now)

        logger.debug(
            f"{session.session_id}: {question.question_id} "
            f"{'correct' if record.is_correct else 'incorrect'} (streak {session.streak})"
        )
        return record

    def _accrue_time(self, session: Session, profile: LearnerProfile, seconds: float, now: datetime) -> None:
        day = now.date().isoformat()
        before, after = profile.add_time_on_task(day, seconds)
        rules = self._rules(session)
        for minutes in time_milestones_crossed(before, after, rules.time_milestones):
            self.ledger.credit_profile(
                profile, rules.time_bonuses[minutes], f"time:{day}:{minutes}", "time"
            )

    def _award_streak(self, session: Session, profile: LearnerProfile, outcome: AnswerOutcome) -> None:
        rules = self._rules(session)
        crossed = streak_milestones_crossed(
            session.streak - 1, session.streak, rules.streak_milestones, session.awarded_streak_milestones
        )
        for milestone in crossed:
            session.awarded_streak_milestones.add(milestone)
            event = self.ledger.credit_profile(
                profile,
                rules.streak_bonuses[milestone],
                f"{session.session_id}:streak:{milestone}",
                "streak",
            )
            outcome.streak_milestones.append(milestone)
            outcome.tokens_awarded += event.tokens_awarded

    def _complete(self, session: Session, profile: LearnerProfile, now: datetime) -> tuple[SessionSummary, int]:
        rules = self._rules(session)
        session.finish("completed", now)
        summary = session.build_summary(now, rules.expected_question_count)
        session.summary = summary
        event = self.ledger.credit_profile(
            profile, compute_tokens(summary, rules), f"{session.session_id}:complete", "session_complete"
        )
        profile.record_session_completed()
        self.release_slot(session)
        logger.info(
            f"Session {session.session_id} completed: {summary.correct}/{summary.total} correct, "
            f"{event.tokens_awarded} tokens"
        )
        return summary, event.tokens_awarded

    def complete_session(self, session_id: str) -> SessionSummary:
        """
        Complete a practice session, possibly before its target is met.

        Completing an already-completed session returns its summary.

        Raises:
            SessionNotFound / SessionExpired
            SessionAlreadyCompleted: If the session was abandoned
        """
        session = self.get_session(session_id)
        if session.kind != "practice":
            raise SessionNotFound(session_id, f"Session {session_id} is not a practice session")
        if session.status == "completed" and session.summary is not None:
            self.flush_unsaved(session)
            return session.summary

        session = self.require_active(session_id)
        self.claim_submission(session)
        try:
            self.ensure_active(session)
            profile = self.store.get(session.learner_id)
            with profile.lock:
                summary, _ = self._complete(session, profile, self.clock())
                self.save_recorded(session, profile)
            return summary
        finally:
            session.submit_lock.release()

    def abandon_session(self, session_id: str) -> Session:
        """
        Abandon a session. No completion reward is paid.

        Abandoning an already-abandoned session is a no-op.

        Raises:
            SessionNotFound: If the id is unknown
            SessionAlreadyCompleted: If the session already completed or expired
        """
        session = self.get_session(session_id)
        with self._slot_lock(session.learner_id):
            if session.status == "abandoned":
                return session
            if not session.is_active:
                raise SessionAlreadyCompleted(session_id, session.status)
            session.finish("abandoned", self.clock())
            self.release_slot(session)
        logger.info(f"Session {session_id} abandoned after {session.questions_answered} answers")
        return session
