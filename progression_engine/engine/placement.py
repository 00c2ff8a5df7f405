"""
Grade Placement Assessor: a bounded probe battery that sets a learner's
working grade.

Probing starts at the learner's grade (capped at the ceiling). Each grade
gets a fixed number of probes; answering all of them correctly passes the
grade and moves up one level, and the first miss ends the assessment.
Every grade is probed at most once, so the battery always terminates.
"""

from __future__ import annotations

from typing import Any, List, Optional

from loguru import logger

from ..config import config
from ..errors import QuestionPoolExhausted, SessionAlreadyCompleted, SessionNotFound
from ..models.grade import Grade
from ..models.learner_profile import LearnerProfile
from ..models.question import Question
from ..models.session import (
    AnswerOutcome,
    AssessmentState,
    PlacementResult,
    ProbeResult,
    normalize_submission,
)
from .sessions import SessionCoordinator


def place(starting_grade: Grade, passed_grades: List[Grade], ceiling: Grade) -> tuple[Grade, str]:
    """
    Final grade and outcome for a finished battery.

    Returns:
        (final_grade, outcome) where outcome is placed / ceiling_reached / floored
    """
    if passed_grades:
        final = max(passed_grades)
        return final, "ceiling_reached" if final >= ceiling else "placed"
    final = starting_grade.previous()
    return final, "floored" if final == Grade.lowest() else "placed"


class GradePlacementAssessor:
    """
    Runs placement assessments through the coordinator's slot and answer pipeline.

    Usage:
        assessor = GradePlacementAssessor(coordinator)
        state = assessor.start_assessment("learner-1")
        probe = assessor.next_probe(state.session_id)
        step = assessor.submit_probe_answer(state.session_id, probe.question_id, "7")
        if step.finished:
            print(step.result.final_grade)
    """

    def __init__(self, coordinator: SessionCoordinator):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.ledger = coordinator.ledger

    def start_assessment(self, learner_id: str, concept: Optional[str] = None) -> AssessmentState:
        """
        Start a placement assessment and serve its first probe.

        Raises:
            ProfileNotFound: If the learner doesn't exist
            SessionConflict: If the learner already holds an active session
            QuestionPoolExhausted: If no probe exists for the starting grade
        """
        profile = self.store.get(learner_id)
        ceiling = Grade(config.grades.ceiling)
        start = min(profile.grade, ceiling)

        state = self.coordinator.acquire_slot(
            learner_id,
            lambda now: AssessmentState(
                learner_id,
                starting_grade=start,
                ceiling=ceiling,
                started_at=now,
                probes_per_grade=config.session.probes_per_grade,
                concept=concept,
            ),
        )
        try:
            self._serve_probe(state)
        except QuestionPoolExhausted:
            state.finish("abandoned", self.coordinator.clock())
            self.coordinator.release_slot(state)
            raise
        logger.info(f"Assessment {state.session_id} for {learner_id} probing from grade {start.label}")
        return state

    def _state(self, session_id: str) -> AssessmentState:
        session = self.coordinator.get_session(session_id)
        if not isinstance(session, AssessmentState):
            raise SessionNotFound(session_id, f"Session {session_id} is not an assessment")
        return session

    def _serve_probe(self, state: AssessmentState) -> Question:
        return self.coordinator.serve_questions(
            state, state.current_probe_grade, state.target.concept
        )[0]

    def next_probe(self, session_id: str) -> Question:
        """
        The probe currently awaiting an answer.

        Raises:
            SessionNotFound / SessionExpired / SessionAlreadyCompleted
        """
        self._state(session_id)
        state = self.coordinator.require_active(session_id)
        pending = state.pending_questions()
        return pending[0] if pending else self._serve_probe(state)

    def submit_probe_answer(
        self,
        session_id: str,
        question_id: str,
        answer: Any,
        latency_ms: Optional[int] = None,
    ) -> ProbeResult:
        """
        Grade a probe and advance the battery.

        Returns:
            ProbeResult with the next probe, or the final placement

        Raises:
            SessionNotFound / SessionExpired
            SessionAlreadyCompleted: If the assessment already finished
            InvalidAnswerFormat: Malformed answer or probe not served
            SubmissionInProgress: Another answer for this assessment is in flight
        """
        state = self._state(session_id)
        if state.status == "completed":
            last = state.answers[-1].question_id if state.answers else None
            if state.unsaved and question_id == last:
                self.coordinator.flush_unsaved(state)
                return ProbeResult(
                    is_correct=state.outcomes[question_id].is_correct,
                    result=state.result,
                    duplicate=True,
                )
            raise SessionAlreadyCompleted(session_id)
        state = self.coordinator.require_active(session_id)

        self.coordinator.claim_submission(state)
        try:
            recorded = state.outcomes.get(question_id)
            if recorded is not None and not state.is_pending(question_id):
                self.coordinator.flush_unsaved(state)
                pending = state.pending_questions()
                return ProbeResult(
                    is_correct=recorded.is_correct,
                    next_probe=pending[0] if pending else None,
                    duplicate=True,
                )
            self.coordinator.ensure_active(state)

            text, latency_ms = normalize_submission(answer, latency_ms)
            question = self.coordinator.pending_question(state, question_id)

            profile = self.store.get(state.learner_id)
            with profile.lock:
                record = self.coordinator.record_answer(state, profile, question, text, latency_ms)
                outcome = AnswerOutcome(
                    session_id=session_id,
                    question_id=question_id,
                    is_correct=record.is_correct,
                    correct_answer=question.answer,
                    streak=state.streak,
                )
                state.outcomes[question_id] = outcome
                try:
                    step = self._advance(state, profile, record.is_correct)
                except Exception:
                    # Serving the next probe saves too
                    state.unsaved = True
                    raise
                outcome.session_completed = step.finished
                self.coordinator.save_recorded(state, profile)
            return step
        finally:
            state.submit_lock.release()

    def _advance(self, state: AssessmentState, profile: LearnerProfile, is_correct: bool) -> ProbeResult:
        """Apply the transition rules after one graded probe."""
        if not is_correct:
            state.consecutive_fail_count += 1
            state.consecutive_pass_count = 0
            return ProbeResult(is_correct=False, result=self._finish(state, profile))

        state.consecutive_pass_count += 1
        state.consecutive_fail_count = 0
        if state.pass_level():
            state.passed_grades.append(state.current_probe_grade)
            logger.debug(f"{state.session_id}: passed grade {state.current_probe_grade.label}")
            if state.current_probe_grade >= state.ceiling:
                return ProbeResult(is_correct=True, result=self._finish(state, profile))
            state.current_probe_grade = state.current_probe_grade.next(state.ceiling)
            state.consecutive_pass_count = 0

        probe = self._probe_or_none(state)
        if probe is None:
            return ProbeResult(is_correct=True, result=self._finish(state, profile))
        return ProbeResult(is_correct=True, next_probe=probe)

    def _probe_or_none(self, state: AssessmentState) -> Optional[Question]:
        try:
            return self._serve_probe(state)
        except QuestionPoolExhausted:
            logger.warning(
                f"{state.session_id}: no probes for grade {state.current_probe_grade.label}; "
                f"placing on grades passed so far"
            )
            return None

    def _finish(self, state: AssessmentState, profile: LearnerProfile) -> PlacementResult:
        """Set the placement, pay the bonus once and release the slot."""
        now = self.coordinator.clock()
        final, outcome = place(state.starting_grade, state.passed_grades, state.ceiling)
        result = PlacementResult(
            session_id=state.session_id,
            starting_grade=state.starting_grade,
            final_grade=final,
            outcome=outcome,
            passed_grades=list(state.passed_grades),
            probes_answered=state.questions_answered,
            probes_correct=state.correct_count,
        )

        profile.set_grade(final)
        event = self.ledger.credit_profile(
            profile,
            config.rewards.assessment_bonus,
            f"{state.session_id}:assessment",
            "assessment",
            advance=False,
        )
        result.tokens_awarded = event.tokens_awarded
        profile.record_assessment(result.to_history_entry(now))

        state.result = result
        state.grade = final
        state.finish("completed", now)
        self.coordinator.release_slot(state)
        logger.info(
            f"Assessment {state.session_id} finished: grade {state.starting_grade.label} -> "
            f"{final.label} ({outcome}), {result.tokens_awarded} tokens"
        )
        return result
