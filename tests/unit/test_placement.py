"""
Unit tests for the Grade Placement Assessor.
"""

import random

import pytest

from conftest import FailingSaveStore, make_bank
from progression_engine.config import config
from progression_engine.engine.placement import place
from progression_engine.errors import (
    QuestionPoolExhausted,
    SessionAlreadyCompleted,
    SessionConflict,
    SessionNotFound,
)
from progression_engine.models.grade import Grade
from progression_engine.orchestrator import PracticeEngine
from progression_engine.question_bank import InMemoryQuestionBank


def run_assessment(engine, learner_id, answers):
    """Answer probes correct/incorrect in order until the battery finishes."""
    state = engine.start_assessment(learner_id)
    for correct in answers:
        probe = engine.next_probe(state.session_id)
        step = engine.submit_probe_answer(
            state.session_id, probe.question_id, probe.answer if correct else "wrong"
        )
        if step.finished:
            return state, step.result
    raise AssertionError("assessment did not finish")


class TestPlace:
    """Test the placement rule on its own."""

    def test_highest_passed_grade(self):
        """Test the final grade is the highest grade passed."""
        assert place(Grade.G3, [Grade.G3, Grade.G4], Grade.G6) == (Grade.G4, "placed")

    def test_ceiling_reached(self):
        """Test passing the ceiling grade is reported."""
        assert place(Grade.G5, [Grade.G5, Grade.G6], Grade.G6) == (Grade.G6, "ceiling_reached")

    def test_nothing_passed_drops_one_grade(self):
        """Test failing the starting grade places one below it."""
        assert place(Grade.G3, [], Grade.G6) == (Grade.G2, "placed")

    def test_floored(self):
        """Test failing at K or grade 1 floors at K."""
        assert place(Grade.K, [], Grade.G6) == (Grade.K, "floored")
        assert place(Grade.G1, [], Grade.G6) == (Grade.K, "floored")


class TestAssessmentFlow:
    """Test full assessments through the engine."""

    def test_pass_two_grades_then_miss(self, engine, learner, store):
        """Test grade 3 passing 3 and 4 then missing at 5 places at 4."""
        state, result = run_assessment(engine, "learner-1", [True, True, True, True, False])

        assert result.final_grade is Grade.G4
        assert result.outcome == "placed"
        assert result.passed_grades == [Grade.G3, Grade.G4]
        assert result.probes_answered == 5 and result.probes_correct == 4
        assert result.tokens_awarded == 15

        profile = store.get("learner-1")
        assert profile.grade is Grade.G4
        assert profile.token_balance == 15
        assert state.status == "completed"
        assert engine.get_active_session("learner-1") is None

    def test_probes_follow_current_grade(self, engine, learner):
        """Test probes are drawn from the grade being probed."""
        state = engine.start_assessment("learner-1")
        grades = []
        for _ in range(3):
            probe = engine.next_probe(state.session_id)
            grades.append(probe.grade)
            engine.submit_probe_answer(state.session_id, probe.question_id, probe.answer)
        assert grades == [Grade.G3, Grade.G3, Grade.G4]

    def test_ceiling_reached(self, engine, learner, store):
        """Test passing the ceiling grade ends the battery there."""
        config.grades.ceiling = 4
        _, result = run_assessment(engine, "learner-1", [True] * 4)
        assert result.final_grade is Grade.G4
        assert result.ceiling_reached
        assert store.get("learner-1").grade is Grade.G4

    def test_floored_from_kindergarten(self, engine):
        """Test a miss at K stays at K."""
        engine.register_learner("kid", grade="K")
        _, result = run_assessment(engine, "kid", [False])
        assert result.final_grade is Grade.K
        assert result.outcome == "floored"

    def test_floored_from_grade_one(self, engine):
        """Test a miss at grade 1 floors at K."""
        engine.register_learner("first", grade=1)
        _, result = run_assessment(engine, "first", [True, False])
        assert result.final_grade is Grade.K
        assert result.outcome == "floored"

    def test_drop_one_grade(self, engine, learner):
        """Test a miss at the starting grade places one below."""
        _, result = run_assessment(engine, "learner-1", [False])
        assert result.final_grade is Grade.G2
        assert result.outcome == "placed"

    @pytest.mark.parametrize("seed", range(8))
    def test_placement_always_within_bounds(self, engine, seed):
        """Test every answer sequence terminates within [K, ceiling]."""
        rng = random.Random(seed)
        for i in range(6):
            start = rng.randint(0, 6)
            learner_id = f"learner-{seed}-{i}"
            engine.register_learner(learner_id, grade=start)
            answers = [rng.random() < 0.8 for _ in range(2 * 7 + 1)]

            _, result = run_assessment(engine, learner_id, answers)

            assert Grade.K <= result.final_grade <= Grade(config.grades.ceiling)
            if result.passed_grades:
                assert result.final_grade == max(result.passed_grades)
            else:
                assert result.final_grade == Grade(start).previous()
            assert result.probes_answered <= 2 * 7

    def test_history_entry_recorded(self, engine, learner, store):
        """Test the finished assessment is appended to the profile history."""
        state, _ = run_assessment(engine, "learner-1", [False])
        history = store.get("learner-1").assessment_history
        assert len(history) == 1
        assert history[0]["session_id"] == state.session_id
        assert history[0]["starting_grade"] == "3"
        assert history[0]["final_grade"] == "2"
        assert history[0]["timestamp"] == "2026-01-05T09:00:00+00:00"

    def test_bonus_does_not_trigger_advancement(self, engine, store):
        """Test the assessment bonus never promotes past the placement."""
        engine.register_learner("kid", grade="K")
        store.get("kid").credit_tokens(90, "seed")
        _, result = run_assessment(engine, "kid", [False])
        profile = store.get("kid")
        assert profile.token_balance == 105
        assert profile.grade is Grade.K

    def test_pool_exhausted_mid_battery_places_on_passed(self, store, clock):
        """Test running out of probes places on the grades passed so far."""
        bank = make_bank(grades=(Grade.G3,))
        engine = PracticeEngine(store=store, bank=bank, clock=clock)
        engine.register_learner("learner-1", grade=3)

        _, result = run_assessment(engine, "learner-1", [True, True])

        assert result.final_grade is Grade.G3
        assert result.passed_grades == [Grade.G3]

    def test_empty_bank_frees_slot(self, store, clock):
        """Test an assessment that cannot serve a probe leaves no active session."""
        engine = PracticeEngine(store=store, bank=InMemoryQuestionBank(), clock=clock)
        engine.register_learner("learner-1", grade=3)
        with pytest.raises(QuestionPoolExhausted):
            engine.start_assessment("learner-1")
        assert engine.get_active_session("learner-1") is None


class TestFailedSave:
    """Test probe answers whose profile save fails."""

    @pytest.fixture
    def failing_store(self):
        return FailingSaveStore()

    @pytest.fixture
    def failing_engine(self, failing_store, bank, clock):
        engine = PracticeEngine(store=failing_store, bank=bank, clock=clock)
        engine.register_learner("learner-1", grade=3)
        return engine

    def test_retry_mid_battery(self, failing_engine, failing_store):
        """Test a retried probe replays with the next probe and is graded once."""
        state = failing_engine.start_assessment("learner-1")
        probe = failing_engine.next_probe(state.session_id)

        failing_store.fail_next_save()
        with pytest.raises(OSError):
            failing_engine.submit_probe_answer(state.session_id, probe.question_id, probe.answer)

        retry = failing_engine.submit_probe_answer(state.session_id, probe.question_id, probe.answer)

        assert retry.duplicate and retry.is_correct
        assert retry.next_probe is not None
        assert state.consecutive_pass_count == 1
        assert failing_store.get("learner-1").questions_answered == 1
        assert not state.unsaved

    def test_retry_final_probe(self, failing_engine, failing_store):
        """Test the finishing probe replays its placement after a failed save."""
        state = failing_engine.start_assessment("learner-1")
        probe = failing_engine.next_probe(state.session_id)

        failing_store.fail_next_save()
        with pytest.raises(OSError):
            failing_engine.submit_probe_answer(state.session_id, probe.question_id, "wrong")
        assert state.status == "completed"

        retry = failing_engine.submit_probe_answer(state.session_id, probe.question_id, "wrong")

        assert retry.duplicate and retry.finished
        assert retry.result.final_grade is Grade.G2
        profile = failing_store.get("learner-1")
        assert profile.token_balance == 15
        assert profile.grade is Grade.G2
        assert not state.unsaved
        with pytest.raises(SessionAlreadyCompleted):
            failing_engine.submit_probe_answer(state.session_id, probe.question_id, "wrong")


class TestAssessmentGuards:
    """Test replays, conflicts and wrong-kind access."""

    def test_duplicate_probe_answer(self, engine, learner, store):
        """Test a replayed probe answer is flagged and not re-graded."""
        state = engine.start_assessment("learner-1")
        probe = engine.next_probe(state.session_id)
        first = engine.submit_probe_answer(state.session_id, probe.question_id, probe.answer)

        replay = engine.submit_probe_answer(state.session_id, probe.question_id, probe.answer)

        assert replay.duplicate and replay.is_correct
        assert replay.next_probe == first.next_probe
        assert state.consecutive_pass_count == 1
        assert store.get("learner-1").questions_answered == 1

    def test_submit_after_completion(self, engine, learner):
        """Test answering a finished assessment raises SessionAlreadyCompleted."""
        state, _ = run_assessment(engine, "learner-1", [False])
        probe_id = state.served_ids[0]
        with pytest.raises(SessionAlreadyCompleted):
            engine.submit_probe_answer(state.session_id, probe_id, "1")

    def test_assessment_blocks_practice(self, engine, learner):
        """Test an assessment holds the single active slot."""
        state = engine.start_assessment("learner-1")
        with pytest.raises(SessionConflict) as exc_info:
            engine.start_practice_session("learner-1")
        assert exc_info.value.session_id == state.session_id
        assert exc_info.value.kind == "assessment"

    def test_practice_blocks_assessment(self, engine, learner):
        """Test a practice session blocks starting an assessment."""
        engine.start_practice_session("learner-1")
        with pytest.raises(SessionConflict):
            engine.start_assessment("learner-1")

    def test_practice_calls_reject_assessment_ids(self, engine, learner):
        """Test practice operations do not accept assessment sessions."""
        state = engine.start_assessment("learner-1")
        probe = engine.next_probe(state.session_id)
        with pytest.raises(SessionNotFound):
            engine.submit_answer(state.session_id, probe.question_id, probe.answer)
        with pytest.raises(SessionNotFound):
            engine.complete_session(state.session_id)

    def test_probe_calls_reject_practice_ids(self, engine, learner):
        """Test probe operations do not accept practice sessions."""
        session = engine.start_practice_session("learner-1")
        with pytest.raises(SessionNotFound):
            engine.next_probe(session.session_id)
