"""
Unit tests for the Session Coordinator.

Tests single-active-session enforcement, sequencing, streaks, completion,
expiry, replays and rewards.
"""

import threading

import pytest

from conftest import FailingSaveStore, make_bank, make_question
from progression_engine.errors import (
    InvalidAnswerFormat,
    QuestionPoolExhausted,
    SessionAlreadyCompleted,
    SessionConflict,
    SessionExpired,
    SessionNotFound,
    SubmissionInProgress,
)
from progression_engine.models.grade import Grade
from progression_engine.orchestrator import PracticeEngine
from progression_engine.question_bank import InMemoryQuestionBank


def answer_next(engine, session_id, correct=True, latency_ms=None):
    question = engine.next_question(session_id)
    answer = question.answer if correct else "wrong"
    return engine.submit_answer(session_id, question.question_id, answer, latency_ms=latency_ms)


def start(engine, count=20, **extra):
    return engine.start_practice_session("learner-1", {"targetType": "questions", "targetValue": count, **extra})


class TestStartSession:
    """Test starting sessions and the single active slot."""

    def test_start_practice_session(self, engine, learner):
        """Test a new session is active at the learner's grade."""
        session = start(engine, 10)
        assert session.session_id.startswith("ps-")
        assert session.status == "active"
        assert session.grade is Grade.G3
        assert engine.get_active_session("learner-1") is session

    def test_second_start_conflicts(self, engine, learner, clock):
        """Test a second start raises SessionConflict with id and age."""
        session = start(engine)
        clock.advance(seconds=30)
        with pytest.raises(SessionConflict) as exc_info:
            start(engine)
        assert exc_info.value.session_id == session.session_id
        assert exc_info.value.age_seconds == 30

    def test_concurrent_starts_exactly_one_wins(self, engine, learner):
        """Test racing starts produce exactly one active session."""
        started, conflicts = [], []
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            try:
                started.append(start(engine))
            except SessionConflict:
                conflicts.append(1)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(started) == 1
        assert len(conflicts) == 9

    def test_idle_session_expires_on_start(self, engine, learner, clock):
        """Test an idle session past the TTL frees the slot lazily."""
        old = start(engine)
        clock.advance(seconds=1801)
        new = start(engine)
        assert old.status == "expired"
        assert engine.get_active_session("learner-1") is new

    def test_unknown_module_rejected(self, engine, learner):
        """Test an unknown reward module raises ValueError."""
        with pytest.raises(ValueError):
            start(engine, module="space-race")

    def test_invalid_target_rejected(self, engine, learner):
        """Test a non-positive target raises ValueError."""
        with pytest.raises(ValueError):
            start(engine, 0)


class TestSequencing:
    """Test question supply and duplicate avoidance."""

    def test_next_question_is_stable_until_answered(self, engine, learner):
        """Test repeated calls return the pending question."""
        session = start(engine)
        first = engine.next_question(session.session_id)
        assert engine.next_question(session.session_id) == first
        engine.submit_answer(session.session_id, first.question_id, first.answer)
        assert engine.next_question(session.session_id) != first

    def test_questions_match_grade_and_concept(self, engine, learner):
        """Test served questions follow the session grade and focus concept."""
        session = start(engine, concept="fractions")
        for _ in range(5):
            question = engine.next_question(session.session_id)
            assert question.grade is Grade.G3
            assert "fractions" in question.concepts
            engine.submit_answer(session.session_id, question.question_id, question.answer)

    def test_no_repeats_within_session(self, engine, learner):
        """Test a session never repeats a question while the bank has others."""
        session = start(engine, 25)
        for _ in range(25):
            answer_next(engine, session.session_id)
        assert len(set(session.served_ids)) == 25

    def test_recent_history_remembered(self, engine, learner, store):
        """Test served ids enter the learner's recent tail."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        assert question.question_id in store.get("learner-1").recent_question_ids

    def test_relaxes_to_session_only(self, store, clock, log_messages):
        """Test the recent tail is dropped when it blocks the whole pool."""
        bank = InMemoryQuestionBank([make_question(3, "addition", i) for i in range(3)], seed=1)
        engine = PracticeEngine(store=store, bank=bank, clock=clock)
        engine.register_learner("learner-1", grade=3)

        first = start(engine, 3)
        for _ in range(3):
            answer_next(engine, first.session_id)

        second = start(engine, 3)
        question = engine.next_question(second.session_id)
        assert question.question_id in first.served_ids
        assert any("session_only" in m for m in log_messages)

    def test_relaxes_to_all_within_session(self, store, clock):
        """Test a small pool repeats questions instead of failing the session."""
        bank = InMemoryQuestionBank([make_question(3, "addition", i) for i in range(3)], seed=1)
        engine = PracticeEngine(store=store, bank=bank, clock=clock)
        engine.register_learner("learner-1", grade=3)

        session = start(engine, 5)
        outcomes = [answer_next(engine, session.session_id) for _ in range(5)]

        assert len(session.served) == 5
        assert len(set(session.served_ids)) == 3
        assert outcomes[-1].session_completed
        assert not any(o.duplicate for o in outcomes)

    def test_empty_bank_raises(self, store, clock):
        """Test an empty bank raises QuestionPoolExhausted."""
        engine = PracticeEngine(store=store, bank=InMemoryQuestionBank(), clock=clock)
        engine.register_learner("learner-1", grade=3)
        session = start(engine)
        with pytest.raises(QuestionPoolExhausted):
            engine.next_question(session.session_id)


class TestSubmitAnswer:
    """Test grading, validation and replays."""

    def test_correct_and_incorrect(self, engine, learner, store):
        """Test grading updates counters and mastery."""
        session = start(engine)
        right = answer_next(engine, session.session_id)
        wrong = answer_next(engine, session.session_id, correct=False)

        assert right.is_correct and not wrong.is_correct
        assert wrong.streak == 0
        profile = store.get("learner-1")
        assert profile.questions_answered == 2
        assert profile.correct_answers == 1
        assert sum(cm.total_attempts for cm in profile.all_concept_mastery().values()) == 2

    def test_numeric_answers_compare_by_value(self, engine, learner):
        """Test '4.0'-style answers grade by value."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        outcome = engine.submit_answer(session.session_id, question.question_id, f" {question.answer}.0 ")
        assert outcome.is_correct

    def test_duplicate_submission_is_noop(self, engine, learner, store):
        """Test a replayed (session, question) returns the recorded outcome."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        first = engine.submit_answer(session.session_id, question.question_id, question.answer)
        balance = store.get("learner-1").token_balance

        replay = engine.submit_answer(session.session_id, question.question_id, "something else")

        assert replay.duplicate
        assert replay.is_correct == first.is_correct
        profile = store.get("learner-1")
        assert profile.questions_answered == 1
        assert profile.token_balance == balance
        assert profile.get_concept_mastery(question.primary_concept).total_attempts == 1

    def test_question_not_served_rejected(self, engine, learner, store):
        """Test answers for unserved questions are rejected without mutation."""
        session = start(engine)
        engine.next_question(session.session_id)
        with pytest.raises(InvalidAnswerFormat):
            engine.submit_answer(session.session_id, "g3-addition-999", "1")
        assert store.get("learner-1").questions_answered == 0

    @pytest.mark.parametrize("answer,latency", [(None, None), ("", None), (["1"], None), ("1", -10)])
    def test_malformed_submission_rejected(self, engine, learner, store, answer, latency):
        """Test malformed answers raise InvalidAnswerFormat and change nothing."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        with pytest.raises(InvalidAnswerFormat):
            engine.submit_answer(session.session_id, question.question_id, answer, latency_ms=latency)
        assert session.pending_ids == [question.question_id]
        assert store.get("learner-1").questions_answered == 0

    def test_unknown_session(self, engine, learner):
        """Test unknown ids raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            engine.submit_answer("ps-missing", "q", "1")

    def test_concurrent_submission_rejected(self, engine, learner):
        """Test a second in-flight submission raises SubmissionInProgress."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        session.submit_lock.acquire()
        try:
            with pytest.raises(SubmissionInProgress):
                engine.submit_answer(session.session_id, question.question_id, question.answer)
        finally:
            session.submit_lock.release()
        assert engine.submit_answer(session.session_id, question.question_id, question.answer).is_correct


class TestFailedSave:
    """Test a profile save that fails after an answer was graded."""

    @pytest.fixture
    def failing_store(self):
        return FailingSaveStore()

    @pytest.fixture
    def failing_engine(self, failing_store, bank, clock):
        engine = PracticeEngine(store=failing_store, bank=bank, clock=clock)
        engine.register_learner("learner-1", grade=3)
        return engine

    def test_retry_replays_and_saves(self, failing_engine, failing_store):
        """Test a retry after a failed save replays the outcome and saves once more."""
        session = start(failing_engine)
        question = failing_engine.next_question(session.session_id)
        saves = failing_store.save_count

        failing_store.fail_next_save()
        with pytest.raises(OSError):
            failing_engine.submit_answer(session.session_id, question.question_id, question.answer)
        assert session.unsaved

        retry = failing_engine.submit_answer(session.session_id, question.question_id, question.answer)

        assert retry.duplicate and retry.is_correct
        assert not session.unsaved
        assert failing_store.save_count == saves + 1
        profile = failing_store.get("learner-1")
        assert profile.questions_answered == 1
        assert len(session.answers) == 1

    def test_failed_save_on_completing_answer(self, failing_engine, failing_store):
        """Test the completing answer replays with its summary and pays once."""
        session = start(failing_engine, 1)
        question = failing_engine.next_question(session.session_id)

        failing_store.fail_next_save()
        with pytest.raises(OSError):
            failing_engine.submit_answer(session.session_id, question.question_id, question.answer)
        balance = failing_store.get("learner-1").token_balance

        retry = failing_engine.submit_answer(session.session_id, question.question_id, question.answer)

        assert retry.duplicate and retry.session_completed
        assert retry.summary.total == 1
        assert failing_store.get("learner-1").token_balance == balance
        assert failing_store.get("learner-1").sessions_completed == 1
        assert not session.unsaved

    def test_next_answer_after_failed_save(self, failing_engine, failing_store):
        """Test the session keeps going after a failed save."""
        session = start(failing_engine)
        question = failing_engine.next_question(session.session_id)
        failing_store.fail_next_save()
        with pytest.raises(OSError):
            failing_engine.submit_answer(session.session_id, question.question_id, "wrong")

        outcome = answer_next(failing_engine, session.session_id)

        assert outcome.is_correct and not outcome.duplicate
        assert failing_store.get("learner-1").questions_answered == 2
        assert not session.unsaved


class TestStreaks:
    """Test streak milestones."""

    def test_streak_of_five_pays_two_bonuses(self, engine, learner, store):
        """Test milestones 3 and 5 fire separately."""
        session = start(engine)
        outcomes = [answer_next(engine, session.session_id) for _ in range(5)]

        assert [o.streak_milestones for o in outcomes] == [[], [], [3], [], [5]]
        assert outcomes[2].tokens_awarded == 2
        assert outcomes[4].tokens_awarded == 5
        assert store.get("learner-1").token_balance == 7

    def test_milestone_pays_once_per_session(self, engine, learner, store):
        """Test rebuilding a streak past a paid milestone pays nothing."""
        session = start(engine)
        for _ in range(3):
            answer_next(engine, session.session_id)
        answer_next(engine, session.session_id, correct=False)
        outcomes = [answer_next(engine, session.session_id) for _ in range(3)]

        assert outcomes[-1].streak == 3
        assert outcomes[-1].streak_milestones == []
        assert store.get("learner-1").token_balance == 2


class TestCompletion:
    """Test completion, abandonment and expiry."""

    def test_perfect_session_rewards(self, engine, learner, store):
        """Test 20/20 pays 32 plus the streak milestones once."""
        session = start(engine, 20)
        outcomes = [answer_next(engine, session.session_id) for _ in range(20)]

        last = outcomes[-1]
        assert last.session_completed
        assert last.summary.correct == 20 and last.summary.total == 20
        assert last.tokens_awarded == 20 + 32
        assert store.get("learner-1").token_balance == 2 + 5 + 10 + 20 + 32
        assert store.get("learner-1").sessions_completed == 1
        assert session.status == "completed"
        assert engine.get_active_session("learner-1") is None

    def test_replay_after_completion(self, engine, learner, store):
        """Test replaying the final answer returns the recorded outcome."""
        session = start(engine, 2)
        answer_next(engine, session.session_id)
        final = answer_next(engine, session.session_id)
        balance = store.get("learner-1").token_balance

        replay = engine.submit_answer(session.session_id, final.question_id, "1")

        assert replay.duplicate and replay.session_completed
        assert store.get("learner-1").token_balance == balance

    def test_duration_session_completes_on_elapsed(self, engine, learner, clock):
        """Test time-based sessions complete once the duration passes."""
        session = engine.start_practice_session("learner-1", {"targetType": "duration", "targetValue": 60})
        assert not answer_next(engine, session.session_id).session_completed
        engine.next_question(session.session_id)
        clock.advance(seconds=61)
        question = session.pending_questions()[0]
        outcome = engine.submit_answer(session.session_id, question.question_id, question.answer)
        assert outcome.session_completed
        assert outcome.summary.elapsed_seconds == 61

    def test_complete_early(self, engine, learner, store):
        """Test a session can be completed before its target."""
        session = start(engine, 20)
        for _ in range(5):
            answer_next(engine, session.session_id)

        summary = engine.complete_session(session.session_id)

        assert summary.total == 5 and summary.correct == 5
        assert store.get("learner-1").token_balance == 2 + 5 + 3
        assert engine.complete_session(session.session_id) is summary
        assert store.get("learner-1").token_balance == 10
        with pytest.raises(SessionAlreadyCompleted):
            engine.next_question(session.session_id)

    def test_abandon(self, engine, learner, store):
        """Test abandoning releases the slot without a completion reward."""
        session = start(engine)
        answer_next(engine, session.session_id, correct=False)
        engine.abandon_session(session.session_id)

        assert session.status == "abandoned"
        assert engine.get_active_session("learner-1") is None
        assert engine.abandon_session(session.session_id) is session
        with pytest.raises(SessionAlreadyCompleted):
            engine.complete_session(session.session_id)
        assert store.get("learner-1").token_balance == 0

    def test_expired_session_rejects_answers(self, engine, learner, clock, store):
        """Test answers after the TTL raise SessionExpired and pay nothing."""
        session = start(engine, 3)
        answer_next(engine, session.session_id)
        answer_next(engine, session.session_id)
        question = engine.next_question(session.session_id)
        clock.advance(seconds=1801)

        with pytest.raises(SessionExpired):
            engine.submit_answer(session.session_id, question.question_id, question.answer)
        assert session.status == "expired"
        assert store.get("learner-1").sessions_completed == 0
        assert engine.get_active_session("learner-1") is None

    def test_expired_is_session_not_found(self, engine, learner, clock):
        """Test SessionExpired can be handled as SessionNotFound."""
        session = start(engine)
        clock.advance(hours=1)
        with pytest.raises(SessionNotFound):
            engine.next_question(session.session_id)

    def test_sweep_expires_idle_sessions(self, engine, learner, clock):
        """Test the external sweep expires idle sessions."""
        session = start(engine)
        clock.advance(seconds=1800)
        assert engine.expire_idle_sessions() == []
        clock.advance(seconds=1)
        assert engine.expire_idle_sessions() == [session.session_id]
        assert session.status == "expired"

    def test_sweep_skips_session_with_submission_in_flight(self, engine, learner, clock):
        """Test the sweep leaves a session alone while an answer is being submitted."""
        session = start(engine)
        clock.advance(seconds=1801)
        session.submit_lock.acquire()
        try:
            assert engine.expire_idle_sessions() == []
            assert engine.get_active_session("learner-1") is session
            assert session.status == "active"
        finally:
            session.submit_lock.release()

        assert engine.expire_idle_sessions() == [session.session_id]

    def test_submission_after_sweep_wins_race(self, engine, learner, clock, store, monkeypatch):
        """Test a sweep landing between lookup and claim makes the submission raise SessionExpired."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        claim = engine.sessions.claim_submission

        def claim_after_sweep(s):
            clock.advance(seconds=1801)
            assert engine.expire_idle_sessions() == [s.session_id]
            claim(s)

        monkeypatch.setattr(engine.sessions, "claim_submission", claim_after_sweep)

        with pytest.raises(SessionExpired):
            engine.submit_answer(session.session_id, question.question_id, question.answer)
        assert session.answers == []
        assert store.get("learner-1").questions_answered == 0
        assert store.get("learner-1").token_balance == 0
        assert not session.submit_lock.locked()


class TestTimeOnTask:
    """Test daily time accounting and time milestones."""

    def test_latency_accrues_and_pays_milestone(self, engine, learner, store, clock):
        """Test ten minutes of capped answer time pays the 10-minute bonus."""
        session = start(engine)
        answer_next(engine, session.session_id, correct=False, latency_ms=400_000)
        answer_next(engine, session.session_id, correct=False, latency_ms=300_000)

        profile = store.get("learner-1")
        assert profile.time_on_task_seconds("2026-01-05") == 600
        assert profile.token_balance == 5
        assert profile.has_credited("time:2026-01-05:10")

    def test_idle_time_used_without_latency(self, engine, learner, store, clock):
        """Test time since the last activity counts when latency is absent."""
        session = start(engine)
        question = engine.next_question(session.session_id)
        clock.advance(seconds=45)
        engine.submit_answer(session.session_id, question.question_id, question.answer)
        assert store.get("learner-1").time_on_task_seconds("2026-01-05") == 45

    def test_milestone_once_per_day(self, engine, learner, store, clock):
        """Test a new day can pay the same milestone again."""
        session = start(engine)
        answer_next(engine, session.session_id, correct=False, latency_ms=300_000)
        answer_next(engine, session.session_id, correct=False, latency_ms=300_000)
        engine.abandon_session(session.session_id)

        clock.advance(days=1)
        session = start(engine)
        answer_next(engine, session.session_id, correct=False, latency_ms=300_000)
        answer_next(engine, session.session_id, correct=False, latency_ms=300_000)

        assert store.get("learner-1").token_balance == 10


class TestBankFixture:
    def test_bank_shape(self):
        """Test the shared bank covers every grade and concept."""
        bank = make_bank()
        assert len(bank) == 7 * 3 * 10
        assert bank.concepts() == ["addition", "fractions", "subtraction"]
