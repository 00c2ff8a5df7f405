"""
Error taxonomy for the progression engine.

Recoverable conditions (a conflicting active session) carry enough context
for the caller to offer resume/abandon. Stale or replayed requests are
rejected rather than silently re-applied.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class SessionConflict(EngineError):
    """The learner already holds an active session."""

    def __init__(self, learner_id: str, session_id: str, age_seconds: float, kind: str = "practice"):
        self.learner_id = learner_id
        self.session_id = session_id
        self.age_seconds = age_seconds
        self.kind = kind
        super().__init__(
            f"Learner {learner_id} already has an active {kind} session "
            f"{session_id} (started {age_seconds:.0f}s ago)"
        )


class SessionNotFound(EngineError):
    """No session with the given id is known to the engine."""

    def __init__(self, session_id: str, message: Optional[str] = None):
        self.session_id = session_id
        super().__init__(message or f"Session {session_id} not found")


class SessionExpired(SessionNotFound):
    """The session timed out after inactivity and can no longer accept answers."""

    def __init__(self, session_id: str, idle_seconds: float):
        self.idle_seconds = idle_seconds
        super().__init__(
            session_id, f"Session {session_id} expired after {idle_seconds:.0f}s of inactivity"
        )


class SessionAlreadyCompleted(EngineError):
    """The session is no longer active (completed or abandoned)."""

    def __init__(self, session_id: str, status: str = "completed"):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is already {status}")


class InvalidAnswerFormat(EngineError, ValueError):
    """A malformed submission. No state is mutated."""


class SubmissionInProgress(EngineError):
    """Another answer for the same session is still being processed."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"An answer for session {session_id} is already being processed")


class QuestionPoolExhausted(EngineError):
    """The question bank cannot supply any question, even with exclusions relaxed."""

    def __init__(self, grade: str, concept: Optional[str] = None):
        self.grade = grade
        self.concept = concept
        scope = f"grade {grade}" + (f", concept '{concept}'" if concept else "")
        super().__init__(f"No questions available for {scope}")


class ProfileNotFound(EngineError):
    """No learner profile exists for the given id."""

    def __init__(self, learner_id: str):
        self.learner_id = learner_id
        super().__init__(f"Learner profile {learner_id} not found")
