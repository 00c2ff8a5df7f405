"""
Adaptive practice and progression engine.

Grade placement, practice sessions, concept mastery, token rewards and
ranked recommendations for an educational practice platform.
"""

from .config import config
from .errors import (
    EngineError,
    InvalidAnswerFormat,
    ProfileNotFound,
    QuestionPoolExhausted,
    SessionAlreadyCompleted,
    SessionConflict,
    SessionExpired,
    SessionNotFound,
    SubmissionInProgress,
)
from .log import configure_logging
from .models import (
    ConceptMastery,
    Grade,
    LearnerProfile,
    PracticeConfig,
    Question,
    Recommendation,
)
from .question_bank import InMemoryQuestionBank, QuestionBank
from .utils.persistence import InMemoryProfileStore, JsonProfileStore, ProfileStore
from .orchestrator import PracticeEngine

__version__ = "0.1.0"

__all__ = [
    "config",
    "configure_logging",
    "EngineError",
    "InvalidAnswerFormat",
    "ProfileNotFound",
    "QuestionPoolExhausted",
    "SessionAlreadyCompleted",
    "SessionConflict",
    "SessionExpired",
    "SessionNotFound",
    "SubmissionInProgress",
    "ConceptMastery",
    "Grade",
    "LearnerProfile",
    "PracticeConfig",
    "Question",
    "Recommendation",
    "InMemoryQuestionBank",
    "QuestionBank",
    "InMemoryProfileStore",
    "JsonProfileStore",
    "ProfileStore",
    "PracticeEngine",
]
