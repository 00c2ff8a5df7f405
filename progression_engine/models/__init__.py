"""
Data models for the progression engine.

- Grade: ordered grade levels K..6
- Question: bank-supplied question with answer grading
- LearnerProfile / ConceptMastery: learner document and per-concept mastery
- Session / AssessmentState: practice and placement sessions
- Recommendation: ranked next-question suggestion
"""

from .grade import Grade
from .question import Question, QuestionBatch, answers_match
from .learner_profile import ConceptMastery, LearnerProfile
from .session import (
    AnswerOutcome,
    AnswerRecord,
    AssessmentState,
    PlacementResult,
    PracticeConfig,
    ProbeResult,
    Session,
    SessionSummary,
)
from .recommendation import Recommendation

__all__ = [
    "Grade",
    "Question",
    "QuestionBatch",
    "answers_match",
    "ConceptMastery",
    "LearnerProfile",
    "AnswerOutcome",
    "AnswerRecord",
    "AssessmentState",
    "PlacementResult",
    "PracticeConfig",
    "ProbeResult",
    "Session",
    "SessionSummary",
    "Recommendation",
]
