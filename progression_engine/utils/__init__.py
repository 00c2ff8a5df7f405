"""Utility modules for the progression engine."""

from .validation import (
    LearnerProfileValidator,
    SchemaValidator,
    ValidationResult,
    validate_learner_profile,
)
from .persistence import InMemoryProfileStore, JsonProfileStore, ProfileStore
from .progress import mastery_by_category, mastery_histogram, mastery_summary

__all__ = [
    "LearnerProfileValidator",
    "SchemaValidator",
    "ValidationResult",
    "validate_learner_profile",
    "InMemoryProfileStore",
    "JsonProfileStore",
    "ProfileStore",
    "mastery_by_category",
    "mastery_histogram",
    "mastery_summary",
]
