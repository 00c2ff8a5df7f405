"""
Question supplied by the question bank, and answer grading.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .grade import Grade


@dataclass(frozen=True)
class Question:
    """
    A practice or probe question.

    Attributes:
        question_id: Unique identifier within the bank
        grade: Grade the question is written for
        concepts: Concepts the question exercises
        difficulty: Difficulty from 1 (easiest) to 5
        answer: Expected answer
        prompt: Question text
        options: Multiple-choice options (empty for free entry)
    """

    question_id: str
    grade: Grade
    concepts: tuple = ()
    difficulty: int = 1
    answer: str = ""
    prompt: str = ""
    options: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "grade", Grade.parse(self.grade))
        object.__setattr__(self, "concepts", tuple(self.concepts))
        object.__setattr__(self, "options", tuple(self.options))
        if not (1 <= self.difficulty <= 5):
            raise ValueError(f"difficulty must be in [1, 5], got {self.difficulty}")

    @property
    def primary_concept(self) -> Optional[str]:
        return self.concepts[0] if self.concepts else None

    def is_correct(self, submitted: Any) -> bool:
        """Check a submitted answer against the expected answer."""
        return answers_match(submitted, self.answer)

    def to_dict(self, include_answer: bool = False) -> Dict[str, Any]:
        """Convert to dictionary (the answer is omitted unless requested)."""
        data = {
            "question_id": self.question_id,
            "grade": self.grade.label,
            "concepts": list(self.concepts),
            "difficulty": self.difficulty,
            "prompt": self.prompt,
            "options": list(self.options),
        }
        if include_answer:
            data["answer"] = self.answer
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            question_id=str(data["question_id"]),
            grade=Grade.parse(data["grade"]),
            concepts=tuple(data.get("concepts", [])),
            difficulty=int(data.get("difficulty", 1)),
            answer=str(data.get("answer", "")),
            prompt=data.get("prompt", ""),
            options=tuple(data.get("options", [])),
        )


def _normalize(value: Any) -> str:
    return " ".join(str(value).split()).casefold()


def answers_match(submitted: Any, expected: Any) -> bool:
    """
    Compare answers ignoring surrounding whitespace and case.

    Numeric answers compare by value, so "4.0" matches "4".
    """
    left, right = _normalize(submitted), _normalize(expected)
    if left == right:
        return True
    try:
        return float(left) == float(right)
    except ValueError:
        return False


@dataclass
class QuestionBatch:
    """Questions returned for one request, with how far exclusions were relaxed."""

    questions: List[Question] = field(default_factory=list)
    relaxation: str = "none"  # none / session_only / all
