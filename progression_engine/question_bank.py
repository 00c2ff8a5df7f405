"""
Question bank adapter.

The engine never writes question content; it asks a bank for questions at a
grade, optionally narrowed to a concept, excluding ids it has already served.
"""

from __future__ import annotations

import json
import random
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from loguru import logger

from .models.grade import Grade
from .models.question import Question


@runtime_checkable
class QuestionBank(Protocol):
    """Anything that can supply questions to the engine."""

    def next_questions(
        self,
        grade: Grade,
        concept: Optional[str],
        exclude_ids: Iterable[str],
        count: int,
    ) -> List[Question]:
        ...


class InMemoryQuestionBank:
    """
    Question bank held in memory.

    Results are shuffled with a private random generator so a seeded bank
    returns the same order on every run.
    """

    def __init__(self, questions: Iterable[Question] = (), seed: Optional[int] = None):
        self._questions: Dict[str, Question] = {}
        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        for question in questions:
            self.add(question)

    def add(self, question: Question) -> None:
        with self._lock:
            self._questions[question.question_id] = question

    def get(self, question_id: str) -> Optional[Question]:
        return self._questions.get(question_id)

    def concepts(self) -> List[str]:
        return sorted({c for q in self._questions.values() for c in q.concepts})

    def __len__(self) -> int:
        return len(self._questions)

    def next_questions(
        self,
        grade: Grade,
        concept: Optional[str],
        exclude_ids: Iterable[str],
        count: int,
    ) -> List[Question]:
        """
        Pick up to `count` questions for a grade.

        Args:
            grade: Grade the questions must be written for
            concept: Restrict to questions exercising this concept (any if None)
            exclude_ids: Question ids that must not be returned
            count: Maximum number of questions

        Returns:
            Up to `count` matching questions (possibly fewer, possibly none)
        """
        grade = Grade.parse(grade)
        excluded = set(exclude_ids)
        candidates = [
            q
            for q in self._questions.values()
            if q.grade == grade
            and q.question_id not in excluded
            and (concept is None or concept in q.concepts)
        ]
        with self._lock:
            self._rng.shuffle(candidates)
        return candidates[: max(0, count)]

    @classmethod
    def from_json(cls, filepath: Path | str, seed: Optional[int] = None) -> InMemoryQuestionBank:
        """
        Load a bank from a JSON file holding a list of question objects.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If an entry is not a valid question
        """
        with open(filepath, "r", encoding="utf-8") as f:
            entries = json.load(f)
        bank = cls((Question.from_dict(entry) for entry in entries), seed=seed)
        logger.info(f"Loaded {len(bank)} questions from {filepath}")
        return bank
