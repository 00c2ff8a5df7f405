"""
Learner Profile: grade, token balance, lifetime counters and concept mastery.

This module provides the learner document the engine reads and mutates:
- Profile creation with schema validation
- Per-concept mastery records
- Exactly-once token crediting keyed by reward event
- Duplicate-avoidance history of served questions
- Daily time-on-task accounting
- JSON persistence

Thread-safe: all mutations acquire the profile's lock.
"""

from __future__ import annotations

import json
import threading
import uuid
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from jsonschema import ValidationError

from .grade import Grade

LearningStyle = Literal["visual", "auditory", "reading_writing", "kinesthetic"]
Pace = Literal["slow", "moderate", "fast"]

MAX_CREDITED_EVENTS = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class ConceptMastery:
    """
    Mastery estimate for one concept.

    Attributes:
        concept: Concept name
        mastery_level: 0-100 confidence estimate
        total_attempts: Answers recorded for this concept
        correct_attempts: Correct answers recorded
        last_practiced_at: Time of the most recent answer
        average_latency_ms: Running mean answer latency
    """

    concept: str
    mastery_level: float = 50.0
    total_attempts: int = 0
    correct_attempts: int = 0
    last_practiced_at: Optional[datetime] = None
    average_latency_ms: Optional[float] = None

    @property
    def accuracy(self) -> float:
        """Fraction of correct attempts (0 when never attempted)."""
        if self.total_attempts == 0:
            return 0.0
        return self.correct_attempts / self.total_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept": self.concept,
            "mastery_level": round(self.mastery_level, 2),
            "total_attempts": self.total_attempts,
            "correct_attempts": self.correct_attempts,
            "last_practiced_at": self.last_practiced_at.isoformat() if self.last_practiced_at else None,
            "average_latency_ms": (
                round(self.average_latency_ms, 1) if self.average_latency_ms is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ConceptMastery:
        return cls(
            concept=data["concept"],
            mastery_level=float(data.get("mastery_level", 50.0)),
            total_attempts=int(data.get("total_attempts", 0)),
            correct_attempts=int(data.get("correct_attempts", 0)),
            last_practiced_at=_parse_ts(data.get("last_practiced_at")),
            average_latency_ms=data.get("average_latency_ms"),
        )


class LearnerProfile:
    """
    Learner document owned by the engine's persistence boundary.

    Mutated only through the Session Coordinator, Mastery Aggregator and
    Reward Calculator. Never deleted by the engine.
    """

    _validator = None

    def __init__(
        self,
        learner_id: Optional[str] = None,
        display_name: str = "Anonymous Learner",
        grade: Grade | str | int = Grade.K,
        learning_style: LearningStyle = "visual",
        token_balance: int = 0,
        validate: bool = True,
    ):
        """
        Initialize a new learner profile.

        Args:
            learner_id: Unique identifier (auto-generated if None)
            display_name: Learner's name
            grade: Starting grade
            learning_style: Non-authoritative style tag
            token_balance: Opening token balance
            validate: Whether to validate on creation
        """
        self._lock = threading.RLock()
        self._data = self._create_default_profile(
            learner_id or self._generate_id(),
            display_name,
            Grade.parse(grade),
            learning_style,
            token_balance,
        )
        if validate:
            self._validate()

    @staticmethod
    def _generate_id() -> str:
        """Generate unique learner ID."""
        return f"learner-{uuid.uuid4()}"

    @classmethod
    def _get_validator(cls):
        """Get cached validator instance."""
        if cls._validator is None:
            from ..utils.validation import LearnerProfileValidator

            cls._validator = LearnerProfileValidator()
        return cls._validator

    def _create_default_profile(
        self,
        learner_id: str,
        display_name: str,
        grade: Grade,
        learning_style: LearningStyle,
        token_balance: int,
    ) -> dict:
        """Create a default profile structure."""
        now = _utc_now().isoformat()
        return {
            "meta": {
                "schema_version": 1,
                "created_at": now,
                "last_updated": now,
            },
            "learner_id": learner_id,
            "display_name": display_name,
            "grade": grade.label,
            "token_balance": token_balance,
            "learning_style": learning_style,
            "pace": "moderate",
            "lifetime": {
                "questions_answered": 0,
                "correct_answers": 0,
                "sessions_completed": 0,
                "assessments_completed": 0,
            },
            "concept_mastery": {},
            "recent_question_ids": [],
            "time_on_task": {},
            "credited_events": [],
            "assessment_history": [],
        }

    def _validate(self) -> None:
        """
        Validate profile against schema.

        Raises:
            ValidationError: If profile is invalid
        """
        result = self._get_validator().validate(self._data)
        if not result.valid:
            raise ValidationError("\n".join(result.errors))

    def _touch(self) -> None:
        self._data["meta"]["last_updated"] = _utc_now().isoformat()

    # ==================== Profile Access ====================

    @property
    def learner_id(self) -> str:
        return self._data["learner_id"]

    @property
    def display_name(self) -> str:
        return self._data["display_name"]

    @property
    def grade(self) -> Grade:
        return Grade.parse(self._data["grade"])

    @property
    def token_balance(self) -> int:
        return self._data["token_balance"]

    @property
    def learning_style(self) -> LearningStyle:
        return self._data["learning_style"]

    @property
    def pace(self) -> Pace:
        return self._data["pace"]

    @property
    def questions_answered(self) -> int:
        return self._data["lifetime"]["questions_answered"]

    @property
    def correct_answers(self) -> int:
        return self._data["lifetime"]["correct_answers"]

    @property
    def sessions_completed(self) -> int:
        return self._data["lifetime"]["sessions_completed"]

    @property
    def recent_question_ids(self) -> List[str]:
        return list(self._data["recent_question_ids"])

    @property
    def assessment_history(self) -> List[dict]:
        return deepcopy(self._data["assessment_history"])

    @property
    def lock(self) -> threading.RLock:
        """Per-learner lock; hold it to make read-modify-write sequences atomic."""
        return self._lock

    # ==================== Mutations ====================

    def set_grade(self, grade: Grade | str | int) -> None:
        with self._lock:
            self._data["grade"] = Grade.parse(grade).label
            self._touch()

    def set_learning_style(self, style: LearningStyle) -> None:
        with self._lock:
            self._data["learning_style"] = style
            self._touch()

    def set_pace(self, pace: Pace) -> None:
        with self._lock:
            if self._data["pace"] != pace:
                self._data["pace"] = pace
                self._touch()

    def has_credited(self, event_key: str) -> bool:
        with self._lock:
            return event_key in self._data["credited_events"]

    def credit_tokens(self, amount: int, event_key: str) -> Optional[Tuple[int, int]]:
        """
        Add tokens exactly once for a reward event.

        Args:
            amount: Tokens to add (>= 0)
            event_key: Unique key of the qualifying event

        Returns:
            (balance_before, balance_after), or None if the event was already credited
        """
        if amount < 0:
            raise ValueError(f"Token amount cannot be negative: {amount}")
        with self._lock:
            events = self._data["credited_events"]
            if event_key in events:
                return None
            before = self._data["token_balance"]
            self._data["token_balance"] = before + amount
            events.append(event_key)
            if len(events) > MAX_CREDITED_EVENTS:
                del events[: len(events) - MAX_CREDITED_EVENTS]
            self._touch()
            return before, self._data["token_balance"]

    def record_answer_totals(self, is_correct: bool) -> None:
        with self._lock:
            lifetime = self._data["lifetime"]
            lifetime["questions_answered"] += 1
            if is_correct:
                lifetime["correct_answers"] += 1
            self._touch()

    def record_session_completed(self) -> None:
        with self._lock:
            self._data["lifetime"]["sessions_completed"] += 1
            self._touch()

    def record_assessment(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._data["assessment_history"].append(dict(entry))
            self._data["lifetime"]["assessments_completed"] += 1
            self._touch()

    def get_concept_mastery(self, concept: str) -> Optional[ConceptMastery]:
        with self._lock:
            data = self._data["concept_mastery"].get(concept)
            return ConceptMastery.from_dict(data) if data else None

    def put_concept_mastery(self, mastery: ConceptMastery) -> None:
        with self._lock:
            self._data["concept_mastery"][mastery.concept] = mastery.to_dict()
            self._touch()

    def all_concept_mastery(self) -> Dict[str, ConceptMastery]:
        with self._lock:
            return {
                concept: ConceptMastery.from_dict(data)
                for concept, data in self._data["concept_mastery"].items()
            }

    def remember_served(self, question_ids: List[str], limit: int) -> None:
        """Append served question ids to the bounded recent-history tail."""
        with self._lock:
            recent = self._data["recent_question_ids"]
            for qid in question_ids:
                if qid in recent:
                    recent.remove(qid)
                recent.append(qid)
            if len(recent) > limit:
                del recent[: len(recent) - limit]
            self._touch()

    def time_on_task_seconds(self, day: str) -> float:
        with self._lock:
            return self._data["time_on_task"].get(day, 0.0)

    def add_time_on_task(self, day: str, seconds: float) -> Tuple[float, float]:
        """
        Accrue time on task for a calendar day.

        Returns:
            (seconds_before, seconds_after) for that day
        """
        with self._lock:
            before = self._data["time_on_task"].get(day, 0.0)
            after = round(before + max(0.0, seconds), 3)
            self._data["time_on_task"][day] = after
            self._touch()
            return before, after

    # ==================== Persistence ====================

    def to_dict(self) -> dict:
        """Export profile as dictionary (deep copy to prevent mutations)."""
        with self._lock:
            return deepcopy(self._data)

    @classmethod
    def from_dict(cls, data: dict, validate: bool = True) -> LearnerProfile:
        """
        Build a profile from a stored document.

        Raises:
            ValidationError: If validate is True and the document is invalid
        """
        instance = cls.__new__(cls)
        instance._lock = threading.RLock()
        instance._data = deepcopy(data)
        if validate:
            instance._validate()
        return instance

    def save(self, filepath: Path) -> Path:
        """
        Save profile to a JSON file (validated first).

        Args:
            filepath: Destination path

        Returns:
            Path where profile was saved
        """
        with self._lock:
            self._validate()
            filepath = Path(filepath)
            filepath.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = filepath.with_suffix(filepath.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            tmp_path.replace(filepath)
            return filepath

    @classmethod
    def load(cls, filepath: Path) -> LearnerProfile:
        """
        Load profile from JSON file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValidationError: If profile is invalid
        """
        with open(filepath, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    def __repr__(self) -> str:
        return (
            f"LearnerProfile(id={self.learner_id}, "
            f"grade={self.grade.label}, "
            f"tokens={self.token_balance}, "
            f"concepts={len(self._data['concept_mastery'])})"
        )
