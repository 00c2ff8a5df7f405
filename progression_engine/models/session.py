"""
Practice and assessment sessions.

A session owns the ordered questions served to a learner, the append-only
answer records, the running streak and its lifecycle status.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional

from ..errors import InvalidAnswerFormat
from .grade import Grade
from .question import Question

SessionKind = Literal["assessment", "practice"]
SessionStatus = Literal["active", "completed", "abandoned", "expired"]
TargetType = Literal["questions", "duration"]
PlacementOutcome = Literal["placed", "ceiling_reached", "floored"]


@dataclass(frozen=True)
class AnswerRecord:
    """
    One submitted answer. Never mutated after creation.

    Attributes:
        session_id: Session the answer belongs to
        question_id: Question answered
        submitted_value: Learner's response as submitted
        is_correct: Grading result
        latency_ms: Time taken to answer, if reported
        timestamp: When the answer was recorded
    """

    session_id: str
    question_id: str
    submitted_value: str
    is_correct: bool
    latency_ms: Optional[int]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "question_id": self.question_id,
            "submitted_value": self.submitted_value,
            "is_correct": self.is_correct,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PracticeConfig:
    """
    What a practice session aims for.

    Attributes:
        target_type: "questions" (fixed count) or "duration" (seconds)
        target_value: Question count or duration in seconds
        concept: Optional concept to focus on
        module: Reward module whose rules apply
    """

    target_type: TargetType = "questions"
    target_value: int = 20
    concept: Optional[str] = None
    module: Optional[str] = None

    def __post_init__(self):
        if self.target_type not in ("questions", "duration"):
            raise ValueError(f"target_type must be 'questions' or 'duration', got {self.target_type!r}")
        if isinstance(self.target_value, bool) or not isinstance(self.target_value, int):
            raise ValueError(f"target_value must be an integer, got {self.target_value!r}")
        if self.target_value <= 0:
            raise ValueError(f"target_value must be > 0, got {self.target_value}")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> PracticeConfig:
        """Build from {targetType, targetValue, concept?, module?} (snake_case also accepted)."""
        return cls(
            target_type=options.get("targetType", options.get("target_type", "questions")),
            target_value=options.get("targetValue", options.get("target_value", 20)),
            concept=options.get("concept"),
            module=options.get("module"),
        )


@dataclass
class SessionSummary:
    """Outcome of a finished session, handed to the reward calculator."""

    session_id: str
    correct: int
    total: int
    elapsed_seconds: float
    expected_question_count: Optional[int] = None

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "correct": self.correct,
            "total": self.total,
            "accuracy": round(self.accuracy, 4),
            "elapsed_seconds": round(self.elapsed_seconds, 1),
        }


@dataclass
class AnswerOutcome:
    """Result of submit_answer."""

    session_id: str
    question_id: str
    is_correct: bool
    correct_answer: str
    streak: int
    streak_milestones: List[int] = field(default_factory=list)
    tokens_awarded: int = 0
    session_completed: bool = False
    summary: Optional[SessionSummary] = None
    duplicate: bool = False


@dataclass
class PlacementResult:
    """Final placement of a grade assessment."""

    session_id: str
    starting_grade: Grade
    final_grade: Grade
    outcome: PlacementOutcome
    passed_grades: List[Grade]
    probes_answered: int
    probes_correct: int
    tokens_awarded: int = 0

    @property
    def ceiling_reached(self) -> bool:
        return self.outcome == "ceiling_reached"

    def to_history_entry(self, timestamp: datetime) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "timestamp": timestamp.isoformat(),
            "starting_grade": self.starting_grade.label,
            "final_grade": self.final_grade.label,
            "outcome": self.outcome,
            "probes_answered": self.probes_answered,
            "probes_correct": self.probes_correct,
        }


@dataclass
class ProbeResult:
    """Either the next probe to present or the final placement."""

    is_correct: bool
    next_probe: Optional[Question] = None
    result: Optional[PlacementResult] = None
    duplicate: bool = False

    @property
    def finished(self) -> bool:
        return self.result is not None


class Session:
    """
    One practice session for one learner.

    Lifecycle: active -> completed | abandoned | expired.
    """

    kind: SessionKind = "practice"
    id_prefix = "ps"

    def __init__(
        self,
        learner_id: str,
        grade: Grade,
        started_at: datetime,
        target: Optional[PracticeConfig] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or f"{self.id_prefix}-{uuid.uuid4()}"
        self.learner_id = learner_id
        self.grade = grade
        self.target = target or PracticeConfig()
        self.started_at = started_at
        self.last_activity_at = started_at
        self.completed_at: Optional[datetime] = None
        self.status: SessionStatus = "active"

        self.served: List[Question] = []
        self.pending_ids: List[str] = []
        self.answers: List[AnswerRecord] = []
        self.outcomes: Dict[str, AnswerOutcome] = {}

        self.streak = 0
        self.best_streak = 0
        self.awarded_streak_milestones: set[int] = set()
        self.summary: Optional[SessionSummary] = None

        # Serializes answer submission for this session
        self.submit_lock = threading.Lock()
        # Set when an answer was recorded but the profile save after it failed
        self.unsaved = False

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def served_ids(self) -> List[str]:
        return [q.question_id for q in self.served]

    @property
    def questions_answered(self) -> int:
        return len(self.answers)

    @property
    def correct_count(self) -> int:
        return sum(1 for a in self.answers if a.is_correct)

    def find_served(self, question_id: str) -> Optional[Question]:
        return next((q for q in reversed(self.served) if q.question_id == question_id), None)

    def is_pending(self, question_id: str) -> bool:
        return question_id in self.pending_ids

    def pending_questions(self) -> List[Question]:
        """Served questions still waiting for an answer, oldest first."""
        return [self.find_served(qid) for qid in self.pending_ids]

    def elapsed_seconds(self, now: datetime) -> float:
        end = self.completed_at or now
        return max(0.0, (end - self.started_at).total_seconds())

    def idle_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.last_activity_at).total_seconds())

    def serve(self, questions: List[Question], now: datetime) -> None:
        self.served.extend(questions)
        self.pending_ids.extend(q.question_id for q in questions)
        self.last_activity_at = now

    def record(self, answer: AnswerRecord) -> None:
        """Append an answer and advance the streak."""
        self.answers.append(answer)
        self.pending_ids.remove(answer.question_id)
        self.last_activity_at = answer.timestamp
        if answer.is_correct:
            self.streak += 1
            self.best_streak = max(self.best_streak, self.streak)
        else:
            self.streak = 0

    def target_met(self, now: datetime) -> bool:
        if self.target.target_type == "questions":
            return self.questions_answered >= self.target.target_value
        return self.elapsed_seconds(now) >= self.target.target_value

    def finish(self, status: SessionStatus, now: datetime) -> None:
        self.status = status
        self.completed_at = now

    def build_summary(self, now: datetime, expected_question_count: Optional[int] = None) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            correct=self.correct_count,
            total=self.questions_answered,
            elapsed_seconds=self.elapsed_seconds(now),
            expected_question_count=expected_question_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary view of the session, as reported in learner summaries."""
        return {
            "session_id": self.session_id,
            "learner_id": self.learner_id,
            "kind": self.kind,
            "grade": self.grade.label,
            "status": self.status,
            "target": {
                "target_type": self.target.target_type,
                "target_value": self.target.target_value,
                "concept": self.target.concept,
                "module": self.target.module,
            },
            "started_at": self.started_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "served_question_ids": self.served_ids,
            "pending_question_ids": list(self.pending_ids),
            "answers": [a.to_dict() for a in self.answers],
            "streak": self.streak,
            "best_streak": self.best_streak,
            "summary": self.summary.to_dict() if self.summary else None,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(id={self.session_id}, learner={self.learner_id}, "
            f"status={self.status}, answered={self.questions_answered})"
        )


class AssessmentState(Session):
    """
    Grade placement session.

    Probes a fixed number of questions per grade, moving up on a clean pass
    and stopping at the first miss.
    """

    kind: SessionKind = "assessment"
    id_prefix = "as"

    def __init__(
        self,
        learner_id: str,
        starting_grade: Grade,
        ceiling: Grade,
        started_at: datetime,
        probes_per_grade: int = 2,
        concept: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        super().__init__(
            learner_id=learner_id,
            grade=starting_grade,
            started_at=started_at,
            target=PracticeConfig(target_type="questions", target_value=probes_per_grade, concept=concept),
            session_id=session_id,
        )
        self.starting_grade = starting_grade
        self.ceiling = ceiling
        self.current_probe_grade = starting_grade
        self.probes_per_grade = probes_per_grade
        self.consecutive_pass_count = 0
        self.consecutive_fail_count = 0
        self.passed_grades: List[Grade] = []
        self.result: Optional[PlacementResult] = None

    def pass_level(self) -> bool:
        """Whether the current probe grade has been answered cleanly."""
        return self.consecutive_pass_count >= self.probes_per_grade

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "starting_grade": self.starting_grade.label,
                "current_probe_grade": self.current_probe_grade.label,
                "consecutive_pass_count": self.consecutive_pass_count,
                "consecutive_fail_count": self.consecutive_fail_count,
                "passed_grades": [g.label for g in self.passed_grades],
                "final_grade": self.result.final_grade.label if self.result else None,
            }
        )
        return data


def normalize_submission(answer: Any, latency_ms: Any = None) -> tuple[str, Optional[int]]:
    """
    Validate a raw submission.

    Returns:
        (answer_text, latency_ms)

    Raises:
        InvalidAnswerFormat: If the answer is empty or not a scalar, or latency is invalid
    """
    if answer is None or isinstance(answer, bool) or not isinstance(answer, (str, int, float)):
        raise InvalidAnswerFormat(f"Answer must be a string or number, got {type(answer).__name__}")
    text = str(answer).strip()
    if not text:
        raise InvalidAnswerFormat("Answer cannot be empty")

    if latency_ms is not None:
        if isinstance(latency_ms, bool) or not isinstance(latency_ms, (int, float)):
            raise InvalidAnswerFormat(f"Latency must be a number, got {latency_ms!r}")
        if latency_ms < 0:
            raise InvalidAnswerFormat(f"Latency cannot be negative: {latency_ms}")
        latency_ms = int(latency_ms)

    return text, latency_ms
