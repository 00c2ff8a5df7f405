"""
Shared pytest fixtures and configuration for progression engine tests.

This file is automatically discovered by pytest and provides
fixtures available to all tests.
"""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from loguru import logger

# Add the project root to path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent))

from progression_engine.config import config
from progression_engine.models.grade import Grade
from progression_engine.models.question import Question
from progression_engine.orchestrator import PracticeEngine
from progression_engine.question_bank import InMemoryQuestionBank
from progression_engine.utils.persistence import InMemoryProfileStore

CONCEPTS = ("addition", "subtraction", "fractions")
QUESTIONS_PER_CONCEPT = 10


class FakeClock:
    """Deterministic clock; call it to read the time, advance it by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FailingSaveStore(InMemoryProfileStore):
    """In-memory store whose next save can be made to raise once."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def fail_next_save(self):
        self.failures += 1

    def save(self, profile):
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        super().save(profile)


def make_question(grade, concept, index, difficulty=None):
    """Question whose answer is a number derived from its position."""
    grade = Grade.parse(grade)
    return Question(
        question_id=f"g{grade.label}-{concept}-{index}",
        grade=grade,
        concepts=(concept,),
        difficulty=difficulty or (index % 5) + 1,
        answer=str(int(grade) * 100 + index),
        prompt=f"{concept} question {index} for grade {grade.label}",
    )


def make_bank(per_concept=QUESTIONS_PER_CONCEPT, grades=tuple(Grade), concepts=CONCEPTS, seed=7):
    return InMemoryQuestionBank(
        (make_question(g, c, i) for g in grades for c in concepts for i in range(per_concept)),
        seed=seed,
    )


@pytest.fixture(autouse=True)
def reset_config():
    """
    Auto-fixture to restore config defaults around each test.

    This ensures option overrides in one test don't leak into another.
    """
    config.reset()
    yield
    config.reset()


@pytest.fixture
def clock():
    """Fake clock starting at a fixed UTC instant."""
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def bank():
    """Seeded in-memory bank covering every grade and three concepts."""
    return make_bank()


@pytest.fixture
def store():
    return InMemoryProfileStore()


@pytest.fixture
def engine(store, bank, clock):
    """Engine wired to the in-memory store, seeded bank and fake clock."""
    return PracticeEngine(store=store, bank=bank, clock=clock)


@pytest.fixture
def learner(engine):
    """A registered grade-3 learner."""
    return engine.register_learner("learner-1", display_name="Ada", grade="3")


@pytest.fixture
def temp_schema_file(tmp_path):
    """
    Fixture providing a temporary schema file for testing.

    Returns:
        Path: Path to temporary schema file
    """
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {"test": {"type": "string"}},
        "required": ["test"],
    }
    schema_file = tmp_path / "test.schema.json"
    schema_file.write_text(json.dumps(schema), encoding="utf-8")
    return schema_file


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


# Pytest hooks for better test output


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark tests in unit/ directory as unit tests
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Mark tests in integration/ directory as integration tests
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
