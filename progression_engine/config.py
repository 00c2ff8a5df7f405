"""
Configuration management for the progression engine.

This module centralizes all tunable settings:
- Reward rules per practice module (token groups, perfect bonus, milestones)
- Session lifecycle limits (inactivity TTL, duplicate-avoidance tail)
- Mastery smoothing constants
- Recommendation thresholds and score weights
- Grade ceiling and token thresholds for grade advancement
- Environment overrides loaded from a .env file
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv
from jsonschema import Draft7Validator

from .models.grade import Grade

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class RewardRules:
    """
    Token rules for one practice module.

    Attributes:
        group_size: Correct answers needed per token group
        tokens_per_group: Tokens paid per completed group
        perfect_bonus: Bonus for a perfect session of expected length
        expected_question_count: Session length that qualifies for the bonus
        streak_bonuses: Streak milestone -> bonus tokens
        time_bonuses: Daily minutes milestone -> bonus tokens
    """

    group_size: int = 5
    tokens_per_group: int = 3
    perfect_bonus: int = 20
    expected_question_count: int = 20
    streak_bonuses: Dict[int, int] = field(
        default_factory=lambda: {3: 2, 5: 5, 10: 10, 20: 20}
    )
    time_bonuses: Dict[int, int] = field(
        default_factory=lambda: {10: 5, 20: 10, 30: 15}
    )

    @property
    def streak_milestones(self) -> Tuple[int, ...]:
        return tuple(sorted(self.streak_bonuses))

    @property
    def time_milestones(self) -> Tuple[int, ...]:
        return tuple(sorted(self.time_bonuses))


@dataclass
class RewardConfig:
    """Reward rules keyed by module, plus the assessment completion bonus."""

    assessment_bonus: int = field(
        default_factory=lambda: _env_int("ASSESSMENT_BONUS_TOKENS", 15)
    )
    default_module: str = "practice"
    token_milestones: Tuple[int, ...] = (100, 200, 500, 1000)
    modules: Dict[str, RewardRules] = field(
        default_factory=lambda: {
            "practice": RewardRules(),
            # 60-second rush: 3 tokens per 5 correct, 20 for a perfect run
            "rush": RewardRules(group_size=5, tokens_per_group=3, perfect_bonus=20),
            # 90-second rush pays less per group
            "rush_long": RewardRules(group_size=5, tokens_per_group=2, perfect_bonus=15),
            "facts": RewardRules(
                group_size=1, tokens_per_group=1, perfect_bonus=4, expected_question_count=6
            ),
        }
    )

    def rules_for(self, module: Optional[str] = None) -> RewardRules:
        """Get reward rules for a module, falling back to the default module."""
        return self.modules.get(module or self.default_module, self.modules[self.default_module])


@dataclass
class SessionConfig:
    """Session lifecycle configuration."""

    inactivity_ttl_seconds: int = field(
        default_factory=lambda: _env_int("SESSION_INACTIVITY_TTL_SECONDS", 30 * 60)
    )
    recent_history_size: int = 40  # Served ids remembered across sessions
    max_seconds_per_answer: int = 300  # Cap on time-on-task accrued per answer
    default_question_count: int = 20
    probes_per_grade: int = 2
    daily_goal_minutes: int = 20


@dataclass
class MasteryConfig:
    """Mastery smoothing configuration."""

    seed_level: float = 50.0
    k_initial: float = 0.5  # Swing on the first answer
    k_decay: float = 0.25  # How fast the swing shrinks with attempts
    k_floor: float = 0.08  # Minimum swing once the estimate is stable
    strength_threshold: float = 80.0
    weakness_threshold: float = 50.0
    general_concept: str = "general"
    fast_latency_ms: int = 4000
    slow_latency_ms: int = 12000


@dataclass
class RecommendationConfig:
    """Recommendation ranking configuration."""

    remediate_threshold: float = 40.0
    review_threshold: float = 70.0
    advance_threshold: float = 85.0
    spaced_repetition_interval_seconds: int = field(
        default_factory=lambda: _env_int("SPACED_REPETITION_INTERVAL_SECONDS", 3 * 24 * 3600)
    )
    challenge_gap: int = 1

    # Score weights (must sum to 1)
    urgency_weight: float = 0.7
    recency_weight: float = 0.2
    grade_fit_weight: float = 0.1

    urgency: Dict[str, float] = field(
        default_factory=lambda: {
            "remediate": 1.0,
            "review": 0.7,
            "reinforce": 0.5,
            "challenge": 0.4,
            "advance": 0.3,
        }
    )

    diversity_window: float = 0.05
    pool_size: int = 30


@dataclass
class GradeConfig:
    """Grade ceiling and token thresholds for grade advancement."""

    ceiling: int = field(default_factory=lambda: _env_int("GRADE_CEILING", 6))

    # Cumulative balance needed to leave each grade
    advancement_thresholds: Dict[str, int] = field(
        default_factory=lambda: {
            "K": 100,
            "1": 200,
            "2": 300,
            "3": 500,
            "4": 750,
            "5": 1000,
        }
    )


@dataclass
class PathConfig:
    """File system paths - single source of truth for all directories."""

    package_root: Path = field(default_factory=lambda: Path(__file__).parent)
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("PROGRESSION_DATA_DIR", "data")).resolve()
    )

    profiles_dir: Path = field(init=False)
    schemas_dir: Path = field(init=False)
    learner_profile_schema: Path = field(init=False)
    engine_options_schema: Path = field(init=False)

    def __post_init__(self):
        """Initialize computed paths."""
        self.profiles_dir = self.data_dir / "profiles"
        self.schemas_dir = self.package_root / "schemas"
        self.learner_profile_schema = self.schemas_dir / "learner_profile.schema.json"
        self.engine_options_schema = self.schemas_dir / "engine_options.schema.json"

    def prepare_filesystem(self):
        """
        Create data directories if they don't exist.

        Separated from __post_init__ to avoid side-effects on import.
        """
        for directory in [self.data_dir, self.profiles_dir]:
            directory.mkdir(parents=True, exist_ok=True)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = (
        "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan> - {message}"
    )


# camelCase option -> (section, attribute)
_OPTION_FIELDS = {
    "sessionInactivityTtlSeconds": ("session", "inactivity_ttl_seconds"),
    "remediateThreshold": ("recommendation", "remediate_threshold"),
    "reviewThreshold": ("recommendation", "review_threshold"),
    "advanceThreshold": ("recommendation", "advance_threshold"),
    "spacedRepetitionIntervalSeconds": ("recommendation", "spaced_repetition_interval_seconds"),
    "assessmentBonus": ("rewards", "assessment_bonus"),
    "ceilingGrade": ("grades", "ceiling"),
}

_RULE_FIELDS = {
    "groupSize": "group_size",
    "tokensPerGroup": "tokens_per_group",
    "perfectBonus": "perfect_bonus",
    "expectedQuestionCount": "expected_question_count",
}


class Config:
    """
    Main configuration class. Singleton pattern.

    Usage:
        from progression_engine.config import config

        ttl = config.session.inactivity_ttl_seconds
        rules = config.rewards.rules_for("rush")

        # Apply the external option surface
        config.apply_options({"groupSize": 5, "perfectBonus": 20})
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._init_sections()
        return cls._instance

    def _init_sections(self):
        self.paths = PathConfig()
        self.rewards = RewardConfig()
        self.session = SessionConfig()
        self.mastery = MasteryConfig()
        self.recommendation = RecommendationConfig()
        self.grades = GradeConfig()
        self.logging = LoggingConfig()

    def reset(self):
        """Restore every section to its defaults."""
        self._init_sections()

    def prepare_fs(self):
        """Prepare filesystem (create directories). Call once at startup."""
        self.paths.prepare_filesystem()

    def apply_options(self, options: Mapping[str, Any], module: Optional[str] = None) -> None:
        """
        Apply the camelCase option surface onto the config sections.

        Args:
            options: Recognized options (see engine_options.schema.json)
            module: Reward module the rule options apply to (default module if None)

        Raises:
            ValueError: If options fail schema validation
        """
        with open(self.paths.engine_options_schema, "r", encoding="utf-8") as f:
            schema = json.load(f)
        errors = [e.message for e in Draft7Validator(schema).iter_errors(dict(options))]
        if errors:
            raise ValueError("Invalid engine options: " + "; ".join(sorted(errors)))

        for key, (section, attr) in _OPTION_FIELDS.items():
            if key in options:
                setattr(getattr(self, section), attr, options[key])

        rules = self.rewards.rules_for(module)
        for key, attr in _RULE_FIELDS.items():
            if key in options:
                setattr(rules, attr, options[key])

        # Existing milestones keep their bonus; a new streak milestone pays its length,
        # a new time milestone pays half its minutes
        if "streakMilestones" in options:
            rules.streak_bonuses = {
                m: rules.streak_bonuses.get(m, m) for m in options["streakMilestones"]
            }
        if "timeMilestones" in options:
            rules.time_bonuses = {
                m: rules.time_bonuses.get(m, m // 2 or 1) for m in options["timeMilestones"]
            }
        if "gradeAdvancementTokenThresholds" in options:
            self.grades.advancement_thresholds = {
                Grade.parse(grade).label: int(value)
                for grade, value in options["gradeAdvancementTokenThresholds"].items()
            }

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        for name, rules in self.rewards.modules.items():
            if rules.group_size <= 0:
                errors.append(f"{name}: group_size must be > 0, got {rules.group_size}")
            if rules.tokens_per_group < 0:
                errors.append(f"{name}: tokens_per_group must be >= 0, got {rules.tokens_per_group}")
            if rules.perfect_bonus < 0:
                errors.append(f"{name}: perfect_bonus must be >= 0, got {rules.perfect_bonus}")
            if any(m <= 0 for m in rules.streak_bonuses):
                errors.append(f"{name}: streak milestones must be positive")
        if self.rewards.default_module not in self.rewards.modules:
            errors.append(f"Default reward module '{self.rewards.default_module}' is not configured")

        if self.session.inactivity_ttl_seconds <= 0:
            errors.append(
                f"inactivity_ttl_seconds must be > 0, got {self.session.inactivity_ttl_seconds}"
            )
        if self.session.probes_per_grade < 1:
            errors.append(f"probes_per_grade must be >= 1, got {self.session.probes_per_grade}")

        m = self.mastery
        if not (0 < m.k_initial <= 1):
            errors.append(f"k_initial must be in (0, 1], got {m.k_initial}")
        if not (0 < m.k_floor <= m.k_initial):
            errors.append(f"k_floor must be in (0, k_initial], got {m.k_floor}")
        if m.k_decay < 0:
            errors.append(f"k_decay must be >= 0, got {m.k_decay}")

        r = self.recommendation
        if not (0 <= r.remediate_threshold <= r.review_threshold <= r.advance_threshold <= 100):
            errors.append(
                "Recommendation thresholds must satisfy 0 <= remediate <= review <= advance <= 100"
            )
        weight_sum = r.urgency_weight + r.recency_weight + r.grade_fit_weight
        if abs(weight_sum - 1.0) > 1e-6:
            errors.append(f"Recommendation weights must sum to 1, got {weight_sum:.3f}")

        if not (0 <= self.grades.ceiling <= 6):
            errors.append(f"Grade ceiling must be in [0, 6], got {self.grades.ceiling}")

        if not self.paths.learner_profile_schema.exists():
            errors.append(f"Learner profile schema not found: {self.paths.learner_profile_schema}")

        return errors


# Global config instance
config = Config()
