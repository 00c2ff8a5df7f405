"""
Schema validation utilities for the progression engine.

Provides JSON Schema validation with clear error messages and
automatic repair of common problems in stored learner documents.

Features:
- Format validation (date-time)
- Deep copy to prevent mutations
- Type coercion (numeric strings to numbers)
- Removal of unknown keys
- Transparent repair tracking
- Learner-profile consistency checks
"""

import json
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from jsonschema import Draft7Validator, FormatChecker, ValidationError

from ..models.grade import Grade


class ValidationResult:
    """
    Result of a validation attempt.

    Attributes:
        valid: Whether data passed validation
        errors: List of error messages
        data: The validated data (may be modified if repair was attempted)
        repairs: List of repairs applied (for transparency)
    """

    def __init__(
        self,
        valid: bool,
        errors: list[str],
        data: Any = None,
        repairs: Optional[list[str]] = None,
    ):
        self.valid = valid
        self.errors = errors
        self.data = data
        self.repairs = repairs or []

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.valid

    def __str__(self) -> str:
        """Human-readable representation."""
        if self.valid:
            msg = "Validation passed"
            if self.repairs:
                msg += f" (with {len(self.repairs)} repair(s))"
            return msg
        return f"Validation failed with {len(self.errors)} error(s):\n" + "\n".join(
            f"  - {error}" for error in self.errors
        )


class SchemaValidator:
    """
    JSON Schema validator with auto-repair capabilities.

    Usage:
        validator = SchemaValidator("path/to/schema.json")
        result = validator.validate(data)
        if result:
            print("Valid!")
        else:
            print(result.errors)
    """

    def __init__(self, schema_path: Path | str):
        """
        Initialize validator with a schema file.

        Args:
            schema_path: Path to JSON Schema file
        """
        self.schema_path = Path(schema_path)
        with open(self.schema_path, "r", encoding="utf-8") as f:
            self.schema = json.load(f)
        self.validator = Draft7Validator(self.schema, format_checker=FormatChecker())

    def validate(self, data: dict, auto_repair: bool = False) -> ValidationResult:
        """
        Validate data against schema.

        Args:
            data: Data to validate
            auto_repair: If True, attempt to fix common validation errors

        Returns:
            ValidationResult with validation status and any errors
        """
        errors = [self._format_error(error) for error in self.validator.iter_errors(data)]

        if errors:
            if auto_repair:
                repaired_data, repairs = self._attempt_repair(data)
                result = self.validate(repaired_data, auto_repair=False)
                result.repairs = repairs
                return result
            return ValidationResult(valid=False, errors=errors, data=data)

        return ValidationResult(valid=True, errors=[], data=data)

    def _format_error(self, error: ValidationError) -> str:
        """Convert ValidationError to a message with its location and validator."""
        path = " -> ".join(str(p) for p in error.path) if error.path else "root"
        validator_name = getattr(error, "validator", "unknown")
        schema_path = "/".join(str(p) for p in error.schema_path)
        return (
            f"At '{path}': {error.message} "
            f"[validator={validator_name}, schema_path=/{schema_path}]"
        )

    def _attempt_repair(self, data: dict) -> tuple[dict, list[str]]:
        """
        Attempt to automatically fix common validation errors.

        Returns:
            Tuple of (repaired data, list of repairs applied)
        """
        repaired = deepcopy(data)
        repairs: list[str] = []

        self._strip_additional_props(repaired, self.schema, repairs)
        self._coerce_integers(repaired, self.schema, repairs)

        if isinstance(repaired, dict) and "meta" in self.schema.get("properties", {}):
            meta = repaired.setdefault("meta", {})
            now = datetime.now(timezone.utc).isoformat()
            if "schema_version" not in meta:
                meta["schema_version"] = 1
                repairs.append("Added meta.schema_version = 1")
            for key in ("created_at", "last_updated"):
                if key not in meta:
                    meta[key] = now
                    repairs.append(f"Added meta.{key} = {now}")

        return repaired, repairs

    def _strip_additional_props(self, obj: Any, schema: dict, repairs: list[str], path: str = "root"):
        """Recursively remove keys not allowed by schema (additionalProperties: false)."""
        if not isinstance(schema, dict) or not isinstance(obj, dict):
            return

        properties = schema.get("properties", {})
        if schema.get("additionalProperties") is False and properties:
            for key in [k for k in obj if k not in properties]:
                obj.pop(key, None)
                repairs.append(f"Removed unknown key '{key}' at {path}")

        for key, subschema in properties.items():
            if key in obj:
                self._strip_additional_props(obj[key], subschema, repairs, f"{path}.{key}")

        extra = schema.get("additionalProperties")
        if isinstance(extra, dict):
            for key, value in obj.items():
                if key not in properties:
                    self._strip_additional_props(value, extra, repairs, f"{path}.{key}")

    def _coerce_integers(self, obj: Any, schema: dict, repairs: list[str], path: str = "root"):
        """Coerce numeric strings where the schema expects an integer or number."""
        if not isinstance(schema, dict) or not isinstance(obj, dict):
            return

        for key, subschema in schema.get("properties", {}).items():
            if key not in obj or not isinstance(subschema, dict):
                continue
            value = obj[key]
            expected = subschema.get("type")
            if isinstance(value, str) and expected in ("integer", "number"):
                try:
                    coerced = int(float(value)) if expected == "integer" else float(value)
                except ValueError:
                    continue
                obj[key] = coerced
                repairs.append(f"Coerced {path}.{key}: '{value}' -> {coerced}")
            elif isinstance(value, dict):
                self._coerce_integers(value, subschema, repairs, f"{path}.{key}")


class LearnerProfileValidator(SchemaValidator):
    """
    Validator for learner profile documents.

    Adds checks beyond JSON Schema:
    - Correct answers never exceed questions answered
    - Per-concept correct attempts never exceed total attempts
    - Concept map keys match the records they hold
    - Grade within the configured ceiling
    """

    def __init__(self, schema_path: Optional[Path] = None, ceiling: Optional[int] = None):
        from ..config import config

        super().__init__(schema_path or config.paths.learner_profile_schema)
        self._ceiling = ceiling

    @property
    def ceiling(self) -> Grade:
        """Fixed ceiling if one was given, else the configured one at call time."""
        from ..config import config

        return Grade(self._ceiling if self._ceiling is not None else config.grades.ceiling)

    def validate(self, data: dict, auto_repair: bool = False) -> ValidationResult:
        result = super().validate(data, auto_repair=auto_repair)
        if not result.valid:
            return result

        profile = result.data
        profile_errors = []

        lifetime = profile["lifetime"]
        if lifetime["correct_answers"] > lifetime["questions_answered"]:
            profile_errors.append(
                f"correct_answers ({lifetime['correct_answers']}) exceeds "
                f"questions_answered ({lifetime['questions_answered']})"
            )

        for key, record in profile["concept_mastery"].items():
            if record["concept"] != key:
                profile_errors.append(
                    f"Concept record '{record['concept']}' stored under key '{key}'"
                )
            if record["correct_attempts"] > record["total_attempts"]:
                profile_errors.append(
                    f"Concept '{key}': correct_attempts exceeds total_attempts"
                )

        if Grade.parse(profile["grade"]) > self.ceiling:
            profile_errors.append(
                f"Grade {profile['grade']} is above the ceiling grade {self.ceiling.label}"
            )

        return ValidationResult(
            valid=not profile_errors,
            errors=profile_errors,
            data=profile,
            repairs=result.repairs,
        )


def validate_learner_profile(data: dict, auto_repair: bool = False) -> ValidationResult:
    """
    Quick validation of learner profile data.

    Example:
        result = validate_learner_profile(profile_dict)
        if result:
            print("Valid profile!")
        else:
            print("Errors:", result.errors)
    """
    return LearnerProfileValidator().validate(data, auto_repair=auto_repair)
