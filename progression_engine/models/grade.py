"""
Grade levels: an ordered enumeration from Kindergarten to grade 6.

Kindergarten is stored as 0 so grades compare and step numerically.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional, Union


class Grade(IntEnum):
    K = 0
    G1 = 1
    G2 = 2
    G3 = 3
    G4 = 4
    G5 = 5
    G6 = 6

    @classmethod
    def parse(cls, value: Union[str, int, "Grade"]) -> "Grade":
        """
        Convert "K", "k", "3", 3 or a Grade to a Grade.

        Raises:
            ValueError: If the value is not a known grade
        """
        if isinstance(value, Grade):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Not a grade: {value!r}")
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.upper() == "K":
            return cls.K
        if text.isdigit():
            return cls(int(text))
        raise ValueError(f"Not a grade: {value!r}")

    @classmethod
    def lowest(cls) -> "Grade":
        return cls.K

    @classmethod
    def highest(cls) -> "Grade":
        return cls.G6

    @property
    def label(self) -> str:
        """Display label: "K" for Kindergarten, the number otherwise."""
        return "K" if self is Grade.K else str(int(self))

    def next(self, ceiling: Optional["Grade"] = None) -> "Grade":
        """One grade up, saturating at the ceiling."""
        top = min(ceiling if ceiling is not None else Grade.G6, Grade.G6)
        return Grade(min(int(self) + 1, int(top)))

    def previous(self) -> "Grade":
        """One grade down, saturating at K."""
        return Grade(max(int(self) - 1, int(Grade.K)))

    def __str__(self) -> str:
        return self.label
