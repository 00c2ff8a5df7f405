"""
Mastery analytics helpers for learner reports.

Provides:
- Summary statistics (mean, median, min, max, std_dev)
- Concept grouping by mastery band
- Mastery histograms
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Tuple


def mastery_histogram(mastery: Dict[str, float], bin_size: int = 20) -> List[Tuple[str, int]]:
    """
    Count concepts per mastery bin.

    Args:
        mastery: Concept -> mastery level (0-100)
        bin_size: Width of each bin

    Returns:
        (bin_label, count) pairs for non-empty bins, lowest bin first

    Example:
        >>> mastery_histogram({"addition": 85, "subtraction": 72, "fractions": 15})
        [('0-19', 1), ('60-79', 1), ('80-99', 1)]
    """
    counts: Dict[int, int] = {}
    for value in mastery.values():
        level = max(0.0, min(100.0, float(value)))
        start = min(int(level // bin_size) * bin_size, 100 - bin_size)
        counts[start] = counts.get(start, 0) + 1
    return [(f"{start}-{start + bin_size - 1}", counts[start]) for start in sorted(counts)]


def mastery_summary(mastery: Dict[str, float]) -> Dict[str, float]:
    """
    Summary statistics over concept mastery levels.

    Returns:
        Dict with mean, median, min, max, std_dev and count (zeros when empty)
    """
    if not mastery:
        return {"mean": 0.0, "median": 0.0, "min": 0.0, "max": 0.0, "std_dev": 0.0, "count": 0}

    values = sorted(float(v) for v in mastery.values())
    n = len(values)
    mean = sum(values) / n
    mid = n // 2
    median = values[mid] if n % 2 else (values[mid - 1] + values[mid]) / 2.0
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / n)

    return {
        "mean": round(mean, 2),
        "median": round(median, 2),
        "min": round(values[0], 2),
        "max": round(values[-1], 2),
        "std_dev": round(std_dev, 2),
        "count": n,
    }


def mastery_bands(
    remediate: float = 40.0, review: float = 70.0, advance: float = 85.0
) -> Dict[str, Tuple[float, float]]:
    """Band boundaries matching the recommendation thresholds."""
    return {
        "struggling": (0.0, remediate),
        "developing": (remediate, review),
        "proficient": (review, advance),
        "mastered": (advance, 100.0),
    }


def mastery_by_category(
    mastery: Dict[str, float],
    thresholds: Optional[Dict[str, Tuple[float, float]]] = None,
) -> Dict[str, List[str]]:
    """
    Group concepts by mastery band.

    Bands are half-open [low, high); a level of exactly 100 lands in the top band.

    Example:
        >>> mastery_by_category({"addition": 90, "fractions": 20})["struggling"]
        ['fractions']
    """
    bands = thresholds or mastery_bands()
    top = max(bands, key=lambda name: bands[name][1])
    grouped: Dict[str, List[str]] = {name: [] for name in bands}

    for concept, level in sorted(mastery.items()):
        for name, (low, high) in bands.items():
            if low <= level < high or (name == top and level >= high):
                grouped[name].append(concept)
                break

    return grouped
