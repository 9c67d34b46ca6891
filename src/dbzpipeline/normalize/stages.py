"""Power stage ladder extraction shared by the normalizer and the heuristic extractor."""
from __future__ import annotations

import re
from typing import Iterable, List

_NUMBER = re.compile(r"\b\d{1,3}(?:,\d{3})*\b")


def extract_power_stage_values(text: str) -> List[int]:
    """Longest non-increasing run of numbers in ``text``, stopping at the first 0."""

    numbers = [int(match.replace(",", "")) for match in _NUMBER.findall(text)]
    best: List[int] = []
    for start, first in enumerate(numbers):
        candidate = [first]
        previous = first
        for current in numbers[start + 1:]:
            if current <= previous:
                candidate.append(current)
                previous = current
            if current == 0:
                break
        if len(candidate) > len(best):
            best = candidate
    return best


def normalize_stage_sequence(values: Iterable[int]) -> List[int]:
    """Drop rising values, make sure the ladder ends in 0 and collapse repeats."""

    cleaned = [int(value) for value in values if int(value) >= 0]
    if not cleaned:
        return []
    descending = [cleaned[0]]
    for value in cleaned[1:]:
        if value <= descending[-1]:
            descending.append(value)
    if 0 not in descending:
        descending.append(0)
    return [value for index, value in enumerate(descending) if index == 0 or value != descending[index - 1]]
