"""Deterministic ordering of dotted tracker ids such as ``epic.2`` and ``epic.10``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cmp_to_key

_NUMERIC_SEGMENT = re.compile(r"^\d+$")


@dataclass(frozen=True, slots=True)
class ParsedHierarchicalId:
    """Base token plus ordered segments (ints for all-digit tokens)."""

    base: str
    segments: tuple[int | str, ...]


def parse_hierarchical_id(value: str) -> ParsedHierarchicalId:
    base, *rest = value.split(".")
    segments: list[int | str] = []
    for token in rest:
        segments.append(int(token) if _NUMERIC_SEGMENT.match(token) else token)
    return ParsedHierarchicalId(base=base, segments=tuple(segments))


def compare_hierarchical_ids(left: str, right: str) -> int:
    """Total order over dotted ids.

    Bases compare lexicographically. Numeric segments compare numerically
    and sort before named segments, which compare lexicographically. A
    shorter id sorts before any id it is a strict prefix of. Whole-string
    comparison breaks the remaining ties (``epic.01`` vs ``epic.1``).
    """

    if left == right:
        return 0

    parsed_left = parse_hierarchical_id(left)
    parsed_right = parse_hierarchical_id(right)
    if parsed_left.base != parsed_right.base:
        return _sign(parsed_left.base, parsed_right.base)

    for index in range(max(len(parsed_left.segments), len(parsed_right.segments))):
        if index >= len(parsed_left.segments):
            return -1
        if index >= len(parsed_right.segments):
            return 1
        segment_left = parsed_left.segments[index]
        segment_right = parsed_right.segments[index]
        if segment_left == segment_right:
            continue
        if isinstance(segment_left, int) and isinstance(segment_right, int):
            return -1 if segment_left < segment_right else 1
        if isinstance(segment_left, int) != isinstance(segment_right, int):
            # Numeric segments sort before named ones.
            return -1 if isinstance(segment_left, int) else 1
        return _sign(segment_left, segment_right)

    return _sign(left, right)


hierarchical_sort_key = cmp_to_key(compare_hierarchical_ids)


def sort_by_hierarchical_id(ids: list[str]) -> list[str]:
    return sorted(ids, key=hierarchical_sort_key)


def _sign(left: str, right: str) -> int:
    if left < right:
        return -1
    if left > right:
        return 1
    return 0
