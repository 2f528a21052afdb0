"""Dot-separated routing keys and wildcard binding patterns.

``*`` matches exactly one segment and ``#`` matches zero or more segments.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Sequence, Tuple


def topic_matches(pattern: str, routing_key: str) -> bool:
    """Return ``True`` if ``routing_key`` is selected by binding ``pattern``."""
    return _match(_split(pattern), _split(routing_key))


def has_wildcards(pattern: str) -> bool:
    return any(part in ("*", "#") for part in pattern.split("."))


@lru_cache(maxsize=1024)
def _split(key: str) -> Tuple[str, ...]:
    return tuple(key.split(".")) if key else ()


def _match(pattern: Sequence[str], key: Sequence[str]) -> bool:
    if not pattern:
        return not key
    head = pattern[0]
    if head == "#":
        return any(_match(pattern[1:], key[i:]) for i in range(len(key) + 1))
    if not key:
        return False
    if head == "*" or head == key[0]:
        return _match(pattern[1:], key[1:])
    return False
