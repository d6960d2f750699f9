"""Group-chat mention detection."""

from collections.abc import Iterable
from typing import Protocol


class Mentionable(Protocol):
    id: str
    name: str
    handle: str | None


def _needles(agent: Mentionable) -> list[str]:
    needles = []
    for value in (agent.handle, agent.name):
        value = (value or "").strip().lstrip("@").lower()
        if value:
            needles.append(value)
    return needles


def detect_mentions(texts: Iterable[str], roster: Iterable[Mentionable]) -> set[str]:
    """Return the ids of roster agents referenced by name or handle in ``texts``.

    Matching is case-insensitive containment. Pure: no I/O, never raises on
    empty inputs.
    """
    haystack = "\n".join(t for t in texts if t).lower()
    if not haystack:
        return set()
    return {agent.id for agent in roster if any(n in haystack for n in _needles(agent))}
