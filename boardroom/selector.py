"""
Keyword-based persona selection for debate modes.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum

from .personas import PERSONAS, Persona, get_persona_by_name


class DebateMode(StrEnum):
    BOARDROOM = "boardroom"
    EXPERT_PANEL = "expert-panel"
    QUICK_CONSULT = "quick-consult"
    CUSTOM = "custom"


MODE_PANEL_SIZE: dict[DebateMode, int] = {
    DebateMode.QUICK_CONSULT: 1,
    DebateMode.EXPERT_PANEL: 3,
}


def relevance_score(persona: Persona, topic: str) -> int:
    """Score how well a persona's expertise matches the topic text."""
    topic_lower = topic.lower()
    score = 0
    for expertise in persona.expertise:
        if expertise.lower() in topic_lower:
            score += 2

    words = [w for w in persona.description.lower().split(" ") if w]
    if any(word in topic_lower for word in words):
        score += 1
    return score


def select_by_expertise(
    topic: str, count: int, registry: Sequence[Persona] = PERSONAS
) -> list[Persona]:
    """Return the ``count`` highest scoring personas, ties in registry order."""
    scored = [(relevance_score(p, topic), p) for p in registry]
    # sorted() is stable, so equal scores keep registry order.
    ranked = sorted(scored, key=lambda item: -item[0])
    return [persona for _, persona in ranked[:count]]


def resolve_named_personas(
    names: Sequence[str], registry: Sequence[Persona] = PERSONAS
) -> list[Persona]:
    """Resolve caller-supplied names, silently dropping unknown ones."""
    resolved: list[Persona] = []
    for name in names:
        persona = get_persona_by_name(name, tuple(registry))
        if persona is not None:
            resolved.append(persona)
    return resolved


def select_personas(
    topic: str,
    mode: DebateMode | str,
    selected: Sequence[str] | None = None,
    registry: Sequence[Persona] = PERSONAS,
) -> list[Persona]:
    """Choose the debate participants for a topic and mode.

    An explicit ``selected`` list wins for every mode. Custom mode without a
    list falls back to the whole registry.
    """
    if selected:
        return resolve_named_personas(selected, registry)

    mode = DebateMode(mode)
    if mode in MODE_PANEL_SIZE:
        return select_by_expertise(topic, MODE_PANEL_SIZE[mode], registry)
    return list(registry)
