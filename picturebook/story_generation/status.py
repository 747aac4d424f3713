"""
Lifecycle state machine gating which operations a story currently allows.
"""

from __future__ import annotations

from typing import Iterable

from picturebook.errors import IllegalTransition

from .models import StoryStatus

_EDITABLE = {
    StoryStatus.DRAFT,
    StoryStatus.SETTING_EXPANSION,
    StoryStatus.CHARACTERS_EXTRACTED,
    StoryStatus.TEXT_APPROVED,
    StoryStatus.COMPLETE,
}

ALLOWED_TRANSITIONS: dict[StoryStatus, frozenset[StoryStatus]] = {
    StoryStatus.DRAFT: frozenset(
        {StoryStatus.DRAFT, StoryStatus.SETTING_EXPANSION, StoryStatus.CHARACTERS_EXTRACTED}
    ),
    StoryStatus.SETTING_EXPANSION: frozenset(
        {StoryStatus.DRAFT, StoryStatus.SETTING_EXPANSION, StoryStatus.CHARACTERS_EXTRACTED}
    ),
    StoryStatus.CHARACTERS_EXTRACTED: frozenset(
        {
            StoryStatus.DRAFT,
            StoryStatus.SETTING_EXPANSION,
            StoryStatus.CHARACTERS_EXTRACTED,
            StoryStatus.TEXT_APPROVED,
        }
    ),
    StoryStatus.TEXT_APPROVED: frozenset(
        {
            StoryStatus.DRAFT,
            StoryStatus.SETTING_EXPANSION,
            StoryStatus.CHARACTERS_EXTRACTED,
            StoryStatus.TEXT_APPROVED,
            StoryStatus.GENERATING_IMAGES,
        }
    ),
    # Exits only through success or the retryable error path.
    StoryStatus.GENERATING_IMAGES: frozenset({StoryStatus.COMPLETE, StoryStatus.TEXT_APPROVED}),
    StoryStatus.COMPLETE: frozenset(
        {
            StoryStatus.DRAFT,
            StoryStatus.SETTING_EXPANSION,
            StoryStatus.CHARACTERS_EXTRACTED,
            StoryStatus.TEXT_APPROVED,
            StoryStatus.GENERATING_IMAGES,
            StoryStatus.COMPLETE,
        }
    ),
}

# Statuses from which each gated operation may start.
OPERATION_GATES: dict[str, frozenset[StoryStatus]] = {
    "expand the setting": frozenset(_EDITABLE),
    "approve the setting": frozenset(_EDITABLE),
    "extract characters": frozenset(_EDITABLE),
    "approve characters": frozenset(_EDITABLE),
    "generate story text": frozenset(_EDITABLE),
    "approve the story text": frozenset(_EDITABLE),
    "generate images": frozenset({StoryStatus.TEXT_APPROVED, StoryStatus.COMPLETE}),
    "regenerate an image": frozenset({StoryStatus.TEXT_APPROVED, StoryStatus.COMPLETE}),
    "save a step": frozenset(_EDITABLE),
    "load a revision": frozenset(_EDITABLE),
}


def can_transition(current: StoryStatus, target: StoryStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: StoryStatus, target: StoryStatus) -> StoryStatus:
    if not can_transition(current, target):
        raise IllegalTransition(current.value, f"move to '{target.value}'")
    return target


def ensure_operation_allowed(status: StoryStatus, operation: str) -> None:
    allowed: Iterable[StoryStatus] = OPERATION_GATES[operation]
    if status not in allowed:
        raise IllegalTransition(status.value, operation)
