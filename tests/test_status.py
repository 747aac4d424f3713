from __future__ import annotations

import pytest

from picturebook.errors import IllegalTransition
from picturebook.story_generation.models import StoryStatus
from picturebook.story_generation.status import (
    can_transition,
    ensure_operation_allowed,
    ensure_transition,
)


def test_generating_images_only_exits_to_complete_or_text_approved():
    allowed = {s for s in StoryStatus if can_transition(StoryStatus.GENERATING_IMAGES, s)}

    assert allowed == {StoryStatus.COMPLETE, StoryStatus.TEXT_APPROVED}


def test_cannot_start_generation_before_text_is_approved():
    assert not can_transition(StoryStatus.CHARACTERS_EXTRACTED, StoryStatus.GENERATING_IMAGES)
    with pytest.raises(IllegalTransition):
        ensure_transition(StoryStatus.DRAFT, StoryStatus.GENERATING_IMAGES)


def test_completed_story_can_be_edited_again():
    assert ensure_transition(StoryStatus.COMPLETE, StoryStatus.DRAFT) is StoryStatus.DRAFT


@pytest.mark.parametrize("status", [StoryStatus.TEXT_APPROVED, StoryStatus.COMPLETE])
def test_image_operations_allowed_after_text_approval(status):
    ensure_operation_allowed(status, "generate images")
    ensure_operation_allowed(status, "regenerate an image")


@pytest.mark.parametrize(
    "status", [StoryStatus.DRAFT, StoryStatus.CHARACTERS_EXTRACTED, StoryStatus.GENERATING_IMAGES]
)
def test_image_operations_rejected_elsewhere(status):
    with pytest.raises(IllegalTransition) as excinfo:
        ensure_operation_allowed(status, "generate images")

    assert excinfo.value.status == status.value


def test_edits_are_blocked_while_generating():
    with pytest.raises(IllegalTransition):
        ensure_operation_allowed(StoryStatus.GENERATING_IMAGES, "save a step")
