from __future__ import annotations

import pytest

from picturebook.errors import NotFound, ValidationError
from picturebook.story_generation.models import (
    Character,
    Story,
    StoryBrief,
    StoryPage,
    StoryStatus,
    WorkflowStep,
    restore_snapshot,
    snapshot_story,
    validate_characters,
    validate_page_sequence,
)

from fakes import make_story

VALID_BRIEF = {
    "title": "The Lantern Fox",
    "setting": "A misty pine forest by a quiet lake",
    "characters": "Milo the fox and Pip the bird",
    "plot": "Milo searches the forest for the lost lantern of the lake.",
    "age_group": "3-5",
    "total_pages": 5,
}


def test_record_image_keeps_exactly_one_active_version():
    page = StoryPage(page_number=1, text="Milo wakes up.")

    page.record_image("file-a", "first")
    page.record_image("file-b", "second")
    page.record_image("file-c", "third")

    assert [v.file_id for v in page.image_history] == ["file-a", "file-b", "file-c"]
    assert [v.is_active for v in page.image_history] == [False, False, True]
    assert page.image_file_id == "file-c"
    assert page.image_prompt == "third"
    assert page.active_version().file_id == "file-c"


def test_record_image_captures_image_that_predates_history():
    page = StoryPage(page_number=2, text="Pip sings.", image_file_id="legacy", image_prompt="old")

    page.record_image("fresh", "new")

    assert [(v.file_id, v.is_active) for v in page.image_history] == [("legacy", False), ("fresh", True)]


def test_activate_image_switches_active_version():
    page = StoryPage(page_number=1, text="Milo wakes up.")
    page.record_image("file-a", "first")
    page.record_image("file-b", "second")

    page.activate_image("file-a")

    assert page.image_file_id == "file-a"
    assert page.image_prompt == "first"
    assert [v.is_active for v in page.image_history] == [True, False]

    with pytest.raises(NotFound):
        page.activate_image("missing")


def test_clear_image_leaves_history_inactive():
    page = StoryPage(page_number=1, text="Milo wakes up.")
    page.record_image("file-a", "first")

    page.clear_image()

    assert page.image_file_id is None
    assert page.active_version() is None
    assert len(page.image_history) == 1


def test_page_from_mapping_accepts_camel_case():
    page = StoryPage.from_mapping({"pageNumber": "3", "text": " Hello ", "imageGuidance": "wide shot"})

    assert page.page_number == 3
    assert page.text == "Hello"
    assert page.image_guidance == "wide shot"


def test_story_brief_accepts_valid_input():
    brief = StoryBrief.from_mapping({**VALID_BRIEF, "storyGuidance": "Friendship"})

    assert brief.total_pages == 5
    assert brief.story_guidance == "Friendship"


@pytest.mark.parametrize(
    "override",
    [
        {"title": "Hi"},
        {"setting": "Forest"},
        {"characters": "Milo"},
        {"plot": "Too short"},
        {"age_group": "1-2"},
        {"total_pages": 4},
        {"total_pages": 51},
        {"total_pages": "many"},
    ],
)
def test_story_brief_rejects_invalid_input(override):
    with pytest.raises(ValidationError):
        StoryBrief.from_mapping({**VALID_BRIEF, **override})


def test_page_sequence_must_be_contiguous():
    pages = [StoryPage(page_number=1, text="a"), StoryPage(page_number=3, text="b")]

    with pytest.raises(ValidationError):
        validate_page_sequence(pages)
    with pytest.raises(ValidationError):
        validate_page_sequence(pages[:1], expected_total=2)


def test_character_names_are_unique_ignoring_case():
    with pytest.raises(ValidationError):
        validate_characters([Character("Milo", "A fox."), Character("milo", "Another fox.")])


def test_character_requires_description():
    with pytest.raises(ValidationError):
        Character.from_mapping({"name": "Milo", "description": "  "})


def test_workflow_steps_are_ordered():
    assert WorkflowStep.SETTING.at_or_before(WorkflowStep.REVIEW)
    assert not WorkflowStep.IMAGES.at_or_before(WorkflowStep.CHARACTERS)
    assert WorkflowStep.parse("review") is WorkflowStep.REVIEW
    with pytest.raises(ValidationError):
        WorkflowStep.parse("cover")


def test_story_lookup_raises_not_found():
    story = make_story()

    with pytest.raises(NotFound):
        story.get_page(9)
    with pytest.raises(NotFound):
        story.get_character("Nobody")


def test_snapshot_restores_narrative_and_image_state():
    story = make_story()
    story.get_page(1).record_image("file-a", "first")
    story.core_image_file_id = "core-a"
    snapshot = snapshot_story(story)

    story.pages = []
    story.core_image_file_id = None
    story.expanded_setting = None
    story.status = StoryStatus.DRAFT
    restore_snapshot(story, snapshot)

    assert len(story.pages) == 3
    assert story.get_page(1).image_file_id == "file-a"
    assert story.core_image_file_id == "core-a"
    assert story.expanded_setting == "A misty pine forest with a silver lake at dawn."
    assert story.status is StoryStatus.TEXT_APPROVED


def test_story_dict_round_trip_preserves_history():
    story = make_story()
    story.get_page(2).record_image("file-a", "first")
    story.get_page(2).record_image("file-b", "second")

    restored = Story.from_mapping(story.to_dict())

    assert restored.to_dict() == story.to_dict()
