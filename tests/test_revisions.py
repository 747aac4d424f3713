from __future__ import annotations

import asyncio

import pytest

from picturebook.errors import IllegalTransition, NotFound, ValidationError
from picturebook.revisions import RevisionEngine, compute_cleared_fields
from picturebook.storage.repository import InMemoryStoryRepository
from picturebook.story_generation.models import StoryStatus, WorkflowStep
from picturebook.story_generation.status import ensure_operation_allowed

from fakes import make_story, run


def _illustrated_story():
    story = make_story(status=StoryStatus.COMPLETE, core_image_file_id="core-1")
    for page in story.pages:
        page.record_image(f"page-{page.page_number}-a", "first")
    return story


def _setup():
    repository = InMemoryStoryRepository()
    run(repository.create_story(_illustrated_story()))
    return repository, RevisionEngine(repository)


def _narrative(story):
    data = story.to_dict()
    for key in ("updated_at", "version"):
        data.pop(key)
    return data


def test_editing_characters_clears_downstream_steps():
    repository, engine = _setup()

    story, revision = run(
        engine.save_step("story-1", "characters", {"characters": "Milo, Pip and Grandma Owl"}, True)
    )

    assert revision.step_completed is WorkflowStep.CHARACTERS
    assert revision.revision_number == 1
    assert revision.parent_revision == 1
    assert len(revision.snapshot["pages"]) == 3
    assert story.characters == "Milo, Pip and Grandma Owl"
    assert story.extracted_characters == []
    assert story.pages == []
    assert story.core_image_file_id is None
    assert story.expanded_setting == "A misty pine forest with a silver lake at dawn."
    assert story.current_revision == revision.revision_number


@pytest.mark.parametrize(
    "step, expected",
    [
        ("details", StoryStatus.DRAFT),
        ("setting", StoryStatus.DRAFT),
        ("characters", StoryStatus.SETTING_EXPANSION),
        ("review", StoryStatus.CHARACTERS_EXTRACTED),
        ("images", StoryStatus.TEXT_APPROVED),
    ],
)
def test_clearing_rolls_status_back_to_the_last_stage_with_data(step, expected):
    repository, engine = _setup()

    story, revision = run(engine.save_step("story-1", step, {}, True))

    assert story.status is expected
    assert revision.snapshot["status"] == "complete"
    assert run(repository.get_story("story-1")).status is expected


def test_clearing_never_moves_status_forward():
    repository = InMemoryStoryRepository()
    run(repository.create_story(make_story(status=StoryStatus.SETTING_EXPANSION, pages=[])))
    engine = RevisionEngine(repository)

    story, _ = run(engine.save_step("story-1", "images", {}, True))

    assert story.status is StoryStatus.SETTING_EXPANSION


def test_cleared_story_no_longer_passes_the_image_gate():
    _, engine = _setup()

    story, _ = run(engine.save_step("story-1", "characters", {"characters": "Only Milo"}, True))

    assert story.pages == []
    with pytest.raises(IllegalTransition):
        ensure_operation_allowed(story.status, "generate images")


def test_explicit_status_goes_through_the_lifecycle():
    repository = InMemoryStoryRepository()
    run(repository.create_story(make_story(status=StoryStatus.DRAFT, pages=[])))
    engine = RevisionEngine(repository)

    with pytest.raises(IllegalTransition):
        run(engine.save_step("story-1", "details", {"status": "complete"}))
    with pytest.raises(IllegalTransition):
        run(engine.save_step("story-1", "details", {"status": "generating_images"}, True))

    story = run(repository.get_story("story-1"))
    assert story.status is StoryStatus.DRAFT
    assert story.version == 1
    assert run(repository.get_revisions("story-1")) == []


def test_explicit_status_cannot_claim_cleared_stages():
    repository, engine = _setup()

    with pytest.raises(IllegalTransition):
        run(engine.save_step("story-1", "characters", {"status": "text_approved"}, True))
    assert run(repository.get_revisions("story-1")) == []

    story, _ = run(engine.save_step("story-1", "characters", {"status": "draft"}, True))
    assert story.status is StoryStatus.DRAFT


def test_engine_can_be_reused_across_event_loops():
    repository, engine = _setup()

    async def save_three(prefix):
        return await asyncio.gather(
            *(engine.save_step("story-1", "details", {"title": f"{prefix} {n}"}, True) for n in range(3))
        )

    run(save_three("First"))
    results = run(save_three("Second"))

    assert sorted(revision.revision_number for _, revision in results) == [4, 5, 6]


def test_editing_setting_clears_expanded_setting():
    _, engine = _setup()

    story, _ = run(engine.save_step("story-1", "setting", {"setting": "A windy seaside village"}, True))

    assert story.expanded_setting is None
    assert story.pages == []


def test_editing_images_keeps_page_text_but_drops_images():
    _, engine = _setup()

    story, _ = run(engine.save_step("story-1", WorkflowStep.IMAGES, {}, True))

    assert [page.text for page in story.pages] == [f"Page {n} text about Milo." for n in (1, 2, 3)]
    assert all(page.image_file_id is None for page in story.pages)
    assert all(not version.is_active for page in story.pages for version in page.image_history)
    assert story.core_image_file_id is None


def test_cleared_fields_win_over_the_update():
    story = _illustrated_story()

    cleared = compute_cleared_fields("review", story, {"pages": story.pages})

    assert cleared["pages"] == []
    assert cleared["core_image_file_id"] is None
    assert "expanded_setting" not in cleared


def test_save_without_clearing_records_no_revision():
    repository, engine = _setup()

    story, revision = run(engine.save_step("story-1", "details", {"title": "Milo's Lantern"}))

    assert revision is None
    assert story.title == "Milo's Lantern"
    assert len(story.pages) == 3
    assert run(repository.get_revisions("story-1")) == []


def test_invalid_update_writes_nothing():
    repository, engine = _setup()

    with pytest.raises(ValidationError):
        run(engine.save_step("story-1", "details", {"colour": "blue"}, True))
    with pytest.raises(ValidationError):
        run(engine.save_step("story-1", "details", {"version": 99}, True))

    assert run(repository.get_revisions("story-1")) == []
    assert run(repository.get_story("story-1")).version == 1


def test_each_revision_points_at_the_state_it_was_taken_from():
    _, engine = _setup()

    _, first = run(engine.save_step("story-1", "review", {}, True))
    _, second = run(engine.save_step("story-1", "setting", {}, True))

    assert (first.revision_number, first.parent_revision) == (1, 1)
    assert (second.revision_number, second.parent_revision) == (2, 1)


def test_loading_a_revision_is_idempotent_and_records_nothing():
    repository, engine = _setup()
    run(engine.save_step("story-1", "characters", {"characters": "Only Milo the fox"}, True))
    run(engine.save_step("story-1", "details", {"title": "Another title"}, True))

    once = run(engine.load_revision("story-1", 1))
    twice = run(engine.load_revision("story-1", 1))

    assert _narrative(once) == _narrative(twice)
    assert once.current_revision == 1
    assert len(once.pages) == 3
    assert once.characters == "Milo the fox and Pip the bird"
    assert once.get_page(2).image_file_id == "page-2-a"
    assert len(run(repository.get_revisions("story-1"))) == 2


def test_revision_numbers_are_never_reused_after_a_load():
    _, engine = _setup()
    run(engine.save_step("story-1", "review", {}, True))
    run(engine.save_step("story-1", "review", {}, True))
    run(engine.load_revision("story-1", 1))

    _, revision = run(engine.save_step("story-1", "setting", {}, True))

    assert revision.revision_number == 3
    assert revision.parent_revision == 1


def test_concurrent_saves_get_distinct_numbers():
    repository, engine = _setup()

    async def save_many():
        return await asyncio.gather(
            *(engine.save_step("story-1", "details", {"title": f"Title {n}"}, True) for n in range(5))
        )

    results = run(save_many())

    assert sorted(revision.revision_number for _, revision in results) == [1, 2, 3, 4, 5]
    assert [r.revision_number for r in run(repository.get_revisions("story-1"))] == [1, 2, 3, 4, 5]


def test_fork_records_restored_state_as_child():
    repository, engine = _setup()
    run(engine.save_step("story-1", "review", {}, True))

    story, revision = run(engine.fork_from_revision("story-1", 1))

    assert revision.revision_number == 2
    assert revision.parent_revision == 1
    assert revision.description == "Restored from revision 1"
    assert story.current_revision == 2
    assert len(story.pages) == 3
    assert story.core_image_file_id == "core-1"


def test_create_revision_snapshots_without_changes():
    repository, engine = _setup()

    revision = run(engine.create_revision("story-1", "complete", description="Checkpoint"))
    story = run(repository.get_story("story-1"))

    assert revision.revision_number == 1
    assert revision.description == "Checkpoint"
    assert story.current_revision == 1
    assert len(story.pages) == 3


def test_unknown_revision_is_not_found():
    _, engine = _setup()

    with pytest.raises(NotFound):
        run(engine.load_revision("story-1", 7))
    with pytest.raises(NotFound):
        run(engine.fork_from_revision("story-1", 7))
