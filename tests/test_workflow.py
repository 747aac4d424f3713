from __future__ import annotations

import asyncio

import pytest

from picturebook.errors import (
    CredentialMissing,
    IllegalTransition,
    NotFound,
    ProviderRequestFailed,
    ValidationError,
)
from picturebook.pipeline.notifications import (
    GENERATION_COMPLETED,
    GENERATION_ERRORED,
    GENERATION_STARTED,
    STORY_UPDATED,
)
from picturebook.story_generation.models import StoryStatus

from fakes import direct_user, make_story, replicate_user, run

BRIEF = {
    "title": "The Lantern Fox",
    "setting": "A misty pine forest by a quiet lake",
    "characters": "Milo the fox and Pip the bird",
    "plot": "Milo searches the forest for the lost lantern of the lake.",
    "age_group": "3-5",
    "total_pages": 5,
}


def _events(h, name):
    return [payload for event, payload in h.events if event == name]


def test_text_workflow_produces_requested_page_count(harness):
    h = harness()
    user = replicate_user()
    wf = h.workflow

    story = run(wf.create_story("owner-1", BRIEF))
    assert story.status is StoryStatus.DRAFT

    story = run(wf.expand_setting(story.id, user))
    assert story.status is StoryStatus.SETTING_EXPANSION
    assert story.expanded_setting.startswith("A misty pine forest")

    story = run(wf.extract_characters(story.id, user))
    assert story.status is StoryStatus.CHARACTERS_EXTRACTED
    assert [c.name for c in story.extracted_characters] == ["Milo", "Pip"]

    story = run(wf.approve_characters(story.id, user))

    assert story.status is StoryStatus.TEXT_APPROVED
    assert [page.page_number for page in story.pages] == [1, 2, 3, 4, 5]
    assert all(page.text for page in story.pages)
    assert [p["status"] for p in _events(h, STORY_UPDATED)] == [
        "setting_expansion",
        "characters_extracted",
        "text_approved",
    ]


def test_approving_edited_characters_from_draft(harness):
    h = harness()
    story = run(h.workflow.create_story("owner-1", BRIEF))

    story = run(
        h.workflow.approve_characters(
            story.id,
            replicate_user(),
            [{"name": "Milo", "description": "A fox in a red scarf."}],
        )
    )

    assert story.status is StoryStatus.TEXT_APPROVED
    assert [c.name for c in story.extracted_characters] == ["Milo"]
    assert len(story.pages) == 5


def test_approving_characters_requires_a_cast(harness):
    h = harness()
    story = run(h.workflow.create_story("owner-1", BRIEF))

    with pytest.raises(ValidationError):
        run(h.workflow.approve_characters(story.id, replicate_user()))


def test_text_steps_need_an_openai_key(harness):
    h = harness()
    story = run(h.workflow.create_story("owner-1", BRIEF))

    with pytest.raises(CredentialMissing):
        run(h.workflow.expand_setting(story.id, replicate_user(openai_api_key=None)))


def test_approve_story_edits_text_and_keeps_images(harness):
    h = harness()
    story = make_story(total_pages=5)
    story.get_page(1).record_image("file-a", "first")
    run(h.repository.create_story(story))

    story = run(
        h.workflow.approve_story("story-1", "owner-1", [{"pageNumber": 1, "text": "Milo wakes at dawn."}])
    )

    assert story.get_page(1).text == "Milo wakes at dawn."
    assert story.get_page(1).image_file_id == "file-a"
    assert story.status is StoryStatus.TEXT_APPROVED


def test_generate_all_images_completes_the_story(harness):
    h = harness()
    run(h.repository.create_story(make_story()))

    story = run(h.workflow.generate_all_images("story-1", replicate_user()))

    assert story.status is StoryStatus.COMPLETE
    assert story.core_image_file_id
    assert all(page.image_file_id for page in story.pages)
    assert all(c.image_file_id for c in story.extracted_characters)
    assert len(h.client.calls) == 1 + 3 + 2
    assert _events(h, GENERATION_STARTED)[0]["total"] == 6
    assert _events(h, GENERATION_COMPLETED)[0]["total"] == 6


def test_page_failure_keeps_successful_pages_and_rolls_back_status(harness):
    h = harness(fail_when=lambda payload: payload["prompt"].startswith("Scene for page 2"))
    run(h.repository.create_story(make_story()))

    with pytest.raises(ProviderRequestFailed):
        run(h.workflow.generate_all_images("story-1", replicate_user(), include_characters=False))

    story = run(h.repository.get_story("story-1"))
    assert story.status is StoryStatus.TEXT_APPROVED
    assert story.core_image_file_id
    assert story.get_page(1).image_file_id
    assert story.get_page(2).image_file_id is None
    assert story.get_page(3).image_file_id
    assert _events(h, GENERATION_ERRORED)
    assert not _events(h, GENERATION_COMPLETED)


def test_bulk_generation_is_retryable_after_failure(harness):
    attempts = {"page 2": 0}

    def fail_first_page_two(payload):
        if payload["prompt"].startswith("Scene for page 2"):
            attempts["page 2"] += 1
            return attempts["page 2"] == 1
        return False

    h = harness(fail_when=fail_first_page_two)
    run(h.repository.create_story(make_story()))

    with pytest.raises(ProviderRequestFailed):
        run(h.workflow.generate_all_images("story-1", replicate_user(), include_characters=False))
    story = run(h.workflow.generate_all_images("story-1", replicate_user(), include_characters=False))

    assert story.status is StoryStatus.COMPLETE
    assert all(page.image_file_id for page in story.pages)


def test_regenerations_build_image_history(harness):
    h = harness()
    run(h.repository.create_story(make_story()))
    user = replicate_user()

    run(h.workflow.generate_all_images("story-1", user, include_characters=False))
    run(h.workflow.regenerate_page_image("story-1", 2, user))
    story = run(h.workflow.regenerate_page_image("story-1", 2, user))

    page = story.get_page(2)
    assert [version.is_active for version in page.image_history] == [False, False, True]
    assert page.active_version().file_id == page.image_file_id
    assert len({version.file_id for version in page.image_history}) == 3

    first = page.image_history[0].file_id
    story = run(h.workflow.restore_page_image("story-1", "owner-1", 2, first))
    assert story.get_page(2).image_file_id == first
    assert [v.is_active for v in story.get_page(2).image_history] == [True, False, False]


def test_concurrent_page_regenerations_do_not_lose_updates(harness):
    h = harness()
    run(h.repository.create_story(make_story(status=StoryStatus.COMPLETE)))
    user = direct_user()

    async def regenerate_all():
        await asyncio.gather(*(h.workflow.regenerate_page_image("story-1", n, user) for n in (1, 2, 3)))

    run(regenerate_all())
    story = run(h.repository.get_story("story-1"))

    assert all(page.image_file_id for page in story.pages)
    assert all(len(page.image_history) == 1 for page in story.pages)


def test_regenerate_core_image(harness):
    h = harness()
    run(h.repository.create_story(make_story(core_image_file_id="old-core")))

    story = run(h.workflow.regenerate_core_image("story-1", direct_user()))

    assert story.core_image_file_id not in (None, "old-core")


def test_image_operations_are_gated_by_status(harness):
    h = harness()
    run(h.repository.create_story(make_story(status=StoryStatus.DRAFT)))

    with pytest.raises(IllegalTransition):
        run(h.workflow.generate_all_images("story-1", replicate_user()))
    with pytest.raises(IllegalTransition):
        run(h.workflow.regenerate_page_image("story-1", 1, replicate_user()))
    assert h.client.calls == []


def test_missing_image_credentials_leave_status_untouched(harness):
    h = harness()
    run(h.repository.create_story(make_story()))

    with pytest.raises(CredentialMissing):
        run(h.workflow.generate_all_images("story-1", replicate_user(replicate_api_key=None)))

    assert run(h.repository.get_story("story-1")).status is StoryStatus.TEXT_APPROVED


def test_other_owners_cannot_see_the_story(harness):
    h = harness()
    run(h.repository.create_story(make_story()))

    with pytest.raises(NotFound):
        run(h.workflow.get_story("story-1", "intruder"))
    with pytest.raises(NotFound):
        run(h.workflow.regenerate_page_image("story-1", 1, replicate_user(user_id="intruder")))
    assert run(h.workflow.list_stories("intruder")) == []


def test_update_story_checks_status_transitions(harness):
    h = harness()
    run(h.repository.create_story(make_story(status=StoryStatus.DRAFT)))

    with pytest.raises(IllegalTransition):
        run(h.workflow.update_story("story-1", "owner-1", {"status": "complete"}))

    story = run(h.workflow.update_story("story-1", "owner-1", {"title": "Milo's Lantern"}))
    assert story.title == "Milo's Lantern"
    assert run(h.workflow.toggle_bookmark("story-1", "owner-1")).is_bookmarked


def test_save_step_and_revision_round_trip(harness):
    h = harness()
    run(h.repository.create_story(make_story()))

    story, revision = run(
        h.workflow.save_step("story-1", "owner-1", "review", {"plot": "Milo finds a new friend instead."}, True)
    )
    assert story.pages == []
    assert revision.revision_number == 1

    story = run(h.workflow.load_revision("story-1", "owner-1", 1))
    assert len(story.pages) == 3
    assert [r.revision_number for r in run(h.workflow.list_revisions("story-1", "owner-1"))] == [1]


def test_failing_listener_does_not_break_the_operation(harness):
    h = harness()
    calls = []

    def broken(event, payload):
        calls.append(event)
        raise RuntimeError("listener down")

    h.notifier.subscribe(broken)
    run(h.repository.create_story(make_story()))

    story = run(h.workflow.generate_all_images("story-1", direct_user(), include_characters=False))

    assert story.status is StoryStatus.COMPLETE
    assert GENERATION_STARTED in calls
    assert _events(h, GENERATION_COMPLETED)
