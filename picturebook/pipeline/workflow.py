"""
Inbound operations of the picture book core, wired across its subsystems.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Iterable, Mapping, Sequence

from picturebook.config import Settings, UserPreferences
from picturebook.errors import NotFound, ValidationError
from picturebook.revisions.engine import RevisionEngine, coerce_story_update
from picturebook.storage.repository import InMemoryStoryRepository, mutate_story
from picturebook.story_generation.models import (
    Character,
    Revision,
    Story,
    StoryBrief,
    StoryStatus,
    WorkflowStep,
    validate_characters,
    validate_page_sequence,
)
from picturebook.story_generation.status import ensure_operation_allowed, ensure_transition
from picturebook.story_generation.story_service import StoryTextGenerator

from .notifications import (
    GENERATION_COMPLETED,
    GENERATION_ERRORED,
    GENERATION_PROGRESS,
    GENERATION_STARTED,
    STORY_UPDATED,
    Notifier,
)
from .orchestrator import CoreImageOptions, GenerationOrchestrator, PageImageOptions

logger = logging.getLogger(__name__)


class StoryWorkflow:
    """
    Facade over the text services, the generation orchestrator, and the revision engine.

    Every operation is addressed by story id and checked against the caller's
    owner id; a story owned by someone else is reported as not found.

    Parameters
    ----------
    repository:
        Persistence collaborator for stories, revisions, and templates.
    text_generator:
        LLM service for setting expansion, character extraction, and page text.
    orchestrator:
        Generation orchestrator producing stored illustrations.
    revisions:
        Revision engine; one is created on ``repository`` when omitted.
    notifier:
        Receives best-effort progress events.
    """

    def __init__(
        self,
        repository: InMemoryStoryRepository,
        *,
        text_generator: StoryTextGenerator,
        orchestrator: GenerationOrchestrator,
        revisions: RevisionEngine | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or Settings.from_env()
        self._repository = repository
        self._text = text_generator
        self._orchestrator = orchestrator
        self._revisions = revisions or RevisionEngine(repository, write_retries=self._settings.write_retries)
        self._notifier = notifier or Notifier()

    @property
    def revisions(self) -> RevisionEngine:
        return self._revisions

    # Story records -----------------------------------------------------------

    async def create_story(self, owner_id: str, brief: StoryBrief | Mapping[str, Any]) -> Story:
        if not isinstance(brief, StoryBrief):
            brief = StoryBrief.from_mapping(brief)
        story = Story(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=brief.title,
            setting=brief.setting,
            characters=brief.characters,
            plot=brief.plot,
            age_group=brief.age_group,
            total_pages=brief.total_pages,
            story_guidance=brief.story_guidance,
        )
        created = await self._repository.create_story(story)
        logger.info("Created story %s (%d pages) for %s", created.id, created.total_pages, owner_id)
        return created

    async def get_story(self, story_id: str, owner_id: str) -> Story:
        return await self._owned(story_id, owner_id)

    async def list_stories(self, owner_id: str) -> list[Story]:
        return await self._repository.list_stories(owner_id)

    async def update_story(self, story_id: str, owner_id: str, changes: Mapping[str, Any]) -> Story:
        await self._owned(story_id, owner_id)
        update = coerce_story_update(changes)
        target_status = update.pop("status", None)

        def apply(story: Story) -> None:
            if target_status is not None:
                story.status = ensure_transition(story.status, target_status)
            for name, value in update.items():
                setattr(story, name, value)

        return await self._mutate(story_id, apply)

    async def toggle_bookmark(self, story_id: str, owner_id: str) -> Story:
        await self._owned(story_id, owner_id)

        def flip(story: Story) -> None:
            story.is_bookmarked = not story.is_bookmarked

        return await self._mutate(story_id, flip)

    # Text steps --------------------------------------------------------------

    async def expand_setting(self, story_id: str, user: UserPreferences) -> Story:
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "expand the setting")
        expanded = await self._text.expand_setting(story, user)
        return await self._advance(story_id, StoryStatus.SETTING_EXPANSION, expanded_setting=expanded)

    async def approve_setting(
        self, story_id: str, owner_id: str, expanded_setting: str | None = None
    ) -> Story:
        story = await self._owned(story_id, owner_id)
        ensure_operation_allowed(story.status, "approve the setting")
        if expanded_setting is not None and not expanded_setting.strip():
            raise ValidationError("The approved setting cannot be empty.")
        changes = {"expanded_setting": expanded_setting.strip()} if expanded_setting else {}
        if not (changes or story.expanded_setting):
            raise ValidationError("Expand the setting before approving it.")
        return await self._advance(story_id, StoryStatus.SETTING_EXPANSION, **changes)

    async def extract_characters(self, story_id: str, user: UserPreferences) -> Story:
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "extract characters")
        characters = await self._text.extract_characters(story, user)
        return await self._advance(
            story_id, StoryStatus.CHARACTERS_EXTRACTED, extracted_characters=characters
        )

    async def approve_characters(
        self,
        story_id: str,
        user: UserPreferences,
        characters: Sequence[Character | Mapping[str, Any]] | None = None,
    ) -> Story:
        """Store the (possibly edited) cast, then write the page text."""
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "approve characters")

        if characters is not None:
            cast = [c if isinstance(c, Character) else Character.from_mapping(c) for c in characters]
            validate_characters(cast)
            story = await self._advance(story_id, StoryStatus.CHARACTERS_EXTRACTED, extracted_characters=cast)
        if not story.extracted_characters:
            raise ValidationError("Extract or provide characters before approving them.")

        return await self._write_pages(story, user)

    async def generate_story(self, story_id: str, user: UserPreferences) -> Story:
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "generate story text")
        if not story.extracted_characters:
            raise ValidationError("Extract characters before generating the story text.")
        return await self._write_pages(story, user)

    async def approve_story(
        self,
        story_id: str,
        owner_id: str,
        pages: Iterable[Mapping[str, Any]] | None = None,
    ) -> Story:
        """Accept the page text, applying per-page text edits while keeping illustrations."""
        story = await self._owned(story_id, owner_id)
        ensure_operation_allowed(story.status, "approve the story text")
        edits = {}
        for item in pages or []:
            number = int(item.get("page_number", item.get("pageNumber", 0)))
            text = str(item.get("text") or "").strip()
            if not text:
                raise ValidationError(f"Page {number} is missing text content.")
            edits[number] = item

        def apply(target: Story) -> None:
            for number, item in edits.items():
                page = target.get_page(number)
                page.text = str(item["text"]).strip()
                guidance = item.get("image_guidance", item.get("imageGuidance"))
                if guidance is not None:
                    page.image_guidance = str(guidance).strip() or None
            validate_page_sequence(target.pages, target.total_pages)
            target.status = ensure_transition(target.status, StoryStatus.TEXT_APPROVED)

        return await self._mutate(story_id, apply)

    # Illustrations -----------------------------------------------------------

    async def generate_all_images(
        self,
        story_id: str,
        user: UserPreferences,
        *,
        include_characters: bool = True,
    ) -> Story:
        """
        Generate the core image, then every page (and character) image concurrently.

        Each finished page is persisted on its own, so pages that succeed keep
        their images when another page fails. Any failure returns the story to
        ``text_approved`` and re-raises the first error.
        """
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "generate images")
        if not story.pages:
            raise ValidationError("The story has no pages to illustrate.")
        user.require_credentials()

        story = await self._advance(story_id, StoryStatus.GENERATING_IMAGES)
        names = [c.name for c in story.extracted_characters] if include_characters else []
        total = 1 + len(story.pages) + len(names)
        self._notifier.publish(GENERATION_STARTED, story_id, total=total)

        try:
            core = await self._orchestrator.generate_core_image(story, user)
            story = await self._mutate(story_id, lambda s: setattr(s, "core_image_file_id", core.file_id))
            self._notifier.publish(GENERATION_PROGRESS, story_id, target="core", file_id=core.file_id)

            tasks = [self._illustrate_page(story, page.page_number, user) for page in story.pages]
            tasks.extend(self._illustrate_character(story, name, user) for name in names)
            results = await asyncio.gather(*tasks, return_exceptions=True)
            failures = [result for result in results if isinstance(result, BaseException)]
            if failures:
                logger.error(
                    "%d of %d illustrations failed for story %s", len(failures), len(tasks), story_id
                )
                raise failures[0]
        except Exception as exc:
            await self._mutate(
                story_id, lambda s: setattr(s, "status", ensure_transition(s.status, StoryStatus.TEXT_APPROVED))
            )
            self._notifier.publish(GENERATION_ERRORED, story_id, error=str(exc))
            raise

        story = await self._advance(story_id, StoryStatus.COMPLETE)
        self._notifier.publish(GENERATION_COMPLETED, story_id, total=total)
        return story

    async def regenerate_core_image(
        self,
        story_id: str,
        user: UserPreferences,
        options: CoreImageOptions | None = None,
    ) -> Story:
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "regenerate an image")
        try:
            image = await self._orchestrator.generate_core_image(story, user, options)
        except Exception as exc:
            self._notifier.publish(GENERATION_ERRORED, story_id, target="core", error=str(exc))
            raise
        story = await self._mutate(story_id, lambda s: setattr(s, "core_image_file_id", image.file_id))
        self._notifier.publish(GENERATION_COMPLETED, story_id, target="core", file_id=image.file_id)
        return story

    async def regenerate_page_image(
        self,
        story_id: str,
        page_number: int,
        user: UserPreferences,
        options: PageImageOptions | None = None,
    ) -> Story:
        story = await self._owned(story_id, user.user_id)
        ensure_operation_allowed(story.status, "regenerate an image")
        story.get_page(page_number)
        try:
            story = await self._illustrate_page(story, page_number, user, options)
        except Exception as exc:
            self._notifier.publish(GENERATION_ERRORED, story_id, target=f"page-{page_number}", error=str(exc))
            raise
        self._notifier.publish(STORY_UPDATED, story_id, status=story.status.value)
        return story

    async def restore_page_image(
        self, story_id: str, owner_id: str, page_number: int, file_id: str
    ) -> Story:
        """Re-activate an earlier image from the page's history."""
        await self._owned(story_id, owner_id)
        return await self._mutate(story_id, lambda s: s.get_page(page_number).activate_image(file_id))

    # Revisions ---------------------------------------------------------------

    async def save_step(
        self,
        story_id: str,
        owner_id: str,
        step: WorkflowStep | str,
        partial_update: Mapping[str, Any],
        clear_future_steps: bool = False,
    ) -> tuple[Story, Revision | None]:
        story = await self._owned(story_id, owner_id)
        ensure_operation_allowed(story.status, "save a step")
        story, revision = await self._revisions.save_step(
            story_id, step, partial_update, clear_future_steps
        )
        self._notifier.publish(STORY_UPDATED, story_id, status=story.status.value)
        return story, revision

    async def load_revision(self, story_id: str, owner_id: str, revision_number: int) -> Story:
        story = await self._owned(story_id, owner_id)
        ensure_operation_allowed(story.status, "load a revision")
        story = await self._revisions.load_revision(story_id, revision_number)
        self._notifier.publish(STORY_UPDATED, story_id, status=story.status.value)
        return story

    async def fork_from_revision(
        self,
        story_id: str,
        owner_id: str,
        revision_number: int,
        *,
        description: str | None = None,
    ) -> tuple[Story, Revision]:
        story = await self._owned(story_id, owner_id)
        ensure_operation_allowed(story.status, "load a revision")
        story, revision = await self._revisions.fork_from_revision(
            story_id, revision_number, description=description
        )
        self._notifier.publish(STORY_UPDATED, story_id, status=story.status.value)
        return story, revision

    async def create_revision(
        self,
        story_id: str,
        owner_id: str,
        step: WorkflowStep | str,
        *,
        description: str | None = None,
        from_revision: int | None = None,
    ) -> Revision:
        await self._owned(story_id, owner_id)
        return await self._revisions.create_revision(
            story_id, step, description=description, from_revision=from_revision
        )

    async def list_revisions(self, story_id: str, owner_id: str) -> list[Revision]:
        await self._owned(story_id, owner_id)
        return await self._revisions.list_revisions(story_id)

    # Internals ---------------------------------------------------------------

    async def _owned(self, story_id: str, owner_id: str) -> Story:
        story = await self._repository.get_story(story_id)
        if story.owner_id != owner_id:
            raise NotFound("story", story_id)
        return story

    async def _mutate(self, story_id: str, mutation: Callable[[Story], Any]) -> Story:
        story, _ = await mutate_story(
            self._repository, story_id, mutation, retries=self._settings.write_retries
        )
        return story

    async def _advance(self, story_id: str, status: StoryStatus, **changes: Any) -> Story:
        def apply(story: Story) -> None:
            story.status = ensure_transition(story.status, status)
            for name, value in changes.items():
                setattr(story, name, value)

        story = await self._mutate(story_id, apply)
        self._notifier.publish(STORY_UPDATED, story_id, status=story.status.value)
        return story

    async def _write_pages(self, story: Story, user: UserPreferences) -> Story:
        generated = await self._text.generate_pages(story, story.extracted_characters, user)
        if story.status in {StoryStatus.DRAFT, StoryStatus.SETTING_EXPANSION}:
            await self._advance(story.id, StoryStatus.CHARACTERS_EXTRACTED)
        return await self._advance(story.id, StoryStatus.TEXT_APPROVED, pages=generated.pages)

    async def _illustrate_page(
        self,
        story: Story,
        page_number: int,
        user: UserPreferences,
        options: PageImageOptions | None = None,
    ) -> Story:
        image = await self._orchestrator.generate_page_image(story, page_number, user, options)
        updated = await self._repository.update_page_image(story.id, page_number, image.file_id, image.prompt)
        self._notifier.publish(
            GENERATION_PROGRESS, story.id, target=image.role, page_number=page_number, file_id=image.file_id
        )
        return updated

    async def _illustrate_character(self, story: Story, name: str, user: UserPreferences) -> Story:
        image = await self._orchestrator.generate_character_image(story, name, user)
        updated = await self._repository.update_character_image(story.id, name, image.file_id)
        self._notifier.publish(GENERATION_PROGRESS, story.id, target="character", name=name, file_id=image.file_id)
        return updated
