"""
Revision engine: snapshots, invalidation of downstream steps, and restores.

Every operation that allocates a revision number runs inside a per-story
critical section, and the repository rejects a duplicate
``(story_id, revision_number)`` pair, so concurrent saves can never share a number.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
import weakref
from dataclasses import fields
from typing import Any, Mapping

from picturebook.errors import DuplicateRevision, IllegalTransition, ValidationError
from picturebook.storage.repository import InMemoryStoryRepository, mutate_story
from picturebook.story_generation.models import (
    Character,
    Revision,
    Story,
    StoryPage,
    StoryStatus,
    WorkflowStep,
    restore_snapshot,
    snapshot_story,
    validate_characters,
)
from picturebook.story_generation.status import ensure_transition

logger = logging.getLogger(__name__)

_STORY_FIELDS = {f.name for f in fields(Story)}
_READ_ONLY_FIELDS = {"id", "owner_id", "created_at", "updated_at", "version", "current_revision"}
_MAX_NUMBERING_ATTEMPTS = 10

# Lifecycle order of statuses, draft first.
_STATUS_RANK = {status: rank for rank, status in enumerate(StoryStatus)}

# Furthest status still backed by data once everything after a step is cleared.
_STATUS_CEILING = {
    WorkflowStep.DETAILS: StoryStatus.DRAFT,
    WorkflowStep.SETTING: StoryStatus.DRAFT,
    WorkflowStep.CHARACTERS: StoryStatus.SETTING_EXPANSION,
    WorkflowStep.REVIEW: StoryStatus.CHARACTERS_EXTRACTED,
    WorkflowStep.IMAGES: StoryStatus.TEXT_APPROVED,
}


def coerce_story_update(update: Mapping[str, Any]) -> dict[str, Any]:
    """
    Validate a partial story update and convert plain data into model objects.

    Raises :class:`ValidationError` for unknown or read-only fields before
    anything is written.
    """
    coerced: dict[str, Any] = {}
    for name, value in update.items():
        if name not in _STORY_FIELDS:
            raise ValidationError(f"Unknown story field '{name}'.")
        if name in _READ_ONLY_FIELDS:
            raise ValidationError(f"Story field '{name}' cannot be set directly.")

        if name == "pages":
            value = [p if isinstance(p, StoryPage) else StoryPage.from_mapping(p) for p in value or []]
        elif name == "extracted_characters":
            value = [c if isinstance(c, Character) else Character.from_mapping(c) for c in value or []]
            validate_characters(value)
        elif name == "status":
            try:
                value = StoryStatus(value)
            except ValueError as exc:
                raise ValidationError(f"Unknown story status '{value}'.") from exc
        coerced[name] = copy.deepcopy(value)
    return coerced


def compute_cleared_fields(
    step: WorkflowStep | str, story: Story, update: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """
    Fields invalidated by editing ``step``.

    Editing at or before ``setting`` drops the expanded setting, at or before
    ``characters`` the extracted cast, at or before ``review`` the pages, and at
    or before ``images`` the core image plus every page image. Page text kept by
    an ``images`` edit comes from ``update`` when it carries pages, otherwise
    from the live story. A status further along than the remaining data
    supports is rolled back to the last stage that still has its data.
    """
    step = WorkflowStep.parse(step)
    cleared: dict[str, Any] = {}

    if step.at_or_before(WorkflowStep.SETTING):
        cleared["expanded_setting"] = None
    if step.at_or_before(WorkflowStep.CHARACTERS):
        cleared["extracted_characters"] = []
    if step.at_or_before(WorkflowStep.REVIEW):
        cleared["pages"] = []
    if step.at_or_before(WorkflowStep.IMAGES):
        cleared["core_image_file_id"] = None
        if "pages" not in cleared:
            source = (update or {}).get("pages")
            pages = copy.deepcopy(list(source) if source is not None else story.pages)
            for page in pages:
                page.clear_image()
            cleared["pages"] = pages

    ceiling = _STATUS_CEILING.get(step)
    if ceiling is not None and _STATUS_RANK[story.status] > _STATUS_RANK[ceiling]:
        cleared["status"] = ceiling
    return cleared


def check_requested_status(
    current: StoryStatus, requested: StoryStatus, step: WorkflowStep | None = None
) -> StoryStatus:
    """
    Validate an explicit status change, optionally made alongside clearing ``step``.

    The move must be a legal lifecycle transition and, when clearing, must not
    claim a stage whose data the clear removes.
    """
    ensure_transition(current, requested)
    ceiling = _STATUS_CEILING.get(step) if step is not None else None
    if ceiling is not None and _STATUS_RANK[requested] > _STATUS_RANK[ceiling]:
        raise IllegalTransition(
            current.value, f"move to '{requested.value}' after clearing everything past the {step.value} step"
        )
    return requested


class RevisionEngine:
    """
    Snapshots and restores whole-story state for one repository.

    Parameters
    ----------
    repository:
        Persistence collaborator holding stories and their revision log.
    write_retries:
        Retry budget for story writes that hit a concurrent modification.
    """

    def __init__(self, repository: InMemoryStoryRepository, *, write_retries: int = 5) -> None:
        self._repository = repository
        self._write_retries = write_retries
        # Entries vanish once no coroutine holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, story_id: str) -> asyncio.Lock:
        lock = self._locks.get(story_id)
        if lock is None:
            lock = self._locks[story_id] = asyncio.Lock()
        return lock

    async def save_step(
        self,
        story_id: str,
        step: WorkflowStep | str,
        partial_update: Mapping[str, Any],
        clear_future_steps: bool = False,
    ) -> tuple[Story, Revision | None]:
        """
        Apply ``partial_update``; when ``clear_future_steps`` is set, snapshot first
        and invalidate everything downstream of ``step``.
        """
        step = WorkflowStep.parse(step)
        update = coerce_story_update(partial_update)

        async with self.lock_for(story_id):
            if not clear_future_steps:
                story = await self._apply(story_id, update)
                return story, None

            story = await self._repository.get_story(story_id)
            changes = {**update, **compute_cleared_fields(step, story, update)}
            if "status" in update:
                changes["status"] = check_requested_status(story.status, update["status"], step)
            elif "status" in changes:
                ensure_transition(story.status, changes["status"])

            revision = await self._record(
                story,
                snapshot=snapshot_story(story),
                step=step,
                parent_revision=story.current_revision,
                description=f"Edited at {step.value} step",
            )
            changes["current_revision"] = revision.revision_number
            story = await self._apply(story_id, changes)

        logger.info(
            "Story %s: revision %d recorded at step '%s' (parent %s)",
            story_id,
            revision.revision_number,
            step.value,
            revision.parent_revision,
        )
        return story, revision

    async def create_revision(
        self,
        story_id: str,
        step: WorkflowStep | str,
        *,
        description: str | None = None,
        from_revision: int | None = None,
    ) -> Revision:
        """Snapshot the live story without changing it, and point the story at the new revision."""
        step = WorkflowStep.parse(step)
        async with self.lock_for(story_id):
            story = await self._repository.get_story(story_id)
            if from_revision is not None:
                await self._repository.get_revision(story_id, from_revision)
            revision = await self._record(
                story,
                snapshot=snapshot_story(story),
                step=step,
                parent_revision=from_revision if from_revision is not None else story.current_revision,
                description=description,
            )
            await self._apply(story_id, {"current_revision": revision.revision_number})
        return revision

    async def load_revision(self, story_id: str, revision_number: int) -> Story:
        """
        Restore revision ``revision_number`` onto the live story in place.

        No revision is recorded for the restore itself; loading the same
        revision twice yields identical field values.
        """
        async with self.lock_for(story_id):
            story = await self._repository.load_revision_as_current_story(story_id, revision_number)
        logger.info("Story %s: loaded revision %d", story_id, revision_number)
        return story

    async def fork_from_revision(
        self,
        story_id: str,
        revision_number: int,
        *,
        description: str | None = None,
    ) -> tuple[Story, Revision]:
        """
        Restore ``revision_number`` and record the restored state as a new child revision.
        """
        async with self.lock_for(story_id):
            source = await self._repository.get_revision(story_id, revision_number)
            story = await self._repository.get_story(story_id)
            revision = await self._record(
                story,
                snapshot=copy.deepcopy(dict(source.snapshot)),
                step=source.step_completed,
                parent_revision=revision_number,
                description=description or f"Restored from revision {revision_number}",
            )

            def restore(target: Story) -> None:
                restore_snapshot(target, source.snapshot)
                target.current_revision = revision.revision_number

            story, _ = await mutate_story(
                self._repository, story_id, restore, retries=self._write_retries
            )
        return story, revision

    async def list_revisions(self, story_id: str) -> list[Revision]:
        return await self._repository.get_revisions(story_id)

    async def next_revision_number(self, story_id: str) -> int:
        revisions = await self._repository.get_revisions(story_id)
        return max((revision.revision_number for revision in revisions), default=0) + 1

    async def _record(
        self,
        story: Story,
        *,
        snapshot: Mapping[str, Any],
        step: WorkflowStep,
        parent_revision: int | None,
        description: str | None,
    ) -> Revision:
        number = await self.next_revision_number(story.id)
        for _ in range(_MAX_NUMBERING_ATTEMPTS):
            revision = Revision(
                id=str(uuid.uuid4()),
                story_id=story.id,
                revision_number=number,
                snapshot=snapshot,
                step_completed=step,
                parent_revision=parent_revision,
                description=description,
            )
            try:
                return await self._repository.create_revision(revision)
            except DuplicateRevision:
                number = await self.next_revision_number(story.id)
        raise DuplicateRevision(story.id, number)

    async def _apply(self, story_id: str, changes: Mapping[str, Any]) -> Story:
        def assign(story: Story) -> None:
            for name, value in changes.items():
                if name == "status":
                    value = ensure_transition(story.status, value)
                setattr(story, name, copy.deepcopy(value))

        story, _ = await mutate_story(self._repository, story_id, assign, retries=self._write_retries)
        return story
