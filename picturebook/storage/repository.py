"""
Persistence collaborator for stories, revisions, and per-user model templates.

Every story write carries the story's ``version``; a write built from a stale
read raises :class:`ConcurrentModification` instead of silently discarding the
other writer's changes. :func:`mutate_story` wraps the read-modify-write cycle
and retries with a fresh read on conflict.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

import yaml

from picturebook.ai_generation.templates import ModelTemplate
from picturebook.errors import ConcurrentModification, DuplicateRevision, NotFound
from picturebook.story_generation.models import (
    Revision,
    Story,
    restore_snapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IMMUTABLE_FIELDS = {"id", "owner_id", "created_at", "version"}


class InMemoryStoryRepository:
    """
    Reference repository keeping all state in process memory.

    Methods never hand out internal objects: callers receive deep copies, so a
    story mutated by a caller only reaches storage through an explicit write.
    """

    def __init__(self) -> None:
        self._stories: dict[str, Story] = {}
        self._revisions: dict[str, dict[int, Revision]] = {}
        self._templates: dict[tuple[str, str], ModelTemplate] = {}

    # Stories -----------------------------------------------------------------

    async def create_story(self, story: Story) -> Story:
        stored = copy.deepcopy(story)
        stored.version = 1
        self._stories[stored.id] = stored
        self._persist()
        return copy.deepcopy(stored)

    async def get_story(self, story_id: str) -> Story:
        return copy.deepcopy(self._require_story(story_id))

    async def list_stories(self, owner_id: str) -> list[Story]:
        owned = [story for story in self._stories.values() if story.owner_id == owner_id]
        owned.sort(key=lambda story: story.created_at, reverse=True)
        return [copy.deepcopy(story) for story in owned]

    async def update_story(
        self,
        story_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Story:
        """Apply a partial update; last write wins unless ``expected_version`` is given."""
        current = self._require_story(story_id)
        self._check_version(current, expected_version)
        updated = copy.deepcopy(current)
        for name, value in changes.items():
            if name in _IMMUTABLE_FIELDS:
                continue
            if not hasattr(updated, name):
                raise AttributeError(f"Story has no field '{name}'.")
            setattr(updated, name, copy.deepcopy(value))
        return self._commit(updated)

    async def save_story(self, story: Story) -> Story:
        """Write back a full story read earlier; rejects the write if it is stale."""
        current = self._require_story(story.id)
        self._check_version(current, story.version)
        return self._commit(copy.deepcopy(story))

    async def update_page_image(
        self, story_id: str, page_number: int, file_id: str, prompt: str | None
    ) -> Story:
        """Atomically make ``file_id`` the active image of one page."""
        updated = copy.deepcopy(self._require_story(story_id))
        updated.get_page(page_number).record_image(file_id, prompt)
        return self._commit(updated)

    async def update_character_image(self, story_id: str, name: str, file_id: str) -> Story:
        updated = copy.deepcopy(self._require_story(story_id))
        updated.get_character(name).image_file_id = file_id
        return self._commit(updated)

    # Revisions ---------------------------------------------------------------

    async def create_revision(self, revision: Revision) -> Revision:
        self._require_story(revision.story_id)
        story_revisions = self._revisions.setdefault(revision.story_id, {})
        if revision.revision_number in story_revisions:
            raise DuplicateRevision(revision.story_id, revision.revision_number)
        story_revisions[revision.revision_number] = copy.deepcopy(revision)
        self._persist()
        return copy.deepcopy(revision)

    async def get_revisions(self, story_id: str) -> list[Revision]:
        self._require_story(story_id)
        story_revisions = self._revisions.get(story_id, {})
        return [copy.deepcopy(story_revisions[number]) for number in sorted(story_revisions)]

    async def get_revision(self, story_id: str, revision_number: int) -> Revision:
        self._require_story(story_id)
        revision = self._revisions.get(story_id, {}).get(revision_number)
        if revision is None:
            raise NotFound("revision", f"{story_id}@{revision_number}")
        return copy.deepcopy(revision)

    async def load_revision_as_current_story(self, story_id: str, revision_number: int) -> Story:
        revision = await self.get_revision(story_id, revision_number)
        updated = copy.deepcopy(self._require_story(story_id))
        restore_snapshot(updated, revision.snapshot)
        updated.current_revision = revision_number
        return self._commit(updated)

    # Templates ---------------------------------------------------------------

    async def get_template(self, user_id: str, model_id: str) -> ModelTemplate | None:
        template = self._templates.get((user_id, model_id))
        return copy.deepcopy(template) if template is not None else None

    async def save_template(self, user_id: str, template: ModelTemplate) -> ModelTemplate:
        self._templates[(user_id, template.model_id)] = copy.deepcopy(template)
        self._persist()
        return template

    async def list_templates(self, user_id: str) -> list[ModelTemplate]:
        return [
            copy.deepcopy(template)
            for (owner, _), template in sorted(self._templates.items())
            if owner == user_id
        ]

    # Internals ---------------------------------------------------------------

    def _require_story(self, story_id: str) -> Story:
        story = self._stories.get(story_id)
        if story is None:
            raise NotFound("story", story_id)
        return story

    @staticmethod
    def _check_version(current: Story, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != current.version:
            raise ConcurrentModification(current.id, expected_version, current.version)

    def _commit(self, story: Story) -> Story:
        story.version = self._stories[story.id].version + 1
        story.updated_at = utcnow()
        self._stories[story.id] = story
        self._persist()
        return copy.deepcopy(story)

    def _persist(self) -> None:
        """Hook for durable subclasses."""


class YamlStoryRepository(InMemoryStoryRepository):
    """
    Repository that mirrors its state into a single YAML document after every write.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        if self._path.exists():
            self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        data = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ValueError("Repository YAML must deserialize to a mapping.")

        for entry in data.get("stories", []):
            story = Story.from_mapping(entry)
            self._stories[story.id] = story
        for entry in data.get("revisions", []):
            revision = Revision.from_mapping(entry)
            self._revisions.setdefault(revision.story_id, {})[revision.revision_number] = revision
        for entry in data.get("templates", []):
            template = ModelTemplate.from_mapping(entry["template"])
            self._templates[(str(entry["user_id"]), template.model_id)] = template

    def _persist(self) -> None:
        payload = {
            "stories": [story.to_dict() for story in self._stories.values()],
            "revisions": [
                revision.to_dict()
                for story_revisions in self._revisions.values()
                for revision in story_revisions.values()
            ],
            "templates": [
                {"user_id": user_id, "template": template.to_dict()}
                for (user_id, _), template in self._templates.items()
            ],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(
            yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8"
        )


async def mutate_story(
    repository: InMemoryStoryRepository,
    story_id: str,
    mutation: Callable[[Story], T],
    *,
    retries: int = 5,
) -> tuple[Story, T]:
    """
    Read the story, apply ``mutation`` in place, and write it back with a version check.

    On a conflicting concurrent write the cycle restarts from a fresh read, so the
    mutation must be safe to run more than once.
    """
    attempt = 0
    while True:
        story = await repository.get_story(story_id)
        result = mutation(story)
        try:
            saved = await repository.save_story(story)
        except ConcurrentModification:
            attempt += 1
            if attempt > retries:
                raise
            logger.debug("Retrying write to story %s after conflict (attempt %d)", story_id, attempt)
            continue
        return saved, result
