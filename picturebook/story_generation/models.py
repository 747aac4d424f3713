"""
Structured representations of a co-authored picture book and its revisions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

from picturebook.errors import NotFound, ValidationError

AGE_GROUPS = ("3-5", "6-8", "9-12")
MIN_PAGES = 5
MAX_PAGES = 50


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value))
    return utcnow()


class WorkflowStep(str, Enum):
    """Ordered narrative stages; editing a stage invalidates the ones after it."""

    DETAILS = "details"
    SETTING = "setting"
    CHARACTERS = "characters"
    REVIEW = "review"
    IMAGES = "images"
    COMPLETE = "complete"

    @property
    def position(self) -> int:
        return _STEP_ORDER.index(self)

    def at_or_before(self, other: "WorkflowStep") -> bool:
        return self.position <= other.position

    @classmethod
    def parse(cls, value: "WorkflowStep | str") -> "WorkflowStep":
        try:
            return cls(value)
        except ValueError as exc:
            allowed = ", ".join(step.value for step in cls)
            raise ValidationError(f"Unknown workflow step '{value}'. Expected one of: {allowed}.") from exc


_STEP_ORDER = list(WorkflowStep)


class StoryStatus(str, Enum):
    """Operational lifecycle state of a story."""

    DRAFT = "draft"
    SETTING_EXPANSION = "setting_expansion"
    CHARACTERS_EXTRACTED = "characters_extracted"
    TEXT_APPROVED = "text_approved"
    GENERATING_IMAGES = "generating_images"
    COMPLETE = "complete"


@dataclass
class Character:
    name: str
    description: str
    image_file_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "image_file_id": self.image_file_id,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Character":
        name = _coerce_optional_str(data.get("name"))
        description = _coerce_optional_str(data.get("description"))
        if not name:
            raise ValidationError("Character name required.")
        if not description:
            raise ValidationError(f"Character '{name}' needs a description.")
        return cls(
            name=name,
            description=description,
            image_file_id=_coerce_optional_str(data.get("image_file_id")),
        )


@dataclass
class ImageVersion:
    """One generated illustration of a page, newest last."""

    file_id: str
    prompt: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "prompt": self.prompt,
            "created_at": self.created_at.isoformat(),
            "is_active": self.is_active,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ImageVersion":
        return cls(
            file_id=str(data["file_id"]),
            prompt=_coerce_optional_str(data.get("prompt")),
            created_at=_parse_timestamp(data.get("created_at")),
            is_active=bool(data.get("is_active", False)),
        )


@dataclass
class StoryPage:
    page_number: int
    text: str
    image_guidance: str | None = None
    image_file_id: str | None = None
    image_prompt: str | None = None
    image_history: list[ImageVersion] = field(default_factory=list)

    def record_image(self, file_id: str, prompt: str | None, *, at: datetime | None = None) -> None:
        """
        Make ``file_id`` the page's active image.

        The previously active entry stays in the history, marked inactive. A current
        image that predates the history is captured first so it is not lost.
        """
        if self.image_file_id and not any(
            version.file_id == self.image_file_id for version in self.image_history
        ):
            self.image_history.append(
                ImageVersion(file_id=self.image_file_id, prompt=self.image_prompt)
            )
        for version in self.image_history:
            version.is_active = False
        self.image_history.append(
            ImageVersion(file_id=file_id, prompt=prompt, created_at=at or utcnow(), is_active=True)
        )
        self.image_file_id = file_id
        self.image_prompt = prompt

    def activate_image(self, file_id: str) -> None:
        """Re-activate an image that is already in the history."""
        target = next((v for v in self.image_history if v.file_id == file_id), None)
        if target is None:
            raise NotFound("image version", file_id)
        for version in self.image_history:
            version.is_active = version is target
        self.image_file_id = target.file_id
        self.image_prompt = target.prompt

    def clear_image(self) -> None:
        self.image_file_id = None
        self.image_prompt = None
        for version in self.image_history:
            version.is_active = False

    def active_version(self) -> ImageVersion | None:
        return next((v for v in self.image_history if v.is_active), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "text": self.text,
            "image_guidance": self.image_guidance,
            "image_file_id": self.image_file_id,
            "image_prompt": self.image_prompt,
            "image_history": [version.to_dict() for version in self.image_history],
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StoryPage":
        try:
            page_number = int(data.get("page_number", data.get("pageNumber")))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid page entry: {data}") from exc
        text = str(data.get("text") or "").strip()
        return cls(
            page_number=page_number,
            text=text,
            image_guidance=_coerce_optional_str(
                data.get("image_guidance") or data.get("imageGuidance")
            ),
            image_file_id=_coerce_optional_str(data.get("image_file_id")),
            image_prompt=_coerce_optional_str(data.get("image_prompt")),
            image_history=[ImageVersion.from_mapping(item) for item in data.get("image_history") or []],
        )


def validate_page_sequence(pages: Sequence[StoryPage], expected_total: int | None = None) -> None:
    if expected_total is not None and len(pages) != expected_total:
        raise ValidationError(f"Expected {expected_total} pages, received {len(pages)}.")

    for expected, page in enumerate(pages, start=1):
        if page.page_number != expected:
            raise ValidationError("Page numbers must be sequential starting from 1.")


def validate_characters(characters: Sequence[Character]) -> None:
    seen: set[str] = set()
    for character in characters:
        key = character.name.casefold()
        if key in seen:
            raise ValidationError(f"Character names must be unique within a story: '{character.name}'.")
        seen.add(key)


@dataclass(frozen=True)
class StoryBrief:
    """
    The user's initial description of the book, validated before a story is created.
    """

    title: str
    setting: str
    characters: str
    plot: str
    age_group: str
    total_pages: int
    story_guidance: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StoryBrief":
        title = str(data.get("title") or "").strip()
        setting = str(data.get("setting") or "").strip()
        characters = str(data.get("characters") or "").strip()
        plot = str(data.get("plot") or "").strip()
        age_group = str(data.get("age_group") or data.get("ageGroup") or "").strip()

        if len(title) < 3:
            raise ValidationError("Title must be at least 3 characters.")
        if len(setting) < 10:
            raise ValidationError("Setting must be at least 10 characters.")
        if len(characters) < 10:
            raise ValidationError("Characters must be at least 10 characters.")
        if len(plot) < 20:
            raise ValidationError("Plot must be at least 20 characters.")
        if age_group not in AGE_GROUPS:
            raise ValidationError(f"Age group must be one of: {', '.join(AGE_GROUPS)}.")

        raw_pages = data.get("total_pages", data.get("totalPages"))
        try:
            total_pages = int(raw_pages)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Expected an integer page count, got {raw_pages!r}.") from exc
        if not MIN_PAGES <= total_pages <= MAX_PAGES:
            raise ValidationError(f"Page count must fall between {MIN_PAGES} and {MAX_PAGES}.")

        return cls(
            title=title,
            setting=setting,
            characters=characters,
            plot=plot,
            age_group=age_group,
            total_pages=total_pages,
            story_guidance=_coerce_optional_str(
                data.get("story_guidance") or data.get("storyGuidance")
            ),
        )


@dataclass
class Story:
    """
    Live state of a book. ``version`` increments on every persisted write and
    guards read-modify-write cycles against lost updates.
    """

    id: str
    owner_id: str
    title: str
    setting: str
    characters: str
    plot: str
    age_group: str
    total_pages: int
    story_guidance: str | None = None
    expanded_setting: str | None = None
    extracted_characters: list[Character] = field(default_factory=list)
    pages: list[StoryPage] = field(default_factory=list)
    core_image_file_id: str | None = None
    status: StoryStatus = StoryStatus.DRAFT
    current_revision: int = 1
    is_bookmarked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def get_page(self, page_number: int) -> StoryPage:
        for page in self.pages:
            if page.page_number == page_number:
                return page
        raise NotFound("page", f"{self.id}#{page_number}")

    def get_character(self, name: str) -> Character:
        for character in self.extracted_characters:
            if character.name == name:
                return character
        raise NotFound("character", f"{self.id}#{name}")

    def effective_setting(self) -> str:
        return self.expanded_setting or self.setting

    def character_summary(self) -> str:
        if not self.extracted_characters:
            return self.characters
        return ", ".join(f"{c.name}: {c.description}" for c in self.extracted_characters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "setting": self.setting,
            "characters": self.characters,
            "plot": self.plot,
            "age_group": self.age_group,
            "total_pages": self.total_pages,
            "story_guidance": self.story_guidance,
            "expanded_setting": self.expanded_setting,
            "extracted_characters": [c.to_dict() for c in self.extracted_characters],
            "pages": [page.to_dict() for page in self.pages],
            "core_image_file_id": self.core_image_file_id,
            "status": self.status.value,
            "current_revision": self.current_revision,
            "is_bookmarked": self.is_bookmarked,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Story":
        return cls(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            title=str(data.get("title") or ""),
            setting=str(data.get("setting") or ""),
            characters=str(data.get("characters") or ""),
            plot=str(data.get("plot") or ""),
            age_group=str(data.get("age_group") or ""),
            total_pages=int(data.get("total_pages") or 0),
            story_guidance=_coerce_optional_str(data.get("story_guidance")),
            expanded_setting=_coerce_optional_str(data.get("expanded_setting")),
            extracted_characters=[
                Character.from_mapping(item) for item in data.get("extracted_characters") or []
            ],
            pages=[StoryPage.from_mapping(item) for item in data.get("pages") or []],
            core_image_file_id=_coerce_optional_str(data.get("core_image_file_id")),
            status=StoryStatus(data.get("status") or StoryStatus.DRAFT.value),
            current_revision=int(data.get("current_revision") or 1),
            is_bookmarked=bool(data.get("is_bookmarked", False)),
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
            version=int(data.get("version") or 0),
        )


# Fields copied into a revision and restored from it.
SNAPSHOT_FIELDS = (
    "title",
    "setting",
    "expanded_setting",
    "characters",
    "extracted_characters",
    "plot",
    "age_group",
    "total_pages",
    "story_guidance",
    "pages",
    "core_image_file_id",
    "status",
)


@dataclass(frozen=True)
class Revision:
    """Immutable snapshot of a story's narrative and image state."""

    id: str
    story_id: str
    revision_number: int
    snapshot: Mapping[str, Any]
    step_completed: WorkflowStep
    parent_revision: int | None = None
    description: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "revision_number": self.revision_number,
            "snapshot": dict(self.snapshot),
            "step_completed": self.step_completed.value,
            "parent_revision": self.parent_revision,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Revision":
        parent = data.get("parent_revision")
        return cls(
            id=str(data["id"]),
            story_id=str(data["story_id"]),
            revision_number=int(data["revision_number"]),
            snapshot=dict(data.get("snapshot") or {}),
            step_completed=WorkflowStep.parse(data["step_completed"]),
            parent_revision=int(parent) if parent is not None else None,
            description=_coerce_optional_str(data.get("description")),
            created_at=_parse_timestamp(data.get("created_at")),
        )


def snapshot_story(story: Story) -> dict[str, Any]:
    """Serialize every snapshot field of ``story`` into plain data."""
    payload = story.to_dict()
    return {name: payload[name] for name in SNAPSHOT_FIELDS}


def restore_snapshot(story: Story, snapshot: Mapping[str, Any]) -> None:
    """Copy every snapshot field back onto ``story`` in place."""
    merged = story.to_dict()
    merged.update({name: snapshot[name] for name in SNAPSHOT_FIELDS if name in snapshot})
    restored = Story.from_mapping(merged)
    for name in SNAPSHOT_FIELDS:
        setattr(story, name, getattr(restored, name))
