"""
Image inputs for template-driven requests, including logical placeholders.

A placeholder names a role inside the story ("the current core image") instead
of a concrete asset. It is resolved against the story as it stands when the
request is built, so regenerating the core image changes what every later
request referencing ``story:core`` receives.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from picturebook.errors import NotFound, ValidationError
from picturebook.storage.files import ImageStorageService
from picturebook.story_generation.models import Story

CORE_IMAGE = "story:core"
_PAGE_PREFIX = "story:page:"
_CHARACTER_PREFIX = "story:character:"
_FILE_PREFIX = "file:"


def page_image(page_number: int) -> str:
    return f"{_PAGE_PREFIX}{page_number}"


def character_image(name: str) -> str:
    return f"{_CHARACTER_PREFIX}{name}"


def stored_file(file_id: str) -> str:
    return f"{_FILE_PREFIX}{file_id}"


def is_placeholder(value: str) -> bool:
    return value == CORE_IMAGE or value.startswith((_PAGE_PREFIX, _CHARACTER_PREFIX, _FILE_PREFIX))


def placeholder_file_id(value: str, story: Story) -> str:
    """Map a placeholder to the file id it currently designates."""
    if value == CORE_IMAGE:
        file_id = story.core_image_file_id
        if not file_id:
            raise NotFound("core image", story.id)
        return file_id
    if value.startswith(_PAGE_PREFIX):
        raw_number = value[len(_PAGE_PREFIX):]
        try:
            page_number = int(raw_number)
        except ValueError as exc:
            raise ValidationError(f"Invalid page reference '{value}'.") from exc
        file_id = story.get_page(page_number).image_file_id
        if not file_id:
            raise NotFound("page image", f"{story.id}#{page_number}")
        return file_id
    if value.startswith(_CHARACTER_PREFIX):
        name = value[len(_CHARACTER_PREFIX):]
        file_id = story.get_character(name).image_file_id
        if not file_id:
            raise NotFound("character image", f"{story.id}#{name}")
        return file_id
    if value.startswith(_FILE_PREFIX):
        return value[len(_FILE_PREFIX):]
    raise ValidationError(f"'{value}' is not an image placeholder.")


@dataclass(frozen=True)
class ImageInputs:
    """
    Images supplied to one template-driven request.

    ``named`` holds explicit per-field overrides; array fields also collect them
    after the primary, reference and style images.
    """

    primary: str | None = None
    reference: str | None = None
    style: str | None = None
    named: Mapping[str, str] = field(default_factory=dict)
    additional_prompt: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ImageInputs":
        if not data:
            return cls()

        def pick(*keys: str) -> str | None:
            for key in keys:
                value = data.get(key)
                if value:
                    return str(value)
            return None

        named = data.get("additional_images") or data.get("additionalImages") or {}
        if not isinstance(named, Mapping):
            raise ValidationError("Additional images must map field names to images.")
        return cls(
            primary=pick("primary_image", "primaryImage"),
            reference=pick("reference_image", "referenceImage"),
            style=pick("style_image", "styleImage"),
            named={str(key): str(value) for key, value in named.items() if value},
            additional_prompt=pick("additional_prompt", "additionalPrompt"),
        )

    def merged_over(self, defaults: "ImageInputs") -> "ImageInputs":
        """Explicit values of ``self`` win; gaps are filled from ``defaults``."""
        return ImageInputs(
            primary=self.primary or defaults.primary,
            reference=self.reference or defaults.reference,
            style=self.style or defaults.style,
            named={**defaults.named, **self.named},
            additional_prompt=self.additional_prompt or defaults.additional_prompt,
        )

    def is_empty(self) -> bool:
        return not (self.primary or self.reference or self.style or self.named)


class ImageReferenceResolver:
    """Turns placeholders into inline data URIs read from the file store."""

    def __init__(self, image_storage: ImageStorageService) -> None:
        self._image_storage = image_storage

    async def resolve(self, value: str | None, story: Story) -> str | None:
        if not value or not is_placeholder(value):
            return value
        return await self._image_storage.as_data_uri(placeholder_file_id(value, story))

    async def resolve_inputs(self, inputs: ImageInputs, story: Story) -> ImageInputs:
        named = {}
        for name, value in inputs.named.items():
            named[name] = await self.resolve(value, story)
        return replace(
            inputs,
            primary=await self.resolve(inputs.primary, story),
            reference=await self.resolve(inputs.reference, story),
            style=await self.resolve(inputs.style, story),
            named=named,
        )
