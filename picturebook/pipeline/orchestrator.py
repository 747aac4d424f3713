"""
Generation orchestrator: one illustration from story context to a stored file id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping

from picturebook.ai_generation.direct_service import DirectImageGenerator
from picturebook.ai_generation.prompt_generator import ImagePromptGenerator
from picturebook.ai_generation.prompting import (
    apply_custom_prompt,
    build_character_prompt,
    regeneration_request,
)
from picturebook.ai_generation.references import (
    CORE_IMAGE,
    ImageInputs,
    ImageReferenceResolver,
    page_image,
)
from picturebook.ai_generation.replicate_service import ReplicateImageGenerator
from picturebook.ai_generation.templates import TemplateResolver
from picturebook.config import REPLICATE_PROVIDER, Settings, UserPreferences
from picturebook.errors import StorageFailure
from picturebook.storage.files import ImageStorageService
from picturebook.story_generation.models import Story

logger = logging.getLogger(__name__)

ReplicateFactory = Callable[[UserPreferences], ReplicateImageGenerator]


@dataclass(frozen=True)
class CoreImageOptions:
    custom_prompt: str | None = None
    use_current_image_as_reference: bool = False
    custom_model: str | None = None
    custom_input: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class PageImageOptions(CoreImageOptions):
    image_guidance: str | None = None


@dataclass(frozen=True)
class GeneratedImage:
    """A freshly stored illustration and the prompt that produced it."""

    file_id: str
    prompt: str
    role: str


def _default_replicate_factory(user: UserPreferences) -> ReplicateImageGenerator:
    return ReplicateImageGenerator(api_token=user.replicate_api_key)


class GenerationOrchestrator:
    """
    Picks the user's provider, builds its request, and stores the result.

    Each call is single-provider end to end; a provider failure is raised as is
    and never retried on the other provider. Replicate clients are created per
    request from the caller's own credentials.
    """

    def __init__(
        self,
        *,
        image_storage: ImageStorageService,
        template_resolver: TemplateResolver | None = None,
        prompt_generator: ImagePromptGenerator | None = None,
        direct_generator: DirectImageGenerator | None = None,
        replicate_factory: ReplicateFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or Settings.from_env()
        self._image_storage = image_storage
        self._templates = template_resolver
        self._prompts = prompt_generator or ImagePromptGenerator(settings=self._settings)
        self._direct = direct_generator or DirectImageGenerator(settings=self._settings)
        self._replicate_factory = replicate_factory or _default_replicate_factory
        self._references = ImageReferenceResolver(image_storage)

    async def generate_core_image(
        self,
        story: Story,
        user: UserPreferences,
        options: CoreImageOptions | None = None,
    ) -> GeneratedImage:
        options = options or CoreImageOptions()
        user.require_credentials()

        prompt = apply_custom_prompt(await self._prompts.core_prompt(story, user), options.custom_prompt)
        reuse_current = options.use_current_image_as_reference and bool(story.core_image_file_id)
        defaults = ImageInputs(primary=CORE_IMAGE if reuse_current else None)

        url = await self._render(story, user, prompt, options, defaults, reuse_current=reuse_current)
        file_id = await self._store(url, story.id, "core")
        return GeneratedImage(file_id=file_id, prompt=prompt, role="core")

    async def generate_page_image(
        self,
        story: Story,
        page_number: int,
        user: UserPreferences,
        options: PageImageOptions | None = None,
    ) -> GeneratedImage:
        options = options or PageImageOptions()
        page = story.get_page(page_number)
        if options.image_guidance:
            page = replace(page, image_guidance=options.image_guidance)
        user.require_credentials()

        previous = [p for p in story.pages if p.page_number < page.page_number]
        base_prompt = await self._prompts.page_prompt(story, page, user, previous)

        reuse_current = options.use_current_image_as_reference and bool(page.image_file_id)
        custom = regeneration_request(options.custom_prompt) if reuse_current else options.custom_prompt
        prompt = apply_custom_prompt(base_prompt, custom)
        defaults = ImageInputs(
            primary=page_image(page_number) if reuse_current else None,
            reference=CORE_IMAGE if story.core_image_file_id else None,
        )

        url = await self._render(story, user, prompt, options, defaults, reuse_current=reuse_current)
        role = f"page-{page_number}"
        file_id = await self._store(url, story.id, role)
        return GeneratedImage(file_id=file_id, prompt=prompt, role=role)

    async def generate_character_image(
        self,
        story: Story,
        name: str,
        user: UserPreferences,
        options: CoreImageOptions | None = None,
    ) -> GeneratedImage:
        options = options or CoreImageOptions()
        character = story.get_character(name)
        user.require_credentials()

        prompt = apply_custom_prompt(build_character_prompt(story, character), options.custom_prompt)
        defaults = ImageInputs(reference=CORE_IMAGE if story.core_image_file_id else None)

        url = await self._render(story, user, prompt, options, defaults, reuse_current=False)
        file_id = await self._store(url, story.id, "character")
        return GeneratedImage(file_id=file_id, prompt=prompt, role="character")

    async def _render(
        self,
        story: Story,
        user: UserPreferences,
        prompt: str,
        options: CoreImageOptions,
        defaults: ImageInputs,
        *,
        reuse_current: bool,
    ) -> str:
        if user.image_provider == REPLICATE_PROVIDER:
            model_id = self._settings.resolve_replicate_model(
                options.custom_model or user.preferred_replicate_model
            )
            template = (
                await self._templates.resolve(user.user_id, model_id) if self._templates is not None else None
            )
            images = ImageInputs.from_mapping(options.custom_input).merged_over(defaults)
            if template is not None:
                images = await self._references.resolve_inputs(images, story)
            logger.info("Generating %s image with Replicate model %s", story.id, model_id)
            generator = self._replicate_factory(user)
            return await generator.generate(model_id, prompt, template=template, images=images)

        logger.info("Generating %s image with %s", story.id, self._direct.model)
        reference = defaults.primary if reuse_current else None
        return await self._direct.generate(prompt, user, reference_image=reference)

    async def _store(self, url: str, story_id: str, role: str) -> str:
        try:
            return await self._image_storage.download_and_store(url, story_id, role)
        except StorageFailure:
            logger.error("Generated %s image for story %s could not be stored", role, story_id)
            raise
