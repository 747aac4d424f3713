"""
LLM-backed illustration prompt generation with a deterministic fallback.
"""

from __future__ import annotations

import logging
from typing import Sequence

from picturebook.common import CompletionCallable, acall_chat_completion
from picturebook.config import Settings, UserPreferences
from picturebook.story_generation.models import Story, StoryPage
from picturebook.story_generation.prompting import TextPrompt

from .prompting import (
    build_core_fallback_prompt,
    build_core_prompt_request,
    build_page_fallback_prompt,
    build_page_prompt_request,
    with_no_text_clause,
)

logger = logging.getLogger(__name__)


class ImagePromptGenerator:
    """
    Turns story context into an illustration prompt.

    Any failure of the prompt model (including a missing key) degrades to a
    deterministic prompt built from the same context, so prompt generation
    never blocks image generation.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        completion_fn: CompletionCallable | None = None,
    ) -> None:
        self._settings = settings or Settings.from_env()
        self._completion_fn: CompletionCallable = completion_fn or acall_chat_completion

    async def page_prompt(
        self,
        story: Story,
        page: StoryPage,
        user: UserPreferences,
        previous_pages: Sequence[StoryPage] = (),
    ) -> str:
        generated = await self._generate(
            build_page_prompt_request(story, page, previous_pages), user, max_tokens=400
        )
        if generated is None:
            return build_page_fallback_prompt(story, page)
        logger.debug("Generated prompt for page %d: %s", page.page_number, generated[:200])
        return with_no_text_clause(generated)

    async def core_prompt(self, story: Story, user: UserPreferences) -> str:
        generated = await self._generate(build_core_prompt_request(story), user, max_tokens=350)
        if generated is None:
            return build_core_fallback_prompt(story)
        logger.debug("Generated core image prompt: %s", generated[:200])
        return with_no_text_clause(generated)

    async def _generate(self, prompt: TextPrompt, user: UserPreferences, *, max_tokens: int) -> str | None:
        if not user.openai_api_key:
            logger.info("No OpenAI key for prompt generation; using the fallback prompt.")
            return None
        try:
            result = await self._completion_fn(
                model=self._settings.prompt_model,
                messages=[
                    {"role": "system", "content": prompt.system},
                    {"role": "user", "content": prompt.user},
                ],
                temperature=0.7,
                max_tokens=max_tokens,
                api_key=user.openai_api_key,
                api_base=user.openai_base_url,
            )
        except Exception:
            logger.warning("Image prompt generation failed; using the fallback prompt.", exc_info=True)
            return None
        return result.text or None
