"""
Service layer for the text steps of a picture book via LiteLLM-compatible models.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from picturebook.common import ChatResult, CompletionCallable, acall_chat_completion, parse_json_reply
from picturebook.config import Settings, UserPreferences
from picturebook.errors import ProviderRequestFailed, ValidationError

from .models import Character, Story, StoryPage, validate_characters, validate_page_sequence
from .prompting import (
    TextPrompt,
    build_character_prompt,
    build_setting_prompt,
    build_story_text_prompt,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedStory:
    title: str
    pages: list[StoryPage]


class StoryTextGenerator:
    """
    High-level helper that turns a story brief into an expanded setting, a cast, and page text.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        completion_fn: CompletionCallable | None = None,
    ) -> None:
        self._settings = settings or Settings.from_env()
        self._completion_fn: CompletionCallable = completion_fn or acall_chat_completion

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._settings.text_model

    async def expand_setting(self, story: Story, user: UserPreferences) -> str:
        payload = await self._ask(build_setting_prompt(story), user, temperature=0.7, what="setting")
        expanded = str(payload.get("expandedSetting") or payload.get("expanded_setting") or "").strip()
        if not expanded:
            raise ValidationError("Setting expansion response missing 'expandedSetting'.")
        return expanded

    async def extract_characters(self, story: Story, user: UserPreferences) -> list[Character]:
        payload = await self._ask(
            build_character_prompt(story), user, temperature=0.4, what="character extraction"
        )
        raw_characters = payload.get("characters")
        if not isinstance(raw_characters, list) or not raw_characters:
            raise ValidationError("Character extraction JSON must contain a non-empty 'characters' list.")

        characters = [Character.from_mapping(item) for item in raw_characters]
        validate_characters(characters)
        return characters

    async def generate_pages(
        self,
        story: Story,
        characters: Iterable[Character],
        user: UserPreferences,
    ) -> GeneratedStory:
        """
        Invoke the configured LLM to write exactly ``story.total_pages`` pages.
        """
        payload = await self._ask(
            build_story_text_prompt(story, list(characters)),
            user,
            temperature=0.8,
            what="story text",
        )

        title = str(payload.get("title") or "").strip()
        pages_data = payload.get("pages")
        if not title or not isinstance(pages_data, list):
            raise ValidationError("Invalid response format from the story model.")

        pages = self._convert_to_pages(pages_data)
        validate_page_sequence(pages, story.total_pages)
        return GeneratedStory(title=title, pages=pages)

    async def _ask(
        self,
        prompt: TextPrompt,
        user: UserPreferences,
        *,
        temperature: float,
        what: str,
        **response_kwargs: Any,
    ) -> Mapping[str, Any]:
        user.require_text_credentials()
        try:
            result: ChatResult = await self._completion_fn(
                model=self._settings.text_model,
                messages=[
                    {"role": "system", "content": prompt.system},
                    {"role": "user", "content": prompt.user},
                ],
                temperature=temperature,
                api_key=user.openai_api_key,
                api_base=user.openai_base_url,
                response_format={"type": "json_object"},
                **response_kwargs,
            )
        except Exception as exc:
            logger.error("Text generation (%s) failed: %s", what, exc)
            raise ProviderRequestFailed("OpenAI", f"Failed to generate {what}: {exc}") from exc

        if not result.text:
            raise ValidationError("LLM response did not contain any text content.")
        try:
            return parse_json_reply(result.text, what=what)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @staticmethod
    def _convert_to_pages(pages_data: Iterable[Mapping[str, Any]]) -> list[StoryPage]:
        pages: list[StoryPage] = []
        for item in pages_data:
            page = StoryPage.from_mapping(item)
            if not page.text:
                raise ValidationError(f"Page {page.page_number} is missing text content.")
            pages.append(page)
        pages.sort(key=lambda page: page.page_number)
        return pages
