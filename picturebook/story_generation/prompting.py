"""
Prompt construction utilities for the picture book text workflow.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .models import Character, Story

AGE_WORD_GUIDANCE = {
    "3-5": "Use very short sentences (5-10 words), simple words, and gentle repetition.",
    "6-8": "Use short sentences (8-14 words), playful vocabulary, and clear cause and effect.",
    "9-12": "Use varied sentences, richer vocabulary, and some emotional nuance.",
}

SYSTEM_AUTHOR = (
    "You are a professional children's book author who creates engaging, educational, and "
    "age-appropriate stories. Always respond with valid JSON in the exact format requested."
)


@dataclass(frozen=True)
class TextPrompt:
    """
    Container for the system and user prompts passed to the chat model.
    """

    system: str
    user: str


def _brief_block(story: Story) -> str:
    lines = [
        f"Title: {story.title}",
        f"Age group: {story.age_group}",
        f"Setting: {story.setting}",
        f"Characters: {story.characters}",
        f"Plot: {story.plot}",
    ]
    if story.story_guidance:
        lines.append(f"Story guidance: {story.story_guidance}")
    return "\n".join(f"- {line}" for line in lines)


def build_setting_prompt(story: Story) -> TextPrompt:
    user_prompt = f"""Expand the setting of this children's picture book into a vivid description an illustrator can work from.

{_brief_block(story)}

Requirements:
- 2-3 short paragraphs describing places, colours, weather, time of day, and recurring visual motifs.
- Keep everything safe, warm, and suitable for ages {story.age_group}.
- Do not narrate plot events; describe the world only.

Return JSON: {{"expandedSetting": "..."}}"""
    return TextPrompt(system=SYSTEM_AUTHOR, user=user_prompt)


def build_character_prompt(story: Story) -> TextPrompt:
    user_prompt = f"""Identify every character in this children's picture book and describe how each one looks.

{_brief_block(story)}
- Expanded setting: {story.effective_setting()}

Requirements:
- One entry per distinct character; names must be unique.
- Each description is 1-3 sentences focused on stable visual traits (species, age, colours, clothing, size).

Return JSON: {{"characters": [{{"name": "...", "description": "..."}}]}}"""
    return TextPrompt(system=SYSTEM_AUTHOR, user=user_prompt)


def build_story_text_prompt(story: Story, characters: Sequence[Character]) -> TextPrompt:
    character_lines = "\n".join(f"- {c.name}: {c.description}" for c in characters) or "- (none)"
    age_guidance = AGE_WORD_GUIDANCE.get(story.age_group, "")
    user_prompt = f"""Create a children's story suitable for ages {story.age_group}. The story should have exactly {story.total_pages} pages.

{_brief_block(story)}

Expanded setting:
{story.effective_setting()}

Approved characters:
{character_lines}

Requirements:
- Each page should have 50-150 words of engaging, age-appropriate text
- {age_guidance}
- The story should be complete and satisfying
- Include dialogue and action appropriate for the age group
- Ensure the story flows naturally across all pages
- Generate a catchy, child-friendly title

Return the response as JSON in this exact format:
{{
  "title": "Story Title Here",
  "pages": [
    {{"pageNumber": 1, "text": "Page 1 text content here..."}},
    {{"pageNumber": 2, "text": "Page 2 text content here..."}}
  ]
}}"""
    return TextPrompt(system=SYSTEM_AUTHOR, user=user_prompt)
