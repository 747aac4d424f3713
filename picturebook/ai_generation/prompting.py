"""
Prompt construction utilities for picture book illustrations.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from picturebook.story_generation.models import Character, Story, StoryPage
from picturebook.story_generation.prompting import TextPrompt

ART_STYLE = (
    "Bright, vibrant colors suitable for children, cartoonish and friendly illustration style, "
    "high quality digital illustration, safe and wholesome content only"
)

NO_TEXT_CLAUSE = (
    "IMPORTANT: Do not include any text, words, letters, or written language in the image "
    "unless specifically requested above."
)

REGENERATION_INSTRUCTIONS = """CRITICAL REGENERATION INSTRUCTIONS:
- You are regenerating an existing page image that must maintain PERFECT visual consistency with both the core story image AND the current page image
- The core story image establishes the character designs, art style, and visual world that must be preserved
- The current page image shows the exact composition and elements that should be kept while making requested modifications
- Do NOT change the fundamental character designs, art style, or color palette established in the core image
- Do NOT drastically alter the composition or main elements unless specifically requested
- Focus on making the specific changes mentioned in the custom prompt while preserving all established visual consistency
- This is a refinement/modification of an existing image, not a completely new creation"""

DEFAULT_REGENERATION_REQUEST = (
    "Please regenerate this image keeping the same composition, style, and character designs "
    "while making minor improvements or adjustments."
)

PAGE_PROMPT_SYSTEM = (
    "You are an expert visual prompt generator for children's book illustrations. Create concise, "
    "vivid descriptions that focus on visual elements, characters, setting, and mood."
)
CORE_PROMPT_SYSTEM = (
    "You are an expert visual prompt generator for children's book cover art. Create compelling, "
    "focused descriptions that capture story essence."
)


def condense(text: str | None, limit: int) -> str:
    cleaned = (text or "").strip()
    return cleaned if len(cleaned) <= limit else cleaned[:limit] + "..."


def character_notes(characters: Iterable[Character], *, limit: int = 80) -> list[str]:
    return [f"{c.name}: {condense(c.description, limit)}" for c in characters]


def _story_context_lines(story: Story, *, characters_title: str = "Characters") -> list[str]:
    lines = [
        f"Title: {story.title}",
        f"Age Group: {story.age_group}",
        f"Setting: {condense(story.effective_setting(), 200)}",
    ]
    cast = character_notes(story.extracted_characters)
    if cast:
        lines.append(f"{characters_title}: " + ", ".join(cast))
    if story.story_guidance:
        lines.append(f"Story Theme: {story.story_guidance}")
    return lines


def build_page_prompt_request(
    story: Story,
    page: StoryPage,
    previous_pages: Sequence[StoryPage] = (),
) -> TextPrompt:
    """Chat request asking the prompt model to describe one page's illustration."""
    sections = [
        "You are an expert at creating visual descriptions for children's book illustrations. "
        "Generate a concise, vivid visual prompt that describes exactly what should appear in this illustration.",
        _format_bullet_section("STORY CONTEXT:", _story_context_lines(story)),
    ]

    current = [f"Page {page.page_number}: {page.text}"]
    if page.image_guidance:
        current.append(f"Image Guidance: {page.image_guidance}")
    sections.append(_format_bullet_section("CURRENT PAGE:", current))

    if previous_pages:
        sections.append(
            _format_bullet_section(
                "PREVIOUS SCENES:",
                [f"Page {p.page_number}: {condense(p.text, 100)}" for p in previous_pages],
            )
        )

    sections.append(
        _format_bullet_section(
            "INSTRUCTIONS:",
            [
                "Create a focused visual description of what should be illustrated for the current page",
                "Include key visual elements: characters, setting details, actions, mood, lighting",
                "Maintain visual consistency with previous scenes mentioned",
                "Keep it concise (under 300 words) but visually rich",
                "Focus on what can be SEEN, not story narrative",
                f'Include art style: "{ART_STYLE}"',
            ],
        )
    )
    sections.append("Generate the visual prompt:")
    return TextPrompt(system=PAGE_PROMPT_SYSTEM, user="\n\n".join(sections))


def build_core_prompt_request(story: Story) -> TextPrompt:
    """Chat request asking the prompt model to describe the story's key illustration."""
    context = _story_context_lines(story, characters_title="Main Characters")
    context.insert(2, f"Plot: {condense(story.plot, 300)}")
    sections = [
        "You are an expert at creating visual descriptions for children's book cover art. "
        "Generate a compelling visual prompt that captures the essence of this entire story.",
        _format_bullet_section("STORY OVERVIEW:", context),
        _format_bullet_section(
            "INSTRUCTIONS:",
            [
                "Create a captivating visual description for the main story illustration",
                "Include the main characters in an iconic scene or setting",
                "Capture the story's mood, theme, and adventure",
                f'Include art style: "{ART_STYLE}"',
                "Keep it focused and under 250 words",
            ],
        ),
        "Generate the core image visual prompt:",
    ]
    return TextPrompt(system=CORE_PROMPT_SYSTEM, user="\n\n".join(sections))


def build_page_fallback_prompt(story: Story, page: StoryPage) -> str:
    lines = [f"Create a beautiful children's book illustration for: {page.text}", ""]
    cast = character_notes(story.extracted_characters)
    if cast:
        lines.append("Characters: " + ", ".join(cast))
    lines.append(f"Setting: {condense(story.effective_setting(), 200)}")
    if story.story_guidance:
        lines.append(f"Story guidance: {story.story_guidance}")
    if page.image_guidance:
        lines.append(f"Page guidance: {page.image_guidance}")
    lines.extend(["", f"Style: {ART_STYLE}"])
    return with_no_text_clause("\n".join(lines))


def build_core_fallback_prompt(story: Story) -> str:
    lines = [f'Create a beautiful children\'s book illustration representing the story "{story.title}"', ""]
    cast = character_notes(story.extracted_characters)
    if cast:
        lines.append("Characters: " + ", ".join(cast))
    lines.append(f"Setting: {condense(story.effective_setting(), 200)}")
    lines.append(f"Plot: {story.plot}")
    if story.story_guidance:
        lines.append(f"Story guidance: {story.story_guidance}")
    lines.extend(["", f"Style: {ART_STYLE}"])
    return with_no_text_clause("\n".join(lines))


def build_character_prompt(story: Story, character: Character) -> str:
    notes = _normalize_note_input(character.description)
    lines = [
        f"Create a friendly character portrait of {character.name} for the children's book \"{story.title}\".",
        "",
        _format_bullet_section("CHARACTER DETAILS", notes),
        "",
        f"World: {condense(story.effective_setting(), 200)}",
        "Full body, plain soft background, facing the viewer, consistent with the rest of the book.",
        "",
        f"Style: {ART_STYLE}",
    ]
    return with_no_text_clause("\n".join(lines))


def with_no_text_clause(prompt: str) -> str:
    body = prompt.rstrip()
    if body.endswith(NO_TEXT_CLAUSE):
        return body
    return f"{body}\n\n{NO_TEXT_CLAUSE}"


def apply_custom_prompt(prompt: str, custom_prompt: str | None) -> str:
    """
    Append the user's custom request to a generated prompt without replacing its context.
    """
    if not custom_prompt or not custom_prompt.strip():
        return with_no_text_clause(prompt)
    body = prompt.rstrip()
    if body.endswith(NO_TEXT_CLAUSE):
        body = body[: -len(NO_TEXT_CLAUSE)].rstrip()
    return with_no_text_clause(f"{body}\n\nCustom modifications: {custom_prompt.strip()}")


def regeneration_request(custom_prompt: str | None) -> str:
    request = custom_prompt.strip() if custom_prompt and custom_prompt.strip() else DEFAULT_REGENERATION_REQUEST
    return f"{request}\n\n{REGENERATION_INSTRUCTIONS}"


def _normalize_note_input(
    value: str | Sequence[str] | Mapping[str, str] | None,
) -> list[str]:
    if value is None:
        return []

    if isinstance(value, Mapping):
        items = [f"{key}: {details}" for key, details in value.items()]
    elif isinstance(value, str):
        items = [value]
    else:
        items = [str(item) for item in value]

    lines: list[str] = []
    for item in items:
        for raw in item.replace("\r", "\n").split("\n"):
            cleaned = raw.strip(" \t-•")
            if cleaned:
                lines.append(cleaned)
    return lines


def _format_bullet_section(title: str, lines: Sequence[str]) -> str:
    bullet_block = "\n".join(f"- {line}" for line in lines if line.strip())
    return f"{title}\n{bullet_block}"
