"""
CLI example to run the complete picture book workflow end-to-end.

Usage:
    python scripts/run_full_pipeline.py \
        --brief story_brief.yaml \
        --preferences preferences.yaml \
        --repository storage/stories.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from picturebook import Settings, UserPreferences
from picturebook.ai_generation import (
    ImagePromptGenerator,
    LLMSchemaClassifier,
    ReplicateImageGenerator,
    TemplateResolver,
)
from picturebook.pipeline import GenerationOrchestrator, Notifier, StoryWorkflow
from picturebook.storage import ImageStorageService, LocalFileStorage
from picturebook.storage.repository import YamlStoryRepository
from picturebook.story_generation import StoryTextGenerator


class ProgressTracker:
    """
    Provides user-friendly command-line progress updates for the picture book workflow.
    """

    def __init__(self) -> None:
        self._image_bar: tqdm | None = None

    def __call__(self, event: str, payload: Mapping[str, Any]) -> None:
        match event:
            case "story:updated":
                self._write(f"Story is now '{payload.get('status')}'.")
            case "generation:started":
                total = payload.get("total", 0)
                self._write(f"Generating {total} illustrations...")
                self._image_bar = tqdm(total=total, desc="Illustrations", unit="image")
            case "generation:progress":
                if self._image_bar is not None:
                    target = payload.get("target") or ""
                    name = payload.get("name")
                    self._image_bar.set_description(f"{target}: {name}" if name else str(target))
                    self._image_bar.update(1)
            case "generation:completed":
                if self._image_bar is not None:
                    self._image_bar.update(self._image_bar.total - self._image_bar.n)
                self._write("All illustrations stored.")
                self.close()
            case "generation:errored":
                self._write(f"Illustration failed: {payload.get('error')}")
                self.close()

    def close(self) -> None:
        if self._image_bar is not None:
            self._image_bar.close()
            self._image_bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Co-author and illustrate a picture book.")
    parser.add_argument(
        "--brief",
        required=True,
        help="Path to the story brief YAML/JSON file (title, setting, characters, plot, age_group, total_pages).",
    )
    parser.add_argument(
        "--preferences",
        required=True,
        help="Path to the user preferences YAML file (user_id, image_provider, API keys).",
    )
    parser.add_argument(
        "--repository",
        default="storage/stories.yaml",
        help="YAML file holding stories, revisions, and model templates.",
    )
    parser.add_argument(
        "--storage-root",
        default=None,
        help="Directory for stored illustrations (defaults to PICTUREBOOK_STORAGE_ROOT or ./storage/images).",
    )
    parser.add_argument(
        "--text-only",
        action="store_true",
        help="Stop after the page text is approved.",
    )
    parser.add_argument(
        "--no-character-images",
        dest="include_characters",
        action="store_false",
        default=True,
        help="Skip character portraits during illustration.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args()


def load_brief_mapping(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Unsupported brief file format. Use YAML or JSON.")

    if not isinstance(data, Dict):
        raise ValueError("Brief file must deserialize to a mapping.")
    return data


def build_workflow(
    settings: Settings, repository: YamlStoryRepository, user: UserPreferences, notifier: Notifier
) -> StoryWorkflow:
    image_storage = ImageStorageService(
        LocalFileStorage(settings.storage_root), request_timeout=settings.download_timeout
    )
    resolver = TemplateResolver(
        repository,
        LLMSchemaClassifier(
            model=settings.schema_model, api_key=user.openai_api_key, api_base=user.openai_base_url
        ),
    )
    orchestrator = GenerationOrchestrator(
        image_storage=image_storage,
        template_resolver=resolver,
        prompt_generator=ImagePromptGenerator(settings=settings),
        replicate_factory=lambda prefs: ReplicateImageGenerator(api_token=prefs.replicate_api_key),
        settings=settings,
    )
    return StoryWorkflow(
        repository,
        text_generator=StoryTextGenerator(settings=settings),
        orchestrator=orchestrator,
        notifier=notifier,
        settings=settings,
    )


async def run(args: argparse.Namespace) -> int:
    settings = Settings.from_env()
    if args.storage_root:
        settings = dataclasses.replace(settings, storage_root=Path(args.storage_root))

    user = UserPreferences.from_yaml(args.preferences)
    repository = YamlStoryRepository(args.repository)
    tracker = ProgressTracker()
    workflow = build_workflow(settings, repository, user, Notifier(tracker))

    try:
        story = await workflow.create_story(user.user_id, load_brief_mapping(Path(args.brief)))
        tqdm.write(f"[1/5] Created story {story.id} ({story.total_pages} pages).")

        story = await workflow.expand_setting(story.id, user)
        tqdm.write("[2/5] Setting expanded.")

        story = await workflow.extract_characters(story.id, user)
        names = ", ".join(c.name for c in story.extracted_characters)
        tqdm.write(f"[3/5] Characters: {names}.")

        story = await workflow.approve_characters(story.id, user)
        tqdm.write(f"[4/5] Wrote {len(story.pages)} pages for '{story.title}'.")

        if not args.text_only:
            story = await workflow.generate_all_images(
                story.id, user, include_characters=args.include_characters
            )
            tqdm.write(f"[5/5] Core image stored as {story.core_image_file_id}.")
    finally:
        tracker.close()

    print(f"Saved story {story.id} to {repository.path}")
    return 0


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
