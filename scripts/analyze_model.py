"""
Utility script to learn (or refresh) the input template of a Replicate model.

Usage:
    python scripts/analyze_model.py \
        --user-id demo \
        --model black-forest-labs/flux-dev \
        --set aspect_ratio=4:3

Environment variables:
    REPLICATE_API_TOKEN  - required unless you pass --api-token
    OPENAI_API_KEY       - required unless you pass --rules
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from picturebook import Settings
from picturebook.ai_generation import (
    LLMSchemaClassifier,
    ReplicateImageGenerator,
    RuleBasedSchemaClassifier,
    TemplateResolver,
)
from picturebook.storage.repository import YamlStoryRepository


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Classify a Replicate model's inputs into prompt, image, and configurable fields."
    )
    parser.add_argument("--user-id", required=True, help="Owner of the stored template.")
    parser.add_argument("--model", required=True, help="Replicate model id in the form owner/name.")
    parser.add_argument(
        "--repository",
        default="storage/stories.yaml",
        help="YAML file holding stories, revisions, and model templates.",
    )
    parser.add_argument(
        "--api-token",
        default=None,
        help="Optional Replicate API token override (otherwise uses environment variable).",
    )
    parser.add_argument(
        "--rules",
        action="store_true",
        help="Use the deterministic rule-based classifier instead of the LLM.",
    )
    parser.add_argument(
        "--reanalyze",
        action="store_true",
        help="Re-classify the stored schema, keeping saved values.",
    )
    parser.add_argument(
        "--set",
        dest="values",
        action="append",
        default=[],
        metavar="FIELD=VALUE",
        help="Save a configurable field value (repeatable; VALUE is parsed as YAML).",
    )
    return parser.parse_args(argv)


def parse_values(pairs: list[str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Invalid --set '{pair}', expected FIELD=VALUE.")
        key, raw = pair.split("=", 1)
        values[key.strip()] = yaml.safe_load(raw)
    return values


async def run(args: argparse.Namespace) -> int:
    settings = Settings.from_env()
    repository = YamlStoryRepository(args.repository)
    generator = ReplicateImageGenerator(api_token=args.api_token)
    classifier = (
        RuleBasedSchemaClassifier()
        if args.rules
        else LLMSchemaClassifier(model=settings.schema_model, api_key=os.getenv("OPENAI_API_KEY"))
    )
    resolver = TemplateResolver(repository, classifier, schema_fetcher=generator.fetch_schema)

    existing = await resolver.resolve(args.user_id, args.model)
    if existing is not None and args.reanalyze:
        template = await resolver.reanalyze(args.user_id, args.model)
    elif existing is not None:
        template = existing
    else:
        template = await resolver.analyze_model(args.user_id, args.model)

    values = parse_values(args.values)
    if values:
        template = await resolver.update_user_values(args.user_id, args.model, values)

    print(f"Model: {template.model_id}")
    print(f"  Prompt field: {template.prompt_field or '(none)'}")
    for name in template.image_fields:
        arity = "array" if name in template.image_array_fields else "single"
        print(f"  Image field: {name} [{template.image_field_types.get(name, 'untagged')}, {arity}]")
    for name, config in template.config_fields.items():
        current = template.user_values.get(name, "(unset)")
        print(f"  {name} ({config.kind}): {current}")
    return 0


def main(argv: list[str]) -> int:
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
