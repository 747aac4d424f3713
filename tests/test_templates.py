from __future__ import annotations

import json

import pytest

from picturebook.ai_generation.templates import (
    FIELD_CHOICE,
    FIELD_LONG_TEXT,
    FIELD_NUMBER,
    FIELD_TEXT,
    FIELD_TOGGLE,
    LLMSchemaClassifier,
    ModelSchema,
    RuleBasedSchemaClassifier,
    SchemaClassification,
    TemplateResolver,
    build_template,
    classification_of,
)
from picturebook.common import ChatResult
from picturebook.errors import NotFound, ProviderRequestFailed, ValidationError
from picturebook.storage.repository import InMemoryStoryRepository

from fakes import FLUX_COMPONENTS, FLUX_INPUT_SCHEMA, run

SCHEMA = ModelSchema(
    model_id="acme/kontext",
    name="kontext",
    input_schema=FLUX_INPUT_SCHEMA,
    components=FLUX_COMPONENTS,
)


def _resolver():
    return TemplateResolver(InMemoryStoryRepository(), RuleBasedSchemaClassifier())


def test_schema_properties_follow_declared_order_and_inline_refs():
    properties = SCHEMA.properties

    assert list(properties)[:3] == ["prompt", "input_image", "style_image"]
    assert properties["aspect_ratio"]["enum"] == ["1:1", "16:9", "4:3"]
    assert properties["aspect_ratio"]["default"] == "1:1"


def test_rule_based_classification():
    classification = RuleBasedSchemaClassifier().classify_sync(SCHEMA)

    assert classification.prompt_field == "prompt"
    assert list(classification.image_fields) == ["input_image", "style_image", "reference_images"]
    assert dict(classification.image_field_types) == {
        "input_image": "primary",
        "style_image": "style",
        "reference_images": "reference",
    }


def test_rule_based_classification_promotes_first_untagged_image_to_primary():
    schema = ModelSchema(
        model_id="acme/plain",
        input_schema={
            "properties": {
                "caption": {"type": "string"},
                "picture_url": {"type": "string", "description": "Picture to work from"},
                "num_outputs": {"type": "integer"},
            }
        },
    )

    classification = RuleBasedSchemaClassifier().classify_sync(schema)

    assert classification.prompt_field == "caption"
    assert list(classification.image_fields) == ["picture_url"]
    assert classification.image_field_types == {"picture_url": "primary"}


def test_template_fields_are_classified_by_kind():
    template = build_template(SCHEMA, RuleBasedSchemaClassifier().classify_sync(SCHEMA))

    kinds = {name: config.kind for name, config in template.config_fields.items()}
    assert kinds == {
        "aspect_ratio": FIELD_CHOICE,
        "num_inference_steps": FIELD_NUMBER,
        "go_fast": FIELD_TOGGLE,
        "negative_prompt": FIELD_LONG_TEXT,
        "seed": FIELD_NUMBER,
    }
    assert template.image_array_fields == {"reference_images"}
    assert template.user_values == {"aspect_ratio": "1:1", "num_inference_steps": 28, "go_fast": True}


def test_short_description_text_field():
    schema = ModelSchema(
        model_id="acme/short",
        input_schema={"properties": {"prompt": {"type": "string"}, "scheduler_name": {"type": "string"}}},
    )

    template = build_template(schema, RuleBasedSchemaClassifier().classify_sync(schema))

    assert template.config_fields["scheduler_name"].kind == FIELD_TEXT


def test_prompt_image_and_configurable_fields_are_disjoint():
    classification = SchemaClassification(
        prompt_field="prompt",
        image_fields=["prompt", "input_image"],
        image_field_types={"input_image": "primary", "prompt": "style"},
    )

    template = build_template(
        SCHEMA, classification, previous_values={"prompt": "stale", "input_image": "x", "seed": 7}
    )

    assert template.prompt_field == "prompt"
    assert template.image_fields == ["input_image"]
    assert template.image_field_types == {"input_image": "primary"}
    assert "prompt" not in template.user_values
    assert "input_image" not in template.user_values
    assert template.user_values["seed"] == 7
    assert "style_image" in template.config_fields


def test_classification_is_deterministic():
    resolver = _resolver()

    first = run(resolver.analyze("u1", SCHEMA))
    second = run(resolver.analyze("u1", SCHEMA))

    assert classification_of(first) == classification_of(second)


def test_user_values_are_validated_against_the_schema():
    resolver = _resolver()
    run(resolver.analyze("u1", SCHEMA))

    with pytest.raises(ValidationError):
        run(resolver.update_user_value("u1", "acme/kontext", "num_inference_steps", 60))
    with pytest.raises(ValidationError):
        run(resolver.update_user_value("u1", "acme/kontext", "aspect_ratio", "7:3"))
    with pytest.raises(ValidationError):
        run(resolver.update_user_value("u1", "acme/kontext", "go_fast", "yes"))
    with pytest.raises(ValidationError):
        run(resolver.update_user_value("u1", "acme/kontext", "prompt", "hello"))
    with pytest.raises(ValidationError):
        run(resolver.update_user_value("u1", "acme/kontext", "reference_images", []))
    with pytest.raises(ValidationError):
        run(resolver.update_user_value("u1", "acme/kontext", "unknown_field", 1))


def test_user_value_edits_persist_immediately():
    resolver = _resolver()
    run(resolver.analyze("u1", SCHEMA))

    run(resolver.update_user_value("u1", "acme/kontext", "go_fast", False))
    run(resolver.update_user_value("u1", "acme/kontext", "seed", 42))
    run(resolver.update_user_value("u1", "acme/kontext", "num_inference_steps", None))
    template = run(resolver.resolve("u1", "acme/kontext"))

    assert template.user_values["go_fast"] is False
    assert template.user_values["seed"] == 42
    assert "num_inference_steps" not in template.user_values


def test_templates_are_per_user():
    resolver = _resolver()
    run(resolver.analyze("u1", SCHEMA))

    assert run(resolver.resolve("u2", "acme/kontext")) is None
    with pytest.raises(NotFound):
        run(resolver.update_user_value("u2", "acme/kontext", "seed", 1))


def test_reanalysis_keeps_saved_values():
    resolver = _resolver()
    run(resolver.analyze("u1", SCHEMA))
    run(resolver.update_user_values("u1", "acme/kontext", {"aspect_ratio": "16:9", "seed": 5}))

    template = run(resolver.reanalyze("u1", "acme/kontext"))

    assert template.user_values["aspect_ratio"] == "16:9"
    assert template.user_values["seed"] == 5
    assert [t.model_id for t in run(resolver.list_templates("u1"))] == ["acme/kontext"]


def test_analyze_model_uses_schema_fetcher():
    fetched = []

    async def fetch(model_id):
        fetched.append(model_id)
        return SCHEMA

    resolver = TemplateResolver(InMemoryStoryRepository(), RuleBasedSchemaClassifier(), schema_fetcher=fetch)

    template = run(resolver.analyze_model("u1", "acme/kontext"))

    assert fetched == ["acme/kontext"]
    assert template.prompt_field == "prompt"


class ScriptedCompletion:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return ChatResult(text=json.dumps(self.reply), raw=None)


def test_llm_classification_is_sanitized_against_the_schema():
    completion = ScriptedCompletion(
        {
            "promptField": "prompt",
            "imageFields": ["input_image", "bogus", "prompt", "style_image"],
            "imageFieldTypes": {"input_image": "primary", "style_image": "painting", "bogus": "style"},
        }
    )
    classifier = LLMSchemaClassifier(api_key="sk-test", completion_fn=completion)

    classification = run(classifier.classify(SCHEMA))

    assert classification.prompt_field == "prompt"
    assert classification.image_fields == ["input_image", "style_image"]
    assert classification.image_field_types == {"input_image": "primary", "style_image": "other"}
    assert completion.calls[0]["temperature"] == 0.1
    assert completion.calls[0]["response_format"] == {"type": "json_object"}


def test_llm_classification_failure_is_a_provider_error():
    classifier = LLMSchemaClassifier(completion_fn=ScriptedCompletion(error=RuntimeError("rate limited")))

    with pytest.raises(ProviderRequestFailed):
        run(classifier.classify(SCHEMA))
