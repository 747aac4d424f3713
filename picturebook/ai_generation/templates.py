"""
Learned per-model input templates for template-driven image providers.

A template classifies an arbitrary model's input schema into exactly one
prompt field, zero or more role-tagged image fields, and the remaining
user-configurable fields together with the user's saved values for them.
How classification happens is pluggable; everything downstream depends only
on the resulting :class:`ModelTemplate`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

from picturebook.common import CompletionCallable, acall_chat_completion, parse_json_reply
from picturebook.errors import NotFound, ProviderRequestFailed, ValidationError
from picturebook.story_generation.models import utcnow

logger = logging.getLogger(__name__)

IMAGE_ROLES = ("primary", "reference", "style", "mask", "conditioning", "other")
LONG_TEXT_THRESHOLD = 100

FIELD_CHOICE = "choice"
FIELD_TOGGLE = "toggle"
FIELD_NUMBER = "number"
FIELD_TEXT = "text"
FIELD_LONG_TEXT = "long_text"


@dataclass(frozen=True)
class ModelSchema:
    """
    Input schema of a third-party model, as published in its OpenAPI document.
    """

    model_id: str
    input_schema: Mapping[str, Any]
    name: str | None = None
    description: str | None = None
    version: str | None = None
    components: Mapping[str, Any] = field(default_factory=dict)

    @property
    def properties(self) -> dict[str, dict[str, Any]]:
        """Properties in declaration order, with ``$ref``/``allOf`` indirections inlined."""
        raw = self.input_schema.get("properties") or {}
        resolved = {name: self._resolve(dict(spec)) for name, spec in raw.items()}
        indexed = list(enumerate(resolved.items()))
        indexed.sort(key=lambda item: (item[1][1].get("x-order", item[0]), item[0]))
        return {name: spec for _, (name, spec) in indexed}

    @property
    def required(self) -> list[str]:
        return list(self.input_schema.get("required") or [])

    def _resolve(self, spec: dict[str, Any]) -> dict[str, Any]:
        for ref_holder in [spec, *spec.get("allOf", [])]:
            ref = ref_holder.get("$ref") if isinstance(ref_holder, Mapping) else None
            if ref:
                target = self.components.get(ref.rsplit("/", 1)[-1])
                if isinstance(target, Mapping):
                    merged = dict(target)
                    merged.update({k: v for k, v in spec.items() if k not in {"allOf", "$ref"}})
                    return merged
        return spec

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "input_schema": dict(self.input_schema),
            "components": dict(self.components),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ModelSchema":
        return cls(
            model_id=str(data["model_id"]),
            input_schema=dict(data.get("input_schema") or {}),
            name=data.get("name"),
            description=data.get("description"),
            version=data.get("version"),
            components=dict(data.get("components") or {}),
        )


@dataclass(frozen=True)
class SchemaClassification:
    """Raw classifier verdict, before the template invariants are enforced."""

    prompt_field: str | None
    image_fields: Sequence[str] = ()
    image_field_types: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigField:
    """How a configurable field is presented and validated."""

    name: str
    kind: str
    description: str = ""
    default: Any = None
    options: tuple[Any, ...] = ()
    minimum: float | None = None
    maximum: float | None = None
    required: bool = False

    def validate(self, value: Any) -> Any:
        if value is None:
            if self.required:
                raise ValidationError(f"'{self.name}' is required.")
            return None
        if self.kind == FIELD_CHOICE:
            if value not in self.options:
                allowed = ", ".join(str(option) for option in self.options)
                raise ValidationError(f"'{self.name}' must be one of: {allowed}.")
            return value
        if self.kind == FIELD_TOGGLE:
            if not isinstance(value, bool):
                raise ValidationError(f"'{self.name}' must be true or false.")
            return value
        if self.kind == FIELD_NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"'{self.name}' must be a number.")
            if self.minimum is not None and value < self.minimum:
                raise ValidationError(f"'{self.name}' must be at least {self.minimum}.")
            if self.maximum is not None and value > self.maximum:
                raise ValidationError(f"'{self.name}' must be at most {self.maximum}.")
            return value
        return str(value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "default": self.default,
            "options": list(self.options),
            "minimum": self.minimum,
            "maximum": self.maximum,
            "required": self.required,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConfigField":
        return cls(
            name=str(data["name"]),
            kind=str(data["kind"]),
            description=str(data.get("description") or ""),
            default=data.get("default"),
            options=tuple(data.get("options") or ()),
            minimum=data.get("minimum"),
            maximum=data.get("maximum"),
            required=bool(data.get("required", False)),
        )


def describe_config_field(name: str, spec: Mapping[str, Any], *, required: bool = False) -> ConfigField:
    description = str(spec.get("description") or "")
    field_type = spec.get("type")
    common = {"name": name, "description": description, "default": spec.get("default"), "required": required}

    if spec.get("enum"):
        return ConfigField(kind=FIELD_CHOICE, options=tuple(spec["enum"]), **common)
    if field_type == "boolean":
        return ConfigField(kind=FIELD_TOGGLE, **common)
    if field_type in {"integer", "number"}:
        return ConfigField(
            kind=FIELD_NUMBER, minimum=spec.get("minimum"), maximum=spec.get("maximum"), **common
        )
    kind = FIELD_LONG_TEXT if len(description) > LONG_TEXT_THRESHOLD else FIELD_TEXT
    return ConfigField(kind=kind, **common)


@dataclass
class ModelTemplate:
    """
    Classified input schema of one model for one user.

    ``prompt_field``, the ``image_fields`` and the ``user_values`` keys are
    pairwise disjoint; :meth:`enforce_invariants` restores that after any edit.
    """

    model_id: str
    prompt_field: str | None
    image_fields: list[str] = field(default_factory=list)
    image_field_types: dict[str, str] = field(default_factory=dict)
    image_array_fields: set[str] = field(default_factory=set)
    user_values: dict[str, Any] = field(default_factory=dict)
    config_fields: dict[str, ConfigField] = field(default_factory=dict)
    model_name: str | None = None
    schema: ModelSchema | None = None
    last_analyzed: datetime = field(default_factory=utcnow)

    def enforce_invariants(self) -> "ModelTemplate":
        if self.prompt_field in self.image_fields:
            self.image_fields = [name for name in self.image_fields if name != self.prompt_field]
        reserved = set(self.image_fields)
        if self.prompt_field:
            reserved.add(self.prompt_field)
        self.image_field_types = {
            name: role if role in IMAGE_ROLES else "other"
            for name, role in self.image_field_types.items()
            if name in self.image_fields
        }
        self.image_array_fields = {name for name in self.image_array_fields if name in self.image_fields}
        self.user_values = {k: v for k, v in self.user_values.items() if k not in reserved}
        self.config_fields = {k: v for k, v in self.config_fields.items() if k not in reserved}
        return self

    @property
    def has_role_tags(self) -> bool:
        return bool(self.image_field_types)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "model_name": self.model_name,
            "prompt_field": self.prompt_field,
            "image_fields": list(self.image_fields),
            "image_field_types": dict(self.image_field_types),
            "image_array_fields": sorted(self.image_array_fields),
            "user_values": dict(self.user_values),
            "config_fields": [config.to_dict() for config in self.config_fields.values()],
            "schema": self.schema.to_dict() if self.schema is not None else None,
            "last_analyzed": self.last_analyzed.isoformat(),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ModelTemplate":
        configs = [ConfigField.from_mapping(item) for item in data.get("config_fields") or []]
        schema_data = data.get("schema")
        last_analyzed = data.get("last_analyzed")
        template = cls(
            model_id=str(data["model_id"]),
            model_name=data.get("model_name"),
            prompt_field=data.get("prompt_field"),
            image_fields=list(data.get("image_fields") or []),
            image_field_types=dict(data.get("image_field_types") or {}),
            image_array_fields=set(data.get("image_array_fields") or []),
            user_values=dict(data.get("user_values") or {}),
            config_fields={config.name: config for config in configs},
            schema=ModelSchema.from_mapping(schema_data) if schema_data else None,
            last_analyzed=datetime.fromisoformat(last_analyzed) if last_analyzed else utcnow(),
        )
        return template.enforce_invariants()


class SchemaClassifier(Protocol):
    """Strategy deciding which schema fields carry the prompt and the images."""

    async def classify(self, schema: ModelSchema) -> SchemaClassification:
        ...


# Rule-based classification ---------------------------------------------------

_PROMPT_NAMES = ("prompt", "text", "instruction", "caption", "input_text", "text_prompt")
_IMAGE_NAME_PATTERN = re.compile(r"(image|img|photo|picture|mask|sketch)", re.IGNORECASE)
_NON_IMAGE_TOKENS = (
    "num", "count", "size", "strength", "scale", "format", "resolution", "aspect",
    "quality", "steps", "prompt", "width", "height", "guidance", "seed",
)
_ROLE_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("mask", ("mask",)),
    ("style", ("style",)),
    ("conditioning", ("control", "condition", "depth", "pose", "canny", "edge", "sketch")),
    ("reference", ("ref", "reference", "subject", "face", "identity", "character")),
    ("primary", ("input", "init", "source", "base")),
)
_PRIMARY_NAMES = {"image", "images", "img", "photo", "image_input", "input_image", "input_images"}


def _is_uri(spec: Mapping[str, Any]) -> bool:
    if spec.get("format") == "uri":
        return True
    items = spec.get("items")
    return isinstance(items, Mapping) and items.get("format") == "uri"


def _is_text_like(spec: Mapping[str, Any]) -> bool:
    if spec.get("type") == "string":
        return True
    items = spec.get("items")
    return spec.get("type") == "array" and isinstance(items, Mapping) and items.get("type") == "string"


def is_image_field(name: str, spec: Mapping[str, Any]) -> bool:
    if _is_uri(spec):
        return True
    lowered = name.lower()
    if not _IMAGE_NAME_PATTERN.search(lowered) or spec.get("enum"):
        return False
    if any(token in lowered for token in _NON_IMAGE_TOKENS):
        return False
    return _is_text_like(spec)


def image_role_for(name: str, spec: Mapping[str, Any]) -> str:
    lowered = name.lower()
    if lowered in _PRIMARY_NAMES:
        return "primary"
    haystack = f"{lowered} {str(spec.get('description') or '').lower()}"
    for role, tokens in _ROLE_RULES:
        if any(token in lowered for token in tokens):
            return role
    for role, tokens in _ROLE_RULES:
        if any(re.search(rf"\b{token}", haystack) for token in tokens):
            return role
    return "other"


class RuleBasedSchemaClassifier:
    """
    Deterministic classifier driven by field names, formats, and descriptions.
    """

    async def classify(self, schema: ModelSchema) -> SchemaClassification:
        return self.classify_sync(schema)

    def classify_sync(self, schema: ModelSchema) -> SchemaClassification:
        properties = schema.properties

        image_fields = [name for name, spec in properties.items() if is_image_field(name, spec)]
        roles = {name: image_role_for(name, properties[name]) for name in image_fields}
        if image_fields and "primary" not in roles.values():
            first_other = next((name for name in image_fields if roles[name] == "other"), None)
            if first_other is not None:
                roles[first_other] = "primary"

        return SchemaClassification(
            prompt_field=self._pick_prompt_field(properties, set(image_fields)),
            image_fields=image_fields,
            image_field_types=roles,
        )

    @staticmethod
    def _pick_prompt_field(
        properties: Mapping[str, Mapping[str, Any]], excluded: set[str]
    ) -> str | None:
        candidates = {
            name: spec
            for name, spec in properties.items()
            if name not in excluded and spec.get("type", "string") == "string" and not spec.get("enum")
        }
        for preferred in _PROMPT_NAMES:
            if preferred in candidates:
                return preferred
        for name in candidates:
            lowered = name.lower()
            if "prompt" in lowered and "negative" not in lowered:
                return name
        for name, spec in candidates.items():
            description = str(spec.get("description") or "").lower()
            if "prompt" in description and "negative" not in name.lower():
                return name
        return None


# LLM-assisted classification -------------------------------------------------

_ANALYSIS_SYSTEM = "You are an expert at analyzing image model input schemas. Always respond with valid JSON."


class LLMSchemaClassifier:
    """
    Classifier that asks a chat model to label the schema fields.

    The reply is sanitized against the schema: unknown fields are dropped and
    unknown roles become ``other``.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        api_base: str | None = None,
        completion_fn: CompletionCallable | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._api_base = api_base
        self._completion_fn: CompletionCallable = completion_fn or acall_chat_completion

    async def classify(self, schema: ModelSchema) -> SchemaClassification:
        properties = schema.properties
        try:
            result = await self._completion_fn(
                model=self._model,
                messages=[
                    {"role": "system", "content": _ANALYSIS_SYSTEM},
                    {"role": "user", "content": self._build_prompt(schema, properties)},
                ],
                temperature=0.1,
                api_key=self._api_key,
                api_base=self._api_base,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise ProviderRequestFailed("OpenAI", f"Failed to analyze model schema: {exc}") from exc

        try:
            payload = parse_json_reply(result.text, what="schema analysis")
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        prompt_field = payload.get("promptField")
        if prompt_field not in properties:
            prompt_field = None
        image_fields = [
            name for name in payload.get("imageFields") or [] if name in properties and name != prompt_field
        ]
        raw_roles = payload.get("imageFieldTypes") or {}
        roles = {
            name: raw_roles.get(name) if raw_roles.get(name) in IMAGE_ROLES else "other"
            for name in image_fields
            if name in raw_roles
        }
        return SchemaClassification(
            prompt_field=prompt_field, image_fields=image_fields, image_field_types=roles
        )

    @staticmethod
    def _build_prompt(schema: ModelSchema, properties: Mapping[str, Any]) -> str:
        return f"""Analyze this image model input schema and identify:
1. Which property is the MAIN PROMPT field (receives free-form text descriptions of a scene)
2. Which properties are IMAGE INPUT fields (receive image URLs or base64 data) - find all of them
3. The purpose of each image field: primary, reference, style, mask, conditioning, or other

Model: {schema.model_id}
Name: {schema.name or 'Unknown'}
Description: {schema.description or 'No description'}

Input Schema Properties:
{json.dumps(properties, indent=2, default=str)}

Required fields: {json.dumps(schema.required)}

Respond with a JSON object in this exact format:
{{
  "promptField": "property_name_that_receives_main_prompt_text",
  "imageFields": ["property1", "property2"],
  "imageFieldTypes": {{"property1": "primary|reference|style|mask|conditioning|other"}}
}}

Rules:
- promptField is the ONE main text prompt property (never a negative prompt)
- imageFields includes ALL properties that accept images, single or array
- Be accurate and conservative"""


# Template construction and persistence --------------------------------------


def build_template(
    schema: ModelSchema,
    classification: SchemaClassification,
    *,
    previous_values: Mapping[str, Any] | None = None,
) -> ModelTemplate:
    """
    Turn a classification into a template honoring the schema's declared arity.

    Saved values from ``previous_values`` survive when their field is still
    configurable; every other configurable field starts at its schema default.
    """
    properties = schema.properties
    required = set(schema.required)

    prompt_field = classification.prompt_field if classification.prompt_field in properties else None
    image_fields = [
        name
        for name in properties
        if name in set(classification.image_fields) and name != prompt_field
    ]
    array_fields = {name for name in image_fields if properties[name].get("type") == "array"}

    reserved = set(image_fields) | ({prompt_field} if prompt_field else set())
    config_fields = {
        name: describe_config_field(name, spec, required=name in required)
        for name, spec in properties.items()
        if name not in reserved
    }

    user_values: dict[str, Any] = {
        name: config.default for name, config in config_fields.items() if config.default is not None
    }
    for name, value in (previous_values or {}).items():
        if name in config_fields:
            user_values[name] = value

    template = ModelTemplate(
        model_id=schema.model_id,
        model_name=schema.name,
        prompt_field=prompt_field,
        image_fields=image_fields,
        image_field_types=dict(classification.image_field_types),
        image_array_fields=array_fields,
        user_values=user_values,
        config_fields=config_fields,
        schema=schema,
    )
    return template.enforce_invariants()


class TemplateStore(Protocol):
    async def get_template(self, user_id: str, model_id: str) -> ModelTemplate | None:
        ...

    async def save_template(self, user_id: str, template: ModelTemplate) -> ModelTemplate:
        ...


SchemaFetcher = Callable[[str], Awaitable[ModelSchema]]


class TemplateResolver:
    """
    Creates, refreshes, and edits the per-user template of a model.

    Templates are read from the store on every call; nothing is cached in process.
    """

    def __init__(
        self,
        store: TemplateStore,
        classifier: SchemaClassifier,
        *,
        schema_fetcher: SchemaFetcher | None = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._schema_fetcher = schema_fetcher

    async def resolve(self, user_id: str, model_id: str) -> ModelTemplate | None:
        return await self._store.get_template(user_id, model_id)

    async def analyze(self, user_id: str, schema: ModelSchema) -> ModelTemplate:
        existing = await self._store.get_template(user_id, schema.model_id)
        classification = await self._classifier.classify(schema)
        template = build_template(
            schema,
            classification,
            previous_values=existing.user_values if existing is not None else None,
        )
        logger.info(
            "Analyzed %s: prompt=%s images=%s arrays=%s",
            schema.model_id,
            template.prompt_field,
            template.image_fields,
            sorted(template.image_array_fields),
        )
        return await self._store.save_template(user_id, template)

    async def analyze_model(self, user_id: str, model_id: str) -> ModelTemplate:
        if self._schema_fetcher is None:
            raise ValidationError("No schema source configured; pass a ModelSchema to analyze().")
        schema = await self._schema_fetcher(model_id)
        return await self.analyze(user_id, schema)

    async def reanalyze(self, user_id: str, model_id: str) -> ModelTemplate:
        existing = await self._require(user_id, model_id)
        if existing.schema is None:
            return await self.analyze_model(user_id, model_id)
        return await self.analyze(user_id, existing.schema)

    async def update_user_value(self, user_id: str, model_id: str, name: str, value: Any) -> ModelTemplate:
        template = await self._require(user_id, model_id)
        if name == template.prompt_field or name in template.image_fields:
            raise ValidationError(f"'{name}' is filled in automatically and cannot be configured.")
        config = template.config_fields.get(name)
        if config is None:
            raise ValidationError(f"'{name}' is not a configurable field of {model_id}.")
        validated = config.validate(value)
        if validated is None:
            template.user_values.pop(name, None)
        else:
            template.user_values[name] = validated
        return await self._store.save_template(user_id, template)

    async def update_user_values(
        self, user_id: str, model_id: str, values: Mapping[str, Any]
    ) -> ModelTemplate:
        template = await self._require(user_id, model_id)
        for name, value in values.items():
            template = await self.update_user_value(user_id, model_id, name, value)
        return template

    async def list_templates(self, user_id: str) -> list[ModelTemplate]:
        lister = getattr(self._store, "list_templates", None)
        return await lister(user_id) if lister is not None else []

    async def _require(self, user_id: str, model_id: str) -> ModelTemplate:
        template = await self._store.get_template(user_id, model_id)
        if template is None:
            raise NotFound("model template", f"{user_id}/{model_id}")
        return template


def classification_of(template: ModelTemplate) -> tuple[str | None, tuple[str, ...], tuple[tuple[str, str], ...]]:
    """Comparable view of the classification part of a template."""
    return (
        template.prompt_field,
        tuple(template.image_fields),
        tuple(sorted(template.image_field_types.items())),
    )
