"""
Integration with Replicate for template-driven picture book illustration.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import replicate

from picturebook.errors import CredentialMissing, ProviderRequestFailed, ValidationError

from .normalization import normalize_image_url
from .references import ImageInputs
from .templates import ModelSchema, ModelTemplate

logger = logging.getLogger(__name__)

PROVIDER_NAME = "Replicate"
_LOG_LIMIT = 128


def truncate_for_log(value: Any) -> Any:
    if isinstance(value, str):
        return value if len(value) <= _LOG_LIMIT else value[:_LOG_LIMIT] + "..."
    if isinstance(value, (list, tuple)):
        return [truncate_for_log(item) for item in value]
    if isinstance(value, dict):
        return {key: truncate_for_log(item) for key, item in value.items()}
    return value


def _append_unique(collected: list[str], value: str | None) -> None:
    if value and value not in collected:
        collected.append(value)


def build_template_input(template: ModelTemplate, prompt: str, images: ImageInputs | None = None) -> dict[str, Any]:
    """
    Build the Replicate ``input`` payload for a model described by ``template``.

    Saved user values go in first; the prompt and the supplied images are written
    afterwards into fields that never overlap with them.
    """
    images = images or ImageInputs()
    payload: dict[str, Any] = dict(template.user_values)

    final_prompt = prompt
    if images.additional_prompt:
        final_prompt = f"{prompt}\n\n{images.additional_prompt}"
    payload[template.prompt_field or "prompt"] = final_prompt

    if not template.image_fields:
        return payload

    if not template.has_role_tags:
        first = template.image_fields[0]
        if first in template.image_array_fields:
            collected: list[str] = []
            _append_unique(collected, images.primary)
            _append_unique(collected, images.reference)
            if collected:
                payload[first] = collected
        elif images.primary or images.reference:
            payload[first] = images.primary or images.reference
        return payload

    by_role = {"primary": images.primary, "reference": images.reference, "style": images.style}
    for name in template.image_fields:
        if name in template.image_array_fields:
            collected = []
            for value in (images.primary, images.reference, images.style, *images.named.values()):
                _append_unique(collected, value)
            if collected:
                payload[name] = collected
            continue

        role = template.image_field_types.get(name)
        value = by_role[role] if role in by_role else images.named.get(name)
        if value:
            payload[name] = value
    return payload


def build_default_input(model_id: str, prompt: str) -> dict[str, Any]:
    """Fixed parameters for models that have no learned template."""
    payload: dict[str, Any] = {"prompt": prompt}
    lowered = model_id.lower()
    if "flux" in lowered:
        payload["aspect_ratio"] = "1:1"
        # flux-schnell rejects num_inference_steps
        if "flux-dev" in lowered or "flux-pro" in lowered:
            payload["num_inference_steps"] = 50
    else:
        payload.update({"width": 1024, "height": 1024, "num_inference_steps": 50, "guidance_scale": 7.5})
    return payload


class ReplicateImageGenerator:
    """
    Convenience wrapper around the Replicate client for picture book illustrations.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        client: replicate.Client | None = None,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise CredentialMissing(PROVIDER_NAME)

        self._client = client or replicate.Client(api_token=self._api_token)

    async def generate(
        self,
        model_id: str,
        prompt: str,
        *,
        template: ModelTemplate | None = None,
        images: ImageInputs | None = None,
    ) -> str:
        """
        Run ``model_id`` and return the URL (or data URI) of the produced image.

        Without a template the request carries only the fixed default parameters
        and no image inputs.
        """
        if template is not None:
            payload = build_template_input(template, prompt, images)
        else:
            if images is not None and not images.is_empty():
                logger.info("No template for %s; image inputs are ignored.", model_id)
            payload = build_default_input(model_id, prompt)

        logger.debug("Replicate input for %s: %s", model_id, truncate_for_log(payload))
        try:
            output = await self._client.async_run(model_id, input=payload)
        except Exception as exc:
            raise ProviderRequestFailed(PROVIDER_NAME, f"Failed to generate image with {model_id}: {exc}") from exc

        url = normalize_image_url(output, provider=PROVIDER_NAME)
        logger.debug("Replicate output for %s: %s", model_id, truncate_for_log(url))
        return url

    async def fetch_schema(self, model_id: str) -> ModelSchema:
        """Fetch the OpenAPI ``Input`` schema of the latest version of ``owner/name``."""
        if model_id.count("/") != 1:
            raise ValidationError(f"Model id must look like 'owner/name', got '{model_id}'.")
        try:
            model = await asyncio.to_thread(self._client.models.get, model_id)
        except Exception as exc:
            raise ProviderRequestFailed(PROVIDER_NAME, f"Failed to fetch schema for model {model_id}: {exc}") from exc

        version = getattr(model, "latest_version", None)
        if version is None:
            raise ProviderRequestFailed(PROVIDER_NAME, f"Model {model_id} has no available versions.")

        components = ((version.openapi_schema or {}).get("components") or {}).get("schemas") or {}
        return ModelSchema(
            model_id=model_id,
            name=getattr(model, "name", None),
            description=getattr(model, "description", None),
            version=getattr(version, "id", None),
            input_schema=dict(components.get("Input") or {}),
            components={name: spec for name, spec in components.items() if name not in {"Input", "Output"}},
        )
