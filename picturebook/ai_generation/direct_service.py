"""
Direct-prompt illustration provider backed by LiteLLM image generation.
"""

from __future__ import annotations

import logging
from typing import Any

from picturebook.common import ImageGenerationCallable, agenerate_image
from picturebook.config import DIRECT_PROVIDER, Settings, UserPreferences
from picturebook.errors import ProviderRequestFailed

from .normalization import normalize_image_url

logger = logging.getLogger(__name__)

PROVIDER_NAME = "OpenAI"

REFERENCE_NOTE = (
    "Maintain visual consistency with the previous illustration of this scene: keep the same "
    "character designs, art style, and color palette."
)


class DirectImageGenerator:
    """
    Sends one prompt with fixed parameters (square, standard quality) to a single endpoint.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        image_fn: ImageGenerationCallable | None = None,
        size: str = "1024x1024",
        quality: str = "standard",
    ) -> None:
        self._settings = settings or Settings.from_env()
        self._image_fn: ImageGenerationCallable = image_fn or agenerate_image
        self._size = size
        self._quality = quality

    @property
    def model(self) -> str:
        return self._settings.direct_image_model

    async def generate(
        self,
        prompt: str,
        user: UserPreferences,
        *,
        reference_image: str | None = None,
    ) -> str:
        """
        Generate one image and return its URL or ``data:`` URI.

        ``reference_image`` marks a regeneration; the endpoint accepts text only,
        so the reference becomes a consistency instruction in the prompt.
        """
        user.require_credentials(DIRECT_PROVIDER)
        final_prompt = f"{prompt}\n\n{REFERENCE_NOTE}" if reference_image else prompt
        try:
            response = await self._image_fn(
                model=self.model,
                prompt=final_prompt,
                size=self._size,
                quality=self._quality,
                api_key=user.openai_api_key,
                api_base=user.openai_base_url,
            )
        except Exception as exc:
            raise ProviderRequestFailed(PROVIDER_NAME, f"Failed to generate image: {exc}") from exc

        return normalize_image_url(self._first_image(response), provider=PROVIDER_NAME)

    @staticmethod
    def _first_image(response: Any) -> Any:
        data = response.get("data") if isinstance(response, dict) else getattr(response, "data", None)
        if not data:
            return response
        first = data[0]
        encoded = first.get("b64_json") if isinstance(first, dict) else getattr(first, "b64_json", None)
        url = first.get("url") if isinstance(first, dict) else getattr(first, "url", None)
        if not url and encoded:
            return encode_data_uri_from_base64(encoded)
        return first


def encode_data_uri_from_base64(encoded: str, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{encoded}"
