"""
Runtime settings and per-user generation preferences.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import CredentialMissing, ValidationError

DIRECT_PROVIDER = "direct"
REPLICATE_PROVIDER = "replicate"
PROVIDERS = (DIRECT_PROVIDER, REPLICATE_PROVIDER)

DEFAULT_REPLICATE_MODEL = "black-forest-labs/flux-schnell"
KNOWN_BROKEN_MODELS = frozenset({"prunaai/flux-kontext-dev"})


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration.

    Attributes
    ----------
    text_model:
        LiteLLM model used for setting expansion, character extraction and page text.
    prompt_model:
        LiteLLM model that turns story context into illustration prompts.
    schema_model:
        LiteLLM model that classifies third-party model input schemas.
    direct_image_model:
        LiteLLM image model used by the direct-prompt provider.
    default_replicate_model:
        Known-good Replicate model used when the user has no preference or a broken one.
    known_broken_models:
        Replicate model ids that are always replaced by ``default_replicate_model``.
    storage_root:
        Root directory of the local file store.
    download_timeout:
        Seconds allowed for downloading a generated image.
    write_retries:
        How many times a conflicting story write is re-read and retried.
    """

    text_model: str = "gpt-4o"
    prompt_model: str = "gpt-4o-mini"
    schema_model: str = "gpt-4o-mini"
    direct_image_model: str = "dall-e-3"
    default_replicate_model: str = DEFAULT_REPLICATE_MODEL
    known_broken_models: frozenset[str] = KNOWN_BROKEN_MODELS
    storage_root: Path = Path("./storage/images")
    download_timeout: float = 60.0
    write_retries: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        timeout = _first_env("PICTUREBOOK_DOWNLOAD_TIMEOUT")
        retries = _first_env("PICTUREBOOK_WRITE_RETRIES")
        return cls(
            text_model=_first_env(
                "PICTUREBOOK_TEXT_MODEL", "OPENAI_STORY_MODEL", "LITELLM_STORY_MODEL", "LITELLM_MODEL"
            )
            or defaults.text_model,
            prompt_model=_first_env(
                "PICTUREBOOK_PROMPT_MODEL", "OPENAI_PROMPT_MODEL", "LITELLM_PROMPT_MODEL", "LITELLM_MODEL"
            )
            or defaults.prompt_model,
            schema_model=_first_env("PICTUREBOOK_SCHEMA_MODEL", "LITELLM_SCHEMA_MODEL")
            or defaults.schema_model,
            direct_image_model=_first_env("PICTUREBOOK_IMAGE_MODEL", "OPENAI_IMAGE_MODEL")
            or defaults.direct_image_model,
            default_replicate_model=_first_env("PICTUREBOOK_REPLICATE_MODEL", "REPLICATE_MODEL")
            or defaults.default_replicate_model,
            storage_root=Path(_first_env("PICTUREBOOK_STORAGE_ROOT") or defaults.storage_root),
            download_timeout=float(timeout) if timeout else defaults.download_timeout,
            write_retries=int(retries) if retries else defaults.write_retries,
        )

    def resolve_replicate_model(self, requested: str | None) -> str:
        model_id = (requested or "").strip() or self.default_replicate_model
        if model_id in self.known_broken_models:
            return self.default_replicate_model
        return model_id


@dataclass(frozen=True)
class UserPreferences:
    """
    Generation preferences and credentials of the authenticated owner.
    """

    user_id: str
    image_provider: str = DIRECT_PROVIDER
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    replicate_api_key: str | None = None
    preferred_replicate_model: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.image_provider not in PROVIDERS:
            raise ValidationError(
                f"Unknown image provider '{self.image_provider}'. Expected one of: {', '.join(PROVIDERS)}."
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UserPreferences":
        if not str(data.get("user_id") or "").strip():
            raise ValidationError("Preferences must include a non-empty 'user_id'.")
        known = {
            "user_id",
            "image_provider",
            "openai_api_key",
            "openai_base_url",
            "replicate_api_key",
            "preferred_replicate_model",
        }
        return cls(
            user_id=str(data["user_id"]).strip(),
            image_provider=str(data.get("image_provider") or DIRECT_PROVIDER).strip().lower(),
            openai_api_key=data.get("openai_api_key") or os.getenv("OPENAI_API_KEY"),
            openai_base_url=data.get("openai_base_url") or os.getenv("OPENAI_BASE_URL"),
            replicate_api_key=data.get("replicate_api_key") or os.getenv("REPLICATE_API_TOKEN"),
            preferred_replicate_model=data.get("preferred_replicate_model"),
            extra={key: value for key, value in data.items() if key not in known},
        )

    @classmethod
    def from_yaml(cls, source: str | Path) -> "UserPreferences":
        data = yaml.safe_load(Path(source).read_text(encoding="utf-8"))
        if not isinstance(data, Mapping):
            raise ValidationError("Preferences YAML must deserialize to a mapping.")
        return cls.from_mapping(data)

    def require_credentials(self, provider: str | None = None) -> None:
        """Fail fast when the key for ``provider`` (default: the preferred one) is absent."""
        selected = provider or self.image_provider
        if selected == REPLICATE_PROVIDER and not self.replicate_api_key:
            raise CredentialMissing("Replicate")
        if selected == DIRECT_PROVIDER and not self.openai_api_key:
            raise CredentialMissing("OpenAI")

    def require_text_credentials(self) -> None:
        if not self.openai_api_key:
            raise CredentialMissing("OpenAI")
