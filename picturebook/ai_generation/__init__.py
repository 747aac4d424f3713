"""
AI image generation package for picturebook.
"""

from .direct_service import DirectImageGenerator
from .normalization import NormalizedImage, ResponseShape, normalize_image_output, normalize_image_url
from .prompt_generator import ImagePromptGenerator
from .references import CORE_IMAGE, ImageInputs, ImageReferenceResolver, character_image, page_image
from .replicate_service import ReplicateImageGenerator, build_default_input, build_template_input
from .templates import (
    LLMSchemaClassifier,
    ModelSchema,
    ModelTemplate,
    RuleBasedSchemaClassifier,
    SchemaClassifier,
    TemplateResolver,
)

__all__ = [
    "CORE_IMAGE",
    "DirectImageGenerator",
    "ImageInputs",
    "ImagePromptGenerator",
    "ImageReferenceResolver",
    "LLMSchemaClassifier",
    "ModelSchema",
    "ModelTemplate",
    "NormalizedImage",
    "ReplicateImageGenerator",
    "ResponseShape",
    "RuleBasedSchemaClassifier",
    "SchemaClassifier",
    "TemplateResolver",
    "build_default_input",
    "build_template_input",
    "character_image",
    "normalize_image_output",
    "normalize_image_url",
    "page_image",
]
