"""
Common utilities shared across picturebook modules.
"""

from .llm import (
    ChatResult,
    CompletionCallable,
    ImageGenerationCallable,
    acall_chat_completion,
    agenerate_image,
    parse_json_reply,
)

__all__ = [
    "ChatResult",
    "CompletionCallable",
    "ImageGenerationCallable",
    "acall_chat_completion",
    "agenerate_image",
    "parse_json_reply",
]
