"""
LiteLLM-powered chat completion and image generation helpers.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, MutableMapping, Sequence

from litellm import acompletion, aimage_generation

ChatMessage = Mapping[str, Any]

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class ChatResult:
    """
    Structured response returned from an LLM chat completion.
    """

    text: str
    raw: Any


CompletionCallable = Callable[..., Awaitable[ChatResult]]
ImageGenerationCallable = Callable[..., Awaitable[Any]]


def _build_payload(
    *,
    model: str,
    temperature: float | None,
    max_tokens: int | None,
    api_key: str | None,
    api_base: str | None,
    extra_kwargs: Mapping[str, Any],
) -> MutableMapping[str, Any]:
    payload: MutableMapping[str, Any] = {"model": model}

    if temperature is not None:
        payload["temperature"] = temperature

    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    if api_key is not None:
        payload["api_key"] = api_key

    if api_base is not None:
        payload["api_base"] = api_base

    payload.update(extra_kwargs)
    return payload


async def acall_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    api_base: str | None = None,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Invoke LiteLLM's `acompletion` API and return the consolidated text.
    """
    payload = _build_payload(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
        api_base=api_base,
        extra_kwargs=extra_kwargs,
    )
    payload["messages"] = list(messages)

    response = await acompletion(**payload)

    try:
        message = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuntimeError("Unexpected LiteLLM response format.") from exc

    text = str(message or "").strip()
    return ChatResult(text=text, raw=response)


async def agenerate_image(
    *,
    model: str,
    prompt: str,
    size: str = "1024x1024",
    quality: str | None = "standard",
    api_key: str | None = None,
    api_base: str | None = None,
    **extra_kwargs: Any,
) -> Any:
    """
    Invoke LiteLLM's `aimage_generation` API and return the raw provider response.
    """
    payload = _build_payload(
        model=model,
        temperature=None,
        max_tokens=None,
        api_key=api_key,
        api_base=api_base,
        extra_kwargs=extra_kwargs,
    )
    payload["prompt"] = prompt
    payload["n"] = 1
    payload["size"] = size
    if quality is not None:
        payload["quality"] = quality

    return await aimage_generation(**payload)


def parse_json_reply(text: str, *, what: str) -> dict[str, Any]:
    """
    Parse a JSON object from an LLM reply, tolerating a surrounding Markdown fence.
    """
    candidate = text.strip()
    fenced = _FENCE_PATTERN.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse {what} response as JSON.") from exc

    if not isinstance(parsed, dict):
        raise ValueError(f"{what} response must be a JSON object.")
    return parsed
