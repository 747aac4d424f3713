"""
Normalization of heterogeneous provider outputs into a single image URL.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

from picturebook.errors import ProviderResponseUnrecognized

_URL_PATTERN = re.compile(r"^(?:[a-z][a-z0-9+.-]*://|data:)", re.IGNORECASE)
_URL_PROPERTIES = ("url", "href", "src", "path")


class ResponseShape(str, Enum):
    PLAIN_STRING = "plain_string"
    STRING_ARRAY = "string_array"
    URL_ACCESSOR = "url_accessor"
    URL_PROPERTY = "url_property"
    STRINGIFIED = "stringified"


@dataclass(frozen=True)
class NormalizedImage:
    url: str
    shape: ResponseShape


def looks_like_url(value: Any) -> bool:
    return isinstance(value, str) and bool(_URL_PATTERN.match(value.strip()))


def _first_element(raw: Any) -> Any:
    if isinstance(raw, (list, tuple)) and raw:
        return raw[0]
    return raw


def _from_plain_string(raw: Any) -> str | None:
    return raw.strip() if looks_like_url(raw) else None


def _from_string_array(raw: Any) -> str | None:
    if isinstance(raw, (list, tuple)) and raw and looks_like_url(raw[0]):
        return raw[0].strip()
    return None


def _from_url_accessor(raw: Any) -> str | None:
    candidate = _first_element(raw)
    accessor = getattr(candidate, "url", None)
    if callable(accessor):
        value = accessor()
        if value is not None and looks_like_url(str(value)):
            return str(value).strip()
    return None


def _from_url_property(raw: Any) -> str | None:
    candidate = _first_element(raw)
    for name in _URL_PROPERTIES:
        if isinstance(candidate, Mapping):
            value = candidate.get(name)
        else:
            value = getattr(candidate, name, None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _from_stringified(raw: Any) -> str | None:
    candidate = _first_element(raw)
    if candidate is None:
        return None
    text = str(candidate).strip()
    return text if looks_like_url(text) else None


EXTRACTORS: Sequence[tuple[ResponseShape, Callable[[Any], str | None]]] = (
    (ResponseShape.PLAIN_STRING, _from_plain_string),
    (ResponseShape.STRING_ARRAY, _from_string_array),
    (ResponseShape.URL_ACCESSOR, _from_url_accessor),
    (ResponseShape.URL_PROPERTY, _from_url_property),
    (ResponseShape.STRINGIFIED, _from_stringified),
)


def property_names(raw: Any) -> list[str]:
    """Names exposed by ``raw`` (or its first element), for diagnostics."""
    candidate = _first_element(raw)
    if isinstance(candidate, Mapping):
        return [str(key) for key in candidate]
    if hasattr(candidate, "__dict__"):
        return list(vars(candidate))
    return [name for name in dir(candidate) if not name.startswith("_")]


def normalize_image_output(raw: Any, *, provider: str = "provider") -> NormalizedImage:
    """
    Extract the image URL from a raw provider output.

    Extractors are tried in a fixed order; the first that yields a value wins.
    Streams are drained before extraction so that generator outputs behave like lists.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="ignore")
    elif isinstance(raw, Iterator):
        raw = list(raw)

    for shape, extractor in EXTRACTORS:
        url = extractor(raw)
        if url:
            return NormalizedImage(url=url, shape=shape)

    raise ProviderResponseUnrecognized(provider, property_names(raw))


def normalize_image_url(raw: Any, *, provider: str = "provider") -> str:
    return normalize_image_output(raw, provider=provider).url
