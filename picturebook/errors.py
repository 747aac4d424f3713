"""
Exception taxonomy shared by every picturebook subsystem.
"""

from __future__ import annotations

from typing import Sequence


class PictureBookError(Exception):
    """Base class for all picturebook failures."""


class ValidationError(PictureBookError, ValueError):
    """Malformed input. Raised before any side effect takes place."""


class IllegalTransition(ValidationError):
    """The story's lifecycle status does not allow the requested operation."""

    def __init__(self, status: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} while story status is '{status}'.")
        self.status = status
        self.operation = operation


class CredentialMissing(PictureBookError):
    """No API key configured for the selected provider."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"{provider} API key required. Add it to your profile before generating images."
        )
        self.provider = provider


class ProviderRequestFailed(PictureBookError):
    """The image or text provider rejected the request or could not be reached."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"[{provider}] {message}")
        self.provider = provider


class ProviderResponseUnrecognized(PictureBookError):
    """None of the known response shapes matched the provider output."""

    def __init__(self, provider: str, properties: Sequence[str]) -> None:
        listed = ", ".join(properties) if properties else "(none)"
        super().__init__(
            f"Could not extract an image URL from the {provider} response. "
            f"Available properties: {listed}"
        )
        self.provider = provider
        self.properties = tuple(properties)


class StorageFailure(PictureBookError):
    """Downloading or persisting a generated asset failed."""


class NotFound(PictureBookError, LookupError):
    """A story, page, character, revision, template, or file does not exist."""

    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConcurrentModification(PictureBookError):
    """A write was built from a stale read of the story."""

    def __init__(self, story_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Story {story_id} changed while writing (expected version {expected}, found {actual})."
        )
        self.story_id = story_id
        self.expected = expected
        self.actual = actual


class DuplicateRevision(PictureBookError):
    """The (story id, revision number) pair is already taken."""

    def __init__(self, story_id: str, revision_number: int) -> None:
        super().__init__(f"Revision {revision_number} already exists for story {story_id}.")
        self.story_id = story_id
        self.revision_number = revision_number
