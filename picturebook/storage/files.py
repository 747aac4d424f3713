"""
Local binary storage for generated illustrations, addressed by opaque file id.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import requests

from picturebook.errors import StorageFailure, ValidationError

logger = logging.getLogger(__name__)

_FILE_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]*)*?);base64,(?P<data>.*)$", re.DOTALL)

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}
DEFAULT_MIME_TYPE = "image/png"


@dataclass(frozen=True)
class StoredFile:
    content: bytes
    mime_type: str
    filename: str


@dataclass(frozen=True)
class FileMetadata:
    file_id: str
    filename: str
    mime_type: str
    size: int
    story_id: str
    role: str | None
    created_at: datetime


class FileStorageProvider(Protocol):
    """Operations every file store backend offers."""

    def store(
        self, content: bytes, filename: str, mime_type: str, story_id: str, *, role: str | None = None
    ) -> str:
        """Persist ``content`` and return a new globally unique file id."""

    def retrieve(self, file_id: str) -> StoredFile | None:
        """Return the stored file or ``None`` when the id is unknown."""

    def delete(self, file_id: str) -> bool:
        """Remove the file from every partition; ``True`` if anything was deleted."""

    def exists(self, file_id: str) -> bool:
        """Return whether any partition holds ``file_id``."""

    def get_metadata(self, file_id: str) -> FileMetadata | None:
        """Return the sidecar metadata or ``None`` when the id is unknown."""


class LocalFileStorage:
    """
    File store rooted at a local directory, partitioned by story id.

    Each file is written once as ``<root>/<story_id>/<file_id>`` next to a
    ``<file_id>.meta.json`` sidecar. Lookups only need the file id and scan
    every partition, so ids are random UUIDs rather than story-scoped.
    """

    def __init__(self, base_path: str | Path = "./storage/images") -> None:
        self._base_path = Path(base_path)

    @property
    def base_path(self) -> Path:
        return self._base_path

    def store(
        self, content: bytes, filename: str, mime_type: str, story_id: str, *, role: str | None = None
    ) -> str:
        partition = self._partition_name(story_id)
        file_id = str(uuid.uuid4())
        story_dir = self._base_path / partition
        metadata = {
            "filename": filename,
            "mimeType": mime_type,
            "size": len(content),
            "storyId": story_id,
            "role": role,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            story_dir.mkdir(parents=True, exist_ok=True)
            (story_dir / file_id).write_bytes(content)
            (story_dir / f"{file_id}.meta.json").write_text(
                json.dumps(metadata, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise StorageFailure(f"Failed to store {filename} for story {story_id}: {exc}") from exc

        logger.info("Stored %s (%d bytes) as %s in partition %s", filename, len(content), file_id, partition)
        return file_id

    def retrieve(self, file_id: str) -> StoredFile | None:
        located = self._locate(file_id)
        if located is None:
            return None
        file_path, metadata = located
        return StoredFile(
            content=file_path.read_bytes(),
            mime_type=metadata.get("mimeType") or DEFAULT_MIME_TYPE,
            filename=metadata.get("filename") or file_id,
        )

    def delete(self, file_id: str) -> bool:
        if not self._is_valid_id(file_id):
            return False
        deleted = False
        for story_dir in self._partitions():
            for path in (story_dir / file_id, story_dir / f"{file_id}.meta.json"):
                if path.exists():
                    path.unlink()
                    deleted = True
        return deleted

    def exists(self, file_id: str) -> bool:
        return self._locate(file_id) is not None

    def get_metadata(self, file_id: str) -> FileMetadata | None:
        located = self._locate(file_id)
        if located is None:
            return None
        file_path, metadata = located
        return FileMetadata(
            file_id=file_id,
            filename=metadata.get("filename") or file_id,
            mime_type=metadata.get("mimeType") or DEFAULT_MIME_TYPE,
            size=int(metadata.get("size", file_path.stat().st_size)),
            story_id=metadata.get("storyId") or file_path.parent.name,
            role=metadata.get("role"),
            created_at=datetime.fromisoformat(metadata["createdAt"])
            if metadata.get("createdAt")
            else datetime.fromtimestamp(file_path.stat().st_mtime, timezone.utc),
        )

    def _locate(self, file_id: str) -> tuple[Path, dict[str, Any]] | None:
        if not self._is_valid_id(file_id):
            return None
        for story_dir in self._partitions():
            file_path = story_dir / file_id
            metadata_path = story_dir / f"{file_id}.meta.json"
            if file_path.is_file() and metadata_path.is_file():
                metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
                return file_path, metadata
        return None

    def _partitions(self) -> list[Path]:
        if not self._base_path.is_dir():
            return []
        return [path for path in self._base_path.iterdir() if path.is_dir()]

    @staticmethod
    def _is_valid_id(file_id: str) -> bool:
        return bool(file_id) and bool(_FILE_ID_PATTERN.match(file_id))

    @staticmethod
    def _partition_name(story_id: str) -> str:
        cleaned = str(story_id).strip()
        if not cleaned or "/" in cleaned or "\\" in cleaned or cleaned in {".", ".."}:
            raise ValidationError(f"Invalid storage partition '{story_id}'.")
        return cleaned


def extension_for(mime_type: str) -> str:
    return MIME_EXTENSIONS.get(mime_type.lower(), ".png")


def generate_filename(role: str, mime_type: str) -> str:
    """Filename derived from the role tag and mime type, e.g. ``page-3_1718000000000.png``."""
    timestamp = int(time.time() * 1000)
    return f"{role}_{timestamp}{extension_for(mime_type)}"


def decode_data_uri(uri: str) -> tuple[bytes, str]:
    match = _DATA_URI_PATTERN.match(uri.strip())
    if not match:
        raise StorageFailure("Unsupported data URI; only base64 payloads are accepted.")
    try:
        content = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise StorageFailure("Data URI payload is not valid base64.") from exc
    return content, match.group("mime") or DEFAULT_MIME_TYPE


def encode_data_uri(content: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


class ImageStorageService:
    """
    Downloads generated images (remote or inline) and hands the bytes to a file store.
    """

    def __init__(
        self,
        file_storage: FileStorageProvider | None = None,
        *,
        request_timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self._file_storage: FileStorageProvider = file_storage or LocalFileStorage()
        self._request_timeout = request_timeout
        self._session = session

    @property
    def file_storage(self) -> FileStorageProvider:
        return self._file_storage

    async def download_and_store(
        self,
        image_url: str,
        story_id: str,
        role: str,
        *,
        filename: str | None = None,
    ) -> str:
        """
        Fetch ``image_url`` and persist it under ``story_id``; return the new file id.
        """
        content, mime_type = await self.fetch(image_url)
        return await self.store_bytes(content, story_id, role, mime_type=mime_type, filename=filename)

    async def store_bytes(
        self,
        content: bytes,
        story_id: str,
        role: str,
        *,
        mime_type: str = DEFAULT_MIME_TYPE,
        filename: str | None = None,
    ) -> str:
        resolved_name = filename or generate_filename(role, mime_type)
        return await asyncio.to_thread(
            self._file_storage.store, content, resolved_name, mime_type, story_id, role=role
        )

    async def fetch(self, image_url: str) -> tuple[bytes, str]:
        if image_url.startswith("data:"):
            return decode_data_uri(image_url)
        if not image_url.lower().startswith(("http://", "https://")):
            raise StorageFailure(f"Cannot download image from unsupported location: {image_url[:64]}")
        return await asyncio.to_thread(self._download, image_url)

    async def as_data_uri(self, file_id: str) -> str:
        """Inline a stored file so it can be sent to a provider as an image input."""
        stored = await asyncio.to_thread(self._file_storage.retrieve, file_id)
        if stored is None:
            raise StorageFailure(f"Referenced image file {file_id} is missing from storage.")
        return encode_data_uri(stored.content, stored.mime_type)

    def _download(self, image_url: str) -> tuple[bytes, str]:
        getter = self._session.get if self._session is not None else requests.get
        try:
            response = getter(image_url, timeout=self._request_timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise StorageFailure(f"Failed to download image: {exc}") from exc

        content_type = response.headers.get("content-type") or DEFAULT_MIME_TYPE
        mime_type = content_type.split(";", 1)[0].strip() or DEFAULT_MIME_TYPE
        return response.content, mime_type
