"""
Read-only file serving for stored illustrations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from picturebook.storage.files import FileStorageProvider

logger = logging.getLogger(__name__)

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True)
class FileResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


def serve_file(storage: FileStorageProvider, file_id: str) -> FileResponse:
    """
    Answer a GET for ``file_id``.

    Stored files never change, so a hit is marked cacheable forever; an unknown
    id is a 404.
    """
    stored = storage.retrieve(file_id)
    if stored is None:
        logger.debug("File %s not found", file_id)
        return FileResponse(
            status=404,
            body=b"Image not found",
            headers={"Content-Type": "text/plain; charset=utf-8"},
        )

    return FileResponse(
        status=200,
        body=stored.content,
        headers={
            "Content-Type": stored.mime_type,
            "Content-Length": str(len(stored.content)),
            "Cache-Control": IMMUTABLE_CACHE_CONTROL,
            "Content-Disposition": f'inline; filename="{stored.filename}"',
        },
    )
