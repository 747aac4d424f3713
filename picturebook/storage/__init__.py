"""
Binary asset storage for generated illustrations.
"""

from .files import (
    FileMetadata,
    FileStorageProvider,
    ImageStorageService,
    LocalFileStorage,
    StoredFile,
    generate_filename,
)

__all__ = [
    "FileMetadata",
    "FileStorageProvider",
    "ImageStorageService",
    "LocalFileStorage",
    "StoredFile",
    "generate_filename",
]
