"""
Media uploads: classify incoming files and place them in object storage.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from cms_backend.clock import Clock, SystemClock
from cms_backend.storage import StorageClient

logger = logging.getLogger(__name__)

_EXTENSIONS_BY_CONTENT_TYPE = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "application/zip": "zip",
}


class MediaType(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"
    OTHER = "other"

    @classmethod
    def from_content_type(cls, content_type: str) -> "MediaType":
        if content_type.startswith("image/"):
            return cls.IMAGE
        if content_type.startswith("video/"):
            return cls.VIDEO
        if content_type == "application/pdf":
            return cls.DOCUMENT
        if "document" in content_type or "zip" in content_type:
            return cls.DOCUMENT
        return cls.OTHER


@dataclass(frozen=True)
class MediaUploadResult:
    url: str
    file_id: str
    file_type: MediaType
    path: str

    def as_dict(self) -> dict:
        return {
            "url": self.url,
            "file_id": self.file_id,
            "file_type": self.file_type.value,
            "path": self.path,
        }


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    content_type: str
    data: bytes


def file_extension(filename: str, content_type: str) -> str:
    """Extension from the filename when it has a short one, else from the content type."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[1]
        if ext and len(ext) <= 4:
            return ext.lower()
    return _EXTENSIONS_BY_CONTENT_TYPE.get(content_type, "bin")


class MediaUploader:
    def __init__(self, storage: StorageClient, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def upload_image(
        self, data: bytes, filename: str, content_type: str
    ) -> MediaUploadResult:
        file_id = str(uuid.uuid4())
        path = f"images/img-{file_id}.{file_extension(filename, content_type)}"
        self.storage.put_bytes(path, data, content_type=content_type)
        logger.info("Stored image %s (%d bytes)", path, len(data))
        return MediaUploadResult(
            url=self.storage.public_url(path),
            file_id=file_id,
            file_type=MediaType.IMAGE,
            path=path,
        )

    def upload_file(
        self, data: bytes, filename: str, content_type: str
    ) -> MediaUploadResult:
        file_id = str(uuid.uuid4())
        media_type = MediaType.from_content_type(content_type)
        ext = file_extension(filename, content_type)
        year = self.clock.now().strftime("%Y")
        if media_type == MediaType.DOCUMENT:
            path = f"reports/{year}/{file_id}.{ext}"
        elif media_type == MediaType.VIDEO:
            path = f"events/{year}/{file_id}.{ext}"
        else:
            path = f"docs/{file_id}.{ext}"
        self.storage.put_bytes(path, data, content_type=content_type)
        logger.info("Stored %s file %s (%d bytes)", media_type.value, path, len(data))
        return MediaUploadResult(
            url=self.storage.public_url(path),
            file_id=file_id,
            file_type=media_type,
            path=path,
        )

    def upload_many(self, files: Iterable[IncomingFile]) -> list[MediaUploadResult]:
        results = []
        for incoming in files:
            if MediaType.from_content_type(incoming.content_type) == MediaType.IMAGE:
                result = self.upload_image(
                    incoming.data, incoming.filename, incoming.content_type
                )
            else:
                result = self.upload_file(
                    incoming.data, incoming.filename, incoming.content_type
                )
            results.append(result)
        return results
