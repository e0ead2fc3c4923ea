"""
Object Storage - GridFS-backed, path-addressed storage for scan photos.

Objects are addressed by path ({owner_id}/{scan_id}/front.jpg). The bucket is
private: readers get short-lived signed references from
services.object_access_token instead of direct access.
"""
import base64
import binascii
import hashlib
import io
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from database import database

logger = logging.getLogger(__name__)

SCAN_PHOTOS_BUCKET = "scan_photos"
DEFAULT_CONTENT_TYPE = "image/jpeg"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[\w=-]+)*;base64,", re.IGNORECASE)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class ObjectNotFoundError(StorageError):
    """Object not found in storage."""
    pass


class InvalidImageData(StorageError):
    """Image text is not valid base64 / data URL."""
    pass


class ObjectMetadata:
    """Stored object metadata."""
    def __init__(
        self,
        file_id: str,
        path: str,
        content_type: str,
        size_bytes: int,
        sha256_hash: str,
        upload_timestamp: datetime,
        owner_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.file_id = file_id
        self.path = path
        self.content_type = content_type
        self.size_bytes = size_bytes
        self.sha256_hash = sha256_hash
        self.upload_timestamp = upload_timestamp
        self.owner_id = owner_id
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "path": self.path,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "sha256_hash": self.sha256_hash,
            "upload_timestamp": self.upload_timestamp.isoformat() if self.upload_timestamp else None,
            "owner_id": self.owner_id,
            "metadata": self.metadata,
        }


def scan_object_path(owner_id: str, scan_id: str, view: str) -> str:
    """Path convention: {owner_id}/{scan_id}/{view}.jpg"""
    return f"{owner_id}/{scan_id}/{view}.jpg"


def decode_image_text(image_text: str) -> Tuple[bytes, str]:
    """
    Decode a base64 string or data URL into bytes.

    Returns:
        (content, content_type)
    """
    if not image_text or not isinstance(image_text, str):
        raise InvalidImageData("Image data is empty")

    content_type = DEFAULT_CONTENT_TYPE
    payload = image_text.strip()
    match = _DATA_URL_RE.match(payload)
    if match:
        content_type = (match.group("mime") or DEFAULT_CONTENT_TYPE).lower()
        payload = payload[match.end():]

    try:
        content = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImageData(f"Image data is not valid base64: {e}")
    if not content:
        raise InvalidImageData("Image data decodes to zero bytes")
    return content, content_type


class ObjectStorage(ABC):
    """Abstract base class for object storage implementations."""

    @abstractmethod
    async def upload_object(
        self,
        path: str,
        content: bytes,
        content_type: str,
        owner_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ObjectMetadata:
        """Write an object at path and return its metadata."""
        pass

    @abstractmethod
    async def download_object(self, path: str) -> Tuple[bytes, ObjectMetadata]:
        pass

    @abstractmethod
    async def get_object_metadata(self, path: str) -> Optional[ObjectMetadata]:
        pass


class GridFSObjectStorage(ObjectStorage):
    """
    GridFS-based implementation.
    Filenames are object paths; the newest revision of a path wins.
    """

    def __init__(self, bucket_name: str = SCAN_PHOTOS_BUCKET):
        self.bucket_name = bucket_name
        self._bucket = None

    def _get_bucket(self) -> AsyncIOMotorGridFSBucket:
        """Get or create GridFS bucket."""
        if self._bucket is None:
            db = database.get_db()
            self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=self.bucket_name)
        return self._bucket

    def _calculate_hash(self, data: bytes) -> str:
        """Calculate SHA256 hash of file data."""
        return hashlib.sha256(data).hexdigest()

    def _to_metadata(self, file_doc: Dict[str, Any]) -> ObjectMetadata:
        gridfs_meta = file_doc.get("metadata") or {}
        uploaded = gridfs_meta.get("upload_timestamp")
        return ObjectMetadata(
            file_id=str(file_doc["_id"]),
            path=file_doc["filename"],
            content_type=gridfs_meta.get("content_type", DEFAULT_CONTENT_TYPE),
            size_bytes=file_doc.get("length", 0),
            sha256_hash=gridfs_meta.get("sha256_hash", ""),
            upload_timestamp=datetime.fromisoformat(uploaded) if uploaded else datetime.now(timezone.utc),
            owner_id=gridfs_meta.get("owner_id"),
            metadata=gridfs_meta.get("custom_metadata", {}),
        )

    async def _find_latest(self, path: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db[f"{self.bucket_name}.files"].find_one(
            {"filename": path},
            sort=[("uploadDate", -1)],
        )

    async def upload_object(
        self,
        path: str,
        content: bytes,
        content_type: str,
        owner_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ObjectMetadata:
        bucket = self._get_bucket()
        sha256_hash = self._calculate_hash(content)
        now = datetime.now(timezone.utc)

        gridfs_metadata = {
            "content_type": content_type,
            "sha256_hash": sha256_hash,
            "owner_id": owner_id,
            "upload_timestamp": now.isoformat(),
            "custom_metadata": metadata or {},
        }

        file_id = await bucket.upload_from_stream(
            path,
            io.BytesIO(content),
            metadata=gridfs_metadata,
        )

        object_meta = ObjectMetadata(
            file_id=str(file_id),
            path=path,
            content_type=content_type,
            size_bytes=len(content),
            sha256_hash=sha256_hash,
            upload_timestamp=now,
            owner_id=owner_id,
            metadata=metadata,
        )
        logger.info(f"Object uploaded to GridFS: {path} ({object_meta.size_bytes} bytes)")
        return object_meta

    async def download_object(self, path: str) -> Tuple[bytes, ObjectMetadata]:
        bucket = self._get_bucket()
        file_doc = await self._find_latest(path)
        if not file_doc:
            raise ObjectNotFoundError(f"Object not found: {path}")

        stream = io.BytesIO()
        await bucket.download_to_stream(file_doc["_id"], stream)
        return stream.getvalue(), self._to_metadata(file_doc)

    async def get_object_metadata(self, path: str) -> Optional[ObjectMetadata]:
        file_doc = await self._find_latest(path)
        if not file_doc:
            return None
        return self._to_metadata(file_doc)


# Singleton instance
object_storage = GridFSObjectStorage()
