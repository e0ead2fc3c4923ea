"""
Staging Store - device-scoped key/value storage for one un-submitted capture.

A guest's questionnaire answers and photo pair are held here until the device
authenticates and is entitled, then consumed by the flush coordinator.

Layout per device:
    pending_scan           full GuestCapture JSON (answers + both images)
    pending_scan:manifest  image-free summary used to check completeness cheaply

Guarantees:
- save() never stores half a pair.
- On quota exhaustion save() evicts unrelated cached keys once and retries once;
  if that still fails it reports False instead of dropping the capture silently.
- load() never raises into callers: a corrupted record is cleared and None is
  returned.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, List

from pydantic import ValidationError

from database import database
from models import GuestCapture, CaptureManifest

logger = logging.getLogger(__name__)

STORAGE_KEY = "pending_scan"
MANIFEST_KEY = "pending_scan:manifest"

# Keys that may be dropped to make room for a capture
EVICTABLE_KEYS = ("guest_photos",)
EVICTABLE_PREFIX = "cache:"

STAGING_QUOTA_BYTES = int(os.getenv("STAGING_QUOTA_BYTES", str(5 * 1024 * 1024)))
STAGING_BACKEND = os.getenv("STAGING_BACKEND", "mongo").strip().lower()


class StorageQuotaExceeded(Exception):
    """Write would exceed the per-device storage quota."""
    pass


class KeyValueStore(ABC):
    """Per-device string key/value store with a byte quota."""

    def __init__(self, quota_bytes: int = STAGING_QUOTA_BYTES):
        self.quota_bytes = quota_bytes

    @abstractmethod
    async def get(self, device_id: str, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, device_id: str, key: str, value: str) -> None:
        """Store value; raises StorageQuotaExceeded when over quota."""
        pass

    @abstractmethod
    async def delete(self, device_id: str, key: str) -> None:
        pass

    @abstractmethod
    async def keys(self, device_id: str) -> List[str]:
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store for local runs and tests."""

    def __init__(self, quota_bytes: int = STAGING_QUOTA_BYTES):
        super().__init__(quota_bytes)
        self._data: Dict[str, Dict[str, str]] = {}

    async def get(self, device_id: str, key: str) -> Optional[str]:
        return self._data.get(device_id, {}).get(key)

    async def set(self, device_id: str, key: str, value: str) -> None:
        bucket = self._data.setdefault(device_id, {})
        used = sum(len(v.encode("utf-8")) for k, v in bucket.items() if k != key)
        if used + len(value.encode("utf-8")) > self.quota_bytes:
            raise StorageQuotaExceeded(f"Device {device_id} storage quota exceeded")
        bucket[key] = value

    async def delete(self, device_id: str, key: str) -> None:
        self._data.get(device_id, {}).pop(key, None)

    async def keys(self, device_id: str) -> List[str]:
        return list(self._data.get(device_id, {}).keys())


class MongoKeyValueStore(KeyValueStore):
    """Durable store in the device_storage collection."""

    async def get(self, device_id: str, key: str) -> Optional[str]:
        db = database.get_db()
        doc = await db.device_storage.find_one(
            {"device_id": device_id, "key": key},
            {"_id": 0, "value": 1},
        )
        return doc.get("value") if doc else None

    async def set(self, device_id: str, key: str, value: str) -> None:
        db = database.get_db()
        size_bytes = len(value.encode("utf-8"))

        used = 0
        cursor = db.device_storage.find(
            {"device_id": device_id, "key": {"$ne": key}},
            {"_id": 0, "size_bytes": 1},
        )
        async for doc in cursor:
            used += doc.get("size_bytes", 0)

        if used + size_bytes > self.quota_bytes:
            raise StorageQuotaExceeded(f"Device {device_id} storage quota exceeded")

        await db.device_storage.update_one(
            {"device_id": device_id, "key": key},
            {"$set": {
                "value": value,
                "size_bytes": size_bytes,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }},
            upsert=True,
        )

    async def delete(self, device_id: str, key: str) -> None:
        db = database.get_db()
        await db.device_storage.delete_one({"device_id": device_id, "key": key})

    async def keys(self, device_id: str) -> List[str]:
        db = database.get_db()
        cursor = db.device_storage.find({"device_id": device_id}, {"_id": 0, "key": 1})
        return [doc["key"] async for doc in cursor]


def _manifest_for(capture: GuestCapture, size_bytes: int) -> CaptureManifest:
    return CaptureManifest(
        capture_id=capture.capture_id,
        has_front=bool(capture.front_image),
        has_side=bool(capture.side_image),
        answer_keys=sorted(capture.answers.keys()),
        size_bytes=size_bytes,
        created_at=capture.created_at,
    )


class StagingStore:
    """The only component that reads or writes the raw device store."""

    def __init__(self, backend: Optional[KeyValueStore] = None):
        if backend is None:
            backend = MemoryKeyValueStore() if STAGING_BACKEND == "memory" else MongoKeyValueStore()
        self.backend = backend

    async def save(self, device_id: str, capture: GuestCapture) -> bool:
        """Stage a complete capture. Returns False if it could not be stored."""
        if not capture.is_complete():
            logger.warning(f"[STAGING] Rejected incomplete capture for device {device_id}")
            return False

        serialized = capture.model_dump_json()
        manifest = _manifest_for(capture, len(serialized.encode("utf-8"))).model_dump_json()
        logger.info(f"[STAGING] Saving capture {capture.capture_id} ({len(serialized) // 1024} KB)")

        try:
            await self._write(device_id, serialized, manifest)
            return True
        except StorageQuotaExceeded:
            logger.warning(f"[STAGING] Quota exceeded for device {device_id}, evicting cached data")
        except Exception as e:
            logger.error(f"[STAGING] Failed to save capture for device {device_id}: {e}")
            return False

        try:
            await self._evict_unrelated(device_id)
            await self._write(device_id, serialized, manifest)
            logger.info(f"[STAGING] Saved capture {capture.capture_id} after cleanup")
            return True
        except Exception as e:
            logger.error(f"[STAGING] Failed to save capture even after cleanup: {e}")
            return False

    async def peek(self, device_id: str, repair: bool = True) -> Optional[CaptureManifest]:
        """Image-free view of what is staged; None when nothing complete is staged.

        With repair=False a corrupted manifest is reported as None but left in
        place, for readers that do not own the device's staging slot.
        """
        try:
            stored = await self.backend.get(device_id, MANIFEST_KEY)
        except Exception as e:
            logger.error(f"[STAGING] Failed to read manifest for device {device_id}: {e}")
            return None
        if not stored:
            return None
        try:
            manifest = CaptureManifest.model_validate_json(stored)
        except ValidationError:
            if not repair:
                logger.warning(f"[STAGING] Corrupted manifest for device {device_id}, left for its owner")
                return None
            logger.warning(f"[STAGING] Corrupted manifest for device {device_id}, clearing")
            await self.clear(device_id)
            return None
        return manifest if manifest.is_complete() else None

    async def load(self, device_id: str) -> Optional[GuestCapture]:
        try:
            stored = await self.backend.get(device_id, STORAGE_KEY)
        except Exception as e:
            logger.error(f"[STAGING] Failed to read capture for device {device_id}: {e}")
            return None
        if not stored:
            logger.info(f"[STAGING] No staged capture for device {device_id}")
            return None

        try:
            capture = GuestCapture.model_validate(json.loads(stored))
        except (ValueError, ValidationError) as e:
            logger.warning(f"[STAGING] Corrupted capture for device {device_id}, clearing: {e}")
            await self.clear(device_id)
            return None

        if not capture.is_complete():
            logger.warning(f"[STAGING] Incomplete capture for device {device_id}, clearing")
            await self.clear(device_id)
            return None

        age_minutes = int((datetime.now(timezone.utc) - capture.created_at).total_seconds() // 60)
        logger.info(f"[STAGING] Found capture {capture.capture_id} ({age_minutes} minutes old)")
        return capture

    async def clear(self, device_id: str) -> None:
        try:
            await self.backend.delete(device_id, MANIFEST_KEY)
            await self.backend.delete(device_id, STORAGE_KEY)
            logger.info(f"[STAGING] Cleared staged capture for device {device_id}")
        except Exception as e:
            logger.error(f"[STAGING] Failed to clear staged capture for device {device_id}: {e}")

    async def _write(self, device_id: str, serialized: str, manifest: str) -> None:
        # Manifest last: it never points at a missing or older payload
        await self.backend.delete(device_id, MANIFEST_KEY)
        await self.backend.set(device_id, STORAGE_KEY, serialized)
        await self.backend.set(device_id, MANIFEST_KEY, manifest)

    async def _evict_unrelated(self, device_id: str) -> None:
        for key in await self.backend.keys(device_id):
            if key in EVICTABLE_KEYS or key.startswith(EVICTABLE_PREFIX):
                await self.backend.delete(device_id, key)
                logger.info(f"[STAGING] Evicted cached key {key} for device {device_id}")


staging_store = StagingStore()
