"""
Blob Store backed by Supabase Storage.

Two bucket classes: ``legal`` (long retention, written once, never
overwritten) and ``active`` (working copies for further processing).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from supabase import Client

from carecall.config import Settings, get_settings
from carecall.errors import BlobStoreError
from carecall.logging_config import get_logger

logger = get_logger(__name__)


class BucketClass(str, Enum):
    LEGAL = "legal"
    ACTIVE = "active"


def recording_key(user_id: str, call_id: str) -> str:
    return f"recordings/{user_id}/{call_id}/audio-full.wav"


def transcript_key(user_id: str, call_id: str) -> str:
    return f"transcripts/{user_id}/{call_id}/transcript.json"


class SupabaseBlobStore:
    """Put/get bytes by bucket class and object key."""

    def __init__(self, client: Client, settings: Optional[Settings] = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    def bucket_name(self, bucket_class: BucketClass) -> str:
        if bucket_class == BucketClass.LEGAL:
            return self._settings.legal_bucket
        return self._settings.active_bucket

    async def put(
        self,
        bucket_class: BucketClass,
        key: str,
        data: bytes,
        content_type: str = "audio/wav",
    ) -> str:
        """Upload ``data``; returns ``bucket/key``."""
        bucket = self.bucket_name(bucket_class)
        # Legal copies are immutable: an existing object makes the upload fail.
        upsert = "false" if bucket_class == BucketClass.LEGAL else "true"
        try:
            self._client.storage.from_(bucket).upload(
                key,
                data,
                file_options={"content-type": content_type, "upsert": upsert},
            )
        except Exception as e:
            raise BlobStoreError(f"Upload to {bucket}/{key} failed: {e}") from e

        logger.info("blob_stored", bucket=bucket, key=key, size=len(data))
        return f"{bucket}/{key}"

    async def get(self, bucket_class: BucketClass, key: str) -> bytes | None:
        """Download an object; None if it does not exist or cannot be read."""
        bucket = self.bucket_name(bucket_class)
        try:
            return self._client.storage.from_(bucket).download(key)
        except Exception as e:
            logger.warning("blob_fetch_failed", bucket=bucket, key=key, error=str(e))
            return None

    async def health_check(self) -> dict[str, Any]:
        buckets = {bucket_class.value: self.bucket_name(bucket_class) for bucket_class in BucketClass}
        try:
            for name in buckets.values():
                self._client.storage.get_bucket(name)
        except Exception as e:
            logger.error("blob_store_health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}
        return {"status": "healthy", "buckets": buckets}
