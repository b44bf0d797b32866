from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config

from pipeline.config import Settings

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}


def content_type_for(key: str) -> str:
    ext = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


class ObjectStorage:
    """S3-compatible bucket (Cloudflare R2 in production) holding cached images."""

    def __init__(
        self,
        bucket: str,
        public_url: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = "auto",
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.public_base = public_url.rstrip("/")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorage":
        settings.require_storage()
        return cls(
            bucket=settings.storage_bucket,
            public_url=settings.storage_public_url,
            endpoint_url=settings.storage_endpoint_url,
            access_key_id=settings.storage_access_key_id,
            secret_access_key=settings.storage_secret_access_key,
            region=settings.storage_region,
        )

    def public_url(self, key: str) -> str:
        return f"{self.public_base}/{key.lstrip('/')}"

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        # Same key means same source URL, so re-uploading is a plain overwrite.
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or content_type_for(key),
        )
        logger.debug("Uploaded %s (%d bytes) to bucket %s", key, len(data), self.bucket)
        return self.public_url(key)
