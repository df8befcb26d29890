"""S3-compatible blob store (``LEXICON_BLOB_BACKEND=s3``).

Works against AWS S3, MinIO and other S3-compatible services.  Requires the
``boto3`` package.  boto3 is synchronous, so every call is pushed to a
worker thread to keep the event loop free.

The client is created lazily on first use: constructing the store never
looks up credentials.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from lexicon.core.collaborators import BlobStore, adapter_registry
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import ServiceUnavailable, StorageError

logger = logging.getLogger(__name__)


class S3BlobStore(BlobStore):
    """Blob store backed by one S3 bucket.

    Args:
        config: Service configuration (region, endpoint).
        bucket: Target bucket name.
        client: Pre-built boto3 S3 client.  Tests pass a mock here.
    """

    name = "s3"

    def __init__(
        self,
        config: LexiconConfig,
        *,
        bucket: str,
        client: Any | None = None,
    ) -> None:
        self.bucket = bucket
        self._region = config.s3_region
        self._endpoint_url = config.s3_endpoint_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                import boto3
            except ImportError as exc:
                raise ServiceUnavailable("Object storage") from exc

            kwargs: dict = {}
            if self._region:
                kwargs["region_name"] = self._region
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def upload(self, data: bytes, object_path: str, content_type: str) -> str:
        client = self._get_client()
        try:
            await asyncio.to_thread(
                client.put_object,
                Bucket=self.bucket,
                Key=object_path,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000",
            )
        except Exception as exc:
            raise StorageError(f"Upload to s3://{self.bucket}/{object_path} failed: {exc}") from exc

        logger.debug("S3 write: s3://%s/%s (%d bytes)", self.bucket, object_path, len(data))
        return f"s3://{self.bucket}/{object_path}"

    async def signed_url(self, object_path: str, ttl_s: int) -> str:
        client = self._get_client()
        try:
            return await asyncio.to_thread(
                client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": object_path},
                ExpiresIn=ttl_s,
            )
        except Exception as exc:
            raise StorageError(f"Signing s3://{self.bucket}/{object_path} failed: {exc}") from exc


adapter_registry.register("blob", "s3", S3BlobStore)
