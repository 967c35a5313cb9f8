"""
Cloudflare R2 (S3-compatible) asset store.
Uses boto3 for S3-compatible operations.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import uuid
from typing import Optional

import boto3
from botocore.client import BaseClient

from app.config import EngineSettings
from app.services.errors import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)


def create_r2_client() -> BaseClient:
    endpoint_url = os.getenv("R2_ENDPOINT")
    access_key_id = os.getenv("R2_ACCESS_KEY_ID")
    secret_access_key = os.getenv("R2_SECRET_ACCESS_KEY")

    if not endpoint_url:
        raise ConfigurationError("R2_ENDPOINT environment variable is required")
    if not access_key_id:
        raise ConfigurationError("R2_ACCESS_KEY_ID environment variable is required")
    if not secret_access_key:
        raise ConfigurationError("R2_SECRET_ACCESS_KEY environment variable is required")

    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name="auto",
    )


def r2_configured() -> bool:
    return all(
        os.getenv(key)
        for key in ("R2_ENDPOINT", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY")
    )


class R2AssetStore:
    """store(data, hint) -> public URL of the uploaded object."""

    def __init__(
        self,
        settings: EngineSettings,
        client: Optional[BaseClient] = None,
        prefix: str = "workflow-outputs",
    ):
        if not settings.r2_public_base_url:
            raise ConfigurationError(
                "R2_PUBLIC_BASE_URL is required to serve stored assets"
            )
        self.bucket = settings.r2_bucket
        self.public_base_url = settings.r2_public_base_url.rstrip("/")
        self.prefix = prefix
        self.client = client or create_r2_client()

    def _object_key(self, hint: str, content_type: str) -> str:
        extension = mimetypes.guess_extension(content_type) or ".bin"
        safe_hint = "".join(c if c.isalnum() or c in "-_" else "-" for c in hint)
        return f"{self.prefix}/{safe_hint or 'asset'}-{uuid.uuid4().hex}{extension}"

    def _put(self, key: str, data: bytes, content_type: str) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    async def store(self, data: bytes, hint: str, content_type: str = "image/png") -> str:
        key = self._object_key(hint, content_type)
        try:
            await asyncio.to_thread(self._put, key, data, content_type)
        except Exception as e:
            raise ExternalServiceError(f"Failed to upload asset to R2: {e}") from e
        logger.info("Stored %d bytes at r2://%s/%s", len(data), self.bucket, key)
        return f"{self.public_base_url}/{key}"
