"""
Object storage access for uploaded documents and generated export archives.

This module provides functionality for:
- Downloading document blobs by storage path
- Uploading archives without overwriting an existing object
- Generating presigned URLs for secure, time-limited downloads

The boto3 client is created once by the host process and passed in; every
blocking boto3 call runs in a worker thread so the event loop stays free.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import ObjectExists, ObjectNotFound, StorageError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
CONFLICT_CODES = {"PreconditionFailed", "ConditionalRequestConflict"}


def create_s3_client(config: DictConfig):
    """
    Build the S3 client from the ``storage`` config section.

    Note:
        Credentials are resolved by boto3's usual chain (env vars, profile,
        instance role). Missing credentials surface on the first request.
    """
    storage = config.storage
    return boto3.client(
        "s3",
        endpoint_url=storage.endpoint_url or None,
        region_name=storage.region,
    )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class ObjectStorage:
    """
    Bucket-scoped wrapper around an S3 client.

    Attributes:
        bucket: Bucket all keys are resolved against
    """

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self.bucket = bucket

    def download_sync(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object not found: {path}", key=path) from e
            raise StorageError(f"Download failed for {path}: {e}", key=path) from e
        except BotoCoreError as e:
            raise StorageError(f"Download failed for {path}: {e}", key=path) from e

    def upload_sync(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        no_overwrite: bool = True,
    ) -> None:
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if no_overwrite:
            params["IfNoneMatch"] = "*"

        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
            self._client.put_object(**params)
        except ClientError as e:
            if _error_code(e) in CONFLICT_CODES:
                raise ObjectExists(f"Object already exists: {key}", key=key) from e
            raise StorageError(f"Upload failed for {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"Upload failed for {key}: {e}", key=key) from e

    async def download(self, path: str) -> bytes:
        """
        Download an object's full content.

        Raises:
            ObjectNotFound: If no object exists at ``path``
            StorageError: For any other storage or transport error
        """
        return await asyncio.to_thread(self.download_sync, path)

    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        no_overwrite: bool = True,
    ) -> None:
        """
        Upload ``data`` under ``key``.

        With ``no_overwrite`` the write is conditional on the key being free;
        an existing object raises ``ObjectExists`` instead of being replaced.
        """
        await asyncio.to_thread(self.upload_sync, key, data, content_type, no_overwrite)

    def generate_presigned_url(self, key: str, expiration: int = 3600) -> Optional[str]:
        """
        Generate a presigned GET URL, or None if signing fails.

        Note:
            The presigned URL allows anyone with the URL to download the file
            until the expiration time is reached.
        """
        try:
            url = self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expiration,
            )
            logger.info(f"Generated presigned URL for {key} (expires in {expiration}s)")
            return url
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate presigned URL: {e}")
            return None
