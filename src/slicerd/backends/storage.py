"""Object storage backends.

``S3ObjectStorage`` moves files with a boto3 S3 client (retries and
multipart handling are internal to boto3's transfer manager);
``LocalObjectStorage`` maps buckets to subdirectories of a root folder
for development and tests.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from slicerd.backends.base import ObjectStorage
from slicerd.core.logging import get_logger
from slicerd.daemon.exceptions import TransientError

_logger = get_logger("backends.storage")


class S3ObjectStorage(ObjectStorage):
    """ObjectStorage over Amazon S3."""

    def __init__(
        self,
        region: str,
        *,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._region = region
        self._endpoint_url = endpoint_url
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
            )
        return self._client

    async def download(self, bucket: str, key: str, local_path: Path) -> None:
        _logger.debug("s3.download", bucket=bucket, key=key, local=str(local_path))
        try:
            await asyncio.to_thread(
                self.client.download_file, bucket, key, str(local_path),
            )
        except (BotoCoreError, ClientError, OSError) as exc:
            raise TransientError(f"download of s3://{bucket}/{key} failed: {exc}") from exc

    async def upload(self, local_path: Path, bucket: str, key: str) -> None:
        _logger.debug("s3.upload", bucket=bucket, key=key, local=str(local_path))
        try:
            await asyncio.to_thread(
                self.client.upload_file, str(local_path), bucket, key,
            )
        except (BotoCoreError, ClientError, OSError) as exc:
            raise TransientError(f"upload to s3://{bucket}/{key} failed: {exc}") from exc


class LocalObjectStorage(ObjectStorage):
    """ObjectStorage backed by a directory tree: ``<root>/<bucket>/<key>``."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _object_path(self, bucket: str, key: str) -> Path:
        path = (self._root / bucket / key).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise TransientError(f"object path escapes storage root: {bucket}/{key}")
        return path

    async def download(self, bucket: str, key: str, local_path: Path) -> None:
        source = self._object_path(bucket, key)
        try:
            await asyncio.to_thread(shutil.copyfile, source, local_path)
        except OSError as exc:
            raise TransientError(f"download of {bucket}/{key} failed: {exc}") from exc

    async def upload(self, local_path: Path, bucket: str, key: str) -> None:
        target = self._object_path(bucket, key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, local_path, target)
        except OSError as exc:
            raise TransientError(f"upload to {bucket}/{key} failed: {exc}") from exc


__all__ = ["LocalObjectStorage", "S3ObjectStorage"]
