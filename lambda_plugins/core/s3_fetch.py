"""
Download of plugin tarballs stored in S3.

Plugins referenced as s3://bucket/key are fetched to local storage before
npm sees them, since npm itself cannot authenticate against S3.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from lambda_plugins.lib.errors import FetchError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class ObjectFetcher(Protocol):
    async def fetch(self, url: str, destination: Path) -> None:
        """Download the object at url to destination."""
        ...


def parse_s3_url(url: str) -> tuple[str, str]:
    """Split s3://bucket/key into (bucket, key)."""
    parsed = urlparse(url)
    if parsed.scheme.lower() != "s3":
        raise FetchError(url, "not an s3 URL")
    bucket = parsed.netloc
    key = parsed.path.lstrip("/")
    if not bucket or not key:
        raise FetchError(url, "s3 URL needs to look like s3://bucket/key")
    return bucket, key


class S3ObjectFetcher:
    """Streams S3 objects to disk with boto3."""

    def __init__(self, client: Optional[Any] = None):
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def _download(self, bucket: str, key: str, destination: Path) -> None:
        response = self.client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        try:
            with open(destination, "wb") as f:
                for chunk in body.iter_chunks(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
        finally:
            body.close()

    async def fetch(self, url: str, destination: Path) -> None:
        """Download an s3:// object to destination.

        Raises:
            FetchError: If the URL is invalid or the download fails
        """
        bucket, key = parse_s3_url(url)
        logger.debug(f"Downloading {url} to {destination}")
        try:
            await asyncio.to_thread(self._download, bucket, key, destination)
        except (BotoCoreError, ClientError, OSError) as e:
            destination.unlink(missing_ok=True)
            raise FetchError(url, str(e)) from e
