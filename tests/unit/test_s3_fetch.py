"""Tests for S3 object download."""

import io

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody

from lambda_plugins.core.s3_fetch import S3ObjectFetcher, parse_s3_url
from lambda_plugins.lib.errors import FetchError


class FakeS3Client:
    def __init__(self, objects: dict):
        self.objects = objects
        self.requests = []

    def get_object(self, Bucket, Key):
        self.requests.append((Bucket, Key))
        if (Bucket, Key) not in self.objects:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."}},
                "GetObject",
            )
        data = self.objects[(Bucket, Key)]
        return {"Body": StreamingBody(io.BytesIO(data), len(data))}


class TestParseS3Url:
    def test_bucket_and_key(self):
        assert parse_s3_url("s3://my-bucket/plugins/a-1.0.0.tgz") == ("my-bucket", "plugins/a-1.0.0.tgz")

    @pytest.mark.parametrize("url", ["s3:foo", "s3://bucket", "s3://bucket/", "https://bucket/key"])
    def test_invalid(self, url):
        with pytest.raises(FetchError):
            parse_s3_url(url)


class TestS3ObjectFetcher:
    @pytest.mark.asyncio
    async def test_download(self, tmp_path):
        client = FakeS3Client({("bucket", "a.tgz"): b"x" * 3_000_000})
        destination = tmp_path / "a.tgz"
        await S3ObjectFetcher(client).fetch("s3://bucket/a.tgz", destination)
        assert destination.stat().st_size == 3_000_000
        assert client.requests == [("bucket", "a.tgz")]

    @pytest.mark.asyncio
    async def test_missing_object(self, tmp_path):
        destination = tmp_path / "a.tgz"
        with pytest.raises(FetchError) as exc_info:
            await S3ObjectFetcher(FakeS3Client({})).fetch("s3://bucket/a.tgz", destination)
        assert exc_info.value.url == "s3://bucket/a.tgz"
        assert "NoSuchKey" in str(exc_info.value)
        assert not destination.exists()

    @pytest.mark.asyncio
    async def test_unwritable_destination(self, tmp_path):
        client = FakeS3Client({("bucket", "a.tgz"): b"data"})
        with pytest.raises(FetchError):
            await S3ObjectFetcher(client).fetch("s3://bucket/a.tgz", tmp_path / "missing" / "a.tgz")
