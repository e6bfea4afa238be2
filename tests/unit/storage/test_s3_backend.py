# tests/unit/storage/test_s3_backend.py — v1
"""Tests for storage/s3_backend.py: mocked boto3 client."""

from __future__ import annotations

import sys
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from deploygate.storage.s3_backend import S3BlobBackend


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "GetObject")


class TestS3BlobBackend:
    def test_import_error_without_boto3(self):
        """Clear ImportError when boto3 is not available."""
        boto_mod = sys.modules.get("boto3")
        sys.modules["boto3"] = None  # type: ignore[assignment]
        try:
            with pytest.raises(ImportError, match="boto3"):
                S3BlobBackend(bucket="b")
        finally:
            if boto_mod is not None:
                sys.modules["boto3"] = boto_mod
            else:
                sys.modules.pop("boto3", None)

    def test_encrypts_at_rest_only_with_kms(self):
        assert S3BlobBackend(bucket="b", client=MagicMock(), kms_key_id="alias/k").encrypts_at_rest
        assert not S3BlobBackend(bucket="b", client=MagicMock()).encrypts_at_rest

    @pytest.mark.asyncio
    async def test_write_uses_sse_kms(self):
        client = MagicMock()
        backend = S3BlobBackend(bucket="artifacts", prefix="dg", kms_key_id="alias/k", client=client)
        await backend.write("blobs/ab/abc", b"payload")
        client.put_object.assert_called_once_with(
            Bucket="artifacts",
            Key="dg/blobs/ab/abc",
            Body=b"payload",
            ServerSideEncryption="aws:kms",
            SSEKMSKeyId="alias/k",
        )

    @pytest.mark.asyncio
    async def test_read(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": MagicMock(read=MagicMock(return_value=b"data"))}
        backend = S3BlobBackend(bucket="b", client=client)
        assert await backend.read("k") == b"data"
        client.get_object.assert_called_once_with(Bucket="b", Key="deploygate/k")

    @pytest.mark.asyncio
    async def test_read_missing_raises_key_error(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("NoSuchKey")
        with pytest.raises(KeyError):
            await S3BlobBackend(bucket="b", client=client).read("k")

    @pytest.mark.asyncio
    async def test_read_other_errors_propagate(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("AccessDenied")
        with pytest.raises(ClientError):
            await S3BlobBackend(bucket="b", client=client).read("k")

    @pytest.mark.asyncio
    async def test_exists(self):
        client = MagicMock()
        backend = S3BlobBackend(bucket="b", client=client)
        assert await backend.exists("k")
        client.head_object.side_effect = _client_error("404")
        assert not await backend.exists("k")

    @pytest.mark.asyncio
    async def test_list_keys_strips_prefix(self):
        client = MagicMock()
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "deploygate/blobs/b"}, {"Key": "deploygate/blobs/a"}]},
            {},
        ]
        client.get_paginator.return_value = paginator
        keys = await S3BlobBackend(bucket="b", client=client).list_keys("blobs/")
        assert keys == ["blobs/a", "blobs/b"]
        paginator.paginate.assert_called_once_with(Bucket="b", Prefix="deploygate/blobs/")
