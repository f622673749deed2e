"""
Tests for the S3-compatible object store adapter.

The boto3 client is replaced with a MagicMock; nothing talks to a real bucket.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from pipeline.errors import DownloadFailure, UploadFailure
from pipeline.object_store import (
    DELETE_BATCH_SIZE,
    ObjectStore,
    asset_prefixes,
    content_type_for,
    master_manifest_key,
    rendition_index_key,
    rendition_prefix,
    source_key,
    thumbnail_key,
)


def _client_error(code: str = "NoSuchKey", operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "simulated"}}, operation)


@pytest.fixture
def s3_client():
    return MagicMock()


@pytest.fixture
def object_store(s3_client):
    return ObjectStore(
        bucket="media",
        public_base_url="https://cdn.example.com/media/",
        client=s3_client,
        presign_client=MagicMock(),
    )


class TestKeyLayout:
    """The blob layout is a persisted contract."""

    def test_keys(self):
        assert source_key("a1") == "original/a1/source.mp4"
        assert thumbnail_key("a1") == "thumb/a1/poster.jpg"
        assert master_manifest_key("a1") == "hls/a1/master.m3u8"
        assert rendition_prefix("a1", "720p") == "hls/a1/720p/"
        assert rendition_index_key("a1", "720p") == "hls/a1/720p/index.m3u8"

    def test_asset_prefixes(self):
        assert asset_prefixes("a1") == ["original/a1/", "thumb/a1/", "hls/a1/"]

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("hls/a/master.m3u8", "application/vnd.apple.mpegurl"),
            ("seg_00001.ts", "video/MP2T"),
            ("poster.JPG", "image/jpeg"),
            ("source.mp4", "video/mp4"),
            ("notes.txt", "application/octet-stream"),
        ],
    )
    def test_content_types(self, name, expected):
        assert content_type_for(name) == expected

    def test_public_url_strips_trailing_slash(self, object_store):
        assert object_store.public_url("hls/a1/master.m3u8") == "https://cdn.example.com/media/hls/a1/master.m3u8"


class TestPresignUpload:
    """Tests for presigned upload grants."""

    def test_grant_covers_only_source_key(self, object_store):
        object_store.presign_client.generate_presigned_url.return_value = "https://s3.example.com/signed"

        grant = object_store.presign_upload("a1", ttl=600)

        object_store.presign_client.generate_presigned_url.assert_called_once_with(
            ClientMethod="put_object",
            Params={"Bucket": "media", "Key": "original/a1/source.mp4"},
            ExpiresIn=600,
            HttpMethod="PUT",
        )
        assert grant == {
            "url": "https://s3.example.com/signed",
            "key": "original/a1/source.mp4",
            "expires_in": 600,
            "headers": {"Content-Type": "video/mp4"},
        }

    def test_signing_error_raises_upload_failure(self, object_store):
        object_store.presign_client.generate_presigned_url.side_effect = _client_error("AccessDenied")

        with pytest.raises(UploadFailure):
            object_store.presign_upload("a1")

    def test_server_client_not_used_for_signing(self, object_store, s3_client):
        object_store.presign_client.generate_presigned_url.return_value = "https://public/signed"
        object_store.presign_upload("a1")
        s3_client.generate_presigned_url.assert_not_called()


class TestPutAndGet:
    """Tests for object writes and reads."""

    @pytest.mark.asyncio
    async def test_put_sets_content_type(self, object_store, s3_client):
        await object_store.put("hls/a1/master.m3u8", b"#EXTM3U\n")

        s3_client.put_object.assert_called_once_with(
            Bucket="media",
            Key="hls/a1/master.m3u8",
            Body=b"#EXTM3U\n",
            ContentType="application/vnd.apple.mpegurl",
        )

    @pytest.mark.asyncio
    async def test_put_error_raises_upload_failure(self, object_store, s3_client):
        s3_client.put_object.side_effect = _client_error("InternalError", "PutObject")

        with pytest.raises(UploadFailure, match="hls/a1/master.m3u8"):
            await object_store.put("hls/a1/master.m3u8", b"x")

    @pytest.mark.asyncio
    async def test_put_file(self, object_store, s3_client, tmp_path):
        segment = tmp_path / "seg_00000.ts"
        segment.write_bytes(b"\x47" * 188)

        await object_store.put_file("hls/a1/360p/seg_00000.ts", segment)

        s3_client.upload_file.assert_called_once_with(
            str(segment), "media", "hls/a1/360p/seg_00000.ts", ExtraArgs={"ContentType": "video/MP2T"}
        )

    @pytest.mark.asyncio
    async def test_get_reads_body(self, object_store, s3_client):
        body = MagicMock()
        body.read.return_value = b"data"
        s3_client.get_object.return_value = {"Body": body}

        assert await object_store.get("thumb/a1/poster.jpg") == b"data"

    @pytest.mark.asyncio
    async def test_missing_key_raises_download_failure(self, object_store, s3_client):
        s3_client.get_object.side_effect = _client_error("NoSuchKey")

        with pytest.raises(DownloadFailure):
            await object_store.get("thumb/a1/poster.jpg")


class TestDownloadTo:
    """Tests for ObjectStore.download_to."""

    @pytest.mark.asyncio
    async def test_downloads_into_path(self, object_store, s3_client, tmp_path):
        def fake_download(bucket, key, filename):
            with open(filename, "wb") as f:
                f.write(b"video-bytes")

        s3_client.download_file.side_effect = fake_download
        target = tmp_path / "job" / "source.mp4"

        size = await object_store.download_to("original/a1/source.mp4", target)

        assert size == len(b"video-bytes")
        assert target.read_bytes() == b"video-bytes"

    @pytest.mark.asyncio
    async def test_empty_object_is_a_download_failure(self, object_store, s3_client, tmp_path):
        s3_client.download_file.side_effect = lambda bucket, key, filename: open(filename, "wb").close()

        with pytest.raises(DownloadFailure, match="empty"):
            await object_store.download_to("original/a1/source.mp4", tmp_path / "source.mp4")

    @pytest.mark.asyncio
    async def test_missing_source(self, object_store, s3_client, tmp_path):
        s3_client.download_file.side_effect = _client_error("404", "HeadObject")

        with pytest.raises(DownloadFailure):
            await object_store.download_to("original/a1/source.mp4", tmp_path / "source.mp4")


class TestDeletePrefix:
    """Tests for paginated, batched prefix deletion."""

    def _pages(self, count: int, per_page: int = 1000):
        keys = [f"hls/a1/720p/seg_{i:05d}.ts" for i in range(count)]
        return [{"Contents": [{"Key": k} for k in keys[i : i + per_page]]} for i in range(0, count, per_page)]

    @pytest.mark.asyncio
    async def test_deletes_in_batches_of_1000(self, object_store, s3_client):
        paginator = MagicMock()
        paginator.paginate.return_value = self._pages(2500, per_page=700)
        s3_client.get_paginator.return_value = paginator
        s3_client.delete_objects.return_value = {}

        deleted = await object_store.delete("hls/a1/")

        assert deleted == 2500
        batch_sizes = [len(c.kwargs["Delete"]["Objects"]) for c in s3_client.delete_objects.call_args_list]
        assert batch_sizes == [DELETE_BATCH_SIZE, DELETE_BATCH_SIZE, 500]
        paginator.paginate.assert_called_once_with(Bucket="media", Prefix="hls/a1/")

    @pytest.mark.asyncio
    async def test_empty_prefix_deletes_nothing(self, object_store, s3_client):
        paginator = MagicMock()
        paginator.paginate.return_value = [{"KeyCount": 0}]
        s3_client.get_paginator.return_value = paginator

        assert await object_store.delete("hls/none/") == 0
        s3_client.delete_objects.assert_not_called()

    @pytest.mark.asyncio
    async def test_per_key_errors_not_counted(self, object_store, s3_client):
        paginator = MagicMock()
        paginator.paginate.return_value = self._pages(3)
        s3_client.get_paginator.return_value = paginator
        s3_client.delete_objects.return_value = {
            "Errors": [{"Key": "hls/a1/720p/seg_00001.ts", "Code": "AccessDenied", "Message": "nope"}]
        }

        assert await object_store.delete("hls/a1/") == 2

    @pytest.mark.asyncio
    async def test_listing_error_raises(self, object_store, s3_client):
        s3_client.get_paginator.side_effect = _client_error("AccessDenied", "ListObjectsV2")

        with pytest.raises(UploadFailure):
            await object_store.delete("hls/a1/")
