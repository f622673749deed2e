"""
S3-compatible object storage (Cloudflare R2, MinIO, AWS S3).

Holds the fixed key layout every other component relies on:

    original/{asset_id}/source.mp4          uploaded source (presigned PUT)
    thumb/{asset_id}/poster.jpg             poster frame
    hls/{asset_id}/master.m3u8              master manifest
    hls/{asset_id}/{tier}/index.m3u8        rendition playlist
    hls/{asset_id}/{tier}/seg_NNNNN.ts      rendition segments

boto3 is blocking, so every call made from the worker runs through
asyncio.to_thread.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import (
    PRESIGN_UPLOAD_TTL,
    PUBLIC_BASE_URL,
    S3_ACCESS_KEY,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_PUBLIC_ENDPOINT,
    S3_REGION,
    S3_SECRET_KEY,
)
from pipeline.errors import DownloadFailure, UploadFailure

logger = logging.getLogger(__name__)

# delete_objects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".mp4": "video/mp4",
}

_BOTO_ERRORS = (BotoCoreError, ClientError)


def content_type_for(name: str) -> str:
    """Content-Type for an object key or filename, by extension."""
    return CONTENT_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


def source_key(asset_id: str) -> str:
    return f"original/{asset_id}/source.mp4"


def thumbnail_key(asset_id: str) -> str:
    return f"thumb/{asset_id}/poster.jpg"


def master_manifest_key(asset_id: str) -> str:
    return f"hls/{asset_id}/master.m3u8"


def rendition_prefix(asset_id: str, tier: str) -> str:
    return f"hls/{asset_id}/{tier}/"


def rendition_index_key(asset_id: str, tier: str) -> str:
    return f"{rendition_prefix(asset_id, tier)}index.m3u8"


def asset_prefixes(asset_id: str) -> List[str]:
    """Every prefix the pipeline writes under for one asset."""
    return [f"original/{asset_id}/", f"thumb/{asset_id}/", f"hls/{asset_id}/"]


def _make_client(endpoint_url: Optional[str]):
    session = boto3.session.Session(
        aws_access_key_id=S3_ACCESS_KEY,
        aws_secret_access_key=S3_SECRET_KEY,
        region_name=S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=endpoint_url,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


class ObjectStore:
    """Blob storage adapter for sources, renditions, manifests and posters."""

    def __init__(
        self,
        bucket: str = S3_BUCKET,
        public_base_url: str = PUBLIC_BASE_URL,
        client=None,
        presign_client=None,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client
        self._presign_client = presign_client

    @property
    def client(self):
        """SDK client for server-side transfers (created on first use)."""
        if self._client is None:
            self._client = _make_client(S3_ENDPOINT_URL)
        return self._client

    @property
    def presign_client(self):
        """Client signing against the public endpoint so the URL host matches what uploaders reach."""
        if self._presign_client is None:
            self._presign_client = _make_client(S3_PUBLIC_ENDPOINT)
        return self._presign_client

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def presign_upload(self, asset_id: str, ttl: int = PRESIGN_UPLOAD_TTL) -> Dict[str, object]:
        """
        Create a presigned PUT grant for the asset's source object.

        The grant only covers original/{asset_id}/source.mp4. ContentType is not
        signed, so clients that omit or change the header still match the signature.
        """
        key = source_key(asset_id)
        try:
            url = self.presign_client.generate_presigned_url(
                ClientMethod="put_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl,
                HttpMethod="PUT",
            )
        except _BOTO_ERRORS as e:
            raise UploadFailure(f"Could not presign upload for {asset_id}: {e}") from e
        return {
            "url": url,
            "key": key,
            "expires_in": ttl,
            "headers": {"Content-Type": content_type_for(key)},
        }

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Write bytes to key. Raises UploadFailure."""
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or content_type_for(key),
            )
        except _BOTO_ERRORS as e:
            raise UploadFailure(f"Upload of {key} failed: {e}") from e
        logger.debug(f"Uploaded {len(data)} bytes to {key}")

    async def put_file(self, key: str, path: Path, content_type: Optional[str] = None) -> None:
        """Upload a local file to key. Raises UploadFailure."""
        extra = {"ContentType": content_type or content_type_for(str(path))}
        try:
            await asyncio.to_thread(self.client.upload_file, str(path), self.bucket, key, ExtraArgs=extra)
        except (OSError, *_BOTO_ERRORS) as e:
            raise UploadFailure(f"Upload of {path.name} to {key} failed: {e}") from e
        logger.debug(f"Uploaded {path} to {key}")

    async def get(self, key: str) -> bytes:
        """Read the whole object at key. Raises DownloadFailure (missing keys included)."""

        def _read() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except _BOTO_ERRORS as e:
            raise DownloadFailure(f"Download of {key} failed: {e}") from e

    async def download_to(self, key: str, path: Path) -> int:
        """
        Download key into path.

        Returns:
            Size of the downloaded file in bytes

        Raises:
            DownloadFailure: The object is missing, unreadable, or empty
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(self.client.download_file, self.bucket, key, str(path))
            size = path.stat().st_size
        except (OSError, *_BOTO_ERRORS) as e:
            raise DownloadFailure(f"Download of {key} failed: {e}") from e
        if size == 0:
            raise DownloadFailure(f"Downloaded object {key} is empty")
        return size

    async def delete(self, prefix: str) -> int:
        """
        Delete every object under prefix.

        Returns:
            Number of objects deleted
        """
        return await asyncio.to_thread(self._delete_prefix, prefix)

    def _delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch: List[Dict[str, str]] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    batch.append({"Key": obj["Key"]})
                    if len(batch) == DELETE_BATCH_SIZE:
                        deleted += self._delete_batch(batch)
                        batch = []
            if batch:
                deleted += self._delete_batch(batch)
        except _BOTO_ERRORS as e:
            raise UploadFailure(f"Delete under {prefix} failed after {deleted} objects: {e}") from e
        logger.info(f"Deleted {deleted} objects under {prefix}")
        return deleted

    def _delete_batch(self, batch: List[Dict[str, str]]) -> int:
        response = self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": batch, "Quiet": True})
        errors = response.get("Errors", [])
        for err in errors:
            logger.warning(f"Failed to delete {err.get('Key')}: {err.get('Code')} {err.get('Message')}")
        return len(batch) - len(errors)
