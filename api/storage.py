"""
S3-compatible object storage (Cloudflare R2 in production).

boto3 is only used to sign URLs; signing is local and never touches the
network. Bytes move over plain HTTP with httpx against pre-signed URLs, so
the worker streams without holding a boto3 session open on the event loop.

Key layout:
    users/{owner_id}/originals/{asset_id}/{filename}   uploaded original
    users/{owner_id}/hls/{asset_id}/                   master.m3u8, renditions, poster.jpg
"""

import logging
from pathlib import Path
from typing import AsyncIterator, List, Optional

import aiofiles
import boto3
import httpx
from botocore.config import Config as BotoConfig

from api.errors import StorageError
from config import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".vtt": "text/vtt",
}


def original_key(owner_id: str, asset_id: str, filename: str) -> str:
    return f"users/{owner_id}/originals/{asset_id}/{filename}"


def hls_prefix(owner_id: str, asset_id: str) -> str:
    return f"users/{owner_id}/hls/{asset_id}"


def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


class ObjectStore:
    """Signs object URLs and streams bytes to and from them."""

    def __init__(self, settings: Settings, s3_client=None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.bucket = settings.storage_bucket
        self.public_url = settings.storage_public_url
        self.upload_url_expires = settings.upload_url_expires
        self._settings = settings
        self._s3 = s3_client
        self._http_client = http_client

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=self._settings.storage_endpoint_url or None,
                region_name=self._settings.storage_region,
                aws_access_key_id=self._settings.storage_access_key_id or None,
                aws_secret_access_key=self._settings.storage_secret_access_key or None,
                config=BotoConfig(signature_version="s3v4"),
            )
        return self._s3

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()

    # -------------------------------------------------------------------------
    # URL signing
    # -------------------------------------------------------------------------

    def presigned_upload_url(self, key: str, content_type: str, expires_in: Optional[int] = None) -> str:
        return self.s3.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in or self.upload_url_expires,
        )

    def presigned_download_url(self, key: str, expires_in: int = 3600) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def public_object_url(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        if not self.public_url:
            return key
        return f"{self.public_url}/{key}"

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    async def download(self, key: str, dest_path: Path) -> int:
        """Stream an object to ``dest_path``. Returns the number of bytes written."""
        client = await self._get_http_client()
        url = self.presigned_download_url(key)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        written = 0
        try:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                async with aiofiles.open(dest_path, "wb") as f:
                    async for chunk in resp.aiter_bytes(chunk_size=CHUNK_SIZE):
                        await f.write(chunk)
                        written += len(chunk)
        except httpx.HTTPStatusError as e:
            raise StorageError(key, f"download failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise StorageError(key, f"download failed: {e}") from e

        logger.debug(f"Downloaded {key} ({written} bytes)")
        return written

    async def upload_file(self, local_path: Path, key: str, content_type: Optional[str] = None) -> None:
        content_type = content_type or content_type_for(local_path)
        client = await self._get_http_client()
        url = self.presigned_upload_url(key, content_type)

        async def body() -> AsyncIterator[bytes]:
            async with aiofiles.open(local_path, "rb") as f:
                while True:
                    chunk = await f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        headers = {"Content-Type": content_type, "Content-Length": str(local_path.stat().st_size)}
        try:
            resp = await client.put(url, content=body(), headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageError(key, f"upload failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise StorageError(key, f"upload failed: {e}") from e

    async def upload_directory(self, local_dir: Path, prefix: str) -> List[str]:
        """Upload every file under ``local_dir`` to ``{prefix}/{relative path}``."""
        keys = []
        for path in sorted(p for p in local_dir.rglob("*") if p.is_file()):
            key = f"{prefix}/{path.relative_to(local_dir).as_posix()}"
            await self.upload_file(path, key)
            keys.append(key)
        logger.info(f"Uploaded {len(keys)} files to {prefix}/")
        return keys
