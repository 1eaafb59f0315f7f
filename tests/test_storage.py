"""
Tests for api/storage.py.

URL signing uses a real boto3 client (signing is local); transfers go
through httpx.MockTransport against a stubbed signer.
"""

from dataclasses import replace
from unittest.mock import MagicMock

import httpx
import pytest

from api.errors import StorageError
from api.storage import ObjectStore, content_type_for, hls_prefix, original_key
from config import Settings


def _settings(**overrides) -> Settings:
    return replace(
        Settings(),
        storage_endpoint_url="https://account.r2.cloudflarestorage.com",
        storage_bucket="media",
        storage_access_key_id="AKIDEXAMPLE",
        storage_secret_access_key="secret-example",
        **overrides,
    )


def _signer():
    s3 = MagicMock()
    s3.generate_presigned_url.side_effect = lambda op, Params, ExpiresIn: (
        f"https://storage.example.com/{Params['Key']}?op={op}"
    )
    return s3


class TestKeyLayout:
    """Tests for object key helpers."""

    def test_original_key(self):
        assert original_key("o1", "a1", "clip.mp4") == "users/o1/originals/a1/clip.mp4"

    def test_hls_prefix(self):
        assert hls_prefix("o1", "a1") == "users/o1/hls/a1"

    def test_content_types(self, tmp_path):
        assert content_type_for(tmp_path / "master.m3u8") == "application/vnd.apple.mpegurl"
        assert content_type_for(tmp_path / "720p_0001.TS") == "video/MP2T"
        assert content_type_for(tmp_path / "poster.jpg") == "image/jpeg"
        assert content_type_for(tmp_path / "unknown.bin") == "application/octet-stream"


class TestSigning:
    """Tests for pre-signed URL generation with boto3."""

    def test_presigned_upload_url(self):
        store = ObjectStore(_settings())

        url = store.presigned_upload_url("users/o1/originals/a1/clip.mp4", "video/mp4")

        assert "users/o1/originals/a1/clip.mp4" in url
        assert "X-Amz-Signature=" in url
        assert "X-Amz-Expires=3600" in url

    def test_custom_expiry(self):
        store = ObjectStore(_settings())

        url = store.presigned_upload_url("k", "video/mp4", expires_in=120)

        assert "X-Amz-Expires=120" in url

    def test_public_object_url(self):
        store = ObjectStore(_settings(storage_public_url="https://cdn.example.com"))

        assert store.public_object_url("users/o1/hls/a1/master.m3u8") == (
            "https://cdn.example.com/users/o1/hls/a1/master.m3u8"
        )
        assert store.public_object_url(None) is None

    def test_public_object_url_without_base(self):
        assert ObjectStore(_settings()).public_object_url("k") == "k"


class TestTransfers:
    """Tests for streaming transfers over pre-signed URLs."""

    @pytest.mark.asyncio
    async def test_download(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.params["op"] == "get_object"
            return httpx.Response(200, content=b"original bytes")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = ObjectStore(_settings(), s3_client=_signer(), http_client=client)

        written = await store.download("users/o1/originals/a1/clip.mp4", tmp_path / "in" / "input.mp4")
        await store.close()

        assert written == len(b"original bytes")
        assert (tmp_path / "in" / "input.mp4").read_bytes() == b"original bytes"

    @pytest.mark.asyncio
    async def test_download_http_error(self, tmp_path):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        store = ObjectStore(_settings(), s3_client=_signer(), http_client=client)

        with pytest.raises(StorageError, match="HTTP 404"):
            await store.download("missing", tmp_path / "input.mp4")
        await store.close()

    @pytest.mark.asyncio
    async def test_upload_directory(self, tmp_path):
        received = {}

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            received[request.url.path] = (request.headers["Content-Type"], request.content)
            return httpx.Response(200)

        output = tmp_path / "output"
        output.mkdir()
        (output / "master.m3u8").write_text("#EXTM3U\n")
        (output / "360p_0000.ts").write_bytes(b"\x47" * 188)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = ObjectStore(_settings(), s3_client=_signer(), http_client=client)

        keys = await store.upload_directory(output, "users/o1/hls/a1")
        await store.close()

        assert keys == ["users/o1/hls/a1/360p_0000.ts", "users/o1/hls/a1/master.m3u8"]
        assert received["/users/o1/hls/a1/master.m3u8"] == ("application/vnd.apple.mpegurl", b"#EXTM3U\n")
        assert received["/users/o1/hls/a1/360p_0000.ts"][0] == "video/MP2T"

    @pytest.mark.asyncio
    async def test_upload_failure(self, tmp_path):
        path = tmp_path / "poster.jpg"
        path.write_bytes(b"jpg")
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        store = ObjectStore(_settings(), s3_client=_signer(), http_client=client)

        with pytest.raises(StorageError, match="upload failed"):
            await store.upload_file(path, "users/o1/hls/a1/poster.jpg")
        await store.close()
