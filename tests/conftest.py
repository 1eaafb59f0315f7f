"""
Pytest fixtures for allvideo tests.
Provides a per-test database, settings, and sample owners, assets and keys.

Uses a SQLite file per test; the schema is created from the same SQLAlchemy
metadata the application uses.
"""

import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, List, Optional

import httpx
import pytest
from databases import Database

from api import assets as asset_store
from api.api_keys import create_api_key
from api.common import new_id
from api.database import create_tables
from api.enums import AssetStatus, MediaKind, TranscriptionStatus
from api.intake import create_account
from api.job_queue import JobQueue
from api.models import Account, MediaAsset
from api.webhook_service import WebhookDispatcher
from config import Settings


class FakeObjectStore:
    """In-memory stand-in for ObjectStore: signs nothing and records transfers."""

    upload_url_expires = 3600

    def __init__(self, public_url: str = "https://cdn.example.com") -> None:
        self.public_url = public_url
        self.uploaded_prefixes: List[str] = []
        self.downloads: List[str] = []
        self.closed = False

    def presigned_upload_url(self, key: str, content_type: str, expires_in: Optional[int] = None) -> str:
        return f"https://storage.example.com/{key}?signature=test"

    def public_object_url(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        return f"{self.public_url}/{key}"

    async def download(self, key: str, dest_path: Path) -> int:
        self.downloads.append(key)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        dest_path.write_bytes(b"\x00" * 16)
        return 16

    async def upload_directory(self, local_dir: Path, prefix: str) -> List[str]:
        self.uploaded_prefixes.append(prefix)
        return [f"{prefix}/{p.name}" for p in sorted(local_dir.iterdir())]

    async def close(self) -> None:
        self.closed = True


class WebhookReceiver:
    """Collects requests sent through an httpx.MockTransport."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def events(self) -> List[str]:
        return [json.loads(r.content)["event"] for r in self.requests]


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a SQLite database file with all tables and return its URL."""
    db_url = f"sqlite:///{tmp_path / 'test.db'}"
    create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
def settings(test_db_url: str, tmp_path: Path) -> Settings:
    """Settings pointed at the test database, with fast timings."""
    return replace(
        Settings(),
        database_url=test_db_url,
        worker_id="worker-test",
        temp_dir=tmp_path / "work",
        min_free_disk_mb=0,
        heartbeat_interval=3600.0,
        poll_interval=0.01,
        rate_limit_enabled=False,
        groq_api_key="",
        webhook_retry_delays=(0.0,),
        webhook_poll_interval=0.01,
    )


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Create a fresh test database for each test."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def queue(test_database: Database, settings: Settings) -> JobQueue:
    return JobQueue(test_database, max_attempts=settings.max_attempts, stale_threshold_seconds=600)


@pytest.fixture(scope="function")
def webhook_receiver() -> WebhookReceiver:
    return WebhookReceiver()


@pytest.fixture(scope="function")
async def dispatcher(test_database: Database, settings: Settings, webhook_receiver: WebhookReceiver):
    """Dispatcher whose HTTP traffic goes to webhook_receiver."""
    client = webhook_receiver.client()
    dispatcher = WebhookDispatcher(test_database, settings, http_client=client)
    yield dispatcher
    await client.aclose()


@pytest.fixture(scope="function")
def fake_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture(scope="function")
async def sample_account(test_database: Database) -> Account:
    """Create a free-tier account."""
    return await create_account(test_database, "owner@example.com")


@pytest.fixture(scope="function")
async def write_key(test_database: Database, sample_account: Account) -> str:
    """Plaintext API key with read and write scopes."""
    plaintext, _ = await create_api_key(
        test_database, sample_account.id, "writer", permissions={"read": True, "write": True}
    )
    return plaintext


@pytest.fixture(scope="function")
def make_asset(test_database: Database):
    """Factory inserting assets directly, bypassing intake."""

    async def factory(
        owner_id: str,
        media_kind: str = MediaKind.VIDEO.value,
        status: str = AssetStatus.PROCESSING.value,
        title: str = "Test Video",
        filename: str = "clip.mp4",
    ) -> MediaAsset:
        asset_id = new_id()
        asset = MediaAsset(
            id=asset_id,
            owner_id=owner_id,
            title=title,
            status=status,
            media_kind=media_kind,
            mime_type="video/mp4" if media_kind == MediaKind.VIDEO.value else "application/octet-stream",
            size_bytes=1024,
            original_filename=filename,
            original_key=f"users/{owner_id}/originals/{asset_id}/{filename}",
            transcription_status=TranscriptionStatus.PENDING.value,
            custom_metadata={"source": "test"},
            created_at=datetime.now(timezone.utc),
        )
        return await asset_store.insert_asset(test_database, asset)

    return factory


@pytest.fixture(scope="function")
def make_receiver():
    """Factory for receivers answering with a fixed status code."""
    return WebhookReceiver
