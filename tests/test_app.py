"""
Tests for the HTTP API.

The app runs under FastAPI's TestClient with its own database connection on
the per-test SQLite file; owners and keys are seeded before the app starts.
"""

import asyncio
from dataclasses import dataclass

import pytest
from databases import Database
from fastapi.testclient import TestClient

from api.api_keys import create_api_key
from api.app import create_app
from api.database import webhook_deliveries
from api.intake import create_account


@dataclass
class Seed:
    owner_id: str
    write_key: str
    read_key: str
    other_key: str
    delete_key: str
    other_delete_key: str


@pytest.fixture
def seed(settings) -> Seed:
    async def populate() -> Seed:
        database = Database(settings.database_url)
        await database.connect()
        try:
            owner = await create_account(database, "owner@example.com")
            other = await create_account(database, "other@example.com")
            write_key, _ = await create_api_key(database, owner.id, "writer", permissions={"write": True})
            read_key, _ = await create_api_key(database, owner.id, "reader")
            other_key, _ = await create_api_key(database, other.id, "other", permissions={"write": True})
            delete_key, _ = await create_api_key(database, owner.id, "deleter", permissions={"delete": True})
            other_delete_key, _ = await create_api_key(
                database, other.id, "other-deleter", permissions={"delete": True}
            )
        finally:
            await database.disconnect()
        return Seed(owner.id, write_key, read_key, other_key, delete_key, other_delete_key)

    return asyncio.run(populate())


@pytest.fixture
def client(settings, fake_store, seed):
    app = create_app(settings, store=fake_store, run_background_tasks=False)
    with TestClient(app) as test_client:
        yield test_client


def _headers(key: str) -> dict:
    return {"X-API-Key": key}


def _queued_events(settings) -> list:
    async def fetch() -> list:
        database = Database(settings.database_url)
        await database.connect()
        try:
            rows = await database.fetch_all(webhook_deliveries.select())
        finally:
            await database.disconnect()
        return [row["event_type"] for row in rows]

    return asyncio.run(fetch())


def _upload(client, key, filename="clip.mp4", size=1024, **extra):
    body = {"filename": filename, "size": size, **extra}
    response = client.post("/api/v1/upload", json=body, headers=_headers(key))
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoints:
    """Tests for the unauthenticated health routes."""

    def test_liveness(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "ok"}

    def test_worker_health_idle(self, client):
        response = client.get("/api/health/worker")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["pendingJobs"] == 0
        assert body["worker"]["isActive"] is False

    def test_request_id_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        assert client.get("/api/health").headers.get("X-Request-ID")


class TestAuthentication:
    """Tests for API key enforcement."""

    def test_missing_key(self, client):
        response = client.get("/api/v1/media")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or missing API key"

    def test_unknown_key(self, client):
        response = client.get("/api/v1/media", headers=_headers("av_" + "0" * 64))
        assert response.status_code == 401

    def test_bearer_header(self, client, seed):
        response = client.get("/api/v1/media", headers={"Authorization": f"Bearer {seed.read_key}"})
        assert response.status_code == 200

    def test_read_only_key_cannot_upload(self, client, seed):
        response = client.post(
            "/api/v1/upload", json={"filename": "clip.mp4", "size": 10}, headers=_headers(seed.read_key)
        )

        assert response.status_code == 403
        assert "write" in response.json()["detail"]

    def test_read_only_key_cannot_manage_webhooks(self, client, seed):
        assert client.get("/api/v1/webhooks", headers=_headers(seed.read_key)).status_code == 403


class TestUploadFlow:
    """Tests for begin, complete and read back."""

    def test_begin_upload(self, client, seed):
        body = _upload(client, seed.write_key, metadata={"campaign": "spring"})

        assert body["type"] == "video"
        assert body["uploadUrl"].startswith("https://storage.example.com/users/")
        assert body["expiresIn"] == 3600
        assert body["metadata"] == {"campaign": "spring"}

    def test_complete_video(self, client, seed):
        upload = _upload(client, seed.write_key)

        response = client.post("/api/v1/upload/complete", json={"id": upload["id"]}, headers=_headers(seed.write_key))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        assert body["transcriptionStatus"] == "pending"
        assert body["mimeType"] == "video/mp4"

        health = client.get("/api/health/worker").json()
        assert health["pendingJobs"] == 1

    def test_complete_image_is_ready(self, client, seed):
        upload = _upload(client, seed.write_key, filename="photo.png")

        response = client.post("/api/v1/upload/complete", json={"id": upload["id"]}, headers=_headers(seed.write_key))

        assert response.json()["status"] == "ready"

    def test_complete_twice(self, client, seed):
        upload = _upload(client, seed.write_key)
        headers = _headers(seed.write_key)
        client.post("/api/v1/upload/complete", json={"id": upload["id"]}, headers=headers)

        response = client.post("/api/v1/upload/complete", json={"id": upload["id"]}, headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Media is not in uploading state"

    def test_invalid_body_is_400(self, client, seed):
        body = {"filename": "clip.mp4", "size": 0}
        response = client.post("/api/v1/upload", json=body, headers=_headers(seed.write_key))
        assert response.status_code == 400

    def test_tier_limit_is_400(self, client, seed):
        response = client.post(
            "/api/v1/upload",
            json={"filename": "clip.mp4", "size": 600 * 1024 * 1024},
            headers=_headers(seed.write_key),
        )

        assert response.status_code == 400
        assert "free tier" in response.json()["detail"]


class TestMediaReads:
    """Tests for listing and fetching media."""

    def test_list_and_filter(self, client, seed):
        _upload(client, seed.write_key, filename="clip.mp4")
        _upload(client, seed.write_key, filename="photo.png")
        headers = _headers(seed.read_key)

        everything = client.get("/api/v1/media", headers=headers).json()
        images = client.get("/api/v1/media", params={"type": "image"}, headers=headers).json()

        assert len(everything["media"]) == 2
        assert everything["limit"] == 50
        assert [m["type"] for m in images["media"]] == ["image"]

    def test_limit_out_of_range(self, client, seed):
        response = client.get("/api/v1/media", params={"limit": 500}, headers=_headers(seed.read_key))
        assert response.status_code == 400

    def test_detail(self, client, seed):
        upload = _upload(client, seed.write_key, title="Launch video")

        response = client.get(f"/api/v1/media/{upload['id']}", headers=_headers(seed.read_key))

        assert response.status_code == 200
        body = response.json()
        assert body["title"] == "Launch video"
        assert body["status"] == "uploading"
        assert body["transcriptSegments"] == []
        assert body["hlsUrl"] is None

    def test_other_owner_gets_404(self, client, seed):
        upload = _upload(client, seed.write_key)

        response = client.get(f"/api/v1/media/{upload['id']}", headers=_headers(seed.other_key))

        assert response.status_code == 404
        assert response.json()["detail"] == "Media not found"


class TestMediaDelete:
    """Tests for DELETE /api/v1/media/{id}."""

    def _ready_image(self, client, seed):
        upload = _upload(client, seed.write_key, filename="photo.png")
        client.post("/api/v1/upload/complete", json={"id": upload["id"]}, headers=_headers(seed.write_key))
        return upload["id"]

    def test_requires_delete_scope(self, client, seed):
        asset_id = self._ready_image(client, seed)

        response = client.delete(f"/api/v1/media/{asset_id}", headers=_headers(seed.write_key))

        assert response.status_code == 403
        assert "delete" in response.json()["detail"]
        assert client.get(f"/api/v1/media/{asset_id}", headers=_headers(seed.read_key)).status_code == 200

    def test_delete_removes_asset_and_emits_event(self, client, seed, settings):
        client.post(
            "/api/v1/webhooks",
            json={"name": "main", "url": "https://hooks.example.com/in", "events": ["media.deleted"]},
            headers=_headers(seed.write_key),
        )
        asset_id = self._ready_image(client, seed)

        response = client.delete(f"/api/v1/media/{asset_id}", headers=_headers(seed.delete_key))

        assert response.status_code == 204
        assert client.get(f"/api/v1/media/{asset_id}", headers=_headers(seed.read_key)).status_code == 404
        assert _queued_events(settings) == ["media.deleted"]

    def test_other_owner_gets_404(self, client, seed):
        asset_id = self._ready_image(client, seed)

        response = client.delete(f"/api/v1/media/{asset_id}", headers=_headers(seed.other_delete_key))

        assert response.status_code == 404
        assert client.get(f"/api/v1/media/{asset_id}", headers=_headers(seed.read_key)).status_code == 200


class TestWebhookEndpoints:
    """Tests for webhook management routes."""

    def _create(self, client, key, **overrides):
        body = {"name": "main", "url": "https://hooks.example.com/in", "events": ["media.ready"], **overrides}
        return client.post("/api/v1/webhooks", json=body, headers=_headers(key))

    def test_create_returns_secret_once(self, client, seed):
        created = self._create(client, seed.write_key)

        assert created.status_code == 201
        body = created.json()
        assert body["secret"].startswith("whsec_")
        assert body["failureCount"] == 0
        assert body["active"] is True

        listed = client.get("/api/v1/webhooks", headers=_headers(seed.write_key)).json()
        assert [w["id"] for w in listed] == [body["id"]]
        assert "secret" not in listed[0]

    def test_invalid_event(self, client, seed):
        assert self._create(client, seed.write_key, events=["media.exploded"]).status_code == 400

    def test_invalid_url(self, client, seed):
        assert self._create(client, seed.write_key, url="ftp://hooks.example.com").status_code == 400

    def test_update(self, client, seed):
        webhook_id = self._create(client, seed.write_key).json()["id"]

        response = client.patch(
            f"/api/v1/webhooks/{webhook_id}",
            json={"active": False, "events": ["media.ready", "media.failed"]},
            headers=_headers(seed.write_key),
        )

        assert response.status_code == 200
        assert response.json()["active"] is False
        assert response.json()["events"] == ["media.ready", "media.failed"]

    def test_delete(self, client, seed):
        webhook_id = self._create(client, seed.write_key).json()["id"]
        headers = _headers(seed.write_key)

        assert client.delete(f"/api/v1/webhooks/{webhook_id}", headers=headers).status_code == 204
        assert client.get("/api/v1/webhooks", headers=headers).json() == []
        assert client.delete(f"/api/v1/webhooks/{webhook_id}", headers=headers).status_code == 404

    def test_scoped_to_owner(self, client, seed):
        webhook_id = self._create(client, seed.write_key).json()["id"]

        response = client.delete(f"/api/v1/webhooks/{webhook_id}", headers=_headers(seed.other_key))

        assert response.status_code == 404
        assert client.get("/api/v1/webhooks", headers=_headers(seed.other_key)).json() == []
