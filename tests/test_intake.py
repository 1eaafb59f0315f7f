"""
Tests for upload intake.

Covers filename sanitization, mime and kind detection, tier and quota
checks, and the two-step begin/complete flow against a real database.
"""

from unittest.mock import AsyncMock

import pytest

from api import assets as asset_store
from api import webhook_service
from api.database import webhook_deliveries
from api.errors import NotFoundError, QuotaExceededError, ValidationError
from api.intake import (
    MediaIntake,
    create_account,
    detect_media_kind,
    format_bytes,
    get_account,
    guess_mime_type,
    sanitize_filename,
    validate_file,
)


@pytest.fixture
def intake(test_database, fake_store, queue, dispatcher) -> MediaIntake:
    return MediaIntake(test_database, fake_store, queue, dispatcher)


class TestSanitizeFilename:
    """Tests for sanitize_filename()."""

    def test_plain_name_unchanged(self):
        assert sanitize_filename("holiday.mp4") == "holiday.mp4"

    def test_path_traversal_removed(self):
        result = sanitize_filename("../../etc/passwd")
        assert ".." not in result
        assert "/" not in result

    def test_backslashes_replaced(self):
        assert "\\" not in sanitize_filename("C:\\videos\\clip.mp4")

    def test_dangerous_characters_replaced(self):
        assert sanitize_filename('a<b>c|d?.mp4') == "a_b_c_d_.mp4"

    def test_control_characters_removed(self):
        assert sanitize_filename("cl\x00ip\x07.mp4") == "clip.mp4"

    @pytest.mark.parametrize("name", ["", "...", "   ", "/"])
    def test_degenerate_names(self, name):
        assert sanitize_filename(name) == "unnamed"

    def test_long_name_keeps_extension(self):
        result = sanitize_filename("a" * 500 + ".mp4")
        assert len(result) <= 200
        assert result.endswith(".mp4")


class TestDetection:
    """Tests for mime type and media kind detection."""

    @pytest.mark.parametrize(
        "filename,mime",
        [
            ("clip.MP4", "video/mp4"),
            ("clip.mov", "video/quicktime"),
            ("photo.jpeg", "image/jpeg"),
            ("song.mp3", "audio/mpeg"),
            ("report.pdf", "application/pdf"),
            ("archive.xyz", "application/octet-stream"),
            ("noextension", "application/octet-stream"),
        ],
    )
    def test_guess_mime_type(self, filename, mime):
        assert guess_mime_type(filename) == mime

    @pytest.mark.parametrize(
        "mime,kind",
        [
            ("video/mp4", "video"),
            ("image/png", "image"),
            ("audio/wav", "audio"),
            ("application/pdf", "file"),
        ],
    )
    def test_detect_media_kind(self, mime, kind):
        assert detect_media_kind(mime) == kind


class TestValidateFile:
    """Tests for tier size limits."""

    def test_format_bytes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(500 * 1024 * 1024) == "500 MB"
        assert format_bytes(2 * 1024 * 1024 * 1024) == "2 GB"

    def test_within_free_limit(self):
        assert validate_file("clip.mp4", 100 * 1024 * 1024, "free") == "clip.mp4"

    def test_over_free_limit(self):
        with pytest.raises(ValidationError, match="exceeds maximum 500 MB for free tier"):
            validate_file("clip.mp4", 600 * 1024 * 1024, "free")

    def test_higher_tier_allows_more(self):
        assert validate_file("clip.mp4", 600 * 1024 * 1024, "pro") == "clip.mp4"


class TestAccounts:
    """Tests for account creation."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, test_database):
        account = await create_account(test_database, " Owner@Example.COM ", tier="pro")

        stored = await get_account(test_database, account.id)
        assert stored.email == "owner@example.com"
        assert stored.tier == "pro"
        assert stored.storage_used_bytes == 0

    @pytest.mark.asyncio
    async def test_unknown_tier(self, test_database):
        with pytest.raises(ValidationError):
            await create_account(test_database, "a@example.com", tier="platinum")


class TestBeginUpload:
    """Tests for MediaIntake.begin_upload()."""

    @pytest.mark.asyncio
    async def test_creates_uploading_asset(self, intake, test_database, sample_account):
        ticket = await intake.begin_upload(
            sample_account.id, "My Clip.mp4", 1024, title="My clip", metadata={"campaign": "spring"}
        )

        asset = await asset_store.get_asset(test_database, ticket.asset.id, sample_account.id)
        assert asset.status == "uploading"
        assert asset.media_kind == "video"
        assert asset.mime_type == "video/mp4"
        assert asset.title == "My clip"
        assert asset.custom_metadata == {"campaign": "spring"}
        assert asset.original_key == f"users/{sample_account.id}/originals/{asset.id}/My Clip.mp4"
        assert ticket.upload_url.startswith("https://storage.example.com/users/")
        assert ticket.expires_in == 3600

    @pytest.mark.asyncio
    async def test_explicit_mime_type_wins(self, intake, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "blob.bin", 10, mime_type="audio/ogg")
        assert ticket.asset.media_kind == "audio"

    @pytest.mark.asyncio
    async def test_emits_uploaded_event(self, intake, test_database, sample_account):
        await webhook_service.create_webhook(
            test_database, sample_account.id, "main", "https://hooks.example.com", ["media.uploaded"]
        )

        await intake.begin_upload(sample_account.id, "clip.mp4", 1024)

        rows = await test_database.fetch_all(webhook_deliveries.select())
        assert [r["event_type"] for r in rows] == ["media.uploaded"]

    @pytest.mark.asyncio
    async def test_tier_limit(self, intake, sample_account):
        with pytest.raises(ValidationError, match="free tier"):
            await intake.begin_upload(sample_account.id, "huge.mp4", 501 * 1024 * 1024)

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, test_database, fake_store, queue, dispatcher):
        account = await create_account(test_database, "small@example.com", storage_limit_bytes=1000)
        intake = MediaIntake(test_database, fake_store, queue, dispatcher)

        with pytest.raises(QuotaExceededError):
            await intake.begin_upload(account.id, "clip.mp4", 1001)

    @pytest.mark.asyncio
    async def test_unknown_owner(self, intake):
        with pytest.raises(NotFoundError):
            await intake.begin_upload("no-such-owner", "clip.mp4", 10)

    @pytest.mark.asyncio
    async def test_missing_fields(self, intake, sample_account):
        with pytest.raises(ValidationError):
            await intake.begin_upload(sample_account.id, "", 10)
        with pytest.raises(ValidationError):
            await intake.begin_upload(sample_account.id, "clip.mp4", 0)


class TestCompleteUpload:
    """Tests for MediaIntake.complete_upload()."""

    @pytest.mark.asyncio
    async def test_video_goes_to_processing_with_job(self, intake, test_database, queue, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "clip.mp4", 2048)

        asset = await intake.complete_upload(sample_account.id, ticket.asset.id)

        assert asset.status == "processing"
        assert asset.transcription_status == "pending"
        assert asset.uploaded_at is not None
        job = await queue.get_for_asset(asset.id)
        assert job.status == "pending"
        account = await get_account(test_database, sample_account.id)
        assert account.storage_used_bytes == 2048

    @pytest.mark.asyncio
    async def test_image_is_ready_immediately(self, intake, queue, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "photo.png", 512)

        asset = await intake.complete_upload(sample_account.id, ticket.asset.id)

        assert asset.status == "ready"
        assert asset.processed_at is not None
        assert await queue.get_for_asset(asset.id) is None

    @pytest.mark.asyncio
    async def test_events(self, intake, test_database, sample_account):
        await webhook_service.create_webhook(
            test_database,
            sample_account.id,
            "main",
            "https://hooks.example.com",
            ["media.processing", "media.ready"],
        )
        video = await intake.begin_upload(sample_account.id, "clip.mp4", 10)
        doc = await intake.begin_upload(sample_account.id, "notes.pdf", 10)

        await intake.complete_upload(sample_account.id, video.asset.id)
        await intake.complete_upload(sample_account.id, doc.asset.id)

        rows = await test_database.fetch_all(webhook_deliveries.select())
        assert sorted(r["event_type"] for r in rows) == ["media.processing", "media.ready"]

    @pytest.mark.asyncio
    async def test_complete_twice_rejected(self, intake, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "clip.mp4", 10)
        await intake.complete_upload(sample_account.id, ticket.asset.id)

        with pytest.raises(ValidationError, match="not in uploading state"):
            await intake.complete_upload(sample_account.id, ticket.asset.id)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_complete(self, intake, test_database, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "clip.mp4", 10)
        other = await create_account(test_database, "other@example.com")

        with pytest.raises(NotFoundError):
            await intake.complete_upload(other.id, ticket.asset.id)

    @pytest.mark.asyncio
    async def test_enqueue_failure_rolls_back(self, intake, test_database, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "clip.mp4", 2048)
        intake.queue.enqueue = AsyncMock(side_effect=RuntimeError("insert failed"))

        with pytest.raises(RuntimeError):
            await intake.complete_upload(sample_account.id, ticket.asset.id)

        stored = await asset_store.get_asset(test_database, ticket.asset.id)
        assert stored.status == "uploading"
        assert stored.uploaded_at is None
        account = await get_account(test_database, sample_account.id)
        assert account.storage_used_bytes == 0


class TestDeleteMedia:
    """Tests for MediaIntake.delete_media()."""

    @pytest.mark.asyncio
    async def test_removes_asset_and_frees_storage(self, intake, test_database, sample_account):
        await webhook_service.create_webhook(
            test_database, sample_account.id, "main", "https://hooks.example.com", ["media.deleted"]
        )
        ticket = await intake.begin_upload(sample_account.id, "photo.png", 512)
        await intake.complete_upload(sample_account.id, ticket.asset.id)

        await intake.delete_media(sample_account.id, ticket.asset.id)

        with pytest.raises(NotFoundError):
            await asset_store.get_asset(test_database, ticket.asset.id)
        account = await get_account(test_database, sample_account.id)
        assert account.storage_used_bytes == 0
        rows = await test_database.fetch_all(webhook_deliveries.select())
        assert [r["event_type"] for r in rows] == ["media.deleted"]

    @pytest.mark.asyncio
    async def test_removes_pending_job(self, intake, queue, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "clip.mp4", 10)
        await intake.complete_upload(sample_account.id, ticket.asset.id)

        await intake.delete_media(sample_account.id, ticket.asset.id)

        assert await queue.get_for_asset(ticket.asset.id) is None
        assert await queue.claim("w1") is None

    @pytest.mark.asyncio
    async def test_never_uploaded_does_not_touch_storage(self, intake, test_database, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "clip.mp4", 10)

        await intake.delete_media(sample_account.id, ticket.asset.id)

        account = await get_account(test_database, sample_account.id)
        assert account.storage_used_bytes == 0

    @pytest.mark.asyncio
    async def test_other_owner_gets_not_found(self, intake, test_database, sample_account):
        ticket = await intake.begin_upload(sample_account.id, "photo.png", 10)
        other = await create_account(test_database, "other@example.com")

        with pytest.raises(NotFoundError):
            await intake.delete_media(other.id, ticket.asset.id)
        assert (await asset_store.get_asset(test_database, ticket.asset.id)).id == ticket.asset.id

    @pytest.mark.asyncio
    async def test_notify_deleted(self, intake, test_database, sample_account):
        await webhook_service.create_webhook(
            test_database, sample_account.id, "main", "https://hooks.example.com", ["media.deleted"]
        )

        assert await intake.notify_deleted(sample_account.id, "asset-1") == 1
