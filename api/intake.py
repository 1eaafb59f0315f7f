"""
Upload intake.

Two steps, mirroring the pre-signed upload flow:

1. begin_upload(): validate the file against the owner's tier and quota,
   create the asset in ``uploading`` and hand back a pre-signed PUT URL.
2. complete_upload(): once the client has PUT the bytes, a video moves to
   ``processing`` and gets a transcode job; every other kind is ``ready``
   immediately.

delete_media() removes an owner's asset and announces it with media.deleted.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import sqlalchemy as sa
from databases import Database

from api import assets as asset_store
from api.common import new_id
from api.database import accounts, media_assets, transcode_jobs
from api.db_retry import db_execute_with_retry, fetch_one_with_retry
from api.enums import AssetStatus, MediaKind, TranscriptionStatus, WebhookEvent
from api.errors import NotFoundError, QuotaExceededError, ValidationError
from api.job_queue import JobQueue
from api.models import Account, MediaAsset
from api.storage import ObjectStore, original_key
from api.webhook_service import WebhookDispatcher
from config import DEFAULT_STORAGE_LIMIT_BYTES, MAX_FILE_SIZES

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 200

MIME_TYPES = {
    # Video
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    # Image
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    # Audio
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
    "flac": "audio/flac",
    # Documents
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_DANGEROUS_CHARS = re.compile(r'[<>:"|?*]')
_EDGE_DOTS_SPACES = re.compile(r"^[\s.]+|[\s.]+$")


def get_extension(filename: str) -> str:
    parts = filename.split(".")
    if len(parts) < 2:
        return ""
    return parts[-1].lower()


def guess_mime_type(filename: str) -> str:
    return MIME_TYPES.get(get_extension(filename), "application/octet-stream")


def detect_media_kind(mime_type: str) -> str:
    if mime_type.startswith("video/"):
        return MediaKind.VIDEO.value
    if mime_type.startswith("image/"):
        return MediaKind.IMAGE.value
    if mime_type.startswith("audio/"):
        return MediaKind.AUDIO.value
    return MediaKind.FILE.value


def sanitize_filename(filename: str) -> str:
    """
    Make an uploaded filename safe to use as the last segment of an object key.

    Removes null bytes, path traversal and control characters, replaces path
    separators and shell-hostile characters with ``_``, and caps the length
    while keeping the extension.
    """
    if not filename:
        return "unnamed"

    sanitized = filename.replace("\0", "")
    sanitized = sanitized.replace("../", "").replace("..", "")
    sanitized = _EDGE_DOTS_SPACES.sub("", sanitized)
    sanitized = re.sub(r"[/\\]", "_", sanitized)
    sanitized = _CONTROL_CHARS.sub("", sanitized)
    sanitized = _DANGEROUS_CHARS.sub("_", sanitized)
    sanitized = re.sub(r"_+", "_", sanitized)

    if len(sanitized) > MAX_FILENAME_LENGTH:
        ext = get_extension(sanitized)
        name = sanitized[: MAX_FILENAME_LENGTH - len(ext) - 1]
        sanitized = f"{name}.{ext}" if ext else name

    if not sanitized or sanitized == "_":
        return "unnamed"
    return sanitized


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{round(value, 1):g} {unit}"
        value /= 1024
    return f"{size} B"


def get_max_file_size(tier: str) -> int:
    return MAX_FILE_SIZES.get(tier, MAX_FILE_SIZES["free"])


def validate_file(filename: str, size: int, tier: str = "free") -> str:
    """Check the size against the tier limit. Returns the sanitized filename."""
    max_size = get_max_file_size(tier)
    if size > max_size:
        raise ValidationError(
            f"File size {format_bytes(size)} exceeds maximum {format_bytes(max_size)} for {tier} tier"
        )
    return sanitize_filename(filename)


# =============================================================================
# Accounts
# =============================================================================


async def create_account(
    database: Database,
    email: str,
    tier: str = "free",
    storage_limit_bytes: Optional[int] = None,
) -> Account:
    if tier not in MAX_FILE_SIZES:
        raise ValidationError(f"Unknown tier: {tier}")
    account = Account(
        id=new_id(),
        email=email.strip().lower(),
        tier=tier,
        storage_used_bytes=0,
        storage_limit_bytes=storage_limit_bytes if storage_limit_bytes is not None else DEFAULT_STORAGE_LIMIT_BYTES,
        created_at=datetime.now(timezone.utc),
    )
    await db_execute_with_retry(database, accounts.insert().values(**account.to_values()))
    logger.info(f"Created account {account.id} ({account.email}, tier={tier})")
    return account


async def get_account(database: Database, account_id: str) -> Account:
    row = await fetch_one_with_retry(database, accounts.select().where(accounts.c.id == account_id))
    if not row:
        raise NotFoundError("Account not found")
    return Account.from_row(row)


# =============================================================================
# Upload flow
# =============================================================================


@dataclass
class UploadTicket:
    asset: MediaAsset
    upload_url: str
    expires_in: int


class MediaIntake:
    """Creates assets from uploads and hands videos to the job queue."""

    def __init__(
        self,
        database: Database,
        store: ObjectStore,
        queue: JobQueue,
        dispatcher: WebhookDispatcher,
    ) -> None:
        self.database = database
        self.store = store
        self.queue = queue
        self.dispatcher = dispatcher

    async def begin_upload(
        self,
        owner_id: str,
        filename: str,
        size: int,
        mime_type: Optional[str] = None,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UploadTicket:
        if not filename or not size or size <= 0:
            raise ValidationError("Missing required fields: filename, size")

        mime_type = mime_type or guess_mime_type(filename)
        media_kind = detect_media_kind(mime_type)

        account = await get_account(self.database, owner_id)
        safe_name = validate_file(filename, size, account.tier)

        if account.storage_used_bytes + size > account.storage_limit_bytes:
            raise QuotaExceededError("Storage limit exceeded. Upgrade your plan for more storage.")

        asset_id = new_id()
        key = original_key(owner_id, asset_id, safe_name)
        asset = MediaAsset(
            id=asset_id,
            owner_id=owner_id,
            title=(title or safe_name)[:255],
            status=AssetStatus.UPLOADING.value,
            media_kind=media_kind,
            mime_type=mime_type,
            size_bytes=size,
            original_filename=safe_name,
            original_key=key,
            transcription_status=TranscriptionStatus.NONE.value,
            custom_metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
        await asset_store.insert_asset(self.database, asset)

        upload_url = self.store.presigned_upload_url(key, mime_type)
        logger.info(f"Upload started for asset {asset_id} ({media_kind}, {format_bytes(size)})")

        await self.dispatcher.dispatch(
            owner_id,
            WebhookEvent.MEDIA_UPLOADED.value,
            {"id": asset_id, "type": media_kind, "title": asset.title, "size": size, "metadata": asset.custom_metadata},
        )
        return UploadTicket(asset=asset, upload_url=upload_url, expires_in=self.store.upload_url_expires)

    async def complete_upload(self, owner_id: str, asset_id: str) -> MediaAsset:
        """Mark the bytes as uploaded and start processing where the kind needs it."""
        if not asset_id:
            raise ValidationError("Missing required field: id")

        asset = await asset_store.get_asset(self.database, asset_id, owner_id)
        if asset.status != AssetStatus.UPLOADING.value:
            raise ValidationError("Media is not in uploading state")

        now = datetime.now(timezone.utc)
        # Status change, job and storage accounting land together or not at all
        async with self.database.transaction():
            if asset.media_kind == MediaKind.VIDEO.value:
                updated = await asset_store.transition_asset(
                    self.database,
                    asset_id,
                    AssetStatus.PROCESSING.value,
                    {"uploaded_at": now, "transcription_status": TranscriptionStatus.PENDING.value},
                )
                if updated is None:
                    raise ValidationError("Media is not in uploading state")
                await self.queue.enqueue(asset_id, priority=0)
                event = WebhookEvent.MEDIA_PROCESSING.value
            else:
                updated = await asset_store.transition_asset(
                    self.database,
                    asset_id,
                    AssetStatus.READY.value,
                    {"uploaded_at": now, "processed_at": now},
                )
                if updated is None:
                    raise ValidationError("Media is not in uploading state")
                event = WebhookEvent.MEDIA_READY.value

            await db_execute_with_retry(
                self.database,
                accounts.update()
                .where(accounts.c.id == owner_id)
                .values(storage_used_bytes=accounts.c.storage_used_bytes + asset.size_bytes),
            )

        logger.info(f"Upload complete for asset {asset_id}, now {updated.status}")
        await self.dispatcher.dispatch(
            owner_id,
            event,
            {"id": asset_id, "type": updated.media_kind, "status": updated.status, "metadata": updated.custom_metadata},
        )
        return updated

    async def delete_media(self, owner_id: str, asset_id: str) -> MediaAsset:
        """
        Remove an asset and its jobs on behalf of its owner, then emit media.deleted.

        A worker still holding a job for the asset loses its claim on the next
        heartbeat and abandons it. Stored objects are left to the bucket's
        lifecycle rules.
        """
        asset = await asset_store.get_asset(self.database, asset_id, owner_id)

        async with self.database.transaction():
            await db_execute_with_retry(
                self.database, transcode_jobs.delete().where(transcode_jobs.c.media_asset_id == asset_id)
            )
            await db_execute_with_retry(self.database, media_assets.delete().where(media_assets.c.id == asset_id))
            if asset.uploaded_at is not None:
                remaining = accounts.c.storage_used_bytes - asset.size_bytes
                await db_execute_with_retry(
                    self.database,
                    accounts.update()
                    .where(accounts.c.id == owner_id)
                    .values(storage_used_bytes=sa.case((remaining < 0, 0), else_=remaining)),
                )

        logger.info(f"Deleted asset {asset_id} for owner {owner_id}")
        await self.notify_deleted(owner_id, asset_id, {"type": asset.media_kind, "title": asset.title})
        return asset

    async def notify_deleted(self, owner_id: str, asset_id: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Emit media.deleted for an asset that no longer exists."""
        payload = {"id": asset_id, **(data or {})}
        return await self.dispatcher.dispatch(owner_id, WebhookEvent.MEDIA_DELETED.value, payload)
