"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class AssetStatus(str, Enum):
    """Lifecycle of an uploaded media asset."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class MediaKind(str, Enum):
    """Kind of media, detected from the mime type at intake."""

    VIDEO = "video"
    IMAGE = "image"
    AUDIO = "audio"
    FILE = "file"


class JobStatus(str, Enum):
    """Status values for transcode jobs."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TranscriptionStatus(str, Enum):
    """Status values for transcription processing."""

    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Engine declined (no credentials, audio too large)


class WebhookEvent(str, Enum):
    """Events a webhook can subscribe to."""

    MEDIA_UPLOADED = "media.uploaded"
    MEDIA_PROCESSING = "media.processing"
    MEDIA_READY = "media.ready"
    MEDIA_FAILED = "media.failed"
    MEDIA_DELETED = "media.deleted"


class DeliveryStatus(str, Enum):
    """Status values for webhook outbox rows."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Permission(str, Enum):
    """API key permission scope."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"


WEBHOOK_EVENT_TYPES = frozenset(e.value for e in WebhookEvent)
