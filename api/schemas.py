from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.enums import WEBHOOK_EVENT_TYPES

MAX_METADATA_KEYS = 50


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names on the wire."""

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Upload
# =============================================================================


class UploadRequest(CamelModel):
    filename: str = Field(..., min_length=1, max_length=1024)
    size: int = Field(..., gt=0)
    mime_type: Optional[str] = Field(default=None, alias="mimeType", max_length=255)
    title: Optional[str] = Field(default=None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v is not None and len(v) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata may have at most {MAX_METADATA_KEYS} keys")
        return v


class UploadResponse(CamelModel):
    id: str
    type: str
    upload_url: str = Field(..., alias="uploadUrl")
    expires_in: int = Field(..., alias="expiresIn")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UploadCompleteRequest(BaseModel):
    id: str = Field(..., min_length=1)


# =============================================================================
# Media
# =============================================================================


class TranscriptSegmentResponse(BaseModel):
    start: float
    end: float
    text: str


class MediaResponse(CamelModel):
    id: str
    type: str
    title: str
    status: str
    mime_type: str = Field(..., alias="mimeType")
    size: int
    original_filename: str = Field(..., alias="originalFilename")
    hls_url: Optional[str] = Field(default=None, alias="hlsUrl")
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailUrl")
    duration: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    transcription_status: str = Field(..., alias="transcriptionStatus")
    transcript_language: Optional[str] = Field(default=None, alias="transcriptLanguage")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    uploaded_at: Optional[datetime] = Field(default=None, alias="uploadedAt")
    processed_at: Optional[datetime] = Field(default=None, alias="processedAt")


class MediaDetailResponse(MediaResponse):
    transcript_text: Optional[str] = Field(default=None, alias="transcriptText")
    transcript_vtt: Optional[str] = Field(default=None, alias="transcriptVtt")
    transcript_segments: List[TranscriptSegmentResponse] = Field(default_factory=list, alias="transcriptSegments")


class MediaListResponse(BaseModel):
    media: List[MediaResponse]
    limit: int
    offset: int


# =============================================================================
# Webhooks
# =============================================================================


def _check_events(events: List[str]) -> List[str]:
    invalid = [e for e in events if e not in WEBHOOK_EVENT_TYPES]
    if invalid:
        raise ValueError(f"Invalid event types: {', '.join(invalid)}")
    return events


class WebhookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    url: str = Field(..., min_length=1, max_length=2048)
    events: List[str] = Field(..., min_length=1)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: List[str]) -> List[str]:
        return _check_events(v)


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    url: Optional[str] = Field(default=None, min_length=1, max_length=2048)
    events: Optional[List[str]] = Field(default=None, min_length=1)
    active: Optional[bool] = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _check_events(v) if v is not None else v


class WebhookResponse(CamelModel):
    id: str
    name: str
    url: str
    events: List[str]
    active: bool
    failure_count: int = Field(..., alias="failureCount")
    last_triggered_at: Optional[datetime] = Field(default=None, alias="lastTriggeredAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class WebhookCreatedResponse(WebhookResponse):
    """Returned once on creation; the only response that carries the secret."""

    secret: str
