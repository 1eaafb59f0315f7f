"""
Typed entity records.

Each entity has exactly one place where a database row is converted into it
(``from_row``) and, for entities the pipeline writes, one place where it is
converted back into column values (``to_values``). JSON-encoded columns and
SQLite's naive datetimes are normalized here and nowhere else.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from api.common import ensure_utc

DEFAULT_PERMISSIONS = {"read": True, "write": False, "delete": False}


def _mapping(row: Any) -> Mapping[str, Any]:
    # databases.Record._mapping is a SQLAlchemy Row (no .get); the Row's own
    # _mapping is the RowMapping. Plain dicts pass through.
    mapping = getattr(row, "_mapping", row)
    mapping = getattr(mapping, "_mapping", mapping)
    return dict(mapping)


def _load_json(value: Optional[str], default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


@dataclass
class Account:
    id: str
    email: str
    tier: str
    storage_used_bytes: int
    storage_limit_bytes: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Account":
        r = _mapping(row)
        return cls(
            id=r["id"],
            email=r["email"],
            tier=r["tier"],
            storage_used_bytes=r["storage_used_bytes"] or 0,
            storage_limit_bytes=r["storage_limit_bytes"] or 0,
            created_at=ensure_utc(r.get("created_at")),
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "tier": self.tier,
            "storage_used_bytes": self.storage_used_bytes,
            "storage_limit_bytes": self.storage_limit_bytes,
            "created_at": self.created_at,
        }


@dataclass
class TranscriptSegment:
    start: float
    end: float
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}


def segments_to_json(segments: List[TranscriptSegment]) -> Optional[str]:
    """Column value for ``transcript_segments``."""
    if not segments:
        return None
    return _dump_json([s.to_dict() for s in segments])


@dataclass
class MediaAsset:
    """One uploaded item and everything derived from it."""

    id: str
    owner_id: str
    title: str
    status: str
    media_kind: str
    mime_type: str
    size_bytes: int
    original_filename: str
    original_key: str
    hls_key: Optional[str] = None
    thumbnail_key: Optional[str] = None
    duration_seconds: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    transcription_status: str = "none"
    transcript_text: Optional[str] = None
    transcript_vtt: Optional[str] = None
    transcript_segments: List[TranscriptSegment] = field(default_factory=list)
    transcript_language: Optional[str] = None
    custom_metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "MediaAsset":
        r = _mapping(row)
        segments = [
            TranscriptSegment(start=float(s["start"]), end=float(s["end"]), text=s["text"])
            for s in _load_json(r.get("transcript_segments"), [])
        ]
        return cls(
            id=r["id"],
            owner_id=r["owner_id"],
            title=r["title"],
            status=r["status"],
            media_kind=r["media_kind"],
            mime_type=r["mime_type"],
            size_bytes=r["size_bytes"],
            original_filename=r["original_filename"],
            original_key=r["original_key"],
            hls_key=r.get("hls_key"),
            thumbnail_key=r.get("thumbnail_key"),
            duration_seconds=r.get("duration_seconds"),
            width=r.get("width"),
            height=r.get("height"),
            transcription_status=r.get("transcription_status") or "none",
            transcript_text=r.get("transcript_text"),
            transcript_vtt=r.get("transcript_vtt"),
            transcript_segments=segments,
            transcript_language=r.get("transcript_language"),
            custom_metadata=_load_json(r.get("custom_metadata"), {}),
            error_message=r.get("error_message"),
            created_at=ensure_utc(r.get("created_at")),
            uploaded_at=ensure_utc(r.get("uploaded_at")),
            processed_at=ensure_utc(r.get("processed_at")),
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "status": self.status,
            "media_kind": self.media_kind,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "original_filename": self.original_filename,
            "original_key": self.original_key,
            "hls_key": self.hls_key,
            "thumbnail_key": self.thumbnail_key,
            "duration_seconds": self.duration_seconds,
            "width": self.width,
            "height": self.height,
            "transcription_status": self.transcription_status,
            "transcript_text": self.transcript_text,
            "transcript_vtt": self.transcript_vtt,
            "transcript_segments": segments_to_json(self.transcript_segments),
            "transcript_language": self.transcript_language,
            "custom_metadata": _dump_json(self.custom_metadata or {}),
            "error_message": self.error_message,
            "created_at": self.created_at,
            "uploaded_at": self.uploaded_at,
            "processed_at": self.processed_at,
        }


@dataclass
class TranscodeJob:
    id: str
    media_asset_id: str
    status: str
    priority: int
    worker_id: Optional[str]
    attempt_count: int
    progress: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "TranscodeJob":
        r = _mapping(row)
        return cls(
            id=r["id"],
            media_asset_id=r["media_asset_id"],
            status=r["status"],
            priority=r["priority"] or 0,
            worker_id=r.get("worker_id"),
            attempt_count=r["attempt_count"] or 0,
            progress=r.get("progress") or 0,
            error_message=r.get("error_message"),
            created_at=ensure_utc(r.get("created_at")),
            updated_at=ensure_utc(r.get("updated_at")),
            started_at=ensure_utc(r.get("started_at")),
            completed_at=ensure_utc(r.get("completed_at")),
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "media_asset_id": self.media_asset_id,
            "status": self.status,
            "priority": self.priority,
            "worker_id": self.worker_id,
            "attempt_count": self.attempt_count,
            "progress": self.progress,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Webhook:
    id: str
    owner_id: str
    name: str
    url: str
    secret: str
    events: List[str]
    active: bool = True
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Webhook":
        r = _mapping(row)
        return cls(
            id=r["id"],
            owner_id=r["owner_id"],
            name=r["name"],
            url=r["url"],
            secret=r["secret"],
            events=list(_load_json(r.get("events"), [])),
            active=bool(r["active"]),
            failure_count=r["failure_count"] or 0,
            last_triggered_at=ensure_utc(r.get("last_triggered_at")),
            created_at=ensure_utc(r.get("created_at")),
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "url": self.url,
            "secret": self.secret,
            "events": _dump_json(self.events),
            "active": self.active,
            "failure_count": self.failure_count,
            "last_triggered_at": self.last_triggered_at,
            "created_at": self.created_at,
        }

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.events


@dataclass
class WebhookDelivery:
    id: str
    webhook_id: str
    event_type: str
    payload: str
    status: str = "pending"
    attempt_number: int = 1
    next_attempt_at: Optional[datetime] = None
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "WebhookDelivery":
        r = _mapping(row)
        return cls(
            id=r["id"],
            webhook_id=r["webhook_id"],
            event_type=r["event_type"],
            payload=r["payload"],
            status=r["status"],
            attempt_number=r["attempt_number"] or 1,
            next_attempt_at=ensure_utc(r.get("next_attempt_at")),
            response_status=r.get("response_status"),
            error_message=r.get("error_message"),
            duration_ms=r.get("duration_ms"),
            created_at=ensure_utc(r.get("created_at")),
            delivered_at=ensure_utc(r.get("delivered_at")),
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status,
            "attempt_number": self.attempt_number,
            "next_attempt_at": self.next_attempt_at,
            "response_status": self.response_status,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at,
            "delivered_at": self.delivered_at,
        }


@dataclass
class ApiKey:
    id: str
    owner_id: str
    name: str
    key_prefix: str
    key_hash: str
    permissions: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_PERMISSIONS))
    rate_limit_per_minute: int = 60
    active: bool = True
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "ApiKey":
        r = _mapping(row)
        permissions = dict(DEFAULT_PERMISSIONS)
        permissions.update(_load_json(r.get("permissions"), {}))
        return cls(
            id=r["id"],
            owner_id=r["owner_id"],
            name=r["name"],
            key_prefix=r["key_prefix"],
            key_hash=r["key_hash"],
            permissions={k: bool(v) for k, v in permissions.items()},
            rate_limit_per_minute=r["rate_limit_per_minute"] or 60,
            active=bool(r["active"]),
            expires_at=ensure_utc(r.get("expires_at")),
            last_used_at=ensure_utc(r.get("last_used_at")),
            created_at=ensure_utc(r.get("created_at")),
        )

    def to_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "key_prefix": self.key_prefix,
            "key_hash": self.key_hash,
            "permissions": _dump_json(self.permissions),
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "active": self.active,
            "expires_at": self.expires_at,
            "last_used_at": self.last_used_at,
            "created_at": self.created_at,
        }
