from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

metadata = sa.MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_database(database_url: str) -> Database:
    """
    Create a Database instance - works with PostgreSQL or SQLite.
    PostgreSQL is the default and recommended database.
    """
    return Database(database_url)


# Account (owner) rows. Quota data lives on the account.
accounts = sa.Table(
    "accounts",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("email", sa.String(255), unique=True, nullable=False),
    sa.Column(
        "tier",
        sa.String(20),
        sa.CheckConstraint(
            "tier IN ('free', 'starter', 'pro', 'business', 'scale', "
            "'enterprise', 'enterprise_plus', 'ultimate')",
            name="ck_accounts_tier",
        ),
        nullable=False,
        default="free",
    ),
    sa.Column("storage_used_bytes", sa.BigInteger, nullable=False, default=0),
    sa.Column("storage_limit_bytes", sa.BigInteger, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
)

# ============================================================================
# MEDIA ASSETS
# ============================================================================
# One row per uploaded item. Status only moves forward:
#   uploading -> processing -> ready | failed   (video)
#   uploading -> ready                          (image, audio, file)
#
# Derived fields (hls_key, thumbnail_key, duration, dimensions, transcript_*)
# are written only by the worker holding the asset's transcode job.
media_assets = sa.Table(
    "media_assets",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("owner_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('uploading', 'processing', 'ready', 'failed')",
            name="ck_media_assets_status",
        ),
        nullable=False,
        default="uploading",
    ),
    sa.Column(
        "media_kind",
        sa.String(10),
        sa.CheckConstraint(
            "media_kind IN ('video', 'image', 'audio', 'file')",
            name="ck_media_assets_media_kind",
        ),
        nullable=False,
    ),
    sa.Column("mime_type", sa.String(100), nullable=False),
    sa.Column("size_bytes", sa.BigInteger, nullable=False),
    sa.Column("original_filename", sa.String(255), nullable=False),
    sa.Column("original_key", sa.String(512), nullable=False),
    sa.Column("hls_key", sa.String(512), nullable=True),
    sa.Column("thumbnail_key", sa.String(512), nullable=True),
    sa.Column("duration_seconds", sa.Integer, nullable=True),
    sa.Column("width", sa.Integer, nullable=True),
    sa.Column("height", sa.Integer, nullable=True),
    sa.Column(
        "transcription_status",
        sa.String(20),
        sa.CheckConstraint(
            "transcription_status IN ('none', 'pending', 'processing', 'completed', 'failed', 'skipped')",
            name="ck_media_assets_transcription_status",
        ),
        nullable=False,
        default="none",
    ),
    sa.Column("transcript_text", sa.Text, nullable=True),
    sa.Column("transcript_vtt", sa.Text, nullable=True),
    sa.Column("transcript_segments", sa.Text, nullable=True),  # JSON list of {start, end, text}
    sa.Column("transcript_language", sa.String(10), nullable=True),
    sa.Column("custom_metadata", sa.Text, nullable=True),  # JSON object
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_media_assets_owner_id", "owner_id"),
    sa.Index("ix_media_assets_status", "status"),
    sa.Index("ix_media_assets_created_at", "created_at"),
)

# ============================================================================
# TRANSCODE JOBS
# ============================================================================
# State machine: pending -> processing -> completed | failed
#                processing -> pending (stale reclaim, attempts remaining)
#
# - worker_id is NULL while pending and set while processing
# - updated_at doubles as the heartbeat timestamp
# - at most one non-terminal job per asset (partial unique index below)
#
# All transitions go through JobQueue.compare_and_swap(); see api/job_queue.py.
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column(
        "media_asset_id",
        sa.String(36),
        sa.ForeignKey("media_assets.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_transcode_jobs_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("priority", sa.Integer, nullable=False, default=0),
    sa.Column("worker_id", sa.String(100), nullable=True),
    sa.Column("attempt_count", sa.Integer, nullable=False, default=0),
    sa.Column(
        "progress",
        sa.Integer,
        sa.CheckConstraint(
            "progress >= 0 AND progress <= 100",
            name="ck_transcode_jobs_progress_range",
        ),
        nullable=False,
        default=0,
    ),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_transcode_jobs_status_priority", "status", "priority", "created_at"),
    sa.Index("ix_transcode_jobs_media_asset_id", "media_asset_id"),
    sa.Index(
        "uq_transcode_jobs_active_asset",
        "media_asset_id",
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    ),
)

# ============================================================================
# WEBHOOKS
# ============================================================================
webhooks = sa.Table(
    "webhooks",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("owner_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("url", sa.String(2048), nullable=False),
    sa.Column("secret", sa.String(64), nullable=False),
    sa.Column("events", sa.Text, nullable=False),  # JSON list of event types
    sa.Column("active", sa.Boolean, nullable=False, default=True),
    sa.Column("failure_count", sa.Integer, nullable=False, default=0),
    sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Index("ix_webhooks_owner_id", "owner_id"),
    sa.Index("ix_webhooks_active", "active"),
)

# Outbox: one row per (webhook, event). Consumed by the delivery worker.
webhook_deliveries = sa.Table(
    "webhook_deliveries",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("webhook_id", sa.String(36), sa.ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False),
    sa.Column("event_type", sa.String(50), nullable=False),
    sa.Column("payload", sa.Text, nullable=False),  # Serialized request body, signed as-is
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'delivered', 'failed')",
            name="ck_webhook_deliveries_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("attempt_number", sa.Integer, nullable=False, default=1),
    sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("response_status", sa.Integer, nullable=True),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("duration_ms", sa.Integer, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_webhook_deliveries_status_next", "status", "next_attempt_at"),
    sa.Index("ix_webhook_deliveries_webhook_id", "webhook_id"),
)

# ============================================================================
# API KEYS
# ============================================================================
# Keys are stored as SHA-256 hashes. Only the first 10 characters of the
# plaintext (key_prefix) are kept for display.
api_keys = sa.Table(
    "api_keys",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("owner_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("key_prefix", sa.String(10), nullable=False),
    sa.Column("key_hash", sa.String(64), unique=True, nullable=False),
    sa.Column("permissions", sa.Text, nullable=False),  # JSON {read, write, delete}
    sa.Column("rate_limit_per_minute", sa.Integer, nullable=False, default=60),
    sa.Column("active", sa.Boolean, nullable=False, default=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Index("ix_api_keys_owner_id", "owner_id"),
)


def create_tables(database_url: str):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(database_url)
    metadata.create_all(engine)
    engine.dispose()
