"""
Media asset persistence.

Status changes go through transition_asset(), a conditional UPDATE whose
WHERE clause only admits statuses the asset state machine allows to reach
the target. An asset therefore never moves backwards, even when a stale
worker and the reclaimer race.
"""

import logging
from typing import Any, Dict, List, Optional

from databases import Database

from api.database import media_assets
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import AssetStatus
from api.errors import NotFoundError, sanitize_error_message
from api.job_state import previous_asset_statuses
from api.models import MediaAsset

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


async def insert_asset(database: Database, asset: MediaAsset) -> MediaAsset:
    await db_execute_with_retry(database, media_assets.insert().values(**asset.to_values()))
    return asset


async def get_asset(database: Database, asset_id: str, owner_id: Optional[str] = None) -> MediaAsset:
    """Fetch an asset, scoped to ``owner_id`` when given. Raises NotFoundError."""
    query = media_assets.select().where(media_assets.c.id == asset_id)
    if owner_id is not None:
        query = query.where(media_assets.c.owner_id == owner_id)
    row = await fetch_one_with_retry(database, query)
    if not row:
        raise NotFoundError("Media not found")
    return MediaAsset.from_row(row)


async def list_assets(
    database: Database,
    owner_id: str,
    media_kind: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> List[MediaAsset]:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    query = media_assets.select().where(media_assets.c.owner_id == owner_id)
    if media_kind:
        query = query.where(media_assets.c.media_kind == media_kind)
    if status:
        query = query.where(media_assets.c.status == status)
    query = query.order_by(media_assets.c.created_at.desc()).limit(limit).offset(offset)

    rows = await fetch_all_with_retry(database, query)
    return [MediaAsset.from_row(row) for row in rows]


async def transition_asset(
    database: Database,
    asset_id: str,
    target: str,
    values: Optional[Dict[str, Any]] = None,
) -> Optional[MediaAsset]:
    """
    Move an asset to ``target`` if its current status allows it.

    Returns the updated asset, or None if the asset was missing or already
    past the point where ``target`` is reachable.
    """
    allowed_from = previous_asset_statuses(target)
    if not allowed_from:
        return None

    query = (
        media_assets.update()
        .where(media_assets.c.id == asset_id)
        .where(media_assets.c.status.in_(sorted(allowed_from)))
        .values(status=target, **(values or {}))
        .returning(*media_assets.c)
    )
    row = await fetch_one_with_retry(database, query)
    if row is None:
        logger.debug(f"Asset {asset_id} not moved to {target} (missing or not in {sorted(allowed_from)})")
        return None
    return MediaAsset.from_row(row)


async def fail_asset(database: Database, asset_id: str, reason: str) -> Optional[MediaAsset]:
    """Mark an asset failed with a client-safe error message."""
    asset = await transition_asset(
        database,
        asset_id,
        AssetStatus.FAILED.value,
        {"error_message": sanitize_error_message(reason, context=f"asset_id={asset_id}")},
    )
    if asset is not None:
        logger.warning(f"Asset {asset_id} failed: {reason}")
    return asset


async def update_asset_fields(
    database: Database,
    asset_id: str,
    values: Dict[str, Any],
    expected_status: Optional[str] = None,
) -> bool:
    """
    Write non-status fields (e.g. transcription progress) on an asset.

    With ``expected_status`` the write only lands while the asset is still in
    that status. Returns False if it did not land.
    """
    if "status" in values:
        raise ValueError("Use transition_asset() to change asset status")
    query = media_assets.update().where(media_assets.c.id == asset_id)
    if expected_status is not None:
        query = query.where(media_assets.c.status == expected_status)
    row = await fetch_one_with_retry(database, query.values(**values).returning(media_assets.c.id))
    return row is not None
