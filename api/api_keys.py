"""API key authentication for the public pipeline endpoints."""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from databases import Database
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from api.common import get_real_ip, new_id
from api.database import api_keys
from api.db_retry import fetch_all_with_retry, fetch_one_with_retry, db_execute_with_retry
from api.enums import Permission
from api.errors import AuthError, NotFoundError, PermissionDeniedError, ValidationError
from api.models import DEFAULT_PERMISSIONS, ApiKey

# Security event logger - separate from regular application logging
# Configure with appropriate handlers for security monitoring/SIEM integration
security_logger = logging.getLogger("security.auth")

logger = logging.getLogger(__name__)

KEY_PREFIX = "av_"
KEY_PREFIX_LENGTH = 10

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
authorization_header = APIKeyHeader(name="Authorization", auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Who is calling and what they may do."""

    owner_id: str
    key_id: str
    permissions: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_PERMISSIONS))
    rate_limit_per_minute: int = 60

    def has_permission(self, permission: str) -> bool:
        return bool(self.permissions.get(permission, False))


def generate_api_key() -> str:
    """Generate a plaintext key: ``av_`` followed by 64 hex characters."""
    return KEY_PREFIX + secrets.token_hex(32)


def hash_api_key(key: str) -> str:
    """Hash an API key using SHA-256."""
    return hashlib.sha256(key.encode()).hexdigest()


def get_key_prefix(key: str) -> str:
    """Get the first 10 characters of an API key for display and logging."""
    return key[:KEY_PREFIX_LENGTH]


def extract_credential(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Pick the presented key from X-API-Key, falling back to ``Authorization: Bearer``."""
    if x_api_key:
        return x_api_key.strip() or None
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


def _get_request_context(request: Optional[Request]) -> dict:
    """Extract security-relevant context from request for logging."""
    if request is None:
        return {"ip_address": "unknown", "user_agent": "unknown"}

    settings = getattr(request.app.state, "settings", None)
    trusted = settings.trusted_proxies if settings is not None else frozenset()
    return {
        "ip_address": get_real_ip(request, trusted),
        "user_agent": request.headers.get("user-agent", "unknown"),
    }


async def authenticate(
    database: Database,
    credential: Optional[str],
    request: Optional[Request] = None,
) -> Optional[AuthContext]:
    """
    Resolve a presented key to an AuthContext.

    Returns None for a missing, unknown, inactive or expired key. Callers get
    the same answer in every case so the response never reveals whether a key
    exists.
    """
    ctx = _get_request_context(request)

    if not credential:
        security_logger.warning(
            "Authentication failed: missing API key",
            extra={"event": "auth_failure", "reason": "missing_key", **ctx},
        )
        return None

    prefix = get_key_prefix(credential)
    key_hash = hash_api_key(credential)

    row = await fetch_one_with_retry(database, api_keys.select().where(api_keys.c.key_hash == key_hash))
    if not row:
        security_logger.warning(
            "Authentication failed: invalid API key",
            extra={"event": "auth_failure", "reason": "invalid_key", "key_prefix": prefix, **ctx},
        )
        return None

    key = ApiKey.from_row(row)

    # Use timing-safe comparison to prevent timing attacks on the hash
    if not hmac.compare_digest(key_hash, key.key_hash):
        security_logger.warning(
            "Authentication failed: key hash mismatch",
            extra={"event": "auth_failure", "reason": "hash_mismatch", "key_prefix": prefix, **ctx},
        )
        return None

    if not key.active:
        security_logger.warning(
            "Authentication failed: revoked API key",
            extra={"event": "auth_failure", "reason": "inactive_key", "key_prefix": prefix, **ctx},
        )
        return None

    now = datetime.now(timezone.utc)
    if key.expires_at is not None and key.expires_at <= now:
        security_logger.warning(
            "Authentication failed: expired API key",
            extra={
                "event": "auth_failure",
                "reason": "expired_key",
                "key_prefix": prefix,
                "expired_at": key.expires_at.isoformat(),
                **ctx,
            },
        )
        return None

    try:
        await database.execute(api_keys.update().where(api_keys.c.id == key.id).values(last_used_at=now))
    except Exception as e:
        # last_used tracking is non-critical
        logger.debug(f"Failed to update last_used_at for API key {prefix}: {e}")

    security_logger.info(
        "Authentication successful",
        extra={"event": "auth_success", "key_prefix": prefix, "owner_id": key.owner_id, **ctx},
    )

    return AuthContext(
        owner_id=key.owner_id,
        key_id=key.id,
        permissions=dict(key.permissions),
        rate_limit_per_minute=key.rate_limit_per_minute,
    )


def require_permission(permission: str) -> Callable:
    """
    FastAPI dependency factory gating an endpoint on a key permission.

    Raises AuthError (401) without a valid key, PermissionDeniedError (403)
    when the key lacks the scope, and HTTP 429 when the key's per-minute
    budget is spent.
    """
    Permission(permission)

    async def dependency(
        request: Request,
        x_api_key: Optional[str] = Security(api_key_header),
        authorization: Optional[str] = Security(authorization_header),
    ) -> AuthContext:
        credential = extract_credential(x_api_key, authorization)
        auth = await authenticate(request.app.state.database, credential, request)
        if auth is None:
            raise AuthError("Invalid or missing API key")

        if not auth.has_permission(permission):
            security_logger.warning(
                "Authorization failed: missing permission",
                extra={
                    "event": "authz_failure",
                    "reason": "missing_permission",
                    "permission": permission,
                    "key_id": auth.key_id,
                    **_get_request_context(request),
                },
            )
            raise PermissionDeniedError(f"API key lacks '{permission}' permission")

        limiter = getattr(request.app.state, "key_rate_limiter", None)
        if limiter is not None:
            allowed, retry_after = await limiter.hit(auth.key_id, auth.rate_limit_per_minute)
            if not allowed:
                raise HTTPException(
                    status_code=429,
                    detail="Rate limit exceeded",
                    headers={"Retry-After": str(retry_after)},
                )

        request.state.auth = auth
        return auth

    return dependency


# =============================================================================
# Key management
# =============================================================================


async def create_api_key(
    database: Database,
    owner_id: str,
    name: str,
    permissions: Optional[Dict[str, bool]] = None,
    rate_limit_per_minute: int = 60,
    expires_at: Optional[datetime] = None,
) -> Tuple[str, ApiKey]:
    """Create a key. The plaintext is returned here and never stored."""
    if not name or not name.strip():
        raise ValidationError("Key name is required")
    if rate_limit_per_minute < 1:
        raise ValidationError("rate_limit_per_minute must be at least 1")

    merged = dict(DEFAULT_PERMISSIONS)
    valid_scopes = {p.value for p in Permission}
    for scope, granted in (permissions or {}).items():
        if scope not in valid_scopes:
            raise ValidationError(f"Unknown permission: {scope}")
        merged[scope] = bool(granted)

    plaintext = generate_api_key()
    key = ApiKey(
        id=new_id(),
        owner_id=owner_id,
        name=name.strip(),
        key_prefix=get_key_prefix(plaintext),
        key_hash=hash_api_key(plaintext),
        permissions=merged,
        rate_limit_per_minute=rate_limit_per_minute,
        active=True,
        expires_at=expires_at,
        created_at=datetime.now(timezone.utc),
    )
    await db_execute_with_retry(database, api_keys.insert().values(**key.to_values()))
    logger.info(f"Created API key {key.key_prefix}... for owner {owner_id}")
    return plaintext, key


async def list_api_keys(database: Database, owner_id: Optional[str] = None) -> List[ApiKey]:
    query = api_keys.select().order_by(api_keys.c.created_at.desc())
    if owner_id is not None:
        query = query.where(api_keys.c.owner_id == owner_id)
    rows = await fetch_all_with_retry(database, query)
    return [ApiKey.from_row(row) for row in rows]


async def revoke_api_key(database: Database, key_id: str, owner_id: Optional[str] = None) -> ApiKey:
    query = api_keys.select().where(api_keys.c.id == key_id)
    if owner_id is not None:
        query = query.where(api_keys.c.owner_id == owner_id)
    row = await fetch_one_with_retry(database, query)
    if not row:
        raise NotFoundError("API key not found")

    await db_execute_with_retry(database, api_keys.update().where(api_keys.c.id == key_id).values(active=False))
    security_logger.info(
        "API key revoked",
        extra={"event": "key_revoked", "key_prefix": row["key_prefix"], "owner_id": row["owner_id"]},
    )
    key = ApiKey.from_row(row)
    key.active = False
    return key
