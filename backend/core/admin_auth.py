"""
Admin authentication.

Admin-only endpoints (invariant audit, cross-account status reads) require
the X-Admin-Key header to match ADMIN_KEY. Comparison is constant-time.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from backend.core.config import Settings, settings as default_settings
from backend.core.errors import AuthenticationError, PermissionError, ServiceUnavailableError

ADMIN_KEY_HEADER = "X-Admin-Key"


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash prefix>"
    auth_mechanism: str = "x_admin_key"


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or default_settings


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """
    Attempt to authenticate admin from request.
    Returns AdminActor or None (does not raise).
    """
    expected_key = _settings_for(request).ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get(ADMIN_KEY_HEADER, "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not _settings_for(request).ADMIN_KEY:
        raise ServiceUnavailableError(
            "Admin authentication not configured (set ADMIN_KEY)",
            code="admin_auth_unconfigured",
        )
    if request.headers.get(ADMIN_KEY_HEADER):
        raise PermissionError("Invalid X-Admin-Key header")
    raise AuthenticationError("Missing X-Admin-Key header", code="admin_unauthorized")
