"""
Auth utilities.

Verifies bearer JWTs (HS256 with JWT_SECRET) and extracts the account id
from the 'sub' claim. Falls back to the X-User-Id header for development
and tests. Identity itself is provided upstream; this only reads it.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from backend.core.config import Settings, settings as default_settings
from backend.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountIdentity:
    account_id: str
    email: Optional[str] = None


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or default_settings


def verify_jwt(token: str, cfg: Settings) -> AccountIdentity:
    """
    Verify a bearer JWT and extract the account identity.

    Raises:
        AuthenticationError: secret not configured, token invalid or expired
    """
    if not cfg.JWT_SECRET:
        raise AuthenticationError("Bearer tokens are not accepted (JWT_SECRET not configured)")

    algorithms = [alg.strip() for alg in cfg.JWT_ALGORITHMS.split(",") if alg.strip()]
    try:
        payload = jwt.decode(
            token,
            cfg.JWT_SECRET,
            algorithms=algorithms,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired", code="token_expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token", code="invalid_token")

    account_id = payload.get("sub")
    if not account_id:
        raise AuthenticationError("No 'sub' claim in token", code="invalid_token")
    return AccountIdentity(account_id=str(account_id), email=payload.get("email"))


async def get_current_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test account id"),
) -> AccountIdentity:
    """
    Resolve the calling account.

    Priority:
    1. JWT from Authorization header
    2. X-User-Id header (outside production only)
    3. Raise 401 Unauthorized
    """
    cfg = _settings_for(request)
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        # An invalid token is final; do not fall back to X-User-Id
        identity = verify_jwt(auth_header[7:].strip(), cfg)
    elif cfg.ENV.lower() == "production":
        # X-User-Id is unauthenticated; never trusted in production
        raise AuthenticationError("Missing Authorization (Bearer JWT) header")
    elif x_user_id and x_user_id.strip():
        identity = AccountIdentity(account_id=x_user_id.strip())
    else:
        raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")

    # Picked up by the request completion log
    request.state.account_id = identity.account_id
    return identity


async def get_current_account_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test account id"),
) -> str:
    identity = await get_current_identity(request, x_user_id)
    return identity.account_id
