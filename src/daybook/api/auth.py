"""Bearer token authentication for the Daybook REST API.

Auth scheme:
    Authorization: Bearer <DAYBOOK_API_TOKEN>

The token comes from the app settings or, failing that, the
DAYBOOK_API_TOKEN environment variable.  When neither is set, auth is
**disabled** (dev mode).

The authenticated user is named by the ``X-User-Id`` header (or a
``userId`` query parameter); requests without one act as the configured
default user.
"""
from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

# Cached token (resolved once per process)
_resolved_token: Optional[str] = None
_token_resolved: bool = False


def configure_token(token: Optional[str]) -> None:
    """Pin the token from settings; None falls back to the environment."""
    global _resolved_token, _token_resolved
    if token:
        _resolved_token = token.strip()
        _token_resolved = True
        logger.info("API auth: token set (settings) ✓")
    else:
        reset_token_cache()


def _resolve_token() -> Optional[str]:
    """Resolve the API token. Returns None if unset."""
    global _resolved_token, _token_resolved

    if _token_resolved:
        return _resolved_token

    token = os.getenv("DAYBOOK_API_TOKEN", "").strip()
    _resolved_token = token or None
    _token_resolved = True
    if _resolved_token:
        logger.info("API auth: DAYBOOK_API_TOKEN set (env) ✓")
    else:
        logger.warning(
            "DAYBOOK_API_TOKEN not set: API auth is DISABLED. "
            "Set DAYBOOK_API_TOKEN for production use."
        )
    return _resolved_token


def reset_token_cache() -> None:
    """Reset the cached token (for testing)."""
    global _resolved_token, _token_resolved
    _resolved_token = None
    _token_resolved = False


def is_auth_enabled() -> bool:
    """Check whether API authentication is enabled."""
    return _resolve_token() is not None


def token_matches(candidate: Optional[str]) -> bool:
    """Constant-time check of *candidate* against the configured token."""
    expected = _resolve_token()
    if expected is None:
        return True
    return bool(candidate) and secrets.compare_digest(candidate, expected)


async def require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[str]:
    """FastAPI dependency that enforces Bearer token auth.

    - If a token is configured: requires a valid Bearer token.
    - Otherwise: allows all requests (dev mode).

    Returns the validated token string or None (dev mode).
    """
    if not is_auth_enabled():
        return None

    if credentials is None:
        _audit_auth_failure(request, reason="missing_header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required. Example: Authorization: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not token_matches(credentials.credentials):
        _audit_auth_failure(request, reason="invalid_token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials


async def current_user(
    request: Request,
    _token: Optional[str] = Depends(require_auth),
) -> str:
    """User id for the request (``X-User-Id`` header, ``userId`` query, or the default)."""
    user_id = request.headers.get("x-user-id") or request.query_params.get("userId")
    if user_id and user_id.strip():
        return user_id.strip()
    return request.app.state.settings.default_user_id


def _audit_auth_failure(request: Request, reason: str) -> None:
    """Log authentication failure for security audit."""
    client_ip = request.client.host if request.client else "unknown"
    logger.warning(
        "AUTH_FAILURE: reason=%s ip=%s path=%s", reason, client_ip, request.url.path
    )
