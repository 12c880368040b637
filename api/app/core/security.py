"""End-user authentication against Supabase Auth."""

import logging
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from app.core.auth import Principal
from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {"jobs:read", "jobs:write"},
    "admin": {"jobs:read", "jobs:write", "jobs:admin"},
}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise _unauthorized("authentication requires bearer token")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    token = _bearer_token(authorization)
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Supabase auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    subject = user.get("id")
    if not isinstance(subject, str) or not subject:
        raise _unauthorized("invalid bearer token")

    role = _resolve_role(user)
    email = user.get("email")
    return Principal(
        subject=subject,
        scopes=set(ROLE_SCOPES[role]),
        role=role,
        email=email if isinstance(email, str) else None,
    )


def require_scopes(principal: Principal, required: set[str]) -> None:
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        logger.warning("request forbidden subject=%s: %s", principal.subject, exc)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(base_url=supabase_url.rstrip("/"), timeout=timeout_seconds) as client:
            response = await client.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        logger.error("Supabase auth request failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise _unauthorized("invalid bearer token")
    if response.status_code != 200:
        logger.error("Supabase auth returned status=%s", response.status_code)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )
    return response.json()


def _resolve_role(user: dict[str, Any]) -> str:
    # user_metadata is writable by the user, so only app_metadata can grant admin.
    app_metadata = user.get("app_metadata")
    role = app_metadata.get("role") if isinstance(app_metadata, dict) else None
    return role if isinstance(role, str) and role in ROLE_SCOPES else "user"
