"""API key check and caller identity dependencies."""

from __future__ import annotations

from fastapi import Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from fleetcmd.config import settings
from fleetcmd.models.identity import Principal, Role

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    api_key: str | None = Security(_api_key_header),
) -> str:
    """FastAPI dependency that enforces X-API-Key header.

    If FLEET_API_KEY is blank the check is skipped (dev convenience).
    """
    if not settings.fleet_api_key:
        return "no-key-configured"
    if api_key is None or api_key != settings.fleet_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return api_key


async def current_principal(
    x_user_id: str = Header(default="anonymous"),
    x_user_role: str = Header(default=Role.viewer.value),
) -> Principal:
    """Identity forwarded by the upstream auth gateway."""
    try:
        role = Role(x_user_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown role '{x_user_role}'",
        )
    return Principal(user_id=x_user_id, role=role)
