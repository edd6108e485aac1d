"""Audit export endpoint."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from fleetcmd.auth import require_api_key
from fleetcmd.models.audit import AuditFilter, AuditLevel, AuditPage
from fleetcmd.services.fleet import Fleet, get_fleet
from fleetcmd.utils.dates import as_utc

router = APIRouter(tags=["audit"], dependencies=[Depends(require_api_key)])


@router.get("/audit", response_model=AuditPage)
async def export_audit(
    server_id: Optional[str] = None,
    user: Optional[str] = None,
    command_id: Optional[str] = None,
    level: Optional[AuditLevel] = None,
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = None,
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    cursor: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    fleet: Fleet = Depends(get_fleet),
) -> AuditPage:
    """Audit entries, newest first by default, paginated by opaque cursor."""
    filters = AuditFilter(
        server_id=server_id,
        user_id=user,
        command_id=command_id,
        level=level,
        since=as_utc(from_),
        until=as_utc(to),
        ascending=order == "asc",
    )
    return await fleet.audit.page(filters, cursor=cursor, limit=limit)
