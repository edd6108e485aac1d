"""Command submission, listing and cancellation endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from fleetcmd.auth import current_principal, require_api_key
from fleetcmd.models.commands import (
    Command,
    CommandState,
    CommandSubmitRequest,
    PresetCategory,
)
from fleetcmd.models.identity import Principal
from fleetcmd.services.catalog import list_presets
from fleetcmd.services.fleet import Fleet, get_fleet
from fleetcmd.utils.dates import as_utc

router = APIRouter(
    prefix="/commands",
    tags=["commands"],
    dependencies=[Depends(require_api_key)],
)


@router.post("", response_model=Command, status_code=status.HTTP_201_CREATED)
async def submit_command(
    req: CommandSubmitRequest,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> Command:
    """Queue a command; it starts once the server has a free slot."""
    return await fleet.dispatcher.submit(req.server_id, principal, req.text, req.kind)


@router.get("", response_model=list[Command])
async def list_commands(
    server_id: Optional[str] = None,
    state: Optional[CommandState] = None,
    since: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=500),
    fleet: Fleet = Depends(get_fleet),
) -> list[Command]:
    return fleet.dispatcher.list_commands(
        server_id=server_id, state=state, since=as_utc(since), limit=limit,
    )


@router.get("/presets", response_model=list[PresetCategory])
async def presets() -> list[PresetCategory]:
    """Common commands grouped by category."""
    return list_presets()


@router.get("/{command_id}", response_model=Command)
async def get_command(command_id: str, fleet: Fleet = Depends(get_fleet)) -> Command:
    return fleet.dispatcher.get(command_id)


@router.post("/{command_id}/cancel", response_model=Command)
async def cancel_command(
    command_id: str,
    force: bool = False,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> Command:
    """Cancel a pending command (409 once it has started, unless *force*)."""
    return await fleet.dispatcher.cancel(command_id, principal, force=force)
