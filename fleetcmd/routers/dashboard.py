"""Dashboard summary endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from fleetcmd.auth import require_api_key
from fleetcmd.models.responses import DashboardStats
from fleetcmd.services.fleet import Fleet, get_fleet
from fleetcmd.services.stats import dashboard_stats

router = APIRouter(tags=["dashboard"], dependencies=[Depends(require_api_key)])


@router.get("/dashboard/stats", response_model=DashboardStats)
async def stats(fleet: Fleet = Depends(get_fleet)) -> DashboardStats:
    return dashboard_stats(fleet.registry, fleet.dispatcher)
