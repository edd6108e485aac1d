"""Dashboard counters."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fleetcmd.models.commands import CommandState
from fleetcmd.models.responses import DashboardStats
from fleetcmd.models.servers import ServerStatus
from fleetcmd.services.dispatcher import Dispatcher
from fleetcmd.services.registry import ServerRegistry

RECENT_WINDOW = timedelta(hours=24)


def dashboard_stats(
    registry: ServerRegistry,
    dispatcher: Dispatcher,
    *,
    now: datetime | None = None,
) -> DashboardStats:
    servers = registry.list()
    cutoff = (now or datetime.now(timezone.utc)) - RECENT_WINDOW
    stats = DashboardStats(total_servers=len(servers))
    for server in servers:
        if server.status == ServerStatus.online:
            stats.online_servers += 1
        elif server.status == ServerStatus.offline:
            stats.offline_servers += 1
        else:
            stats.error_servers += 1

    for cmd in dispatcher.all_commands():
        if cmd.state is CommandState.running:
            stats.running_commands += 1
        elif cmd.state is CommandState.pending:
            stats.pending_commands += 1
        if cmd.created_at < cutoff:
            continue
        stats.recent_commands += 1
        if cmd.state is CommandState.failed:
            stats.failed_commands += 1
    return stats
