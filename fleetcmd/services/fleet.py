"""Wiring of the service graph, plus the FastAPI dependency that exposes it."""

from __future__ import annotations

from fleetcmd.config import Settings, settings
from fleetcmd.services.audit import AuditLog
from fleetcmd.services.dispatcher import Dispatcher
from fleetcmd.services.executor import ExecutionEngine
from fleetcmd.services.notifier import Notifier
from fleetcmd.services.registry import ServerRegistry
from fleetcmd.services.ssh_pool import ConnectionPool, Connector
from fleetcmd.services.vault import CredentialVault
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)


class Fleet:
    """Owns one instance of every service and their start/stop order."""

    def __init__(self, cfg: Settings | None = None, connector: Connector | None = None) -> None:
        self.cfg = cfg or settings
        self.vault = CredentialVault(self.cfg)
        self.pool = ConnectionPool(self.vault, connector, self.cfg)
        self.engine = ExecutionEngine(self.cfg)
        self.audit = AuditLog(self.cfg)
        self.notifier = Notifier(self.cfg)
        self.registry = ServerRegistry(self.vault, self.pool, self.engine, self.cfg)
        self.dispatcher = Dispatcher(
            self.registry, self.pool, self.engine, self.audit, self.notifier, self.cfg,
        )

    async def start(self) -> None:
        self.vault.load_directory()
        self.audit.load()
        self.pool.start()
        log.info("fleet.started")

    async def close(self) -> None:
        await self.dispatcher.shutdown()
        self.notifier.close()
        await self.pool.close()
        log.info("fleet.stopped")


# Singleton – routers reach it through get_fleet so tests can override it
fleet = Fleet()


def get_fleet() -> Fleet:
    return fleet
