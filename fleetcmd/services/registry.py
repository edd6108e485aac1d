"""In-memory server registry and health probes.

Server status is derived: probes and connection outcomes set it, command
results never do. ``error`` stays until a probe or a connection succeeds.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fleetcmd.config import Settings, settings
from fleetcmd.errors import (
    AuthError,
    ConnectError,
    NotFoundError,
    ServerUnavailable,
    ValidationError,
)
from fleetcmd.models.servers import (
    ProbeResponse,
    Server,
    ServerCreateRequest,
    ServerStatus,
)
from fleetcmd.services.executor import ExecutionEngine
from fleetcmd.services.ssh_pool import ConnectionPool
from fleetcmd.services.vault import CredentialVault
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

PROBE_COMMAND = "true"


class ServerRegistry:
    def __init__(
        self,
        vault: CredentialVault,
        pool: ConnectionPool,
        engine: ExecutionEngine,
        cfg: Settings | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._vault = vault
        self._pool = pool
        self._engine = engine
        self._servers: dict[str, Server] = {}

    def register(self, req: ServerCreateRequest, created_by: str | None = None) -> Server:
        if not self._vault.has(req.credential_ref):
            raise ValidationError(f"unknown credential ref '{req.credential_ref}'")
        server = Server(
            name=req.name,
            host=req.host,
            port=req.port or self._cfg.fleet_default_ssh_port,
            username=req.username or self._cfg.fleet_default_ssh_username,
            credential_ref=req.credential_ref,
            workdir=req.workdir or self._cfg.fleet_default_workdir,
            max_concurrent_commands=(
                req.max_concurrent_commands
                or self._cfg.fleet_default_max_concurrent_commands
            ),
            created_by=created_by,
        )
        self._servers[server.id] = server
        log.info("server.registered", server_id=server.id, host=server.host)
        return server

    def get(self, server_id: str) -> Server | None:
        return self._servers.get(server_id)

    def require(self, server_id: str) -> Server:
        server = self._servers.get(server_id)
        if server is None:
            raise NotFoundError(f"server '{server_id}' not found")
        return server

    def list(self) -> list[Server]:
        return sorted(self._servers.values(), key=lambda s: s.name.lower())

    async def remove(self, server_id: str) -> None:
        self.require(server_id)
        del self._servers[server_id]
        await self._pool.drop_server(server_id)
        log.info("server.removed", server_id=server_id)

    def mark(self, server_id: str, status: ServerStatus, reason: str = "") -> None:
        server = self._servers.get(server_id)
        if server is None:
            return
        if server.status != status:
            log.info(
                "server.status",
                server_id=server_id,
                old=server.status.value,
                new=status.value,
                reason=reason,
            )
        server.status = status
        server.status_reason = reason
        if status == ServerStatus.online:
            server.last_seen = datetime.now(timezone.utc)

    async def probe(self, server_id: str) -> ProbeResponse:
        """Open (or reuse) a session and run a no-op command."""
        server = self.require(server_id)
        timeout = self._cfg.fleet_connect_timeout_seconds
        try:
            lease = await self._pool.acquire(server, holder="probe")
        except AuthError as exc:
            self.mark(server_id, ServerStatus.error, exc.detail)
            return ProbeResponse(server_id=server_id, status=server.status, reason=exc.detail)
        except ConnectError as exc:
            self.mark(server_id, ServerStatus.offline, exc.detail)
            return ProbeResponse(server_id=server_id, status=server.status, reason=exc.detail)
        except ServerUnavailable as exc:
            # every slot is busy running commands; status stands as is
            return ProbeResponse(server_id=server_id, status=server.status, reason=exc.detail)

        broken = False
        try:
            result = await self._engine.execute(lease, PROBE_COMMAND, timeout)
        except Exception as exc:
            broken = True
            self.mark(server_id, ServerStatus.offline, str(exc))
        else:
            if result.exit_code == 0:
                self.mark(server_id, ServerStatus.online)
            else:
                reason = "probe command timed out" if result.timed_out else (
                    f"probe command exited with {result.exit_code}"
                )
                self.mark(server_id, ServerStatus.error, reason)
        finally:
            await self._pool.release(lease, broken=broken)
        return ProbeResponse(
            server_id=server_id, status=server.status, reason=server.status_reason,
        )
