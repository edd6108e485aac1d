"""SSH connection pool with per-server limits, connect retry and idle reaping.

Sessions are opened through a pluggable *connector*. The default connector
uses paramiko, run inside a thread pool so the event loop is never blocked.
Each server gets at most ``max_concurrent_commands`` sessions; a lease grants
exclusive use of one of them.
"""

from __future__ import annotations

import asyncio
import io
import shlex
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Protocol
from uuid import uuid4

import paramiko

from fleetcmd.config import Settings, settings
from fleetcmd.errors import AuthError, ConnectError, NotFoundError, ServerUnavailable
from fleetcmd.models.servers import Credential, Server
from fleetcmd.services.vault import CredentialVault
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

# First stdout line of every wrapped command carries the remote shell's pid
_PID_MARKER = "__FLEETCMD_PID__="
_POLL_SECONDS = 0.25
_RECV_BYTES = 65536


class RemoteProcess(Protocol):
    async def read(self) -> Optional[list[tuple[str, bytes]]]:
        """Return pending ``(stream, data)`` chunks, or None at end of output."""

    async def wait(self) -> int: ...

    async def terminate(self) -> None: ...


class RemoteSession(Protocol):
    @property
    def is_alive(self) -> bool: ...

    async def open_process(self, command: str) -> RemoteProcess: ...

    async def close(self) -> None: ...


Connector = Callable[[Server, Credential], Awaitable[RemoteSession]]


# ── pool bookkeeping ──────────────────────────────────────────────────────


@dataclass
class Connection:
    server_id: str
    session: RemoteSession
    lease_holder: Optional[str] = None
    last_used_at: float = field(default_factory=time.monotonic)


@dataclass
class Lease:
    """Exclusive use of one pooled connection until released."""

    server_id: str
    connection: Connection
    holder: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    executing: bool = False
    released: bool = False

    @property
    def session(self) -> RemoteSession:
        return self.connection.session


class _ServerSlots:
    def __init__(self) -> None:
        self.idle: list[Connection] = []
        self.leased: dict[str, Connection] = {}
        self.opening = 0
        self.dropped = False
        self.cond = asyncio.Condition()

    @property
    def total(self) -> int:
        return len(self.idle) + len(self.leased) + self.opening


class ConnectionPool:
    """Reusable authenticated sessions, bounded per server."""

    def __init__(
        self,
        vault: CredentialVault,
        connector: Connector | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._vault = vault
        self._connector = connector or ParamikoConnector(self._cfg)
        self._slots: dict[str, _ServerSlots] = {}
        self._reaper: Optional[asyncio.Task] = None

    # ── leasing ───────────────────────────────────────────────────────

    async def acquire(
        self,
        server: Server,
        holder: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Lease:
        """Wait for a free or newly opened session for *server*.

        Raises ``ConnectError``/``AuthError`` once connect retries are spent,
        and ``ServerUnavailable`` if no session frees up within *timeout*.
        """
        wait = self._cfg.fleet_acquire_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._acquire(server, holder), wait)
        except asyncio.TimeoutError as exc:
            log.warning("pool.acquire_timeout", server_id=server.id, timeout=wait)
            raise ServerUnavailable(
                f"no connection to server {server.name} became free within {wait:g}s",
            ) from exc

    async def _acquire(self, server: Server, holder: str | None) -> Lease:
        slots = self._slots_for(server.id)
        stale: list[Connection] = []
        conn: Optional[Connection] = None

        async with slots.cond:
            while True:
                while slots.idle:
                    candidate = slots.idle.pop()
                    if candidate.session.is_alive:
                        conn = candidate
                        break
                    stale.append(candidate)
                if conn is not None:
                    break
                if slots.total < server.max_concurrent_commands:
                    slots.opening += 1
                    break
                await slots.cond.wait()
            if conn is not None:
                lease = self._lease(slots, server.id, conn, holder)

        for dead in stale:
            await _close_quietly(dead.session)

        if conn is not None:
            return lease

        try:
            session = await self._establish(server)
        except BaseException:
            slots.opening -= 1
            async with slots.cond:
                slots.cond.notify()
            raise
        slots.opening -= 1
        return self._lease(slots, server.id, Connection(server.id, session), holder)

    @staticmethod
    def _lease(
        slots: _ServerSlots, server_id: str, conn: Connection, holder: str | None,
    ) -> Lease:
        conn.lease_holder = holder
        lease = Lease(server_id=server_id, connection=conn, holder=holder)
        slots.leased[lease.id] = conn
        return lease

    async def release(self, lease: Lease, *, broken: bool = False) -> None:
        """Return the leased session, or close it if it is no longer usable."""
        if lease.released:
            return
        lease.released = True
        slots = self._slots.get(lease.server_id)
        if slots is None:
            await _close_quietly(lease.session)
            return

        discard = broken or slots.dropped or not lease.session.is_alive
        async with slots.cond:
            conn = slots.leased.pop(lease.id, None)
            if conn is not None:
                conn.lease_holder = None
                conn.last_used_at = time.monotonic()
                if not discard:
                    slots.idle.append(conn)
            slots.cond.notify()

        if discard:
            log.info("pool.discarded", server_id=lease.server_id, broken=broken)
            await _close_quietly(lease.session)

    # ── establishment ─────────────────────────────────────────────────

    async def _establish(self, server: Server) -> RemoteSession:
        try:
            credential = self._vault.get(server.credential_ref)
        except NotFoundError as exc:
            raise AuthError(exc.detail) from exc

        attempts = 1 + max(self._cfg.fleet_connect_retries, 0)
        attempt = 0
        while True:
            try:
                session = await self._connector(server, credential)
            except (ConnectError, AuthError) as exc:
                attempt += 1
                if attempt >= attempts:
                    log.error("pool.connect_failed", server_id=server.id, error=str(exc))
                    raise
                delay = self._cfg.fleet_connect_backoff_seconds * (2 ** (attempt - 1))
                log.warning(
                    "pool.connect_retry",
                    server_id=server.id,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                continue
            log.info("pool.connected", server_id=server.id, attempt=attempt + 1)
            return session

    # ── idle timeout ──────────────────────────────────────────────────

    async def reap_idle(self, now: float | None = None) -> int:
        """Close idle sessions unused for longer than the configured TTL."""
        ttl = self._cfg.fleet_pool_idle_ttl_seconds
        current = time.monotonic() if now is None else now
        expired: list[Connection] = []
        for slots in list(self._slots.values()):
            async with slots.cond:
                keep: list[Connection] = []
                for conn in slots.idle:
                    if current - conn.last_used_at >= ttl:
                        expired.append(conn)
                    else:
                        keep.append(conn)
                slots.idle = keep
                slots.cond.notify_all()
        for conn in expired:
            log.info("pool.idle_timeout", server_id=conn.server_id)
            await _close_quietly(conn.session)
        return len(expired)

    async def _reap_forever(self) -> None:
        interval = self._cfg.fleet_pool_reap_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except Exception as exc:
                log.warning("pool.reap_failed", error=str(exc))

    def start(self) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.get_running_loop().create_task(self._reap_forever())

    # ── lifecycle ─────────────────────────────────────────────────────

    async def drop_server(self, server_id: str) -> None:
        """Forget a server. Leased sessions close when they are released."""
        slots = self._slots.pop(server_id, None)
        if slots is None:
            return
        async with slots.cond:
            slots.dropped = True
            idle, slots.idle = slots.idle, []
            slots.cond.notify_all()
        for conn in idle:
            await _close_quietly(conn.session)

    async def close(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            self._reaper = None
        for server_id in list(self._slots):
            slots = self._slots[server_id]
            leased = list(slots.leased.values())
            await self.drop_server(server_id)
            for conn in leased:
                await _close_quietly(conn.session)
        if isinstance(self._connector, ParamikoConnector):
            self._connector.shutdown()

    def stats(self, server_id: str) -> dict[str, int]:
        slots = self._slots.get(server_id)
        if slots is None:
            return {"idle": 0, "leased": 0, "opening": 0}
        return {
            "idle": len(slots.idle),
            "leased": len(slots.leased),
            "opening": slots.opening,
        }

    def _slots_for(self, server_id: str) -> _ServerSlots:
        slots = self._slots.get(server_id)
        if slots is None:
            slots = self._slots[server_id] = _ServerSlots()
        return slots


async def _close_quietly(session: RemoteSession) -> None:
    try:
        await session.close()
    except Exception as exc:
        log.debug("pool.close_failed", error=str(exc))


# ── paramiko transport ────────────────────────────────────────────────────


class ParamikoConnector:
    """Opens paramiko ``SSHClient`` sessions inside a shared thread pool."""

    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._executor = ThreadPoolExecutor(
            max_workers=self._cfg.fleet_ssh_worker_threads,
            thread_name_prefix="ssh",
        )

    async def __call__(self, server: Server, credential: Credential) -> RemoteSession:
        log.info("ssh.connecting", host=server.host, port=server.port)
        try:
            client = await run_owned(
                self._executor,
                paramiko.SSHClient.close,
                _connect_sync,
                server.host,
                server.port,
                server.username,
                credential,
                self._cfg.fleet_connect_timeout_seconds,
                self._cfg.fleet_ssh_keepalive_seconds,
            )
        except paramiko.AuthenticationException as exc:
            raise AuthError(f"authentication rejected by {server.host}: {exc}") from exc
        except AuthError:
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise ConnectError(f"cannot reach {server.host}:{server.port}: {exc}") from exc
        return ParamikoSession(client, self._executor)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class ParamikoSession:
    def __init__(self, client: paramiko.SSHClient, executor: ThreadPoolExecutor) -> None:
        self._client = client
        self._executor = executor

    @property
    def is_alive(self) -> bool:
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def open_process(self, command: str) -> ParamikoProcess:
        wrapped = f"echo {_PID_MARKER}$$; exec /bin/sh -c {shlex.quote(command)}"
        chan = await run_owned(
            self._executor,
            paramiko.Channel.close,
            _open_channel_sync,
            self._client,
            wrapped,
        )
        return ParamikoProcess(self, chan)

    async def close(self) -> None:
        await self._run(self._client.close)


class ParamikoProcess:
    def __init__(self, session: ParamikoSession, chan: paramiko.Channel) -> None:
        self._session = session
        self._chan = chan
        self._pid: Optional[int] = None
        self._header = b""
        self._header_done = False

    async def read(self) -> Optional[list[tuple[str, bytes]]]:
        chunks, eof = await self._session._run(_recv_sync, self._chan, _POLL_SECONDS)
        out: list[tuple[str, bytes]] = []
        for stream, data in chunks:
            if stream == "stdout" and not self._header_done:
                data = self._strip_header(data)
                if not data:
                    continue
            out.append((stream, data))
        if eof and not out:
            if not self._header_done and self._header:
                self._header_done = True
                return [("stdout", self._header)]
            return None
        return out

    def _strip_header(self, data: bytes) -> bytes:
        self._header += data
        if b"\n" not in self._header:
            return b""
        line, rest = self._header.split(b"\n", 1)
        self._header_done = True
        self._header = b""
        text = line.decode(errors="replace").strip()
        if text.startswith(_PID_MARKER):
            try:
                self._pid = int(text[len(_PID_MARKER):])
            except ValueError:
                log.warning("ssh.pid_unparsed", line=text[:80])
            return rest
        return line + b"\n" + rest

    async def wait(self) -> int:
        return await self._session._run(self._chan.recv_exit_status)

    async def terminate(self) -> None:
        if self._pid is not None:
            kill = f"kill -KILL -- -{self._pid} 2>/dev/null || kill -KILL {self._pid}"
            try:
                await self._session._run(
                    _exec_detached_sync, self._session._client, kill,
                )
            except Exception as exc:
                log.warning("ssh.kill_failed", pid=self._pid, error=str(exc))
        await self._session._run(self._chan.close)


async def run_owned(
    executor: ThreadPoolExecutor,
    cleanup: Callable[[Any], None],
    fn: Callable[..., Any],
    *args: Any,
) -> Any:
    """Run *fn* in *executor*; if the caller stops waiting, *cleanup* its result.

    A worker thread cannot be interrupted, so a connect or channel open that
    completes after a timeout or shutdown would otherwise leak.
    """
    job = executor.submit(fn, *args)
    try:
        return await asyncio.wrap_future(job)
    except asyncio.CancelledError:
        job.add_done_callback(partial(_discard_result, cleanup))
        raise


def _discard_result(cleanup: Callable[[Any], None], job: Future) -> None:
    if job.cancelled() or job.exception() is not None:
        return
    try:
        cleanup(job.result())
    except Exception as exc:
        log.debug("ssh.discard_failed", error=str(exc))


# ── module-level sync wrappers (executor-friendly) ────────────────────────


def _load_private_key(text: str, passphrase: str | None) -> paramiko.PKey:
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.SSHException:
            continue
    raise AuthError("unsupported or undecryptable private key")


def _connect_sync(
    host: str,
    port: int,
    username: str,
    credential: Credential,
    timeout: float,
    keepalive: int,
) -> paramiko.SSHClient:
    pkey = None
    if credential.private_key is not None:
        passphrase = (
            credential.passphrase.get_secret_value() if credential.passphrase else None
        )
        pkey = _load_private_key(credential.private_key.get_secret_value(), passphrase)
    password = credential.password.get_secret_value() if credential.password else None

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=host,
            port=port,
            username=username,
            password=password,
            pkey=pkey,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            look_for_keys=False,
            allow_agent=False,
        )
    except Exception:
        client.close()
        raise
    transport = client.get_transport()
    if transport is not None and keepalive:
        transport.set_keepalive(keepalive)
    return client


def _open_channel_sync(client: paramiko.SSHClient, command: str) -> paramiko.Channel:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise ConnectError("ssh transport is closed")
    chan = transport.open_session()
    chan.exec_command(command)
    return chan


def _exec_detached_sync(client: paramiko.SSHClient, command: str) -> None:
    chan = _open_channel_sync(client, command)
    try:
        chan.recv_exit_status()
    finally:
        chan.close()


def _recv_sync(
    chan: paramiko.Channel, poll: float,
) -> tuple[list[tuple[str, bytes]], bool]:
    """Collect whatever output is ready, waiting at most *poll* seconds."""
    deadline = time.monotonic() + poll
    out: list[tuple[str, bytes]] = []
    while True:
        if chan.recv_ready():
            data = chan.recv(_RECV_BYTES)
            if data:
                out.append(("stdout", data))
        if chan.recv_stderr_ready():
            data = chan.recv_stderr(_RECV_BYTES)
            if data:
                out.append(("stderr", data))
        if out:
            return out, False
        if chan.closed or (
            chan.eof_received and not chan.recv_ready() and not chan.recv_stderr_ready()
        ):
            return out, True
        if time.monotonic() >= deadline:
            return out, False
        time.sleep(0.01)
