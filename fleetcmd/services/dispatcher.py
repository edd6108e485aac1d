"""Command queue and dispatcher.

Each server has one lane: a FIFO of pending command ids plus the set of
commands holding one of its execution slots. A lane task owns its queue and
starts commands strictly in submission order while the server has a free
slot. Lanes of different servers run independently.

Every state change goes through :meth:`Dispatcher._transition`, which
enforces forward-only moves, then writes the audit entry and publishes the
event.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from fleetcmd.config import Settings, settings
from fleetcmd.errors import (
    AuthError,
    ConflictError,
    ConnectError,
    NotFoundError,
    ServerUnavailable,
    ValidationError,
)
from fleetcmd.models.audit import CommandEvent, Transition
from fleetcmd.models.commands import (
    TRANSITIONS,
    Command,
    CommandKind,
    CommandState,
    ExecutionResult,
)
from fleetcmd.models.identity import Principal
from fleetcmd.models.servers import Server, ServerStatus
from fleetcmd.services.audit import AuditLog
from fleetcmd.services.command_filter import (
    check_command,
    classify_command,
    remote_command_line,
)
from fleetcmd.services.executor import ExecutionEngine
from fleetcmd.services.notifier import Notifier
from fleetcmd.services.policy import require_submit
from fleetcmd.services.registry import ServerRegistry
from fleetcmd.services.ssh_pool import ConnectionPool
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

ACTIVE_STATES = frozenset({CommandState.pending, CommandState.running})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Lane:
    def __init__(self, server_id: str) -> None:
        self.server_id = server_id
        self.queue: deque[str] = deque()
        self.slots: set[str] = set()
        self.wakeup = asyncio.Event()
        self.task: Optional[asyncio.Task] = None


class Dispatcher:
    def __init__(
        self,
        registry: ServerRegistry,
        pool: ConnectionPool,
        engine: ExecutionEngine,
        audit: AuditLog,
        notifier: Notifier,
        cfg: Settings | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._registry = registry
        self._pool = pool
        self._engine = engine
        self._audit = audit
        self._notifier = notifier
        self._commands: dict[str, Command] = {}
        self._order: dict[str, int] = {}
        self._lanes: dict[str, _Lane] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── submission ────────────────────────────────────────────────────

    async def submit(
        self,
        server_id: str,
        issuer: Principal,
        text: str,
        kind: CommandKind | None = None,
    ) -> Command:
        """Validate, record and enqueue a command in state ``pending``."""
        require_submit(issuer)
        text = (text or "").strip()
        if not text:
            raise ValidationError("command text must not be empty")
        server = self._registry.get(server_id)
        if server is None:
            raise ValidationError(f"unknown server '{server_id}'")
        filt = check_command(
            text, kind, enforce_denylist=self._cfg.fleet_enforce_denylist,
        )
        if not filt:
            raise ValidationError(filt.reason)

        cmd = Command(
            server_id=server.id,
            issuer_id=issuer.user_id,
            text=text,
            kind=kind or classify_command(text),
        )
        self._commands[cmd.id] = cmd
        self._order[cmd.id] = len(self._order)
        log.info(
            "dispatch.submitted",
            command_id=cmd.id,
            server_id=server.id,
            kind=cmd.kind.value,
            issuer=issuer.user_id,
        )

        lane = self._lane_for(server.id)
        lane.queue.append(cmd.id)
        await self._record(cmd, None)
        lane.wakeup.set()
        return cmd

    # ── cancellation ──────────────────────────────────────────────────

    async def cancel(
        self,
        command_id: str,
        principal: Principal,
        *,
        force: bool = False,
    ) -> Command:
        """Cancel a pending command, or ask a running one to terminate.

        Pending commands are cancelled on the spot. Terminal commands, and
        running ones without *force*, raise ``ConflictError``. With *force* a
        running command gets a best-effort kill; it may still complete.
        """
        require_submit(principal)
        cmd = self.get(command_id)
        if cmd.state is CommandState.pending:
            await self._transition(
                cmd,
                CommandState.cancelled,
                reason=f"cancelled by {principal.user_id} before start",
            )
            return cmd
        if cmd.state.terminal:
            raise ConflictError(f"command is already {cmd.state.value}")
        if not force:
            raise ConflictError(
                "command is already running; use force to request termination",
            )
        event = self._cancel_events.get(cmd.id)
        if event is not None:
            event.set()
            log.info("dispatch.kill_requested", command_id=cmd.id, by=principal.user_id)
        return cmd

    # ── reads ─────────────────────────────────────────────────────────

    def get(self, command_id: str) -> Command:
        cmd = self._commands.get(command_id)
        if cmd is None:
            raise NotFoundError(f"command '{command_id}' not found")
        return cmd

    def list_commands(
        self,
        *,
        server_id: str | None = None,
        state: CommandState | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[Command]:
        """Newest first; submission order breaks timestamp ties."""
        found = [
            c for c in self._commands.values()
            if (server_id is None or c.server_id == server_id)
            and (state is None or c.state is state)
            and (since is None or c.created_at >= since)
        ]
        found.sort(key=lambda c: (c.created_at, self._order[c.id]), reverse=True)
        return found[:limit]

    def all_commands(self) -> list[Command]:
        return list(self._commands.values())

    def running_count(self, server_id: str) -> int:
        return sum(
            1 for c in self._commands.values()
            if c.server_id == server_id and c.state is CommandState.running
        )

    def queue_depth(self, server_id: str) -> int:
        lane = self._lanes.get(server_id)
        if lane is None:
            return 0
        return sum(
            1 for cid in lane.queue
            if self._commands[cid].state is CommandState.pending
        )

    async def remove_server(self, server_id: str) -> None:
        """Unregister a server that has no pending or running commands."""
        self._registry.require(server_id)
        busy = [
            c.id for c in self._commands.values()
            if c.server_id == server_id and c.state in ACTIVE_STATES
        ]
        if busy:
            raise ConflictError(
                f"server has {len(busy)} pending or running command(s)",
            )
        lane = self._lanes.pop(server_id, None)
        if lane is not None and lane.task is not None:
            lane.task.cancel()
        await self._registry.remove(server_id)

    # ── lanes ─────────────────────────────────────────────────────────

    def _lane_for(self, server_id: str) -> _Lane:
        lane = self._lanes.get(server_id)
        if lane is None:
            lane = self._lanes[server_id] = _Lane(server_id)
        if lane.task is None or lane.task.done():
            lane.task = asyncio.get_running_loop().create_task(self._lane_loop(lane))
        return lane

    async def _lane_loop(self, lane: _Lane) -> None:
        while True:
            await lane.wakeup.wait()
            lane.wakeup.clear()
            server = self._registry.get(lane.server_id)
            if server is None:
                return
            while lane.queue and len(lane.slots) < server.max_concurrent_commands:
                cmd = self._commands.get(lane.queue.popleft())
                if cmd is None or cmd.state is not CommandState.pending:
                    continue
                lane.slots.add(cmd.id)
                task = asyncio.get_running_loop().create_task(
                    self._run(lane, server, cmd),
                )
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _run(self, lane: _Lane, server: Server, cmd: Command) -> None:
        try:
            await self._execute(lane, server, cmd)
        except Exception as exc:
            log.exception("dispatch.run_crashed", command_id=cmd.id)
            if not cmd.state.terminal:
                await self._transition(
                    cmd, CommandState.failed, reason=f"internal error: {exc}",
                )
        finally:
            lane.slots.discard(cmd.id)
            lane.wakeup.set()

    async def _execute(self, lane: _Lane, server: Server, cmd: Command) -> None:
        try:
            lease = await self._pool.acquire(server, holder=cmd.id)
        except (ConnectError, AuthError) as exc:
            self._registry.mark(server.id, ServerStatus.error, exc.detail)
            await self._fail_queued(lane, cmd, f"ServerUnavailable: {exc.detail}")
            return
        except ServerUnavailable as exc:
            if cmd.state is CommandState.pending:
                await self._transition(
                    cmd, CommandState.failed, reason=f"ServerUnavailable: {exc.detail}",
                )
            return

        self._registry.mark(server.id, ServerStatus.online)
        broken = False
        try:
            if cmd.state is not CommandState.pending:
                # cancelled while waiting for the connection
                return
            cancel_event = asyncio.Event()
            self._cancel_events[cmd.id] = cancel_event
            await self._transition(cmd, CommandState.running, started_at=_now())

            timeout = self._cfg.fleet_command_timeout_seconds
            try:
                result = await self._engine.execute(
                    lease,
                    remote_command_line(server, cmd.text, cmd.kind),
                    timeout,
                    on_output=partial(self._on_output, cmd),
                    cancel_event=cancel_event,
                )
            except Exception as exc:
                broken = True
                log.error("dispatch.exec_failed", command_id=cmd.id, error=str(exc))
                await self._transition(
                    cmd, CommandState.failed, reason=f"execution error: {exc}",
                )
                return
            await self._finish(cmd, result, timeout)
        finally:
            self._cancel_events.pop(cmd.id, None)
            await self._pool.release(lease, broken=broken)

    async def _finish(self, cmd: Command, result: ExecutionResult, timeout: float) -> None:
        if result.cancelled:
            state, reason = CommandState.cancelled, "terminated on request while running"
        elif result.timed_out:
            state = CommandState.failed
            reason = f"TimeoutError: command exceeded {timeout:g}s and was terminated"
        elif result.exit_code == 0:
            state, reason = CommandState.completed, "exited with status 0"
        else:
            state, reason = CommandState.failed, f"exited with status {result.exit_code}"
        await self._transition(
            cmd,
            state,
            reason=reason,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            truncated=result.truncated,
        )

    async def _fail_queued(self, lane: _Lane, cmd: Command, reason: str) -> None:
        """Fail *cmd* and every command still queued behind it."""
        victims = [cmd]
        while lane.queue:
            queued = self._commands.get(lane.queue.popleft())
            if queued is not None:
                victims.append(queued)
        failed = 0
        for victim in victims:
            if victim.state is CommandState.pending:
                await self._transition(victim, CommandState.failed, reason=reason)
                failed += 1
        log.error(
            "dispatch.server_unavailable",
            server_id=lane.server_id,
            failed=failed,
            reason=reason,
        )

    def _on_output(self, cmd: Command, stream: str, delta: str) -> None:
        if cmd.state is not CommandState.running:
            return
        if stream == "stderr":
            cmd.stderr += delta
        else:
            cmd.stdout += delta
        self._notifier.publish(
            CommandEvent(
                command_id=cmd.id,
                server_id=cmd.server_id,
                state=cmd.state,
                output_delta=delta,
                stream=stream,
            ),
        )

    # ── state machine ─────────────────────────────────────────────────

    async def _transition(
        self,
        cmd: Command,
        state: CommandState,
        *,
        reason: str = "",
        **fields: Any,
    ) -> None:
        if state not in TRANSITIONS[cmd.state]:
            raise ConflictError(
                f"cannot move command from {cmd.state.value} to {state.value}",
            )
        previous = cmd.state
        for name, value in fields.items():
            setattr(cmd, name, value)
        cmd.state = state
        cmd.reason = reason
        if state.terminal:
            cmd.completed_at = _now()
        log.info(
            "dispatch.transition",
            command_id=cmd.id,
            old=previous.value,
            new=state.value,
            reason=reason,
        )
        await self._record(cmd, previous)

    async def _record(self, cmd: Command, previous: CommandState | None) -> None:
        await self._audit.record(
            Transition(
                command_id=cmd.id,
                server_id=cmd.server_id,
                user_id=cmd.issuer_id,
                state=cmd.state,
                previous_state=previous,
                reason=cmd.reason,
                exit_code=cmd.exit_code,
            ),
        )
        self._notifier.publish(
            CommandEvent(
                command_id=cmd.id,
                server_id=cmd.server_id,
                state=cmd.state,
                exit_code=cmd.exit_code,
                reason=cmd.reason or None,
            ),
        )

    # ── lifecycle ─────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop lanes, kill in-flight runs and fail whatever is left."""
        for lane in self._lanes.values():
            if lane.task is not None:
                lane.task.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for cmd in list(self._commands.values()):
            if cmd.state in ACTIVE_STATES:
                await self._transition(
                    cmd, CommandState.failed, reason="service shut down before completion",
                )
        self._lanes.clear()
