"""Tests for the command queue, lanes and state machine."""

from __future__ import annotations

import asyncio

import pytest

from fleetcmd.errors import (
    AuthorizationError,
    ConflictError,
    ConnectError,
    NotFoundError,
    ValidationError,
)
from fleetcmd.models.audit import AuditFilter
from fleetcmd.models.commands import CommandKind, CommandState
from fleetcmd.models.servers import ServerStatus
from fleetcmd.services.notifier import server_topic
from tests.fake_ssh import ARTISAN_MIGRATE, add_server, wait_until


async def _entries(fleet, **filters) -> list:
    flt = AuditFilter(ascending=True, **filters)
    return [e async for e in fleet.audit.query(flt)]


async def _settle(*cmds) -> None:
    await wait_until(lambda: all(c.state.terminal for c in cmds))


# ── Submission ───────────────────────────────────────────────────────────


class TestSubmit:
    async def test_returns_pending_and_audits(self, fleet, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "git status")

        assert cmd.state in (CommandState.pending, CommandState.running, CommandState.completed)
        assert cmd.kind is CommandKind.git
        first = (await _entries(fleet, command_id=cmd.id))[0]
        assert first.state is CommandState.pending
        assert first.previous_state is None
        assert first.user_id == "alice"
        assert first.server_id == server.id

    async def test_viewer_rejected_before_validation(self, fleet, viewer):
        with pytest.raises(AuthorizationError):
            await fleet.dispatcher.submit("no-such-server", viewer, "")

    async def test_empty_text(self, fleet, admin):
        server = add_server(fleet)
        with pytest.raises(ValidationError):
            await fleet.dispatcher.submit(server.id, admin, "   ")

    async def test_unknown_server(self, fleet, admin):
        with pytest.raises(ValidationError):
            await fleet.dispatcher.submit("missing", admin, "uptime")

    async def test_denied_command_leaves_no_trace(self, fleet, admin):
        server = add_server(fleet)
        with pytest.raises(ValidationError, match="safety"):
            await fleet.dispatcher.submit(server.id, admin, "rm -rf /")
        assert len(fleet.audit) == 0
        assert fleet.dispatcher.all_commands() == []

    async def test_kind_mismatch(self, fleet, admin):
        server = add_server(fleet)
        with pytest.raises(ValidationError):
            await fleet.dispatcher.submit(server.id, admin, "uptime", CommandKind.artisan)

    async def test_devops_may_submit(self, fleet, devops):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, devops, "uptime")
        await _settle(cmd)
        assert cmd.issuer_id == "dave"


# ── Execution ────────────────────────────────────────────────────────────


class TestExecution:
    async def test_completes_with_output(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "php artisan migrate --force")
        await _settle(cmd)

        assert cmd.state is CommandState.completed
        assert cmd.exit_code == 0
        assert cmd.stdout == ARTISAN_MIGRATE
        assert cmd.started_at is not None
        assert cmd.completed_at >= cmd.started_at
        assert fake_ssh.executed == ["cd /var/www/html && php artisan migrate --force"]
        assert fleet.registry.get(server.id).status is ServerStatus.online

    async def test_nonzero_exit_fails(self, fleet, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "false")
        await _settle(cmd)
        assert cmd.state is CommandState.failed
        assert cmd.exit_code == 1
        assert cmd.reason == "exited with status 1"

    async def test_full_transition_trail(self, fleet, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(cmd)

        trail = await _entries(fleet, command_id=cmd.id)
        assert [e.state for e in trail] == [
            CommandState.pending, CommandState.running, CommandState.completed,
        ]
        assert [e.previous_state for e in trail] == [
            None, CommandState.pending, CommandState.running,
        ]
        assert trail[-1].exit_code == 0
        seqs = [e.seq for e in trail]
        assert seqs == sorted(seqs)

    async def test_single_slot_serializes(self, fleet, fake_ssh, admin):
        server = add_server(fleet, max_concurrent=1)
        cmds = [
            await fleet.dispatcher.submit(server.id, admin, f"tick 2 0.02 #{n}")
            for n in range(3)
        ]
        await _settle(*cmds)

        assert fake_ssh.max_active[server.id] == 1
        assert all(c.state is CommandState.completed for c in cmds)
        running = await _entries(fleet, server_id=server.id)
        started = [e.command_id for e in running if e.state is CommandState.running]
        assert started == [c.id for c in cmds]

    async def test_fifo_order(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        gate = fake_ssh.gate("first")
        first = await fleet.dispatcher.submit(server.id, admin, "wait first")
        second = await fleet.dispatcher.submit(server.id, admin, "echo two")
        third = await fleet.dispatcher.submit(server.id, admin, "echo three")

        await wait_until(lambda: first.state is CommandState.running)
        assert second.state is CommandState.pending
        assert fleet.dispatcher.queue_depth(server.id) == 2

        gate.set()
        await _settle(first, second, third)
        assert fake_ssh.executed == ["wait first", "echo two", "echo three"]

    async def test_parallel_up_to_limit(self, fleet, fake_ssh, admin):
        server = add_server(fleet, max_concurrent=2)
        gate = fake_ssh.gate("g")
        cmds = [await fleet.dispatcher.submit(server.id, admin, "wait g") for _ in range(3)]

        await wait_until(lambda: fleet.dispatcher.running_count(server.id) == 2)
        await asyncio.sleep(0.05)
        assert fleet.dispatcher.running_count(server.id) == 2
        assert cmds[2].state is CommandState.pending

        gate.set()
        await _settle(*cmds)
        assert fake_ssh.max_active[server.id] == 2

    async def test_terminal_state_rejects_transition(self, fleet, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(cmd)
        recorded = len(fleet.audit)

        for state in (CommandState.running, CommandState.pending, CommandState.failed):
            with pytest.raises(ConflictError):
                await fleet.dispatcher._transition(cmd, state)
        assert cmd.state is CommandState.completed
        assert len(fleet.audit) == recorded

    async def test_running_cannot_go_back_to_pending(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "wait hold")
        await wait_until(lambda: cmd.state is CommandState.running)
        with pytest.raises(ConflictError):
            await fleet.dispatcher._transition(cmd, CommandState.pending)
        fake_ssh.gate("hold").set()
        await _settle(cmd)
        assert cmd.state is CommandState.completed

    async def test_servers_run_independently(self, fleet, fake_ssh, admin):
        web = add_server(fleet, "web-1")
        db = add_server(fleet, "db-1")
        gate = fake_ssh.gate("hold")
        blocked = await fleet.dispatcher.submit(web.id, admin, "wait hold")
        other = await fleet.dispatcher.submit(db.id, admin, "uptime")

        await _settle(other)
        assert other.state is CommandState.completed
        assert blocked.state is CommandState.running
        gate.set()
        await _settle(blocked)

    async def test_timeout_fails_and_frees_slot(self, make_fleet, fake_ssh, admin):
        fleet = make_fleet(fleet_command_timeout_seconds=0.2)
        server = add_server(fleet)
        slow = await fleet.dispatcher.submit(server.id, admin, "sleep 10")
        after = await fleet.dispatcher.submit(server.id, admin, "echo next")
        await _settle(slow, after)

        assert slow.state is CommandState.failed
        assert slow.reason.startswith("TimeoutError")
        assert "[TimeoutError]" in slow.stderr
        assert slow.exit_code is None
        assert fake_ssh.terminated == ["sleep 10"]
        assert after.state is CommandState.completed
        assert fleet.pool.stats(server.id)["leased"] == 0

    async def test_truncated_output_flagged(self, make_fleet, admin):
        fleet = make_fleet(fleet_max_output_bytes=512)
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "spew 2048")
        await _settle(cmd)
        assert cmd.state is CommandState.completed
        assert cmd.truncated
        assert "[output truncated" in cmd.stdout

    async def test_publishes_transitions_and_output(self, fleet, admin):
        server = add_server(fleet)
        sub = fleet.notifier.subscribe(server_topic(server.id))
        cmd = await fleet.dispatcher.submit(server.id, admin, "echo hello")
        await _settle(cmd)

        events = []
        while sub.pending():
            events.append(await sub.get(timeout=0.1))
        states = [e.state for e in events if e.output_delta is None]
        deltas = [e.output_delta for e in events if e.output_delta is not None]
        assert states == [CommandState.pending, CommandState.running, CommandState.completed]
        assert deltas == ["hello\n"]


# ── Connection failures ──────────────────────────────────────────────────


class TestServerUnavailable:
    async def test_connect_failure_fails_queue(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        fake_ssh.fail_next(*[ConnectError("connection refused")] * 3)
        cmds = [await fleet.dispatcher.submit(server.id, admin, "uptime") for _ in range(3)]
        await _settle(*cmds)

        assert all(c.state is CommandState.failed for c in cmds)
        assert all(c.reason.startswith("ServerUnavailable") for c in cmds)
        assert all(c.started_at is None for c in cmds)
        assert fleet.registry.get(server.id).status is ServerStatus.error
        assert fake_ssh.connect_calls == 3

    async def test_later_success_clears_error(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        fake_ssh.fail_next(*[ConnectError("connection refused")] * 3)
        failed = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(failed)

        ok = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(ok)
        assert ok.state is CommandState.completed
        assert fleet.registry.get(server.id).status is ServerStatus.online

    async def test_retried_connect_still_runs(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        fake_ssh.fail_next(ConnectError("reset"), ConnectError("reset"))
        cmd = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(cmd)

        assert cmd.state is CommandState.completed
        trail = await _entries(fleet, command_id=cmd.id)
        assert len(trail) == 3


# ── Cancellation ─────────────────────────────────────────────────────────


class TestCancel:
    async def test_cancel_pending(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        gate = fake_ssh.gate("busy")
        blocker = await fleet.dispatcher.submit(server.id, admin, "wait busy")
        queued = await fleet.dispatcher.submit(server.id, admin, "echo never")
        await wait_until(lambda: blocker.state is CommandState.running)

        await fleet.dispatcher.cancel(queued.id, admin)
        assert queued.state is CommandState.cancelled
        assert "before start" in queued.reason

        gate.set()
        await _settle(blocker)
        await asyncio.sleep(0.05)
        assert "echo never" not in fake_ssh.executed
        trail = await _entries(fleet, command_id=queued.id)
        assert [e.state for e in trail] == [CommandState.pending, CommandState.cancelled]

    async def test_cancel_terminal_conflicts(self, fleet, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(cmd)
        with pytest.raises(ConflictError):
            await fleet.dispatcher.cancel(cmd.id, admin)
        assert cmd.state is CommandState.completed

    async def test_cancel_running_needs_force(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "wait hold")
        await wait_until(lambda: cmd.state is CommandState.running)

        with pytest.raises(ConflictError):
            await fleet.dispatcher.cancel(cmd.id, admin)
        assert cmd.state is CommandState.running

        await fleet.dispatcher.cancel(cmd.id, admin, force=True)
        await _settle(cmd)
        assert cmd.state is CommandState.cancelled
        assert fake_ssh.terminated == ["wait hold"]
        assert fleet.pool.stats(server.id)["leased"] == 0

    async def test_force_cancel_loses_to_completion(
        self, fleet, fake_ssh, admin, monkeypatch,
    ):
        server = add_server(fleet)
        run = fleet.engine.execute

        async def exit_then_cancel(lease, command_text, timeout=None, **kwargs):
            result = await run(lease, command_text, timeout, **kwargs)
            # the kill request arrives after the process exited
            await fleet.dispatcher.cancel(lease.holder, admin, force=True)
            return result

        monkeypatch.setattr(fleet.engine, "execute", exit_then_cancel)
        cmd = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await _settle(cmd)

        assert cmd.state is CommandState.completed
        assert cmd.exit_code == 0
        assert fake_ssh.terminated == []
        trail = await _entries(fleet, command_id=cmd.id)
        assert CommandState.cancelled not in [e.state for e in trail]

    async def test_viewer_cannot_cancel(self, fleet, admin, viewer):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "wait hold")
        with pytest.raises(AuthorizationError):
            await fleet.dispatcher.cancel(cmd.id, viewer)

    async def test_unknown_command(self, fleet, admin):
        with pytest.raises(NotFoundError):
            await fleet.dispatcher.cancel("nope", admin)


# ── Reads and lifecycle ──────────────────────────────────────────────────


class TestReadsAndLifecycle:
    async def test_list_newest_first_and_filtered(self, fleet, admin):
        web = add_server(fleet, "web-1")
        db = add_server(fleet, "db-1")
        a = await fleet.dispatcher.submit(web.id, admin, "uptime")
        b = await fleet.dispatcher.submit(db.id, admin, "uptime")
        c = await fleet.dispatcher.submit(web.id, admin, "false")
        await _settle(a, b, c)

        assert [x.id for x in fleet.dispatcher.list_commands()] == [c.id, b.id, a.id]
        assert [x.id for x in fleet.dispatcher.list_commands(server_id=web.id)] == [c.id, a.id]
        failed = fleet.dispatcher.list_commands(state=CommandState.failed)
        assert [x.id for x in failed] == [c.id]
        assert len(fleet.dispatcher.list_commands(limit=1)) == 1

    async def test_remove_busy_server_conflicts(self, fleet, fake_ssh, admin):
        server = add_server(fleet)
        cmd = await fleet.dispatcher.submit(server.id, admin, "wait hold")
        with pytest.raises(ConflictError):
            await fleet.dispatcher.remove_server(server.id)

        fake_ssh.gate("hold").set()
        await _settle(cmd)
        await fleet.dispatcher.remove_server(server.id)
        assert fleet.registry.get(server.id) is None

    async def test_shutdown_fails_active_commands(self, fleet, admin):
        server = add_server(fleet)
        running = await fleet.dispatcher.submit(server.id, admin, "wait hold")
        pending = await fleet.dispatcher.submit(server.id, admin, "uptime")
        await wait_until(lambda: running.state is CommandState.running)

        await fleet.dispatcher.shutdown()

        for cmd in (running, pending):
            assert cmd.state is CommandState.failed
            assert cmd.reason == "service shut down before completion"
