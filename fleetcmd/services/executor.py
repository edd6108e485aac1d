"""Execution engine: run one command over a leased session.

Output is streamed to an optional callback as it arrives and captured up to
a byte bound per stream. A hard wall-clock timeout kills the remote process.
A cancel event does the same on request.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from fleetcmd.config import Settings, settings
from fleetcmd.errors import ConflictError
from fleetcmd.models.commands import ExecutionResult
from fleetcmd.services.ssh_pool import Lease, RemoteProcess
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

OutputCallback = Callable[[str, str], None]

TIMEOUT_MARKER = "[TimeoutError]"
CANCEL_MARKER = "[Cancelled]"


class _BoundedBuffer:
    """Keeps the first *limit* bytes of a stream and counts the rest."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.dropped = 0

    def append(self, chunk: bytes) -> bytes:
        """Store what fits and return the stored part."""
        room = self.limit - len(self.data)
        kept = chunk[:room] if room > 0 else b""
        self.data.extend(kept)
        self.dropped += len(chunk) - len(kept)
        return kept

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def text(self) -> str:
        out = self.data.decode(errors="replace")
        if self.truncated:
            out += f"\n[output truncated: {self.dropped} bytes beyond {self.limit} dropped]"
        return out


class ExecutionEngine:
    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings

    async def execute(
        self,
        lease: Lease,
        command_text: str,
        timeout: float | None = None,
        *,
        on_output: OutputCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run *command_text* on the leased session.

        Never raises for timeouts or cancellation; those are reported on the
        result. Transport failures propagate to the caller.
        """
        if lease.released:
            raise ConflictError("lease was already released")
        if lease.executing:
            raise ConflictError("lease is already running a command")
        lease.executing = True

        limit = timeout if timeout is not None else self._cfg.fleet_command_timeout_seconds
        stdout = _BoundedBuffer(self._cfg.fleet_max_output_bytes)
        stderr = _BoundedBuffer(self._cfg.fleet_max_output_bytes)
        buffers = {"stdout": stdout, "stderr": stderr}
        started = time.monotonic()
        exit_code: Optional[int] = None
        timed_out = False
        cancelled = False

        try:
            proc = await self._open(lease, command_text, limit)
            if proc is None:
                timed_out = True
                log.warning("exec.open_timeout", lease=lease.id, timeout=limit)
            else:
                # the wall clock started before the process was opened
                remaining = max(limit - (time.monotonic() - started), 0.0)
                exit_code, timed_out, cancelled = await self._supervise(
                    lease, proc, buffers, on_output, cancel_event, remaining,
                )
        finally:
            lease.executing = False

        elapsed = time.monotonic() - started
        err_text = stderr.text()
        if timed_out:
            err_text += f"\n{TIMEOUT_MARKER} command exceeded {limit:g}s and was terminated"
        elif cancelled:
            err_text += f"\n{CANCEL_MARKER} command was terminated on request"

        return ExecutionResult(
            command=command_text,
            exit_code=exit_code,
            stdout=stdout.text(),
            stderr=err_text,
            timed_out=timed_out,
            cancelled=cancelled,
            truncated=stdout.truncated or stderr.truncated,
            elapsed_time=elapsed,
        )

    @staticmethod
    async def _open(
        lease: Lease, command_text: str, limit: float,
    ) -> Optional[RemoteProcess]:
        """Open the remote process, or return None if *limit* ran out first."""
        opening = asyncio.ensure_future(lease.session.open_process(command_text))
        try:
            done, _ = await asyncio.wait({opening}, timeout=limit)
        except asyncio.CancelledError:
            opening.cancel()
            raise
        if opening in done:
            return opening.result()
        opening.cancel()
        (late,) = await asyncio.gather(opening, return_exceptions=True)
        if not isinstance(late, BaseException):
            # opened just as the deadline passed
            await late.terminate()
        return None

    async def _supervise(
        self,
        lease: Lease,
        proc: RemoteProcess,
        buffers: dict[str, _BoundedBuffer],
        on_output: OutputCallback | None,
        cancel_event: asyncio.Event | None,
        remaining: float,
    ) -> tuple[Optional[int], bool, bool]:
        """Wait for exit, the deadline or a cancel request.

        Returns ``(exit_code, timed_out, cancelled)``.
        """
        run = asyncio.ensure_future(self._pump(proc, buffers, on_output))
        waiters: set[asyncio.Future] = {run}
        cancel_wait: Optional[asyncio.Future] = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            run.cancel()
            await proc.terminate()
            raise
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        if run in done:
            return run.result(), False, False

        cancelled = cancel_wait is not None and cancel_wait in done
        if cancelled:
            log.info("exec.cancelled", lease=lease.id)
        else:
            log.warning("exec.timeout", lease=lease.id, remaining=remaining)
        run.cancel()
        try:
            await run
        except asyncio.CancelledError:
            pass
        await proc.terminate()
        return None, not cancelled, cancelled

    @staticmethod
    async def _pump(
        proc: RemoteProcess,
        buffers: dict[str, _BoundedBuffer],
        on_output: OutputCallback | None,
    ) -> int:
        while True:
            chunks = await proc.read()
            if chunks is None:
                break
            for stream, data in chunks:
                kept = buffers[stream].append(data)
                if kept and on_output is not None:
                    on_output(stream, kept.decode(errors="replace"))
        return await proc.wait()
