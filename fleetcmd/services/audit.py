"""Append-only audit log of command transitions.

Entries are deduplicated on ``(command_id, state)`` so a retried record is a
no-op. When ``fleet_audit_log_path`` is set every entry is appended to a
JSON-lines file and the file is replayed on startup.
"""

from __future__ import annotations

import asyncio
import base64
import bisect
import json
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

from fleetcmd.config import Settings, settings
from fleetcmd.errors import ValidationError
from fleetcmd.models.audit import (
    AuditEntry,
    AuditFilter,
    AuditLevel,
    AuditPage,
    Transition,
)
from fleetcmd.models.commands import CommandState
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

_LEVELS: dict[CommandState, AuditLevel] = {
    CommandState.pending: AuditLevel.info,
    CommandState.running: AuditLevel.info,
    CommandState.completed: AuditLevel.info,
    CommandState.cancelled: AuditLevel.warning,
    CommandState.failed: AuditLevel.error,
}

# Entries yielded between event-loop checkpoints during a query
_QUERY_BATCH = 200


def _sort_key(entry: AuditEntry) -> tuple[datetime, int]:
    return (entry.created_at, entry.seq)


class AuditLog:
    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._entries: list[AuditEntry] = []  # kept sorted by (created_at, seq)
        self._keys: list[tuple[datetime, int]] = []
        self._by_key: dict[tuple[str, CommandState], AuditEntry] = {}
        self._by_id: dict[str, AuditEntry] = {}
        self._seq = 0
        self._lock = asyncio.Lock()
        self._path: Optional[Path] = (
            Path(self._cfg.fleet_audit_log_path) if self._cfg.fleet_audit_log_path else None
        )

    # ── persistence ───────────────────────────────────────────────────

    def load(self) -> int:
        """Replay the JSON-lines file, if configured. Returns entries loaded."""
        if self._path is None or not self._path.exists():
            return 0
        count = 0
        with self._path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = AuditEntry.model_validate_json(line)
                except ValueError as exc:
                    log.warning("audit.bad_line", error=str(exc)[:200])
                    continue
                if (entry.command_id, entry.state) in self._by_key:
                    continue
                self._index(entry)
                self._seq = max(self._seq, entry.seq)
                count += 1
        log.info("audit.loaded", path=str(self._path), count=count)
        return count

    # ── writes ────────────────────────────────────────────────────────

    async def record(self, transition: Transition) -> AuditEntry:
        """Append a transition; a repeat of the same (command, state) is a no-op."""
        key = (transition.command_id, transition.state)
        async with self._lock:
            existing = self._by_key.get(key)
            if existing is not None:
                log.debug(
                    "audit.duplicate",
                    command_id=transition.command_id,
                    state=transition.state.value,
                )
                return existing
            self._seq += 1
            entry = AuditEntry(
                seq=self._seq,
                command_id=transition.command_id,
                server_id=transition.server_id,
                user_id=transition.user_id,
                state=transition.state,
                previous_state=transition.previous_state,
                level=_LEVELS[transition.state],
                reason=transition.reason,
                exit_code=transition.exit_code,
                created_at=transition.at,
            )
            if self._path is not None:
                await asyncio.to_thread(_append_line, self._path, entry.model_dump_json())
            self._index(entry)
        return entry

    def _index(self, entry: AuditEntry) -> None:
        key = _sort_key(entry)
        pos = bisect.bisect_right(self._keys, key)
        self._keys.insert(pos, key)
        self._entries.insert(pos, entry)
        self._by_key[(entry.command_id, entry.state)] = entry
        self._by_id[entry.id] = entry

    # ── reads ─────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    async def query(
        self,
        filters: AuditFilter | None = None,
        *,
        after: tuple[datetime, int] | None = None,
    ) -> AsyncIterator[AuditEntry]:
        """Yield matching entries lazily, newest first unless ascending.

        *after* is a ``(created_at, seq)`` position; only entries strictly
        past it in iteration order are yielded.
        """
        flt = filters or AuditFilter()
        snapshot = list(self._entries)
        keys = list(self._keys)

        if flt.ascending:
            start = 0 if after is None else bisect.bisect_right(keys, after)
            indices = range(start, len(snapshot))
        else:
            stop = len(snapshot) if after is None else bisect.bisect_left(keys, after)
            indices = range(stop - 1, -1, -1)

        for n, i in enumerate(indices):
            if n and n % _QUERY_BATCH == 0:
                await asyncio.sleep(0)
            entry = snapshot[i]
            if _matches(entry, flt):
                yield entry

    async def page(
        self,
        filters: AuditFilter | None = None,
        *,
        cursor: str | None = None,
        limit: int = 50,
    ) -> AuditPage:
        after = self._decode_cursor(cursor) if cursor else None
        entries: list[AuditEntry] = []
        async for entry in self.query(filters, after=after):
            entries.append(entry)
            if len(entries) > limit:
                break
        next_cursor = None
        if len(entries) > limit:
            entries = entries[:limit]
            next_cursor = encode_cursor(entries[-1])
        return AuditPage(entries=entries, next_cursor=next_cursor)

    def _decode_cursor(self, cursor: str) -> tuple[datetime, int]:
        created_at, entry_id = decode_cursor(cursor)
        entry = self._by_id.get(entry_id)
        if entry is None or entry.created_at != created_at:
            raise ValidationError("cursor does not match any audit entry")
        return _sort_key(entry)


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(line + "\n")


def _matches(entry: AuditEntry, flt: AuditFilter) -> bool:
    if flt.server_id is not None and entry.server_id != flt.server_id:
        return False
    if flt.user_id is not None and entry.user_id != flt.user_id:
        return False
    if flt.command_id is not None and entry.command_id != flt.command_id:
        return False
    if flt.level is not None and entry.level != flt.level:
        return False
    if flt.since is not None and entry.created_at < flt.since:
        return False
    if flt.until is not None and entry.created_at >= flt.until:
        return False
    return True


def encode_cursor(entry: AuditEntry) -> str:
    raw = json.dumps([entry.created_at.isoformat(), entry.id])
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        created_at, entry_id = json.loads(base64.urlsafe_b64decode(padded))
        return datetime.fromisoformat(created_at), str(entry_id)
    except (ValueError, TypeError) as exc:
        raise ValidationError("malformed cursor") from exc
