"""Command-related data structures."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class CommandKind(str, Enum):
    artisan = "artisan"
    composer = "composer"
    git = "git"
    system = "system"
    custom = "custom"


class CommandState(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {CommandState.completed, CommandState.failed, CommandState.cancelled},
)

# Allowed forward moves. Commands that never start may go straight to a
# terminal state from pending.
TRANSITIONS: dict[CommandState, frozenset[CommandState]] = {
    CommandState.pending: frozenset(
        {CommandState.running, CommandState.failed, CommandState.cancelled},
    ),
    CommandState.running: TERMINAL_STATES,
    CommandState.completed: frozenset(),
    CommandState.failed: frozenset(),
    CommandState.cancelled: frozenset(),
}


class Command(BaseModel):
    """A queued shell command and everything recorded about its run."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    server_id: str
    issuer_id: str
    text: str
    kind: CommandKind = CommandKind.custom
    state: CommandState = CommandState.pending
    reason: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False


class CommandSubmitRequest(BaseModel):
    """Request body for POST /commands."""

    server_id: str
    text: str
    kind: Optional[CommandKind] = None


class ExecutionResult(BaseModel):
    """Internal result from running one command over a leased session."""

    command: str
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False
    elapsed_time: float = 0.0


class CommandPreset(BaseModel):
    label: str
    text: str
    kind: CommandKind


class PresetCategory(BaseModel):
    category: str
    commands: list[CommandPreset]
