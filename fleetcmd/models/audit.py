"""Audit trail and live event models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from fleetcmd.models.commands import CommandState


class AuditLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class Transition(BaseModel):
    """One state change of a command, as handed to the audit log."""

    command_id: str
    server_id: str
    user_id: str
    state: CommandState
    previous_state: Optional[CommandState] = None
    reason: str = ""
    exit_code: Optional[int] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditEntry(BaseModel):
    """Append-only projection of a transition. Never mutated once written."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    seq: int
    command_id: str
    server_id: str
    user_id: str
    state: CommandState
    previous_state: Optional[CommandState] = None
    level: AuditLevel = AuditLevel.info
    reason: str = ""
    exit_code: Optional[int] = None
    created_at: datetime

    model_config = {"frozen": True}


class AuditFilter(BaseModel):
    server_id: Optional[str] = None
    user_id: Optional[str] = None
    command_id: Optional[str] = None
    level: Optional[AuditLevel] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    ascending: bool = False


class AuditPage(BaseModel):
    entries: list[AuditEntry]
    next_cursor: Optional[str] = None


class CommandEvent(BaseModel):
    """Live transition or output event pushed to subscribers."""

    command_id: str
    server_id: str
    state: CommandState
    exit_code: Optional[int] = None
    output_delta: Optional[str] = None
    stream: Optional[str] = None
    reason: Optional[str] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
