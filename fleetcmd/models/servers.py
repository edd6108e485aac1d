"""Server registration and credential models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, SecretStr


class ServerStatus(str, Enum):
    online = "online"
    offline = "offline"
    error = "error"


class Server(BaseModel):
    """A registered remote host. Credential material lives in the vault."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    host: str
    port: int = 22
    username: str
    credential_ref: str
    workdir: str = "/var/www/html"
    max_concurrent_commands: int = Field(default=1, ge=1)
    status: ServerStatus = ServerStatus.offline
    status_reason: str = ""
    last_seen: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ServerCreateRequest(BaseModel):
    """Request body for POST /servers."""

    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    credential_ref: str = Field(min_length=1)
    workdir: Optional[str] = None
    max_concurrent_commands: Optional[int] = Field(default=None, ge=1)


class ProbeResponse(BaseModel):
    server_id: str
    status: ServerStatus
    reason: str = ""


class Credential(BaseModel):
    """SSH secret material. Only the connection layer reads the values."""

    ref: str
    private_key: Optional[SecretStr] = None
    passphrase: Optional[SecretStr] = None
    password: Optional[SecretStr] = None


class CredentialPutRequest(BaseModel):
    private_key: Optional[SecretStr] = None
    passphrase: Optional[SecretStr] = None
    password: Optional[SecretStr] = None


class CredentialRefResponse(BaseModel):
    ref: str
    has_private_key: bool
    has_password: bool
