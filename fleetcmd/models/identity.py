"""Caller identity as supplied by the upstream gateway."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class Role(str, Enum):
    admin = "admin"
    devops = "devops"
    viewer = "viewer"


class Principal(BaseModel):
    user_id: str
    role: Role = Role.viewer
