"""Common API response models."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str


class DashboardStats(BaseModel):
    total_servers: int = 0
    online_servers: int = 0
    offline_servers: int = 0
    error_servers: int = 0
    recent_commands: int = 0
    failed_commands: int = 0
    running_commands: int = 0
    pending_commands: int = 0


class ErrorResponse(BaseModel):
    detail: str
    error: str = ""
