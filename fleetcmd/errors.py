"""Error taxonomy shared by services and the HTTP layer.

Each error carries the HTTP status the API answers with; services raise them,
``fleetcmd.main`` turns them into JSON responses.
"""

from __future__ import annotations


class FleetError(Exception):
    status_code: int = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(FleetError):
    """Malformed submission. Never retried, never queued."""

    status_code = 422


class AuthorizationError(FleetError):
    """Caller's role does not allow the operation."""

    status_code = 403


class NotFoundError(FleetError):
    status_code = 404


class ConflictError(FleetError):
    """State-transition race, e.g. cancelling a command that already started."""

    status_code = 409


class ConnectError(FleetError):
    """Network-level failure opening an SSH session."""

    status_code = 502


class AuthError(FleetError):
    """The server rejected the stored credential."""

    status_code = 502


class ServerUnavailable(FleetError):
    """Server marked ``error`` or no session could be leased in time."""

    status_code = 503
