"""Server registration, health probe and credential endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from fleetcmd.auth import current_principal, require_api_key
from fleetcmd.errors import NotFoundError
from fleetcmd.models.identity import Principal
from fleetcmd.models.servers import (
    CredentialPutRequest,
    CredentialRefResponse,
    ProbeResponse,
    Server,
    ServerCreateRequest,
)
from fleetcmd.services.fleet import Fleet, get_fleet
from fleetcmd.services.policy import require_manage, require_submit

router = APIRouter(tags=["servers"], dependencies=[Depends(require_api_key)])


# ── Servers ───────────────────────────────────────────────────────────────


@router.post("/servers", response_model=Server, status_code=status.HTTP_201_CREATED)
async def register_server(
    req: ServerCreateRequest,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> Server:
    require_manage(principal)
    return fleet.registry.register(req, created_by=principal.user_id)


@router.get("/servers", response_model=list[Server])
async def list_servers(fleet: Fleet = Depends(get_fleet)) -> list[Server]:
    return fleet.registry.list()


@router.get("/servers/{server_id}", response_model=Server)
async def get_server(server_id: str, fleet: Fleet = Depends(get_fleet)) -> Server:
    return fleet.registry.require(server_id)


@router.delete("/servers/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: str,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> Response:
    """Unregister a server. Refused while it has pending or running commands."""
    require_manage(principal)
    await fleet.dispatcher.remove_server(server_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/servers/{server_id}/probe", response_model=ProbeResponse)
async def probe_server(
    server_id: str,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> ProbeResponse:
    """Check reachability and refresh the server's status."""
    require_submit(principal)
    return await fleet.registry.probe(server_id)


# ── Credentials (write-only) ──────────────────────────────────────────────


def _ref_view(fleet: Fleet, ref: str) -> CredentialRefResponse:
    cred = fleet.vault.get(ref)
    return CredentialRefResponse(
        ref=ref,
        has_private_key=cred.private_key is not None,
        has_password=cred.password is not None,
    )


@router.put("/credentials/{ref}", response_model=CredentialRefResponse)
async def put_credential(
    ref: str,
    req: CredentialPutRequest,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> CredentialRefResponse:
    require_manage(principal)
    fleet.vault.put(
        ref,
        private_key=req.private_key,
        password=req.password,
        passphrase=req.passphrase,
    )
    return _ref_view(fleet, ref)


@router.get("/credentials", response_model=list[CredentialRefResponse])
async def list_credentials(
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> list[CredentialRefResponse]:
    require_manage(principal)
    return [_ref_view(fleet, ref) for ref in fleet.vault.refs()]


@router.delete("/credentials/{ref}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credential(
    ref: str,
    principal: Principal = Depends(current_principal),
    fleet: Fleet = Depends(get_fleet),
) -> Response:
    require_manage(principal)
    if not fleet.vault.delete(ref):
        raise NotFoundError(f"credential '{ref}' not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
