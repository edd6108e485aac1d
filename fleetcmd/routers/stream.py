"""Server-sent event streams of live command transitions."""

from __future__ import annotations

from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from fleetcmd.auth import require_api_key
from fleetcmd.services.fleet import Fleet, get_fleet
from fleetcmd.services.notifier import ALL_COMMANDS_TOPIC, Notifier, server_topic
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

router = APIRouter(tags=["stream"], dependencies=[Depends(require_api_key)])

# How often the generator wakes up to notice a disconnected client
_DISCONNECT_CHECK_SECONDS = 5.0


async def _events(
    request: Request, notifier: Notifier, topic: str,
) -> AsyncIterator[dict]:
    sub = notifier.subscribe(topic)
    log.info("stream.connected", topic=topic)
    try:
        while True:
            if await request.is_disconnected():
                break
            event = await sub.get(timeout=_DISCONNECT_CHECK_SECONDS)
            if event is None:
                if sub.closed:
                    # notifier shut down
                    break
                continue
            yield {"event": "command", "data": event.model_dump_json(exclude_none=True)}
    finally:
        sub.close()
        log.info("stream.disconnected", topic=topic, dropped=sub.dropped)


@router.get("/commands/stream")
async def stream_all(request: Request, fleet: Fleet = Depends(get_fleet)):
    return EventSourceResponse(_events(request, fleet.notifier, ALL_COMMANDS_TOPIC))


@router.get("/servers/{server_id}/commands/stream")
async def stream_server(
    server_id: str, request: Request, fleet: Fleet = Depends(get_fleet),
):
    fleet.registry.require(server_id)
    return EventSourceResponse(
        _events(request, fleet.notifier, server_topic(server_id)),
    )
