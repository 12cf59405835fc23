# push channel: GET /sync streams newline-delimited JSON events
import logging

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from .broadcast import Broadcaster, Channel
from .state import list_counters

logger = logging.getLogger(__name__)

router = APIRouter()

broadcaster = Broadcaster(list_counters)


async def stream_channel(channel: Channel):
    """
    Subscribe the channel, then yield its lines until it is closed or the
    client goes away. The subscription lives exactly as long as the
    generator.
    """
    try:
        await broadcaster.subscribe(channel)
        async for line in channel:
            yield line + "\n"
    finally:
        await broadcaster.unsubscribe(channel)


@router.get("/sync")
async def sync():
    return StreamingResponse(
        stream_channel(Channel()),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
