"""WebSocket push channels for live generation progress."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ....channels import ChannelManager, job_key, subject_key
from ..dependencies import ChannelManagerDep

router = APIRouter(prefix="/ws", tags=["channels"])


async def _hold_subscription(websocket: WebSocket, channels: ChannelManager, key: str) -> None:
    """Accept a socket, subscribe it under ``key`` and keep it until it closes."""
    await websocket.accept()
    await channels.subscribe(key, websocket)
    if not channels.is_subscribed(key, websocket):
        # Closed during the snapshot, e.g. the job had already ended
        return
    try:
        while True:
            # Clients only listen; incoming messages are keepalives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        channels.unsubscribe(key, websocket)


@router.websocket("/generation")
async def generation_updates(websocket: WebSocket, subject_id: str, channels: ChannelManagerDep):
    """Live progress for every job of a subject."""
    await _hold_subscription(websocket, channels, subject_key(subject_id))


@router.websocket("/jobs/{job_id}")
async def job_updates(websocket: WebSocket, job_id: str, channels: ChannelManagerDep):
    """Live progress for one job; closed by the server when the job ends."""
    await _hold_subscription(websocket, channels, job_key(job_id))
