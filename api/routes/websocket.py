"""
WebSocket endpoints for real-time job updates.

Provides:
- /ws/jobs/{job_id} - Subscribe to one job
- /ws/jobs - Subscribe to the job list (optionally ?owner=...)

Events sent to client:
- snapshot: full current state, always first
- job: job row changed (ordered by revision)
- metric: new metric point (ordered by step)
- log: new log line (ordered by sequence)
- ping: keep-alive while nothing happens
- error: subscription failed or was dropped; reconnect for a fresh snapshot
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tuning_engine.jobs import JobNotFound, JobStatus, Subscription, SubscriberDropped

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

TERMINAL_VALUES = {s.value for s in JobStatus if s.is_terminal}

# Close code sent when the subscriber fell behind and was dropped
CLOSE_DROPPED = 4008
CLOSE_NOT_FOUND = 4004


def _is_terminal_event(event: dict) -> bool:
    if event.get("type") == "snapshot":
        job = event.get("data", {}).get("job") or {}
        return job.get("status") in TERMINAL_VALUES
    if event.get("type") == "job":
        return event.get("data", {}).get("status") in TERMINAL_VALUES
    return False


async def _forward(websocket: WebSocket, sub: Subscription, close_on_terminal: bool) -> None:
    """Pump subscription events to the client until terminal, drop or disconnect."""
    try:
        while True:
            event = await asyncio.to_thread(sub.get, 1.0)
            if event is None:
                if sub.closed:
                    break
                # Send ping to keep connection alive
                await websocket.send_json({"type": "ping"})
                continue

            await websocket.send_json(event)

            if close_on_terminal and _is_terminal_event(event):
                logger.info("Job %s reached terminal state, closing stream", (sub.job_id or "")[:8])
                await websocket.close()
                break

    except SubscriberDropped as e:
        logger.warning("WebSocket subscriber dropped: %s", e)
        await websocket.send_json({"type": "error", "reason": "dropped", "message": str(e)})
        await websocket.close(code=CLOSE_DROPPED)

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for %s", sub.job_id[:8] if sub.job_id else "job list")

    finally:
        sub.close()


@router.websocket("/ws/jobs/{job_id}")
async def job_stream(websocket: WebSocket, job_id: str):
    """
    WebSocket endpoint for real-time job updates.

    Sends a snapshot (job, metrics, logs) then incremental events.
    Automatically closes when the job reaches a terminal state.

    Example (JavaScript):
        const ws = new WebSocket('ws://localhost:8000/ws/jobs/a1b2c3d4-...');
        ws.onmessage = (event) => {
            const data = JSON.parse(event.data);
            console.log(data.type, data);
        };
    """
    await websocket.accept()
    logger.info("WebSocket connected for job %s", job_id[:8])

    relay = websocket.app.state.relay
    try:
        sub = await asyncio.to_thread(relay.attach, job_id)
    except JobNotFound:
        await websocket.send_json({"type": "error", "message": f"Job {job_id} not found"})
        await websocket.close(code=CLOSE_NOT_FOUND)
        return

    await _forward(websocket, sub, close_on_terminal=True)
    logger.info("WebSocket closed for job %s", job_id[:8])


@router.websocket("/ws/jobs")
async def job_list_stream(websocket: WebSocket, owner: str = None):
    """
    WebSocket endpoint for job list views.

    Sends a snapshot of the current jobs, then a "job" event for every
    job row change (filtered by owner when given).
    """
    await websocket.accept()
    sub = await asyncio.to_thread(websocket.app.state.relay.attach_collection, owner)
    await _forward(websocket, sub, close_on_terminal=False)
