"""
WebSocket Log Stream - live sandbox output of one session.

    ws://host/ws/logs?sessionId=<id>
    ws://host/ws/logs/<id>

Each message is a LogEvent as JSON:
    {"sessionId": ..., "type": "log" | "error" | "exit", "message": ..., "timestamp": ...}

There is no backlog; only output produced after the connection is open is
delivered. The stream ends after the "exit" event or when the client leaves.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from sandbox_preview.core.logging_config import logger
from sandbox_preview.services.log_hub import LogBroadcastHub, Subscription
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator

router = APIRouter(tags=["Logs"])


async def _send_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_dict())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Incoming messages are ignored; this only notices the client leaving"""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
    except WebSocketDisconnect:
        return


async def stream_logs(websocket: WebSocket, session_id: Optional[str], hub: LogBroadcastHub) -> None:
    if not session_id:
        await websocket.close(code=1008, reason="sessionId is required")
        return

    await websocket.accept()
    subscription = hub.subscribe(session_id)
    logger.info(f"[LogStream] Observer {subscription.id} connected to {session_id}")

    sender = asyncio.create_task(_send_events(websocket, subscription))
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if sender in done:
            error = sender.exception()
            if error is not None and not isinstance(error, (WebSocketDisconnect, RuntimeError)):
                raise error
            if error is None:
                # Terminal event delivered
                await websocket.close()
    finally:
        hub.unsubscribe(subscription)
        logger.info(f"[LogStream] Observer {subscription.id} left {session_id}")


@router.websocket("/ws/logs")
async def log_stream_query(
    websocket: WebSocket,
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    await stream_logs(websocket, session_id, orchestrator.hub)


@router.websocket("/ws/logs/{session_id}")
async def log_stream(
    websocket: WebSocket,
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    await stream_logs(websocket, session_id, orchestrator.hub)
