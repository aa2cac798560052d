"""
Backend Preview Proxy - reverse proxy for running backend sessions.

    Caller:  GET /previews/backend/{session_id}/api/widgets?page=2
        ↓    SessionRouter.resolve()  (registry lookup on every request)
    Backend: GET http://{SANDBOX_HOST}:{port}/api/widgets?page=2

The part after /api is taken from the raw request path, so percent-escapes
and trailing slashes reach the backend exactly as the caller sent them.
Unknown or evicted sessions get 404 without any backend being contacted.
WebSocket upgrades on the same paths are proxied with `websockets`.
"""

import asyncio

import httpx
import websockets
from fastapi import APIRouter, Depends, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from starlette.types import Scope

from sandbox_preview.core.exceptions import SessionNotFoundError
from sandbox_preview.core.logging_config import logger
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator

PREFIX = "/previews/backend"

router = APIRouter(prefix=PREFIX, tags=["Backend Proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def raw_sub_path(scope: Scope, session_id: str) -> str:
    """Undecoded remainder of the request path after /previews/backend/{id}/api"""
    raw_path = scope.get("raw_path")
    if raw_path is None:
        raw = scope["path"]
    else:
        raw = raw_path.decode("latin-1").split("?", 1)[0]
    prefix = f"{PREFIX}/{session_id}/api"
    if not raw.startswith(prefix):
        # Session id itself was escaped; fall back to the decoded path
        raw = scope["path"]
    return raw[len(prefix):]


@router.api_route("/{session_id}/api/{path:path}", methods=PROXY_METHODS)
async def proxy_backend(
    session_id: str,
    request: Request,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Forward a request to the session's backend under its own /api base path"""
    router_service = orchestrator.router
    target = router_service.resolve(
        session_id,
        raw_sub_path(request.scope, session_id),
        request.url.query,
    )

    headers = router_service.forward_headers(
        request.headers.items(),
        request.client.host if request.client else None,
        request.url.scheme,
    )
    body = await request.body()

    try:
        response = await router_service.forward(target, request.method, headers, body)
    except httpx.ConnectError as e:
        logger.warning(f"[Proxy] Connection failed to backend of {session_id}: {e}")
        raise HTTPException(status_code=503, detail="Backend is not accepting connections yet")
    except httpx.TimeoutException as e:
        logger.warning(f"[Proxy] Timeout proxying to backend of {session_id}: {e}")
        raise HTTPException(status_code=504, detail="Backend request timed out")
    except httpx.HTTPError as e:
        logger.error(f"[Proxy] Proxy error for {session_id}: {type(e).__name__}: {e}")
        raise HTTPException(status_code=502, detail=f"Backend proxy error: {e}")

    proxied = Response(content=response.content, status_code=response.status_code)
    for key, value in router_service.response_headers(response.headers.multi_items()):
        proxied.headers.append(key, value)
    return proxied


@router.api_route("/{session_id}/api", methods=PROXY_METHODS)
async def proxy_backend_root(
    session_id: str,
    request: Request,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return await proxy_backend(session_id, request, orchestrator)


@router.websocket("/{session_id}/api/{path:path}")
async def proxy_backend_websocket(
    websocket: WebSocket,
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Bidirectional WebSocket relay to the session's backend"""
    router_service = orchestrator.router
    try:
        target = router_service.resolve(
            session_id,
            raw_sub_path(websocket.scope, session_id),
            websocket.url.query,
        )
    except SessionNotFoundError:
        await websocket.close(code=1008, reason="Session not found")
        return

    target_url = router_service.websocket_url(target)
    logger.info(f"[Proxy WS] {session_id} -> {target_url}")
    await websocket.accept()

    try:
        async with websockets.connect(target_url, ping_interval=30, ping_timeout=10, close_timeout=5) as upstream:

            async def client_to_backend():
                try:
                    while True:
                        message = await websocket.receive()
                        if message["type"] == "websocket.disconnect":
                            break
                        if message.get("text") is not None:
                            await upstream.send(message["text"])
                        elif message.get("bytes") is not None:
                            await upstream.send(message["bytes"])
                except WebSocketDisconnect:
                    logger.debug(f"[Proxy WS] Client disconnected: {session_id}")
                finally:
                    await upstream.close()

            async def backend_to_client():
                try:
                    async for message in upstream:
                        if isinstance(message, str):
                            await websocket.send_text(message)
                        else:
                            await websocket.send_bytes(message)
                except websockets.exceptions.ConnectionClosed:
                    logger.debug(f"[Proxy WS] Backend disconnected: {session_id}")
                await websocket.close()

            await asyncio.gather(client_to_backend(), backend_to_client(), return_exceptions=True)

    except (OSError, websockets.exceptions.InvalidHandshake) as e:
        logger.warning(f"[Proxy WS] Backend of {session_id} refused WebSocket: {type(e).__name__}: {e}")
        await websocket.close(code=1013, reason="Backend not ready")
