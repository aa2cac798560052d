"""
Unit Tests for the WebSocket log stream
"""
import asyncio

import pytest

from sandbox_preview.api.v1.endpoints.logs import stream_logs
from sandbox_preview.models.session import LogEvent, LogEventKind
from sandbox_preview.services.log_hub import LogBroadcastHub


class FakeWebSocket:
    """Just enough of starlette's WebSocket for the stream handler"""

    def __init__(self):
        self.accepted = False
        self.close_code = None
        self.sent = []
        self._gone = asyncio.Event()

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000, reason: str = None):
        self.close_code = code

    async def send_json(self, data):
        self.sent.append(data)

    async def receive(self):
        await self._gone.wait()
        return {"type": "websocket.disconnect", "code": 1000}

    def leave(self):
        self._gone.set()


async def wait_for_observer(hub, session_id):
    for _ in range(100):
        if hub.has_observers(session_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError("observer never subscribed")


class TestLogStream:

    @pytest.mark.asyncio
    async def test_missing_session_id_is_rejected(self):
        websocket = FakeWebSocket()

        await stream_logs(websocket, None, LogBroadcastHub())

        assert websocket.close_code == 1008
        assert not websocket.accepted

    @pytest.mark.asyncio
    async def test_streams_until_exit_event(self):
        hub = LogBroadcastHub()
        websocket = FakeWebSocket()
        stream = asyncio.create_task(stream_logs(websocket, "s1", hub))
        await wait_for_observer(hub, "s1")

        hub.publish("s1", LogEvent(session_id="s1", kind=LogEventKind.LOG, message="compiling"))
        hub.publish("s1", LogEvent(session_id="s1", kind=LogEventKind.ERROR, message="warning"))
        hub.publish("s1", LogEvent(session_id="s1", kind=LogEventKind.EXIT, message="Build finished", exit_code=0))
        await asyncio.wait_for(stream, timeout=5)

        assert [m["type"] for m in websocket.sent] == ["log", "error", "exit"]
        assert websocket.sent[0]["message"] == "compiling"
        assert websocket.close_code == 1000
        assert not hub.has_observers("s1")

    @pytest.mark.asyncio
    async def test_client_disconnect_unsubscribes(self):
        hub = LogBroadcastHub()
        websocket = FakeWebSocket()
        stream = asyncio.create_task(stream_logs(websocket, "s1", hub))
        await wait_for_observer(hub, "s1")

        websocket.leave()
        await asyncio.wait_for(stream, timeout=5)

        assert not hub.has_observers("s1")
        assert hub.publish("s1", LogEvent(session_id="s1", kind=LogEventKind.LOG, message="late")) == 0

    @pytest.mark.asyncio
    async def test_observers_of_other_sessions_see_nothing(self):
        hub = LogBroadcastHub()
        websocket = FakeWebSocket()
        stream = asyncio.create_task(stream_logs(websocket, "s1", hub))
        await wait_for_observer(hub, "s1")

        hub.publish("s2", LogEvent(session_id="s2", kind=LogEventKind.LOG, message="other"))
        await asyncio.sleep(0.05)
        websocket.leave()
        await asyncio.wait_for(stream, timeout=5)

        assert websocket.sent == []

    @pytest.mark.asyncio
    async def test_build_output_reaches_observer(self, orchestrator, flutter_files):
        websocket = FakeWebSocket()
        stream = asyncio.create_task(stream_logs(websocket, "s1", orchestrator.hub))
        await wait_for_observer(orchestrator.hub, "s1")

        workspace = await orchestrator.workspaces.materialize("s1", flutter_files)
        result = await orchestrator.supervisor.run_build("s1", workspace)
        await asyncio.wait_for(stream, timeout=5)

        assert result.success
        messages = [m["message"] for m in websocket.sent]
        assert "Compiling lib/main.dart for the Web..." in messages
        assert websocket.sent[-1]["type"] == "exit"
        assert websocket.sent[-1]["exitCode"] == 0
