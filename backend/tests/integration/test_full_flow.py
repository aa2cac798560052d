"""
Integration Tests - Complete Session Flows
Submission over HTTP, routing, eviction and shutdown against real subprocesses
"""
import httpx
import pytest
from httpx import AsyncClient


class TestBackendSessionFlow:

    @pytest.mark.asyncio
    async def test_submit_route_evict(self, client: AsyncClient, orchestrator, sandbox_runtime):
        backend_paths = []

        def backend(request: httpx.Request) -> httpx.Response:
            backend_paths.append(request.url.path)
            return httpx.Response(200, json={'widgets': ['a', 'b']})

        orchestrator.router._http_client = httpx.AsyncClient(transport=httpx.MockTransport(backend))

        # 1. Start a backend session
        created = await client.post('/compile-backend', json={'projectName': 'shop', 'files': {'index.js': ''}})
        assert created.status_code == 200
        session_id = created.json()['sessionId']
        api_base_path = created.json()['apiBasePath']
        port = orchestrator.registry.lookup(session_id).port

        # 2. Route a request to it
        response = await client.get(f'{api_base_path}/widgets')
        assert response.status_code == 200
        assert response.json() == {'widgets': ['a', 'b']}
        assert backend_paths == ['/api/widgets']

        # 3. Evict; the session becomes unreachable and its port free
        await orchestrator.scheduler.evict(session_id)
        response = await client.get(f'{api_base_path}/widgets')
        assert response.status_code == 404
        assert backend_paths == ['/api/widgets']
        assert not orchestrator.allocator.is_allocated(port)
        assert sandbox_runtime.stop_calls == [session_id]

        # 4. Session info is gone as well
        assert (await client.get(f'/sessions/{session_id}')).status_code == 404


class TestShutdownFlow:

    @pytest.mark.asyncio
    async def test_shutdown_stops_all_backends(self, client: AsyncClient, orchestrator, sandbox_runtime):
        session_ids = []
        for name in ('first', 'second'):
            response = await client.post('/compile-backend', json={'projectName': name, 'files': {'index.js': ''}})
            session_ids.append(response.json()['sessionId'])
        handles = [orchestrator.registry.lookup(session_id).handle for session_id in session_ids]

        await orchestrator.shutdown()

        assert sorted(sandbox_runtime.stop_calls) == sorted(session_ids)
        assert all(handle.process.returncode is not None for handle in handles)
        assert len(orchestrator.registry) == 0
        assert sandbox_runtime.closed is True


class TestBuildSessionFlow:

    @pytest.mark.asyncio
    async def test_build_then_expire(self, client: AsyncClient, orchestrator, sandbox_runtime):
        response = await client.post('/compile', json={
            'projectName': 'counter',
            'files': {'/lib/main.dart': 'void main() {}'},
        })
        assert response.status_code == 200
        session_id = response.json()['sessionId']

        artifact = orchestrator.workspaces.artifact_path(session_id)
        assert (artifact / 'index.html').exists()
        assert not orchestrator.workspaces.workspace_path(session_id).exists()

        info = (await client.get(f'/sessions/{session_id}')).json()
        assert info['kind'] == 'build'
        assert info['port'] is None

        await orchestrator.scheduler.evict(session_id)

        assert not artifact.exists()
        assert sandbox_runtime.stop_calls == []
