"""
Sandbox Preview - Test Configuration and Fixtures
"""
import os
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport

# Set testing environment before settings are loaded
os.environ['ENVIRONMENT'] = 'testing'
os.environ['LOG_LEVEL'] = 'DEBUG'
os.environ['REAP_ORPHANS_ON_STARTUP'] = 'false'

from sandbox_preview.core.config import Settings
from sandbox_preview.main import app
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator
from tests.mocks.mock_sandbox import MockSandboxRuntime


TEST_PORT_START = 45001
TEST_POOL_SIZE = 4


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing every directory into tmp_path"""
    return Settings(
        TEMP_DIR=str(tmp_path / "temp"),
        PUBLIC_DIR=str(tmp_path / "public"),
        PUBLIC_BASE_URL="http://preview.test",
        PORT_RANGE_START=TEST_PORT_START,
        MAX_CONCURRENT_SESSIONS=TEST_POOL_SIZE,
        SESSION_TTL_SECONDS=3600,
        REAP_ORPHANS_ON_STARTUP=False,
        SANDBOX_HOST="sandbox.test",
    )


@pytest.fixture
def sandbox_runtime() -> MockSandboxRuntime:
    return MockSandboxRuntime()


@pytest.fixture
async def orchestrator(test_settings, sandbox_runtime) -> AsyncGenerator[SessionOrchestrator, None]:
    """A started orchestrator; every session it still holds is released afterwards"""
    orchestrator = SessionOrchestrator(config=test_settings, runtime=sandbox_runtime)
    await orchestrator.startup()
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
async def client(orchestrator: SessionOrchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create test client bound to the test orchestrator"""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def flutter_files():
    """A minimal project with its own manifest"""
    return {
        "/pubspec.yaml": "name: my_app\nflutter:\n  uses-material-design: true\n",
        "/lib/main.dart": "void main() => runApp(const MyApp());\n",
    }
