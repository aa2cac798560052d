"""
Session Orchestrator - the submission boundary.

Wires the components together and runs the two submission pipelines:

    build: materialize -> run_build -> relocate artifact -> arm eviction -> previewUrl
    run:   allocate port -> materialize -> run_service -> register -> arm eviction -> apiBasePath

Either a session reaches a usable state, or every resource it touched is
reclaimed before the error is raised to the caller.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from sandbox_preview.core.config import Settings, settings as default_settings
from sandbox_preview.core.exceptions import (
    BuildFailureError,
    InfrastructureError,
    InvalidInputError,
    SandboxPreviewError,
)
from sandbox_preview.core.logging_config import logger, set_session_id
from sandbox_preview.models.session import RuntimeEndpoint, Session, SessionKind
from sandbox_preview.services.eviction_scheduler import EvictionScheduler
from sandbox_preview.services.log_hub import LogBroadcastHub
from sandbox_preview.services.port_allocator import PortAllocator
from sandbox_preview.services.process_supervisor import ProcessSupervisor, ServiceHandle
from sandbox_preview.services.sandbox_runtime import DockerSandboxRuntime, SandboxRuntime
from sandbox_preview.services.session_registry import SessionRegistry
from sandbox_preview.services.session_router import SessionRouter
from sandbox_preview.services.workspace_manager import WorkspaceManager


class SessionOrchestrator:
    """Owns one instance of every component for the lifetime of the server"""

    def __init__(self, config: Settings = None, runtime: SandboxRuntime = None):
        self.config = config or default_settings
        self.runtime = runtime or DockerSandboxRuntime()

        self.workspaces = WorkspaceManager(self.config.TEMP_PATH, self.config.PREVIEWS_PATH)
        self.allocator = PortAllocator(self.config.PORT_RANGE_START, self.config.MAX_CONCURRENT_SESSIONS)
        self.hub = LogBroadcastHub(queue_size=self.config.LOG_QUEUE_SIZE)
        self.supervisor = ProcessSupervisor(self.runtime, self.workspaces, self.hub)
        self.registry = SessionRegistry()
        self.scheduler = EvictionScheduler(
            registry=self.registry,
            workspaces=self.workspaces,
            supervisor=self.supervisor,
            allocator=self.allocator,
            ttl_seconds=self.config.SESSION_TTL_SECONDS,
        )
        self.router = SessionRouter(
            registry=self.registry,
            sandbox_host=self.config.SANDBOX_HOST,
            api_base_path=self.config.BACKEND_API_BASE_PATH,
            timeout=self.config.PROXY_TIMEOUT_SECONDS,
            connect_timeout=self.config.PROXY_CONNECT_TIMEOUT_SECONDS,
        )

    # ------------------------------------------------------------------ lifecycle

    async def startup(self) -> None:
        self.workspaces.ensure_roots()
        if self.config.REAP_ORPHANS_ON_STARTUP:
            reaped = await self.runtime.reap_orphans()
            if reaped:
                logger.warning(f"[Orchestrator] Reaped {reaped} sandboxes left by a previous run")
        logger.info(
            f"[Orchestrator] Ready: workspaces={self.workspaces.temp_root}, "
            f"previews={self.workspaces.previews_root}, "
            f"ports={self.allocator.start}-{self.allocator.end - 1}"
        )

    async def shutdown(self) -> None:
        """Stop every live session, then release shared clients"""
        released = await self.scheduler.shutdown()
        logger.info(f"[Orchestrator] Shutdown released {released} sessions")
        await self.router.close()
        await self.runtime.close()

    # ------------------------------------------------------------------ submissions

    @staticmethod
    def _validate(project_name: Any, files: Any) -> None:
        if not isinstance(project_name, str) or not project_name.strip():
            raise InvalidInputError(field="projectName")
        if not isinstance(files, Mapping):
            raise InvalidInputError(field="files")

    async def _describe_workspace(self, session_id: str) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            listing = await asyncio.to_thread(self.workspaces.describe, session_id)
            logger.debug(f"[Orchestrator] Workspace of {session_id}:\n{listing}")

    async def submit_build(self, project_name: str, files: Mapping[str, Any]) -> Tuple[Session, str]:
        """
        Build a project into a static preview.

        Returns:
            (session, previewUrl)

        Raises:
            InvalidInputError, BuildFailureError, InfrastructureError
        """
        self._validate(project_name, files)
        session = Session(kind=SessionKind.BUILD, project_name=project_name)
        set_session_id(session.session_id)
        logger.log_session_event(session.session_id, "build_submitted", project=project_name, files=len(files))

        try:
            session.workspace_path = await self.workspaces.materialize(session.session_id, files, SessionKind.BUILD)
            await self._describe_workspace(session.session_id)

            result = await self.supervisor.run_build(session.session_id, session.workspace_path)
            if not result.success:
                raise BuildFailureError(result.error, stderr=result.stderr, exit_code=result.exit_code)

            await self.scheduler.arm_build(session, result.artifact_path)
        except SandboxPreviewError as e:
            logger.warning(f"[Orchestrator] Build {session.session_id} failed: {e.code}: {e.message}")
            await self.scheduler.discard(session)
            raise
        except Exception as e:
            logger.error(f"[Orchestrator] Build {session.session_id} crashed: {e}", exc_info=True)
            await self.scheduler.discard(session)
            raise InfrastructureError("Unexpected failure while building project", cause=e) from e

        preview_url = self.config.get_preview_url(session.session_id)
        logger.log_session_event(session.session_id, "build_ready", preview_url=preview_url)
        return session, preview_url

    async def submit_run(self, project_name: str, files: Mapping[str, Any]) -> Tuple[Session, str]:
        """
        Start a project as a long-running backend behind the router.

        Returns:
            (session, apiBasePath)

        Raises:
            InvalidInputError, BuildFailureError, InfrastructureError
        """
        self._validate(project_name, files)
        session = Session(kind=SessionKind.RUN, project_name=project_name)
        set_session_id(session.session_id)
        logger.log_session_event(session.session_id, "run_submitted", project=project_name, files=len(files))

        port: Optional[int] = None
        handle: Optional[ServiceHandle] = None
        try:
            # Reserved before the first suspension; no other session can be handed this port
            port = self.allocator.allocate()
            session.workspace_path = await self.workspaces.materialize(session.session_id, files, SessionKind.RUN)
            await self._describe_workspace(session.session_id)

            handle = await self.supervisor.run_service(
                session.session_id,
                session.workspace_path,
                port,
                on_exit=self._on_service_exit,
            )

            endpoint = RuntimeEndpoint(session_id=session.session_id, port=port, handle=handle)
            # Register and arm without suspending in between
            self.registry.register(session.session_id, endpoint)
            self.scheduler.arm_service(session, endpoint)
        except SandboxPreviewError as e:
            logger.warning(f"[Orchestrator] Run {session.session_id} failed: {e.code}: {e.message}")
            await self.scheduler.discard(session, port=port, handle=handle)
            raise
        except Exception as e:
            logger.error(f"[Orchestrator] Run {session.session_id} crashed: {e}", exc_info=True)
            await self.scheduler.discard(session, port=port, handle=handle)
            raise InfrastructureError("Unexpected failure while starting backend", cause=e) from e

        api_base_path = self.config.get_api_base_path(session.session_id)
        logger.log_session_event(session.session_id, "run_ready", port=port, api_base_path=api_base_path)
        return session, api_base_path

    async def _on_service_exit(self, handle: ServiceHandle) -> None:
        """A service died without being stopped; free its resources now"""
        await self.scheduler.evict(handle.session_id, reason=f"service exited with code {handle.exit_code}")

    # ------------------------------------------------------------------ queries

    def get_session_expiry(self, session_id: str) -> Dict[str, Any]:
        return self.scheduler.get_session_expiry(session_id)

    def health(self) -> Dict[str, Any]:
        return {
            "build_sessions": self.scheduler.armed_count(SessionKind.BUILD),
            "run_sessions": len(self.registry),
            "ports_available": self.allocator.available,
            "log_observers": self.hub.observer_count(),
            "evicted_total": self.scheduler.stats["total_evicted"],
        }


# Process-wide instance, created on first use
_orchestrator: Optional[SessionOrchestrator] = None


def get_orchestrator() -> SessionOrchestrator:
    """FastAPI dependency returning the process-wide orchestrator"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SessionOrchestrator()
    return _orchestrator
