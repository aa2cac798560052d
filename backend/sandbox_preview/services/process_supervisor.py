"""
Process Supervisor - one external sandboxed process per call.

Every stdout/stderr line is published to the LogBroadcastHub the moment it is
read (stdout -> "log", stderr -> "error"). When the producing process ends, a
terminal "exit" event goes out on the same channel.

- run_build():   one-shot build; zero exit relocates build/web to the preview store
- run_service(): prepare image, start detached service, follow its logs
- stop():        idempotent; concurrent callers share a single stop
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from sandbox_preview.core.exceptions import BuildFailureError, InfrastructureError
from sandbox_preview.core.logging_config import logger
from sandbox_preview.models.session import LogEvent, LogEventKind
from sandbox_preview.services.log_hub import LogBroadcastHub
from sandbox_preview.services.sandbox_runtime import SandboxRuntime
from sandbox_preview.services.workspace_manager import WorkspaceManager


BUILD_OUTPUT_DIR = Path("build") / "web"


@dataclass
class BuildResult:
    """Terminal outcome of a build"""
    success: bool
    exit_code: int
    artifact_path: Optional[Path] = None
    error: Optional[str] = None
    stderr: str = ""


class ServiceHandle:
    """Owns the log-follower process of a running service"""

    def __init__(self, session_id: str, port: int, process: asyncio.subprocess.Process):
        self.session_id = session_id
        self.port = port
        self.process = process
        self.exit_code: Optional[int] = None
        self.watch_task: Optional[asyncio.Task] = None
        self.exit_callback_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Future] = None

    @property
    def stopping(self) -> bool:
        return self._stop_task is not None

    @property
    def stopped(self) -> bool:
        return self._stop_task is not None and self._stop_task.done()

    def __repr__(self) -> str:
        return f"ServiceHandle(session_id={self.session_id!r}, port={self.port})"


ExitCallback = Callable[[ServiceHandle], Awaitable[None]]


class ProcessSupervisor:
    """Launches sandbox processes and forwards their output to the log hub"""

    def __init__(
        self,
        runtime: SandboxRuntime,
        workspaces: WorkspaceManager,
        hub: LogBroadcastHub,
        terminate_grace_seconds: float = 5.0,
    ):
        self.runtime = runtime
        self.workspaces = workspaces
        self.hub = hub
        self.terminate_grace_seconds = terminate_grace_seconds

    # ------------------------------------------------------------------ output

    def _emit(self, session_id: str, kind: LogEventKind, message: str, exit_code: Optional[int] = None) -> None:
        self.hub.publish(session_id, LogEvent(session_id=session_id, kind=kind, message=message, exit_code=exit_code))

    async def _pump(
        self,
        session_id: str,
        stream: Optional[asyncio.StreamReader],
        kind: LogEventKind,
        sink: Optional[List[str]] = None,
    ) -> None:
        """Forward one output stream line by line"""
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; the oversized chunk is discarded
                logger.warning(f"[Supervisor] Oversized output line dropped for {session_id}")
                continue
            if not raw:
                return
            message = raw.decode("utf-8", errors="replace").strip()
            if not message:
                continue
            if sink is not None:
                sink.append(message)
            self._emit(session_id, kind, message)

    async def _drain(self, session_id: str, process: asyncio.subprocess.Process) -> Tuple[int, str]:
        """Stream both pipes until EOF and wait for the exit code"""
        stderr_lines: List[str] = []
        await asyncio.gather(
            self._pump(session_id, process.stdout, LogEventKind.LOG),
            self._pump(session_id, process.stderr, LogEventKind.ERROR, stderr_lines),
        )
        exit_code = await process.wait()
        return exit_code, "\n".join(stderr_lines)

    # ------------------------------------------------------------------ build

    async def run_build(self, session_id: str, workspace: Path) -> BuildResult:
        """
        Run the sandboxed build to completion.

        Returns:
            BuildResult; on success artifact_path points into the preview store

        Raises:
            InfrastructureError: the sandbox could not be spawned or the artifact not relocated
        """
        exit_code: Optional[int] = None
        relocated = False
        try:
            process = await self.runtime.start_build(session_id, workspace)
            exit_code, stderr = await self._drain(session_id, process)

            if exit_code != 0:
                error = f"Sandbox process exited with code {exit_code}"
                logger.error(f"[Supervisor] Build failed for {session_id}: {error}")
                self._emit(session_id, LogEventKind.ERROR, error)
                return BuildResult(success=False, exit_code=exit_code, error=error, stderr=stderr or error)

            artifact = await self.workspaces.relocate_artifact(
                session_id,
                Path(workspace) / BUILD_OUTPUT_DIR,
                self.workspaces.artifact_path(session_id),
            )
            relocated = True
            logger.info(f"[Supervisor] Build succeeded for {session_id}")
            return BuildResult(success=True, exit_code=exit_code, artifact_path=artifact, stderr=stderr)
        finally:
            self._emit(
                session_id,
                LogEventKind.EXIT,
                "Build finished" if relocated else "Build stopped",
                exit_code=exit_code,
            )

    # ------------------------------------------------------------------ service

    async def run_service(
        self,
        session_id: str,
        workspace: Path,
        port: int,
        on_exit: Optional[ExitCallback] = None,
    ) -> ServiceHandle:
        """
        Prepare and start a long-running service bound to `port`.

        on_exit is invoked (in its own task) if the service ends without stop().

        Raises:
            BuildFailureError: image preparation exited non-zero
            InfrastructureError: the sandbox could not be spawned or started
        """
        prepare = await self.runtime.prepare_service(session_id, workspace)
        if prepare is not None:
            exit_code, stderr = await self._drain(session_id, prepare)
            if exit_code != 0:
                message = f"Failed to build backend image (exit code {exit_code})"
                self._emit(session_id, LogEventKind.ERROR, message)
                self._emit(session_id, LogEventKind.EXIT, "Build stopped", exit_code=exit_code)
                raise BuildFailureError(message, stderr=stderr, exit_code=exit_code)

        process = await self.runtime.start_service(session_id, workspace, port)
        handle = ServiceHandle(session_id, port, process)
        handle.watch_task = asyncio.create_task(self._follow(handle, on_exit))
        logger.info(f"[Supervisor] Service running for {session_id} on port {port}")
        return handle

    async def _follow(self, handle: ServiceHandle, on_exit: Optional[ExitCallback]) -> None:
        exit_code, _ = await self._drain(handle.session_id, handle.process)
        handle.exit_code = exit_code
        self._emit(handle.session_id, LogEventKind.EXIT, f"Service exited with code {exit_code}", exit_code=exit_code)

        if handle.stopping:
            return
        logger.warning(f"[Supervisor] Service for {handle.session_id} exited on its own (code {exit_code})")
        if on_exit is not None:
            handle.exit_callback_task = asyncio.create_task(on_exit(handle))

    async def stop(self, handle: ServiceHandle) -> bool:
        """
        Stop a service. Safe to call any number of times, concurrently.

        Returns:
            True for the call that actually performed the stop
        """
        first = handle._stop_task is None
        if first:
            # Flag flips before the first suspension point
            handle._stop_task = asyncio.ensure_future(self._stop(handle))
        await asyncio.shield(handle._stop_task)
        return first

    async def _stop(self, handle: ServiceHandle) -> None:
        logger.info(f"[Supervisor] Stopping service for {handle.session_id}")
        try:
            await self.runtime.stop_service(handle.session_id)
        except InfrastructureError as e:
            logger.error(f"[Supervisor] Runtime stop failed for {handle.session_id}: {e.message}")
        finally:
            await self._terminate(handle.process)

        if handle.watch_task is not None and handle.watch_task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(handle.watch_task), timeout=self.terminate_grace_seconds)
            except asyncio.TimeoutError:
                handle.watch_task.cancel()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
