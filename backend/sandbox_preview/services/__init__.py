from sandbox_preview.services.workspace_manager import WorkspaceManager
from sandbox_preview.services.port_allocator import PortAllocator
from sandbox_preview.services.log_hub import LogBroadcastHub, Subscription
from sandbox_preview.services.sandbox_runtime import SandboxRuntime, DockerSandboxRuntime
from sandbox_preview.services.process_supervisor import ProcessSupervisor, ServiceHandle, BuildResult
from sandbox_preview.services.session_registry import SessionRegistry
from sandbox_preview.services.eviction_scheduler import EvictionScheduler, EvictionTicket
from sandbox_preview.services.session_router import SessionRouter, ForwardTarget
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator

__all__ = [
    # Session resources
    "WorkspaceManager",
    "PortAllocator",
    "SessionRegistry",
    # Sandbox processes and their output
    "SandboxRuntime",
    "DockerSandboxRuntime",
    "ProcessSupervisor",
    "ServiceHandle",
    "BuildResult",
    "LogBroadcastHub",
    "Subscription",
    # Lifetime and routing
    "EvictionScheduler",
    "EvictionTicket",
    "SessionRouter",
    "ForwardTarget",
    "SessionOrchestrator",
    "get_orchestrator",
]
