"""
Eviction Scheduler - time-boxes every session and guarantees release.

Every session that reaches a usable state gets an EvictionTicket with a
single-shot timer (SESSION_TTL_SECONDS, one hour by default). Three triggers
can release a ticket: the timer, an explicit evict(), and shutdown(). The
first one starts the release; every later trigger awaits that same release,
so each resource is freed exactly once.

Release:
- build: delete the public artifact
- run:   unregister, stop the service, return the port, delete the workspace
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from sandbox_preview.core.exceptions import InfrastructureError, SessionNotFoundError
from sandbox_preview.core.logging_config import logger
from sandbox_preview.models.session import RuntimeEndpoint, Session, SessionKind
from sandbox_preview.services.port_allocator import PortAllocator
from sandbox_preview.services.process_supervisor import ProcessSupervisor, ServiceHandle
from sandbox_preview.services.session_registry import SessionRegistry
from sandbox_preview.services.workspace_manager import WorkspaceManager


@dataclass
class EvictionTicket:
    session: Session
    armed_at: datetime
    expires_at: datetime
    endpoint: Optional[RuntimeEndpoint] = None
    artifact_path: Optional[Path] = None
    timer: Optional[asyncio.Task] = field(default=None, repr=False)
    release: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def seconds_remaining(self) -> int:
        return max(0, int((self.expires_at - datetime.utcnow()).total_seconds()))


class EvictionScheduler:

    def __init__(
        self,
        registry: SessionRegistry,
        workspaces: WorkspaceManager,
        supervisor: ProcessSupervisor,
        allocator: PortAllocator,
        ttl_seconds: float = 3600,
    ):
        self.registry = registry
        self.workspaces = workspaces
        self.supervisor = supervisor
        self.allocator = allocator
        self.ttl = timedelta(seconds=ttl_seconds)
        self._tickets: Dict[str, EvictionTicket] = {}
        self._closed = False

        self.stats = {
            "total_evicted": 0,
            "expired": 0,
            "last_eviction": None,
        }

    # ------------------------------------------------------------------ arming

    def _new_ticket(self, session: Session, **kwargs) -> EvictionTicket:
        if self._closed:
            raise InfrastructureError("Orchestrator is shutting down")
        now = datetime.utcnow()
        ticket = EvictionTicket(session=session, armed_at=now, expires_at=now + self.ttl, **kwargs)
        self._tickets[session.session_id] = ticket
        ticket.timer = asyncio.create_task(self._expire_later(ticket))
        logger.info(
            f"[Eviction] Armed {session.kind.value} session {session.session_id}, "
            f"expires at {ticket.expires_at.isoformat()}"
        )
        return ticket

    async def arm_build(self, session: Session, artifact_path: Path) -> EvictionTicket:
        """The artifact now lives in the preview store; the workspace is no longer needed"""
        await self._safely(f"destroy workspace of {session.session_id}", self.workspaces.destroy(session.session_id))
        return self._new_ticket(session, artifact_path=artifact_path)

    def arm_service(self, session: Session, endpoint: RuntimeEndpoint) -> EvictionTicket:
        """Arm a registered run session. Does not suspend."""
        ticket = self._new_ticket(session, endpoint=endpoint)
        endpoint.expires_at = ticket.expires_at
        return ticket

    async def _expire_later(self, ticket: EvictionTicket) -> None:
        await asyncio.sleep(self.ttl.total_seconds())
        logger.info(f"[Eviction] Session {ticket.session_id} reached its lifetime")
        self.stats["expired"] += 1
        await self.evict(ticket.session_id, reason="expired")

    # ------------------------------------------------------------------ release

    async def evict(self, session_id: str, reason: str = "forced") -> bool:
        """
        Release an armed session now. Concurrent and repeated calls are no-ops
        that wait for the release already in flight.

        Returns:
            True for the call that performed the release
        """
        ticket = self._tickets.get(session_id)
        if ticket is None:
            return False

        first = ticket.release is None
        if first:
            ticket.release = asyncio.ensure_future(self._release(ticket, reason))
            if ticket.timer is not None and ticket.timer is not asyncio.current_task():
                ticket.timer.cancel()
        await asyncio.shield(ticket.release)
        return first

    async def _release(self, ticket: EvictionTicket, reason: str) -> None:
        session_id = ticket.session_id
        logger.info(f"[Eviction] Releasing {ticket.session.kind.value} session {session_id} ({reason})")
        try:
            if ticket.session.kind == SessionKind.BUILD:
                await self._safely(f"delete artifact of {session_id}", self.workspaces.delete_artifact(session_id))
                await self._safely(f"destroy workspace of {session_id}", self.workspaces.destroy(session_id))
            else:
                await self._release_service(session_id, ticket.endpoint)
        finally:
            self._tickets.pop(session_id, None)
            self.stats["total_evicted"] += 1
            self.stats["last_eviction"] = datetime.utcnow().isoformat()

    async def _release_service(self, session_id: str, endpoint: Optional[RuntimeEndpoint]) -> None:
        # Unrouteable first, then stop; the port goes back only once the process is gone
        removed = self.registry.remove(session_id)
        endpoint = endpoint or removed
        if endpoint is not None:
            await self._safely(f"stop service of {session_id}", self.supervisor.stop(endpoint.handle))
            self.allocator.release(endpoint.port)
        await self._safely(f"destroy workspace of {session_id}", self.workspaces.destroy(session_id))

    async def discard(
        self,
        session: Session,
        port: Optional[int] = None,
        handle: Optional[ServiceHandle] = None,
    ) -> None:
        """
        Reclaim everything a failed submission touched. Never raises; cleanup
        errors are logged so the original failure reaches the caller.
        """
        session_id = session.session_id
        if session_id in self._tickets:
            await self.evict(session_id, reason="submission failed")
            return

        self.registry.remove(session_id)
        if handle is not None:
            await self._safely(f"stop service of {session_id}", self.supervisor.stop(handle))
        elif session.kind == SessionKind.RUN:
            # The image (or container) may exist even though no handle was returned
            await self._safely(f"remove sandbox of {session_id}", self.supervisor.runtime.stop_service(session_id))
        if port is not None:
            self.allocator.release(port)
        await self._safely(f"destroy workspace of {session_id}", self.workspaces.destroy(session_id))
        await self._safely(f"delete artifact of {session_id}", self.workspaces.delete_artifact(session_id))
        logger.info(f"[Eviction] Discarded failed session {session_id}")

    async def _safely(self, what: str, operation) -> None:
        try:
            await operation
        except Exception as e:
            logger.error(f"[Eviction] Failed to {what}: {type(e).__name__}: {e}", exc_info=True)

    # ------------------------------------------------------------------ shutdown

    async def shutdown(self) -> int:
        """
        Release every armed session and every registered endpoint, waiting
        for all of them. No new session can be armed afterwards.

        Returns:
            Number of sessions released
        """
        self._closed = True
        session_ids = list(self._tickets)
        logger.info(f"[Eviction] Shutdown sweep over {len(session_ids)} sessions")

        await asyncio.gather(*(self.evict(session_id, reason="shutdown") for session_id in session_ids))

        # Registered but never armed (should not happen); still must not outlive us
        stray = self.registry.session_ids()
        for session_id in stray:
            logger.warning(f"[Eviction] Registered session {session_id} had no ticket")
            await self._release_service(session_id, None)

        return len(session_ids) + len(stray)

    # ------------------------------------------------------------------ queries

    def get_ticket(self, session_id: str) -> EvictionTicket:
        """
        Raises:
            SessionNotFoundError: the session is not armed
        """
        ticket = self._tickets.get(session_id)
        if ticket is None:
            raise SessionNotFoundError(session_id)
        return ticket

    def get_session_expiry(self, session_id: str) -> Dict:
        ticket = self.get_ticket(session_id)
        return {
            "session_id": session_id,
            "kind": ticket.session.kind.value,
            "armed_at": ticket.armed_at,
            "expires_at": ticket.expires_at,
            "seconds_remaining": ticket.seconds_remaining(),
            "port": ticket.endpoint.port if ticket.endpoint else None,
        }

    def armed_count(self, kind: Optional[SessionKind] = None) -> int:
        if kind is None:
            return len(self._tickets)
        return sum(1 for ticket in self._tickets.values() if ticket.session.kind == kind)

    @property
    def closed(self) -> bool:
        return self._closed
