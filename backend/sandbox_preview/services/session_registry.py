"""
Session Registry - authoritative map of live run sessions to their endpoint.

Single writer path: register() when a service is up, remove() from eviction.
Readers (the router) only ever call lookup().
"""

from typing import Dict, List, Optional

from sandbox_preview.core.exceptions import ConflictError, SessionNotFoundError
from sandbox_preview.core.logging_config import logger
from sandbox_preview.models.session import RuntimeEndpoint


class SessionRegistry:

    def __init__(self):
        self._endpoints: Dict[str, RuntimeEndpoint] = {}

    def register(self, session_id: str, endpoint: RuntimeEndpoint) -> None:
        """
        Raises:
            ConflictError: the session id is already registered
        """
        if session_id in self._endpoints:
            raise ConflictError(session_id)
        self._endpoints[session_id] = endpoint
        logger.info(f"[Registry] Registered {session_id} -> port {endpoint.port}")

    def lookup(self, session_id: str) -> RuntimeEndpoint:
        """
        Raises:
            SessionNotFoundError: never registered, or already evicted
        """
        endpoint = self._endpoints.get(session_id)
        if endpoint is None:
            raise SessionNotFoundError(session_id)
        return endpoint

    def remove(self, session_id: str) -> Optional[RuntimeEndpoint]:
        """Idempotent; returns the removed endpoint if there was one"""
        endpoint = self._endpoints.pop(session_id, None)
        if endpoint is not None:
            logger.info(f"[Registry] Removed {session_id} (port {endpoint.port})")
        return endpoint

    def session_ids(self) -> List[str]:
        return list(self._endpoints)

    def ports(self) -> List[int]:
        return [endpoint.port for endpoint in self._endpoints.values()]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)
