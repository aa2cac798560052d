"""
Session Router - forwards /previews/backend/{session_id}/api/... to the
session's backend, which sees the request under its own base path (/api/...).

Every request resolves its target through SessionRegistry.lookup(); nothing is
cached, so an evicted session is unreachable from the next request on.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

from sandbox_preview.core.logging_config import logger
from sandbox_preview.core.exceptions import SessionNotFoundError
from sandbox_preview.services.session_registry import SessionRegistry


# Never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "host", "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
})

# Recomputed by the ASGI server for the body we return
RESPONSE_EXCLUDED_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}


@dataclass(frozen=True)
class ForwardTarget:
    session_id: str
    port: int
    path: str
    query: str = ""

    def url(self, host: str, scheme: str = "http") -> str:
        url = f"{scheme}://{host}:{self.port}{self.path}"
        if self.query:
            url += f"?{self.query}"
        return url


class SessionRouter:

    def __init__(
        self,
        registry: SessionRegistry,
        sandbox_host: str = "localhost",
        api_base_path: str = "/api",
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
    ):
        self.registry = registry
        self.sandbox_host = sandbox_host
        self.api_base_path = "/" + api_base_path.strip("/") if api_base_path.strip("/") else ""
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    def resolve(self, session_id: str, sub_path: str = "", query: str = "") -> ForwardTarget:
        """
        Map a routed request onto the live endpoint of its session.

        sub_path is appended to the base path as given, still percent-encoded,
        so a trailing slash or an escaped "?" reaches the backend unchanged.

        Raises:
            SessionNotFoundError: not registered (never existed, a build, or evicted)
        """
        try:
            endpoint = self.registry.lookup(session_id)
        except SessionNotFoundError:
            logger.debug(f"[Router] No live backend for {session_id}")
            raise

        if sub_path and not sub_path.startswith("/"):
            sub_path = "/" + sub_path
        path = f"{self.api_base_path}{sub_path}" or "/"
        return ForwardTarget(session_id=session_id, port=endpoint.port, path=path, query=query)

    # ------------------------------------------------------------------ HTTP

    def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                follow_redirects=False,  # Redirects go back to the caller untouched
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._http_client

    @staticmethod
    def forward_headers(
        headers: Iterable[Tuple[str, str]],
        client_host: Optional[str],
        scheme: str,
    ) -> Dict[str, str]:
        forwarded = {
            key: value for key, value in headers
            if key.lower() not in HOP_BY_HOP_HEADERS
        }
        forwarded["X-Forwarded-For"] = client_host or "127.0.0.1"
        forwarded["X-Forwarded-Proto"] = scheme
        return forwarded

    @staticmethod
    def response_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
        """Filtered header pairs; repeated headers such as Set-Cookie are kept"""
        return [
            (key, value) for key, value in headers
            if key.lower() not in RESPONSE_EXCLUDED_HEADERS
        ]

    async def forward(
        self,
        target: ForwardTarget,
        method: str,
        headers: Dict[str, str],
        body: Optional[bytes] = None,
    ) -> httpx.Response:
        """
        Send one request to the target backend.

        Raises:
            httpx.HTTPError: transport failures (connect, timeout, protocol)
        """
        url = target.url(self.sandbox_host)
        logger.info(f"[Router] {method} {target.session_id} -> {url}")
        return await self.get_http_client().request(
            method=method,
            url=url,
            headers=headers,
            content=body or None,
        )

    def websocket_url(self, target: ForwardTarget) -> str:
        return target.url(self.sandbox_host, scheme="ws")

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
