"""
Session info endpoints
"""

from fastapi import APIRouter, Depends

from sandbox_preview.schemas.project import ErrorResponse, SessionExpiryResponse
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator

router = APIRouter(prefix="/sessions", tags=["Sessions"])


@router.get(
    "/{session_id}",
    response_model=SessionExpiryResponse,
    responses={404: {"model": ErrorResponse, "description": "Session not armed or already evicted"}},
)
async def get_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Remaining lifetime of a build or run session"""
    return SessionExpiryResponse(**orchestrator.get_session_expiry(session_id))
