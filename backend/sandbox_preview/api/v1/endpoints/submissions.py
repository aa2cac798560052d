"""
Project submission endpoints

POST /compile          static build -> previewUrl
POST /compile-backend  running backend -> apiBasePath

Both block until the session is usable or has failed and been cleaned up.
Failures propagate as SandboxPreviewError and are rendered by the app's
exception handler.
"""

from fastapi import APIRouter, Depends

from sandbox_preview.schemas.project import (
    BuildSubmissionResponse,
    ErrorResponse,
    ProjectSubmission,
    RunSubmissionResponse,
)
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator

router = APIRouter(tags=["Compile"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid or missing project data"},
    500: {"model": ErrorResponse, "description": "Build failed or sandbox unavailable"},
    503: {"model": ErrorResponse, "description": "No capacity for another backend"},
}


@router.post("/compile", response_model=BuildSubmissionResponse, responses=ERROR_RESPONSES)
async def compile_project(
    submission: ProjectSubmission,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Build the project in a sandbox and publish it as a static preview"""
    session, preview_url = await orchestrator.submit_build(submission.project_name, submission.files)
    return BuildSubmissionResponse(session_id=session.session_id, preview_url=preview_url)


@router.post("/compile-backend", response_model=RunSubmissionResponse, responses=ERROR_RESPONSES)
async def compile_backend(
    submission: ProjectSubmission,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """
    Build and start the project as a backend service.

    Requests under apiBasePath are forwarded to the service until the session
    is evicted (SESSION_TTL_SECONDS after start).
    """
    session, api_base_path = await orchestrator.submit_run(submission.project_name, submission.files)
    return RunSubmissionResponse(
        session_id=session.session_id,
        api_base_path=api_base_path,
        api_url=f"{orchestrator.config.PUBLIC_BASE_URL.rstrip('/')}{api_base_path}",
    )
