from fastapi import APIRouter
from sandbox_preview.api.v1.endpoints import submissions, proxy, logs, sessions

api_router = APIRouter()

api_router.include_router(submissions.router)
api_router.include_router(proxy.router)
api_router.include_router(logs.router)
api_router.include_router(sessions.router)
