"""
Project submission schemas for /compile and /compile-backend
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Dict, Optional, Any
from datetime import datetime


# ==================== Request Schemas ====================

class ProjectSubmission(BaseModel):
    """Files of one project, keyed by caller-relative path"""
    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(..., alias="projectName", min_length=1, max_length=200)
    files: Dict[str, str] = Field(..., description="Mapping of relative path to file content")

    @field_validator("project_name")
    @classmethod
    def project_name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("projectName must not be blank")
        return v.strip()


# ==================== Response Schemas ====================

class BuildSubmissionResponse(BaseModel):
    """A finished static build"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    preview_url: str = Field(..., alias="previewUrl")


class RunSubmissionResponse(BaseModel):
    """A running backend, reachable under api_base_path"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    api_base_path: str = Field(..., alias="apiBasePath")
    api_url: str = Field(..., alias="apiUrl")


class SessionExpiryResponse(BaseModel):
    """Remaining lifetime of an armed session"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    kind: str
    armed_at: datetime = Field(..., alias="armedAt")
    expires_at: datetime = Field(..., alias="expiresAt")
    seconds_remaining: int = Field(..., alias="secondsRemaining")
    port: Optional[int] = None


class ErrorResponse(BaseModel):
    """Structured error returned by every failing submission"""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
