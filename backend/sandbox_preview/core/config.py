from pydantic_settings import BaseSettings
from typing import List, Any
import json
from pathlib import Path


def parse_cors_origins(v: Any) -> List[str]:
    """Parse CORS origins from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON parsing first
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [origin.strip() for origin in v.split(',') if origin.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "Sandbox Preview"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Server Configuration
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 3000
    PUBLIC_BASE_URL: str = "http://localhost:3000"  # Used to build previewUrl
    MAX_REQUEST_SIZE_MB: int = 10

    # ==========================================
    # CORS (stored as comma-separated string, parsed to list)
    # ==========================================
    CORS_ORIGINS_STR: str = "*"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return parse_cors_origins(self.CORS_ORIGINS_STR)

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty disables the file handler
    LOG_QUEUE_SIZE: int = 1000  # Pending log events per observer

    # ==========================================
    # Storage
    # ==========================================
    TEMP_DIR: str = "temp"  # Private per-session workspaces
    PUBLIC_DIR: str = "public"  # Served statically; previews live in PUBLIC_DIR/previews

    # ==========================================
    # Sandbox (Docker)
    # ==========================================
    DOCKER_BINARY: str = "docker"
    BUILD_IMAGE: str = "flutter-preview"
    BACKEND_DOCKERFILE: str = str(Path(__file__).resolve().parent.parent.parent / "docker" / "backend.Dockerfile")
    BACKEND_INTERNAL_PORT: int = 3000
    BACKEND_API_BASE_PATH: str = "/api"
    SANDBOX_HOST: str = "localhost"
    CONTAINER_STOP_TIMEOUT: int = 10  # seconds before docker kills the container
    CONTAINER_LABEL: str = "sandbox-preview.session"
    REAP_ORPHANS_ON_STARTUP: bool = True

    # ==========================================
    # Ports
    # ==========================================
    PORT_RANGE_START: int = 35001
    MAX_CONCURRENT_SESSIONS: int = 200

    # ==========================================
    # Session lifetime
    # ==========================================
    SESSION_TTL_SECONDS: int = 3600  # 1 hour

    # ==========================================
    # Preview proxy
    # ==========================================
    PROXY_TIMEOUT_SECONDS: float = 30.0
    PROXY_CONNECT_TIMEOUT_SECONDS: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def TEMP_PATH(self) -> Path:
        return Path(self.TEMP_DIR).resolve()

    @property
    def PREVIEWS_PATH(self) -> Path:
        return Path(self.PUBLIC_DIR).resolve() / "previews"

    @property
    def PORT_RANGE_END(self) -> int:
        """Exclusive upper bound of the port pool"""
        return self.PORT_RANGE_START + self.MAX_CONCURRENT_SESSIONS

    def get_preview_url(self, session_id: str) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}/previews/{session_id}/index.html"

    def get_api_base_path(self, session_id: str) -> str:
        return f"/previews/backend/{session_id}/api"


settings = Settings()
