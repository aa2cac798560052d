"""
Unit Tests for configuration, error types and middleware helpers
"""
import pytest


class TestSettings:

    def test_defaults(self):
        from sandbox_preview.core.config import Settings

        settings = Settings(_env_file=None)

        assert settings.SERVER_PORT == 3000
        assert settings.SESSION_TTL_SECONDS == 3600
        assert settings.BACKEND_API_BASE_PATH == "/api"
        assert settings.PORT_RANGE_END == settings.PORT_RANGE_START + settings.MAX_CONCURRENT_SESSIONS

    def test_urls(self):
        from sandbox_preview.core.config import Settings

        settings = Settings(_env_file=None, PUBLIC_BASE_URL="https://preview.example.com/")

        assert settings.get_preview_url("abc") == "https://preview.example.com/previews/abc/index.html"
        assert settings.get_api_base_path("abc") == "/previews/backend/abc/api"

    def test_previews_live_under_public_dir(self, tmp_path):
        from sandbox_preview.core.config import Settings

        settings = Settings(_env_file=None, PUBLIC_DIR=str(tmp_path / "public"))

        assert settings.PREVIEWS_PATH == (tmp_path / "public").resolve() / "previews"

    def test_environment_override(self, monkeypatch):
        from sandbox_preview.core.config import Settings

        monkeypatch.setenv("SESSION_TTL_SECONDS", "60")
        monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "10")

        settings = Settings(_env_file=None)

        assert settings.SESSION_TTL_SECONDS == 60
        assert settings.PORT_RANGE_END == settings.PORT_RANGE_START + 10

    @pytest.mark.parametrize("raw, expected", [
        ("*", ["*"]),
        ("http://a.test, http://b.test", ["http://a.test", "http://b.test"]),
        ('["http://a.test"]', ["http://a.test"]),
        ("", []),
    ])
    def test_cors_origins(self, raw, expected):
        from sandbox_preview.core.config import parse_cors_origins

        assert parse_cors_origins(raw) == expected


class TestExceptions:

    def test_error_response_shape(self):
        from sandbox_preview.core.exceptions import BuildFailureError, error_response

        error = BuildFailureError("Sandbox process exited with code 1", stderr="boom", exit_code=1)

        assert error_response(error) == {
            "error": "Sandbox process exited with code 1",
            "code": "BUILD_FAILED",
            "details": {"exit_code": 1, "stderr": "boom"},
        }

    def test_error_response_without_details(self):
        from sandbox_preview.core.exceptions import SandboxPreviewError, error_response

        assert error_response(SandboxPreviewError("nope")) == {"error": "nope", "code": "INTERNAL_ERROR"}

    @pytest.mark.parametrize("error, status", [
        ("InvalidInputError", 400),
        ("SessionNotFoundError", 404),
        ("BuildFailureError", 500),
        ("InfrastructureError", 500),
        ("ConflictError", 500),
        ("PortsExhaustedError", 503),
    ])
    def test_status_codes(self, error, status):
        from sandbox_preview.core import exceptions

        assert getattr(exceptions, error).status_code == status

    def test_unsafe_path_is_invalid_input(self):
        from sandbox_preview.core.exceptions import InvalidInputError, UnsafePathError

        error = UnsafePathError("../x")

        assert isinstance(error, InvalidInputError)
        assert error.code == "UNSAFE_PATH"
        assert error.details == {"field": "files", "path": "../x"}

    def test_infrastructure_error_keeps_cause(self):
        from sandbox_preview.core.exceptions import InfrastructureError

        error = InfrastructureError("spawn failed", cause=FileNotFoundError("docker"))

        assert error.details["cause"] == "FileNotFoundError: docker"


class TestMiddlewareHelpers:

    @pytest.mark.parametrize("path, expected", [
        ("/previews/backend/2f1c7a7e-8d0b-4a53-9d8e-3c1f0b6a2d11/api/widgets", "2f1c7a7e-8d0b-4a53-9d8e-3c1f0b6a2d11"),
        ("/previews/2f1c7a7e-8d0b-4a53-9d8e-3c1f0b6a2d11/index.html", "2f1c7a7e-8d0b-4a53-9d8e-3c1f0b6a2d11"),
        ("/compile", ""),
        ("/previews/not-a-session/index.html", ""),
    ])
    def test_extract_session_id(self, path, expected):
        from sandbox_preview.core.middleware import extract_session_id

        assert extract_session_id(path) == expected

    @pytest.mark.parametrize("path, skipped", [
        ("/health", True),
        ("/previews/abc/main.dart.js", True),
        ("/previews/backend/abc/api/data.json", False),
        ("/compile", False),
    ])
    def test_should_skip_logging(self, path, skipped):
        from sandbox_preview.core.middleware import should_skip_logging

        assert should_skip_logging(path) is skipped


class TestLogging:

    def test_session_event_carries_context(self, caplog):
        import logging
        from sandbox_preview.core.logging_config import logger

        with caplog.at_level(logging.INFO, logger="sandbox_preview"):
            logger.log_session_event("s1", "build_ready", preview_url="http://x")

        record = caplog.records[-1]
        assert "build_ready" in record.getMessage()
        assert record.sandbox_session == "s1"
        assert record.preview_url == "http://x"

    def test_request_log_level_and_fields(self, caplog):
        import logging
        from sandbox_preview.core.logging_config import logger

        with caplog.at_level(logging.INFO, logger="sandbox_preview"):
            logger.log_request("GET", "/compile", 503, 12.5, level=logging.ERROR)

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.event_type == "http_request_complete"
        assert record.http_status == 503
        assert record.duration_ms == 12.5

    @pytest.mark.asyncio
    async def test_middleware_logs_completed_request(self, client, caplog):
        import logging

        with caplog.at_level(logging.INFO, logger="sandbox_preview"):
            await client.get("/previews/backend/00000000-0000-0000-0000-000000000000/api/widgets")

        completed = [r for r in caplog.records if getattr(r, "event_type", None) == "http_request_complete"]
        assert completed[-1].http_status == 404
        assert completed[-1].levelno == logging.WARNING
        assert completed[-1].http_path == "/previews/backend/00000000-0000-0000-0000-000000000000/api/widgets"
