"""
Unit Tests for Session Registry
"""
from unittest.mock import MagicMock

import pytest

from sandbox_preview.core.exceptions import ConflictError, SessionNotFoundError
from sandbox_preview.models.session import RuntimeEndpoint
from sandbox_preview.services.session_registry import SessionRegistry


def endpoint(session_id, port):
    return RuntimeEndpoint(session_id=session_id, port=port, handle=MagicMock())


class TestSessionRegistry:

    def test_register_then_lookup(self):
        registry = SessionRegistry()
        registry.register("s1", endpoint("s1", 35001))

        assert registry.lookup("s1").port == 35001
        assert "s1" in registry
        assert len(registry) == 1

    def test_lookup_unknown(self):
        registry = SessionRegistry()

        with pytest.raises(SessionNotFoundError) as exc_info:
            registry.lookup("missing")

        assert exc_info.value.details == {"session_id": "missing"}

    def test_duplicate_registration_conflicts(self):
        registry = SessionRegistry()
        registry.register("s1", endpoint("s1", 35001))

        with pytest.raises(ConflictError):
            registry.register("s1", endpoint("s1", 35002))

        assert registry.lookup("s1").port == 35001

    def test_remove_is_idempotent(self):
        registry = SessionRegistry()
        registered = endpoint("s1", 35001)
        registry.register("s1", registered)

        assert registry.remove("s1") is registered
        assert registry.remove("s1") is None
        with pytest.raises(SessionNotFoundError):
            registry.lookup("s1")

    def test_ports_and_ids(self):
        registry = SessionRegistry()
        registry.register("s1", endpoint("s1", 35001))
        registry.register("s2", endpoint("s2", 35002))

        assert sorted(registry.session_ids()) == ["s1", "s2"]
        assert sorted(registry.ports()) == [35001, 35002]
