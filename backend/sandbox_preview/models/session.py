"""
Session data model - the unit of isolation.

A session is either a *build* (produces a static artifact, then its sandbox
process exits) or a *run* (a long-lived backend bound to a host port).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from sandbox_preview.services.process_supervisor import ServiceHandle


class SessionKind(str, Enum):
    BUILD = "build"
    RUN = "run"


class LogEventKind(str, Enum):
    LOG = "log"      # stdout line
    ERROR = "error"  # stderr line
    EXIT = "exit"    # terminal message, the producing process is gone


@dataclass
class Session:
    """One caller-submitted project instance"""
    kind: SessionKind
    project_name: str
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    workspace_path: Optional[Path] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RuntimeEndpoint:
    """The port + process pair backing a live run session"""
    session_id: str
    port: int
    handle: "ServiceHandle"
    created_at: datetime = field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None


@dataclass
class LogEvent:
    """Single line of sandbox output, or the terminal exit notice"""
    session_id: str
    kind: LogEventKind
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    exit_code: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind == LogEventKind.EXIT

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "sessionId": self.session_id,
            "type": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        return data
