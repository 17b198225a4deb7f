"""Error taxonomy for search sessions.

Errors raised below the session boundary never cross the async boundary
uncaught: the process manager translates them into ``error`` summaries,
and the session records them as ``ErrorEvent`` entries for diagnostics.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class RgPanelError(Exception):
    """Base class for rgpanel errors."""


class SpawnError(RgPanelError):
    """The search tool could not be started."""

    def __init__(self, command: str, cause: BaseException, stderr: str = ""):
        self.command = command
        self.cause = cause
        self.stderr = stderr
        super().__init__(f"Process error {cause}.\n\nstderr:\n{stderr}")


class ProtocolError(RgPanelError):
    """A line on the tool's stdout could not be decoded."""

    def __init__(self, message: str, line: bytes = b""):
        self.line = line
        # Events decoded from the same chunk before the bad line
        self.partial = None
        snippet = line[:200].decode("utf-8", errors="replace")
        super().__init__(f"{message}: {snippet!r}" if line else message)


class ModeResolutionError(RgPanelError):
    """Neither the document directory nor the workspace root is usable."""


@dataclass
class ErrorEvent:
    """Represents an error surfaced during a session."""
    source: str
    error_type: str
    message: str
    query_id: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'source': self.source,
            'error_type': self.error_type,
            'message': self.message,
            'query_id': self.query_id,
            'context': self.context
        }
