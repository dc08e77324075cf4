"""
Per-request streaming session.

A Session builds the events of one streamed request. It numbers them,
keeps percentages non-decreasing and refuses to build anything after the
terminal event.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from common.models import (
    ErrorEvent,
    ErrorInfo,
    Operation,
    ProgressEvent,
    ResultEvent,
)
from toolserver.tool_registry import ToolHandler

START_STAGE = "start"
COMPLETE_STAGE = "complete"


class SessionState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class Session:
    """State of one streamed request, owned by the engine until it ends."""

    connection_id: str
    request_id: str
    operation: Operation
    handler: ToolHandler
    arguments: Dict[str, Any]
    stage_percentages: Dict[str, int] = field(default_factory=dict)
    current_stage: str = START_STAGE
    current_percentage: int = 0
    sequence: int = 0
    state: SessionState = SessionState.RUNNING
    started_at: float = field(default_factory=time.monotonic)
    queue: "asyncio.Queue[Tuple[Any, ...]]" = field(default_factory=asyncio.Queue)
    task: Optional["asyncio.Task[Any]"] = None

    @property
    def finished(self) -> bool:
        return self.state != SessionState.RUNNING

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000, 2)

    def _envelope(self) -> Dict[str, Any]:
        if self.finished:
            raise RuntimeError(
                f"Session {self.request_id} is {self.state.value}; no further events allowed"
            )
        fields = {
            "request_id": self.request_id,
            "connection_id": self.connection_id,
            "operation": self.operation,
            "sequence": self.sequence,
        }
        self.sequence += 1
        return fields

    def progress(
        self,
        stage: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        percentage: Optional[int] = None,
    ) -> ProgressEvent:
        """Progress event for ``stage``; the percentage never goes backwards."""
        if percentage is None:
            percentage = self.stage_percentages.get(stage, self.current_percentage)
        self.current_percentage = min(100, max(self.current_percentage, percentage))
        self.current_stage = stage
        return ProgressEvent(
            **self._envelope(),
            stage=stage,
            percentage=self.current_percentage,
            message=message,
            details=details,
        )

    def complete(self, data: Dict[str, Any], summary: str) -> ResultEvent:
        event = ResultEvent(**self._envelope(), data=data, summary=summary)
        self.state = SessionState.COMPLETED
        return event

    def fail(self, message: str, code: Optional[str] = None) -> ErrorEvent:
        event = ErrorEvent(**self._envelope(), error=ErrorInfo(message=message, code=code))
        self.state = SessionState.FAILED
        return event

    def close(self) -> None:
        """Tear down after the connection went away; pending output is discarded."""
        if self.finished:
            return
        self.state = SessionState.CLOSED
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.queue.put_nowait(("closed",))
