"""
Streaming Engine

Runs a tool handler as a streamed session. Each session emits:

1. ``progress`` at 0% ("start")
2. one ``progress`` event per stage the handler reports
3. ``progress`` at 100% ("complete") followed by one ``result``, or a single ``error``

Nothing is emitted after the terminal event. A handler that reports no
stage for ``stall_timeout`` seconds is cancelled and the session ends with
a SESSION_TIMEOUT error. Sessions are independent; a failing or slow one
never affects its neighbours.
"""

import asyncio
import uuid
from typing import Any, AsyncIterator, Dict, Optional

from common.config import StreamingConfig
from common.errors import SessionTimeoutError, error_code_for
from common.logging import get_logger
from common.models import Operation, StreamingEvent
from streaming.session import COMPLETE_STAGE, START_STAGE, Session
from streaming.session_registry import SessionRegistry
from toolserver.tool_registry import ToolRegistry

logger = get_logger(__name__)


class StreamingEngine:
    """Turns tool runs into ordered progress/result event streams."""

    def __init__(
        self,
        tools: ToolRegistry,
        sessions: SessionRegistry,
        config: Optional[StreamingConfig] = None,
    ):
        self.tools = tools
        self.sessions = sessions
        self.config = config or StreamingConfig()

    def open_session(
        self,
        connection_id: str,
        operation: str,
        arguments: Optional[Dict[str, Any]],
        request_id: Optional[str] = None,
    ) -> Session:
        """
        Validate the request and register a new session.

        Raises:
            UnknownOperationError: If ``operation`` is not registered
            InputSchemaError: If the arguments are invalid, or ``request_id``
                is already running on this connection
        """
        handler, prepared = self.tools.prepare(operation, arguments)
        tool = self.tools.get_tool(operation)
        session = Session(
            connection_id=connection_id,
            request_id=request_id or str(uuid.uuid4()),
            operation=Operation(operation),
            handler=handler,
            arguments=prepared,
            stage_percentages={stage.name: stage.percentage for stage in tool.stages},
        )
        self.sessions.add(session)
        logger.info(
            event="session_started",
            connection_id=connection_id,
            request_id=session.request_id,
            operation=operation,
        )
        return session

    async def run(self, session: Session) -> AsyncIterator[StreamingEvent]:
        """Drive ``session`` to completion, yielding its events in order."""
        outcome = "closed"
        events = 0
        try:
            # closed with its connection before the first event
            if session.finished:
                return
            yield session.progress(START_STAGE, f"Starting {session.operation.value}", percentage=0)
            events += 1
            session.task = asyncio.create_task(self._work(session))

            while not session.finished:
                try:
                    item = await asyncio.wait_for(
                        session.queue.get(), timeout=self.config.stall_timeout
                    )
                except asyncio.TimeoutError:
                    session.task.cancel()
                    exc = SessionTimeoutError(self.config.stall_timeout, session.current_stage)
                    outcome = "timeout"
                    logger.warning(
                        event="session_timeout",
                        request_id=session.request_id,
                        connection_id=session.connection_id,
                        stage=session.current_stage,
                        stall_timeout=self.config.stall_timeout,
                    )
                    events += 1
                    yield session.fail(exc.message, exc.code)
                    break

                kind = item[0]
                if kind == "closed" or session.finished:
                    break
                self.sessions.touch(session.connection_id)

                if kind == "progress":
                    _, stage, message, details = item
                    events += 1
                    yield session.progress(stage, message, details)
                elif kind == "result":
                    data = item[1]
                    events += 2
                    yield session.progress(COMPLETE_STAGE, "Completed", percentage=100)
                    outcome = "completed"
                    yield session.complete(data, session.handler.summarize(data))
                else:
                    exc = item[1]
                    outcome = "failed"
                    logger.info(
                        event="session_failed",
                        request_id=session.request_id,
                        operation=session.operation.value,
                        error_code=error_code_for(exc),
                        error=str(exc),
                    )
                    events += 1
                    yield session.fail(str(exc), error_code_for(exc))
        finally:
            if session.task is not None and not session.task.done():
                session.task.cancel()
            self.sessions.remove(session)
            logger.info(
                event="session_finished",
                request_id=session.request_id,
                connection_id=session.connection_id,
                operation=session.operation.value,
                outcome=outcome,
                events=events,
                elapsed_ms=session.elapsed_ms,
            )

    async def stream(
        self,
        connection_id: str,
        operation: str,
        arguments: Optional[Dict[str, Any]],
        request_id: Optional[str] = None,
    ) -> AsyncIterator[StreamingEvent]:
        """Open a session and run it; input errors raise before the first event."""
        session = self.open_session(connection_id, operation, arguments, request_id)
        async for event in self.run(session):
            yield event

    async def _work(self, session: Session) -> None:
        """Run the handler and hand its outcome to the session queue."""
        delay = self.config.stage_delay_ms / 1000

        async def report(stage: str, message: str, details: Optional[Dict[str, Any]] = None):
            if session.finished:
                return
            await session.queue.put(("progress", stage, message, details))
            # yield between stages so other sessions interleave
            await asyncio.sleep(delay)

        try:
            result = await session.handler.run(session.arguments, report)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await session.queue.put(("error", e))
        else:
            await session.queue.put(("result", result))
