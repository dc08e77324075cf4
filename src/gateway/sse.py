"""
Server-Sent Events transport for streaming sessions.

SSE Format:
    id: 0
    event: progress
    data: {"stage": "start", "percentage": 0, ...}

    id: 4
    event: result
    data: {"data": {...}, "summary": "..."}

Input errors are answered with a plain JSON error before any event is sent.
"""

import json
import uuid
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from common.errors import DiagramServerError, InputSchemaError, UnknownOperationError
from common.logging import get_logger
from streaming.engine import StreamingEngine

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def error_response(exc: DiagramServerError) -> JSONResponse:
    """HTTP error for failures that happen before a tool runs."""
    if isinstance(exc, UnknownOperationError):
        status_code = 404
    elif isinstance(exc, InputSchemaError):
        status_code = 400
    else:
        status_code = 500
    return JSONResponse({"error": exc.to_dict()}, status_code=status_code)


def format_sse(event: Any) -> str:
    """Frame one streaming event; the event type doubles as the SSE event name."""
    data = json.dumps(event.to_wire(), separators=(",", ":"))
    return f"id: {event.sequence}\nevent: {event.type}\ndata: {data}\n\n"


async def stream_operation(
    engine: StreamingEngine,
    operation: str,
    payload: Optional[Dict[str, Any]],
    request: Request,
) -> StreamingResponse | JSONResponse:
    """
    Stream ``operation`` as SSE.

    Input is validated before the response starts; the session itself is
    opened with the response body, so a client that leaves first never
    registers one.
    """
    try:
        engine.tools.prepare(operation, payload)
    except (UnknownOperationError, InputSchemaError) as e:
        return error_response(e)

    connection_id = str(uuid.uuid4())

    async def event_generator() -> AsyncGenerator[str, None]:
        session = engine.open_session(connection_id, operation, payload)
        logger.info(
            event="sse_stream_opened",
            connection_id=connection_id,
            request_id=session.request_id,
            operation=operation,
        )
        events = engine.run(session)
        try:
            async for event in events:
                if await request.is_disconnected():
                    logger.info(
                        event="sse_client_disconnected",
                        connection_id=connection_id,
                        request_id=session.request_id,
                    )
                    break
                yield format_sse(event)
        finally:
            engine.sessions.close_connection(connection_id)
            await events.aclose()

    return StreamingResponse(
        event_generator(), media_type="text/event-stream", headers=SSE_HEADERS
    )
