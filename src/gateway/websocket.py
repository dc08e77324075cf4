"""
Gateway using FastAPI.

Hosts every transport over one set of components:
- GET /health, GET /tools, POST /tools/{operation}  plain HTTP
- POST /stream/{operation}                          Server-Sent Events
- WS /ws/stream                                     multiplexed streaming sessions
- POST /mcp/jsonrpc                                 MCP JSON-RPC
"""

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from common.config import Config
from common.errors import InputSchemaError, UnknownOperationError
from common.logging import TimedLogger, get_logger
from common.models import ErrorInfo, Heartbeat, RequestRejected, StreamRequestMessage
from diagrams.validator import ENGINE_TABLE
from gateway.connection_manager import ConnectionManager
from gateway.sse import error_response, stream_operation
from streaming.session import Session
from toolserver.components import Components, build_components
from toolserver.mcp_server import DiagramMCPServer

logger = get_logger(__name__)

STREAM_PREFIX = "stream."
MESSAGE_SCHEMA_ERROR = "MESSAGE_SCHEMA_ERROR"


class DiagramGateway:
    """FastAPI gateway that routes every transport to the shared components."""

    def __init__(self, config: Config, components: Components):
        self.config = config
        self.components = components
        self.connection_manager = ConnectionManager(config.gateway.max_connections)
        self.mcp_server = DiagramMCPServer(components.registry)
        self.started_at = time.monotonic()
        self.app = FastAPI(title="Diagram Tool Server", version="1.0.0", lifespan=self._lifespan)
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        sweeper = asyncio.create_task(
            self.components.sessions.sweep_forever(self.config.streaming.sweep_interval)
        )
        logger.info(
            event="idle_sweeper_started",
            sweep_interval=self.config.streaming.sweep_interval,
            idle_timeout=self.config.streaming.idle_connection_timeout,
        )
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    def _setup_routes(self) -> None:
        """Setup FastAPI routes."""
        components = self.components

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return JSONResponse(
                {
                    "status": "healthy",
                    "uptimeSeconds": round(time.monotonic() - self.started_at, 1),
                    "activeConnections": self.connection_manager.get_connection_count(),
                    "activeSessions": components.sessions.active_session_count,
                    "operations": [tool.name for tool in components.registry.list_tools()],
                    "templates": len(components.catalog),
                    "engines": {name: engine.value for name, engine in ENGINE_TABLE.items()},
                }
            )

        @self.app.get("/tools")
        async def list_tools():
            """Tool catalog with input schemas and progress stages."""
            tools = []
            for tool in components.registry.list_tools():
                description = self.mcp_server.describe_tool(tool)
                description["stages"] = [stage.model_dump() for stage in tool.stages]
                description["examples"] = tool.examples
                description["streamOperation"] = f"{STREAM_PREFIX}{tool.name}"
                description["streamEndpoint"] = f"/stream/{tool.name}"
                tools.append(description)
            return JSONResponse(
                {
                    "tools": tools,
                    "engines": {name: engine.value for name, engine in ENGINE_TABLE.items()},
                }
            )

        @self.app.post("/tools/{operation}")
        async def call_tool(operation: str, request: Request):
            """Run an operation once and return its ToolResult."""
            payload = await self._read_json(request, operation)
            if isinstance(payload, JSONResponse):
                return payload
            try:
                result = await components.registry.dispatch(operation, payload)
            except (UnknownOperationError, InputSchemaError) as e:
                return error_response(e)
            return JSONResponse(result.to_dict())

        @self.app.post("/stream/{operation}")
        async def stream_tool(operation: str, request: Request):
            """Run an operation as a streaming session over SSE."""
            payload = await self._read_json(request, operation)
            if isinstance(payload, JSONResponse):
                return payload
            return await stream_operation(components.engine, operation, payload, request)

        @self.app.websocket("/ws/stream")
        async def websocket_endpoint(websocket: WebSocket):
            """Streaming WebSocket; any number of concurrent sessions per socket."""
            await self._handle_websocket_connection(websocket)

        self.app.include_router(self.mcp_server.get_router())

    @staticmethod
    async def _read_json(request: Request, operation: str) -> Any:
        body = await request.body()
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            return error_response(InputSchemaError(operation, [f"body is not valid JSON: {e}"]))

    async def _handle_websocket_connection(self, websocket: WebSocket) -> None:
        """Handle a new WebSocket connection."""
        if not self.connection_manager.has_capacity():
            await websocket.close(code=1013, reason="Too many connections")
            logger.warning(
                event="connection_refused",
                max_connections=self.connection_manager.max_connections,
            )
            return

        connection_id = str(uuid.uuid4())
        tasks: Set[asyncio.Task] = set()
        try:
            await self.connection_manager.connect(websocket, connection_id)
            self.components.sessions.open_connection(connection_id)
            await self._message_loop(websocket, connection_id, tasks)
        except WebSocketDisconnect:
            logger.info(event="client_disconnect", connection_id=connection_id)
        except Exception as e:
            logger.error(event="connection_error", connection_id=connection_id, error=str(e))
        finally:
            self.connection_manager.disconnect(connection_id)
            closed = self.components.sessions.close_connection(connection_id)
            pending = list(tasks)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            logger.info(
                event="connection_sessions_released",
                connection_id=connection_id,
                closed_sessions=closed,
                cancelled_tasks=len(pending),
            )

    async def _message_loop(
        self, websocket: WebSocket, connection_id: str, tasks: Set[asyncio.Task]
    ) -> None:
        """Receive frames; send a heartbeat whenever the client is quiet."""
        heartbeat_interval = self.config.gateway.heartbeat_interval
        connection_timeout = self.config.gateway.connection_timeout
        last_message = time.monotonic()

        while True:
            try:
                message_data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=heartbeat_interval
                )
            except asyncio.TimeoutError:
                idle = time.monotonic() - last_message
                if idle > connection_timeout and not tasks:
                    logger.warning(
                        event="connection_timeout",
                        connection_id=connection_id,
                        timeout_seconds=connection_timeout,
                    )
                    await websocket.close(code=1000, reason="Idle timeout")
                    break
                heartbeat = Heartbeat(
                    connection_id=connection_id,
                    active_sessions=len(self.components.sessions.sessions_for(connection_id)),
                )
                if not await self.connection_manager.send_to_connection(connection_id, heartbeat):
                    break
                continue

            last_message = time.monotonic()
            self.components.sessions.touch(connection_id)
            with TimedLogger(logger, "message_processed", connection_id=connection_id):
                task = await self._process_message(message_data, connection_id)
            if task is not None:
                tasks.add(task)
                task.add_done_callback(tasks.discard)

    async def _process_message(
        self, message_data: str, connection_id: str
    ) -> Optional[asyncio.Task]:
        """
        Open a session for one request frame.

        Returns:
            The task streaming the session, or None when the frame was rejected
        """
        request_id = None
        try:
            message = StreamRequestMessage.model_validate_json(message_data)
            request_id = message.request_id
            operation = message.operation
            if operation.startswith(STREAM_PREFIX):
                operation = operation[len(STREAM_PREFIX) :]
            session = self.components.engine.open_session(
                connection_id, operation, message.input, request_id
            )
        except ValidationError as e:
            field_errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}"
                for err in e.errors(include_url=False)
            ]
            await self._reject(
                connection_id,
                _request_id_of(message_data),
                ErrorInfo(message="Invalid request frame", code=MESSAGE_SCHEMA_ERROR),
                field_errors,
            )
            return None
        except InputSchemaError as e:
            await self._reject(
                connection_id, request_id, ErrorInfo(message=e.message, code=e.code), e.field_errors
            )
            return None
        except UnknownOperationError as e:
            await self._reject(connection_id, request_id, ErrorInfo(message=e.message, code=e.code))
            return None

        return asyncio.create_task(self._pump(session))

    async def _pump(self, session: Session) -> None:
        """Forward a session's events to its socket until it ends or the socket goes away."""
        events = self.components.engine.run(session)
        try:
            async for event in events:
                sent = await self.connection_manager.send_to_connection(
                    session.connection_id, event
                )
                if not sent:
                    self.components.sessions.close_connection(session.connection_id)
                    break
        finally:
            await events.aclose()

    async def _reject(
        self,
        connection_id: str,
        request_id: Optional[str],
        error: ErrorInfo,
        field_errors: Optional[List[str]] = None,
    ) -> None:
        logger.info(
            event="request_rejected",
            connection_id=connection_id,
            request_id=request_id,
            error_code=error.code,
        )
        frame = RequestRejected(
            request_id=request_id,
            connection_id=connection_id,
            error=error,
            field_errors=field_errors or [],
        )
        await self.connection_manager.send_to_connection(connection_id, frame)


def _request_id_of(message_data: str) -> Optional[str]:
    """Best-effort request id from a frame that failed validation."""
    try:
        data: Dict[str, Any] = json.loads(message_data)
    except ValueError:
        return None
    request_id = data.get("requestId") if isinstance(data, dict) else None
    return request_id if isinstance(request_id, str) else None


def create_gateway_app(config: Config, components: Optional[Components] = None) -> FastAPI:
    """Create and configure the FastAPI gateway application."""
    gateway = DiagramGateway(config, components or build_components(config))
    return gateway.app
