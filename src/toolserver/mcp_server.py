"""
MCP Server

Exposes the tool registry over JSON-RPC 2.0 at ``POST /mcp/jsonrpc``:
initialize, ping, tools/list and tools/call, single or batched.

Error mapping for tools/call:
- schema violation -> INVALID_PARAMS (-32602)
- unknown tool -> MCP_TOOL_NOT_FOUND (-32001)
- failure inside the tool -> a result with ``isError: true``
"""

import json
from typing import Any, Dict, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from common.errors import InputSchemaError, UnknownOperationError
from common.logging import get_logger, log_startup_message, preview
from common.models import utc_now

from .jsonrpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    MCP_TOOL_NOT_FOUND,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    JSONRPCErrorResponse,
    JSONRPCHandler,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    MCPCapabilities,
    MCPImplementation,
    MCPInitializeParams,
    MCPInitializeResult,
    MCPMethods,
    MCPToolsCallParams,
    MCPToolsCallResult,
)
from .tool_registry import Tool, ToolRegistry

logger = get_logger(__name__)

MCP_PROTOCOL_VERSION = "2025-06-18"

RPCReply = Union[JSONRPCResponse, JSONRPCErrorResponse]


class DiagramMCPServer:
    """MCP front end for the diagram tools."""

    def __init__(self, registry: ToolRegistry, version: str = "1.0.0"):
        self.registry = registry
        self.router = APIRouter(prefix="/mcp", tags=["MCP"])
        self.capabilities = MCPCapabilities(tools={"listChanged": False}, logging={})
        self.server_info = MCPImplementation(name="diagram-tool-server", version=version)
        self._setup_routes()

        log_startup_message(
            "MCP Server Initialized",
            protocol_version=MCP_PROTOCOL_VERSION,
            tools=[tool.name for tool in registry.list_tools()],
        )

    def _setup_routes(self) -> None:
        @self.router.post("/jsonrpc")
        async def handle_jsonrpc(request: Request) -> Response:
            """JSON-RPC endpoint; accepts a single message or a batch."""
            try:
                body = json.loads(await request.body())
            except ValueError as e:
                error = JSONRPCHandler.create_error_response(
                    None, PARSE_ERROR, f"Parse error: {e}"
                )
                return JSONResponse(content=error.model_dump(), status_code=400)

            try:
                if JSONRPCHandler.is_batch(body):
                    batch = JSONRPCHandler.validate_batch(body)
                    responses = []
                    for message in batch:
                        if isinstance(message, JSONRPCRequest):
                            responses.append(await self.handle_request(message))
                        elif isinstance(message, JSONRPCNotification):
                            await self._handle_notification(message)
                        else:
                            responses.append(message)
                    if not responses:
                        # nothing to answer for a batch of notifications
                        return Response(status_code=204)
                    return JSONResponse(content=[r.model_dump() for r in responses])

                message = JSONRPCHandler.parse_message(body)
            except ValueError as e:
                error = JSONRPCHandler.create_error_response(
                    None, INVALID_REQUEST, f"Invalid request: {e}"
                )
                return JSONResponse(content=error.model_dump(), status_code=400)

            if isinstance(message, JSONRPCRequest):
                response = await self.handle_request(message)
                return JSONResponse(content=response.model_dump())
            if isinstance(message, JSONRPCNotification):
                await self._handle_notification(message)
                return JSONResponse(content={})

            error = JSONRPCHandler.create_error_response(
                None, INVALID_REQUEST, "Invalid JSON-RPC message type"
            )
            return JSONResponse(content=error.model_dump(), status_code=400)

    def get_router(self) -> APIRouter:
        return self.router

    async def handle_request(self, request: JSONRPCRequest) -> RPCReply:
        """Route a JSON-RPC request to its method handler."""
        logger.debug(event="jsonrpc_request", method=request.method, id=request.id)
        try:
            if request.method == MCPMethods.INITIALIZE:
                return self._handle_initialize(request)
            elif request.method == MCPMethods.PING:
                return JSONRPCHandler.create_response(
                    request.id,
                    {"timestamp": utc_now().isoformat(), "server": self.server_info.model_dump()},
                )
            elif request.method == MCPMethods.TOOLS_LIST:
                return self._handle_tools_list(request)
            elif request.method == MCPMethods.TOOLS_CALL:
                return await self._handle_tools_call(request)
            return JSONRPCHandler.create_error_response(
                request.id, METHOD_NOT_FOUND, f"Method '{request.method}' not found"
            )
        except Exception as e:
            logger.error(event="request_handler_error", method=request.method, error=str(e))
            return JSONRPCHandler.create_error_response(
                request.id, INTERNAL_ERROR, f"Internal error: {e}"
            )

    async def _handle_notification(self, notification: JSONRPCNotification) -> None:
        if notification.method == MCPMethods.INITIALIZED:
            logger.info(event="client_ready")
        elif notification.method == MCPMethods.CANCEL:
            # tools/call runs to completion within its request; nothing to cancel
            logger.info(event="request_cancel_ignored", params=notification.params)
        else:
            logger.warning(event="unknown_notification", method=notification.method)

    def _handle_initialize(self, request: JSONRPCRequest) -> RPCReply:
        try:
            params = MCPInitializeParams.model_validate(request.params or {})
        except ValueError as e:
            return JSONRPCHandler.create_error_response(
                request.id, INVALID_PARAMS, f"Invalid initialize params: {e}"
            )

        if params.protocolVersion != MCP_PROTOCOL_VERSION:
            logger.warning(
                event="protocol_version_mismatch",
                client_version=params.protocolVersion,
                server_version=MCP_PROTOCOL_VERSION,
            )

        result = MCPInitializeResult(
            protocolVersion=MCP_PROTOCOL_VERSION,
            capabilities=self.capabilities,
            serverInfo=self.server_info,
            instructions=(
                "Diagram tools: 'validate' checks syntax, 'templates' lists starter diagrams, "
                "'optimize' suggests and applies safe rewrites, 'convert' changes diagram type."
            ),
        )
        logger.info(
            event="client_initialized",
            client_info=params.clientInfo.model_dump() if params.clientInfo else None,
            protocol_version=params.protocolVersion,
        )
        return JSONRPCHandler.create_response(request.id, result.model_dump())

    def _handle_tools_list(self, request: JSONRPCRequest) -> JSONRPCResponse:
        tools = [self.describe_tool(tool) for tool in self.registry.list_tools()]
        return JSONRPCHandler.create_response(request.id, {"tools": tools})

    def describe_tool(self, tool: Tool) -> Dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "inputSchema": self.registry.input_schema(tool),
        }

    async def _handle_tools_call(self, request: JSONRPCRequest) -> RPCReply:
        try:
            params = MCPToolsCallParams.model_validate(request.params or {})
        except ValueError as e:
            return JSONRPCHandler.create_error_response(
                request.id, INVALID_PARAMS, f"Invalid tools/call params: {e}"
            )

        try:
            execution = await self.registry.dispatch(params.name, params.arguments)
        except UnknownOperationError as e:
            return JSONRPCHandler.create_error_response(
                request.id, MCP_TOOL_NOT_FOUND, e.message, e.details
            )
        except InputSchemaError as e:
            return JSONRPCHandler.create_error_response(
                request.id, INVALID_PARAMS, e.message, e.details
            )

        if execution.success:
            summary = self.registry.handlers[params.name].summarize(execution.result)
            result = MCPToolsCallResult(
                content=[{"type": "text", "text": summary}],
                structuredContent=execution.result,
            )
            logger.debug(
                event="mcp_tool_response", tool_name=params.name, summary=preview(summary)
            )
        else:
            result = MCPToolsCallResult(
                content=[{"type": "text", "text": execution.error or "Tool execution failed"}],
                isError=True,
                structuredContent={"errorCode": execution.error_code, **execution.result},
            )
            logger.warning(
                event="tool_execution_failed",
                tool_name=params.name,
                error_code=execution.error_code,
                error=execution.error,
            )
        return JSONRPCHandler.create_response(request.id, result.model_dump(exclude_none=True))

