"""
JSON-RPC 2.0 envelope for the MCP transport.

Only the subset of the Model Context Protocol the diagram tool server
speaks: the initialize handshake, ping, tools/list and tools/call.

Reference: https://www.jsonrpc.org/specification
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# MCP-specific error codes
MCP_TOOL_NOT_FOUND = -32001


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request message."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 response message (success)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    result: Any


class JSONRPCErrorResponse(BaseModel):
    """JSON-RPC 2.0 response message (error)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None]
    error: JSONRPCError


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 notification message (no response expected)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


JSONRPCMessage = Union[JSONRPCRequest, JSONRPCResponse, JSONRPCErrorResponse, JSONRPCNotification]
# Batch members in order; invalid members are replaced by their error response
JSONRPCBatch = List[Union[JSONRPCRequest, JSONRPCNotification, JSONRPCErrorResponse]]


class MCPMethods:
    """MCP method names handled by the server."""

    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    CANCEL = "notifications/cancelled"


class MCPCapabilities(BaseModel):
    """MCP server capabilities."""

    tools: Optional[Dict[str, Any]] = None
    logging: Optional[Dict[str, Any]] = None


class MCPImplementation(BaseModel):
    """MCP implementation info."""

    name: str
    version: str


class MCPInitializeParams(BaseModel):
    """Parameters for initialize request."""

    protocolVersion: str
    capabilities: Dict[str, Any] = {}
    clientInfo: Optional[MCPImplementation] = None


class MCPInitializeResult(BaseModel):
    """Result for initialize response."""

    protocolVersion: str
    capabilities: MCPCapabilities
    serverInfo: MCPImplementation
    instructions: Optional[str] = None


class MCPToolsCallParams(BaseModel):
    """Parameters for tools/call request."""

    name: str
    arguments: Optional[Dict[str, Any]] = None


class MCPToolsCallResult(BaseModel):
    """Result for tools/call response."""

    content: List[Dict[str, Any]]
    isError: bool = False
    structuredContent: Optional[Dict[str, Any]] = None


class JSONRPCHandler:
    """Handler for JSON-RPC message processing."""

    @staticmethod
    def create_response(id: Union[str, int], result: Any) -> JSONRPCResponse:
        return JSONRPCResponse(id=id, result=result)

    @staticmethod
    def create_error_response(
        id: Union[str, int, None], code: int, message: str, data: Optional[Any] = None
    ) -> JSONRPCErrorResponse:
        error = JSONRPCError(code=code, message=message, data=data)
        return JSONRPCErrorResponse(id=id, error=error)

    @staticmethod
    def parse_message(data: Any) -> JSONRPCMessage:
        """Parse a raw JSON object into a JSON-RPC message."""
        if not isinstance(data, dict):
            raise ValueError(f"Invalid JSON-RPC message: {data!r}")
        if "id" in data:
            if "method" in data:
                return JSONRPCRequest.model_validate(data)
            if "result" in data:
                return JSONRPCResponse.model_validate(data)
            if "error" in data:
                return JSONRPCErrorResponse.model_validate(data)
        elif "method" in data:
            return JSONRPCNotification.model_validate(data)

        raise ValueError(f"Invalid JSON-RPC message: {data!r}")

    @staticmethod
    def is_batch(data: Any) -> bool:
        return isinstance(data, list)

    @staticmethod
    def validate_batch(data: List[Any]) -> JSONRPCBatch:
        """
        Parse each member of a JSON-RPC batch.

        A member that is not a valid request or notification does not fail
        the batch; an INVALID_REQUEST error response takes its place.

        Raises:
            ValueError: If the batch is empty
        """
        if not data:
            raise ValueError("Empty batch")
        batch: JSONRPCBatch = []
        for item in data:
            member_id = item.get("id") if isinstance(item, dict) else None
            if not isinstance(member_id, (str, int)) or isinstance(member_id, bool):
                member_id = None
            try:
                message = JSONRPCHandler.parse_message(item)
            except ValueError as e:
                batch.append(
                    JSONRPCHandler.create_error_response(
                        member_id, INVALID_REQUEST, f"Invalid request: {e}"
                    )
                )
                continue
            if isinstance(message, (JSONRPCRequest, JSONRPCNotification)):
                batch.append(message)
            else:
                batch.append(
                    JSONRPCHandler.create_error_response(
                        member_id, INVALID_REQUEST, "Responses are not accepted in a batch"
                    )
                )
        return batch
