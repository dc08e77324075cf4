"""
Tests for the HTTP, SSE and WebSocket transports of the gateway.
"""

import json
from typing import Any, Dict, List

import pytest
from fastapi.responses import StreamingResponse
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from common.config import Config, GatewayConfig
from gateway.sse import stream_operation
from gateway.websocket import create_gateway_app

VALID_FLOWCHART = "flowchart TD\n    A --> B"
INVALID_FLOWCHART = "flowchart TD\n    A -> B"


@pytest.fixture
def client(config: Config, components):
    """Test client with the app lifespan running."""
    with TestClient(create_gateway_app(config, components)) as test_client:
        yield test_client


def parse_sse(body: str) -> List[Dict[str, Any]]:
    """Split an SSE body into {id, event, data} frames."""
    frames = []
    for block in body.strip().split("\n\n"):
        frame: Dict[str, Any] = {}
        for line in block.splitlines():
            key, _, value = line.partition(": ")
            frame[key] = json.loads(value) if key == "data" else value
        frames.append(frame)
    return frames


def receive_until_terminal(websocket, pending: int = 1) -> List[Dict[str, Any]]:
    frames = []
    while pending:
        frame = websocket.receive_json()
        if frame["type"] == "heartbeat":
            continue
        frames.append(frame)
        if frame["type"] in ("result", "error", "rejected"):
            pending -= 1
    return frames


class ConnectedRequest:
    """Stands in for a Request whose client stays connected."""

    async def is_disconnected(self) -> bool:
        return False


class TestHttp:
    def test_health_endpoint(self, client: TestClient, components) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["activeConnections"] == 0
        assert data["operations"] == ["validate", "templates", "optimize", "convert"]
        assert data["templates"] == len(components.catalog)
        assert data["engines"]["pie"] == "grammar"
        assert data["engines"]["flowchart"] == "rules"
        assert data["uptimeSeconds"] >= 0

    def test_tool_catalog(self, client: TestClient) -> None:
        tools = {tool["name"]: tool for tool in client.get("/tools").json()["tools"]}

        assert set(tools) == {"validate", "templates", "optimize", "convert"}
        assert tools["validate"]["stages"] == [
            {"name": "parsing", "percentage": 30},
            {"name": "checking", "percentage": 70},
        ]
        assert tools["convert"]["inputSchema"]["required"] == ["code"]
        assert tools["templates"]["examples"]
        assert tools["optimize"]["streamOperation"] == "stream.optimize"
        assert tools["optimize"]["streamEndpoint"] == "/stream/optimize"

    def test_call_tool(self, client: TestClient) -> None:
        response = client.post("/tools/validate", json={"code": VALID_FLOWCHART})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["result"]["valid"] is True
        assert data["result"]["engine"] == "rules"

    def test_tool_failure_is_a_result(self, client: TestClient) -> None:
        response = client.post("/tools/optimize", json={"code": INVALID_FLOWCHART})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["errorCode"] == "SOURCE_INVALID"

    def test_unknown_operation(self, client: TestClient) -> None:
        response = client.post("/tools/render", json={})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "UNKNOWN_OPERATION"

    def test_schema_error(self, client: TestClient) -> None:
        response = client.post("/tools/validate", json={"strict": "yes"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INPUT_SCHEMA_ERROR"
        assert len(error["details"]["fieldErrors"]) == 2

    def test_malformed_body(self, client: TestClient) -> None:
        response = client.post(
            "/tools/validate", content="{", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_empty_body_means_no_arguments(self, client: TestClient) -> None:
        response = client.post("/tools/templates")
        assert response.status_code == 200
        assert response.json()["result"]["filters"] == {}


class TestSse:
    def test_stream_templates(self, client: TestClient) -> None:
        response = client.post(
            "/stream/templates", json={"diagramType": "sequence", "complexity": "simple"}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = parse_sse(response.text)
        assert [f["event"] for f in frames] == ["progress"] * 5 + ["result"]
        assert [f["id"] for f in frames] == [str(i) for i in range(6)]
        assert [f["data"]["percentage"] for f in frames[:-1]] == [0, 25, 50, 75, 100]
        result = frames[-1]["data"]
        assert all(t["type"] == "sequence" for t in result["data"]["templates"])

    def test_stream_error_event(self, client: TestClient) -> None:
        frames = parse_sse(client.post("/stream/convert", json={"code": INVALID_FLOWCHART}).text)

        assert frames[-1]["event"] == "error"
        assert frames[-1]["data"]["error"]["code"] == "SOURCE_INVALID"
        assert [f["event"] for f in frames].count("error") == 1

    def test_input_errors_are_plain_json(self, client: TestClient) -> None:
        assert client.post("/stream/render", json={}).status_code == 404
        response = client.post("/stream/convert", json={"targetFormat": "auto"})
        assert response.status_code == 400
        assert response.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_session_opens_with_the_body(self, components) -> None:
        response = await stream_operation(components.engine, "templates", {}, ConnectedRequest())

        assert isinstance(response, StreamingResponse)
        assert components.sessions.active_session_count == 0
        chunks = [chunk async for chunk in response.body_iterator]
        assert chunks[0].startswith("id: 0\nevent: progress\n")
        assert chunks[-1].startswith("id: 5\nevent: result\n")
        assert components.sessions.connection_count == 0

    @pytest.mark.asyncio
    async def test_input_error_opens_no_session(self, components) -> None:
        response = await stream_operation(components.engine, "validate", {}, ConnectedRequest())

        assert response.status_code == 400
        assert components.sessions.connection_count == 0


class TestWebSocket:
    def test_stream_session(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json(
                {
                    "operation": "stream.validate",
                    "requestId": "w1",
                    "input": {"code": VALID_FLOWCHART},
                }
            )
            frames = receive_until_terminal(websocket)

        assert [f["type"] for f in frames] == ["progress"] * 4 + ["result"]
        assert [f["stage"] for f in frames[:-1]] == ["start", "parsing", "checking", "complete"]
        assert {f["requestId"] for f in frames} == {"w1"}
        assert frames[-1]["data"]["valid"] is True
        assert frames[-1]["summary"] == "Valid flowchart diagram"

    def test_concurrent_sessions_on_one_socket(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json({"operation": "templates", "requestId": "a", "input": {}})
            websocket.send_json(
                {"operation": "optimize", "requestId": "b", "input": {"code": INVALID_FLOWCHART}}
            )
            frames = receive_until_terminal(websocket, pending=2)

        by_request: Dict[str, List[Dict[str, Any]]] = {"a": [], "b": []}
        for frame in frames:
            by_request[frame["requestId"]].append(frame)
        assert by_request["a"][-1]["type"] == "result"
        assert by_request["b"][-1]["type"] == "error"
        for session_frames in by_request.values():
            assert [f["sequence"] for f in session_frames] == list(range(len(session_frames)))

    def test_schema_error_is_rejected(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json({"operation": "validate", "requestId": "bad", "input": {}})
            frame = receive_until_terminal(websocket)[0]

        assert frame["type"] == "rejected"
        assert frame["requestId"] == "bad"
        assert frame["error"]["code"] == "INPUT_SCHEMA_ERROR"
        assert frame["fieldErrors"] == ["'code' is required"]

    def test_unknown_operation_is_rejected(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json({"operation": "stream.render", "requestId": "x"})
            frame = receive_until_terminal(websocket)[0]

        assert frame["error"]["code"] == "UNKNOWN_OPERATION"

    def test_malformed_frame_is_rejected(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_text(json.dumps({"requestId": "m1", "input": []}))
            frame = receive_until_terminal(websocket)[0]

        assert frame["error"]["code"] == "MESSAGE_SCHEMA_ERROR"
        assert frame["requestId"] == "m1"
        assert len(frame["fieldErrors"]) == 2

    def test_connection_survives_rejections(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_text("not json")
            assert receive_until_terminal(websocket)[0]["type"] == "rejected"
            websocket.send_json({"operation": "templates", "requestId": "ok"})
            assert receive_until_terminal(websocket)[-1]["type"] == "result"

    def test_capacity_limit(self, components) -> None:
        config = Config(gateway=GatewayConfig(max_connections=0))
        with TestClient(create_gateway_app(config, components)) as full_client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with full_client.websocket_connect("/ws/stream"):
                    pass
        assert exc_info.value.code == 1013
