"""
Tests for streaming sessions: event order, progress, timeouts and teardown.
"""

import asyncio
import time
from typing import Any, Dict, List

import pytest

from common.config import StreamingConfig
from common.errors import InputSchemaError, UnknownOperationError
from common.models import ErrorEvent, ProgressEvent, ResultEvent
from streaming.engine import StreamingEngine
from streaming.session import SessionState
from streaming.session_registry import SessionRegistry
from toolserver.tool_registry import (
    ProgressCallback,
    Tool,
    ToolHandler,
    ToolRegistry,
    ToolStage,
)


INVALID_FLOWCHART = "flowchart TD\n    A -> B"


class ScriptedTool(ToolHandler):
    """Registered as "validate"; reports the given stages, then fails, hangs or returns."""

    def __init__(self, stages: List[str], hang: bool = False, fail: bool = False):
        self.stages = stages
        self.hang = hang
        self.fail = fail
        self.cancelled = False

    def get_tool_definition(self) -> Tool:
        return Tool(
            name="validate",
            description="Scripted",
            stages=[
                ToolStage(name="parsing", percentage=30),
                ToolStage(name="checking", percentage=70),
            ],
        )

    async def run(self, arguments: Dict[str, Any], progress: ProgressCallback) -> Dict[str, Any]:
        for stage in self.stages:
            await progress(stage, f"at {stage}", None)
        if self.fail:
            raise ValueError("scripted failure")
        if self.hang:
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        return {"ok": True}


def scripted_engine(handler: ToolHandler, stall_timeout: float = 2.0) -> StreamingEngine:
    registry = ToolRegistry()
    registry.register_tool_handler(handler)
    return StreamingEngine(
        registry, SessionRegistry(), StreamingConfig(stall_timeout=stall_timeout)
    )


async def collect(events) -> List[Any]:
    return [event async for event in events]


class TestEventOrder:
    @pytest.mark.asyncio
    async def test_templates_stream(self, components):
        events = await collect(
            components.engine.stream("conn-1", "templates", {"diagramType": "flowchart"}, "r1")
        )

        assert [type(e) for e in events] == [ProgressEvent] * 5 + [ResultEvent]
        assert [e.stage for e in events[:-1]] == [
            "start",
            "selection",
            "application",
            "customization",
            "complete",
        ]
        assert [e.percentage for e in events[:-1]] == [0, 25, 50, 75, 100]
        assert [e.sequence for e in events] == list(range(6))
        assert {e.request_id for e in events} == {"r1"}
        assert events[-1].data["total"] == len(events[-1].data["templates"])
        assert events[-1].summary.startswith("Found ")
        assert components.sessions.active_session_count == 0

    @pytest.mark.asyncio
    async def test_invalid_diagram_is_still_a_result(self, components):
        events = await collect(
            components.engine.stream("conn-1", "validate", {"code": "flowchart TD\n    A -> B"})
        )

        result = events[-1]
        assert isinstance(result, ResultEvent)
        assert result.data["valid"] is False
        assert result.summary == "Invalid flowchart diagram: 1 error(s)"

    @pytest.mark.asyncio
    async def test_failure_ends_with_one_error(self, components):
        events = await collect(
            components.engine.stream("conn-1", "optimize", {"code": "flowchart TD\n    A -> B"})
        )

        terminal = [e for e in events if not isinstance(e, ProgressEvent)]
        assert len(terminal) == 1
        assert events[-1] is terminal[0]
        assert isinstance(terminal[0], ErrorEvent)
        assert terminal[0].error.code == "SOURCE_INVALID"
        assert all(e.percentage < 100 for e in events[:-1])

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_internal_error(self):
        engine = scripted_engine(ScriptedTool(["parsing"], fail=True))
        events = await collect(engine.stream("c", "validate", {}))

        assert [e.type for e in events] == ["progress", "progress", "error"]
        assert events[-1].error.code == "INTERNAL_ERROR"
        assert events[-1].error.message == "scripted failure"

    @pytest.mark.asyncio
    async def test_percentages_never_decrease(self):
        engine = scripted_engine(ScriptedTool(["checking", "parsing", "custom"]))
        events = await collect(engine.stream("c", "validate", {}))

        assert [e.percentage for e in events[:-1]] == [0, 70, 70, 70, 100]
        assert events[3].stage == "custom"

    @pytest.mark.asyncio
    async def test_wire_form(self, components):
        events = await collect(components.engine.stream("c", "templates", {}, "req"))
        wire = events[0].to_wire()

        assert wire["type"] == "progress"
        assert wire["requestId"] == "req"
        assert wire["connectionId"] == "c"
        assert wire["operation"] == "templates"
        assert "details" not in wire


class TestInputErrors:
    @pytest.mark.asyncio
    async def test_unknown_operation_raises_before_events(self, components):
        with pytest.raises(UnknownOperationError):
            await collect(components.engine.stream("c", "render", {}))

    @pytest.mark.asyncio
    async def test_schema_error_raises_before_events(self, components):
        with pytest.raises(InputSchemaError):
            await collect(components.engine.stream("c", "validate", {}))
        assert components.sessions.active_session_count == 0

    def test_duplicate_request_id(self, components):
        components.engine.open_session("c", "templates", {}, "same")
        with pytest.raises(InputSchemaError):
            components.engine.open_session("c", "templates", {}, "same")

    def test_same_request_id_on_other_connection(self, components):
        components.engine.open_session("c1", "templates", {}, "same")
        components.engine.open_session("c2", "templates", {}, "same")
        assert components.sessions.active_session_count == 2


class TestTimeout:
    @pytest.mark.asyncio
    async def test_stalled_session_times_out(self):
        handler = ScriptedTool(["parsing"], hang=True)
        engine = scripted_engine(handler, stall_timeout=0.2)

        events = await collect(engine.stream("c", "validate", {}))
        await asyncio.sleep(0)

        assert [e.type for e in events] == ["progress", "progress", "error"]
        assert events[-1].error.code == "SESSION_TIMEOUT"
        assert "parsing" in events[-1].error.message
        assert handler.cancelled is True
        assert engine.sessions.active_session_count == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, components):
        ok, failed = await asyncio.gather(
            collect(components.engine.stream("c", "templates", {}, "a")),
            collect(components.engine.stream("c", "optimize", {"code": INVALID_FLOWCHART}, "b")),
        )

        assert isinstance(ok[-1], ResultEvent)
        assert isinstance(failed[-1], ErrorEvent)
        assert {e.request_id for e in ok} == {"a"}
        assert [e.sequence for e in failed] == list(range(len(failed)))

    @pytest.mark.asyncio
    async def test_closing_connection_discards_events(self):
        handler = ScriptedTool(["parsing"], hang=True)
        engine = scripted_engine(handler)
        session = engine.open_session("c", "validate", {}, "r")

        received = []
        async for event in engine.run(session):
            received.append(event)
            if event.stage == "parsing":
                assert engine.sessions.close_connection("c") == 1
        await asyncio.sleep(0)

        assert [e.stage for e in received] == ["start", "parsing"]
        assert session.state == SessionState.CLOSED
        assert handler.cancelled is True
        assert not engine.sessions.is_open("c")

    @pytest.mark.asyncio
    async def test_session_closed_before_run_emits_nothing(self, components):
        session = components.engine.open_session("c", "templates", {}, "r1")
        components.sessions.close_connection("c")

        events = await collect(components.engine.run(session))

        assert events == []
        assert session.task is None
        assert components.sessions.get("c", "r1") is None

    def test_no_events_after_terminal(self, components):
        session = components.engine.open_session("c", "templates", {})
        session.fail("stopped", "INTERNAL_ERROR")
        with pytest.raises(RuntimeError):
            session.progress("selection", "late")


class TestIdleEviction:
    def test_idle_connections_are_evicted(self, components):
        sessions = SessionRegistry(idle_timeout=10)
        sessions.open_connection("idle")
        session = components.engine.open_session("busy", "templates", {})
        sessions.add(session)
        sessions.touch("busy")

        evicted = sessions.evict_idle(now=time.monotonic() + 11)

        assert sorted(evicted) == ["busy", "idle"]
        assert session.state == SessionState.CLOSED
        assert sessions.connection_count == 0

    def test_recent_activity_keeps_connection(self):
        sessions = SessionRegistry(idle_timeout=10)
        sessions.open_connection("c")
        assert sessions.evict_idle(now=time.monotonic() + 5) == []
        assert sessions.is_open("c")
