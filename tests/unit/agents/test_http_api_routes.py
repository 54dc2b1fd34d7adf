import asyncio

import pytest
from fastapi.routing import APIRoute

from niblet.agents.http_api import _format_sse, _rate_limit_identity, app, turn_events_sse
from niblet.agents.turn_orchestrator import TurnOrchestrator, TurnSettings
from niblet.schemas.models import TurnRequest
from niblet.utils.assistant_client import OfflineAssistant
from niblet.utils.domain_store import DomainStore
from niblet.utils.history_cache import HistoryCache
from niblet.utils.observability import RequestMetrics
from niblet.utils.run_state import PollingWaiter, RunCoordinator
from niblet.utils.storage import MemoryKeyValueStore


def _route_methods(path: str) -> set[str]:
    methods: set[str] = set()
    for route in app.routes:
        if isinstance(route, APIRoute) and route.path == path:
            methods |= route.methods
    return methods


def test_conversation_routes_registered() -> None:
    assert "POST" in _route_methods("/v1/conversations")
    assert "POST" in _route_methods("/v1/conversations/{conversation_id}/turns")
    assert "POST" in _route_methods("/v1/conversations/{conversation_id}/voice")
    assert "PUT" in _route_methods("/v1/conversations/{conversation_id}/personality")
    assert "DELETE" in _route_methods("/v1/conversations/{conversation_id}")
    assert "POST" in _route_methods("/v1/session/sign-out")


def test_turn_route_registered_once() -> None:
    routes = [
        route
        for route in app.routes
        if isinstance(route, APIRoute)
        and route.path == "/v1/conversations/{conversation_id}/turns"
        and "POST" in route.methods
    ]
    assert len(routes) == 1


def test_rate_limit_identity_includes_path() -> None:
    key = _rate_limit_identity("secret", "/v1/conversations")
    other = _rate_limit_identity("secret", "/v1/session")
    assert key != other
    assert key.startswith("secret:")


def test_rate_limit_identity_defaults_to_anonymous() -> None:
    assert _rate_limit_identity(None, "/v1/metrics").startswith("anonymous:")
    assert _rate_limit_identity("   ", "/v1/metrics").startswith("anonymous:")


def test_format_sse_keeps_unicode() -> None:
    frame = _format_sse("chunk", {"content": "café"})
    assert frame == 'event: chunk\ndata: {"content": "café"}\n\n'


class _StalledAssistant(OfflineAssistant):
    async def run_turn_streaming(self, conversation_id, persona, on_increment, tool_handler, on_run=None):
        on_increment("Thinking", False)
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_sse_disconnect_cancels_turn(tmp_path) -> None:
    orchestrator = TurnOrchestrator(
        assistant=_StalledAssistant(),
        history=HistoryCache(MemoryKeyValueStore()),
        runs=RunCoordinator(waiter=PollingWaiter(0.01)),
        gateway=DomainStore(tmp_path / "domain.sqlite"),
        user_id="user-1",
        settings=TurnSettings(delivery_backoff=0.0, learning_interval=0),
        metrics=RequestMetrics(),
    )
    stream = turn_events_sse(orchestrator, "c1", TurnRequest(text="Two eggs"))

    first = await stream.__anext__()
    [task] = orchestrator._tasks["c1"]
    await stream.aclose()
    result = await orchestrator.wait_turn(task)

    assert first.startswith("event: chunk\n")
    assert result.error.kind == "cancelled"
    assert orchestrator.is_turn_active("c1") is False
    assert orchestrator.get_messages("c1")[-1].status == "incomplete"
