import asyncio
import json
from contextlib import asynccontextmanager

import httpx
import pytest

from niblet.schemas.models import ToolCall, ToolResult
from niblet.utils import assistant_client
from niblet.utils.assistant_client import (
    AssistantConfigError,
    AssistantServiceError,
    OfflineAssistant,
    OpenAIAssistantClient,
    RunActiveError,
    iter_sse_events,
    message_from_payload,
    raise_for_remote_error,
    tool_calls_from_run,
    tool_outputs,
)
from niblet.utils.observability import get_metrics
from niblet.utils.personas import GREETING_PROMPT

RUN_ACTIVE = "Can't add messages to thread_1 while a run run_abc123 is active."


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    for name in ["OPENAI_API_KEY", "OPENAI_ASSISTANT_ID", "OPENAI_BASE", "OPENAI_MODEL"]:
        monkeypatch.delenv(name, raising=False)
    assistant_client.reset_assistant_client()
    get_metrics().reset()
    yield
    assistant_client.reset_assistant_client()
    get_metrics().reset()


def _response(status_code: int, payload: object) -> httpx.Response:
    return httpx.Response(status_code, json=payload, request=httpx.Request("POST", "https://mock"))


class _StubStreamResponse:
    def __init__(self, lines: list[str], status_code: int = 200) -> None:
        self._lines = lines
        self.status_code = status_code

    async def aiter_lines(self):
        for line in self._lines:
            yield line

    async def aread(self) -> bytes:
        return b""


class _StubAsyncClient:
    def __init__(self, plan: list[object], calls: list[tuple]) -> None:
        self._plan = plan
        self.calls = calls

    async def __aenter__(self) -> "_StubAsyncClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def _next(self):
        if not self._plan:
            raise AssertionError("stub plan exhausted")
        action = self._plan.pop(0)
        if isinstance(action, Exception):
            raise action
        return action

    async def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self._next()

    async def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self._next()

    @asynccontextmanager
    async def stream(self, method, url, **kwargs):
        self.calls.append(("STREAM", url, kwargs))
        yield self._next()


def _patch_async_client(monkeypatch, plan: list[object]) -> list[tuple]:
    calls: list[tuple] = []

    def factory(*args, **kwargs):
        return _StubAsyncClient(plan, calls)

    monkeypatch.setattr(assistant_client.httpx, "AsyncClient", factory)
    return calls


def _client(**overrides) -> OpenAIAssistantClient:
    options = dict(
        api_key="sk-test",
        assistant_id="asst_shared",
        poll_interval=0.0,
        max_attempts=3,
        backoff_min=0.0,
        backoff_max=0.0,
    )
    options.update(overrides)
    return OpenAIAssistantClient(**options)


def test_raise_for_remote_error_detects_active_run():
    with pytest.raises(RunActiveError) as info:
        raise_for_remote_error(_response(400, {"error": {"message": RUN_ACTIVE}}))
    assert info.value.run_id == "run_abc123"
    assert info.value.status_code == 400


@pytest.mark.parametrize("status_code, transient", [(500, True), (429, True), (404, False)])
def test_raise_for_remote_error_classifies_status(status_code, transient):
    with pytest.raises(AssistantServiceError) as info:
        raise_for_remote_error(_response(status_code, {"error": {"message": "nope"}}))
    assert info.value.transient is transient
    assert str(info.value) == "nope"


def test_raise_for_remote_error_passes_success():
    raise_for_remote_error(_response(200, {"ok": True}))


def test_iter_sse_events_groups_lines_and_stops_at_done():
    lines = [
        "event: thread.message.delta",
        'data: {"delta": {"content": [{"type": "text", "text": {"value": "Hi"}}]}}',
        "",
        "event: thread.run.completed",
        'data: {"id": "run_1"}',
        "",
        "data: [DONE]",
        "",
        "event: ignored",
        'data: {"id": "late"}',
        "",
    ]

    async def source():
        for line in lines:
            yield line

    async def collect():
        return [item async for item in iter_sse_events(source())]

    events = asyncio.run(collect())
    assert [name for name, _ in events] == ["thread.message.delta", "thread.run.completed"]
    assert events[1][1] == {"id": "run_1"}


def test_tool_calls_from_run_tolerates_bad_arguments():
    run = {
        "required_action": {
            "submit_tool_outputs": {
                "tool_calls": [
                    {"id": "call_1", "function": {"name": "log_weight", "arguments": '{"weight": 181}'}},
                    {"id": "call_2", "function": {"name": "log_meal", "arguments": "{not json"}},
                ]
            }
        }
    }
    calls = tool_calls_from_run(run)
    assert calls == [
        ToolCall(id="call_1", name="log_weight", arguments={"weight": 181}),
        ToolCall(id="call_2", name="log_meal", arguments={}),
    ]


def test_tool_outputs_serialises_results():
    [output] = tool_outputs([ToolResult(name="log_weight", success=True, message="Logged weight: 180 lbs", tool_call_id="call_1")])
    assert output["tool_call_id"] == "call_1"
    assert json.loads(output["output"]) == {"success": True, "message": "Logged weight: 180 lbs"}


def test_message_from_payload_reads_text_and_image():
    message = message_from_payload(
        {
            "id": "msg_1",
            "role": "user",
            "created_at": 1714564800,
            "content": [
                {"type": "text", "text": {"value": "What is this?"}},
                {"type": "image_url", "image_url": {"url": "https://img.example/a.jpg"}},
            ],
        }
    )
    assert message.content == "What is this?"
    assert message.image_url == "https://img.example/a.jpg"
    assert message.status == "sent"
    assert message.timestamp.year == 2024


def test_client_requires_api_key():
    with pytest.raises(AssistantConfigError):
        OpenAIAssistantClient()


def test_create_conversation_retries_transport_errors(monkeypatch):
    request = httpx.Request("POST", "https://mock/threads")
    plan = [httpx.ConnectError("connect", request=request), _response(200, {"id": "thread_1"})]
    calls = _patch_async_client(monkeypatch, plan)

    conversation_id = asyncio.run(_client().create_conversation())

    assert conversation_id == "thread_1"
    assert len(calls) == 2
    counters = get_metrics().snapshot()["counters"]
    assert counters["assistant::transport_error"] == 1
    assert counters["assistant_retry::attempt"] == 1


def test_add_message_surfaces_run_active_without_retrying(monkeypatch):
    plan = [_response(400, {"error": {"message": RUN_ACTIVE}})]
    calls = _patch_async_client(monkeypatch, plan)

    with pytest.raises(RunActiveError) as info:
        asyncio.run(_client().add_message("thread_1", "hello"))

    assert info.value.run_id == "run_abc123"
    assert len(calls) == 1


def test_add_message_with_image_sends_content_blocks(monkeypatch):
    calls = _patch_async_client(monkeypatch, [_response(200, {"id": "msg_1"})])

    asyncio.run(_client().add_message("thread_1", "", "https://img.example/a.jpg"))

    _, url, kwargs = calls[0]
    assert url.endswith("/threads/thread_1/messages")
    content = kwargs["json"]["content"]
    assert content[1] == {"type": "image_url", "image_url": {"url": "https://img.example/a.jpg"}}
    assert kwargs["headers"]["OpenAI-Beta"] == "assistants=v2"


def test_run_turn_submits_tool_outputs_and_returns_replies(monkeypatch):
    requires_action = {
        "id": "run_1",
        "status": "requires_action",
        "required_action": {
            "submit_tool_outputs": {
                "tool_calls": [{"id": "call_1", "function": {"name": "log_weight", "arguments": '{"weight": 180}'}}]
            }
        },
    }
    plan = [
        _response(200, requires_action),
        _response(200, {"id": "run_1", "status": "queued"}),
        _response(200, {"id": "run_1", "status": "completed"}),
        _response(
            200,
            {
                "data": [
                    {"id": "msg_u", "role": "user", "content": [{"type": "text", "text": {"value": "180 today"}}]},
                    {"id": "msg_a", "role": "assistant", "content": [{"type": "text", "text": {"value": "Logged!"}}]},
                ]
            },
        ),
    ]
    calls = _patch_async_client(monkeypatch, plan)
    seen_calls = []
    seen_runs = []

    async def handler(tool_calls):
        seen_calls.extend(tool_calls)
        return [ToolResult(name="log_weight", success=True, message="Logged weight: 180 lbs", tool_call_id="call_1")]

    replies = asyncio.run(_client().run_turn("thread_1", "best-friend", handler, on_run=seen_runs.append))

    assert [reply.content for reply in replies] == ["Logged!"]
    assert seen_runs == ["run_1"]
    assert [call.name for call in seen_calls] == ["log_weight"]
    submit = calls[1]
    assert submit[1].endswith("/runs/run_1/submit_tool_outputs")
    assert submit[2]["json"]["tool_outputs"][0]["tool_call_id"] == "call_1"
    assert calls[3][2]["params"]["run_id"] == "run_1"


def test_run_turn_raises_on_failed_run(monkeypatch):
    plan = [_response(200, {"id": "run_1", "status": "failed"})]
    _patch_async_client(monkeypatch, plan)

    async def handler(tool_calls):
        return []

    with pytest.raises(AssistantServiceError):
        asyncio.run(_client().run_turn("thread_1", "best-friend", handler))


def test_run_turn_streaming_reports_increments(monkeypatch):
    lines = [
        "event: thread.run.created",
        'data: {"id": "run_9"}',
        "",
        "event: thread.message.delta",
        'data: {"delta": {"content": [{"type": "text", "text": {"value": "Hel"}}]}}',
        "",
        "event: thread.message.delta",
        'data: {"delta": {"content": [{"type": "text", "text": {"value": "lo"}}]}}',
        "",
        "event: thread.message.completed",
        'data: {"id": "msg_1"}',
        "",
        "data: [DONE]",
        "",
    ]
    _patch_async_client(monkeypatch, [_StubStreamResponse(lines)])
    increments = []
    runs = []

    async def handler(tool_calls):
        return []

    final = asyncio.run(
        _client().run_turn_streaming(
            "thread_1",
            "best-friend",
            lambda text, done: increments.append((text, done)),
            handler,
            on_run=runs.append,
        )
    )

    assert increments == [("Hel", False), ("Hello", False), ("Hello", True)]
    assert final.id == "msg_1"
    assert final.content == "Hello"
    assert runs == ["run_9"]


def test_run_turn_streaming_raises_on_failed_run(monkeypatch):
    lines = [
        "event: thread.run.failed",
        'data: {"id": "run_9", "last_error": {"message": "rate limited"}}',
        "",
    ]
    _patch_async_client(monkeypatch, [_StubStreamResponse(lines)])

    async def handler(tool_calls):
        return []

    with pytest.raises(AssistantServiceError, match="rate limited"):
        asyncio.run(_client().run_turn_streaming("thread_1", "best-friend", lambda *_: None, handler))


def test_offline_assistant_echoes_user_text():
    offline = OfflineAssistant(chunk_size=5)
    increments = []

    async def scenario():
        cid = await offline.create_conversation()
        await offline.add_message(cid, "Two eggs")

        async def handler(tool_calls):
            return []

        reply = await offline.run_turn_streaming(cid, "best-friend", lambda text, done: increments.append(done), handler)
        return reply, await offline.list_messages(cid)

    reply, history = asyncio.run(scenario())
    assert reply.content.startswith("[offline] I heard: Two eggs")
    assert increments[-1] is True
    assert increments.count(True) == 1
    assert [message.role for message in history] == ["user", "assistant"]


def test_offline_assistant_leaves_greeting_unanswered():
    offline = OfflineAssistant()

    async def scenario():
        cid = await offline.create_conversation()
        await offline.add_message(cid, GREETING_PROMPT)

        async def handler(tool_calls):
            return []

        return await offline.run_turn(cid, "best-friend", handler)

    assert asyncio.run(scenario()) == []


def test_offline_assistant_cannot_transcribe():
    with pytest.raises(AssistantConfigError):
        asyncio.run(OfflineAssistant().transcribe_audio(b"abc", "audio/m4a"))


def test_get_assistant_client_offline_without_key():
    assert isinstance(assistant_client.get_assistant_client(), OfflineAssistant)


def test_get_assistant_client_uses_key(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-live")
    assert isinstance(assistant_client.get_assistant_client(), OpenAIAssistantClient)


def test_list_messages_keeps_newest_page_oldest_first(monkeypatch):
    newest_first = [
        {"id": f"msg_{idx}", "role": "user", "content": [{"type": "text", "text": {"value": f"message {idx}"}}]}
        for idx in range(149, 49, -1)
    ]
    calls = _patch_async_client(monkeypatch, [_response(200, {"data": newest_first})])

    messages = asyncio.run(_client().list_messages("thread_1"))

    assert calls[0][2]["params"] == {"order": "desc", "limit": 100}
    assert messages[0].id == "msg_50"
    assert messages[-1].id == "msg_149"
    assert len(messages) == 100
