from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from niblet.schemas.models import Message, PersonaKey, ToolCall, ToolResult
from niblet.utils.env import read_float_env, read_int_env
from niblet.utils.logging import get_logger
from niblet.utils.observability import get_metrics
from niblet.utils.personas import get_persona, is_greeting_prompt, tool_definitions
from niblet.utils.run_state import extract_run_id
from niblet.utils.tracing import add_span_event, start_span

log = get_logger(__name__)

_DEFAULT_BASE = "https://api.openai.com/v1"
_DEFAULT_MODEL = "gpt-4-turbo"
_DEFAULT_TRANSCRIBE_MODEL = "whisper-1"
_TERMINAL_RUN_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete"}

ToolHandler = Callable[[List[ToolCall]], Awaitable[List[ToolResult]]]
IncrementCallback = Callable[[str, bool], None]
RunCallback = Callable[[str], None]


class AssistantConfigError(RuntimeError):
    """Raised when OpenAI credentials or configuration are missing."""


class AssistantServiceError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class RunActiveError(AssistantServiceError):
    """The remote conversation already has a run in flight."""

    def __init__(self, message: str, run_id: str | None, *, status_code: int | None = 400) -> None:
        super().__init__(message, status_code=status_code)
        self.run_id = run_id


class AssistantService(Protocol):
    async def create_conversation(self) -> str: ...

    async def add_message(self, conversation_id: str, text: str, image_url: str | None = None) -> None: ...

    async def run_turn(
        self,
        conversation_id: str,
        persona: PersonaKey,
        tool_handler: ToolHandler,
        on_run: RunCallback | None = None,
    ) -> List[Message]: ...

    async def run_turn_streaming(
        self,
        conversation_id: str,
        persona: PersonaKey,
        on_increment: IncrementCallback,
        tool_handler: ToolHandler,
        on_run: RunCallback | None = None,
    ) -> Message: ...

    async def list_messages(self, conversation_id: str, limit: int = 100) -> List[Message]: ...

    async def transcribe_audio(self, audio: bytes, mime_type: str) -> str: ...


def _api_key() -> str | None:
    return os.getenv("OPENAI_API_KEY")


def is_run_active_message(message: str) -> bool:
    lowered = message.lower()
    return "while a run" in lowered and "is active" in lowered


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text or f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text or f"HTTP {response.status_code}"


def raise_for_remote_error(response: httpx.Response) -> None:
    """Translate an HTTP error response into the service's exception types."""

    if response.status_code < 400:
        return
    message = _error_message(response)
    if is_run_active_message(message):
        raise RunActiveError(message, extract_run_id(message), status_code=response.status_code)
    raise AssistantServiceError(message, status_code=response.status_code)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RunActiveError):
        return False
    if isinstance(exc, AssistantServiceError):
        return exc.transient
    return isinstance(exc, httpx.TransportError)


def _message_text(payload: Dict[str, Any]) -> str:
    parts: List[str] = []
    for block in payload.get("content") or []:
        if block.get("type") == "text":
            value = (block.get("text") or {}).get("value")
            if value:
                parts.append(str(value))
    return "\n".join(parts)


def _message_image(payload: Dict[str, Any]) -> str | None:
    for block in payload.get("content") or []:
        if block.get("type") == "image_url":
            return (block.get("image_url") or {}).get("url")
    return None


def message_from_payload(payload: Dict[str, Any]) -> Message:
    created = payload.get("created_at")
    timestamp = datetime.fromtimestamp(created, UTC) if isinstance(created, (int, float)) else datetime.now(UTC)
    return Message(
        id=str(payload.get("id") or f"msg_{uuid.uuid4().hex}"),
        role=payload.get("role") if payload.get("role") in {"user", "assistant"} else "assistant",
        content=_message_text(payload),
        timestamp=timestamp,
        image_url=_message_image(payload),
        status="sent" if payload.get("role") == "user" else None,
    )


def tool_calls_from_run(run: Dict[str, Any]) -> List[ToolCall]:
    required = (run.get("required_action") or {}).get("submit_tool_outputs") or {}
    calls: List[ToolCall] = []
    for raw in required.get("tool_calls") or []:
        function = raw.get("function") or {}
        try:
            arguments = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            arguments = {}
        calls.append(
            ToolCall(
                id=str(raw.get("id")),
                name=str(function.get("name")),
                arguments=arguments if isinstance(arguments, dict) else {},
            )
        )
    return calls


def tool_outputs(results: Sequence[ToolResult]) -> List[Dict[str, str]]:
    return [
        {
            "tool_call_id": result.tool_call_id or "",
            "output": json.dumps({"success": result.success, "message": result.message, **result.data}),
        }
        for result in results
    ]


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, Any]]:
    """Group ``event:``/``data:`` lines into ``(event, payload)`` pairs; stops at ``[DONE]``."""

    event = "message"
    data_lines: List[str] = []
    async for line in lines:
        if line.startswith("event:"):
            event = line[6:].strip()
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].strip())
            continue
        if line.strip() or not data_lines:
            continue
        raw = "\n".join(data_lines)
        data_lines = []
        if raw == "[DONE]":
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            log.debug("assistant_sse_unparsed", event=event)
            payload = raw
        yield event, payload
        event = "message"
    if data_lines and data_lines != ["[DONE]"]:
        raw = "\n".join(data_lines)
        try:
            yield event, json.loads(raw)
        except json.JSONDecodeError:
            yield event, raw


def _delta_text(payload: Dict[str, Any]) -> str:
    parts: List[str] = []
    for block in (payload.get("delta") or {}).get("content") or []:
        if block.get("type") == "text":
            value = (block.get("text") or {}).get("value")
            if value:
                parts.append(str(value))
    return "".join(parts)


class OpenAIAssistantClient:
    """OpenAI Assistants (v2) over httpx: threads, messages, runs and transcription."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        assistant_id: str | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
        max_polls: int | None = None,
        max_attempts: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self.api_key = api_key or _api_key()
        if not self.api_key:
            raise AssistantConfigError("OPENAI_API_KEY is not configured")
        self.base_url = (base_url or os.getenv("OPENAI_BASE", _DEFAULT_BASE)).rstrip("/")
        self.model = model or os.getenv("OPENAI_MODEL", _DEFAULT_MODEL)
        self.timeout = timeout or read_float_env("OPENAI_TIMEOUT_SECONDS", 30.0, minimum=1.0)
        self.poll_interval = poll_interval if poll_interval is not None else read_float_env(
            "OPENAI_RUN_POLL_INTERVAL_SECONDS", 1.0
        )
        self.max_polls = max_polls or read_int_env("OPENAI_RUN_MAX_POLLS", 60)
        self.max_attempts = max_attempts or read_int_env("OPENAI_MAX_ATTEMPTS", 3)
        self.backoff_min = backoff_min if backoff_min is not None else read_float_env("OPENAI_BACKOFF_MIN_SECONDS", 1.0)
        self.backoff_max = max(
            self.backoff_min,
            backoff_max if backoff_max is not None else read_float_env("OPENAI_BACKOFF_MAX_SECONDS", 8.0),
        )
        shared = assistant_id or os.getenv("OPENAI_ASSISTANT_ID")
        self._assistant_ids: Dict[str, str] = {}
        self._shared_assistant_id = shared
        self._assistant_lock = asyncio.Lock()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "OpenAI-Beta": "assistants=v2"}

    def _client(self, *, stream: bool = False) -> httpx.AsyncClient:
        # streamed runs may idle between events for longer than the request timeout
        timeout = httpx.Timeout(self.timeout, read=None) if stream else httpx.Timeout(self.timeout)
        return httpx.AsyncClient(timeout=timeout)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            stop=stop_after_attempt(max(self.max_attempts, 1)),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        retry: bool = True,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        async def call() -> Dict[str, Any]:
            try:
                if method == "GET":
                    response = await client.get(self._url(path), headers=self._headers(), **kwargs)
                else:
                    response = await client.post(self._url(path), headers=self._headers(), **kwargs)
            except httpx.TransportError as exc:
                get_metrics().increment_counter("assistant::transport_error")
                raise AssistantServiceError(f"{method} {path} failed: {exc}") from exc
            raise_for_remote_error(response)
            return response.json()

        if not retry:
            return await call()
        async for attempt in self._retrying():
            if attempt.retry_state.attempt_number > 1:
                get_metrics().increment_counter("assistant_retry::attempt")
                log.warning("assistant_request_retry", path=path, attempt=attempt.retry_state.attempt_number)
            with attempt:
                return await call()
        raise AssertionError("unreachable")  # pragma: no cover

    async def _ensure_assistant(self, persona: PersonaKey) -> str:
        if self._shared_assistant_id:
            return self._shared_assistant_id
        async with self._assistant_lock:
            cached = self._assistant_ids.get(persona)
            if cached:
                return cached
            config = get_persona(persona)
            async with self._client() as client:
                payload = await self._request(
                    client,
                    "POST",
                    "/assistants",
                    json={
                        "name": config.name,
                        "instructions": config.instructions,
                        "model": self.model,
                        "tools": tool_definitions(),
                    },
                )
            assistant_id = str(payload["id"])
            self._assistant_ids[persona] = assistant_id
            log.info("assistant_created", persona=persona, assistant_id=assistant_id)
            return assistant_id

    async def create_conversation(self) -> str:
        async with self._client() as client:
            payload = await self._request(client, "POST", "/threads", json={})
        conversation_id = str(payload["id"])
        log.info("assistant_conversation_created", conversation_id=conversation_id)
        return conversation_id

    async def add_message(self, conversation_id: str, text: str, image_url: str | None = None) -> None:
        if image_url:
            content: Any = [
                {"type": "text", "text": text or "Here's an image."},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]
        else:
            content = text
        # delivery retries belong to the caller, which reconciles run-active rejections first
        async with self._client() as client:
            await self._request(
                client,
                "POST",
                f"/threads/{conversation_id}/messages",
                retry=False,
                json={"role": "user", "content": content},
            )

    async def list_messages(self, conversation_id: str, limit: int = 100, run_id: str | None = None) -> List[Message]:
        """Return the newest ``limit`` messages, oldest first."""

        params: Dict[str, Any] = {"order": "desc", "limit": limit}
        if run_id:
            params["run_id"] = run_id
        async with self._client() as client:
            payload = await self._request(client, "GET", f"/threads/{conversation_id}/messages", params=params)
        return [message_from_payload(item) for item in reversed(payload.get("data") or [])]

    async def run_turn(
        self,
        conversation_id: str,
        persona: PersonaKey,
        tool_handler: ToolHandler,
        on_run: RunCallback | None = None,
    ) -> List[Message]:
        assistant_id = await self._ensure_assistant(persona)
        temperature = get_persona(persona).temperature
        with start_span("assistant.run", {"conversation_id": conversation_id, "persona": persona}) as span:
            async with self._client() as client:
                run = await self._request(
                    client,
                    "POST",
                    f"/threads/{conversation_id}/runs",
                    retry=False,
                    json={"assistant_id": assistant_id, "temperature": temperature},
                )
                run_id = str(run["id"])
                if on_run is not None:
                    on_run(run_id)
                for _ in range(self.max_polls):
                    status = run.get("status")
                    if status in _TERMINAL_RUN_STATUSES:
                        break
                    if status == "requires_action":
                        calls = tool_calls_from_run(run)
                        add_span_event(span, "tool_calls", {"count": len(calls)})
                        results = await tool_handler(calls)
                        run = await self._request(
                            client,
                            "POST",
                            f"/threads/{conversation_id}/runs/{run_id}/submit_tool_outputs",
                            json={"tool_outputs": tool_outputs(results)},
                        )
                        continue
                    await asyncio.sleep(self.poll_interval)
                    run = await self._request(client, "GET", f"/threads/{conversation_id}/runs/{run_id}")
                else:
                    raise AssistantServiceError(f"Run {run_id} did not complete within {self.max_polls} polls")
            status = run.get("status")
            if status != "completed":
                raise AssistantServiceError(f"Run failed with status: {status}", status_code=None)
            messages = await self.list_messages(conversation_id, run_id=run_id)
        return [message for message in messages if message.role == "assistant"]

    async def run_turn_streaming(
        self,
        conversation_id: str,
        persona: PersonaKey,
        on_increment: IncrementCallback,
        tool_handler: ToolHandler,
        on_run: RunCallback | None = None,
    ) -> Message:
        assistant_id = await self._ensure_assistant(persona)
        path: str | None = f"/threads/{conversation_id}/runs"
        payload: Dict[str, Any] = {
            "assistant_id": assistant_id,
            "temperature": get_persona(persona).temperature,
            "stream": True,
        }
        text = ""
        message_id: str | None = None
        run_id: str | None = None
        with start_span("assistant.run_stream", {"conversation_id": conversation_id, "persona": persona}) as span:
            async with self._client(stream=True) as client:
                while path is not None:
                    next_path: str | None = None
                    async with client.stream("POST", self._url(path), headers=self._headers(), json=payload) as response:
                        if response.status_code >= 400:
                            await response.aread()
                            raise_for_remote_error(response)
                        async for event, data in iter_sse_events(response.aiter_lines()):
                            if not isinstance(data, dict):
                                continue
                            if event == "thread.run.created":
                                run_id = str(data.get("id"))
                                if on_run is not None:
                                    on_run(run_id)
                            elif event == "thread.message.created" and text:
                                text += "\n\n"
                            elif event == "thread.message.delta":
                                delta = _delta_text(data)
                                if delta:
                                    text += delta
                                    on_increment(text, False)
                            elif event == "thread.message.completed":
                                message_id = str(data.get("id") or message_id)
                            elif event == "thread.run.requires_action":
                                run_id = str(data.get("id") or run_id)
                                calls = tool_calls_from_run(data)
                                add_span_event(span, "tool_calls", {"count": len(calls)})
                                results = await tool_handler(calls)
                                next_path = f"/threads/{conversation_id}/runs/{run_id}/submit_tool_outputs"
                                payload = {"tool_outputs": tool_outputs(results), "stream": True}
                            elif event in {"thread.run.failed", "thread.run.cancelled", "thread.run.expired"}:
                                error = (data.get("last_error") or {}).get("message") or event
                                raise AssistantServiceError(f"Run failed: {error}")
                            elif event == "error":
                                raise AssistantServiceError(str(data.get("message") or data))
                    path = next_path
        on_increment(text, True)
        return Message(id=message_id or f"msg_{uuid.uuid4().hex}", role="assistant", content=text)

    async def transcribe_audio(self, audio: bytes, mime_type: str) -> str:
        if not audio:
            raise AssistantServiceError("Empty audio payload", status_code=400)
        extension = (mime_type.split("/")[-1].split(";")[0] or "webm").strip()
        async with self._client() as client:
            payload = await self._request(
                client,
                "POST",
                "/audio/transcriptions",
                files={"file": (f"audio.{extension}", audio, mime_type)},
                data={"model": os.getenv("OPENAI_TRANSCRIBE_MODEL", _DEFAULT_TRANSCRIBE_MODEL)},
            )
        return str(payload.get("text") or "").strip()


class OfflineAssistant:
    """Local stand-in used when no API key is configured.

    Keeps conversations in memory and echoes the last user message back,
    so the turn machinery can run end to end without network access.
    """

    def __init__(self, chunk_size: int = 12) -> None:
        self.chunk_size = max(chunk_size, 1)
        self._threads: Dict[str, List[Message]] = {}
        self._pending: Dict[str, Optional[Message]] = {}

    async def create_conversation(self) -> str:
        conversation_id = f"thread_offline_{uuid.uuid4().hex[:12]}"
        self._threads[conversation_id] = []
        return conversation_id

    async def add_message(self, conversation_id: str, text: str, image_url: str | None = None) -> None:
        message = Message(
            id=f"msg_{uuid.uuid4().hex}",
            role="user",
            content=text,
            image_url=image_url,
            status="sent",
        )
        self._threads.setdefault(conversation_id, []).append(message)
        # the greeting prompt gets no echo so callers fall back to their own greeting
        self._pending[conversation_id] = None if is_greeting_prompt(text) else message

    def _reply_text(self, conversation_id: str) -> str:
        pending = self._pending.pop(conversation_id, None)
        if pending is None:
            return ""
        return f"[offline] I heard: {pending.content}. Provide OPENAI_API_KEY to enable real replies."

    def _store_reply(self, conversation_id: str, text: str) -> Message:
        reply = Message(id=f"msg_{uuid.uuid4().hex}", role="assistant", content=text)
        self._threads.setdefault(conversation_id, []).append(reply)
        return reply

    async def run_turn(
        self,
        conversation_id: str,
        persona: PersonaKey,
        tool_handler: ToolHandler,
        on_run: RunCallback | None = None,
    ) -> List[Message]:
        if on_run is not None:
            on_run(f"run_offline_{uuid.uuid4().hex[:12]}")
        text = self._reply_text(conversation_id)
        if not text:
            return []
        return [self._store_reply(conversation_id, text)]

    async def run_turn_streaming(
        self,
        conversation_id: str,
        persona: PersonaKey,
        on_increment: IncrementCallback,
        tool_handler: ToolHandler,
        on_run: RunCallback | None = None,
    ) -> Message:
        if on_run is not None:
            on_run(f"run_offline_{uuid.uuid4().hex[:12]}")
        text = self._reply_text(conversation_id)
        for end in range(self.chunk_size, len(text), self.chunk_size):
            on_increment(text[:end], False)
            await asyncio.sleep(0)
        on_increment(text, True)
        if not text:
            return Message(id=f"msg_{uuid.uuid4().hex}", role="assistant", content="")
        return self._store_reply(conversation_id, text)

    async def list_messages(self, conversation_id: str, limit: int = 100) -> List[Message]:
        return [message.model_copy() for message in self._threads.get(conversation_id, [])[-limit:]]

    async def transcribe_audio(self, audio: bytes, mime_type: str) -> str:
        raise AssistantConfigError("Voice transcription requires OPENAI_API_KEY")


_CLIENT: AssistantService | None = None


def get_assistant_client() -> AssistantService:
    global _CLIENT
    if _CLIENT is None:
        if _api_key():
            _CLIENT = OpenAIAssistantClient()
        else:
            log.warning("assistant_offline_mode")
            _CLIENT = OfflineAssistant()
    return _CLIENT


def reset_assistant_client() -> None:
    global _CLIENT
    _CLIENT = None
