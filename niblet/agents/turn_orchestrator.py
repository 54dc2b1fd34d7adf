from __future__ import annotations

import asyncio
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from tenacity import AsyncRetrying, stop_after_attempt, wait_fixed

from niblet.agents.tools import DomainGateway, ToolDispatcher
from niblet.schemas.models import (
    ConversationResponse,
    LearningRecord,
    Message,
    PersonaKey,
    ToolCall,
    ToolResult,
    TurnError,
    TurnErrorKind,
    TurnResult,
)
from niblet.utils.assistant_client import (
    AssistantConfigError,
    AssistantService,
    AssistantServiceError,
    RunActiveError,
    get_assistant_client,
)
from niblet.utils.domain_store import get_domain_store
from niblet.utils.env import read_bool_env, read_float_env, read_int_env
from niblet.utils.history_cache import HistoryCache, get_history_cache
from niblet.utils.logging import bind_turn_context, clear_turn_context, get_logger
from niblet.utils.observability import RequestMetrics, get_metrics, time_phase
from niblet.utils.personas import (
    DEFAULT_PERSONA,
    FALLBACK_GREETING,
    GREETING_PROMPT,
    IMAGE_ONLY_PROMPT,
    get_persona,
    is_greeting_prompt,
    personality_changed_notice,
)
from niblet.utils.run_state import RunCoordinator, get_run_coordinator
from niblet.utils.tracing import start_span

log = get_logger(__name__)

MESSAGE_NOT_SENT = "Message not sent. Please try again."
CONNECTION_TROUBLE = "Sorry, I'm having trouble connecting. Please try again."
AUDIO_NOT_UNDERSTOOD = "Sorry, I couldn't understand the audio. Please try again."


class TurnPhase(str, Enum):
    IDLE = "idle"
    GATING = "gating"
    SENDING = "sending"
    AWAITING_REPLY = "awaiting_reply"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


_TRANSITIONS: Dict[TurnPhase, Set[TurnPhase]] = {
    TurnPhase.IDLE: {TurnPhase.GATING},
    TurnPhase.GATING: {TurnPhase.SENDING, TurnPhase.ABORTED},
    TurnPhase.SENDING: {TurnPhase.AWAITING_REPLY, TurnPhase.ABORTED},
    TurnPhase.AWAITING_REPLY: {TurnPhase.STREAMING, TurnPhase.FINALIZING, TurnPhase.ABORTED},
    TurnPhase.STREAMING: {TurnPhase.FINALIZING, TurnPhase.ABORTED},
    TurnPhase.FINALIZING: {TurnPhase.IDLE, TurnPhase.ABORTED},
    TurnPhase.ABORTED: {TurnPhase.IDLE},
}


class IllegalTransition(RuntimeError):
    pass


class DeliveryError(RuntimeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class TurnTracker:
    """Phase of one turn; rejects any move the transition table does not list."""

    def __init__(self, conversation_id: str, turn_id: str) -> None:
        self.conversation_id = conversation_id
        self.turn_id = turn_id
        self.phase = TurnPhase.IDLE
        self.history: List[TurnPhase] = [TurnPhase.IDLE]

    def advance(self, phase: TurnPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise IllegalTransition(f"{self.turn_id}: {self.phase.value} -> {phase.value}")
        log.debug("turn_phase", turn_id=self.turn_id, previous=self.phase.value, phase=phase.value)
        self.phase = phase
        self.history.append(phase)


@dataclass(frozen=True)
class TurnSettings:
    gate_timeout: float = 20.0
    delivery_attempts: int = 3
    delivery_backoff: float = 1.0
    race_wait: float = 5.0
    remote_timeout: float = 30.0
    reply_timeout: float = 90.0
    heartbeat_interval: float = 5.0
    learning_interval: int = 5
    streaming: bool = True

    @classmethod
    def from_env(cls) -> "TurnSettings":
        return cls(
            gate_timeout=read_float_env("TURN_GATE_TIMEOUT_SECONDS", 20.0),
            delivery_attempts=read_int_env("TURN_DELIVERY_ATTEMPTS", 3),
            delivery_backoff=read_float_env("TURN_DELIVERY_BACKOFF_SECONDS", 1.0),
            race_wait=read_float_env("TURN_RACE_WAIT_SECONDS", 5.0),
            remote_timeout=read_float_env("TURN_REMOTE_TIMEOUT_SECONDS", 30.0, minimum=0.1),
            reply_timeout=read_float_env("TURN_REPLY_TIMEOUT_SECONDS", 90.0, minimum=0.1),
            heartbeat_interval=read_float_env("TURN_HEARTBEAT_SECONDS", 5.0, minimum=0.05),
            learning_interval=read_int_env("TURN_LEARNING_INTERVAL", 5, minimum=0),
            streaming=read_bool_env("TURN_STREAMING", True),
        )


@dataclass
class TurnEvent:
    kind: str  # stream_increment | messages_changed | tool_result | turn_failed
    conversation_id: str
    message: Message | None = None
    tool_result: ToolResult | None = None
    error: TurnError | None = None


Listener = Callable[[TurnEvent], None]


@dataclass
class _Turn:
    conversation_id: str
    persona: PersonaKey
    remote_text: str
    image_url: str | None
    greeting: bool = False
    turn_id: str = field(default_factory=lambda: f"turn_{uuid.uuid4().hex[:16]}")
    tracker: TurnTracker | None = None
    user_message: Message | None = None
    placeholder: Message | None = None
    reply: Message | None = None
    remote_run_id: str | None = None
    tool_results: List[ToolResult] = field(default_factory=list)
    gate_timed_out: bool = False
    delivery_attempts: int = 0
    holds_gate: bool = False

    def __post_init__(self) -> None:
        self.tracker = TurnTracker(self.conversation_id, self.turn_id)

    @property
    def run_id(self) -> str:
        return f"local_{self.turn_id}"


_STANDALONE_I = re.compile(r"\bi\b")
_SENTENCE_START = re.compile(r"(^|[.!?]\s+)([a-z])")


def format_chat_text(text: str) -> str:
    """Tidy user input: standalone "i" becomes "I" and each sentence starts upper-case."""

    cleaned = " ".join(text.split())
    cleaned = _STANDALONE_I.sub("I", cleaned)
    return _SENTENCE_START.sub(lambda match: match.group(1) + match.group(2).upper(), cleaned)


def _index_of(messages: List[Message], target: Message) -> Optional[int]:
    for idx, message in enumerate(messages):
        if message is target:
            return idx
    return None


class TurnOrchestrator:
    """Drives user turns against the remote assistant, one at a time per conversation.

    Every turn passes the run-coordinator gate before touching the remote
    conversation, echoes the user message optimistically, delivers it with
    bounded retries, then assembles the reply (streamed or blocking) and
    writes exactly one finalized assistant message to history. Outcomes are
    returned as ``TurnResult`` values; only cancellation propagates.
    """

    def __init__(
        self,
        *,
        assistant: AssistantService,
        history: HistoryCache,
        runs: RunCoordinator,
        gateway: DomainGateway,
        user_id: str | None = None,
        settings: TurnSettings | None = None,
        default_persona: PersonaKey = DEFAULT_PERSONA,
        metrics: RequestMetrics | None = None,
    ) -> None:
        self.assistant = assistant
        self.history = history
        self.runs = runs
        self.settings = settings or TurnSettings()
        self.default_persona = default_persona
        self.metrics = metrics or get_metrics()
        self.tools = ToolDispatcher(gateway, user_id)
        self._messages: Dict[str, List[Message]] = {}
        self._personas: Dict[str, PersonaKey] = {}
        self._listeners: List[Listener] = []
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._background: Set[asyncio.Task] = set()

    # -- subscriptions -------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: TurnEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                log.warning("turn_listener_failed", kind=event.kind, error=str(exc))

    def _emit_messages_changed(self, conversation_id: str) -> None:
        self._emit(TurnEvent(kind="messages_changed", conversation_id=conversation_id))

    # -- conversation state --------------------------------------------

    def _messages_for(self, conversation_id: str) -> List[Message]:
        messages = self._messages.get(conversation_id)
        if messages is None:
            messages = self.history.get_messages(conversation_id) or []
            self._messages[conversation_id] = messages
        return messages

    def get_messages(self, conversation_id: str) -> List[Message]:
        return [message.model_copy() for message in self._messages_for(conversation_id)]

    def persona_for(self, conversation_id: str) -> PersonaKey:
        return self._personas.get(conversation_id, self.default_persona)

    def is_turn_active(self, conversation_id: str) -> bool:
        return self.runs.has_active_run(conversation_id)

    async def open_conversation(
        self,
        conversation_id: str | None = None,
        persona: PersonaKey | None = None,
    ) -> ConversationResponse:
        """Resume the given, else the last active, else a brand-new conversation."""

        conversation_id = conversation_id or self.history.get_last_active_conversation_id()
        if conversation_id is None:
            async with asyncio.timeout(self.settings.remote_timeout):
                conversation_id = await self.assistant.create_conversation()
        if persona is not None:
            self._personas[conversation_id] = persona

        cached = self.history.get_messages(conversation_id)
        if cached:
            self._messages[conversation_id] = cached
            log.info("conversation_restored", conversation_id=conversation_id, source="cache", messages=len(cached))
            return self._conversation_response(conversation_id, "cache")

        remote = await self._fetch_remote_history(conversation_id)
        if remote:
            self._messages[conversation_id] = remote
            self.history.save_messages(conversation_id, remote)
            log.info("conversation_restored", conversation_id=conversation_id, source="remote", messages=len(remote))
            return self._conversation_response(conversation_id, "remote")

        self._messages[conversation_id] = []
        result = await self._run_turn(
            _Turn(
                conversation_id=conversation_id,
                persona=self.persona_for(conversation_id),
                remote_text=GREETING_PROMPT,
                image_url=None,
                greeting=True,
            )
        )
        messages = self._messages_for(conversation_id)
        if not any(message.role == "assistant" for message in messages):
            if not result.ok:
                log.warning("conversation_greeting_failed", conversation_id=conversation_id)
            messages.append(Message(id=f"greeting_{uuid.uuid4().hex[:12]}", role="assistant", content=FALLBACK_GREETING))
            self.history.save_messages(conversation_id, messages)
            self._emit_messages_changed(conversation_id)
        return self._conversation_response(conversation_id, "greeting")

    def _conversation_response(self, conversation_id: str, source: str) -> ConversationResponse:
        return ConversationResponse(
            conversation_id=conversation_id,
            persona=self.persona_for(conversation_id),
            restored_from=source,
            messages=self.get_messages(conversation_id),
        )

    async def _fetch_remote_history(self, conversation_id: str) -> List[Message]:
        try:
            async with asyncio.timeout(self.settings.remote_timeout):
                remote = await self.assistant.list_messages(conversation_id)
        except (AssistantServiceError, AssistantConfigError, TimeoutError) as exc:
            log.warning("conversation_remote_fetch_failed", conversation_id=conversation_id, error=str(exc))
            return []
        return [
            message
            for message in remote
            if message.role in {"user", "assistant"} and not is_greeting_prompt(message.content)
        ]

    def change_personality(self, conversation_id: str, persona: PersonaKey) -> Message:
        get_persona(persona)
        self._personas[conversation_id] = persona
        notice = Message(
            id=f"system_{uuid.uuid4().hex[:12]}",
            role="system",
            content=personality_changed_notice(persona),
        )
        messages = self._messages_for(conversation_id)
        messages.append(notice)
        self.history.save_messages(conversation_id, messages)
        self._emit_messages_changed(conversation_id)
        log.info("personality_changed", conversation_id=conversation_id, persona=persona)
        return notice.model_copy()

    async def clear_conversation(self, conversation_id: str) -> LearningRecord | None:
        await self._cancel_and_wait([conversation_id])
        self._messages.pop(conversation_id, None)
        return self.history.clear(conversation_id)

    def set_user(self, user_id: str | None) -> None:
        self.tools.user_id = user_id

    async def sign_out(self) -> int:
        await self._cancel_and_wait(list(self._tasks))
        self._messages.clear()
        self._personas.clear()
        self.tools.user_id = None
        return self.history.clear_all()

    async def _cancel_and_wait(self, conversation_ids: List[str]) -> None:
        """Cancel in-flight turns and let them finish aborting before anything is cleared."""

        pending = [
            task
            for conversation_id in conversation_ids
            for task in self._tasks.get(conversation_id, set())
            if not task.done()
        ]
        for conversation_id in conversation_ids:
            self.cancel(conversation_id)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- turn submission -----------------------------------------------

    async def send_turn(self, conversation_id: str, text: str, image_url: str | None = None) -> TurnResult:
        display_text = format_chat_text(text or "")
        if not display_text and not image_url:
            return TurnResult(
                conversation_id=conversation_id,
                ok=False,
                error=TurnError(kind="delivery_failed", message="Nothing to send", retryable=False),
            )
        turn = _Turn(
            conversation_id=conversation_id,
            persona=self.persona_for(conversation_id),
            remote_text=display_text or IMAGE_ONLY_PROMPT,
            image_url=image_url,
        )
        return await self._run_turn(turn, display_text=display_text)

    def submit_turn(self, conversation_id: str, text: str, image_url: str | None = None) -> asyncio.Task:
        """Start a turn in the background; ``cancel(conversation_id)`` aborts it."""

        return self._track(conversation_id, self.send_turn(conversation_id, text, image_url))

    def submit_voice_turn(self, conversation_id: str, audio: bytes, mime_type: str) -> asyncio.Task:
        return self._track(conversation_id, self.send_voice_turn(conversation_id, audio, mime_type))

    def _track(self, conversation_id: str, coro: Coroutine[Any, Any, TurnResult]) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"turn:{conversation_id}")
        bucket = self._tasks.setdefault(conversation_id, set())
        bucket.add(task)

        def _forget(done: asyncio.Task) -> None:
            bucket.discard(done)
            if not bucket and self._tasks.get(conversation_id) is bucket:
                self._tasks.pop(conversation_id, None)

        task.add_done_callback(_forget)
        return task

    async def wait_turn(self, task: asyncio.Task) -> TurnResult:
        """Await a submitted turn; a turn cancelled through ``cancel`` yields a result instead of raising."""

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or current.cancelling() == 0):
                conversation_id = task.get_name().partition(":")[2]
                return TurnResult(
                    conversation_id=conversation_id,
                    ok=False,
                    error=TurnError(kind="cancelled", message="Turn cancelled", retryable=True),
                )
            raise

    async def send_voice_turn(self, conversation_id: str, audio: bytes, mime_type: str) -> TurnResult:
        try:
            async with asyncio.timeout(self.settings.remote_timeout):
                transcript = await self.assistant.transcribe_audio(audio, mime_type)
        except (AssistantServiceError, AssistantConfigError, TimeoutError) as exc:
            log.warning("voice_transcription_failed", conversation_id=conversation_id, error=str(exc))
            transcript = ""
        if not transcript.strip():
            self.metrics.record_turn_outcome("transcription_failed")
            return TurnResult(
                conversation_id=conversation_id,
                ok=False,
                error=TurnError(kind="transcription_failed", message=AUDIO_NOT_UNDERSTOOD),
            )
        return await self.send_turn(conversation_id, transcript)

    def cancel(self, conversation_id: str) -> int:
        tasks = [task for task in self._tasks.get(conversation_id, set()) if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            log.info("turn_cancel_requested", conversation_id=conversation_id, tasks=len(tasks))
        return len(tasks)

    async def aclose(self) -> None:
        pending = [task for bucket in self._tasks.values() for task in bucket if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, *self._background, return_exceptions=True)

    # -- turn machinery ------------------------------------------------

    async def _run_turn(self, turn: _Turn, display_text: str = "") -> TurnResult:
        started = time.perf_counter()
        cid = turn.conversation_id
        bind_turn_context(conversation_id=cid, turn_id=turn.turn_id)
        try:
            with start_span("turn", {"conversation_id": cid, "greeting": turn.greeting}):
                try:
                    await self._gate(turn)
                    # the hold is refreshed from the gate until the reply arrives
                    heartbeat = asyncio.create_task(self._heartbeat(cid))
                    try:
                        await self._send(turn, display_text)
                        reply = await self._await_reply(turn)
                    finally:
                        heartbeat.cancel()
                        await asyncio.gather(heartbeat, return_exceptions=True)
                    self._finalize(turn, reply)
                except IllegalTransition:
                    raise
                except DeliveryError as exc:
                    return self._abort(turn, "delivery_failed", MESSAGE_NOT_SENT, str(exc))
                except asyncio.CancelledError:
                    self._abort(turn, "cancelled", "Turn cancelled", "cancelled")
                    raise
                except Exception as exc:
                    log.error("turn_reply_failed", error=str(exc), error_type=type(exc).__name__)
                    return self._abort(turn, "reply_failed", CONNECTION_TROUBLE, str(exc))
                return self._complete(turn)
        finally:
            if turn.holds_gate:
                self.runs.set_inactive(cid, turn.run_id)
                turn.holds_gate = False
            self.metrics.record_phase("end_to_end", (time.perf_counter() - started) * 1000)
            clear_turn_context()

    async def _gate(self, turn: _Turn) -> None:
        turn.tracker.advance(TurnPhase.GATING)
        cid = turn.conversation_id
        with time_phase(self.metrics, "gating"):
            while not self.runs.try_acquire(cid, turn.run_id):
                completed = await self.runs.wait_for_completion(cid, self.settings.gate_timeout)
                if completed:
                    continue
                holder = self.runs.get_run_info(cid)
                log.warning(
                    "turn_gate_timeout",
                    waited=self.settings.gate_timeout,
                    holder=holder.run_id if holder else None,
                )
                self.metrics.increment_counter("gate::timeout")
                self.runs.set_inactive(cid)
                turn.gate_timed_out = True
        turn.holds_gate = True

    async def _send(self, turn: _Turn, display_text: str) -> None:
        turn.tracker.advance(TurnPhase.SENDING)
        cid = turn.conversation_id
        if not turn.greeting:
            turn.user_message = Message(
                id=f"user_{uuid.uuid4().hex[:16]}",
                role="user",
                content=display_text,
                image_url=turn.image_url,
                status="pending",
            )
            messages = self._messages_for(cid)
            messages.append(turn.user_message)
            self.history.save_messages(cid, messages)
            self._emit_messages_changed(cid)
        with time_phase(self.metrics, "delivery"):
            await self._deliver(turn)
        if turn.user_message is not None:
            turn.user_message.status = "sent"

    async def _deliver(self, turn: _Turn) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.settings.delivery_attempts, 1)),
            wait=wait_fixed(self.settings.delivery_backoff),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                turn.delivery_attempts = attempt.retry_state.attempt_number
                if turn.delivery_attempts > 1:
                    self.metrics.increment_counter("delivery::retry")
                    log.warning("turn_delivery_retry", attempt=turn.delivery_attempts)
                with attempt:
                    await self._deliver_once(turn)
        except Exception as exc:
            self.metrics.increment_counter("delivery::exhausted")
            log.warning("turn_delivery_failed", attempts=turn.delivery_attempts, error=str(exc))
            raise DeliveryError(str(exc) or type(exc).__name__, turn.delivery_attempts) from exc

    async def _deliver_once(self, turn: _Turn) -> None:
        try:
            async with asyncio.timeout(self.settings.remote_timeout):
                await self.assistant.add_message(turn.conversation_id, turn.remote_text, turn.image_url)
        except RunActiveError as exc:
            await self._reconcile_remote_run(turn, exc)
            raise

    async def _reconcile_remote_run(self, turn: _Turn, exc: RunActiveError) -> None:
        """A remote run we did not know about is active; wait on it, then hold the gate again."""

        cid = turn.conversation_id
        self.metrics.increment_counter("delivery::run_active")
        log.warning("turn_remote_run_active", remote_run_id=exc.run_id)
        if exc.run_id:
            self.runs.set_active(cid, exc.run_id)
            await self.runs.wait_for_completion(cid, self.settings.race_wait)
        self.runs.set_active(cid, turn.run_id)

    async def _heartbeat(self, conversation_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            self.runs.touch(conversation_id)

    def _tool_handler(self, turn: _Turn):
        async def handle(calls: List[ToolCall]) -> List[ToolResult]:
            results = await self.tools.dispatch_all(calls)
            turn.tool_results.extend(results)
            for result in results:
                self._emit(TurnEvent(kind="tool_result", conversation_id=turn.conversation_id, tool_result=result))
            self.runs.touch(turn.conversation_id)
            return results

        return handle

    def _on_remote_run(self, turn: _Turn) -> Callable[[str], None]:
        def record(run_id: str) -> None:
            turn.remote_run_id = run_id
            log.debug("turn_remote_run", remote_run_id=run_id)

        return record

    async def _await_reply(self, turn: _Turn) -> Message | None:
        turn.tracker.advance(TurnPhase.AWAITING_REPLY)
        with time_phase(self.metrics, "reply"):
            async with asyncio.timeout(self.settings.reply_timeout):
                if self.settings.streaming:
                    await self._stream_reply(turn)
                    return None
                replies = await self.assistant.run_turn(
                    turn.conversation_id,
                    turn.persona,
                    self._tool_handler(turn),
                    on_run=self._on_remote_run(turn),
                )
                return replies[-1] if replies else None

    async def _stream_reply(self, turn: _Turn) -> None:
        cid = turn.conversation_id
        placeholder = Message(id=f"assistant_{uuid.uuid4().hex[:16]}", role="assistant", is_streaming=True)
        turn.placeholder = placeholder
        self._messages_for(cid).append(placeholder)
        turn.tracker.advance(TurnPhase.STREAMING)

        def on_increment(partial: str, is_complete: bool) -> None:
            placeholder.content = partial
            self.runs.touch(cid)
            self._emit(TurnEvent(kind="stream_increment", conversation_id=cid, message=placeholder.model_copy()))

        final = await self.assistant.run_turn_streaming(
            cid,
            turn.persona,
            on_increment,
            self._tool_handler(turn),
            on_run=self._on_remote_run(turn),
        )
        if final.content:
            placeholder.content = final.content

    def _finalize(self, turn: _Turn, reply: Message | None) -> None:
        turn.tracker.advance(TurnPhase.FINALIZING)
        cid = turn.conversation_id
        messages = self._messages_for(cid)
        now = datetime.now(UTC)
        if turn.placeholder is not None:
            idx = _index_of(messages, turn.placeholder)
            final = turn.placeholder.model_copy(update={"is_streaming": False, "timestamp": now})
            if idx is not None:
                if final.content:
                    messages[idx] = final
                    turn.reply = final
                else:
                    del messages[idx]
            turn.placeholder = None
        elif reply is not None and reply.content:
            final = reply.model_copy(update={"is_streaming": False, "status": None})
            messages.append(final)
            turn.reply = final
        self.history.save_messages(cid, messages)

    def _complete(self, turn: _Turn) -> TurnResult:
        cid = turn.conversation_id
        self.runs.set_inactive(cid, turn.run_id)
        turn.holds_gate = False
        messages = self._messages_for(cid)
        self._emit_messages_changed(cid)
        interval = self.settings.learning_interval
        if interval and messages and len(messages) % interval == 0:
            self._schedule_learning(cid, [message.model_copy() for message in messages])
        turn.tracker.advance(TurnPhase.IDLE)
        self.metrics.record_turn_outcome("completed")
        log.info(
            "turn_completed",
            delivery_attempts=turn.delivery_attempts,
            tool_calls=len(turn.tool_results),
            remote_run_id=turn.remote_run_id,
        )
        return TurnResult(
            conversation_id=cid,
            ok=True,
            user_message=turn.user_message.model_copy() if turn.user_message else None,
            reply=turn.reply.model_copy() if turn.reply else None,
            tool_results=list(turn.tool_results),
            gate_timed_out=turn.gate_timed_out,
            delivery_attempts=turn.delivery_attempts,
        )

    def _abort(self, turn: _Turn, kind: TurnErrorKind, message: str, detail: str) -> TurnResult:
        turn.tracker.advance(TurnPhase.ABORTED)
        cid = turn.conversation_id
        messages = self._messages_for(cid)
        if turn.user_message is not None and turn.user_message.status == "pending":
            turn.user_message.status = "failed"
        if turn.placeholder is not None:
            idx = _index_of(messages, turn.placeholder)
            if idx is not None:
                if turn.placeholder.content:
                    messages[idx] = turn.placeholder.model_copy(update={"is_streaming": False, "status": "incomplete"})
                else:
                    del messages[idx]
            turn.placeholder = None
        self.history.save_messages(cid, messages)
        error = TurnError(
            kind=kind,
            message=message,
            retryable=True,
            unsent_text=turn.user_message.content if kind == "delivery_failed" and turn.user_message else None,
        )
        self.metrics.record_turn_outcome(kind)
        log.warning("turn_aborted", kind=kind, detail=detail, delivery_attempts=turn.delivery_attempts)
        self._emit_messages_changed(cid)
        self._emit(TurnEvent(kind="turn_failed", conversation_id=cid, error=error))
        turn.tracker.advance(TurnPhase.IDLE)
        return TurnResult(
            conversation_id=cid,
            ok=False,
            user_message=turn.user_message.model_copy() if turn.user_message else None,
            tool_results=list(turn.tool_results),
            error=error,
            gate_timed_out=turn.gate_timed_out,
            delivery_attempts=turn.delivery_attempts,
        )

    def _schedule_learning(self, conversation_id: str, messages: List[Message]) -> None:
        task = asyncio.create_task(asyncio.to_thread(self.history.record_learning, conversation_id, messages))
        self._background.add(task)

        def _done(done: asyncio.Task) -> None:
            self._background.discard(done)
            if not done.cancelled() and done.exception() is not None:
                log.warning("learning_record_failed", conversation_id=conversation_id, error=str(done.exception()))

        task.add_done_callback(_done)


_ORCHESTRATOR: TurnOrchestrator | None = None


def get_turn_orchestrator() -> TurnOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = TurnOrchestrator(
            assistant=get_assistant_client(),
            history=get_history_cache(),
            runs=get_run_coordinator(),
            gateway=get_domain_store(),
            user_id=os.getenv("NIBLET_USER_ID", "local-user"),
            settings=TurnSettings.from_env(),
        )
    return _ORCHESTRATOR


def reset_turn_orchestrator() -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = None
