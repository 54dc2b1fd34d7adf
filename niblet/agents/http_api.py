from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from starlette.middleware import Middleware

from niblet.agents.turn_orchestrator import TurnEvent, TurnOrchestrator, get_turn_orchestrator
from niblet.schemas.models import (
    ConversationResponse,
    ConversationStatusResponse,
    LearningRecord,
    Message,
    MessageListResponse,
    OpenConversationRequest,
    PersonalityRequest,
    SessionPointer,
    TurnRequest,
    TurnResult,
)
from niblet.utils.env import load_env_file
from niblet.utils.logging import get_logger
from niblet.utils.observability import get_metrics
from niblet.utils.run_state import sweep_interval_seconds
from niblet.utils.security import get_rate_limiter, verify_api_key
from niblet.utils.tracing import configure_tracing

load_env_file()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
raw_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "true")

if raw_origins.strip() == "*":
    cors_origins = ["*"]
else:
    cors_origins = [entry.strip() for entry in raw_origins.split(",") if entry.strip()]

cors_allow_credentials = raw_credentials.strip().lower() in {"1", "true", "yes"}

if cors_origins == ["*"] and cors_allow_credentials:
    cors_allow_credentials = False

cors_middleware = Middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_logger(__name__)
configure_tracing()

MAX_AUDIO_BYTES = int(os.getenv("VOICE_MAX_BYTES", str(10 * 1024 * 1024)))
ALLOWED_AUDIO_MIME = {
    "audio/m4a",
    "audio/mp4",
    "audio/mpeg",
    "audio/wav",
    "audio/webm",
    "audio/x-m4a",
}


def get_orchestrator() -> TurnOrchestrator:
    return get_turn_orchestrator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = get_orchestrator()
    orchestrator.runs.start_sweeper(sweep_interval_seconds())
    try:
        yield
    finally:
        await orchestrator.aclose()
        orchestrator.runs.stop_sweeper()


app = FastAPI(title="Niblet Turn Coordinator API", version="0.1.0", middleware=[cors_middleware], lifespan=lifespan)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    metrics = get_metrics()
    request_id = uuid.uuid4().hex
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(request.url.path, duration_ms)
        log.error(
            "api_request_failed",
            path=request.url.path,
            duration_ms=duration_ms,
            request_id=request_id,
            error=str(exc),
        )
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record(request.url.path, duration_ms)
    log.info(
        "api_request",
        path=request.url.path,
        status=response.status_code,
        duration_ms=duration_ms,
        request_id=request_id,
    )
    response.headers["X-Request-ID"] = request_id
    return response


def _rate_limit_identity(api_key: str | None, path: str) -> str:
    identity = (api_key or "anonymous").strip() or "anonymous"
    return f"{identity}:{path}"


def require_auth(
    request: Request,
    api_key: str | None = Header(default=None, alias="X-API-Key"),
    limiter=Depends(get_rate_limiter),
) -> str | None:
    verify_api_key(api_key)
    limiter.allow(_rate_limit_identity(api_key, request.url.path))
    return api_key


def _format_sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def turn_events_sse(
    orchestrator: TurnOrchestrator,
    conversation_id: str,
    payload: TurnRequest,
) -> AsyncIterator[str]:
    """Server-Sent Events for one turn.

    Emits `chunk` for each streamed increment, `tool_result` per tool call,
    then a terminal `completed` or `error` event carrying the TurnResult.
    """

    queue: asyncio.Queue[TurnEvent | None] = asyncio.Queue()

    def listener(event: TurnEvent) -> None:
        if event.conversation_id == conversation_id:
            queue.put_nowait(event)

    unsubscribe = orchestrator.subscribe(listener)
    task = orchestrator.submit_turn(conversation_id, payload.text, payload.image_url)
    task.add_done_callback(lambda _: queue.put_nowait(None))
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            if event.kind == "stream_increment" and event.message is not None:
                yield _format_sse(
                    "chunk",
                    {
                        "conversation_id": conversation_id,
                        "message_id": event.message.id,
                        "content": event.message.content,
                    },
                )
            elif event.kind == "tool_result" and event.tool_result is not None:
                yield _format_sse("tool_result", event.tool_result.model_dump(mode="json"))
        result = await orchestrator.wait_turn(task)
        yield _format_sse("completed" if result.ok else "error", result.model_dump(mode="json"))
    except Exception as exc:
        log.error("turn_stream_failed", conversation_id=conversation_id, error=str(exc))
        yield _format_sse("error", {"conversation_id": conversation_id, "message": str(exc)})
    finally:
        unsubscribe()
        if not task.done():
            # client went away mid-stream
            task.cancel()


@app.post("/v1/conversations", response_model=ConversationResponse)
async def open_conversation(
    payload: OpenConversationRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> ConversationResponse:
    if payload.user_id:
        orchestrator.set_user(payload.user_id)
    return await orchestrator.open_conversation(payload.conversation_id, payload.persona)


@app.get("/v1/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> MessageListResponse:
    return MessageListResponse(conversation_id=conversation_id, messages=orchestrator.get_messages(conversation_id))


@app.post("/v1/conversations/{conversation_id}/turns")
async def send_turn(
    request: Request,
    conversation_id: str,
    payload: TurnRequest,
    stream: bool = Query(default=False),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
):
    if not payload.text.strip() and not payload.image_url:
        raise HTTPException(status_code=400, detail="A turn needs text or an image")
    if stream:
        accept = request.headers.get("Accept", "")
        if "text/event-stream" not in accept:
            raise HTTPException(status_code=406, detail="Streaming requires Accept: text/event-stream")
        return StreamingResponse(
            turn_events_sse(orchestrator, conversation_id, payload),
            media_type="text/event-stream",
        )
    task = orchestrator.submit_turn(conversation_id, payload.text, payload.image_url)
    result: TurnResult = await orchestrator.wait_turn(task)
    return result


@app.post("/v1/conversations/{conversation_id}/voice", response_model=TurnResult)
async def send_voice_turn(
    conversation_id: str,
    file: UploadFile = File(...),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> TurnResult:
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty audio is not allowed")
    if len(contents) > MAX_AUDIO_BYTES:
        raise HTTPException(status_code=413, detail="Audio exceeds 10 MB limit")
    mime_type = (file.content_type or "application/octet-stream").lower()
    if mime_type not in ALLOWED_AUDIO_MIME:
        raise HTTPException(status_code=400, detail="Unsupported audio type")
    task = orchestrator.submit_voice_turn(conversation_id, contents, mime_type)
    return await orchestrator.wait_turn(task)


@app.get("/v1/conversations/{conversation_id}/status", response_model=ConversationStatusResponse)
async def conversation_status(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> ConversationStatusResponse:
    active = orchestrator.is_turn_active(conversation_id)
    info = orchestrator.runs.get_run_info(conversation_id)
    return ConversationStatusResponse(
        conversation_id=conversation_id,
        turn_active=active,
        run_id=info.run_id if info and active else None,
        last_updated=info.last_updated if info else None,
    )


@app.put("/v1/conversations/{conversation_id}/personality", response_model=Message)
async def change_personality(
    conversation_id: str,
    payload: PersonalityRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> Message:
    return orchestrator.change_personality(conversation_id, payload.persona)


@app.delete("/v1/conversations/{conversation_id}")
async def clear_conversation(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
):
    record = await orchestrator.clear_conversation(conversation_id)
    return {
        "conversation_id": conversation_id,
        "cleared": True,
        "learning": record.model_dump(mode="json") if record else None,
    }


@app.get("/v1/conversations/{conversation_id}/learning", response_model=LearningRecord)
async def conversation_learning(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> LearningRecord:
    record = orchestrator.history.get_learning(conversation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No learning recorded for this conversation")
    return record


@app.get("/v1/session", response_model=SessionPointer)
async def session_pointer(
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
) -> SessionPointer:
    pointer = orchestrator.history.get_session_pointer()
    if pointer is None:
        raise HTTPException(status_code=404, detail="No active session")
    return pointer


@app.post("/v1/session/sign-out")
async def sign_out(
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
):
    removed = await orchestrator.sign_out()
    return {"signed_out": True, "conversations_cleared": removed}


@app.get("/v1/metrics")
async def metrics_snapshot(
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    api_key: str | None = Depends(require_auth),
):
    metrics = get_metrics().snapshot()
    runs = orchestrator.runs.snapshot()
    diagnostics = metrics.setdefault("diagnostics", {})
    diagnostics["runs_tracked"] = float(len(runs))
    diagnostics["runs_active"] = float(sum(1 for state in runs.values() if state.active))
    return metrics
