from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any, Dict

import uvicorn
import yaml

from niblet.agents.turn_orchestrator import TurnOrchestrator, get_turn_orchestrator
from niblet.schemas.models import Message, TurnResult
from niblet.utils.env import load_env_file
from niblet.utils.history_cache import get_history_cache
from niblet.utils.logging import get_logger
from niblet.utils.personas import PERSONAS
from niblet.utils.run_state import get_run_coordinator

load_env_file()
log = get_logger(__name__)

_SECTION_ENV: Dict[str, Dict[str, str]] = {
    "assistant": {
        "base": "OPENAI_BASE",
        "model": "OPENAI_MODEL",
        "assistant_id": "OPENAI_ASSISTANT_ID",
    },
    "turns": {
        "gate_timeout": "TURN_GATE_TIMEOUT_SECONDS",
        "delivery_attempts": "TURN_DELIVERY_ATTEMPTS",
        "delivery_backoff": "TURN_DELIVERY_BACKOFF_SECONDS",
        "race_wait": "TURN_RACE_WAIT_SECONDS",
        "remote_timeout": "TURN_REMOTE_TIMEOUT_SECONDS",
        "reply_timeout": "TURN_REPLY_TIMEOUT_SECONDS",
        "heartbeat_interval": "TURN_HEARTBEAT_SECONDS",
        "learning_interval": "TURN_LEARNING_INTERVAL",
        "streaming": "TURN_STREAMING",
    },
    "run_state": {
        "timeout": "RUN_STATE_TIMEOUT_SECONDS",
        "retention": "RUN_STATE_RETENTION_SECONDS",
        "shards": "RUN_STATE_SHARDS",
        "poll_interval": "RUN_STATE_POLL_INTERVAL_SECONDS",
        "sweep_interval": "RUN_STATE_SWEEP_INTERVAL_SECONDS",
    },
    "storage": {
        "data_dir": "NIBLET_DATA_DIR",
    },
}


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    for section, env_map in _SECTION_ENV.items():
        values = config.get(section) or {}
        for key, env_var in env_map.items():
            value = values.get(key)
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            os.environ[env_var] = str(value)

    auth_cfg = config.get("auth", {})
    if "api_token" in auth_cfg:
        log.warning("config_api_token_ignored", msg="Use .env for API_AUTH_TOKEN")
    if rate := auth_cfg.get("rate_limit"):
        os.environ["API_RATE_LIMIT"] = str(rate)
    if window := auth_cfg.get("rate_window"):
        os.environ["API_RATE_WINDOW"] = str(window)


def _format_message(message: Message) -> str:
    label = {"user": "You", "assistant": "Niblet", "system": "--"}[message.role]
    suffix = f" [{message.status}]" if message.status in {"failed", "incomplete"} else ""
    body = message.content or ("(image)" if message.image_url else "")
    return f"{label}: {body}{suffix}"


def _print_result(result: TurnResult) -> None:
    for tool in result.tool_results:
        marker = "ok" if tool.success else "failed"
        print(f"  [{tool.name} {marker}] {tool.message}")
    if result.ok:
        if result.reply is not None:
            print(_format_message(result.reply))
        return
    error = result.error
    if error is not None:
        print(f"!! {error.message} ({error.kind})")


def cmd_chat(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    persona = args.persona or config.get("app", {}).get("persona")

    async def run(orchestrator: TurnOrchestrator) -> None:
        opened = await orchestrator.open_conversation(args.conversation_id, persona)
        cid = opened.conversation_id
        print(f"Conversation: {cid} (restored from {opened.restored_from})")
        for message in opened.messages[-args.tail:]:
            print(_format_message(message))

        if args.message or args.image_url:
            _print_result(await orchestrator.send_turn(cid, args.message or "", args.image_url))
            return

        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            if line.strip().lower() in {"exit", "quit"}:
                break
            if not line.strip():
                continue
            _print_result(await orchestrator.send_turn(cid, line))
        await orchestrator.aclose()

    asyncio.run(run(get_turn_orchestrator()))


def cmd_history(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    cache = get_history_cache()
    if args.list:
        conversations = cache.list_conversations()
        if not conversations:
            print("No cached conversations.")
            return
        current = cache.get_last_active_conversation_id()
        for cid in conversations:
            marker = "*" if cid == current else " "
            print(f"{marker} {cid}")
        return

    cid = args.conversation_id or cache.get_last_active_conversation_id()
    if not cid:
        raise SystemExit("Provide --conversation-id or --list; no active conversation recorded.")
    messages = cache.get_messages(cid)
    if messages is None:
        print("Conversation not cached.")
        return
    print(f"Conversation: {cid} ({len(messages)} messages)")
    for message in messages:
        print(_format_message(message))


def cmd_clear(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    cache = get_history_cache()
    cid = args.conversation_id or cache.get_last_active_conversation_id()
    if not cid:
        raise SystemExit("Provide --conversation-id; no active conversation recorded.")
    record = cache.clear(cid)
    print(f"Cleared conversation {cid}")
    if record is not None:
        topics = ", ".join(sorted(record.topics_discussed)) or "(none)"
        print(f"Kept learning: topics={topics} preferences={len(record.user_preferences)}")


def cmd_sign_out(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    removed = get_history_cache().clear_all()
    log.info("sign_out_complete", conversations=removed)
    print(f"Signed out; cleared {removed} cached conversation(s).")


def cmd_learning(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    cache = get_history_cache()
    if args.conversation_id:
        record = cache.get_learning(args.conversation_id)
        records = [record] if record is not None else []
    else:
        records = cache.list_learning()
    if not records:
        print("No learning recorded.")
        return
    for record in records:
        print(f"{record.conversation_id} | messages={record.message_count} | updated={record.last_updated.isoformat()}")
        print(f"  topics: {', '.join(sorted(record.topics_discussed)) or '(none)'}")
        for key, value in sorted(record.user_preferences.items()):
            print(f"  {key}: {value}")


def cmd_runs(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    coordinator = get_run_coordinator()
    if args.sweep:
        removed = coordinator.sweep()
        print(f"Swept {removed} idle run state(s).")
    states = coordinator.snapshot()
    if not states:
        print("No run states tracked.")
        return
    for cid, state in sorted(states.items()):
        status = "active" if state.active else "idle"
        print(f"{cid} | {status} | run={state.run_id or '-'} | updated={state.last_updated.isoformat()}")


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def main() -> None:
    parser = argparse.ArgumentParser(description="Niblet conversational turn coordinator CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_chat = sub.add_parser("chat", help="Talk to Niblet; interactive unless a message is given")
    p_chat.add_argument("message", nargs="?", help="Send one message and exit")
    p_chat.add_argument("--conversation-id")
    p_chat.add_argument("--persona", choices=sorted(PERSONAS))
    p_chat.add_argument("--image-url")
    p_chat.add_argument("--tail", type=int, default=10, help="Number of restored messages to show")
    p_chat.set_defaults(func=cmd_chat)

    p_history = sub.add_parser("history", help="Show cached conversation history")
    p_history.add_argument("--conversation-id")
    p_history.add_argument("--list", action="store_true", help="List cached conversations")
    p_history.set_defaults(func=cmd_history)

    p_clear = sub.add_parser("clear", help="Clear one conversation, keeping what was learned")
    p_clear.add_argument("--conversation-id")
    p_clear.set_defaults(func=cmd_clear)

    p_sign_out = sub.add_parser("sign-out", help="Remove every cached conversation and the session pointer")
    p_sign_out.set_defaults(func=cmd_sign_out)

    p_learning = sub.add_parser("learning", help="Show learned topics and preferences")
    p_learning.add_argument("--conversation-id")
    p_learning.set_defaults(func=cmd_learning)

    p_runs = sub.add_parser("runs", help="Inspect run states held by this process")
    p_runs.add_argument("--sweep", action="store_true", help="Drop idle states past retention first")
    p_runs.set_defaults(func=cmd_runs)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="niblet.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()
