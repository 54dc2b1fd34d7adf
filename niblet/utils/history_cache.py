from __future__ import annotations

import json
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Sequence

from pydantic import TypeAdapter, ValidationError

from niblet.schemas.models import LearningRecord, Message, SessionPointer
from niblet.utils.learning import DEFAULT_POLICY, LearningPolicy, extract_learning
from niblet.utils.logging import get_logger
from niblet.utils.observability import get_metrics
from niblet.utils.storage import KeyValueStore, SqliteKeyValueStore

log = get_logger(__name__)

MESSAGES_PREFIX = "niblet_messages_"
SESSION_KEY = "niblet_session"
LEARNING_KEY = "niblet_ai_learning"

_MESSAGE_LIST = TypeAdapter(List[Message])
_LEARNING_TABLE = TypeAdapter(Dict[str, LearningRecord])


def _messages_key(conversation_id: str) -> str:
    return f"{MESSAGES_PREFIX}{conversation_id}"


class HistoryCache:
    """Durable per-conversation message lists plus the session pointer and learning table.

    Anything that fails to decode is purged and reported as a cache miss;
    the remote conversation remains the source of truth.
    """

    def __init__(self, store: KeyValueStore, policy: LearningPolicy = DEFAULT_POLICY) -> None:
        self.store = store
        self.policy = policy
        self._learning_lock = RLock()

    def get_messages(self, conversation_id: str) -> List[Message] | None:
        key = _messages_key(conversation_id)
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            return _MESSAGE_LIST.validate_json(raw)
        except ValidationError as exc:
            log.warning("history_cache_corrupt", conversation_id=conversation_id, error=str(exc))
            get_metrics().increment_counter("history_cache::purged")
            self.store.delete(key)
            return None

    def save_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        durable = [message for message in messages if not message.is_streaming]
        self.store.set(_messages_key(conversation_id), _MESSAGE_LIST.dump_json(durable).decode("utf-8"))
        pointer = SessionPointer(last_active_conversation_id=conversation_id)
        self.store.set(SESSION_KEY, pointer.model_dump_json())

    def list_conversations(self) -> List[str]:
        return [key[len(MESSAGES_PREFIX):] for key in self.store.keys(MESSAGES_PREFIX)]

    def clear(self, conversation_id: str) -> LearningRecord | None:
        """Drop the raw history after folding it into the learning table."""

        record = None
        messages = self.get_messages(conversation_id)
        if messages:
            record = self.record_learning(conversation_id, messages)
        self.store.delete(_messages_key(conversation_id))
        log.info("history_cache_cleared", conversation_id=conversation_id, messages=len(messages or []))
        return record

    def clear_all(self) -> int:
        cleared = 0
        for conversation_id in self.list_conversations():
            self.clear(conversation_id)
            cleared += 1
        self.store.delete(SESSION_KEY)
        return cleared

    def get_session_pointer(self) -> SessionPointer | None:
        raw = self.store.get(SESSION_KEY)
        if raw is None:
            return None
        try:
            return SessionPointer.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("session_pointer_corrupt", error=str(exc))
            self.store.delete(SESSION_KEY)
            return None

    def get_last_active_conversation_id(self) -> str | None:
        pointer = self.get_session_pointer()
        return pointer.last_active_conversation_id if pointer else None

    def _load_learning_table(self) -> Dict[str, LearningRecord]:
        raw = self.store.get(LEARNING_KEY)
        if raw is None:
            return {}
        try:
            return _LEARNING_TABLE.validate_json(raw)
        except ValidationError as exc:
            log.warning("learning_table_corrupt", error=str(exc))
            self.store.delete(LEARNING_KEY)
            return {}

    def record_learning(self, conversation_id: str, messages: Sequence[Message]) -> LearningRecord:
        topics, preferences = extract_learning(messages, self.policy)
        with self._learning_lock:
            table = self._load_learning_table()
            record = table.get(conversation_id) or LearningRecord(conversation_id=conversation_id)
            record.topics_discussed |= topics
            record.user_preferences.update(preferences)
            record.message_count = max(record.message_count, len(messages))
            record.last_updated = datetime.now(UTC)
            table[conversation_id] = record
            payload = {cid: entry.model_dump(mode="json") for cid, entry in table.items()}
            self.store.set(LEARNING_KEY, json.dumps(payload, ensure_ascii=False))
        log.debug(
            "learning_recorded",
            conversation_id=conversation_id,
            topics=sorted(record.topics_discussed),
            preference_keys=sorted(record.user_preferences),
        )
        return record.model_copy(deep=True)

    def get_learning(self, conversation_id: str) -> LearningRecord | None:
        with self._learning_lock:
            return self._load_learning_table().get(conversation_id)

    def list_learning(self) -> List[LearningRecord]:
        with self._learning_lock:
            return list(self._load_learning_table().values())


_HISTORY_CACHE: HistoryCache | None = None


def get_history_cache() -> HistoryCache:
    global _HISTORY_CACHE
    if _HISTORY_CACHE is None:
        _HISTORY_CACHE = HistoryCache(SqliteKeyValueStore())
    return _HISTORY_CACHE


def reset_history_cache() -> None:
    global _HISTORY_CACHE
    _HISTORY_CACHE = None
