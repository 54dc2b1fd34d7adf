from __future__ import annotations

import asyncio
import re
import zlib
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional, Protocol

from niblet.utils.env import read_float_env, read_int_env
from niblet.utils.logging import get_logger
from niblet.utils.observability import get_metrics

log = get_logger(__name__)

_RUN_ID_PATTERN = re.compile(r"run_(\w+)")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class RunState:
    conversation_id: str
    active: bool = False
    run_id: str | None = None
    last_updated: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)

    def copy(self) -> "RunState":
        return replace(self)

    def is_stale(self, now: datetime, timeout: timedelta) -> bool:
        return self.active and now - self.last_updated > timeout


class CompletionWaiter(Protocol):
    async def wait(self, coordinator: "RunCoordinator", conversation_id: str, timeout: float) -> bool:
        """Return True once the conversation has no active run, False if ``timeout`` elapsed first."""
        ...


class PollingWaiter:
    """Checks ``has_active_run`` on a fixed interval until it clears or time runs out."""

    def __init__(self, poll_interval: float = 0.5) -> None:
        self.poll_interval = max(poll_interval, 0.001)

    async def wait(self, coordinator: "RunCoordinator", conversation_id: str, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while coordinator.has_active_run(conversation_id):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))
        return True


@dataclass
class _Shard:
    lock: Lock = field(default_factory=Lock)
    states: Dict[str, RunState] = field(default_factory=dict)


class RunCoordinator:
    """Tracks, per conversation, whether a remote run is in flight.

    States are spread over independently locked shards so that turns on
    different conversations never wait on each other. An active state whose
    ``last_updated`` is older than ``active_timeout`` is treated as finished
    and demoted the next time anyone reads it.
    """

    def __init__(
        self,
        *,
        active_timeout: float = 30.0,
        inactive_retention: float = 300.0,
        shard_count: int = 16,
        waiter: CompletionWaiter | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.active_timeout = timedelta(seconds=active_timeout)
        self.inactive_retention = timedelta(seconds=inactive_retention)
        self.waiter: CompletionWaiter = waiter or PollingWaiter()
        self._clock = clock or _utcnow
        self._shards: List[_Shard] = [_Shard() for _ in range(max(shard_count, 1))]
        self._stop_event = Event()
        self._sweeper: Thread | None = None

    def _shard(self, conversation_id: str) -> _Shard:
        return self._shards[zlib.crc32(conversation_id.encode("utf-8")) % len(self._shards)]

    def _demote_if_stale_locked(self, state: RunState, now: datetime) -> None:
        if state.is_stale(now, self.active_timeout):
            log.warning(
                "run_state_stale",
                conversation_id=state.conversation_id,
                run_id=state.run_id,
                idle_seconds=(now - state.last_updated).total_seconds(),
            )
            get_metrics().increment_counter("run_state::stale_demoted")
            state.active = False
            state.run_id = None
            state.last_updated = now

    def set_active(self, conversation_id: str, run_id: str) -> None:
        now = self._clock()
        shard = self._shard(conversation_id)
        with shard.lock:
            state = shard.states.get(conversation_id)
            if state is None:
                state = RunState(conversation_id=conversation_id, created_at=now)
                shard.states[conversation_id] = state
            state.active = True
            state.run_id = run_id
            state.last_updated = now
        log.debug("run_state_active", conversation_id=conversation_id, run_id=run_id)

    def try_acquire(self, conversation_id: str, run_id: str) -> bool:
        """Mark the conversation active only if no live run holds it."""

        now = self._clock()
        shard = self._shard(conversation_id)
        with shard.lock:
            state = shard.states.get(conversation_id)
            if state is None:
                shard.states[conversation_id] = RunState(
                    conversation_id=conversation_id,
                    active=True,
                    run_id=run_id,
                    last_updated=now,
                    created_at=now,
                )
                return True
            self._demote_if_stale_locked(state, now)
            if state.active:
                return False
            state.active = True
            state.run_id = run_id
            state.last_updated = now
            return True

    def set_inactive(self, conversation_id: str, run_id: str | None = None) -> None:
        """Release the conversation; with ``run_id`` only that run's hold is released."""

        now = self._clock()
        shard = self._shard(conversation_id)
        with shard.lock:
            state = shard.states.get(conversation_id)
            if state is None:
                return
            if run_id is not None and state.active and state.run_id != run_id:
                log.debug(
                    "run_state_release_skipped",
                    conversation_id=conversation_id,
                    run_id=run_id,
                    holder=state.run_id,
                )
                return
            state.active = False
            state.run_id = None
            state.last_updated = now

    def touch(self, conversation_id: str) -> None:
        now = self._clock()
        shard = self._shard(conversation_id)
        with shard.lock:
            state = shard.states.get(conversation_id)
            if state is not None and state.active:
                state.last_updated = now

    def has_active_run(self, conversation_id: str) -> bool:
        now = self._clock()
        shard = self._shard(conversation_id)
        with shard.lock:
            state = shard.states.get(conversation_id)
            if state is None:
                return False
            self._demote_if_stale_locked(state, now)
            return state.active

    def get_run_info(self, conversation_id: str) -> RunState | None:
        now = self._clock()
        shard = self._shard(conversation_id)
        with shard.lock:
            state = shard.states.get(conversation_id)
            if state is None:
                return None
            self._demote_if_stale_locked(state, now)
            return state.copy()

    async def wait_for_completion(self, conversation_id: str, timeout: float = 15.0) -> bool:
        return await self.waiter.wait(self, conversation_id, timeout)

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [
                    cid
                    for cid, state in shard.states.items()
                    if state.is_stale(now, self.active_timeout)
                    or (not state.active and now - state.last_updated > self.inactive_retention)
                ]
                for cid in expired:
                    shard.states.pop(cid, None)
                removed += len(expired)
        if removed:
            log.info("run_state_sweep", removed=removed)
        return removed

    def snapshot(self) -> Dict[str, RunState]:
        data: Dict[str, RunState] = {}
        for shard in self._shards:
            with shard.lock:
                data.update({cid: state.copy() for cid, state in shard.states.items()})
        return data

    def start_sweeper(self, interval: float = 60.0) -> None:
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = Thread(
            target=self._sweep_loop,
            args=(max(interval, 0.01),),
            name="run-state-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=timeout)
            self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                self.sweep()
            except Exception as exc:  # pragma: no cover - keep the sweeper alive
                log.error("run_state_sweep_failed", error=str(exc))


def extract_run_id(error_message: str | None) -> str | None:
    """Pull ``run_<id>`` out of a remote "run is active" rejection."""

    if not error_message:
        return None
    match = _RUN_ID_PATTERN.search(error_message)
    if match is None:
        return None
    return f"run_{match.group(1)}"


_RUN_COORDINATOR: RunCoordinator | None = None


def _build_default() -> RunCoordinator:
    return RunCoordinator(
        active_timeout=read_float_env("RUN_STATE_TIMEOUT_SECONDS", 30.0, minimum=1.0),
        inactive_retention=read_float_env("RUN_STATE_RETENTION_SECONDS", 300.0, minimum=1.0),
        shard_count=read_int_env("RUN_STATE_SHARDS", 16),
        waiter=PollingWaiter(read_float_env("RUN_STATE_POLL_INTERVAL_SECONDS", 0.5, minimum=0.01)),
    )


def get_run_coordinator() -> RunCoordinator:
    global _RUN_COORDINATOR
    if _RUN_COORDINATOR is None:
        _RUN_COORDINATOR = _build_default()
    return _RUN_COORDINATOR


def reset_run_coordinator() -> None:
    global _RUN_COORDINATOR
    if _RUN_COORDINATOR is not None:
        _RUN_COORDINATOR.stop_sweeper()
    _RUN_COORDINATOR = None


def sweep_interval_seconds() -> float:
    return read_float_env("RUN_STATE_SWEEP_INTERVAL_SECONDS", 60.0, minimum=0.01)
