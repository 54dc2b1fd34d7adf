import argparse

import pytest

from niblet.cli import cmd_clear, cmd_history, cmd_learning, cmd_runs, cmd_sign_out
from niblet.schemas.models import Message
from niblet.utils import history_cache as history_module
from niblet.utils import run_state as run_state_module
from niblet.utils.history_cache import HistoryCache
from niblet.utils.run_state import RunCoordinator
from niblet.utils.storage import MemoryKeyValueStore


def make_args(**kwargs):
    defaults = {"list": False, "conversation_id": None, "sweep": False}
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


@pytest.fixture
def cache(monkeypatch):
    cache = HistoryCache(MemoryKeyValueStore())
    monkeypatch.setattr(history_module, "_HISTORY_CACHE", cache)
    return cache


@pytest.fixture
def coordinator(monkeypatch):
    coordinator = RunCoordinator()
    monkeypatch.setattr(run_state_module, "_RUN_COORDINATOR", coordinator)
    return coordinator


def _seed(cache: HistoryCache, cid: str, text: str) -> None:
    cache.save_messages(
        cid,
        [
            Message(id=f"{cid}-u", role="user", content=text),
            Message(id=f"{cid}-a", role="assistant", content="Noted!"),
        ],
    )


def test_history_list_empty(cache, capsys):
    cmd_history(make_args(list=True), {})
    assert "No cached conversations." in capsys.readouterr().out


def test_history_list_marks_current(cache, capsys):
    _seed(cache, "thread_a", "hi")
    _seed(cache, "thread_b", "hello")

    cmd_history(make_args(list=True), {})

    lines = capsys.readouterr().out.splitlines()
    assert "  thread_a" in lines
    assert "* thread_b" in lines


def test_history_defaults_to_last_active(cache, capsys):
    _seed(cache, "thread_a", "Had two eggs")

    cmd_history(make_args(), {})

    out = capsys.readouterr().out
    assert "Conversation: thread_a (2 messages)" in out
    assert "You: Had two eggs" in out
    assert "Niblet: Noted!" in out


def test_history_without_any_conversation_exits(cache):
    with pytest.raises(SystemExit):
        cmd_history(make_args(), {})


def test_clear_reports_kept_learning(cache, capsys):
    _seed(cache, "thread_a", "I'm vegan and need more protein")

    cmd_clear(make_args(conversation_id="thread_a"), {})

    out = capsys.readouterr().out
    assert "Cleared conversation thread_a" in out
    assert "Kept learning: topics=diet, nutrition preferences=1" in out
    assert cache.get_messages("thread_a") is None


def test_learning_lists_records(cache, capsys):
    _seed(cache, "thread_a", "I'm allergic to peanuts")
    cache.clear("thread_a")

    cmd_learning(make_args(conversation_id="thread_a"), {})

    out = capsys.readouterr().out
    assert "thread_a | messages=2" in out
    assert "allergies: peanuts" in out


def test_learning_empty(cache, capsys):
    cmd_learning(make_args(), {})
    assert "No learning recorded." in capsys.readouterr().out


def test_sign_out_clears_everything(cache, capsys):
    _seed(cache, "thread_a", "hi")
    _seed(cache, "thread_b", "hi again")

    cmd_sign_out(make_args(), {})

    assert "cleared 2 cached conversation(s)" in capsys.readouterr().out
    assert cache.list_conversations() == []


def test_runs_lists_states(coordinator, capsys):
    coordinator.set_active("thread_a", "local_1")
    coordinator.set_active("thread_b", "run_2")
    coordinator.set_inactive("thread_b", "run_2")

    cmd_runs(make_args(), {})

    out = capsys.readouterr().out
    assert "thread_a | active | run=local_1" in out
    assert "thread_b | idle | run=-" in out


def test_runs_empty(coordinator, capsys):
    cmd_runs(make_args(sweep=True), {})
    out = capsys.readouterr().out
    assert "Swept 0 idle run state(s)." in out
    assert "No run states tracked." in out
