import asyncio

import pytest

from niblet.agents.tools import ToolDispatcher
from niblet.schemas.models import ToolCall
from niblet.utils.domain_store import DomainStore
from niblet.utils.observability import get_metrics


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def store(tmp_path):
    return DomainStore(tmp_path / "domain.sqlite")


def _dispatch(dispatcher: ToolDispatcher, *calls: ToolCall):
    return asyncio.run(dispatcher.dispatch_all(list(calls)))


def test_log_meal_records_and_reports(store):
    dispatcher = ToolDispatcher(store, "user-1")
    [result] = _dispatch(
        dispatcher,
        ToolCall(
            id="call_1",
            name="log_meal",
            arguments={"meal_name": "Turkey sandwich", "meal_type": "Lunch", "calories": 500, "protein": 30},
        ),
    )
    assert result.success is True
    assert result.message == "Logged Turkey sandwich (500 calories)"
    assert result.tool_call_id == "call_1"
    [meal] = store.list_meals("user-1")
    assert meal.name == "Turkey sandwich"
    assert meal.protein == 30


def test_log_weight_updates_profile(store):
    dispatcher = ToolDispatcher(store, "user-1")
    [result] = _dispatch(dispatcher, ToolCall(id="call_w", name="log_weight", arguments={"weight": 180}))
    assert result.message == "Logged weight: 180 lbs"
    assert store.get_user_profile("user-1").current_weight == 180
    assert [entry.weight for entry in store.list_weights("user-1")] == [180]


def test_update_profile_lists_changed_fields(store):
    dispatcher = ToolDispatcher(store, "user-1")
    [result] = _dispatch(
        dispatcher,
        ToolCall(id="c", name="update_profile", arguments={"target_weight": 165, "name": "Sam"}),
    )
    assert result.message == "Updated profile: name, target_weight"
    profile = store.get_user_profile("user-1")
    assert profile.target_weight == 165
    assert profile.name == "Sam"


def test_unknown_tool_fails_without_raising(store):
    dispatcher = ToolDispatcher(store, "user-1")
    [result] = _dispatch(dispatcher, ToolCall(id="x", name="order_pizza"))
    assert result.success is False
    assert result.message == "Unknown tool: order_pizza"
    assert get_metrics().snapshot()["counters"]["tool::unknown"] == 1


def test_missing_user_fails(store):
    dispatcher = ToolDispatcher(store, None)
    [result] = _dispatch(dispatcher, ToolCall(id="x", name="log_weight", arguments={"weight": 150}))
    assert result.success is False
    assert result.message == "User not authenticated"


def test_handler_error_becomes_failed_result_and_later_calls_still_run(store):
    dispatcher = ToolDispatcher(store, "user-1")
    results = _dispatch(
        dispatcher,
        ToolCall(id="bad", name="log_meal", arguments={"calories": 200}),
        ToolCall(id="ok", name="get_nutrition_info", arguments={"food_item": "apple"}),
    )
    assert [r.success for r in results] == [False, True]
    assert results[0].message == "Error executing log_meal"
    assert [r.tool_call_id for r in results] == ["bad", "ok"]
    counters = get_metrics().snapshot()["counters"]
    assert counters["tool_failed::log_meal"] == 1
    assert counters["tool_succeeded::get_nutrition_info"] == 1
