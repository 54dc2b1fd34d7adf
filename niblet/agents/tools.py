from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence

from niblet.schemas.models import MealRecord, ToolCall, ToolResult, UserProfile, WeightRecord
from niblet.utils.logging import get_logger
from niblet.utils.observability import get_metrics

log = get_logger(__name__)


class DomainGateway(Protocol):
    def record_meal(self, user_id: str, fields: Mapping[str, Any]) -> MealRecord: ...

    def record_weight(self, user_id: str, weight: float, date: datetime | None = None) -> WeightRecord: ...

    def update_user_profile(self, user_id: str, fields: Mapping[str, Any]) -> UserProfile: ...


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def _parse_date(raw: Any) -> datetime | None:
    if not raw:
        return None
    parsed = datetime.fromisoformat(str(raw))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ToolDispatcher:
    """Executes assistant tool calls against the domain gateway.

    Calls run one at a time in the order the assistant issued them. A failing
    handler yields ``success=False`` for that call and never raises.
    """

    def __init__(self, gateway: DomainGateway, user_id: str | None) -> None:
        self.gateway = gateway
        self.user_id = user_id
        self._handlers: Dict[str, Callable[[str, Dict[str, Any]], ToolResult]] = {
            "log_meal": self._log_meal,
            "log_weight": self._log_weight,
            "update_profile": self._update_profile,
            "get_nutrition_info": self._get_nutrition_info,
        }

    def _log_meal(self, user_id: str, args: Dict[str, Any]) -> ToolResult:
        meal = self.gateway.record_meal(user_id, args)
        return ToolResult(
            name="log_meal",
            success=True,
            message=f"Logged {meal.name} ({_format_number(meal.calories)} calories)",
            data={"meal_id": meal.id},
        )

    def _log_weight(self, user_id: str, args: Dict[str, Any]) -> ToolResult:
        weight = float(args["weight"])
        entry = self.gateway.record_weight(user_id, weight, _parse_date(args.get("date")))
        self.gateway.update_user_profile(user_id, {"current_weight": weight})
        return ToolResult(
            name="log_weight",
            success=True,
            message=f"Logged weight: {_format_number(weight)} lbs",
            data={"weight_id": entry.id},
        )

    def _update_profile(self, user_id: str, args: Dict[str, Any]) -> ToolResult:
        profile = self.gateway.update_user_profile(user_id, args)
        changed = sorted(key for key in args if args[key] is not None)
        return ToolResult(
            name="update_profile",
            success=True,
            message=f"Updated profile: {', '.join(changed) or 'no changes'}",
            data={"profile": profile.model_dump(mode="json")},
        )

    def _get_nutrition_info(self, user_id: str, args: Dict[str, Any]) -> ToolResult:
        # no nutrition database behind this yet; the assistant answers from its own estimate
        return ToolResult(name="get_nutrition_info", success=True, message="Nutrition info retrieved (stubbed).")

    async def dispatch(self, call: ToolCall) -> ToolResult:
        metrics = get_metrics()
        handler = self._handlers.get(call.name)
        if handler is None:
            metrics.increment_counter("tool::unknown")
            log.warning("tool_unknown", tool=call.name, tool_call_id=call.id)
            return ToolResult(name=call.name, tool_call_id=call.id, success=False, message=f"Unknown tool: {call.name}")
        if not self.user_id:
            return ToolResult(name=call.name, tool_call_id=call.id, success=False, message="User not authenticated")
        try:
            result = await asyncio.to_thread(handler, self.user_id, dict(call.arguments))
        except Exception as exc:
            metrics.increment_counter(f"tool_failed::{call.name}")
            log.warning("tool_failed", tool=call.name, tool_call_id=call.id, error=str(exc))
            return ToolResult(name=call.name, tool_call_id=call.id, success=False, message=f"Error executing {call.name}")
        metrics.increment_counter(f"tool_succeeded::{call.name}")
        log.info("tool_succeeded", tool=call.name, tool_call_id=call.id)
        return result.model_copy(update={"tool_call_id": call.id})

    async def dispatch_all(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        results: List[ToolResult] = []
        for call in calls:
            results.append(await self.dispatch(call))
        return results
