from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import closing
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, List, Mapping

from niblet.schemas.models import MealRecord, UserProfile, WeightRecord
from niblet.utils import storage

_PROFILE_FIELDS = {"name", "current_weight", "target_weight", "daily_calorie_goal", "dietary_preferences"}


def _now() -> datetime:
    return datetime.now(UTC)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _json_loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _parse_datetime(value: str | None) -> datetime:
    if not value:
        return _now()
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return _now()
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class DomainStore:
    """Meals, weight logs and profiles reached by the assistant's tool calls."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else storage.domain_db_path()
        self._lock = RLock()
        self._ready = False

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        if not self._ready:
            self._ensure_schema(conn)
            self._ready = True
        return conn

    @staticmethod
    def _ensure_schema(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS meals (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                meal_type TEXT NOT NULL,
                calories REAL NOT NULL,
                protein REAL NOT NULL,
                carbs REAL NOT NULL,
                fat REAL NOT NULL,
                items_json TEXT NOT NULL,
                date TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS weight_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                weight REAL NOT NULL,
                date TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                payload_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_meals_user_date ON meals(user_id, date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_weight_user_date ON weight_logs(user_id, date)")
        conn.commit()

    def record_meal(self, user_id: str, fields: Mapping[str, Any]) -> MealRecord:
        meal = MealRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=str(fields.get("meal_name") or fields.get("name") or "").strip(),
            meal_type=str(fields.get("meal_type") or "Other"),
            calories=float(fields.get("calories") or 0),
            protein=float(fields.get("protein") or 0),
            carbs=float(fields.get("carbs") or 0),
            fat=float(fields.get("fat") or 0),
            items=[str(item) for item in fields.get("items") or []],
        )
        if not meal.name:
            raise ValueError("meal_name is required")
        with self._lock, closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO meals (id, user_id, name, meal_type, calories, protein, carbs, fat, items_json, date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    meal.id,
                    meal.user_id,
                    meal.name,
                    meal.meal_type,
                    meal.calories,
                    meal.protein,
                    meal.carbs,
                    meal.fat,
                    _json_dumps(meal.items),
                    meal.date.isoformat(),
                ),
            )
            conn.commit()
        return meal

    def record_weight(self, user_id: str, weight: float, date: datetime | None = None) -> WeightRecord:
        entry = WeightRecord(id=uuid.uuid4().hex, user_id=user_id, weight=weight, date=date or _now())
        with self._lock, closing(self._connect()) as conn:
            conn.execute(
                "INSERT INTO weight_logs (id, user_id, weight, date) VALUES (?, ?, ?, ?)",
                (entry.id, entry.user_id, entry.weight, entry.date.isoformat()),
            )
            conn.commit()
        return entry

    def get_user_profile(self, user_id: str) -> UserProfile | None:
        with self._lock, closing(self._connect()) as conn:
            row = conn.execute("SELECT payload_json FROM user_profiles WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        payload = _json_loads(row["payload_json"], {})
        payload["user_id"] = user_id
        return UserProfile.model_validate(payload)

    def update_user_profile(self, user_id: str, fields: Mapping[str, Any]) -> UserProfile:
        updates = {key: value for key, value in fields.items() if key in _PROFILE_FIELDS and value is not None}
        with self._lock:
            current = self.get_user_profile(user_id) or UserProfile(user_id=user_id)
            merged = current.model_copy(update={**updates, "updated_at": _now()})
            profile = UserProfile.model_validate(merged.model_dump())
            with closing(self._connect()) as conn:
                conn.execute(
                    """
                    INSERT INTO user_profiles (user_id, payload_json, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, profile.model_dump_json(), profile.updated_at.isoformat()),
                )
                conn.commit()
        return profile

    def list_meals(self, user_id: str, limit: int = 50) -> List[MealRecord]:
        with self._lock, closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM meals WHERE user_id = ? ORDER BY date DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            MealRecord(
                id=row["id"],
                user_id=row["user_id"],
                name=row["name"],
                meal_type=row["meal_type"],
                calories=row["calories"],
                protein=row["protein"],
                carbs=row["carbs"],
                fat=row["fat"],
                items=_json_loads(row["items_json"], []),
                date=_parse_datetime(row["date"]),
            )
            for row in rows
        ]

    def list_weights(self, user_id: str, limit: int = 50) -> List[WeightRecord]:
        with self._lock, closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM weight_logs WHERE user_id = ? ORDER BY date DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            WeightRecord(id=row["id"], user_id=row["user_id"], weight=row["weight"], date=_parse_datetime(row["date"]))
            for row in rows
        ]


_DOMAIN_STORE: DomainStore | None = None


def get_domain_store() -> DomainStore:
    global _DOMAIN_STORE
    if _DOMAIN_STORE is None:
        _DOMAIN_STORE = DomainStore()
    return _DOMAIN_STORE


def reset_domain_store() -> None:
    global _DOMAIN_STORE
    _DOMAIN_STORE = None
