from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from niblet.schemas.models import PersonaKey

DEFAULT_PERSONA: PersonaKey = "best-friend"

FALLBACK_GREETING = "Hi, I'm Niblet! How can I help you today?"
GREETING_PROMPT = "System: initialize. Greet the user briefly and ask what they ate today."
IMAGE_ONLY_PROMPT = "Analyze this food image. Log the meal directly with your assumptions."


def is_greeting_prompt(text: str | None) -> bool:
    return bool(text) and "system: initialize" in text.lower()


@dataclass(frozen=True)
class Persona:
    key: PersonaKey
    name: str
    label: str
    instructions: str
    temperature: float


_SHARED_DUTIES = (
    " Your job is to help users track meals and weight. When a user describes a meal, estimate calories and"
    " macronutrients and log it with the log_meal tool without asking for confirmation. When a user reports"
    " their weight, log it with log_weight. If they share a food image, identify what is on the plate and"
    " estimate its nutrition from what you see."
)

PERSONAS: Dict[PersonaKey, Persona] = {
    "best-friend": Persona(
        key="best-friend",
        name="Niblet (Best Friend)",
        label="Best Friend",
        instructions=(
            "You are Niblet, a friendly and supportive meal tracking assistant. Speak in a warm, casual tone,"
            " celebrate wins, and give gentle guidance without judgment." + _SHARED_DUTIES
        ),
        temperature=0.7,
    ),
    "professional-coach": Persona(
        key="professional-coach",
        name="Niblet (Professional Coach)",
        label="Professional Coach",
        instructions=(
            "You are Niblet, a professional nutrition coach. Be precise and data-driven, give detailed"
            " macronutrient breakdowns, and offer specific, evidence-based advice toward the user's goals."
            + _SHARED_DUTIES
        ),
        temperature=0.3,
    ),
    "tough-love": Persona(
        key="tough-love",
        name="Niblet (Tough Love)",
        label="Tough Love",
        instructions=(
            "You are Niblet, a no-nonsense accountability coach. Be direct, call out excuses, and challenge the"
            " user to make better choices when their meals do not match their goals." + _SHARED_DUTIES
        ),
        temperature=0.5,
    ),
}


def get_persona(key: str | None) -> Persona:
    if key is None:
        return PERSONAS[DEFAULT_PERSONA]
    try:
        return PERSONAS[key]  # type: ignore[index]
    except KeyError as exc:
        raise ValueError(f"Unknown persona: {key}") from exc


def personality_changed_notice(key: PersonaKey) -> str:
    return f"AI personality changed to {PERSONAS[key].label}"


MEAL_TYPES = [
    "Breakfast",
    "Morning Snack",
    "Lunch",
    "Afternoon Snack",
    "Dinner",
    "Evening Snack",
    "Other",
]


def tool_definitions() -> List[Dict[str, Any]]:
    """Function tools exposed to the assistant; names match the dispatcher's handlers."""

    return [
        {
            "type": "function",
            "function": {
                "name": "log_meal",
                "description": "Log a meal with estimated calories and nutrition information",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "meal_name": {"type": "string", "description": "The name of the meal"},
                        "meal_type": {"type": "string", "enum": MEAL_TYPES},
                        "calories": {"type": "number", "description": "Estimated calories"},
                        "protein": {"type": "number", "description": "Protein in grams"},
                        "carbs": {"type": "number", "description": "Carbohydrates in grams"},
                        "fat": {"type": "number", "description": "Fat in grams"},
                        "items": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["meal_name", "meal_type", "calories"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "log_weight",
                "description": "Log the user's weight",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "weight": {"type": "number", "description": "Weight in pounds"},
                        "date": {"type": "string", "format": "date", "description": "YYYY-MM-DD"},
                    },
                    "required": ["weight"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "update_profile",
                "description": "Update the user's profile (name, goals, dietary preferences)",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "target_weight": {"type": "number"},
                        "daily_calorie_goal": {"type": "number"},
                        "dietary_preferences": {"type": "array", "items": {"type": "string"}},
                    },
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "get_nutrition_info",
                "description": "Get nutrition information for a food item or meal",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "food_item": {"type": "string"},
                        "serving_size": {"type": "string"},
                    },
                    "required": ["food_item"],
                },
            },
        },
    ]
