from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Set, Tuple

from niblet.schemas.models import Message

_DEFAULT_TOPICS: Mapping[str, Tuple[str, ...]] = {
    "nutrition": ("calorie", "protein", "carb", "fat", "fiber", "macro", "nutrient", "vitamin", "sugar"),
    "weight": ("weight", "pounds", "lbs", "kg", "lose", "gain", "bmi"),
    "diet": ("diet", "vegetarian", "vegan", "keto", "paleo", "fasting", "gluten", "dairy"),
    "fitness": ("exercise", "workout", "gym", "run", "walk", "training", "cardio", "steps"),
    "sleep": ("sleep", "tired", "rest", "insomnia"),
    "hydration": ("water", "hydrate", "hydration", "drink"),
}

_DEFAULT_DIETS: Tuple[str, ...] = (
    "intermittent fasting",
    "mediterranean",
    "pescatarian",
    "vegetarian",
    "gluten-free",
    "dairy-free",
    "low-carb",
    "vegan",
    "keto",
    "paleo",
)

# clause ends at sentence punctuation or a joining word
_CLAUSE = r"(?P<value>[^.!?,;]+?)(?=\s+(?:and|but|because|so)\b|[.!?,;]|$)"

_DEFAULT_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("allergies", rf"\bi(?:'m| am) allergic to\s+{_CLAUSE}"),
    ("dislikes", rf"\bi (?:don't|do not|dont) like\s+{_CLAUSE}"),
    ("dislikes", rf"\bi (?:hate|dislike)\s+{_CLAUSE}"),
    ("likes", rf"\bi (?:prefer|like|love|enjoy)\s+{_CLAUSE}"),
)


@dataclass(frozen=True)
class LearningPolicy:
    """Keyword tables that turn free text into coarse topics and preferences.

    Results are advisory: the tables are deliberately small and any instance
    can be swapped in where a better extractor exists.
    """

    topics: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(_DEFAULT_TOPICS))
    diets: Tuple[str, ...] = _DEFAULT_DIETS
    patterns: Tuple[Tuple[str, str], ...] = _DEFAULT_PATTERNS

    def topics_in(self, text: str) -> Set[str]:
        lowered = text.lower()
        found: Set[str] = set()
        for topic, keywords in self.topics.items():
            if any(re.search(rf"\b{re.escape(keyword)}", lowered) for keyword in keywords):
                found.add(topic)
        return found

    def preferences_in(self, text: str) -> Dict[str, str]:
        lowered = text.lower()
        preferences: Dict[str, str] = {}
        for diet in self.diets:
            if re.search(rf"\b{re.escape(diet)}\b", lowered):
                preferences["diet"] = diet
                break
        for key, pattern in self.patterns:
            if key in preferences:
                continue
            match = re.search(pattern, lowered)
            if match:
                value = " ".join(match.group("value").split())
                if value:
                    preferences[key] = value
        return preferences


DEFAULT_POLICY = LearningPolicy()


def extract_learning(
    messages: Iterable[Message],
    policy: LearningPolicy = DEFAULT_POLICY,
) -> tuple[Set[str], Dict[str, str]]:
    """Scan user-authored messages in order; later mentions override earlier ones."""

    topics: Set[str] = set()
    preferences: Dict[str, str] = {}
    for message in messages:
        if message.role != "user" or not message.content:
            continue
        topics |= policy.topics_in(message.content)
        preferences.update(policy.preferences_in(message.content))
    return topics, preferences
