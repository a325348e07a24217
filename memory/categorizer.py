from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from memory.models import CATEGORY_CONTACT
from memory.models import CATEGORY_HOBBIES
from memory.models import CATEGORY_OTHER
from memory.models import CATEGORY_PERSONAL
from memory.models import CATEGORY_PREFERENCES
from memory.models import CATEGORY_PROFESSIONAL


CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    CATEGORY_PERSONAL: (
        "name", "age", "birthday", "born", "lives", "from", "family", "spouse", "married",
        "children", "child", "kids", "parent", "mother", "father", "sister", "brother",
        "nationality", "ethnicity", "religion", "belief", "identity", "grew up", "raised",
        "hometown", "background", "history", "personality", "character", "trait",
    ),
    CATEGORY_PROFESSIONAL: (
        "job", "work", "career", "company", "business", "profession", "position", "occupation",
        "employed", "studies", "studied", "education", "school", "university", "college", "degree",
        "graduated", "student", "major", "field", "industry", "salary", "project", "skill", "expertise",
        "experience", "trained", "certified", "qualification", "resume", "interview",
    ),
    CATEGORY_PREFERENCES: (
        "like", "likes", "enjoy", "enjoys", "love", "loves", "prefer", "prefers", "favorite", "favourite",
        "fond", "hates", "hate", "dislike", "dislikes", "interested in", "excited by", "appealing",
        "tasty", "delicious", "good", "great", "amazing", "wonderful", "fantastic", "terrible", "awful",
        "bad", "boring", "fan of", "doesn't like", "can't stand", "allergic to",
        "would rather", "wish", "crave", "desire", "want", "appreciate", "value",
    ),
    CATEGORY_HOBBIES: (
        "hobby", "hobbies", "collect", "collects", "play", "plays", "game", "games", "sport", "sports",
        "activity", "activities", "weekend", "spare time", "pastime", "leisure", "recreation", "interest",
        "tournament", "competition", "league", "team", "club", "group", "exercise", "workout", "fitness",
        "practice", "craft", "art", "music", "instrument", "read", "reading", "book", "movie",
        "show", "series", "travel", "adventure", "explore", "create", "build", "make", "cook", "bake",
    ),
    CATEGORY_CONTACT: (
        "email", "phone", "address", "contact", "reach", "social media", "instagram", "twitter", "facebook",
        "snapchat", "tiktok", "linkedin", "profile", "account", "username", "handle", "website", "blog",
        "channel", "discord", "steam", "gamer tag", "psn", "xbox live", "contact info", "number", "call",
    ),
}

CATEGORY_PRIORITY = (
    CATEGORY_PERSONAL,
    CATEGORY_PROFESSIONAL,
    CATEGORY_PREFERENCES,
    CATEGORY_HOBBIES,
    CATEGORY_CONTACT,
)

CATEGORY_EXAMPLES: dict[str, tuple[str, ...]] = {
    CATEGORY_PERSONAL: ("User is 32 years old", "User lives in Chicago", "User has two brothers"),
    CATEGORY_PROFESSIONAL: (
        "User works as a graphic designer",
        "User studied biology at UCLA",
        "User is looking for a new job",
    ),
    CATEGORY_PREFERENCES: (
        "User enjoys chocolate ice cream",
        "User doesn't like horror movies",
        "User is a big fan of Taylor Swift",
    ),
    CATEGORY_HOBBIES: (
        "User plays basketball on weekends",
        "User collects vintage vinyl records",
        "User enjoys hiking",
    ),
    CATEGORY_CONTACT: ("User can be reached at user@example.com", "User's Instagram handle is @username"),
}

FOOD_KEYWORDS = (
    "food", "eat", "dish", "meal", "cuisine", "cook", "bake", "recipe", "restaurant", "breakfast",
    "lunch", "dinner", "snack", "dessert", "fruit", "vegetable", "meat", "drink", "beverage",
    "pizza", "pasta", "sushi", "coffee", "chocolate", "ice cream",
)

OPINION_PHRASES = ("would like", "thinks that", "feels that", "believes", "agrees with", "disagrees with")

# Every canonical example starts with the subject; counting it would make every text overlap.
_EXAMPLE_STOPWORDS = {"user", "the", "and", "for"}
SEMANTIC_MATCH_MIN_SCORE = 0.5


@dataclass(frozen=True, slots=True)
class CategoryRule:
    name: str
    matches: Callable[[str], str | None]


def _contains_any(lowered: str, terms) -> bool:
    return any(term in lowered for term in terms)


def _words(text: str) -> list[str]:
    return [w for w in re.split(r"\W+", (text or "").lower()) if len(w) > 2 and w not in _EXAMPLE_STOPWORDS]


def _rule_food_preference(lowered: str) -> str | None:
    if _contains_any(lowered, FOOD_KEYWORDS) and _contains_any(lowered, CATEGORY_KEYWORDS[CATEGORY_PREFERENCES]):
        return CATEGORY_PREFERENCES
    return None


def _rule_keyword_priority(lowered: str) -> str | None:
    for category in CATEGORY_PRIORITY:
        if _contains_any(lowered, CATEGORY_KEYWORDS[category]):
            return category
    return None


def _rule_opinion_phrasing(lowered: str) -> str | None:
    if _contains_any(lowered, OPINION_PHRASES):
        return CATEGORY_PREFERENCES
    return None


def example_overlap_scores(lowered: str) -> dict[str, float]:
    words = _words(lowered)
    scores: dict[str, float] = {}
    for category in CATEGORY_PRIORITY:
        examples = CATEGORY_EXAMPLES.get(category) or ()
        if not examples:
            continue
        total = 0
        for example in examples:
            example_words = set(_words(example))
            total += sum(1 for w in words if w in example_words)
        scores[category] = total / len(examples)
    return scores


def _rule_example_overlap(lowered: str) -> str | None:
    best_category = None
    best_score = 0.0
    for category, score in example_overlap_scores(lowered).items():
        if score > best_score:
            best_score = score
            best_category = category
    if best_score > SEMANTIC_MATCH_MIN_SCORE:
        return best_category
    return None


CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule("food_preference", _rule_food_preference),
    CategoryRule("keyword_priority", _rule_keyword_priority),
    CategoryRule("opinion_phrasing", _rule_opinion_phrasing),
    CategoryRule("example_overlap", _rule_example_overlap),
)


def categorize(text: str, rules: tuple[CategoryRule, ...] = CATEGORY_RULES) -> str:
    """Evaluate rules in order; the first rule that returns a category wins."""
    lowered = (text or "").lower()
    for rule in rules:
        result = rule.matches(lowered)
        if result:
            return result
    return CATEGORY_OTHER


def explain_category(text: str, rules: tuple[CategoryRule, ...] = CATEGORY_RULES) -> tuple[str, str]:
    lowered = (text or "").lower()
    for rule in rules:
        result = rule.matches(lowered)
        if result:
            return (result, rule.name)
    return (CATEGORY_OTHER, "default")
