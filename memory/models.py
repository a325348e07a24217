from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


MEMORY_TYPE_EXPLICIT = "explicit"
MEMORY_TYPE_INTUITED = "intuited"
MEMORY_TYPES = {MEMORY_TYPE_EXPLICIT, MEMORY_TYPE_INTUITED}

CATEGORY_PERSONAL = "personal"
CATEGORY_PROFESSIONAL = "professional"
CATEGORY_PREFERENCES = "preferences"
CATEGORY_HOBBIES = "hobbies"
CATEGORY_CONTACT = "contact"
CATEGORY_OTHER = "other"
MEMORY_CATEGORIES = (
    CATEGORY_PERSONAL,
    CATEGORY_PROFESSIONAL,
    CATEGORY_PREFERENCES,
    CATEGORY_HOBBIES,
    CATEGORY_CONTACT,
    CATEGORY_OTHER,
)

REL_RELATED_TO = "related_to"
REL_ELABORATES = "elaborates"
REL_CONTRADICTS = "contradicts"
REL_FOLLOWS = "follows"
REL_PRECEDES = "precedes"
REL_CAUSES = "causes"
REL_PART_OF = "part_of"
RELATIONSHIP_TYPES = (
    REL_RELATED_TO,
    REL_ELABORATES,
    REL_CONTRADICTS,
    REL_FOLLOWS,
    REL_PRECEDES,
    REL_CAUSES,
    REL_PART_OF,
)

SOURCE_MEMORY_COMMAND = "memory_command"
SOURCE_CONVERSATION_EXTRACTION = "conversation_extraction"
SOURCE_MERGED = "merged"
SOURCE_AI_CURATION = "ai_curation"

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0


@dataclass(frozen=True, slots=True)
class MemoryScope:
    user_id: str
    guild_id: str = ""

    @classmethod
    def of(cls, user_id, guild_id=None) -> "MemoryScope":
        return cls(user_id=str(user_id), guild_id=str(guild_id) if guild_id is not None else "")

    @classmethod
    def from_message(cls, message) -> "MemoryScope":
        guild = getattr(message, "guild", None)
        return cls.of(message.author.id, getattr(guild, "id", None) if guild is not None else None)

    def label(self) -> str:
        return f"user={self.user_id} guild={self.guild_id or 'dm'}"


def normalize_memory_type(value: str | None) -> str:
    cleaned = str(value or "").strip().lower()
    if cleaned in MEMORY_TYPES:
        return cleaned
    return MEMORY_TYPE_INTUITED


def normalize_category(value: str | None) -> str:
    cleaned = str(value or "").strip().lower()
    if cleaned in MEMORY_CATEGORIES:
        return cleaned
    return CATEGORY_OTHER


def clamp_confidence(value: float) -> float:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, float(value)))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_iso(dt: datetime | None = None) -> str:
    dt = dt or utc_now()
    return dt.astimezone(timezone.utc).isoformat()


def parse_utc(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def age_days(created_at, now: datetime | None = None) -> float:
    created = parse_utc(created_at)
    if created is None:
        return 0.0
    now = now or utc_now()
    return max(0.0, (now - created).total_seconds() / 86400.0)
