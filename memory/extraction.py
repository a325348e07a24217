from __future__ import annotations

from typing import Any

from memory.models import MEMORY_TYPE_INTUITED
from memory.models import SOURCE_CONVERSATION_EXTRACTION
from memory.models import MemoryScope
from memory.models import utc_iso
from memory.results import guarded_call
from memory.service import bulk_store
from memory.service import chat_complete
from memory.service import extract_json_array
from memory.store import get_extraction_tracking_sync
from memory.store import upsert_extraction_tracking_sync


DIRECT_SUMMARY_MAX_MESSAGES = 11
SUMMARY_CHUNK_SIZE = 10
INCREMENTAL_CONTEXT_MESSAGES = 3
MIN_FACT_LENGTH = 12

NON_FACT_MARKERS = ("not provided", "unknown", "doesn't mention", "did not mention", "no information")
UNCERTAIN_MARKERS = ("might be", "possibly", "probably", "could be", "may have")
NEGATION_MARKERS = ("didn't", "did not", "doesn't", "does not", "has not")
NEGATIVE_PREFERENCE_TERMS = ("like", "enjoy", "prefer", "want", "care for")
RELEVANT_NEGATIVE_TERMS = ("allergic", "eat", "drink", "own", "have")

EXPLICIT_FACTS_SYSTEM = "You extract only explicit, clearly stated facts about users. Be precise and factual."
EXPLICIT_FACTS_PROMPT = """Extract ONLY clearly stated, explicit facts about the user from this conversation summary.
Focus on biographical information, concrete details, and directly stated preferences.

Include:
- Biographical information (name, age, location, etc.)
- Professional information (job, education, etc.)
- Clearly stated likes/dislikes ("I love pizza", "I hate horror movies")
- Family details, pets
- Concrete hobbies and activities they engage in

Exclude:
- Implied preferences without direct statements
- Uncertain information (might, maybe, possibly)
- Hypothetical statements
- Negative information (what they don't have/like)
- Meta-statements about missing information

Output ONLY a JSON array of facts:
["User's name is John", "User works as a software engineer"]

If no explicit facts are found, output an empty array: []
-----
SUMMARY: {summary}"""

IMPLIED_SYSTEM = (
    "You extract implied preferences and interests from conversations. "
    "Be insightful but reasonably confident in your inferences."
)
IMPLIED_PROMPT = """Analyze this conversation summary and user messages to identify IMPLIED preferences and interests.
Look for:

1. Emotional reactions to topics (positive or negative)
2. Engagement patterns (what topics the user engages with enthusiastically)
3. Subtle cues about likes/dislikes without direct statements
4. Food, entertainment, or activity preferences based on context
5. Values and priorities revealed through conversation

Do NOT include:
- Anything already covered in explicit facts
- General opinions unrelated to personal preferences
- Highly uncertain inferences
- "Not provided" statements

Output ONLY a JSON array of inferred preferences:
["User enjoys action movies", "User is interested in astronomy"]

If no preferences can be confidently inferred, output an empty array: []
-----
SUMMARY: {summary}

USER MESSAGES: {user_messages}"""

SUMMARY_SYSTEM = (
    "You are a summarization assistant that produces very detailed summaries including all possible information."
)
COMBINE_SYSTEM = "You are a summarization assistant that produces comprehensive and detailed summaries."


def post_process_facts(facts: list[Any]) -> list[str]:
    """Drop meta, uncertain and trivial statements; prefix "User " where the subject is missing."""
    out: list[str] = []
    for fact in facts:
        if not isinstance(fact, str):
            continue
        fact = fact.strip()
        lowered = fact.lower()
        if not lowered:
            continue
        if any(m in lowered for m in NON_FACT_MARKERS):
            continue
        if any(m in lowered for m in UNCERTAIN_MARKERS):
            continue
        if any(m in lowered for m in NEGATION_MARKERS):
            # negations survive only as preferences or dietary/ownership facts
            if not (
                any(t in lowered for t in NEGATIVE_PREFERENCE_TERMS)
                or any(t in lowered for t in RELEVANT_NEGATIVE_TERMS)
            ):
                continue
        elif len(lowered) < MIN_FACT_LENGTH:
            continue
        if not lowered.startswith("user"):
            fact = "User " + fact
        out.append(fact)
    return out


def render_transcript(messages: list[dict[str, Any]], bot_name: str = "Bri") -> str:
    lines = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            continue
        speaker = "User" if role == "user" else bot_name
        lines.append(f"{speaker}: {msg.get('content') or ''}")
    return "\n".join(lines)


def plan_extraction(messages: list[dict[str, Any]], tracking: dict[str, Any] | None) -> dict[str, Any]:
    """
    Decide which slice of the conversation is new.
    index 0 is the system prompt, so a full pass starts at 1.
    """
    if len(messages) <= 1:
        return {"needs_processing": False}
    last_count = int((tracking or {}).get("last_extracted_message_count") or 0)
    if tracking is None or last_count <= 0 or len(messages) <= last_count:
        return {"needs_processing": True, "start_index": 1, "is_initial": True}
    return {"needs_processing": True, "start_index": last_count, "is_initial": False}


def incremental_segment(messages: list[dict[str, Any]], start_index: int) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """(segment_with_context, new_messages). Up to 3 earlier messages ride along for context."""
    new_messages = messages[start_index:]
    context_size = min(INCREMENTAL_CONTEXT_MESSAGES, start_index - 1)
    context = messages[start_index - context_size : start_index] if context_size > 0 else []
    segment = context + new_messages
    if messages and not any(m.get("role") == "system" for m in segment):
        segment = [messages[0]] + segment
    return segment, new_messages


async def _summarize_direct(messages: list[dict[str, Any]], *, deps, bot_name: str) -> str | None:
    transcript = render_transcript(messages, bot_name)
    prompt = (
        "Please provide a detailed summary of the conversation below, including any personal details, interests, "
        "job information, preferences, and any other relevant information, even if some details seem trivial.\n\n"
        f"Conversation metadata: total messages: {len(messages)}.\n\n{transcript}"
    )
    try:
        return await chat_complete(client=deps.client, openai_model=deps.openai_model, system=SUMMARY_SYSTEM, user=prompt)
    except Exception as e:
        print(f"[Extraction] summary call failed: {e}")
        return None


async def summarize_conversation(messages: list[dict[str, Any]], *, deps, bot_name: str = "Bri") -> str | None:
    if len(messages) <= DIRECT_SUMMARY_MAX_MESSAGES:
        return await _summarize_direct(messages, deps=deps, bot_name=bot_name)

    system_prompt = messages[:1]
    body = messages[1:]
    summaries = []
    for i in range(0, len(body), SUMMARY_CHUNK_SIZE):
        chunk_summary = await _summarize_direct(
            system_prompt + body[i : i + SUMMARY_CHUNK_SIZE],
            deps=deps,
            bot_name=bot_name,
        )
        if chunk_summary:
            summaries.append(chunk_summary)
    if not summaries:
        return None

    prompt = (
        "Combine the following chunk summaries into an overall detailed summary that captures every detail "
        "from the conversation, including any personal information:\n\n" + "\n".join(summaries)
    )
    try:
        return await chat_complete(client=deps.client, openai_model=deps.openai_model, system=COMBINE_SYSTEM, user=prompt)
    except Exception as e:
        print(f"[Extraction] summary combine failed: {e}")
        return None


async def _extract_list(system: str, prompt: str, *, deps, label: str) -> list[Any]:
    try:
        raw = await chat_complete(client=deps.client, openai_model=deps.openai_model, system=system, user=prompt)
    except Exception as e:
        print(f"[Extraction] {label} call failed: {e}")
        return []
    return extract_json_array(raw)


async def extract_facts(summary: str, messages: list[dict[str, Any]], *, deps) -> list[str]:
    user_messages = "\n".join(str(m.get("content") or "") for m in messages if m.get("role") == "user")
    explicit = await _extract_list(
        EXPLICIT_FACTS_SYSTEM,
        EXPLICIT_FACTS_PROMPT.format(summary=summary),
        deps=deps,
        label="explicit facts",
    )
    implied = await _extract_list(
        IMPLIED_SYSTEM,
        IMPLIED_PROMPT.format(summary=summary, user_messages=user_messages),
        deps=deps,
        label="implied preferences",
    )
    return post_process_facts(list(explicit) + list(implied))


async def _update_tracking(scope: MemoryScope, message_count: int, message_id, *, deps) -> bool:
    result = await guarded_call(
        upsert_extraction_tracking_sync,
        {
            "user_id": scope.user_id,
            "guild_id": scope.guild_id,
            "last_extraction_time": utc_iso(deps.clock()),
            "last_extracted_message_count": int(message_count),
            "last_extracted_message_id": str(message_id) if message_id is not None else None,
        },
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="extraction tracking",
    )
    return result.ok


async def extract_and_store(
    scope: MemoryScope,
    messages: list[dict[str, Any]],
    bot_name: str = "Bri",
    *,
    deps,
    message_id=None,
) -> dict[str, Any]:
    """Summarize the unseen part of a conversation, extract facts and bulk-store them as intuited memories."""
    if deps.client is None:
        return {"extracted": 0, "success": False, "error": "no chat client"}
    try:
        tracking = await guarded_call(
            get_extraction_tracking_sync,
            scope.user_id,
            scope.guild_id,
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="extraction tracking lookup",
        )
        plan = plan_extraction(messages, tracking.data if tracking.ok else None)
        if not plan["needs_processing"]:
            return {"extracted": 0, "success": True}

        if plan["is_initial"]:
            segment = list(messages)
        else:
            segment, new_messages = incremental_segment(messages, plan["start_index"])
            if not any(m.get("role") == "user" for m in new_messages):
                print(f"[Extraction] no new user messages ({scope.label()})")
                await _update_tracking(scope, len(messages), message_id, deps=deps)
                return {"extracted": 0, "success": True}

        summary = await summarize_conversation(segment, deps=deps, bot_name=bot_name)
        if not summary:
            print(f"[Extraction] no summary produced ({scope.label()})")
            return {"extracted": 0, "success": False}

        facts = await extract_facts(summary, segment, deps=deps)
        stored = 0
        if facts:
            result = await bulk_store(
                scope,
                facts,
                deps=deps,
                memory_type=MEMORY_TYPE_INTUITED,
                source=SOURCE_CONVERSATION_EXTRACTION,
            )
            if not result.get("success"):
                return {"extracted": 0, "success": False, "error": result.get("error")}
            stored = int(result.get("stored") or 0)

        await _update_tracking(scope, len(messages), message_id, deps=deps)
        print(
            f"[Extraction] stored={stored} candidates={len(facts)} "
            f"mode={'initial' if plan['is_initial'] else 'incremental'} ({scope.label()})"
        )
        return {"extracted": stored, "success": True}
    except Exception as e:
        print(f"[Extraction] failed ({scope.label()}): {e}")
        return {"extracted": 0, "success": False, "error": str(e)}
