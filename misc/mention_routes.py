from __future__ import annotations

import re


def strip_bot_mention(content: str, bot_user_id: int | None) -> str:
    text = content or ""
    if bot_user_id is not None:
        text = re.sub(rf"<@!?\s*{int(bot_user_id)}\s*>", "", text)
    return text.strip()


def is_command(content: str, prefix: str = "!") -> bool:
    return (content or "").lstrip().startswith(prefix)
