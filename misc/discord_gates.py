from __future__ import annotations

import discord


def message_in_allowed_channels(message: discord.Message, allowed_channel_ids: set[int]) -> bool:
    # DMs are always allowed; an empty allowlist means every guild channel.
    if getattr(message, "guild", None) is None:
        return True
    if not allowed_channel_ids:
        return True

    channel_id = int(getattr(message.channel, "id", 0) or 0)
    if channel_id in allowed_channel_ids:
        return True
    # thread: allow if parent is allowed
    if isinstance(message.channel, discord.Thread) and message.channel.parent:
        return int(message.channel.parent.id) in allowed_channel_ids
    return False


def addressed_to_bot(message: discord.Message, bot_user) -> bool:
    if getattr(message, "guild", None) is None:
        return True
    return bool(bot_user and bot_user in (getattr(message, "mentions", None) or []))
