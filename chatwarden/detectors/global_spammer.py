from __future__ import annotations

from typing import Optional

import moderation_db
from chatwarden.models import (
    ACTION_MUTE,
    ACTION_WARN,
    REASON_ANTI_BOT,
    REASON_LINK,
    REASON_SPAM,
    SEVERE_ACTIONS,
    GlobalSpammerSignal,
)
from chatwarden.utils.dates import HOUR

GLOBAL_SPAMMER_WINDOW_HOURS = 72
GLOBAL_SPAMMER_MIN_SEVERE_ACTIONS = 1
GLOBAL_SPAMMER_MIN_MUTES = 2
GLOBAL_SPAMMER_MIN_WARNS = 4
GLOBAL_SPAMMER_MIN_RISK_EVENTS = 4


def resolve_global_spammer_signal(user_id: int, now: float) -> Optional[GlobalSpammerSignal]:
    """
    Cross-chat history check for a user over the last 72 hours.

    Fires only when the user already has at least one severe action (ban,
    ban_fallback, kick, kick_auto) anywhere, plus at least one of: 2+ mutes,
    4+ warns, or 4+ spam/link/anti-bot events.
    """
    since = now - GLOBAL_SPAMMER_WINDOW_HOURS * HOUR

    severe = sum(moderation_db.count_user_actions_since(user_id, action, since) for action in SEVERE_ACTIONS)
    if severe < GLOBAL_SPAMMER_MIN_SEVERE_ACTIONS:
        return None

    warns = moderation_db.count_user_actions_since(user_id, ACTION_WARN, since)
    mutes = moderation_db.count_user_actions_since(user_id, ACTION_MUTE, since)
    spam_events = moderation_db.count_user_reasons_since(user_id, REASON_SPAM, since)
    link_events = moderation_db.count_user_reasons_since(user_id, REASON_LINK, since)
    anti_bot_events = moderation_db.count_user_reasons_since(user_id, REASON_ANTI_BOT, since)

    if (
        mutes < GLOBAL_SPAMMER_MIN_MUTES
        and warns < GLOBAL_SPAMMER_MIN_WARNS
        and spam_events + link_events + anti_bot_events < GLOBAL_SPAMMER_MIN_RISK_EVENTS
    ):
        return None

    return GlobalSpammerSignal(
        window_hours=GLOBAL_SPAMMER_WINDOW_HOURS,
        severe_actions=severe,
        warns=warns,
        mutes=mutes,
        spam_events=spam_events,
        link_events=link_events,
        anti_bot_events=anti_bot_events,
    )
