from __future__ import annotations

import logging
import time
from typing import Iterable, Optional, Tuple

import moderation_db
from chatwarden.models import ACTION_REMOVE_BOT, REASON_BOT_GUARD, ViolationContext
from chatwarden.services.enforcement import EnforcementService

logger = logging.getLogger(__name__)

ORIGIN_BOT_ADDED = "bot_added"
ORIGIN_MESSAGE_CREATED = "message_created"


class BotGuard:
    """Removes foreign bots from moderated chats, whether they were added or just posted."""

    def __init__(self, enforcement: EnforcementService, bot_user_id: Optional[int] = None):
        self.enforcement = enforcement
        self.bot_user_id = bot_user_id

    async def handle_new_members(self, chat_id: int, members: Iterable[Tuple[int, bool, Optional[str]]],
                                 now: Optional[float] = None) -> int:
        """`members` are (user_id, is_bot, name) triples. Returns how many bots were removed."""
        removed = 0
        for user_id, is_bot, name in members:
            if is_bot and await self._remove(chat_id, user_id, name, ORIGIN_BOT_ADDED, now):
                removed += 1
        return removed

    async def handle_bot_message(self, chat_id: int, user_id: int, name: Optional[str] = None,
                                 now: Optional[float] = None) -> bool:
        return await self._remove(chat_id, user_id, name, ORIGIN_MESSAGE_CREATED, now)

    async def _remove(self, chat_id: int, user_id: int, name: Optional[str], origin: str,
                      now: Optional[float]) -> bool:
        if user_id == self.bot_user_id:
            return False
        try:
            if not moderation_db.get_chat_settings(chat_id, self.enforcement.config).enabled:
                return False
        except Exception as e:
            logger.warning(f"Bot guard could not read chat settings chat={chat_id}, assuming enabled: {e}")

        now = time.time() if now is None else now
        try:
            await self.enforcement.client.remove_member(chat_id, user_id, block=True)
        except Exception as e:
            logger.warning(f"Failed to remove bot chat={chat_id} bot={user_id} origin={origin}: {e}")
            return False

        ctx = ViolationContext(chat_id=chat_id, user_id=user_id, message_id=0, user_name=name)
        await self.enforcement.record(ctx, ACTION_REMOVE_BOT, REASON_BOT_GUARD,
                                      {"origin": origin, "botName": name}, now)
        return True
