from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Tuple

from chatwarden.client import ChatClient

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60
FAILURE_TTL_SECONDS = 20


class AdminResolver:
    """
    Answers "is this user a chat admin?" with a per-(chat, user) TTL cache.

    The admin list is the primary source; a direct member lookup is used
    only when listing admins fails. When both fail the user is treated as a
    non-admin, cached for a shorter period so a recovered API is picked up
    quickly.
    """

    def __init__(self, client: ChatClient, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[Tuple[int, int], Tuple[bool, float]] = {}

    async def is_admin(self, chat_id: int, user_id: int, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        key = (chat_id, user_id)
        cached = self._cache.get(key)
        if cached and cached[1] > now:
            return cached[0]

        try:
            admin_ids = await self.client.get_chat_admin_ids(chat_id)
            is_admin = user_id in admin_ids
            self._cache[key] = (is_admin, now + self.ttl_seconds)
            return is_admin
        except Exception as e:
            logger.warning(f"Admin list lookup failed chat={chat_id} user={user_id}: {e}")

        try:
            is_admin = await self.client.is_chat_admin(chat_id, user_id)
            self._cache[key] = (is_admin, now + self.ttl_seconds)
            return is_admin
        except Exception as e:
            logger.warning(f"Member lookup failed chat={chat_id} user={user_id}: {e}")
            self._cache[key] = (False, now + min(self.ttl_seconds, FAILURE_TTL_SECONDS))
            return False

    def invalidate(self, chat_id: int, user_id: Optional[int] = None) -> None:
        for key in list(self._cache):
            if key[0] == chat_id and (user_id is None or key[1] == user_id):
                del self._cache[key]
