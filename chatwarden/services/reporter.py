from __future__ import annotations

import json
import logging
from typing import Optional

import moderation_db
from chatwarden.client import ChatClient
from chatwarden.models import (
    ACTION_BAN,
    ACTION_BAN_FALLBACK,
    ACTION_KICK,
    ACTION_KICK_AUTO,
    ACTION_KICK_TEMP,
    ACTION_MUTE,
    ACTION_REMOVE_BOT,
    ModerationActionRecord,
)

logger = logging.getLogger("chatwarden.moderation")

FORWARDED_ACTIONS = frozenset({
    ACTION_MUTE,
    ACTION_BAN,
    ACTION_BAN_FALLBACK,
    ACTION_KICK,
    ACTION_KICK_TEMP,
    ACTION_KICK_AUTO,
    ACTION_REMOVE_BOT,
})


def format_moderation_line(record: ModerationActionRecord) -> str:
    detail = json.dumps(record.meta or {}, ensure_ascii=False, default=str, sort_keys=True)
    return (
        f"[moderation] chat={record.chat_id} user={record.user_id} "
        f"action={record.action} reason={record.reason} detail={detail}"
    )


class ModerationReporter:
    """Logs every audit record and forwards severe ones to the log chat (best-effort)."""

    def __init__(self, client: Optional[ChatClient] = None, log_chat_id: Optional[int] = None):
        self.client = client
        self.log_chat_id = log_chat_id

    def resolve_log_chat_id(self) -> Optional[int]:
        if self.log_chat_id is not None:
            return self.log_chat_id
        try:
            return moderation_db.get_log_chat_id()
        except Exception as e:
            logger.warning(f"Failed to read log chat setting: {e}")
            return None

    async def report(self, record: ModerationActionRecord) -> None:
        line = format_moderation_line(record)
        logger.info(line)

        if record.action not in FORWARDED_ACTIONS or self.client is None:
            return

        log_chat_id = self.resolve_log_chat_id()
        if log_chat_id is None or log_chat_id == record.chat_id:
            return

        text = line
        try:
            title = await self.client.get_chat_title(record.chat_id)
        except Exception as e:
            logger.debug(f"Chat title lookup failed for {record.chat_id}: {e}")
            title = None
        if title:
            text = f"{title}\n{line}"

        try:
            await self.client.send_message(log_chat_id, text, silent=True)
        except Exception as e:
            logger.warning(f"Failed to forward moderation record to log chat {log_chat_id}: {e}")
