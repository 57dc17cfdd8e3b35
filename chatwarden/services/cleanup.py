"""
Periodic maintenance: table purges, the bot-notice delete queue and
scheduled rejoins after a temporary kick.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

import moderation_db
from chatwarden.errors import AlreadySatisfied
from chatwarden.models import ACTION_REJOIN, REASON_SCHEDULED_REJOIN, ViolationContext
from chatwarden.services.enforcement import EnforcementService
from chatwarden.utils.dates import DAY, HOUR, to_day_key

logger = logging.getLogger(__name__)

DRAIN_BATCH_SIZE = 100
BOT_MESSAGE_DELETE_RETRY_SECONDS = 60
BOT_MESSAGE_DELETE_RETENTION_SECONDS = 7 * DAY
REJOIN_RETRY_SECONDS = 10 * 60
REJOIN_RETENTION_SECONDS = 7 * DAY
PROCESSED_MESSAGES_RETENTION_SECONDS = 2 * DAY
DAILY_COUNTS_RETENTION_DAYS = 8


class CleanupService:
    def __init__(self, enforcement: EnforcementService, sweep_caches: Optional[Callable[[float], None]] = None):
        self.enforcement = enforcement
        self.client = enforcement.client
        self.config = enforcement.config
        self._sweep_caches = sweep_caches

    def event_retention_seconds(self) -> float:
        return max(
            self.config.ban_hours * HOUR,
            self.config.strike_decay_hours * HOUR,
            self.config.spam_window_sec,
            DAY,
        )

    def run(self, now: Optional[float] = None) -> Dict[str, int]:
        """Purge expired rows from every time-bounded table. Returns purged row counts."""
        now = time.time() if now is None else now
        event_cutoff = now - self.event_retention_seconds()

        purged = {
            "message_events": moderation_db.purge_message_events_before(event_cutoff),
            "photo_events": moderation_db.purge_photo_events_before(event_cutoff),
            "restrictions": moderation_db.purge_expired_restrictions(now),
            "strikes": moderation_db.purge_strikes_before(now - self.config.strike_decay_hours * HOUR),
            "processed_messages": moderation_db.purge_processed_messages_before(
                now - PROCESSED_MESSAGES_RETENTION_SECONDS),
            "daily_counts": moderation_db.purge_daily_counts_before(
                to_day_key(now - DAILY_COUNTS_RETENTION_DAYS * DAY, self.config.timezone)),
        }

        if self._sweep_caches:
            self._sweep_caches(now)

        total = sum(purged.values())
        if total:
            logger.info(f"Cleanup purged {total} rows: {purged}")
        return purged

    async def drain_bot_message_deletes(self, now: Optional[float] = None) -> int:
        """Delete due bot notices. Returns how many rows were resolved."""
        now = time.time() if now is None else now
        resolved = 0
        for pending in moderation_db.list_due_bot_message_deletes(now, limit=DRAIN_BATCH_SIZE):
            try:
                await self.client.delete_message(pending.chat_id, pending.message_id)
            except AlreadySatisfied:
                pass
            except Exception as e:
                logger.debug(f"Bot message delete failed chat={pending.chat_id} "
                             f"message={pending.message_id}, retrying later: {e}")
                moderation_db.postpone_bot_message_delete(
                    pending.chat_id, pending.message_id, now + BOT_MESSAGE_DELETE_RETRY_SECONDS)
                continue
            moderation_db.remove_bot_message_delete(pending.chat_id, pending.message_id)
            resolved += 1

        stale = moderation_db.purge_bot_message_deletes_before(now - BOT_MESSAGE_DELETE_RETENTION_SECONDS)
        if stale:
            logger.warning(f"Dropped {stale} bot message deletes that kept failing for a week")
        return resolved

    async def drain_pending_rejoins(self, now: Optional[float] = None) -> int:
        """Let temporarily kicked users back in once their rejoin time has come."""
        now = time.time() if now is None else now
        rejoined = 0
        for pending in moderation_db.list_due_rejoins(now, limit=DRAIN_BATCH_SIZE):
            try:
                await self.client.add_member(pending.chat_id, pending.user_id)
            except Exception as e:
                logger.warning(f"Scheduled rejoin failed chat={pending.chat_id} user={pending.user_id}, "
                               f"retrying in {REJOIN_RETRY_SECONDS}s: {e}")
                moderation_db.postpone_pending_rejoin(pending.chat_id, pending.user_id, now + REJOIN_RETRY_SECONDS)
                continue

            moderation_db.remove_pending_rejoin(pending.chat_id, pending.user_id)
            ctx = ViolationContext(chat_id=pending.chat_id, user_id=pending.user_id, message_id=0)
            await self.enforcement.record(ctx, ACTION_REJOIN, REASON_SCHEDULED_REJOIN,
                                          {"rejoinAtTs": pending.rejoin_at_ts}, now)
            rejoined += 1

        moderation_db.purge_pending_rejoins_before(now - REJOIN_RETENTION_SECONDS)
        return rejoined
