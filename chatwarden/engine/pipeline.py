from __future__ import annotations

import logging
import time
from typing import Mapping, Optional

import config
import moderation_db
from chatwarden.detectors.antibot import AntiBotRiskScorer
from chatwarden.detectors.duplicates import DuplicateDetector
from chatwarden.detectors.global_spammer import resolve_global_spammer_signal
from chatwarden.detectors.links import get_forbidden_links
from chatwarden.detectors.night_hours import resolve_quiet_hours_window
from chatwarden.detectors.quotas import (
    PHOTO_LIMIT_WINDOW_SECONDS,
    is_photo_message,
    is_quota_exceeded,
    is_spam_triggered,
    is_text_too_long,
)
from chatwarden.detectors.text import text_length
from chatwarden.models import REASON_LINK, ChatSetting, IncomingMessage, ViolationContext
from chatwarden.services.admin_resolver import AdminResolver
from chatwarden.services.enforcement import EnforcementService
from chatwarden.services.idempotency import InMemoryIdempotencyGuard
from chatwarden.utils.dates import to_day_key

logger = logging.getLogger(__name__)

MODERATED_CHAT_TYPES = ("chat", "channel")


class ModerationPipeline:
    """
    Runs every inbound message through the gates, in order:

    idempotency -> settings -> admin bypass -> global spammer -> active
    restriction -> night quiet hours -> links -> text length -> duplicate ->
    anti-bot -> photo quota -> daily quota -> spam flood.

    Each gate either falls through or short-circuits with an enforcement
    call. A failing gate degrades to its own policy: the link whitelist
    fails closed, quota/photo/spam checks fail open.
    """

    def __init__(
        self,
        bot_config: config.BotConfig,
        enforcement: EnforcementService,
        admin_resolver: AdminResolver,
        idempotency: Optional[InMemoryIdempotencyGuard] = None,
        duplicates: Optional[DuplicateDetector] = None,
        anti_bot: Optional[AntiBotRiskScorer] = None,
        quiet_hours_timezones: Optional[Mapping[int, str]] = None,
    ):
        self.config = bot_config
        self.enforcement = enforcement
        self.admin_resolver = admin_resolver
        self.idempotency = idempotency or InMemoryIdempotencyGuard()
        self.duplicates = duplicates or DuplicateDetector()
        self.anti_bot = anti_bot or AntiBotRiskScorer()
        self.quiet_hours_timezones = quiet_hours_timezones

    async def handle_message(self, message: IncomingMessage, bot_user_id: Optional[int] = None,
                             now: Optional[float] = None) -> None:
        if message.chat_type not in MODERATED_CHAT_TYPES:
            return
        if not message.chat_id or not message.sender_id or not message.message_id:
            return
        if message.sender_is_bot or message.sender_id == bot_user_id:
            return

        now = time.time() if now is None else now
        chat_id, user_id = message.chat_id, message.sender_id
        ctx = ViolationContext(chat_id=chat_id, user_id=user_id, message_id=message.message_id,
                               user_name=message.sender_name)

        # Idempotency: memory first, then the durable table.
        if not self.idempotency.try_mark(chat_id, message.message_id, now):
            return
        try:
            if not moderation_db.try_mark_processed(chat_id, message.message_id, now):
                return
        except Exception as e:
            logger.warning(f"DB dedupe failed, falling back to memory guard chat={chat_id} "
                           f"message={message.message_id}: {e}")

        settings = self._load_settings(chat_id)
        if not settings.enabled:
            return

        if await self.admin_resolver.is_admin(chat_id, user_id, now=now):
            return

        try:
            spammer = resolve_global_spammer_signal(user_id, now)
        except Exception as e:
            logger.error(f"Global spammer check failed (fail-open) user={user_id}: {e}")
            spammer = None
        if spammer:
            await self.enforcement.enforce_global_spammer(ctx, spammer, now)
            return

        try:
            restriction = moderation_db.get_active_restriction(chat_id, user_id, now)
        except Exception as e:
            logger.error(f"Restriction check failed chat={chat_id} user={user_id}: {e}")
            restriction = None
        if restriction:
            await self.enforcement.enforce_active_restriction(ctx, restriction, now)
            return

        window = resolve_quiet_hours_window(chat_id, now, self.quiet_hours_timezones)
        if window:
            await self.enforcement.enforce_night_quiet_hours(ctx, window, now)
            return

        try:
            whitelist = moderation_db.list_whitelisted_domains(chat_id)
        except Exception as e:
            logger.error(f"Whitelist lookup failed, fail-closed for link moderation chat={chat_id}: {e}")
            await self.enforcement.handle_critical_failure(ctx, REASON_LINK, now)
            return

        forbidden = get_forbidden_links(message, whitelist)
        if forbidden:
            await self.enforcement.enforce_link_violation(ctx, forbidden, now)
            return

        length = text_length(message)
        if is_text_too_long(length, settings.max_text_length):
            await self.enforcement.enforce_text_length(ctx, length, settings.max_text_length, now)
            return

        duplicate = self.duplicates.check(user_id, message, now)
        if duplicate:
            await self.enforcement.enforce_duplicate(ctx, duplicate, now)
            return

        try:
            assessment = self.anti_bot.assess(chat_id, user_id, message, now)
        except Exception as e:
            logger.error(f"Anti-bot scoring failed (fail-open) chat={chat_id} user={user_id}: {e}")
            assessment = None
        if assessment and assessment.should_act:
            await self.enforcement.enforce_anti_bot(ctx, assessment, now)
            return

        if settings.photo_limit_per_hour > 0 and is_photo_message(message):
            try:
                photos = moderation_db.count_photo_events_since(chat_id, user_id, now - PHOTO_LIMIT_WINDOW_SECONDS)
                if photos >= settings.photo_limit_per_hour:
                    await self.enforcement.enforce_photo_quota(ctx, photos + 1, settings.photo_limit_per_hour, now)
                    return
                moderation_db.add_photo_event(chat_id, user_id, now)
            except Exception as e:
                logger.error(f"Photo quota check failed (fail-open) chat={chat_id} user={user_id}: {e}")

        if settings.daily_limit > 0:
            try:
                day_key = to_day_key(now, self.config.timezone)
                count = moderation_db.increment_daily_count(chat_id, user_id, day_key, now=now)
                if is_quota_exceeded(count, settings.daily_limit):
                    await self.enforcement.enforce_quota(ctx, count, settings.daily_limit, now)
                    return
            except Exception as e:
                logger.error(f"Quota check failed (fail-open) chat={chat_id} user={user_id}: {e}")

        try:
            moderation_db.add_message_event(chat_id, user_id, now)
            in_window = moderation_db.count_message_events_since(chat_id, user_id, now - settings.spam_window_sec)
            if is_spam_triggered(in_window, settings.spam_threshold):
                await self.enforcement.enforce_spam(ctx, in_window, now)
        except Exception as e:
            logger.error(f"Spam check failed (fail-open) chat={chat_id} user={user_id}: {e}")

    def _load_settings(self, chat_id: int) -> ChatSetting:
        try:
            return moderation_db.get_chat_settings(chat_id, self.config)
        except Exception as e:
            logger.error(f"Failed to load chat settings, using defaults chat={chat_id}: {e}")
            return moderation_db.default_chat_setting(chat_id, self.config)

    def sweep_caches(self, now: Optional[float] = None) -> None:
        """Trim the process-wide caches; called by the cleanup job."""
        now = time.time() if now is None else now
        self.idempotency.gc(now)
        self.duplicates.purge(now, force=True)
        self.anti_bot.sweep(now)
