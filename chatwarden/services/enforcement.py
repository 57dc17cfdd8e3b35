"""
Enforcement primitives and sanction ladders.

Every ladder position is recomputed from the moderation_actions audit log on
each call; nothing else stores "current level". Audit rows are written after
the side effect they describe, and audit-write failures are logged and
swallowed so they never undo an enforcement that already happened.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import config
import moderation_db
from chatwarden.client import Buttons, ChatClient
from chatwarden.errors import AlreadySatisfied
from chatwarden.models import (
    ACTION_BAN,
    ACTION_BAN_FALLBACK,
    ACTION_DELETE,
    ACTION_KICK,
    ACTION_KICK_AUTO,
    ACTION_KICK_AUTO_FAILED,
    ACTION_KICK_FAILED,
    ACTION_KICK_TEMP,
    ACTION_KICK_TEMP_FAILED,
    ACTION_MUTE,
    ACTION_RESTRICTION_ENFORCED,
    ACTION_WARN,
    REASON_ACTIVE_MUTE,
    REASON_ACTIVE_RESTRICTION,
    REASON_ANTI_BOT,
    REASON_DUPLICATE,
    REASON_GLOBAL_SPAMMER,
    REASON_LINK,
    REASON_LINK_FAIL_CLOSED,
    REASON_MUTE_REPEAT,
    REASON_NIGHT_QUIET_HOURS,
    REASON_PHOTO_QUOTA,
    REASON_QUOTA,
    REASON_SPAM,
    REASON_TEXT_LENGTH,
    RESTRICTION_BAN_FALLBACK,
    RESTRICTION_MUTE,
    ActiveRestriction,
    AntiBotAssessment,
    DetectedLink,
    DuplicateSignal,
    GlobalSpammerSignal,
    ModerationActionRecord,
    QuietHoursWindow,
    ViolationContext,
)
from chatwarden.services.reporter import ModerationReporter
from chatwarden.utils.dates import DAY, HOUR, format_local

logger = logging.getLogger(__name__)

DELETE_RETRY_DELAYS = (0, 0.2, 0.5)
NOTICE_AUTO_DELETE_SECONDS = 60

LINK_WINDOW_SECONDS = DAY
DUPLICATE_WINDOW_SECONDS = DAY
PHOTO_QUOTA_WINDOW_SECONDS = HOUR
PHOTO_QUOTA_MAX_DELETES_BEFORE_MUTE = 5
PHOTO_QUOTA_MUTE_HOURS = 3
ACTIVE_MUTE_MAX_MESSAGES = 5
ACTIVE_MUTE_TEMP_KICK_HOURS = 3
ANTI_BOT_MUTE_HOURS = 6
REPEATED_MUTE_WINDOW_SECONDS = DAY
REPEATED_MUTE_AUTO_REMOVE_THRESHOLD = 2


def display_name(user_name: Optional[str], user_id: int) -> str:
    name = (user_name or "").strip()
    return name or f"User {user_id}"


class EnforcementService:
    """Applies sanctions through a ChatClient and records them in the audit log."""

    def __init__(
        self,
        client: ChatClient,
        bot_config: config.BotConfig,
        reporter: Optional[ModerationReporter] = None,
        sleep=asyncio.sleep,
    ):
        self.client = client
        self.config = bot_config
        self.reporter = reporter or ModerationReporter(client, bot_config.log_chat_id)
        self._sleep = sleep

    # ========================================================================
    # PRIMITIVES
    # ========================================================================

    async def delete_message_safe(self, chat_id: int, message_id: int) -> bool:
        """
        Delete a message, retrying with short fixed delays.

        "Already deleted" counts as success. Never raises.

        Returns:
            True when the message is gone, False when every attempt failed.
        """
        last_error: Optional[Exception] = None
        for delay in DELETE_RETRY_DELAYS:
            if delay > 0:
                await self._sleep(delay)
            try:
                await self.client.delete_message(chat_id, message_id)
                return True
            except AlreadySatisfied:
                return True
            except Exception as e:
                last_error = e

        logger.warning(
            f"Failed to delete message chat={chat_id} message={message_id} "
            f"after {len(DELETE_RETRY_DELAYS)} attempts: {last_error}"
        )
        return False

    async def send_notice(self, ctx: ViolationContext, text: str, now: float,
                          buttons: Optional[Buttons] = None, silent: bool = False) -> None:
        """Best-effort chat notice addressed to the user; scheduled for auto-deletion."""
        if not self.config.notice_in_chat:
            return

        body = f"«{display_name(ctx.user_name, ctx.user_id)}», {text}"
        try:
            sent_id = await self.client.send_message(ctx.chat_id, body, buttons=buttons, silent=silent)
        except Exception as e:
            logger.warning(f"Failed to send chat notice chat={ctx.chat_id}: {e}")
            return

        if sent_id is None:
            return
        try:
            moderation_db.schedule_bot_message_delete(ctx.chat_id, sent_id, now + NOTICE_AUTO_DELETE_SECONDS, now=now)
        except Exception as e:
            logger.warning(f"Failed to schedule notice deletion chat={ctx.chat_id} message={sent_id}: {e}")

    async def record(self, ctx: ViolationContext, action: str, reason: str, meta: Dict[str, Any],
                     now: float) -> None:
        record = ModerationActionRecord(
            chat_id=ctx.chat_id,
            user_id=ctx.user_id,
            action=action,
            reason=reason,
            meta=meta,
            created_at=now,
        )
        try:
            moderation_db.record_moderation_action(record)
        except Exception as e:
            logger.error(f"Failed to record moderation action {action}/{reason} "
                         f"chat={ctx.chat_id} user={ctx.user_id}: {e}")
        await self.reporter.report(record)

    async def _delete_and_record(self, ctx: ViolationContext, reason: str, meta: Dict[str, Any],
                                 now: float) -> bool:
        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)
        if deleted:
            await self.record(ctx, ACTION_DELETE, reason, meta, now)
        return deleted

    def _links_button(self) -> Optional[Buttons]:
        if config.RULES_BUTTON_URL:
            return [(config.RULES_BUTTON_TEXT, config.RULES_BUTTON_URL)]
        return None

    def _format_ts(self, ts: float) -> str:
        return format_local(ts, self.config.timezone)

    # ========================================================================
    # GLOBAL SPAMMER
    # ========================================================================

    async def enforce_global_spammer(self, ctx: ViolationContext, signal: GlobalSpammerSignal, now: float) -> None:
        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)
        meta = signal.as_meta()
        meta["deleted"] = deleted
        meta["userName"] = display_name(ctx.user_name, ctx.user_id)
        await self._remove_with_ban_fallback(ctx, REASON_GLOBAL_SPAMMER, meta, now, until_ts=None,
                                             notice=config.GLOBAL_SPAMMER_REMOVED)

    async def _remove_with_ban_fallback(self, ctx: ViolationContext, reason: str, meta: Dict[str, Any],
                                        now: float, until_ts: Optional[float], notice: Optional[str]) -> bool:
        """
        Remove with block; on failure persist a ban_fallback restriction so the
        user's messages keep being dropped. Returns True when the removal worked.
        """
        try:
            await self.client.remove_member(ctx.chat_id, ctx.user_id, block=True, until_ts=until_ts)
        except Exception as e:
            fallback_until = now + self.config.ban_hours * HOUR
            logger.warning(f"Remove failed chat={ctx.chat_id} user={ctx.user_id} reason={reason}, "
                           f"falling back to message block: {e}")
            try:
                moderation_db.upsert_restriction(ctx.chat_id, ctx.user_id, RESTRICTION_BAN_FALLBACK,
                                                 fallback_until, now=now)
            except Exception as db_error:
                logger.error(f"Failed to persist ban_fallback chat={ctx.chat_id} user={ctx.user_id}: {db_error}")
                return False
            await self.send_notice(ctx, config.SPAM_BAN_FALLBACK.format(until=self._format_ts(fallback_until)), now)
            await self.record(ctx, ACTION_BAN_FALLBACK, reason,
                              {**meta, "untilTs": fallback_until, "error": str(e)}, now)
            return False

        if notice:
            await self.send_notice(ctx, notice, now, silent=True)
        await self.record(ctx, ACTION_BAN, reason, {**meta, "untilTs": until_ts}, now)
        return True

    # ========================================================================
    # ACTIVE RESTRICTION
    # ========================================================================

    async def enforce_active_restriction(self, ctx: ViolationContext, restriction: ActiveRestriction,
                                         now: float) -> None:
        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)

        if restriction.restriction_type == RESTRICTION_MUTE:
            try:
                prior = moderation_db.count_actions_by_action_and_reason_since(
                    ctx.chat_id, ctx.user_id, ACTION_DELETE, REASON_ACTIVE_MUTE, restriction.created_at_ts,
                )
            except Exception as e:
                logger.error(f"Failed to count messages during mute chat={ctx.chat_id} user={ctx.user_id}: {e}")
                prior = 0
            messages_during_mute = prior + 1
            if deleted:
                await self.record(ctx, ACTION_DELETE, REASON_ACTIVE_MUTE, {
                    "untilTs": restriction.until_ts,
                    "createdAtTs": restriction.created_at_ts,
                    "messagesDuringMute": messages_during_mute,
                }, now)
            if messages_during_mute > ACTIVE_MUTE_MAX_MESSAGES:
                await self._kick_for_mute_evasion(ctx, messages_during_mute, now)
            return

        await self.send_notice(
            ctx, config.ACTIVE_RESTRICTION_NOTICE.format(until=self._format_ts(restriction.until_ts)), now,
        )
        await self.record(ctx, ACTION_RESTRICTION_ENFORCED, REASON_ACTIVE_RESTRICTION, {
            "restrictionType": restriction.restriction_type,
            "untilTs": restriction.until_ts,
            "deleted": deleted,
        }, now)

    async def _kick_for_mute_evasion(self, ctx: ViolationContext, messages_during_mute: int, now: float) -> None:
        rejoin_at = now + ACTIVE_MUTE_TEMP_KICK_HOURS * HOUR
        meta = {
            "messagesDuringMute": messages_during_mute,
            "threshold": ACTIVE_MUTE_MAX_MESSAGES,
            "userName": display_name(ctx.user_name, ctx.user_id),
        }
        try:
            await self.client.remove_member(ctx.chat_id, ctx.user_id, block=True, until_ts=rejoin_at)
        except Exception as e:
            logger.warning(f"Failed to temporarily kick user for mute evasion chat={ctx.chat_id} "
                           f"user={ctx.user_id}: {e}")
            await self.record(ctx, ACTION_KICK_TEMP_FAILED, REASON_ACTIVE_MUTE, {**meta, "error": str(e)}, now)
            return

        try:
            moderation_db.upsert_pending_rejoin(ctx.chat_id, ctx.user_id, rejoin_at, now=now)
        except Exception as e:
            logger.error(f"Failed to schedule rejoin chat={ctx.chat_id} user={ctx.user_id}: {e}")
        await self.record(ctx, ACTION_KICK_TEMP, REASON_ACTIVE_MUTE, {
            **meta,
            "rejoinAtTs": rejoin_at,
            "kickHours": ACTIVE_MUTE_TEMP_KICK_HOURS,
        }, now)

    # ========================================================================
    # NIGHT QUIET HOURS
    # ========================================================================

    async def enforce_night_quiet_hours(self, ctx: ViolationContext, window: QuietHoursWindow, now: float) -> None:
        try:
            prior = moderation_db.count_actions_by_reason_since(
                ctx.chat_id, ctx.user_id, REASON_NIGHT_QUIET_HOURS, window.window_start_ts,
            )
        except Exception as e:
            logger.error(f"Failed to count quiet-hours violations chat={ctx.chat_id} user={ctx.user_id}: {e}")
            prior = 0
        meta = {
            "timezone": window.timezone,
            "localHour": window.local_hour,
            "windowStartTs": window.window_start_ts,
            "windowEndTs": window.window_end_ts,
            "violation": prior + 1,
        }

        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)
        if prior == 0:
            if deleted:
                await self.record(ctx, ACTION_DELETE, REASON_NIGHT_QUIET_HOURS, meta, now)
            return

        await self._mute(ctx, REASON_NIGHT_QUIET_HOURS, window.window_end_ts, now,
                         config.NIGHT_QUIET_MUTE.format(until=self._format_ts(window.window_end_ts)),
                         {**meta, "deleted": deleted}, silent=True)

    # ========================================================================
    # LINKS
    # ========================================================================

    async def enforce_link_violation(self, ctx: ViolationContext, links: List[DetectedLink], now: float) -> int:
        """Apply the 24h link ladder and return the violation level used (0 if the ladder was unreadable)."""
        try:
            prior = moderation_db.count_actions_by_reason_since(
                ctx.chat_id, ctx.user_id, REASON_LINK, now - LINK_WINDOW_SECONDS,
            )
        except Exception as e:
            logger.error(f"Link ladder lookup failed, fail-closed chat={ctx.chat_id} user={ctx.user_id}: {e}")
            await self.handle_critical_failure(ctx, REASON_LINK, now)
            return 0
        level = prior + 1
        meta = {
            "forbiddenLinks": [link.as_meta() for link in links],
            "violationLevel": level,
            "windowHours": 24,
        }

        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)

        if level == 1:
            await self.send_notice(ctx, config.LINK_NOTICE, now, buttons=self._links_button())
            await self.record(ctx, ACTION_DELETE, REASON_LINK, {**meta, "deleted": deleted}, now)
            return level

        if level == 2:
            await self.send_notice(ctx, config.LINK_WARNING, now, buttons=self._links_button())
            await self.record(ctx, ACTION_WARN, REASON_LINK, {**meta, "deleted": deleted}, now)
            return level

        if level == 3:
            await self.send_notice(ctx, config.LINK_FINAL_WARNING, now)
            await self.record(ctx, ACTION_WARN, REASON_LINK, {**meta, "deleted": deleted, "final": True}, now)
            return level

        meta["userName"] = display_name(ctx.user_name, ctx.user_id)
        await self._remove_with_ban_fallback(ctx, REASON_LINK, meta, now, until_ts=None,
                                             notice=config.LINK_REMOVED)
        return level

    async def handle_critical_failure(self, ctx: ViolationContext, violation_kind: str, now: float) -> None:
        """Fail-closed path for checks whose dependency errored."""
        if violation_kind == REASON_LINK:
            deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)
            await self.send_notice(ctx, config.LINK_FAIL_CLOSED, now)
            if deleted:
                await self.record(ctx, ACTION_DELETE, REASON_LINK_FAIL_CLOSED, {}, now)
            return

        logger.error(f"Non-link moderation failure (fail-open) chat={ctx.chat_id} user={ctx.user_id} "
                     f"kind={violation_kind}")

    # ========================================================================
    # TEXT LENGTH / QUOTA
    # ========================================================================

    async def enforce_text_length(self, ctx: ViolationContext, length: int, limit: int, now: float) -> None:
        meta = {"currentTextLength": length, "maxTextLength": limit}
        await self._delete_and_record(ctx, REASON_TEXT_LENGTH, meta, now)
        await self.send_notice(ctx, config.TEXT_LENGTH_NOTICE.format(length=length, limit=limit), now, silent=True)
        await self.record(ctx, ACTION_WARN, REASON_TEXT_LENGTH, meta, now)

    async def enforce_quota(self, ctx: ViolationContext, current_count: int, limit: int, now: float) -> None:
        await self._delete_and_record(ctx, REASON_QUOTA, {"currentCount": current_count, "limit": limit}, now)
        await self.send_notice(ctx, config.QUOTA_NOTICE.format(limit=limit, timezone=self.config.timezone), now)

    # ========================================================================
    # DUPLICATES
    # ========================================================================

    async def enforce_duplicate(self, ctx: ViolationContext, signal: DuplicateSignal, now: float) -> int:
        """1st duplicate: explain; 2nd: warn; 3rd and later: kick. Counted per user across chats."""
        try:
            prior = moderation_db.count_user_action_and_reason_since(
                ctx.user_id, ACTION_DELETE, REASON_DUPLICATE, now - DUPLICATE_WINDOW_SECONDS,
            )
        except Exception as e:
            logger.error(f"Failed to count duplicate violations user={ctx.user_id}: {e}")
            prior = 0
        level = prior + 1
        meta = {**signal.as_meta(), "violationLevel": level}

        # The ladder counts these rows, so one is written even when the delete fails.
        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)
        await self.record(ctx, ACTION_DELETE, REASON_DUPLICATE, {**meta, "deleted": deleted}, now)

        if level == 1:
            await self.send_notice(ctx, config.DUPLICATE_NOTICE, now, silent=True)
            return level

        if level == 2:
            await self.send_notice(ctx, config.DUPLICATE_WARNING, now, silent=True)
            await self.record(ctx, ACTION_WARN, REASON_DUPLICATE, meta, now)
            return level

        meta["userName"] = display_name(ctx.user_name, ctx.user_id)
        try:
            await self.client.remove_member(ctx.chat_id, ctx.user_id)
        except Exception as e:
            logger.warning(f"Failed to kick duplicate poster chat={ctx.chat_id} user={ctx.user_id}: {e}")
            await self.record(ctx, ACTION_KICK_FAILED, REASON_DUPLICATE, {**meta, "error": str(e)}, now)
            return level

        await self.send_notice(ctx, config.DUPLICATE_REMOVED, now, silent=True)
        await self.record(ctx, ACTION_KICK, REASON_DUPLICATE, meta, now)
        return level

    # ========================================================================
    # ANTI-BOT / PHOTO / SPAM
    # ========================================================================

    async def enforce_anti_bot(self, ctx: ViolationContext, assessment: AntiBotAssessment, now: float) -> None:
        meta = assessment.as_meta()
        await self._delete_and_record(ctx, REASON_ANTI_BOT, meta, now)

        if not assessment.should_mute:
            await self.send_notice(ctx, config.ANTI_BOT_WARNING, now, silent=True)
            await self.record(ctx, ACTION_WARN, REASON_ANTI_BOT, meta, now)
            return

        until = now + ANTI_BOT_MUTE_HOURS * HOUR
        await self._mute(ctx, REASON_ANTI_BOT, until, now,
                         config.ANTI_BOT_MUTE.format(hours=ANTI_BOT_MUTE_HOURS, until=self._format_ts(until)),
                         {**meta, "muteHours": ANTI_BOT_MUTE_HOURS}, silent=True)

    async def enforce_photo_quota(self, ctx: ViolationContext, count_in_window: int, limit: int,
                                  now: float) -> None:
        since = now - PHOTO_QUOTA_WINDOW_SECONDS
        violations = moderation_db.count_actions_by_action_and_reason_since(
            ctx.chat_id, ctx.user_id, ACTION_DELETE, REASON_PHOTO_QUOTA, since,
        ) + 1
        warnings = moderation_db.count_actions_by_action_and_reason_since(
            ctx.chat_id, ctx.user_id, ACTION_WARN, REASON_PHOTO_QUOTA, since,
        )
        meta = {
            "currentPhotoCountInWindow": count_in_window,
            "limitPerHour": limit,
            "photoViolationsCount": violations,
            "windowMinutes": 60,
        }

        await self._delete_and_record(ctx, REASON_PHOTO_QUOTA, meta, now)

        if violations > PHOTO_QUOTA_MAX_DELETES_BEFORE_MUTE:
            until = now + PHOTO_QUOTA_MUTE_HOURS * HOUR
            await self._mute(ctx, REASON_PHOTO_QUOTA, until, now,
                             config.PHOTO_QUOTA_MUTE.format(hours=PHOTO_QUOTA_MUTE_HOURS),
                             {**meta, "muteHours": PHOTO_QUOTA_MUTE_HOURS}, silent=True)
            return

        if warnings == 0:
            await self.send_notice(ctx, config.PHOTO_QUOTA_NOTICE.format(limit=limit), now, silent=True)
            await self.record(ctx, ACTION_WARN, REASON_PHOTO_QUOTA, meta, now)

    async def enforce_spam(self, ctx: ViolationContext, count_in_window: int, now: float) -> int:
        """Strike ladder: 1 = warn, 2 = timed mute, 3 = remove with block (ban_fallback on failure)."""
        level = moderation_db.register_strike(ctx.chat_id, ctx.user_id, now, self.config.strike_decay_hours * HOUR)
        deleted = await self.delete_message_safe(ctx.chat_id, ctx.message_id)
        meta = {"level": level, "messageCountInWindow": count_in_window, "deleted": deleted}

        if level == 1:
            await self.send_notice(ctx, config.SPAM_WARNING, now)
            await self.record(ctx, ACTION_WARN, REASON_SPAM, meta, now)
            return level

        if level == 2:
            until = now + self.config.mute_hours * HOUR
            await self._mute(ctx, REASON_SPAM, until, now,
                             config.SPAM_MUTE.format(until=self._format_ts(until)), meta)
            return level

        ban_until = now + self.config.ban_hours * HOUR
        meta.update({"userName": display_name(ctx.user_name, ctx.user_id),
                     "spamWindowSec": self.config.spam_window_sec})
        await self._remove_with_ban_fallback(ctx, REASON_SPAM, meta, now, until_ts=ban_until,
                                             notice=config.SPAM_BANNED.format(hours=self.config.ban_hours))
        return level

    # ========================================================================
    # MUTES
    # ========================================================================

    async def _mute(self, ctx: ViolationContext, reason: str, until: float, now: float, notice: str,
                    meta: Dict[str, Any], silent: bool = False) -> None:
        try:
            moderation_db.upsert_restriction(ctx.chat_id, ctx.user_id, RESTRICTION_MUTE, until, now=now)
        except Exception as e:
            logger.error(f"Failed to persist mute chat={ctx.chat_id} user={ctx.user_id} reason={reason}: {e}")
            return

        await self.send_notice(ctx, notice, now, silent=silent)
        await self.record(ctx, ACTION_MUTE, reason, {
            **meta,
            "untilTs": until,
            "userName": display_name(ctx.user_name, ctx.user_id),
        }, now)
        await self.maybe_auto_remove_after_repeated_mutes(ctx, reason, now)

    async def maybe_auto_remove_after_repeated_mutes(self, ctx: ViolationContext, trigger_reason: str,
                                                     now: float) -> bool:
        """Two mutes (any reason) within 24h remove the user, at most once per window."""
        since = now - REPEATED_MUTE_WINDOW_SECONDS
        try:
            mutes = moderation_db.count_actions_since(ctx.chat_id, ctx.user_id, ACTION_MUTE, since)
            if mutes < REPEATED_MUTE_AUTO_REMOVE_THRESHOLD:
                return False
            already_removed = moderation_db.count_actions_by_action_and_reason_since(
                ctx.chat_id, ctx.user_id, ACTION_KICK_AUTO, REASON_MUTE_REPEAT, since,
            )
        except Exception as e:
            logger.error(f"Repeated-mute lookup failed chat={ctx.chat_id} user={ctx.user_id}: {e}")
            return False
        if already_removed > 0:
            return False

        meta = {
            "triggerReason": trigger_reason,
            "mutesInWindow": mutes,
            "threshold": REPEATED_MUTE_AUTO_REMOVE_THRESHOLD,
            "windowHours": 24,
            "userName": display_name(ctx.user_name, ctx.user_id),
        }
        try:
            await self.client.remove_member(ctx.chat_id, ctx.user_id)
        except Exception as e:
            logger.warning(f"Failed to auto-remove user after repeated mutes chat={ctx.chat_id} "
                           f"user={ctx.user_id}: {e}")
            await self.record(ctx, ACTION_KICK_AUTO_FAILED, REASON_MUTE_REPEAT, {**meta, "error": str(e)}, now)
            return False

        await self.send_notice(ctx, config.REPEATED_MUTE_REMOVED, now, silent=True)
        await self.record(ctx, ACTION_KICK_AUTO, REASON_MUTE_REPEAT, meta, now)
        return True
