from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from telegram import Update
from telegram.constants import ChatType
from telegram.ext import ContextTypes

import moderation_db
from config import ADMIN_ONLY, GROUP_ONLY
from chatwarden.errors import ConfigurationError
from chatwarden.handlers.messages import handle_group_message
from chatwarden.models import ACTION_CONFIG_UPDATE, REASON_ADMIN_COMMAND, ViolationContext

logger = logging.getLogger(__name__)

GROUP_CHAT_TYPES = (ChatType.GROUP, ChatType.SUPERGROUP)


async def _require_group_admin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    chat = update.effective_chat
    if chat is None or chat.type not in GROUP_CHAT_TYPES:
        await update.effective_message.reply_text(GROUP_ONLY)
        return False

    resolver = context.bot_data["admin_resolver"]
    if not await resolver.is_admin(chat.id, update.effective_user.id):
        await update.effective_message.reply_text(ADMIN_ONLY)
        # Non-admins get no bypass: the command message is moderated like any other.
        await handle_group_message(update, context)
        return False
    return True


def _parse_int_in_range(value: Optional[str], low: int, high: int) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if low <= parsed <= high else None


async def _record_update(update: Update, context: ContextTypes.DEFAULT_TYPE, command: str,
                         change: Dict[str, Any]) -> None:
    enforcement = context.bot_data["enforcement"]
    ctx = ViolationContext(
        chat_id=update.effective_chat.id,
        user_id=update.effective_user.id,
        message_id=update.effective_message.message_id,
        user_name=update.effective_user.full_name,
    )
    await enforcement.record(ctx, ACTION_CONFIG_UPDATE, REASON_ADMIN_COMMAND,
                             {"command": command, **change}, time.time())


async def mod_status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Shows the moderation settings of the current chat.
    Usage: /mod_status
    """
    if not await _require_group_admin(update, context):
        return

    chat_id = update.effective_chat.id
    settings = moderation_db.get_chat_settings(chat_id, context.bot_data["config"])
    domains = moderation_db.list_whitelisted_domains(chat_id)
    log_chat_id = context.bot_data["enforcement"].reporter.resolve_log_chat_id()

    text = (
        "🛡️ Moderation status\n\n"
        f"Enabled: {'yes' if settings.enabled else 'no'}\n"
        f"Daily limit: {settings.daily_limit}\n"
        f"Photo limit per hour: {settings.photo_limit_per_hour}\n"
        f"Max text length: {settings.max_text_length}\n"
        f"Spam: {settings.spam_threshold} messages / {settings.spam_window_sec}s\n"
        f"Allowed domains: {', '.join(domains) if domains else 'none'}\n"
        f"Log chat: {log_chat_id if log_chat_id is not None else 'off'}"
    )
    await update.effective_message.reply_text(text)


async def _set_enabled(update: Update, context: ContextTypes.DEFAULT_TYPE, enabled: bool):
    if not await _require_group_admin(update, context):
        return
    moderation_db.set_chat_enabled(update.effective_chat.id, enabled, context.bot_data["config"])
    await _record_update(update, context, "mod_on" if enabled else "mod_off", {"enabled": enabled})
    await update.effective_message.reply_text("✅ Moderation enabled." if enabled else "⏸ Moderation disabled.")


async def mod_on_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _set_enabled(update, context, True)


async def mod_off_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _set_enabled(update, context, False)


async def allowdomain_add_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Usage: /allowdomain_add example.com"""
    if not await _require_group_admin(update, context):
        return
    if not context.args:
        await update.effective_message.reply_text("❌ Usage: /allowdomain_add <domain>")
        return

    try:
        domain = moderation_db.add_whitelisted_domain(update.effective_chat.id, context.args[0])
    except ConfigurationError as e:
        await update.effective_message.reply_text(f"❌ {e}")
        return
    await _record_update(update, context, "allowdomain_add", {"domain": domain})
    await update.effective_message.reply_text(f"✅ {domain} added to allowed domains.")


async def allowdomain_del_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Usage: /allowdomain_del example.com"""
    if not await _require_group_admin(update, context):
        return
    if not context.args:
        await update.effective_message.reply_text("❌ Usage: /allowdomain_del <domain>")
        return

    try:
        removed = moderation_db.remove_whitelisted_domain(update.effective_chat.id, context.args[0])
    except ConfigurationError as e:
        await update.effective_message.reply_text(f"❌ {e}")
        return
    if not removed:
        await update.effective_message.reply_text(f"ℹ️ {context.args[0]} is not in the allowed list.")
        return
    await _record_update(update, context, "allowdomain_del", {"domain": context.args[0]})
    await update.effective_message.reply_text(f"✅ {context.args[0]} removed from allowed domains.")


async def allowdomain_list_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await _require_group_admin(update, context):
        return
    domains = moderation_db.list_whitelisted_domains(update.effective_chat.id)
    if not domains:
        await update.effective_message.reply_text("No allowed domains. Every link is removed.")
        return
    await update.effective_message.reply_text("Allowed domains:\n" + "\n".join(f"• {d}" for d in domains))


async def _set_single_limit(update: Update, context: ContextTypes.DEFAULT_TYPE, command: str,
                            low: int, high: int, setter, field: str):
    if not await _require_group_admin(update, context):
        return
    value = _parse_int_in_range(context.args[0] if context.args else None, low, high)
    if value is None:
        await update.effective_message.reply_text(f"❌ Usage: /{command} <{low}..{high}>")
        return

    setter(update.effective_chat.id, value, context.bot_data["config"])
    await _record_update(update, context, command, {field: value})
    await update.effective_message.reply_text(f"✅ {field} set to {value}.")


async def set_limit_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _set_single_limit(update, context, "set_limit", 1, 10000, moderation_db.set_daily_limit, "daily_limit")


async def set_photo_limit_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _set_single_limit(update, context, "set_photo_limit", 0, 100, moderation_db.set_photo_limit,
                            "photo_limit_per_hour")


async def set_text_limit_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _set_single_limit(update, context, "set_text_limit", 0, 10000, moderation_db.set_max_text_length,
                            "max_text_length")


async def set_spam_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Usage: /set_spam <threshold 2..100> <window seconds 3..600>"""
    if not await _require_group_admin(update, context):
        return
    args = context.args or []
    threshold = _parse_int_in_range(args[0] if len(args) > 0 else None, 2, 100)
    window = _parse_int_in_range(args[1] if len(args) > 1 else None, 3, 600)
    if threshold is None or window is None:
        await update.effective_message.reply_text("❌ Usage: /set_spam <threshold 2..100> <window 3..600>")
        return

    moderation_db.set_spam_settings(update.effective_chat.id, threshold, window, context.bot_data["config"])
    await _record_update(update, context, "set_spam", {"spam_threshold": threshold, "spam_window_sec": window})
    await update.effective_message.reply_text(f"✅ Spam rule set to {threshold} messages per {window}s.")


async def set_logchat_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Usage: /set_logchat <chat id> or /set_logchat off"""
    if not await _require_group_admin(update, context):
        return
    arg = context.args[0] if context.args else None
    if arg is None:
        await update.effective_message.reply_text("❌ Usage: /set_logchat <chat id|off>")
        return

    if arg.lower() == "off":
        log_chat_id = None
    else:
        try:
            log_chat_id = int(arg)
        except ValueError:
            await update.effective_message.reply_text("❌ Usage: /set_logchat <chat id|off>")
            return

    moderation_db.set_log_chat_id(log_chat_id)
    await _record_update(update, context, "set_logchat", {"log_chat_id": log_chat_id})
    await update.effective_message.reply_text(
        f"✅ Log chat set to {log_chat_id}." if log_chat_id is not None else "✅ Log chat disabled."
    )
