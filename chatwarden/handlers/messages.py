from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from telegram import Message, Update
from telegram.constants import ChatType, MessageEntityType
from telegram.ext import ContextTypes

from chatwarden.models import IncomingMessage, LinkedMessage

logger = logging.getLogger("chatwarden")

CHAT_TYPE_MAP = {
    ChatType.GROUP: "chat",
    ChatType.SUPERGROUP: "chat",
    ChatType.CHANNEL: "channel",
    ChatType.PRIVATE: "dialog",
}


def _media_attachments(source: Any) -> List[Dict[str, Any]]:
    """Typed attachment dicts for whatever media `source` (a Message or ExternalReplyInfo) carries."""
    attachments: List[Dict[str, Any]] = []
    if getattr(source, "photo", None):
        largest = source.photo[-1]
        attachments.append({"type": "image", "file_id": largest.file_id})
    if getattr(source, "video", None):
        attachments.append({"type": "video", "file_id": source.video.file_id})
    for kind in ("audio", "voice"):
        media = getattr(source, kind, None)
        if media:
            attachments.append({"type": "audio", "file_id": media.file_id})
    if getattr(source, "document", None):
        attachments.append({
            "type": "file",
            "file_id": source.document.file_id,
            "file_name": source.document.file_name,
        })
    if getattr(source, "sticker", None):
        attachments.append({"type": "sticker", "file_id": source.sticker.file_id})
    return attachments


def _markup(message: Message) -> List[Dict[str, Any]]:
    markup: List[Dict[str, Any]] = []
    for entity in list(message.entities or ()) + list(message.caption_entities or ()):
        if entity.type == MessageEntityType.TEXT_LINK and entity.url:
            markup.append({"type": "link", "url": entity.url})

    keyboard = message.reply_markup.inline_keyboard if message.reply_markup else ()
    for row in keyboard:
        for button in row:
            if button.url:
                markup.append({"type": "button", "text": button.text, "url": button.url})
    return markup


def _linked(message: Message) -> Optional[LinkedMessage]:
    quote_text = message.quote.text if message.quote else None
    external = message.external_reply
    attachments = _media_attachments(external) if external else []
    markup: List[Dict[str, Any]] = []
    if external and external.link_preview_options and external.link_preview_options.url:
        markup.append({"type": "link", "url": external.link_preview_options.url})

    if not quote_text and not attachments and not markup:
        return None
    return LinkedMessage(text=quote_text, attachments=attachments, markup=markup)


def _sender_name(message: Message) -> Optional[str]:
    user = message.from_user
    if user is None:
        return message.sender_chat.title if message.sender_chat else None
    return user.full_name or (f"@{user.username}" if user.username else None)


def to_incoming_message(message: Message) -> IncomingMessage:
    """Convert a python-telegram-bot Message into the platform-neutral IncomingMessage."""
    user = message.from_user
    preview = message.link_preview_options
    return IncomingMessage(
        chat_id=message.chat_id,
        chat_type=CHAT_TYPE_MAP.get(message.chat.type, "dialog"),
        message_id=message.message_id,
        sender_id=user.id if user else None,
        sender_is_bot=bool(user and user.is_bot),
        sender_name=_sender_name(message),
        text=message.text or message.caption,
        attachments=_media_attachments(message),
        markup=_markup(message),
        url=preview.url if preview and preview.url else None,
        linked=_linked(message),
    )


async def handle_group_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Run every group/channel message through the moderation pipeline."""
    message = update.effective_message
    if message is None:
        return

    pipeline = context.bot_data["pipeline"]
    bot_guard = context.bot_data["bot_guard"]
    incoming = to_incoming_message(message)

    if incoming.sender_is_bot and incoming.chat_type == "chat" and incoming.sender_id != context.bot.id:
        await bot_guard.handle_bot_message(incoming.chat_id, incoming.sender_id, incoming.sender_name)
        return

    try:
        await pipeline.handle_message(incoming, bot_user_id=context.bot.id)
    except Exception as e:
        logger.error(f"Moderation pipeline failed chat={incoming.chat_id} "
                     f"message={incoming.message_id}: {e}", exc_info=True)
        raise


async def handle_new_members(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.effective_message
    if message is None or not message.new_chat_members:
        return

    bot_guard = context.bot_data["bot_guard"]
    members = [(member.id, member.is_bot, member.full_name) for member in message.new_chat_members]
    removed = await bot_guard.handle_new_members(message.chat_id, members)
    if removed:
        logger.info(f"Bot guard removed {removed} bot(s) from chat {message.chat_id}")
