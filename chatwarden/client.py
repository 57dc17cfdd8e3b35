"""
Messaging client capability used by the moderation core, and its Telegram
implementation on top of python-telegram-bot.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Set, Tuple

import httpx
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, NetworkError, RetryAfter, TelegramError, TimedOut

from chatwarden.errors import AlreadySatisfied, PermanentAPIError, TransientInfraError

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

_ALREADY_DELETED_RE = re.compile(
    r"message to delete not found|message can't be deleted|message_id_invalid", re.IGNORECASE
)
_MALFORMED_REQUEST_RE = re.compile(
    r"wrong parameter|can't parse|invalid request|bad request: invalid|parameter .* is required|unsupported",
    re.IGNORECASE,
)

Buttons = Sequence[Tuple[str, str]]


class ChatClient(ABC):
    """What the moderation core needs from a messaging platform."""

    @abstractmethod
    async def delete_message(self, chat_id: int, message_id: int) -> None:
        ...

    @abstractmethod
    async def send_message(self, chat_id: int, text: str, buttons: Optional[Buttons] = None,
                           silent: bool = False) -> Optional[int]:
        """Send a message and return its id when the platform reports one."""

    @abstractmethod
    async def remove_member(self, chat_id: int, user_id: int, block: bool = False,
                            until_ts: Optional[float] = None) -> None:
        """Remove a user. With `block` the user cannot rejoin (until `until_ts` when given)."""

    @abstractmethod
    async def get_chat_admin_ids(self, chat_id: int) -> Set[int]:
        ...

    @abstractmethod
    async def is_chat_admin(self, chat_id: int, user_id: int) -> bool:
        ...

    @abstractmethod
    async def get_chat_title(self, chat_id: int) -> Optional[str]:
        ...

    @abstractmethod
    async def add_member(self, chat_id: int, user_id: int) -> None:
        ...


def translate_telegram_error(exc: TelegramError) -> Exception:
    """Map a python-telegram-bot error onto the moderation error taxonomy."""
    message = str(exc)
    if isinstance(exc, (RetryAfter, TimedOut, NetworkError)) and not isinstance(exc, BadRequest):
        return TransientInfraError(message)
    if isinstance(exc, BadRequest):
        if _ALREADY_DELETED_RE.search(message):
            return AlreadySatisfied(message)
        return PermanentAPIError(message, malformed=bool(_MALFORMED_REQUEST_RE.search(message)))
    return PermanentAPIError(message)


class TelegramChatClient(ChatClient):
    """ChatClient backed by a telegram.Bot."""

    def __init__(self, bot: Bot, token: Optional[str] = None, api_base: str = TELEGRAM_API_BASE):
        self.bot = bot
        self.token = token or bot.token
        self.api_base = api_base.rstrip("/")

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramError as e:
            raise translate_telegram_error(e) from e

    async def send_message(self, chat_id: int, text: str, buttons: Optional[Buttons] = None,
                           silent: bool = False) -> Optional[int]:
        markup = None
        if buttons:
            markup = InlineKeyboardMarkup([[InlineKeyboardButton(label, url=url)] for label, url in buttons])
        try:
            sent = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=markup,
                disable_notification=silent,
            )
        except TelegramError as e:
            raise translate_telegram_error(e) from e
        return getattr(sent, "message_id", None)

    async def remove_member(self, chat_id: int, user_id: int, block: bool = False,
                            until_ts: Optional[float] = None) -> None:
        """
        Remove a user from a chat.

        Without `block` the ban is lifted right away, so the user is kicked but
        may come back through an invite link. A malformed-request rejection of
        the primary call is retried once through a raw Bot API request.
        """
        until_date = int(until_ts) if (block and until_ts) else None
        try:
            await self.bot.ban_chat_member(chat_id=chat_id, user_id=user_id, until_date=until_date)
        except TelegramError as e:
            error = translate_telegram_error(e)
            if not (isinstance(error, PermanentAPIError) and error.malformed):
                raise error from e
            logger.warning(f"banChatMember rejected as malformed ({e}); retrying via raw Bot API call")
            payload = {"chat_id": chat_id, "user_id": user_id}
            if until_date is not None:
                payload["until_date"] = until_date
            await self._raw_call("banChatMember", payload)

        if not block:
            try:
                await self.bot.unban_chat_member(chat_id=chat_id, user_id=user_id, only_if_banned=True)
            except TelegramError as e:
                # The removal itself succeeded; the user simply stays banned.
                logger.warning(f"Failed to lift ban after kick chat={chat_id} user={user_id}: {e}")

    async def _raw_call(self, method: str, payload: dict) -> dict:
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransientInfraError(f"{method} raw call failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 500:
            raise TransientInfraError(f"{method} raw call failed with HTTP {response.status_code}")
        if not body.get("ok"):
            raise PermanentAPIError(f"{method} raw call rejected: {body.get('description', response.status_code)}")
        return body

    async def get_chat_admin_ids(self, chat_id: int) -> Set[int]:
        try:
            admins = await self.bot.get_chat_administrators(chat_id=chat_id)
        except TelegramError as e:
            raise translate_telegram_error(e) from e
        return {member.user.id for member in admins}

    async def is_chat_admin(self, chat_id: int, user_id: int) -> bool:
        try:
            member = await self.bot.get_chat_member(chat_id=chat_id, user_id=user_id)
        except TelegramError as e:
            raise translate_telegram_error(e) from e
        return member.status in ("administrator", "creator")

    async def get_chat_title(self, chat_id: int) -> Optional[str]:
        try:
            chat = await self.bot.get_chat(chat_id=chat_id)
        except TelegramError as e:
            raise translate_telegram_error(e) from e
        return chat.title

    async def add_member(self, chat_id: int, user_id: int) -> None:
        # Bots cannot add users to groups; lifting the ban lets them rejoin.
        try:
            await self.bot.unban_chat_member(chat_id=chat_id, user_id=user_id, only_if_banned=True)
        except TelegramError as e:
            raise translate_telegram_error(e) from e

