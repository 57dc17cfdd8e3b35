"""
Configuration for the Telegram moderation bot.
Values come from environment variables (a local .env is loaded by bot.py).
"""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from chatwarden.errors import ConfigurationError

DEFAULT_DATABASE_PATH = os.path.join("data", "moderation.sqlite")
DEFAULT_TIMEZONE = "Europe/Moscow"


@dataclass(frozen=True)
class BotConfig:
    bot_token: str
    timezone: str = DEFAULT_TIMEZONE
    daily_message_limit: int = 3
    photo_limit_per_hour: int = 1
    max_text_length: int = 1200
    spam_window_sec: int = 10
    spam_threshold: int = 3
    strike_decay_hours: int = 24
    mute_hours: int = 1
    ban_hours: int = 24
    log_chat_id: Optional[int] = None
    notice_in_chat: bool = True
    database_path: str = DEFAULT_DATABASE_PATH
    cleanup_interval_sec: int = 300
    log_level: str = "INFO"
    webhook_url: Optional[str] = None
    port: int = 8443


def parse_positive_int(value: Optional[str], fallback: int, key: str) -> int:
    if value is None or value.strip() == "":
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a positive integer")
    if parsed <= 0:
        raise ConfigurationError(f"Environment variable {key} must be a positive integer")
    return parsed


def parse_non_negative_int(value: Optional[str], fallback: int, key: str) -> int:
    if value is None or value.strip() == "":
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a non-negative integer")
    if parsed < 0:
        raise ConfigurationError(f"Environment variable {key} must be a non-negative integer")
    return parsed


def parse_optional_int(value: Optional[str], key: str) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be an integer")


def parse_bool(value: Optional[str], fallback: bool) -> bool:
    if not value:
        return fallback
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return fallback


def load_config(env: Mapping[str, str] = os.environ) -> BotConfig:
    """Build a BotConfig from environment variables.

    Raises:
        ConfigurationError: BOT_TOKEN is missing or a numeric variable is malformed.
    """
    bot_token = (env.get("BOT_TOKEN") or "").strip()
    if not bot_token:
        raise ConfigurationError("BOT_TOKEN is required")

    return BotConfig(
        bot_token=bot_token,
        timezone=(env.get("TIMEZONE") or DEFAULT_TIMEZONE).strip(),
        daily_message_limit=parse_positive_int(env.get("DAILY_MESSAGE_LIMIT"), 3, "DAILY_MESSAGE_LIMIT"),
        photo_limit_per_hour=parse_non_negative_int(env.get("PHOTO_LIMIT_PER_HOUR"), 1, "PHOTO_LIMIT_PER_HOUR"),
        max_text_length=parse_non_negative_int(env.get("MAX_TEXT_LENGTH"), 1200, "MAX_TEXT_LENGTH"),
        spam_window_sec=parse_positive_int(env.get("SPAM_WINDOW_SEC"), 10, "SPAM_WINDOW_SEC"),
        spam_threshold=parse_positive_int(env.get("SPAM_THRESHOLD"), 3, "SPAM_THRESHOLD"),
        strike_decay_hours=parse_positive_int(env.get("STRIKE_DECAY_HOURS"), 24, "STRIKE_DECAY_HOURS"),
        mute_hours=parse_positive_int(env.get("MUTE_HOURS"), 1, "MUTE_HOURS"),
        ban_hours=parse_positive_int(env.get("BAN_HOURS"), 24, "BAN_HOURS"),
        log_chat_id=parse_optional_int(env.get("LOG_CHAT_ID"), "LOG_CHAT_ID"),
        notice_in_chat=parse_bool(env.get("NOTICE_IN_CHAT"), True),
        database_path=(env.get("DATABASE_PATH") or "").strip() or DEFAULT_DATABASE_PATH,
        cleanup_interval_sec=parse_positive_int(env.get("CLEANUP_INTERVAL_SEC"), 300, "CLEANUP_INTERVAL_SEC"),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        webhook_url=(env.get("WEBHOOK_URL") or "").strip().rstrip("/") or None,
        port=parse_positive_int(env.get("PORT"), 8443, "PORT"),
    )


# Chat notices. Every notice is prefixed with «display name», by the enforcement layer.

LINK_NOTICE = "links are not allowed in this chat. Your message was removed. See the chat description for the rules."
LINK_WARNING = "warning: posting links again within 24 hours will get you removed from the chat."
LINK_FINAL_WARNING = "final warning: the next link within 24 hours means permanent removal."
LINK_REMOVED = "repeated links after a final warning. You have been removed from the chat."
LINK_FAIL_CLOSED = "message removed: link check is temporarily unavailable."

RULES_BUTTON_TEXT = "Rules"
RULES_BUTTON_URL = os.getenv("RULES_URL", "")

QUOTA_NOTICE = "daily message limit reached: {limit} per day. Try again after midnight ({timezone})."
TEXT_LENGTH_NOTICE = "message is too long ({length} characters). The limit is {limit} characters."
PHOTO_QUOTA_NOTICE = (
    "this chat allows at most {limit} photo message(s) per hour to keep the feed readable. "
    "Please send the next photo later."
)
PHOTO_QUOTA_MUTE = "you kept sending photos over the limit. Muted for {hours} hours."

SPAM_WARNING = "warning: flooding detected. Repeating it will get you muted."
SPAM_MUTE = "flooding: muted until {until}."
SPAM_BANNED = "flooding: user blocked for {hours} h."
SPAM_BAN_FALLBACK = "flooding: messages are blocked until {until}."

ANTI_BOT_WARNING = "suspicious activity: message removed. Repeating it will get you muted."
ANTI_BOT_MUTE = "looks like automated posting: muted for {hours} h until {until}."

DUPLICATE_NOTICE = "this message repeats one you already posted in the last 24 hours and was removed."
DUPLICATE_WARNING = "warning: posting the same text again will get you removed from the chat."
DUPLICATE_REMOVED = "repeated duplicate posts. You have been removed from the chat."

ACTIVE_RESTRICTION_NOTICE = "message removed: you are blocked from posting until {until}."
REPEATED_MUTE_REMOVED = "2 mutes within 24 hours. You have been removed from the chat automatically."
GLOBAL_SPAMMER_REMOVED = "account flagged for spam across several chats and removed."

NIGHT_QUIET_MUTE = "night quiet hours (23:00-07:00): muted until {until}."

ADMIN_ONLY = "⚠️ Admin only command."
GROUP_ONLY = "This command only works in groups."
