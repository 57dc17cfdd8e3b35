import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import DEFAULT_DATABASE_PATH, load_config, parse_bool
from chatwarden.errors import ConfigurationError
from chatwarden.logging import configure_logging


def test_defaults_with_only_token():
    cfg = load_config({"BOT_TOKEN": "123:abc"})
    assert cfg.bot_token == "123:abc"
    assert cfg.timezone == "Europe/Moscow"
    assert cfg.daily_message_limit == 3
    assert cfg.photo_limit_per_hour == 1
    assert cfg.max_text_length == 1200
    assert (cfg.spam_threshold, cfg.spam_window_sec) == (3, 10)
    assert (cfg.mute_hours, cfg.ban_hours, cfg.strike_decay_hours) == (1, 24, 24)
    assert cfg.log_chat_id is None
    assert cfg.notice_in_chat is True
    assert cfg.database_path == DEFAULT_DATABASE_PATH
    assert cfg.webhook_url is None


def test_missing_token_is_rejected():
    with pytest.raises(ConfigurationError, match="BOT_TOKEN"):
        load_config({"BOT_TOKEN": "   "})


def test_overrides_are_parsed():
    cfg = load_config({
        "BOT_TOKEN": "t",
        "TIMEZONE": "Asia/Irkutsk",
        "DAILY_MESSAGE_LIMIT": "10",
        "PHOTO_LIMIT_PER_HOUR": "0",
        "MAX_TEXT_LENGTH": "0",
        "LOG_CHAT_ID": "-100500",
        "NOTICE_IN_CHAT": "off",
        "WEBHOOK_URL": "https://bot.example/",
        "LOG_LEVEL": "debug",
    })
    assert cfg.timezone == "Asia/Irkutsk"
    assert cfg.daily_message_limit == 10
    assert cfg.photo_limit_per_hour == 0
    assert cfg.max_text_length == 0
    assert cfg.log_chat_id == -100500
    assert cfg.notice_in_chat is False
    assert cfg.webhook_url == "https://bot.example"
    assert cfg.log_level == "DEBUG"


@pytest.mark.parametrize("key,value", [
    ("DAILY_MESSAGE_LIMIT", "0"),
    ("SPAM_THRESHOLD", "abc"),
    ("PHOTO_LIMIT_PER_HOUR", "-1"),
    ("LOG_CHAT_ID", "not-a-number"),
])
def test_malformed_numbers_are_rejected(key, value):
    with pytest.raises(ConfigurationError, match=key):
        load_config({"BOT_TOKEN": "t", key: value})


def test_parse_bool_fallback():
    assert parse_bool("yes", False) is True
    assert parse_bool("0", True) is False
    assert parse_bool("maybe", True) is True
    assert parse_bool(None, False) is False


def test_configure_logging_accepts_level_names():
    logger = configure_logging("warning")
    assert logger.name == "chatwarden"
