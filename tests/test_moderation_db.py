import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import moderation_db
from config import BotConfig
from chatwarden.errors import ConfigurationError
from chatwarden.models import ModerationActionRecord

CHAT_ID = -4001
USER_ID = 31337
DEFAULTS = BotConfig(bot_token="t")


def test_chat_settings_created_from_defaults(temp_db):
    settings = moderation_db.get_chat_settings(CHAT_ID, DEFAULTS)
    assert settings.enabled is True
    assert settings.daily_limit == DEFAULTS.daily_message_limit
    assert settings.spam_threshold == DEFAULTS.spam_threshold

    moderation_db.set_daily_limit(CHAT_ID, 7, DEFAULTS)
    moderation_db.set_spam_settings(CHAT_ID, 5, 30, DEFAULTS)
    moderation_db.set_chat_enabled(CHAT_ID, False, DEFAULTS)

    settings = moderation_db.get_chat_settings(CHAT_ID, DEFAULTS)
    assert (settings.daily_limit, settings.spam_threshold, settings.spam_window_sec) == (7, 5, 30)
    assert settings.enabled is False


def test_whitelist_normalizes_and_rejects_invalid(temp_db):
    assert moderation_db.add_whitelisted_domain(CHAT_ID, "https://Example.COM/path") == "example.com"
    moderation_db.add_whitelisted_domain(CHAT_ID, "example.com")
    assert moderation_db.list_whitelisted_domains(CHAT_ID) == ["example.com"]

    with pytest.raises(ConfigurationError):
        moderation_db.add_whitelisted_domain(CHAT_ID, "localhost")

    assert moderation_db.remove_whitelisted_domain(CHAT_ID, "EXAMPLE.com") is True
    assert moderation_db.remove_whitelisted_domain(CHAT_ID, "example.com") is False


def test_daily_count_is_per_day_key(temp_db):
    assert moderation_db.increment_daily_count(CHAT_ID, USER_ID, "2026-03-10") == 1
    assert moderation_db.increment_daily_count(CHAT_ID, USER_ID, "2026-03-10") == 2
    assert moderation_db.increment_daily_count(CHAT_ID, USER_ID, "2026-03-11") == 1

    assert moderation_db.purge_daily_counts_before("2026-03-11") == 1


def test_message_and_photo_events(temp_db):
    for ts in (100.0, 105.0, 109.0):
        moderation_db.add_message_event(CHAT_ID, USER_ID, ts)
    moderation_db.add_photo_event(CHAT_ID, USER_ID, 50.0)

    assert moderation_db.count_message_events_since(CHAT_ID, USER_ID, 105.0) == 2
    assert moderation_db.count_photo_events_since(CHAT_ID, USER_ID, 0.0) == 1
    assert moderation_db.purge_message_events_before(106.0) == 2


def test_strikes_increment_cap_and_decay(temp_db):
    day = 24 * 3600
    levels = [moderation_db.register_strike(CHAT_ID, USER_ID, 1000.0 + i, day) for i in range(5)]
    assert levels == [1, 2, 3, 3, 3]

    assert moderation_db.register_strike(CHAT_ID, USER_ID, 1004.0 + day + 1, day) == 1
    assert moderation_db.register_strike(CHAT_ID, USER_ID, 1005.0 + day + 1, day) == 2


def test_restriction_keeps_created_at_while_active(temp_db):
    moderation_db.upsert_restriction(CHAT_ID, USER_ID, "mute", 2000.0, now=1000.0)
    moderation_db.upsert_restriction(CHAT_ID, USER_ID, "mute", 3000.0, now=1500.0)

    active = moderation_db.get_active_restriction(CHAT_ID, USER_ID, 1600.0)
    assert (active.until_ts, active.created_at_ts) == (3000.0, 1000.0)


def test_restriction_created_at_resets_after_expiry(temp_db):
    moderation_db.upsert_restriction(CHAT_ID, USER_ID, "mute", 2000.0, now=1000.0)
    moderation_db.upsert_restriction(CHAT_ID, USER_ID, "mute", 6000.0, now=5000.0)

    active = moderation_db.get_active_restriction(CHAT_ID, USER_ID, 5001.0)
    assert active.created_at_ts == 5000.0
    assert moderation_db.get_active_restriction(CHAT_ID, USER_ID, 6000.0) is None
    assert moderation_db.purge_expired_restrictions(6000.0) == 1


def test_pending_rejoin_queue(temp_db):
    moderation_db.upsert_pending_rejoin(CHAT_ID, USER_ID, 500.0, now=100.0)
    moderation_db.upsert_pending_rejoin(CHAT_ID, USER_ID, 600.0, now=110.0)

    assert moderation_db.list_due_rejoins(550.0) == []
    due = moderation_db.list_due_rejoins(600.0)
    assert [(r.chat_id, r.user_id) for r in due] == [(CHAT_ID, USER_ID)]

    moderation_db.postpone_pending_rejoin(CHAT_ID, USER_ID, 1200.0)
    assert moderation_db.list_due_rejoins(700.0) == []
    moderation_db.remove_pending_rejoin(CHAT_ID, USER_ID)
    assert moderation_db.list_pending_rejoins() == []


def test_bot_message_delete_queue(temp_db):
    moderation_db.schedule_bot_message_delete(CHAT_ID, 11, 160.0, now=100.0)
    moderation_db.schedule_bot_message_delete(CHAT_ID, 12, 260.0, now=200.0)

    assert [d.message_id for d in moderation_db.list_due_bot_message_deletes(200.0)] == [11]
    moderation_db.remove_bot_message_delete(CHAT_ID, 11)
    assert moderation_db.purge_bot_message_deletes_before(300.0) == 1


def test_audit_log_counters(temp_db):
    def record(chat_id, action, reason, ts):
        moderation_db.record_moderation_action(
            ModerationActionRecord(chat_id, USER_ID, action, reason, {"k": "v"}, created_at=ts))

    record(CHAT_ID, "delete_message", "link", 100.0)
    record(CHAT_ID, "warn", "link", 200.0)
    record(CHAT_ID - 1, "delete_message", "duplicate", 300.0)

    assert moderation_db.count_actions_by_reason_since(CHAT_ID, USER_ID, "link", 0.0) == 2
    assert moderation_db.count_actions_by_reason_since(CHAT_ID, USER_ID, "link", 150.0) == 1
    assert moderation_db.count_actions_since(CHAT_ID, USER_ID, "warn", 0.0) == 1
    assert moderation_db.count_user_actions_since(USER_ID, "delete_message", 0.0) == 2
    assert moderation_db.count_user_action_and_reason_since(USER_ID, "delete_message", "duplicate", 0.0) == 1

    latest = moderation_db.get_recent_actions(CHAT_ID, USER_ID, limit=1)[0]
    assert (latest["action"], latest["meta"]) == ("warn", {"k": "v"})


def test_processed_messages_insert_if_absent(temp_db):
    assert moderation_db.try_mark_processed(CHAT_ID, 1, now=100.0) is True
    assert moderation_db.try_mark_processed(CHAT_ID, 1, now=101.0) is False
    assert moderation_db.try_mark_processed(CHAT_ID - 1, 1, now=101.0) is True
    assert moderation_db.purge_processed_messages_before(200.0) == 2


def test_log_chat_setting_round_trip(temp_db):
    assert moderation_db.get_log_chat_id() is None
    moderation_db.set_log_chat_id(-100500)
    assert moderation_db.get_log_chat_id() == -100500
    moderation_db.set_log_chat_id(None)
    assert moderation_db.get_log_chat_id() is None
