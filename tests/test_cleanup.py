import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import moderation_db
from config import BotConfig
from chatwarden.errors import AlreadySatisfied
from chatwarden.services.cleanup import (
    BOT_MESSAGE_DELETE_RETRY_SECONDS,
    REJOIN_RETRY_SECONDS,
    CleanupService,
)
from chatwarden.services.enforcement import EnforcementService
from fakes import FakeChatClient

CHAT_ID = -5001
USER_ID = 2024
NOW = 1_780_000_000.0


def make_cleanup(client, sweep_caches=None, **overrides):
    enforcement = EnforcementService(client, BotConfig(bot_token="t", **overrides))
    return CleanupService(enforcement, sweep_caches=sweep_caches)


@pytest.mark.asyncio
async def test_due_bot_messages_are_deleted(temp_db):
    client = FakeChatClient()
    cleanup = make_cleanup(client)
    moderation_db.schedule_bot_message_delete(CHAT_ID, 1, NOW - 1, now=NOW - 61)
    moderation_db.schedule_bot_message_delete(CHAT_ID, 2, NOW + 30, now=NOW - 30)

    assert await cleanup.drain_bot_message_deletes(NOW) == 1

    assert client.deleted == [(CHAT_ID, 1)]
    assert [d.message_id for d in moderation_db.list_due_bot_message_deletes(NOW + 60)] == [2]


@pytest.mark.asyncio
async def test_failed_bot_message_delete_is_postponed(temp_db):
    client = FakeChatClient()
    client.fail_delete = True
    cleanup = make_cleanup(client)
    moderation_db.schedule_bot_message_delete(CHAT_ID, 1, NOW - 1, now=NOW - 61)

    assert await cleanup.drain_bot_message_deletes(NOW) == 0

    assert moderation_db.list_due_bot_message_deletes(NOW + BOT_MESSAGE_DELETE_RETRY_SECONDS - 1) == []
    assert len(moderation_db.list_due_bot_message_deletes(NOW + BOT_MESSAGE_DELETE_RETRY_SECONDS)) == 1


@pytest.mark.asyncio
async def test_already_deleted_bot_message_is_resolved(temp_db):
    class GoneClient(FakeChatClient):
        async def delete_message(self, chat_id, message_id):
            raise AlreadySatisfied("message to delete not found")

    cleanup = make_cleanup(GoneClient())
    moderation_db.schedule_bot_message_delete(CHAT_ID, 1, NOW - 1, now=NOW - 61)

    assert await cleanup.drain_bot_message_deletes(NOW) == 1
    assert moderation_db.list_due_bot_message_deletes(NOW + 3600) == []


@pytest.mark.asyncio
async def test_due_rejoin_lets_user_back_and_is_recorded(temp_db):
    client = FakeChatClient()
    cleanup = make_cleanup(client)
    moderation_db.upsert_pending_rejoin(CHAT_ID, USER_ID, NOW - 5, now=NOW - 3 * 3600)

    assert await cleanup.drain_pending_rejoins(NOW) == 1

    assert client.added == [(CHAT_ID, USER_ID)]
    assert moderation_db.list_pending_rejoins() == []
    recent = moderation_db.get_recent_actions(CHAT_ID, USER_ID)
    assert (recent[0]["action"], recent[0]["reason"]) == ("rejoin", "scheduled_rejoin")


@pytest.mark.asyncio
async def test_failed_rejoin_is_postponed(temp_db):
    client = FakeChatClient()
    client.fail_add = True
    cleanup = make_cleanup(client)
    moderation_db.upsert_pending_rejoin(CHAT_ID, USER_ID, NOW - 5, now=NOW - 3 * 3600)

    assert await cleanup.drain_pending_rejoins(NOW) == 0

    pending = moderation_db.list_pending_rejoins(CHAT_ID)
    assert pending[0].rejoin_at_ts == NOW + REJOIN_RETRY_SECONDS


def test_run_purges_expired_rows_and_sweeps_caches(temp_db):
    swept = []
    cleanup = make_cleanup(FakeChatClient(), sweep_caches=swept.append, ban_hours=24, strike_decay_hours=24)
    day = 24 * 3600

    moderation_db.add_message_event(CHAT_ID, USER_ID, NOW - 2 * day)
    moderation_db.add_message_event(CHAT_ID, USER_ID, NOW - 60)
    moderation_db.upsert_restriction(CHAT_ID, USER_ID, "mute", NOW - 1, now=NOW - 3600)
    moderation_db.register_strike(CHAT_ID, USER_ID, NOW - 2 * day, day)
    moderation_db.try_mark_processed(CHAT_ID, 1, now=NOW - 3 * day)
    moderation_db.increment_daily_count(CHAT_ID, USER_ID, "2020-01-01")

    purged = cleanup.run(NOW)

    assert purged == {
        "message_events": 1,
        "photo_events": 0,
        "restrictions": 1,
        "strikes": 1,
        "processed_messages": 1,
        "daily_counts": 1,
    }
    assert swept == [NOW]
    assert moderation_db.count_message_events_since(CHAT_ID, USER_ID, 0.0) == 1


def test_event_retention_uses_longest_window(temp_db):
    cleanup = make_cleanup(FakeChatClient(), ban_hours=48, strike_decay_hours=24)
    assert cleanup.event_retention_seconds() == 48 * 3600
